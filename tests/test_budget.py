from forge.budget import BudgetCategory, ContextBudget, estimate_tokens
from forge.discovery import Priority
from forge.extractors import Convention


def test_estimate_tokens_weights_character_classes() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd efgh") == 3
    assert estimate_tokens("{}") == 1


def test_category_allocation() -> None:
    budget = ContextBudget(1000)
    assert budget.remaining(BudgetCategory.MUST_READ) == 667
    assert budget.remaining(BudgetCategory.HISTORY) == 33
    assert budget.use(BudgetCategory.HISTORY, 30)
    assert not budget.use(BudgetCategory.HISTORY, 10)
    assert budget.remaining(BudgetCategory.HISTORY) == 0


def test_files_are_allocated_by_tier() -> None:
    granted = ContextBudget(1000).allocate_files(
        [
            ("shop/auth.py", Priority.HIGH, 400),
            ("shop/session.py", Priority.HIGH, 100),
            ("shop/util.py", Priority.MEDIUM, 500),
            ("shop/legacy.py", Priority.LOW, 50),
        ]
    )
    assert granted == {"shop/auth.py": 266, "shop/session.py": 100, "shop/util.py": 240, "shop/legacy.py": 0}


def test_low_tier_gets_a_capped_share_when_room_is_left() -> None:
    granted = ContextBudget().allocate_files([("docs/big.md", Priority.LOW, 5000)])
    assert granted == {"docs/big.md": 1000}


def test_fit_keeps_the_leading_items() -> None:
    budget = ContextBudget(1000)
    conventions = [Convention(f"convention_{i}", "tidy") for i in range(5)]
    kept = budget.fit_patterns(conventions)
    assert 0 < len(kept) < len(conventions)
    assert list(kept) == conventions[: len(kept)]
