import pytest
from conftest import write_tree

from forge.classifier import TaskType
from forge.discovery import DiscoveryMode, FileDiscovery, Priority, ProjectIndex, is_test_path, path_terms

PROSE_OR_CONFIG = (".md", ".rst", ".txt", ".toml", ".cfg", ".json")

CO_MODIFIED = [
    ("shop/user_service.py", "tests/test_user_service.py"),
    ("shop/main.py", "shop/payment_gateway.py"),
]


def test_scan_skips_vendored_and_vcs_dirs(project) -> None:
    write_tree(project, {".git/config": "", "node_modules/left-pad/index.js": ""})
    index = ProjectIndex.scan(project)
    assert "shop/main.py" in index
    assert not any(f.startswith((".git/", "node_modules/")) for f in index.files)


def test_scan_is_bounded(project) -> None:
    index = ProjectIndex.scan(project, max_files=3)
    assert len(index.files) == 3


@pytest.mark.asyncio
async def test_async_scan_matches_sync_scan(project) -> None:
    index = await ProjectIndex.ascan(project)
    assert index.files == ProjectIndex.scan(project).files


def test_documentation_high_tier_is_prose_or_config(project) -> None:
    index = ProjectIndex.scan(project)
    candidates = FileDiscovery().rank(TaskType.DOCUMENTATION, index, ["readme"])

    paths = [c.path for c in candidates]
    assert paths[0] == "docs/guide.md"
    assert {"CHANGELOG.md", "pyproject.toml"} <= set(paths)
    high = [c for c in candidates if c.priority == Priority.HIGH]
    assert high
    assert all(c.path.endswith(PROSE_OR_CONFIG) for c in high)
    assert all(c.reasons for c in candidates)


def test_ranking_is_deterministic(project) -> None:
    index = ProjectIndex.scan(project)
    discovery = FileDiscovery()
    first = discovery.rank(TaskType.CODE, index, ["user", "service"])
    second = discovery.rank(TaskType.CODE, index, ["user", "service"])
    assert [(c.path, c.score) for c in first] == [(c.path, c.score) for c in second]
    assert first[0].path == "shop/user_service.py"


def test_high_tier_is_capped(tmp_path) -> None:
    files = {f"docs/page_{i}.md": "readme" for i in range(8)}
    index = ProjectIndex.scan(write_tree(tmp_path / "docs-heavy", files))
    candidates = FileDiscovery(high_tier_limit=5).rank(TaskType.DOCUMENTATION, index, ["readme"])
    assert sum(c.priority == Priority.HIGH for c in candidates) == 5
    assert sum(c.priority == Priority.MEDIUM for c in candidates) == 3


def test_testing_uses_only_test_co_modification_pairs(project) -> None:
    index = ProjectIndex.scan(project)
    candidates = FileDiscovery().rank(TaskType.TESTING, index, [], co_modified=CO_MODIFIED)
    by_path = {c.path: c for c in candidates}

    assert "often modified together with tests/test_user_service.py" in by_path["shop/user_service.py"].reasons
    assert "shop/main.py" not in by_path
    assert "shop/payment_gateway.py" not in by_path


def test_tightened_mode_drops_weak_candidates(project) -> None:
    index = ProjectIndex.scan(project)
    discovery = FileDiscovery()
    normal = discovery.rank(TaskType.TESTING, index, [], co_modified=CO_MODIFIED)
    tightened = discovery.rank(
        TaskType.TESTING, index, [], mode=DiscoveryMode.TIGHTENED, co_modified=CO_MODIFIED
    )
    assert len(tightened) < len(normal)
    assert "shop/user_service.py" not in {c.path for c in tightened}


def test_is_test_path() -> None:
    assert is_test_path("tests/test_api.py")
    assert is_test_path("src/app.spec.ts")
    assert not is_test_path("shop/main.py")


def test_file_name_stem_matches_keyword(tmp_path) -> None:
    files = {"forge/discovery.py": "", "forge/other.py": ""}
    index = ProjectIndex.scan(write_tree(tmp_path / "tool", files))
    candidates = FileDiscovery().rank(TaskType.CODE, index, ["discovery"])

    top = candidates[0]
    assert top.path == "forge/discovery.py"
    assert 'path matches "discovery"' in top.reasons
    assert top.priority != Priority.LOW


def test_path_terms_split_file_names() -> None:
    terms = path_terms("shop/payment_gateway.py")
    assert {"shop", "payment", "gateway", "payment_gateway.py"} <= terms
    assert "package.json" in path_terms("web/package.json")
