"""Shared test fixtures and configuration for pytest."""

from __future__ import annotations

import os

# Keep the module-level engine off the user's ~/.forge database.
os.environ.setdefault("FORGE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from forge import db
from forge.archive import ArchiveKind, ArchiveRecord, normalize_project_path, searchable_text
from forge.classifier import Classification, TaskType
from forge.config import settings
from forge.errors import ArchiveUnavailable, OracleUnavailable
from forge.events import event_bus, persist_event_handler
from forge.extractors import ArchitectureSummary, Convention
from forge.keywords import tokenize
from forge.learning import HistoricalContext
from forge.models import Base
from forge.oracle import OracleClassification, OracleJudgment
from forge.package import ContextPackage, MustReadEntry


class InMemoryArchive:
    """Archive fake with the same project scoping and matching as ``SqlArchive``."""

    def __init__(self) -> None:
        self.records: list[ArchiveRecord] = []
        self.searches: list[dict[str, Any]] = []

    async def store(self, record: ArchiveRecord) -> str:
        record.project_path = normalize_project_path(record.project_path)
        record.id = str(uuid4())
        self.records.append(record)
        return record.id

    async def search(
        self,
        query: str,
        *,
        project_path: str,
        kind: str | None = None,
        limit: int = 20,
    ) -> list[ArchiveRecord]:
        project_path = normalize_project_path(project_path)
        self.searches.append({"query": query, "project_path": project_path, "kind": kind})
        terms = [t for t in tokenize(query) if len(t) > 2]
        hits = []
        for record in reversed(self.records):
            if record.project_path != project_path:
                continue
            if kind and record.kind != kind:
                continue
            text = searchable_text(record).lower()
            if terms and not any(t in text for t in terms):
                continue
            hits.append(record)
        return hits[:limit]


class LeakyArchive(InMemoryArchive):
    """Ignores the project filter, like a misbehaving remote archive."""

    async def search(self, query, *, project_path, kind=None, limit=20):  # type: ignore[override]
        return [r for r in reversed(self.records) if not kind or r.kind == kind][:limit]


class PatternWriteFailingArchive(InMemoryArchive):
    """Stores feedback but refuses every pattern outcome write."""

    def __init__(self) -> None:
        super().__init__()
        self.pattern_writes = 0

    async def store(self, record: ArchiveRecord) -> str:
        if record.kind == ArchiveKind.PATTERN_OUTCOME.value:
            self.pattern_writes += 1
            raise ArchiveUnavailable("archive rejected the write")
        return await super().store(record)


class FailingArchive:
    def __init__(self) -> None:
        self.calls = 0

    async def store(self, record: ArchiveRecord) -> str:
        self.calls += 1
        raise ArchiveUnavailable("archive is unreachable")

    async def search(self, query, *, project_path, kind=None, limit=20):  # type: ignore[no-untyped-def]
        self.calls += 1
        raise ArchiveUnavailable("archive is unreachable")


class FakeOracle:
    def __init__(
        self,
        classification: OracleClassification | None = None,
        judgment: OracleJudgment | None = None,
    ) -> None:
        self.classification = classification or OracleClassification(TaskType.CODE, 0.9, "looks like code")
        self.judgment = judgment or OracleJudgment(80, "reasonable package")
        self.classify_calls = 0
        self.judge_calls = 0

    async def classify(self, raw_request: str, prior: Classification) -> OracleClassification:
        self.classify_calls += 1
        return self.classification

    async def judge(self, package: ContextPackage, criteria: list[str]) -> OracleJudgment:
        self.judge_calls += 1
        return self.judgment


class FailingOracle:
    def __init__(self) -> None:
        self.calls = 0

    async def classify(self, raw_request: str, prior: Classification) -> OracleClassification:
        self.calls += 1
        raise OracleUnavailable("connection refused")

    async def judge(self, package: ContextPackage, criteria: list[str]) -> OracleJudgment:
        self.calls += 1
        raise OracleUnavailable("connection refused")


PROJECT_FILES = {
    "pyproject.toml": (
        '[project]\nname = "shop"\ndependencies = ["fastapi>=0.100", "sqlalchemy"]\n\n'
        "[tool.pytest.ini_options]\ntestpaths = [\"tests\"]\n"
    ),
    "CHANGELOG.md": "# Changelog\n\n## 0.1.0\n- First release\n",
    "docs/guide.md": "# Guide\n\nSee the readme for installation steps.\n",
    "shop/__init__.py": "",
    "shop/main.py": "from shop.user_service import create_user\n",
    "shop/user_service.py": "def create_user(name):\n    return {'name': name}\n",
    "shop/payment_gateway.py": "class PaymentGateway:\n    def charge(self, amount):\n        return amount\n",
    "tests/conftest.py": "",
    "tests/test_user_service.py": "def test_create_user():\n    pass\n",
    ".github/workflows/ci.yml": "name: ci\non: [push]\n",
}


def write_tree(root: Path, files: dict[str, str]) -> Path:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A small Python project without a README."""
    return write_tree(tmp_path / "shop", PROJECT_FILES)


@pytest.fixture
def other_project(tmp_path: Path) -> Path:
    return write_tree(tmp_path / "billing", {"billing/__init__.py": "", "billing/invoice.py": ""})


@pytest.fixture
def archive() -> InMemoryArchive:
    return InMemoryArchive()


def make_package(
    paths: tuple[str, ...] = ("shop/auth.py", "shop/session.py"),
    *,
    task_id: str = "task-1",
    task_type: TaskType = TaskType.CODE,
    patterns: tuple[Convention, ...] = (),
    raw_request: str = "Fix the login crash in the auth handler",
) -> ContextPackage:
    return ContextPackage(
        task_id=task_id,
        version=1,
        task_type=task_type,
        raw_request=raw_request,
        must_read=tuple(MustReadEntry(path=p, reason=f'path matches "{p}"') for p in paths),
        patterns=patterns,
        architecture=ArchitectureSummary(),
        history=HistoricalContext(),
        acceptance_criteria=("Code compiles without errors",),
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """A migrated SQLite database swapped in for the module-level session factory."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'forge.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)

    monkeypatch.setattr(db, "async_session_factory", factory)
    monkeypatch.setattr(settings, "retry_base_delay", 0.0)
    monkeypatch.setattr(settings, "oracle_enabled", False)
    yield factory

    event_bus.remove_handler(persist_event_handler)
    await engine.dispose()
