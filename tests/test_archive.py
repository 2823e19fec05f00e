import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from forge.archive import ArchiveKind, ArchiveRecord, SqlArchive, normalize_project_path
from forge.errors import ArchiveUnavailable


def decision(project, title) -> ArchiveRecord:
    return ArchiveRecord(
        kind=ArchiveKind.DECISION.value,
        payload={"title": title, "rationale": "agreed in review"},
        project_path=str(project),
        tags=["decision"],
    )


@pytest.mark.asyncio
async def test_store_assigns_id_and_search_finds_terms(session_factory, project) -> None:
    archive = SqlArchive(session_factory)
    record = decision(project, "Use argon2 for password hashing")

    record_id = await archive.store(record)

    assert record.id == record_id
    [found] = await archive.search("password", project_path=str(project))
    assert found.id == record_id
    assert found.payload["title"] == "Use argon2 for password hashing"
    assert found.project_path == normalize_project_path(str(project))
    assert found.timestamp.tzinfo is not None
    assert await archive.search("invoice", project_path=str(project)) == []


@pytest.mark.asyncio
async def test_search_is_scoped_to_project_and_kind(session_factory, project, other_project) -> None:
    archive = SqlArchive(session_factory)
    await archive.store(decision(project, "Password reset via email"))
    await archive.store(decision(other_project, "Password reset via SMS"))
    await archive.store(
        ArchiveRecord(
            kind=ArchiveKind.PATTERN_OUTCOME.value,
            payload={"pattern": "file_naming", "outcome": "success"},
            project_path=str(project),
        )
    )

    found = await archive.search("", project_path=str(project), kind=ArchiveKind.DECISION.value)
    assert [r.payload["title"] for r in found] == ["Password reset via email"]


@pytest.mark.asyncio
async def test_underscore_in_query_matches_literally(session_factory, project) -> None:
    archive = SqlArchive(session_factory)
    await archive.store(decision(project, "Split user_service into modules"))
    await archive.store(decision(project, "Rename userXservice helper"))

    found = await archive.search("user_service", project_path=str(project))
    assert [r.payload["title"] for r in found] == ["Split user_service into modules"]


@pytest.mark.asyncio
async def test_project_path_is_required(session_factory) -> None:
    with pytest.raises(ValueError):
        await SqlArchive(session_factory).search("password", project_path="  ")


@pytest.mark.asyncio
async def test_missing_schema_is_reported_as_unavailable(tmp_path, project) -> None:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    archive = SqlArchive(async_sessionmaker(engine, expire_on_commit=False))
    try:
        with pytest.raises(ArchiveUnavailable, match="forge init-db"):
            await archive.search("password", project_path=str(project))
    finally:
        await engine.dispose()
