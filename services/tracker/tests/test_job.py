from __future__ import annotations

import threading
from pathlib import Path

import pytest
from tracker.hooks import HookDispatcher
from tracker.job import RecomputationJob
from tracker.models import FileEvent, FileHandle
from tracker.nodes import FilesystemNodeResolver
from tracker.profiles import KeywordProfileBuilder
from tracker.readers import ExtractionError, ReaderRegistry
from tracker.repository import LedgerRepository

pytestmark = pytest.mark.unit


class FlakyReader:
    def __init__(self) -> None:
        self.fail = True

    def read(self, handle: FileHandle) -> str:
        if self.fail:
            raise ExtractionError(handle, "parser crashed")
        return "retry succeeded"


@pytest.fixture
def repository(tmp_path: Path):
    repo = LedgerRepository(str(tmp_path / "ledger.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    docs = tmp_path / "data" / "bob" / "files" / "Docs"
    docs.mkdir(parents=True)
    (docs / "report.txt").write_text("Quarterly budget report budget", encoding="utf-8")
    (docs / "holiday.jpg").write_bytes(b"\xff\xd8\xff")
    return tmp_path / "data"


@pytest.fixture
def resolver(data_root: Path) -> FilesystemNodeResolver:
    return FilesystemNodeResolver(data_root)


def build_job(
    repository: LedgerRepository,
    resolver: FilesystemNodeResolver,
    readers: ReaderRegistry | None = None,
) -> RecomputationJob:
    return RecomputationJob(
        repository,
        resolver,
        readers or ReaderRegistry.default(),
        KeywordProfileBuilder(repository),
    )


def test_run_extracts_marks_processed_and_clears_ledger(
    repository: LedgerRepository, resolver: FilesystemNodeResolver
) -> None:
    node = resolver.resolve("/Docs/report.txt", "bob")
    repository.upsert_changed(node.file_id, "bob", "edit")

    run = build_job(repository, resolver).run()

    assert (run.drained, run.processed, run.failed, run.users) == (1, 1, 0, 1)
    assert run.run_id is not None
    assert repository.list_changed() == []
    processed = repository.get_processed(node.file_id, "userprofile")
    assert processed is not None
    assert processed.keywords["budget"] == 2
    profile = repository.get_user_profile("bob")
    assert profile is not None
    assert "budget" in profile.keywords


def test_run_reuses_cached_extraction(
    repository: LedgerRepository, resolver: FilesystemNodeResolver
) -> None:
    node = resolver.resolve("/Docs/report.txt", "bob")
    repository.insert_processed(node.file_id, "userprofile", {"cached": 4})
    repository.upsert_changed(node.file_id, "bob", "favorite")

    build_job(repository, resolver, ReaderRegistry()).run()

    profile = repository.get_user_profile("bob")
    assert profile is not None
    assert profile.keywords == {"cached": 1.0}
    assert repository.list_changed() == []


def test_extraction_failure_keeps_record_for_next_run(
    repository: LedgerRepository, resolver: FilesystemNodeResolver
) -> None:
    node = resolver.resolve("/Docs/report.txt", "bob")
    repository.upsert_changed(node.file_id, "bob", "edit")
    reader = FlakyReader()
    job = build_job(repository, resolver, ReaderRegistry({".txt": reader}))

    first = job.run()
    assert (first.processed, first.failed) == (0, 1)
    assert len(repository.list_changed()) == 1
    assert repository.get_processed(node.file_id, "userprofile") is None

    reader.fail = False
    second = job.run(trigger="scheduled")
    assert (second.processed, second.failed) == (1, 0)
    assert second.trigger == "scheduled"
    assert repository.list_changed() == []


def test_stale_and_unreadable_records_are_cleared_as_skipped(
    repository: LedgerRepository, resolver: FilesystemNodeResolver
) -> None:
    image = resolver.resolve("/Docs/holiday.jpg", "bob")
    repository.upsert_changed(image.file_id, "bob", "favorite")
    repository.upsert_changed(987654321, "bob", "edit")

    run = build_job(repository, resolver).run()

    assert (run.drained, run.skipped, run.processed) == (2, 2, 0)
    assert repository.list_changed() == []


def test_record_reinserted_during_drain_survives(
    repository: LedgerRepository, resolver: FilesystemNodeResolver
) -> None:
    node = resolver.resolve("/Docs/report.txt", "bob")
    repository.upsert_changed(node.file_id, "bob", "edit")

    class EditingReader:
        def read(self, handle: FileHandle) -> str:
            repository.upsert_changed(handle.file_id, "bob", "edit")
            return handle.location.read_text(encoding="utf-8")

    run = build_job(repository, resolver, ReaderRegistry({".txt": EditingReader()})).run()

    assert run.processed == 1
    assert len(repository.list_changed()) == 1


def test_stop_event_ends_run_before_touching_ledger(
    repository: LedgerRepository, resolver: FilesystemNodeResolver
) -> None:
    node = resolver.resolve("/Docs/report.txt", "bob")
    repository.upsert_changed(node.file_id, "bob", "edit")
    stop_event = threading.Event()
    stop_event.set()

    run = build_job(repository, resolver).run(stop_event=stop_event)

    assert run.interrupted is True
    assert run.drained == 0
    assert len(repository.list_changed()) == 1
    assert repository.list_recompute_runs(limit=5)[0].interrupted is True


def test_edit_during_extraction_does_not_cache_stale_keywords(
    repository: LedgerRepository, resolver: FilesystemNodeResolver
) -> None:
    node = resolver.resolve("/Docs/report.txt", "bob")
    repository.upsert_changed(node.file_id, "bob", "edit")
    dispatcher = HookDispatcher(repository, resolver)

    class EditDuringReadReader:
        def __init__(self) -> None:
            self.edited = False

        def read(self, handle: FileHandle) -> str:
            text = handle.location.read_text(encoding="utf-8")
            if not self.edited:
                self.edited = True
                handle.location.write_text("newword newword", encoding="utf-8")
                dispatcher.on_edit(FileEvent(path=handle.path, user_id=handle.user_id))
            return text

    job = build_job(repository, resolver, ReaderRegistry({".txt": EditDuringReadReader()}))

    job.run()
    assert repository.get_processed(node.file_id, "userprofile") is None
    assert len(repository.list_changed()) == 1

    job.run()
    cached = repository.get_processed(node.file_id, "userprofile")
    assert cached is not None
    assert cached.keywords == {"newword": 2}
    assert repository.list_changed() == []


def test_unexpected_reader_error_fails_one_record_not_the_run(
    repository: LedgerRepository, resolver: FilesystemNodeResolver, data_root: Path
) -> None:
    (data_root / "bob" / "files" / "Docs" / "a.txt").write_text("garbled", encoding="utf-8")
    broken = resolver.resolve("/Docs/a.txt", "bob")
    healthy = resolver.resolve("/Docs/report.txt", "bob")
    repository.upsert_changed(broken.file_id, "bob", "edit")
    repository.upsert_changed(healthy.file_id, "bob", "edit")

    class DecodingReader:
        def read(self, handle: FileHandle) -> str:
            if handle.path.endswith("/a.txt"):
                raise UnicodeError("bad bytes")
            return handle.location.read_text(encoding="utf-8")

    run = build_job(repository, resolver, ReaderRegistry({".txt": DecodingReader()})).run()

    assert (run.drained, run.processed, run.failed) == (2, 1, 1)
    assert run.run_id is not None
    assert [record.file_id for record in repository.list_changed()] == [broken.file_id]
