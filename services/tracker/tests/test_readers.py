from __future__ import annotations

from pathlib import Path

import pytest
from tracker.models import FileHandle
from tracker.readers import ExtractionError, ReaderRegistry

pytestmark = pytest.mark.unit


def handle_for(location: Path) -> FileHandle:
    return FileHandle(
        file_id=1,
        user_id="bob",
        path=f"/{location.name}",
        location=location,
        is_file=True,
    )


def test_default_registry_reads_plain_text(tmp_path: Path) -> None:
    location = tmp_path / "notes.md"
    location.write_text("# Budget\nQuarterly budget review", encoding="utf-8")
    registry = ReaderRegistry.default()

    handle = handle_for(location)
    assert registry.supports(handle)
    assert "Quarterly budget review" in registry.read(handle)


def test_registry_rejects_unknown_extensions(tmp_path: Path) -> None:
    location = tmp_path / "holiday.jpg"
    location.write_bytes(b"\xff\xd8\xff")
    registry = ReaderRegistry.default()

    handle = handle_for(location)
    assert not registry.supports(handle)
    with pytest.raises(ExtractionError):
        registry.read(handle)


def test_custom_readers_can_be_registered_without_leading_dot(tmp_path: Path) -> None:
    class UpperReader:
        def read(self, handle: FileHandle) -> str:
            return handle.location.read_text(encoding="utf-8").upper()

    location = tmp_path / "data.LOG"
    location.write_text("disk full", encoding="utf-8")
    registry = ReaderRegistry({"log": UpperReader()})

    assert registry.read(handle_for(location)) == "DISK FULL"


def test_missing_text_file_is_an_extraction_error(tmp_path: Path) -> None:
    registry = ReaderRegistry.default()
    with pytest.raises(ExtractionError):
        registry.read(handle_for(tmp_path / "gone.txt"))


