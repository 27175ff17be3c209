from __future__ import annotations

import logging
from typing import Protocol

from tracker.models import FileHandle

LOGGER = logging.getLogger("assistant.tracker.readers")

PLAIN_TEXT_EXTENSIONS = (".txt", ".md", ".markdown", ".csv", ".json", ".html", ".htm", ".rst")
PDF_EXTENSIONS = (".pdf",)


class ExtractionError(Exception):
    def __init__(self, handle: FileHandle, message: str) -> None:
        super().__init__(f"{handle.path}: {message}")
        self.handle = handle


class ContentReader(Protocol):
    def read(self, handle: FileHandle) -> str: ...


class PlainTextReader:
    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding

    def read(self, handle: FileHandle) -> str:
        try:
            return handle.location.read_text(encoding=self.encoding, errors="replace")
        except OSError as exc:
            raise ExtractionError(handle, str(exc)) from exc


class PdfReader:
    def read(self, handle: FileHandle) -> str:
        try:
            from pypdf import PdfReader as PypdfReader
            from pypdf.errors import PyPdfError
        except ImportError as exc:
            LOGGER.warning("pypdf is not installed, cannot read %s", handle.path)
            raise ExtractionError(handle, "PDF support requires the 'pdf' extra (pypdf)") from exc

        try:
            reader = PypdfReader(str(handle.location))
            pages = [(page.extract_text() or "").strip() for page in reader.pages]
        except (OSError, ValueError, PyPdfError) as exc:
            raise ExtractionError(handle, f"PDF text extraction failed: {exc}") from exc
        return "\n\n".join(page for page in pages if page)


class ReaderRegistry:
    """Picks a content reader by file extension."""

    def __init__(self, readers: dict[str, ContentReader] | None = None) -> None:
        self._readers: dict[str, ContentReader] = {}
        for extension, reader in (readers or {}).items():
            self.register(extension, reader)

    @classmethod
    def default(cls) -> ReaderRegistry:
        registry = cls()
        text_reader = PlainTextReader()
        for extension in PLAIN_TEXT_EXTENSIONS:
            registry.register(extension, text_reader)
        pdf_reader = PdfReader()
        for extension in PDF_EXTENSIONS:
            registry.register(extension, pdf_reader)
        return registry

    def register(self, extension: str, reader: ContentReader) -> None:
        normalized = extension.lower()
        if not normalized.startswith("."):
            normalized = f".{normalized}"
        self._readers[normalized] = reader

    def supports(self, handle: FileHandle) -> bool:
        return handle.extension in self._readers

    def read(self, handle: FileHandle) -> str:
        reader = self._readers.get(handle.extension)
        if reader is None:
            raise ExtractionError(handle, f"no content reader for '{handle.extension or '<none>'}'")
        return reader.read(handle)
