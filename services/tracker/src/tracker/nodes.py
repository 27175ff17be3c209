from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

from tracker.models import FileHandle

LOGGER = logging.getLogger("assistant.tracker.nodes")


class NodeNotFoundError(LookupError):
    def __init__(self, user_id: str, target: str | int) -> None:
        super().__init__(f"No node {target!r} for user {user_id!r}")
        self.user_id = user_id
        self.target = target


class NodeResolver(Protocol):
    def resolve(self, path: str, user_id: str) -> FileHandle: ...

    def resolve_id(self, file_id: int | str, user_id: str) -> FileHandle: ...


class FilesystemNodeResolver:
    """Resolves user-relative paths and inode ids under ``<data_root>/<user>/files``."""

    def __init__(self, data_root: str | Path) -> None:
        self.data_root = Path(data_root)

    def user_folder(self, user_id: str) -> Path:
        return self.data_root / user_id / "files"

    def resolve(self, path: str, user_id: str) -> FileHandle:
        folder = self.user_folder(user_id)
        relative = path.strip().lstrip("/")
        candidate = (folder / relative).resolve()
        if not self._is_within(candidate, folder):
            raise NodeNotFoundError(user_id, path)
        try:
            stat_result = candidate.stat()
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise NodeNotFoundError(user_id, path) from exc
        return self._to_handle(candidate, folder, user_id, stat_result)

    def resolve_id(self, file_id: int | str, user_id: str) -> FileHandle:
        """Find a node by inode number.

        There is no inode index, so this walks the user's whole folder and
        costs O(files) per call. Favorite hooks and every drained ledger record
        pay it once. Inject a resolver backed by an id index for large trees.
        """
        try:
            inode = int(file_id)
        except (TypeError, ValueError) as exc:
            raise NodeNotFoundError(user_id, file_id) from exc

        folder = self.user_folder(user_id)
        if not folder.is_dir():
            raise NodeNotFoundError(user_id, file_id)
        for current_dir, dir_names, file_names in os.walk(folder):
            for name in [*file_names, *dir_names]:
                candidate = Path(current_dir) / name
                try:
                    stat_result = candidate.stat()
                except FileNotFoundError:
                    continue
                if stat_result.st_ino == inode:
                    return self._to_handle(candidate, folder, user_id, stat_result)
        raise NodeNotFoundError(user_id, file_id)

    def _to_handle(
        self,
        location: Path,
        folder: Path,
        user_id: str,
        stat_result: os.stat_result,
    ) -> FileHandle:
        relative = location.resolve().relative_to(folder.resolve())
        return FileHandle(
            file_id=stat_result.st_ino,
            user_id=user_id,
            path="/" + relative.as_posix() if str(relative) != "." else "/",
            location=location,
            is_file=location.is_file(),
            size=stat_result.st_size,
        )

    @staticmethod
    def _is_within(candidate: Path, folder: Path) -> bool:
        try:
            candidate.relative_to(folder.resolve())
        except ValueError:
            return False
        return True
