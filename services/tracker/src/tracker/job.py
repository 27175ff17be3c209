from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field

from common.utils import now_utc_iso

from tracker.models import DOMAIN_USER_PROFILE, ChangedFileRecord, RecomputeRun, Trigger
from tracker.nodes import NodeNotFoundError, NodeResolver
from tracker.profiles import ProfileBuilder, extract_keywords
from tracker.readers import ExtractionError, ReaderRegistry
from tracker.repository import LedgerRepository, StorageError

LOGGER = logging.getLogger("assistant.tracker.job")


@dataclass
class _RunCounters:
    drained: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    interrupted: bool = False
    documents: dict[str, list[dict[str, int]]] = field(default_factory=lambda: defaultdict(list))


class RecomputationJob:
    def __init__(
        self,
        repository: LedgerRepository,
        resolver: NodeResolver,
        readers: ReaderRegistry,
        profile_builder: ProfileBuilder,
        *,
        domain: str = DOMAIN_USER_PROFILE,
    ) -> None:
        self.repository = repository
        self.resolver = resolver
        self.readers = readers
        self.profile_builder = profile_builder
        self.domain = domain
        self._run_lock = threading.Lock()

    def run(
        self,
        *,
        trigger: Trigger = "manual",
        stop_event: threading.Event | None = None,
    ) -> RecomputeRun:
        """Drain the changed-files ledger once.

        Each record is handled and cleared on its own; a record that fails
        stays in the ledger for the next run. Setting ``stop_event`` ends the
        run between records.
        """
        with self._run_lock:
            started_at = now_utc_iso()
            counters = _RunCounters()
            snapshot = self.repository.list_changed()
            by_user: dict[str, list[ChangedFileRecord]] = defaultdict(list)
            for record in snapshot:
                by_user[record.user_id].append(record)

            for records in by_user.values():
                for record in records:
                    if stop_event is not None and stop_event.is_set():
                        counters.interrupted = True
                        break
                    counters.drained += 1
                    self._handle_record(record, counters)
                if counters.interrupted:
                    break

            for user_id, documents in counters.documents.items():
                try:
                    self.profile_builder.rebuild(user_id, documents)
                except StorageError as exc:
                    LOGGER.error("profile rebuild failed for user=%s: %s", user_id, exc)

            run = RecomputeRun(
                trigger=trigger,
                started_at=started_at,
                finished_at=now_utc_iso(),
                drained=counters.drained,
                processed=counters.processed,
                skipped=counters.skipped,
                failed=counters.failed,
                users=len(counters.documents),
                interrupted=counters.interrupted,
            )
            stored = self.repository.record_recompute_run(run)
            LOGGER.info(json.dumps({"event": "recompute_complete", **stored.model_dump()}))
            return stored

    def _handle_record(self, record: ChangedFileRecord, counters: _RunCounters) -> None:
        try:
            node = self.resolver.resolve_id(record.file_id, record.user_id)
        except NodeNotFoundError:
            LOGGER.info(
                "dropping stale change: file=%s user=%s reason=%s",
                record.file_id,
                record.user_id,
                record.reason,
            )
            self._clear(record)
            counters.skipped += 1
            return
        except Exception:
            LOGGER.exception("resolving file=%s user=%s crashed", record.file_id, record.user_id)
            counters.failed += 1
            return

        try:
            cached = self.repository.get_processed(node.file_id, self.domain)
            if cached is not None:
                keywords = cached.keywords
                cleared = self._clear(record)
            elif not node.is_file or not self.readers.supports(node):
                LOGGER.info("no content reader for %s, clearing change", node.path)
                self._clear(record)
                counters.skipped += 1
                return
            else:
                read_started_at = now_utc_iso()
                keywords = extract_keywords(self.readers.read(node))
                self.repository.complete_changed(
                    record, self.domain, keywords, read_started_at=read_started_at
                )
                cleared = True
        except ExtractionError as exc:
            LOGGER.warning("extraction failed, keeping change for retry: %s", exc)
            counters.failed += 1
            return
        except StorageError as exc:
            LOGGER.error("ledger error on file=%s user=%s: %s", record.file_id, record.user_id, exc)
            counters.failed += 1
            return
        except Exception:
            LOGGER.exception(
                "processing file=%s user=%s crashed, keeping change for retry",
                record.file_id,
                record.user_id,
            )
            counters.failed += 1
            return

        counters.documents[record.user_id].append(keywords)
        if cleared:
            counters.processed += 1
        else:
            counters.failed += 1

    def _clear(self, record: ChangedFileRecord) -> bool:
        try:
            self.repository.clear_changed(record)
        except StorageError as exc:
            LOGGER.error("could not clear change for file=%s: %s", record.file_id, exc)
            return False
        return True
