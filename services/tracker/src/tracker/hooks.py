"""Entry points invoked inline with user file operations.

Both hooks are best effort: every failure is logged and reported as ``False``
so the triggering request always proceeds.
"""

from __future__ import annotations

import logging

from tracker.filters import evaluate_event
from tracker.models import (
    CALLER_ADD_FAVORITE,
    CALLER_REMOVE_FAVORITE,
    DOMAIN_USER_PROFILE,
    REASON_EDIT,
    REASON_FAVORITE,
    FileEvent,
)
from tracker.nodes import NodeNotFoundError, NodeResolver
from tracker.repository import LedgerRepository, StorageError

LOGGER = logging.getLogger("assistant.tracker.hooks")


class HookDispatcher:
    def __init__(self, repository: LedgerRepository, resolver: NodeResolver) -> None:
        self.repository = repository
        self.resolver = resolver

    def on_edit(self, event: FileEvent) -> bool:
        LOGGER.debug("edit hook start: path=%s user=%s", event.path, event.user_id)
        decision = evaluate_event(event.path, event.user_id, event.client)
        if not decision.accepted:
            LOGGER.info(
                "ignoring edit: reason=%s path=%s user=%s client=%s user_agent=%r",
                decision.reason,
                event.path,
                event.user_id,
                event.client,
                event.user_agent,
            )
            return False

        # evaluate_event guarantees both are set once accepted
        path = str(event.path)
        user_id = str(event.user_id)
        try:
            node = self.resolver.resolve(path, user_id)
            if not node.is_file:
                LOGGER.info("ignoring edit: %s is not a file", node.path)
                return False
            self.repository.upsert_changed(node.file_id, user_id, REASON_EDIT)
            self.repository.delete_processed(node.file_id, DOMAIN_USER_PROFILE)
        except NodeNotFoundError as exc:
            LOGGER.info("ignoring edit: %s", exc)
            return False
        except StorageError as exc:
            LOGGER.error("edit hook failed for path=%s user=%s: %s", path, user_id, exc)
            return False
        except Exception:
            LOGGER.exception("edit hook crashed for path=%s user=%s", path, user_id)
            return False

        LOGGER.debug("edit hook end: file_id=%s", node.file_id)
        return True

    def on_favorite(self, user_id: str, file_id: str, caller: str) -> bool:
        if caller not in (CALLER_ADD_FAVORITE, CALLER_REMOVE_FAVORITE):
            LOGGER.info("ignoring favorite hook from unknown caller %r", caller)
            return False

        try:
            node = self.resolver.resolve_id(file_id, user_id)
            if caller == CALLER_ADD_FAVORITE:
                self.repository.upsert_changed(node.file_id, user_id, REASON_FAVORITE)
            else:
                self.repository.delete_changed(node.file_id, user_id, REASON_FAVORITE)
        except NodeNotFoundError:
            LOGGER.info("%s for %s not available. Skipping", file_id, user_id)
            return False
        except StorageError as exc:
            LOGGER.error("favorite hook failed for file=%s user=%s: %s", file_id, user_id, exc)
            return False
        except Exception:
            LOGGER.exception("favorite hook crashed for file=%s user=%s", file_id, user_id)
            return False
        return True
