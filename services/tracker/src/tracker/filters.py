"""Decide whether a raw file event counts as a recommendation-relevant change."""

from __future__ import annotations

import re
from dataclasses import dataclass

from tracker.models import ClientType

PARTIAL_UPLOAD_SUFFIX = ".part"

REJECT_PARTIAL_UPLOAD = "partial-upload"
REJECT_NO_SESSION = "no-session"
REJECT_NON_INTERACTIVE_CLIENT = "non-interactive-client"
REJECT_NO_PATH = "no-path"

NON_INTERACTIVE_CLIENTS: frozenset[str] = frozenset({"desktop", "android", "ios"})

USER_AGENT_PATTERNS: tuple[tuple[ClientType, re.Pattern[str]], ...] = (
    ("desktop", re.compile(r"^Mozilla/5\.0 \([A-Za-z ]+\) (mirall|csyncoC)/.*$")),
    ("android", re.compile(r"^Mozilla/5\.0 \(Android\) (ownCloud|Nextcloud)-android.*$")),
    ("ios", re.compile(r"^Mozilla/5\.0 \(iOS\) (ownCloud|Nextcloud)-iOS.*$")),
)


@dataclass(frozen=True)
class FilterDecision:
    accepted: bool
    reason: str | None = None

    @classmethod
    def accept(cls) -> FilterDecision:
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> FilterDecision:
        return cls(accepted=False, reason=reason)


def classify_user_agent(user_agent: str | None) -> ClientType:
    if not user_agent:
        return "web"
    for client, pattern in USER_AGENT_PATTERNS:
        if pattern.match(user_agent.strip()):
            return client
    return "web"


def evaluate_event(path: str | None, user_id: str | None, client: str) -> FilterDecision:
    """Apply the edit-event rules in order; the first matching rule wins.

    Order: partial upload, missing session, sync client, missing path.
    """
    if path is not None and path.endswith(PARTIAL_UPLOAD_SUFFIX):
        return FilterDecision.reject(REJECT_PARTIAL_UPLOAD)
    if not user_id:
        return FilterDecision.reject(REJECT_NO_SESSION)
    if client in NON_INTERACTIVE_CLIENTS:
        return FilterDecision.reject(REJECT_NON_INTERACTIVE_CLIENT)
    if path is None or path in ("", "/"):
        return FilterDecision.reject(REJECT_NO_PATH)
    return FilterDecision.accept()
