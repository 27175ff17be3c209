from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

REASON_EDIT = "edit"
REASON_FAVORITE = "favorite"
REASONS = (REASON_EDIT, REASON_FAVORITE)

DOMAIN_USER_PROFILE = "userprofile"

CALLER_ADD_FAVORITE = "addFavorite"
CALLER_REMOVE_FAVORITE = "removeFavorite"

Reason = Literal["edit", "favorite"]
ClientType = Literal["web", "desktop", "android", "ios"]
Trigger = Literal["manual", "scheduled"]


@dataclass(frozen=True)
class FileHandle:
    file_id: int
    user_id: str
    path: str
    location: Path
    is_file: bool
    size: int = 0

    @property
    def extension(self) -> str:
        return self.location.suffix.lower()


class FileEvent(BaseModel):
    path: str | None = None
    user_id: str | None = None
    client: ClientType = "web"
    user_agent: str | None = None


class ChangedFileRecord(BaseModel):
    file_id: int
    user_id: str
    reason: Reason
    changed_at: str


class ProcessedFileRecord(BaseModel):
    file_id: int
    domain: str
    processed_at: str
    keywords: dict[str, int] = Field(default_factory=dict)


class UserProfile(BaseModel):
    user_id: str
    keywords: dict[str, float] = Field(default_factory=dict)
    updated_at: str


class RecomputeRun(BaseModel):
    run_id: int | None = None
    trigger: Trigger
    started_at: str
    finished_at: str
    drained: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    users: int = 0
    interrupted: bool = False


class EditHookRequest(BaseModel):
    path: str | None = None
    user_id: str | None = None
    client: ClientType | None = None


class FavoriteHookRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    file_id: str = Field(..., min_length=1)
    caller: str = Field(..., min_length=1)


class HookResponse(BaseModel):
    handled: bool


class RecomputeHistoryResponse(BaseModel):
    runs: list[RecomputeRun]


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
