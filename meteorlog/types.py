from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TypedDict

from .errors import PerSessionSyncError

SYNC_UNSYNCED = "unsynced"
SYNC_MODIFIED = "modified"
SYNC_SYNCED = "synced"
SYNC_STATUSES = (SYNC_UNSYNCED, SYNC_MODIFIED, SYNC_SYNCED)
PENDING_SYNC_STATUSES = (SYNC_UNSYNCED, SYNC_MODIFIED)

PRIVACY_FULL = "full"
PRIVACY_OBFUSCATED = "obfuscated"
PRIVACY_HIDDEN = "hidden"
LOCATION_PRIVACY_LEVELS = (PRIVACY_FULL, PRIVACY_OBFUSCATED, PRIVACY_HIDDEN)

PRACTICE_OBSERVATION_FIELDS = (
    "actual_duration_ms",
    "actual_intensity",
    "duration_accuracy",
    "intensity_accuracy",
    "overall_accuracy",
)


@dataclass
class Location:
    latitude: float | None
    longitude: float | None
    accuracy: float | None = None

    @classmethod
    def from_value(cls, value: Any) -> Location | None:
        if value is None:
            return None
        if isinstance(value, Location):
            return value
        if isinstance(value, dict):
            return cls(
                latitude=_optional_float(value.get("latitude")),
                longitude=_optional_float(value.get("longitude")),
                accuracy=_optional_float(value.get("accuracy")),
            )
        raise ValueError(f"invalid location: {value!r}")


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


@dataclass
class Session:
    id: int
    remote_id: str | None
    device_id: str
    user_id: str | None
    start_time: str
    end_time: str | None
    duration_ms: int
    observation_count: int
    notes: str
    location: Location | None
    location_privacy: str
    is_practice: bool
    practice_total_observations: int | None
    practice_avg_accuracy: float | None
    sync_status: str
    last_synced_at: str | None
    revision: int
    created_at: str
    updated_at: str


@dataclass
class Observation:
    id: int
    remote_id: str | None
    session_id: int
    timestamp: str
    duration_ms: int
    intensity: int
    location: Location | None
    actual_duration_ms: int | None
    actual_intensity: int | None
    duration_accuracy: float | None
    intensity_accuracy: float | None
    overall_accuracy: float | None
    sync_status: str
    last_synced_at: str | None
    revision: int
    created_at: str

    @property
    def is_practice(self) -> bool:
        return self.actual_duration_ms is not None


class LocationPayload(TypedDict):
    latitude: float | None
    longitude: float | None
    accuracy: float | None


class ObservationPayload(TypedDict):
    local_id: int
    remote_id: str | None
    timestamp: str
    duration_ms: int
    intensity: int
    location: LocationPayload | None
    actual_duration_ms: int | None
    actual_intensity: int | None
    duration_accuracy: float | None
    intensity_accuracy: float | None
    overall_accuracy: float | None


class SessionPayload(TypedDict):
    local_session_id: int
    remote_session_id: str | None
    device_id: str
    start_time: str
    end_time: str | None
    duration_ms: int
    observation_count: int
    notes: str
    location: LocationPayload | None
    location_privacy: str
    is_practice: bool
    practice_total_observations: int | None
    practice_avg_accuracy: float | None
    observations: list[ObservationPayload]


@dataclass
class UpsertResult:
    remote_session_id: str
    observation_ids: dict[int, str] = field(default_factory=dict)
    is_new: bool = False


@dataclass
class SyncBatchResult:
    synced: int = 0
    failed: int = 0
    errors: list[PerSessionSyncError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "synced": self.synced,
            "failed": self.failed,
            "errors": [err.to_dict() for err in self.errors],
        }


@dataclass
class DownloadResult:
    downloaded: int = 0
    skipped: int = 0
    errors: list[PerSessionSyncError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "downloaded": self.downloaded,
            "skipped": self.skipped,
            "errors": [err.to_dict() for err in self.errors],
        }
