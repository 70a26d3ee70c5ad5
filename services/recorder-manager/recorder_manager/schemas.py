import json
import logging
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from recorder_manager.config import DEFAULT_MAX_DURATION_MINS

logger = logging.getLogger("recorder_manager.schemas")


class RecordingStatus(str, Enum):
    PENDING = "PENDING"
    ASKING_TO_JOIN = "ASKING_TO_JOIN"
    JOINED = "JOINED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({
    RecordingStatus.COMPLETED,
    RecordingStatus.FAILED,
    RecordingStatus.TIMEOUT,
    RecordingStatus.CANCELLED,
})

# Non-terminal statuses reported by the worker's own log output
PROGRESS_STATUSES = frozenset({
    RecordingStatus.ASKING_TO_JOIN,
    RecordingStatus.JOINED,
})


def is_terminal(status: RecordingStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_progress(status: RecordingStatus) -> bool:
    return status in PROGRESS_STATUSES


# --- Queue payloads ---

class _QueueMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JoinJob(_QueueMessage):
    user_id: str = Field(..., alias="userId")
    user_name: str = Field("Shadow", alias="userName")
    link: str
    recording_id: str = Field(..., alias="recordingId")
    title: Optional[str] = None
    max_duration_mins: Optional[int] = Field(DEFAULT_MAX_DURATION_MINS, alias="maxDurationMins")

    @field_validator("max_duration_mins", mode="before")
    @classmethod
    def default_duration(cls, value):
        # Producers send null (or nothing) for "use the default"
        if value is None or value == "":
            return DEFAULT_MAX_DURATION_MINS
        return value


class KillJob(_QueueMessage):
    recording_id: str = Field(..., alias="recordingId")
    user_id: str = Field(..., alias="userId")


class TranscriptionJob(_QueueMessage):
    recording_id: str = Field(..., alias="recordingId")
    file_name: str = Field(..., alias="fileName")


# --- Status metadata ---

class StatusRecord(BaseModel):
    """Typed view of a recording's ``errorMetadata`` column.

    ``attempt`` identifies the retry that produced the current status; every
    other key lives in ``details`` and is flattened back out when stored.
    """

    attempt: int = 1
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_metadata(cls, raw: Any) -> "StatusRecord":
        if raw is None:
            return cls()
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError:
                logger.warning(f"Unparseable errorMetadata {raw!r}, assuming attempt 1")
                return cls()
        if not isinstance(raw, dict):
            return cls()

        details = dict(raw)
        attempt_raw = details.pop("attempt", None)
        try:
            attempt = int(attempt_raw) if attempt_raw is not None else 1
        except (TypeError, ValueError):
            attempt = 1
        return cls(attempt=attempt, details=details)

    def to_metadata(self) -> Dict[str, Any]:
        return {**self.details, "attempt": self.attempt}
