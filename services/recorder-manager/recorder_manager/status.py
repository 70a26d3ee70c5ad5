import logging
from typing import Any, Dict, Optional

from recorder_manager.schemas import (
    RecordingStatus,
    StatusRecord,
    is_progress,
    is_terminal,
)

logger = logging.getLogger("recorder_manager.status")


def should_apply(
    current_status: RecordingStatus,
    current_attempt: int,
    new_status: RecordingStatus,
    attempt: Optional[int] = None,
) -> bool:
    """Decide whether a status write may overwrite the current one.

    Writes tagged with an older attempt are always stale. A terminal status
    can only be replaced by a strictly newer attempt, by CANCELLED (unless
    the recording already COMPLETED), or by progress from a newer attempt.
    """
    if attempt is not None and attempt < current_attempt:
        return False

    if not is_terminal(current_status):
        return True

    newer = attempt is not None and attempt > current_attempt

    if is_progress(new_status) and not newer:
        return False
    # COMPLETED stays put unless a newer attempt reports in
    if current_status == RecordingStatus.COMPLETED and is_progress(new_status) and not newer:
        return False

    if is_progress(new_status):
        return True
    if new_status == RecordingStatus.CANCELLED and current_status != RecordingStatus.COMPLETED:
        return True
    return newer


class StatusSynchronizer:
    """Applies status writes to a recording with attempt-aware conflict resolution.

    Called concurrently by the log watcher, the session's finalization step
    and the kill listener. The read-modify-write below is not atomic: two
    writers can read the same state and the later commit wins. Ordering
    between attempts is restored by the attempt check, not by a lock.
    """

    def __init__(self, store):
        self.store = store

    async def apply_status(
        self,
        recording_id: str,
        new_status: RecordingStatus,
        metadata: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        """
        Persist ``new_status`` for a recording if the conflict policy allows it.

        Args:
            recording_id: Recording to update.
            new_status: Status to write.
            metadata: Extra keys merged into the stored error metadata.
            attempt: Attempt number that produced this status, if known.

        Returns:
            True if a write occurred, False if it was rejected or failed.
        """
        try:
            current = await self.store.get_status(recording_id)
            if current is None:
                logger.warning(f"[Status] Recording {recording_id} not found, ignoring {new_status.value}")
                return False

            raw_status, raw_metadata = current
            try:
                current_status = RecordingStatus(raw_status)
            except ValueError:
                logger.warning(f"[Status] Unknown status '{raw_status}' on recording {recording_id}, treating as PENDING")
                current_status = RecordingStatus.PENDING
            record = StatusRecord.from_metadata(raw_metadata)

            if not should_apply(current_status, record.attempt, new_status, attempt):
                logger.info(
                    f"[Status] Rejected {current_status.value} -> {new_status.value} for recording "
                    f"{recording_id} (attempt={attempt}, current attempt={record.attempt})"
                )
                return False

            error_metadata = None
            if metadata is not None or attempt is not None:
                record.details.update(metadata or {})
                record.attempt = attempt if attempt is not None else record.attempt
                error_metadata = record.to_metadata()

            written = await self.store.update(
                recording_id,
                status=new_status.value,
                error_metadata=error_metadata,
            )
        except Exception as e:
            logger.error(f"[Status] Failed to write {new_status.value} for recording {recording_id}: {e}", exc_info=True)
            return False

        if not written:
            logger.warning(f"[Status] Recording {recording_id} vanished before {new_status.value} was written")
            return False
        logger.info(f"[Status] Recording {recording_id} status updated from '{current_status.value}' to '{new_status.value}'")
        return True

    async def get_status(self, recording_id: str) -> Optional[RecordingStatus]:
        """Current persisted status, or None if the recording is missing or unreadable."""
        try:
            current = await self.store.get_status(recording_id)
        except Exception as e:
            logger.error(f"[Status] Failed to read status for recording {recording_id}: {e}", exc_info=True)
            return None
        if current is None:
            return None
        try:
            return RecordingStatus(current[0])
        except ValueError:
            return None

    async def set_file_name(self, recording_id: str, file_name: str) -> bool:
        try:
            return await self.store.update(recording_id, file_name=file_name)
        except Exception as e:
            logger.error(f"[Status] Failed to store file name for recording {recording_id}: {e}", exc_info=True)
            return False
