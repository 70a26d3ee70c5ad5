"""Drives one recording through its attempts.

Each attempt runs: cleanup, cancellation check, container start, a second
cancellation check, log watching alongside the container's exit, outcome
classification, then either a retry after a fixed backoff or finalization.
"""
import asyncio
import logging
from typing import NamedTuple, Optional

from aiodocker.containers import DockerContainer
from aiodocker.exceptions import DockerError

from recorder_manager.config import MAX_RETRIES, RETRY_BACKOFF_SECONDS, TRANSCRIPTION_QUEUE
from recorder_manager.errors import RecorderError
from recorder_manager.log_watcher import LogEvent, LogStateWatcher
from recorder_manager.orchestrator_utils import ContainerManager
from recorder_manager.queues import RedisQueue
from recorder_manager.schemas import JoinJob, RecordingStatus, TranscriptionJob
from recorder_manager.status import StatusSynchronizer

logger = logging.getLogger("recorder_manager.session")

_PROGRESS_FOR_EVENT = {
    LogEvent.ASKING_TO_JOIN: RecordingStatus.ASKING_TO_JOIN,
    LogEvent.JOINED: RecordingStatus.JOINED,
}


class AttemptResult(NamedTuple):
    status: Optional[RecordingStatus]
    retryable: bool = False
    cancelled: bool = False
    written: bool = False
    error: Optional[str] = None


class SessionOutcome(NamedTuple):
    status: RecordingStatus
    attempts: int
    cancelled: bool = False


def recording_file_name(recording_id: str) -> str:
    return f"recording-{recording_id}.webm"


class RecordingSession:
    def __init__(
        self,
        job: JoinJob,
        containers: ContainerManager,
        status: StatusSynchronizer,
        queue: RedisQueue,
        max_retries: int = MAX_RETRIES,
        retry_backoff: float = RETRY_BACKOFF_SECONDS,
        watcher_factory=LogStateWatcher,
        sleep=asyncio.sleep,
    ):
        self.job = job
        self.containers = containers
        self.status = status
        self.queue = queue
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.watcher_factory = watcher_factory
        self._sleep = sleep

        # One output file per job so every attempt converges on the same artifact
        self.file_name = recording_file_name(job.recording_id)
        self._file_name_saved = False
        self.log_prefix = f"[Session {job.recording_id}]"

    async def run(self) -> SessionOutcome:
        attempt = 1
        while True:
            logger.info(f"{self.log_prefix} Attempt {attempt}/{self.max_retries} for user {self.job.user_id}")
            result = await self._run_attempt(attempt)

            if result.cancelled:
                logger.info(f"{self.log_prefix} Recording cancelled during attempt {attempt}")
                return SessionOutcome(RecordingStatus.CANCELLED, attempt, cancelled=True)

            if result.status in (RecordingStatus.COMPLETED, RecordingStatus.TIMEOUT):
                logger.info(f"{self.log_prefix} Finished with {result.status.value} on attempt {attempt}")
                return SessionOutcome(result.status, attempt)

            if not result.retryable:
                logger.warning(f"{self.log_prefix} Non-retryable failure on attempt {attempt}: {result.error}")
                return SessionOutcome(RecordingStatus.FAILED, attempt)

            if attempt >= self.max_retries:
                logger.error(f"{self.log_prefix} Max retries reached after {attempt} attempts: {result.error}")
                if not result.written:
                    await self.status.apply_status(
                        self.job.recording_id,
                        RecordingStatus.FAILED,
                        {"error": f"Max retries reached: {result.error}"},
                        attempt=attempt,
                    )
                return SessionOutcome(RecordingStatus.FAILED, attempt)

            logger.info(f"{self.log_prefix} Attempt {attempt} failed ({result.error}), retrying in {self.retry_backoff}s")
            await self._sleep(self.retry_backoff)
            attempt += 1

    async def _is_cancelled(self) -> bool:
        return await self.status.get_status(self.job.recording_id) == RecordingStatus.CANCELLED

    async def _cleanup(self, attempt: int) -> None:
        # Only a retry can leave a container of this recording behind
        if attempt > 1:
            await self.containers.stop_recorder(self.job.recording_id, self.job.user_id)

    async def _run_attempt(self, attempt: int) -> AttemptResult:
        recording_id = self.job.recording_id
        container = None
        try:
            await self._cleanup(attempt)

            if await self._is_cancelled():
                return AttemptResult(RecordingStatus.CANCELLED, cancelled=True)

            try:
                container = await self.containers.start_recorder(self.job, self.file_name)
            except RecorderError as e:
                if e.retryable:
                    raise
                written = await self.status.apply_status(
                    recording_id, RecordingStatus.FAILED, {"error": str(e)}, attempt=attempt
                )
                return AttemptResult(RecordingStatus.FAILED, written=written, error=str(e))

            if not self._file_name_saved:
                self._file_name_saved = await self.status.set_file_name(recording_id, self.file_name)

            if await self._is_cancelled():
                logger.info(f"{self.log_prefix} Cancelled right after start, stopping container {container.id}")
                await self.containers.stop_container(container)
                return AttemptResult(RecordingStatus.CANCELLED, cancelled=True)

            timed_out, exit_code = await self._watch(container, attempt)

            # A kill that landed while the container ran leaves CANCELLED behind
            if await self._is_cancelled():
                return AttemptResult(RecordingStatus.CANCELLED, cancelled=True)

            if timed_out:
                final_status = RecordingStatus.TIMEOUT
            elif exit_code == 0:
                final_status = RecordingStatus.COMPLETED
            else:
                final_status = RecordingStatus.FAILED

            metadata = {"exitCode": exit_code, "isTimedOut": timed_out}
            error = None
            if final_status == RecordingStatus.FAILED:
                error = f"Recorder exited with code {exit_code}"
                if attempt >= self.max_retries:
                    metadata["error"] = f"Max retries reached: {error}"
                else:
                    metadata["error"] = error
            elif final_status == RecordingStatus.TIMEOUT:
                metadata["error"] = "Timed out waiting to join the meeting"

            written = await self.status.apply_status(recording_id, final_status, metadata, attempt=attempt)
            if written and final_status == RecordingStatus.COMPLETED:
                await self._publish_completion()

            return AttemptResult(
                final_status,
                retryable=final_status == RecordingStatus.FAILED,
                written=written,
                error=error,
            )
        except Exception as e:
            logger.error(f"{self.log_prefix} Attempt {attempt} failed: {e}", exc_info=True)
            if container is not None:
                await self.containers.stop_container(container)
            return AttemptResult(RecordingStatus.FAILED, retryable=True, error=str(e))

    async def _watch(self, container: DockerContainer, attempt: int):
        """Consume log events and await the container's exit; both must settle."""
        watcher = self.watcher_factory(container, label=self.job.recording_id)
        timed_out = False

        async def consume_logs():
            nonlocal timed_out
            async for event in watcher.watch():
                if event == LogEvent.TIMED_OUT:
                    timed_out = True
                    continue
                await self.status.apply_status(
                    self.job.recording_id, _PROGRESS_FOR_EVENT[event], attempt=attempt
                )

        logs_task = asyncio.create_task(consume_logs())
        try:
            try:
                result = await container.wait()
            except DockerError as e:
                if e.status != 404:
                    raise
                # AutoRemove reaped it before the wait began; the exit code is lost
                logger.warning(f"{self.log_prefix} Container {container.id} was already removed, exit code unknown")
                result = None
            await logs_task
        finally:
            if not logs_task.done():
                logs_task.cancel()
                await asyncio.gather(logs_task, return_exceptions=True)

        exit_code = int((result or {}).get("StatusCode", -1))
        logger.info(f"{self.log_prefix} Container {container.id} exited with code {exit_code} (timed out: {timed_out})")
        return timed_out, exit_code

    async def _publish_completion(self) -> None:
        payload = TranscriptionJob(recording_id=self.job.recording_id, file_name=self.file_name)
        try:
            await self.queue.push(TRANSCRIPTION_QUEUE, payload)
            logger.info(f"{self.log_prefix} Queued transcription for {self.file_name}")
        except Exception as e:
            logger.error(f"{self.log_prefix} Failed to queue transcription: {e}", exc_info=True)
