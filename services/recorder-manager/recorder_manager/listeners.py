import asyncio
import logging
from typing import Callable, Optional, Set

from pydantic import ValidationError

from recorder_manager.config import JOIN_QUEUE, KILL_QUEUE, QUEUE_ERROR_BACKOFF_SECONDS
from recorder_manager.orchestrator_utils import ContainerManager
from recorder_manager.queues import RedisQueue
from recorder_manager.schemas import JoinJob, KillJob, RecordingStatus
from recorder_manager.session import RecordingSession
from recorder_manager.status import StatusSynchronizer

logger = logging.getLogger("recorder_manager.listeners")


class _QueueLoop:
    queue_name = ""
    log_prefix = ""

    def __init__(self, queue: RedisQueue, error_backoff: float = QUEUE_ERROR_BACKOFF_SECONDS, sleep=asyncio.sleep):
        self.queue = queue
        self.error_backoff = error_backoff
        self._sleep = sleep

    async def handle(self, raw: str) -> None:
        raise NotImplementedError

    async def run(self, max_iterations: Optional[int] = None) -> None:
        """Pop and handle messages forever (or ``max_iterations`` times).

        Queue errors are logged and followed by a short backoff; only
        cancellation ends the loop.
        """
        logger.info(f"{self.log_prefix} Starting queue listener for \"{self.queue_name}\"")
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            try:
                raw = await self.queue.pop(self.queue_name)
                if raw is None:
                    continue
                await self.handle(raw)
            except asyncio.CancelledError:
                logger.info(f"{self.log_prefix} Listener cancelled")
                raise
            except Exception as e:
                logger.error(f"{self.log_prefix} Queue listener error: {e}", exc_info=True)
                await self._sleep(self.error_backoff)


class JobQueueConsumer(_QueueLoop):
    """Dequeues join jobs and runs each as its own recording session task."""

    queue_name = JOIN_QUEUE
    log_prefix = "[Job Consumer]"

    def __init__(self, queue: RedisQueue, session_factory: Callable[[JoinJob], RecordingSession], **kwargs):
        super().__init__(queue, **kwargs)
        self.session_factory = session_factory
        self.active_sessions: Set[asyncio.Task] = set()

    async def handle(self, raw: str) -> None:
        try:
            job = JoinJob.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"{self.log_prefix} Dropping invalid join payload {raw!r}: {e}")
            return

        logger.info(f"{self.log_prefix} Dequeued join job for recording {job.recording_id} (user {job.user_id})")
        self.dispatch(job)

    def dispatch(self, job: JoinJob) -> asyncio.Task:
        session = self.session_factory(job)
        task = asyncio.create_task(session.run(), name=f"recording-{job.recording_id}")
        self.active_sessions.add(task)
        task.add_done_callback(self._session_done)
        return task

    def _session_done(self, task: asyncio.Task) -> None:
        self.active_sessions.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{self.log_prefix} Unhandled error in {task.get_name()}: {error}", exc_info=error)

    async def shutdown(self) -> None:
        for task in list(self.active_sessions):
            task.cancel()
        await asyncio.gather(*self.active_sessions, return_exceptions=True)


class KillListener(_QueueLoop):
    """Stops a user's recorder on request and marks the recording cancelled."""

    queue_name = KILL_QUEUE
    log_prefix = "[Kill Listener]"

    def __init__(self, queue: RedisQueue, containers: ContainerManager, status: StatusSynchronizer, **kwargs):
        super().__init__(queue, **kwargs)
        self.containers = containers
        self.status = status

    async def handle(self, raw: str) -> None:
        try:
            job = KillJob.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"{self.log_prefix} Dropping invalid kill payload {raw!r}: {e}")
            return

        logger.info(f"{self.log_prefix} Kill requested for recording {job.recording_id} (user {job.user_id})")
        current = await self.status.get_status(job.recording_id)
        if current is None:
            logger.warning(f"{self.log_prefix} Recording {job.recording_id} not found or unreadable, ignoring kill")
            return
        if current in (RecordingStatus.COMPLETED, RecordingStatus.CANCELLED):
            logger.info(f"{self.log_prefix} Recording {job.recording_id} already {current.value}, ignoring kill")
            return

        stopped = await self.containers.stop_recorder(job.recording_id, job.user_id)
        if not stopped:
            # Not running yet, or between attempts: the session's next
            # cancellation check stops whatever it starts
            logger.info(f"{self.log_prefix} No running recorder for recording {job.recording_id}")

        await self.status.apply_status(job.recording_id, RecordingStatus.CANCELLED)
