import logging
from enum import Enum
from typing import AsyncIterator, Iterable, Optional, Sequence, Tuple

from aiodocker.containers import DockerContainer

logger = logging.getLogger("recorder_manager.log_watcher")


class LogEvent(str, Enum):
    ASKING_TO_JOIN = "ASKING_TO_JOIN"
    JOINED = "JOINED"
    TIMED_OUT = "TIMED_OUT"


# Phrases printed by the recorder's meet.ts, matched case-insensitively.
# Timeout phrases are checked first since they also mention joining.
LOG_PHRASES: Sequence[Tuple[LogEvent, Tuple[str, ...]]] = (
    (LogEvent.TIMED_OUT, ("timed out waiting to join", "waiting to join timed out", "timeout waiting to be admitted")),
    (LogEvent.JOINED, ("admitted to the meeting", "successfully joined")),
    (LogEvent.ASKING_TO_JOIN, ("asking to join", "requesting to join", "waiting to be admitted")),
)


def classify_line(line: str) -> Optional[LogEvent]:
    lowered = line.lower()
    for event, phrases in LOG_PHRASES:
        if any(phrase in lowered for phrase in phrases):
            return event
    return None


def _split_lines(chunk) -> Iterable[str]:
    if isinstance(chunk, bytes):
        chunk = chunk.decode("utf-8", errors="replace")
    return str(chunk).splitlines()


class LogStateWatcher:
    """Turns a recorder container's output into state-transition events."""

    def __init__(self, container: DockerContainer, label: str = ""):
        self.container = container
        self.label = label or container.id

    async def watch(self) -> AsyncIterator[LogEvent]:
        """
        Follow combined stdout/stderr and yield classified events.

        The sequence ends when the stream ends or fails; a stream error is
        logged and otherwise treated like a clean end. The underlying stream
        is closed on every exit path, including when the consumer stops
        iterating early or is cancelled.
        """
        stream = self.container.log(stdout=True, stderr=True, follow=True)
        try:
            async for chunk in stream:
                for line in _split_lines(chunk):
                    event = classify_line(line)
                    if event is not None:
                        logger.debug(f"[Log Watcher {self.label}] {event.value}: {line.strip()}")
                        yield event
        except Exception as e:
            logger.warning(f"[Log Watcher {self.label}] Log stream ended with error: {e}")
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug(f"[Log Watcher {self.label}] Error closing log stream: {e}")
            logger.debug(f"[Log Watcher {self.label}] Log stream released")
