"""Shared fixtures: in-memory stand-ins for Docker, Redis and the recording store."""

import json
import inspect
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiodocker.exceptions import DockerError

from recorder_manager.config import RECORDER_LABEL, RECORDING_LABEL
from recorder_manager.orchestrator_utils import ContainerManager
from recorder_manager.queues import RedisQueue
from recorder_manager.schemas import JoinJob
from recorder_manager.status import StatusSynchronizer

# ============================================================================
# Recording store
# ============================================================================


class FakeRecordingStore:
    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.updates: List[Dict[str, Any]] = []
        self.fail_reads = False
        # Simulates the row being deleted between the read and the write
        self.drop_after_read = False

    def add(self, recording_id: str, status: str = "PENDING", error_metadata=None, file_name=None):
        self.records[recording_id] = {
            "status": status,
            "error_metadata": error_metadata,
            "file_name": file_name,
        }

    async def get_status(self, recording_id: str):
        if self.fail_reads:
            raise RuntimeError("database unavailable")
        record = self.records.get(recording_id)
        if record is None:
            return None
        if self.drop_after_read:
            del self.records[recording_id]
        return record["status"], record["error_metadata"]

    async def update(self, recording_id: str, status=None, error_metadata=None, file_name=None) -> bool:
        record = self.records.get(recording_id)
        if record is None:
            return False
        self.updates.append({
            "recording_id": recording_id,
            "status": status,
            "error_metadata": error_metadata,
            "file_name": file_name,
        })
        if status is not None:
            record["status"] = status
        if error_metadata is not None:
            record["error_metadata"] = error_metadata
        if file_name is not None:
            record["file_name"] = file_name
        return True

    def status_writes(self, recording_id: str) -> List[str]:
        return [
            u["status"] for u in self.updates
            if u["recording_id"] == recording_id and u["status"] is not None
        ]


# ============================================================================
# Docker
# ============================================================================


class FakeLogStream:
    """Async iterator over canned log chunks that records whether it was closed."""

    def __init__(self, chunks: List[Any], error: Optional[Exception] = None):
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        if self._chunks:
            return self._chunks.pop(0)
        if self._error is not None:
            error, self._error = self._error, None
            raise error
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


class FakeContainer:
    def __init__(self, docker: "FakeDocker", container_id: str, name: str, config: Dict[str, Any],
                 logs: Optional[List[str]] = None, exit_code: int = 0, log_error: Optional[Exception] = None,
                 wait_error: Optional[Exception] = None):
        self.docker = docker
        self.id = container_id
        self.name = name
        self.config = config
        self.logs = logs or []
        self.exit_code = exit_code
        self.log_error = log_error
        self.wait_error = wait_error
        self.started = False
        self.killed = False
        self.streams: List[FakeLogStream] = []
        self._container = {
            "Id": container_id,
            "Names": [f"/{name}"],
            "Labels": dict(config.get("Labels") or {}),
            "Created": 1760000000,
            "Status": "Up 2 minutes",
        }

    @property
    def labels(self) -> Dict[str, str]:
        return self._container["Labels"]

    async def start(self):
        if self.docker.start_error is not None:
            raise self.docker.start_error
        self.started = True
        self.docker.running.append(self)
        if self.docker.on_start is not None:
            self.docker.on_start(self)

    def log(self, *, stdout=False, stderr=False, follow=False):
        stream = FakeLogStream(self.logs, self.log_error)
        self.streams.append(stream)
        return stream

    async def wait(self):
        if self.wait_error is not None:
            raise self.wait_error
        self._remove()
        return {"StatusCode": 137 if self.killed else self.exit_code}

    async def kill(self):
        if self not in self.docker.running:
            raise DockerError(409, {"message": f"Container {self.id} is not running"})
        self.killed = True
        self._remove()

    def _remove(self):
        # AutoRemove: gone from listings once it exits
        if self in self.docker.running:
            self.docker.running.remove(self)


class _FakeContainers:
    def __init__(self, docker: "FakeDocker"):
        self.docker = docker

    async def list(self, filters: Optional[str] = None, **kwargs):
        labels = json.loads(filters).get("label", []) if filters else []
        matches = []
        for container in self.docker.running:
            ok = True
            for label in labels:
                key, _, value = label.partition("=")
                if key not in container.labels or (value and container.labels[key] != value):
                    ok = False
            if ok:
                matches.append(container)
        return matches

    async def create(self, config: Dict[str, Any], name: Optional[str] = None):
        if self.docker.create_error is not None:
            raise self.docker.create_error
        self.docker.create_calls += 1
        spec = self.docker.scripts.pop(0) if self.docker.scripts else {}
        container = FakeContainer(
            self.docker, f"c{self.docker.create_calls}", name or "unnamed", config, **spec
        )
        self.docker.created.append(container)
        if self.docker.on_create is not None:
            result = self.docker.on_create(container)
            if inspect.isawaitable(result):
                await result
        return container


class _FakeImages:
    def __init__(self, docker: "FakeDocker"):
        self.docker = docker

    async def inspect(self, name: str):
        if name not in self.docker.images_present:
            raise DockerError(404, {"message": f"No such image: {name}"})
        return {"Id": f"sha256:{name}"}

    async def pull(self, from_image: str, **kwargs):
        self.docker.pull_calls.append(from_image)
        if self.docker.pull_error is not None:
            return [{"status": "Pulling"}, {"error": self.docker.pull_error}]
        self.docker.images_present.add(from_image)
        return [{"status": f"Downloaded newer image for {from_image}"}]


class FakeDocker:
    """Minimal aiodocker.Docker double.

    ``scripts`` lists per-container behaviour (logs, exit_code, ...) consumed
    in creation order.
    """

    def __init__(self, images_present=None):
        self.running: List[FakeContainer] = []
        self.created: List[FakeContainer] = []
        self.scripts: List[Dict[str, Any]] = []
        self.images_present = set(images_present or [])
        self.pull_calls: List[str] = []
        self.pull_error: Optional[str] = None
        self.create_error: Optional[Exception] = None
        self.start_error: Optional[Exception] = None
        self.on_start: Optional[Callable[[FakeContainer], None]] = None
        # May be async; runs after create and before start
        self.on_create: Optional[Callable[[FakeContainer], Any]] = None
        self.create_calls = 0
        self.containers = _FakeContainers(self)
        self.images = _FakeImages(self)

    def add_running(self, user_id: str, recording_id: Optional[str] = None) -> FakeContainer:
        labels = {RECORDER_LABEL: user_id}
        if recording_id is not None:
            labels[RECORDING_LABEL] = recording_id
        container = FakeContainer(
            self, f"existing-{user_id}-{len(self.running)}", f"recorder-{user_id}-0", {"Labels": labels},
        )
        self.running.append(container)
        return container


# ============================================================================
# Redis
# ============================================================================


class FakeRedis:
    """List operations of redis.asyncio.Redis; an empty BLPOP returns None."""

    def __init__(self):
        self.lists: Dict[str, List[str]] = {}
        self.errors: List[Exception] = []

    async def rpush(self, key: str, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def blpop(self, keys, timeout=0):
        if self.errors:
            raise self.errors.pop(0)
        for key in keys:
            items = self.lists.get(key)
            if items:
                return key, items.pop(0)
        return None


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


# ============================================================================
# Fixtures
# ============================================================================

IMAGE = "example/recorder:test"


@pytest.fixture()
def store() -> FakeRecordingStore:
    return FakeRecordingStore()


@pytest.fixture()
def status_sync(store) -> StatusSynchronizer:
    return StatusSynchronizer(store)


@pytest.fixture()
def docker() -> FakeDocker:
    return FakeDocker(images_present={IMAGE})


@pytest.fixture()
def containers(docker, tmp_path) -> ContainerManager:
    return ContainerManager(docker, image_name=IMAGE, max_concurrent=2, recordings_path=str(tmp_path))


@pytest.fixture()
def redis_client() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def queue(redis_client) -> RedisQueue:
    return RedisQueue(redis_client)


@pytest.fixture()
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def join_job() -> JoinJob:
    return JoinJob(
        userId="user-1",
        userName="Ada",
        link="https://meet.google.com/abc-defg-hij",
        recordingId="rec-1",
        title="Weekly sync",
    )
