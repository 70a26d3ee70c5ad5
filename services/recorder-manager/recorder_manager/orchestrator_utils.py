import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiodocker
from aiodocker.containers import DockerContainer
from aiodocker.exceptions import DockerError

from recorder_manager.config import (
    CONTAINER_MEMORY_BYTES,
    DOCKER_HOST,
    MAX_CONCURRENT_CONTAINERS,
    RECORDER_IMAGE_NAME,
    RECORDER_LABEL,
    RECORDING_LABEL,
    RECORDINGS_CONTAINER_PATH,
    RECORDINGS_HOST_PATH,
)
from recorder_manager.errors import (
    ContainerCreateFailure,
    ContainerStartFailure,
    ImagePullFailure,
    LimitExceeded,
    UserAlreadyActive,
)
from recorder_manager.schemas import JoinJob

logger = logging.getLogger("recorder_manager.orchestrator_utils")


def ensure_recordings_directory(path: str = RECORDINGS_HOST_PATH) -> Path:
    """Create the host side of the recordings bind mount if it is missing."""
    recordings_path = Path(path)
    if not recordings_path.exists():
        logger.info(f"Creating recordings directory at: {recordings_path}")
        recordings_path.mkdir(parents=True, exist_ok=True)
    return recordings_path


class ContainerManager:
    """Starts and stops recorder containers through the Docker API.

    Limits are enforced with a list-then-create check. Two starts racing
    each other can both pass it; the runtime offers no atomic
    create-with-label-constraint, so the cap is best effort.
    """

    def __init__(
        self,
        docker: aiodocker.Docker,
        image_name: str = RECORDER_IMAGE_NAME,
        max_concurrent: int = MAX_CONCURRENT_CONTAINERS,
        recordings_path: str = RECORDINGS_HOST_PATH,
    ):
        self.docker = docker
        self.image_name = image_name
        self.max_concurrent = max_concurrent
        self.recordings_path = recordings_path

    async def _list_labeled(self, *labels: str) -> List[DockerContainer]:
        filters = json.dumps({"label": list(labels)})
        return await self.docker.containers.list(filters=filters)

    async def ensure_image_pulled(self) -> None:
        try:
            await self.docker.images.inspect(self.image_name)
            return
        except DockerError as e:
            if e.status != 404:
                raise ImagePullFailure(f"Failed to inspect image {self.image_name}: {e}") from e

        logger.info(f"Image {self.image_name} not found locally. Pulling...")
        try:
            progress = await self.docker.images.pull(self.image_name)
        except DockerError as e:
            raise ImagePullFailure(f"Failed to pull {self.image_name}: {e}") from e

        # Pull errors can arrive inside the progress stream with a 200 status
        for entry in progress or []:
            if isinstance(entry, dict) and entry.get("error"):
                raise ImagePullFailure(f"Failed to pull {self.image_name}: {entry['error']}")
        logger.info(f"Successfully pulled {self.image_name}")

    def _build_config(self, job: JoinJob, file_name: Optional[str]) -> Dict[str, Any]:
        duration = str(job.max_duration_mins)
        bot_name = f"{job.user_name}'s shadow bot"
        cmd = ["bun", "meet.ts", job.link, bot_name, duration]
        if file_name:
            cmd.extend(["--filename", file_name])

        return {
            "Image": self.image_name,
            "Cmd": cmd,
            "Labels": {RECORDER_LABEL: job.user_id, RECORDING_LABEL: job.recording_id},
            "Env": [f"MAX_DURATION_MINUTES={duration}"],
            "HostConfig": {
                "IpcMode": "host",
                "Memory": CONTAINER_MEMORY_BYTES,
                "Binds": [f"{self.recordings_path}:{RECORDINGS_CONTAINER_PATH}:rw"],
                "AutoRemove": True,
            },
        }

    async def start_recorder(self, job: JoinJob, file_name: Optional[str] = None) -> DockerContainer:
        """
        Start a recorder container for the job after checking the limits.

        Raises:
            LimitExceeded: the global container cap is reached.
            UserAlreadyActive: the user already has a recorder running.
            ImagePullFailure, ContainerCreateFailure, ContainerStartFailure:
                runtime failures, safe to retry.
        """
        logger.info(f"Starting recorder for link: {job.link} (User: {job.user_id})")

        all_recorders = await self._list_labeled(RECORDER_LABEL)
        if len(all_recorders) >= self.max_concurrent:
            logger.warning(f"Global limit of {self.max_concurrent} containers reached.")
            raise LimitExceeded(self.max_concurrent)

        existing = await self._list_labeled(f"{RECORDER_LABEL}={job.user_id}")
        if existing:
            error = UserAlreadyActive(job.user_id, existing[0].id)
            logger.warning(str(error))
            raise error

        await self.ensure_image_pulled()

        container_name = f"recorder-{job.user_id}-{int(time.time() * 1000)}"
        try:
            container = await self.docker.containers.create(
                config=self._build_config(job, file_name), name=container_name
            )
        except DockerError as e:
            raise ContainerCreateFailure(f"Failed to create container {container_name}: {e}") from e

        try:
            await container.start()
        except DockerError as e:
            raise ContainerStartFailure(f"Failed to start container {container_name}: {e}") from e

        logger.info(f"Container {container_name} ({container.id}) started successfully.")
        return container

    async def stop_recorder(self, recording_id: str, user_id: str) -> bool:
        """Force-stop the user's recorder container for this recording.

        Matching on both labels leaves the user's other recordings alone.
        Returns True only if one was found and stopped.
        """
        try:
            containers = await self._list_labeled(
                f"{RECORDER_LABEL}={user_id}", f"{RECORDING_LABEL}={recording_id}"
            )
        except DockerError as e:
            logger.error(f"Failed to list containers for user {user_id}: {e}", exc_info=True)
            return False

        if not containers:
            logger.info(f"No recorder container found for user {user_id} (recording {recording_id})")
            return False

        container = containers[0]
        try:
            await container.kill()
        except DockerError as e:
            # 404 / 409: already gone or not running
            if e.status in (404, 409):
                logger.warning(f"Container {container.id} already stopped or removed.")
                return False
            logger.error(f"Error stopping container {container.id}: {e}", exc_info=True)
            return False

        logger.info(f"Stopped container {container.id} for user {user_id} (recording {recording_id})")
        return True

    async def stop_container(self, container: DockerContainer) -> None:
        """Best-effort stop of a specific container handle."""
        try:
            await container.kill()
        except DockerError as e:
            if e.status not in (404, 409):
                logger.warning(f"Failed to stop container {container.id}: {e}")

    async def list_recorders(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Status of running recorder containers, optionally for one user."""
        label = f"{RECORDER_LABEL}={user_id}" if user_id is not None else RECORDER_LABEL
        containers = await self._list_labeled(label)

        recorders = []
        for container in containers:
            info = container._container
            names = info.get("Names") or ["N/A"]
            created_at_unix = info.get("Created")
            created_at = (
                datetime.fromtimestamp(created_at_unix, timezone.utc).isoformat()
                if created_at_unix else None
            )
            status = info.get("Status")

            # Map a normalized status from Docker's human string
            normalized_status = None
            if isinstance(status, str):
                s = status.lower()
                if s.startswith("up"):
                    normalized_status = "Up"
                elif s.startswith("exited") or "dead" in s:
                    normalized_status = "Exited"
                elif "restarting" in s or "starting" in s:
                    normalized_status = "Starting"

            recorders.append({
                "container_id": container.id,
                "container_name": names[0].lstrip("/"),
                "user_id": (info.get("Labels") or {}).get(RECORDER_LABEL),
                "recording_id": (info.get("Labels") or {}).get(RECORDING_LABEL),
                "status": status,
                "normalized_status": normalized_status,
                "created_at": created_at,
            })
        return recorders


def create_docker_client(docker_host: str = DOCKER_HOST) -> aiodocker.Docker:
    return aiodocker.Docker(url=docker_host)
