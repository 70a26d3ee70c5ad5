import asyncio
import logging
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status

from recorder_manager.config import DATABASE_URL, LOG_LEVEL, PORT, RECORDINGS_HOST_PATH, REDIS_URL
from recorder_manager.database import RecordingStore, create_engine, create_session_factory
from recorder_manager.listeners import JobQueueConsumer, KillListener
from recorder_manager.orchestrator_utils import (
    ContainerManager,
    create_docker_client,
    ensure_recordings_directory,
)
from recorder_manager.queues import RedisQueue, create_redis_client
from recorder_manager.session import RecordingSession
from recorder_manager.status import StatusSynchronizer

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("recorder_manager")

app = FastAPI(title="Shadow Bot Recorder Manager")


def build_listeners(queue: RedisQueue, containers: ContainerManager, status_sync: StatusSynchronizer):
    def session_factory(job):
        return RecordingSession(job, containers, status_sync, queue)

    consumer = JobQueueConsumer(queue, session_factory)
    kill_listener = KillListener(queue, containers, status_sync)
    return consumer, kill_listener


@app.on_event("startup")
async def startup_event():
    logger.info("Starting up Recorder Manager...")
    ensure_recordings_directory(RECORDINGS_HOST_PATH)

    logger.info(f"Connecting to Redis at {REDIS_URL}...")
    redis_client = await create_redis_client(REDIS_URL)
    logger.info("Successfully connected to Redis.")

    docker = create_docker_client()
    engine = create_engine(DATABASE_URL)

    queue = RedisQueue(redis_client)
    containers = ContainerManager(docker)
    status_sync = StatusSynchronizer(RecordingStore(create_session_factory(engine)))
    consumer, kill_listener = build_listeners(queue, containers, status_sync)

    app.state.redis = redis_client
    app.state.docker = docker
    app.state.engine = engine
    app.state.containers = containers
    app.state.consumer = consumer
    app.state.listener_tasks = [
        asyncio.create_task(consumer.run(), name="join-queue-consumer"),
        asyncio.create_task(kill_listener.run(), name="kill-queue-listener"),
    ]
    logger.info("Queue listeners started")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down Recorder Manager...")
    tasks = getattr(app.state, "listener_tasks", [])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    consumer = getattr(app.state, "consumer", None)
    if consumer is not None:
        await consumer.shutdown()

    redis_client = getattr(app.state, "redis", None)
    if redis_client is not None:
        try:
            await redis_client.aclose()
            logger.info("Redis connection closed.")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}", exc_info=True)

    docker = getattr(app.state, "docker", None)
    if docker is not None:
        await docker.close()
        logger.info("Docker client closed.")

    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()


@app.get("/")
async def root(request: Request) -> Dict[str, Any]:
    consumer = getattr(request.app.state, "consumer", None)
    return {
        "message": "Recorder Manager is running",
        "active_sessions": len(consumer.active_sessions) if consumer else 0,
    }


async def _list_recorders(request: Request, user_id=None) -> List[Dict[str, Any]]:
    try:
        return await request.app.state.containers.list_recorders(user_id)
    except Exception as e:
        logger.error(f"[Recorder Status] Failed to list recorder containers: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Container runtime unavailable",
        )


@app.get("/recorders")
async def get_recorders(request: Request) -> List[Dict[str, Any]]:
    return await _list_recorders(request)


@app.get("/recorders/{user_id}")
async def get_user_recorders(user_id: str, request: Request) -> List[Dict[str, Any]]:
    return await _list_recorders(request, user_id)


if __name__ == "__main__":
    uvicorn.run("recorder_manager.main:app", host="0.0.0.0", port=PORT)
