"""Typed failures raised by the container lifecycle manager.

Sessions decide whether an attempt may be retried from the exception type
alone (``retryable``), never from the message text.
"""
from typing import Optional


class RecorderError(Exception):
    """Base class for recorder start failures."""

    retryable = True


class LimitExceeded(RecorderError):
    """Global cap on concurrently running recorder containers reached."""

    retryable = False

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Global limit of {limit} containers reached.")


class UserAlreadyActive(RecorderError):
    """The user already owns a running recorder container."""

    retryable = False

    def __init__(self, user_id: str, container_id: Optional[str]):
        self.user_id = user_id
        self.container_id = container_id
        super().__init__(f"User {user_id} already has an active recorder ({container_id}).")


class ImagePullFailure(RecorderError):
    pass


class ContainerCreateFailure(RecorderError):
    pass


class ContainerStartFailure(RecorderError):
    pass
