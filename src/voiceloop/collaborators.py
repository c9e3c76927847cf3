from __future__ import annotations

import asyncio
from abc import ABC
from enum import Enum
from typing import Optional

import structlog

from src.voiceloop.errors import CollaboratorLoadError

logger = structlog.get_logger(__name__)


class CollaboratorStatus(str, Enum):
    """Lifecycle status reported by a model/service collaborator."""
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class Collaborator(ABC):
    """
    Common lifecycle for the opaque model/service collaborators.

    Subclasses override `_load()`; `load()` tracks status and turns any failure
    into a `CollaboratorLoadError`.
    """

    name: str = "collaborator"

    def __init__(self) -> None:
        self._status = CollaboratorStatus.LOADING
        self._error: Optional[str] = None

    @property
    def status(self) -> CollaboratorStatus:
        return self._status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_ready(self) -> bool:
        return self._status == CollaboratorStatus.READY

    async def load(self) -> None:
        self._status = CollaboratorStatus.LOADING
        self._error = None
        try:
            await self._load()
        except asyncio.CancelledError:
            raise
        except CollaboratorLoadError as e:
            self._status = CollaboratorStatus.ERROR
            self._error = str(e)
            raise
        except Exception as e:
            self._status = CollaboratorStatus.ERROR
            self._error = str(e)
            logger.error("Collaborator failed to load", collaborator=self.name, error=str(e))
            raise CollaboratorLoadError(self.name, str(e)) from e

        self._status = CollaboratorStatus.READY
        logger.info("Collaborator ready", collaborator=self.name)

    async def _load(self) -> None:
        return None

    async def close(self) -> None:
        return None
