"""Interfaces for the collaborators the engine calls around a transaction.

Implementations live outside the engine (file store, image job queue).
They are injected into NodeService, so tests substitute fakes.
"""

import logging
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from mlp.entities.factory import Entity
from mlp.models import FileDescriptor, ImportResult, NodeView

logger = logging.getLogger(__name__)


@runtime_checkable
class Importer(Protocol):
    """Receives uploaded files for a validated entity before it is persisted."""

    async def receive(
        self, entity: Entity, owner: NodeView | None, files: Sequence[FileDescriptor],
    ) -> ImportResult:
        """Stage files and extract metadata. Runs before the transaction opens."""
        ...

    async def discard(self, files: Sequence[FileDescriptor]) -> None:
        """Remove staged files after a failed transaction. Best effort."""
        ...


@runtime_checkable
class JobQueue(Protocol):
    """Accepts file-processing jobs once their file records are committed."""

    async def enqueue(self, file_id: int, owner_type: str) -> None:
        ...


class LoggingJobQueue:
    """JobQueue that only records the job. Used when no queue is configured."""

    def __init__(self) -> None:
        self.jobs: list[tuple[int, str]] = []

    async def enqueue(self, file_id: int, owner_type: str) -> None:
        self.jobs.append((file_id, owner_type))
        logger.info("Queued file %s (%s) for processing", file_id, owner_type)
