"""Shared test helpers: tree builders and collaborator fakes."""

from collections.abc import Sequence
from typing import Any

from mlp.entities.factory import Entity
from mlp.models import FileDescriptor, ImportResult, NodeView
from mlp.nodes.service import NodeService


async def make_survey_chain(service: NodeService, station_name: str = "Station 1") -> dict[str, int]:
    """surveyors > surveys > survey_seasons > stations. Returns ids keyed by type."""
    surveyor = await service.create(
        "surveyors", None, {"given_names": "Morrison", "last_name": "Parsons"},
    )
    survey = await service.create("surveys", surveyor.node.id, {"name": "Crowsnest"})
    season = await service.create("survey_seasons", survey.node.id, {"year": 1927})
    station = await service.create("stations", season.node.id, {"name": station_name})
    return {
        "surveyors": surveyor.node.id,
        "surveys": survey.node.id,
        "survey_seasons": season.node.id,
        "stations": station.node.id,
    }


async def make_modern_chain(service: NodeService, station_id: int) -> dict[str, int]:
    """modern_visits > locations under an existing station."""
    visit = await service.create("modern_visits", station_id, {"date": "2008-07-14"})
    location = await service.create("locations", visit.node.id, {"location_identity": "A"})
    return {"modern_visits": visit.node.id, "locations": location.node.id}


async def make_capture(
    service: NodeService,
    type_name: str,
    owner_id: int,
    reference: str = "CAP-001",
    **data: Any,
) -> int:
    detail = await service.create(type_name, owner_id, {"fn_photo_reference": reference, **data})
    return detail.node.id


async def set_status(db, node_id: int, status: str) -> None:
    """Force a node's status directly in the store."""
    await db.execute("UPDATE nodes SET status = ? WHERE id = ?", (status, node_id))


def make_file(filename: str = "capture.tif", file_type: str = "capture_images") -> FileDescriptor:
    return FileDescriptor(
        file_type=file_type,
        filename=filename,
        mimetype="image/tiff",
        file_size=1024,
        filename_tmp=f"/tmp/{filename}",
    )


class FakeImporter:
    """Importer that records calls and returns canned metadata."""

    def __init__(self, metadata: dict[str, Any] | None = None, fail_discard: bool = False) -> None:
        self.metadata = metadata or {}
        self.fail_discard = fail_discard
        self.received: list[tuple[Entity, NodeView | None, list[FileDescriptor]]] = []
        self.discarded: list[list[FileDescriptor]] = []

    async def receive(
        self, entity: Entity, owner: NodeView | None, files: Sequence[FileDescriptor],
    ) -> ImportResult:
        self.received.append((entity, owner, list(files)))
        return ImportResult(files=list(files), metadata=self.metadata)

    async def discard(self, files: Sequence[FileDescriptor]) -> None:
        self.discarded.append(list(files))
        if self.fail_discard:
            raise OSError("staging directory is gone")


class FakeJobQueue:
    def __init__(self) -> None:
        self.jobs: list[tuple[int, str]] = []

    async def enqueue(self, file_id: int, owner_type: str) -> None:
        self.jobs.append((file_id, owner_type))
