"""Integration tests for node operations end to end through NodeService.

Each mutation runs validate-then-apply in one transaction; these tests
check the resulting tree state and that rejected or failed operations
leave nothing behind.
"""

import asyncio
import logging

import pytest

from mlp.db.connection import Database
from mlp.errors import (
    ForeignKeyViolationError,
    InvalidMoveError,
    InvalidRequestError,
    NotFoundError,
    RestrictedByComparisonsError,
    UnknownEntityTypeError,
)
from mlp.nodes.service import NodeService
from tests.fixtures import (
    FakeImporter,
    FakeJobQueue,
    make_capture,
    make_file,
    make_modern_chain,
    make_survey_chain,
    set_status,
)


async def _count(db, table: str) -> int:
    row = await db.fetchone(f'SELECT COUNT(*) AS n FROM "{table}"')
    return row["n"]


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_root_node_path_under_fs_root(self, service):
        detail = await service.create(
            "surveyors", None, {"given_names": "Morrison", "last_name": "Parsons"},
        )
        assert detail.node.type == "surveyors"
        assert detail.node.node.owner_id is None
        assert detail.node.node.fs_path == "surveyors/Morrison_Parsons"
        assert detail.path == []
        assert "created successfully" in detail.message

    async def test_station_under_survey_season(self, service):
        """A stations node created under a surveySeasons owner lands beneath it."""
        ids = await make_survey_chain(service)
        season = await service.show("surveySeasons", ids["survey_seasons"])

        detail = await service.create("stations", ids["survey_seasons"], {"name": "TEST"})

        node = detail.node.node
        assert node.owner_id == ids["survey_seasons"]
        assert node.owner_type == "survey_seasons"
        assert node.type == "stations"
        assert node.fs_path is not None
        assert node.fs_path.startswith(season.node.node.fs_path + "/")
        assert node.fs_path.endswith("/TEST")
        assert [p.id for p in detail.path][-1] == ids["survey_seasons"]

    async def test_attributes_are_sanitized_and_stored(self, service):
        ids = await make_survey_chain(service)
        detail = await service.create(
            "stations", ids["survey_seasons"],
            {"name": "<b>Bow</b>", "lat": "51.25", "elev": "", "extra": "dropped"},
        )
        assert detail.node.metadata == {
            "nodes_id": detail.node.id, "name": "Bow", "lat": 51.25,
            "long": None, "elev": None, "nts_sheet": None,
        }

    async def test_capture_status_from_owner(self, service):
        ids = await make_survey_chain(service)
        modern = await make_modern_chain(service, ids["stations"])
        unsorted = await service.show(
            "modern_captures", await make_capture(service, "modern_captures", ids["stations"]),
        )
        sorted_ = await service.show(
            "modern_captures", await make_capture(service, "modern_captures", modern["locations"]),
        )
        assert unsorted.node.status == "unsorted"
        assert sorted_.node.status == "sorted"

    async def test_labels_without_slug_characters_get_distinct_paths(self, service):
        ids = await make_survey_chain(service)
        season = await service.show("survey_seasons", ids["survey_seasons"])
        base = season.node.node.fs_path

        first = await service.create("stations", ids["survey_seasons"], {"name": "日本"})
        second = await service.create("stations", ids["survey_seasons"], {"name": "Ωμέγα"})

        assert first.node.node.fs_path == f"{base}/stations_{first.node.id}"
        assert second.node.node.fs_path == f"{base}/stations_{second.node.id}"

    async def test_non_capture_has_no_status(self, service):
        ids = await make_survey_chain(service)
        assert (await service.show("stations", ids["stations"])).node.status is None

    async def test_missing_owner_for_non_root(self, service, db):
        with pytest.raises(InvalidRequestError):
            await service.create("stations", None, {"name": "Orphan"})
        assert await _count(db, "nodes") == 0

    async def test_owner_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.create("stations", 9999, {"name": "Orphan"})

    async def test_owner_type_not_allowed(self, service, db):
        ids = await make_survey_chain(service)
        before = await _count(db, "nodes")
        with pytest.raises(InvalidRequestError):
            await service.create("stations", ids["surveyors"], {"name": "Misplaced"})
        assert await _count(db, "nodes") == before

    async def test_unknown_type(self, service):
        with pytest.raises(UnknownEntityTypeError):
            await service.create("spaceships", None, {})

    async def test_json_and_composite_attributes(self, service):
        root = await service.create("map_objects", None, {"name": "Glaciers"})
        feature = await service.create(
            "map_features", root.node.id,
            {"name": "Toe", "geometry": {"type": "Point", "coordinates": [1, 2]}},
        )
        assert feature.node.metadata["geometry"] == '{"type": "Point", "coordinates": [1, 2]}'

        ids = await make_survey_chain(service)
        capture = await make_capture(
            service, "modern_captures", ids["stations"], camera_settings=["f/8", 125],
        )
        shown = await service.show("modern_captures", capture)
        assert shown.node.metadata["camera_settings"] == "(f/8,125)"


# ---------------------------------------------------------------------------
# Files around the create transaction
# ---------------------------------------------------------------------------


class TestCreateWithFiles:
    async def test_files_imported_recorded_and_queued(self, db, registry):
        importer = FakeImporter(metadata={"f_stop": "8", "unknown_exif": "x"})
        jobs = FakeJobQueue()
        service = NodeService(db, registry, importer=importer, jobs=jobs)
        ids = await make_survey_chain(service)

        detail = await service.create(
            "modern_captures", ids["stations"], {"fn_photo_reference": "M-1"},
            files=[make_file("a.tif"), make_file("b.tif")],
        )

        [(entity, owner, files)] = importer.received
        assert owner.id == ids["stations"]
        assert entity.get_value("owner_id") == ids["stations"]
        assert entity.get_value("owner_type") == "stations"
        assert [f.filename for f in files] == ["a.tif", "b.tif"]

        assert detail.node.metadata["f_stop"] == 8.0
        assert [f.filename for f in detail.node.files] == ["a.tif", "b.tif"]
        assert jobs.jobs == [(f.id, "modern_captures") for f in detail.node.files]
        assert importer.discarded == []

    async def test_extended_attributes_not_persisted(self, db, registry):
        service = NodeService(db, registry, importer=FakeImporter(), jobs=FakeJobQueue())
        ids = await make_survey_chain(service)
        detail = await service.create(
            "modern_captures", ids["stations"], {}, files=[make_file()],
        )
        assert "owner_id" not in detail.node.metadata

    async def test_rejected_create_never_imports(self, db, registry):
        importer = FakeImporter()
        service = NodeService(db, registry, importer=importer, jobs=FakeJobQueue())
        with pytest.raises(NotFoundError):
            await service.create("modern_captures", 777, {}, files=[make_file()])
        assert importer.received == []

    async def test_failed_transaction_discards_files(self, db, registry, monkeypatch):
        importer = FakeImporter()
        jobs = FakeJobQueue()
        service = NodeService(db, registry, importer=importer, jobs=jobs)
        ids = await make_survey_chain(service)
        before = await _count(db, "nodes")

        async def broken_apply(*args, **kwargs):
            raise ForeignKeyViolationError("owner vanished")

        monkeypatch.setattr(service.engine, "create", broken_apply)
        with pytest.raises(ForeignKeyViolationError):
            await service.create("modern_captures", ids["stations"], {}, files=[make_file()])

        assert len(importer.discarded) == 1
        assert jobs.jobs == []
        assert await _count(db, "nodes") == before

    async def test_discard_failure_is_logged_not_raised(self, db, registry, monkeypatch, caplog):
        importer = FakeImporter(fail_discard=True)
        service = NodeService(db, registry, importer=importer, jobs=FakeJobQueue())
        ids = await make_survey_chain(service)

        async def broken_apply(*args, **kwargs):
            raise ForeignKeyViolationError("owner vanished")

        monkeypatch.setattr(service.engine, "create", broken_apply)
        with caplog.at_level(logging.ERROR, logger="mlp.nodes.service"):
            with pytest.raises(ForeignKeyViolationError):
                await service.create("modern_captures", ids["stations"], {}, files=[make_file()])
        assert "Could not discard" in caplog.text

    async def test_files_without_importer(self, service):
        ids = await make_survey_chain(service)
        with pytest.raises(InvalidRequestError):
            await service.create("modern_captures", ids["stations"], {}, files=[make_file()])


# ---------------------------------------------------------------------------
# Show / new
# ---------------------------------------------------------------------------


class TestShow:
    async def test_type_mismatch_is_not_found(self, service):
        """get(id, 'stations') on a surveys node is NotFound, not the survey."""
        ids = await make_survey_chain(service)
        with pytest.raises(NotFoundError):
            await service.show("stations", ids["surveys"])

    async def test_show_includes_comparisons(self, service):
        ids = await make_survey_chain(service)
        h = await make_capture(service, "historic_captures", ids["stations"], "H-1")
        m = await make_capture(service, "modern_captures", ids["stations"], "M-1")
        await service.update("historic_captures", h, {}, comparisons=[m])
        detail = await service.show("historic_captures", h)
        assert [(c.historic_captures, c.modern_captures) for c in detail.comparisons] == [(h, m)]


class TestNewForm:
    async def test_blank_form(self, service):
        form = await service.new("surveyors")
        assert form.type == "surveyors"
        assert [a.name for a in form.attributes][:3] == ["nodes_id", "given_names", "last_name"]
        assert all(a.value is None for a in form.attributes)
        assert form.owner is None

    async def test_form_with_owner_path(self, service):
        ids = await make_survey_chain(service)
        form = await service.new("stations", ids["survey_seasons"])
        assert form.owner.id == ids["survey_seasons"]
        assert [p.type for p in form.path] == ["surveyors", "surveys", "survey_seasons"]

    async def test_form_with_illegal_owner(self, service):
        ids = await make_survey_chain(service)
        with pytest.raises(InvalidRequestError):
            await service.new("stations", ids["surveyors"])


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdate:
    async def test_merge_keeps_untouched_attributes(self, service):
        ids = await make_survey_chain(service)
        await service.update("stations", ids["stations"], {"lat": "49.1"})
        detail = await service.update("stations", ids["stations"], {"elev": 2100})
        assert detail.node.metadata["lat"] == 49.1
        assert detail.node.metadata["elev"] == 2100.0
        assert detail.node.metadata["name"] == "Station 1"
        assert "updated successfully" in detail.message

    async def test_key_cannot_be_overwritten(self, service):
        ids = await make_survey_chain(service)
        detail = await service.update("stations", ids["stations"], {"nodes_id": 1})
        assert detail.node.id == ids["stations"]
        assert detail.node.metadata["nodes_id"] == ids["stations"]

    async def test_update_wrong_type(self, service):
        ids = await make_survey_chain(service)
        with pytest.raises(NotFoundError):
            await service.update("stations", ids["surveys"], {"name": "X"})

    async def test_historic_anchor_uses_modern_counterparts(self, service):
        ids = await make_survey_chain(service)
        h = await make_capture(service, "historic_captures", ids["stations"], "H-1")
        h2 = await make_capture(service, "historic_captures", ids["stations"], "H-2")
        m = await make_capture(service, "modern_captures", ids["stations"], "M-1")
        detail = await service.update(
            "historic_captures", h, {"comments": "paired"}, comparisons=[m, h2],
        )
        assert [c.modern_captures for c in detail.comparisons] == [m]
        assert detail.node.metadata["comments"] == "paired"

    async def test_update_without_comparisons_leaves_set(self, service):
        ids = await make_survey_chain(service)
        h = await make_capture(service, "historic_captures", ids["stations"], "H-1")
        m = await make_capture(service, "modern_captures", ids["stations"], "M-1")
        await service.update("historic_captures", h, {}, comparisons=[m])
        detail = await service.update("historic_captures", h, {"comments": "again"})
        assert len(detail.comparisons) == 1


# ---------------------------------------------------------------------------
# Move
# ---------------------------------------------------------------------------


class TestMove:
    async def test_unsorted_capture_to_location(self, service):
        """An unsorted modern capture with no comparisons moves to a location and is sorted."""
        ids = await make_survey_chain(service)
        modern = await make_modern_chain(service, ids["stations"])
        m = await make_capture(service, "modern_captures", ids["stations"], "M 1")
        location = await service.show("locations", modern["locations"])

        detail = await service.move("modern_captures", m, modern["locations"])

        node = detail.node.node
        assert node.owner_id == modern["locations"]
        assert node.owner_type == "locations"
        assert node.status == "sorted"
        assert node.fs_path == f"{location.node.node.fs_path}/M_1"
        assert "moved successfully" in detail.message

    async def test_move_after_update_comparisons_is_restricted(self, service, db):
        ids = await make_survey_chain(service)
        modern = await make_modern_chain(service, ids["stations"])
        m = await make_capture(service, "modern_captures", ids["stations"], "M-1")
        h = await make_capture(service, "historic_captures", ids["stations"], "H-1")
        await service.update("modern_captures", m, {}, comparisons=[h])

        with pytest.raises(RestrictedByComparisonsError):
            await service.move("modern_captures", m, modern["locations"])
        assert (await service.show("modern_captures", m)).node.node.owner_id == ids["stations"]

    async def test_masterable_capture_is_invalid_move(self, service, db):
        ids = await make_survey_chain(service)
        modern = await make_modern_chain(service, ids["stations"])
        m = await make_capture(service, "modern_captures", ids["stations"])
        await set_status(db, m, "masterable")
        with pytest.raises(InvalidMoveError):
            await service.move("modern_captures", m, modern["locations"])

    async def test_missing_status_preserved(self, service, db):
        ids = await make_survey_chain(service)
        modern = await make_modern_chain(service, ids["stations"])
        m = await make_capture(service, "modern_captures", ids["stations"])
        await set_status(db, m, "missing")
        detail = await service.move("modern_captures", m, modern["locations"])
        assert detail.node.status == "missing"

    async def test_sorted_capture_back_to_station_becomes_unsorted(self, service):
        ids = await make_survey_chain(service)
        modern = await make_modern_chain(service, ids["stations"])
        m = await make_capture(service, "modern_captures", modern["locations"])
        detail = await service.move("modern_captures", m, ids["stations"])
        assert detail.node.status == "unsorted"

    async def test_illegal_owner_type(self, service):
        ids = await make_survey_chain(service)
        m = await make_capture(service, "modern_captures", ids["stations"])
        with pytest.raises(InvalidMoveError):
            await service.move("modern_captures", m, ids["surveyors"])

    async def test_dependents_reparented_under_new_path(self, service):
        """Moving a station to a project rewrites paths all the way down."""
        ids = await make_survey_chain(service, station_name="Bow")
        modern = await make_modern_chain(service, ids["stations"])
        capture = await make_capture(service, "modern_captures", modern["locations"], "M-1")
        project = await service.create("projects", None, {"name": "Repeat Work"})

        await service.move("stations", ids["stations"], project.node.id)

        station = await service.show("stations", ids["stations"])
        assert station.node.node.fs_path == "projects/Repeat_Work/Bow"
        assert [p.id for p in station.path] == [project.node.id]

        visit = await service.show("modern_visits", modern["modern_visits"])
        location = await service.show("locations", modern["locations"])
        shown = await service.show("modern_captures", capture)
        assert visit.node.node.fs_path == "projects/Repeat_Work/Bow/2008-07-14"
        assert location.node.node.fs_path == "projects/Repeat_Work/Bow/2008-07-14/A"
        assert shown.node.node.fs_path == "projects/Repeat_Work/Bow/2008-07-14/A/M-1"
        assert shown.node.node.owner_id == modern["locations"]
        assert [p.id for p in shown.path][0] == project.node.id

    async def test_move_keeps_fallback_segment(self, service):
        ids = await make_survey_chain(service, station_name="日本")
        project = await service.create("projects", None, {"name": "Repeat Work"})
        detail = await service.move("stations", ids["stations"], project.node.id)
        assert detail.node.node.fs_path == f"projects/Repeat_Work/stations_{ids['stations']}"

    async def test_cannot_move_under_own_dependent(self, service, db):
        ids = await make_survey_chain(service)
        project = await service.create("projects", None, {"name": "Loop"})
        await db.execute(
            "UPDATE nodes SET owner_id = ? WHERE id = ?", (ids["stations"], project.node.id),
        )
        with pytest.raises(InvalidMoveError):
            await service.move("stations", ids["stations"], project.node.id)

    async def test_move_missing_node(self, service):
        ids = await make_survey_chain(service)
        with pytest.raises(NotFoundError):
            await service.move("modern_captures", 5555, ids["stations"])


# ---------------------------------------------------------------------------
# Remove
# ---------------------------------------------------------------------------


class TestRemove:
    async def test_leaf_removed_with_entity_row(self, service, db):
        ids = await make_survey_chain(service)
        m = await make_capture(service, "modern_captures", ids["stations"], "M-1")

        detail = await service.remove("modern_captures", m)

        assert detail.node.id == m
        assert [p.id for p in detail.path][-1] == ids["stations"]
        assert "deleted successfully" in detail.message
        assert await db.fetchone("SELECT id FROM nodes WHERE id = ?", (m,)) is None
        assert await _count(db, "modern_captures") == 0
        with pytest.raises(NotFoundError):
            await service.show("modern_captures", m)

    async def test_node_with_dependents_is_fk_violation(self, service, db):
        """Even with zero comparisons, an owner of dependents can't be deleted."""
        ids = await make_survey_chain(service)
        before = await _count(db, "nodes")
        with pytest.raises(ForeignKeyViolationError):
            await service.remove("survey_seasons", ids["survey_seasons"])
        assert await _count(db, "nodes") == before

    async def test_compared_capture_restricted(self, service, db):
        ids = await make_survey_chain(service)
        h = await make_capture(service, "historic_captures", ids["stations"], "H-1")
        m = await make_capture(service, "modern_captures", ids["stations"], "M-1")
        await service.update("historic_captures", h, {}, comparisons=[m])
        with pytest.raises(RestrictedByComparisonsError):
            await service.remove("historic_captures", h)
        assert await _count(db, "comparisons") == 1

    async def test_clear_comparisons_then_delete(self, service, db):
        ids = await make_survey_chain(service)
        h = await make_capture(service, "historic_captures", ids["stations"], "H-1")
        m = await make_capture(service, "modern_captures", ids["stations"], "M-1")
        await service.update("historic_captures", h, {}, comparisons=[m])

        await service.remove("historic_captures", h, clear_comparisons=True)

        assert await _count(db, "comparisons") == 0
        assert await _count(db, "historic_captures") == 0
        assert (await service.show("modern_captures", m)).comparisons == []

    async def test_remove_wrong_type(self, service):
        ids = await make_survey_chain(service)
        with pytest.raises(NotFoundError):
            await service.remove("stations", ids["surveys"])

    async def test_remove_drops_file_rows(self, db, registry):
        service = NodeService(db, registry, importer=FakeImporter(), jobs=FakeJobQueue())
        ids = await make_survey_chain(service)
        detail = await service.create("modern_captures", ids["stations"], {}, files=[make_file()])
        await service.remove("modern_captures", detail.node.id)
        assert await _count(db, "files") == 0

    async def test_failure_mid_delete_rolls_back(self, service, db, monkeypatch):
        """If a statement fails after comparisons are cleared, the clear is undone too."""
        ids = await make_survey_chain(service)
        h = await make_capture(service, "historic_captures", ids["stations"], "H-1")
        m = await make_capture(service, "modern_captures", ids["stations"], "M-1")
        await service.update("historic_captures", h, {}, comparisons=[m])

        from mlp.db import queries
        from mlp.errors import DatabaseError

        def broken_delete_node(node_id):
            raise DatabaseError("disk I/O error")

        monkeypatch.setattr(queries, "delete_node", broken_delete_node)
        with pytest.raises(DatabaseError):
            await service.remove("historic_captures", h, clear_comparisons=True)

        assert await _count(db, "comparisons") == 1
        assert await _count(db, "historic_captures") == 1
        assert (await service.show("historic_captures", h)).node.id == h


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentOperations:
    async def test_concurrent_creates_on_file_database(self, registry, tmp_path):
        """Operations on different nodes queue for the write lock and all commit."""
        db = await Database.connect(str(tmp_path / "archive.db"), registry=registry, pool_size=4)
        try:
            service = NodeService(db, registry)
            project = await service.create("projects", None, {"name": "Busy"})

            results = await asyncio.gather(
                *(service.create("stations", project.node.id, {"name": f"S{i}"}) for i in range(8)),
                return_exceptions=True,
            )

            assert [r for r in results if isinstance(r, BaseException)] == []
            assert await _count(db, "stations") == 8
        finally:
            await db.close()

    async def test_concurrent_moves_and_creates(self, registry, tmp_path):
        db = await Database.connect(str(tmp_path / "archive.db"), registry=registry, pool_size=4)
        try:
            service = NodeService(db, registry)
            ids = await make_survey_chain(service)
            modern = await make_modern_chain(service, ids["stations"])
            captures = [
                await make_capture(service, "modern_captures", ids["stations"], f"M-{i}")
                for i in range(4)
            ]

            results = await asyncio.gather(
                *(service.move("modern_captures", c, modern["locations"]) for c in captures),
                *(service.create("stations", ids["survey_seasons"], {"name": f"S{i}"}) for i in range(4)),
                return_exceptions=True,
            )

            assert [r for r in results if isinstance(r, BaseException)] == []
            for c in captures:
                assert (await service.show("modern_captures", c)).node.status == "sorted"
        finally:
            await db.close()
