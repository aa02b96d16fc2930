"""
Tests for ObjectService: composed create, ingest, cascade delete and
related-item lookup against a real store directory.
"""

import dataclasses
import logging
import sqlite3

import pytest

from tether.api import ObjectService, RawFile
from tether.config import StoreConfig, save_config
from tether.errors import InvalidFieldError, NotFoundError, StorageIOError, ValidationError
from tether.types import KIND_SPECS, EntityKind


def _place(service, lat=45.0, lng=9.0, title="P1"):
    return service.create_generic("places", {"title": title, "lat": lat, "lng": lng})


def _stored_files(service, directory):
    folder = service.store_path / directory
    return sorted(p.name for p in folder.iterdir()) if folder.exists() else []


# ---------------------------------------------------------------------------
# Generic create
# ---------------------------------------------------------------------------

class TestCreateGeneric:

    def test_create_with_key_values(self, service):
        person = service.create_generic(
            "people", {"title": "Ada"},
            key_values=[("email", "ada@example.com"), ("", "no key"), ("empty", "  "), ("tag", "x")],
        )
        pairs = [(kv.key, kv.value) for kv in service.kv.list(person.ref)]
        assert pairs == [("email", "ada@example.com"), ("tag", "x")]

    def test_link_tokens_best_effort(self, service):
        place = _place(service)
        note = service.create_generic(
            "notes", {"title": "Visit", "content": "bring cake"},
            link_tokens=[place.ref.token, "garbage", "planets:x", "people:missing", place.ref.token],
        )
        assert service.graph.neighbors(note.ref) == {place.ref}

    def test_kind_accepts_aliases(self, service):
        todo = service.create_generic("todo", {"title": "Call"})
        assert todo.kind is EntityKind.TODO
        assert todo.fields["status"] == "incomplete"

    def test_unknown_kind(self, service):
        with pytest.raises(ValidationError):
            service.create_generic("planets", {"title": "Mars"})

    def test_file_kinds_rejected(self, service):
        with pytest.raises(ValidationError, match="create_images"):
            service.create_generic("images", {"title": "x.jpg", "storage_path": "images/x.jpg"})

    def test_failed_create_leaves_nothing(self, service):
        with pytest.raises(ValidationError):
            service.create_generic("places", {"title": "No coords"}, key_values=[("k", "v")])
        assert service.entities.count_all() == 0


# ---------------------------------------------------------------------------
# Image ingest
# ---------------------------------------------------------------------------

class TestCreateImages:

    def test_gps_attaches_to_nearby_place(self, service, make_image):
        p1 = _place(service, 45.000000, 9.000000)
        raw = RawFile("IMG_0001.jpg", make_image(gps=(45.000010, 9.000010)))

        result = service.create_images([raw])

        assert len(result.created) == 1
        assert result.places == []
        image = result.created[0]
        assert service.graph.neighbors(image.ref) == {p1.ref}
        assert service.entities.count(EntityKind.PLACE) == 1

    def test_gps_creates_place_when_none_exist(self, service, make_image):
        result = service.create_images([RawFile("holiday.png", make_image("PNG", gps=(46.0, 9.0)))])

        assert len(result.places) == 1
        place = result.places[0]
        assert place.title == "holiday.jpg"
        assert place.fields["lat"] == pytest.approx(46.0, abs=1e-6)
        assert place.fields["lng"] == pytest.approx(9.0, abs=1e-6)
        assert service.graph.neighbors(result.created[0].ref) == {place.ref}
        assert [e.ref for e in result.entities] == [result.created[0].ref, place.ref]

    def test_image_stored_under_images(self, service, make_image):
        result = service.create_images(
            [RawFile("a.jpg", make_image(original="2024:05:01 10:00:00"))]
        )
        image = result.created[0]
        storage_path = image.fields["storage_path"]
        assert storage_path.startswith("images/2024-05-01-")
        assert storage_path.endswith(".jpg")
        assert (service.store_path / storage_path).is_file()
        assert image.title == "a.jpg"

    def test_no_gps_no_place(self, service, make_image):
        result = service.create_images([RawFile("a.jpg", make_image())])
        assert result.places == []
        assert service.graph.neighbors(result.created[0].ref) == set()

    def test_bad_file_is_skipped(self, service, make_image, caplog):
        files = [
            RawFile("good1.jpg", make_image()),
            RawFile("broken.jpg", b"not an image"),
            RawFile("good2.png", make_image("PNG")),
        ]
        with caplog.at_level(logging.WARNING, logger="tether.api"):
            result = service.create_images(files)

        assert [e.title for e in result.created] == ["good1.jpg", "good2.jpg"]
        assert result.failed == ["broken.jpg"]
        assert len(_stored_files(service, "images")) == 2
        assert "broken.jpg" in caplog.text

    def test_two_photos_same_spot_share_one_place(self, service, make_image):
        files = [
            RawFile("a.jpg", make_image(gps=(46.0, 9.0))),
            RawFile("b.jpg", make_image(gps=(46.0000100, 9.0000100))),
        ]
        result = service.create_images(files)
        assert len(result.places) == 1
        place = result.places[0]
        for image in result.created:
            assert service.graph.neighbors(image.ref) == {place.ref}

    def test_link_tokens_applied_to_every_image(self, service, make_image):
        person = service.create_generic("people", {"title": "Ada"})
        result = service.create_images(
            [RawFile("a.jpg", make_image()), RawFile("b.jpg", make_image())],
            link_tokens=[person.ref.token],
        )
        assert service.graph.neighbors(person.ref) == {e.ref for e in result.created}

    def test_database_failure_removes_written_file(self, service, make_image, monkeypatch):
        def fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(service.entities, "create", fail)
        with pytest.raises(sqlite3.OperationalError):
            service.create_images([RawFile("a.jpg", make_image())])
        assert _stored_files(service, "images") == []

    def test_failed_cleanup_keeps_database_error(self, service, make_image, monkeypatch, caplog):
        def fail_create(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        def fail_remove(storage_path):
            raise StorageIOError(f"Failed to remove {storage_path}")

        monkeypatch.setattr(service.entities, "create", fail_create)
        monkeypatch.setattr(service.files, "remove", fail_remove)
        with caplog.at_level(logging.ERROR, logger="tether.api"):
            with pytest.raises(sqlite3.OperationalError):
                service.create_images([RawFile("a.jpg", make_image())])
        assert "Orphaned images/" in caplog.text


# ---------------------------------------------------------------------------
# File ingest
# ---------------------------------------------------------------------------

class TestCreateFiles:

    def test_files_stored_untouched(self, service):
        person = service.create_generic("people", {"title": "Ada"})
        result = service.create_files(
            [RawFile("Report.pdf", b"%PDF-1.4 body")], link_tokens=[person.ref.token]
        )
        entity = result.created[0]
        assert entity.kind is EntityKind.FILE
        assert entity.title == "Report.pdf"
        path = entity.fields["storage_path"]
        assert path.startswith("files/2024-06-01-") and path.endswith(".pdf")
        assert (service.store_path / path).read_bytes() == b"%PDF-1.4 body"
        assert service.graph.neighbors(entity.ref) == {person.ref}


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

class TestDelete:

    def test_cascade_removes_links_and_key_values(self, service):
        a = service.create_generic("people", {"title": "A"})
        b = service.create_generic("notes", {"title": "B"})
        c = service.create_generic("todos", {"title": "C"})
        service.link(a.ref, b.ref)
        service.link(b.ref, c.ref)
        service.add_kv("notes", b.id, "k1", "v1")
        service.add_kv("notes", b.id, "k2", "v2")

        service.delete_entity("notes", b.id)

        assert not service.entities.exists(EntityKind.NOTE, b.id)
        assert service.kv.list(b.ref) == []
        assert service.graph.neighbors(a.ref) == set()
        assert service.graph.neighbors(c.ref) == set()
        assert service.graph.edge_count() == 0
        assert service.get("people", a.id).title == "A"
        assert service.get("todos", c.id).title == "C"

    def test_delete_image_removes_file(self, service, make_image):
        image = service.create_images([RawFile("a.jpg", make_image())]).created[0]
        path = service.store_path / image.fields["storage_path"]
        assert path.exists()

        service.delete_entity("images", image.id)
        assert not path.exists()
        assert not service.entities.exists(EntityKind.IMAGE, image.id)

    def test_delete_tolerates_missing_file(self, service, make_image):
        image = service.create_images([RawFile("a.jpg", make_image())]).created[0]
        (service.store_path / image.fields["storage_path"]).unlink()
        service.delete_entity("images", image.id)
        assert not service.entities.exists(EntityKind.IMAGE, image.id)

    def test_delete_missing_entity(self, service):
        with pytest.raises(NotFoundError):
            service.delete_entity("notes", "missing")


# ---------------------------------------------------------------------------
# Related items
# ---------------------------------------------------------------------------

class TestFetchWithRelated:

    def test_two_hop_summaries(self, service):
        a = service.create_generic("people", {"title": "Ada"})
        b = service.create_generic("notes", {"title": "Meeting", "content": "agenda"})
        c = _place(service, title="Office")
        d = service.create_generic("todos", {"title": "Follow up"})
        service.link(a.ref, b.ref)
        service.link(b.ref, c.ref)
        service.link(c.ref, d.ref)
        service.add_kv("people", a.id, "role", "engineer")

        details = service.fetch_with_related("people", a.id)

        assert details.entity.id == a.id
        assert [(kv.key, kv.value) for kv in details.key_values] == [("role", "engineer")]
        assert details.related == [
            {"kind": "notes", "id": b.id, "title": "Meeting", "content": "agenda"},
            {"kind": "places", "id": c.id, "title": "Office"},
        ]

    def test_depth_override(self, service):
        a = service.create_generic("people", {"title": "A"})
        b = service.create_generic("people", {"title": "B"})
        c = service.create_generic("people", {"title": "C"})
        service.link(a.ref, b.ref)
        service.link(b.ref, c.ref)
        assert [s["id"] for s in service.fetch_with_related("people", a.id, depth=1).related] == [b.id]

    def test_kind_without_summary_is_omitted(self, service, monkeypatch):
        monkeypatch.setitem(
            KIND_SPECS,
            EntityKind.PERSON,
            dataclasses.replace(KIND_SPECS[EntityKind.PERSON], summary_fields=None),
        )
        place = _place(service, title="Office")
        person = service.create_generic("people", {"title": "Ada"})
        note = service.create_generic("notes", {"title": "Minutes"})
        service.link(place.ref, person.ref)
        service.link(place.ref, note.ref)

        related = service.fetch_with_related("places", place.id).related

        assert [(s["kind"], s["id"]) for s in related] == [("notes", note.id)]
        assert service.graph.neighbors(place.ref) == {person.ref, note.ref}

    def test_missing_entity(self, service):
        with pytest.raises(NotFoundError):
            service.fetch_with_related("people", "missing")

    def test_to_dict(self, service):
        todo = service.create_generic("todos", {"title": "T"}, key_values=[("k", "v")])
        data = service.fetch_with_related("todos", todo.id).to_dict()
        assert data["title"] == "T"
        assert data["status"] == "incomplete"
        assert data["key_values"][0]["key"] == "k"
        assert data["related"] == []


# ---------------------------------------------------------------------------
# Links, key-values, patching
# ---------------------------------------------------------------------------

class TestPassThroughs:

    def test_link_then_unlink(self, service):
        a = service.create_generic("people", {"title": "A"})
        b = service.create_generic("notes", {"title": "B"})
        assert service.link(a.ref.token, b.ref.token)
        assert not service.link(b.ref.token, a.ref.token)
        assert service.unlink(a.ref.token, b.ref.token)
        assert service.graph.neighbors(a.ref) == set()

    def test_self_link_ignored(self, service):
        a = service.create_generic("people", {"title": "A"})
        assert not service.link(a.ref, a.ref)
        assert service.graph.neighbors(a.ref) == set()

    def test_link_validation(self, service):
        a = service.create_generic("people", {"title": "A"})
        with pytest.raises(ValidationError):
            service.link(a.ref.token, "not-a-token")
        with pytest.raises(NotFoundError):
            service.link(a.ref.token, "notes:missing")

    def test_key_value_lifecycle(self, service):
        a = service.create_generic("people", {"title": "A"})
        pair = service.add_kv("people", a.id, " phone ", "555")
        assert pair.key == "phone"

        updated = service.update_kv(pair.id, "mobile", "556")
        assert (updated.key, updated.value) == ("mobile", "556")
        assert service.kv_keys() == ["mobile"]

        service.delete_kv(pair.id)
        assert service.kv.list(a.ref) == []
        with pytest.raises(NotFoundError):
            service.delete_kv(pair.id)

    def test_key_value_validation(self, service):
        a = service.create_generic("people", {"title": "A"})
        with pytest.raises(ValidationError):
            service.add_kv("people", a.id, "  ", "v")
        with pytest.raises(NotFoundError):
            service.add_kv("people", "missing", "k", "v")

    def test_update_field(self, service):
        todo = service.create_generic("todos", {"title": "T"})
        assert service.update_field("todos", todo.id, "status", "complete") == "complete"
        assert service.get("todos", todo.id).fields["status"] == "complete"
        with pytest.raises(InvalidFieldError):
            service.update_field("todos", todo.id, "content", "x")

    def test_list_with_type_filter(self, service):
        service.create_generic("custom_objects", {"title": "Oak", "object_type": "Tree", "mood": 1})
        service.create_generic("custom_objects", {"title": "Rex", "object_type": "dog", "mood": 2})
        assert [e.title for e in service.list("custom_objects", types=["tree"])] == ["Oak"]
        assert service.custom_object_types() == ["dog", "tree"]

    def test_search_and_recent(self, service, clock):
        service.create_generic("notes", {"title": "Garden plans"})
        clock.advance(5)
        service.create_generic("people", {"title": "Bob"})
        assert [e.title for e in service.search("garden")] == ["Garden plans"]
        assert [e.title for e in service.recent()] == ["Bob", "Garden plans"]

    def test_bootstrap(self, service):
        assert service.bootstrap() == {"places": [], "has_objects": False}
        service.create_generic("people", {"title": "A"})
        assert service.bootstrap()["has_objects"] is True
        place = _place(service)
        assert [p.id for p in service.bootstrap()["places"]] == [place.id]


# ---------------------------------------------------------------------------
# Store lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_store_directory_layout(self, service):
        assert (service.store_path / "tether.toml").exists()
        assert (service.store_path / "tether.db").exists()
        assert (service.store_path / "tether-ops.log").exists()

    def test_data_persists_across_instances(self, store_path):
        with ObjectService(store_path) as first:
            note = first.create_generic("notes", {"title": "kept"})
        with ObjectService(store_path) as second:
            assert second.get("notes", note.id).title == "kept"

    def test_configured_tolerance_and_depth(self, store_path, make_image):
        save_config(StoreConfig(path=store_path, geo_tolerance_km=500, expand_depth=1))
        with ObjectService(store_path) as svc:
            place = _place(svc, 45.0, 9.0)
            result = svc.create_images([RawFile("far.jpg", make_image(gps=(46.0, 9.0)))])
            assert result.places == []
            assert svc.graph.neighbors(result.created[0].ref) == {place.ref}
            assert svc.graph.default_depth == 1

    def test_injected_config(self, tmp_path):
        config = StoreConfig(path=tmp_path / "injected", expand_depth=3)
        with ObjectService(config=config) as svc:
            assert svc.config is config
            assert svc.graph.default_depth == 3

    def test_close_detaches_ops_log(self, store_path):
        svc = ObjectService(store_path)
        handler = svc._ops_log_handler
        assert handler in logging.getLogger("tether").handlers
        svc.close()
        assert handler not in logging.getLogger("tether").handlers
        svc.close()
