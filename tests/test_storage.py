"""Tests for the directory and SQLite dataset stores."""

import json
import zipfile

import pytest
from helpers import make_payload

from chatvault.errors import DestinationError
from chatvault.models import ExtraData, GeneratedAsset
from chatvault.storage import DirectoryStore, SqliteStore, open_store


@pytest.fixture(params=["directory", "sqlite"])
def store(request, tmp_path):
    location = tmp_path / ("ds" if request.param == "directory" else "ds.db")
    s = open_store(request.param, location)
    yield s
    s.close()


def test_write_read_and_search(store):
    store.write_conversation(make_payload("a", 100))
    store.write_conversation(make_payload("b", 200))
    store.commit()

    assert list(store.load_summaries()) == ["b", "a"]
    assert store.get_summary("a").saved_at is not None
    assert store.get_conversation("a").title == "Title a"
    assert store.get_conversation("zzz") is None

    hits = store.search_index().search("hello world")
    assert [h.conversation_id for h in hits] == ["b", "a"]


def test_rewrite_replaces_search_data(store):
    store.write_conversation(make_payload("a", 100))
    store.write_conversation(make_payload("a", 300))
    bundle = store.load_search_bundle()
    assert len(bundle.lines_by_conversation["a"]) == 1
    assert bundle.summary_map["a"].last_message_time == 300
    assert bundle.grams["hel"] == ["a"]


def test_delete_removes_search_data_and_orphaned_assets(store):
    store.write_conversation(make_payload("a", 1, assets=["shared.png", "only-a.png"]))
    store.write_conversation(make_payload("b", 1, assets=["shared.png"]))
    assert store.save_asset("shared.png", b"s", "a")
    assert not store.save_asset("shared.png", b"s", "b")
    assert store.save_asset("only-a.png", b"o", "a")
    handle = store.open_asset("only-a.png")
    assert handle.read_bytes() == b"o"

    assert store.delete_conversation("a")
    assert not store.delete_conversation("a")

    assert store.get_conversation("a") is None
    assert store.get_asset("only-a.png") is None
    assert store.get_asset("shared.png") == b"s"
    assert not handle.exists()
    bundle = store.load_search_bundle()
    assert "a" not in bundle.lines_by_conversation
    assert bundle.grams["hel"] == ["b"]


def test_extras_round_trip_and_removal(store):
    gallery = [GeneratedAsset(path="user-1/gen.png", file_name="gen.png", size=3, mime="image/png")]
    store.save_asset("user-1/gen.png", b"gen", "__generated_gallery__")
    store.save_extras(ExtraData(user={"id": "user-1"}, generated_assets=gallery))
    extras = store.load_extras()
    assert extras.user == {"id": "user-1"}
    assert extras.generated_assets[0].path == "user-1/gen.png"

    store.save_extras(ExtraData())
    assert store.load_extras() == ExtraData()
    assert store.get_asset("user-1/gen.png") is None


def test_purge_empties_everything(store):
    store.write_conversation(make_payload("a", 1, assets=["x.png"]))
    store.save_asset("x.png", b"x", "a")
    store.save_extras(ExtraData(user={"id": "u"}))
    store.purge()
    store.commit()
    assert store.load_summaries() == {}
    assert store.asset_count() == 0
    assert store.load_extras() == ExtraData()
    assert store.get_stats()["total_conversations"] == 0


def test_stats(store):
    store.write_conversation(make_payload("a", 1_700_000_000_000))
    stats = store.get_stats()
    assert stats["total_conversations"] == 1
    assert stats["indexed_lines"] == 1
    assert stats["distinct_grams"] == 9
    assert stats["date_range_start"] == "2023-11-14"


def test_directory_layout(tmp_path):
    root = tmp_path / "ds"
    with DirectoryStore(root) as store:
        store.write_conversation(make_payload("a", 5))
        store.save_asset("img/a.png", b"png", "a")
        store.save_extras(ExtraData(user={"id": "u"}))

    assert json.loads((root / "conversations.json").read_text())[0]["id"] == "a"
    assert json.loads((root / "conversations" / "a" / "conversation.json").read_text())["schema_version"] == 1
    index = json.loads((root / "search_index.json").read_text())
    assert set(index) == {"grams", "lines_by_conversation", "summary_map"}
    assert (root / "assets" / "img" / "a.png").exists()
    assert (root / "user.json").exists()
    assert not (root / "generated_files.json").exists()

    with DirectoryStore(root) as reopened:
        assert list(reopened.load_summaries()) == ["a"]
        assert reopened.search_index().search("hello") != []


def test_directory_store_rejects_file_destination(tmp_path):
    target = tmp_path / "occupied"
    target.write_text("not a directory")
    with pytest.raises(DestinationError):
        DirectoryStore(target)


def test_sqlite_store_rejects_directory_destination(tmp_path):
    with pytest.raises(DestinationError):
        SqliteStore(tmp_path)


def test_close_disposes_handles(tmp_path):
    store = SqliteStore(tmp_path / "ds.db")
    store.save_asset("a.png", b"a", "owner")
    handle = store.open_asset("a.png")
    assert handle.exists()
    store.close()
    assert not handle.exists()


def test_sqlite_asset_mime(tmp_path):
    with SqliteStore(tmp_path / "ds.db") as store:
        assert store.save_asset("pics/a.png", b"a", "owner")
        assert not store.save_asset("pics/a.png", b"a", "other")
        store.save_asset("blob", b"b", "owner", mime="application/x-custom")
        assert store.get_asset_mime("pics/a.png") == "image/png"
        assert store.get_asset_mime("blob") == "application/x-custom"
        assert store.get_asset_mime("missing") is None


@pytest.mark.parametrize("odd_id", [".", "C:odd", "../up"])
def test_unsafe_conversation_id_is_skipped(store, odd_id):
    assert store.write_conversation(make_payload(odd_id, 1)) is False
    assert store.write_conversation(make_payload("good", 2)) is True
    store.commit()
    assert list(store.load_summaries()) == ["good"]


def test_export_zip_uses_directory_layout(store, tmp_path):
    store.write_conversation(make_payload("a", 1, assets=["pics/x.png"]))
    store.save_asset("pics/x.png", b"x", "a")
    store.save_extras(ExtraData(user={"id": "user-1"}))
    store.commit()

    target = tmp_path / "export.zip"
    assert store.export_zip(target) == 1
    with zipfile.ZipFile(target) as zf:
        names = set(zf.namelist())
        assert {
            "conversations.json",
            "conversations/a/conversation.json",
            "assets/pics/x.png",
            "search_index.json",
            "user.json",
        } <= names
        assert [s["id"] for s in json.loads(zf.read("conversations.json"))] == ["a"]
        assert zf.read("assets/pics/x.png") == b"x"
        assert json.loads(zf.read("user.json")) == {"id": "user-1"}
