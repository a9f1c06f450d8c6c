"""Tests for archive ingestion and the batch import entry point."""

import json
import zipfile
from pathlib import Path

import pytest
from helpers import BASE_TIME, build_export, chat_html, image_message, linear_graph, text_message, write_zip

from chatvault import pipeline
from chatvault.errors import ArchiveError, DestinationError, ImportInProgressError, InvalidModeError
from chatvault.importer import extract_marked_json, load_zip_entries, parse_export_archives, read_archive
from chatvault.pipeline import discover_sources, import_datasets
from chatvault.storage import DirectoryStore, SqliteStore, open_store


class TestMarkedJson:
    def test_brackets_inside_strings_do_not_end_literal(self):
        html = 'var jsonData = [{"title": "a ] tricky } \\" one", "n": [1, [2]]}]; var other = [];'
        assert extract_marked_json(html, "var jsonData", "[") == [{"title": 'a ] tricky } " one', "n": [1, [2]]}]

    def test_object_marker(self):
        html = 'x; var assetsJson = {"p": {"file_path": "a{b}.png"}};'
        assert extract_marked_json(html, "var assetsJson", "{") == {"p": {"file_path": "a{b}.png"}}

    def test_missing_or_unterminated(self):
        assert extract_marked_json("<html></html>", "var jsonData", "[") is None
        assert extract_marked_json('var jsonData = [{"a": 1}', "var jsonData", "[") is None


class TestReadArchive:
    def test_zip_with_chat_html(self, export_zip):
        archive = read_archive(export_zip)
        assert len(archive.conversations) == 10
        assert archive.assets_index["file-service://file-img0"] == "file-img0-photo.png"

    def test_conversations_json_fallback(self, tmp_path):
        graph = linear_graph("c1", "Fallback", [text_message("m1", "user", "from json")])
        path = write_zip(tmp_path / "fallback.zip", {"conversations.json": json.dumps([graph])})
        archive = read_archive(path)
        assert [c["id"] for c in archive.conversations] == ["c1"]
        assert archive.assets_index == {}

    def test_extracted_directory(self, tmp_path):
        root = tmp_path / "export"
        root.mkdir()
        graph = linear_graph("c1", "Dir", [text_message("m1", "user", "from a folder")])
        (root / "conversations.json").write_text(json.dumps([graph]))
        assert len(read_archive(root).conversations) == 1

    def test_archive_without_graph_data_is_skipped(self, tmp_path):
        path = write_zip(tmp_path / "empty.zip", {"readme.txt": "nothing here"})
        assert read_archive(path) is None

    def test_unsafe_members_are_not_loaded(self, tmp_path):
        path = write_zip(tmp_path / "evil.zip", {"../escape.png": b"x", "ok.png": b"y"})
        assert load_zip_entries(path) == {"ok.png": b"y"}

    def test_corrupt_zip_raises_archive_error(self, tmp_path):
        path = tmp_path / "broken.zip"
        path.write_bytes(b"PK\x03\x04 definitely not a zip")
        with pytest.raises(ArchiveError):
            load_zip_entries(path)


class TestParseExportArchives:
    def test_bundle_contents(self, export_zip):
        bundle = parse_export_archives([export_zip])
        assert len(bundle.conversations) == 10
        assert "file-img3-photo.png" in bundle.assets
        assert bundle.asset_mime["file-img3-photo.png"] == "image/png"
        assert bundle.extras.user["id"] == "user-abc123"
        assert [a.path for a in bundle.extras.generated_assets] == ["user-abc123/file_gen01-sunset.png"]
        assert "user-abc123/file_gen01-sunset.png" in bundle.assets

    def test_progress_events(self, export_zip):
        events = []
        parse_export_archives([export_zip], on_progress=events.append)
        phases = [e.phase for e in events]
        assert phases[0] == "archive-start"
        assert phases[-1] == "archive-complete"
        assert phases.count("archive-assets") == 11
        conversion = [e for e in events if e.phase == "archive-conversations"]
        assert conversion[0].conversations_processed == 0
        assert conversion[-1].conversations_processed == 10
        # ten conversation images plus the generated gallery image
        assert events[-1].assets_processed == 11

    def test_failing_progress_callback_does_not_abort(self, export_zip):
        def explode(progress):
            raise RuntimeError("ui went away")

        assert len(parse_export_archives([export_zip], on_progress=explode).conversations) == 10

    def test_duplicates_across_archives_keep_newest(self, tmp_path):
        older = linear_graph("dup", "Old", [text_message("m1", "user", "old text", BASE_TIME)])
        newer = linear_graph("dup", "New", [text_message("m1", "user", "new text", BASE_TIME + 100)])
        first = write_zip(tmp_path / "a.zip", {"chat.html": chat_html([newer], {})})
        second = write_zip(tmp_path / "b.zip", {"chat.html": chat_html([older], {})})
        bundle = parse_export_archives([first, second])
        assert [p.conversation.title for p in bundle.conversations] == ["New"]

    def test_bad_archive_is_skipped(self, tmp_path, export_zip):
        junk = write_zip(tmp_path / "junk.zip", {"readme.txt": "no chats"})
        bundle = parse_export_archives([junk, export_zip])
        assert bundle.archives_total == 2
        assert bundle.archives_skipped == 1
        assert len(bundle.conversations) == 10

    def test_skipped_archive_still_completes(self, tmp_path, export_zip):
        junk = write_zip(tmp_path / "junk.zip", {"readme.txt": "no chats"})
        events = []
        parse_export_archives([junk, export_zip], on_progress=events.append)
        junk_phases = [e.phase for e in events if e.archive_index == 1]
        assert junk_phases == ["archive-start", "archive-complete"]
        assert [e.phase for e in events].count("archive-complete") == 2


class TestImportDatasets:
    def test_replace_then_clone_scenario(self, export_zip, dataset_dir):
        result = import_datasets([str(export_zip)], dataset_dir, mode="replace")
        assert result.conversations == 10
        assert result.assets > 0

        result = import_datasets([str(export_zip)], dataset_dir, mode="clone")
        assert result.conversations == 20
        with DirectoryStore(dataset_dir) as store:
            ids = list(store.load_summaries())
        assert len(set(ids)) == 20
        assert "conv-0_v2" in ids
        cloned = [i for i in ids if i.endswith("_v2")]
        assert len(cloned) == 10

    def test_upsert_is_idempotent(self, export_zip, dataset_dir):
        first = import_datasets([str(export_zip)], dataset_dir, mode="upsert")
        second = import_datasets([str(export_zip)], dataset_dir, mode="upsert")
        assert first.conversations == second.conversations == 10
        assert first.assets == second.assets == 11
        assert second.assets_written == 0

    def test_sqlite_backend(self, export_zip, tmp_path):
        db_path = tmp_path / "vault.db"
        result = import_datasets([str(export_zip)], db_path, mode="upsert", store_kind="sqlite")
        assert result.conversations == 10
        with SqliteStore(db_path) as store:
            hits = store.search_index().search("quick brown fox")
        assert len(hits) == 10

    def test_traversal_asset_never_escapes(self, tmp_path):
        pointer = "file-service://file-esc"
        graph = linear_graph("esc", "Escape", [image_message("m1", pointer, "see attached", BASE_TIME)])
        archive = write_zip(
            tmp_path / "crafted.zip",
            {"chat.html": chat_html([graph], {pointer: "../escape.png"}), "../escape.png": b"evil"},
        )
        out = tmp_path / "out"
        result = import_datasets([str(archive)], out / "dataset", mode="replace")
        assert result.conversations == 1
        assert result.assets == 0
        assert not (out / "escape.png").exists()
        assert not (tmp_path / "escape.png").exists()

    def test_sqlite_export_reimports_into_directory(self, export_zip, tmp_path):
        db_path = tmp_path / "vault.db"
        import_datasets([str(export_zip)], db_path, mode="replace", store_kind="sqlite")
        backup = tmp_path / "backup.zip"
        with SqliteStore(db_path) as store:
            assert store.export_zip(backup) == 10

        target = tmp_path / "restored"
        result = import_datasets([str(backup)], target, mode="upsert")
        assert result.conversations == 10
        assert result.assets == 11
        with DirectoryStore(target) as restored:
            assert restored.get_asset("file-img3-photo.png") == b"\x89PNG fake image 3"
            assert restored.get_conversation("conv-4").assets_map == {"file-service://file-img4": "file-img4-photo.png"}
            assert len(restored.search_index().search("quick brown fox")) == 10
            extras = restored.load_extras()
            assert extras.user["id"] == "user-abc123"
            assert [a.path for a in extras.generated_assets] == ["user-abc123/file_gen01-sunset.png"]
            assert restored.get_asset("user-abc123/file_gen01-sunset.png") == b"\x89PNG generated"

        again = import_datasets([str(backup)], target, mode="upsert")
        assert again.conversations == 10
        assert again.assets_written == 0

    def test_invalid_mode(self, export_zip, dataset_dir):
        with pytest.raises(InvalidModeError):
            import_datasets([str(export_zip)], dataset_dir, mode="overwrite")

    def test_no_sources(self, tmp_path):
        with pytest.raises(ArchiveError):
            import_datasets([str(tmp_path / "*.zip")], tmp_path / "out")

    def test_no_conversations(self, tmp_path):
        junk = write_zip(tmp_path / "junk.zip", {"readme.txt": "nothing"})
        with pytest.raises(ArchiveError):
            import_datasets([str(junk)], tmp_path / "out")

    def test_unwritable_destination(self, export_zip, tmp_path):
        occupied = tmp_path / "occupied"
        occupied.write_text("file, not a folder")
        with pytest.raises(DestinationError):
            import_datasets([str(export_zip)], occupied)

    def test_concurrent_job_rejected(self, export_zip, dataset_dir):
        assert pipeline._job_lock.acquire(blocking=False)
        try:
            with pytest.raises(ImportInProgressError):
                import_datasets([str(export_zip)], dataset_dir)
        finally:
            pipeline._job_lock.release()

    def test_discover_sources_dedupes(self, export_zip, tmp_path):
        pattern = str(tmp_path / "*.zip")
        assert discover_sources([pattern, str(export_zip)]) == [export_zip.resolve()]


def test_zip_member_limit(tmp_path, monkeypatch):
    import chatvault.importer as importer

    monkeypatch.setattr(importer, "MAX_ZIP_MEMBERS", 1)
    path = write_zip(tmp_path / "many.zip", {"a.txt": "a", "b.txt": "b"})
    with pytest.raises(ArchiveError):
        load_zip_entries(path)


def test_special_members_are_skipped(tmp_path):
    path = tmp_path / "link.zip"
    with zipfile.ZipFile(path, "w") as zf:
        link = zipfile.ZipInfo("link.png")
        link.external_attr = (0o120777 << 16)
        zf.writestr(link, "/etc/passwd")
        zf.writestr("real.png", b"data")
    assert list(load_zip_entries(Path(path))) == ["real.png"]


@pytest.mark.parametrize("store_kind", ["directory", "sqlite"])
def test_odd_conversation_ids_do_not_abort_import(tmp_path, store_kind):
    graphs = [
        linear_graph(odd, "Odd", [text_message(f"m-{n}", "user", "odd one", BASE_TIME)])
        for n, odd in enumerate([".", "C:odd"])
    ]
    graphs.append(linear_graph("good", "Good", [text_message("m-good", "user", "good one", BASE_TIME)]))
    archive = write_zip(tmp_path / "odd.zip", {"chat.html": chat_html(graphs, {})})
    target = tmp_path / ("ds.db" if store_kind == "sqlite" else "ds")

    result = import_datasets([str(archive)], target, mode="upsert", store_kind=store_kind)

    assert result.complete
    assert result.conversations == result.conversations_written == 1
    with open_store(store_kind, target) as store:
        assert list(store.load_summaries()) == ["good"]
