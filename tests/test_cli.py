"""CLI tests using click's CliRunner."""

from click.testing import CliRunner

from chatvault.cli import cli


def _import(runner, export_zip, dataset_dir, *extra):
    return runner.invoke(cli, ["import", str(export_zip), "--out", str(dataset_dir), *extra])


def test_import_search_stats_delete(export_zip, dataset_dir):
    runner = CliRunner()

    result = _import(runner, export_zip, dataset_dir, "--mode", "replace")
    assert result.exit_code == 0, result.output
    assert "Import complete" in result.output
    assert "Conversations in total: 10" in result.output

    result = runner.invoke(cli, ["search", "quick brown", "--data", str(dataset_dir), "--limit", "3"])
    assert result.exit_code == 0, result.output
    assert result.output.count("quick brown") == 3

    result = runner.invoke(cli, ["stats", "--data", str(dataset_dir)])
    assert result.exit_code == 0, result.output
    assert "Conversations:  10" in result.output
    assert "Assets:         11" in result.output

    result = runner.invoke(cli, ["delete", "conv-3", "--data", str(dataset_dir)])
    assert result.exit_code == 0, result.output
    result = runner.invoke(cli, ["stats", "--data", str(dataset_dir)])
    assert "Conversations:  9" in result.output


def test_sqlite_store_option(export_zip, tmp_path):
    runner = CliRunner()
    db_path = tmp_path / "vault.db"
    result = _import(runner, export_zip, db_path, "--store", "sqlite")
    assert result.exit_code == 0, result.output
    result = runner.invoke(cli, ["search", "harbor", "--data", str(db_path), "--store", "sqlite"])
    assert result.exit_code == 0
    assert "Conversation number" in result.output


def test_invalid_mode_exits_with_error(export_zip, dataset_dir):
    result = _import(CliRunner(), export_zip, dataset_dir, "--mode", "overwrite")
    assert result.exit_code == 1
    assert "Unknown import mode" in result.output


def test_no_matching_archives(tmp_path):
    result = CliRunner().invoke(cli, ["import", str(tmp_path / "*.zip"), "--out", str(tmp_path / "ds")])
    assert result.exit_code == 1
    assert "No export archives" in result.output


def test_delete_unknown_conversation(export_zip, dataset_dir):
    runner = CliRunner()
    _import(runner, export_zip, dataset_dir)
    result = runner.invoke(cli, ["delete", "nope", "--data", str(dataset_dir)])
    assert result.exit_code == 1
    assert "Conversation not found" in result.output


def test_search_without_dataset(tmp_path):
    result = CliRunner().invoke(cli, ["search", "anything", "--data", str(tmp_path / "missing")])
    assert result.exit_code == 1
    assert "No dataset found" in result.output


def test_reset(export_zip, dataset_dir):
    runner = CliRunner()
    _import(runner, export_zip, dataset_dir)
    result = runner.invoke(cli, ["reset", "--data", str(dataset_dir), "--yes"])
    assert result.exit_code == 0
    assert not dataset_dir.exists()


def test_export_then_import_into_other_backend(export_zip, tmp_path):
    runner = CliRunner()
    db_path = tmp_path / "vault.db"
    _import(runner, export_zip, db_path, "--store", "sqlite", "--mode", "replace")

    backup = tmp_path / "backup.zip"
    result = runner.invoke(cli, ["export", str(backup), "--data", str(db_path), "--store", "sqlite"])
    assert result.exit_code == 0, result.output
    assert "Exported 10 conversations" in result.output

    restored = tmp_path / "restored"
    result = _import(runner, backup, restored, "--store", "directory")
    assert result.exit_code == 0, result.output
    result = runner.invoke(cli, ["stats", "--data", str(restored), "--store", "directory"])
    assert "Conversations:  10" in result.output
    assert "Assets:         11" in result.output
