from __future__ import annotations

from pathlib import Path

import pytest

from helpers import build_export


@pytest.fixture
def export_zip(tmp_path: Path) -> Path:
    """A 10-conversation export archive with one image per conversation."""
    return build_export(tmp_path / "export.zip")


@pytest.fixture
def dataset_dir(tmp_path: Path) -> Path:
    return tmp_path / "out" / "dataset"
