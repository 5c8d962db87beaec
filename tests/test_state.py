"""Tests for head record persistence."""

import json

import pytest

from pydeconfig.sync.state import HeadRecord, HeadStateManager


@pytest.fixture
def manager(tmp_path):
    return HeadStateManager(tmp_path / "heads")


class TestHeadRecord:
    """Tests for HeadRecord serialization."""

    def test_to_dict_uses_wire_names(self):
        record = HeadRecord(
            workspace="acme/site", branch="main", path="/p", path_filter="/docs"
        )
        assert record.to_dict() == {
            "workspace": "acme/site",
            "branch": "main",
            "path": "/p",
            "pathFilter": "/docs",
            "local": False,
            "updatedAt": None,
        }

    def test_from_dict_defaults(self):
        record = HeadRecord.from_dict(
            {"workspace": "w", "branch": "b", "path": "/p"}
        )
        assert record.path_filter is None
        assert record.local is False


class TestHeadStateManager:
    """Tests for HeadStateManager."""

    def test_save_and_load(self, manager, tmp_path):
        project = tmp_path / "project"
        project.mkdir()
        manager.save(
            HeadRecord(workspace="w", branch="main", path=str(project), local=True)
        )

        record = manager.load(project)

        assert record.branch == "main"
        assert record.local is True
        assert record.path == str(project.resolve())
        assert record.updated_at is not None

    def test_relative_and_absolute_paths_share_a_record(
        self, manager, tmp_path, monkeypatch
    ):
        (tmp_path / "project").mkdir()
        monkeypatch.chdir(tmp_path)
        manager.save(HeadRecord(workspace="w", branch="dev", path="project"))

        assert manager.load(tmp_path / "project").branch == "dev"

    def test_save_replaces_previous_record(self, manager, tmp_path):
        manager.save(HeadRecord(workspace="w", branch="one", path=str(tmp_path)))
        manager.save(HeadRecord(workspace="w", branch="two", path=str(tmp_path)))

        assert manager.load(tmp_path).branch == "two"
        assert len(list(manager.state_dir.iterdir())) == 1

    def test_load_missing(self, manager, tmp_path):
        assert manager.load(tmp_path) is None

    def test_load_corrupt_file(self, manager, tmp_path):
        state_file = manager.save(
            HeadRecord(workspace="w", branch="main", path=str(tmp_path))
        )
        state_file.write_text("{broken")
        assert manager.load(tmp_path) is None

    def test_load_incomplete_record(self, manager, tmp_path):
        state_file = manager.save(
            HeadRecord(workspace="w", branch="main", path=str(tmp_path))
        )
        state_file.write_text(json.dumps({"workspace": "w"}))
        assert manager.load(tmp_path) is None

    def test_clear(self, manager, tmp_path):
        manager.save(HeadRecord(workspace="w", branch="main", path=str(tmp_path)))
        assert manager.clear(tmp_path) is True
        assert manager.load(tmp_path) is None
        assert manager.clear(tmp_path) is False
