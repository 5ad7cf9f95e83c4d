"""Tests for the local update manifest."""

import hashlib
import json

import pytest

from dist_updater.manifest import Manifest, ManifestError, ManifestTargetEntry

H1 = hashlib.sha256(b"one").digest()
H2 = hashlib.sha256(b"two").digest()


class TestFreshManifest:
    """Tests for new and fallback manifests."""

    def test_new_incomplete(self):
        """Fresh manifests start at version 1, incomplete, empty."""
        m = Manifest.new_incomplete()
        assert m.version == 1
        assert m.incomplete_update is True
        assert m.files == {}

    def test_load_or_new_missing(self, tmp_path):
        """A missing file yields a fresh manifest."""
        assert Manifest.load_or_new(tmp_path / "nope.json") == Manifest.new_incomplete()

    @pytest.mark.parametrize("content", [
        "not json",
        "[]",
        '{"files": {}, "version": 0, "incomplete_update": false}',
        '{"files": {}, "version": true, "incomplete_update": false}',
        '{"files": {}, "version": 2, "incomplete_update": "no"}',
        '{"files": {"a": {"length": -1, "hash": "00"}}, "version": 2, "incomplete_update": false}',
        '{"files": {"a": {"length": 1, "hash": "zz"}}, "version": 2, "incomplete_update": false}',
    ])
    def test_load_or_new_corrupt(self, tmp_path, content):
        """Corrupt or invalid manifests degrade to a fresh one."""
        path = tmp_path / "manifest.json"
        path.write_text(content, encoding="utf-8")
        assert Manifest.load_or_new(path) == Manifest.new_incomplete()

    def test_load_raises_on_corrupt(self, tmp_path):
        """Strict load surfaces the parse failure."""
        path = tmp_path / "manifest.json"
        path.write_text("{", encoding="utf-8")
        with pytest.raises(ManifestError):
            Manifest.load(path)

    def test_version_zero_rejected(self):
        with pytest.raises(ValueError):
            Manifest(files={}, version=0, incomplete_update=False)


class TestPersistence:
    """Tests for save/load."""

    def test_round_trip(self, tmp_path):
        """Saved manifests load back equal."""
        m = Manifest.new_incomplete()
        m.set_target("bin/tool", 10, H1)
        m.set_target("data.txt", 3, H2)
        m.update_version(7)
        m.set_update_complete_result(True)

        path = tmp_path / "manifest.json"
        m.save(path)
        loaded = Manifest.load(path)

        assert loaded == m
        assert loaded.is_updated(7)

    def test_file_format(self, tmp_path):
        """On-disk format stores hex hashes and the completeness flag."""
        m = Manifest.new_incomplete()
        m.set_target("a", 3, H1)
        path = tmp_path / "manifest.json"
        m.save(path)

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data == {
            "files": {"a": {"length": 3, "hash": H1.hex()}},
            "version": 1,
            "incomplete_update": True,
        }

    def test_save_leaves_no_temp_file(self, tmp_path):
        path = tmp_path / "manifest.json"
        Manifest.new_incomplete().save(path)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["manifest.json"]

    def test_save_creates_parent(self, tmp_path):
        path = tmp_path / "nested" / "manifest.json"
        Manifest.new_incomplete().save(path)
        assert path.exists()

    def test_save_unwritable_raises(self, tmp_path):
        """Saving where a directory sits raises ManifestError."""
        path = tmp_path / "manifest.json"
        path.mkdir()
        with pytest.raises(ManifestError):
            Manifest.new_incomplete().save(path)


class TestTargets:
    """Tests for per-target bookkeeping."""

    def test_set_and_contains(self):
        m = Manifest.new_incomplete()
        m.set_target("a", 10, H1)
        assert m.contains_target("a")
        assert m.files["a"] == ManifestTargetEntry(length=10, hash=H1)

    def test_set_overwrites(self):
        m = Manifest.new_incomplete()
        m.set_target("a", 10, H1)
        m.set_target("a", 11, H2)
        assert m.files["a"] == ManifestTargetEntry(length=11, hash=H2)

    def test_remove(self):
        m = Manifest.new_incomplete()
        m.set_target("a", 10, H1)
        m.remove_target("a")
        m.remove_target("missing")
        assert not m.contains_target("a")

    def test_retain(self):
        """Entries failing the predicate are dropped."""
        m = Manifest.new_incomplete()
        for name in ("a", "b", "c"):
            m.set_target(name, 1, H1)
        m.retain_targets(lambda name: name != "b")
        assert sorted(m.files) == ["a", "c"]

    def test_files_view_is_a_copy(self):
        m = Manifest.new_incomplete()
        m.files["x"] = ManifestTargetEntry(1, H1)
        assert not m.contains_target("x")

    def test_target_updated_requires_length_and_hash(self):
        """A length-only or hash-only match is not treated as up to date."""
        m = Manifest.new_incomplete()
        m.set_target("a", 10, H1)
        assert m.is_target_updated("a", 10, H1)
        assert not m.is_target_updated("a", 10, H2)
        assert not m.is_target_updated("a", 11, H1)
        assert not m.is_target_updated("b", 10, H1)


class TestVersion:
    """Tests for version/completeness state."""

    def test_incomplete_never_updated(self):
        """An incomplete manifest is never up to date, even at its own version."""
        m = Manifest.new_incomplete()
        assert not m.is_updated(1)
        m.update_version(5)
        assert not m.is_updated(5)

    def test_complete_at_version(self):
        m = Manifest.new_incomplete()
        m.update_version(5)
        m.set_update_complete_result(True)
        assert m.is_updated(5)
        assert not m.is_updated(6)

    def test_failed_result_marks_incomplete(self):
        m = Manifest.new_incomplete()
        m.set_update_complete_result(True)
        m.set_update_complete_result(False)
        assert m.incomplete_update is True

    def test_update_version_rejects_zero(self):
        with pytest.raises(ValueError):
            Manifest.new_incomplete().update_version(0)
