"""Tests for collection installs."""

import hashlib
import zipfile
from unittest.mock import patch

import pytest

from uniplug.errors import MalformedData, NoArtifactForPlatform, NotFound, UniplugError, UnknownCollection
from uniplug.install.batch import install_many
from uniplug.registry.collections import CollectionResolver


@pytest.fixture
def essentials(registry):
    registry.add_plugin("image-filter")
    registry.add_plugin("ascii")
    registry.add_plugin("video-convert", interface="native", platforms=("linux-x86_64",))
    registry.add_collection("essentials", ["image-filter", "ascii", "video-convert"])
    return registry


def _publish_zip(registry, name, members):
    """Replace the latest artifact of ``name`` with a zip built from ``members``."""
    path = registry.artifacts / f"{name}-custom.zip"
    with zipfile.ZipFile(path, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    release = registry.manifests[name]["releases"][0]
    release["artifact"]["any"] = {
        "url": path.as_uri(),
        "sha256": hashlib.sha256(path.read_bytes()).hexdigest(),
    }
    registry.write()


class TestInstallMany:
    def test_partial_failure_keeps_going(self, essentials, make_engine):
        engine = make_engine(platform_key="darwin-x86_64")
        batch = install_many(engine, CollectionResolver(engine.store), ["+essentials"], max_workers=3)

        assert [r.name for r in batch.results] == ["image-filter", "ascii", "video-convert"]
        assert [r.name for r in batch.succeeded] == ["image-filter", "ascii"]
        assert not batch.all_successful
        failed = batch.failed[0]
        assert failed.name == "video-convert"
        assert isinstance(failed.error, NoArtifactForPlatform)
        assert sorted(r.name for r in engine.list_installed()) == ["ascii", "image-filter"]

    def test_all_succeed_on_supported_platform(self, essentials, make_engine):
        engine = make_engine(platform_key="linux-x86_64")
        batch = install_many(engine, CollectionResolver(engine.store), ["+essentials"])
        assert batch.all_successful
        assert len(engine.list_installed()) == 3

    def test_single_plugin(self, essentials, make_engine):
        engine = make_engine()
        batch = install_many(engine, CollectionResolver(engine.store), ["ascii"], version="1.0.0")
        assert batch.all_successful
        assert batch.results[0].outcome.record.version == "1.0.0"

    def test_unknown_collection_fails_before_installing(self, essentials, make_engine):
        engine = make_engine()
        with pytest.raises(UnknownCollection):
            install_many(engine, CollectionResolver(engine.store), ["ascii", "+missing"])
        assert engine.list_installed() == []


class TestFaultIsolation:
    def test_unpackable_archive_fails_only_that_plugin(self, registry, make_engine):
        registry.add_plugin("broken")
        registry.add_plugin("ascii")
        _publish_zip(registry, "broken", {"a": b"file", "a/b": b"collides with file a"})
        engine = make_engine()

        batch = install_many(engine, CollectionResolver(engine.store), ["broken", "ascii"])

        assert [r.name for r in batch.succeeded] == ["ascii"]
        assert isinstance(batch.failed[0].error, MalformedData)
        assert batch.failed[0].error.plugin_name == "broken"
        assert [r.name for r in engine.list_installed()] == ["ascii"]

    def test_invalid_name_fails_only_that_entry(self, essentials, make_engine):
        engine = make_engine()

        batch = install_many(engine, CollectionResolver(engine.store), ["ascii", "Image Filter"])

        assert [r.name for r in batch.succeeded] == ["ascii"]
        failed = batch.failed[0]
        assert failed.name == "Image Filter"
        assert isinstance(failed.error, NotFound)

    def test_unexpected_error_is_recorded_without_cancelling_siblings(self, essentials, make_engine):
        engine = make_engine()
        original = engine.install_plugin

        def _install(name, **kwargs):
            if name == "ascii":
                raise RuntimeError("disk on fire")
            return original(name, **kwargs)

        with patch.object(engine, "install_plugin", side_effect=_install):
            batch = install_many(engine, CollectionResolver(engine.store), ["+essentials"])

        assert [r.name for r in batch.succeeded] == ["image-filter", "video-convert"]
        error = batch.failed[0].error
        assert isinstance(error, UniplugError)
        assert error.plugin_name == "ascii"
        assert "disk on fire" in str(error)
        assert isinstance(error.__cause__, RuntimeError)
        assert not engine.cancel_event.is_set()
