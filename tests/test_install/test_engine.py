"""Tests for InstallEngine against an on-disk registry."""

import json
import shutil
import threading
from unittest.mock import patch

import pytest

from uniplug.errors import (
    Cancelled,
    InstallInProgress,
    IntegrityMismatch,
    NoArtifactForPlatform,
    NotFound,
    NotInstalled,
)
from uniplug.install.archive import extract_artifact
from uniplug.install.dependencies import DependencyChecker, DependencyStatus, ProbeResult
from uniplug.install.engine import InstallOutcome
from uniplug.install.locking import PluginLock


def _corrupt(path):
    data = bytearray(path.read_bytes())
    data[len(data) // 2] ^= 0xFF
    path.write_bytes(bytes(data))


def _installed_version(data_dir, name):
    return json.loads((data_dir / "plugins" / name / "plugin.json").read_text())["version"]


class TestInstall:
    def test_install_places_content_and_record(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0", "1.1.0"))
        engine = make_engine()

        record = engine.install("ascii")

        assert record.name == "ascii"
        assert record.version == "1.2.0"
        assert record.interface == "cli"
        assert record.install_path == str(data_dir / "plugins" / "ascii")
        assert record.installed_at.endswith("Z")
        assert (data_dir / "plugins" / "ascii" / "run.sh").is_file()
        assert _installed_version(data_dir, "ascii") == "1.2.0"
        assert engine.get_record("ascii") == record
        assert list((data_dir / "staging").iterdir()) == []

    def test_pinned_version(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0", "1.1.0"))
        record = make_engine().install("ascii", version="1.1.0")
        assert record.version == "1.1.0"
        assert _installed_version(data_dir, "ascii") == "1.1.0"

    def test_unknown_version(self, registry, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0",))
        with pytest.raises(NotFound, match="9.9.9"):
            make_engine().install("ascii", version="9.9.9")

    def test_unknown_plugin(self, registry, make_engine):
        registry.add_plugin("ascii")
        with pytest.raises(NotFound) as exc:
            make_engine().install("nope")
        assert exc.value.plugin_name == "nope"

    def test_reinstall_same_version_is_noop(self, registry, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0",))
        engine = make_engine()
        first = engine.install("ascii")

        with patch.object(engine.client, "download", wraps=engine.client.download) as mock_download:
            outcome = engine.install_plugin("ascii")

        assert not outcome.changed
        assert outcome.record == first
        mock_download.assert_not_called()

    def test_force_reinstalls(self, registry, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0",))
        engine = make_engine()
        engine.install("ascii")
        with patch.object(engine.client, "download", wraps=engine.client.download) as mock_download:
            outcome = engine.install_plugin("ascii", force=True)
        assert outcome.changed
        mock_download.assert_called_once()

    def test_missing_directory_triggers_reinstall(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0",))
        engine = make_engine()
        engine.install("ascii")
        shutil.rmtree(data_dir / "plugins" / "ascii")
        outcome = engine.install_plugin("ascii")
        assert outcome.changed
        assert (data_dir / "plugins" / "ascii" / "plugin.json").is_file()

    def test_native_plugin_on_unsupported_platform(self, registry, data_dir, make_engine):
        registry.add_plugin("video-convert", interface="native", platforms=("linux-x86_64",))
        with pytest.raises(NoArtifactForPlatform):
            make_engine(platform_key="darwin-x86_64").install("video-convert")
        assert not (data_dir / "plugins" / "video-convert").exists()
        assert make_engine().get_record("video-convert") is None

    def test_native_plugin_on_matching_platform(self, registry, make_engine):
        registry.add_plugin("video-convert", interface="native", platforms=("linux-x86_64", "darwin-aarch64"))
        record = make_engine(platform_key="linux-x86_64").install("video-convert")
        assert record.interface == "native"

    def test_client_version_filters_latest(self, registry, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0", "1.1.0"))
        registry.manifests["ascii"]["releases"][0]["uniconv_compat"] = ">=9.0.0"
        registry.write()
        record = make_engine(client_version="0.5.0").install("ascii")
        assert record.version == "1.1.0"

    def test_dependency_problems_are_advisory(self, registry, make_engine):
        registry.add_plugin("ascii", dependencies=[{"name": "ffmpeg", "type": "system"}])
        checker = DependencyChecker(probes={"system": lambda dep, run: ProbeResult(present=False)})
        outcome = make_engine(checker=checker).install_plugin("ascii")
        assert isinstance(outcome, InstallOutcome)
        assert outcome.changed
        assert outcome.dependencies.problems[0].status is DependencyStatus.MISSING


class TestIntegrity:
    def test_corrupted_artifact_leaves_nothing_behind(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii", versions=("1.0.0",))
        _corrupt(registry.artifacts / "ascii-1.0.0-any.tar.gz")

        with pytest.raises(IntegrityMismatch) as exc:
            make_engine().install("ascii")

        assert exc.value.plugin_name == "ascii"
        assert exc.value.expected != exc.value.actual
        assert not (data_dir / "plugins" / "ascii").exists()
        assert make_engine().get_record("ascii") is None
        assert list((data_dir / "staging").iterdir()) == []

    def test_failed_update_keeps_previous_version(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii", versions=("1.1.0",))
        make_engine().install("ascii")

        registry.add_plugin("ascii", versions=("1.2.0", "1.1.0"))
        _corrupt(registry.artifacts / "ascii-1.2.0-any.tar.gz")

        with pytest.raises(IntegrityMismatch):
            make_engine().update("ascii")

        assert make_engine().get_record("ascii").version == "1.1.0"
        assert _installed_version(data_dir, "ascii") == "1.1.0"
        assert list((data_dir / "staging").iterdir()) == []


class TestUpdate:
    def test_update_to_latest(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii", versions=("1.1.0",))
        make_engine().install("ascii")

        registry.add_plugin("ascii", versions=("1.2.0", "1.1.0"))
        outcome = make_engine().update_plugin("ascii")

        assert outcome.changed
        assert outcome.previous_version == "1.1.0"
        assert outcome.record.version == "1.2.0"
        assert _installed_version(data_dir, "ascii") == "1.2.0"

    def test_second_update_is_noop(self, registry, make_engine):
        registry.add_plugin("ascii", versions=("1.1.0",))
        make_engine().install("ascii")
        registry.add_plugin("ascii", versions=("1.2.0", "1.1.0"))

        engine = make_engine()
        first = engine.update("ascii")
        with patch.object(engine.client, "download", wraps=engine.client.download) as mock_download:
            outcome = engine.update_plugin("ascii")

        assert not outcome.changed
        assert outcome.record == first
        mock_download.assert_not_called()

    def test_update_not_installed(self, registry, make_engine):
        registry.add_plugin("ascii")
        with pytest.raises(NotInstalled):
            make_engine().update("ascii")


class TestUninstall:
    def test_removes_directory_and_record(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii")
        engine = make_engine()
        engine.install("ascii")

        engine.uninstall("ascii")

        assert not (data_dir / "plugins" / "ascii").exists()
        assert engine.get_record("ascii") is None
        assert engine.list_installed() == []

    def test_not_installed(self, make_engine):
        with pytest.raises(NotInstalled):
            make_engine().uninstall("ascii")

    def test_orphan_directory_is_removed(self, data_dir, make_engine):
        orphan = data_dir / "plugins" / "ascii"
        orphan.mkdir(parents=True)
        (orphan / "leftover").write_text("x")
        make_engine().uninstall("ascii")
        assert not orphan.exists()

    def test_record_without_directory_is_cleared(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii")
        engine = make_engine()
        engine.install("ascii")
        shutil.rmtree(data_dir / "plugins" / "ascii")
        engine.uninstall("ascii")
        assert engine.get_record("ascii") is None


class TestConcurrency:
    def test_locked_plugin_fails_fast(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii")
        with PluginLock(data_dir / "locks", "ascii"):
            with pytest.raises(InstallInProgress):
                make_engine().install("ascii")

    def test_concurrent_installs_converge(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0",))
        outcomes = []

        def _install():
            try:
                outcomes.append(make_engine().install_plugin("ascii"))
            except InstallInProgress as e:
                outcomes.append(e)

        threads = [threading.Thread(target=_install) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(outcomes) == 4
        assert sum(isinstance(o, InstallOutcome) and o.changed for o in outcomes) >= 1
        assert all(isinstance(o, (InstallOutcome, InstallInProgress)) for o in outcomes)
        assert make_engine().get_record("ascii").version == "1.2.0"
        assert _installed_version(data_dir, "ascii") == "1.2.0"

    def test_waiting_installs_serialize(self, registry, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0",))
        outcomes = []

        def _install():
            outcomes.append(make_engine(wait_for_lock=True).install_plugin("ascii"))

        threads = [threading.Thread(target=_install) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(o.changed for o in outcomes) == [False, False, True]


@pytest.fixture
def upgradable(registry, make_engine):
    """ascii 1.1.0 installed, 1.2.0 published."""
    registry.add_plugin("ascii", versions=("1.1.0",))
    make_engine().install("ascii")
    registry.add_plugin("ascii", versions=("1.2.0", "1.1.0"))
    return registry


def _assert_still_at_1_1_0(data_dir, make_engine):
    assert make_engine().get_record("ascii").version == "1.1.0"
    assert _installed_version(data_dir, "ascii") == "1.1.0"
    assert list((data_dir / "staging").iterdir()) == []


class TestCancel:
    def test_cancel_during_download_keeps_previous(self, upgradable, data_dir, make_engine):
        engine = make_engine()
        original = engine.client.download

        def _cancel_then_download(url, dest, cancel_event=None):
            engine.cancel()
            return original(url, dest, cancel_event=cancel_event)

        with patch.object(engine.client, "download", side_effect=_cancel_then_download):
            with pytest.raises(Cancelled):
                engine.update("ascii")

        _assert_still_at_1_1_0(data_dir, make_engine)

    def test_cancel_during_extraction_keeps_previous(self, upgradable, data_dir, make_engine):
        engine = make_engine()

        def _cancel_then_extract(archive, dest, cancel_event=None):
            engine.cancel()
            return extract_artifact(archive, dest, cancel_event=cancel_event)

        with patch("uniplug.install.engine.extract_artifact", side_effect=_cancel_then_extract):
            with pytest.raises(Cancelled):
                engine.update("ascii")

        _assert_still_at_1_1_0(data_dir, make_engine)

    def test_engine_usable_after_cancel(self, registry, make_engine):
        registry.add_plugin("ascii", versions=("1.2.0",))
        engine = make_engine()
        engine.cancel()
        record = engine.install("ascii")
        assert record.version == "1.2.0"
        assert not engine.cancel_event.is_set()


class TestRollback:
    def test_record_write_failure_restores_previous_directory(self, upgradable, data_dir, make_engine):
        engine = make_engine()
        with patch.object(engine.records, "save", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                engine.update("ascii")

        _assert_still_at_1_1_0(data_dir, make_engine)

    def test_record_write_failure_on_fresh_install_leaves_nothing(self, registry, data_dir, make_engine):
        registry.add_plugin("ascii")
        engine = make_engine()
        with patch.object(engine.records, "save", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                engine.install("ascii")

        assert not (data_dir / "plugins" / "ascii").exists()
        assert list((data_dir / "staging").iterdir()) == []


class TestInvalidNames:
    def test_install_rejects_unsafe_name(self, registry, make_engine):
        registry.add_plugin("ascii")
        with pytest.raises(NotFound) as exc:
            make_engine().install("../ascii")
        assert exc.value.plugin_name == "../ascii"

    def test_uninstall_rejects_unsafe_name(self, make_engine):
        with pytest.raises(NotFound):
            make_engine().uninstall("Image Filter")
