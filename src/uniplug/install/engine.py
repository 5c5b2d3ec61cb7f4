"""Plugin install, update and uninstall.

Directory layout under ``data_dir``::

    plugins/<name>/        installed plugin content
    records/<name>.json    LocalInstallRecord
    staging/<name>-XXXX/   download and extraction scratch space
    locks/<name>.lock      advisory lock file

Staging lives beside ``plugins/`` so the final move is a same-filesystem
rename. Every failure before that move leaves the previously installed
version untouched, and staging is always removed on the way out.
"""

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import httpx
from packaging.version import InvalidVersion, Version

from uniplug.config.models import UniplugConfig
from uniplug.errors import (
    DependencyCheckFailed,
    IntegrityMismatch,
    MalformedData,
    NotFound,
    NotInstalled,
)
from uniplug.registry.cache import DocumentCache
from uniplug.registry.http import RegistryClient
from uniplug.registry.models import Manifest, Release, check_plugin_name
from uniplug.registry.store import ManifestStore

from . import integrity
from .archive import extract_artifact, validate_plugin_dir
from .dependencies import DependencyChecker, DependencyReport, satisfies
from .locking import PluginLock
from .records import LocalInstallRecord, RecordStore, utc_now
from .selector import current_platform_key, select_artifact

logger = logging.getLogger(__name__)

LATEST = "latest"


@dataclass
class InstallOutcome:
    """Result of an install or update, including the advisory dependency report."""

    record: LocalInstallRecord
    changed: bool
    previous_version: Optional[str] = None
    dependencies: DependencyReport = field(default_factory=DependencyReport)


def _same_version(a: str, b: str) -> bool:
    try:
        return Version(a) == Version(b)
    except InvalidVersion:
        return a == b


class InstallEngine:
    """Download, verify and place plugins; sole writer of install records."""

    def __init__(
        self,
        store: ManifestStore,
        data_dir: Path,
        client: Optional[RegistryClient] = None,
        platform_key: Optional[str] = None,
        checker: Optional[DependencyChecker] = None,
        client_version: str = "",
        wait_for_lock: bool = False,
    ) -> None:
        self.store = store
        self.client = client or store.client
        self.platform_key = (platform_key or current_platform_key()).lower()
        self.checker = checker or DependencyChecker()
        self.client_version = client_version
        self.wait_for_lock = wait_for_lock
        self.plugins_dir = data_dir / "plugins"
        self.staging_dir = data_dir / "staging"
        self.locks_dir = data_dir / "locks"
        self.records = RecordStore(data_dir / "records")
        self.cancel_event = threading.Event()

    @classmethod
    def from_config(
        cls,
        config: UniplugConfig,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "InstallEngine":
        client = RegistryClient(
            timeout=config.timeout,
            download_timeout=config.download_timeout,
            retries=config.retries,
            backoff_base=config.backoff_base,
            transport=transport,
        )
        store = ManifestStore(
            config.registry_url,
            DocumentCache(config.cache_dir),
            client=client,
            max_age=config.cache_max_age,
        )
        return cls(
            store,
            config.data_dir,
            client=client,
            platform_key=config.platform,
            checker=DependencyChecker(timeout=config.check_timeout),
            client_version=config.client_version,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def plugin_dir(self, name: str) -> Path:
        return self.plugins_dir / check_plugin_name(name)

    def get_record(self, name: str) -> Optional[LocalInstallRecord]:
        return self.records.load(name)

    def list_installed(self) -> List[LocalInstallRecord]:
        """Installed plugins from local records only; never contacts the registry."""
        return self.records.list_records()

    def cancel(self) -> None:
        """Abort in-flight downloads and extractions.

        Only operations already running are affected; the next install or
        update clears the flag and runs normally.
        """
        self.cancel_event.set()

    def _is_compatible(self, release: Release) -> bool:
        if not self.client_version or not release.uniconv_compat:
            return True
        try:
            return satisfies(self.client_version, release.uniconv_compat)
        except DependencyCheckFailed as e:
            logger.warning(f"Ignoring unreadable uniconv_compat on {release.version}: {e}")
            return True

    def pick_release(self, manifest: Manifest, version: Optional[str] = None) -> Release:
        """Choose the release to install.

        ``None`` or ``"latest"`` picks the newest release compatible with
        ``client_version`` (the first release when no client version is
        configured). Anything else pins that exact version.

        Raises:
            NotFound: The pinned version does not exist, or no release is
                compatible with this client.
        """
        if version is None or version == LATEST:
            for release in manifest.releases:
                if self._is_compatible(release):
                    return release
            raise NotFound(
                f"no release is compatible with uniconv {self.client_version}",
                plugin_name=manifest.name,
                operation="install",
            )

        release = manifest.get_release(version)
        if release is None:
            raise NotFound(
                f"version {version} not found (available: "
                f"{', '.join(r.version for r in manifest.releases)})",
                plugin_name=manifest.name,
                operation="install",
            )
        if not self._is_compatible(release):
            logger.warning(
                f"{manifest.name} {release.version} requires uniconv "
                f"{release.uniconv_compat}; installing anyway as it was pinned"
            )
        return release

    def check_dependencies(self, name: str, version: Optional[str] = None) -> DependencyReport:
        manifest = self.store.get_manifest(name)
        return self.checker.check(self.pick_release(manifest, version).dependencies)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def install(self, name: str, version: Optional[str] = None, force: bool = False) -> LocalInstallRecord:
        return self.install_plugin(name, version=version, force=force).record

    def update(self, name: str) -> LocalInstallRecord:
        return self.update_plugin(name).record

    def install_plugin(
        self,
        name: str,
        version: Optional[str] = None,
        force: bool = False,
    ) -> InstallOutcome:
        """Install ``name`` at ``version`` (latest when None).

        Re-installing the version already present is a no-op unless
        ``force`` is set.

        Raises:
            InstallInProgress: Another operation holds this plugin's lock.
            NotFound, MalformedData, NoArtifactForPlatform, IntegrityMismatch,
            NetworkError, Cancelled: The install was abandoned and the
                previously installed version (if any) is untouched.
        """
        check_plugin_name(name)
        self.cancel_event.clear()
        with PluginLock(self.locks_dir, name, wait=self.wait_for_lock):
            return self._install_locked(name, version, force, operation="install")

    def update_plugin(self, name: str) -> InstallOutcome:
        """Move an installed plugin to the latest release.

        Raises:
            NotInstalled: There is no install record for ``name``.
        """
        check_plugin_name(name)
        self.cancel_event.clear()
        with PluginLock(self.locks_dir, name, wait=self.wait_for_lock):
            if self.records.load(name) is None:
                raise NotInstalled("plugin is not installed", plugin_name=name, operation="update")
            return self._install_locked(name, LATEST, False, operation="update")

    def uninstall(self, name: str) -> None:
        """Remove the plugin directory and its record.

        A directory without a record is drift: it is removed with a warning.

        Raises:
            NotInstalled: Neither a record nor a directory exists.
        """
        check_plugin_name(name)
        with PluginLock(self.locks_dir, name, wait=self.wait_for_lock):
            record = self.records.load(name)
            target = self.plugin_dir(name)

            if record is None:
                if not target.exists():
                    raise NotInstalled("plugin is not installed", plugin_name=name, operation="uninstall")
                logger.warning(f"{target} exists without an install record; removing it")
            elif not target.exists():
                logger.warning(f"Install record for {name} points at a missing directory")

            if target.exists():
                self._remove_tree(name, target)
            self.records.delete(name)
            logger.info(f"Uninstalled {name}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _remove_tree(self, name: str, target: Path) -> None:
        # Rename first so a half-deleted tree is never visible under plugins/
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        trash = Path(tempfile.mkdtemp(prefix=f"{name}-remove-", dir=self.staging_dir))
        target.rename(trash / name)
        shutil.rmtree(trash, ignore_errors=True)

    def _install_locked(
        self,
        name: str,
        version: Optional[str],
        force: bool,
        operation: str,
    ) -> InstallOutcome:
        manifest = self.store.get_manifest(name)
        release = self.pick_release(manifest, version)
        current = self.records.load(name)
        target = self.plugin_dir(name)

        if (
            current is not None
            and not force
            and _same_version(current.version, release.version)
            and target.exists()
        ):
            logger.info(f"{name} {current.version} is already installed")
            return InstallOutcome(record=current, changed=False, previous_version=current.version)

        artifact = select_artifact(release, self.platform_key, plugin_name=name)
        logger.info(f"{operation.capitalize()} {name} {release.version} from {artifact.url}")

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        self.plugins_dir.mkdir(parents=True, exist_ok=True)
        stage_root = Path(tempfile.mkdtemp(prefix=f"{name}-", dir=self.staging_dir))
        try:
            download = stage_root / "download"
            self.client.download(artifact.url, download, cancel_event=self.cancel_event)

            expected = integrity.normalize_digest(artifact.sha256)
            actual = integrity.compute_digest(download)
            if actual != expected:
                download.unlink(missing_ok=True)
                raise IntegrityMismatch(expected, actual, plugin_name=name, operation=operation)

            content = stage_root / "content"
            try:
                extract_artifact(download, content, cancel_event=self.cancel_event)
                validate_plugin_dir(content, name, release.interface)
            except MalformedData as e:
                e.plugin_name = e.plugin_name or name
                raise
            download.unlink(missing_ok=True)

            record = LocalInstallRecord(
                name=name,
                version=release.version,
                interface=release.interface.value,
                install_path=str(target),
                installed_at=utc_now(),
            )
            self._swap_in(content, target, stage_root / "previous", record)
        finally:
            shutil.rmtree(stage_root, ignore_errors=True)

        logger.info(f"Installed {name} {release.version} into {target}")
        report = self.checker.check(release.dependencies)
        for problem in report.problems:
            logger.warning(
                f"{name}: dependency {problem.dependency.name} is {problem.status.value}"
                + (f" ({problem.detail})" if problem.detail else "")
            )
        return InstallOutcome(
            record=record,
            changed=True,
            previous_version=current.version if current else None,
            dependencies=report,
        )

    def _swap_in(self, staged: Path, target: Path, backup: Path, record: LocalInstallRecord) -> None:
        """Replace ``target`` with ``staged`` and persist ``record``, or change nothing."""
        had_previous = target.exists()
        if had_previous:
            target.rename(backup)
        try:
            staged.rename(target)
        except BaseException:
            if had_previous:
                backup.rename(target)
            raise

        try:
            self.records.save(record)
        except BaseException:
            shutil.rmtree(target, ignore_errors=True)
            if had_previous:
                backup.rename(target)
            raise
