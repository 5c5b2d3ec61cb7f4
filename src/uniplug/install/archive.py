"""Unpack downloaded artifacts into a staging directory."""

import json
import logging
import shutil
import tarfile
import threading
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional

from uniplug.errors import Cancelled, MalformedData
from uniplug.registry.models import InterfaceKind

logger = logging.getLogger(__name__)

PLUGIN_MANIFEST = "plugin.json"


def _safe_member_path(dest: Path, member: str) -> Path:
    member_path = PurePosixPath(member)
    if member_path.is_absolute() or ".." in member_path.parts:
        raise MalformedData(f"archive member escapes target directory: {member}", operation="extract")
    target = (dest / Path(*member_path.parts)).resolve() if member_path.parts else dest.resolve()
    if target != dest.resolve() and dest.resolve() not in target.parents:
        raise MalformedData(f"archive member escapes target directory: {member}", operation="extract")
    return target


def _check_cancel(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise Cancelled("extraction cancelled", operation="extract")


def _extract_tar(archive: Path, dest: Path, cancel_event: Optional[threading.Event]) -> None:
    try:
        with tarfile.open(archive) as tar:
            for member in tar.getmembers():
                _check_cancel(cancel_event)
                _safe_member_path(dest, member.name)
                if member.issym() or member.islnk():
                    logger.warning(f"Skipping link in archive: {member.name}")
                    continue
                if not (member.isfile() or member.isdir()):
                    logger.warning(f"Skipping special file in archive: {member.name}")
                    continue
                if hasattr(tarfile, "data_filter"):
                    tar.extract(member, dest, filter="data")
                else:
                    tar.extract(member, dest)
    except tarfile.TarError as e:
        raise MalformedData(f"unreadable tar archive: {e}", operation="extract") from e
    except OSError as e:
        raise MalformedData(f"cannot unpack tar archive: {e}", operation="extract") from e


def _extract_zip(archive: Path, dest: Path, cancel_event: Optional[threading.Event]) -> None:
    try:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                _check_cancel(cancel_event)
                target = _safe_member_path(dest, info.filename)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    target.chmod(mode)
    except zipfile.BadZipFile as e:
        raise MalformedData(f"unreadable zip archive: {e}", operation="extract") from e
    except OSError as e:
        raise MalformedData(f"cannot unpack zip archive: {e}", operation="extract") from e


def _flatten_single_root(dest: Path) -> None:
    """Hoist the contents of a lone top-level directory into ``dest``."""
    children = list(dest.iterdir())
    if len(children) != 1 or not children[0].is_dir():
        return
    root = children[0]
    if (dest / PLUGIN_MANIFEST).exists() or not (root / PLUGIN_MANIFEST).exists():
        return
    tmp = dest / f".{root.name}.flatten"
    root.rename(tmp)
    for child in tmp.iterdir():
        child.rename(dest / child.name)
    tmp.rmdir()


def extract_artifact(
    archive: Path,
    dest: Path,
    cancel_event: Optional[threading.Event] = None,
) -> None:
    """Unpack ``archive`` (zip or any tar compression) into ``dest``.

    The format is sniffed from the content, not the URL.

    Raises:
        MalformedData: Unsupported or corrupt archive, or a member outside ``dest``.
        Cancelled: ``cancel_event`` was set mid-extraction.
    """
    dest.mkdir(parents=True, exist_ok=True)
    if zipfile.is_zipfile(archive):
        _extract_zip(archive, dest, cancel_event)
    elif tarfile.is_tarfile(archive):
        _extract_tar(archive, dest, cancel_event)
    else:
        raise MalformedData("artifact is neither a zip nor a tar archive", operation="extract")
    _flatten_single_root(dest)


def validate_plugin_dir(plugin_dir: Path, name: str, interface: InterfaceKind) -> dict:
    """Check the unpacked plugin's own manifest against the registry release.

    Returns:
        The parsed local manifest.

    Raises:
        MalformedData: Missing or unreadable ``plugin.json``, or a name or
            interface that disagrees with the registry.
    """
    local = plugin_dir / PLUGIN_MANIFEST
    if not local.is_file():
        raise MalformedData(
            f"artifact has no {PLUGIN_MANIFEST}", plugin_name=name, operation="validate"
        )
    try:
        data = json.loads(local.read_text())
    except (OSError, ValueError) as e:
        raise MalformedData(
            f"unreadable {PLUGIN_MANIFEST}: {e}", plugin_name=name, operation="validate"
        ) from e
    if not isinstance(data, dict):
        raise MalformedData(
            f"{PLUGIN_MANIFEST} is not a JSON object", plugin_name=name, operation="validate"
        )

    declared_name = data.get("name")
    if declared_name is not None and declared_name != name:
        raise MalformedData(
            f"{PLUGIN_MANIFEST} declares name '{declared_name}'",
            plugin_name=name,
            operation="validate",
        )
    try:
        declared = InterfaceKind.parse(data.get("interface"))
    except ValueError as e:
        raise MalformedData(
            f"{PLUGIN_MANIFEST}: {e}", plugin_name=name, operation="validate"
        ) from e
    if declared is not interface:
        raise MalformedData(
            f"{PLUGIN_MANIFEST} declares interface '{declared.value}' "
            f"but the registry release is '{interface.value}'",
            plugin_name=name,
            operation="validate",
        )
    return data
