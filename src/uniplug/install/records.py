"""Persisted install records, one JSON file per installed plugin.

Only InstallEngine writes here. Enumeration never touches the registry.
"""

import json
import logging
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from uniplug.errors import MalformedData
from uniplug.registry.models import InterfaceKind, check_plugin_name

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class LocalInstallRecord:
    """What is currently installed for one plugin."""

    name: str
    version: str
    interface: str
    install_path: str
    installed_at: str = ""

    @property
    def interface_kind(self) -> InterfaceKind:
        return InterfaceKind.parse(self.interface)


class RecordStore:
    """Read and atomically write LocalInstallRecords under ``records_dir``."""

    def __init__(self, records_dir: Path) -> None:
        self.records_dir = records_dir

    def _record_file(self, name: str) -> Path:
        return self.records_dir / f"{check_plugin_name(name)}.json"

    def exists(self, name: str) -> bool:
        return self._record_file(name).exists()

    def save(self, record: LocalInstallRecord) -> None:
        """Atomically write a record: temp file, then rename."""
        self.records_dir.mkdir(parents=True, exist_ok=True)
        record_file = self._record_file(record.name)
        fd, tmp_path = tempfile.mkstemp(dir=self.records_dir, suffix=".tmp")
        try:
            with open(fd, "w") as f:
                json.dump(asdict(record), f, indent=2)
            Path(tmp_path).replace(record_file)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def load(self, name: str) -> Optional[LocalInstallRecord]:
        """Return the record for ``name`` or None if it is not installed.

        Raises:
            MalformedData: The record file exists but cannot be read.
        """
        record_file = self._record_file(name)
        if not record_file.exists():
            return None
        try:
            data = json.loads(record_file.read_text())
            return LocalInstallRecord(**data)
        except (OSError, ValueError, TypeError) as e:
            raise MalformedData(
                f"install record {record_file} is unreadable: {e}",
                plugin_name=name,
                operation="load-record",
            ) from e

    def delete(self, name: str) -> bool:
        record_file = self._record_file(name)
        if not record_file.exists():
            return False
        record_file.unlink()
        return True

    def list_records(self) -> List[LocalInstallRecord]:
        """All readable records, sorted by name. Unreadable files are skipped."""
        if not self.records_dir.exists():
            return []
        records = []
        for record_file in sorted(self.records_dir.glob("*.json")):
            try:
                data = json.loads(record_file.read_text())
                records.append(LocalInstallRecord(**data))
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Could not read {record_file}: {e}")
        return records
