"""Advisory dependency checks for plugin releases.

Dependency kinds are an open tag set. Each kind maps to a probe function in
a registry; adding a kind means registering a probe, the checking algorithm
stays the same. A declared ``check`` command replaces the probe entirely:
exit code 0 is satisfied, anything else is missing, and its output is never
parsed.

Nothing here blocks installation. Probes that cannot run report
``check-failed``, which is distinct from ``missing``.
"""

import json
import logging
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from uniplug.errors import DependencyCheckFailed
from uniplug.registry.models import Dependency

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)+)")


class DependencyStatus(str, Enum):
    SATISFIED = "satisfied"
    MISSING = "missing"
    VERSION_MISMATCH = "version-mismatch"
    CHECK_FAILED = "check-failed"


@dataclass
class ProbeResult:
    """What a probe found on this system."""

    present: bool
    version: Optional[str] = None


@dataclass
class DependencyResult:
    dependency: Dependency
    status: DependencyStatus
    found_version: Optional[str] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is DependencyStatus.SATISFIED


@dataclass
class DependencyReport:
    entries: List[DependencyResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(e.ok for e in self.entries)

    @property
    def problems(self) -> List[DependencyResult]:
        return [e for e in self.entries if not e.ok]

    def __len__(self) -> int:
        return len(self.entries)


Runner = Callable[[List[str]], subprocess.CompletedProcess]
Probe = Callable[[Dependency, Runner], ProbeResult]

_PROBES: Dict[str, Probe] = {}


def register_probe(kind: str) -> Callable[[Probe], Probe]:
    """Register ``fn`` as the probe for dependency type ``kind``."""

    def decorator(fn: Probe) -> Probe:
        _PROBES[kind.lower()] = fn
        return fn

    return decorator


def registered_kinds() -> List[str]:
    return sorted(_PROBES)


def extract_version(text: str) -> Optional[str]:
    """Return the first dotted version number in ``text``."""
    match = _VERSION_RE.search(text)
    return match.group(1) if match else None


def satisfies(version: str, constraint: Optional[str]) -> bool:
    """Check ``version`` against a constraint.

    A bare version ("4.4") means at least that version; anything else is
    read as a PEP 440 specifier set (">=4.0,<5").

    Raises:
        DependencyCheckFailed: Either side cannot be parsed.
    """
    if not constraint:
        return True
    constraint = constraint.replace(" ", "")
    if constraint[0].isdigit():
        constraint = f">={constraint}"
    try:
        specifier = SpecifierSet(constraint)
        return specifier.contains(Version(version), prereleases=True)
    except (InvalidSpecifier, InvalidVersion) as e:
        raise DependencyCheckFailed(f"cannot compare {version!r} with {constraint!r}: {e}") from e


# ----------------------------------------------------------------------
# Built-in probes
# ----------------------------------------------------------------------


@register_probe("system")
def probe_system(dep: Dependency, run: Runner) -> ProbeResult:
    """Executable on PATH; version read from ``<name> --version``."""
    path = shutil.which(dep.name)
    if path is None:
        return ProbeResult(present=False)
    if not dep.version:
        return ProbeResult(present=True)
    result = run([path, "--version"])
    version = extract_version(f"{result.stdout or ''}\n{result.stderr or ''}")
    if version is None:
        raise DependencyCheckFailed(f"could not read a version from '{dep.name} --version'")
    return ProbeResult(present=True, version=version)


_PY_VERSION_SCRIPT = (
    "import sys\n"
    "from importlib.metadata import PackageNotFoundError, version\n"
    "try:\n"
    "    print(version(sys.argv[1]))\n"
    "except PackageNotFoundError:\n"
    "    sys.exit(3)\n"
)


@register_probe("python")
def probe_python(dep: Dependency, run: Runner) -> ProbeResult:
    """Installed Python distribution, queried through importlib.metadata."""
    interpreter = shutil.which("python3") or shutil.which("python")
    if interpreter is None:
        raise DependencyCheckFailed("no python interpreter on PATH")
    result = run([interpreter, "-c", _PY_VERSION_SCRIPT, dep.name])
    if result.returncode == 3:
        return ProbeResult(present=False)
    if result.returncode != 0:
        raise DependencyCheckFailed(
            f"python probe exited {result.returncode}: {(result.stderr or '').strip()}"
        )
    return ProbeResult(present=True, version=(result.stdout or "").strip() or None)


@register_probe("node")
def probe_node(dep: Dependency, run: Runner) -> ProbeResult:
    """Globally installed npm package."""
    npm = shutil.which("npm")
    if npm is None:
        raise DependencyCheckFailed("npm is not on PATH")
    # npm ls exits 1 when the package is absent but still prints JSON
    result = run([npm, "ls", "--global", "--depth=0", "--json", dep.name])
    try:
        data = json.loads(result.stdout or "{}")
    except ValueError as e:
        raise DependencyCheckFailed(f"unreadable npm output: {e}") from e
    info = (data.get("dependencies") or {}).get(dep.name)
    if not info:
        return ProbeResult(present=False)
    return ProbeResult(present=True, version=info.get("version"))


# ----------------------------------------------------------------------
# Checker
# ----------------------------------------------------------------------


class DependencyChecker:
    """Evaluate declared dependencies against the local system."""

    def __init__(
        self,
        timeout: float = 10.0,
        probes: Optional[Dict[str, Probe]] = None,
    ) -> None:
        self.timeout = timeout
        self._probes = probes if probes is not None else _PROBES

    def _run(self, cmd: List[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise DependencyCheckFailed(f"command not found: {cmd[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise DependencyCheckFailed(f"'{' '.join(cmd)}' timed out after {self.timeout}s") from e
        except OSError as e:
            raise DependencyCheckFailed(f"could not run {cmd[0]}: {e}") from e

    def check(self, dependencies: Iterable[Dependency]) -> DependencyReport:
        """Check each dependency in order. Never raises for a failed probe."""
        report = DependencyReport()
        for dep in dependencies:
            try:
                entry = self.check_one(dep)
            except DependencyCheckFailed as e:
                entry = DependencyResult(dep, DependencyStatus.CHECK_FAILED, detail=e.message)
            logger.debug(f"Dependency {dep.name} ({dep.type}): {entry.status.value}")
            report.entries.append(entry)
        return report

    def check_one(self, dep: Dependency) -> DependencyResult:
        if dep.check:
            return self._run_custom(dep)

        probe = self._probes.get(dep.type.lower())
        if probe is None:
            raise DependencyCheckFailed(f"no probe for dependency type '{dep.type}'")

        found = probe(dep, self._run)
        if not found.present:
            return DependencyResult(dep, DependencyStatus.MISSING, detail=f"{dep.name} not found")
        if dep.version:
            if found.version is None:
                raise DependencyCheckFailed(f"{dep.name} is present but its version is unknown")
            if not satisfies(found.version, dep.version):
                return DependencyResult(
                    dep,
                    DependencyStatus.VERSION_MISMATCH,
                    found_version=found.version,
                    detail=f"found {found.version}, need {dep.version}",
                )
        return DependencyResult(dep, DependencyStatus.SATISFIED, found_version=found.version)

    def _run_custom(self, dep: Dependency) -> DependencyResult:
        try:
            cmd = shlex.split(dep.check)
        except ValueError as e:
            raise DependencyCheckFailed(f"unparseable check command: {e}") from e
        if not cmd:
            raise DependencyCheckFailed("empty check command")
        result = self._run(cmd)
        if result.returncode == 0:
            return DependencyResult(dep, DependencyStatus.SATISFIED)
        return DependencyResult(
            dep, DependencyStatus.MISSING, detail=f"check exited {result.returncode}"
        )
