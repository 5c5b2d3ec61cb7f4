"""Shared fixtures: an on-disk registry with real plugin archives."""

import hashlib
import io
import json
import tarfile
from pathlib import Path

import pytest

from uniplug.install.dependencies import DependencyChecker
from uniplug.install.engine import InstallEngine
from uniplug.registry.cache import DocumentCache
from uniplug.registry.store import ManifestStore


def build_archive(dest: Path, name: str, version: str, interface: str = "cli") -> str:
    """Write a tar.gz plugin artifact and return its sha256."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    files = {
        f"{name}/plugin.json": json.dumps(
            {"name": name, "version": version, "interface": interface}
        ).encode(),
        f"{name}/run.sh": f"#!/bin/sh\necho {name} {version}\n".encode(),
    }
    with tarfile.open(dest, "w:gz") as tar:
        for path, data in files.items():
            info = tarfile.TarInfo(path)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return hashlib.sha256(dest.read_bytes()).hexdigest()


class RegistryBuilder:
    """Builds index.json, collections.json and per-plugin manifests on disk."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.artifacts = root / "artifacts"
        self.manifests: dict = {}
        self.collections: list = []

    def add_plugin(
        self,
        name: str,
        versions=("1.0.0",),
        interface: str = "cli",
        platforms=("any",),
        dependencies=None,
    ) -> dict:
        releases = []
        for version in versions:
            artifact = {}
            for key in platforms:
                path = self.artifacts / f"{name}-{version}-{key}.tar.gz"
                digest = build_archive(path, name, version, interface)
                artifact[key] = {"url": path.as_uri(), "sha256": digest}
            releases.append({
                "version": version,
                "uniconv_compat": ">=0.1.0",
                "interface": interface,
                "dependencies": list(dependencies or []),
                "artifact": artifact,
            })
        manifest = {
            "name": name,
            "description": f"{name} plugin",
            "author": "uniconv",
            "license": "MIT",
            "repository": f"https://github.com/uniconv/plugins/{name}",
            "keywords": [name, "convert"],
            "releases": releases,
        }
        self.manifests[name] = manifest
        self.write()
        return manifest

    def add_collection(self, name: str, plugins: list, description: str = "") -> None:
        self.collections.append({"name": name, "description": description, "plugins": plugins})
        self.write()

    def write(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        index = {
            "plugins": [
                {
                    "name": m["name"],
                    "description": m["description"],
                    "keywords": m["keywords"],
                    "latest": m["releases"][0]["version"],
                    "author": m["author"],
                    "interface": m["releases"][0]["interface"],
                }
                for m in self.manifests.values()
            ],
            "updated_at": "2026-01-15T12:00:00Z",
        }
        (self.root / "index.json").write_text(json.dumps(index, indent=2))
        (self.root / "collections.json").write_text(
            json.dumps({"version": 1, "collections": self.collections}, indent=2)
        )
        for name, manifest in self.manifests.items():
            path = self.root / "plugins" / name / "manifest.json"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(manifest, indent=2))


@pytest.fixture
def registry(tmp_path):
    return RegistryBuilder(tmp_path / "registry")


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "home"


@pytest.fixture
def make_engine(registry, data_dir):
    """Factory for an InstallEngine over the local registry."""

    def _make(platform_key: str = "linux-x86_64", **kwargs) -> InstallEngine:
        store = ManifestStore(str(registry.root), DocumentCache(data_dir / "cache"))
        return InstallEngine(
            store,
            data_dir,
            platform_key=platform_key,
            checker=kwargs.pop("checker", DependencyChecker(probes={})),
            **kwargs,
        )

    return _make


@pytest.fixture
def archive_factory():
    return build_archive
