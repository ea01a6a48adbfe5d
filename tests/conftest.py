"""Shared fixtures: isolated configuration, package archives and an in-memory database."""

import hashlib
import io
import tarfile
from pathlib import Path
from typing import Dict, Optional, Sequence

import pytest

from quarry.modules import config
from quarry.modules.buildsystem import BuildPipeline
from quarry.modules.db import PackageDatabase
from quarry.modules.events import EventHub
from quarry.modules.fetcher import Downloader
from quarry.modules.spec import PackageSpec, VersionRequirement

DUMMY_SHA512 = "0" * 128


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point every configured directory inside tmp_path."""
    monkeypatch.delenv("QUARRY_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    cfg = config.reload(overrides={
        "db": {"path": ":memory:"},
        "directories": {
            "sources": str(tmp_path / "sources"),
            "builds": str(tmp_path / "builds"),
            "binaries": str(tmp_path / "prefix"),
        },
        "fetcher": {"workers": 4, "retries": 2, "backoff": 0},
        "build": {"jobs": 4, "timeout": 60},
        "logging": {"color": False},
    })
    yield cfg
    config.reload()


@pytest.fixture
def db():
    """Open in-memory package database."""
    database = PackageDatabase(":memory:").open()
    yield database
    database.close()


@pytest.fixture
def events():
    return EventHub()


@pytest.fixture
def downloader(tmp_path, events):
    return Downloader(sources_dir=tmp_path / "sources", workers=4, retries=2, backoff=0, events=events)


@pytest.fixture
def pipeline(tmp_path, downloader, db):
    return BuildPipeline(downloader, db, builds_dir=tmp_path / "builds", prefix=tmp_path / "prefix")


def make_spec(name: str, version: str = "1.0.0", deps: Optional[Dict[str, str]] = None,
             source: Optional[str] = None, checksum: str = DUMMY_SHA512, build: Sequence[str] = ()) -> PackageSpec:
    """Spec with no real archive behind it; enough for resolution tests."""
    return PackageSpec(
        name=name,
        version=version,
        source=source or f"https://example.invalid/{name}-{version}.tar.gz",
        checksum=checksum,
        dependencies=tuple(VersionRequirement(n, r) for n, r in (deps or {}).items()),
        build=tuple(build),
    )


def write_tarball(path: Path, top: str, files: Dict[str, str]) -> str:
    """Write a gzip tarball with a single top-level directory; returns its sha512."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for rel, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{rel}")
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return hashlib.sha512(path.read_bytes()).hexdigest()


@pytest.fixture
def make_package(tmp_path):
    """
    Factory building a real, installable package: a tarball under tmp_path/archives
    whose build step stages `share/<name>/VERSION` (plus a build log line in
    tmp_path/build.log so tests can count command executions).
    """
    archives = tmp_path / "archives"
    log = tmp_path / "build.log"

    def factory(name: str, version: str = "1.0.0", deps: Optional[Dict[str, str]] = None,
                build: Optional[Sequence[str]] = None, checksum: Optional[str] = None) -> PackageSpec:
        archive = archives / f"{name}-{version}.tar.gz"
        digest = write_tarball(archive, f"{name}-{version}", {"VERSION": f"{name} {version}\n"})
        commands = build if build is not None else [
            f'echo "{name}" >> "{log}"',
            'mkdir -p "$binary/share/$QUARRY_PACKAGE"',
            'cp VERSION "$binary/share/$QUARRY_PACKAGE/VERSION"',
        ]
        return PackageSpec(
            name=name,
            version=version,
            source=archive.as_uri(),
            checksum=checksum or digest,
            dependencies=tuple(VersionRequirement(n, r) for n, r in (deps or {}).items()),
            build=tuple(commands),
        )

    factory.log = log
    return factory


def build_log(tmp_path: Path):
    log = tmp_path / "build.log"
    return log.read_text().split() if log.exists() else []
