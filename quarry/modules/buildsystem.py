# quarry/modules/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - per-package build pipeline for quarry

API:
  pipeline = BuildPipeline(downloader, db)
  result = pipeline.run(node)   # node: ResolvedPackage

States:
  PENDING -> FETCHING -> VERIFYING -> EXTRACTING -> BUILDING -> INSTALLED
  any non-terminal state -> FAILED

Behaviour:
  - FETCHING delegates to the Downloader
  - VERIFYING recomputes the artifact digest; a mismatch deletes the artifact and
    stops before any working directory exists
  - EXTRACTING unpacks into an isolated working directory under `builds`,
    rejecting absolute and parent-relative archive members
  - BUILDING runs each command with /bin/sh -c inside the source dir; the package
    stages its files into $binary, which are then merged into the prefix
  - the InstalledRecord is written last; storage errors propagate to the caller
  - the working directory is removed on every path unless build.keep_build_dirs is set
  - tar symlinks may not point outside the extraction root
"""

from __future__ import annotations

import enum
import itertools
import os
import posixpath
import shutil
import subprocess
import tarfile
import tempfile
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple, Union

from quarry.modules import config
from quarry.modules.errors import (
    ChecksumMismatchError,
    CommandFailedError,
    DownloadError,
    ExtractionError,
    IntegrityError,
    QuarryError,
    StorageError,
)
from quarry.modules.events import STATE, EventHub, StateChange
from quarry.modules.fetcher import Downloader, digest_of_file
from quarry.modules.logging import get_logger, log_command_output
from quarry.modules.spec import REASON_MANUAL, InstalledRecord, PackageSpec, ResolvedPackage, split_checksum

logger = get_logger("buildsystem")

# --- states ---
class PackageState(enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    BUILDING = "building"
    INSTALLED = "installed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PackageState.INSTALLED, PackageState.FAILED)


_TRANSITIONS: Dict[PackageState, Tuple[PackageState, ...]] = {
    PackageState.PENDING: (PackageState.FETCHING, PackageState.FAILED),
    PackageState.FETCHING: (PackageState.VERIFYING, PackageState.FAILED),
    PackageState.VERIFYING: (PackageState.EXTRACTING, PackageState.FAILED),
    PackageState.EXTRACTING: (PackageState.BUILDING, PackageState.FAILED),
    PackageState.BUILDING: (PackageState.INSTALLED, PackageState.FAILED),
    PackageState.INSTALLED: (),
    PackageState.FAILED: (),
}

# global ordering of transitions across every pipeline in the process
_SEQUENCE = itertools.count(1)


@dataclass(frozen=True)
class Transition:
    state: PackageState
    timestamp: float
    seq: int


@dataclass(frozen=True)
class Failure:
    """
    Why a package did not reach INSTALLED. `stage` is None for blocked packages
    and for errors raised outside the pipeline's own stage handling.
    """
    stage: Optional[PackageState]
    reason: str
    error: Optional[BaseException] = None
    command: Optional[str] = None
    exit_code: Optional[int] = None
    blocked_by: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return self.blocked_by is not None

    @classmethod
    def blocked_on(cls, name: str) -> "Failure":
        return cls(stage=None, reason=f"blocked by failed dependency {name}", blocked_by=name)


@dataclass
class PipelineResult:
    name: str
    version: str
    state: PackageState = PackageState.PENDING
    failure: Optional[Failure] = None
    record: Optional[InstalledRecord] = None
    history: List[Transition] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is PackageState.INSTALLED

    def entered(self, state: PackageState) -> Optional[Transition]:
        for t in self.history:
            if t.state is state:
                return t
        return None

# --- helpers ---
def _safe_run(cmd: List[str], cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None,
              timeout: Optional[int] = None) -> Tuple[int, str, str]:
    """Run command and capture output. Returns (rc, stdout, stderr)"""
    logger.debug("RUN: %s (cwd=%s)", " ".join(cmd), str(cwd) if cwd else None)
    try:
        p = subprocess.Popen(cmd, cwd=str(cwd) if cwd else None, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                             env=(env or os.environ), encoding="utf-8", errors="replace")
    except OSError as e:
        logger.exception("Command could not start: %s", e)
        return 127, "", str(e)
    try:
        out, err = p.communicate(timeout=timeout)
        return p.returncode, out or "", err or ""
    except subprocess.TimeoutExpired:
        p.kill()
        out, err = p.communicate()
        return 124, out or "", err or ""


def _check_member(name: str):
    p = PurePosixPath(name.replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts:
        raise ExtractionError(f"unsafe archive member: {name}")


def _check_symlink(name: str, target: str):
    # symlink targets are relative to the link's own directory
    if target.startswith("/"):
        raise ExtractionError(f"unsafe symlink {name} -> {target}")
    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(name), target))
    if resolved == ".." or resolved.startswith("../"):
        raise ExtractionError(f"unsafe symlink {name} -> {target}")


def extract_archive(archive: Path, dest: Path) -> Path:
    """Unpack tar (gz/bz2/xz) or zip into dest; returns the source dir."""
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if tarfile.is_tarfile(archive):
            with tarfile.open(archive, "r:*") as tar:
                members = tar.getmembers()
                for m in members:
                    _check_member(m.name)
                    if m.islnk():
                        _check_member(m.linkname)
                    elif m.issym():
                        _check_symlink(m.name, m.linkname)
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(dest, members=members, filter="data")
                else:
                    tar.extractall(dest, members=members)
        elif zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as zf:
                for name in zf.namelist():
                    _check_member(name)
                zf.extractall(dest)
        else:
            raise ExtractionError(f"unsupported archive format: {archive.name}")
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
        raise ExtractionError(f"cannot extract {archive.name}: {e}") from e

    entries = list(dest.iterdir())
    # a single top-level directory is the source tree
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest


def _merge_tree(staging: Path, prefix: Path) -> List[str]:
    """Copy every staged file into prefix; returns sorted prefix-relative paths."""
    files: List[str] = []
    for root, dirs, names in os.walk(staging):
        root_p = Path(root)
        for d in list(dirs):
            if (root_p / d).is_symlink():
                # os.walk does not descend into symlinked dirs; install them as links
                names.append(d)
                dirs.remove(d)
        for n in names:
            src = root_p / n
            rel = src.relative_to(staging)
            dst = prefix / rel
            dst.parent.mkdir(parents=True, exist_ok=True)
            if dst.is_symlink() or dst.is_file():
                dst.unlink()
            if src.is_symlink():
                os.symlink(os.readlink(src), dst)
            else:
                shutil.copy2(src, dst)
            files.append(rel.as_posix())
    return sorted(files)

# --- pipeline ---
class BuildPipeline:
    def __init__(
        self,
        downloader: Downloader,
        db,
        builds_dir: Optional[Union[str, Path]] = None,
        prefix: Optional[Union[str, Path]] = None,
        timeout: Optional[int] = None,
        keep_build_dirs: Optional[bool] = None,
        events: Optional[EventHub] = None,
    ):
        dirs = config.get_directories()
        bcfg = config.get_build_config()
        self.downloader = downloader
        self.db = db
        self.builds_dir = Path(builds_dir) if builds_dir is not None else dirs["builds"]
        self.prefix = Path(prefix) if prefix is not None else dirs["binaries"]
        self.timeout = timeout if timeout is not None else (int(bcfg.get("timeout") or 0) or None)
        self.keep_build_dirs = bool(bcfg.get("keep_build_dirs")) if keep_build_dirs is None else keep_build_dirs
        self.events = events or downloader.events

    # --- state machine ---
    def _transition(self, result: PipelineResult, new: PackageState):
        if new not in _TRANSITIONS[result.state]:
            raise RuntimeError(f"{result.name}: illegal transition {result.state.value} -> {new.value}")
        old = result.state
        ts = time.time()
        result.history.append(Transition(new, ts, next(_SEQUENCE)))
        result.state = new
        if new is PackageState.FAILED:
            logger.error("%s: %s -> failed", result.name, old.value)
        else:
            logger.info("%s: %s -> %s", result.name, old.value, new.value)
        self.events.emit(STATE, StateChange(result.name, old, new, ts))

    def _fail(self, result: PipelineResult, failure: Failure) -> PipelineResult:
        result.failure = failure
        logger.error("%s failed while %s: %s", result.name, failure.stage.value if failure.stage else "blocked", failure.reason)
        self._transition(result, PackageState.FAILED)
        return result

    # --- stages ---
    def verify(self, spec: PackageSpec, artifact: Path):
        """Raise ChecksumMismatchError (after deleting the artifact) when digests differ."""
        algorithm, expected = split_checksum(spec.checksum)
        try:
            actual = digest_of_file(artifact, algorithm)
        except ValueError as e:
            raise IntegrityError(f"unsupported digest algorithm {algorithm}") from e
        if actual != expected:
            artifact.unlink(missing_ok=True)
            raise ChecksumMismatchError(expected, actual, algorithm)

    def build_env(self, spec: PackageSpec, srcdir: Path, staging: Path) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({
            "source": str(srcdir),
            "binary": str(staging),
            "prefix": str(self.prefix),
            "QUARRY_PACKAGE": spec.name,
            "QUARRY_VERSION": str(spec.version),
            "JOBS": str(os.cpu_count() or 1),
        })
        env["PATH"] = os.pathsep.join([str(self.prefix / "bin"), env.get("PATH", os.defpath)])
        return env

    def build(self, spec: PackageSpec, srcdir: Path, staging: Path):
        env = self.build_env(spec, srcdir, staging)
        for cmd in spec.build:
            rc, out, err = _safe_run(["/bin/sh", "-c", cmd], cwd=srcdir, env=env, timeout=self.timeout)
            log_command_output(f"build.{spec.name}", out, err)
            if rc != 0:
                raise CommandFailedError(cmd, rc)

    def _reason(self, node: ResolvedPackage) -> str:
        existing = self.db.get(node.name)
        if existing is not None and existing.reason == REASON_MANUAL:
            return REASON_MANUAL
        return node.reason

    # --- main entry ---
    def run(self, node: ResolvedPackage) -> PipelineResult:
        spec = node.spec
        result = PipelineResult(name=spec.name, version=str(spec.version))
        if node.installed is not None:
            result.state = PackageState.INSTALLED
            result.record = node.installed
            return result

        stage = PackageState.FETCHING
        workdir: Optional[Path] = None
        try:
            self._transition(result, PackageState.FETCHING)
            try:
                artifact = self.downloader.fetch(spec)
            except DownloadError as e:
                return self._fail(result, Failure(stage, str(e), error=e))

            stage = PackageState.VERIFYING
            self._transition(result, stage)
            try:
                self.verify(spec, artifact)
            except IntegrityError as e:
                return self._fail(result, Failure(stage, str(e), error=e))

            stage = PackageState.EXTRACTING
            self._transition(result, stage)
            self.builds_dir.mkdir(parents=True, exist_ok=True)
            workdir = Path(tempfile.mkdtemp(prefix=f"{spec.name}_{spec.version}-", dir=str(self.builds_dir)))
            try:
                srcdir = extract_archive(artifact, workdir / "src")
            except ExtractionError as e:
                return self._fail(result, Failure(stage, str(e), error=e))

            stage = PackageState.BUILDING
            self._transition(result, stage)
            staging = workdir / "image"
            staging.mkdir()
            try:
                self.build(spec, srcdir, staging)
            except CommandFailedError as e:
                return self._fail(result, Failure(stage, str(e), error=e, command=e.command, exit_code=e.exit_code))
            self.prefix.mkdir(parents=True, exist_ok=True)
            files = _merge_tree(staging, self.prefix)

            record = InstalledRecord(
                name=spec.name,
                version=spec.version,
                checksum=spec.checksum,
                files=tuple(files),
                installed_at=time.time(),
                reason=self._reason(node),
            )
            self.db.put(spec.name, record)
            result.record = record
            self._transition(result, PackageState.INSTALLED)
            return result
        except StorageError:
            raise
        except (QuarryError, OSError) as e:
            logger.exception("%s: unexpected error while %s", spec.name, stage.value)
            return self._fail(result, Failure(stage, str(e), error=e))
        finally:
            if workdir is not None:
                if self.keep_build_dirs:
                    logger.info("Keeping build dir per config: %s", workdir)
                else:
                    shutil.rmtree(str(workdir), ignore_errors=True)
