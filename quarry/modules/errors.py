# quarry/modules/errors.py
# -*- coding: utf-8 -*-
"""
Exception taxonomy shared by every quarry component.

Resolution and storage errors propagate to the caller; everything that can go
wrong while processing a single package is captured into a pipeline Failure.
"""

from __future__ import annotations
from typing import Any, List, Optional, Sequence


class QuarryError(Exception):
    """Base class for all quarry errors."""


# ----------------------------
# Resolution
# ----------------------------
class ResolutionError(QuarryError):
    pass


class ConflictError(ResolutionError):
    def __init__(self, name: str, requirements: Sequence[Any], decisions: Optional[Sequence[str]] = None):
        self.name = name
        self.requirements = list(requirements)
        self.decisions = list(decisions or [])
        reqs = "; ".join(str(r) for r in self.requirements)
        msg = f"no version of {name} satisfies all requirements: {reqs}"
        if self.decisions:
            msg += f" (decisions: {' -> '.join(self.decisions)})"
        super().__init__(msg)


class CycleError(ResolutionError):
    def __init__(self, path: Sequence[str]):
        self.path: List[str] = list(path)
        super().__init__("dependency cycle: " + " -> ".join(self.path))


class NotFoundError(ResolutionError):
    def __init__(self, name: str, requirement: Any = None):
        self.name = name
        self.requirement = requirement
        if requirement is None:
            super().__init__(f"package {name} not found")
        else:
            super().__init__(f"no candidate for {requirement}")


# ----------------------------
# Download
# ----------------------------
class DownloadError(QuarryError):
    pass


class UnreachableError(DownloadError):
    def __init__(self, url: str, attempts: int = 1, reason: str = ""):
        self.url = url
        self.attempts = attempts
        self.reason = reason
        msg = f"{url} unreachable after {attempts} attempt(s)"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MalformedResponseError(DownloadError):
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"malformed response from {url}: {reason}")


# ----------------------------
# Integrity / extraction / build
# ----------------------------
class IntegrityError(QuarryError):
    pass


class ChecksumMismatchError(IntegrityError):
    def __init__(self, expected: str, actual: str, algorithm: str = "sha512"):
        self.expected = expected
        self.actual = actual
        self.algorithm = algorithm
        super().__init__(f"{algorithm} mismatch: expected {expected}, got {actual}")


class ExtractionError(QuarryError):
    pass


class BuildError(QuarryError):
    pass


class CommandFailedError(BuildError):
    def __init__(self, command: str, exit_code: int):
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"command {command!r} exited with status {exit_code}")


# ----------------------------
# Storage
# ----------------------------
class StorageError(QuarryError):
    pass
