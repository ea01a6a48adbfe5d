# quarry/modules/spec.py
# -*- coding: utf-8 -*-
"""
Value types shared by the resolver, pipeline and database.

Features:
- PackageSpec: immutable, already-parsed package definition (from_dict/to_dict)
- VersionRequirement: name + semver range, backed by semantic_version.SimpleSpec
- InstalledRecord: durable proof of a completed install
- ResolvedPackage / ResolutionGraph: name-addressed arena of resolved nodes
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

import semantic_version

from quarry.modules.errors import CycleError

REASON_MANUAL = "manual"
REASON_DEPENDENCY = "dependency"

# hex length -> hashlib algorithm, used when a checksum carries no "alg:" prefix
_DIGEST_LENGTHS = {64: "sha256", 96: "sha384", 128: "sha512"}
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

# -----------------------
# Helpers
# -----------------------
def parse_version(value: Union[str, semantic_version.Version]) -> semantic_version.Version:
    if isinstance(value, semantic_version.Version):
        return value
    text = str(value).strip()
    try:
        return semantic_version.Version(text)
    except ValueError:
        # accept partial versions such as "1.2"
        return semantic_version.Version.coerce(text)


def normalize_range(text: Optional[str]) -> str:
    """Turn a human range like '≥ 1.0, < 2.0' into SimpleSpec syntax ('>=1.0,<2.0')."""
    if text is None:
        return "*"
    s = str(text).replace("≥", ">=").replace("≤", "<=")
    s = re.sub(r"\s+", "", s)
    return s or "*"


def split_checksum(checksum: str) -> Tuple[str, str]:
    """Return (algorithm, lowercase hex digest) for a checksum string."""
    value = (checksum or "").strip()
    if ":" in value:
        alg, hexv = value.split(":", 1)
        alg = alg.strip().lower().replace("-", "")
        hexv = hexv.strip().lower()
    else:
        hexv = value.lower()
        alg = _DIGEST_LENGTHS.get(len(hexv), "")
    if not alg or not hexv or not _HEX_RE.match(hexv):
        raise ValueError(f"unrecognized checksum: {checksum!r}")
    return alg, hexv

# -----------------------
# Requirements and specs
# -----------------------
@dataclass(frozen=True)
class VersionRequirement:
    name: str
    range: str = "*"
    _spec: semantic_version.SimpleSpec = field(init=False, repr=False, compare=False, hash=False)

    def __post_init__(self):
        rng = normalize_range(self.range)
        object.__setattr__(self, "range", rng)
        object.__setattr__(self, "_spec", semantic_version.SimpleSpec(rng))

    def allows(self, version: Union[str, semantic_version.Version]) -> bool:
        return self._spec.match(parse_version(version))

    def __str__(self) -> str:
        return f"{self.name} {self.range}"


@dataclass(frozen=True)
class PackageSpec:
    name: str
    version: semantic_version.Version
    source: str
    checksum: str
    dependencies: Tuple[VersionRequirement, ...] = ()
    build: Tuple[str, ...] = ()
    description: Optional[str] = None
    license: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("package name must not be empty")
        object.__setattr__(self, "version", parse_version(self.version))
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "build", tuple(self.build))
        # fail early on an unusable checksum
        split_checksum(self.checksum)

    @property
    def key(self) -> str:
        return f"{self.name}-{self.version}"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PackageSpec":
        """Build a spec from an already-parsed definition mapping."""
        missing = [k for k in ("name", "version", "source", "checksum") if not data.get(k)]
        if missing:
            raise ValueError(f"package definition missing fields: {', '.join(missing)}")
        deps = data.get("dependencies") or {}
        if isinstance(deps, Mapping):
            reqs = [VersionRequirement(n, r) for n, r in deps.items()]
        else:
            reqs = [d if isinstance(d, VersionRequirement) else VersionRequirement(d["name"], d.get("range", "*")) for d in deps]
        build = data.get("build") or ()
        if isinstance(build, str):
            build = [build]
        return cls(
            name=str(data["name"]),
            version=parse_version(data["version"]),
            source=str(data["source"]),
            checksum=str(data["checksum"]),
            dependencies=tuple(reqs),
            build=tuple(str(c) for c in build),
            description=data.get("description"),
            license=data.get("license"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "version": str(self.version),
            "source": self.source,
            "checksum": self.checksum,
            "dependencies": {r.name: r.range for r in self.dependencies},
            "build": list(self.build),
        }
        if self.description is not None:
            out["description"] = self.description
        if self.license is not None:
            out["license"] = self.license
        return out


@dataclass(frozen=True)
class InstalledRecord:
    name: str
    version: semantic_version.Version
    checksum: str
    files: Tuple[str, ...] = ()
    installed_at: float = 0.0
    reason: str = REASON_DEPENDENCY

    def __post_init__(self):
        object.__setattr__(self, "version", parse_version(self.version))
        object.__setattr__(self, "files", tuple(self.files))

# -----------------------
# Resolution graph (arena addressed by name)
# -----------------------
@dataclass(frozen=True)
class ResolvedPackage:
    spec: PackageSpec
    dependencies: Tuple[str, ...] = ()
    installed: Optional[InstalledRecord] = None
    reason: str = REASON_DEPENDENCY

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def version(self) -> semantic_version.Version:
        return self.spec.version

    @property
    def is_installed(self) -> bool:
        return self.installed is not None


class ResolutionGraph:
    """Nodes keyed by package name; edges are dependency names inside the arena."""

    def __init__(self, root: str, nodes: Iterable[ResolvedPackage]):
        self.root = root
        self._nodes: Dict[str, ResolvedPackage] = {}
        for node in nodes:
            if node.name in self._nodes:
                raise ValueError(f"duplicate node for {node.name}")
            self._nodes[node.name] = node
        if root not in self._nodes:
            raise ValueError(f"root {root} is not part of the graph")
        for node in self._nodes.values():
            for dep in node.dependencies:
                if dep not in self._nodes:
                    raise ValueError(f"{node.name} depends on unknown node {dep}")

    def __getitem__(self, name: str) -> ResolvedPackage:
        return self._nodes[name]

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[ResolvedPackage]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def get(self, name: str) -> Optional[ResolvedPackage]:
        return self._nodes.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._nodes)

    def dependencies_of(self, name: str) -> Tuple[str, ...]:
        return self._nodes[name].dependencies

    def dependents_of(self, name: str) -> List[str]:
        return [n.name for n in self._nodes.values() if name in n.dependencies]

    def transitive_dependents(self, name: str) -> List[str]:
        seen: List[str] = []
        stack = [name]
        while stack:
            cur = stack.pop()
            for dep in self.dependents_of(cur):
                if dep not in seen:
                    seen.append(dep)
                    stack.append(dep)
        return seen

    def topological_order(self) -> List[str]:
        """
        Names ordered so that every dependency precedes its dependents.
        Raises CycleError carrying the offending path.
        """
        state: Dict[str, int] = {}
        path: List[str] = []
        result: List[str] = []

        def dfs(n: str):
            st = state.get(n, 0)
            if st == 1:
                raise CycleError(path[path.index(n):] + [n])
            if st == 2:
                return
            state[n] = 1
            path.append(n)
            for dep in self._nodes[n].dependencies:
                dfs(dep)
            path.pop()
            state[n] = 2
            result.append(n)

        for n in self._nodes:
            if state.get(n) is None:
                dfs(n)
        return result

    def to_dot(self) -> str:
        """Graphviz DOT rendering of the graph."""
        lines = ["digraph deps {"]
        for node in self._nodes.values():
            label = f"{node.name}\\n{node.version}"
            style = ", style=dashed" if node.is_installed else ""
            lines.append(f'  "{node.name}" [label="{label}"{style}];')
        for node in self._nodes.values():
            for dep in node.dependencies:
                lines.append(f'  "{node.name}" -> "{dep}";')
        lines.append("}")
        return "\n".join(lines)
