# quarry/modules/resolver.py
# -*- coding: utf-8 -*-
"""
Dependency resolver for quarry.

Features:
- Catalog: in-memory index of package definitions (optionally backed by the
  database catalog table), candidates returned highest version first
- Resolver: depth-first constraint propagation with an explicit choice-point
  stack; conflicts and missing candidates jump back to the most recent
  choice point that contributed to the failure
- Diamond dependencies converge on a single version per name
- Cycles of any length are reported as CycleError with the offending path
- Installed packages pin their recorded version and are not expanded
- Diagnostics carry the decision path that led to the failure
"""

from __future__ import annotations
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from quarry.modules.errors import ConflictError, CycleError, NotFoundError, ResolutionError
from quarry.modules.logging import get_logger
from quarry.modules.spec import (
    REASON_DEPENDENCY,
    REASON_MANUAL,
    InstalledRecord,
    PackageSpec,
    ResolutionGraph,
    ResolvedPackage,
    VersionRequirement,
)

logger = get_logger("resolver")

Lookup = Callable[[str, VersionRequirement], Iterable[PackageSpec]]
Candidate = Tuple[PackageSpec, Optional[InstalledRecord]]

# -----------------------
# Catalog
# -----------------------
class Catalog:
    """
    Package definitions indexed by name. Usable directly as a Resolver lookup:
    catalog(name, requirement) -> matching specs, highest version first.
    """

    def __init__(self, specs: Iterable[PackageSpec] = (), db=None):
        self._index: Dict[str, Dict[str, PackageSpec]] = {}
        self._lock = threading.RLock()
        self.db = db
        for spec in specs:
            self.add(spec)

    def add(self, spec: PackageSpec):
        with self._lock:
            self._index.setdefault(spec.name, {})[str(spec.version)] = spec

    def names(self) -> List[str]:
        with self._lock:
            names = set(self._index)
        if self.db is not None:
            names.update(s.name for s in self.db.list_specs())
        return sorted(names)

    def list_candidates(self, name: str) -> List[PackageSpec]:
        with self._lock:
            found = dict(self._index.get(name, {}))
        if self.db is not None:
            for spec in self.db.get_specs(name):
                found.setdefault(str(spec.version), spec)
        return sorted(found.values(), key=lambda s: s.version, reverse=True)

    def get_candidate(self, name: str, version) -> Optional[PackageSpec]:
        for spec in self.list_candidates(name):
            if str(spec.version) == str(version):
                return spec
        return None

    def __call__(self, name: str, requirement: VersionRequirement) -> List[PackageSpec]:
        return [s for s in self.list_candidates(name) if requirement.allows(s.version)]

# -----------------------
# Search state
# -----------------------
@dataclass(frozen=True)
class Demand:
    """A requirement raised by `requester`; `path` runs from the root to the requester."""
    requester: str
    requirement: VersionRequirement
    path: Tuple[str, ...]

    @property
    def name(self) -> str:
        return self.requirement.name

    def describe(self) -> str:
        return f"{self.requirement} (from {self.requester})"


@dataclass
class _State:
    selected: Dict[str, PackageSpec] = field(default_factory=dict)
    installed: Dict[str, InstalledRecord] = field(default_factory=dict)
    requirements: Dict[str, List[Demand]] = field(default_factory=dict)
    edges: Dict[str, List[str]] = field(default_factory=dict)
    agenda: List[Demand] = field(default_factory=list)

    def copy(self) -> "_State":
        return _State(
            selected=dict(self.selected),
            installed=dict(self.installed),
            requirements={k: list(v) for k, v in self.requirements.items()},
            edges={k: list(v) for k, v in self.edges.items()},
            agenda=list(self.agenda),
        )


@dataclass
class ChoicePoint:
    name: str
    demand: Demand
    chosen: Candidate
    remaining: List[Candidate]
    snapshot: _State  # state before `name` was selected

# -----------------------
# Resolver
# -----------------------
class Resolver:
    def __init__(self, lookup: Lookup, db=None):
        self.lookup = lookup
        self.db = db

    def resolve(self, root: PackageSpec) -> ResolutionGraph:
        """
        Compute one version per package name reachable from `root`.
        Raises ConflictError, CycleError or NotFoundError; performs no I/O besides
        lookups and database reads.
        """
        records: Dict[str, Optional[InstalledRecord]] = {}
        stack: List[ChoicePoint] = []
        state = _State()
        state.selected[root.name] = root
        state.requirements[root.name] = []
        state.edges[root.name] = []

        root_record = self._record(records, root.name)
        if root_record is not None and root_record.version == root.version:
            logger.info("resolver: %s %s already installed", root.name, root.version)
            state.installed[root.name] = root_record
        else:
            self._expand(state, root, (root.name,))

        while state.agenda:
            demand = state.agenda.pop()
            name = demand.name
            if name in demand.path:
                path = list(demand.path[demand.path.index(name):]) + [name]
                logger.error("resolver: cycle detected: %s", " -> ".join(path))
                raise CycleError(path)

            if name in state.selected:
                self._link(state, demand)
                state.requirements[name].append(demand)
                chosen = state.selected[name]
                if demand.requirement.allows(chosen.version):
                    continue
                reqs = [d.describe() for d in state.requirements[name]]
                failure: ResolutionError = ConflictError(name, reqs, self._decisions(root, stack))
                culprits: Set[str] = {name}
                for d in state.requirements[name]:
                    culprits.update(d.path)
            else:
                candidates, failure = self._candidates(records, demand, root, stack)
                if candidates:
                    stack.append(ChoicePoint(name, demand, candidates[0], candidates[1:], state.copy()))
                    self._select(state, demand, candidates[0])
                    continue
                culprits = set(demand.path)

            logger.debug("resolver: %s; backtracking (culprits: %s)", failure, ", ".join(sorted(culprits)))
            state = self._backjump(stack, culprits, failure)

        nodes = [
            ResolvedPackage(
                spec=spec,
                dependencies=tuple(state.edges.get(name, ())),
                installed=state.installed.get(name),
                reason=REASON_MANUAL if name == root.name else REASON_DEPENDENCY,
            )
            for name, spec in state.selected.items()
        ]
        graph = ResolutionGraph(root.name, nodes)
        graph.topological_order()
        logger.info("resolver: resolved %s %s into %d package(s)", root.name, root.version, len(graph))
        return graph

    # -----------------------
    # Internals
    # -----------------------
    def _record(self, records: Dict[str, Optional[InstalledRecord]], name: str) -> Optional[InstalledRecord]:
        if self.db is None:
            return None
        if name not in records:
            records[name] = self.db.get(name)
        return records[name]

    def _candidates(self, records, demand: Demand, root: PackageSpec,
                    stack: List[ChoicePoint]) -> Tuple[List[Candidate], Optional[ResolutionError]]:
        name = demand.name
        record = self._record(records, name)
        if record is not None:
            # an installed package is never silently replaced
            if demand.requirement.allows(record.version):
                return [(self._installed_spec(name, record), record)], None
            reqs = [demand.describe(), f"{name} =={record.version} (installed)"]
            return [], ConflictError(name, reqs, self._decisions(root, stack))

        by_version: Dict[str, PackageSpec] = {}
        for spec in self.lookup(name, demand.requirement):
            if spec.name == name and demand.requirement.allows(spec.version):
                by_version.setdefault(str(spec.version), spec)
        if not by_version:
            return [], NotFoundError(name, demand.requirement)
        ordered = sorted(by_version.values(), key=lambda s: s.version, reverse=True)
        return [(s, None) for s in ordered], None

    def _installed_spec(self, name: str, record: InstalledRecord) -> PackageSpec:
        req = VersionRequirement(name, f"=={record.version}")
        for spec in self.lookup(name, req):
            if spec.name == name and spec.version == record.version:
                return spec
        # definition no longer available; the record is enough to describe the node
        return PackageSpec(name=name, version=record.version, source="", checksum=record.checksum)

    @staticmethod
    def _link(state: _State, demand: Demand):
        deps = state.edges.setdefault(demand.requester, [])
        if demand.name not in deps:
            deps.append(demand.name)

    def _select(self, state: _State, demand: Demand, candidate: Candidate):
        spec, record = candidate
        self._link(state, demand)
        state.selected[spec.name] = spec
        state.requirements[spec.name] = [demand]
        state.edges[spec.name] = []
        if record is not None:
            state.installed[spec.name] = record
            return
        self._expand(state, spec, demand.path + (spec.name,))

    @staticmethod
    def _expand(state: _State, spec: PackageSpec, path: Tuple[str, ...]):
        # reversed so the first declared dependency is examined first
        for req in reversed(spec.dependencies):
            state.agenda.append(Demand(spec.name, req, path))

    def _backjump(self, stack: List[ChoicePoint], culprits: Set[str], failure: ResolutionError) -> _State:
        target = None
        for i in range(len(stack) - 1, -1, -1):
            if stack[i].name in culprits:
                target = i
                break
        if target is None:
            raise failure
        del stack[target + 1:]
        while stack:
            cp = stack[-1]
            if cp.remaining:
                cp.chosen = cp.remaining.pop(0)
                state = cp.snapshot.copy()
                self._select(state, cp.demand, cp.chosen)
                logger.debug("resolver: retrying %s with %s", cp.name, cp.chosen[0].version)
                return state
            stack.pop()
        raise failure

    @staticmethod
    def _decisions(root: PackageSpec, stack: List[ChoicePoint]) -> List[str]:
        return [f"{root.name}={root.version}"] + [f"{cp.name}={cp.chosen[0].version}" for cp in stack]
