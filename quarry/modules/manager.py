# quarry/modules/manager.py
# -*- coding: utf-8 -*-
"""
Quarry entry points.

    with Quarry() as q:
        q.add(spec)
        graph = q.resolve(spec)
        report = q.install(graph)

The manager owns the package database lifecycle (opened on enter, closed on
exit) and wires catalog, resolver, downloader, pipeline and orchestrator
together. Progress and state events are exposed through `events`.
"""

from __future__ import annotations
import difflib
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Union

from quarry.modules import config
from quarry.modules.buildsystem import BuildPipeline
from quarry.modules.db import PackageDatabase
from quarry.modules.events import EventHub
from quarry.modules.fetcher import Downloader, FetchResult
from quarry.modules.logging import get_logger
from quarry.modules.orchestrator import InstallReport, Orchestrator
from quarry.modules.resolver import Catalog, Lookup, Resolver
from quarry.modules.spec import InstalledRecord, PackageSpec, ResolutionGraph

logger = get_logger("manager")

SpecLike = Union[PackageSpec, Mapping[str, Any]]


def _as_spec(spec: SpecLike) -> PackageSpec:
    return spec if isinstance(spec, PackageSpec) else PackageSpec.from_dict(spec)


class Quarry:
    def __init__(
        self,
        db: Optional[PackageDatabase] = None,
        lookup: Optional[Lookup] = None,
        downloader: Optional[Downloader] = None,
        prefix: Optional[Union[str, Path]] = None,
        builds_dir: Optional[Union[str, Path]] = None,
        width: Optional[int] = None,
        events: Optional[EventHub] = None,
    ):
        self.db = db if db is not None else PackageDatabase()
        self.events = events or (downloader.events if downloader is not None else EventHub())
        self.catalog = Catalog(db=self.db)
        self.lookup = lookup or self.catalog
        self.downloader = downloader or Downloader(events=self.events)
        self.pipeline = BuildPipeline(self.downloader, self.db, builds_dir=builds_dir, prefix=prefix, events=self.events)
        self.width = width if width is not None else int(config.get_build_config().get("jobs", 1))

    # --- lifecycle ---
    def open(self) -> "Quarry":
        if not self.db.is_open:
            self.db.open()
        return self

    def close(self):
        self.db.close()

    def __enter__(self) -> "Quarry":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    # --- catalog ---
    def add(self, spec: SpecLike) -> PackageSpec:
        """Record a package definition so it can be resolved as a dependency."""
        spec = _as_spec(spec)
        self.db.add_spec(spec)
        return spec

    def search(self, query: str, installed_only: bool = False, limit: int = 20) -> List[str]:
        """Package names matching `query`: substring matches first, then close matches."""
        if installed_only:
            names = [r.name for r in self.db.list()]
        else:
            names = sorted(set(self.catalog.names()) | {r.name for r in self.db.list()})
        q = query.lower()
        hits = [n for n in names if q in n.lower()]
        close = difflib.get_close_matches(query, names, n=limit, cutoff=0.6)
        hits.extend(n for n in close if n not in hits)
        return hits[:limit]

    # --- resolve / install ---
    def resolve(self, spec: SpecLike) -> ResolutionGraph:
        return Resolver(self.lookup, self.db).resolve(_as_spec(spec))

    def download(self, graph: ResolutionGraph) -> Iterator[FetchResult]:
        """Prefetch every source that still needs building."""
        return self.downloader.fetch_many(n.spec for n in graph if not n.is_installed)

    def install(self, graph: ResolutionGraph, width: Optional[int] = None) -> InstallReport:
        report = Orchestrator(self.pipeline, width if width is not None else self.width).install(graph)
        if not report.ok:
            logger.warning("manager: install of %s incomplete:\n%s", graph.root, report.summary())
        return report

    # --- queries ---
    def query_installed(self, name: str) -> Optional[InstalledRecord]:
        return self.db.get(name)

    def list_installed(self) -> List[InstalledRecord]:
        return self.db.list()
