# quarry/modules/orchestrator.py
# -*- coding: utf-8 -*-
"""
Dependency-ordered install scheduling.

Every node carries a countdown of unfinished direct dependencies. Nodes whose
countdown reaches zero are handed to a thread pool running the build pipeline;
each completion decrements its dependents' counters and schedules those that
reach zero. A failure blocks every transitive dependent, while independent
branches keep going. Any other exception escaping a pipeline run fails only
that node. A StorageError stops new scheduling, waits for work in flight and
is re-raised.
"""

from __future__ import annotations
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from quarry.modules import config
from quarry.modules.buildsystem import BuildPipeline, Failure, PackageState, PipelineResult
from quarry.modules.errors import StorageError
from quarry.modules.logging import get_logger
from quarry.modules.spec import InstalledRecord, ResolutionGraph

logger = get_logger("orchestrator")


@dataclass
class NodeOutcome:
    name: str
    version: str
    state: PackageState = PackageState.PENDING
    failure: Optional[Failure] = None
    record: Optional[InstalledRecord] = None
    skipped: bool = False
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    result: Optional[PipelineResult] = None


@dataclass
class InstallReport:
    root: str
    outcomes: Dict[str, NodeOutcome] = field(default_factory=dict)

    def __getitem__(self, name: str) -> NodeOutcome:
        return self.outcomes[name]

    @property
    def ok(self) -> bool:
        return all(o.state is PackageState.INSTALLED for o in self.outcomes.values())

    @property
    def installed(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if o.state is PackageState.INSTALLED]

    @property
    def failed(self) -> List[str]:
        return [n for n, o in self.outcomes.items() if o.state is PackageState.FAILED]

    def records(self) -> Dict[str, InstalledRecord]:
        return {n: o.record for n, o in self.outcomes.items() if o.record is not None}

    def summary(self) -> str:
        lines = []
        for name, o in sorted(self.outcomes.items()):
            if o.state is PackageState.INSTALLED:
                status = "already installed" if o.skipped else "installed"
            elif o.failure is not None and o.failure.blocked:
                status = f"blocked by {o.failure.blocked_by}"
            elif o.failure is not None and o.failure.stage is not None:
                status = f"failed while {o.failure.stage.value}: {o.failure.reason}"
            elif o.failure is not None:
                status = f"failed: {o.failure.reason}"
            else:
                status = o.state.value
            lines.append(f"{name} {o.version}: {status}")
        return "\n".join(lines)


class Orchestrator:
    def __init__(self, pipeline: BuildPipeline, width: Optional[int] = None):
        self.pipeline = pipeline
        self.width = max(1, int(width if width is not None else config.get_build_config().get("jobs", 1)))

    def install(self, graph: ResolutionGraph) -> InstallReport:
        order = graph.topological_order()  # also rejects cyclic graphs
        report = InstallReport(root=graph.root)
        remaining: Dict[str, int] = {}
        for name in order:
            node = graph[name]
            outcome = NodeOutcome(name=name, version=str(node.version))
            if node.is_installed:
                outcome.state = PackageState.INSTALLED
                outcome.record = node.installed
                outcome.skipped = True
            report.outcomes[name] = outcome
            remaining[name] = len(node.dependencies)

        lock = threading.Lock()
        ready: List[str] = []

        def finish(name: str):
            # caller holds lock; dependents of a completed node move one step closer to ready
            for dep in graph.dependents_of(name):
                remaining[dep] -= 1
                if remaining[dep] == 0 and report.outcomes[dep].state is PackageState.PENDING:
                    ready.append(dep)

        def block(name: str):
            for dep in graph.transitive_dependents(name):
                o = report.outcomes[dep]
                if not o.state.terminal:
                    o.state = PackageState.FAILED
                    o.failure = Failure.blocked_on(name)
                    logger.warning("orchestrator: %s blocked by %s", dep, name)

        with lock:
            for name in order:
                if report.outcomes[name].skipped:
                    finish(name)
            for name in order:
                if remaining[name] == 0 and report.outcomes[name].state is PackageState.PENDING and name not in ready:
                    ready.append(name)

        logger.info("orchestrator: installing %d package(s) for %s (width=%d)", len(order), graph.root, self.width)
        storage_error: Optional[StorageError] = None
        running: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.width, thread_name_prefix="quarry-build") as ex:
            while True:
                with lock:
                    if storage_error is None:
                        while ready:
                            name = ready.pop(0)
                            running[ex.submit(self.pipeline.run, graph[name])] = name
                if not running:
                    break
                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = running.pop(fut)
                    outcome = report.outcomes[name]
                    try:
                        result = fut.result()
                    except StorageError as e:
                        logger.error("orchestrator: storage failure while installing %s: %s", name, e)
                        storage_error = storage_error or e
                        continue
                    except Exception as e:
                        logger.exception("orchestrator: %s raised while installing", name)
                        with lock:
                            outcome.state = PackageState.FAILED
                            outcome.failure = Failure(None, f"{type(e).__name__}: {e}", error=e)
                            block(name)
                        continue
                    with lock:
                        outcome.result = result
                        outcome.state = result.state
                        outcome.failure = result.failure
                        outcome.record = result.record
                        started = result.entered(PackageState.FETCHING)
                        outcome.started_at = started.timestamp if started else None
                        outcome.finished_at = result.history[-1].timestamp if result.history else None
                        if result.ok:
                            finish(name)
                        else:
                            block(name)

        if storage_error is not None:
            raise storage_error
        logger.info("orchestrator: %d installed, %d failed", len(report.installed), len(report.failed))
        return report
