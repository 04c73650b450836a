# scheduler.py
from __future__ import annotations

import os
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Deque, Dict, Optional

from .dag import JobGraph
from .errors import CIError, DependencyFailed, InvalidTransition
from .model import JobInstance, JobResult, JobStatus
from .run import PipelineRun
from .ui.console import Console, get_console

# execute(instance, cancel) -> JobResult; runs on a worker thread
ExecuteFn = Callable[[JobInstance, threading.Event], JobResult]

_ALLOWED = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED},
}


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Dispatches ready job instances to a bounded worker pool.

    The status table of the run is only touched from the thread that calls
    run(); workers hand back JobResult messages through their futures.
    """

    def __init__(
        self,
        graph: JobGraph,
        execute: ExecuteFn,
        *,
        max_workers: int | None = None,
        fail_fast: bool = False,
        console: Optional[Console] = None,
    ):
        self.graph = graph
        self.execute = execute
        self.max_workers = max_workers or default_workers()
        self.fail_fast = fail_fast
        self.console = console or get_console()
        self._cancel = threading.Event()

    # ---- control ----

    def cancel(self) -> None:
        """Ask running jobs to stop and skip everything not yet started."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- status table ----

    def _transition(self, run: PipelineRun, iid: int, new: JobStatus) -> None:
        old = run.statuses[iid]
        if new not in _ALLOWED.get(old, set()):
            raise InvalidTransition(f"{self.graph[iid].name}: {old.value} -> {new.value}")
        run.statuses[iid] = new

    def _skip(self, run: PipelineRun, iid: int, reason: CIError) -> None:
        self._transition(run, iid, JobStatus.SKIPPED)
        run.skip_reasons[iid] = reason
        self.console.print_job_skipped(self.graph[iid].name, reason.message)

    def _skip_dependents(self, run: PipelineRun, iid: int, status: JobStatus) -> None:
        upstream = self.graph[iid].name
        for dep_id in sorted(self.graph.transitive_dependents(iid)):
            if run.statuses[dep_id] is JobStatus.PENDING:
                self._skip(
                    run,
                    dep_id,
                    DependencyFailed(self.graph[dep_id].name, upstream, status.value),
                )

    def _skip_all_pending(self, run: PipelineRun) -> None:
        for inst in self.graph.instances:
            if run.statuses[inst.id] is JobStatus.PENDING:
                self._skip(
                    run,
                    inst.id,
                    CIError(
                        kind="CancellationRequested",
                        job=inst.name,
                        step=None,
                        message="Run was cancelled before this job started",
                    ),
                )

    # ---- main loop ----

    def _worker(self, instance: JobInstance) -> JobResult:
        try:
            return self.execute(instance, self._cancel)
        except Exception as e:
            # executor bug or unexpected crash: still a result message
            return JobResult(
                instance_id=instance.id,
                status=JobStatus.FAILED,
                failure=CIError(
                    kind="ExecutorCrashed",
                    job=instance.name,
                    step=None,
                    message=f"{type(e).__name__}: {e}",
                ),
            )

    def _accept(self, run: PipelineRun, remaining: Dict[int, int], ready: Deque[int], result: JobResult) -> None:
        iid = result.instance_id
        self._transition(run, iid, result.status)
        run.results[iid] = result
        inst = self.graph[iid]
        self.console.print_job_finished(inst.name, result.status.value, result.duration)

        if result.status is JobStatus.SUCCEEDED:
            for child in sorted(self.graph.dependents(iid)):
                remaining[child] -= 1
                if remaining[child] == 0 and run.statuses[child] is JobStatus.PENDING:
                    ready.append(child)
            return

        failure = result.failure
        if failure is not None and result.status is JobStatus.FAILED:
            self.console.print_failure(
                inst.name,
                str(failure),
                exit_code=failure.details.get("exit_code"),
                hint=_hint(failure),
                log_tail=failure.details.get("log_tail"),
            )
        self._skip_dependents(run, iid, result.status)
        if self.fail_fast and result.status is JobStatus.FAILED:
            self.cancel()

    def run(self, run: PipelineRun) -> PipelineRun:
        """
        Run every instance of the graph, respecting dependencies.
        Returns the same run with a terminal status for every instance.
        """
        remaining: Dict[int, int] = {i.id: len(i.deps) for i in self.graph.instances}
        ready: Deque[int] = deque(self.graph.roots())   # FIFO
        in_flight: Dict[Future, int] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                if self.cancelled:
                    ready.clear()
                    self._skip_all_pending(run)

                # dispatch up to the parallelism limit
                while ready and len(in_flight) < self.max_workers:
                    iid = ready.popleft()
                    self._transition(run, iid, JobStatus.RUNNING)
                    in_flight[pool.submit(self._worker, self.graph[iid])] = iid

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.console.print_info("\nInterrupted: cancelling run...")
                    self.cancel()
                    continue

                for fut in done:
                    in_flight.pop(fut)
                    self._accept(run, remaining, ready, fut.result())

        # anything still pending could never become ready
        if self.cancelled:
            self._skip_all_pending(run)
        return run


def _hint(failure: CIError) -> Optional[str]:
    hints = failure.details.get("hints")
    if isinstance(hints, dict) and hints:
        return "; ".join(f"{tool}: {h}" for tool, h in hints.items())
    return None
