"""Background execution and polling surface for sync runs."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from catalog_sync.sync.models import SyncOptions, SyncRunStatus, SyncRunSummary, SyncStatusView
from catalog_sync.sync.persistence import RunSummaryStore
from catalog_sync.sync.pipeline import SyncPipeline, SyncRunState
from catalog_sync.sync.pool import CancellationToken

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[str], SyncPipeline]

DEFAULT_MAX_FINISHED_RUNS = 100


@dataclass(slots=True)
class _RunHandle:
    state: SyncRunState
    token: CancellationToken
    thread: threading.Thread
    summary: SyncRunSummary | None = None


class SyncService:
    """Start runs on worker threads and expose their status.

    At most one non-terminal run exists per store; a second start request for
    the same store returns the active run id.

    Only the newest ``max_finished_runs`` finished runs stay in memory. Older
    ones are answered from ``summary_store`` when one is configured.
    """

    def __init__(
        self,
        pipeline_factory: PipelineFactory,
        *,
        summary_store: RunSummaryStore | None = None,
        max_finished_runs: int = DEFAULT_MAX_FINISHED_RUNS,
    ) -> None:
        if max_finished_runs < 0:
            raise ValueError("max_finished_runs must be >= 0")
        self.pipeline_factory = pipeline_factory
        self.summary_store = summary_store
        self.max_finished_runs = max_finished_runs
        self._runs: dict[str, _RunHandle] = {}
        self._finished: deque[str] = deque()
        self._active_by_store: dict[str, str] = {}
        self._lock = threading.Lock()

    def start_sync(self, store_id: str, options: SyncOptions | None = None) -> str:
        options = options or SyncOptions()
        with self._lock:
            active_run_id = self._active_by_store.get(store_id)
            if active_run_id is not None:
                logger.info("Store %s already has active sync run %s", store_id, active_run_id)
                return active_run_id

            pipeline = self.pipeline_factory(store_id)
            state = pipeline.new_run(store_id)
            state.transition(SyncRunStatus.QUEUED)
            deadline = options.deadline_seconds
            token = CancellationToken(
                deadline_seconds=deadline if deadline is not None and deadline > 0 else None,
            )
            thread = threading.Thread(
                target=self._execute,
                args=(pipeline, state, options, token),
                name=f"sync-run-{state.run_id[:8]}",
                daemon=True,
            )
            self._runs[state.run_id] = _RunHandle(state=state, token=token, thread=thread)
            self._active_by_store[store_id] = state.run_id
            thread.start()
        logger.info("Queued sync run %s for store %s", state.run_id, store_id)
        return state.run_id

    def get_status(self, run_id: str) -> SyncStatusView | None:
        handle = self._handle(run_id)
        if handle is not None:
            return handle.state.snapshot()
        summary = self._stored_summary(run_id)
        if summary is None:
            return None
        return SyncStatusView(
            run_id=summary.run_id,
            store_id=summary.store_id,
            status=summary.status,
            processed=summary.processed_count,
            total=summary.total,
            error_count=summary.error_count,
            cost_usd=summary.cost_usd,
            error=summary.error,
        )

    def cancel(self, run_id: str) -> bool:
        """Ask a run to stop claiming items; returns False if it is unknown or finished."""

        handle = self._handle(run_id)
        if handle is None or handle.state.status.is_terminal:
            return False
        handle.token.cancel()
        logger.info("Cancellation requested for sync run %s", run_id)
        return True

    def wait(self, run_id: str, timeout: float | None = None) -> SyncStatusView | None:
        handle = self._handle(run_id)
        if handle is None:
            return self.get_status(run_id)
        handle.thread.join(timeout)
        return handle.state.snapshot()

    def summary(self, run_id: str) -> SyncRunSummary | None:
        handle = self._handle(run_id)
        if handle is not None:
            return handle.summary
        return self._stored_summary(run_id)

    def history(self, store_id: str, *, limit: int = 20) -> list[SyncRunSummary]:
        if self.summary_store is not None:
            return self.summary_store.list_run_summaries(store_id, limit=limit)
        with self._lock:
            summaries = [
                handle.summary
                for handle in self._runs.values()
                if handle.summary is not None and handle.summary.store_id == store_id
            ]
        summaries.sort(key=lambda summary: summary.started_at, reverse=True)
        return summaries[:limit]

    def _handle(self, run_id: str) -> _RunHandle | None:
        with self._lock:
            return self._runs.get(run_id)

    def _stored_summary(self, run_id: str) -> SyncRunSummary | None:
        if self.summary_store is None:
            return None
        return self.summary_store.get_run_summary(run_id)

    def _execute(
        self,
        pipeline: SyncPipeline,
        state: SyncRunState,
        options: SyncOptions,
        token: CancellationToken,
    ) -> None:
        summary: SyncRunSummary | None = None
        try:
            summary = pipeline.run(state.store_id, options, state=state, cancel_token=token)
        except Exception as error:  # noqa: BLE001
            logger.exception("Sync run %s crashed", state.run_id)
            if not state.status.is_terminal:
                state.transition(SyncRunStatus.FAILED, error=str(error))
            summary = state.to_summary()
        finally:
            with self._lock:
                handle = self._runs.get(state.run_id)
                if handle is not None:
                    handle.summary = summary
                if self._active_by_store.get(state.store_id) == state.run_id:
                    del self._active_by_store[state.store_id]
                self._finished.append(state.run_id)
                self._evict_finished()

    def _evict_finished(self) -> None:
        while len(self._finished) > self.max_finished_runs:
            evicted = self._finished.popleft()
            self._runs.pop(evicted, None)
            logger.debug("Evicted finished sync run %s from memory", evicted)
