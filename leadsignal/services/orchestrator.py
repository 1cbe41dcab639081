"""Resumable fetch-then-analyze scan job.

A scan is a durable `scan_runs` row. Each invocation of `run_work` claims a
lease on that row, analyzes batches until the source staging table is
drained or the invocation budget runs out, and in the latter case hands the
rest of the work to a continuation dispatched through a
`ContinuationDispatcher`. Counters are persisted after every batch, so a
crashed or cut-off invocation loses at most the batch in flight.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol
from uuid import UUID, uuid4

import httpx

from leadsignal.config import ScanConfig
from leadsignal.models import ScanRun
from leadsignal.models.base import utcnow
from leadsignal.observability.metrics import metrics
from leadsignal.services.errors import NotFoundError, PipelineError
from leadsignal.services.extractor import SignalExtractor
from leadsignal.services.fetcher import SourceFetcher
from leadsignal.services.repository import SqlPipelineRepository

logger = logging.getLogger(__name__)

Runner = Callable[[UUID, bool], Any]


class ContinuationError(PipelineError):
    """Raised when a continuation could not be handed off."""

    def __init__(self, message: str, code: str = "503_CONTINUATION_FAILED") -> None:
        super().__init__(message, code=code)


class ContinuationDispatcher(Protocol):
    def dispatch(self, scan_id: UUID, *, skip_fetch: bool, runner: Runner) -> None:
        ...


class ThreadDispatcher:
    """Run invocations on a small in-process executor."""

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="scan")

    def dispatch(self, scan_id: UUID, *, skip_fetch: bool, runner: Runner) -> None:
        try:
            future = self._executor.submit(runner, scan_id, skip_fetch)
        except RuntimeError as exc:
            raise ContinuationError(f"Scan executor unavailable: {exc}") from exc
        future.add_done_callback(lambda done: _log_runner_failure(scan_id, done))

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    def close(self) -> None:
        self.shutdown(wait=False)


class HttpDispatcher:
    """Re-invoke the service's own run endpoint so each invocation gets a fresh request."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def dispatch(self, scan_id: UUID, *, skip_fetch: bool, runner: Runner) -> None:
        payload = {"scan_log_id": str(scan_id), "skip_fetch": skip_fetch}
        try:
            response = self._http.post("/api/scans/run", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ContinuationError(f"Continuation request failed: {exc}") from exc

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()


class InlineDispatcher:
    """Run invocations synchronously on the calling thread.

    Continuations requested while an invocation is running are queued and
    drained by the outermost call on the same thread, so call depth stays
    constant. Each thread drains only its own queue.
    """

    def __init__(self) -> None:
        self._local = threading.local()

    def dispatch(self, scan_id: UUID, *, skip_fetch: bool, runner: Runner) -> None:
        pending: deque[tuple[UUID, bool, Runner]] | None = getattr(self._local, "pending", None)
        if pending is not None:
            pending.append((scan_id, skip_fetch, runner))
            return
        pending = deque([(scan_id, skip_fetch, runner)])
        self._local.pending = pending
        try:
            while pending:
                pending_id, pending_skip, pending_runner = pending.popleft()
                pending_runner(pending_id, pending_skip)
        finally:
            self._local.pending = None


def _log_runner_failure(scan_id: UUID, future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error(
            "scan.invocation.crashed",
            extra={"scan_id": str(scan_id), "error": str(exc)},
            exc_info=exc,
        )


@dataclass(frozen=True)
class RunOutcome:
    scan_id: UUID
    status: str
    batches: int = 0
    processed: int = 0
    created: int = 0
    error: str | None = None


class ScanOrchestrator:
    def __init__(
        self,
        repository: SqlPipelineRepository,
        fetcher: SourceFetcher,
        extractor: SignalExtractor,
        config: ScanConfig,
        *,
        dispatcher: ContinuationDispatcher,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._fetcher = fetcher
        self._extractor = extractor
        self._config = config
        self._dispatcher = dispatcher
        self._clock = clock
        self._sleep = sleep

    def start_scan(self, *, dispatcher: ContinuationDispatcher | None = None) -> ScanRun:
        """Create a running scan and hand its first invocation to the dispatcher."""
        scan = self._repository.create_scan()
        metrics.increment("scan.started")
        logger.info("scan.started", extra={"scan_id": str(scan.id)})
        self._dispatch(scan.id, skip_fetch=False, dispatcher=dispatcher)
        return self._repository.get_scan(scan.id) or scan

    def resume_scan(
        self,
        scan_id: UUID,
        *,
        skip_fetch: bool = True,
        dispatcher: ContinuationDispatcher | None = None,
    ) -> ScanRun:
        """Dispatch another invocation; terminal scans are returned untouched."""
        scan = self._require_scan(scan_id)
        if scan.is_terminal:
            logger.info("scan.resume.terminal", extra={"scan_id": str(scan_id), "status": scan.status})
            return scan
        self._dispatch(scan_id, skip_fetch=skip_fetch, dispatcher=dispatcher)
        return self._repository.get_scan(scan_id) or scan

    def run_work(self, scan_id: UUID, skip_fetch: bool = False) -> RunOutcome:
        scan = self._require_scan(scan_id)
        if scan.is_terminal:
            return RunOutcome(scan_id=scan_id, status="noop")

        token = uuid4().hex
        if not self._repository.claim_scan(scan_id, token, lease_seconds=self._config.lease_seconds):
            metrics.increment("scan.invocation.locked")
            logger.info("scan.invocation.locked", extra={"scan_id": str(scan_id)})
            return RunOutcome(scan_id=scan_id, status="locked")

        started = self._clock()
        batches = processed = created = 0
        logger.info(
            "scan.invocation.started",
            extra={"scan_id": str(scan_id), "skip_fetch": skip_fetch},
        )
        try:
            if not skip_fetch:
                fetch_result = self._fetcher.fetch()
                self._repository.record_fetch(scan_id, fetch_result.new_items_saved)
                if self._budget_exhausted(started, batches):
                    return self._continue_later(scan_id, token, batches, processed, created)

            while True:
                batch = self._extractor.analyze_batch()
                if not self._repository.record_batch(
                    scan_id, processed=batch.processed_count, created=batch.created_count
                ):
                    # Another writer moved the scan to a terminal state.
                    return RunOutcome(scan_id, "noop", batches, processed, created)
                batches += 1
                processed += batch.processed_count
                created += batch.created_count

                if batch.processed_count == 0 or batch.processed_count < self._config.batch_size:
                    self._repository.complete_scan(scan_id)
                    metrics.increment("scan.completed")
                    logger.info(
                        "scan.completed",
                        extra={"scan_id": str(scan_id), "batches": batches, "processed": processed},
                    )
                    return RunOutcome(scan_id, "completed", batches, processed, created)

                if self._budget_exhausted(started, batches):
                    return self._continue_later(scan_id, token, batches, processed, created)

                self._sleep(self._config.batch_pause_seconds)
        except Exception as exc:  # noqa: BLE001 - every failure is recorded on the scan row
            message = str(exc) or type(exc).__name__
            logger.exception("scan.failed", extra={"scan_id": str(scan_id), "error": message})
            metrics.increment("scan.failed", tags={"code": getattr(exc, "code", "500_INTERNAL")})
            self._repository.fail_scan(scan_id, message)
            return RunOutcome(scan_id, "failed", batches, processed, created, error=message)
        finally:
            metrics.timing("scan.invocation.latency_ms", (self._clock() - started) * 1000)

    def list_scans(
        self, *, stale: bool = False, stale_after_minutes: int | None = None, limit: int = 20
    ) -> list[ScanRun]:
        """Recent scans, or running scans older than the stale threshold with no live lease.

        `stale_after_minutes` overrides the configured threshold and implies `stale`.
        """
        if stale_after_minutes is None and not stale:
            return self._repository.list_scans(limit=limit)
        minutes = stale_after_minutes or self._config.stale_after_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)
        return self._repository.list_stale_scans(cutoff)

    def _budget_exhausted(self, started: float, batches: int) -> bool:
        elapsed = self._clock() - started
        if elapsed >= self._config.effective_budget_seconds:
            return True
        max_batches = self._config.max_batches_per_invocation
        return bool(max_batches) and batches >= max_batches

    def _continue_later(
        self, scan_id: UUID, token: str, batches: int, processed: int, created: int
    ) -> RunOutcome:
        self._repository.release_scan(scan_id, token)
        metrics.increment("scan.continued")
        logger.info(
            "scan.invocation.continued",
            extra={"scan_id": str(scan_id), "batches": batches, "processed": processed},
        )
        if not self._dispatch(scan_id, skip_fetch=True):
            return RunOutcome(scan_id, "dispatch_failed", batches, processed, created)
        return RunOutcome(scan_id, "continued", batches, processed, created)

    def _dispatch(
        self,
        scan_id: UUID,
        *,
        skip_fetch: bool,
        dispatcher: ContinuationDispatcher | None = None,
    ) -> bool:
        try:
            (dispatcher or self._dispatcher).dispatch(scan_id, skip_fetch=skip_fetch, runner=self.run_work)
        except ContinuationError as exc:
            metrics.increment("scan.dispatch_failed")
            logger.error(
                "scan.dispatch_failed",
                extra={"scan_id": str(scan_id), "error": str(exc)},
            )
            return False
        return True

    def close(self) -> None:
        """Release the dispatcher's executor or HTTP client, when it holds one."""
        close = getattr(self._dispatcher, "close", None)
        if callable(close):
            close()

    def _require_scan(self, scan_id: UUID) -> ScanRun:
        scan = self._repository.get_scan(scan_id)
        if scan is None:
            raise NotFoundError(f"Scan {scan_id} not found.")
        return scan


def build_dispatcher(mode: str, *, service_base_url: str) -> ContinuationDispatcher:
    normalized = (mode or "thread").lower()
    if normalized == "http":
        return HttpDispatcher(service_base_url)
    if normalized == "inline":
        return InlineDispatcher()
    if normalized != "thread":
        logger.warning("scan.dispatcher.unknown_mode", extra={"mode": mode})
    return ThreadDispatcher()
