from __future__ import annotations

import json
import threading
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from sqlmodel import Session

from leadsignal.clients.llm import LLMError
from leadsignal.clients.newsapi import NewsApiQuotaError
from leadsignal.config import FetchConfig, ScanConfig, build_pipeline_config, settings
from leadsignal.models import ScanRun, ScanStatus
from leadsignal.models.base import utcnow
from leadsignal.services import orchestrator as orchestrator_module
from leadsignal.services.errors import NotFoundError
from leadsignal.services.extractor import SignalExtractor
from leadsignal.services.fetcher import SourceFetcher
from leadsignal.services.orchestrator import (
    ContinuationError,
    HttpDispatcher,
    InlineDispatcher,
    ScanOrchestrator,
    ThreadDispatcher,
    build_dispatcher,
)
from tests.helpers.clients import StubLLMClient, StubNewsClient, make_settings, stage_items
from tests.helpers.metrics_stub import StubMetrics


class RecordingDispatcher:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls: list[tuple] = []
        self._fail = fail

    def dispatch(self, scan_id, *, skip_fetch, runner):
        if self._fail:
            raise ContinuationError("endpoint unreachable")
        self.calls.append((scan_id, skip_fetch))


class FakeClock:
    def __init__(self, step: float = 0.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def _build(repository, *, llm=None, scan_config=None, dispatcher=None, clock=None, news=None):
    config = build_pipeline_config(make_settings())
    extractor = SignalExtractor(repository, config.extraction, client=llm or StubLLMClient())
    fetcher = SourceFetcher(
        repository, FetchConfig(pause_seconds=0.0), client=news or StubNewsClient()
    )
    return ScanOrchestrator(
        repository,
        fetcher,
        extractor,
        scan_config or ScanConfig(batch_size=30, batch_pause_seconds=0.0),
        dispatcher=dispatcher or InlineDispatcher(),
        clock=clock or FakeClock(),
        sleep=lambda _: None,
    )


def test_scan_drains_staged_items_in_one_invocation(repository):
    stage_items(repository, 45)
    orchestrator = _build(repository)

    scan = orchestrator.start_scan()

    assert scan.status == ScanStatus.COMPLETED.value
    assert scan.items_analyzed == 45
    assert scan.batches_run == 2
    assert scan.invocations == 1
    assert scan.completed_at is not None
    assert scan.lease_token is None
    assert repository.list_unprocessed(100) == []


def test_scan_continues_across_invocations_when_batch_cap_reached(repository, monkeypatch):
    stub_metrics = StubMetrics()
    monkeypatch.setattr(orchestrator_module, "metrics", stub_metrics)
    stage_items(repository, 45)
    orchestrator = _build(
        repository,
        scan_config=ScanConfig(batch_size=30, max_batches_per_invocation=1, batch_pause_seconds=0.0),
    )

    scan = orchestrator.start_scan()

    assert scan.status == ScanStatus.COMPLETED.value
    assert scan.items_analyzed == 45
    assert scan.batches_run == 2
    assert scan.invocations == 2
    assert stub_metrics.counted("scan.continued") == 1
    assert stub_metrics.counted("scan.completed") == 1


def test_time_budget_hands_off_after_each_batch(repository):
    stage_items(repository, 90)
    dispatcher = RecordingDispatcher()
    orchestrator = _build(
        repository,
        scan_config=ScanConfig(
            batch_size=30,
            time_budget_seconds=20.0,
            safety_margin_seconds=10.0,
            max_batches_per_invocation=0,
            batch_pause_seconds=0.0,
        ),
        dispatcher=dispatcher,
        clock=FakeClock(step=12.0),
    )
    scan = repository.create_scan()

    outcome = orchestrator.run_work(scan.id, skip_fetch=True)

    assert outcome.status == "continued"
    assert outcome.batches == 1
    assert dispatcher.calls == [(scan.id, True)]
    stored = repository.get_scan(scan.id)
    assert stored.status == ScanStatus.RUNNING.value
    assert stored.items_analyzed == 30
    assert stored.lease_token is None


def test_counters_only_grow_between_invocations(repository):
    stage_items(repository, 75)
    dispatcher = RecordingDispatcher()
    orchestrator = _build(
        repository,
        scan_config=ScanConfig(batch_size=30, max_batches_per_invocation=1, batch_pause_seconds=0.0),
        dispatcher=dispatcher,
    )
    scan = repository.create_scan()

    snapshots = []
    for _ in range(3):
        orchestrator.run_work(scan.id, skip_fetch=True)
        stored = repository.get_scan(scan.id)
        snapshots.append((stored.items_analyzed, stored.batches_run, stored.invocations))

    assert snapshots == [(30, 1, 1), (60, 2, 2), (75, 3, 3)]
    assert repository.get_scan(scan.id).status == ScanStatus.COMPLETED.value


def test_fetch_counts_are_recorded_before_analysis(repository):
    repository.add_search_query("Funding", "levée de fonds")
    news = StubNewsClient(
        {"levée de fonds": [[{"url": f"https://news.test/f/{i}", "title": "t"} for i in range(3)]]}
    )
    orchestrator = _build(repository, news=news)

    scan = orchestrator.start_scan()

    assert scan.items_fetched == 3
    assert scan.items_analyzed == 3
    assert scan.status == ScanStatus.COMPLETED.value


def test_resume_of_terminal_scan_is_a_noop(repository):
    orchestrator = _build(repository)
    scan = orchestrator.start_scan()
    assert scan.status == ScanStatus.COMPLETED.value

    resumed = orchestrator.resume_scan(scan.id)
    outcome = orchestrator.run_work(scan.id, skip_fetch=True)

    assert resumed.invocations == scan.invocations
    assert outcome.status == "noop"
    assert repository.get_scan(scan.id).invocations == scan.invocations


def test_live_lease_blocks_a_second_invocation(repository):
    stage_items(repository, 5)
    orchestrator = _build(repository)
    scan = repository.create_scan()
    assert repository.claim_scan(scan.id, "other-worker", lease_seconds=300)

    outcome = orchestrator.run_work(scan.id, skip_fetch=True)

    assert outcome.status == "locked"
    stored = repository.get_scan(scan.id)
    assert stored.items_analyzed == 0
    assert len(repository.list_unprocessed(10)) == 5


def test_expired_lease_can_be_taken_over(repository, engine):
    stage_items(repository, 5)
    orchestrator = _build(repository)
    scan = repository.create_scan()
    assert repository.claim_scan(scan.id, "crashed-worker", lease_seconds=300)
    with Session(engine) as session:
        row = session.get(ScanRun, scan.id)
        row.lease_expires_at = utcnow() - timedelta(minutes=1)
        session.add(row)
        session.commit()

    outcome = orchestrator.run_work(scan.id, skip_fetch=True)

    assert outcome.status == "completed"
    assert repository.get_scan(scan.id).items_analyzed == 5


def test_provider_failure_marks_scan_failed(repository):
    stage_items(repository, 3)
    llm = StubLLMClient()
    llm.error = LLMError("upstream exploded")
    orchestrator = _build(repository, llm=llm)

    scan = orchestrator.start_scan()

    assert scan.status == ScanStatus.FAILED.value
    assert "upstream exploded" in scan.error_message
    assert scan.completed_at is not None
    # Items stay staged for the next scan.
    assert len(repository.list_unprocessed(10)) == 3


def test_invalid_model_output_fails_scan(repository):
    stage_items(repository, 2)
    orchestrator = _build(repository, llm=StubLLMClient(["I could not find anything."]))

    scan = orchestrator.start_scan()

    assert scan.status == ScanStatus.FAILED.value
    assert scan.error_message


def test_dispatch_failure_leaves_scan_resumable(repository):
    stage_items(repository, 45)
    orchestrator = _build(
        repository,
        scan_config=ScanConfig(batch_size=30, max_batches_per_invocation=1, batch_pause_seconds=0.0),
        dispatcher=RecordingDispatcher(fail=True),
    )
    scan = repository.create_scan()

    outcome = orchestrator.run_work(scan.id, skip_fetch=True)

    assert outcome.status == "dispatch_failed"
    stored = repository.get_scan(scan.id)
    assert stored.status == ScanStatus.RUNNING.value
    assert stored.lease_token is None

    resumed = orchestrator.resume_scan(scan.id, dispatcher=InlineDispatcher())
    assert resumed.status == ScanStatus.COMPLETED.value
    assert resumed.items_analyzed == 45


def test_unknown_scan_raises_not_found(repository):
    orchestrator = _build(repository)
    with pytest.raises(NotFoundError):
        orchestrator.resume_scan(uuid4())


def test_list_scans_filters_stale_running_scans(repository, engine):
    orchestrator = _build(repository)
    fresh = repository.create_scan()
    with Session(engine) as session:
        stale = ScanRun(started_at=utcnow() - timedelta(hours=2))
        session.add(stale)
        session.commit()
        stale_id = stale.id

    stale_scans = orchestrator.list_scans(stale_after_minutes=30)
    recent = orchestrator.list_scans(limit=10)

    assert [scan.id for scan in stale_scans] == [stale_id]
    assert {scan.id for scan in recent} == {fresh.id, stale_id}


def test_http_dispatcher_posts_continuation(repository):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(202, json={"success": True})

    http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://svc.test")
    dispatcher = HttpDispatcher("http://svc.test", http_client=http_client)
    scan_id = uuid4()

    dispatcher.dispatch(scan_id, skip_fetch=True, runner=lambda *_: None)

    assert requests[0].url.path == "/api/scans/run"
    assert json.loads(requests[0].content) == {"scan_log_id": str(scan_id), "skip_fetch": True}


def test_http_dispatcher_wraps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    http_client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://svc.test")
    dispatcher = HttpDispatcher("http://svc.test", http_client=http_client)

    with pytest.raises(ContinuationError) as excinfo:
        dispatcher.dispatch(uuid4(), skip_fetch=True, runner=lambda *_: None)
    assert excinfo.value.code == "503_CONTINUATION_FAILED"


def test_inline_dispatcher_runs_continuations_iteratively():
    dispatcher = InlineDispatcher()
    order = []

    def runner(scan_id, skip_fetch):
        order.append(skip_fetch)
        if len(order) < 3:
            dispatcher.dispatch(scan_id, skip_fetch=True, runner=runner)

    dispatcher.dispatch(uuid4(), skip_fetch=False, runner=runner)

    assert order == [False, True, True]


def test_build_dispatcher_modes():
    assert isinstance(build_dispatcher("inline", service_base_url="http://x"), InlineDispatcher)
    assert isinstance(build_dispatcher("http", service_base_url="http://x"), HttpDispatcher)
    thread = build_dispatcher("unknown", service_base_url="http://x")
    assert isinstance(thread, ThreadDispatcher)
    thread.shutdown()


def test_fetch_quota_failure_fails_scan_without_analysis(repository):
    repository.add_search_query("Funding", "levée de fonds")
    stage_items(repository, 5)
    news = StubNewsClient(errors={"levée de fonds": NewsApiQuotaError("NewsAPI credits exhausted")})
    llm = StubLLMClient()
    orchestrator = _build(repository, llm=llm, news=news)

    scan = orchestrator.start_scan()

    assert scan.status == ScanStatus.FAILED.value
    assert "NewsAPI credits exhausted" in scan.error_message
    assert scan.items_fetched == 0
    assert scan.items_analyzed == 0
    assert scan.batches_run == 0
    assert scan.lease_token is None
    assert llm.calls == []
    assert len(news.calls) == 1
    assert len(repository.list_unprocessed(10)) == 5


def test_missing_content_api_key_fails_scan(repository, monkeypatch):
    monkeypatch.setattr(settings, "newsapi_key", None)
    llm = StubLLMClient()
    config = build_pipeline_config(make_settings())
    orchestrator = ScanOrchestrator(
        repository,
        SourceFetcher(repository, FetchConfig(pause_seconds=0.0)),
        SignalExtractor(repository, config.extraction, client=llm),
        ScanConfig(batch_pause_seconds=0.0),
        dispatcher=InlineDispatcher(),
        clock=FakeClock(),
        sleep=lambda _: None,
    )

    scan = orchestrator.start_scan()

    assert scan.status == ScanStatus.FAILED.value
    assert scan.error_message == "NEWSAPI_KEY is not configured."
    assert scan.items_analyzed == 0
    assert llm.calls == []


def test_stale_listing_uses_configured_threshold(repository, engine):
    orchestrator = _build(
        repository, scan_config=ScanConfig(batch_pause_seconds=0.0, stale_after_minutes=90)
    )
    with Session(engine) as session:
        old = ScanRun(started_at=utcnow() - timedelta(hours=2))
        recent = ScanRun(started_at=utcnow() - timedelta(minutes=60))
        session.add(old)
        session.add(recent)
        session.commit()
        old_id = old.id

    assert [scan.id for scan in orchestrator.list_scans(stale=True)] == [old_id]
    assert len(orchestrator.list_scans(stale_after_minutes=30)) == 2


def test_inline_dispatcher_keeps_queues_per_thread():
    dispatcher = InlineDispatcher()
    runs: list[tuple[str, int]] = []

    def other_thread_runner(scan_id, skip_fetch):
        runs.append(("other", threading.get_ident()))

    def other_thread():
        dispatcher.dispatch(uuid4(), skip_fetch=True, runner=other_thread_runner)

    def main_runner(scan_id, skip_fetch):
        runs.append(("main", threading.get_ident()))
        worker = threading.Thread(target=other_thread)
        worker.start()
        worker.join()

    dispatcher.dispatch(uuid4(), skip_fetch=False, runner=main_runner)

    assert [name for name, _ in runs] == ["main", "other"]
    assert runs[0][1] == threading.get_ident()
    assert runs[1][1] != threading.get_ident()


def test_orchestrator_close_releases_thread_dispatcher(repository):
    dispatcher = ThreadDispatcher()
    orchestrator = _build(repository, dispatcher=dispatcher)

    orchestrator.close()

    with pytest.raises(ContinuationError):
        dispatcher.dispatch(uuid4(), skip_fetch=True, runner=lambda *_: None)
