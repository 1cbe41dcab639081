from __future__ import annotations

import json
from dataclasses import replace

import pytest

from leadsignal.clients.llm import LLMError
from leadsignal.config import build_pipeline_config
from leadsignal.models import OwnerType
from leadsignal.services import extractor as extractor_module
from leadsignal.services.errors import (
    PayloadValidationError,
    PipelineError,
    ProviderError,
    QuotaExceededError,
)
from leadsignal.services.extractor import SignalExtractor, parse_llm_json
from tests.helpers.clients import StubLLMClient, make_settings, stage_items


class RecordingLauncher:
    def __init__(self) -> None:
        self.launched: list = []

    def launch(self, owner_id, owner_type=OwnerType.SIGNAL):
        self.launched.append((owner_id, owner_type))
        return None


def _extraction_config(**overrides):
    config = build_pipeline_config(make_settings()).extraction
    return replace(config, **overrides)


def _reply(*signals: dict) -> str:
    return json.dumps({"signals": list(signals)})


def _signal(company: str, *, score: int = 4, url: str = "https://news.test/article/0", **extra):
    payload = {
        "company_name": company,
        "signal_type": "funding",
        "event_detail": f"{company} raised 5M EUR",
        "sector": "SaaS",
        "estimated_size": "50-100",
        "score": score,
        "hook_suggestion": "Congratulate the team",
        "source_url": url,
    }
    payload.update(extra)
    return payload


def test_batch_creates_signals_and_marks_items_processed(repository):
    stage_items(repository, 3)
    llm = StubLLMClient(
        [_reply(_signal("Acme"), _signal("Globex", url="https://news.test/article/1"))]
    )
    extractor = SignalExtractor(repository, _extraction_config(), client=llm)

    result = extractor.analyze_batch()

    assert result.processed_count == 3
    assert result.created_count == 2
    assert repository.list_unprocessed(10) == []
    signals = {signal.company_name: signal for signal in repository.list_signals()}
    assert set(signals) == {"Acme", "Globex"}
    assert signals["Acme"].source == "press"
    assert signals["Acme"].status == "new"
    assert signals["Acme"].enrichment_status == "none"
    assert signals["Acme"].source_name == "Les Echos"
    assert "ARTICLE 1" in llm.calls[0]["user_prompt"]
    assert llm.calls[0]["model"] == "gpt-4o-mini"


def test_empty_staging_skips_the_model(repository):
    llm = StubLLMClient()
    extractor = SignalExtractor(repository, _extraction_config(), client=llm)

    result = extractor.analyze_batch()

    assert result.processed_count == 0
    assert llm.calls == []


def test_batch_respects_batch_size(repository):
    stage_items(repository, 5)
    extractor = SignalExtractor(
        repository, _extraction_config(batch_size=2), client=StubLLMClient()
    )

    assert extractor.analyze_batch().processed_count == 2
    assert len(repository.list_unprocessed(10)) == 3


def test_invalid_and_duplicate_entries_are_skipped(repository):
    stage_items(repository, 2)
    llm = StubLLMClient(
        [
            _reply(
                _signal("Acme"),
                _signal("Acme"),
                _signal("Initech", score=9),
                {"signal_type": "funding", "score": 3},
                _signal("Umbrella", signal_type="weather"),
            )
        ]
    )
    extractor = SignalExtractor(repository, _extraction_config(), client=llm)

    result = extractor.analyze_batch()

    assert result.created_count == 1
    assert result.duplicates == 1
    assert result.skipped_invalid == 3


def test_signal_already_stored_is_not_duplicated(repository):
    stage_items(repository, 1, prefix="first")
    stage_items(repository, 1, prefix="second")
    llm = StubLLMClient([_reply(_signal("Acme"))])
    extractor = SignalExtractor(repository, _extraction_config(batch_size=1), client=llm)

    first = extractor.analyze_batch()
    second = extractor.analyze_batch()

    assert first.created_count == 1
    assert second.created_count == 0
    assert second.duplicates == 1
    assert len(repository.list_signals()) == 1


def test_french_signal_type_aliases_are_normalized(repository):
    stage_items(repository, 1)
    llm = StubLLMClient([_reply(_signal("Acme", signal_type="levee"))])
    extractor = SignalExtractor(repository, _extraction_config(), client=llm)

    extractor.analyze_batch()

    assert repository.list_signals()[0].signal_type == "funding"


def test_fenced_reply_is_accepted(repository):
    stage_items(repository, 1)
    llm = StubLLMClient(["```json\n" + _reply(_signal("Acme")) + "\n```"])
    extractor = SignalExtractor(repository, _extraction_config(), client=llm)

    assert extractor.analyze_batch().created_count == 1


def test_reply_without_signals_array_is_rejected_and_items_stay_staged(repository):
    stage_items(repository, 2)
    extractor = SignalExtractor(
        repository, _extraction_config(), client=StubLLMClient(['{"results": []}'])
    )

    with pytest.raises(PayloadValidationError):
        extractor.analyze_batch()
    assert len(repository.list_unprocessed(10)) == 2


def test_quota_error_is_translated(repository):
    stage_items(repository, 1)
    llm = StubLLMClient()
    llm.error = LLMError("insufficient_quota", code="402_QUOTA_EXCEEDED")
    extractor = SignalExtractor(repository, _extraction_config(), client=llm)

    with pytest.raises(QuotaExceededError) as excinfo:
        extractor.analyze_batch()
    assert excinfo.value.code == "402_QUOTA_EXCEEDED"


def test_missing_api_key_raises_provider_error(repository, monkeypatch):
    monkeypatch.setattr(extractor_module.settings, "openai_api_key", None)
    stage_items(repository, 1)
    extractor = SignalExtractor(repository, _extraction_config())

    with pytest.raises(ProviderError) as excinfo:
        extractor.analyze_batch()
    assert excinfo.value.code == "503_MISSING_API_KEY"


def test_auto_enrich_launches_high_scores_only(repository):
    stage_items(repository, 2)
    llm = StubLLMClient(
        [
            _reply(
                _signal("Acme", score=5),
                _signal("Globex", score=2, url="https://news.test/article/1"),
            )
        ]
    )
    launcher = RecordingLauncher()
    extractor = SignalExtractor(
        repository,
        _extraction_config(auto_enrich_enabled=True, auto_enrich_min_score=4),
        client=llm,
        launcher=launcher,
    )

    result = extractor.analyze_batch()

    assert result.auto_enriched == 1
    assert len(launcher.launched) == 1
    launched_signal = repository.get_signal(launcher.launched[0][0])
    assert launched_signal.company_name == "Acme"


def test_auto_enrich_failure_does_not_fail_the_batch(repository):
    stage_items(repository, 1)
    llm = StubLLMClient([_reply(_signal("Acme", score=5))])

    class FailingLauncher:
        def launch(self, owner_id, owner_type=OwnerType.SIGNAL):
            raise PipelineError("agent down", code="502_AGENT_UPSTREAM")

    extractor = SignalExtractor(
        repository,
        _extraction_config(auto_enrich_enabled=True),
        client=llm,
        launcher=FailingLauncher(),
    )

    result = extractor.analyze_batch()

    assert result.created_count == 1
    assert result.auto_enriched == 0


def test_parse_llm_json_extracts_embedded_object():
    payload = parse_llm_json('Here you go: {"signals": []} Thanks!')
    assert payload == {"signals": []}


def test_parse_llm_json_rejects_arrays():
    with pytest.raises(PayloadValidationError):
        parse_llm_json("[1, 2, 3]")
