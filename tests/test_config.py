from __future__ import annotations

import pytest

from leadsignal.config import (
    DEFAULT_PERSONAS,
    ScanConfig,
    build_pipeline_config,
    load_personas,
)
from tests.helpers.clients import make_settings


def test_defaults_are_assembled_from_settings():
    config = build_pipeline_config(make_settings())

    assert config.extraction.batch_size == 30
    assert config.scan.batch_size == config.extraction.batch_size
    assert config.fetch.language == "fr"
    assert config.enrichment.personas == DEFAULT_PERSONAS
    assert "signals" in config.extraction.system_prompt


def test_out_of_range_values_are_clamped():
    config = build_pipeline_config(
        make_settings(
            extraction_batch_size=0,
            fetch_page_size=-5,
            scan_max_batches_per_invocation=-1,
            scan_lease_seconds=0,
        )
    )

    assert config.extraction.batch_size == 1
    assert config.fetch.page_size == 1
    assert config.scan.max_batches_per_invocation == 0
    assert config.scan.lease_seconds == 1


def test_registry_and_stale_settings_are_assembled():
    config = build_pipeline_config(
        make_settings(
            registry_anniversary_years=[0, 5, 10],
            registry_page_size=500,
            registry_region="",
            scan_stale_after_minutes=45,
        )
    )

    assert config.registry.anniversary_years == (5, 10)
    assert config.registry.page_size == 100
    assert config.registry.region is None
    assert config.scan.stale_after_minutes == 45


def test_unused_server_settings_are_not_declared():
    settings = make_settings()

    for name in ("secret_key", "host", "port"):
        assert not hasattr(settings, name)


def test_effective_budget_subtracts_safety_margin():
    assert ScanConfig(time_budget_seconds=85, safety_margin_seconds=10).effective_budget_seconds == 75
    assert ScanConfig(time_budget_seconds=5, safety_margin_seconds=10).effective_budget_seconds == 0


def test_custom_prompt_path(tmp_path):
    prompt = tmp_path / "prompt.md"
    prompt.write_text("  custom prompt  ", encoding="utf-8")

    config = build_pipeline_config(make_settings(extraction_system_prompt_path=str(prompt)))

    assert config.extraction.system_prompt == "custom prompt"


def test_missing_prompt_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        build_pipeline_config(
            make_settings(extraction_system_prompt_path=str(tmp_path / "missing.md"))
        )


def test_load_personas_accepts_both_priority_spellings():
    personas = load_personas(
        '[{"name": "Office Manager", "isPriority": true}, {"name": "CFO", "is_priority": false},'
        ' {"name": "  "}, "junk"]'
    )

    assert [(persona.name, persona.is_priority) for persona in personas] == [
        ("Office Manager", True),
        ("CFO", False),
    ]


@pytest.mark.parametrize("raw", [None, "", "not json", '{"name": "CFO"}', "[]"])
def test_load_personas_falls_back_to_defaults(raw):
    assert load_personas(raw) == DEFAULT_PERSONAS
