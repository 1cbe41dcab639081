from __future__ import annotations

from datetime import date

import pytest

from leadsignal.clients.registry import RegistryError, RegistryQuotaError
from leadsignal.config import RegistryConfig, settings
from leadsignal.models import SignalSource
from leadsignal.services.errors import ProviderError, QuotaExceededError
from leadsignal.services.registry import (
    RegistryImporter,
    add_months,
    creation_window,
    registry_relevance,
    relevance_to_score,
)
from tests.helpers.clients import StubRegistryClient


def _company(siren: str, **fields) -> dict:
    return {
        "siren": siren,
        "denomination": f"Company {siren}",
        "date_creation": "2017-07-14",
        "effectif": "Entre 20 et 49 salariés",
        "libelle_code_naf": "Conseil pour les affaires",
        "code_naf": "70.22Z",
        **fields,
    }


def _importer(repository, client, **config) -> tuple[RegistryImporter, list[float]]:
    pauses: list[float] = []
    importer = RegistryImporter(
        repository,
        RegistryConfig(**{"page_size": 2, "max_pages": 5, "pause_seconds": 0.2, **config}),
        client=client,
        sleep=pauses.append,
        today=lambda: date(2026, 10, 18),
    )
    return importer, pauses


def test_import_searches_the_creation_month_and_stores_signals(repository):
    client = StubRegistryClient([[_company("111"), _company("222")], [_company("333")]])
    importer, pauses = _importer(repository, client)

    result = importer.import_anniversaries()

    assert result.api_requests == 2
    assert result.companies_seen == 3
    assert result.signals_created == 3
    assert pauses == [0.2]
    assert client.calls[0]["created_from"] == date(2017, 7, 1)
    assert client.calls[0]["created_to"] == date(2017, 7, 31)
    assert [call["page"] for call in client.calls] == [1, 2]


def test_signal_fields_describe_the_anniversary(repository):
    client = StubRegistryClient([[_company("111")]])
    importer, _ = _importer(repository, client)

    importer.import_anniversaries()

    [signal] = repository.list_signals(limit=10)
    assert signal.company_name == "Company 111"
    assert signal.signal_type == "anniversary"
    assert signal.source == SignalSource.REGISTRY.value
    assert signal.source_url == "https://www.pappers.fr/entreprise/111"
    assert signal.source_name == "Pappers"
    assert signal.sector == "Conseil pour les affaires"
    assert signal.estimated_size == "Entre 20 et 49 salariés"
    assert signal.event_detail == "Turns 10 on 14/07/2027 (founded 14/07/2017)"
    assert signal.score == 3


def test_exact_day_searches_a_single_creation_date(repository):
    client = StubRegistryClient([[]])
    importer, _ = _importer(repository, client, anniversary_years=(5, 10))

    result = importer.import_anniversaries(exact_day=True)

    assert [(call["created_from"], call["created_to"]) for call in client.calls] == [
        (date(2022, 7, 18), date(2022, 7, 18)),
        (date(2017, 7, 18), date(2017, 7, 18)),
    ]
    assert result.signals_created == 0
    assert [window["years"] for window in result.windows] == ["5", "10"]


def test_reimport_counts_duplicates(repository):
    client = StubRegistryClient([[_company("111")]])
    importer, _ = _importer(repository, client)

    importer.import_anniversaries()
    again = importer.import_anniversaries()

    assert again.signals_created == 0
    assert again.duplicates == 1


def test_paging_stops_at_total_and_max_pages(repository):
    full_page = [_company("1"), _company("2")]
    client = StubRegistryClient([full_page, full_page, full_page], total=4)
    importer, _ = _importer(repository, client)

    importer.import_anniversaries()
    assert len(client.calls) == 2

    capped = StubRegistryClient([full_page] * 5, total=100)
    capped_importer, _ = _importer(repository, capped, max_pages=3)

    capped_importer.import_anniversaries()
    assert len(capped.calls) == 3


def test_companies_without_name_or_creation_date_are_skipped(repository):
    client = StubRegistryClient(
        [[_company("111", denomination=""), _company("222", date_creation="not-a-date")]]
    )
    importer, _ = _importer(repository, client)

    result = importer.import_anniversaries()

    assert result.companies_seen == 2
    assert result.signals_created == 0
    assert result.duplicates == 0


def test_quota_error_is_translated(repository):
    client = StubRegistryClient()
    client.error = RegistryQuotaError()
    importer, _ = _importer(repository, client)

    with pytest.raises(QuotaExceededError) as excinfo:
        importer.import_anniversaries()
    assert excinfo.value.code == "402_QUOTA_EXCEEDED"


def test_registry_failure_is_a_provider_error(repository):
    client = StubRegistryClient()
    client.error = RegistryError("boom", code="REGISTRY_500")
    importer, _ = _importer(repository, client)

    with pytest.raises(ProviderError) as excinfo:
        importer.import_anniversaries()
    assert excinfo.value.code == "502_REGISTRY_ERROR"


def test_missing_api_key_is_reported(repository, monkeypatch):
    monkeypatch.setattr(settings, "registry_api_key", None)
    importer = RegistryImporter(repository, RegistryConfig())

    with pytest.raises(ProviderError) as excinfo:
        importer.import_anniversaries()
    assert excinfo.value.code == "503_MISSING_API_KEY"


@pytest.mark.parametrize(
    ("company", "expected"),
    [
        ({}, 50),
        ({"effectif": "Entre 20 et 49 salariés"}, 60),
        ({"tranche_effectif": "Entre 250 et 499 salariés", "code_naf": "56.10A"}, 85),
        ({"effectif": "100 à 199", "chiffre_affaires": 60_000_000, "code_naf": "47.11"}, 100),
        ({"chiffre_affaires": 7_000_000}, 60),
    ],
)
def test_registry_relevance(company, expected):
    assert registry_relevance(company) == expected


def test_relevance_maps_to_signal_score():
    assert [relevance_to_score(value) for value in (100, 80, 60, 50)] == [5, 4, 3, 2]


def test_date_helpers_clamp_to_month_end():
    assert add_months(date(2026, 5, 31), 9) == date(2027, 2, 28)
    assert creation_window(date(2028, 2, 29), 1, exact_day=True) == (
        date(2027, 2, 28),
        date(2027, 2, 28),
    )
    assert creation_window(date(2026, 2, 10), 2, exact_day=False) == (
        date(2024, 2, 1),
        date(2024, 2, 29),
    )
