"""Client for the company-registry search API (Pappers-style `/recherche`)."""

from __future__ import annotations

from datetime import date
from typing import Any

import httpx

from leadsignal.config import settings


class RegistryError(RuntimeError):
    """Base error for registry client failures."""

    def __init__(self, message: str, code: str = "REGISTRY_ERROR") -> None:
        super().__init__(message)
        self.code = code


class RegistryRateLimitError(RegistryError):
    def __init__(self, message: str = "Rate limited by the registry API") -> None:
        super().__init__(message, code="REGISTRY_429")


class RegistryQuotaError(RegistryError):
    """Raised when the registry account has no credits left."""

    def __init__(self, message: str = "Registry credits exhausted") -> None:
        super().__init__(message, code="REGISTRY_QUOTA")


class RegistryTimeoutError(RegistryError):
    def __init__(self, message: str = "Registry request timed out") -> None:
        super().__init__(message, code="REGISTRY_TIMEOUT")


class RegistrySchemaError(RegistryError):
    def __init__(self, message: str = "Unexpected registry response schema") -> None:
        super().__init__(message, code="REGISTRY_SCHEMA_ERR")


class RegistryClient:
    """Searches active companies by creation date."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.pappers.fr/v2",
        timeout: float = 20.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("REGISTRY_API_KEY is required to create a RegistryClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_env(cls) -> "RegistryClient":
        """Instantiate the client using REGISTRY_API_KEY."""
        return cls(settings.registry_api_key or "", base_url=settings.registry_base_url)

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def search_companies(
        self,
        *,
        created_from: date,
        created_to: date,
        page: int = 1,
        per_page: int = 100,
        region: str | None = None,
        min_headcount_code: str | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return one page of active companies created in the window, plus the total."""
        params: dict[str, Any] = {
            "api_token": self._api_key,
            "date_creation_min": created_from.isoformat(),
            "date_creation_max": created_to.isoformat(),
            "per_page": per_page,
            "page": page,
            "statut": "actif",
        }
        if region and region != "all":
            params["region"] = region
        if min_headcount_code:
            params["tranche_effectif_min"] = min_headcount_code
        try:
            response = self._http.get(
                "/recherche", params=params, headers={"Accept": "application/json"}
            )
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise RegistryTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise RegistryError(f"HTTP error calling the registry API: {exc}") from exc

        if response.status_code == 429:
            raise RegistryRateLimitError()
        if response.status_code in (408, 504):
            raise RegistryTimeoutError()
        if response.status_code >= 400:
            message = f"Registry request failed: {response.status_code} - {response.text[:200]}"
            if response.status_code in (401, 402):
                raise RegistryQuotaError(message)
            raise RegistryError(message, code=f"REGISTRY_{response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise RegistrySchemaError("Failed to decode registry response JSON.") from exc
        companies = data.get("resultats") if isinstance(data, dict) else None
        if not isinstance(companies, list):
            raise RegistrySchemaError("`resultats` missing from registry response.")
        total = data.get("total")
        return [entry for entry in companies if isinstance(entry, dict)], (
            total if isinstance(total, int) else len(companies)
        )

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
