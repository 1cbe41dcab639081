"""Client for the task-based research agent API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from leadsignal.config import settings

QUOTA_MARKERS = ("credit", "quota", "insufficient")


class AgentError(RuntimeError):
    """Base error for agent client failures."""

    def __init__(self, message: str, code: str = "AGENT_ERROR") -> None:
        super().__init__(message)
        self.code = code


class AgentRateLimitError(AgentError):
    """Raised when the agent API responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by the agent API") -> None:
        super().__init__(message, code="AGENT_429")


class AgentQuotaError(AgentError):
    """Raised when the agent account has run out of credits."""

    def __init__(self, message: str = "Agent credits exhausted") -> None:
        super().__init__(message, code="AGENT_QUOTA")


class AgentTimeoutError(AgentError):
    def __init__(self, message: str = "Agent request timed out") -> None:
        super().__init__(message, code="AGENT_TIMEOUT")


class AgentSchemaError(AgentError):
    def __init__(self, message: str = "Unexpected agent response schema") -> None:
        super().__init__(message, code="AGENT_SCHEMA_ERR")


@dataclass(frozen=True)
class AgentTask:
    """Handle returned when a task is accepted."""

    task_id: str
    task_url: str
    raw: dict[str, Any] = field(default_factory=dict)


class AgentClient:
    """Creates agent tasks, polls their status and downloads their output files."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.manus.ai/v1",
        task_url_template: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("AGENT_API_KEY is required to create an AgentClient.")
        self._api_key = api_key
        self._task_url_template = task_url_template or settings.agent_task_url_template
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_env(cls) -> "AgentClient":
        """Instantiate the client using AGENT_API_KEY."""
        return cls(
            settings.agent_api_key or "",
            base_url=settings.agent_base_url,
            task_url_template=settings.agent_task_url_template,
        )

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def create_task(self, prompt: str, *, agent_profile: str, task_mode: str) -> AgentTask:
        payload = {"prompt": prompt, "agentProfile": agent_profile, "taskMode": task_mode}
        data = self._request("POST", "/tasks", json=payload)
        if not isinstance(data, dict):
            raise AgentSchemaError("Task creation response must be a JSON object.")
        task_id = data.get("id") or data.get("task_id")
        if not task_id:
            raise AgentSchemaError("Task creation response did not include a task id.")
        task_url = (
            data.get("task_url")
            or data.get("url")
            or self._task_url_template.format(task_id=task_id)
        )
        return AgentTask(task_id=str(task_id), task_url=str(task_url), raw=data)

    def get_task(self, task_id: str) -> dict[str, Any]:
        """Return the task document (`status`, `output`, ...)."""
        data = self._request("GET", f"/tasks/{task_id}")
        if not isinstance(data, dict):
            raise AgentSchemaError("Task status response must be a JSON object.")
        return data

    def download_json(self, url: str) -> Any:
        """Fetch an output file and decode it as JSON.

        The API key is only sent when the file lives on the agent API host;
        presigned storage links are fetched anonymously.
        """
        headers = self._headers() if self._is_agent_url(url) else {}
        try:
            response = self._http.get(url, headers=headers)
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise AgentTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise AgentError(f"HTTP error downloading agent file: {exc}") from exc
        if response.status_code >= 400:
            raise AgentError(f"Agent file download failed: {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise AgentSchemaError("Agent output file is not valid JSON.") from exc

    def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> Any:
        try:
            response = self._http.request(method, path, json=json, headers=self._headers())
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise AgentTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise AgentError(f"HTTP error calling the agent API: {exc}") from exc

        if response.status_code == 429:
            raise AgentRateLimitError()
        if response.status_code in (408, 504):
            raise AgentTimeoutError()
        if response.status_code >= 400:
            detail = response.text[:500]
            message = f"Agent request failed: {response.status_code}"
            if detail:
                message = f"{message} - {detail}"
            if response.status_code == 402 or any(
                marker in detail.lower() for marker in QUOTA_MARKERS
            ):
                raise AgentQuotaError(message)
            raise AgentError(message, code=f"AGENT_{response.status_code}")

        try:
            return response.json()
        except ValueError as exc:
            raise AgentSchemaError("Failed to decode agent response JSON.") from exc

    def _is_agent_url(self, url: str) -> bool:
        target = httpx.URL(url)
        if not target.is_absolute_url:
            return True
        base = self._http.base_url
        return target.scheme == base.scheme and target.host == base.host and target.port == base.port

    def _headers(self) -> dict[str, str]:
        return {"API_KEY": self._api_key, "Content-Type": "application/json"}

    def __enter__(self) -> "AgentClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
