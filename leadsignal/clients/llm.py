"""LLM client contract and the OpenAI Responses API implementation."""

from __future__ import annotations

from typing import Any, Protocol

from openai import APIStatusError, OpenAI, OpenAIError


class LLMError(RuntimeError):
    """Raised when the language model provider fails."""

    def __init__(self, message: str, code: str = "502_LLM_UPSTREAM") -> None:
        super().__init__(message)
        self.code = code


class LLMClient(Protocol):
    """Minimal contract for a single-shot completion."""

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
    ) -> str:
        ...


class OpenAIResponseClient:
    """Thin wrapper around the official OpenAI Responses API."""

    def __init__(self, api_key: str, *, timeout: float = 60.0, client: OpenAI | None = None) -> None:
        if client is None and not api_key:
            raise ValueError("OPENAI_API_KEY is required to call the language model.")
        self._client = client or OpenAI(api_key=api_key, timeout=timeout)

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
    ) -> str:
        try:
            response = self._client.responses.create(
                model=model,
                temperature=temperature,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except APIStatusError as exc:
            raise LLMError(
                f"OpenAI request failed: {exc.message}", code=_status_error_code(exc)
            ) from exc
        except OpenAIError as exc:
            raise LLMError(f"OpenAI request failed: {exc}") from exc
        return extract_response_text(response)


def _status_error_code(exc: APIStatusError) -> str:
    body = exc.body if isinstance(exc.body, dict) else {}
    error = body.get("error") if isinstance(body.get("error"), dict) else body
    if exc.status_code == 402 or error.get("code") == "insufficient_quota":
        return "402_QUOTA_EXCEEDED"
    if exc.status_code == 429:
        return "429_RATE_LIMIT"
    return "502_LLM_UPSTREAM"


def extract_response_text(response: Any) -> str:
    """Normalize OpenAI responses across SDK versions."""
    output_text = getattr(response, "output_text", None)
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    text_chunks: list[str] = []
    for item in getattr(response, "output", None) or []:
        for content in getattr(item, "content", None) or []:
            if getattr(content, "type", None) == "output_text":
                text_chunks.append(getattr(content, "text", ""))
    if text_chunks:
        return "".join(text_chunks).strip()

    raise LLMError("OpenAI response did not include text output.")
