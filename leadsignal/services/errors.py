"""Shared error classes for pipeline services and the repository."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base exception raised by pipeline services."""

    def __init__(self, message: str, code: str = "500_INTERNAL") -> None:
        super().__init__(message)
        self.code = code


class ProviderError(PipelineError):
    """Raised when an upstream provider (content API, LLM, agent) fails."""


class QuotaExceededError(ProviderError):
    """Raised when a provider reports exhausted credits or quota."""

    def __init__(self, message: str, code: str = "402_QUOTA_EXCEEDED") -> None:
        super().__init__(message, code=code)


class PayloadValidationError(PipelineError):
    """Raised when a model response cannot be parsed safely."""

    def __init__(self, message: str, code: str = "422_INVALID_LLM_PAYLOAD") -> None:
        super().__init__(message, code=code)


class PersistenceError(PipelineError):
    """Raised when the repository fails to save or retrieve rows."""


class NotFoundError(PipelineError):
    def __init__(self, message: str, code: str = "404_NOT_FOUND") -> None:
        super().__init__(message, code=code)
