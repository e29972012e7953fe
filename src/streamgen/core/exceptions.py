"""Error taxonomy for the generation pipeline.

Each exception carries a stable `error_code` so callers (and the transport
layer that maps failures to HTTP responses or terminal stream events) can
branch on the kind of failure instead of on message text.

Recovery rules:

* ProviderError / SchemaValidationError - recovered by model fallback; only
  surfaced when every model in a chain fails.
* StreamError - the partial-object source raised mid-stream; propagated.
* WorkerError - a per-item worker raised; propagated and fails the batch.
* DrainError - one queued call raised; only that entry's future fails.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class PipelineError(Exception):
    """Base class for pipeline domain errors."""

    message: str
    error_code: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class ProviderError(PipelineError):
    def __init__(
        self,
        message: str = "Model call failed",
        *,
        model: str | None = None,
        error_code: str = "provider_failed",
    ) -> None:
        super().__init__(message=message, error_code=error_code)
        self.model = model


class SchemaValidationError(ProviderError):
    def __init__(
        self,
        message: str = "Model response failed schema validation",
        *,
        model: str | None = None,
    ) -> None:
        super().__init__(message, model=model, error_code="invalid_output")


class AllModelsFailedError(ProviderError):
    def __init__(self, errors: list[BaseException] | None = None) -> None:
        errors = list(errors or [])
        summary = ", ".join(f"'{e}'" for e in errors) or "no models attempted"
        super().__init__(
            f"All generation attempts failed (failures: {summary})",
            error_code="all_models_failed",
        )
        self.errors = errors


class StreamError(PipelineError):
    def __init__(self, message: str = "Partial object stream failed") -> None:
        super().__init__(message=message, error_code="stream_failed")


class WorkerError(PipelineError):
    def __init__(
        self, message: str = "Item worker failed", *, index: int | None = None
    ) -> None:
        super().__init__(message=message, error_code="worker_failed")
        self.index = index


class DrainError(PipelineError):
    def __init__(self, message: str = "Queued call failed during drain") -> None:
        super().__init__(message=message, error_code="drain_failed")
