"""Resolve model handles to pydantic-ai models.

A handle is either a `ModelSpec`, a `"kind:name"` string, or an already built
pydantic-ai `Model`. Specs are turned into models through a lookup table
keyed by provider kind; credentials come from `Settings`.

Usage:
    from streamgen.services.ai.model_factory import resolve_model

    model = resolve_model("openai:gpt-4o-mini")
    model = resolve_model(ModelSpec(kind="anthropic", name="claude-sonnet-4-5"))
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, cast

from pydantic_ai.models import Model
from pydantic_ai.models.test import TestModel

from streamgen.core.config import get_settings
from streamgen.schemas.generation import (
    ModelHandle,
    ModelSpec,
    parse_model_spec,
)


if TYPE_CHECKING:
    from httpx import AsyncClient

logger = logging.getLogger(__name__)

# OpenAI reasoning models that support the reasoning_effort parameter
REASONING_MODELS = {
    "gpt-5",
    "gpt-5-mini",
    "gpt-5-nano",
    "o1-mini",
    "o1-preview",
    "o1",
    "o3-mini",
    "o3",
    "o4-mini",
}

# Providers that reject a conversation without a user turn
REQUIRES_USER_MESSAGE = {"anthropic"}


class ModelConfigurationError(ValueError):
    """Raised when a model spec cannot be resolved with the current settings."""


def _normalize_azure_endpoint(endpoint: str) -> str:
    """Normalize Azure OpenAI endpoint.

    Trailing slashes produce `//openai/...` URLs, which Azure answers with 404.
    """
    return endpoint.rstrip("/")


def _openai_settings(spec: ModelSpec) -> dict[str, Any]:
    settings = dict(spec.settings)
    if spec.name in REASONING_MODELS:
        logger.info("Applying low reasoning effort for reasoning model: %s", spec.name)
        settings.setdefault("openai_reasoning_effort", "low")
    return settings


def _create_openai_model(
    spec: ModelSpec, http_client: AsyncClient | None = None
) -> Model:
    from pydantic_ai.models.openai import OpenAIChatModel
    from pydantic_ai.providers.openai import OpenAIProvider

    settings = get_settings()
    if not settings.OPENAI_API_KEY:
        raise ModelConfigurationError("OPENAI_API_KEY is not configured")
    provider = OpenAIProvider(api_key=settings.OPENAI_API_KEY, http_client=http_client)
    return OpenAIChatModel(
        spec.name,
        provider=provider,
        settings=_openai_settings(spec) or None,  # type: ignore[arg-type]
    )


def _create_azure_model(
    spec: ModelSpec, http_client: AsyncClient | None = None
) -> Model:
    """Azure OpenAI model; `spec.name` is the deployment name."""
    from openai import AsyncAzureOpenAI
    from pydantic_ai.models.openai import OpenAIChatModel
    from pydantic_ai.providers.openai import OpenAIProvider

    settings = get_settings()
    if (
        not settings.AZURE_OPENAI_ENDPOINT
        or not settings.AZURE_OPENAI_API_KEY
        or not settings.AZURE_OPENAI_API_VERSION
    ):
        raise ModelConfigurationError(
            "Azure OpenAI requires AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY "
            "and AZURE_OPENAI_API_VERSION"
        )

    azure_client = AsyncAzureOpenAI(
        azure_endpoint=_normalize_azure_endpoint(settings.AZURE_OPENAI_ENDPOINT),
        api_key=settings.AZURE_OPENAI_API_KEY,
        api_version=settings.AZURE_OPENAI_API_VERSION,
        http_client=http_client,
    )
    provider = OpenAIProvider(openai_client=azure_client)
    return OpenAIChatModel(
        spec.name,
        provider=provider,
        settings=_openai_settings(spec) or None,  # type: ignore[arg-type]
    )


def _create_anthropic_model(
    spec: ModelSpec, http_client: AsyncClient | None = None
) -> Model:
    from pydantic_ai.models.anthropic import AnthropicModel
    from pydantic_ai.providers.anthropic import AnthropicProvider

    settings = get_settings()
    if not settings.ANTHROPIC_API_KEY:
        raise ModelConfigurationError("ANTHROPIC_API_KEY is not configured")
    provider = AnthropicProvider(
        api_key=settings.ANTHROPIC_API_KEY, http_client=http_client
    )
    return AnthropicModel(
        spec.name,
        provider=provider,
        settings=dict(spec.settings) or None,  # type: ignore[arg-type]
    )


def _create_gemini_model(
    spec: ModelSpec, http_client: AsyncClient | None = None
) -> Model:
    from pydantic_ai.models.google import GoogleModel
    from pydantic_ai.providers.google import GoogleProvider

    settings = get_settings()
    if not settings.GEMINI_API_KEY:
        raise ModelConfigurationError("GEMINI_API_KEY is not configured")
    provider = GoogleProvider(api_key=settings.GEMINI_API_KEY, http_client=http_client)
    return cast(
        Model,
        GoogleModel(
            spec.name,
            provider=provider,
            settings=dict(spec.settings) or None,  # type: ignore[arg-type]
        ),
    )


def _create_test_model(
    spec: ModelSpec, http_client: AsyncClient | None = None
) -> Model:
    """Offline model for tests; `spec.settings` are passed to TestModel."""
    return TestModel(**spec.settings)


_PROVIDER_BUILDERS: dict[str, Callable[..., Model]] = {
    "openai": _create_openai_model,
    "azure_openai": _create_azure_model,
    "anthropic": _create_anthropic_model,
    "google": _create_gemini_model,
    "test": _create_test_model,
}


def to_spec(handle: ModelHandle) -> ModelSpec | None:
    """Normalize a handle to a spec; None for concrete pydantic-ai models."""
    if isinstance(handle, ModelSpec):
        return handle
    if isinstance(handle, str):
        return parse_model_spec(handle)
    return None


def requires_user_message(handle: ModelHandle) -> bool:
    spec = to_spec(handle)
    if spec is not None:
        return spec.kind in REQUIRES_USER_MESSAGE
    return getattr(handle, "system", None) in REQUIRES_USER_MESSAGE


def resolve_model(
    handle: ModelHandle, http_client: AsyncClient | None = None
) -> Model:
    """Build (or pass through) the pydantic-ai model for `handle`."""
    if isinstance(handle, Model):
        return handle

    spec = to_spec(handle)
    assert spec is not None
    builder = _PROVIDER_BUILDERS.get(spec.kind)
    if builder is None:
        raise ModelConfigurationError(f"Unsupported model kind: {spec.kind}")
    logger.debug("Resolving model %s", spec.label)
    return builder(spec, http_client)


def get_default_models() -> list[ModelSpec]:
    """Primary model chain from `DEFAULT_MODELS`."""
    return [parse_model_spec(s) for s in get_settings().DEFAULT_MODELS]


def get_critic_models() -> list[ModelSpec]:
    """Critic model chain from `CRITIC_MODELS` (empty disables critique)."""
    return [parse_model_spec(s) for s in get_settings().CRITIC_MODELS]
