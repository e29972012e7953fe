"""Shared test fixtures for pytest.

ENVIRONMENT is forced to `test` before anything imports the settings so no
`.env` file is read, and pydantic-ai is told to refuse real model requests.
"""

import asyncio
import os
from collections.abc import Iterator
from typing import Any


os.environ["ENVIRONMENT"] = "test"

import pytest
from pydantic_ai import models

from streamgen.core.config import get_settings
from streamgen.core.logging import set_correlation_id
from streamgen.schemas.generation import GenerationRequest, ModelHandle, describe_model


# Block any real model requests in tests
models.ALLOW_MODEL_REQUESTS = False


class FakeModelCaller:
    """ModelCaller double keyed by model label.

    `responses[label]` is a list consumed one entry per `generate` call (the
    last entry repeats). Entries may be a value, an exception to raise, or a
    callable receiving the request. `streams[label]` is a list of snapshots;
    an exception entry is raised when reached.
    """

    def __init__(
        self,
        responses: dict[str, list[Any]] | None = None,
        streams: dict[str, list[Any]] | None = None,
    ) -> None:
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.streams = streams or {}
        self.calls: list[tuple[str, GenerationRequest]] = []
        self.closed: list[str] = []

    @property
    def called_models(self) -> list[str]:
        return [label for label, _ in self.calls]

    async def generate(self, handle: ModelHandle, request: GenerationRequest) -> Any:
        label = describe_model(handle)
        self.calls.append((label, request))
        queue = self.responses[label]
        value = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return value(request)
        return value

    async def stream(self, handle: ModelHandle, request: GenerationRequest):
        label = describe_model(handle)
        self.calls.append((label, request))
        try:
            for snapshot in self.streams[label]:
                await asyncio.sleep(0)
                if isinstance(snapshot, BaseException):
                    raise snapshot
                yield snapshot
        finally:
            self.closed.append(label)


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    set_correlation_id(None)
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_caller_factory() -> type[FakeModelCaller]:
    return FakeModelCaller
