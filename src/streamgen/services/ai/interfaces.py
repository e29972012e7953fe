"""Service interfaces for structured generation.

Protocols keep the invoker and the pipeline independent of any provider SDK
or storage layer, so tests can inject plain fakes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

from streamgen.schemas.generation import GenerationRequest, ModelHandle


class ModelCaller(Protocol):
    """Issues one request against one model backend."""

    async def generate(self, handle: ModelHandle, request: GenerationRequest) -> Any:
        """Return the raw (unvalidated) structured response."""
        ...

    def stream(
        self, handle: ModelHandle, request: GenerationRequest
    ) -> AsyncIterator[Any]:
        """Yield successive partial snapshots of the structured response.

        Implementations should be async generator functions so that closing
        the returned iterator releases the provider stream.
        """
        ...


class RecordStore(Protocol):
    """Persistence collaborator for extracted items."""

    async def upsert(self, record: Any) -> Any:
        """Insert or update `record` and return the persisted form."""
        ...
