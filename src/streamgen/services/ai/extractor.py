"""Turn a stream of growing partial objects into finished array items.

Snapshots of a partially generated object grow monotonically, but the last
element of an array may still be rewritten until either a later element
appears after it or the stream ends. `extract_items` therefore only yields
elements that have a successor, holds the last one back as pending, and
flushes it when the source is exhausted.

Items are deduplicated by value using a canonical (sorted-key, compact) JSON
serialization, so repeated snapshots never produce an item twice.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator, AsyncIterable, Callable, Sequence
from typing import Any, TypeVar

from pydantic import BaseModel

from streamgen.core.exceptions import StreamError


logger = logging.getLogger(__name__)

S = TypeVar("S")

ArraySelector = Callable[[S], Sequence[Any] | None]


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return str(value)


def canonical_key(item: Any) -> str:
    """Stable identity for an item: sorted-key compact JSON."""
    if isinstance(item, BaseModel):
        item = item.model_dump(mode="json")
    return json.dumps(item, sort_keys=True, separators=(",", ":"), default=_jsonable)


async def extract_items(
    partials: AsyncIterable[S],
    select_array: ArraySelector[S],
) -> AsyncGenerator[Any, None]:
    """Yield each distinct array element once it is known to be complete.

    Errors raised by `partials` surface as `StreamError` at the next pull and
    the pending element is dropped. Closing this generator closes the source.
    """
    seen: set[str] = set()
    pending: Any = None
    source = aiter(partials)

    try:
        while True:
            try:
                snapshot = await anext(source)
            except StopAsyncIteration:
                break
            except Exception as exc:
                raise StreamError(f"Partial object stream failed: {exc}") from exc

            array = select_array(snapshot)
            if not array:
                continue

            for item in array[:-1]:
                if item is None:
                    continue
                key = canonical_key(item)
                if key in seen:
                    continue
                seen.add(key)
                yield item
            pending = array[-1]

        if pending is not None:
            key = canonical_key(pending)
            if key not in seen:
                seen.add(key)
                yield pending
        logger.debug("Extracted %d item(s) from partial stream", len(seen))
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()
