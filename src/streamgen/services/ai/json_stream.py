"""Append-only JSON text for streaming partial objects to a client.

Each snapshot is rendered as compact JSON with its rightmost path left open:
the last member of every trailing container is unclosed and a trailing string
has no closing quote. Because snapshots only grow, every rendering extends
the previous one and `next_chunk` returns just the new suffix. The
concatenation of all chunks (with `force_complete=True` on the last call) is
the compact serialization of the final object, keys in first-seen order.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

from streamgen.core.exceptions import StreamError


def _normalize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        # Unset fields of partial models are not part of the text yet
        return value.model_dump(mode="json", exclude_unset=True)
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _open_json(value: Any) -> str:
    if isinstance(value, dict):
        if not value:
            return "{"
        items = list(value.items())
        parts = [f"{_dumps(k)}:{_dumps(v)}" for k, v in items[:-1]]
        last_key, last_value = items[-1]
        parts.append(f"{_dumps(last_key)}:{_open_json(last_value)}")
        return "{" + ",".join(parts)
    if isinstance(value, list):
        if not value:
            return "["
        parts = [_dumps(v) for v in value[:-1]]
        parts.append(_open_json(value[-1]))
        return "[" + ",".join(parts)
    if isinstance(value, str):
        return _dumps(value)[:-1]
    return _dumps(value)


class JsonStreamEncoder:
    """Diff successive snapshots into JSON text chunks.

    Object keys are emitted in the order they first appeared, so a partial
    model that fills a later-declared field first still grows append-only.
    """

    def __init__(self) -> None:
        self._text = ""
        self._key_order: dict[tuple[Any, ...], list[str]] = {}

    @property
    def text(self) -> str:
        """Everything emitted so far."""
        return self._text

    def reset(self) -> None:
        self._text = ""
        self._key_order.clear()

    def _ordered(self, value: Any, path: tuple[Any, ...] = ()) -> Any:
        if isinstance(value, dict):
            order = self._key_order.setdefault(path, [])
            order.extend(key for key in value if key not in order)
            return {
                key: self._ordered(value[key], (*path, key))
                for key in order
                if key in value
            }
        if isinstance(value, list):
            return [self._ordered(v, (*path, i)) for i, v in enumerate(value)]
        return value

    def next_chunk(self, snapshot: Any, force_complete: bool = False) -> str:
        value = self._ordered(_normalize(snapshot))
        rendered = _dumps(value) if force_complete else _open_json(value)
        if not rendered.startswith(self._text):
            raise StreamError(
                "Snapshot does not extend the JSON text already emitted"
            )
        chunk = rendered[len(self._text) :]
        self._text = rendered
        return chunk
