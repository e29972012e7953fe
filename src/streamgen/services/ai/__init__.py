"""Init file for AI generation services."""

from .callers import PydanticAIModelCaller
from .extractor import extract_items
from .invoker import MultiModelInvoker
from .json_stream import JsonStreamEncoder
from .pipeline import (
    ArrayStreamPipeline,
    PipelineResult,
    StreamCallbacks,
    persisting_worker,
)


__all__ = [
    "ArrayStreamPipeline",
    "JsonStreamEncoder",
    "MultiModelInvoker",
    "PipelineResult",
    "PydanticAIModelCaller",
    "StreamCallbacks",
    "extract_items",
    "persisting_worker",
]
