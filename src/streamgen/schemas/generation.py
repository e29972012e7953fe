"""Typed contracts for structured generation.

* GenerationRequest - immutable description of one invocation (prompting,
  output schema, per-attempt provider settings).
* ModelSpec         - tagged reference to a provider model, resolved through
  the model factory lookup table.
* Critique          - response shape a critic model is asked to produce.
* GenerationOutcome - exactly one per top-level invocation; success carries
  the validated data, failure carries an ErrorInfo.
* StreamEvent       - transport-neutral event emitted by the array pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Generic, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic_ai.models import Model


T = TypeVar("T")
OutputT = TypeVar("OutputT", bound=BaseModel)

ModelKind = Literal["openai", "azure_openai", "anthropic", "google", "test"]
MODEL_KINDS: tuple[str, ...] = ("openai", "azure_openai", "anthropic", "google", "test")

SYSTEM_SEPARATOR = "\n\n--------------------------------\n\n"
START_MESSAGE = "[START]"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


@lru_cache(maxsize=128)
def _thinking_wrapper(
    output_type: type[BaseModel], thinking_type: type[BaseModel]
) -> type[BaseModel]:
    return create_model(
        f"{output_type.__name__}WithThinking",
        thinking=(
            thinking_type,
            Field(..., description="Reasoning to do before producing the result"),
        ),
        result=(output_type, Field(..., description="The final result")),
    )


class GenerationRequest(BaseModel):
    """One structured-generation invocation. Never mutated once built."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    system: str | None = None
    prompt: str | None = None
    messages: tuple[Message, ...] = ()
    output_type: type[BaseModel]
    settings: dict[str, Any] = Field(default_factory=dict)
    thinking_type: type[BaseModel] | None = None
    function_name: str | None = None
    function_description: str | None = None

    @property
    def response_schema(self) -> type[BaseModel]:
        """Schema the model is asked to produce (wrapped when thinking is on)."""
        if self.thinking_type is None:
            return self.output_type
        return _thinking_wrapper(self.output_type, self.thinking_type)

    def unwrap(self, value: BaseModel) -> tuple[BaseModel, BaseModel | None]:
        """Split a validated response into (result, thinking)."""
        if self.thinking_type is None:
            return value, None
        return getattr(value, "result"), getattr(value, "thinking")

    def with_messages(self, *messages: Message) -> GenerationRequest:
        return self.model_copy(update={"messages": self.messages + tuple(messages)})


class Critique(BaseModel, Generic[OutputT]):
    """Critic verdict on a candidate result."""

    feedback_needed: bool = Field(
        ..., description="True if the candidate should be improved"
    )
    feedback: str | None = Field(
        None, description="What is wrong with the candidate and how to fix it"
    )
    revision: OutputT | None = Field(
        None, description="A corrected version of the candidate, if you have one"
    )


def critique_schema(output_type: type[BaseModel]) -> type[BaseModel]:
    # pydantic caches parametrized generic models
    return Critique[output_type]  # type: ignore[valid-type]


class ModelSpec(BaseModel):
    """Tagged reference to a provider model."""

    model_config = ConfigDict(frozen=True)

    kind: ModelKind
    name: str
    settings: dict[str, Any] = Field(default_factory=dict)

    @property
    def label(self) -> str:
        return f"{self.kind}:{self.name}"


ModelHandle = Union[ModelSpec, str, Model]


def parse_model_spec(value: str) -> ModelSpec:
    """Parse a `"kind:name"` string such as `"openai:gpt-4o-mini"`."""
    kind, sep, name = value.partition(":")
    kind = kind.strip()
    name = name.strip()
    if not sep or not name:
        raise ValueError(f"Model spec must look like 'kind:name', got {value!r}")
    if kind not in MODEL_KINDS:
        raise ValueError(
            f"Unknown model kind {kind!r}; expected one of {', '.join(MODEL_KINDS)}"
        )
    return ModelSpec(kind=kind, name=name)  # type: ignore[arg-type]


def describe_model(handle: ModelHandle) -> str:
    """Human readable label for logs and outcomes."""
    if isinstance(handle, ModelSpec):
        return handle.label
    if isinstance(handle, str):
        return handle
    system = getattr(handle, "system", None)
    name = getattr(handle, "model_name", None) or type(handle).__name__
    return f"{system}:{name}" if system else str(name)


def consolidate_messages(
    system: str | None,
    prompt: str | None,
    messages: tuple[Message, ...] | list[Message] = (),
    *,
    requires_user_message: bool = False,
    system_message_disabled: bool = False,
) -> list[Message]:
    """Fold every system-ish input into one leading system message.

    System text, system messages from the history and the prompt are joined
    with a separator line. Some providers refuse a conversation without a user
    turn; `requires_user_message` appends a `[START]` user message in that
    case. With `system_message_disabled` the system text is sent as a user
    message wrapped in `<SYSTEM_PROMPT>` tags.
    """
    system_from_messages = [m.content for m in messages if m.role == "system"]
    rest = [m for m in messages if m.role != "system"]

    parts = [p for p in (system, *system_from_messages, prompt) if p]
    system_text = SYSTEM_SEPARATOR.join(parts)

    if requires_user_message and not any(m.role == "user" for m in rest):
        rest.append(Message(role="user", content=START_MESSAGE))

    result: list[Message] = []
    if system_text.strip():
        if system_message_disabled:
            result.append(
                Message(
                    role="user",
                    content=f"<SYSTEM_PROMPT>\n{system_text}\n</SYSTEM_PROMPT>",
                )
            )
        else:
            result.append(Message(role="system", content=system_text))
    result.extend(rest)
    return result


@dataclass(slots=True)
class ErrorInfo:
    message: str
    error_code: str
    model: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, model: str | None = None) -> ErrorInfo:
        code = getattr(exc, "error_code", None) or "provider_failed"
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        return cls(message=message, error_code=code, model=model)


@dataclass(slots=True)
class ModelAttempt:
    """One call made against one model while producing an outcome."""

    model: str
    role: Literal["primary", "critic"]
    success: bool
    error: str | None = None


@dataclass(slots=True)
class GenerationOutcome(Generic[T]):  # noqa: UP046
    """Result of a top-level invocation; `data` is set iff `success`."""

    success: bool
    data: T | None = None
    error: ErrorInfo | None = None
    model: str | None = None
    attempts: list[ModelAttempt] = field(default_factory=list)
    feedback_loops: int = 0
    thinking: Any = None

    @classmethod
    def ok(
        cls,
        data: T,
        *,
        model: str | None = None,
        attempts: list[ModelAttempt] | None = None,
        feedback_loops: int = 0,
        thinking: Any = None,
    ) -> GenerationOutcome[T]:
        return cls(
            success=True,
            data=data,
            model=model,
            attempts=list(attempts or []),
            feedback_loops=feedback_loops,
            thinking=thinking,
        )

    @classmethod
    def failed(
        cls, error: ErrorInfo, *, attempts: list[ModelAttempt] | None = None
    ) -> GenerationOutcome[T]:
        return cls(success=False, error=error, attempts=list(attempts or []))


class StreamEvent(BaseModel):
    """Event emitted while an array stream is processed.

    `item` events carry one finished item and its position, a single `finish`
    event closes a successful stream, and an `error` event replaces it when the
    stream fails. `to_sse` renders the Server-Sent Events wire format.
    """

    type: Literal["item", "finish", "error"]
    index: int | None = None
    data: Any | None = None
    detail: str | None = None
    error_code: str | None = None
    success: bool | None = None

    def to_sse(self) -> str:  # pragma: no cover - trivial
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"

    @classmethod
    def item(cls, index: int, data: Any) -> StreamEvent:
        return cls.model_validate({"type": "item", "index": index, "data": data})

    @classmethod
    def finish(cls, data: Any = None) -> StreamEvent:
        return cls.model_validate({"type": "finish", "data": data, "success": True})

    @classmethod
    def terminal_error(
        cls, detail: str, error_code: str | None = None
    ) -> StreamEvent:
        return cls.model_validate(
            {
                "type": "error",
                "detail": detail,
                "error_code": error_code,
                "success": False,
            }
        )

    @classmethod
    def from_exception(cls, exc: BaseException) -> StreamEvent:
        info = ErrorInfo.from_exception(exc)
        return cls.terminal_error(info.message, info.error_code)
