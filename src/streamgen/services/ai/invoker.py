"""Structured generation with ordered model fallback and critique loops.

`MultiModelInvoker.invoke` walks the primary model chain strictly in order;
the first response that validates against the request schema becomes the
candidate. Optional critic models then review the candidate for up to
`max_feedback_loops` iterations and may approve it, replace it with a
revision, or send textual feedback that the primary chain answers with a
regenerated candidate.

Provider exceptions and schema validation failures are treated the same way:
the attempt is logged and the next model in the chain is tried. No model is
retried in place and models of one chain are never called concurrently.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from streamgen.core.config import get_settings
from streamgen.core.exceptions import (
    AllModelsFailedError,
    ProviderError,
    SchemaValidationError,
)
from streamgen.core.logging import structured_logger
from streamgen.schemas.generation import (
    ErrorInfo,
    GenerationOutcome,
    GenerationRequest,
    Message,
    ModelAttempt,
    ModelHandle,
    critique_schema,
    describe_model,
)
from streamgen.services.ai.interfaces import ModelCaller


logger = logging.getLogger(__name__)

CRITIC_FUNCTION_NAME = "giveFeedback"
CRITIC_FUNCTION_DESCRIPTION = "Provide feedback on another AI's output."

CRITIC_SYSTEM_PROMPT = """\
<YOUR_ROLE>
You are a critical thinker reviewing the output of another AI.
Give clear, concise and actionable feedback so the output can be improved.
If the output is already good, set feedback_needed to false and leave
feedback and revision empty.
If you can fix the output yourself, put the corrected output in revision.
The AI is required to answer through the output tool; do not comment on
whether a tool should have been used.
</YOUR_ROLE>

<THE_AI_TASK>
<THE_AI_PROMPT>
{prompt}
</THE_AI_PROMPT>
<OUTPUT_TOOL name="{function_name}">
<DESCRIPTION>{function_description}</DESCRIPTION>
<PARAMETERS>{schema}</PARAMETERS>
</OUTPUT_TOOL>
</THE_AI_TASK>
"""

FEEDBACK_MESSAGE = (
    "A reviewer gave the following feedback on your previous output. "
    "Produce an improved output.\n\n<FEEDBACK>\n{feedback}\n</FEEDBACK>"
)


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _as_json(value: Any) -> str:
    return json.dumps(_dump(value), ensure_ascii=False, separators=(",", ":"))


class MultiModelInvoker:
    """Runs generation requests across ordered model chains."""

    def __init__(
        self, caller: ModelCaller, *, max_feedback_loops: int | None = None
    ) -> None:
        self.caller = caller
        self.max_feedback_loops = max_feedback_loops

    def _feedback_limit(self, override: int | None) -> int:
        for value in (override, self.max_feedback_loops):
            if value is not None:
                if value < 0:
                    raise ValueError("max_feedback_loops must be >= 0")
                return value
        return get_settings().MAX_FEEDBACK_LOOPS

    # -- validation -----------------------------------------------------

    @staticmethod
    def _validate(
        schema: type[BaseModel], raw: Any, label: str
    ) -> BaseModel:
        if isinstance(raw, BaseModel) and not isinstance(raw, schema):
            raw = raw.model_dump()
        try:
            return schema.model_validate(raw)
        except ValidationError as exc:
            raise SchemaValidationError(
                f"Response from {label} failed validation "
                f"({exc.error_count()} error(s))",
                model=label,
            ) from exc

    async def _first_success(
        self,
        request: GenerationRequest,
        models: Sequence[ModelHandle],
        role: Literal["primary", "critic"],
        attempts: list[ModelAttempt],
    ) -> tuple[str, BaseModel]:
        """Return (model label, validated response) from the first model that works."""
        errors: list[BaseException] = []
        schema = request.response_schema
        for handle in models:
            label = describe_model(handle)
            try:
                raw = await self.caller.generate(handle, request)
                validated = self._validate(schema, raw, label)
            except Exception as exc:
                errors.append(exc)
                attempts.append(
                    ModelAttempt(
                        model=label, role=role, success=False, error=str(exc)
                    )
                )
                logger.warning("Model %s (%s) failed: %s", label, role, exc)
                continue
            attempts.append(ModelAttempt(model=label, role=role, success=True))
            return label, validated
        raise AllModelsFailedError(errors)

    # -- critique -------------------------------------------------------

    def _critic_request(
        self, request: GenerationRequest, history: tuple[Message, ...]
    ) -> GenerationRequest:
        prompt = "\n--------\n".join(p for p in (request.system, request.prompt) if p)
        system = CRITIC_SYSTEM_PROMPT.format(
            prompt=prompt,
            function_name=request.function_name or "writeOutput",
            function_description=request.function_description or "Output a response.",
            schema=json.dumps(request.output_type.model_json_schema()),
        )
        return GenerationRequest(
            system=system,
            messages=history,
            output_type=critique_schema(request.output_type),
            settings=request.settings,
            function_name=CRITIC_FUNCTION_NAME,
            function_description=CRITIC_FUNCTION_DESCRIPTION,
        )

    # -- public API -----------------------------------------------------

    async def invoke(
        self,
        request: GenerationRequest,
        primary_models: Sequence[ModelHandle],
        critic_models: Sequence[ModelHandle] | None = None,
        max_feedback_loops: int | None = None,
    ) -> GenerationOutcome[Any]:
        """Generate a validated result, optionally refined by critics.

        Returns a failed outcome (never raises) when every primary model
        fails; an empty primary chain is a ValueError.
        """
        if not primary_models:
            raise ValueError("primary_models must contain at least one model")
        loops = self._feedback_limit(max_feedback_loops)
        attempts: list[ModelAttempt] = []

        try:
            label, validated = await self._first_success(
                request, primary_models, "primary", attempts
            )
        except AllModelsFailedError as exc:
            last = exc.errors[-1] if exc.errors else exc
            info = ErrorInfo.from_exception(last, model=attempts[-1].model)
            structured_logger.warning(
                "Generation failed on every model",
                attempts=len(attempts),
                error_code=info.error_code,
            )
            return GenerationOutcome.failed(info, attempts=attempts)

        candidate, thinking = request.unwrap(validated)
        loops_run = 0

        if critic_models and loops > 0:
            history = request.messages
            for _ in range(loops):
                loops_run += 1
                history = history + (
                    Message(role="assistant", content=_as_json(candidate)),
                )
                critic_request = self._critic_request(request, history)
                try:
                    critic_label, critique = await self._first_success(
                        critic_request, critic_models, "critic", attempts
                    )
                except AllModelsFailedError:
                    logger.warning("All critics failed; keeping current candidate")
                    break

                if not getattr(critique, "feedback_needed", False):
                    logger.info("Critique loop %d/%d: approved", loops_run, loops)
                    break

                revision = getattr(critique, "revision", None)
                if revision is not None:
                    try:
                        candidate = self._validate(
                            request.output_type, revision, "critic revision"
                        )
                    except SchemaValidationError as exc:
                        logger.warning("Discarding critic revision: %s", exc)
                    else:
                        label, thinking = critic_label, None
                        logger.info("Critique loop %d/%d: revised", loops_run, loops)
                        continue

                feedback = getattr(critique, "feedback", None) or ""
                logger.info(
                    "Critique loop %d/%d: feedback %r", loops_run, loops, feedback
                )
                history = history + (
                    Message(
                        role="user", content=FEEDBACK_MESSAGE.format(feedback=feedback)
                    ),
                )
                try:
                    label, validated = await self._first_success(
                        request.model_copy(update={"messages": history}),
                        primary_models,
                        "primary",
                        attempts,
                    )
                except AllModelsFailedError:
                    logger.warning("Regeneration after feedback failed; stopping")
                    break
                candidate, thinking = request.unwrap(validated)

        structured_logger.info(
            "Generation succeeded",
            model=label,
            attempts=len(attempts),
            feedback_loops=loops_run,
        )
        return GenerationOutcome.ok(
            candidate,
            model=label,
            attempts=attempts,
            feedback_loops=loops_run,
            thinking=thinking,
        )

    @staticmethod
    def _unwrap_partial(request: GenerationRequest, snapshot: Any) -> Any:
        if request.thinking_type is None:
            return snapshot
        if isinstance(snapshot, dict):
            return snapshot.get("result")
        return getattr(snapshot, "result", None)

    async def stream_partials(
        self,
        request: GenerationRequest,
        models: Sequence[ModelHandle],
        attempts: list[ModelAttempt] | None = None,
    ) -> AsyncIterator[Any]:
        """Yield partial snapshots from the first model whose stream works.

        A model that fails before producing a snapshot falls through to the
        next one. Once a snapshot has been yielded the stream is committed to
        that model and later errors propagate.
        """
        if not models:
            raise ValueError("models must contain at least one model")
        attempts = attempts if attempts is not None else []
        errors: list[BaseException] = []

        for handle in models:
            label = describe_model(handle)
            stream = self.caller.stream(handle, request)
            delivered = False
            try:
                async for snapshot in stream:
                    value = self._unwrap_partial(request, snapshot)
                    if value is None:
                        continue
                    if not delivered:
                        delivered = True
                        attempts.append(
                            ModelAttempt(model=label, role="primary", success=True)
                        )
                    yield value
            except Exception as exc:
                if delivered:
                    raise
                errors.append(exc)
                attempts.append(
                    ModelAttempt(
                        model=label, role="primary", success=False, error=str(exc)
                    )
                )
                logger.warning("Stream from %s failed before output: %s", label, exc)
                continue
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            if delivered:
                return
            error = ProviderError(f"{label} produced no output", model=label)
            errors.append(error)
            attempts.append(
                ModelAttempt(
                    model=label, role="primary", success=False, error=str(error)
                )
            )
            logger.warning("Stream from %s produced no output", label)

        raise AllModelsFailedError(errors)

    def finalize(
        self,
        request: GenerationRequest,
        snapshot: Any,
        *,
        attempts: list[ModelAttempt] | None = None,
    ) -> GenerationOutcome[Any]:
        """Validate the last streamed snapshot into an outcome."""
        attempts = list(attempts or [])
        model = next((a.model for a in reversed(attempts) if a.success), None)
        if snapshot is None:
            return GenerationOutcome.failed(
                ErrorInfo("Stream produced no output", "provider_failed", model),
                attempts=attempts,
            )
        try:
            data = self._validate(request.output_type, snapshot, model or "stream")
        except SchemaValidationError as exc:
            return GenerationOutcome.failed(
                ErrorInfo.from_exception(exc, model=model), attempts=attempts
            )
        return GenerationOutcome.ok(data, model=model, attempts=attempts)
