"""pydantic-ai implementation of the `ModelCaller` protocol."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from pydantic_ai import Agent, ToolOutput
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelResponse,
    TextPart,
    UserPromptPart,
)

from streamgen.schemas.generation import (
    GenerationRequest,
    Message,
    ModelHandle,
    consolidate_messages,
    describe_model,
)
from streamgen.services.ai.model_factory import requires_user_message, resolve_model


if TYPE_CHECKING:
    from httpx import AsyncClient

logger = logging.getLogger(__name__)


def _to_history(messages: list[Message]) -> list[ModelMessage]:
    history: list[ModelMessage] = []
    for message in messages:
        if message.role == "assistant":
            history.append(ModelResponse(parts=[TextPart(content=message.content)]))
        else:
            history.append(
                ModelRequest(parts=[UserPromptPart(content=message.content)])
            )
    return history


def split_conversation(
    request: GenerationRequest, *, user_message_required: bool = False
) -> tuple[str | None, list[ModelMessage], str | None]:
    """Split a request into (instructions, message_history, user_prompt).

    All system text becomes agent instructions; a trailing user message is
    sent as the run's user prompt and everything before it as history.
    """
    consolidated = consolidate_messages(
        request.system,
        request.prompt,
        request.messages,
        requires_user_message=user_message_required,
    )
    instructions: str | None = None
    if consolidated and consolidated[0].role == "system":
        instructions = consolidated[0].content
        consolidated = consolidated[1:]

    user_prompt: str | None = None
    if consolidated and consolidated[-1].role == "user":
        user_prompt = consolidated[-1].content
        consolidated = consolidated[:-1]

    return instructions, _to_history(consolidated), user_prompt


class PydanticAIModelCaller:
    """Runs one structured request against one model via a pydantic-ai Agent.

    Output validation retries are disabled: a response that does not match the
    schema raises, so the invoker can fall through to the next model.
    """

    def __init__(self, http_client: AsyncClient | None = None) -> None:
        self.http_client = http_client

    def _build_agent(
        self, handle: ModelHandle, request: GenerationRequest
    ) -> tuple[Agent[None, Any], list[ModelMessage], str | None]:
        model = resolve_model(handle, self.http_client)
        instructions, history, user_prompt = split_conversation(
            request, user_message_required=requires_user_message(handle)
        )

        output_type: Any = request.response_schema
        if request.function_name:
            output_type = ToolOutput(
                output_type,
                name=request.function_name,
                description=request.function_description,
            )

        agent: Agent[None, Any] = Agent(
            model,
            output_type=output_type,
            instructions=instructions,
            output_retries=0,
        )
        return agent, history, user_prompt

    async def generate(self, handle: ModelHandle, request: GenerationRequest) -> Any:
        agent, history, user_prompt = self._build_agent(handle, request)
        logger.debug("Running generation on %s", describe_model(handle))
        result = await agent.run(
            user_prompt,
            message_history=history or None,
            model_settings=request.settings or None,  # type: ignore[arg-type]
        )
        return result.output

    async def stream(
        self, handle: ModelHandle, request: GenerationRequest
    ) -> AsyncIterator[Any]:
        agent, history, user_prompt = self._build_agent(handle, request)
        logger.debug("Streaming generation on %s", describe_model(handle))
        async with agent.run_stream(
            user_prompt,
            message_history=history or None,
            model_settings=request.settings or None,  # type: ignore[arg-type]
        ) as result:
            async for partial in result.stream_output(debounce_by=None):
                yield partial
