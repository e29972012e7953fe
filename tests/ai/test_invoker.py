"""Tests for multi-model invocation, critique loops and streaming fallback."""

from __future__ import annotations

import pytest
from pydantic import BaseModel

from streamgen.core.exceptions import AllModelsFailedError
from streamgen.schemas.generation import GenerationRequest, Message
from streamgen.services.ai.invoker import MultiModelInvoker


class Lesson(BaseModel):
    title: str
    steps: list[str] = []


class Thought(BaseModel):
    notes: str


def _request(**kwargs) -> GenerationRequest:
    return GenerationRequest(
        system="You write lessons.",
        prompt="Write a lesson about fractions.",
        output_type=Lesson,
        **kwargs,
    )


class TestFallback:
    @pytest.mark.asyncio
    async def test_falls_back_to_next_model(self, fake_caller_factory) -> None:
        """Test [A(fails), B(succeeds)] returns B's result after one A call."""
        caller = fake_caller_factory(
            responses={
                "test:a": [RuntimeError("rate limited")],
                "test:b": [{"title": "From B"}],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(), ["test:a", "test:b"]
        )

        assert outcome.success is True
        assert outcome.data == Lesson(title="From B")
        assert outcome.model == "test:b"
        assert caller.called_models == ["test:a", "test:b"]
        assert [(a.model, a.success) for a in outcome.attempts] == [
            ("test:a", False),
            ("test:b", True),
        ]

    @pytest.mark.asyncio
    async def test_invalid_response_counts_as_failure(
        self, fake_caller_factory
    ) -> None:
        caller = fake_caller_factory(
            responses={
                "test:a": [{"wrong": "shape"}],
                "test:b": [{"title": "Valid"}],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(), ["test:a", "test:b"]
        )
        assert outcome.data.title == "Valid"
        assert "validation" in (outcome.attempts[0].error or "")

    @pytest.mark.asyncio
    async def test_first_success_stops_the_chain(self, fake_caller_factory) -> None:
        caller = fake_caller_factory(
            responses={"test:a": [{"title": "A"}], "test:b": [{"title": "B"}]}
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(), ["test:a", "test:b"]
        )
        assert outcome.data.title == "A"
        assert caller.called_models == ["test:a"]

    @pytest.mark.asyncio
    async def test_all_models_failing_returns_last_error(
        self, fake_caller_factory
    ) -> None:
        caller = fake_caller_factory(
            responses={
                "test:a": [RuntimeError("down")],
                "test:b": [{"not": "a lesson"}],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(), ["test:a", "test:b"]
        )

        assert outcome.success is False
        assert outcome.data is None
        assert outcome.error is not None
        assert outcome.error.error_code == "invalid_output"
        assert outcome.error.model == "test:b"

    @pytest.mark.asyncio
    async def test_empty_model_list_is_an_error(self, fake_caller_factory) -> None:
        with pytest.raises(ValueError):
            await MultiModelInvoker(fake_caller_factory()).invoke(_request(), [])

    @pytest.mark.asyncio
    async def test_thinking_is_split_from_result(self, fake_caller_factory) -> None:
        caller = fake_caller_factory(
            responses={
                "test:a": [
                    {"thinking": {"notes": "start simple"}, "result": {"title": "T"}}
                ]
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(thinking_type=Thought), ["test:a"]
        )
        assert outcome.data == Lesson(title="T")
        assert outcome.thinking == Thought(notes="start simple")


class TestCritique:
    @pytest.mark.asyncio
    async def test_revision_replaces_candidate(self, fake_caller_factory) -> None:
        """Test one loop with a revising critic returns the revision."""
        caller = fake_caller_factory(
            responses={
                "test:writer": [{"title": "Draft"}],
                "test:critic": [
                    {
                        "feedback_needed": True,
                        "feedback": "Title too vague",
                        "revision": {"title": "Adding fractions"},
                    }
                ],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(),
            ["test:writer"],
            critic_models=["test:critic"],
            max_feedback_loops=1,
        )

        assert outcome.success
        assert outcome.data == Lesson(title="Adding fractions")
        assert outcome.feedback_loops == 1
        assert outcome.model == "test:critic"

    @pytest.mark.asyncio
    async def test_revision_drops_primary_thinking(self, fake_caller_factory) -> None:
        caller = fake_caller_factory(
            responses={
                "test:writer": [
                    {"thinking": {"notes": "rough"}, "result": {"title": "Draft"}}
                ],
                "test:critic": [
                    {"feedback_needed": True, "revision": {"title": "Final"}}
                ],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(thinking_type=Thought),
            ["test:writer"],
            critic_models=["test:critic"],
            max_feedback_loops=1,
        )

        assert outcome.data == Lesson(title="Final")
        assert outcome.model == "test:critic"
        assert outcome.thinking is None

    @pytest.mark.asyncio
    async def test_approval_stops_the_loop(self, fake_caller_factory) -> None:
        caller = fake_caller_factory(
            responses={
                "test:writer": [{"title": "Good"}],
                "test:critic": [{"feedback_needed": False}],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(),
            ["test:writer"],
            critic_models=["test:critic"],
            max_feedback_loops=3,
        )

        assert outcome.data.title == "Good"
        assert outcome.feedback_loops == 1
        assert caller.called_models == ["test:writer", "test:critic"]

    @pytest.mark.asyncio
    async def test_feedback_triggers_regeneration(self, fake_caller_factory) -> None:
        """Test textual feedback is answered by the primary chain."""
        caller = fake_caller_factory(
            responses={
                "test:writer": [{"title": "First"}, {"title": "Second"}],
                "test:critic": [
                    {"feedback_needed": True, "feedback": "Add an example"},
                    {"feedback_needed": False},
                ],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(messages=(Message(role="user", content="Go"),)),
            ["test:writer"],
            critic_models=["test:critic"],
            max_feedback_loops=3,
        )

        assert outcome.data.title == "Second"
        assert outcome.feedback_loops == 2
        assert caller.called_models == [
            "test:writer",
            "test:critic",
            "test:writer",
            "test:critic",
        ]

        regen_request = caller.calls[2][1]
        roles = [m.role for m in regen_request.messages]
        assert roles == ["user", "assistant", "user"]
        assert '"title":"First"' in regen_request.messages[1].content
        assert "Add an example" in regen_request.messages[2].content

    @pytest.mark.asyncio
    async def test_critic_request_uses_critique_schema(
        self, fake_caller_factory
    ) -> None:
        caller = fake_caller_factory(
            responses={
                "test:writer": [{"title": "Draft"}],
                "test:critic": [{"feedback_needed": False}],
            }
        )
        await MultiModelInvoker(caller).invoke(
            _request(),
            ["test:writer"],
            critic_models=["test:critic"],
            max_feedback_loops=1,
        )

        critic_request = caller.calls[1][1]
        fields = critic_request.output_type.model_fields
        assert {"feedback_needed", "feedback", "revision"} <= set(fields)
        assert "Write a lesson about fractions." in (critic_request.system or "")
        assert critic_request.messages[-1].role == "assistant"

    @pytest.mark.asyncio
    async def test_critics_fall_back_first_available(
        self, fake_caller_factory
    ) -> None:
        caller = fake_caller_factory(
            responses={
                "test:writer": [{"title": "Draft"}],
                "test:c1": [RuntimeError("critic down")],
                "test:c2": [{"feedback_needed": False}],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(),
            ["test:writer"],
            critic_models=["test:c1", "test:c2"],
            max_feedback_loops=2,
        )
        assert outcome.success
        assert caller.called_models == ["test:writer", "test:c1", "test:c2"]

    @pytest.mark.asyncio
    async def test_all_critics_failing_keeps_candidate(
        self, fake_caller_factory
    ) -> None:
        caller = fake_caller_factory(
            responses={
                "test:writer": [{"title": "Draft"}],
                "test:critic": [RuntimeError("nope")],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(),
            ["test:writer"],
            critic_models=["test:critic"],
            max_feedback_loops=2,
        )
        assert outcome.success
        assert outcome.data.title == "Draft"

    @pytest.mark.asyncio
    async def test_failed_regeneration_keeps_last_candidate(
        self, fake_caller_factory
    ) -> None:
        caller = fake_caller_factory(
            responses={
                "test:writer": [{"title": "Draft"}, RuntimeError("gone")],
                "test:critic": [{"feedback_needed": True, "feedback": "More"}],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(),
            ["test:writer"],
            critic_models=["test:critic"],
            max_feedback_loops=3,
        )
        assert outcome.success
        assert outcome.data.title == "Draft"
        assert outcome.feedback_loops == 1

    @pytest.mark.asyncio
    async def test_default_loop_count_comes_from_settings(
        self, fake_caller_factory, monkeypatch
    ) -> None:
        caller = fake_caller_factory(
            responses={
                "test:writer": [{"title": "Draft"}],
                "test:critic": [{"feedback_needed": False}],
            }
        )
        outcome = await MultiModelInvoker(caller).invoke(
            _request(), ["test:writer"], critic_models=["test:critic"]
        )
        assert outcome.feedback_loops == 0
        assert caller.called_models == ["test:writer"]

        monkeypatch.setenv("MAX_FEEDBACK_LOOPS", "1")
        from streamgen.core.config import get_settings

        get_settings.cache_clear()
        outcome = await MultiModelInvoker(caller).invoke(
            _request(), ["test:writer"], critic_models=["test:critic"]
        )
        assert outcome.feedback_loops == 1


class TestStreaming:
    @pytest.mark.asyncio
    async def test_falls_back_before_first_snapshot(self, fake_caller_factory) -> None:
        caller = fake_caller_factory(
            streams={
                "test:a": [RuntimeError("connect failed")],
                "test:b": [{"title": "B"}, {"title": "Bo"}],
            }
        )
        attempts: list = []
        invoker = MultiModelInvoker(caller)
        snapshots = [
            s
            async for s in invoker.stream_partials(
                _request(), ["test:a", "test:b"], attempts=attempts
            )
        ]

        assert snapshots == [{"title": "B"}, {"title": "Bo"}]
        assert [(a.model, a.success) for a in attempts] == [
            ("test:a", False),
            ("test:b", True),
        ]
        assert caller.closed == ["test:a", "test:b"]

    @pytest.mark.asyncio
    async def test_errors_after_first_snapshot_propagate(
        self, fake_caller_factory
    ) -> None:
        caller = fake_caller_factory(
            streams={
                "test:a": [{"title": "A"}, RuntimeError("dropped")],
                "test:b": [{"title": "B"}],
            }
        )
        invoker = MultiModelInvoker(caller)
        seen = []
        with pytest.raises(RuntimeError, match="dropped"):
            async for s in invoker.stream_partials(_request(), ["test:a", "test:b"]):
                seen.append(s)
        assert seen == [{"title": "A"}]
        assert caller.called_models == ["test:a"]

    @pytest.mark.asyncio
    async def test_empty_stream_falls_through(self, fake_caller_factory) -> None:
        caller = fake_caller_factory(
            streams={"test:a": [], "test:b": [{"title": "B"}]}
        )
        invoker = MultiModelInvoker(caller)
        snapshots = [
            s async for s in invoker.stream_partials(_request(), ["test:a", "test:b"])
        ]
        assert snapshots == [{"title": "B"}]

    @pytest.mark.asyncio
    async def test_all_streams_failing(self, fake_caller_factory) -> None:
        caller = fake_caller_factory(
            streams={"test:a": [RuntimeError("x")], "test:b": [RuntimeError("y")]}
        )
        invoker = MultiModelInvoker(caller)
        with pytest.raises(AllModelsFailedError) as exc_info:
            async for _ in invoker.stream_partials(_request(), ["test:a", "test:b"]):
                pass
        assert len(exc_info.value.errors) == 2

    @pytest.mark.asyncio
    async def test_thinking_snapshots_are_unwrapped(self, fake_caller_factory) -> None:
        caller = fake_caller_factory(
            streams={
                "test:a": [
                    {"thinking": {"notes": "h"}},
                    {"thinking": {"notes": "hm"}, "result": {"title": "T"}},
                ]
            }
        )
        invoker = MultiModelInvoker(caller)
        snapshots = [
            s
            async for s in invoker.stream_partials(
                _request(thinking_type=Thought), ["test:a"]
            )
        ]
        assert snapshots == [{"title": "T"}]


class TestFinalize:
    def test_valid_snapshot(self, fake_caller_factory) -> None:
        invoker = MultiModelInvoker(fake_caller_factory())
        outcome = invoker.finalize(_request(), {"title": "Done", "steps": ["a"]})
        assert outcome.success
        assert outcome.data == Lesson(title="Done", steps=["a"])

    def test_invalid_snapshot(self, fake_caller_factory) -> None:
        invoker = MultiModelInvoker(fake_caller_factory())
        outcome = invoker.finalize(_request(), {"steps": []})
        assert outcome.success is False
        assert outcome.error.error_code == "invalid_output"

    def test_missing_snapshot(self, fake_caller_factory) -> None:
        invoker = MultiModelInvoker(fake_caller_factory())
        outcome = invoker.finalize(_request(), None)
        assert outcome.success is False
        assert outcome.error.error_code == "provider_failed"
