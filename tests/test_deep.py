"""
Unit tests for deep.py - submit, poll, reconnect and follow up.

The Interactions API is faked with scripted ``interactions.get`` results and
a zero poll interval, so every test runs instantly.
"""

from types import SimpleNamespace

import pytest

from conftest import make_client
from gemini_chat_core.cancel import CancelToken
from gemini_chat_core.deep import DeepResearchOrchestrator, build_research_input
from gemini_chat_core.errors import ErrorKind, GeminiError, GeminiValidationError
from gemini_chat_core.types import ConversationTurn, EventType, ResearchPhase


def _interaction(status: str, *thoughts: str, text: str | None = None, usage=None, error=None) -> SimpleNamespace:
    outputs = [SimpleNamespace(type="thought", summary=t) for t in thoughts]
    if text:
        outputs.append(SimpleNamespace(type="text", text=text))
    return SimpleNamespace(id="task-1", status=status, outputs=outputs, usage=usage, error=error)


def _client(*polls, created=("task-1",)) -> SimpleNamespace:
    client = make_client()
    client.aio.interactions.create.side_effect = [SimpleNamespace(id=i) for i in created]
    client.aio.interactions.get.side_effect = list(polls)
    return client


def _orchestrator(client, **kwargs) -> DeepResearchOrchestrator:
    kwargs.setdefault("poll_interval", 0)
    return DeepResearchOrchestrator(client=client, **kwargs)


async def _collect(stream) -> list:
    return [ev async for ev in stream]


def _summary(events) -> list[tuple[str, str | None]]:
    """(type, phase-or-key) pairs for compact assertions."""
    out = []
    for ev in events:
        detail = ev.data.get("phase") or ev.data.get("key")
        out.append((ev.type.value, detail))
    return out


QUESTION = [ConversationTurn.user("Compare solid-state battery roadmaps")]


class TestResearchInput:
    """Conversation flattening for the research agent."""

    def test_history_and_request(self):
        text = build_research_input(
            [
                ConversationTurn.user("Tell me about batteries"),
                ConversationTurn.assistant("Batteries store energy."),
                ConversationTurn.user("Research solid-state roadmaps"),
            ]
        )
        assert text.startswith(
            "Conversation so far:\nUser: Tell me about batteries\nAssistant: Batteries store energy."
        )
        assert "Research request:\nResearch solid-state roadmaps" in text
        assert "## Key Takeaways" in text

    def test_needs_a_question(self):
        with pytest.raises(GeminiValidationError):
            build_research_input([ConversationTurn.user("   ")])


class TestExecute:
    """A task followed from submission to completion."""

    @pytest.mark.asyncio
    async def test_full_run(self):
        usage = SimpleNamespace(total_input_tokens=100, total_output_tokens=900, total_tokens=1000)
        client = _client(
            _interaction("in_progress"),
            _interaction("in_progress", "Searching sources"),
            _interaction("in_progress", "Searching sources", "Comparing vendors"),
            _interaction("completed", "Searching sources", "Comparing vendors", text="# Report", usage=usage),
        )
        orchestrator = _orchestrator(client)

        task_id, events = await orchestrator.execute_deep_research(QUESTION)
        events = await _collect(events)

        assert task_id == "task-1"
        assert _summary(events) == [
            ("agentic-phase", "queued"),
            ("agentic-phase", "running"),
            ("agentic-phase", "thinking"),
            ("thought-step", "0:thought:0"),
            ("thought-step", "0:thought:1"),
            ("agentic-phase", "complete"),
            ("text-delta", None),
            ("research-complete", None),
        ]
        assert events[3].data["summary"] == "Searching sources"
        assert events[6].data == {"text": "# Report", "task_id": "task-1"}
        complete = events[-1].data
        assert complete["usage"] == {"prompt_tokens": 100, "completion_tokens": 900, "total_tokens": 1000}
        assert complete["turn"] == 0
        assert orchestrator.get_task("task-1").phase is ResearchPhase.COMPLETE

        create_kwargs = client.aio.interactions.create.await_args.kwargs
        assert create_kwargs["background"] is True
        assert "Compare solid-state battery roadmaps" in create_kwargs["input"]

    @pytest.mark.asyncio
    async def test_submission_failure_raises(self):
        client = make_client()
        client.aio.interactions.create.side_effect = RuntimeError("API key not valid")

        with pytest.raises(GeminiError) as exc_info:
            await _orchestrator(client).execute_deep_research(QUESTION)
        assert exc_info.value.kind is ErrorKind.AUTH

    @pytest.mark.asyncio
    async def test_remote_failure(self):
        client = _client(_interaction("failed", error=SimpleNamespace(message="quota exceeded for research")))

        _, events = await _orchestrator(client).execute_deep_research(QUESTION)
        events = await _collect(events)

        assert _summary(events)[-2:] == [("agentic-phase", "error"), ("error", None)]
        assert events[-1].data["kind"] == "Quota"
        assert events[-1].data["task_id"] == "task-1"


class TestReconnect:
    """Resumed streams skip delivered thoughts and signal completion once."""

    @pytest.mark.asyncio
    async def test_resume_after_abandoned_stream(self):
        client = _client(
            _interaction("in_progress"),
            _interaction("in_progress", "Searching sources"),
            _interaction("in_progress", "Searching sources", "Comparing vendors"),
            _interaction("completed", "Searching sources", "Comparing vendors", text="# Report"),
            _interaction("completed", "Searching sources", "Comparing vendors", text="# Report"),
        )
        orchestrator = _orchestrator(client)
        task_id, stream = await orchestrator.execute_deep_research(QUESTION)

        first = []
        async for ev in stream:
            first.append(ev)
            if ev.type is EventType.THOUGHT_STEP:
                break
        await stream.aclose()

        second = await _collect(orchestrator.reconnect_to_research(task_id))
        third = await _collect(orchestrator.reconnect_to_research(task_id))

        assert _summary(second) == [
            ("agentic-phase", "thinking"),
            ("thought-step", "0:thought:1"),
            ("agentic-phase", "complete"),
            ("text-delta", None),
            ("research-complete", None),
        ]
        assert _summary(third) == [("agentic-phase", "complete"), ("text-delta", None)]

        everything = first + second + third
        keys = [ev.data["key"] for ev in everything if ev.type is EventType.THOUGHT_STEP]
        assert keys == ["0:thought:0", "0:thought:1"]
        assert [ev.type for ev in everything].count(EventType.RESEARCH_COMPLETE) == 1

    @pytest.mark.asyncio
    async def test_untracked_task_with_client_seen_keys(self):
        client = _client(_interaction("in_progress", "Searching sources", "Comparing vendors"), created=())
        orchestrator = _orchestrator(client)
        token = CancelToken()

        events = []
        async for ev in orchestrator.reconnect_to_research("task-9", seen=["0:thought:0"], token=token):
            events.append(ev)
            if ev.type is EventType.THOUGHT_STEP:
                token.cancel()

        assert _summary(events) == [
            ("agentic-phase", "thinking"),
            ("thought-step", "0:thought:1"),
        ]
        assert client.aio.interactions.get.await_args.kwargs == {"id": "task-9"}

    @pytest.mark.asyncio
    async def test_untracked_finished_task_reports_its_real_phase(self):
        client = _client(_interaction("completed", text="# Report"), created=())

        events = await _collect(_orchestrator(client).reconnect_to_research("task-7"))

        assert _summary(events) == [
            ("agentic-phase", "complete"),
            ("text-delta", None),
            ("research-complete", None),
        ]

    @pytest.mark.asyncio
    async def test_thoughts_from_one_poll_survive_a_disconnect(self):
        client = _client(
            _interaction("in_progress", "Searching sources", "Comparing vendors"),
            _interaction("completed", "Searching sources", "Comparing vendors", text="# Report"),
        )
        orchestrator = _orchestrator(client)
        task_id, stream = await orchestrator.execute_deep_research(QUESTION)

        first = []
        async for ev in stream:
            first.append(ev)
            if ev.type is EventType.THOUGHT_STEP:
                break
        await stream.aclose()

        second = await _collect(orchestrator.reconnect_to_research(task_id))

        keys = [ev.data["key"] for ev in first + second if ev.type is EventType.THOUGHT_STEP]
        assert keys == ["0:thought:0", "0:thought:1"]
        assert _summary(second)[-1] == ("research-complete", None)

    @pytest.mark.asyncio
    async def test_completion_signal_survives_a_disconnect_before_it(self):
        client = _client(
            _interaction("completed", text="# Report"),
            _interaction("completed", text="# Report"),
            _interaction("completed", text="# Report"),
        )
        orchestrator = _orchestrator(client)
        task_id, stream = await orchestrator.execute_deep_research(QUESTION)

        first = []
        async for ev in stream:
            first.append(ev)
            if ev.type is EventType.TEXT_DELTA:
                break
        await stream.aclose()

        second = await _collect(orchestrator.reconnect_to_research(task_id))
        third = await _collect(orchestrator.reconnect_to_research(task_id))

        assert _summary(first)[-1] == ("text-delta", None)
        assert _summary(second) == [
            ("agentic-phase", "complete"),
            ("text-delta", None),
            ("research-complete", None),
        ]
        everything = first + second + third
        assert [ev.type for ev in everything].count(EventType.RESEARCH_COMPLETE) == 1


class TestPollingLimits:
    """Deadline, poll failures, backoff and cancellation."""

    @pytest.mark.asyncio
    async def test_overall_timeout(self):
        client = _client()
        orchestrator = _orchestrator(client, max_duration=5)
        task_id, stream = await orchestrator.execute_deep_research(QUESTION)
        orchestrator.get_task(task_id).started_at -= 10

        events = await _collect(stream)

        assert _summary(events) == [("agentic-phase", "queued"), ("error", None)]
        assert events[-1].data["kind"] == "Timeout"
        assert events[-1].data["retryable"] is True
        client.aio.interactions.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_poll_failures_are_tolerated(self):
        client = _client(
            ConnectionError("connection reset"),
            ConnectionError("connection reset"),
            _interaction("completed", text="done"),
        )

        _, stream = await _orchestrator(client).execute_deep_research(QUESTION)
        events = await _collect(stream)

        assert [ev.type for ev in events][-1] is EventType.RESEARCH_COMPLETE
        assert client.aio.interactions.get.await_count == 3

    @pytest.mark.asyncio
    async def test_too_many_poll_failures(self):
        client = _client(*[ConnectionError("connection reset")] * 3)

        _, stream = await _orchestrator(client, max_poll_failures=2).execute_deep_research(QUESTION)
        events = await _collect(stream)

        assert events[-1].type is EventType.ERROR
        assert events[-1].data["kind"] == "Network"
        assert client.aio.interactions.get.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_poll_failure_stops_at_once(self):
        client = _client(RuntimeError("API key not valid"), _interaction("completed", text="never"))

        _, stream = await _orchestrator(client).execute_deep_research(QUESTION)
        events = await _collect(stream)

        assert events[-1].data["kind"] == "Auth"
        assert client.aio.interactions.get.await_count == 1

    @pytest.mark.asyncio
    async def test_backoff_while_nothing_changes(self):
        class RecordingToken(CancelToken):
            def __init__(self):
                super().__init__()
                self.sleeps = []

            async def sleep(self, seconds):
                self.sleeps.append(seconds)
                return False

        client = _client(*[_interaction("in_progress")] * 4, _interaction("completed", text="done"))
        orchestrator = _orchestrator(client, poll_interval=1.0, backoff_factor=2.0, max_poll_interval=3.0)
        token = RecordingToken()

        _, stream = await orchestrator.execute_deep_research(QUESTION, token=token)
        await _collect(stream)

        assert token.sleeps == [1.0, 1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_polling(self):
        client = _client(_interaction("completed", text="unused"))
        token = CancelToken()
        token.cancel()

        _, stream = await _orchestrator(client).execute_deep_research(QUESTION, token=token)
        events = await _collect(stream)

        assert _summary(events) == [("agentic-phase", "queued")]
        client.aio.interactions.get.assert_not_awaited()


class TestTaskTracking:
    """Finished tasks are forgotten after a TTL or when over the cap."""

    @pytest.mark.asyncio
    async def test_expired_finished_task_is_forgotten(self):
        client = _client(_interaction("completed", text="# Report"), created=("task-1", "task-2"))
        orchestrator = _orchestrator(client, task_ttl=60)
        task_id, stream = await orchestrator.execute_deep_research(QUESTION)
        await _collect(stream)
        assert orchestrator.get_task(task_id).finished_at is not None

        orchestrator.get_task(task_id).finished_at -= 120
        await orchestrator.execute_deep_research(QUESTION)

        assert orchestrator.get_task("task-1") is None
        assert orchestrator.get_task("task-2") is not None

    @pytest.mark.asyncio
    async def test_cap_drops_oldest_finished_task_only(self):
        client = _client(
            _interaction("completed", text="a"),
            _interaction("completed", text="b"),
            created=("task-1", "task-2", "task-3", "task-4"),
        )
        orchestrator = _orchestrator(client, max_tasks=3)
        for _ in range(2):
            _, stream = await orchestrator.execute_deep_research(QUESTION)
            await _collect(stream)
        await orchestrator.execute_deep_research(QUESTION)

        await orchestrator.execute_deep_research(QUESTION)

        assert orchestrator.get_task("task-1") is None
        assert [orchestrator.get_task(t) is not None for t in ("task-2", "task-3", "task-4")] == [True, True, True]


class TestFollowUp:
    """Follow-up questions continue a completed task under the same id."""

    @pytest.mark.asyncio
    async def test_follow_up_bumps_turn(self):
        client = _client(
            _interaction("completed", text="# Report"),
            _interaction("completed", text="Follow-up answer"),
            created=("task-1", "interaction-2"),
        )
        orchestrator = _orchestrator(client)
        task_id, stream = await orchestrator.execute_deep_research(QUESTION)
        await _collect(stream)

        events = await _collect(await orchestrator.ask_follow_up(task_id, "What about costs?"))

        assert _summary(events) == [
            ("agentic-phase", "running"),
            ("agentic-phase", "complete"),
            ("text-delta", None),
            ("research-complete", None),
        ]
        complete = events[-1].data
        assert complete["task_id"] == "task-1"
        assert complete["interaction_id"] == "interaction-2"
        assert complete["turn"] == 1
        assert client.aio.interactions.create.await_args.kwargs["previous_interaction_id"] == "task-1"
        assert client.aio.interactions.get.await_args.kwargs == {"id": "interaction-2"}

    @pytest.mark.asyncio
    async def test_follow_up_needs_completed_task(self):
        client = _client()
        orchestrator = _orchestrator(client)
        task_id, _ = await orchestrator.execute_deep_research(QUESTION)

        with pytest.raises(GeminiValidationError, match="queued"):
            await orchestrator.ask_follow_up(task_id, "Any update?")

    @pytest.mark.asyncio
    async def test_follow_up_loads_untracked_task(self):
        client = _client(_interaction("in_progress"), created=())

        with pytest.raises(GeminiValidationError, match="running"):
            await _orchestrator(client).ask_follow_up("task-7", "Any update?")

    @pytest.mark.asyncio
    async def test_empty_question(self):
        with pytest.raises(GeminiValidationError):
            await _orchestrator(make_client()).ask_follow_up("task-1", "  ")
