"""
Deep research using the Gemini Deep Research agent.

Tasks run server-side in the background (typically 3-20 minutes). The
orchestrator submits them, polls their status and turns what it sees into
stream events. A client that drops off can reconnect by task id: thought
steps already delivered are skipped by their identity, the final answer
may be re-delivered, and ``research-complete`` is sent at most once per turn.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

from google import genai

from gemini_chat_core.agentic import thought_step
from gemini_chat_core.cancel import CancelToken
from gemini_chat_core.client import get_client
from gemini_chat_core.config import (
    FINISHED_TASK_TTL,
    LOGGER_NAME,
    MAX_POLL_FAILURES,
    MAX_POLL_INTERVAL,
    MAX_RESEARCH_SECONDS,
    MAX_TRACKED_TASKS,
    POLL_BACKOFF_FACTOR,
    POLL_INTERVAL,
    POLL_TIMEOUT,
    TEXT_DELTA_CHUNK_CHARS,
    get_deep_research_agent,
)
from gemini_chat_core.errors import (
    GeminiError,
    GeminiTimeoutError,
    GeminiValidationError,
    classify,
)
from gemini_chat_core.instructions import deep_research_format_instructions
from gemini_chat_core.retry import with_retry
from gemini_chat_core.safety import enforce_input_safety
from gemini_chat_core.types import (
    ConversationTurn,
    EventType,
    ResearchPhase,
    ResearchTask,
    ResearchUsage,
    Role,
    StreamEvent,
    enum_name,
    event,
)

logger = logging.getLogger(LOGGER_NAME)

AGENT_CONFIG = {"type": "deep-research", "thinking_summaries": "auto"}

# Remote interaction status -> local phase
STATUS_PHASES = {
    "QUEUED": ResearchPhase.QUEUED,
    "PENDING": ResearchPhase.QUEUED,
    "CREATED": ResearchPhase.QUEUED,
    "IN_PROGRESS": ResearchPhase.RUNNING,
    "RUNNING": ResearchPhase.RUNNING,
    "REQUIRES_ACTION": ResearchPhase.RUNNING,
    "COMPLETED": ResearchPhase.COMPLETE,
    "FAILED": ResearchPhase.ERROR,
    "CANCELLED": ResearchPhase.CANCELLED,
}


# =============================================================================
# Interaction Parsing
# =============================================================================


def _extract_usage(interaction: Any) -> ResearchUsage | None:
    """Extract token usage from an interaction response."""
    usage_data = getattr(interaction, "usage", None)
    if usage_data is None:
        usage_data = getattr(interaction, "usage_metadata", None)
    if usage_data is None:
        return None

    def first(*names: str) -> int | None:
        for name in names:
            value = getattr(usage_data, name, None)
            if isinstance(value, int):
                return value
        return None

    return ResearchUsage(
        prompt_tokens=first("total_input_tokens", "prompt_token_count", "prompt_tokens"),
        completion_tokens=first("total_output_tokens", "candidates_token_count", "completion_tokens"),
        total_tokens=first("total_tokens", "total_token_count"),
    )


def _is_thought(output: Any) -> bool:
    return getattr(output, "type", None) == "thought"


def _thought_text(output: Any) -> str | None:
    summary = getattr(output, "summary", None)
    if isinstance(summary, str):
        return summary
    if isinstance(summary, list):
        texts = [getattr(item, "text", None) for item in summary]
        joined = "\n".join(t for t in texts if t)
        if joined:
            return joined
    text = getattr(output, "text", None)
    return text if isinstance(text, str) else None


def _extract_text_from_interaction(interaction: Any) -> str | None:
    """Final answer text: the last non-thought output that carries text."""
    for output in reversed(getattr(interaction, "outputs", None) or []):
        if _is_thought(output):
            continue
        text = getattr(output, "text", None)
        if text:
            return str(text)
    return None


def _error_message(interaction: Any) -> str:
    error = getattr(interaction, "error", None)
    message = getattr(error, "message", None) or (error if isinstance(error, str) else None)
    return message or "Research task failed"


def build_research_input(turns: Sequence[ConversationTurn]) -> str:
    """Flatten the conversation into the agent's text input.

    Earlier turns become context; the last user turn is the request.
    """
    latest = next((t for t in reversed(turns) if t.role is Role.USER), None)
    if latest is None or not latest.text.strip():
        raise GeminiValidationError("Deep research needs a text question", field="conversation")

    if any(t.has_media() for t in turns):
        logger.info("   ℹ️ Media attachments are not sent to deep research")

    history = [t for t in turns if t is not latest and t.text.strip()]
    sections: list[str] = []
    if history:
        lines = [f"{'User' if t.role is Role.USER else 'Assistant'}: {t.text}" for t in history]
        sections.append("Conversation so far:\n" + "\n".join(lines))
    sections.append(f"Research request:\n{latest.text}")
    sections.append(deep_research_format_instructions())
    return "\n\n".join(sections)


def _chunks(text: str, size: int) -> Iterable[str]:
    for start in range(0, len(text), size):
        yield text[start : start + size]


# =============================================================================
# Orchestrator
# =============================================================================


class DeepResearchOrchestrator:
    """Submits, polls and resumes deep research tasks.

    Holds the client-side view of tasks started or resumed in this process.
    """

    def __init__(
        self,
        *,
        client: genai.Client | None = None,
        agent: str | None = None,
        poll_interval: float = POLL_INTERVAL,
        max_poll_interval: float = MAX_POLL_INTERVAL,
        backoff_factor: float = POLL_BACKOFF_FACTOR,
        poll_timeout: float = POLL_TIMEOUT,
        max_poll_failures: int = MAX_POLL_FAILURES,
        max_duration: float = MAX_RESEARCH_SECONDS,
        task_ttl: float = FINISHED_TASK_TTL,
        max_tasks: int = MAX_TRACKED_TASKS,
    ) -> None:
        self._client = client
        self.agent = agent or get_deep_research_agent()
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.backoff_factor = backoff_factor
        self.poll_timeout = poll_timeout
        self.max_poll_failures = max_poll_failures
        self.max_duration = max_duration
        self.task_ttl = task_ttl
        self.max_tasks = max_tasks
        self._tasks: dict[str, ResearchTask] = {}

    @property
    def client(self) -> genai.Client:
        return self._client or get_client()

    def get_task(self, task_id: str) -> ResearchTask | None:
        return self._tasks.get(task_id)

    def _track(self, task: ResearchTask) -> None:
        self._prune()
        self._tasks[task.task_id] = task

    def _prune(self) -> None:
        """Forget finished tasks past their TTL, then the oldest finished ones over the cap."""
        now = time.time()
        finished = sorted(
            (t for t in self._tasks.values() if t.phase.is_terminal and t.finished_at is not None),
            key=lambda t: t.finished_at,
        )
        overflow = len(self._tasks) - self.max_tasks + 1
        for task in finished:
            if now - task.finished_at <= self.task_ttl and overflow <= 0:
                break
            del self._tasks[task.task_id]
            overflow -= 1
            logger.debug("   🧹 Forgot finished task %s", task.task_id)

    @staticmethod
    def _settle(task: ResearchTask, phase: ResearchPhase) -> None:
        task.phase = phase
        task.finished_at = time.time()

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def _create_interaction(self, text: str, previous_interaction_id: str | None = None) -> str:
        kwargs: dict[str, Any] = {
            "input": text,
            "agent": self.agent,
            "background": True,
            "agent_config": AGENT_CONFIG,
        }
        if previous_interaction_id:
            kwargs["previous_interaction_id"] = previous_interaction_id

        client = self.client
        try:
            interaction = await with_retry(
                lambda: client.aio.interactions.create(**kwargs),
                label="deep research submit",
            )
        except Exception as e:
            raise classify(e) from e

        interaction_id = getattr(interaction, "id", None)
        if not interaction_id:
            raise GeminiError("Deep research did not return a task id")
        return str(interaction_id)

    async def execute_deep_research(
        self,
        turns: Sequence[ConversationTurn],
        *,
        token: CancelToken | None = None,
    ) -> tuple[str, AsyncIterator[StreamEvent]]:
        """
        Submit a research task.

        Returns:
            The task id and the event stream that follows it to completion

        Raises:
            GeminiError: When the task could not be submitted
        """
        text = build_research_input(turns)
        logger.info("🔬 Submitting deep research (%d chars)", len(text))
        task_id = await self._create_interaction(text)

        task = ResearchTask(task_id=task_id, interaction_id=task_id)
        self._track(task)
        logger.info("   ✅ Research task created: %s", task_id)
        return task_id, self._follow(task, token or CancelToken(), initial_delay=self.poll_interval)

    def reconnect_to_research(
        self,
        task_id: str,
        *,
        seen: Iterable[str] = (),
        token: CancelToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Resume following a task, e.g. after the original stream was abandoned.

        ``seen`` lets a client hand back thought-step keys it already has,
        on top of those this process delivered.
        """
        task = self._tasks.get(task_id)
        announce = task is not None
        if task is None:
            # Phase unknown until the first poll reads the remote status
            logger.info("🔄 Reconnecting to untracked task %s", task_id)
            task = ResearchTask(task_id=task_id, phase=ResearchPhase.RUNNING, interaction_id=task_id)
            self._track(task)
        else:
            logger.info("🔄 Reconnecting to task %s (phase=%s)", task_id, task.phase.value)
        task.observed.update(seen)
        return self._follow(task, token or CancelToken(), initial_delay=0.0, announce=announce)

    async def ask_follow_up(
        self,
        task_id: str,
        question: str,
        *,
        token: CancelToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Add a turn to a completed task and follow it back through ``running``."""
        if not question or not question.strip():
            raise GeminiValidationError("Follow-up question must not be empty", field="question")
        question = enforce_input_safety(question)

        task = self._tasks.get(task_id)
        if task is None:
            task = await self._load_remote_task(task_id)
        if task.phase is not ResearchPhase.COMPLETE:
            raise GeminiValidationError(
                f"Research task is {task.phase.value}; follow-ups need a completed task",
                field="task_id",
            )

        logger.info("💬 Follow-up for %s: %s", task_id, question[:100])
        interaction_id = await self._create_interaction(question, task.current_interaction_id)
        task.interaction_id = interaction_id
        task.turn += 1
        task.started_at = time.time()
        task.finished_at = None
        task.phase = ResearchPhase.RUNNING
        return self._follow(task, token or CancelToken(), initial_delay=self.poll_interval)

    async def _load_remote_task(self, task_id: str) -> ResearchTask:
        client = self.client
        try:
            interaction = await with_retry(
                lambda: client.aio.interactions.get(id=task_id),
                label="research status",
            )
        except Exception as e:
            raise classify(e) from e
        status = enum_name(getattr(interaction, "status", None))
        task = ResearchTask(
            task_id=task_id,
            phase=STATUS_PHASES.get(status, ResearchPhase.RUNNING),
            interaction_id=task_id,
        )
        if task.phase.is_terminal:
            task.finished_at = time.time()
        if task.phase is ResearchPhase.COMPLETE:
            # Whoever watched it finish has had its completion signal
            task.completed_turns.add(task.turn)
        self._track(task)
        return task

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def _poll(self, task: ResearchTask) -> Any:
        client = self.client
        return await asyncio.wait_for(
            client.aio.interactions.get(id=task.current_interaction_id),
            timeout=self.poll_timeout,
        )

    def _new_thoughts(self, task: ResearchTask, interaction: Any) -> list[tuple[str, StreamEvent]]:
        """Undelivered thought steps as ``(key, event)`` pairs.

        The caller records each key in ``task.observed`` as it yields that
        event, so an abandoned stream leaves the rest undelivered.
        """
        pending: list[tuple[str, StreamEvent]] = []
        thought_index = 0
        for output in getattr(interaction, "outputs", None) or []:
            if not _is_thought(output):
                continue
            key = f"{task.turn}:thought:{thought_index}"
            thought_index += 1
            if key in task.observed:
                continue
            step = thought_step(_thought_text(output) or "")
            if step is None:
                # Nothing to show for an empty summary
                task.observed.add(key)
                continue
            pending.append((key, event(EventType.THOUGHT_STEP, task_id=task.task_id, key=key, **step)))
        return pending

    def _answer_events(self, task: ResearchTask, interaction: Any) -> list[StreamEvent]:
        text = _extract_text_from_interaction(interaction) or ""
        return [
            event(EventType.TEXT_DELTA, text=chunk, task_id=task.task_id)
            for chunk in _chunks(text, TEXT_DELTA_CHUNK_CHARS)
        ]

    def _completion_event(self, task: ResearchTask, interaction: Any) -> StreamEvent | None:
        """``research-complete`` for the current turn, unless already delivered."""
        if task.turn in task.completed_turns:
            logger.info("   ℹ️ Completion for %s turn %d already signalled", task.task_id, task.turn)
            return None
        usage = _extract_usage(interaction)
        return event(
            EventType.RESEARCH_COMPLETE,
            task_id=task.task_id,
            interaction_id=task.current_interaction_id,
            turn=task.turn,
            usage=usage.to_dict() if usage else None,
            duration_seconds=round(time.time() - task.started_at, 1),
        )

    async def _follow(
        self,
        task: ResearchTask,
        token: CancelToken,
        *,
        initial_delay: float,
        announce: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        """Poll ``task`` until it ends, the wall-clock bound passes or the token fires.

        With ``announce`` off the first phase marker comes from the first poll.
        """
        deadline = task.started_at + self.max_duration
        interval = self.poll_interval
        failures = 0
        emitted_phase: ResearchPhase | None = None

        def phase_event(phase: ResearchPhase) -> StreamEvent:
            return event(EventType.AGENTIC_PHASE, phase=phase.value, task_id=task.task_id, turn=task.turn)

        # Phase markers are idempotent, so a resumed stream repeats the current one
        if announce and not task.phase.is_terminal:
            emitted_phase = task.phase
            yield phase_event(task.phase)

        if await token.sleep(initial_delay):
            return

        while True:
            if token.cancelled:
                return
            if time.time() > deadline:
                logger.warning("   ⏱️ Research %s exceeded %.0fs", task.task_id, self.max_duration)
                error = GeminiTimeoutError(
                    f"Research did not finish within {self.max_duration:.0f}s",
                    timeout_ms=int(self.max_duration * 1000),
                    details={"task_id": task.task_id},
                )
                yield event(EventType.ERROR, task_id=task.task_id, **error.to_dict())
                return

            try:
                interaction = await self._poll(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                typed = classify(e)
                failures += 1
                if not typed.retryable or failures > self.max_poll_failures:
                    logger.error("   ❌ Polling %s failed (%d): %s", task.task_id, failures, e)
                    yield event(EventType.ERROR, task_id=task.task_id, **typed.to_dict())
                    return
                logger.warning(
                    "   ⚠️ Poll %d/%d for %s failed: %s",
                    failures, self.max_poll_failures, task.task_id, e,
                )
                if await token.sleep(interval):
                    return
                continue

            if token.cancelled:
                return
            failures = 0

            status = enum_name(getattr(interaction, "status", None))
            remote_phase = STATUS_PHASES.get(status, ResearchPhase.RUNNING)
            thoughts = self._new_thoughts(task, interaction)

            if remote_phase is ResearchPhase.COMPLETE:
                self._settle(task, ResearchPhase.COMPLETE)
                for key, ev in thoughts:
                    task.observed.add(key)
                    yield ev
                yield phase_event(ResearchPhase.COMPLETE)
                for ev in self._answer_events(task, interaction):
                    yield ev
                complete = self._completion_event(task, interaction)
                if complete is not None:
                    task.completed_turns.add(task.turn)
                    yield complete
                logger.info("   ✅ Research %s complete", task.task_id)
                return

            if remote_phase is ResearchPhase.ERROR:
                self._settle(task, ResearchPhase.ERROR)
                error = classify(_error_message(interaction))
                yield phase_event(ResearchPhase.ERROR)
                yield event(EventType.ERROR, task_id=task.task_id, **error.to_dict())
                return

            if remote_phase is ResearchPhase.CANCELLED:
                self._settle(task, ResearchPhase.CANCELLED)
                yield phase_event(ResearchPhase.CANCELLED)
                return

            phase = ResearchPhase.THINKING if thoughts else remote_phase
            task.phase = phase
            changed = phase is not emitted_phase
            if changed:
                emitted_phase = phase
                yield phase_event(phase)
            for key, ev in thoughts:
                task.observed.add(key)
                yield ev

            # Back off while nothing moves; snap back as soon as something does
            if changed or thoughts:
                interval = self.poll_interval
            else:
                interval = min(interval * self.backoff_factor, self.max_poll_interval)

            if await token.sleep(interval):
                return
