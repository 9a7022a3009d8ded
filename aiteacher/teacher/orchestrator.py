"""
AITeacher: orchestrates one teaching cycle.

extract concepts -> build context -> select strategy -> generate -> persist

Every public coroutine answers with content; failures inside the cycle are
logged and turned into the apologetic fallback message.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from aiteacher.concepts.extractor import ConceptExtractor
from aiteacher.llm.fallback import generate_fallback_response
from aiteacher.llm.gateway import LanguageModelGateway, StreamSession
from aiteacher.memory.manager import UserMemoryManager, normalize_concept
from aiteacher.memory.models import (
    ChatMessage,
    Feedback,
    LearningAnalytics,
    LearningInteraction,
    LearningStyle,
    TeachingContext,
    TeachingStrategy,
    UnderstandingAnalysis,
)
from aiteacher.shared.config import TeacherConfig, settings
from aiteacher.shared.exceptions import MemoryStoreError
from aiteacher.shared.logging import get_logger, log_with_context
from aiteacher.shared.parsing import parse_json_response, require_list, resolve
from aiteacher.strategy.strategist import TeachingStrategist, default_strategy
from aiteacher.teacher.prompt import TeachingPromptBuilder
from aiteacher.teacher.tasks import BackgroundTaskQueue

logger = get_logger(__name__)

ERROR_MESSAGE = (
    "I apologize, but I encountered an issue while processing your request. "
    "Could you please try again or rephrase your question?"
)

INTERRUPTED_MARKER = "[Response interrupted]"
METADATA_PREFIX = "METADATA:"

DEFAULT_FOLLOWUPS = [
    "How would you apply this concept in a real-world scenario?",
    "What aspect of this explanation was most helpful to you?",
    "What questions do you still have about this topic?",
]

FOLLOWUP_PROMPT = """Based on this teaching response, suggest {count} follow-up questions the learner could ask next to deepen their understanding.

Response:
{answer}

Respond with only a JSON array of question strings."""

HISTORY_WINDOW = 20

_JSON_ARRAY = re.compile(r"\[[\s\S]*?\]")
_QUESTION_PATTERNS = [
    re.compile(r"^\s*\d+[.)]\s*(.+\?)\s*$", re.MULTILINE),
    re.compile(r'"([^"\n]+\?)"'),
    re.compile(r"([A-Z][^.!?\n]*\?)"),
]


class TeacherState(str, Enum):
    IDLE = "idle"
    EXTRACTING_CONCEPTS = "extracting_concepts"
    BUILDING_CONTEXT = "building_context"
    SELECTING_STRATEGY = "selecting_strategy"
    GENERATING = "generating"
    PERSISTING_INTERACTION = "persisting_interaction"
    DONE = "done"
    ERROR = "error"


@dataclass
class TeachingCycle:
    """Per-request state machine record."""
    user_id: str
    session_id: str
    streaming: bool = False
    state: TeacherState = TeacherState.IDLE
    states: List[TeacherState] = field(default_factory=lambda: [TeacherState.IDLE])

    def advance(self, state: TeacherState, **details):
        previous = self.state
        self.state = state
        self.states.append(state)
        log_with_context(
            logger, logging.ERROR if state == TeacherState.ERROR else logging.DEBUG,
            f"{previous.value} -> {state.value}",
            user_id=self.user_id, session_id=self.session_id,
            action="state_transition", streaming=self.streaming, **details,
        )


class TeachingRequest(BaseModel):
    """One learner turn as received from the chat surface."""
    user_id: str
    session_id: str
    message: str
    previous_messages: List[ChatMessage] = Field(default_factory=list)
    concepts: List[str] = Field(default_factory=list)
    objectives: List[str] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)


class TeachingResponse(BaseModel):
    content: str
    concepts: List[str] = Field(default_factory=list)
    followup_questions: List[str] = Field(default_factory=list)
    strategy: Optional[TeachingStrategy] = None
    interaction_id: Optional[str] = None
    message_type: str = "text"
    states: List[TeacherState] = Field(default_factory=list)


@dataclass
class _Prepared:
    context: TeachingContext
    strategy: TeachingStrategy
    messages: List[Dict[str, str]]


def parse_followup_questions(text: str, limit: int = 5) -> List[str]:
    """
    Pull follow-up questions out of model output.

    JSON array first, then numbered/quoted/sentence question patterns,
    then the default questions.
    """
    if not text:
        return list(DEFAULT_FOLLOWUPS)

    def build(payload) -> List[str]:
        questions = [str(q).strip() for q in require_list(payload) if str(q).strip()]
        if not questions:
            raise ValueError("no questions in array")
        return questions[:limit]

    array = _JSON_ARRAY.search(text)
    if array:
        parsed = resolve(parse_json_response(array.group(0)), build, lambda _: None)
        if parsed:
            return parsed

    for pattern in _QUESTION_PATTERNS:
        found = [m.strip() for m in pattern.findall(text) if 10 <= len(m.strip()) <= 150]
        if found:
            return list(dict.fromkeys(found))[:limit]

    return list(DEFAULT_FOLLOWUPS)


def metadata_chunk(concepts: List[str], followups: List[str]) -> str:
    return METADATA_PREFIX + json.dumps({"concepts": concepts, "followupQuestions": followups})


def _word_groups(text: str, size: int) -> List[str]:
    words = text.split(" ")
    return [
        " ".join(words[i:i + size]) + (" " if i + size < len(words) else "")
        for i in range(0, len(words), size)
    ]


class AITeacher:
    """Teaching orchestrator wired from the extractor, strategist, memory and gateway."""

    def __init__(
        self,
        memory: UserMemoryManager,
        gateway: LanguageModelGateway,
        extractor: Optional[ConceptExtractor] = None,
        strategist: Optional[TeachingStrategist] = None,
        prompt_builder: Optional[TeachingPromptBuilder] = None,
        tasks: Optional[BackgroundTaskQueue] = None,
        config: Optional[TeacherConfig] = None,
    ):
        self.memory = memory
        self.gateway = gateway
        self.extractor = extractor or ConceptExtractor(gateway)
        self.strategist = strategist or TeachingStrategist(gateway)
        self.config = config or settings.teacher
        self.prompt_builder = prompt_builder or TeachingPromptBuilder(self.config)
        self.tasks = tasks or BackgroundTaskQueue()

    # ------------------------------------------------------------------
    # Cycle stages
    # ------------------------------------------------------------------

    async def _prepare(self, cycle: TeachingCycle, request: TeachingRequest) -> _Prepared:
        cycle.advance(TeacherState.EXTRACTING_CONCEPTS)
        try:
            extracted = await self.extractor.extract_concepts(request.message)
        except Exception as e:
            log_with_context(
                logger, logging.WARNING, f"Concept extraction failed: {e}",
                user_id=request.user_id, action="concept_extraction_failed",
            )
            extracted = []

        cycle.advance(TeacherState.BUILDING_CONTEXT)
        concepts = list(dict.fromkeys(
            normalize_concept(c) for c in [*extracted, *request.concepts] if c and c.strip()
        ))
        memory = await self.memory.get_user_memory(request.user_id)
        knowledge_state = await self.memory.get_knowledge_state(request.user_id, memory=memory)
        context = TeachingContext(
            user_id=request.user_id,
            session_id=request.session_id,
            message=request.message,
            previous_messages=request.previous_messages,
            concepts=concepts,
            learning_style=memory.learning_style if memory.learning_style_set else None,
            knowledge_state=knowledge_state,
            previous_interactions=memory.interaction_history[-HISTORY_WINDOW:],
            objectives=request.objectives,
            extra=request.extra,
        )

        cycle.advance(TeacherState.SELECTING_STRATEGY)
        try:
            strategy = await self.strategist.select_strategy(context)
        except Exception as e:
            log_with_context(
                logger, logging.WARNING, f"Strategy selection failed: {e}",
                user_id=request.user_id, action="strategy_selection_failed",
            )
            strategy = default_strategy()

        return _Prepared(context, strategy, self.prompt_builder.build(context, strategy))

    async def generate_followup_questions(self, answer: str) -> List[str]:
        limit = self.config.max_followups
        if not self.gateway.is_configured():
            return parse_followup_questions(answer, limit)
        reply = await self.gateway.generate_response(
            FOLLOWUP_PROMPT.format(count=3, answer=answer[:3000]),
            temperature=0.5,
        )
        return parse_followup_questions(reply, limit)

    async def _persist(
        self,
        cycle: TeachingCycle,
        prepared: _Prepared,
        answer: str,
        truncated: bool = False,
    ) -> Optional[str]:
        cycle.advance(TeacherState.PERSISTING_INTERACTION, truncated=truncated)
        context = prepared.context
        interaction = LearningInteraction(
            user_id=context.user_id,
            session_id=context.session_id,
            question=context.message,
            answer=answer,
            concepts=context.concepts,
            strategy=prepared.strategy,
            truncated=truncated,
        )
        try:
            interaction_id = await self.memory.record_interaction(interaction)
        except MemoryStoreError as e:
            log_with_context(
                logger, logging.ERROR, f"Failed to persist interaction: {e}",
                user_id=context.user_id, session_id=context.session_id,
                action="interaction_persist_failed",
            )
            return None

        if context.concepts:
            self.tasks.submit(
                self._update_mastery(context.user_id, context.message, context.concepts),
                name="mastery_update",
                user_id=context.user_id,
                interaction_id=interaction_id,
            )
        return interaction_id

    async def _update_mastery(self, user_id: str, message: str, concepts: List[str]):
        """Attach identified misconceptions to each concept."""
        found = await self.extractor.identify_misconceptions(message, concepts)
        by_concept: Dict[str, List[str]] = {c: [] for c in concepts}
        for item in found:
            concept = normalize_concept(str(item.get("concept", "")))
            if concept in by_concept and item.get("misconception"):
                by_concept[concept].append(str(item["misconception"]))

        await asyncio.gather(*[
            self.memory.update_concept_mastery(user_id, concept, None, misconceptions)
            for concept, misconceptions in by_concept.items()
        ])

    # ------------------------------------------------------------------
    # Public cycles
    # ------------------------------------------------------------------

    async def process_interaction(self, request: TeachingRequest) -> TeachingResponse:
        """Single-shot teaching cycle."""
        cycle = TeachingCycle(request.user_id, request.session_id)
        try:
            prepared = await self._prepare(cycle, request)

            cycle.advance(TeacherState.GENERATING, mode="single-shot")
            content = await self.gateway.generate_response(prepared.messages)
            followups = await self.generate_followup_questions(content)

            interaction_id = await self._persist(cycle, prepared, content)
            cycle.advance(TeacherState.DONE)
            return TeachingResponse(
                content=content,
                concepts=prepared.context.concepts,
                followup_questions=followups,
                strategy=prepared.strategy,
                interaction_id=interaction_id,
                states=cycle.states,
            )
        except Exception as e:
            cycle.advance(TeacherState.ERROR, error=str(e), error_type=type(e).__name__)
            return TeachingResponse(content=ERROR_MESSAGE, states=cycle.states)

    async def process_interaction_stream(
        self,
        request: TeachingRequest,
        on_chunk: Callable[[str], None],
        on_complete: Callable[[], None],
        session: Optional[StreamSession] = None,
    ) -> TeachingCycle:
        """
        Streaming teaching cycle.

        Chunks are relayed unmodified as they arrive, followed by one METADATA
        chunk. `on_complete` is called exactly once. A cancelled session
        stops delivery and still persists the partial answer.
        """
        session = session or StreamSession()
        cycle = TeachingCycle(request.user_id, request.session_id, streaming=True)

        def relay(chunk: str):
            if session.cancelled:
                return
            session.accumulate(chunk)
            on_chunk(chunk)

        try:
            prepared = await self._prepare(cycle, request)

            cycle.advance(TeacherState.GENERATING, mode="streaming", stream_id=session.id)
            if self.gateway.is_configured():
                await self.gateway.generate_streaming_response(
                    prepared.messages, relay, lambda: None, session=session,
                )
            else:
                await self._relay_fallback(prepared.messages, relay, session)

            if session.cancelled:
                content = f"{session.content}\n\n{INTERRUPTED_MARKER}"
                await self._persist(cycle, prepared, content, truncated=True)
                cycle.advance(TeacherState.DONE, cancelled=True)
                return cycle

            content = session.content
            followups = await self.generate_followup_questions(content)
            if not session.cancelled:
                on_chunk(metadata_chunk(prepared.context.concepts, followups))
            await self._persist(cycle, prepared, content)
            cycle.advance(TeacherState.DONE)
        except asyncio.CancelledError:
            session.cancel()
            cycle.advance(TeacherState.ERROR, error="cancelled")
            raise
        except Exception as e:
            cycle.advance(TeacherState.ERROR, error=str(e), error_type=type(e).__name__)
            if not session.cancelled:
                for chunk in (json.dumps({"content": ERROR_MESSAGE}), metadata_chunk([], [])):
                    try:
                        on_chunk(chunk)
                    except Exception as delivery_error:
                        logger.error("Failed to deliver error chunk: %s", delivery_error)
        finally:
            await session.release()
            on_complete()
        return cycle

    async def _relay_fallback(self, messages: List[Dict[str, str]], relay: Callable[[str], None], session: StreamSession):
        """Deliver the fallback answer as completion-delta chunks."""
        answer = generate_fallback_response(messages)
        for group in _word_groups(answer, self.config.fallback_chunk_words):
            if session.cancelled:
                break
            relay(json.dumps({"choices": [{"index": 0, "delta": {"content": group}}]}))
            await asyncio.sleep(0)

    async def stream_interaction(self, request: TeachingRequest) -> AsyncIterator[str]:
        """
        Async-iterator view of `process_interaction_stream` for HTTP streaming.

        Closing the iterator early (client disconnect) cancels the session.
        """
        queue: asyncio.Queue = asyncio.Queue()
        done = object()
        session = StreamSession()

        task = asyncio.create_task(
            self.process_interaction_stream(
                request, queue.put_nowait, lambda: queue.put_nowait(done), session=session,
            ),
            name=f"stream-{session.id}",
        )
        self.tasks.track(task)
        try:
            while True:
                chunk = await queue.get()
                if chunk is done:
                    break
                yield chunk
        finally:
            if not task.done():
                await session.aclose()

    # ------------------------------------------------------------------
    # Delegations
    # ------------------------------------------------------------------

    async def record_feedback(
        self,
        user_id: str,
        interaction_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> LearningInteraction:
        """Raises InteractionNotFoundError for an unknown interaction."""
        feedback = Feedback(interaction_id=interaction_id, user_id=user_id, rating=rating, comment=comment)
        return await self.memory.record_effectiveness_feedback(feedback)

    async def analyze_understanding(
        self,
        user_id: str,
        message: str,
        concepts: Optional[List[str]] = None,
    ) -> UnderstandingAnalysis:
        try:
            if not concepts:
                concepts = await self.extractor.extract_concepts(message)
            return await self.gateway.analyze_understanding(message, concepts)
        except Exception as e:
            log_with_context(
                logger, logging.WARNING, f"Understanding analysis failed: {e}",
                user_id=user_id, action="understanding_analysis_failed",
            )
            return UnderstandingAnalysis(is_understanding=True, confidence_score=0.5)

    async def update_learning_style(self, user_id: str, **changes) -> LearningStyle:
        return await self.memory.update_learning_style(user_id, **changes)

    async def get_learning_analytics(self, user_id: str) -> LearningAnalytics:
        return await self.memory.get_learning_analytics(user_id)

    def get_teaching_strategies(self) -> List[Dict[str, Any]]:
        return self.strategist.get_all_strategies()
