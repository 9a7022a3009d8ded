"""
Tests for the AITeacher orchestrator: state machine, streaming cycle, cancellation.
"""

import json
from unittest.mock import AsyncMock

import pytest

from aiteacher.llm.fallback import FALLBACK_NOTICE
from aiteacher.llm.gateway import StreamSession, extract_chunk_content
from aiteacher.teacher.orchestrator import (
    DEFAULT_FOLLOWUPS,
    ERROR_MESSAGE,
    INTERRUPTED_MARKER,
    METADATA_PREFIX,
    AITeacher,
    TeacherState,
    TeachingRequest,
    parse_followup_questions,
)

QUESTION = "Can you explain backpropagation and gradient descent?"

HAPPY_STATES = [
    TeacherState.IDLE,
    TeacherState.EXTRACTING_CONCEPTS,
    TeacherState.BUILDING_CONTEXT,
    TeacherState.SELECTING_STRATEGY,
    TeacherState.GENERATING,
    TeacherState.PERSISTING_INTERACTION,
    TeacherState.DONE,
]


def request(message=QUESTION, **kwargs):
    return TeachingRequest(user_id="u1", session_id="s1", message=message, **kwargs)


class Collector:
    def __init__(self):
        self.chunks = []
        self.completions = 0

    def on_chunk(self, chunk):
        self.chunks.append(chunk)

    def on_complete(self):
        self.completions += 1

    @property
    def metadata(self):
        found = [c for c in self.chunks if c.startswith(METADATA_PREFIX)]
        return json.loads(found[-1][len(METADATA_PREFIX):]) if found else None


@pytest.fixture
def offline_teacher(memory_manager, offline_gateway, teacher_config):
    return AITeacher(memory_manager, offline_gateway, config=teacher_config)


@pytest.fixture
def online_teacher(memory_manager, online_gateway, teacher_config):
    return AITeacher(memory_manager, online_gateway, config=teacher_config)


def route_replies(fake_client, completion_factory, stream, followups='["What is a base case?", "When does recursion overflow?"]'):
    """Answer each kind of service prompt with a canned reply."""

    def respond(**kwargs):
        if kwargs.get("stream"):
            return stream
        prompt = kwargs["messages"][-1]["content"]
        if "Extract the key technical concepts or topics" in prompt:
            return completion_factory('["Recursion"]')
        if "Select the most appropriate teaching strategy" in prompt:
            return completion_factory('{"approach": "socratic", "adaptations": ["Ask guiding questions"]}')
        if "follow-up questions" in prompt:
            return completion_factory(followups)
        if "misconceptions" in prompt:
            return completion_factory('[{"concept": "recursion", "misconception": "recursion never terminates"}]')
        return completion_factory("Recursion is a function calling itself.")

    fake_client.chat.completions.create.side_effect = respond


@pytest.mark.asyncio
async def test_offline_interaction_runs_full_cycle(offline_teacher, memory_manager):
    response = await offline_teacher.process_interaction(request())
    await offline_teacher.tasks.drain()

    assert response.states == HAPPY_STATES
    assert response.concepts == ["backpropagation", "gradient descent"]
    assert FALLBACK_NOTICE in response.content
    assert response.followup_questions == DEFAULT_FOLLOWUPS
    assert response.interaction_id is not None

    memory = await memory_manager.get_user_memory("u1")
    assert [i.id for i in memory.interaction_history] == [response.interaction_id]
    assert memory.concept_mastery["backpropagation"].exposure_count == 1


@pytest.mark.asyncio
async def test_request_concepts_are_merged(offline_teacher):
    response = await offline_teacher.process_interaction(request(concepts=["Gradient Descent", "Chain Rule"]))

    assert response.concepts == ["backpropagation", "gradient descent", "chain rule"]


@pytest.mark.asyncio
async def test_extraction_failure_is_not_fatal(offline_teacher):
    offline_teacher.extractor.extract_concepts = AsyncMock(side_effect=RuntimeError("extractor crashed"))

    response = await offline_teacher.process_interaction(request())

    assert response.states[-1] == TeacherState.DONE
    assert response.concepts == []


@pytest.mark.asyncio
async def test_strategy_failure_uses_default(offline_teacher):
    offline_teacher.strategist.select_strategy = AsyncMock(side_effect=ValueError("bad strategy"))

    response = await offline_teacher.process_interaction(request())

    assert response.strategy.approach.value == "explanatory"
    assert response.states[-1] == TeacherState.DONE


@pytest.mark.asyncio
async def test_unexpected_failure_returns_apology(offline_teacher):
    offline_teacher.memory.get_knowledge_state = AsyncMock(side_effect=RuntimeError("boom"))

    response = await offline_teacher.process_interaction(request())

    assert response.content == ERROR_MESSAGE
    assert response.concepts == []
    assert response.followup_questions == []
    assert response.states[-1] == TeacherState.ERROR


@pytest.mark.asyncio
async def test_online_interaction_records_misconceptions(online_teacher, fake_client, completion_factory, memory_manager):
    route_replies(fake_client, completion_factory, stream=None)

    response = await online_teacher.process_interaction(request("How does recursion work?"))
    await online_teacher.tasks.drain()

    assert response.content == "Recursion is a function calling itself."
    assert response.concepts == ["recursion"]
    assert response.strategy.approach.value == "socratic"
    assert response.followup_questions == ["What is a base case?", "When does recursion overflow?"]

    memory = await memory_manager.get_user_memory("u1")
    assert memory.concept_mastery["recursion"].misconceptions == ["recursion never terminates"]
    assert memory.knowledge_graph.misconceptions_of("recursion") == ["recursion never terminates"]


@pytest.mark.asyncio
async def test_stream_relays_chunks_then_metadata(online_teacher, fake_client, completion_factory, fake_stream_cls, memory_manager):
    stream = fake_stream_cls(["Recursion ", "is a function ", "calling itself."])
    route_replies(fake_client, completion_factory, stream)
    collector = Collector()

    await online_teacher.process_interaction_stream(request("How does recursion work?"), collector.on_chunk, collector.on_complete)
    await online_teacher.tasks.drain()

    assert len(collector.chunks) == 4
    assert "".join(extract_chunk_content(c) for c in collector.chunks[:3]) == "Recursion is a function calling itself."
    assert collector.chunks[-1].startswith(METADATA_PREFIX)
    assert collector.metadata == {
        "concepts": ["recursion"],
        "followupQuestions": ["What is a base case?", "When does recursion overflow?"],
    }
    assert collector.completions == 1

    memory = await memory_manager.get_user_memory("u1")
    assert memory.interaction_history[0].answer == "Recursion is a function calling itself."
    assert memory.interaction_history[0].truncated is False


@pytest.mark.asyncio
async def test_cancelled_stream_persists_truncated_answer(online_teacher, fake_client, completion_factory, fake_stream_cls, memory_manager):
    stream = fake_stream_cls(["one ", "two ", "three ", "four"])
    route_replies(fake_client, completion_factory, stream)
    collector = Collector()
    session = StreamSession()

    def on_chunk(chunk):
        collector.on_chunk(chunk)
        if len(collector.chunks) == 2:
            session.cancel()

    cycle = await online_teacher.process_interaction_stream(
        request("How does recursion work?"), on_chunk, collector.on_complete, session=session,
    )
    await online_teacher.tasks.drain()

    assert len(collector.chunks) == 2
    assert collector.metadata is None
    assert collector.completions == 1
    assert stream.closed is True
    assert cycle.states[-1] == TeacherState.DONE

    stored = (await memory_manager.get_user_memory("u1")).interaction_history[0]
    assert stored.truncated is True
    assert stored.answer == f"one two \n\n{INTERRUPTED_MARKER}"


@pytest.mark.asyncio
async def test_offline_stream_relays_fallback_in_groups(offline_teacher):
    collector = Collector()

    await offline_teacher.process_interaction_stream(request(), collector.on_chunk, collector.on_complete)

    content_chunks = collector.chunks[:-1]
    assert len(content_chunks) > 1
    text = "".join(extract_chunk_content(c) for c in content_chunks)
    assert text.startswith("I understand you're asking about backpropagation.")
    assert text.endswith(FALLBACK_NOTICE)
    assert collector.metadata["concepts"] == ["backpropagation", "gradient descent"]
    assert collector.metadata["followupQuestions"] == DEFAULT_FOLLOWUPS
    assert collector.completions == 1


@pytest.mark.asyncio
async def test_stream_failure_sends_error_and_empty_metadata(offline_teacher):
    offline_teacher.memory.get_user_memory = AsyncMock(side_effect=RuntimeError("boom"))
    collector = Collector()

    cycle = await offline_teacher.process_interaction_stream(request(), collector.on_chunk, collector.on_complete)

    assert extract_chunk_content(collector.chunks[0]) == ERROR_MESSAGE
    assert collector.metadata == {"concepts": [], "followupQuestions": []}
    assert collector.completions == 1
    assert cycle.states[-1] == TeacherState.ERROR


@pytest.mark.asyncio
async def test_stream_interaction_iterator(offline_teacher):
    chunks = [chunk async for chunk in offline_teacher.stream_interaction(request())]
    await offline_teacher.tasks.drain()

    assert chunks[-1].startswith(METADATA_PREFIX)
    assert FALLBACK_NOTICE in "".join(extract_chunk_content(c) for c in chunks[:-1])


@pytest.mark.asyncio
async def test_closing_iterator_early_cancels_and_persists(offline_teacher, memory_manager):
    stream = offline_teacher.stream_interaction(request())
    first = await stream.__anext__()
    await stream.aclose()
    await offline_teacher.tasks.drain()

    assert extract_chunk_content(first)
    stored = (await memory_manager.get_user_memory("u1")).interaction_history
    assert len(stored) == 1
    assert stored[0].truncated is True
    assert stored[0].answer.endswith(INTERRUPTED_MARKER)


@pytest.mark.asyncio
async def test_record_feedback_and_analytics(offline_teacher):
    response = await offline_teacher.process_interaction(request())
    await offline_teacher.tasks.drain()

    interaction = await offline_teacher.record_feedback("u1", response.interaction_id, 4, "clear")
    analytics = await offline_teacher.get_learning_analytics("u1")

    assert interaction.effectiveness == pytest.approx(0.8)
    assert analytics.total_interactions == 1


@pytest.mark.asyncio
async def test_analyze_understanding_offline(offline_teacher):
    analysis = await offline_teacher.analyze_understanding("u1", "I don't understand gradient descent at all")

    assert analysis.is_understanding is False
    assert analysis.confused_concepts == ["gradient descent"]


@pytest.mark.asyncio
async def test_analyze_understanding_failure_defaults(offline_teacher):
    offline_teacher.gateway.analyze_understanding = AsyncMock(side_effect=RuntimeError("boom"))

    analysis = await offline_teacher.analyze_understanding("u1", "hmm", ["loops"])

    assert analysis.is_understanding is True
    assert analysis.confidence_score == 0.5


@pytest.mark.asyncio
async def test_explicit_learning_style_reaches_strategy(offline_teacher):
    await offline_teacher.update_learning_style("u1", visual_learner=True)

    response = await offline_teacher.process_interaction(request())

    assert response.strategy.approach.value == "visualization"


def test_parse_followups_from_json_array():
    text = 'Sure: ["What is a gradient?", "Why do we need a learning rate?"]'
    assert parse_followup_questions(text) == ["What is a gradient?", "Why do we need a learning rate?"]


def test_parse_followups_from_numbered_lines():
    text = "Questions:\n1. What happens without a base case?\n2) How deep can the call stack go?\nDone."
    assert parse_followup_questions(text) == [
        "What happens without a base case?",
        "How deep can the call stack go?",
    ]


def test_parse_followups_limit_and_defaults():
    many = "\n".join(f"{i}. Is question number {i} useful here?" for i in range(1, 9))
    assert len(parse_followup_questions(many, limit=5)) == 5
    assert parse_followup_questions("No questions in this text.") == DEFAULT_FOLLOWUPS
    assert parse_followup_questions("") == DEFAULT_FOLLOWUPS
