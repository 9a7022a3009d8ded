"""
Tests for ConceptExtractor: service replies, tiered parsing, keyword fallback.
"""

import httpx
import openai
import pytest

from aiteacher.concepts.extractor import ConceptExtractor, guess_category
from aiteacher.memory.models import LearningInteraction
from aiteacher.shared.config import ConceptConfig


@pytest.fixture
def offline_extractor(offline_gateway):
    return ConceptExtractor(offline_gateway, ConceptConfig())


@pytest.fixture
def online_extractor(online_gateway):
    return ConceptExtractor(online_gateway, ConceptConfig(max_concepts=3))


@pytest.mark.asyncio
async def test_keyword_fallback_when_unconfigured(offline_extractor):
    concepts = await offline_extractor.extract_concepts("Can you explain backpropagation and gradient descent?")

    assert concepts == ["backpropagation", "gradient descent"]


@pytest.mark.asyncio
async def test_short_keywords_match_whole_words_only(offline_extractor):
    assert "ai" not in await offline_extractor.extract_concepts("Please explain this again")
    assert "ai" in await offline_extractor.extract_concepts("How does AI change testing?")


@pytest.mark.asyncio
async def test_blank_text_has_no_concepts(offline_extractor):
    assert await offline_extractor.extract_concepts("   ") == []


@pytest.mark.asyncio
async def test_json_array_reply(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory('["Recursion", "Call Stack", "recursion"]')

    assert await online_extractor.extract_concepts("How does recursion use the stack?") == ["recursion", "call stack"]


@pytest.mark.asyncio
async def test_concepts_object_reply(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory('{"concepts": ["Hash Map"]}')

    assert await online_extractor.extract_concepts("What is a hash map?") == ["hash map"]


@pytest.mark.asyncio
async def test_quoted_strings_from_malformed_reply(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory(
        'The concepts are "Closures" and "Lexical Scope".'
    )

    assert await online_extractor.extract_concepts("Explain closures") == ["closures", "lexical scope"]


@pytest.mark.asyncio
async def test_unusable_reply_falls_back_to_keywords(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory("I am not sure.")

    assert await online_extractor.extract_concepts("Teach me python please") == ["python"]


@pytest.mark.asyncio
async def test_result_is_capped(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory('["a1", "b2", "c3", "d4", "e5"]')

    assert await online_extractor.extract_concepts("many things") == ["a1", "b2", "c3"]


@pytest.mark.asyncio
async def test_structured_concepts_clamp_importance(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory(
        '[{"concept": "SQL Joins", "category": "Databases", "importance": 9},'
        ' {"concept": "Indexes", "importance": 0}, {"bad": true}]'
    )

    assert await online_extractor.extract_structured_concepts("joins and indexes") == [
        {"concept": "sql joins", "category": "databases", "importance": 5},
        {"concept": "indexes", "category": "databases", "importance": 1},
    ]


@pytest.mark.asyncio
async def test_structured_concepts_offline(offline_extractor):
    result = await offline_extractor.extract_structured_concepts("Teach me about React")
    assert result == [{"concept": "react", "category": "web_development", "importance": 3}]


@pytest.mark.asyncio
async def test_identify_misconceptions(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory(
        '[{"concept": "Recursion", "misconception": "Recursion never ends",'
        ' "correction": "A base case ends it", "confidenceLevel": 0.9}]'
    )

    found = await online_extractor.identify_misconceptions("recursion never ends right?", ["recursion"])

    assert found == [{
        "concept": "recursion",
        "misconception": "Recursion never ends",
        "correction": "A base case ends it",
        "confidence": 0.9,
    }]


@pytest.mark.asyncio
async def test_misconceptions_empty_when_unconfigured_or_malformed(offline_extractor, online_extractor, fake_client, completion_factory):
    assert await offline_extractor.identify_misconceptions("anything", ["x"]) == []

    fake_client.chat.completions.create.return_value = completion_factory('{"not": "a list"}')
    assert await online_extractor.identify_misconceptions("anything", ["x"]) == []


@pytest.mark.asyncio
async def test_relevance_defaults_to_uniform(offline_extractor, online_extractor, fake_client, completion_factory):
    assert await offline_extractor.analyze_concept_relevance(["a", "b"], "ctx") == {"a": 0.5, "b": 0.5}

    fake_client.chat.completions.create.return_value = completion_factory('{"A": 1.5}')
    assert await online_extractor.analyze_concept_relevance(["a", "b"], "ctx") == {"a": 1.0, "b": 0.5}


@pytest.mark.asyncio
async def test_hierarchy_flat_fallback(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory("not json")

    result = await online_extractor.organize_concept_hierarchy(["machine learning", "regression", "clustering"])

    assert result == {"root": "machine learning", "hierarchy": {"machine learning": ["regression", "clustering"]}}


@pytest.mark.asyncio
async def test_hierarchy_from_service(online_extractor, fake_client, completion_factory):
    fake_client.chat.completions.create.return_value = completion_factory(
        '{"root": "Machine Learning", "hierarchy": {"Machine Learning": ["Regression"]}}'
    )

    result = await online_extractor.organize_concept_hierarchy(["machine learning", "regression"])

    assert result == {"root": "machine learning", "hierarchy": {"machine learning": ["regression"]}}


@pytest.mark.asyncio
async def test_related_concepts_prefer_known_relations(online_extractor, fake_client, completion_factory):
    assert await online_extractor.get_related_concepts("Backpropagation") == [
        "gradient descent", "neural networks", "loss function",
    ]
    fake_client.chat.completions.create.assert_not_called()

    fake_client.chat.completions.create.return_value = completion_factory('["Linear Algebra"]')
    assert await online_extractor.get_related_concepts("eigenvectors") == ["linear algebra"]


@pytest.mark.asyncio
async def test_map_query_to_concepts(offline_extractor):
    mapping = await offline_extractor.map_query_to_concepts("How does gradient descent work?")
    assert mapping == {"gradient descent": ["optimization", "loss function", "learning rate"]}


def test_guess_category():
    assert guess_category("docker compose") == "cloud_computing"
    assert guess_category("quantum entanglement") == "programming_fundamentals"


@pytest.mark.asyncio
async def test_struggle_areas_from_recent_questions(online_extractor, offline_extractor, fake_client, completion_factory):
    interactions = [
        LearningInteraction(user_id="u1", session_id="s1", question=q, answer="...")
        for q in ("Why does my recursion never stop?", "What is a base case again?")
    ]
    fake_client.chat.completions.create.return_value = completion_factory('["Recursion", "base case"]')

    assert await online_extractor.identify_struggle_areas(interactions) == ["recursion", "base case"]
    assert await online_extractor.identify_struggle_areas([]) == []
    assert await offline_extractor.identify_struggle_areas(interactions) == []


@pytest.mark.asyncio
async def test_keyword_fallback_when_service_unreachable(online_extractor, online_gateway, fake_client):
    request = httpx.Request("POST", "https://api.deepseek.com/v1/chat/completions")
    fake_client.chat.completions.create.side_effect = openai.APIConnectionError(request=request)

    concepts = await online_extractor.extract_concepts("Can you explain backpropagation and gradient descent?")

    assert concepts == ["backpropagation", "gradient descent"]
    fake_client.chat.completions.create.assert_awaited_once()
    assert online_gateway.is_configured()
