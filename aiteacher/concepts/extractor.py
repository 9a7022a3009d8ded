"""
Concept extraction from free text.

Every operation asks the generation service for JSON and falls back to a
conservative local answer when the reply cannot be used. Nothing here raises.
"""

import re
from typing import Any, Dict, List, Optional

from aiteacher.llm.gateway import LanguageModelGateway
from aiteacher.memory.models import LearningInteraction
from aiteacher.shared.config import ConceptConfig, settings
from aiteacher.shared.logging import get_logger
from aiteacher.shared.parsing import (
    Malformed,
    ParseResult,
    clamp,
    parse_json_response,
    require_dict,
    require_list,
    resolve,
)
from aiteacher.shared.tokens import fits_budget, truncate_to_tokens

logger = get_logger(__name__)

# Case-insensitive substring dictionary for the local path
FALLBACK_KEYWORDS = [
    "neural network", "deep learning", "machine learning", "artificial intelligence",
    "natural language processing", "computer vision", "reinforcement learning",
    "supervised learning", "unsupervised learning", "backpropagation", "gradient descent",
    "loss function", "learning rate", "optimization", "dataset", "training", "model",
    "algorithm", "python", "tensorflow", "pytorch", "keras", "javascript", "react",
    "node.js", "express", "database", "api", "programming", "coding", "function",
    "variable", "class", "object", "framework", "library", "frontend", "backend",
    "fullstack", "development", "software", "application", "web", "mobile", "nlp", "ai",
]

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "programming_fundamentals": ["variable", "function", "loop", "conditional", "algorithm", "data type", "class", "object"],
    "web_development": ["html", "css", "javascript", "dom", "http", "react", "angular", "vue", "frontend", "backend"],
    "data_science": ["data", "statistics", "visualization", "pandas", "numpy", "tableau", "analysis"],
    "machine_learning": ["neural", "ai", "deep learning", "model", "training", "reinforcement", "supervised",
                         "unsupervised", "backpropagation", "gradient"],
    "software_engineering": ["architecture", "design pattern", "testing", "agile", "scrum", "version control", "git"],
    "computer_science": ["data structure", "complexity", "compiler", "operating system", "memory", "theory"],
    "cloud_computing": ["aws", "azure", "gcp", "cloud", "serverless", "container", "docker", "kubernetes"],
    "databases": ["sql", "nosql", "query", "index", "schema", "mongodb", "postgres", "mysql", "database"],
    "dev_ops": ["ci/cd", "deployment", "pipeline", "jenkins", "ansible", "terraform", "infrastructure"],
    "mobile_development": ["android", "ios", "swift", "kotlin", "flutter", "react native", "mobile"],
    "security": ["authentication", "authorization", "encryption", "security", "vulnerability", "hashing"],
}

RELATED_CONCEPTS: Dict[str, List[str]] = {
    "neural networks": ["deep learning", "artificial intelligence", "supervised learning"],
    "neural network": ["deep learning", "artificial intelligence", "supervised learning"],
    "backpropagation": ["gradient descent", "neural networks", "loss function"],
    "gradient descent": ["optimization", "loss function", "learning rate"],
    "computer vision": ["convolutional neural networks", "object detection", "image classification"],
    "natural language processing": ["transformers", "word embeddings", "attention mechanism"],
}

EXTRACTION_PROMPT = """Extract the key technical concepts or topics from the following message.
Return ONLY a JSON array of strings, with each string being a concept.
Focus on AI, programming, and tech education concepts. Normalize concept names to their standard form.

User message:
{message}

Format your response exactly like this: ["concept1", "concept2", "concept3"]"""

STRUCTURED_PROMPT = """Extract the key technical concepts from the following message with their categories and importance.

User message:
{message}

For each concept give its standard form, a category (e.g. programming_fundamentals,
web_development, machine_learning) and an importance from 1 to 5.

Respond with a JSON array: [{{"concept": "string", "category": "string", "importance": 3}}]"""

MISCONCEPTION_PROMPT = """Analyze the following user message for misconceptions about these concepts: {concepts}

User message:
{message}

For each misconception give the concept, the misconception, the correct understanding and
how certain you are (0-1).

Respond with a JSON array:
[{{"concept": "string", "misconception": "string", "correction": "string", "confidenceLevel": 0.0}}]
If there are no clear misconceptions, return []"""

STRUGGLE_PROMPT = """Based on these recent learner questions, list the concepts the learner is struggling with.

{questions}

Return ONLY a JSON array of strings: ["concept1", "concept2"]"""

RELEVANCE_PROMPT = """Rate the relevance (0 to 1) of each concept to this message.

Message: {message}
Concepts: {concepts}

Return a JSON object mapping each concept to its score: {{"concept1": 0.8, "concept2": 0.3}}"""

HIERARCHY_PROMPT = """Organize these concepts into a hierarchy: {concepts}

Return a JSON object with "root" (the most foundational concept) and "hierarchy"
(an object mapping each concept to its direct child concepts)."""

PREREQUISITE_PROMPT = """List the concepts someone should understand before learning about: {concept}
Order them from most basic to most advanced.

Return ONLY a JSON array of strings: ["prerequisite1", "prerequisite2"]"""

_QUOTED = re.compile(r'"([^"\n]{1,80})"')


def _normalize(values) -> List[str]:
    """Lowercase, trimmed, de-duplicated strings in first-seen order."""
    seen: Dict[str, None] = {}
    for value in values:
        if isinstance(value, str) and value.strip():
            seen.setdefault(value.strip().lower(), None)
    return list(seen)


def guess_category(concept: str) -> str:
    lowered = concept.lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return "programming_fundamentals"


class ConceptExtractor:
    """Derives normalized topic labels from learner text."""

    def __init__(self, gateway: LanguageModelGateway, config: Optional[ConceptConfig] = None):
        self.gateway = gateway
        self.config = config or settings.concepts

    def _cap(self, text: str) -> str:
        if fits_budget(text, self.config.max_input_tokens):
            return text
        return truncate_to_tokens(text, self.config.max_input_tokens, suffix="")

    async def _ask(self, prompt: str) -> Optional[ParseResult]:
        """Query the service, or None when it is not configured."""
        if not self.gateway.is_configured():
            return None
        try:
            reply = await self.gateway.generate_response(prompt, temperature=0.2)
        except Exception as e:
            logger.warning("Concept service call failed: %s", e)
            return Malformed(raw_text="", error=str(e))
        return parse_json_response(reply)

    def keyword_concepts(self, text: str) -> List[str]:
        """Dictionary scan; terms of three letters or fewer must match whole words."""
        lowered = text.lower()
        matches = []
        for keyword in FALLBACK_KEYWORDS:
            if len(keyword) <= 3:
                if re.search(rf"\b{re.escape(keyword)}\b", lowered):
                    matches.append(keyword)
            elif keyword in lowered:
                matches.append(keyword)
        return _normalize(matches)

    async def extract_concepts(self, text: str) -> List[str]:
        """
        Extract lowercase, de-duplicated concepts from text.

        Order of attempts: JSON array from the service, quoted strings in the
        service's reply, then the keyword dictionary.
        """
        if not text or not text.strip():
            return []
        text = self._cap(text)

        result = await self._ask(EXTRACTION_PROMPT.format(message=text))
        if result is None:
            return self.keyword_concepts(text)

        def fallback(failed: ParseResult) -> List[str]:
            if isinstance(failed, Malformed):
                quoted = _normalize(_QUOTED.findall(failed.raw_text))
                if quoted:
                    return quoted[:self.config.max_concepts]
            logger.info("Concept reply unusable, using keyword dictionary")
            return self.keyword_concepts(text)

        def build(payload) -> List[str]:
            if isinstance(payload, dict) and "concepts" in payload:
                payload = payload["concepts"]
            return _normalize(require_list(payload))

        concepts = resolve(result, build, fallback)
        return concepts[:self.config.max_concepts]

    async def extract_structured_concepts(self, text: str) -> List[Dict[str, Any]]:
        """Concepts with category and importance (1-5)."""
        text = self._cap(text or "")

        def fallback(_) -> List[Dict[str, Any]]:
            return [
                {"concept": c, "category": guess_category(c), "importance": 3}
                for c in self.keyword_concepts(text)
            ]

        result = await self._ask(STRUCTURED_PROMPT.format(message=text))
        if result is None:
            return fallback(None)

        def build(payload) -> List[Dict[str, Any]]:
            items = []
            for item in require_list(payload):
                if not isinstance(item, dict) or not isinstance(item.get("concept"), str):
                    continue
                concept = item["concept"].strip().lower()
                category = item.get("category")
                importance = item.get("importance", 3)
                items.append({
                    "concept": concept,
                    "category": category.strip().lower() if isinstance(category, str) else guess_category(concept),
                    "importance": int(max(1, min(5, round(float(importance))))),
                })
            return items

        return resolve(result, build, fallback)

    async def identify_misconceptions(self, text: str, concepts: List[str]) -> List[Dict[str, Any]]:
        """Misconceptions the learner appears to hold; empty when unsure."""
        result = await self._ask(MISCONCEPTION_PROMPT.format(
            concepts=", ".join(concepts) if concepts else "the topic being discussed",
            message=self._cap(text or ""),
        ))
        if result is None:
            return []

        def build(payload) -> List[Dict[str, Any]]:
            found = []
            for item in require_list(payload):
                if not isinstance(item, dict) or not isinstance(item.get("misconception"), str):
                    continue
                concept = item.get("concept")
                found.append({
                    "concept": concept.strip().lower() if isinstance(concept, str) else (concepts[0] if concepts else ""),
                    "misconception": item["misconception"].strip(),
                    "correction": str(item.get("correction", "")).strip(),
                    "confidence": clamp(float(item.get("confidenceLevel", 0.5))),
                })
            return found

        return resolve(result, build, lambda _: [])

    async def identify_struggle_areas(self, interactions: List[LearningInteraction]) -> List[str]:
        """Concepts the learner keeps struggling with, judged from recent questions."""
        if not interactions:
            return []
        questions = "\n".join(f"- {i.question}" for i in interactions[-10:])
        result = await self._ask(STRUGGLE_PROMPT.format(questions=self._cap(questions)))
        if result is None:
            return []
        return resolve(result, lambda payload: _normalize(require_list(payload)), lambda _: [])

    async def analyze_concept_relevance(self, concepts: List[str], context: str) -> Dict[str, float]:
        """Relevance of each concept to the context; 0.5 for anything unscored."""
        uniform = {c: 0.5 for c in concepts}
        if not concepts:
            return {}
        result = await self._ask(RELEVANCE_PROMPT.format(message=self._cap(context or ""), concepts=", ".join(concepts)))
        if result is None:
            return uniform

        def build(payload) -> Dict[str, float]:
            scores = {str(k).lower(): v for k, v in require_dict(payload).items()}
            return {c: clamp(float(scores.get(c.lower(), 0.5))) for c in concepts}

        return resolve(result, build, lambda _: uniform)

    async def organize_concept_hierarchy(self, concepts: List[str]) -> Dict[str, Any]:
        """Root concept plus a parent -> children map; flat under the first concept by default."""
        if not concepts:
            return {"root": None, "hierarchy": {}}
        flat = {"root": concepts[0], "hierarchy": {concepts[0]: list(concepts[1:])}}
        if len(concepts) == 1:
            return flat
        result = await self._ask(HIERARCHY_PROMPT.format(concepts=", ".join(concepts)))
        if result is None:
            return flat

        def build(payload) -> Dict[str, Any]:
            data = require_dict(payload)
            root = data["root"]
            hierarchy = require_dict(data.get("hierarchy", {}))
            if not isinstance(root, str):
                raise TypeError("root must be a string")
            return {
                "root": root.lower(),
                "hierarchy": {str(k).lower(): _normalize(require_list(v)) for k, v in hierarchy.items()},
            }

        return resolve(result, build, lambda _: flat)

    async def identify_prerequisite_concepts(self, concept: str) -> List[str]:
        result = await self._ask(PREREQUISITE_PROMPT.format(concept=concept))
        if result is None:
            return []
        return resolve(result, lambda payload: _normalize(require_list(payload)), lambda _: [])

    async def get_related_concepts(self, concept: str) -> List[str]:
        """Known relations first, otherwise the prerequisites the service suggests."""
        known = RELATED_CONCEPTS.get(concept.strip().lower())
        if known is not None:
            return list(known)
        return await self.identify_prerequisite_concepts(concept)

    async def map_query_to_concepts(self, query: str) -> Dict[str, List[str]]:
        """Concepts in a query, each with its related concepts."""
        concepts = await self.extract_concepts(query)
        return {concept: RELATED_CONCEPTS.get(concept, []) for concept in concepts}
