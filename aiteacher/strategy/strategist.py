"""
Teaching strategy selection and adaptation.
"""

import json
from collections import Counter
from typing import Any, Dict, List, Optional

from aiteacher.llm.gateway import LanguageModelGateway
from aiteacher.memory.models import (
    KnowledgeState,
    LearningStyle,
    TeachingApproach,
    TeachingContext,
    TeachingStrategy,
)
from aiteacher.shared.logging import get_logger
from aiteacher.shared.parsing import clamp, parse_json_response, require_dict, require_list, resolve

logger = get_logger(__name__)

EFFECTIVE_THRESHOLD = 0.7
HISTORY_CONFIDENCE = 0.8
PREFERENCE_CONFIDENCE = 0.7

DEFAULT_ADAPTATIONS = [
    "Use clear, simple explanations",
    "Include practical examples",
    "Check understanding frequently",
]

SIMPLIFY_ADAPTATIONS = [
    "Simplify explanations",
    "Use more basic terminology",
    "Add more step-by-step guidance",
]

ENGAGEMENT_ADAPTATIONS = [
    "Add more engaging examples",
    "Include questions to maintain engagement",
    "Connect concepts to real-world applications",
]

# Next approach to try when comprehension is low
COMPREHENSION_ROTATION = {
    TeachingApproach.EXPLANATORY: TeachingApproach.EXAMPLES_BASED,
    TeachingApproach.EXAMPLES_BASED: TeachingApproach.ANALOGY,
}
# Next approach to try when engagement is low
ENGAGEMENT_ROTATION = {
    TeachingApproach.EXPLANATORY: TeachingApproach.SOCRATIC,
    TeachingApproach.EXAMPLES_BASED: TeachingApproach.PROBLEM_SOLVING,
}

STRATEGY_CATALOG: List[Dict[str, Any]] = [
    {
        "name": "Explanatory",
        "approach": TeachingApproach.EXPLANATORY,
        "description": "Clear and direct explanations of concepts",
        "techniques": ["Clear definitions", "Step-by-step explanations", "Logical flow"],
        "best_for": ["New concepts", "Factual information", "Process understanding"],
    },
    {
        "name": "Socratic",
        "approach": TeachingApproach.SOCRATIC,
        "description": "Teaching through guided questioning",
        "techniques": ["Leading questions", "Guided discovery", "Critical thinking prompts"],
        "best_for": ["Deep understanding", "Critical thinking", "Self-discovery"],
    },
    {
        "name": "Examples-Based",
        "approach": TeachingApproach.EXAMPLES_BASED,
        "description": "Teaching through concrete examples and cases",
        "techniques": ["Case studies", "Code examples", "Real-world applications"],
        "best_for": ["Practical application", "Concrete concepts"],
    },
    {
        "name": "Analogy-Based",
        "approach": TeachingApproach.ANALOGY,
        "description": "Explaining new concepts through familiar ones",
        "techniques": ["Metaphors", "Analogies", "Comparisons"],
        "best_for": ["Abstract concepts", "Bridging knowledge gaps"],
    },
    {
        "name": "Visualization",
        "approach": TeachingApproach.VISUALIZATION,
        "description": "Using visual descriptions to explain concepts",
        "techniques": ["Mental imagery", "Descriptive visualization", "Spatial relationships"],
        "best_for": ["Visual learners", "Complex relationships"],
    },
    {
        "name": "Problem-Solving",
        "approach": TeachingApproach.PROBLEM_SOLVING,
        "description": "Learning by working through guided problems",
        "techniques": ["Worked problems", "Incremental hints", "Self-checks"],
        "best_for": ["Applied skills", "Engagement", "Retention"],
    },
]

APPROACH_FIELD = ", ".join(f'"{a.value}"' for a in TeachingApproach)

SELECTION_PROMPT = """Select the most appropriate teaching strategy for this learner.

Learner profile:
{profile}

Concepts being explained: {concepts}
Learner question: {message}
Teaching objectives: {objectives}

Respond with only a JSON object:
- approach: one of {approaches}
- adaptations: array of specific adjustments to the teaching approach
- rationale: why this strategy was selected
- confidenceLevel: number between 0 and 1"""

ADAPTATION_PROMPT = """The current teaching strategy needs adjustment based on learner feedback.

Current strategy:
{strategy}

Feedback:
- Comprehension: {comprehension} (0-1)
- Engagement: {engagement} (0-1)
- Comments: {comments}

Concepts: {concepts}

Respond with only a JSON object with approach (one of {approaches}), adaptations,
rationale and confidenceLevel."""

NEXT_CONCEPTS_PROMPT = """Recommend the next concepts this learner should focus on.

Mastered: {mastered}
Struggling with: {struggling}
Current concepts: {concepts}
Available concepts: {available}

Respond with a JSON array of objects with "concept" and "rationale"."""


def default_strategy() -> TeachingStrategy:
    return TeachingStrategy(
        approach=TeachingApproach.EXPLANATORY,
        adaptations=list(DEFAULT_ADAPTATIONS),
        rationale="Default strategy for new learners or when no preference can be determined",
        confidence_level=0.5,
    )


def strategy_from_payload(payload: Any, default_rationale: str) -> TeachingStrategy:
    """Validate a service-proposed strategy; unknown approaches are rejected."""
    data = require_dict(payload)
    approach = TeachingApproach(str(data["approach"]).strip().lower())

    adaptations = data.get("adaptations", [])
    if not isinstance(adaptations, list):
        adaptations = []

    try:
        confidence = clamp(float(data.get("confidenceLevel", 0.7)))
    except (TypeError, ValueError):
        confidence = 0.7

    rationale = data.get("rationale")
    return TeachingStrategy(
        approach=approach,
        adaptations=[str(a) for a in adaptations if str(a).strip()],
        rationale=rationale if isinstance(rationale, str) and rationale else default_rationale,
        confidence_level=confidence,
    )


class TeachingStrategist:
    """Chooses and adapts pedagogical approaches."""

    def __init__(self, gateway: LanguageModelGateway):
        self.gateway = gateway

    async def select_strategy(self, context: TeachingContext) -> TeachingStrategy:
        """
        Pick a strategy for this request.

        Order: approaches that worked before, then the learner's stated
        style, then the generation service, then the default.
        """
        from_history = self._from_effective_history(context)
        if from_history:
            logger.info("Strategy from effective history: %s", from_history.approach.value)
            return from_history

        if context.learning_style is not None:
            return self._from_learning_style(context.learning_style)

        if not self.gateway.is_configured():
            return default_strategy()

        reply = await self.gateway.generate_response(SELECTION_PROMPT.format(
            profile=json.dumps({
                "mastered": context.knowledge_state.mastered_concepts,
                "struggling": context.knowledge_state.struggle_concepts,
            }),
            concepts=", ".join(context.concepts) or "general",
            message=context.message,
            objectives=", ".join(context.objectives) or "Help the learner understand the concepts",
            approaches=APPROACH_FIELD,
        ))
        return resolve(
            parse_json_response(reply),
            lambda payload: strategy_from_payload(payload, "Selected by the generation service"),
            lambda _: default_strategy(),
        )

    def _from_effective_history(self, context: TeachingContext) -> Optional[TeachingStrategy]:
        effective = [
            i for i in context.previous_interactions
            if i.effectiveness is not None and i.effectiveness >= EFFECTIVE_THRESHOLD and i.strategy is not None
        ]
        if not effective:
            return None

        counts = Counter(i.strategy.approach for i in effective)
        best, _ = counts.most_common(1)[0]
        return TeachingStrategy(
            approach=best,
            adaptations=list(DEFAULT_ADAPTATIONS),
            rationale="Selected based on previously effective interactions",
            confidence_level=HISTORY_CONFIDENCE,
        )

    def _from_learning_style(self, style: LearningStyle) -> TeachingStrategy:
        approach = TeachingApproach.EXPLANATORY
        adaptations: List[str] = []

        if style.visual_learner:
            approach = TeachingApproach.VISUALIZATION
            adaptations.append("Include diagrams and visual representations")

        if style.comprehension_speed <= 2:
            adaptations.append("Break down complex concepts into smaller, manageable parts")
            adaptations.append("Use simple, concrete examples")
        elif style.comprehension_speed >= 4:
            adaptations.append("Present information more efficiently with less repetition")
            adaptations.append("Include more advanced examples and connections")

        if style.technical_level <= 2:
            adaptations.append("Use less technical jargon")
            adaptations.append("Focus on intuitive understanding rather than technical details")
        elif style.technical_level >= 4:
            adaptations.append("Include technical details and precise terminology")
            adaptations.append("Reference relevant research or advanced concepts")

        if style.preferred_format == "code":
            adaptations.append("Include more code examples and practical implementations")
        elif style.preferred_format == "interactive":
            adaptations.append("Design explanation as an interactive dialogue")
            adaptations.append("Include questions for the user to consider")

        return TeachingStrategy(
            approach=approach,
            adaptations=adaptations,
            rationale="Selected based on learner preferences",
            confidence_level=PREFERENCE_CONFIDENCE,
        )

    async def adapt_strategy(
        self,
        current: TeachingStrategy,
        context: TeachingContext,
        feedback: Dict[str, Any],
    ) -> TeachingStrategy:
        """
        Revise a strategy after feedback with `comprehension` and `engagement` in [0, 1].

        Good feedback raises confidence by 0.1; otherwise the service proposes a
        revision, with rule-based adjustments when it cannot.
        """
        comprehension = clamp(float(feedback.get("comprehension", 0.5)))
        engagement = clamp(float(feedback.get("engagement", 0.5)))

        if comprehension >= 0.7 and engagement >= 0.7:
            return current.model_copy(update={
                "confidence_level": clamp(current.confidence_level + 0.1),
            })

        if not self.gateway.is_configured():
            return self._rule_based_adjustment(current, comprehension, engagement)

        reply = await self.gateway.generate_response(ADAPTATION_PROMPT.format(
            strategy=current.model_dump_json(),
            comprehension=comprehension,
            engagement=engagement,
            comments=feedback.get("comments") or "No comments provided",
            concepts=", ".join(context.concepts) or "general",
            approaches=APPROACH_FIELD,
        ))
        return resolve(
            parse_json_response(reply),
            lambda payload: strategy_from_payload(payload, "Adapted from learner feedback"),
            lambda _: self._rule_based_adjustment(current, comprehension, engagement),
        )

    def _rule_based_adjustment(
        self,
        current: TeachingStrategy,
        comprehension: float,
        engagement: float,
    ) -> TeachingStrategy:
        approach = current.approach
        adaptations = list(current.adaptations)

        if comprehension < 0.7:
            approach = COMPREHENSION_ROTATION.get(approach, TeachingApproach.EXPLANATORY)
            adaptations.extend(SIMPLIFY_ADAPTATIONS)

        if engagement < 0.7:
            approach = ENGAGEMENT_ROTATION.get(approach, TeachingApproach.VISUALIZATION)
            adaptations.extend(ENGAGEMENT_ADAPTATIONS)

        return TeachingStrategy(
            approach=approach,
            adaptations=list(dict.fromkeys(adaptations)),
            rationale="Adjusted based on low feedback scores",
            confidence_level=max(0.3, current.confidence_level - 0.2),
        )

    async def recommend_next_concepts(
        self,
        knowledge_state: KnowledgeState,
        concepts: List[str],
        available: Optional[List[str]] = None,
    ) -> List[Dict[str, str]]:
        """Concepts to study next, each with a rationale."""
        default = [{
            "concept": "review-current-concepts",
            "rationale": "Continue practicing with the current concepts to build stronger understanding",
        }]
        if not self.gateway.is_configured():
            return default

        reply = await self.gateway.generate_response(NEXT_CONCEPTS_PROMPT.format(
            mastered=", ".join(knowledge_state.mastered_concepts) or "none",
            struggling=", ".join(knowledge_state.struggle_concepts) or "none",
            concepts=", ".join(concepts) or "none",
            available=", ".join(available or []) or "any",
        ))

        def build(payload) -> List[Dict[str, str]]:
            items = [
                {"concept": str(item["concept"]).strip().lower(), "rationale": str(item.get("rationale", ""))}
                for item in require_list(payload)
                if isinstance(item, dict) and item.get("concept")
            ]
            if not items:
                raise ValueError("no recommendations")
            return items

        return resolve(parse_json_response(reply), build, lambda _: default)

    def get_all_strategies(self) -> List[Dict[str, Any]]:
        return [
            {**entry, "approach": entry["approach"].value}
            for entry in STRATEGY_CATALOG
        ]
