"""
Teaching prompt builder: persona file + strategy + learner knowledge + history.
"""

from pathlib import Path
from typing import Dict, List, Optional

from aiteacher.memory.models import ChatMessage, TeachingContext, TeachingStrategy
from aiteacher.shared.config import TeacherConfig, settings
from aiteacher.shared.logging import get_logger
from aiteacher.shared.tokens import count_tokens, fits_budget, truncate_to_tokens

logger = get_logger(__name__)

DEFAULT_PERSONA = (
    "You are an AI teacher specialized in technology and programming education. "
    "You explain concepts accurately, adapt to each learner, and check their understanding."
)

RESPONSE_GUIDELINES = """Your response should:
1. Be clear, accurate, and well-structured
2. Focus on the concepts the learner is asking about
3. Adapt to their learning style and knowledge level
4. Include examples or analogies where helpful
5. Break down complex ideas into manageable parts
6. Connect new information to concepts they've already mastered
7. Directly address any misconceptions they might have
8. Pace the explanation according to their learning speed

Conclude with 2-3 specific follow-up questions that would help deepen their understanding.

Respond directly without meta-commentary. Don't label your teaching approach or reference these instructions."""


def describe_familiarity(confidence: float) -> str:
    if confidence >= 0.8:
        return "highly familiar"
    if confidence >= 0.6:
        return "familiar"
    if confidence >= 0.4:
        return "somewhat familiar"
    if confidence >= 0.2:
        return "slightly familiar"
    return "unfamiliar"


def describe_learning_rate(rate: float) -> str:
    if rate < 0.3:
        return "slower"
    if rate > 0.7:
        return "faster"
    return "moderate"


class TeachingPromptBuilder:
    """Build the message list for one teaching turn."""

    def __init__(self, config: Optional[TeacherConfig] = None):
        self.config = config or settings.teacher
        self.bootstrap_dir = Path(self.config.bootstrap_dir)
        self.max_chars_per_file = 20000

    def build(self, context: TeachingContext, strategy: TeachingStrategy) -> List[Dict[str, str]]:
        """
        Assemble system prompt, pruned conversation history and the learner's message.

        Returns:
            List of message dicts for the gateway
        """
        system = "\n\n".join(part for part in [
            self._load_persona(),
            self._strategy_section(context, strategy),
            self._knowledge_section(context),
            self._style_section(context),
            self._effective_example_section(context),
            RESPONSE_GUIDELINES,
        ] if part)

        max_system_tokens = self.config.max_system_tokens
        if not fits_budget(system, max_system_tokens) and count_tokens(system) > max_system_tokens:
            system = truncate_to_tokens(system, max_system_tokens, suffix="\n\n[System prompt truncated]")

        messages = [{"role": "system", "content": system}]
        messages.extend(self._prune_history(context.previous_messages, self.config.max_history_tokens))
        messages.append({"role": "user", "content": context.message})
        return messages

    def _load_persona(self) -> str:
        """Persona from bootstrap/TEACHER_PERSONA.md, truncated head and tail if oversized."""
        path = self.bootstrap_dir / "TEACHER_PERSONA.md"
        if not path.exists():
            return DEFAULT_PERSONA

        content = path.read_text(encoding="utf-8").strip()
        if len(content) > self.max_chars_per_file:
            head_chars = self.max_chars_per_file // 2
            tail_chars = self.max_chars_per_file - head_chars - 50
            content = content[:head_chars] + "\n\n[... content truncated ...]\n\n" + content[-tail_chars:]
        return content or DEFAULT_PERSONA

    def _strategy_section(self, context: TeachingContext, strategy: TeachingStrategy) -> str:
        lines = []
        if context.concepts:
            lines.append(f"The learner is asking about: {', '.join(context.concepts)}.")
        lines.append("Use the following teaching approach:")
        lines.append(f"- Primary approach: {strategy.approach.value}")
        if strategy.adaptations:
            lines.append("Specific adaptations to make:")
            lines.extend(f"- {a}" for a in strategy.adaptations)
        return "## Teaching strategy\n" + "\n".join(lines)

    def _knowledge_section(self, context: TeachingContext) -> str:
        state = context.knowledge_state
        lines = []

        relevant = {c: state.concept_mastery[c] for c in context.concepts if c in state.concept_mastery}
        if relevant:
            lines.append("The learner's familiarity with relevant concepts:")
            for concept, mastery in relevant.items():
                lines.append(f"- {concept}: {describe_familiarity(mastery.confidence)}")
                if mastery.misconceptions:
                    lines.append(f"  Potential misconceptions: {', '.join(mastery.misconceptions)}")

        if state.mastered_concepts:
            lines.append("Concepts the learner has mastered:")
            lines.extend(f"- {c}" for c in state.mastered_concepts)

        if state.struggle_concepts:
            lines.append("Concepts the learner is struggling with:")
            lines.extend(f"- {c}" for c in state.struggle_concepts)

        analytics = state.analytics
        if analytics.total_interactions:
            lines.append("Learning analytics:")
            lines.append(f"- Learning rate: {describe_learning_rate(analytics.learning_rate)}")
            if analytics.recommended_review:
                lines.append(f"- Concepts needing review: {', '.join(analytics.recommended_review)}")

        if not lines:
            return ""
        return "## Learner knowledge\n" + "\n".join(lines)

    def _style_section(self, context: TeachingContext) -> str:
        style = context.learning_style
        if style is None:
            return ""
        lines = [
            f"- Visual learner: {'Yes' if style.visual_learner else 'No'}",
            f"- Technical level: {style.technical_level}/5",
            f"- Comprehension speed: {style.comprehension_speed}/5",
            f"- Preferred format: {style.preferred_format}",
        ]
        if style.preferred_examples:
            lines.append(f"- Effective examples previously used: {', '.join(style.preferred_examples)}")
        return "## Learning style preferences\n" + "\n".join(lines)

    def _effective_example_section(self, context: TeachingContext) -> str:
        effective = [
            i for i in context.previous_interactions
            if (i.effectiveness or 0) >= 0.7 and set(i.concepts) & set(context.concepts)
        ]
        if not effective:
            return ""
        latest = max(effective, key=lambda i: i.created_at)
        return (
            "## Previously effective teaching example\n"
            f'Learner question: "{latest.question}"\n'
            f'Response that worked: "{latest.answer[:200]}..."'
        )

    def _prune_history(self, history: List[ChatMessage], max_tokens: int) -> List[Dict[str, str]]:
        """Keep the most recent turns that fit the budget, in original order."""
        messages = [{"role": m.role, "content": m.content} for m in history if m.role != "system"]
        if fits_budget("".join(m["content"] for m in messages), max_tokens):
            return messages

        kept: List[Dict[str, str]] = []
        used = 0
        for message in reversed(messages):
            tokens = count_tokens(message["content"])
            if used + tokens > max_tokens:
                break
            kept.append(message)
            used += tokens

        dropped = len(messages) - len(kept)
        if dropped:
            logger.info("Pruned %d history messages to fit %d tokens", dropped, max_tokens)
        return list(reversed(kept))
