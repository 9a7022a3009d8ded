"""
Pydantic models for the user memory system.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Literal

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TeachingApproach(str, Enum):
    """Pedagogical approaches the strategist chooses from."""
    EXPLANATORY = "explanatory"
    SOCRATIC = "socratic"
    EXAMPLES_BASED = "examples-based"
    ANALOGY = "analogy"
    VISUALIZATION = "visualization"
    PROBLEM_SOLVING = "problem-solving"


class TeachingStrategy(BaseModel):
    """Approach plus concrete adaptations, selected per request."""
    approach: TeachingApproach = TeachingApproach.EXPLANATORY
    adaptations: List[str] = Field(default_factory=list)
    rationale: str = ""
    confidence_level: float = Field(ge=0.0, le=1.0, default=0.5)


class LearningStyle(BaseModel):
    """Learner profile used for strategy selection and prompting."""
    preferred_format: Literal["text", "code", "diagram", "analogy", "interactive"] = "text"
    technical_level: int = Field(ge=1, le=5, default=3)
    comprehension_speed: int = Field(ge=1, le=5, default=3)
    visual_learner: bool = False
    preferred_examples: List[str] = Field(default_factory=list)


class ConfidenceSample(BaseModel):
    """Point on a concept's confidence-over-time curve."""
    timestamp: datetime
    confidence: float = Field(ge=0.0, le=1.0)


class ConceptMastery(BaseModel):
    """Per-user, per-concept understanding."""
    concept: str
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)
    last_reviewed: datetime = Field(default_factory=utcnow)
    exposure_count: int = Field(ge=0, default=0)
    misconceptions: List[str] = Field(default_factory=list)
    history: List[ConfidenceSample] = Field(default_factory=list)

    @field_validator("misconceptions")
    @classmethod
    def _dedupe_misconceptions(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))


class Feedback(BaseModel):
    """Effectiveness rating for one interaction."""
    interaction_id: str
    user_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class LearningInteraction(BaseModel):
    """One completed exchange between a learner and the teacher."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    session_id: str
    question: str
    answer: str
    concepts: List[str] = Field(default_factory=list)
    effectiveness: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    strategy: Optional[TeachingStrategy] = None
    feedback: List[Feedback] = Field(default_factory=list)
    truncated: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("concepts")
    @classmethod
    def _ordered_set(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(c.strip().lower() for c in value if c and c.strip()))


class GraphNode(BaseModel):
    id: str
    type: Literal["concept", "misconception"]


class GraphEdge(BaseModel):
    source: str
    target: str
    relation: str = "has_misconception"


class KnowledgeGraph(BaseModel):
    """Concept/misconception relationship graph for one user."""
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)

    def misconceptions_of(self, concept: str) -> List[str]:
        return [e.target for e in self.edges if e.source == concept and e.relation == "has_misconception"]


class UserMemory(BaseModel):
    """Durable per-user learning state."""
    user_id: str
    learning_style: LearningStyle = Field(default_factory=LearningStyle)
    learning_style_set: bool = False
    concept_mastery: Dict[str, ConceptMastery] = Field(default_factory=dict)
    interaction_history: List[LearningInteraction] = Field(default_factory=list)
    total_interactions: int = 0
    knowledge_graph: KnowledgeGraph = Field(default_factory=KnowledgeGraph)
    created_at: datetime = Field(default_factory=utcnow)


class LearningAnalytics(BaseModel):
    """Derived analytics over stored mastery and history."""
    mastered_concepts: List[str] = Field(default_factory=list)
    struggle_concepts: List[str] = Field(default_factory=list)
    learning_rate: float = 0.5
    recommended_review: List[str] = Field(default_factory=list)
    total_interactions: int = 0


class KnowledgeState(BaseModel):
    """Read-only snapshot handed to the strategist and prompt builder."""
    mastered_concepts: List[str] = Field(default_factory=list)
    struggle_concepts: List[str] = Field(default_factory=list)
    concept_mastery: Dict[str, ConceptMastery] = Field(default_factory=dict)
    recent_interactions: List[LearningInteraction] = Field(default_factory=list)
    analytics: LearningAnalytics = Field(default_factory=LearningAnalytics)

    model_config = {"frozen": True}


class UnderstandingAnalysis(BaseModel):
    """Result of analysing a learner message for comprehension."""
    is_understanding: bool = True
    confused_concepts: List[str] = Field(default_factory=list)
    confidence_score: float = Field(ge=0.0, le=1.0, default=0.5)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TeachingContext(BaseModel):
    """Per-request context; never persisted."""
    user_id: str
    session_id: str
    message: str
    previous_messages: List[ChatMessage] = Field(default_factory=list)
    concepts: List[str] = Field(default_factory=list)
    learning_style: Optional[LearningStyle] = None
    knowledge_state: KnowledgeState = Field(default_factory=KnowledgeState)
    previous_interactions: List[LearningInteraction] = Field(default_factory=list)
    objectives: List[str] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)
