"""
UserMemoryManager: durable per-user learning state and derived analytics.

Missing users are created on first access, for reads and for user-scoped
writes alike. The only "not found" failure is feedback that targets an
unknown interaction.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Hashable, Optional, List, Tuple
from weakref import WeakValueDictionary

from aiteacher.memory.models import (
    ConceptMastery,
    ConfidenceSample,
    Feedback,
    KnowledgeState,
    LearningAnalytics,
    LearningInteraction,
    LearningStyle,
    UserMemory,
    utcnow,
)
from aiteacher.memory.store import MemoryStore
from aiteacher.shared.config import MemoryConfig, settings
from aiteacher.shared.exceptions import InteractionNotFoundError, MemoryStoreError
from aiteacher.shared.logging import get_logger, log_with_context
from aiteacher.shared.parsing import clamp

logger = get_logger(__name__)


def normalize_concept(concept: str) -> str:
    return concept.strip().lower()


class UserMemoryManager:
    """Reads and writes user memory through a MemoryStore."""

    def __init__(self, store: MemoryStore, config: Optional[MemoryConfig] = None):
        self.store = store
        self.config = config or settings.memory
        # Serialize read-modify-write of one concept record or profile.
        # Entries vanish once no coroutine holds or awaits the lock.
        self._concept_locks: "WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = WeakValueDictionary()
        self._profile_locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    @staticmethod
    def _lock(locks: WeakValueDictionary, key: Hashable) -> asyncio.Lock:
        lock = locks.get(key)
        if lock is None:
            lock = locks[key] = asyncio.Lock()
        return lock

    def _add_sample(self, mastery: ConceptMastery, timestamp: datetime):
        """Append a confidence sample, thinning the older half once over the cap."""
        mastery.history.append(ConfidenceSample(timestamp=timestamp, confidence=mastery.confidence))
        if len(mastery.history) > self.config.max_confidence_samples:
            half = len(mastery.history) // 2
            mastery.history = mastery.history[:half:2] + mastery.history[half:]

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def get_user_memory(self, user_id: str) -> UserMemory:
        """
        Load a user's memory, creating a default profile on first access.

        Only the most recent `history_limit` interactions are loaded;
        `total_interactions` still counts all of them. Store failures
        degrade to a fresh default memory that is not persisted.
        """
        try:
            style, explicit = await self._ensure_profile(user_id)
            return UserMemory(
                user_id=user_id,
                learning_style=style,
                learning_style_set=explicit,
                concept_mastery=self.store.list_concepts(user_id),
                interaction_history=self.store.list_interactions(user_id, limit=self.config.history_limit),
                total_interactions=self.store.count_interactions(user_id),
                knowledge_graph=self.store.get_graph(user_id),
            )
        except MemoryStoreError as e:
            log_with_context(
                logger, logging.WARNING,
                f"Memory read failed, using default memory: {e}",
                user_id=user_id, action="memory_read_degraded",
            )
            return UserMemory(user_id=user_id)

    async def _ensure_profile(self, user_id: str) -> Tuple[LearningStyle, bool]:
        async with self._lock(self._profile_locks, user_id):
            profile = self.store.get_profile(user_id)
            if profile is not None:
                return profile
            default_style = LearningStyle()
            if self.store.create_profile(user_id, default_style):
                log_with_context(
                    logger, logging.INFO, "Initialized user memory",
                    user_id=user_id, action="memory_created",
                )
            return self.store.get_profile(user_id) or (default_style, False)

    async def update_learning_style(self, user_id: str, **changes) -> LearningStyle:
        """Apply partial learning-style changes and mark the style as explicitly set."""
        current, _ = await self._ensure_profile(user_id)
        updated = LearningStyle.model_validate({**current.model_dump(), **changes})
        async with self._lock(self._profile_locks, user_id):
            self.store.update_profile(user_id, updated, explicitly_set=True)
        log_with_context(
            logger, logging.INFO, "Updated learning style",
            user_id=user_id, action="learning_style_updated",
            fields=sorted(changes),
        )
        return updated

    # ------------------------------------------------------------------
    # Concept mastery
    # ------------------------------------------------------------------

    async def update_concept_mastery(
        self,
        user_id: str,
        concept: str,
        confidence_level: Optional[float],
        misconceptions: Optional[List[str]] = None,
        reviewed_at: Optional[datetime] = None,
    ) -> ConceptMastery:
        """
        Upsert a concept's confidence (clamped to [0, 1]) and record misconceptions.

        A `confidence_level` of None keeps the stored confidence, so
        misconceptions can be attached without a separate read. Also keeps the
        concept/misconception graph in sync without duplicates.
        """
        await self._ensure_profile(user_id)
        concept = normalize_concept(concept)
        now = reviewed_at or utcnow()

        async with self._lock(self._concept_locks, (user_id, concept)):
            mastery = self.store.get_concept(user_id, concept) or ConceptMastery(concept=concept, last_reviewed=now)
            mastery.last_reviewed = now
            if confidence_level is not None:
                mastery.confidence = clamp(confidence_level)
                self._add_sample(mastery, now)
            if misconceptions:
                mastery.misconceptions = list(dict.fromkeys(mastery.misconceptions + list(misconceptions)))
            self.store.save_concept(user_id, mastery)

        self._update_graph(user_id, concept, misconceptions or [])
        return mastery

    def _update_graph(self, user_id: str, concept: str, misconceptions: List[str]):
        self.store.add_graph_node(user_id, concept, "concept")
        for misconception in misconceptions:
            self.store.add_graph_node(user_id, misconception, "misconception")
            self.store.add_graph_edge(user_id, concept, misconception, "has_misconception")

    async def _register_exposure(self, user_id: str, concept: str, now: datetime):
        async with self._lock(self._concept_locks, (user_id, concept)):
            mastery = self.store.get_concept(user_id, concept)
            if mastery is None:
                mastery = ConceptMastery(concept=concept, last_reviewed=now)
            first_exposure = mastery.exposure_count == 0
            mastery.exposure_count += 1
            if first_exposure:
                mastery.confidence = clamp(mastery.confidence + self.config.first_exposure_boost)
                mastery.last_reviewed = now
                self._add_sample(mastery, now)
            self.store.save_concept(user_id, mastery)
        self.store.add_graph_node(user_id, concept, "concept")

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    async def record_interaction(self, interaction: LearningInteraction) -> str:
        """Append an interaction and register one exposure per mentioned concept."""
        await self._ensure_profile(interaction.user_id)
        interaction_id = self.store.append_interaction(interaction)
        for concept in interaction.concepts:
            await self._register_exposure(interaction.user_id, concept, interaction.created_at)

        log_with_context(
            logger, logging.INFO, "Recorded interaction",
            user_id=interaction.user_id, session_id=interaction.session_id,
            action="interaction_recorded", interaction_id=interaction_id,
            concept_count=len(interaction.concepts), truncated=interaction.truncated,
        )
        return interaction_id

    async def record_effectiveness_feedback(self, feedback: Feedback) -> LearningInteraction:
        """
        Attach a rating to an interaction and shift its concepts' confidence.

        Each concept moves by ((rating / 5) - 0.5) * feedback_scale, clamped.

        Raises:
            InteractionNotFoundError: no interaction with that id for the user
        """
        interaction = self.store.get_interaction(feedback.interaction_id)
        if interaction is None or interaction.user_id != feedback.user_id:
            raise InteractionNotFoundError(
                f"Interaction {feedback.interaction_id} not found for user {feedback.user_id}"
            )

        interaction.feedback.append(feedback)
        ratings = [f.rating / 5 for f in interaction.feedback]
        interaction.effectiveness = clamp(sum(ratings) / len(ratings))
        self.store.update_interaction(interaction)

        adjustment = ((feedback.rating / 5) - 0.5) * self.config.feedback_scale
        for concept in interaction.concepts:
            async with self._lock(self._concept_locks, (feedback.user_id, concept)):
                mastery = self.store.get_concept(feedback.user_id, concept) or ConceptMastery(concept=concept)
                mastery.confidence = clamp(mastery.confidence + adjustment)
                mastery.last_reviewed = feedback.created_at
                self._add_sample(mastery, feedback.created_at)
                self.store.save_concept(feedback.user_id, mastery)

        log_with_context(
            logger, logging.INFO, "Recorded feedback",
            user_id=feedback.user_id, action="feedback_recorded",
            interaction_id=feedback.interaction_id, rating=feedback.rating,
        )
        return interaction

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def get_learning_analytics(self, user_id: str, now: Optional[datetime] = None) -> LearningAnalytics:
        memory = await self.get_user_memory(user_id)
        return self.compute_analytics(memory, now=now)

    def compute_analytics(self, memory: UserMemory, now: Optional[datetime] = None) -> LearningAnalytics:
        """Pure function of stored mastery and history. A naive `now` is taken as UTC."""
        now = now or utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cfg = self.config
        mastered, struggling, review, slopes = [], [], [], []

        for concept, mastery in memory.concept_mastery.items():
            if mastery.confidence >= cfg.mastery_threshold:
                mastered.append(concept)
            if (
                mastery.confidence < cfg.struggle_threshold
                and mastery.exposure_count >= cfg.struggle_min_exposures
            ):
                struggling.append(concept)
            if (
                cfg.review_min_confidence < mastery.confidence < cfg.review_max_confidence
                and now - mastery.last_reviewed > timedelta(days=cfg.review_after_days)
            ):
                review.append(concept)
            if mastery.exposure_count >= 2:
                slope = _confidence_slope(mastery.history)
                if slope is not None:
                    slopes.append(slope)

        return LearningAnalytics(
            mastered_concepts=mastered,
            struggle_concepts=struggling,
            learning_rate=sum(slopes) / len(slopes) if slopes else cfg.default_learning_rate,
            recommended_review=review,
            total_interactions=max(memory.total_interactions, len(memory.interaction_history)),
        )

    async def get_knowledge_state(self, user_id: str, memory: Optional[UserMemory] = None) -> KnowledgeState:
        """Snapshot of a user's knowledge for one request."""
        memory = memory or await self.get_user_memory(user_id)
        analytics = self.compute_analytics(memory)
        return KnowledgeState(
            mastered_concepts=analytics.mastered_concepts,
            struggle_concepts=analytics.struggle_concepts,
            concept_mastery=memory.concept_mastery,
            recent_interactions=memory.interaction_history[-self.config.recent_interactions:],
            analytics=analytics,
        )


def _confidence_slope(samples: List[ConfidenceSample]) -> Optional[float]:
    """Least-squares slope of confidence per day, or None if the samples span no time."""
    if len(samples) < 2:
        return None
    origin = samples[0].timestamp
    xs = [(s.timestamp - origin).total_seconds() / 86400 for s in samples]
    ys = [s.confidence for s in samples]
    mean_x = sum(xs) / len(xs)
    mean_y = sum(ys) / len(ys)
    denominator = sum((x - mean_x) ** 2 for x in xs)
    if denominator == 0:
        return None
    return sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / denominator
