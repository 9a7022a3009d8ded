"""
User memory storage: abstract interface plus SQLite (WAL) and in-memory stores.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from pathlib import Path
from typing import Optional, Dict, List, Tuple

from aiteacher.memory.models import (
    ConceptMastery,
    GraphEdge,
    GraphNode,
    KnowledgeGraph,
    LearningInteraction,
    LearningStyle,
)
from aiteacher.shared.config import settings
from aiteacher.shared.exceptions import MemoryStoreError
from aiteacher.shared.logging import get_logger

logger = get_logger(__name__)


class MemoryStore(ABC):
    """Get/create/update access to learning profile, concept mastery, interactions and graph."""

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[Tuple[LearningStyle, bool]]:
        """Return (learning_style, explicitly_set) or None for an unknown user."""

    @abstractmethod
    def create_profile(self, user_id: str, learning_style: LearningStyle) -> bool:
        """Create the profile if absent. Returns True only when a record was created."""

    @abstractmethod
    def update_profile(self, user_id: str, learning_style: LearningStyle, explicitly_set: bool = True):
        ...

    @abstractmethod
    def get_concept(self, user_id: str, concept: str) -> Optional[ConceptMastery]:
        ...

    @abstractmethod
    def list_concepts(self, user_id: str) -> Dict[str, ConceptMastery]:
        ...

    @abstractmethod
    def save_concept(self, user_id: str, mastery: ConceptMastery):
        ...

    @abstractmethod
    def append_interaction(self, interaction: LearningInteraction) -> str:
        ...

    @abstractmethod
    def get_interaction(self, interaction_id: str) -> Optional[LearningInteraction]:
        ...

    @abstractmethod
    def update_interaction(self, interaction: LearningInteraction):
        ...

    @abstractmethod
    def list_interactions(self, user_id: str, limit: Optional[int] = None) -> List[LearningInteraction]:
        """Interactions in creation order; with `limit`, only the most recent ones."""

    @abstractmethod
    def count_interactions(self, user_id: str) -> int:
        ...

    @abstractmethod
    def add_graph_node(self, user_id: str, node_id: str, node_type: str) -> bool:
        """Add a node if absent. Returns True when it was added."""

    @abstractmethod
    def add_graph_edge(self, user_id: str, source: str, target: str, relation: str) -> bool:
        """Add an edge if absent. Returns True when it was added."""

    @abstractmethod
    def get_graph(self, user_id: str) -> KnowledgeGraph:
        ...


class InMemoryMemoryStore(MemoryStore):
    """Dict-backed store for tests and ephemeral deployments."""

    def __init__(self):
        self._profiles: Dict[str, Tuple[LearningStyle, bool]] = {}
        self._concepts: Dict[str, Dict[str, ConceptMastery]] = {}
        self._interactions: Dict[str, LearningInteraction] = {}
        self._order: Dict[str, List[str]] = {}
        self._nodes: Dict[str, Dict[str, str]] = {}
        self._edges: Dict[str, List[Tuple[str, str, str]]] = {}
        self.profile_creations = 0

    def get_profile(self, user_id):
        profile = self._profiles.get(user_id)
        if profile is None:
            return None
        style, explicit = profile
        return style.model_copy(deep=True), explicit

    def create_profile(self, user_id, learning_style):
        if user_id in self._profiles:
            return False
        self._profiles[user_id] = (learning_style.model_copy(deep=True), False)
        self.profile_creations += 1
        return True

    def update_profile(self, user_id, learning_style, explicitly_set=True):
        self._profiles[user_id] = (learning_style.model_copy(deep=True), explicitly_set)

    def get_concept(self, user_id, concept):
        mastery = self._concepts.get(user_id, {}).get(concept)
        return mastery.model_copy(deep=True) if mastery else None

    def list_concepts(self, user_id):
        return {k: v.model_copy(deep=True) for k, v in self._concepts.get(user_id, {}).items()}

    def save_concept(self, user_id, mastery):
        self._concepts.setdefault(user_id, {})[mastery.concept] = mastery.model_copy(deep=True)

    def append_interaction(self, interaction):
        self._interactions[interaction.id] = interaction.model_copy(deep=True)
        self._order.setdefault(interaction.user_id, []).append(interaction.id)
        return interaction.id

    def get_interaction(self, interaction_id):
        interaction = self._interactions.get(interaction_id)
        return interaction.model_copy(deep=True) if interaction else None

    def update_interaction(self, interaction):
        if interaction.id not in self._interactions:
            raise MemoryStoreError(f"Interaction {interaction.id} does not exist")
        self._interactions[interaction.id] = interaction.model_copy(deep=True)

    def list_interactions(self, user_id, limit=None):
        ids = self._order.get(user_id, [])
        if limit is not None:
            ids = ids[-limit:] if limit > 0 else []
        return [self._interactions[i].model_copy(deep=True) for i in ids]

    def count_interactions(self, user_id):
        return len(self._order.get(user_id, []))

    def add_graph_node(self, user_id, node_id, node_type):
        nodes = self._nodes.setdefault(user_id, {})
        if node_id in nodes:
            return False
        nodes[node_id] = node_type
        return True

    def add_graph_edge(self, user_id, source, target, relation):
        edges = self._edges.setdefault(user_id, [])
        if (source, target, relation) in edges:
            return False
        edges.append((source, target, relation))
        return True

    def get_graph(self, user_id):
        return KnowledgeGraph(
            nodes=[GraphNode(id=n, type=t) for n, t in deepcopy(self._nodes.get(user_id, {})).items()],
            edges=[GraphEdge(source=s, target=t, relation=r) for s, t, r in self._edges.get(user_id, [])],
        )


class SQLiteMemoryStore(MemoryStore):
    """Durable store on SQLite in WAL mode."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path or settings.memory.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            conn.executescript("""
                CREATE TABLE IF NOT EXISTS user_profiles (
                    user_id TEXT PRIMARY KEY,
                    learning_style_json TEXT NOT NULL,
                    learning_style_set BOOLEAN DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS concept_mastery (
                    user_id TEXT NOT NULL,
                    concept TEXT NOT NULL,
                    mastery_json TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (user_id, concept)
                );

                CREATE TABLE IF NOT EXISTS interactions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    session_id TEXT NOT NULL,
                    interaction_json TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS graph_nodes (
                    user_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    node_type TEXT NOT NULL,
                    PRIMARY KEY (user_id, node_id)
                );

                CREATE TABLE IF NOT EXISTS graph_edges (
                    user_id TEXT NOT NULL,
                    source TEXT NOT NULL,
                    target TEXT NOT NULL,
                    relation TEXT NOT NULL,
                    PRIMARY KEY (user_id, source, target, relation)
                );

                CREATE INDEX IF NOT EXISTS idx_interactions_user ON interactions(user_id, seq);
            """)

    @contextmanager
    def _get_connection(self):
        """Get database connection; commits on success, rolls back and wraps sqlite errors."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise MemoryStoreError(f"Memory store operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_profile(self, user_id):
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT learning_style_json, learning_style_set FROM user_profiles WHERE user_id = ?",
                (user_id,)
            ).fetchone()
        if row is None:
            return None
        return LearningStyle.model_validate_json(row["learning_style_json"]), bool(row["learning_style_set"])

    def create_profile(self, user_id, learning_style):
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO user_profiles (user_id, learning_style_json) VALUES (?, ?)",
                (user_id, learning_style.model_dump_json())
            )
            created = cursor.rowcount == 1
        if created:
            logger.info("Created user profile", extra={"user_id": user_id})
        return created

    def update_profile(self, user_id, learning_style, explicitly_set=True):
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO user_profiles (user_id, learning_style_json, learning_style_set)
                   VALUES (?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       learning_style_json = excluded.learning_style_json,
                       learning_style_set = excluded.learning_style_set,
                       updated_at = CURRENT_TIMESTAMP""",
                (user_id, learning_style.model_dump_json(), int(explicitly_set))
            )

    def get_concept(self, user_id, concept):
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT mastery_json FROM concept_mastery WHERE user_id = ? AND concept = ?",
                (user_id, concept)
            ).fetchone()
        return ConceptMastery.model_validate_json(row["mastery_json"]) if row else None

    def list_concepts(self, user_id):
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT concept, mastery_json FROM concept_mastery WHERE user_id = ? ORDER BY concept",
                (user_id,)
            ).fetchall()
        return {row["concept"]: ConceptMastery.model_validate_json(row["mastery_json"]) for row in rows}

    def save_concept(self, user_id, mastery):
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO concept_mastery (user_id, concept, mastery_json)
                   VALUES (?, ?, ?)
                   ON CONFLICT(user_id, concept) DO UPDATE SET
                       mastery_json = excluded.mastery_json,
                       updated_at = CURRENT_TIMESTAMP""",
                (user_id, mastery.concept, mastery.model_dump_json())
            )

    def append_interaction(self, interaction):
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO interactions (id, user_id, session_id, interaction_json)
                   VALUES (?, ?, ?, ?)""",
                (interaction.id, interaction.user_id, interaction.session_id, interaction.model_dump_json())
            )
        return interaction.id

    def get_interaction(self, interaction_id):
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT interaction_json FROM interactions WHERE id = ?",
                (interaction_id,)
            ).fetchone()
        return LearningInteraction.model_validate_json(row["interaction_json"]) if row else None

    def update_interaction(self, interaction):
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE interactions SET interaction_json = ? WHERE id = ?",
                (interaction.model_dump_json(), interaction.id)
            )
            if cursor.rowcount == 0:
                raise MemoryStoreError(f"Interaction {interaction.id} does not exist")

    def list_interactions(self, user_id, limit=None):
        with self._get_connection() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT interaction_json FROM interactions WHERE user_id = ? ORDER BY seq ASC",
                    (user_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    """SELECT interaction_json FROM (
                           SELECT seq, interaction_json FROM interactions
                           WHERE user_id = ? ORDER BY seq DESC LIMIT ?
                       ) ORDER BY seq ASC""",
                    (user_id, max(limit, 0))
                ).fetchall()
        return [LearningInteraction.model_validate_json(row["interaction_json"]) for row in rows]

    def count_interactions(self, user_id):
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM interactions WHERE user_id = ?", (user_id,)
            ).fetchone()
        return row[0]

    def add_graph_node(self, user_id, node_id, node_type):
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO graph_nodes (user_id, node_id, node_type) VALUES (?, ?, ?)",
                (user_id, node_id, node_type)
            )
            return cursor.rowcount == 1

    def add_graph_edge(self, user_id, source, target, relation):
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO graph_edges (user_id, source, target, relation) VALUES (?, ?, ?, ?)",
                (user_id, source, target, relation)
            )
            return cursor.rowcount == 1

    def get_graph(self, user_id):
        with self._get_connection() as conn:
            nodes = conn.execute(
                "SELECT node_id, node_type FROM graph_nodes WHERE user_id = ? ORDER BY rowid",
                (user_id,)
            ).fetchall()
            edges = conn.execute(
                "SELECT source, target, relation FROM graph_edges WHERE user_id = ? ORDER BY rowid",
                (user_id,)
            ).fetchall()
        return KnowledgeGraph(
            nodes=[GraphNode(id=row["node_id"], type=row["node_type"]) for row in nodes],
            edges=[GraphEdge(source=row["source"], target=row["target"], relation=row["relation"]) for row in edges],
        )


def create_memory_store(backend: Optional[str] = None, db_path: Optional[Path] = None) -> MemoryStore:
    """Build the configured store."""
    backend = backend or settings.memory.backend
    if backend == "memory":
        return InMemoryMemoryStore()
    if backend == "sqlite":
        return SQLiteMemoryStore(db_path)
    raise ValueError(f"Unsupported memory backend: {backend}")
