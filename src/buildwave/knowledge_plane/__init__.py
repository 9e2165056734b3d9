"""Knowledge plane: pattern confidence, learning store backends and benchmarks."""

from buildwave.knowledge_plane.benchmarks import Aggregates, compute_aggregates, percentile
from buildwave.knowledge_plane.knowledge_base import KnowledgeBase, RoleHints, pattern_key
from buildwave.knowledge_plane.learning_store import (
    DegradedLearningStore,
    InMemoryLearningStore,
    LearningStore,
    LocalFileLearningStore,
    SharedLearningStore,
    open_learning_store,
)
from buildwave.knowledge_plane.patterns import (
    ConfidenceTier,
    compute_confidence,
    confidence_tier,
    is_prune_candidate,
    observe,
)

__all__ = [
    "Aggregates",
    "ConfidenceTier",
    "DegradedLearningStore",
    "InMemoryLearningStore",
    "KnowledgeBase",
    "LearningStore",
    "LocalFileLearningStore",
    "RoleHints",
    "SharedLearningStore",
    "compute_aggregates",
    "compute_confidence",
    "confidence_tier",
    "is_prune_candidate",
    "observe",
    "open_learning_store",
    "pattern_key",
    "percentile",
]
