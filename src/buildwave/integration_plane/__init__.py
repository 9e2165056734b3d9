"""Integration plane: integration line backends and the dependency-ordered merge coordinator."""

from buildwave.integration_plane.backends import (
    GitCommandError,
    GitIntegrationBackend,
    InMemoryIntegrationBackend,
    IntegrationBackend,
    IntegrationError,
    MergeConflict,
)
from buildwave.integration_plane.coordinator import (
    FeatureDelivery,
    IntegrationCoordinator,
    JournalEntry,
)

__all__ = [
    "FeatureDelivery",
    "GitCommandError",
    "GitIntegrationBackend",
    "InMemoryIntegrationBackend",
    "IntegrationBackend",
    "IntegrationCoordinator",
    "IntegrationError",
    "JournalEntry",
    "MergeConflict",
]
