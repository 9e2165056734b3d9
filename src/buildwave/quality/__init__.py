"""Quality scoring plane."""

from buildwave.quality.scorer import (
    DIMENSION_CAPABILITIES,
    DIMENSION_STAGE,
    QualityPolicy,
    QualityScorer,
    dimension_values,
    responsible_roles,
)

__all__ = [
    "DIMENSION_CAPABILITIES",
    "DIMENSION_STAGE",
    "QualityPolicy",
    "QualityScorer",
    "dimension_values",
    "responsible_roles",
]
