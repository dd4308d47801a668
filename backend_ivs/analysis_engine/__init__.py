"""
Analysis engine package: the Infection Vulnerability Score propagation model.

Specifies what the encrypted engine computes over the contact graph, so decrypted
values can be checked against expectations.
"""

from backend_ivs.analysis_engine.score_model import (
    ContactGraph,
    compute_scores,
    decay,
    from_scaled,
    infection_distances,
    scaled_scores,
    score_for,
    to_scaled,
)

__all__ = [
    "ContactGraph",
    "compute_scores",
    "decay",
    "from_scaled",
    "infection_distances",
    "scaled_scores",
    "score_for",
    "to_scaled",
]
