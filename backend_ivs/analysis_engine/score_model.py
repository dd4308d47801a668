"""
Infection Vulnerability Score model: propagate infection risk through the contact graph.

For every user v, score(v) = max over infected u within d_max hops of decay(dist(u, v)),
with decay(d) = DECAY_PER_HOP ** d. Users with no infected contact within d_max hops
score 0. Because the aggregate is a max and decay is monotone, only the nearest infected
source matters, so a single multi-source BFS from the infection set (pruned at d_max)
computes every score at once.

Pure and recomputed from scratch on each call; the encrypted engine runs the same
model over ciphertexts on every admin-triggered compute cycle.

How an infected user scores itself (distance 0) is undecided. Callers pick it
explicitly with infected_self_score; the default (None) leaves infected users out of
the result.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from backend_ivs.decryption.renderer import SCORE_SCALE
from backend_ivs.logging import get_logger

logger = get_logger(__name__)

DECAY_PER_HOP = 0.5
"""Risk multiplier per hop: contribution at distance d = DECAY_PER_HOP ** d."""

DEFAULT_MAX_DEPTH = 2


@dataclass
class ContactGraph:
    """
    Undirected contact graph over user ids. Edges are stored symmetrically; self-loops
    are rejected. Nodes must be added before contacts that reference them.
    """

    _adjacency: dict[int, set[int]] = field(default_factory=dict)

    @classmethod
    def from_contacts(
        cls, users: Iterable[int], contacts: Iterable[tuple[int, int]]
    ) -> "ContactGraph":
        graph = cls()
        for u in users:
            graph.add_user(u)
        for a, b in contacts:
            graph.add_contact(a, b)
        return graph

    def add_user(self, user_id: int) -> bool:
        """Add a node; returns False if it already exists."""
        if user_id in self._adjacency:
            return False
        self._adjacency[user_id] = set()
        return True

    def add_contact(self, a: int, b: int) -> bool:
        """Add edge a-b; returns False if it already exists."""
        if a == b:
            raise ValueError(f"self-contact not allowed: {a}")
        for u in (a, b):
            if u not in self._adjacency:
                raise KeyError(f"user {u} is not registered")
        if b in self._adjacency[a]:
            return False
        self._adjacency[a].add(b)
        self._adjacency[b].add(a)
        return True

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._adjacency

    def __len__(self) -> int:
        return len(self._adjacency)

    @property
    def users(self) -> list[int]:
        return list(self._adjacency)

    def contacts(self, user_id: int) -> list[int]:
        return sorted(self._adjacency.get(user_id, ()))

    def edges(self) -> list[tuple[int, int]]:
        return sorted((a, b) for a, nbrs in self._adjacency.items() for b in nbrs if a < b)


def decay(distance: int, d_max: int) -> float:
    """Contribution of an infected source at `distance` hops; 0.0 outside [1, d_max]."""
    if distance < 1 or distance > d_max:
        return 0.0
    return DECAY_PER_HOP ** distance


def infection_distances(
    graph: ContactGraph, infected: Iterable[int], d_max: int
) -> dict[int, int]:
    """
    Multi-source BFS from every infected user. Returns {user: hops to nearest infected}
    for users within d_max hops (infected users themselves at distance 0). Nodes farther
    than d_max are never visited.
    """
    if d_max < 0:
        raise ValueError("d_max must be non-negative")
    dist: dict[int, int] = {}
    queue: deque[int] = deque()
    for u in infected:
        if u in graph and u not in dist:
            dist[u] = 0
            queue.append(u)
    while queue:
        u = queue.popleft()
        d = dist[u]
        if d >= d_max:
            continue
        for other in graph.contacts(u):
            if other in dist:
                continue
            dist[other] = d + 1
            queue.append(other)
    return dist


def compute_scores(
    graph: ContactGraph,
    infected: Iterable[int],
    d_max: int = DEFAULT_MAX_DEPTH,
    *,
    infected_self_score: float | None = None,
) -> dict[int, float]:
    """
    Score every user in the graph.

    Args:
        graph: Contact graph (read-only).
        infected: Infected user ids; ids not in the graph are ignored.
        d_max: Maximum hop distance considered (non-negative).
        infected_self_score: Score assigned to infected users. None omits them from
            the result.

    Returns:
        {user_id: score in [0, 1]}.
    """
    infected_set = set(infected)
    dist = infection_distances(graph, infected_set, d_max)
    scores: dict[int, float] = {}
    for user in graph.users:
        if user in infected_set:
            if infected_self_score is not None:
                scores[user] = infected_self_score
            continue
        d = dist.get(user)
        scores[user] = decay(d, d_max) if d is not None else 0.0
    logger.debug(
        "score_model_computed",
        user_count=len(graph),
        infected_count=len(infected_set),
        d_max=d_max,
        reached=sum(1 for s in scores.values() if s > 0),
    )
    return scores


def score_for(
    graph: ContactGraph,
    infected: Iterable[int],
    user_id: int,
    d_max: int = DEFAULT_MAX_DEPTH,
    *,
    infected_self_score: float | None = None,
) -> float | None:
    """Score of one user, or None if it is infected and infected_self_score is None."""
    if user_id not in graph:
        raise KeyError(f"user {user_id} is not registered")
    return compute_scores(
        graph, infected, d_max, infected_self_score=infected_self_score
    ).get(user_id)


def to_scaled(score: float) -> int:
    """Transmitted integer for a score: 0.5 -> 5000, 0.125 -> 1250."""
    return int(round(score * SCORE_SCALE))


def from_scaled(raw_value: int) -> float:
    return raw_value / SCORE_SCALE


def scaled_scores(scores: Mapping[int, float]) -> dict[int, int]:
    return {u: to_scaled(s) for u, s in scores.items()}
