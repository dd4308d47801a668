"""
Tests for the infection vulnerability score model (analysis_engine.score_model).
"""

from __future__ import annotations

import pytest

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

EXAMPLE_USERS = (1, 2, 3, 4, 5)
EXAMPLE_CONTACTS = ((1, 2), (1, 3), (2, 4), (3, 5))


@pytest.fixture
def graph():
    return ContactGraph.from_contacts(EXAMPLE_USERS, EXAMPLE_CONTACTS)


def test_example_scores_decay_per_hop(graph):
    """Contacts {1-2, 1-3, 2-4, 3-5}, user 1 infected, dMax=2."""
    scores = compute_scores(graph, [1], d_max=2)
    assert scores[2] == 0.5
    assert scores[3] == 0.5
    assert scores[4] == 0.25
    assert scores[5] == 0.25
    assert 1 not in scores


def test_nodes_beyond_d_max_score_zero(graph):
    scores = compute_scores(graph, [1], d_max=1)
    assert scores[2] == scores[3] == 0.5
    assert scores[4] == scores[5] == 0.0
    assert infection_distances(graph, [1], 1) == {1: 0, 2: 1, 3: 1}


def test_d_max_zero_scores_everyone_zero(graph):
    scores = compute_scores(graph, [1], d_max=0)
    assert set(scores) == {2, 3, 4, 5}
    assert all(s == 0.0 for s in scores.values())


def test_unreachable_and_isolated_users(graph):
    graph.add_user(6)
    graph.add_user(7)
    graph.add_contact(6, 7)
    scores = compute_scores(graph, [1], d_max=5)
    assert scores[6] == 0.0
    assert scores[7] == 0.0


def test_nearest_infected_source_wins(graph):
    """Score is a max over sources, so the closest infected user determines it."""
    scores = compute_scores(graph, [1, 5], d_max=2)
    assert scores[3] == 0.5
    assert scores[4] == 0.25
    assert scores[2] == 0.5


def test_no_infected_users(graph):
    assert compute_scores(graph, [], d_max=2) == {u: 0.0 for u in EXAMPLE_USERS}


def test_unknown_infected_ids_are_ignored(graph):
    assert compute_scores(graph, [42], d_max=2) == {u: 0.0 for u in EXAMPLE_USERS}


def test_infected_self_score_is_explicit(graph):
    assert compute_scores(graph, [1], 2, infected_self_score=1.0)[1] == 1.0
    assert compute_scores(graph, [1], 2, infected_self_score=0.0)[1] == 0.0
    assert score_for(graph, [1], 1) is None
    assert score_for(graph, [1], 4) == 0.25


def test_score_for_unknown_user(graph):
    with pytest.raises(KeyError):
        score_for(graph, [1], 99)


def test_negative_d_max_rejected(graph):
    with pytest.raises(ValueError):
        compute_scores(graph, [1], d_max=-1)


def test_contact_graph_rules():
    graph = ContactGraph.from_contacts([1, 2], [(1, 2)])
    assert graph.add_user(1) is False
    assert graph.add_contact(2, 1) is False
    assert graph.contacts(1) == [2]
    assert graph.edges() == [(1, 2)]
    with pytest.raises(ValueError):
        graph.add_contact(1, 1)
    with pytest.raises(KeyError):
        graph.add_contact(1, 3)


def test_decay_outside_range():
    assert decay(0, 2) == 0.0
    assert decay(3, 2) == 0.0
    assert decay(2, 2) == 0.25


def test_scaled_values():
    assert to_scaled(0.5) == 5000
    assert to_scaled(0.25) == 2500
    assert to_scaled(0.125) == 1250
    assert to_scaled(0.0) == 0
    assert scaled_scores({2: 0.5, 4: 0.25}) == {2: 5000, 4: 2500}
    assert from_scaled(2500) == 0.25
