"""
Sequential recombination engine: kt / Cambridge-Aachen / anti-kt with the
naive and the tiled nearest-neighbour searches.
"""
import math

import numpy as np
import pytest

from conftest import make_particle, random_event
from jetflow.clustering_algorithms import (
    ALGO_REGISTRY, SEARCH_REGISTRY, ClusterSequence, PairSearch, cluster_jets, fastjet_reference, jets_to_arrays,
)
from jetflow.errors import ClusteringInvariantError, ConfigurationError
from jetflow.kinematics import FourMomentum, Particle

ALGOS = sorted(ALGO_REGISTRY)
STRATEGIES = sorted(SEARCH_REGISTRY)


def memberships(jets):
    return sorted(tuple(j.source_indices()) for j in jets)


@pytest.mark.parametrize("algo", ALGOS)
@pytest.mark.parametrize("strategy", STRATEGIES)
def test_single_particle(algo, strategy):
    jets = cluster_jets([make_particle(10.0, 0.0, 0.0)], R=0.4, algorithm=algo, strategy=strategy)
    assert len(jets) == 1
    assert jets[0].pt == pytest.approx(10.0)
    assert len(jets[0].constituents) == 1
    assert jets[0].algorithm == algo


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_empty_input(strategy):
    seq = ClusterSequence([], R=0.4, algorithm="antikt", strategy=strategy)
    assert seq.jets == []
    assert seq.history == []
    assert cluster_jets([], strategy=strategy) == []


@pytest.mark.parametrize("algo", ["kt", "antikt"])
@pytest.mark.parametrize("strategy", STRATEGIES)
def test_close_pair_merges(algo, strategy):
    """Two pt=10 particles at dR=0.1 end up in one jet with the vector-sum pt."""
    a = make_particle(10.0, 0.0, 0.0, index=0)
    b = make_particle(10.0, 0.1, 0.0, index=1)
    jets = cluster_jets([a, b], R=0.4, algorithm=algo, strategy=strategy)
    assert len(jets) == 1
    tot = a.momentum + b.momentum
    assert jets[0].pt == pytest.approx(math.hypot(tot.px, tot.py))
    assert jets[0].source_indices() == [0, 1]


@pytest.mark.parametrize("algo", ALGOS)
@pytest.mark.parametrize("strategy", STRATEGIES)
def test_far_pair_stays_apart(algo, strategy):
    a = make_particle(10.0, -5.0, 0.0, index=0)
    b = make_particle(10.0, 5.0, 0.0, index=1)
    jets = cluster_jets([a, b], R=1.0, algorithm=algo, strategy=strategy)
    assert len(jets) == 2
    assert memberships(jets) == [(0,), (1,)]
    assert all(j.pt == pytest.approx(10.0) for j in jets)


def test_pair_across_phi_boundary_merges():
    a = make_particle(10.0, 0.0, np.pi - 0.05, index=0)
    b = make_particle(10.0, 0.0, -np.pi + 0.05, index=1)
    jets = cluster_jets([a, b], R=0.4, algorithm="antikt")
    assert len(jets) == 1
    assert abs(jets[0].phi) == pytest.approx(np.pi, abs=1e-9)


def test_antikt_hard_particle_takes_soft_neighbours():
    hard = make_particle(100.0, 0.0, 0.0, index=0)
    soft1 = make_particle(1.0, 0.3, 0.0, index=1)
    soft2 = make_particle(1.0, -0.3, 0.1, index=2)
    far = make_particle(1.0, 2.0, 2.0, index=3)
    jets = cluster_jets([soft1, hard, far, soft2], R=0.4, algorithm="antikt")
    assert memberships(jets) == [(0, 1, 2), (3,)]
    assert jets[0].source_indices() == [0, 1, 2]


def test_constituents_keep_merge_order():
    a = make_particle(10.0, 0.0, 0.0, index=0)
    b = make_particle(5.0, 0.05, 0.0, index=1)
    jet = cluster_jets([a, b], algorithm="antikt")[0]
    assert [c.index for c in jet.constituents] == [0, 1]


@pytest.mark.parametrize("algo", ALGOS)
def test_pt_min_drops_jets_but_keeps_history(algo):
    hard = make_particle(30.0, 0.0, 0.0, index=0)
    soft = make_particle(2.0, 3.0, 1.0, index=1)
    seq = ClusterSequence([hard, soft], R=0.4, algorithm=algo)
    jets = seq.inclusive_jets(5.0)
    assert [j.source_indices() for j in jets] == [[0]]
    assert len(seq.jets) == 2
    assert sum(1 for s in seq.history if s.kind == "beam") == 2


@pytest.mark.parametrize("algo", ALGOS)
@pytest.mark.parametrize("strategy", STRATEGIES)
def test_history_has_one_step_per_input(algo, strategy, rng):
    parts = random_event(rng, n=30)
    seq = ClusterSequence(parts, R=0.4, algorithm=algo, strategy=strategy)
    assert len(seq.history) == len(parts)
    assert seq.n_merges() + len(seq.jets) == len(parts)
    assert sorted(i for j in seq.jets for i in j.source_indices()) == list(range(len(parts)))


@pytest.mark.parametrize("algo", ALGOS)
def test_jets_sorted_by_pt(algo, rng):
    jets = cluster_jets(random_event(rng, n=40), algorithm=algo)
    pts = [j.pt for j in jets]
    assert pts == sorted(pts, reverse=True)


@pytest.mark.parametrize("algo", ALGOS)
def test_momentum_is_conserved(algo, rng):
    parts = random_event(rng, n=40)
    jets = cluster_jets(parts, algorithm=algo)
    tot_in = np.sum([p.momentum.as_tuple() for p in parts], axis=0)
    tot_out = np.sum([j.momentum.as_tuple() for j in jets], axis=0)
    np.testing.assert_allclose(tot_out, tot_in, rtol=1e-9, atol=1e-9)


@pytest.mark.parametrize("algo", ALGOS)
def test_strategies_agree(algo):
    for seed in range(5):
        parts = random_event(np.random.default_rng(seed), n=50)
        # zero-pt records: one along the beam axis, one at rest
        parts += [Particle(FourMomentum(0.0, 0.0, 4.0, 4.0), index=50),
                  Particle(FourMomentum(0.0, 0.0, 0.0, 0.14), index=51)]
        naive = cluster_jets(parts, R=0.4, algorithm=algo, strategy="naive")
        nn = cluster_jets(parts, R=0.4, algorithm=algo, strategy="nn")
        assert memberships(naive) == memberships(nn)
        np.testing.assert_allclose(sorted(j.pt for j in naive), sorted(j.pt for j in nn), rtol=1e-12)


@pytest.mark.parametrize("algo", ALGOS)
@pytest.mark.parametrize("strategy", STRATEGIES)
def test_input_order_does_not_matter(algo, strategy, rng):
    parts = random_event(rng, n=40)
    ref = cluster_jets(parts, algorithm=algo, strategy=strategy)
    ref_pt = {tuple(j.source_indices()): j.pt for j in ref}
    for _ in range(4):
        perm = [parts[i] for i in rng.permutation(len(parts))]
        jets = cluster_jets(perm, algorithm=algo, strategy=strategy)
        got = {tuple(j.source_indices()): j.pt for j in jets}
        assert set(got) == set(ref_pt)
        for key, pt in got.items():
            assert pt == pytest.approx(ref_pt[key], rel=1e-9)


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_exact_tie_prefers_lower_index(strategy):
    """Particle 1 sits exactly between 0 and 2; C/A merges it with 0 first."""
    parts = [
        make_particle(10.0, -0.2, 0.0, index=0),
        make_particle(10.0, 0.0, 0.0, index=1),
        make_particle(10.0, 0.2, 0.0, index=2),
    ]
    seq = ClusterSequence(parts, R=0.3, algorithm="cambridge", strategy=strategy)
    first = seq.history[0]
    assert (first.kind, first.i, first.j) == ("merge", 0, 1)


@pytest.mark.parametrize("strategy", STRATEGIES)
def test_nan_distance_raises(strategy):
    bad = Particle(FourMomentum(np.nan, 1.0, 0.0, 2.0), index=1)
    with pytest.raises(ClusteringInvariantError):
        ClusterSequence([make_particle(5.0, 0.0, 0.0), bad], strategy=strategy)


def test_bad_arguments():
    with pytest.raises(ConfigurationError):
        ClusterSequence([], R=0.0)
    with pytest.raises(ConfigurationError):
        ClusterSequence([], algorithm="siscone")
    with pytest.raises(ConfigurationError):
        ClusterSequence([], strategy="voronoi")


def test_jets_to_arrays_assignment(rng):
    parts = random_event(rng, n=30)
    jets = cluster_jets(parts, algorithm="antikt", pt_min=5.0)
    (jpt, jeta, jphi, jmass), assign = jets_to_arrays(jets, len(parts))
    assert len(jpt) == len(jets)
    for i, jet in enumerate(jets):
        assert sorted(np.flatnonzero(assign == i).tolist()) == jet.source_indices()
    assert np.all(jphi <= np.pi) and np.all(jphi > -np.pi)


@pytest.mark.parametrize("algo", ALGOS)
def test_matches_fastjet(algo, rng):
    pytest.importorskip("fastjet")
    parts = random_event(rng, n=60)
    jets = cluster_jets(parts, R=0.4, algorithm=algo)
    (fj_pt, _, _, _), fj_assign = fastjet_reference(parts, R=0.4, algorithm=algo)
    (jpt, _, _, _), assign = jets_to_arrays(jets, len(parts))
    np.testing.assert_allclose(jpt, fj_pt, rtol=1e-9)
    for i in range(len(jets)):
        assert np.array_equal(assign == i, fj_assign == i)


@pytest.mark.parametrize("algo", ALGOS)
@pytest.mark.parametrize("strategy", STRATEGIES)
def test_zero_pt_particle_stays_local(algo, strategy):
    """A zero-pt particle far from everything is never merged across the event."""
    parts = [
        make_particle(10.0, 3.0, 2.0, index=0),
        make_particle(5.0, -2.0, -2.0, index=1),
        Particle(FourMomentum(0.0, 0.0, 4.0, 4.0), index=2),
    ]
    jets = cluster_jets(parts, R=0.4, algorithm=algo, strategy=strategy)
    assert memberships(jets) == [(0,), (1,), (2,)]


def test_pair_search_requires_best():
    class NoBest(PairSearch):
        name = "incomplete"

    with pytest.raises(TypeError):
        NoBest()
