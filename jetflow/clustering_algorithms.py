# jetflow/clustering_algorithms.py
"""
Generalized sequential recombination (kt / Cambridge-Aachen / anti-kt).

    d_ij = min(kt_i^2p, kt_j^2p) * dR_ij^2 / R^2
    d_iB = kt_i^2p

The smallest distance is processed at each step: a pair is merged (E-scheme),
a beam distance finalizes a jet. Distances equal within TIE_TOLERANCE (relative)
are resolved by the insertion-index key (lower, higher); a beam candidate for
object i has key (i, i). Merged objects get the next free insertion index.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from jetflow.errors import ClusteringInvariantError, ConfigurationError
from jetflow.kinematics import FourMomentum, Particle, MAX_ETA, delta_r2, particles_to_arrays, wrap_phi

logger = logging.getLogger(__name__)

# exponent p of the distance family
ALGO_REGISTRY = {
    "kt": 1.0,
    "cambridge": 0.0,
    "antikt": -1.0,
}

TIE_TOLERANCE = 1e-9


# -------------------------
# Output records
# -------------------------
@dataclass
class Jet:
    momentum: FourMomentum
    constituents: List[Particle]
    algorithm: str

    @property
    def pt(self) -> float:
        return self.momentum.pt

    @property
    def eta(self) -> float:
        return self.momentum.eta

    @property
    def phi(self) -> float:
        return self.momentum.phi

    @property
    def m(self) -> float:
        return self.momentum.m

    def ghosts(self) -> List[Particle]:
        return [c for c in self.constituents if c.is_ghost]

    def real_constituents(self) -> List[Particle]:
        return [c for c in self.constituents if not c.is_ghost]

    def source_indices(self) -> List[int]:
        return sorted(c.index for c in self.constituents if not c.is_ghost)


@dataclass(frozen=True)
class ClusterStep:
    """One history entry: `merge` (i + j -> k) or `beam` (i finalized as a jet)."""
    kind: str
    i: int
    j: int
    k: int
    distance: float


# -------------------------
# Working state shared with the pair searches
# -------------------------
def _kt2p(pt2, p):
    pt2 = np.asarray(pt2, dtype=float)
    if p == 0.0:
        return np.ones_like(pt2)
    with np.errstate(divide="ignore"):
        return np.power(pt2, p)


def _eta_phi(px, py, pz):
    pt = np.hypot(px, py)
    with np.errstate(divide="ignore", invalid="ignore"):
        eta = np.where(pt > 0, np.arcsinh(pz / np.where(pt > 0, pt, 1.0)), np.sign(pz) * MAX_ETA)
    phi = np.where(pt > 0, wrap_phi(np.arctan2(py, px)), 0.0)
    return eta, phi


class _ClusterState:
    """
    Arrays indexed by insertion index. Originals occupy 0..N-1, merged objects
    N..2N-2. Only `active` entries take part in the search.
    """

    def __init__(self, particles: Sequence[Particle], R: float, p: float):
        n = len(particles)
        cap = max(2 * n - 1, 0)
        self.R2 = float(R) * float(R)
        # pairs beyond R never merge, whatever their kt (kt2p == 0 at zero pt)
        self.r2_cut = self.R2 * (1.0 + 2 * TIE_TOLERANCE)
        self.p = float(p)
        self.size = n

        self.p4 = np.zeros((cap, 4), dtype=float)
        self.eta = np.zeros(cap, dtype=float)
        self.phi = np.zeros(cap, dtype=float)
        self.kt2p = np.zeros(cap, dtype=float)
        self.active = np.zeros(cap, dtype=bool)
        self.constituents: List[List[Particle]] = [[] for _ in range(cap)]

        if n:
            px, py, pz, e = particles_to_arrays(list(particles))
            self.p4[:n] = np.stack([px, py, pz, e], axis=-1)
            self._refresh(np.arange(n))
            self.active[:n] = True
            for i, part in enumerate(particles):
                self.constituents[i] = [part]

    def _refresh(self, idx):
        px, py, pz = self.p4[idx, 0], self.p4[idx, 1], self.p4[idx, 2]
        eta, phi = _eta_phi(px, py, pz)
        self.eta[idx] = eta
        self.phi[idx] = phi
        self.kt2p[idx] = _kt2p(px*px + py*py, self.p)

    def active_indices(self) -> np.ndarray:
        return np.flatnonzero(self.active[:self.size])

    def pair_distances(self, rows, cols) -> np.ndarray:
        """
        d_ij for every (row, col) combination; self-pairs are +inf, and so are
        pairs further apart than R (up to the tie tolerance).
        """
        rows = np.asarray(rows, dtype=int)
        cols = np.asarray(cols, dtype=int)
        dr2 = delta_r2(self.eta[rows][:, None], self.phi[rows][:, None],
                       self.eta[cols][None, :], self.phi[cols][None, :])
        kmin = np.minimum(self.kt2p[rows][:, None], self.kt2p[cols][None, :])
        with np.errstate(invalid="ignore", over="ignore"):
            d = np.where(dr2 > 0.0, kmin * dr2 / self.R2, 0.0)
        d[rows[:, None] == cols[None, :]] = np.inf
        d[dr2 > self.r2_cut] = np.inf
        return d

    def merge(self, i: int, j: int) -> int:
        k = self.size
        self.p4[k] = self.p4[i] + self.p4[j]
        self._refresh(np.array([k]))
        self.constituents[k] = self.constituents[i] + self.constituents[j]
        self.constituents[i] = []
        self.constituents[j] = []
        self.active[i] = False
        self.active[j] = False
        self.active[k] = True
        self.size += 1
        return k

    def finalize(self, i: int) -> List[Particle]:
        self.active[i] = False
        cons = self.constituents[i]
        self.constituents[i] = []
        return cons


def _check_distances(d):
    if d.size and (np.any(np.isnan(d)) or np.any(d < 0.0)):
        raise ClusteringInvariantError("negative or NaN distance during clustering")


def _pick(d, lo, hi):
    """Index of the winning candidate: smallest d, ties by (lo, hi)."""
    _check_distances(d)
    dmin = float(np.min(d))
    tied = np.flatnonzero(d <= dmin + TIE_TOLERANCE * abs(dmin))
    if tied.size == 1:
        return int(tied[0])
    order = np.lexsort((hi[tied], lo[tied]))
    return int(tied[order[0]])


# -------------------------
# Pair searches
# -------------------------
class PairSearch(ABC):
    """
    Finds the next step of the recombination. Implementations only differ in
    how they find the minimum; all of them see the same _ClusterState.
    """

    name = "base"

    def start(self, state: _ClusterState):
        self.state = state

    @abstractmethod
    def best(self):
        """Return (distance, i, j); j == -1 means beam distance for i."""

    def merged(self, i: int, j: int, k: int):
        pass

    def finalized(self, i: int):
        pass


class NaiveSearch(PairSearch):
    """Full recomputation of every pairwise distance at every step."""

    name = "naive"

    def best(self):
        st = self.state
        a = st.active_indices()
        d_beam = st.kt2p[a]
        iu0, iu1 = np.triu_indices(a.size, k=1)
        d_pair = st.pair_distances(a, a)[iu0, iu1]

        d = np.concatenate([d_beam, d_pair])
        lo = np.concatenate([a, a[iu0]])
        hi = np.concatenate([a, a[iu1]])
        w = _pick(d, lo, hi)
        if w < a.size:
            return float(d[w]), int(a[w]), -1
        return float(d[w]), int(lo[w]), int(hi[w])


class _Tiling:
    """
    (eta, phi) tiles at least R wide. Two objects closer than R always sit in
    the same or adjacent tiles.
    """

    def __init__(self, R: float):
        self.size_eta = float(R) * (1.0 + 1e-6)
        self.n_phi = max(int(np.floor(2 * np.pi / self.size_eta)), 1)
        self.size_phi = 2 * np.pi / self.n_phi
        self.members = {}
        self.tile_of = {}

    def key(self, eta: float, phi: float):
        ieta = int(np.floor(eta / self.size_eta))
        iphi = int(np.floor((phi + np.pi) / self.size_phi)) % self.n_phi
        return ieta, iphi

    def add(self, idx: int, eta: float, phi: float):
        key = self.key(eta, phi)
        self.tile_of[idx] = key
        self.members.setdefault(key, set()).add(idx)

    def remove(self, idx: int):
        key = self.tile_of.pop(idx)
        tile = self.members[key]
        tile.discard(idx)
        if not tile:
            del self.members[key]

    def neighbour_keys(self, key):
        ieta, iphi = key
        if self.n_phi <= 3:
            phis = range(self.n_phi)
        else:
            phis = [(iphi + dp) % self.n_phi for dp in (-1, 0, 1)]
        return [(ieta + de, p) for de in (-1, 0, 1) for p in phis]

    def neighbours(self, key) -> np.ndarray:
        out = []
        for nk in self.neighbour_keys(key):
            tile = self.members.get(nk)
            if tile:
                out.extend(tile)
        return np.array(sorted(out), dtype=int)


class NearestNeighbourSearch(PairSearch):
    """
    Keeps, for every active object, the partner with the smallest d_ij
    (ties by smaller index). Partners further than R never beat the beam
    distance, so only adjacent tiles are searched. Rows that pointed at a
    removed object are recomputed; a new object is offered to its neighbours.
    """

    name = "nn"

    def start(self, state: _ClusterState):
        super().start(state)
        cap = state.p4.shape[0]
        self.nn_dist = np.full(cap, np.inf, dtype=float)
        self.nn_idx = np.full(cap, -1, dtype=int)
        self.tiles = _Tiling(np.sqrt(state.R2))
        a = state.active_indices()
        _check_distances(state.kt2p[a])
        if not (np.all(np.isfinite(state.eta[a])) and np.all(np.isfinite(state.phi[a]))):
            raise ClusteringInvariantError("object with a non-finite direction")
        for i in a:
            self.tiles.add(int(i), state.eta[i], state.phi[i])
        self._recompute(a)

    def _distances(self, rows, cols):
        d = self.state.pair_distances(rows, cols)
        _check_distances(d)
        return d

    def _recompute(self, rows):
        rows = np.asarray(rows, dtype=int)
        if rows.size == 0:
            return
        by_tile = {}
        for r in rows:
            by_tile.setdefault(self.tiles.tile_of[int(r)], []).append(int(r))

        for key, tile_rows in by_tile.items():
            tile_rows = np.array(tile_rows, dtype=int)
            cols = self.tiles.neighbours(key)
            d = self._distances(tile_rows, cols)
            dmin = np.min(d, axis=1)
            tied = d <= (dmin + TIE_TOLERANCE * np.abs(dmin))[:, None]
            # cols is sorted, so the first tied column is the smallest index
            first = np.argmax(tied, axis=1)
            found = np.isfinite(dmin)
            self.nn_dist[tile_rows] = np.where(found, dmin, np.inf)
            self.nn_idx[tile_rows] = np.where(found, cols[first], -1)

    def best(self):
        st = self.state
        a = st.active_indices()
        nn = self.nn_idx[a]
        has = nn >= 0
        ap = a[has]

        d = np.concatenate([st.kt2p[a], self.nn_dist[ap]])
        lo = np.concatenate([a, np.minimum(ap, nn[has])])
        hi = np.concatenate([a, np.maximum(ap, nn[has])])
        w = _pick(d, lo, hi)
        if w < a.size:
            return float(d[w]), int(a[w]), -1
        return float(d[w]), int(lo[w]), int(hi[w])

    def merged(self, i: int, j: int, k: int):
        st = self.state
        self.tiles.remove(i)
        self.tiles.remove(j)
        self.tiles.add(k, st.eta[k], st.phi[k])
        self.nn_dist[[i, j]] = np.inf
        self.nn_idx[[i, j]] = -1

        a = st.active_indices()
        stale = a[(self.nn_idx[a] == i) | (self.nn_idx[a] == j)]
        self._recompute(np.append(stale, k))

        # offer k to its neighbours that were not just recomputed
        near = self.tiles.neighbours(self.tiles.tile_of[k])
        others = np.setdiff1d(near, np.append(stale, k))
        if others.size:
            d_k = self._distances(np.array([k]), others)[0]
            cur = self.nn_dist[others]
            with np.errstate(invalid="ignore"):
                better = d_k < cur - TIE_TOLERANCE * np.abs(cur)
            better |= np.isfinite(d_k) & (self.nn_idx[others] < 0)
            self.nn_dist[others[better]] = d_k[better]
            self.nn_idx[others[better]] = k

    def finalized(self, i: int):
        self.tiles.remove(i)
        self.nn_dist[i] = np.inf
        self.nn_idx[i] = -1
        a = self.state.active_indices()
        self._recompute(a[self.nn_idx[a] == i])


SEARCH_REGISTRY = {
    "naive": NaiveSearch,
    "nn": NearestNeighbourSearch,
}


# -------------------------
# ClusterSequence
# -------------------------
@dataclass
class ClusterSequence:
    particles: List[Particle]
    R: float = 0.4
    algorithm: str = "antikt"
    strategy: str = "nn"
    history: List[ClusterStep] = field(default_factory=list, init=False)
    jets: List[Jet] = field(default_factory=list, init=False)

    def __post_init__(self):
        if not (float(self.R) > 0.0):
            raise ConfigurationError(f"clustering radius must be positive, got {self.R}")
        if self.algorithm not in ALGO_REGISTRY:
            raise ConfigurationError(f"unknown algorithm '{self.algorithm}', expected one of {sorted(ALGO_REGISTRY)}")
        if self.strategy not in SEARCH_REGISTRY:
            raise ConfigurationError(f"unknown search strategy '{self.strategy}', expected one of {sorted(SEARCH_REGISTRY)}")
        self.particles = list(self.particles)
        self._run()

    def _run(self):
        state = _ClusterState(self.particles, self.R, ALGO_REGISTRY[self.algorithm])
        search = SEARCH_REGISTRY[self.strategy]()
        search.start(state)

        finalized = []
        n_active = len(self.particles)
        while n_active > 0:
            dist, i, j = search.best()
            if j < 0:
                cons = state.finalize(i)
                mom = FourMomentum(*(float(v) for v in state.p4[i]))
                finalized.append(Jet(mom, cons, self.algorithm))
                self.history.append(ClusterStep("beam", i, -1, len(finalized) - 1, dist))
                search.finalized(i)
                n_active -= 1
            else:
                k = state.merge(i, j)
                self.history.append(ClusterStep("merge", i, j, k, dist))
                search.merged(i, j, k)
                n_active -= 1

        self.jets = sorted(finalized, key=lambda jet: -jet.pt)
        logger.debug("clustered %d inputs into %d jets (%s, R=%.2f, %s search)",
                     len(self.particles), len(self.jets), self.algorithm, self.R, self.strategy)

    def inclusive_jets(self, pt_min: float = 0.0) -> List[Jet]:
        return [jet for jet in self.jets if jet.pt >= float(pt_min)]

    def n_merges(self) -> int:
        return sum(1 for s in self.history if s.kind == "merge")


def cluster_jets(particles, R=0.4, algorithm="antikt", pt_min=0.0, strategy="nn") -> List[Jet]:
    """Cluster `particles` and return jets with pt >= pt_min, hardest first."""
    return ClusterSequence(particles, R=R, algorithm=algorithm, strategy=strategy).inclusive_jets(pt_min)


# -------------------------
# Columnar view (pt, eta, phi, mass) + per-particle assignment
# -------------------------
def jets_to_arrays(jets: List[Jet], n_particles: int):
    """
    Returns ((jpt, jeta, jphi, jmass), assign) where assign[i] is the index of
    the jet owning source particle i, or -1.
    """
    NJ = len(jets)
    jpt = np.zeros(NJ)
    jeta = np.zeros(NJ)
    jphi = np.zeros(NJ)
    jmass = np.zeros(NJ)
    assign = np.full(int(n_particles), -1, dtype=int)

    for i, jet in enumerate(jets):
        jpt[i] = jet.pt
        jeta[i] = jet.eta
        jphi[i] = jet.phi
        jmass[i] = jet.m
        for idx in jet.source_indices():
            if 0 <= idx < n_particles:
                assign[idx] = i
    return (jpt, jeta, jphi, jmass), assign


# -------------------------
# Reference clustering via FastJet (cross-checks)
# -------------------------
_FASTJET_ALGOS = {
    "kt": "kt_algorithm",
    "cambridge": "cambridge_algorithm",
    "antikt": "antikt_algorithm",
}

def fastjet_reference(particles: List[Particle], R=0.4, algorithm="antikt", pt_min=0.0):
    """
    Same clustering through the FastJet bindings. Note FastJet measures dR in
    rapidity, so agreement is only expected for massless inputs.
    """
    import fastjet

    constituents = []
    for i, p in enumerate(particles):
        pj = fastjet.PseudoJet(*(float(v) for v in p.momentum.as_tuple()))
        pj.set_user_index(i)
        constituents.append(pj)

    jetdef = fastjet.JetDefinition(getattr(fastjet, _FASTJET_ALGOS[algorithm]), float(R))
    cluster = fastjet.ClusterSequence(constituents, jetdef)
    jets = fastjet.sorted_by_pt(cluster.inclusive_jets(float(pt_min)))

    NJ = len(jets)
    jpt = np.zeros(NJ)
    jeta = np.zeros(NJ)
    jphi = np.zeros(NJ)
    jmass = np.zeros(NJ)
    assign = np.full(len(particles), -1, dtype=int)

    for i, jet in enumerate(jets):
        jpt[i] = jet.pt()
        jeta[i] = jet.eta()
        jphi[i] = wrap_phi(jet.phi_std())
        jmass[i] = jet.m()
        for dau in jet.constituents():
            assign[int(dau.user_index())] = int(i)

    return (jpt, jeta, jphi, jmass), assign


def leading_pt(jets: List[Jet], default: Optional[float] = None):
    return jets[0].pt if jets else default
