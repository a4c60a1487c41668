# jetflow/sources.py
"""
Particle sources. A source hands out one Event per index, or None when the
upstream generator failed for that event (the event is then skipped).
Only final-state hadrons enter an Event; malformed records are dropped.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, List, Optional

import awkward as ak
import numpy as np

from jetflow.errors import ConfigurationError, InputError
from jetflow.kinematics import Particle
from jetflow.utils import load_arrays, scalar_item

logger = logging.getLogger(__name__)

PION_MASS = 0.13957


@dataclass
class Event:
    index: int
    particles: List[Particle]
    # pt of the hard-scattering object; a label only, never clustered
    reference_pt: Optional[float] = None
    n_dropped: int = 0


def build_particles(px, py, pz, e, charge=None, final_hadron=None):
    """
    Turn columnar records into Particles. Records with non-finite components
    are dropped; if `final_hadron` is given only flagged records are kept.
    Particle.index is the position in the original record.
    Returns (particles, n_dropped).
    """
    px = np.asarray(px, dtype=float)
    py = np.asarray(py, dtype=float)
    pz = np.asarray(pz, dtype=float)
    e = np.asarray(e, dtype=float)
    n = len(px)
    charge = np.zeros(n, dtype=int) if charge is None else np.asarray(charge)
    keep = np.ones(n, dtype=bool) if final_hadron is None else np.asarray(final_hadron, dtype=bool)

    particles = []
    n_dropped = 0
    for i in range(n):
        if not keep[i]:
            continue
        try:
            particles.append(Particle.from_components(px[i], py[i], pz[i], e[i], charge=charge[i], index=i))
        except InputError as err:
            n_dropped += 1
            logger.debug("dropping particle: %s", err)
    return particles, n_dropped


class ParticleSource(ABC):

    def __init__(self, n_events: int):
        self.n_events = int(n_events)

    @abstractmethod
    def next_event(self, ievt: int) -> Optional[Event]:
        """The event at index `ievt`, or None if it could not be produced."""

    def __len__(self):
        return self.n_events

    def __iter__(self) -> Iterator[Optional[Event]]:
        for ievt in range(self.n_events):
            yield self.next_event(ievt)


# -------------------------
# Toy generator
# -------------------------
class ToyEventSource(ParticleSource):
    """
    A handful of collimated sprays on top of a soft, flat background.
    Each event is generated from its own seed (base seed + event index), so
    events do not depend on the order in which they are requested.
    """

    def __init__(self, n_events=25, seed=1234, n_sprays=(2, 4), pt_hat_min=50.0,
                 spray_width=0.15, n_per_spray=(8, 25), n_soft=150, soft_pt=0.6,
                 eta_max=5.0, nonhadron_fraction=0.05, failure_rate=0.0):
        super().__init__(n_events)
        self.seed = int(seed)
        self.n_sprays = tuple(n_sprays)
        self.pt_hat_min = float(pt_hat_min)
        self.spray_width = float(spray_width)
        self.n_per_spray = tuple(n_per_spray)
        self.n_soft = int(n_soft)
        self.soft_pt = float(soft_pt)
        self.eta_max = float(eta_max)
        self.nonhadron_fraction = float(nonhadron_fraction)
        self.failure_rate = float(failure_rate)

    def _spray(self, rng, pt_total, eta0, phi0):
        n = int(rng.integers(self.n_per_spray[0], self.n_per_spray[1] + 1))
        frac = rng.dirichlet(np.full(n, 0.7))
        pt = pt_total * frac
        eta = eta0 + rng.normal(0.0, self.spray_width, n)
        phi = phi0 + rng.normal(0.0, self.spray_width, n)
        return pt, eta, phi

    def next_event(self, ievt: int) -> Optional[Event]:
        rng = np.random.default_rng(self.seed + int(ievt))
        if rng.uniform() < self.failure_rate:
            logger.debug("toy event %d: generation failed", ievt)
            return None

        pts, etas, phis = [], [], []
        n_spr = int(rng.integers(self.n_sprays[0], self.n_sprays[1] + 1))
        pt_hat = self.pt_hat_min + rng.exponential(0.3 * self.pt_hat_min)
        # the first two sprays balance each other, the rest are softer
        phi_lead = rng.uniform(-np.pi, np.pi)
        for k in range(n_spr):
            if k == 0:
                pt_k, phi_k = pt_hat, phi_lead
            elif k == 1:
                pt_k, phi_k = pt_hat * rng.uniform(0.6, 1.0), phi_lead + np.pi
            else:
                pt_k, phi_k = pt_hat * rng.uniform(0.1, 0.4), rng.uniform(-np.pi, np.pi)
            pt, eta, phi = self._spray(rng, pt_k, rng.uniform(-2.5, 2.5), phi_k)
            pts.append(pt)
            etas.append(eta)
            phis.append(phi)

        pts.append(rng.exponential(self.soft_pt, self.n_soft))
        etas.append(rng.uniform(-self.eta_max, self.eta_max, self.n_soft))
        phis.append(rng.uniform(-np.pi, np.pi, self.n_soft))

        pt = np.concatenate(pts)
        eta = np.concatenate(etas)
        phi = np.concatenate(phis)
        px = pt * np.cos(phi)
        py = pt * np.sin(phi)
        pz = pt * np.sinh(eta)
        e = np.sqrt(px**2 + py**2 + pz**2 + PION_MASS**2)
        charge = rng.choice([-1, 0, 1], size=pt.size, p=[0.35, 0.3, 0.35])
        final_hadron = rng.uniform(size=pt.size) >= self.nonhadron_fraction

        particles, n_dropped = build_particles(px, py, pz, e, charge, final_hadron)
        return Event(int(ievt), particles, reference_pt=float(pt_hat), n_dropped=n_dropped)


# -------------------------
# ROOT file input
# -------------------------
DEFAULT_BRANCHES = {
    "px": "Particle_px",
    "py": "Particle_py",
    "pz": "Particle_pz",
    "e": "Particle_e",
    "charge": "Particle_charge",
    "final_hadron": "Particle_isFinalHadron",
    "reference_pt": "HardParton_pt",
}


class RootFileSource(ParticleSource):
    """
    Jagged per-event particle branches read with uproot. `charge`,
    `final_hadron` and `reference_pt` are optional (set the branch to None).
    """

    def __init__(self, path, tree_name="Events", branches=None, max_events=None):
        self.path = path
        self.tree_name = tree_name
        self.branches = dict(DEFAULT_BRANCHES)
        self.branches.update(branches or {})
        for key in ("px", "py", "pz", "e"):
            if not self.branches.get(key):
                raise ConfigurationError(f"RootFileSource needs a branch for '{key}'")

        blist = sorted({br for br in self.branches.values() if br})
        self.data = load_arrays(path, tree_name, blist, library="ak")
        n_total = len(self.data[self.branches["px"]])
        n = n_total if not max_events else min(int(max_events), n_total)
        super().__init__(n)
        logger.info("Loaded %d events from %s (using %d)", n_total, path, n)

    def _column(self, key, ievt):
        br = self.branches.get(key)
        if not br:
            return None
        return ak.to_numpy(self.data[br][ievt])

    def next_event(self, ievt: int) -> Optional[Event]:
        if ievt < 0 or ievt >= self.n_events:
            return None
        ref = None
        br = self.branches.get("reference_pt")
        if br:
            ref = scalar_item(self.data[br][ievt], default=None)
            ref = None if ref is None else float(ref)

        particles, n_dropped = build_particles(
            self._column("px", ievt), self._column("py", ievt), self._column("pz", ievt), self._column("e", ievt),
            self._column("charge", ievt), self._column("final_hadron", ievt),
        )
        return Event(int(ievt), particles, reference_pt=ref, n_dropped=n_dropped)


def source_from_settings(settings) -> ParticleSource:
    scfg = dict(settings.source)
    kind = scfg.pop("kind", "toy")
    if kind == "toy":
        scfg.setdefault("eta_max", settings.eta_max)
        return ToyEventSource(n_events=settings.max_events, **scfg)
    if kind == "root":
        return RootFileSource(scfg["path"], scfg.get("tree_name", "Events"),
                              scfg.get("branches"), max_events=settings.max_events or None)
    raise ConfigurationError(f"unknown source kind '{kind}' (expected 'toy' or 'root')")
