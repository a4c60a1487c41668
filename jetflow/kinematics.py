# jetflow/kinematics.py
"""
Four-momenta, particles and the (eta, phi) geometry shared by the clustering
engine and the direction grid.

Conventions:
  - phi is always reported in (-pi, pi]
  - eta is pseudorapidity; for pt == 0 it is +-MAX_ETA (sign of pz), or 0 when pz == 0 too
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Tuple

import numpy as np

from jetflow.errors import InputError

MAX_ETA = 1e5

# -------------------------
# Geometry helpers
# -------------------------
def wrap_phi(phi):
    """Map an angle (scalar or array) into (-pi, pi]."""
    return np.pi - np.mod(np.pi - phi, 2 * np.pi)

def delta_phi(a, b):
    return np.mod(a - b + np.pi, 2*np.pi) - np.pi

def delta_r2(eta1, phi1, eta2, phi2):
    dphi = delta_phi(phi1, phi2)
    deta = eta1 - eta2
    return deta*deta + dphi*dphi

def deltaR(eta1, phi1, eta2, phi2):
    return np.sqrt(delta_r2(eta1, phi1, eta2, phi2))


def eta_from_components(px, py, pz):
    pt = math.hypot(px, py)
    if pt == 0.0:
        if pz == 0.0:
            return 0.0
        return math.copysign(MAX_ETA, pz)
    return math.asinh(pz / pt)

def phi_from_components(px, py):
    if px == 0.0 and py == 0.0:
        return 0.0
    return float(wrap_phi(math.atan2(py, px)))


# -------------------------
# FourMomentum
# -------------------------
@dataclass(frozen=True)
class FourMomentum:
    px: float
    py: float
    pz: float
    E: float

    @classmethod
    def from_pt_eta_phi_m(cls, pt: float, eta: float, phi: float, mass: float = 0.0) -> "FourMomentum":
        px = pt * math.cos(phi)
        py = pt * math.sin(phi)
        pz = pt * math.sinh(eta)
        e = math.sqrt(px*px + py*py + pz*pz + mass*mass)
        return cls(px, py, pz, e)

    @property
    def pt2(self) -> float:
        return self.px*self.px + self.py*self.py

    @property
    def pt(self) -> float:
        return math.hypot(self.px, self.py)

    @property
    def eta(self) -> float:
        return eta_from_components(self.px, self.py, self.pz)

    @property
    def phi(self) -> float:
        return phi_from_components(self.px, self.py)

    @property
    def m(self) -> float:
        m2 = self.E*self.E - (self.px*self.px + self.py*self.py + self.pz*self.pz)
        return math.sqrt(max(m2, 0.0))

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.px, self.py, self.pz, self.E))

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.px, self.py, self.pz, self.E)

    def __add__(self, other: "FourMomentum") -> "FourMomentum":
        return FourMomentum(self.px + other.px, self.py + other.py,
                            self.pz + other.pz, self.E + other.E)

    def __repr__(self) -> str:
        return f"FourMomentum(px={self.px:.6g}, py={self.py:.6g}, pz={self.pz:.6g}, E={self.E:.6g})"


# -------------------------
# Particle
# -------------------------
@dataclass(frozen=True)
class Particle:
    """
    One clustering input. Real particles carry their position in the source
    record (`index`); ghosts carry index -1 and the flat grid cell they probe.
    """
    momentum: FourMomentum
    charge: int = 0
    is_ghost: bool = False
    index: int = -1
    cell: int = -1

    @classmethod
    def from_components(cls, px, py, pz, e, charge=0, index=-1) -> "Particle":
        mom = FourMomentum(float(px), float(py), float(pz), float(e))
        if not mom.is_finite():
            raise InputError(f"non-finite four-momentum for particle {index}: {mom!r}")
        return cls(mom, charge=int(np.sign(charge)), index=int(index))

    @property
    def pt(self) -> float:
        return self.momentum.pt

    @property
    def eta(self) -> float:
        return self.momentum.eta

    @property
    def phi(self) -> float:
        return self.momentum.phi


def momentum_sum(momenta: Iterable[FourMomentum]) -> FourMomentum:
    tot = FourMomentum(0.0, 0.0, 0.0, 0.0)
    for p in momenta:
        tot = tot + p
    return tot


def particles_to_arrays(particles: List[Particle]):
    """Columnar (px, py, pz, E) float arrays, one entry per particle."""
    if not particles:
        empty = np.zeros(0, dtype=float)
        return empty, empty.copy(), empty.copy(), empty.copy()
    p4 = np.array([p.momentum.as_tuple() for p in particles], dtype=float)
    return p4[:, 0], p4[:, 1], p4[:, 2], p4[:, 3]
