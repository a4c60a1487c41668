# jetflow/grid.py
"""
Fixed (eta, phi) grid used to probe which jet owns which direction.

Binning rule:
  - eta: cells are [lo, hi), so a particle at exactly +eta_max is outside
    the grid while one at exactly -eta_max is inside
  - phi: cells are (lo, hi], matching the (-pi, pi] phi convention
"""
from __future__ import annotations

import math
from typing import List, Tuple

import numpy as np

from jetflow.errors import ConfigurationError
from jetflow.kinematics import FourMomentum, Particle, wrap_phi

# Far below any physical pt, still large enough that pt^2 and 1/pt^2 stay finite.
GHOST_PT = 1e-100


class DirectionGrid:

    def __init__(self, eta_min=-5.0, eta_max=5.0, n_eta=100,
                 phi_min=-np.pi, phi_max=np.pi, n_phi=63):
        if int(n_eta) <= 0 or int(n_phi) <= 0:
            raise ConfigurationError(f"grid needs at least one bin per axis, got {n_eta} x {n_phi}")
        if not (float(eta_max) > float(eta_min)):
            raise ConfigurationError(f"empty eta range [{eta_min}, {eta_max})")
        if not (float(phi_max) > float(phi_min)) or float(phi_max) - float(phi_min) > 2 * np.pi + 1e-12:
            raise ConfigurationError(f"phi range ({phi_min}, {phi_max}] must be non-empty and at most 2 pi wide")

        self.n_eta = int(n_eta)
        self.n_phi = int(n_phi)
        self.eta_edges = np.linspace(float(eta_min), float(eta_max), self.n_eta + 1)
        self.phi_edges = np.linspace(float(phi_min), float(phi_max), self.n_phi + 1)
        self.eta_centers = 0.5 * (self.eta_edges[:-1] + self.eta_edges[1:])
        self.phi_centers = 0.5 * (self.phi_edges[:-1] + self.phi_edges[1:])
        self.values = np.zeros((self.n_eta, self.n_phi), dtype=float)

    @classmethod
    def from_settings(cls, settings) -> "DirectionGrid":
        return cls(-settings.eta_max, settings.eta_max, settings.n_eta,
                   -np.pi, np.pi, settings.n_phi)

    @property
    def eta_min(self) -> float:
        return float(self.eta_edges[0])

    @property
    def eta_max(self) -> float:
        return float(self.eta_edges[-1])

    @property
    def shape(self) -> Tuple[int, int]:
        return self.n_eta, self.n_phi

    @property
    def n_cells(self) -> int:
        return self.n_eta * self.n_phi

    def cell_index(self, ieta: int, iphi: int) -> int:
        return int(ieta) * self.n_phi + int(iphi)

    def cell_coords(self, cell: int) -> Tuple[int, int]:
        return divmod(int(cell), self.n_phi)

    def center(self, cell: int) -> Tuple[float, float]:
        ieta, iphi = self.cell_coords(cell)
        return float(self.eta_centers[ieta]), float(self.phi_centers[iphi])

    def contains_eta(self, eta: float) -> bool:
        return self.eta_min <= eta < self.eta_max

    def cell_of(self, eta: float, phi: float) -> int:
        """Flat cell index holding (eta, phi), or -1 outside the grid."""
        if not self.contains_eta(eta):
            return -1
        ieta = int(np.searchsorted(self.eta_edges, eta, side="right")) - 1

        phi_lo, phi_hi = float(self.phi_edges[0]), float(self.phi_edges[-1])
        if not (phi_lo < phi <= phi_hi) and math.isclose(phi_hi - phi_lo, 2 * np.pi):
            # full circle: bring phi into (phi_lo, phi_hi]
            phi = phi_lo + float(wrap_phi(phi - phi_lo - np.pi)) + np.pi
        if not (phi_lo < phi <= phi_hi):
            return -1
        iphi = int(np.searchsorted(self.phi_edges, phi, side="left")) - 1
        return self.cell_index(min(ieta, self.n_eta - 1), min(max(iphi, 0), self.n_phi - 1))

    def generate_ghosts(self, ghost_pt: float = GHOST_PT) -> List[Particle]:
        """One fresh massless ghost per cell, at the cell centre."""
        ghosts = []
        for ieta, eta in enumerate(self.eta_centers):
            for iphi, phi in enumerate(self.phi_centers):
                mom = FourMomentum.from_pt_eta_phi_m(ghost_pt, float(eta), float(phi), 0.0)
                ghosts.append(Particle(mom, charge=0, is_ghost=True, index=-1,
                                       cell=self.cell_index(ieta, iphi)))
        return ghosts

    def reset(self, fill: float = 0.0):
        self.values.fill(fill)

    def __repr__(self) -> str:
        return (f"DirectionGrid(eta=[{self.eta_min:g}, {self.eta_max:g}) x {self.n_eta}, "
                f"phi=({self.phi_edges[0]:.4g}, {self.phi_edges[-1]:.4g}] x {self.n_phi})")
