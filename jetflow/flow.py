# jetflow/flow.py
"""
pT-flow maps: every grid cell gets the pt of the jet that claimed the ghost
sitting in that cell.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from jetflow.clustering_algorithms import ClusterSequence, Jet
from jetflow.errors import ClusteringInvariantError
from jetflow.grid import DirectionGrid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JetMarker:
    """Jet axis (eta, phi) and pt, drawn on top of the flow map."""
    eta: float
    phi: float
    pt: float


class FlowAccumulator:

    def __init__(self, grid: DirectionGrid, sentinel: float = 0.0):
        self.grid = grid
        self.sentinel = float(sentinel)
        self.centroids: List[JetMarker] = []
        self._written = np.zeros(grid.n_cells, dtype=bool)
        self.reset()

    def reset(self):
        self.grid.reset(self.sentinel)
        self._written[:] = False
        self.centroids = []

    def check_ghost_ownership(self, sequence: ClusterSequence):
        """
        Every ghost of the grid must end up in exactly one finalized jet of
        `sequence`, including jets below the pt threshold.
        """
        cells = [c.cell for jet in sequence.jets for c in jet.ghosts()]
        cells = np.asarray(cells, dtype=int)
        if cells.size and (cells.min() < 0 or cells.max() >= self.grid.n_cells):
            raise ClusteringInvariantError("ghost with a cell index outside the grid")
        counts = np.bincount(cells, minlength=self.grid.n_cells)
        n_missing = int(np.sum(counts == 0))
        n_shared = int(np.sum(counts > 1))
        if n_missing or n_shared:
            raise ClusteringInvariantError(
                f"{n_missing} ghosts not owned by any jet, {n_shared} owned more than once"
            )

    def accumulate(self, jets: List[Jet], sequence: Optional[ClusterSequence] = None) -> Dict[Tuple[int, int], float]:
        """
        Reset the grid, then write each jet's pt into the cells of its ghosts.
        Returns {(ieta, iphi): pt} for the claimed cells. On an invariant
        violation the grid is left reset and the error propagates.
        """
        self.reset()
        try:
            if sequence is not None:
                self.check_ghost_ownership(sequence)

            claimed = {}
            flat = self.grid.values.reshape(-1)
            for jet in jets:
                for ghost in jet.ghosts():
                    cell = int(ghost.cell)
                    if cell < 0 or cell >= self.grid.n_cells:
                        raise ClusteringInvariantError(f"ghost with cell index {cell} outside the grid")
                    if self._written[cell]:
                        raise ClusteringInvariantError(f"cell {self.grid.cell_coords(cell)} claimed by two jets")
                    self._written[cell] = True
                    flat[cell] = jet.pt
                    claimed[self.grid.cell_coords(cell)] = jet.pt
                self.centroids.append(JetMarker(jet.eta, jet.phi, jet.pt))
        except ClusteringInvariantError:
            self.reset()
            raise

        logger.debug("flow map: %d jets claimed %d / %d cells", len(jets), len(claimed), self.grid.n_cells)
        return claimed

    def as_array(self) -> np.ndarray:
        return self.grid.values.copy()

    @property
    def n_claimed(self) -> int:
        return int(np.sum(self._written))
