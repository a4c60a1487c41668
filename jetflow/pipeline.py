# jetflow/pipeline.py
"""
Per-event processing: plain jet finding on the real particles, then a second
pass with the grid ghosts added to build the pT-flow map. Every event owns
its grid, accumulator and cluster sequences; only the sink is shared.
"""
from __future__ import annotations

import logging
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from jetflow.clustering_algorithms import ALGO_REGISTRY, ClusterSequence, Jet, jets_to_arrays, leading_pt
from jetflow.errors import ClusteringInvariantError
from jetflow.flow import FlowAccumulator, JetMarker
from jetflow.grid import DirectionGrid
from jetflow.kinematics import Particle
from jetflow.sources import Event, ParticleSource
from jetflow.utils import ensure_dir, maybe_tqdm, sanitize, save_columnar_npz

logger = logging.getLogger(__name__)

GHOST_INVARIANCE_TOL = 1e-6
# summed ghost pt stays far below this even for the largest allowed ghost_pt
GHOST_INVARIANCE_ABS_TOL = 1e-12


@dataclass(frozen=True)
class HadronMarker:
    eta: float
    phi: float
    pt: float
    charge: int


@dataclass
class FlowRecord:
    """Everything a renderer needs for one (event, algorithm) page."""
    event: int
    algorithm: str
    jets: List[Jet]
    flow_jets: List[Jet]
    cells: Dict[Tuple[int, int], float]
    grid_values: np.ndarray
    eta_edges: np.ndarray
    phi_edges: np.ndarray
    centroids: List[JetMarker]
    hadrons: List[HadronMarker]
    reference_pt: Optional[float] = None

    @property
    def leading_pt(self) -> float:
        return leading_pt(self.jets, default=0.0)


@dataclass
class RunSummary:
    n_events: int = 0
    n_skipped: int = 0
    n_discarded: int = 0
    n_records: int = 0
    failures: List[Tuple[int, str, str]] = field(default_factory=list)


def select_particles(particles: List[Particle], grid: DirectionGrid) -> List[Particle]:
    """Particles inside the grid's eta acceptance ([-eta_max, eta_max))."""
    return [p for p in particles if grid.contains_eta(p.eta)]


def hadron_markers(particles: List[Particle], pt_min: float) -> List[HadronMarker]:
    return [HadronMarker(p.eta, p.phi, p.pt, p.charge) for p in particles if p.pt > pt_min]


class EventProcessor:

    def __init__(self, settings):
        self.settings = settings

    def process(self, event: Event):
        """
        Returns (records, failure). An invariant violation in any variant
        discards the whole event: records is empty and failure is
        (algorithm, message). Otherwise failure is None.
        """
        s = self.settings
        acceptance = DirectionGrid.from_settings(s)
        real = select_particles(event.particles, acceptance)
        hadrons = hadron_markers(real, s.hadron_pt_min)

        records = []
        for algo in s.algorithms:
            try:
                records.append(self.process_variant(event, real, hadrons, algo))
            except ClusteringInvariantError as err:
                logger.warning("event %d (%s): %s -- event discarded", event.index, algo, err)
                return [], (algo, str(err))
        return records, None

    def process_variant(self, event: Event, real, hadrons, algo: str) -> FlowRecord:
        s = self.settings
        plain = ClusterSequence(real, R=s.R, algorithm=algo, strategy=s.strategy)
        jets = plain.inclusive_jets(s.jet_pt_min)

        # fresh grid and ghosts for every pass
        grid = DirectionGrid.from_settings(s)
        ghosts = grid.generate_ghosts(s.ghost_pt)
        seq = ClusterSequence(real + ghosts, R=s.R, algorithm=algo, strategy=s.strategy)
        flow_jets = seq.inclusive_jets(s.jet_pt_min)
        check_ghost_invariance(jets, seq.jets)

        acc = FlowAccumulator(grid)
        cells = acc.accumulate(flow_jets, sequence=seq)

        return FlowRecord(
            event=event.index,
            algorithm=algo,
            jets=jets,
            flow_jets=flow_jets,
            cells=cells,
            grid_values=acc.as_array(),
            eta_edges=grid.eta_edges.copy(),
            phi_edges=grid.phi_edges.copy(),
            centroids=list(acc.centroids),
            hadrons=hadrons,
            reference_pt=event.reference_pt,
        )


def check_ghost_invariance(jets: List[Jet], flow_jets: List[Jet], tol: float = GHOST_INVARIANCE_TOL):
    """
    Every jet of the plain pass must come back from the ghost pass with the
    same real constituents and the same pt within `tol` (relative).
    """
    flow_pt = {tuple(j.source_indices()): j.pt for j in flow_jets if j.real_constituents()}
    for jet in jets:
        members = tuple(jet.source_indices())
        pt = flow_pt.get(members)
        if pt is None:
            raise ClusteringInvariantError(f"ghosts changed the constituents of the jet with pt {jet.pt:.6g}")
        if not math.isclose(pt, jet.pt, rel_tol=tol, abs_tol=GHOST_INVARIANCE_ABS_TOL):
            raise ClusteringInvariantError(f"ghosts moved a jet pt from {jet.pt:.6g} to {pt:.6g}")


# -----------------------------
# Sinks (renderer hand-off)
# -----------------------------
class MemorySink:

    def __init__(self):
        self.records: List[FlowRecord] = []
        self._lock = threading.Lock()

    def write(self, record: FlowRecord):
        with self._lock:
            self.records.append(record)

    def close(self):
        pass


class NpzCacheSink:
    """
    One compressed npz per (event, algorithm) with the flow map, jets,
    centroids and hadron markers, plus a columnar per-event summary.
    """

    summary_dtypes = {
        "event": np.int32,
        "algo": np.int32,
        "njets": np.int32,
        "lead_pt": np.float32,
        "reference_pt": np.float32,
        "ncells": np.int32,
    }

    def __init__(self, out_dir: str):
        self.out_dir = out_dir
        ensure_dir(out_dir)
        self.summary = {k: [] for k in self.summary_dtypes}
        self._lock = threading.Lock()
        self.algo_codes = {name: i for i, name in enumerate(ALGO_REGISTRY)}

    def record_path(self, record: FlowRecord) -> str:
        return os.path.join(self.out_dir, f"flow__evt{record.event:05d}__{sanitize(record.algorithm)}.npz")

    def write(self, record: FlowRecord):
        (jpt, jeta, jphi, jmass), _ = jets_to_arrays(record.jets, 0)
        cen = np.array([(c.eta, c.phi, c.pt) for c in record.centroids], dtype=np.float32).reshape(-1, 3)
        had = np.array([(h.eta, h.phi, h.pt, h.charge) for h in record.hadrons], dtype=np.float32).reshape(-1, 4)
        ref = np.nan if record.reference_pt is None else record.reference_pt

        with self._lock:
            np.savez_compressed(
                self.record_path(record),
                flow=record.grid_values.astype(np.float32),
                eta_edges=record.eta_edges,
                phi_edges=record.phi_edges,
                jet_pt=jpt.astype(np.float32),
                jet_eta=jeta.astype(np.float32),
                jet_phi=jphi.astype(np.float32),
                jet_mass=jmass.astype(np.float32),
                centroids=cen,
                hadrons=had,
                reference_pt=np.float32(ref),
            )
            self.summary["event"].append(record.event)
            self.summary["algo"].append(self.algo_codes[record.algorithm])
            self.summary["njets"].append(len(record.jets))
            self.summary["lead_pt"].append(record.leading_pt)
            self.summary["reference_pt"].append(ref)
            self.summary["ncells"].append(len(record.cells))

    def close(self):
        with self._lock:
            save_columnar_npz(os.path.join(self.out_dir, "summary.npz"), self.summary, self.summary_dtypes)


# -----------------------------
# Event loop
# -----------------------------
def run_events(source: ParticleSource, settings, sink, processor: Optional[EventProcessor] = None) -> RunSummary:
    processor = processor or EventProcessor(settings)
    summary = RunSummary()

    def work(ievt):
        event = source.next_event(ievt)
        if event is None:
            return ievt, None
        return ievt, processor.process(event)

    def collect(ievt, result):
        summary.n_events += 1
        if result is None:
            summary.n_skipped += 1
            logger.info("event %d: no event available, skipped", ievt)
            return
        records, failure = result
        if failure is not None:
            summary.n_discarded += 1
            summary.failures.append((ievt,) + failure)
            return
        for rec in records:
            sink.write(rec)
        summary.n_records += len(records)

    indices = range(len(source))
    if int(settings.n_workers) <= 1:
        for ievt in maybe_tqdm(settings.use_tqdm, indices, total=len(source), desc="events"):
            collect(*work(ievt))
    else:
        with ThreadPoolExecutor(max_workers=int(settings.n_workers)) as executor:
            futures = [executor.submit(work, ievt) for ievt in indices]
            for fut in maybe_tqdm(settings.use_tqdm, as_completed(futures), total=len(futures), desc="events"):
                collect(*fut.result())

    sink.close()
    return summary
