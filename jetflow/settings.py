# jetflow/settings.py
"""
Config modules (see configs/example_config.py) are plain python files with
dict sections. They are turned into one validated, immutable FlowSettings
value before any event is touched; every threshold reaches the clustering
and accumulation code through it.
"""
from __future__ import annotations

import importlib.util
import math
import os
from dataclasses import dataclass, field
from typing import Tuple

from jetflow.clustering_algorithms import ALGO_REGISTRY, SEARCH_REGISTRY
from jetflow.errors import ConfigurationError
from jetflow.grid import GHOST_PT


# -----------------------------
# Config loading
# -----------------------------
def load_cfg_from_path(cfg_path: str):
    cfg_path = os.path.abspath(cfg_path)
    if not os.path.exists(cfg_path):
        raise FileNotFoundError(f"Config not found: {cfg_path}")
    spec = importlib.util.spec_from_file_location("user_cfg", cfg_path)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"Could not load config: {cfg_path}")
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def config_tag_from_path(cfg_path: str) -> str:
    base = os.path.basename(cfg_path)
    if base.endswith(".py"):
        base = base[:-3]
    return base


# -----------------------------
# Settings value
# -----------------------------
@dataclass(frozen=True)
class FlowSettings:
    R: float = 0.4
    algorithms: Tuple[str, ...] = ("antikt", "kt", "cambridge")
    jet_pt_min: float = 0.0
    hadron_pt_min: float = 0.0
    strategy: str = "nn"
    eta_max: float = 5.0
    n_eta: int = 100
    n_phi: int = 63
    ghost_pt: float = GHOST_PT
    max_events: int = 25
    n_workers: int = 1
    use_tqdm: bool = True
    outdir: str = "outputs"
    source: dict = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "algorithms", tuple(self.algorithms))
        self.validate()

    def validate(self):
        if not _finite(self.R) or self.R <= 0.0:
            raise ConfigurationError(f"R must be a positive number, got {self.R!r}")
        if len(self.algorithms) == 0:
            raise ConfigurationError("no algorithm variants selected")
        unknown = [a for a in self.algorithms if a not in ALGO_REGISTRY]
        if unknown:
            raise ConfigurationError(f"unknown algorithm variants {unknown}, expected a subset of {sorted(ALGO_REGISTRY)}")
        if len(set(self.algorithms)) != len(self.algorithms):
            raise ConfigurationError(f"duplicate algorithm variants in {list(self.algorithms)}")
        if self.strategy not in SEARCH_REGISTRY:
            raise ConfigurationError(f"unknown search strategy '{self.strategy}', expected one of {sorted(SEARCH_REGISTRY)}")
        for name in ("jet_pt_min", "hadron_pt_min"):
            v = getattr(self, name)
            if not _finite(v) or v < 0.0:
                raise ConfigurationError(f"{name} must be a finite number >= 0, got {v!r}")
        if not _finite(self.eta_max) or self.eta_max <= 0.0:
            raise ConfigurationError(f"eta_max must be positive, got {self.eta_max!r}")
        if int(self.n_eta) <= 0 or int(self.n_phi) <= 0:
            raise ConfigurationError(f"grid bin counts must be positive, got {self.n_eta} x {self.n_phi}")
        # pt^2 and 1/pt^2 of a ghost must stay finite and non-zero
        if not _finite(self.ghost_pt) or not (1e-150 <= self.ghost_pt <= 1e-20):
            raise ConfigurationError(f"ghost_pt must lie in [1e-150, 1e-20], got {self.ghost_pt!r}")
        if int(self.max_events) < 0:
            raise ConfigurationError(f"max_events must be >= 0, got {self.max_events}")
        if int(self.n_workers) < 1:
            raise ConfigurationError(f"n_workers must be >= 1, got {self.n_workers}")


def _finite(v) -> bool:
    try:
        return math.isfinite(float(v))
    except (TypeError, ValueError):
        return False


def settings_from_cfg(cfg) -> FlowSettings:
    clus = getattr(cfg, "CLUSTERING", {})
    grid = getattr(cfg, "GRID", {})
    runtime = getattr(cfg, "RUNTIME", {})

    algos = clus.get("algorithms", FlowSettings.algorithms)
    if isinstance(algos, dict):
        algos = [name for name, enabled in algos.items() if enabled]

    return FlowSettings(
        R=float(clus.get("R", 0.4)),
        algorithms=tuple(algos),
        jet_pt_min=float(clus.get("jet_pt_min", 0.0)),
        hadron_pt_min=float(clus.get("hadron_pt_min", 0.0)),
        strategy=str(clus.get("strategy", "nn")),
        eta_max=float(grid.get("eta_max", 5.0)),
        n_eta=int(grid.get("n_eta", 100)),
        n_phi=int(grid.get("n_phi", 63)),
        ghost_pt=float(grid.get("ghost_pt", GHOST_PT)),
        max_events=int(runtime.get("max_events", 25) or 0),
        n_workers=int(runtime.get("n_workers", 1)),
        use_tqdm=bool(runtime.get("use_tqdm", True)),
        outdir=str(getattr(cfg, "OUTDIR", "outputs")),
        source=dict(getattr(cfg, "SOURCE", {})),
    )
