# example_config.py

# -----------------------------
# Event source
#   kind = "toy":  ToyEventSource keyword arguments
#   kind = "root": path / tree_name / branches (see jetflow.sources.DEFAULT_BRANCHES)
# -----------------------------
SOURCE = {
    "kind": "toy",
    "seed": 1234,
    "pt_hat_min": 50.0,
    "n_soft": 150,
    "failure_rate": 0.0,
}

# SOURCE = {
#     "kind": "root",
#     "path": "data/pp_5TeV_hardQCD.root",
#     "tree_name": "Events",
#     "branches": {
#         "px": "Particle_px",
#         "py": "Particle_py",
#         "pz": "Particle_pz",
#         "e": "Particle_e",
#         "charge": "Particle_charge",
#         "final_hadron": "Particle_isFinalHadron",
#         "reference_pt": "HardParton_pt",
#     },
# }

# -----------------------------
# Runtime control
# -----------------------------
RUNTIME = {
    "max_events": 25,
    "n_workers": 1,
    "use_tqdm": True,
}

# -----------------------------
# Jet clustering
# -----------------------------
CLUSTERING = {
    "R": 0.4,
    "algorithms": {
        "antikt": True,
        "kt": True,
        "cambridge": True,
    },
    "jet_pt_min": 0.0,
    "hadron_pt_min": 0.0,     # display markers only
    "strategy": "nn",         # "nn" (tiled nearest neighbour) | "naive"
}

# -----------------------------
# pT-flow grid (phi always spans (-pi, pi])
# -----------------------------
GRID = {
    "eta_max": 5.0,
    "n_eta": 100,
    "n_phi": 63,
    "ghost_pt": 1e-100,
}

# -----------------------------
# Output directories
# -----------------------------
OUTDIR = "outputs"
