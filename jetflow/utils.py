# jetflow/utils.py
import os
import numpy as np
import awkward as ak
import uproot
from tqdm import tqdm


# -------------------------
# IO helpers
# -------------------------
def ensure_dir(path):
    os.makedirs(path, exist_ok=True)

def load_arrays(root_path, tree_name, branch_list, library="ak"):
    with uproot.open(root_path) as f:
        return f[tree_name].arrays(branch_list, library=library)

def save_columnar_npz(outpath: str, cols: dict, dtypes: dict):
    """
    cols: dict key -> python list
    dtypes: dict key -> numpy dtype
    """
    out = {}
    for k, v in cols.items():
        out[k] = np.asarray(v, dtype=dtypes[k])
    np.savez_compressed(outpath, **out)


def sanitize(s: str) -> str:
    return (
        s.replace(" ", "_")
         .replace("/", "_")
         .replace("(", "")
         .replace(")", "")
         .replace(",", "")
         .replace("=", "")
         .replace("|", "")
         .replace("<", "lt")
         .replace(".", "p")
    )


def maybe_tqdm(use_tqdm, it, total=None, desc=None):
    if use_tqdm:
        return tqdm(it, total=total, desc=desc)
    return it


def scalar_item(x, default=None):
    if x is None:
        return default
    if isinstance(x, ak.highlevel.Array):
        x = ak.to_numpy(x)
    if isinstance(x, np.generic):
        return x.item()
    if isinstance(x, np.ndarray):
        if x.ndim == 0:
            return x.item()
        if x.size == 0:
            return default
        return x.reshape(-1)[0].item()
    if isinstance(x, (list, tuple)):
        if len(x) == 0:
            return default
        return scalar_item(x[0], default=default)
    return x
