import numpy as np
import pytest

from jetflow.kinematics import FourMomentum, Particle


def make_particle(pt, eta, phi, index=0, charge=0, mass=0.0):
    return Particle(FourMomentum.from_pt_eta_phi_m(pt, eta, phi, mass), charge=charge, index=index)


def random_event(rng, n=40, eta_max=2.5):
    """Two hard sprays plus soft particles, all massless."""
    pts, etas, phis = [], [], []
    for eta0, phi0, ptot in ((rng.uniform(-1, 1), rng.uniform(-3, 3), 80.0),
                             (rng.uniform(-1, 1), rng.uniform(-3, 3), 50.0)):
        k = n // 4
        pts.append(ptot * rng.dirichlet(np.ones(k)))
        etas.append(eta0 + rng.normal(0, 0.2, k))
        phis.append(phi0 + rng.normal(0, 0.2, k))
    m = n - 2 * (n // 4)
    pts.append(rng.exponential(1.0, m))
    etas.append(rng.uniform(-eta_max, eta_max, m))
    phis.append(rng.uniform(-np.pi, np.pi, m))
    pt = np.concatenate(pts)
    eta = np.clip(np.concatenate(etas), -eta_max + 0.01, eta_max - 0.01)
    phi = np.concatenate(phis)
    return [make_particle(float(a), float(b), float(c), index=i) for i, (a, b, c) in enumerate(zip(pt, eta, phi))]


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)
