from dataclasses import replace

import pytest
import torch

from mpol.backend import TorchFFTBackend
from mpol.constants import ONE_4PI_EPS0
from mpol.electrostatics import site_energy
from mpol.frame import fractional_multipoles
from mpol.pbc.ewald import ewald_energy, ewald_reciprocal_energy
from mpol.params.types import Topology
from mpol.pme import LatticeEngine

from conftest import point_charges

DTYPE = torch.float64
CUBIC = torch.eye(3, dtype=DTYPE) * 2.0
TRICLINIC = torch.tensor([[2.0, 0.0, 0.0], [0.4, 2.1, 0.0], [-0.3, 0.2, 2.2]], dtype=DTYPE)


def _random_system(n=8, seed=5, box=CUBIC):
    g = torch.Generator().manual_seed(seed)
    frac = torch.rand((n, 3), generator=g, dtype=DTYPE)
    positions = frac @ box
    q = torch.rand(n, generator=g, dtype=DTYPE) - 0.5
    q = q - q.mean()
    mu = (torch.rand((n, 3), generator=g, dtype=DTYPE) - 0.5) * 0.02
    Q = (torch.rand((n, 3, 3), generator=g, dtype=DTYPE) - 0.5) * 2e-3
    Q = 0.5 * (Q + Q.transpose(-1, -2))
    Q = Q - torch.eye(3, dtype=DTYPE) * Q.diagonal(dim1=-2, dim2=-1).mean(-1)[:, None, None]
    return positions, q, mu, Q


def _engine(grid, alpha=3.0, box=CUBIC, backend=None):
    lat = LatticeEngine(grid, alpha, backend=backend)
    lat.set_box(box)
    return lat


def test_spread_and_gather_are_adjoint():
    positions, q, mu, Q = _random_system(box=TRICLINIC)
    lat = _engine((20, 24, 25), box=TRICLINIC)
    phi, grad, hess, energy = lat.multipole_potential(positions, q, mu, Q)
    assert float(energy) == pytest.approx(0.5 * float(site_energy(q, mu, Q, phi, grad, hess)), rel=1e-12)


def test_transform_round_trip():
    grid = torch.rand((1, 6, 8, 10), dtype=DTYPE)
    backend = TorchFFTBackend(fixed_point=False)
    back = backend.compute_fft(backend.compute_fft(grid, True), False)
    assert torch.allclose(back.real, grid, atol=1e-14)


@pytest.mark.parametrize("box", [CUBIC, TRICLINIC], ids=["cubic", "triclinic"])
def test_reciprocal_energy_matches_direct_ewald(box):
    positions, q, mu, Q = _random_system(box=box)
    lat = _engine((48, 48, 48), box=box)
    _, _, _, e_pme = lat.multipole_potential(positions, q, mu, Q)
    e_ref = ewald_reciprocal_energy(positions, box, 3.0, q, mu, Q, m_cut=6.0)
    assert abs(float(e_pme) - float(e_ref)) < 5e-4 * max(1.0, abs(float(e_ref)))


def test_reciprocal_error_decreases_with_grid():
    positions, q, mu, Q = _random_system()
    e_ref = float(ewald_reciprocal_energy(positions, CUBIC, 3.0, q, mu, Q, m_cut=6.0))
    errors = []
    for k in (12, 20, 32):
        _, _, _, e = _engine((k, k, k)).multipole_potential(positions, q, mu, Q)
        errors.append(abs(float(e) - e_ref))
    assert errors[0] > errors[1] > errors[2]


def test_total_engine_energy_matches_ewald_sum(build_engine):
    positions, q, mu, Q = _random_system()
    params = replace(point_charges(q.tolist()), dipoles=mu, quadrupoles=Q)
    engine = build_engine(
        Topology(masses=torch.ones(len(q), dtype=DTYPE)), params, positions, CUBIC,
        nonbonded_method="pme", cutoff=0.9, ewald_alpha=3.0, grid=(48, 48, 48),
    )
    energy = engine.execute(include_forces=False)
    real, recip, self_term = ewald_energy(positions, CUBIC, 3.0, q, mu, Q, r_cut=0.9, m_cut=6.0)
    expected = ONE_4PI_EPS0 * float(real + recip + self_term)
    assert energy == pytest.approx(expected, rel=5e-4, abs=5e-2)
    terms = engine.report.terms
    assert terms["permanent_self"] == pytest.approx(ONE_4PI_EPS0 * float(self_term))
    assert terms["permanent_real"] == pytest.approx(ONE_4PI_EPS0 * float(real))


def test_fixed_point_spreading_is_reproducible():
    positions, q, mu, Q = _random_system()
    fixed = _engine((24, 24, 24), backend=TorchFFTBackend(fixed_point=True))
    plain = _engine((24, 24, 24), backend=TorchFFTBackend(fixed_point=False))
    w = fixed.weights(positions)
    mu_f, q_f = fractional_multipoles(mu, Q, fixed.projection)
    a = fixed.spread(w, q[None], mu_f[None], q_f[None])
    b = fixed.spread(w, q[None], mu_f[None], q_f[None])
    assert torch.equal(a, b)
    ref = plain.spread(w, q[None], mu_f[None], q_f[None])
    assert torch.allclose(a, ref, atol=1e-8)
    _, _, _, e_fixed = fixed.multipole_potential(positions, q, mu, Q)
    _, _, _, e_plain = plain.multipole_potential(positions, q, mu, Q)
    assert float(e_fixed) == pytest.approx(float(e_plain), rel=1e-7)


def test_fixed_point_spreading_keeps_gradients():
    positions, q, mu, Q = _random_system()
    lat = _engine((24, 24, 24), backend=TorchFFTBackend(fixed_point=True))
    pos = positions.clone().requires_grad_(True)
    _, _, _, energy = lat.multipole_potential(pos, q, mu, Q)
    (grad,) = torch.autograd.grad(energy, pos)
    assert torch.isfinite(grad).all()
    assert float(grad.abs().sum()) > 0.0


def test_influence_cached_per_box():
    lat = _engine((16, 16, 16))
    first = lat._influence
    lat.set_box(CUBIC.clone())
    assert lat._influence is first
    lat.set_box(CUBIC * 1.1)
    assert lat._influence is not first
    assert lat.volume == pytest.approx(2.2 ** 3)


def test_potential_at_points_matches_site_potential():
    positions, q, mu, Q = _random_system()
    lat = _engine((32, 32, 32))
    phi, _, _, _ = lat.multipole_potential(positions, q, mu, Q)
    at_sites = lat.potential_at(positions, q, mu, Q, positions)
    assert torch.allclose(at_sites, phi, atol=1e-10)
