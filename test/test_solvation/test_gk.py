import pytest
import torch

from mpol.constants import ONE_4PI_EPS0
from mpol.params.types import SolventSettings, Topology
from mpol.realspace import bare_coefficients, build_pairs, permanent_site_derivatives
from mpol.solvation.gk import (
    cavity_energy,
    gk_pairs,
    kirkwood_coefficients,
    reaction_dipole_tensor,
    reaction_field_derivatives,
)

from conftest import point_charges

DTYPE = torch.float64

SOURCES = torch.tensor([[0.21, -0.05, 0.1], [-0.12, 0.3, -0.07]], dtype=DTYPE)
SOURCE_Q = torch.tensor([0.0, 0.4, -0.25], dtype=DTYPE)
SOURCE_MU = torch.tensor([[0.0, 0.0, 0.0], [0.01, -0.02, 0.015], [-0.005, 0.0, 0.02]], dtype=DTYPE)


def _quadrupoles():
    Q = torch.tensor(
        [[[0.0] * 3] * 3, [[1.0, 0.3, -0.2], [0.3, -0.4, 0.1], [-0.2, 0.1, -0.6]],
         [[-0.5, 0.0, 0.2], [0.0, 0.7, -0.3], [0.2, -0.3, -0.2]]],
        dtype=DTYPE,
    )
    return Q * 1e-3


def _reaction_at(probe, born, coefficients):
    positions = torch.cat([probe[None], SOURCES])
    pairs = gk_pairs(positions, born)
    return reaction_field_derivatives(pairs, coefficients, 3, SOURCE_Q, SOURCE_MU, _quadrupoles())


def test_kirkwood_coefficients():
    c0, c1, c2 = kirkwood_coefficients(78.3)
    assert c0 == pytest.approx((1.0 - 78.3) / 78.3)
    assert c1 == pytest.approx(2.0 * (1.0 - 78.3) / (2.0 * 78.3 + 1.0))
    assert c2 == pytest.approx(3.0 * (1.0 - 78.3) / (3.0 * 78.3 + 2.0))
    assert kirkwood_coefficients(2.0, 2.0) == (0.0, 0.0, 0.0)


def test_reaction_field_derivatives_match_autograd():
    born = torch.tensor([0.15, 0.2, 0.18], dtype=DTYPE)
    coeffs = kirkwood_coefficients(78.3)
    probe = torch.tensor([0.02, 0.04, -0.03], dtype=DTYPE)

    def potential(x):
        return _reaction_at(x, born, coeffs)[0][0]

    _, grad, hess = _reaction_at(probe, born, coeffs)
    jac = torch.autograd.functional.jacobian(potential, probe)
    hes = torch.autograd.functional.hessian(potential, probe)
    assert torch.allclose(grad[0], jac, rtol=1e-8, atol=1e-8)
    assert torch.allclose(hess[0], hes, rtol=1e-7, atol=1e-6)


def test_vacuum_limit_reduces_to_multipole_potentials():
    # tiny Born radii make f = r for all non-self pairs
    born = torch.full((3,), 1e-6, dtype=DTYPE)
    probe = torch.tensor([0.02, 0.04, -0.03], dtype=DTYPE)
    phi, grad, hess = _reaction_at(probe, born, (1.0, 1.0, 1.0))
    positions = torch.cat([probe[None], SOURCES])
    pairs = build_pairs(positions)
    ref = permanent_site_derivatives(
        pairs, bare_coefficients(pairs.dist, 4), 3, SOURCE_Q, SOURCE_MU, _quadrupoles()
    )
    assert float(phi[0]) == pytest.approx(float(ref[0][0]), rel=1e-8)
    assert torch.allclose(grad[0], ref[1][0], rtol=1e-8, atol=1e-10)
    assert torch.allclose(hess[0], ref[2][0], rtol=1e-7, atol=1e-8)


def test_reaction_dipole_tensor_is_symmetric():
    positions = torch.cat([torch.zeros((1, 3), dtype=DTYPE), SOURCES])
    born = torch.tensor([0.15, 0.2, 0.18], dtype=DTYPE)
    pairs = gk_pairs(positions, born)
    T = reaction_dipole_tensor(pairs, kirkwood_coefficients(78.3)[1])
    assert torch.allclose(T, T.transpose(-1, -2))
    # the self block opposes the dipole that creates it
    self_block = T[(pairs.i == pairs.j)]
    assert bool((torch.linalg.eigvalsh(self_block) > 0).all())


def test_cavity_energy_is_positive_with_default_factor():
    radii = torch.tensor([0.2], dtype=DTYPE)
    factor = SolventSettings(radii=radii, scale_factors=torch.ones(1, dtype=DTYPE)).surface_area_factor
    e = cavity_energy(radii, radii.clone(), 0.14, factor)
    assert float(e) == pytest.approx(170.351730 / 6.0 * 0.34 ** 2)
    # larger Born radius means more buried, smaller term
    assert float(cavity_energy(radii, radii * 1.5, 0.14, factor)) < float(e)


def test_single_ion_born_energy(build_engine):
    radii = torch.tensor([0.2], dtype=DTYPE)
    solvent = SolventSettings(radii=radii, scale_factors=torch.ones(1, dtype=DTYPE), include_cavity_term=False)
    engine = build_engine(
        Topology(masses=torch.ones(1, dtype=DTYPE)), point_charges([1.0]),
        torch.zeros((1, 3), dtype=DTYPE), solvent=solvent,
    )
    energy = engine.execute(include_forces=False)
    c0 = (1.0 - 78.3) / 78.3
    assert energy == pytest.approx(0.5 * ONE_4PI_EPS0 * c0 / 0.2, rel=1e-10)
    assert engine.report.terms["permanent_reaction_field"] == pytest.approx(energy)
    assert "cavity" not in engine.report.terms


def test_solvation_lowers_ion_pair_energy(build_engine):
    positions = torch.tensor([[0.0, 0.0, 0.0], [0.4, 0.0, 0.0]], dtype=DTYPE)
    topology = Topology(masses=torch.ones(2, dtype=DTYPE))
    params = point_charges([1.0, -1.0], [1e-3, 1e-3])
    reference = build_engine(topology, params, positions, induced_epsilon=1e-10)
    vacuum = reference.execute(include_forces=False)
    solvent = SolventSettings(
        radii=torch.tensor([0.2, 0.2], dtype=DTYPE),
        scale_factors=torch.full((2,), 0.69, dtype=DTYPE),
        include_cavity_term=False,
    )
    solvated = build_engine(topology, params, positions, solvent=solvent, induced_epsilon=1e-10)
    energy = solvated.execute(include_forces=False)
    assert energy < vacuum
    terms = solvated.report.terms
    assert terms["permanent_reaction_field"] < 0.0
    # the vacuum channels solve the same problem as a vacuum run
    assert terms["polarization_vacuum"] == pytest.approx(reference.report.terms["polarization"], rel=1e-6)
    channels = solvated.get_induced_dipole_channels()
    assert set(channels) == {"d", "p", "gk_d", "gk_p"}
    assert torch.allclose(solvated.get_induced_dipoles(), channels["gk_d"])
