import warnings

import pytest
import torch

from mpol.constants import DEBYE_PER_E_NM
from mpol.exceptions import ConvergenceWarning
from mpol.induced import DIISHistory, rms_debye, solve_direct, solve_extrapolated, solve_mutual
from mpol.realspace import apply_dipole_tensor, bare_coefficients, build_pairs, dipole_tensor

DTYPE = torch.float64

POSITIONS = torch.tensor(
    [[0.0, 0.0, 0.0], [0.3, 0.0, 0.0], [0.0, 0.32, 0.05], [0.28, 0.3, -0.1]], dtype=DTYPE
)


def _operator(positions=POSITIONS):
    pairs = build_pairs(positions)
    T = dipole_tensor(pairs, bare_coefficients(pairs.dist, 2))
    n = positions.shape[0]
    return lambda mu: apply_dipole_tensor(pairs, T, mu, n)


def _external(n=4, channels=2):
    field = torch.tensor([0.5, -1.0, 2.0], dtype=DTYPE)
    return field.expand(channels, n, 3).clone()


def test_mutual_dipoles_satisfy_fixed_point():
    alpha = torch.full((4,), 1e-3, dtype=DTYPE)
    op = _operator()
    fixed = _external()
    res = solve_mutual(fixed, alpha, op, epsilon=1e-10, max_iterations=100)
    assert res.converged
    residual = alpha[:, None] * (fixed + op(res.dipoles)) - res.dipoles
    assert rms_debye(residual) < 1e-8
    # channels with identical input stay identical
    assert torch.allclose(res.dipoles[0], res.dipoles[1])


def test_plain_iteration_residual_strictly_decreases():
    alpha = torch.full((4,), 1e-3, dtype=DTYPE)
    res = solve_mutual(_external(), alpha, _operator(), epsilon=1e-12, max_iterations=200, use_diis=False)
    assert res.converged
    hist = res.history
    assert all(b < a for a, b in zip(hist, hist[1:]))


def test_diis_needs_no_more_iterations_than_plain():
    alpha = torch.full((4,), 2.5e-3, dtype=DTYPE)
    op = _operator()
    diis = solve_mutual(_external(), alpha, op, epsilon=1e-8, max_iterations=200)
    plain = solve_mutual(_external(), alpha, op, epsilon=1e-8, max_iterations=200, use_diis=False)
    assert diis.converged and plain.converged
    assert diis.iterations <= plain.iterations
    assert torch.allclose(diis.dipoles, plain.dipoles, atol=1e-8)


@pytest.mark.parametrize("polarizability", [1e-3, 2.5e-3])
def test_diis_residual_strictly_decreases(polarizability):
    alpha = torch.full((4,), polarizability, dtype=DTYPE)
    res = solve_mutual(_external(), alpha, _operator(), epsilon=1e-8, max_iterations=200)
    assert res.converged
    hist = res.history
    assert len(hist) > 1
    assert all(b < a for a, b in zip(hist, hist[1:]))


def test_non_convergence_warns_and_keeps_last_iterate():
    alpha = torch.full((4,), 2.5e-3, dtype=DTYPE)
    with pytest.warns(ConvergenceWarning):
        res = solve_mutual(_external(), alpha, _operator(), epsilon=1e-12, max_iterations=2)
    assert not res.converged
    assert res.iterations == 2
    assert res.rms_error > 1e-12
    assert torch.isfinite(res.dipoles).all()


def test_zero_polarizability_converges_immediately():
    alpha = torch.zeros(4, dtype=DTYPE)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        res = solve_mutual(_external(), alpha, _operator(), epsilon=1e-5, max_iterations=10)
    assert res.converged and res.iterations == 1
    assert float(res.dipoles.abs().sum()) == 0.0


def test_direct_dipoles():
    alpha = torch.tensor([1e-3, 2e-3, 0.0, 5e-4], dtype=DTYPE)
    fixed = _external()
    res = solve_direct(fixed, alpha)
    assert torch.allclose(res.dipoles, alpha[:, None] * fixed)
    assert res.iterations == 0


def test_extrapolated_dipoles_approach_mutual():
    alpha = torch.full((4,), 5e-4, dtype=DTYPE)
    op = _operator()
    mutual = solve_mutual(_external(), alpha, op, epsilon=1e-10, max_iterations=100)
    opt = solve_extrapolated(_external(), alpha, op, (-0.154, 0.017, 0.658, 0.474))
    rel = torch.linalg.vector_norm(opt.dipoles - mutual.dipoles) / torch.linalg.vector_norm(mutual.dipoles)
    assert float(rel) < 0.02
    assert opt.iterations == 3
    # a single coefficient of one is the direct model
    first = solve_extrapolated(_external(), alpha, op, (1.0,))
    assert torch.allclose(first.dipoles, alpha[:, None] * _external())


def test_extrapolated_dipoles_stay_in_graph():
    alpha = torch.full((4,), 1e-3, dtype=DTYPE)
    fixed = _external().requires_grad_(True)
    res = solve_extrapolated(fixed, alpha, _operator(), (0.5, 0.5))
    (g,) = torch.autograd.grad(res.dipoles.sum(), fixed)
    assert float(g.abs().sum()) > 0.0


def test_diis_history_ring_buffer():
    hist = DIISHistory(3, (2,), DTYPE, torch.device("cpu"))
    for k in range(5):
        x = torch.tensor([float(k), 1.0], dtype=DTYPE)
        e = torch.tensor([1.0 / (k + 1), (-1.0) ** k], dtype=DTYPE)
        hist.push(x, e)
    assert len(hist) == 3
    slots = hist._slots().tolist()
    assert sorted(slots) == [0, 1, 2]
    # oldest surviving entry is the third push
    assert float(hist._iterates[slots[0], 0]) == 2.0
    c = hist.coefficients()
    assert c is not None
    assert float(c.sum()) == pytest.approx(1.0)
    hist.clear()
    assert len(hist) == 0


def test_diis_extrapolation_cancels_linear_residuals():
    hist = DIISHistory(4, (2,), DTYPE, torch.device("cpu"))
    hist.push(torch.tensor([1.0, 0.0], dtype=DTYPE), torch.tensor([1.0, 0.0], dtype=DTYPE))
    hist.push(torch.tensor([0.0, 1.0], dtype=DTYPE), torch.tensor([-1.0, 0.0], dtype=DTYPE))
    x = hist.extrapolate()
    assert torch.allclose(x, torch.tensor([0.5, 0.5], dtype=DTYPE))


def test_rms_is_reported_in_debye():
    delta = torch.zeros((2, 4, 3), dtype=DTYPE)
    delta[1, :, 0] = 0.01
    assert rms_debye(delta) == pytest.approx(0.01 * DEBYE_PER_E_NM)
