"""Induced-dipole solvers.

All solvers work on stacked channels of shape (C, n, 3): the direct and
polar sets, plus the two solvated sets when a reaction field is active. The
field operator maps dipoles of that shape to the mutual field they create;
channels never mix inside the operator, only their iteration count is
shared.

- mutual: fixed-point iteration mu <- alpha (E_fixed + E_mut[mu]) with
  Pulay (DIIS) extrapolation over a bounded history of residuals.
- extrapolated: truncated perturbation series
    mu^(0) = alpha E_fixed,  mu^(k) = alpha E_mut[mu^(k-1)],
    mu = sum_k (sum_{j >= k} c_j) mu^(k),
  evaluated in the autograd graph of its inputs.
- direct: mu = alpha E_fixed.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import torch

from .constants import DEBYE_PER_E_NM, MAX_DIIS_HISTORY
from .exceptions import ConvergenceWarning

Tensor = torch.Tensor
FieldOperator = Callable[[Tensor], Tensor]

__all__ = [
    "InducedDipoleResult",
    "DIISHistory",
    "rms_debye",
    "solve_direct",
    "solve_mutual",
    "solve_extrapolated",
]

logger = logging.getLogger(__name__)


@dataclass
class InducedDipoleResult:
    dipoles: Tensor  # (C,n,3)
    iterations: int
    converged: bool
    rms_error: float  # Debye
    history: List[float] = field(default_factory=list)


def rms_debye(delta: Tensor) -> float:
    """Largest per-channel RMS of (C,n,3) dipole changes, in Debye."""
    n = max(delta.shape[-2], 1)
    per_channel = torch.sqrt((delta.detach() ** 2).sum(dim=(-1, -2)) / n)
    return float(per_channel.max()) * DEBYE_PER_E_NM


class DIISHistory:
    """Fixed-capacity ring buffer of iterates and residuals.

    `extrapolate` minimizes |sum_k c_k e_k|^2 subject to sum_k c_k = 1 and
    returns sum_k c_k x_k.
    """

    def __init__(self, capacity: int, shape: Sequence[int], dtype: torch.dtype, device: torch.device) -> None:
        if capacity < 1:
            raise ValueError("DIIS capacity must be >= 1")
        self.capacity = int(capacity)
        self._iterates = torch.zeros((self.capacity, *shape), dtype=dtype, device=device)
        self._residuals = torch.zeros_like(self._iterates)
        self._length = 0
        self._head = 0

    def __len__(self) -> int:
        return self._length

    def clear(self) -> None:
        self._length = 0
        self._head = 0

    def push(self, iterate: Tensor, residual: Tensor) -> None:
        self._iterates[self._head] = iterate.detach()
        self._residuals[self._head] = residual.detach()
        self._head = (self._head + 1) % self.capacity
        self._length = min(self._length + 1, self.capacity)

    def _slots(self) -> Tensor:
        start = (self._head - self._length) % self.capacity
        return (torch.arange(self._length) + start) % self.capacity

    def coefficients(self) -> Optional[Tensor]:
        slots = self._slots()
        e = self._residuals[slots].reshape(self._length, -1)
        k = self._length
        B = e @ e.T
        scale = B.diagonal().abs().max()
        if not torch.isfinite(scale) or float(scale) == 0.0:
            return None
        A = torch.zeros((k + 1, k + 1), dtype=B.dtype, device=B.device)
        A[:k, :k] = B / scale
        A[:k, k] = -1.0
        A[k, :k] = -1.0
        rhs = torch.zeros(k + 1, dtype=B.dtype, device=B.device)
        rhs[k] = -1.0
        try:
            sol = torch.linalg.solve(A, rhs)
        except RuntimeError:
            # singular history
            return None
        c = sol[:k]
        if not torch.isfinite(c).all():
            return None
        return c

    def extrapolate(self) -> Optional[Tensor]:
        c = self.coefficients()
        if c is None:
            return None
        x = self._iterates[self._slots()]
        return torch.tensordot(c, x, dims=1)


def solve_direct(fixed_fields: Tensor, polarizabilities: Tensor) -> InducedDipoleResult:
    return InducedDipoleResult(
        dipoles=polarizabilities[:, None] * fixed_fields, iterations=0, converged=True, rms_error=0.0
    )


def solve_mutual(
    fixed_fields: Tensor,
    polarizabilities: Tensor,
    field_operator: FieldOperator,
    epsilon: float,
    max_iterations: int,
    use_diis: bool = True,
    history_size: int = MAX_DIIS_HISTORY,
) -> InducedDipoleResult:
    """Self-consistent dipoles; non-convergence is reported, never raised.

    Runs without building an autograd graph.
    """
    alpha = polarizabilities.detach()[:, None]
    fixed = fixed_fields.detach()
    with torch.no_grad():
        mu = alpha * fixed
        history = DIISHistory(history_size, mu.shape, mu.dtype, mu.device) if use_diis else None
        errors: List[float] = []
        converged = False
        it = 0
        rms = float("inf")
        for it in range(1, max_iterations + 1):
            trial = alpha * (fixed + field_operator(mu))
            residual = trial - mu
            rms = rms_debye(residual)
            errors.append(rms)
            logger.debug("induced dipoles: iteration %d rms=%.3e D", it, rms)
            if rms < epsilon:
                mu = trial
                converged = True
                break
            mu = trial
            if history is not None:
                history.push(trial, residual)
                if len(history) > 1:
                    accel = history.extrapolate()
                    if accel is not None:
                        mu = accel
    if not converged:
        msg = (
            f"induced dipoles not converged after {max_iterations} iterations "
            f"(rms {rms:.3e} D, target {epsilon:.1e} D)"
        )
        logger.warning(msg)
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
    return InducedDipoleResult(dipoles=mu, iterations=it, converged=converged, rms_error=rms, history=errors)


def solve_extrapolated(
    fixed_fields: Tensor,
    polarizabilities: Tensor,
    field_operator: FieldOperator,
    coefficients: Sequence[float],
) -> InducedDipoleResult:
    """Perturbation series of fixed order; keeps the autograd graph of its inputs."""
    if len(coefficients) < 1:
        raise ValueError("at least one extrapolation coefficient is required")
    alpha = polarizabilities[:, None]
    terms = [alpha * fixed_fields]
    for order in range(1, len(coefficients)):
        terms.append(alpha * field_operator(terms[-1]))
        logger.debug("extrapolated dipoles: order %d", order)
    weights = [sum(coefficients[k:]) for k in range(len(coefficients))]
    mu = sum(w * t for w, t in zip(weights, terms))
    # residual of the truncated series, reported for diagnostics
    with torch.no_grad():
        rms = rms_debye(alpha * (fixed_fields + field_operator(mu)) - mu)
    return InducedDipoleResult(dipoles=mu, iterations=len(coefficients) - 1, converged=True, rms_error=rms)
