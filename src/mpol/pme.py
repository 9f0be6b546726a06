"""Smooth particle-mesh Ewald for Cartesian multipoles (charge, dipole, quadrupole).

Grid coordinates are u = A r with A = diag(K) box^{-T}. A particle with
fractional multipoles (q, mu_f, Q_f) contributes

  rho(k) += q W(k) + mu_f . grad_u W(k) + Q_f : hess_u W(k),

where W is the tensor product of order-p cardinal B-splines. The potential
on the grid is Phi = IFFT(FFT(rho) G) with the influence function

  G(m) = N/(pi V) exp(-pi^2 |m|^2 / alpha^2) / |m|^2 / (b1(m1) b2(m2) b3(m3)),

G(0) = 0, and b_a the B-spline moduli. Gathering uses the same weights, so
gather is the exact adjoint of spread and E_rec = 1/2 sum_k rho Phi equals
1/2 sum_i L_i phi(r_i). Everything is torch-differentiable; forces follow
from autograd.

Quantities returned here are bare potentials (no Coulomb prefactor).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import torch

from .backend import TorchFFTBackend, TransformBackend
from .constants import FIXED_POINT_SCALE, PME_ORDER
from .exceptions import ConfigurationError
from .frame import fractional_multipoles, lattice_projection

Tensor = torch.Tensor

__all__ = [
    "bspline_weights",
    "bspline_moduli",
    "is_legal_fft_size",
    "legal_fft_size",
    "pme_parameters",
    "LatticeWeights",
    "LatticeEngine",
]

logger = logging.getLogger(__name__)

_MODULI_FLOOR = 1e-7


def bspline_weights(w: Tensor, order: int = PME_ORDER, nderiv: int = 2) -> Tensor:
    """Cardinal B-spline weights and their derivatives.

    For offsets w in [0, 1) returns (..., nderiv+1, order) where entry
    [d, j] is the d-th derivative of M_order evaluated at w + order - 1 - j.
    Derivatives follow from M_n' (x) = M_{n-1}(x) - M_{n-1}(x - 1).
    """
    if nderiv >= order:
        raise ValueError("nderiv must be smaller than the spline order")
    wv = w.unsqueeze(-1)
    zero = torch.zeros_like(wv)
    tables = [torch.ones_like(wv)]
    for m in range(2, order + 1):
        prev = tables[-1]
        left = torch.cat([zero, prev], dim=-1)
        right = torch.cat([prev, zero], dim=-1)
        j = torch.arange(m, dtype=w.dtype, device=w.device)
        tables.append(((wv + (m - 1) - j) * left + (1.0 - wv + j) * right) / (m - 1))
    out = []
    for d in range(nderiv + 1):
        a = tables[order - 1 - d]
        for _ in range(d):
            a = torch.cat([zero, a], dim=-1) - torch.cat([a, zero], dim=-1)
        out.append(a)
    return torch.stack(out, dim=-2)


def bspline_moduli(size: int, order: int = PME_ORDER, dtype: torch.dtype = torch.float64,
                   device: Optional[torch.device] = None) -> Tensor:
    """|sum_k M(k+1) exp(2 pi i m k / K)|^2 for m = 0..K-1, with near-zero values patched."""
    vals = bspline_weights(torch.zeros(1, dtype=dtype, device=device), order, 0)[0, 0]
    coeff = torch.zeros(size, dtype=dtype, device=device)
    count = min(order - 1, size)
    coeff[:count] = vals[: order - 1].flip(0)[:count]
    k = torch.arange(size, dtype=dtype, device=device)
    arg = 2.0 * math.pi * k[:, None] * k[None, :] / size
    mod = (coeff * torch.cos(arg)).sum(-1) ** 2 + (coeff * torch.sin(arg)).sum(-1) ** 2
    small = (mod < _MODULI_FLOOR).nonzero().flatten().tolist()
    for i in small:
        mod[i] = 0.5 * (mod[(i - 1) % size] + mod[(i + 1) % size])
    return mod


def is_legal_fft_size(n: int) -> bool:
    if n < 1:
        return False
    for p in (2, 3, 5, 7):
        while n % p == 0:
            n //= p
    return n == 1


def legal_fft_size(n: int, minimum: int = PME_ORDER) -> int:
    n = max(int(n), int(minimum))
    while not is_legal_fft_size(n):
        n += 1
    return n


def pme_parameters(
    cutoff: float, tolerance: float, box: Tensor, alpha: Optional[float] = None
) -> Tuple[float, Tuple[int, int, int]]:
    """Ewald alpha (nm^-1) and grid size from a real-space cutoff and error tolerance.

    A given alpha is kept and only the grid is derived from it.
    """
    if cutoff <= 0.0:
        raise ConfigurationError("cutoff must be > 0")
    if not (0.0 < tolerance < 0.5):
        raise ConfigurationError(f"ewald error tolerance must lie in (0, 0.5), got {tolerance}")
    if alpha is None:
        alpha = math.sqrt(-math.log(2.0 * tolerance)) / cutoff
    lengths = [float(box[a, a]) for a in range(3)]
    grid = tuple(legal_fft_size(math.ceil(2.0 * alpha * L / (3.0 * tolerance ** 0.2))) for L in lengths)
    return alpha, grid  # type: ignore[return-value]


@dataclass(frozen=True)
class LatticeWeights:
    theta: Tensor  # (n,3,nderiv+1,order)
    index: Tensor  # (n,o,o,o) flat grid index of every stencil point
    cell: Tensor  # (n,) flat index of the stencil origin


def _derivative_components(D: Tensor) -> Tuple[Tensor, Tensor, Tensor]:
    """Split (..., d, d, d) derivative blocks into potential, gradient, Hessian."""
    phi = D[..., 0, 0, 0]
    grad = torch.stack([D[..., 1, 0, 0], D[..., 0, 1, 0], D[..., 0, 0, 1]], dim=-1)
    xx, yy, zz = D[..., 2, 0, 0], D[..., 0, 2, 0], D[..., 0, 0, 2]
    xy, xz, yz = D[..., 1, 1, 0], D[..., 1, 0, 1], D[..., 0, 1, 1]
    hess = torch.stack(
        [torch.stack([xx, xy, xz], -1), torch.stack([xy, yy, yz], -1), torch.stack([xz, yz, zz], -1)],
        dim=-2,
    )
    return phi, grad, hess


class LatticeEngine:
    """Grid state and the spread -> transform -> convolve -> gather pipeline.

    Grid dimensions and B-spline moduli are fixed at construction. The
    influence function is rebuilt only when the box changes.
    """

    def __init__(
        self,
        grid: Sequence[int],
        alpha: float,
        backend: Optional[TransformBackend] = None,
        order: int = PME_ORDER,
        dtype: torch.dtype = torch.float64,
        device: Optional[torch.device] = None,
    ) -> None:
        grid = tuple(int(k) for k in grid)
        if len(grid) != 3:
            raise ConfigurationError(f"grid must have three dimensions, got {grid}")
        for k in grid:
            if k < order or not is_legal_fft_size(k):
                raise ConfigurationError(
                    f"grid dimension {k} must be >= {order} and a product of 2, 3, 5 and 7"
                )
        if not alpha > 0.0:
            raise ConfigurationError(f"ewald alpha must be > 0, got {alpha}")
        self.grid: Tuple[int, int, int] = grid  # type: ignore[assignment]
        self.alpha = float(alpha)
        self.order = int(order)
        self.dtype = dtype
        self.device = device if device is not None else torch.device("cpu")
        self.backend = backend if backend is not None else TorchFFTBackend(device=self.device)
        self.moduli = tuple(bspline_moduli(k, self.order, dtype, self.device) for k in grid)
        self._box: Optional[Tensor] = None
        self._influence: Optional[Tensor] = None
        self._projection: Optional[Tensor] = None
        logger.debug(
            "lattice engine: grid=%s alpha=%.5f order=%d fixed_point=%s",
            self.grid,
            self.alpha,
            self.order,
            self.backend.use_fixed_point_charge_spreading(),
        )

    # ------------------------------------------------------------------ box
    def set_box(self, box: Tensor) -> None:
        box = box.detach().to(dtype=self.dtype, device=self.device)
        if self._box is not None and torch.equal(box, self._box):
            return
        self._box = box.clone()
        self._projection = lattice_projection(self._box, self.grid)
        self._influence = self._build_influence(self._box)

    @property
    def projection(self) -> Tensor:
        if self._projection is None:
            raise ConfigurationError("lattice engine has no box; call set_box first")
        return self._projection

    @property
    def volume(self) -> float:
        if self._box is None:
            raise ConfigurationError("lattice engine has no box; call set_box first")
        return float(torch.det(self._box))

    def _build_influence(self, box: Tensor) -> Tensor:
        K1, K2, K3 = self.grid
        recip = torch.linalg.inv(box).T
        m = [
            torch.fft.fftfreq(k, d=1.0 / k, dtype=self.dtype, device=self.device)
            for k in self.grid
        ]
        mvec = (
            m[0][:, None, None, None] * recip[0]
            + m[1][None, :, None, None] * recip[1]
            + m[2][None, None, :, None] * recip[2]
        )
        m2 = (mvec * mvec).sum(-1)
        m2[0, 0, 0] = 1.0
        denom = (
            self.moduli[0][:, None, None] * self.moduli[1][None, :, None] * self.moduli[2][None, None, :]
        )
        volume = float(torch.det(box))
        pref = K1 * K2 * K3 / (math.pi * volume)
        infl = pref * torch.exp(-(math.pi ** 2) * m2 / self.alpha ** 2) / (m2 * denom)
        infl[0, 0, 0] = 0.0
        return infl

    # -------------------------------------------------------------- weights
    def weights(self, positions: Tensor, nderiv: int = 2) -> LatticeWeights:
        u = positions @ self.projection.T
        base = torch.floor(u.detach())
        theta = bspline_weights(u - base, self.order, nderiv)
        K = torch.tensor(self.grid, device=positions.device)
        start = base.long() - self.order + 1
        offs = torch.arange(self.order, device=positions.device)
        idx = torch.remainder(start[..., None] + offs, K[:, None])  # (n,3,o)
        K2, K3 = self.grid[1], self.grid[2]
        flat = (idx[:, 0, :, None, None] * K2 + idx[:, 1, None, :, None]) * K3 + idx[:, 2, None, None, :]
        origin = torch.remainder(start, K)
        cell = (origin[:, 0] * K2 + origin[:, 1]) * K3 + origin[:, 2]
        return LatticeWeights(theta=theta, index=flat, cell=cell)

    # ---------------------------------------------------------------- spread
    def spread(
        self,
        weights: LatticeWeights,
        charges: Optional[Tensor] = None,
        dipoles: Optional[Tensor] = None,
        quadrupoles: Optional[Tensor] = None,
    ) -> Tensor:
        """Spread fractional multipoles of shape (B,n,...) onto B grids."""
        ref = next(t for t in (charges, dipoles, quadrupoles) if t is not None)
        batch, n = ref.shape[0], ref.shape[1]
        nd = weights.theta.shape[2]
        if quadrupoles is not None and nd < 3:
            raise ValueError("spreading quadrupoles needs second-derivative weights")
        C = ref.new_zeros((batch, n, nd, nd, nd))
        if charges is not None:
            C[:, :, 0, 0, 0] = charges
        if dipoles is not None:
            C[:, :, 1, 0, 0] = dipoles[..., 0]
            C[:, :, 0, 1, 0] = dipoles[..., 1]
            C[:, :, 0, 0, 1] = dipoles[..., 2]
        if quadrupoles is not None:
            C[:, :, 2, 0, 0] = quadrupoles[..., 0, 0]
            C[:, :, 0, 2, 0] = quadrupoles[..., 1, 1]
            C[:, :, 0, 0, 2] = quadrupoles[..., 2, 2]
            C[:, :, 1, 1, 0] = 2.0 * quadrupoles[..., 0, 1]
            C[:, :, 1, 0, 1] = 2.0 * quadrupoles[..., 0, 2]
            C[:, :, 0, 1, 1] = 2.0 * quadrupoles[..., 1, 2]
        t = weights.theta
        W = torch.einsum("znpqr,npi,nqj,nrk->znijk", C, t[:, 0], t[:, 1], t[:, 2])

        order = self.backend.sort_grid_index(weights.cell)
        W = W[:, order].reshape(batch, -1)
        index = weights.index[order].reshape(-1)
        ntot = self.grid[0] * self.grid[1] * self.grid[2]
        grid = W.new_zeros((batch, ntot)).index_add(1, index, W)
        if self.backend.use_fixed_point_charge_spreading():
            fixed = torch.zeros((batch, ntot), dtype=torch.int64, device=W.device)
            fixed = fixed.index_add(1, index, torch.round(W.detach() * FIXED_POINT_SCALE).to(torch.int64))
            grid = grid + (fixed.to(W.dtype) / FIXED_POINT_SCALE - grid).detach()
        return grid.reshape(batch, *self.grid)

    # -------------------------------------------------------------- convolve
    def convolve(self, grid: Tensor) -> Tensor:
        if self._influence is None:
            raise ConfigurationError("lattice engine has no box; call set_box first")
        freq = self.backend.compute_fft(grid, True)
        return self.backend.compute_fft(freq * self._influence, False).real

    # ---------------------------------------------------------------- gather
    def gather(self, weights: LatticeWeights, potential: Tensor, nderiv: int = 2) -> Tensor:
        """Interpolate (B,K1,K2,K3) grids to (B,n,d,d,d) derivative blocks in grid units."""
        batch = potential.shape[0]
        G = potential.reshape(batch, -1)[:, weights.index]
        t = weights.theta[:, :, : nderiv + 1, :]
        return torch.einsum("znijk,npi,nqj,nrk->znpqr", G, t[:, 0], t[:, 1], t[:, 2])

    def _to_cartesian(self, grad_u: Tensor, hess_u: Tensor) -> Tuple[Tensor, Tensor]:
        A = self.projection
        return grad_u @ A, A.T @ hess_u @ A

    # ------------------------------------------------------------- wrappers
    def multipole_potential(
        self,
        positions: Tensor,
        charges: Tensor,
        dipoles: Tensor,
        quadrupoles: Tensor,
    ) -> Tuple[Tensor, Tensor, Tensor, Tensor]:
        """Reciprocal potential, gradient and Hessian at the particles plus the energy.

        Energy is 1/2 sum_k rho Phi (bare units).
        """
        w = self.weights(positions)
        mu_f, q_f = fractional_multipoles(dipoles, quadrupoles, self.projection)
        rho = self.spread(w, charges[None], mu_f[None], q_f[None])
        pot = self.convolve(rho)
        energy = 0.5 * (rho * pot).sum()
        phi, grad_u, hess_u = _derivative_components(self.gather(w, pot, 2)[0])
        grad, hess = self._to_cartesian(grad_u, hess_u)
        return phi, grad, hess, energy

    def dipole_field(self, positions: Tensor, dipoles: Tensor, weights: Optional[LatticeWeights] = None) -> Tensor:
        """Reciprocal field (-grad phi) at the particles from (B,n,3) dipoles."""
        w = weights if weights is not None else self.weights(positions, nderiv=1)
        mu_f, _ = fractional_multipoles(dipoles, None, self.projection)
        pot = self.convolve(self.spread(w, None, mu_f, None))
        D = self.gather(w, pot, 1)
        grad_u = torch.stack([D[..., 1, 0, 0], D[..., 0, 1, 0], D[..., 0, 0, 1]], dim=-1)
        return -(grad_u @ self.projection)

    def potential_at(self, points: Tensor, charges: Tensor, dipoles: Tensor,
                     quadrupoles: Tensor, positions: Tensor) -> Tensor:
        """Reciprocal potential at arbitrary points from particle multipoles."""
        w = self.weights(positions)
        mu_f, q_f = fractional_multipoles(dipoles, quadrupoles, self.projection)
        pot = self.convolve(self.spread(w, charges[None], mu_f[None], q_f[None]))
        wp = self.weights(points, nderiv=0)
        return self.gather(wp, pot, 0)[0, :, 0, 0, 0]
