"""Generalized-Kirkwood reaction field of Cartesian multipoles.

With d = x - r_j, s = d.d and Still's pair function

  f^2 = s + a_i a_j exp(-s / (k a_i a_j)),   k = 2.455,

the reaction potential of source j at receiver x is

  phi = c0 q h0 + c1 (mu.d) h1 + c2 (d.Q.d) h2,   h_n = (2n-1)!! / f^(2n+1),

with Kirkwood coefficients c_n. Derivatives use dh_n/ds = -h_{n+1} D1 / 2,
D1 = d f^2/ds and D2 = dD1/ds, giving closed-form gradients and Hessians for
every source type. Receivers include the source itself (d = 0), which yields
the Born self energy. For f = r and c_n = 1 all expressions reduce to the
vacuum multipole potentials.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import torch

from ..constants import GK_EXPONENT

Tensor = torch.Tensor

__all__ = [
    "kirkwood_coefficients",
    "GKPairs",
    "gk_pairs",
    "reaction_field_derivatives",
    "reaction_dipole_tensor",
    "cavity_energy",
]


def kirkwood_coefficients(solvent_dielectric: float, solute_dielectric: float = 1.0) -> Tuple[float, float, float]:
    """c_n = (n+1)(e_in - e_out) / (e_in ((n+1) e_out + n e_in)) for n = 0, 1, 2."""
    e_in, e_out = float(solute_dielectric), float(solvent_dielectric)
    return tuple(  # type: ignore[return-value]
        (n + 1) * (e_in - e_out) / (e_in * ((n + 1) * e_out + n * e_in)) for n in range(3)
    )


@dataclass(frozen=True)
class GKPairs:
    i: Tensor  # receiver
    j: Tensor  # source
    d: Tensor  # (P,3) r_i - r_j
    h: Tensor  # (P,5) h0..h4
    D1: Tensor
    D2: Tensor


def gk_pairs(positions: Tensor, born: Tensor) -> GKPairs:
    """All ordered receiver/source pairs including self pairs."""
    n = positions.shape[0]
    ii, jj = torch.meshgrid(
        torch.arange(n, device=positions.device), torch.arange(n, device=positions.device), indexing="ij"
    )
    ii, jj = ii.reshape(-1), jj.reshape(-1)
    d = positions[ii] - positions[jj]
    s = (d * d).sum(-1)
    ab = born[ii] * born[jj]
    e = torch.exp(-s / (GK_EXPONENT * ab))
    f2 = s + ab * e
    inv_f2 = 1.0 / f2
    h0 = torch.sqrt(inv_f2)
    h = [h0]
    for k in range(1, 5):
        h.append(h[-1] * (2 * k - 1) * inv_f2)
    return GKPairs(
        i=ii,
        j=jj,
        d=d,
        h=torch.stack(h, dim=-1),
        D1=1.0 - e / GK_EXPONENT,
        D2=e / (GK_EXPONENT ** 2 * ab),
    )


def reaction_field_derivatives(
    pairs: GKPairs,
    coefficients: Tuple[float, float, float],
    num_sites: int,
    charges: Tensor,
    dipoles: Tensor,
    quadrupoles: Tensor,
) -> Tuple[Tensor, Tensor, Tensor]:
    """Reaction potential, gradient and Hessian at every site (bare units)."""
    c0, c1, c2 = coefficients
    d, D1, D2 = pairs.d, pairs.D1, pairs.D2
    h0, h1, h2, h3, h4 = pairs.h.unbind(-1)
    eye = torch.eye(3, dtype=d.dtype, device=d.device)
    dd = d[:, :, None] * d[:, None, :]
    q = charges[pairs.j]
    mu = dipoles[pairs.j]
    Q = quadrupoles[pairs.j]
    p = (mu * d).sum(-1)
    Qd = torch.einsum("pab,pb->pa", Q, d)
    w = (d * Qd).sum(-1)

    phi = c0 * q * h0 + c1 * p * h1 + c2 * w * h2

    grad = (
        -c0 * (q * h1 * D1)[:, None] * d
        + c1 * (mu * h1[:, None] - (p * h2 * D1)[:, None] * d)
        + c2 * (2.0 * Qd * h2[:, None] - (w * h3 * D1)[:, None] * d)
    )

    def col(x: Tensor) -> Tensor:
        return x[:, None, None]

    md = mu[:, :, None] * d[:, None, :]
    qdd = Qd[:, :, None] * d[:, None, :]
    hess = (
        c0 * col(q) * (-col(h1 * D1) * eye + col(h2 * D1 * D1 - 2.0 * h1 * D2) * dd)
        + c1 * (
            -col(h2 * D1) * (md + md.transpose(-1, -2) + col(p) * eye)
            + col(p * (h3 * D1 * D1 - 2.0 * h2 * D2)) * dd
        )
        + c2 * (
            2.0 * col(h2) * Q
            - 2.0 * col(h3 * D1) * (qdd + qdd.transpose(-1, -2))
            - col(w * h3 * D1) * eye
            + col(w * (h4 * D1 * D1 - 2.0 * h3 * D2)) * dd
        )
    )
    out_phi = phi.new_zeros(num_sites).index_add(0, pairs.i, phi)
    out_grad = grad.new_zeros((num_sites, 3)).index_add(0, pairs.i, grad)
    out_hess = hess.new_zeros((num_sites, 3, 3)).index_add(0, pairs.i, hess)
    return out_phi, out_grad, out_hess


def reaction_dipole_tensor(pairs: GKPairs, c1: float) -> Tensor:
    """Reaction field at receiver per unit source dipole: -c1 (h1 I - h2 D1 d d^T)."""
    eye = torch.eye(3, dtype=pairs.d.dtype, device=pairs.d.device)
    dd = pairs.d[:, :, None] * pairs.d[:, None, :]
    h1 = pairs.h[:, 1, None, None]
    h2 = pairs.h[:, 2, None, None]
    return -c1 * (h1 * eye - h2 * pairs.D1[:, None, None] * dd)


def cavity_energy(radii: Tensor, born: Tensor, probe_radius: float, surface_area_factor: float) -> Tensor:
    """ACE nonpolar term -(f/6) (rho + rho_w)^2 (rho / R)^6 summed over atoms (kJ/mol)."""
    r = radii + probe_radius
    return (-(surface_area_factor / 6.0) * r * r * (radii / born) ** 6).sum()
