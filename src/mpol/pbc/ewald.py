from __future__ import annotations

"""Direct (non-mesh) Ewald summation for Cartesian multipoles.

Reference implementation used to validate the particle-mesh path on small
systems. With reciprocal vectors m (no 2 pi factor) and the structure factor

  S(m) = sum_j (q_j + 2 pi i m.mu_j - 4 pi^2 m.Q_j.m) exp(2 pi i m.r_j),

the energy splits into

  E_rec  = 1/(2 pi V) sum_{m != 0} exp(-pi^2 m^2 / alpha^2) / m^2 |S(m)|^2,
  E_real = 1/2 sum_{i,j,R}' L_i L_j erfc(alpha |r_j + R - r_i|) / |...|,
  E_self = -alpha/sqrt(pi) sum_i (q^2 + 2 alpha^2 mu.mu / 3 + 8 alpha^4 Q:Q / 5),

all in bare units (multiply by the Coulomb prefactor for kJ/mol).
"""

import math
from typing import Tuple

import torch

from ..realspace import PairList, erfc_coefficients, permanent_site_derivatives
from .cell import build_lattice_translations

Tensor = torch.Tensor

__all__ = [
    "reciprocal_vectors",
    "realspace_translations",
    "ewald_reciprocal_energy",
    "ewald_real_energy",
    "ewald_self_energy",
    "ewald_energy",
]


def reciprocal_vectors(box: Tensor, m_cut: float) -> Tensor:
    """Reciprocal lattice vectors m with 0 < |m| <= m_cut as an (M,3) tensor (nm^-1)."""
    recip = torch.linalg.inv(box).T
    # k_a = m . a_a, so |k_a| <= m_cut |a_a|
    n = [math.ceil(m_cut * float(torch.linalg.vector_norm(box[a]))) for a in range(3)]
    rng = [torch.arange(-k, k + 1, dtype=box.dtype, device=box.device) for k in n]
    k1, k2, k3 = torch.meshgrid(*rng, indexing="ij")
    ints = torch.stack([k1.reshape(-1), k2.reshape(-1), k3.reshape(-1)], dim=-1)
    m = ints @ recip
    norm = torch.linalg.vector_norm(m, dim=-1)
    keep = (norm > 0) & (norm <= m_cut + 1e-12)
    return m[keep]


def realspace_translations(box: Tensor, r_cut: float) -> Tensor:
    """Lattice translations R with |R| <= r_cut (origin included) as an (T,3) tensor."""
    trips = build_lattice_translations(r_cut, box)
    ints = torch.tensor(trips, dtype=box.dtype, device=box.device).reshape(-1, 3)
    return ints @ box


def ewald_reciprocal_energy(
    positions: Tensor,
    box: Tensor,
    alpha: float,
    charges: Tensor,
    dipoles: Tensor,
    quadrupoles: Tensor,
    m_cut: float,
) -> Tensor:
    m = reciprocal_vectors(box, m_cut)
    m2 = (m * m).sum(-1)
    volume = torch.det(box)
    mr = 2.0 * math.pi * (positions @ m.T)  # (n,M)
    m_mu = dipoles @ m.T
    m_q_m = torch.einsum("ma,nab,mb->nm", m, quadrupoles, m)
    real_amp = charges[:, None] - 4.0 * math.pi ** 2 * m_q_m
    imag_amp = 2.0 * math.pi * m_mu
    # (a + i b)(cos + i sin)
    s_re = (real_amp * torch.cos(mr) - imag_amp * torch.sin(mr)).sum(0)
    s_im = (real_amp * torch.sin(mr) + imag_amp * torch.cos(mr)).sum(0)
    weight = torch.exp(-(math.pi ** 2) * m2 / alpha ** 2) / m2
    return (weight * (s_re * s_re + s_im * s_im)).sum() / (2.0 * math.pi * volume)


def ewald_real_energy(
    positions: Tensor,
    box: Tensor,
    alpha: float,
    charges: Tensor,
    dipoles: Tensor,
    quadrupoles: Tensor,
    r_cut: float,
) -> Tensor:
    """erfc-screened pair energy over all images within r_cut."""
    n = positions.shape[0]
    ii, jj = torch.meshgrid(
        torch.arange(n, device=positions.device), torch.arange(n, device=positions.device), indexing="ij"
    )
    ii, jj = ii.reshape(-1), jj.reshape(-1)
    total = positions.new_zeros(())
    for R in realspace_translations(box, r_cut + float(torch.linalg.vector_norm(box, dim=-1).max())):
        delta = positions[jj] + R - positions[ii]
        dist = torch.linalg.vector_norm(delta, dim=-1)
        keep = (dist > 1e-10) & (dist <= r_cut)
        if not bool(keep.any()):
            continue
        pairs = PairList(i=ii[keep], j=jj[keep], delta=delta[keep], dist=dist[keep])
        B = erfc_coefficients(pairs.dist, alpha, 4)
        phi, grad, hess = permanent_site_derivatives(pairs, B, n, charges, dipoles, quadrupoles)
        total = total + 0.5 * (
            (charges * phi).sum() + (dipoles * grad).sum() + (quadrupoles * hess).sum()
        )
    return total


def ewald_self_energy(alpha: float, charges: Tensor, dipoles: Tensor, quadrupoles: Tensor) -> Tensor:
    a2 = alpha * alpha
    return -alpha / math.sqrt(math.pi) * (
        (charges * charges).sum()
        + 2.0 * a2 * (dipoles * dipoles).sum() / 3.0
        + 8.0 * a2 * a2 * (quadrupoles * quadrupoles).sum() / 5.0
    )


def ewald_energy(
    positions: Tensor,
    box: Tensor,
    alpha: float,
    charges: Tensor,
    dipoles: Tensor,
    quadrupoles: Tensor,
    r_cut: float,
    m_cut: float,
) -> Tuple[Tensor, Tensor, Tensor]:
    """(real, reciprocal, self) Ewald energies in bare units."""
    return (
        ewald_real_energy(positions, box, alpha, charges, dipoles, quadrupoles, r_cut),
        ewald_reciprocal_energy(positions, box, alpha, charges, dipoles, quadrupoles, m_cut),
        ewald_self_energy(alpha, charges, dipoles, quadrupoles),
    )
