"""Direct-space multipole interactions on ordered pair lists.

For a pair (i, j) with r = r_j - r_i and radial coefficients B_n(r) the
Cartesian interaction tensors are

  T0    = B0
  T_a   = -r_a B1
  T_ab  = r_a r_b B2 - d_ab B1
  T_abc = -r_a r_b r_c B3 + (d_ab r_c + d_ac r_b + d_bc r_a) B2
  T_abcd = r_a r_b r_c r_d B4 - (6 d r r terms) B3 + (3 d d terms) B2

The potential of site j at site i and its derivatives with respect to r_i
are then

  phi      = q_j T0 + mu_j . T1 + Q_j : T2
  grad phi = -(q_j T1 + T2 mu_j + T3 : Q_j)
  hess phi = q_j T2 + T3 mu_j + T4 : Q_j

Screening enters only through the coefficients: bare 1/r, erfc(alpha r)/r
for Ewald real space, scale factors and Thole damping. Every ordered pair
appears once in the list, so pair energies are halved by the caller.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import torch

from .pbc.cell import minimum_image

Tensor = torch.Tensor

__all__ = [
    "PairList",
    "build_pairs",
    "bare_coefficients",
    "erfc_coefficients",
    "thole_factors",
    "screened_coefficients",
    "interaction_tensors",
    "permanent_site_derivatives",
    "permanent_field",
    "dipole_tensor",
    "apply_dipole_tensor",
    "point_potential",
]


@dataclass(frozen=True)
class PairList:
    i: Tensor  # (P,) receiver
    j: Tensor  # (P,) source
    delta: Tensor  # (P,3) r_j - r_i, minimum image
    dist: Tensor  # (P,)


def build_pairs(
    positions: Tensor,
    box: Optional[Tensor] = None,
    cutoff: Optional[float] = None,
    sources: Optional[Tensor] = None,
) -> PairList:
    """Ordered pairs between receivers `positions` and `sources` (default: the same set, i != j)."""
    n = positions.shape[0]
    same = sources is None
    src = positions if same else sources
    m = src.shape[0]
    ii, jj = torch.meshgrid(
        torch.arange(n, device=positions.device), torch.arange(m, device=positions.device), indexing="ij"
    )
    ii, jj = ii.reshape(-1), jj.reshape(-1)
    if same:
        keep = ii != jj
        ii, jj = ii[keep], jj[keep]
    delta = src[jj] - positions[ii]
    if box is not None:
        delta = minimum_image(delta, box)
    if cutoff is not None:
        keep = torch.linalg.vector_norm(delta.detach(), dim=-1) <= cutoff
        ii, jj, delta = ii[keep], jj[keep], delta[keep]
    dist = torch.linalg.vector_norm(delta, dim=-1)
    return PairList(i=ii, j=jj, delta=delta, dist=dist)


def bare_coefficients(r: Tensor, nmax: int) -> Tensor:
    """B_n = (2n-1)!! / r^(2n+1), n = 0..nmax."""
    inv_r = 1.0 / r
    inv_r2 = inv_r * inv_r
    out = [inv_r]
    for n in range(1, nmax + 1):
        out.append(out[-1] * (2 * n - 1) * inv_r2)
    return torch.stack(out, dim=-1)


def erfc_coefficients(r: Tensor, alpha: float, nmax: int) -> Tensor:
    """Coefficients of erfc(alpha r)/r by upward recursion."""
    if alpha <= 0.0:
        return bare_coefficients(r, nmax)
    inv_r2 = 1.0 / (r * r)
    exp2a = torch.exp(-(alpha * r) ** 2)
    alsq2 = 2.0 * alpha * alpha
    alsq2n = 1.0 / (math.sqrt(math.pi) * alpha)
    out = [torch.erfc(alpha * r) / r]
    for n in range(1, nmax + 1):
        alsq2n *= alsq2
        out.append(((2 * n - 1) * out[-1] + alsq2n * exp2a) * inv_r2)
    return torch.stack(out, dim=-1)


def thole_factors(r: Tensor, thole_i: Tensor, thole_j: Tensor, damp_i: Tensor, damp_j: Tensor) -> Tensor:
    """Thole damping (lambda3, lambda5, lambda7) per pair; 1 where damping is off."""
    damp = damp_i * damp_j
    gamma = torch.minimum(thole_i, thole_j)
    on = damp > 0.0
    ratio = r / torch.where(on, damp, torch.ones_like(damp))
    au = gamma * ratio ** 3
    expau = torch.where(on, torch.exp(-au), torch.zeros_like(au))
    l3 = 1.0 - expau
    l5 = 1.0 - (1.0 + au) * expau
    l7 = 1.0 - (1.0 + au + 0.6 * au * au) * expau
    return torch.stack([l3, l5, l7], dim=-1)


def screened_coefficients(
    r: Tensor,
    alpha: float,
    scale: Tensor,
    nmax: int,
    damping: Optional[Tensor] = None,
) -> Tensor:
    """Effective B_n: erfc part minus the removed fraction of the bare part.

    With alpha == 0 (no Ewald) this reduces to scale * lambda_n * B_n^bare.
    `damping` holds per-pair (lambda3, lambda5, lambda7) acting on B1..B3.
    """
    bare = bare_coefficients(r, nmax)
    factor = scale[:, None].expand(-1, nmax + 1)
    if damping is not None:
        lam = torch.ones_like(bare)
        k = min(nmax, 3)
        lam = torch.cat([lam[:, :1], damping[:, :k], lam[:, 1 + k:]], dim=-1)
        factor = factor * lam
    if alpha > 0.0:
        return erfc_coefficients(r, alpha, nmax) - (1.0 - factor) * bare
    return factor * bare


def interaction_tensors(delta: Tensor, B: Tensor, order: int) -> List[Tensor]:
    """T0..T_order for every pair; B must hold at least order+1 coefficients."""
    eye = torch.eye(3, dtype=delta.dtype, device=delta.device)
    r = delta
    out = [B[:, 0]]
    if order >= 1:
        out.append(-r * B[:, 1:2])
    if order >= 2:
        rr = r[:, :, None] * r[:, None, :]
        out.append(rr * B[:, 2, None, None] - eye * B[:, 1, None, None])
    if order >= 3:
        rrr = rr[:, :, :, None] * r[:, None, None, :]
        dr = (
            torch.einsum("ab,pc->pabc", eye, r)
            + torch.einsum("ac,pb->pabc", eye, r)
            + torch.einsum("bc,pa->pabc", eye, r)
        )
        out.append(-rrr * B[:, 3, None, None, None] + dr * B[:, 2, None, None, None])
    if order >= 4:
        rrrr = rrr[..., None] * r[:, None, None, None, :]
        drr = (
            torch.einsum("ab,pc,pd->pabcd", eye, r, r)
            + torch.einsum("ac,pb,pd->pabcd", eye, r, r)
            + torch.einsum("ad,pb,pc->pabcd", eye, r, r)
            + torch.einsum("bc,pa,pd->pabcd", eye, r, r)
            + torch.einsum("bd,pa,pc->pabcd", eye, r, r)
            + torch.einsum("cd,pa,pb->pabcd", eye, r, r)
        )
        dd = (
            torch.einsum("ab,cd->abcd", eye, eye)
            + torch.einsum("ac,bd->abcd", eye, eye)
            + torch.einsum("ad,bc->abcd", eye, eye)
        )
        b = B[:, None, None, None, None]
        out.append(rrrr * b[..., 4] - drr * b[..., 3] + dd * b[..., 2])
    return out


def permanent_site_derivatives(
    pairs: PairList,
    B: Tensor,
    num_sites: int,
    charges: Tensor,
    dipoles: Tensor,
    quadrupoles: Tensor,
) -> Tuple[Tensor, Tensor, Tensor]:
    """Potential, gradient and Hessian at every receiver site (bare units)."""
    T0, T1, T2, T3, T4 = interaction_tensors(pairs.delta, B, 4)
    q = charges[pairs.j]
    mu = dipoles[pairs.j]
    Q = quadrupoles[pairs.j]
    phi = q * T0 + (mu * T1).sum(-1) + (Q * T2).sum((-1, -2))
    grad = -(q[:, None] * T1 + torch.einsum("pab,pb->pa", T2, mu) + torch.einsum("pabc,pbc->pa", T3, Q))
    hess = q[:, None, None] * T2 + torch.einsum("pabc,pc->pab", T3, mu) + torch.einsum("pabcd,pcd->pab", T4, Q)
    out_phi = phi.new_zeros(num_sites).index_add(0, pairs.i, phi)
    out_grad = grad.new_zeros((num_sites, 3)).index_add(0, pairs.i, grad)
    out_hess = hess.new_zeros((num_sites, 3, 3)).index_add(0, pairs.i, hess)
    return out_phi, out_grad, out_hess


def permanent_field(
    pairs: PairList,
    B: Tensor,
    num_sites: int,
    charges: Tensor,
    dipoles: Tensor,
    quadrupoles: Tensor,
) -> Tensor:
    """Field -grad phi at every receiver site; B holds B0..B3."""
    _, T1, T2, T3 = interaction_tensors(pairs.delta, B, 3)
    field = (
        charges[pairs.j, None] * T1
        + torch.einsum("pab,pb->pa", T2, dipoles[pairs.j])
        + torch.einsum("pabc,pbc->pa", T3, quadrupoles[pairs.j])
    )
    return field.new_zeros((num_sites, 3)).index_add(0, pairs.i, field)


def dipole_tensor(pairs: PairList, B: Tensor) -> Tensor:
    """Dipole-dipole field tensor T2 per pair; symmetric under i <-> j."""
    return interaction_tensors(pairs.delta, B, 2)[2]


def apply_dipole_tensor(pairs: PairList, tensor: Tensor, dipoles: Tensor, num_sites: int) -> Tensor:
    """Field at receivers from (C,n,3) dipoles through per-pair tensors."""
    contrib = torch.einsum("pab,cpb->cpa", tensor, dipoles[:, pairs.j])
    return contrib.new_zeros((dipoles.shape[0], num_sites, 3)).index_add(1, pairs.i, contrib)


def point_potential(
    points: Tensor,
    positions: Tensor,
    charges: Tensor,
    dipoles: Tensor,
    quadrupoles: Tensor,
    alpha: float = 0.0,
    box: Optional[Tensor] = None,
    cutoff: Optional[float] = None,
) -> Tensor:
    """Potential at arbitrary points; erfc-screened when alpha > 0.

    A point that coincides with a particle gets no contribution from it.
    """
    pairs = build_pairs(points, box=box, cutoff=cutoff, sources=positions)
    on_site = pairs.dist == 0.0
    if bool(on_site.any()):
        keep = ~on_site
        pairs = PairList(i=pairs.i[keep], j=pairs.j[keep], delta=pairs.delta[keep], dist=pairs.dist[keep])
    B = erfc_coefficients(pairs.dist, alpha, 2)
    T0, T1, T2 = interaction_tensors(pairs.delta, B, 2)
    phi = (
        charges[pairs.j] * T0
        + (dipoles[pairs.j] * T1).sum(-1)
        + (quadrupoles[pairs.j] * T2).sum((-1, -2))
    )
    return phi.new_zeros(points.shape[0]).index_add(0, pairs.i, phi)
