"""Grycuk Born radii with optional neck correction and tanh rescaling.

For atom i with integration radius rho_i the Born radius follows from

  R_i^-3 = rho_i^-3 - 3/(4 pi) sum_j I_ij,

where I_ij is the integral of |x|^-6 over the descreening sphere of atom j
(radius s_j = scale_j * rho_j, centre at distance r) outside sphere i. For
a shell |x| = t cut by sphere j the surface is pi t (s^2 - (t - r)^2) / r,
which integrates in closed form between l = max(rho_i, |r - s|) and u = r + s.
If centre i lies inside sphere j deeper than rho_i the full shells between
rho_i and s - r are added.

The neck term accounts for solvent-excluded gaps between neighbouring
spheres; it is evaluated in Angstrom with coefficients from the neck tables.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Tuple

import torch

from ..constants import ANGSTROM_PER_NM, MAX_BORN_RADIUS
from .neck import neck_bins, neck_correction

Tensor = torch.Tensor

__all__ = ["descreening_integrals", "neck_integrals", "born_radii"]

logger = logging.getLogger(__name__)

_PI43 = 4.0 * math.pi / 3.0


def _all_pairs(n: int, device: torch.device) -> Tuple[Tensor, Tensor]:
    ii, jj = torch.meshgrid(torch.arange(n, device=device), torch.arange(n, device=device), indexing="ij")
    ii, jj = ii.reshape(-1), jj.reshape(-1)
    keep = ii != jj
    return ii[keep], jj[keep]


def descreening_integrals(r: Tensor, rho_i: Tensor, s_j: Tensor) -> Tensor:
    """Pairwise volume integrals of |x|^-6 (nm^-3) for sphere j seen from atom i."""
    active = (rho_i < r + s_j).detach()
    u = r + s_j
    lower = torch.maximum(rho_i, torch.abs(r - s_j))
    ls = torch.where(active, lower, torch.ones_like(lower))
    us = torch.where(active, u, 2.0 * torch.ones_like(u))
    partial = (math.pi / r) * (
        0.25 * (s_j * s_j - r * r) * (ls ** -4 - us ** -4)
        + (2.0 * r / 3.0) * (ls ** -3 - us ** -3)
        - 0.5 * (ls ** -2 - us ** -2)
    )
    partial = torch.where(active, partial, torch.zeros_like(partial))

    buried = (rho_i < s_j - r).detach()
    inner = torch.where(buried, s_j - r, torch.ones_like(r))
    full = _PI43 * (rho_i ** -3 - inner ** -3)
    full = torch.where(buried, full, torch.zeros_like(full))
    return partial + full


def neck_integrals(
    r: Tensor, radius_i: Tensor, radius_j: Tensor, probe_radius: float, neck_scale: float
) -> Tensor:
    """(4 pi/3) s A (r - B)^4 (rho_i + rho_j + 2 rho_w - r)^4 between the two spheres (nm^-3)."""
    a, b = neck_correction(radius_i.detach(), radius_j.detach())
    a = a.to(dtype=r.dtype)
    b = b.to(dtype=r.dtype)
    ra = r * ANGSTROM_PER_NM
    upper = (radius_i + radius_j + 2.0 * probe_radius) * ANGSTROM_PER_NM
    on = ((ra > b) & (ra < upper)).detach()
    val = _PI43 * neck_scale * a * (ra - b) ** 4 * (upper - ra) ** 4
    # Angstrom^-3 -> nm^-3
    val = val * ANGSTROM_PER_NM ** 3
    return torch.where(on, val, torch.zeros_like(val))


def born_radii(
    positions: Tensor,
    radii: Tensor,
    scale_factors: Tensor,
    probe_radius: float = 0.14,
    neck_scale: float = 0.0,
    descreen_offset: float = 0.0,
    tanh_rescaling: bool = False,
    tanh_betas: Tuple[float, float, float] = (0.9563, 0.2578, 0.0810),
) -> Tuple[Tensor, Dict[str, int]]:
    """Born radii (nm) and clamp statistics.

    Radii whose descreened R^-3 would drop below MAX_BORN_RADIUS^-3 are
    clamped there; radii outside the neck table are snapped to its edge.
    """
    n = positions.shape[0]
    stats = {"born_clamped": 0, "neck_out_of_range": 0}
    rho = radii + descreen_offset
    if n > 1:
        i, j = _all_pairs(n, positions.device)
        r = torch.linalg.vector_norm(positions[j] - positions[i], dim=-1)
        integ = descreening_integrals(r, rho[i], scale_factors[j] * radii[j])
        if neck_scale > 0.0:
            integ = integ + neck_integrals(r, radii[i], radii[j], probe_radius, neck_scale)
            _, out_of_range = neck_bins(radii.detach())
            stats["neck_out_of_range"] = int(out_of_range.sum())
        total = integ.new_zeros(n).index_add(0, i, integ)
    else:
        total = rho.new_zeros(n)

    inv_rho3 = rho ** -3
    if tanh_rescaling:
        b0, b1, b2 = tanh_betas
        psi = total * rho ** 3 / _PI43
        inv3 = inv_rho3 * (1.0 - torch.tanh(b0 * psi - b1 * psi ** 2 + b2 * psi ** 3))
    else:
        inv3 = inv_rho3 - total / _PI43
    floor = MAX_BORN_RADIUS ** -3
    clamped = inv3.detach() < floor
    stats["born_clamped"] = int(clamped.sum())
    if stats["born_clamped"] or stats["neck_out_of_range"]:
        logger.debug(
            "born radii: %d clamped to %.2f nm, %d radii outside neck table",
            stats["born_clamped"],
            MAX_BORN_RADIUS,
            stats["neck_out_of_range"],
        )
    inv3 = torch.where(clamped, torch.full_like(inv3, floor), inv3)
    return inv3 ** (-1.0 / 3.0), stats
