"""Local-frame rotation of permanent multipoles and the dual torque mapping.

Rotation matrices carry the lab-frame x, y, z axes of each particle's local
frame in their columns, so that

  mu_lab = R mu_loc,     Q_lab = R Q_loc R^T.

The frame is built from up to three partner atoms (z, x, y) following the
usual AMOEBA axis conventions. Lattice projection uses A = diag(K) B^T with
B = box^{-1}, so that grid coordinates are u = A r.

Torques are conjugate to an infinitesimal rigid rotation of all lab-frame
multipoles of a particle (tau = -dE/dtheta). The mapper turns them into
forces on the frame atoms by differentiating the rotation vector of
R(r) R0^T with respect to positions; the result conserves net force and
reproduces the torque.
"""

from __future__ import annotations

from typing import Optional, Tuple

import torch

from .constants import AxisType
from .params.types import MultipoleParameters

Tensor = torch.Tensor

__all__ = [
    "rotation_matrices",
    "chirality_signs",
    "lab_frame_multipoles",
    "lattice_projection",
    "fractional_multipoles",
    "torques_from_gradients",
    "map_torque_to_force",
]

_Z_ONLY_SWITCH = 0.866


def _levi_civita(dtype: torch.dtype, device: torch.device) -> Tensor:
    eps = torch.zeros((3, 3, 3), dtype=dtype, device=device)
    eps[0, 1, 2] = eps[1, 2, 0] = eps[2, 0, 1] = 1.0
    eps[0, 2, 1] = eps[2, 1, 0] = eps[1, 0, 2] = -1.0
    return eps


def _unit(v: Tensor) -> Tensor:
    return v / torch.linalg.vector_norm(v, dim=-1, keepdim=True).clamp_min(1e-12)


def _partner_vectors(positions: Tensor, partners: Tensor, fallback: Tensor) -> Tensor:
    n = positions.shape[0]
    has = partners >= 0
    safe = torch.where(has, partners, torch.arange(n, device=positions.device))
    delta = positions[safe] - positions
    return torch.where(has[:, None], delta, fallback.expand(n, 3))


def rotation_matrices(positions: Tensor, axis_types: Tensor, frame_atoms: Tensor) -> Tensor:
    """Per-particle rotation matrices (n,3,3) from partner geometry."""
    eye = torch.eye(3, dtype=positions.dtype, device=positions.device)
    ex, ey, ez = eye[0], eye[1], eye[2]
    at = axis_types[:, None]

    vz = _unit(_partner_vectors(positions, frame_atoms[:, 0], ez))
    vx = _unit(_partner_vectors(positions, frame_atoms[:, 1], ex))
    vy = _unit(_partner_vectors(positions, frame_atoms[:, 2], ey))

    z = torch.where(at == int(AxisType.BISECTOR), _unit(vz + vx), vz)
    z = torch.where(at == int(AxisType.THREE_FOLD), _unit(vz + vx + vy), z)
    z = torch.where(at == int(AxisType.NO_AXIS), ez.expand_as(z), z)

    x_ref = torch.where(at == int(AxisType.Z_BISECT), _unit(vx + vy), vx)
    lab_ref = torch.where(z[:, :1].abs() < _Z_ONLY_SWITCH, ex.expand_as(z), ey.expand_as(z))
    x_ref = torch.where((at == int(AxisType.Z_ONLY)) | (at == int(AxisType.NO_AXIS)), lab_ref, x_ref)

    x = _unit(x_ref - (x_ref * z).sum(-1, keepdim=True) * z)
    y = torch.cross(z, x, dim=-1)
    return torch.stack([x, y, z], dim=-1)


def chirality_signs(positions: Tensor, axis_types: Tensor, frame_atoms: Tensor) -> Tensor:
    """-1 for Z-then-X centres whose y partner sits on the negative side, else +1."""
    n = positions.shape[0]
    with torch.no_grad():
        iz, ix, iy = frame_atoms[:, 0], frame_atoms[:, 1], frame_atoms[:, 2]
        chiral = (axis_types == int(AxisType.Z_THEN_X)) & (iy >= 0) & (iz >= 0) & (ix >= 0)
        own = torch.arange(n, device=positions.device)
        ry = positions[torch.where(chiral, iy, own)]
        ad = positions - ry
        bd = positions[torch.where(chiral, iz, own)] - ry
        cd = positions[torch.where(chiral, ix, own)] - ry
        vol = (ad * torch.cross(bd, cd, dim=-1)).sum(-1)
        flip = chiral & (vol < 0.0)
    return torch.where(flip, -torch.ones_like(vol), torch.ones_like(vol))


def lab_frame_multipoles(
    positions: Tensor, params: MultipoleParameters
) -> Tuple[Tensor, Tensor, Tensor]:
    """Return (dipoles, quadrupoles, rotations) in the lab frame."""
    R = rotation_matrices(positions, params.axis_types, params.frame_atoms)
    s = chirality_signs(positions, params.axis_types, params.frame_atoms)
    one = torch.ones_like(s)
    dip_local = params.dipoles * torch.stack([one, s, one], dim=-1)
    flip = torch.stack(
        [
            torch.stack([one, s, one], dim=-1),
            torch.stack([s, one, s], dim=-1),
            torch.stack([one, s, one], dim=-1),
        ],
        dim=-2,
    )
    quad_local = params.quadrupoles * flip
    dipoles = torch.einsum("nij,nj->ni", R, dip_local)
    quadrupoles = R @ quad_local @ R.transpose(-1, -2)
    return dipoles, quadrupoles, R


def lattice_projection(box: Tensor, grid: Tuple[int, int, int]) -> Tensor:
    """A = diag(K) box^{-T}: maps Cartesian vectors to grid units."""
    K = torch.tensor(grid, dtype=box.dtype, device=box.device)
    return K[:, None] * torch.linalg.inv(box).T


def fractional_multipoles(
    dipoles: Tensor, quadrupoles: Optional[Tensor], projection: Tensor
) -> Tuple[Tensor, Optional[Tensor]]:
    dip = dipoles @ projection.T
    if quadrupoles is None:
        return dip, None
    return dip, projection @ quadrupoles @ projection.T


def torques_from_gradients(
    dipoles: Tensor,
    quadrupoles: Tensor,
    grad_dipoles: Optional[Tensor],
    grad_quadrupoles: Optional[Tensor],
) -> Tensor:
    """Torque -dE/dtheta from energy gradients w.r.t. lab-frame multipoles."""
    tau = torch.zeros_like(dipoles)
    if grad_dipoles is not None:
        tau = tau - torch.cross(dipoles, grad_dipoles, dim=-1)
    if grad_quadrupoles is not None:
        eps = _levi_civita(dipoles.dtype, dipoles.device)
        gt = grad_quadrupoles.transpose(-1, -2)
        m = quadrupoles @ gt - gt @ quadrupoles
        tau = tau - torch.einsum("bca,nca->nb", eps, m)
    return tau


def map_torque_to_force(
    positions: Tensor,
    axis_types: Tensor,
    frame_atoms: Tensor,
    torques: Tensor,
    forces: Optional[Tensor] = None,
) -> Tensor:
    """Distribute per-particle torques onto frame atoms as forces.

    When `forces` is given the mapped forces are added into it in place and
    the same tensor is returned.
    """
    pos = positions.detach().clone().requires_grad_(True)
    with torch.enable_grad():
        R = rotation_matrices(pos, axis_types, frame_atoms)
        W = R @ R.detach().transpose(-1, -2)
        eps = _levi_civita(pos.dtype, pos.device)
        theta = -0.5 * torch.einsum("kij,nij->nk", eps, W)
        mapped, = torch.autograd.grad((theta * torques.detach()).sum(), pos, allow_unused=True)
    if mapped is None:
        mapped = torch.zeros_like(pos)
    if forces is None:
        return mapped.detach()
    forces.add_(mapped.detach())
    return forces
