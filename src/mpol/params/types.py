from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Sequence, Tuple

import torch

from ..constants import AxisType

Tensor = torch.Tensor

NonbondedMethod = Literal["no_cutoff", "pme"]
PolarizationType = Literal["mutual", "extrapolated", "direct"]

__all__ = [
    "NonbondedMethod",
    "PolarizationType",
    "Topology",
    "MultipoleParameters",
    "MultipoleSettings",
    "SolventSettings",
]


@dataclass(frozen=True)
class Topology:
    """Particle masses (amu) and covalent bonds as index pairs."""

    masses: Tensor
    bonds: Tuple[Tuple[int, int], ...] = ()

    @property
    def num_particles(self) -> int:
        return int(self.masses.shape[0])


@dataclass(frozen=True)
class MultipoleParameters:
    """Per-particle permanent multipoles and polarization parameters.

    Dipoles and quadrupoles are given in the local frame; quadrupoles are
    traceless with the conventional 1/3 factor already applied.
    frame_atoms holds (z, x, y) partner indices, -1 when unused.
    """

    charges: Tensor  # (n,)
    dipoles: Tensor  # (n,3) e nm
    quadrupoles: Tensor  # (n,3,3) e nm^2
    axis_types: Tensor  # (n,) long
    frame_atoms: Tensor  # (n,3) long
    thole: Tensor  # (n,)
    damping: Tensor  # (n,) nm
    polarizabilities: Tensor  # (n,) nm^3
    polarization_groups: Tensor  # (n,) long

    @property
    def num_particles(self) -> int:
        return int(self.charges.shape[0])

    @classmethod
    def from_arrays(
        cls,
        charges: Sequence[float] | Tensor,
        dipoles: Sequence[Sequence[float]] | Tensor,
        quadrupoles: Sequence | Tensor,
        axis_types: Sequence[int] | Tensor,
        frame_atoms: Sequence[Sequence[int]] | Tensor,
        polarizabilities: Sequence[float] | Tensor,
        thole: Sequence[float] | Tensor | float = 0.39,
        damping: Optional[Sequence[float] | Tensor] = None,
        polarization_groups: Optional[Sequence[int] | Tensor] = None,
        dtype: torch.dtype = torch.float64,
    ) -> "MultipoleParameters":
        q = torch.as_tensor(charges, dtype=dtype)
        n = int(q.shape[0])
        alpha = torch.as_tensor(polarizabilities, dtype=dtype)
        th = torch.as_tensor(thole, dtype=dtype)
        if th.ndim == 0:
            th = th.expand(n).clone()
        if damping is None:
            damp = alpha.clamp_min(0.0) ** (1.0 / 6.0)
        else:
            damp = torch.as_tensor(damping, dtype=dtype)
        if polarization_groups is None:
            groups = torch.arange(n, dtype=torch.long)
        else:
            groups = torch.as_tensor(polarization_groups, dtype=torch.long)
        quad = torch.as_tensor(quadrupoles, dtype=dtype)
        if quad.ndim == 2 and quad.shape[-1] == 9:
            quad = quad.reshape(-1, 3, 3)
        return cls(
            charges=q,
            dipoles=torch.as_tensor(dipoles, dtype=dtype).reshape(-1, 3),
            quadrupoles=quad,
            axis_types=torch.as_tensor(axis_types, dtype=torch.long),
            frame_atoms=torch.as_tensor(frame_atoms, dtype=torch.long).reshape(-1, 3),
            thole=th,
            damping=damp,
            polarizabilities=alpha,
            polarization_groups=groups,
        )

    def to(self, device: torch.device, dtype: torch.dtype) -> "MultipoleParameters":
        return MultipoleParameters(
            charges=self.charges.to(device=device, dtype=dtype),
            dipoles=self.dipoles.to(device=device, dtype=dtype),
            quadrupoles=self.quadrupoles.to(device=device, dtype=dtype),
            axis_types=self.axis_types.to(device=device),
            frame_atoms=self.frame_atoms.to(device=device),
            thole=self.thole.to(device=device, dtype=dtype),
            damping=self.damping.to(device=device, dtype=dtype),
            polarizabilities=self.polarizabilities.to(device=device, dtype=dtype),
            polarization_groups=self.polarization_groups.to(device=device),
        )


@dataclass(frozen=True)
class MultipoleSettings:
    nonbonded_method: NonbondedMethod = "no_cutoff"
    cutoff: float = 1.0  # nm, real-space cutoff for PME
    ewald_error_tolerance: float = 5e-4
    ewald_alpha: Optional[float] = None  # nm^-1; derived from tolerance when None
    grid: Optional[Tuple[int, int, int]] = None
    dispersion_alpha: Optional[float] = None
    dispersion_grid: Optional[Tuple[int, int, int]] = None
    polarization: PolarizationType = "mutual"
    induced_epsilon: float = 1e-5  # RMS Debye
    max_induced_iterations: int = 60
    extrapolation_coefficients: Tuple[float, ...] = (-0.154, 0.017, 0.658, 0.474)
    # 1-2, 1-3, 1-4, 1-5
    mpole_scales: Tuple[float, float, float, float] = (0.0, 0.0, 0.4, 0.8)
    polar_scales: Tuple[float, float, float, float] = (0.0, 0.0, 1.0, 1.0)
    polar14_intra: float = 0.5
    # same polarization group, different group
    direct_scales: Tuple[float, float] = (0.0, 1.0)
    mutual_scale: float = 1.0


@dataclass(frozen=True)
class SolventSettings:
    """Generalized-Kirkwood continuum; radii in nm, scale_factors dimensionless."""

    radii: Tensor
    scale_factors: Tensor
    solvent_dielectric: float = 78.3
    solute_dielectric: float = 1.0
    probe_radius: float = 0.14
    neck_scale: float = 0.0
    descreen_offset: float = 0.0
    tanh_rescaling: bool = False
    tanh_betas: Tuple[float, float, float] = (0.9563, 0.2578, 0.0810)
    include_cavity_term: bool = True
    surface_area_factor: float = -170.351730  # kJ/mol/nm^2

    @property
    def num_particles(self) -> int:
        return int(self.radii.shape[0])


AXIS_NAMES = {
    "z_then_x": AxisType.Z_THEN_X,
    "bisector": AxisType.BISECTOR,
    "z_bisect": AxisType.Z_BISECT,
    "three_fold": AxisType.THREE_FOLD,
    "z_only": AxisType.Z_ONLY,
    "no_axis": AxisType.NO_AXIS,
}
