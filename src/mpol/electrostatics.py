"""Per-evaluation assembly of permanent energies, fixed fields and the mutual-field operator.

An `ElectrostaticsContext` is built once per evaluation from the current
positions. It owns everything that depends on geometry only (pair lists,
screened coefficients, lattice weights, reaction-field pair functions) and
exposes

- `permanent(...)`: permanent-multipole energy terms and the fixed fields
  seen by the direct and polar dipole sets (and by the solvated sets),
- `dipole_operator(...)`: the linear map dipoles -> mutual field used by the
  induced-dipole solvers, for stacked channels.

Fields are returned in bare units (e/nm^2) so that mu = alpha E with alpha
in nm^3; energies carry the Coulomb prefactor (kJ/mol).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional

import torch

from .constants import ONE_4PI_EPS0
from .frame import fractional_multipoles
from .params.types import MultipoleParameters, MultipoleSettings, SolventSettings
from .pme import LatticeEngine, LatticeWeights, _derivative_components
from .realspace import (
    apply_dipole_tensor,
    build_pairs,
    dipole_tensor,
    permanent_field,
    permanent_site_derivatives,
    screened_coefficients,
    thole_factors,
)
from .pbc.ewald import ewald_self_energy
from .scaling import ScaleTables
from .solvation.gk import (
    GKPairs,
    gk_pairs,
    kirkwood_coefficients,
    reaction_dipole_tensor,
    reaction_field_derivatives,
)

Tensor = torch.Tensor

__all__ = ["PermanentTerms", "ElectrostaticsContext", "site_energy"]


def site_energy(charges: Tensor, dipoles: Tensor, quadrupoles: Tensor,
                phi: Tensor, grad: Tensor, hess: Tensor) -> Tensor:
    """sum_i q_i phi_i + mu_i . grad phi_i + Q_i : hess phi_i."""
    return (charges * phi).sum() + (dipoles * grad).sum() + (quadrupoles * hess).sum()


@dataclass
class PermanentTerms:
    energy: Tensor  # kJ/mol, vacuum permanent multipoles plus reaction field
    components: Dict[str, Tensor]
    field_d: Tensor  # (n,3)
    field_p: Tensor  # (n,3)
    field_rf: Optional[Tensor] = None  # reaction field of the permanent multipoles


class ElectrostaticsContext:
    def __init__(
        self,
        positions: Tensor,
        params: MultipoleParameters,
        scales: ScaleTables,
        settings: MultipoleSettings,
        lattice: Optional[LatticeEngine] = None,
        box: Optional[Tensor] = None,
        solvent: Optional[SolventSettings] = None,
        born: Optional[Tensor] = None,
    ) -> None:
        self.positions = positions
        self.n = positions.shape[0]
        self.params = params
        self.lattice = lattice
        periodic = settings.nonbonded_method == "pme"
        self.alpha = lattice.alpha if (periodic and lattice is not None) else 0.0
        self.box = box if periodic else None

        self.pairs = build_pairs(
            positions, box=self.box, cutoff=settings.cutoff if periodic else None
        )
        i, j, r = self.pairs.i, self.pairs.j, self.pairs.dist
        damping = thole_factors(
            r, params.thole[i], params.thole[j], params.damping[i], params.damping[j]
        )
        self.B_m = screened_coefficients(r, self.alpha, scales.m[i, j], 4)
        self.B_d = screened_coefficients(r, self.alpha, scales.d[i, j], 3, damping)
        self.B_p = screened_coefficients(r, self.alpha, scales.p[i, j], 3, damping)
        self.T_u = dipole_tensor(
            self.pairs, screened_coefficients(r, self.alpha, scales.u[i, j], 2, damping)
        )
        self.weights: Optional[LatticeWeights] = None
        if periodic and lattice is not None:
            self.weights = lattice.weights(positions, nderiv=2)

        self.solvent = solvent
        self.gk: Optional[GKPairs] = None
        self.T_rf: Optional[Tensor] = None
        if solvent is not None and born is not None:
            self.kirkwood = kirkwood_coefficients(solvent.solvent_dielectric, solvent.solute_dielectric)
            self.gk = gk_pairs(positions, born)
            self.T_rf = reaction_dipole_tensor(self.gk, self.kirkwood[1])

    @property
    def self_field_factor(self) -> float:
        """Ewald self field per unit dipole, (4/3) alpha^3 / sqrt(pi)."""
        return 4.0 / 3.0 * self.alpha ** 3 / math.sqrt(math.pi)

    # ------------------------------------------------------------ permanent
    def permanent(self, charges: Tensor, dipoles: Tensor, quadrupoles: Tensor) -> PermanentTerms:
        n = self.n
        phi, grad, hess = permanent_site_derivatives(self.pairs, self.B_m, n, charges, dipoles, quadrupoles)
        components: Dict[str, Tensor] = {
            "real": 0.5 * ONE_4PI_EPS0 * site_energy(charges, dipoles, quadrupoles, phi, grad, hess)
        }
        field_d = permanent_field(self.pairs, self.B_d, n, charges, dipoles, quadrupoles)
        field_p = permanent_field(self.pairs, self.B_p, n, charges, dipoles, quadrupoles)

        if self.weights is not None:
            lat = self.lattice
            mu_f, q_f = fractional_multipoles(dipoles, quadrupoles, lat.projection)
            rho = lat.spread(self.weights, charges[None], mu_f[None], q_f[None])
            pot = lat.convolve(rho)
            components["reciprocal"] = 0.5 * ONE_4PI_EPS0 * (rho * pot).sum()
            _, grad_u, _ = _derivative_components(lat.gather(self.weights, pot, 2)[0])
            recip_field = -(grad_u @ lat.projection) + self.self_field_factor * dipoles
            field_d = field_d + recip_field
            field_p = field_p + recip_field
            components["self"] = ONE_4PI_EPS0 * ewald_self_energy(self.alpha, charges, dipoles, quadrupoles)

        field_rf = None
        if self.gk is not None:
            rphi, rgrad, rhess = reaction_field_derivatives(
                self.gk, self.kirkwood, n, charges, dipoles, quadrupoles
            )
            components["reaction_field"] = 0.5 * ONE_4PI_EPS0 * site_energy(
                charges, dipoles, quadrupoles, rphi, rgrad, rhess
            )
            field_rf = -rgrad

        energy = sum(components.values())
        return PermanentTerms(
            energy=energy, components=components, field_d=field_d, field_p=field_p, field_rf=field_rf
        )

    # --------------------------------------------------------------- mutual
    def dipole_operator(self, detach: bool = False, solvated_channels: int = 0):
        """Linear map (C,n,3) dipoles -> mutual field.

        The last `solvated_channels` channels additionally feel the reaction
        field of their own dipoles. With detach=True the operator carries no
        autograd history (for iterative solves).
        """
        T_u = self.T_u.detach() if detach else self.T_u
        T_rf = None
        if self.T_rf is not None and solvated_channels > 0:
            T_rf = self.T_rf.detach() if detach else self.T_rf
        weights = self.weights
        if weights is not None and detach:
            weights = LatticeWeights(theta=weights.theta.detach(), index=weights.index, cell=weights.cell)
        pairs, gk, n, lat = self.pairs, self.gk, self.n, self.lattice
        self_factor = self.self_field_factor

        def apply(dipoles: Tensor) -> Tensor:
            out = apply_dipole_tensor(pairs, T_u, dipoles, n)
            if weights is not None:
                out = out + lat.dipole_field(None, dipoles, weights) + self_factor * dipoles
            if T_rf is not None:
                solv = dipoles[-solvated_channels:]
                rf = apply_dipole_tensor(gk, T_rf, solv, n)
                out = torch.cat([out[:-solvated_channels], out[-solvated_channels:] + rf], dim=0)
            return out

        return apply
