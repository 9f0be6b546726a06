"""Composite polarizable-multipole force engine.

`MultipoleForceEngine` owns the configuration, the scale tables, the lattice
engine and the force buffer, and runs one evaluation per `execute`:

1. lab-frame multipoles from the current positions,
2. permanent energies and fixed fields (real space, reciprocal space,
   reaction field),
3. induced dipoles (mutual with DIIS, extrapolated or direct),
4. energy,
5. gradients by autograd w.r.t. positions and lab-frame multipoles,
6. torques from the multipole gradients mapped onto frame atoms,
7. accumulation into the force buffer.

Forces on the mutual path come from the stationary polarization functional
with the converged dipoles held fixed; the extrapolated and direct paths
differentiate the dipoles themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

import torch

from .backend import TransformBackend
from .constants import ONE_4PI_EPS0, AxisType
from .device import get_device
from .electrostatics import ElectrostaticsContext
from .exceptions import ConfigurationError, StateError
from .frame import lab_frame_multipoles, map_torque_to_force, torques_from_gradients
from .induced import InducedDipoleResult, solve_direct, solve_extrapolated, solve_mutual
from .params.types import MultipoleParameters, MultipoleSettings, SolventSettings, Topology
from .pbc.cell import validate_box
from .pme import LatticeEngine, pme_parameters
from .realspace import point_potential
from .scaling import ScaleTables, build_scale_tables
from .solvation.born import born_radii
from .solvation.gk import cavity_energy

Tensor = torch.Tensor

__all__ = ["EvaluationReport", "MultipoleForceEngine"]

logger = logging.getLogger(__name__)

# partners each frame definition needs (z, x, y)
_REQUIRED_PARTNERS = {
    AxisType.Z_THEN_X: (True, True, False),
    AxisType.BISECTOR: (True, True, False),
    AxisType.Z_BISECT: (True, True, True),
    AxisType.THREE_FOLD: (True, True, True),
    AxisType.Z_ONLY: (True, False, False),
    AxisType.NO_AXIS: (False, False, False),
}


@dataclass
class EvaluationReport:
    """Diagnostics of the most recent evaluation; energies in kJ/mol."""

    energy: float
    terms: Dict[str, float]
    iterations: int
    converged: bool
    rms_error: float  # Debye
    rms_history: List[float] = field(default_factory=list)
    born_clamped: int = 0
    neck_out_of_range: int = 0


def _check_rows(name: str, value: Tensor, shape: Tuple[int, ...]) -> None:
    if tuple(value.shape) != shape:
        raise ConfigurationError(f"{name} must have shape {shape}, got {tuple(value.shape)}")


def validate_parameters(params: MultipoleParameters, num_particles: int) -> None:
    """Raise ConfigurationError for inconsistent or unphysical parameters."""
    n = num_particles
    if params.num_particles != n:
        raise ConfigurationError(f"expected {n} particles, parameters describe {params.num_particles}")
    _check_rows("dipoles", params.dipoles, (n, 3))
    _check_rows("quadrupoles", params.quadrupoles, (n, 3, 3))
    _check_rows("frame_atoms", params.frame_atoms, (n, 3))
    for name in ("axis_types", "thole", "damping", "polarizabilities", "polarization_groups"):
        _check_rows(name, getattr(params, name), (n,))

    alpha = params.polarizabilities
    if not bool(torch.isfinite(alpha).all()) or bool((alpha < 0).any()):
        raise ConfigurationError("polarizabilities must be finite and >= 0")
    if not bool(torch.isfinite(params.thole).all()) or bool((params.thole < 0).any()):
        raise ConfigurationError("thole parameters must be finite and >= 0")
    if bool((params.damping < 0).any()):
        raise ConfigurationError("damping factors must be >= 0")

    valid = {int(a) for a in AxisType}
    frames = params.frame_atoms.detach().cpu().tolist()
    for k, at in enumerate(params.axis_types.detach().cpu().tolist()):
        if at not in valid:
            raise ConfigurationError(f"particle {k}: unknown axis type {at}")
        for slot, (idx, needed) in enumerate(zip(frames[k], _REQUIRED_PARTNERS[AxisType(at)])):
            if idx < -1 or idx >= n or idx == k:
                raise ConfigurationError(f"particle {k}: frame atom {idx} out of range")
            if needed and idx < 0:
                raise ConfigurationError(
                    f"particle {k}: axis type {AxisType(at).name} needs frame atom {'zxy'[slot]}"
                )


def validate_solvent(solvent: SolventSettings, num_particles: int) -> None:
    _check_rows("solvent radii", solvent.radii, (num_particles,))
    _check_rows("solvent scale factors", solvent.scale_factors, (num_particles,))
    if bool((solvent.radii <= 0).any()):
        raise ConfigurationError("solvent radii must be > 0")
    if solvent.solvent_dielectric <= 0 or solvent.solute_dielectric <= 0:
        raise ConfigurationError("dielectric constants must be > 0")
    if solvent.probe_radius < 0 or solvent.neck_scale < 0:
        raise ConfigurationError("probe radius and neck scale must be >= 0")


class MultipoleForceEngine:
    """Polarizable multipole electrostatics with optional implicit solvent.

    Usage::

        engine = MultipoleForceEngine()
        engine.initialize(topology, parameters, settings)
        engine.set_positions(positions, box)
        energy = engine.execute()
        forces = engine.get_forces()
    """

    def __init__(
        self,
        device: Optional[str | torch.device] = None,
        dtype: torch.dtype = torch.float64,
        backend: Optional[TransformBackend] = None,
    ) -> None:
        self.device = device if isinstance(device, torch.device) else get_device(device)
        self.dtype = dtype
        self._backend = backend
        self._initialized = False
        self.topology: Optional[Topology] = None
        self.parameters: Optional[MultipoleParameters] = None
        self.settings = MultipoleSettings()
        self.solvent: Optional[SolventSettings] = None
        self.scales: Optional[ScaleTables] = None
        self.lattice: Optional[LatticeEngine] = None
        self.report: Optional[EvaluationReport] = None
        self._positions: Optional[Tensor] = None
        self._snapshot: Optional[Tensor] = None
        self._box: Optional[Tensor] = None
        self._dirty = True
        self._forces: Optional[Tensor] = None
        self._lab: Optional[Tuple[Tensor, Tensor]] = None
        self._induced: Optional[Tensor] = None  # (C,n,3) from the last execute
        self._executed = False

    # ------------------------------------------------------------ configure
    @property
    def num_particles(self) -> int:
        if self.topology is None:
            raise StateError("engine is not initialized")
        return self.topology.num_particles

    @property
    def periodic(self) -> bool:
        return self.settings.nonbonded_method == "pme"

    def initialize(
        self,
        topology: Topology,
        parameters: MultipoleParameters,
        settings: Optional[MultipoleSettings] = None,
        solvent: Optional[SolventSettings] = None,
        box: Optional[Tensor] = None,
    ) -> None:
        """Validate inputs and build the one-time state (scale tables, lattice, buffers).

        For PME without an explicit grid and alpha the lattice is set up from
        `box` here, or from the first box passed to `set_positions`.
        """
        if self._initialized:
            raise StateError("engine is already initialized; use copy_parameters_to_context")
        settings = settings if settings is not None else MultipoleSettings()
        n = topology.num_particles
        if n < 1:
            raise ConfigurationError("at least one particle is required")
        if settings.nonbonded_method not in ("no_cutoff", "pme"):
            raise ConfigurationError(f"unknown nonbonded method {settings.nonbonded_method!r}")
        if settings.polarization not in ("mutual", "extrapolated", "direct"):
            raise ConfigurationError(f"unknown polarization type {settings.polarization!r}")
        if settings.polarization == "extrapolated" and len(settings.extrapolation_coefficients) < 1:
            raise ConfigurationError("extrapolated polarization needs at least one coefficient")
        if settings.induced_epsilon <= 0 or settings.max_induced_iterations < 1:
            raise ConfigurationError("induced_epsilon must be > 0 and max_induced_iterations >= 1")
        if settings.nonbonded_method == "pme":
            if not settings.cutoff > 0.0:
                raise ConfigurationError(f"cutoff must be > 0, got {settings.cutoff}")
            if solvent is not None:
                raise ConfigurationError("generalized Kirkwood solvent requires nonbonded_method='no_cutoff'")
        validate_parameters(parameters, n)
        if solvent is not None:
            validate_solvent(solvent, n)

        self.topology = topology
        self.settings = settings
        self.parameters = parameters.to(self.device, self.dtype)
        self.solvent = self._solvent_to_device(solvent)
        self.scales = build_scale_tables(
            n, topology.bonds, self.parameters.polarization_groups, settings, self.dtype, self.device
        )
        if self.periodic and (
            (settings.ewald_alpha is not None and settings.grid is not None) or box is not None
        ):
            self._build_lattice(None if box is None else validate_box(box, settings.cutoff, self.dtype))
        self._forces = torch.zeros((n, 3), dtype=self.dtype, device=self.device)
        self._initialized = True
        logger.debug(
            "engine initialized: n=%d method=%s polarization=%s solvent=%s",
            n,
            settings.nonbonded_method,
            settings.polarization,
            solvent is not None,
        )

    def _solvent_to_device(self, solvent: Optional[SolventSettings]) -> Optional[SolventSettings]:
        if solvent is None:
            return None
        return replace(
            solvent,
            radii=solvent.radii.to(device=self.device, dtype=self.dtype),
            scale_factors=solvent.scale_factors.to(device=self.device, dtype=self.dtype),
        )

    def _build_lattice(self, box: Optional[Tensor]) -> None:
        s = self.settings
        if s.ewald_alpha is not None and s.grid is not None:
            alpha, grid = s.ewald_alpha, tuple(s.grid)
        else:
            alpha, grid = pme_parameters(s.cutoff, s.ewald_error_tolerance, box, s.ewald_alpha)
            if s.grid is not None:
                grid = tuple(s.grid)
        self.lattice = LatticeEngine(grid, alpha, self._backend, dtype=self.dtype, device=self.device)

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise StateError("engine is not initialized")

    # ------------------------------------------------------------ positions
    def set_positions(self, positions: Tensor, box: Optional[Tensor] = None) -> None:
        self._require_initialized()
        pos = torch.as_tensor(positions, dtype=self.dtype, device=self.device)
        n = self.num_particles
        if tuple(pos.shape) != (n, 3):
            raise ConfigurationError(f"positions must have shape ({n}, 3), got {tuple(pos.shape)}")
        if not bool(torch.isfinite(pos).all()):
            raise ConfigurationError("positions must be finite")
        if self.periodic:
            if box is None and self._box is not None:
                box = self._box
            cell = validate_box(box, self.settings.cutoff, self.dtype).to(self.device)
            if self.lattice is None:
                self._build_lattice(cell)
            self._box = cell
        elif box is not None:
            self._box = validate_box(box, None, self.dtype).to(self.device)
        if self._snapshot is None or not torch.equal(self._snapshot, pos):
            self._dirty = True
        self._positions = pos
        self._snapshot = pos.detach().clone()

    def notify_positions_changed(self) -> None:
        """Mark cached lab-frame state stale after positions were changed in place."""
        self._dirty = True

    def _current_positions(self) -> Tensor:
        if self._positions is None:
            raise StateError("positions have not been set")
        return self._positions

    # ------------------------------------------------------------- forces
    def zero_forces(self) -> None:
        self._require_initialized()
        self._forces.zero_()

    def get_forces(self) -> Tensor:
        """Accumulated forces (kJ/mol/nm)."""
        self._require_initialized()
        return self._forces.clone()

    # ------------------------------------------------------------- execute
    def execute(self, include_forces: bool = True, include_energy: bool = True) -> float:
        """Run one evaluation; forces are added into the force buffer.

        Returns the energy in kJ/mol (0.0 when include_energy is False).
        """
        self._require_initialized()
        positions = self._current_positions().detach()
        params = self.parameters
        n = self.num_particles
        if self.periodic:
            self.lattice.set_box(self._box)

        grad_ctx = torch.enable_grad() if include_forces else torch.no_grad()
        with grad_ctx:
            pos = positions.clone().requires_grad_(include_forces)
            with torch.no_grad():
                dip0, quad0, _ = lab_frame_multipoles(positions, params)
            dip = dip0.clone().requires_grad_(include_forces)
            quad = quad0.clone().requires_grad_(include_forces)

            born, born_stats = None, {"born_clamped": 0, "neck_out_of_range": 0}
            solvent = self.solvent
            if solvent is not None:
                born, born_stats = born_radii(
                    pos,
                    solvent.radii,
                    solvent.scale_factors,
                    solvent.probe_radius,
                    solvent.neck_scale,
                    solvent.descreen_offset,
                    solvent.tanh_rescaling,
                    solvent.tanh_betas,
                )

            ctx = ElectrostaticsContext(
                pos, params, self.scales, self.settings, self.lattice, self._box, solvent, born
            )
            perm = ctx.permanent(params.charges, dip, quad)
            channels = [perm.field_d, perm.field_p]
            if perm.field_rf is not None:
                channels += [perm.field_d + perm.field_rf, perm.field_p + perm.field_rf]
            fixed = torch.stack(channels)
            solvated = 2 if perm.field_rf is not None else 0
            result = self._solve(ctx, fixed, solvated)

            mu = result.dipoles
            d_idx, p_idx = (2, 3) if solvated else (0, 1)
            mu_d, mu_p = mu[d_idx], mu[p_idx]
            e_d, e_p = fixed[d_idx], fixed[p_idx]
            e_pol = -0.5 * ONE_4PI_EPS0 * (mu_d * e_p).sum()

            terms: Dict[str, Tensor] = {f"permanent_{k}": v for k, v in perm.components.items()}
            terms["polarization"] = e_pol
            if solvated:
                terms["polarization_vacuum"] = -0.5 * ONE_4PI_EPS0 * (mu[0] * fixed[1]).sum()
            cavity = None
            if solvent is not None and solvent.include_cavity_term:
                cavity = cavity_energy(solvent.radii, born, solvent.probe_radius, solvent.surface_area_factor)
                terms["cavity"] = cavity

            energy = perm.energy + e_pol
            if cavity is not None:
                energy = energy + cavity

            if include_forces:
                if self.settings.polarization == "mutual":
                    op = ctx.dipole_operator(detach=False, solvated_channels=1 if solvated else 0)
                    mutual = op(mu_p[None])[0]
                    functional = perm.energy + ONE_4PI_EPS0 * (
                        -0.5 * (mu_d * mutual).sum() - 0.5 * ((mu_d * e_p).sum() + (mu_p * e_d).sum())
                    )
                    if cavity is not None:
                        functional = functional + cavity
                else:
                    functional = energy
                g_pos, g_dip, g_quad = torch.autograd.grad(functional, (pos, dip, quad), allow_unused=True)
                forces = -g_pos if g_pos is not None else torch.zeros_like(positions)
                torques = torques_from_gradients(dip0, quad0, g_dip, g_quad)
                map_torque_to_force(positions, params.axis_types, params.frame_atoms, torques, forces)
                self._forces.add_(forces.detach())

        self._lab = (dip0.detach(), quad0.detach())
        self._induced = mu.detach()
        self._dirty = False
        self._executed = True
        values = {k: float(v.detach()) for k, v in terms.items()}
        total = float(energy.detach())
        self.report = EvaluationReport(
            energy=total,
            terms=values,
            iterations=result.iterations,
            converged=result.converged,
            rms_error=result.rms_error,
            rms_history=list(result.history),
            born_clamped=born_stats["born_clamped"],
            neck_out_of_range=born_stats["neck_out_of_range"],
        )
        logger.debug(
            "energy %.6f kJ/mol: %s",
            total,
            ", ".join(f"{k}={v:.6f}" for k, v in values.items()),
        )
        return total if include_energy else 0.0

    def _solve(self, ctx: ElectrostaticsContext, fixed: Tensor, solvated: int) -> InducedDipoleResult:
        alpha = self.parameters.polarizabilities
        s = self.settings
        if s.polarization == "direct":
            return solve_direct(fixed, alpha)
        if s.polarization == "extrapolated":
            op = ctx.dipole_operator(detach=False, solvated_channels=solvated)
            return solve_extrapolated(fixed, alpha, op, s.extrapolation_coefficients)
        op = ctx.dipole_operator(detach=True, solvated_channels=solvated)
        return solve_mutual(fixed, alpha, op, s.induced_epsilon, s.max_induced_iterations)

    def evaluate(self, positions: Tensor, box: Optional[Tensor] = None) -> Tuple[float, Tensor]:
        """Convenience wrapper: fresh force buffer, one execute, (energy, forces)."""
        self.set_positions(positions, box)
        self.zero_forces()
        energy = self.execute()
        return energy, self.get_forces()

    # ------------------------------------------------------------- queries
    def _require_results(self) -> None:
        self._require_initialized()
        if not self._executed:
            raise StateError("no evaluation available; call execute() after setting positions")
        if self._dirty:
            raise StateError("positions changed since the last evaluation; call execute() first")

    def _active_induced(self) -> Tensor:
        # solvated direct set when a reaction field is active
        return self._induced[2] if self._induced.shape[0] > 2 else self._induced[0]

    def get_lab_frame_permanent_dipoles(self) -> Tensor:
        self._require_results()
        return self._lab[0].clone()

    def get_induced_dipoles(self) -> Tensor:
        self._require_results()
        return self._active_induced().clone()

    def get_total_dipoles(self) -> Tensor:
        return self.get_lab_frame_permanent_dipoles() + self.get_induced_dipoles()

    def get_induced_dipole_channels(self) -> Dict[str, Tensor]:
        """All solved dipole sets by name (d, p and, with solvent, gk_d, gk_p)."""
        self._require_results()
        names = ["d", "p", "gk_d", "gk_p"]
        return {names[c]: self._induced[c].clone() for c in range(self._induced.shape[0])}

    def get_electrostatic_potential(self, points: Tensor) -> Tensor:
        """Potential (kJ/mol/e) of the total multipoles at arbitrary points."""
        self._require_results()
        pts = torch.as_tensor(points, dtype=self.dtype, device=self.device).reshape(-1, 3)
        positions = self._current_positions().detach()
        dipoles = self.get_total_dipoles()
        quads = self._lab[1]
        charges = self.parameters.charges
        with torch.no_grad():
            if self.periodic:
                self.lattice.set_box(self._box)
                phi = point_potential(
                    pts, positions, charges, dipoles, quads,
                    alpha=self.lattice.alpha, box=self._box, cutoff=self.settings.cutoff,
                )
                phi = phi + self.lattice.potential_at(pts, charges, dipoles, quads, positions)
            else:
                phi = point_potential(pts, positions, charges, dipoles, quads)
        return ONE_4PI_EPS0 * phi

    def get_system_multipole_moments(self) -> Tensor:
        """(13,) charge, dipole (x, y, z) and quadrupole (xx..zz) about the centre of mass.

        Units are e, e nm and e nm^2.
        """
        self._require_results()
        positions = self._current_positions().detach()
        masses = self.topology.masses.to(device=self.device, dtype=self.dtype)
        com = (masses[:, None] * positions).sum(0) / masses.sum()
        r = positions - com
        q = self.parameters.charges
        mu = self.get_total_dipoles()
        Q = self._lab[1]
        eye = torch.eye(3, dtype=self.dtype, device=self.device)
        rr = r[:, :, None] * r[:, None, :]
        r2 = (r * r).sum(-1)
        mr = mu[:, :, None] * r[:, None, :]
        quad = (
            (q[:, None, None] * (3.0 * rr - r2[:, None, None] * eye)).sum(0)
            + 3.0 * (mr + mr.transpose(-1, -2)).sum(0)
            - 2.0 * (mu * r).sum() * eye
            + 3.0 * Q.sum(0)
        )
        dipole = (q[:, None] * r).sum(0) + mu.sum(0)
        return torch.cat([q.sum().reshape(1), dipole, quad.reshape(-1)])

    def get_pme_parameters(self) -> Tuple[float, int, int, int]:
        """(alpha, nx, ny, nz); zeros without PME."""
        self._require_initialized()
        if not self.periodic:
            return (0.0, 0, 0, 0)
        if self.lattice is None:
            raise StateError("PME parameters are derived from the first box; set positions first")
        return (self.lattice.alpha, *self.lattice.grid)

    def get_dispersion_pme_parameters(self) -> Tuple[float, int, int, int]:
        """Dispersion PME parameters as configured; no dispersion kernel runs here."""
        self._require_initialized()
        s = self.settings
        alpha = float(s.dispersion_alpha) if s.dispersion_alpha is not None else 0.0
        grid = tuple(int(k) for k in s.dispersion_grid) if s.dispersion_grid is not None else (0, 0, 0)
        return (alpha, *grid)

    # -------------------------------------------------------------- update
    def copy_parameters_to_context(
        self, parameters: MultipoleParameters, solvent: Optional[SolventSettings] = None
    ) -> None:
        """Replace per-particle parameters; invalidates cached multipoles and dipoles.

        The solvent model is kept when `solvent` is None.
        """
        self._require_initialized()
        n = self.num_particles
        if parameters.num_particles != n:
            raise ConfigurationError(
                f"particle count cannot change on update ({n} -> {parameters.num_particles})"
            )
        validate_parameters(parameters, n)
        if solvent is not None:
            if self.periodic:
                raise ConfigurationError("generalized Kirkwood solvent requires nonbonded_method='no_cutoff'")
            validate_solvent(solvent, n)
            self.solvent = self._solvent_to_device(solvent)
        self.parameters = parameters.to(self.device, self.dtype)
        self.scales = build_scale_tables(
            n, self.topology.bonds, self.parameters.polarization_groups, self.settings, self.dtype, self.device
        )
        self._lab = None
        self._induced = None
        self._executed = False
        self._dirty = True
        self.report = None
        logger.debug("parameters updated for %d particles", n)
