from __future__ import annotations

"""TOML system descriptions.

Layout::

    bonds = [[0, 1], [0, 2]]

    [settings]            # MultipoleSettings fields, all optional
    nonbonded_method = "no_cutoff"
    polarization = "mutual"

    [solvent]             # optional; enables generalized Kirkwood
    solvent_dielectric = 78.3

    [[particle]]
    mass = 15.999
    charge = -0.51966
    dipole = [0.0, 0.0, 0.00755612]          # e nm, local frame
    quadrupole = [9 values, row-major]        # e nm^2, local frame
    axis = "bisector"                         # name or integer code
    frame = [1, 2]                            # z, x, y partners
    polarizability = 0.000837                 # nm^3
    thole = 0.39
    group = 0
    radius = 0.1785                           # solvent only
    scale = 0.69                              # solvent only
    position = [0.0, 0.0, 0.0]                # nm, optional

Missing optional per-particle values take the MultipoleParameters defaults.
"""

from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import torch

try:
    import tomllib as _toml
except Exception:  # pragma: no cover - fallback to tomli if available
    import tomli as _toml  # type: ignore

from ..constants import AxisType
from ..exceptions import ConfigurationError
from .types import AXIS_NAMES, MultipoleParameters, MultipoleSettings, SolventSettings, Topology

__all__ = ["load_system", "load_positions", "settings_from_dict", "solvent_from_dict"]

_TUPLE_FIELDS = {
    "grid",
    "dispersion_grid",
    "extrapolation_coefficients",
    "mpole_scales",
    "polar_scales",
    "direct_scales",
    "tanh_betas",
}


def _read(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"system file not found: {p}")
    with p.open("rb") as fh:
        data = _toml.load(fh)
    if not isinstance(data, dict) or "particle" not in data:
        raise ConfigurationError(f"{p}: system description needs at least one [[particle]] table")
    return data


def _coerce(table: Dict[str, Any], allowed: Dict[str, Any], where: str) -> Dict[str, Any]:
    unknown = set(table) - set(allowed)
    if unknown:
        raise ConfigurationError(f"unknown keys in [{where}]: {sorted(unknown)}")
    return {k: tuple(v) if k in _TUPLE_FIELDS and v is not None else v for k, v in table.items()}


def settings_from_dict(table: Dict[str, Any]) -> MultipoleSettings:
    allowed = {f.name: f for f in fields(MultipoleSettings)}
    return MultipoleSettings(**_coerce(table, allowed, "settings"))


def solvent_from_dict(
    table: Dict[str, Any], radii: List[float], scale_factors: List[float], dtype: torch.dtype = torch.float64
) -> SolventSettings:
    allowed = {f.name: f for f in fields(SolventSettings) if f.name not in ("radii", "scale_factors")}
    return SolventSettings(
        radii=torch.tensor(radii, dtype=dtype),
        scale_factors=torch.tensor(scale_factors, dtype=dtype),
        **_coerce(table, allowed, "solvent"),
    )


def _axis_code(value: Any, index: int) -> int:
    if isinstance(value, str):
        key = value.strip().lower().replace("-", "_")
        if key not in AXIS_NAMES:
            raise ConfigurationError(f"particle {index}: unknown axis type {value!r}")
        return int(AXIS_NAMES[key])
    return int(AxisType(int(value)))


def _frame(value: Any, index: int) -> List[int]:
    frame = [int(v) for v in (value or [])]
    if len(frame) > 3:
        raise ConfigurationError(f"particle {index}: at most three frame atoms (z, x, y)")
    return frame + [-1] * (3 - len(frame))


def load_system(
    path: str | Path, dtype: torch.dtype = torch.float64
) -> Tuple[Topology, MultipoleParameters, MultipoleSettings, Optional[SolventSettings]]:
    """Parse a TOML system description.

    Returns (topology, parameters, settings, solvent or None).
    """
    data = _read(path)
    particles = data["particle"]
    n = len(particles)
    masses, charges, dipoles, quads, axes, frames = [], [], [], [], [], []
    alpha, thole, damping, groups, radii, scales = [], [], [], [], [], []
    for k, p in enumerate(particles):
        try:
            charges.append(float(p["charge"]))
            alpha.append(float(p["polarizability"]))
        except KeyError as exc:
            raise ConfigurationError(f"particle {k}: missing required key {exc.args[0]!r}") from exc
        masses.append(float(p.get("mass", 1.0)))
        dipoles.append([float(v) for v in p.get("dipole", [0.0, 0.0, 0.0])])
        quad = [float(v) for v in p.get("quadrupole", [0.0] * 9)]
        if len(quad) != 9:
            raise ConfigurationError(f"particle {k}: quadrupole needs 9 values, got {len(quad)}")
        quads.append(quad)
        axes.append(_axis_code(p.get("axis", "no_axis"), k))
        frames.append(_frame(p.get("frame"), k))
        thole.append(float(p.get("thole", 0.39)))
        damping.append(p.get("damping"))
        groups.append(int(p.get("group", k)))
        radii.append(p.get("radius"))
        scales.append(p.get("scale"))

    if any(d is None for d in damping) and not all(d is None for d in damping):
        raise ConfigurationError("damping must be given for every particle or for none")
    params = MultipoleParameters.from_arrays(
        charges=charges,
        dipoles=dipoles,
        quadrupoles=quads,
        axis_types=axes,
        frame_atoms=frames,
        polarizabilities=alpha,
        thole=thole,
        damping=None if damping[0] is None else [float(d) for d in damping],
        polarization_groups=groups,
        dtype=dtype,
    )
    bonds = tuple((int(a), int(b)) for a, b in data.get("bonds", []))
    topology = Topology(masses=torch.tensor(masses, dtype=dtype), bonds=bonds)
    settings = settings_from_dict(data.get("settings", {}))

    solvent = None
    if "solvent" in data:
        missing = [k for k in range(n) if radii[k] is None]
        if missing:
            raise ConfigurationError(f"[solvent] needs a radius for every particle; missing {missing}")
        # default descreening scale of 0.69 when a particle gives none
        factors = [0.69 if s is None else float(s) for s in scales]
        solvent = solvent_from_dict(data["solvent"], [float(r) for r in radii], factors, dtype)
    return topology, params, settings, solvent


def load_positions(path: str | Path, dtype: torch.dtype = torch.float64) -> Optional[torch.Tensor]:
    """Per-particle `position` entries as an (n,3) tensor, or None when absent."""
    data = _read(path)
    pos = [p.get("position") for p in data["particle"]]
    if all(p is None for p in pos):
        return None
    if any(p is None for p in pos):
        raise ConfigurationError("position must be given for every particle or for none")
    return torch.tensor(pos, dtype=dtype).reshape(-1, 3)
