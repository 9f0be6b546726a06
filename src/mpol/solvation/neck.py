"""Tabulated neck-integral coefficients for Born-radius descreening.

Two 45 x 45 tables (A_ij, B_ij) over atomic radii 0.80 .. 3.00 Angstrom in
steps of 0.05 Angstrom. Lookups snap each radius to the nearest bin and clamp
to the table range, so querying outside the range returns the boundary value.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Tuple

import numpy as _np
import torch

from ..constants import ANGSTROM_PER_NM

Tensor = torch.Tensor

__all__ = [
    "NECK_MIN_RADIUS",
    "NECK_MAX_RADIUS",
    "NECK_SPACING",
    "NUM_NECK_POINTS",
    "load_neck_tables",
    "neck_bins",
    "neck_correction",
]

# Angstrom
NECK_MIN_RADIUS = 0.80
NECK_MAX_RADIUS = 3.00
NECK_SPACING = 0.05
NUM_NECK_POINTS = 45

DATA_DIR = Path(__file__).resolve().parents[1] / "data"


@lru_cache(maxsize=None)
def load_neck_tables() -> Tuple[_np.ndarray, _np.ndarray]:
    """Return the (A, B) tables as read-only float64 arrays; loaded once per process."""
    a = _np.loadtxt(DATA_DIR / "neck_a.txt", dtype=_np.float64)
    b = _np.loadtxt(DATA_DIR / "neck_b.txt", dtype=_np.float64)
    shape = (NUM_NECK_POINTS, NUM_NECK_POINTS)
    if a.shape != shape or b.shape != shape:
        raise ValueError(f"neck tables must be {shape}, got {a.shape} and {b.shape}")
    a.setflags(write=False)
    b.setflags(write=False)
    return a, b


def neck_bins(radius: Tensor) -> Tuple[Tensor, Tensor]:
    """Nearest table bin for radii in nm; also flags radii outside the table."""
    r = radius * ANGSTROM_PER_NM
    raw = torch.round((r - NECK_MIN_RADIUS) / NECK_SPACING).long()
    idx = raw.clamp(0, NUM_NECK_POINTS - 1)
    return idx, raw != idx


def neck_correction(radius_i: Tensor | float, radius_j: Tensor | float) -> Tuple[Tensor, Tensor]:
    """Neck coefficients (A in Angstrom^-11, B in Angstrom) for radii in nm.

    A is indexed by the descreened atom (i) and the descreening atom (j).
    """
    ri = torch.as_tensor(radius_i, dtype=torch.float64)
    rj = torch.as_tensor(radius_j, dtype=torch.float64)
    ii, _ = neck_bins(ri.detach())
    jj, _ = neck_bins(rj.detach())
    a_np, b_np = load_neck_tables()
    device = ri.device
    table_a = torch.from_numpy(_np.array(a_np)).to(device)
    table_b = torch.from_numpy(_np.array(b_np)).to(device)
    return table_a[ii, jj], table_b[ii, jj]
