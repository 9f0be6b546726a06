"""Physical constants, unit conversions and fixed algorithm sizes.

Internal units are nm, kJ/mol and elementary charge.
"""

from __future__ import annotations

from enum import IntEnum

__all__ = [
    "ONE_4PI_EPS0",
    "DEBYE_PER_E_NM",
    "ANGSTROM_PER_NM",
    "EV_PER_KJMOL",
    "PME_ORDER",
    "MAX_DIIS_HISTORY",
    "FIXED_POINT_SCALE",
    "GK_EXPONENT",
    "MAX_BORN_RADIUS",
    "AxisType",
]

# kJ nm / (mol e^2)
ONE_4PI_EPS0 = 138.935456
DEBYE_PER_E_NM = 48.033324
ANGSTROM_PER_NM = 10.0
EV_PER_KJMOL = 0.010364269656262175

PME_ORDER = 5
MAX_DIIS_HISTORY = 20
FIXED_POINT_SCALE = float(2 ** 32)

# Still's f_GK mixing exponent
GK_EXPONENT = 2.455
# nm; Born radii of fully buried (or numerically overscreened) atoms
MAX_BORN_RADIUS = 3.0


class AxisType(IntEnum):
    """Local-frame definitions for permanent multipoles."""

    Z_THEN_X = 0
    BISECTOR = 1
    Z_BISECT = 2
    THREE_FOLD = 3
    Z_ONLY = 4
    NO_AXIS = 5
