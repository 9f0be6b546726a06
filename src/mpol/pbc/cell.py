from __future__ import annotations

import math
from typing import List, Sequence, Tuple

import torch

from ..exceptions import ConfigurationError

__all__ = [
    "validate_box",
    "to_cart",
    "to_frac",
    "minimum_image",
    "build_lattice_translations",
]


def validate_box(
    box: torch.Tensor | Sequence[Sequence[float]] | None,
    cutoff: float | None = None,
    dtype: torch.dtype | None = None,
) -> torch.Tensor:
    """Validate a 3x3 box matrix in nm whose rows are the box vectors.

    Returns the box as a (3,3) torch tensor (dtype from the default when not given).

    Rules:
    - Box vectors must form a non-singular matrix with positive volume.
    - When a cutoff is given it may not exceed half the shortest box height,
      so that the minimum image is unique inside the cutoff sphere.
    """
    if box is None:
        raise ConfigurationError("periodic box is required (3x3 matrix in nm).")
    A = torch.as_tensor(box, dtype=dtype or torch.get_default_dtype())
    if A.shape != (3, 3):
        raise ConfigurationError(f"box must be shape (3,3), got {tuple(A.shape)}")
    vol = torch.det(A)
    if not torch.isfinite(vol) or float(vol.item()) <= 0.0:
        raise ConfigurationError("Box matrix must have positive determinant (right-handed basis).")
    if cutoff is not None:
        # perpendicular heights V / |a_j x a_k|
        heights = [
            float(vol) / float(torch.linalg.vector_norm(torch.cross(A[j], A[k], dim=0)))
            for j, k in ((1, 2), (2, 0), (0, 1))
        ]
        if cutoff > 0.5 * min(heights) + 1e-12:
            raise ConfigurationError(
                f"cutoff {cutoff:.4f} nm exceeds half the smallest box height {0.5 * min(heights):.4f} nm"
            )
    return A


def to_cart(frac: torch.Tensor, box: torch.Tensor) -> torch.Tensor:
    """Convert fractional to Cartesian coordinates via r = f B (rows of B are box vectors)."""
    return frac @ box


def to_frac(cart: torch.Tensor, box: torch.Tensor) -> torch.Tensor:
    """Convert Cartesian to fractional coordinates via f = r B^{-1}."""
    return cart @ torch.linalg.inv(box)


def minimum_image(delta: torch.Tensor, box: torch.Tensor) -> torch.Tensor:
    """Wrap displacement vectors into the nearest image (exact for rectangular boxes)."""
    f = to_frac(delta, box)
    f = f - torch.round(f.detach())
    return to_cart(f, box)


def build_lattice_translations(cutoff: float, box: torch.Tensor) -> List[Tuple[int, int, int]]:
    """Enumerate lattice translations R = n1 a1 + n2 a2 + n3 a3 within |R| <= cutoff.

    - Returns integer triplets sorted by increasing |R|, then lexicographic (n1,n2,n3).
    - Includes the origin (0,0,0).
    """
    if cutoff <= 0:
        raise ConfigurationError("cutoff must be > 0")
    a1, a2, a3 = box[0], box[1], box[2]
    eps = 1e-15
    n1 = max(0, math.ceil(cutoff / max(float(torch.linalg.vector_norm(a1)), eps)))
    n2 = max(0, math.ceil(cutoff / max(float(torch.linalg.vector_norm(a2)), eps)))
    n3 = max(0, math.ceil(cutoff / max(float(torch.linalg.vector_norm(a3)), eps)))
    cand: List[Tuple[float, int, int, int]] = []
    for i in range(-n1, n1 + 1):
        for j in range(-n2, n2 + 1):
            for k in range(-n3, n3 + 1):
                R = i * a1 + j * a2 + k * a3
                length = float(torch.linalg.vector_norm(R))
                if length <= cutoff + 1e-12:
                    cand.append((length, i, j, k))
    cand.sort()
    return [(i, j, k) for _, i, j, k in cand]
