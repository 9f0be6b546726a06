"""Transform backends for the lattice engine.

The lattice engine never performs a frequency transform itself; it asks the
injected backend. Backends also decide whether charge spreading accumulates
in fixed point and in which order particles are accumulated.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import torch

Tensor = torch.Tensor

__all__ = ["TransformBackend", "TorchFFTBackend"]


class TransformBackend(ABC):
    """Capabilities the lattice engine consumes from the execution substrate."""

    @abstractmethod
    def compute_fft(self, grid: Tensor, forward: bool) -> Tensor:
        """3-D transform over the last three axes.

        The forward transform is unnormalized; the inverse carries 1/N, so
        that compute_fft(compute_fft(x, True), False) == x.
        """

    @abstractmethod
    def use_fixed_point_charge_spreading(self) -> bool:
        ...

    def sort_grid_index(self, cell_index: Tensor) -> Tensor:
        """Order in which particles are accumulated onto the grid."""
        return torch.argsort(cell_index, stable=True)


class TorchFFTBackend(TransformBackend):
    """torch.fft transforms; differentiable and device agnostic.

    fixed_point=None enables fixed-point spreading on CUDA, where
    floating-point scatter-add order is not deterministic.
    """

    def __init__(self, fixed_point: Optional[bool] = None, device: Optional[torch.device] = None):
        if fixed_point is None:
            fixed_point = device is not None and torch.device(device).type == "cuda"
        self._fixed_point = bool(fixed_point)

    def compute_fft(self, grid: Tensor, forward: bool) -> Tensor:
        if forward:
            return torch.fft.fftn(grid, dim=(-3, -2, -1))
        return torch.fft.ifftn(grid, dim=(-3, -2, -1))

    def use_fixed_point_charge_spreading(self) -> bool:
        return self._fixed_point
