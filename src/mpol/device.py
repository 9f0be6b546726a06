from __future__ import annotations

from typing import Optional

import torch

__all__ = ["get_device"]


def get_device(prefer: Optional[str] = None) -> torch.device:
    """
    Choose a torch device with a simple preference policy.
    prefer: one of {"cuda", "cpu"} or None to auto.

    MPS is skipped on auto selection: the lattice engine needs float64 FFTs.
    """
    if prefer == "cuda" and torch.cuda.is_available():
        return torch.device("cuda")
    if prefer is None and torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")
