"""Covalent separations and pairwise scale tables.

Separations are bond counts along the shortest path: 1 for 1-2 pairs up to
4 for 1-5 pairs; 0 on the diagonal and -1 beyond 1-5. Scale tables are dense
(n, n) matrices with zero diagonal, built once per parameter set.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import torch

from .exceptions import ConfigurationError
from .params.types import MultipoleSettings

Tensor = torch.Tensor

__all__ = ["ScaleTables", "covalent_separations", "build_scale_tables"]

logger = logging.getLogger(__name__)

MAX_SEPARATION = 4


@dataclass(frozen=True)
class ScaleTables:
    covalent: Tensor  # (n,n) int8 separation, -1 beyond 1-5
    same_group: Tensor  # (n,n) bool
    m: Tensor  # permanent-permanent
    p: Tensor  # permanent field on the polar set
    d: Tensor  # permanent field on the direct set
    u: Tensor  # induced-induced


def covalent_separations(num_particles: int, bonds: Sequence[Tuple[int, int]]) -> Tensor:
    """Breadth-first bond distances up to MAX_SEPARATION."""
    adjacency: List[List[int]] = [[] for _ in range(num_particles)]
    for a, b in bonds:
        a, b = int(a), int(b)
        if not (0 <= a < num_particles and 0 <= b < num_particles) or a == b:
            raise ConfigurationError(f"invalid bond ({a}, {b}) for {num_particles} particles")
        adjacency[a].append(b)
        adjacency[b].append(a)
    sep = torch.full((num_particles, num_particles), -1, dtype=torch.int8)
    for root in range(num_particles):
        sep[root, root] = 0
        depth = {root: 0}
        queue = deque([root])
        while queue:
            cur = queue.popleft()
            if depth[cur] == MAX_SEPARATION:
                continue
            for nb in adjacency[cur]:
                if nb not in depth:
                    depth[nb] = depth[cur] + 1
                    sep[root, nb] = depth[nb]
                    queue.append(nb)
    return sep


def build_scale_tables(
    num_particles: int,
    bonds: Sequence[Tuple[int, int]],
    polarization_groups: Tensor,
    settings: MultipoleSettings,
    dtype: torch.dtype = torch.float64,
    device: torch.device | None = None,
) -> ScaleTables:
    sep = covalent_separations(num_particles, bonds)
    groups = polarization_groups.detach().cpu()
    same_group = groups[:, None] == groups[None, :]

    m = torch.ones((num_particles, num_particles), dtype=dtype)
    p = torch.ones_like(m)
    for k in range(1, MAX_SEPARATION + 1):
        mask = sep == k
        m[mask] = settings.mpole_scales[k - 1]
        p[mask] = settings.polar_scales[k - 1]
    # 1-4 partners inside one polarization group
    p[(sep == 3) & same_group] *= settings.polar14_intra

    d = torch.where(
        same_group,
        torch.tensor(settings.direct_scales[0], dtype=dtype),
        torch.tensor(settings.direct_scales[1], dtype=dtype),
    )
    u = torch.full_like(m, settings.mutual_scale)
    eye = torch.eye(num_particles, dtype=torch.bool)
    for table in (m, p, d, u):
        table[eye] = 0.0
    logger.debug(
        "scale tables: n=%d bonds=%d 1-2=%d 1-3=%d 1-4=%d 1-5=%d",
        num_particles,
        len(bonds),
        int((sep == 1).sum()) // 2,
        int((sep == 2).sum()) // 2,
        int((sep == 3).sum()) // 2,
        int((sep == 4).sum()) // 2,
    )
    return ScaleTables(
        covalent=sep.to(device=device),
        same_group=same_group.to(device=device),
        m=m.to(device=device),
        p=p.to(device=device),
        d=d.to(device=device),
        u=u.to(device=device),
    )
