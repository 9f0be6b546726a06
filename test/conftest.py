import sys
from pathlib import Path

import pytest
import torch

# Ensure local src directory is importable as package root for mpol
root = Path(__file__).resolve().parents[1]
src = root / 'src'
if str(src) not in sys.path:
    sys.path.insert(0, str(src))

from mpol.constants import AxisType  # noqa: E402
from mpol.engine import MultipoleForceEngine  # noqa: E402
from mpol.params.types import MultipoleParameters, MultipoleSettings, SolventSettings, Topology  # noqa: E402

# AMOEBA water (e, e nm, e nm^2, nm^3)
_O = dict(
    charge=-0.51966,
    dipole=[0.0, 0.0, 0.00755612],
    quadrupole=[0.000354030721139, 0.0, 0.0, 0.0, -0.000390257148729, 0.0, 0.0, 0.0, 3.62264275897e-05],
    polarizability=0.000837,
)
_H = dict(
    charge=0.25983,
    dipole=[-0.00204209484795, 0.0, -0.00307875299958],
    quadrupole=[
        -3.42848248983e-05, 0.0, -1.89485963908e-06,
        0.0, -0.000100240875193, 0.0,
        -1.89485963908e-06, 0.0, 0.000134525700091,
    ],
    polarizability=0.000496,
)

DIMER_POSITIONS = [
    [0.0, 0.0, 0.0],
    [0.09572, 0.0, 0.0],
    [-0.023999, 0.092663, 0.0],
    [0.29, 0.02, 0.01],
    [0.35, 0.09, 0.035],
    [0.32, -0.03, 0.08],
]


def water_dimer():
    """(topology, parameters, positions) for two AMOEBA waters."""
    sites, axes, frames, groups = [], [], [], []
    for w in range(2):
        o, h1, h2 = 3 * w, 3 * w + 1, 3 * w + 2
        sites += [_O, _H, _H]
        axes += [AxisType.BISECTOR, AxisType.Z_THEN_X, AxisType.Z_THEN_X]
        frames += [[h1, h2, -1], [o, h2, -1], [o, h1, -1]]
        groups += [w, w, w]
    params = MultipoleParameters.from_arrays(
        charges=[s["charge"] for s in sites],
        dipoles=[s["dipole"] for s in sites],
        quadrupoles=[s["quadrupole"] for s in sites],
        axis_types=[int(a) for a in axes],
        frame_atoms=frames,
        polarizabilities=[s["polarizability"] for s in sites],
        thole=0.39,
        polarization_groups=groups,
    )
    topology = Topology(
        masses=torch.tensor([15.999, 1.008, 1.008] * 2, dtype=torch.float64),
        bonds=((0, 1), (0, 2), (3, 4), (3, 5)),
    )
    return topology, params, torch.tensor(DIMER_POSITIONS, dtype=torch.float64)


def point_charges(charges, polarizabilities=None):
    n = len(charges)
    return MultipoleParameters.from_arrays(
        charges=charges,
        dipoles=[[0.0, 0.0, 0.0]] * n,
        quadrupoles=[[0.0] * 9] * n,
        axis_types=[int(AxisType.NO_AXIS)] * n,
        frame_atoms=[[-1, -1, -1]] * n,
        polarizabilities=polarizabilities if polarizabilities is not None else [0.0] * n,
    )


def dimer_solvent(**kwargs):
    return SolventSettings(
        radii=torch.tensor([0.17, 0.11, 0.11] * 2, dtype=torch.float64),
        scale_factors=torch.tensor([0.69] * 6, dtype=torch.float64),
        **kwargs,
    )


@pytest.fixture
def dimer():
    return water_dimer()


@pytest.fixture
def build_engine():
    def _build(topology, params, positions=None, box=None, solvent=None, **settings):
        engine = MultipoleForceEngine(device="cpu")
        engine.initialize(topology, params, MultipoleSettings(**settings), solvent)
        if positions is not None:
            engine.set_positions(positions, box)
        return engine

    return _build


@pytest.fixture
def finite_difference_forces():
    def _fd(engine, positions, box=None, h=1e-5):
        pos = positions.clone()
        out = torch.zeros_like(pos)
        for a in range(pos.shape[0]):
            for c in range(3):
                pos[a, c] += h
                engine.set_positions(pos, box)
                ep = engine.execute(include_forces=False)
                pos[a, c] -= 2 * h
                engine.set_positions(pos, box)
                em = engine.execute(include_forces=False)
                pos[a, c] += h
                out[a, c] = -(ep - em) / (2 * h)
        engine.set_positions(pos, box)
        return out

    return _fd
