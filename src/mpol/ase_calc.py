from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import torch
from ase.calculators.calculator import Calculator, all_changes

from .constants import ANGSTROM_PER_NM, EV_PER_KJMOL
from .engine import MultipoleForceEngine
from .exceptions import ConfigurationError
from .params.loader import load_system
from .params.types import MultipoleParameters, MultipoleSettings, SolventSettings, Topology

logger = logging.getLogger(__name__)

__all__ = ["MultipoleCalculator"]


class MultipoleCalculator(Calculator):
    """ASE front end for MultipoleForceEngine.

    Positions and cell are taken in Angstrom; energy is reported in eV and
    forces in eV/Angstrom. Periodic atoms require nonbonded_method='pme'.
    """

    implemented_properties = ["energy", "forces"]

    def __init__(
        self,
        topology: Topology,
        parameters: MultipoleParameters,
        settings: Optional[MultipoleSettings] = None,
        solvent: Optional[SolventSettings] = None,
        device: Optional[str] = None,
        dtype: torch.dtype = torch.float64,
        label: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(label=label, **kwargs)
        self.engine = MultipoleForceEngine(device=device, dtype=dtype)
        self.engine.initialize(topology, parameters, settings, solvent)
        self.dtype = dtype

    @classmethod
    def from_toml(cls, path: str | Path, **kwargs: Any) -> "MultipoleCalculator":
        topology, parameters, settings, solvent = load_system(path)
        return cls(topology, parameters, settings, solvent, **kwargs)

    def calculate(self, atoms=None, properties=("energy",), system_changes=all_changes):  # type: ignore
        super().calculate(atoms, properties, system_changes)
        atoms = self.atoms
        engine = self.engine
        positions = torch.tensor(atoms.get_positions(), dtype=self.dtype) / ANGSTROM_PER_NM
        box = None
        if any(bool(x) for x in atoms.get_pbc()):
            if not engine.periodic:
                raise ConfigurationError("periodic atoms need nonbonded_method='pme'")
            box = torch.tensor(atoms.cell.array, dtype=self.dtype) / ANGSTROM_PER_NM
        engine.set_positions(positions, box)
        engine.zero_forces()
        energy = engine.execute(include_forces="forces" in properties)
        self.results["energy"] = energy * EV_PER_KJMOL
        if "forces" in properties:
            forces = engine.get_forces().detach().cpu().numpy()
            self.results["forces"] = forces * EV_PER_KJMOL / ANGSTROM_PER_NM
        report = engine.report
        logger.debug(
            "ase calculate: n=%d energy=%.6f eV iterations=%d converged=%s",
            len(atoms),
            self.results["energy"],
            report.iterations,
            report.converged,
        )
