import pytest
import torch

from mpol.constants import AxisType
from mpol.exceptions import ConfigurationError
from mpol.params.loader import load_positions, load_system, settings_from_dict

WATER = """
bonds = [[0, 1], [0, 2]]

[settings]
polarization = "extrapolated"
grid = [24, 24, 24]

[[particle]]
mass = 15.999
charge = -0.51966
dipole = [0.0, 0.0, 0.00755612]
quadrupole = [0.000354, 0.0, 0.0, 0.0, -0.000390, 0.0, 0.0, 0.0, 0.000036]
axis = "bisector"
frame = [1, 2]
polarizability = 0.000837
group = 0
position = [0.0, 0.0, 0.0]
{o_extra}

[[particle]]
mass = 1.008
charge = 0.25983
axis = "z_then_x"
frame = [0, 2]
polarizability = 0.000496
group = 0
position = [0.09572, 0.0, 0.0]
{h_extra}

[[particle]]
mass = 1.008
charge = 0.25983
axis = 0
frame = [0, 1]
polarizability = 0.000496
group = 0
position = [-0.023999, 0.092663, 0.0]
{h_extra}
"""


def _write(tmp_path, text, name="water.toml"):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_load_water(tmp_path):
    path = _write(tmp_path, WATER.format(o_extra="", h_extra=""))
    topology, params, settings, solvent = load_system(path)
    assert topology.num_particles == 3
    assert topology.bonds == ((0, 1), (0, 2))
    assert params.axis_types.tolist() == [int(AxisType.BISECTOR), int(AxisType.Z_THEN_X), 0]
    assert params.frame_atoms[0].tolist() == [1, 2, -1]
    assert params.quadrupoles.shape == (3, 3, 3)
    assert float(params.quadrupoles[0, 1, 1]) == pytest.approx(-0.000390)
    assert params.thole.tolist() == pytest.approx([0.39] * 3)
    # damping defaults to alpha^(1/6)
    assert float(params.damping[0]) == pytest.approx(0.000837 ** (1.0 / 6.0))
    assert settings.polarization == "extrapolated"
    assert settings.grid == (24, 24, 24)
    assert solvent is None
    positions = load_positions(path)
    assert positions.shape == (3, 3)
    assert float(positions[2, 1]) == pytest.approx(0.092663)


def test_load_with_solvent(tmp_path):
    text = WATER.format(o_extra="radius = 0.17", h_extra="radius = 0.11\nscale = 0.8")
    text += "\n[solvent]\nsolvent_dielectric = 80.0\nneck_scale = 0.3\ntanh_betas = [1.0, 0.5, 0.1]\n"
    _, _, _, solvent = load_system(_write(tmp_path, text))
    assert solvent.solvent_dielectric == 80.0
    assert solvent.tanh_betas == (1.0, 0.5, 0.1)
    assert solvent.radii.tolist() == pytest.approx([0.17, 0.11, 0.11])
    assert solvent.scale_factors.tolist() == pytest.approx([0.69, 0.8, 0.8])


def test_solvent_needs_every_radius(tmp_path):
    text = WATER.format(o_extra="radius = 0.17", h_extra="") + "\n[solvent]\n"
    with pytest.raises(ConfigurationError):
        load_system(_write(tmp_path, text))


def test_unknown_keys_rejected(tmp_path):
    text = WATER.format(o_extra="", h_extra="") + "\n[solvent]\nviscosity = 1.0\n"
    with pytest.raises(ConfigurationError):
        load_system(_write(tmp_path, text))
    with pytest.raises(ConfigurationError):
        settings_from_dict({"cutof": 0.9})


def test_bad_particle_entries(tmp_path):
    with pytest.raises(ConfigurationError):
        load_system(_write(tmp_path, WATER.format(o_extra="", h_extra="").replace("polarizability = 0.000837\n", "")))
    with pytest.raises(ConfigurationError):
        load_system(_write(tmp_path, WATER.format(o_extra="", h_extra="").replace('"bisector"', '"bisect"')))
    with pytest.raises(ConfigurationError):
        load_system(_write(tmp_path, WATER.format(o_extra="", h_extra="damping = 0.3")))
    with pytest.raises(ConfigurationError):
        load_system(_write(tmp_path, "bonds = []\n"))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_system(tmp_path / "absent.toml")


def test_positions_absent_or_partial(tmp_path):
    text = "[[particle]]\ncharge = 1.0\npolarizability = 0.0\n"
    assert load_positions(_write(tmp_path, text)) is None
    partial = text + "position = [0.0, 0.0, 0.0]\n" + text
    with pytest.raises(ConfigurationError):
        load_positions(_write(tmp_path, partial, "partial.toml"))


def test_loaded_system_runs(tmp_path, build_engine):
    path = _write(tmp_path, WATER.format(o_extra="", h_extra=""))
    topology, params, _, _ = load_system(path)
    engine = build_engine(topology, params, load_positions(path))
    energy = engine.execute()
    assert torch.isfinite(torch.tensor(energy))
    assert torch.isfinite(engine.get_forces()).all()
