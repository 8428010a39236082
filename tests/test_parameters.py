"""
파라미터 / 설정 테스트
"""

import sys
import json
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from patchsolver.models.parameters import (
    SolverParameters,
    CalibrationParams,
    SFSInput,
    FLAT_PARAMETER_SIZE,
    pack_solver_parameters,
    unpack_solver_parameters,
)
from patchsolver.models.results import SolveResult, SOLVE_EARLY_OUT
from patchsolver.models.settings import SettingsManager


# =============================================================================
#  SolverParameters
# =============================================================================

def test_shading_schedule():
    params = SolverParameters(weight_shading_start=0.5, weight_shading_increment=0.25,
                              n_nonlinear_iterations=4)

    assert params.shading_weight_at(0) == 0.5
    assert params.shading_weight_at(3) == 1.25
    assert params.at_iteration(2).weight_shading == 1.0
    assert params.at_iteration(2).weight_shading_start == 0.5
    assert params.final_shading_weight == 1.25


def test_final_shading_weight_without_iterations():
    params = SolverParameters(weight_shading_start=0.5, weight_shading_increment=1.0,
                              n_nonlinear_iterations=0)
    assert params.final_shading_weight == 0.5


def test_precision_dtype():
    assert SolverParameters(precision='float').dtype == np.float32
    assert SolverParameters(precision='double').dtype == np.float64


@pytest.mark.parametrize("kwargs", [
    dict(precision='half'),
    dict(n_nonlinear_iterations=-1),
    dict(n_patch_iterations=2.5),
    dict(weight_fitting=np.nan),
    dict(weight_shading_increment=np.inf),
])
def test_validate_rejects(kwargs):
    with pytest.raises(ValueError):
        SolverParameters(**kwargs).validate()


def test_validate_accepts_defaults():
    SolverParameters().validate()


# =============================================================================
#  Calibration
# =============================================================================

def test_calibration_from_intrinsics():
    K = np.array([
        [525.0, 0.0, 0.0, 319.5],
        [0.0, 525.0, 0.0, 239.5],
        [0.0, 0.0, 1.0, 0.0],
        [0.0, 0.0, 0.0, 1.0],
    ])
    calib = CalibrationParams.from_intrinsics(K)

    assert calib.fx == 525.0
    assert calib.fy == -525.0
    assert calib.ux == 319.5
    assert calib.uy == 239.5


def test_calibration_requires_4x4():
    with pytest.raises(ValueError):
        CalibrationParams.from_intrinsics(np.eye(3))


# =============================================================================
#  Flat record
# =============================================================================

def test_pack_layout():
    params = SolverParameters(weight_fitting=2.0, weight_regularizer=3.0,
                              n_nonlinear_iterations=5, n_linear_iterations=6,
                              n_patch_iterations=7)
    calib = CalibrationParams(1.0, -2.0, 3.0, 4.0)
    flat = pack_solver_parameters(params, calib)

    assert flat.shape == (FLAT_PARAMETER_SIZE,)
    assert FLAT_PARAMETER_SIZE == 7 + 4 + 16 + 9 + 3
    np.testing.assert_array_equal(flat[:2], [2.0, 3.0])
    np.testing.assert_array_equal(flat[7:11], [1.0, -2.0, 3.0, 4.0])
    np.testing.assert_array_equal(flat[11:27], np.eye(4).ravel())
    np.testing.assert_array_equal(flat[-3:], [5, 6, 7])


def test_unpack_restores_values():
    params = SolverParameters(weight_prior=0.3, weight_shading_start=0.1,
                              weight_shading_increment=0.05, n_patch_iterations=9)
    calib = CalibrationParams(500.0, -500.0, 320.0, 240.0)
    transform = np.arange(16, dtype=np.float64).reshape(4, 4)
    lighting = np.linspace(-1.0, 1.0, 9)

    out_params, out_calib, out_transform, out_lighting = unpack_solver_parameters(
        pack_solver_parameters(params, calib, transform, lighting))

    assert out_params == params
    assert isinstance(out_params.n_patch_iterations, int)
    assert out_calib == calib
    np.testing.assert_array_equal(out_transform, transform)
    np.testing.assert_array_equal(out_lighting, lighting)


def test_unpack_wrong_size():
    with pytest.raises(ValueError):
        unpack_solver_parameters(np.zeros(FLAT_PARAMETER_SIZE - 1))


# =============================================================================
#  SFSInput
# =============================================================================

def make_input(h=3, w=4):
    return SFSInput(
        target_depth=np.ones((h, w)),
        target_intensity=np.ones((h, w)),
        prev_depth=np.ones((h, w)),
        depth_mask=np.ones((h, w)),
        lighting=np.zeros(9),
    )


def test_sfs_input_validate():
    make_input().validate(4, 3)


@pytest.mark.parametrize("name, value", [
    ('target_depth', None),
    ('prev_depth', np.ones((4, 3))),
    ('albedo', np.ones((2, 2))),
    ('edge_mask', np.ones((3, 4), dtype=np.uint8)),
    ('lighting', np.zeros(8)),
    ('delta_transform', np.eye(3)),
])
def test_sfs_input_rejects(name, value):
    inputs = make_input()
    setattr(inputs, name, value)
    with pytest.raises(ValueError):
        inputs.validate(4, 3)


# =============================================================================
#  SolveResult
# =============================================================================

def test_result_properties():
    result = SolveResult(status=SOLVE_EARLY_OUT, cost_history=[4.0, 2.0, 1.0])

    assert result.status_name == 'early_out'
    assert result.stopped_early
    assert result.initial_cost == 4.0
    assert result.final_cost == 1.0
    assert result.cost_reduction == pytest.approx(0.75)


def test_empty_result():
    result = SolveResult()
    assert result.initial_cost == 0.0
    assert result.cost_reduction == 0.0


# =============================================================================
#  SettingsManager
# =============================================================================

def test_settings_defaults(tmp_path):
    settings = SettingsManager(tmp_path)

    assert settings.get('backend') == 'native_block'
    assert settings.get('missing', 42) == 42
    params = settings.get_solver_params()
    assert params.n_patch_iterations == 16
    assert params.weight_shading == params.weight_shading_start


def test_settings_save_and_load(tmp_path):
    settings = SettingsManager(tmp_path)
    settings.set('weight_shading_start', 0.2)
    settings.update({'patch_size': 8, 'precision': 'float'})
    settings.save()

    saved = json.loads((tmp_path / 'settings.json').read_text(encoding='utf-8'))
    assert saved['patch_size'] == 8

    reloaded = SettingsManager(tmp_path)
    params = reloaded.get_solver_params()
    assert reloaded.get('patch_size') == 8
    assert params.precision == 'float'
    assert params.weight_shading == 0.2


def test_settings_corrupt_file_keeps_defaults(tmp_path):
    (tmp_path / 'settings.json').write_text('{not json', encoding='utf-8')
    settings = SettingsManager(tmp_path)
    assert settings.get('n_linear_iterations') == 4


def test_settings_invalid_values_raise(tmp_path):
    settings = SettingsManager(tmp_path)
    settings.set('n_linear_iterations', -3)
    with pytest.raises(ValueError):
        settings.get_solver_params()
