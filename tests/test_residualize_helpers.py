import numpy as np
import pandas as pd
import pytest

from causal_forest_walkthrough.pipelines import dataset as ds
from causal_forest_walkthrough.pipelines import estimator as est
from causal_forest_walkthrough.pipelines import matrices as mx
from causal_forest_walkthrough.pipelines import residualize as rz
from causal_forest_walkthrough.pipelines.errors import DimensionMismatch, EstimatorError, SchemaError

SMALL = est.ForestSettings(n_estimators=40, n_jobs=1, random_state=0)


def _frame_and_design(n_rows: int = 400) -> tuple[pd.DataFrame, mx.DesignMatrices]:
    frame = ds.with_row_ids(ds.simulate_dataset(n_rows, seed=11))
    return frame, mx.build_design(frame, ds.COVARIATE_COLS)


def test_align_to_design_reorders_by_row_id() -> None:
    frame, design = _frame_and_design(50)
    shuffled = frame.sample(frac=1.0, random_state=0)
    aligned = rz.align_to_design(shuffled, design)
    assert aligned[ds.ROW_ID_COL].tolist() == design.row_ids.tolist()
    assert np.allclose(aligned[ds.TARGET_COL].to_numpy(), design.y)


def test_align_to_design_reports_missing_rows() -> None:
    frame, design = _frame_and_design(50)
    with pytest.raises(DimensionMismatch, match="missing"):
        rz.align_to_design(frame.iloc[5:], design)
    with pytest.raises(DimensionMismatch):
        rz.align_to_design(frame.drop(columns=[ds.ROW_ID_COL]), design)


def test_regression_forest_predictions_reject_degenerate_designs() -> None:
    target = np.arange(20, dtype=float)
    with pytest.raises(EstimatorError, match="constant"):
        rz.fit_regression_forest_predictions(np.ones((20, 3)), target, SMALL)
    with pytest.raises(EstimatorError, match="no columns"):
        rz.fit_regression_forest_predictions(np.empty((20, 0)), target, SMALL)
    with pytest.raises(DimensionMismatch):
        rz.fit_regression_forest_predictions(np.ones((19, 3)), target, SMALL)


def test_residualize_fixed_effects_returns_aligned_clipped_estimates() -> None:
    frame, design = _frame_and_design()
    settings = est.ForestSettings(n_estimators=40, n_jobs=1, random_state=0, propensity_clip=0.1)
    nuisance = rz.residualize_fixed_effects(frame.iloc[::-1], design, settings=settings)

    assert nuisance.source == "residualized"
    assert np.array_equal(nuisance.row_ids, design.row_ids)
    assert nuisance.y_hat.shape == nuisance.w_hat.shape == (design.n_rows,)
    assert np.isfinite(nuisance.y_hat).all()
    assert nuisance.w_hat.min() >= 0.1
    assert nuisance.w_hat.max() <= 0.9


def test_residualize_fixed_effects_requires_fixed_effect_columns() -> None:
    frame, design = _frame_and_design(50)
    with pytest.raises(SchemaError):
        rz.residualize_fixed_effects(frame, design, ["fe_county"], settings=SMALL)
