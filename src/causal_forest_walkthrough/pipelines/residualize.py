"""Fixed-effect residualization: Y.hat and W.hat from auxiliary regression forests."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np
import pandas as pd
from econml.grf import RegressionForest

from causal_forest_walkthrough.pipelines import dataset as ds
from causal_forest_walkthrough.pipelines.errors import DimensionMismatch, EstimatorError
from causal_forest_walkthrough.pipelines.estimator import SUBFOREST_SIZE, ForestSettings, NuisancePredictions
from causal_forest_walkthrough.pipelines.inference import check_row_counts
from causal_forest_walkthrough.pipelines.matrices import DesignMatrices, build_orthogonalization_matrix

LOGGER = logging.getLogger(__name__)


def fit_regression_forest_predictions(
    x_orth: np.ndarray,
    target: np.ndarray,
    settings: ForestSettings,
) -> np.ndarray:
    """Out-of-bag predictions of ``target`` from an honest regression forest."""
    n = check_row_counts(x_orth=x_orth, target=target)
    x_orth = np.asarray(x_orth, dtype=float)
    target = np.asarray(target, dtype=float)
    if x_orth.ndim != 2 or x_orth.shape[1] == 0:
        raise EstimatorError("Residualization design has no columns")
    if np.all(np.ptp(x_orth, axis=0) == 0):
        raise EstimatorError("Residualization design is singular: every column is constant")

    forest = RegressionForest(
        n_estimators=settings.n_estimators,
        min_samples_leaf=settings.min_samples_leaf,
        max_depth=settings.max_depth,
        max_samples=settings.max_samples,
        honest=settings.honest,
        subforest_size=SUBFOREST_SIZE,
        random_state=settings.random_state,
        n_jobs=settings.n_jobs,
    )
    try:
        forest.fit(x_orth, target)
        preds = np.asarray(forest.oob_predict(x_orth), dtype=float).reshape(n, -1)[:, 0]
        missing = ~np.isfinite(preds)
        if missing.any():
            LOGGER.warning("%d row(s) had no out-of-bag trees; using full-forest predictions", int(missing.sum()))
            preds[missing] = np.asarray(forest.predict(x_orth[missing]), dtype=float).reshape(-1, 1)[:, 0]
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise EstimatorError(f"Regression forest rejected the inputs: {exc}") from exc
    return preds


def align_to_design(frame: pd.DataFrame, design: DesignMatrices) -> pd.DataFrame:
    """Reorder ``frame`` to the design rows by explicit row id."""
    if ds.ROW_ID_COL not in frame.columns:
        raise DimensionMismatch(f"Frame has no '{ds.ROW_ID_COL}' column to align on")
    indexed = frame.set_index(ds.ROW_ID_COL, drop=False)
    if not indexed.index.is_unique:
        raise DimensionMismatch(f"Duplicate '{ds.ROW_ID_COL}' values in frame")
    absent = pd.Index(design.row_ids).difference(indexed.index)
    if len(absent) > 0:
        raise DimensionMismatch(f"{len(absent)} design row(s) missing from frame, e.g. {absent[:3].tolist()}")
    return indexed.loc[design.row_ids].reset_index(drop=True)


def residualize_fixed_effects(
    frame: pd.DataFrame,
    design: DesignMatrices,
    fe_cols: Sequence[str] = ds.FIXED_EFFECT_COLS,
    settings: ForestSettings | None = None,
    include_covariates: bool = True,
) -> NuisancePredictions:
    """Y.hat and W.hat conditional on fixed-effect dummies (and optionally X)."""
    settings = settings or ForestSettings()
    widened, dummy_cols = ds.add_fixed_effect_dummies(frame, fe_cols)
    aligned = align_to_design(widened, design)
    covariates = design.covariates if include_covariates else ()
    x_orth = build_orthogonalization_matrix(aligned, dummy_cols, covariates)
    LOGGER.info(
        "Residualizing on %d fixed-effect dummies (+%d covariates) from %s",
        len(dummy_cols),
        len(covariates),
        list(fe_cols),
    )

    y_hat = fit_regression_forest_predictions(x_orth, design.y, settings)
    w_hat_raw = fit_regression_forest_predictions(x_orth, design.w, settings)
    w_hat = np.clip(w_hat_raw, settings.propensity_clip, 1.0 - settings.propensity_clip)
    n_clipped = int(np.sum(w_hat != w_hat_raw))
    if n_clipped:
        LOGGER.warning(
            "Clipped %d propensity estimate(s) to [%.3f, %.3f]",
            n_clipped,
            settings.propensity_clip,
            1.0 - settings.propensity_clip,
        )

    return NuisancePredictions(row_ids=design.row_ids, y_hat=y_hat, w_hat=w_hat, source="residualized")
