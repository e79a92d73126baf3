"""Doubly robust scoring, averaging and calibration on top of fitted forests.

All functions take plain row-aligned arrays: outcome ``y``, binary treatment
``w``, nuisance estimates ``y_hat`` (E[Y|X]) and ``w_hat`` (P[W=1|X]), and the
forest's CATE estimates ``tau``.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from statistics import NormalDist
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm

from causal_forest_walkthrough.pipelines.errors import DimensionMismatch, EstimatorError

TARGET_SAMPLES = ("all", "treated", "control", "overlap")
ARM_NAMES = ("control", "treated")


def check_row_counts(**arrays: Any) -> int:
    counts = {name: int(np.shape(arr)[0]) for name, arr in arrays.items() if arr is not None}
    if len(set(counts.values())) > 1:
        raise DimensionMismatch(f"Row counts differ: {counts}")
    return next(iter(counts.values()), 0)


def clip_propensity(w_hat: np.ndarray, propensity_clip: float) -> np.ndarray:
    return np.clip(np.asarray(w_hat, dtype=float), propensity_clip, 1.0 - propensity_clip)


def double_robust_scores(
    y: np.ndarray,
    w: np.ndarray,
    y_hat: np.ndarray,
    w_hat: np.ndarray,
    tau: np.ndarray,
    propensity_clip: float = 0.01,
) -> np.ndarray:
    """Per-arm AIPW rewards, columns ordered as ``ARM_NAMES``."""
    check_row_counts(y=y, w=w, y_hat=y_hat, w_hat=w_hat, tau=tau)
    e = clip_propensity(w_hat, propensity_clip)
    mu0 = y_hat - e * tau
    mu1 = y_hat + (1.0 - e) * tau
    gamma0 = mu0 + (1.0 - w) / (1.0 - e) * (y - mu0)
    gamma1 = mu1 + w / e * (y - mu1)
    return np.column_stack([gamma0, gamma1])


def dr_effect_scores(
    y: np.ndarray,
    w: np.ndarray,
    y_hat: np.ndarray,
    w_hat: np.ndarray,
    tau: np.ndarray,
    propensity_clip: float = 0.01,
) -> np.ndarray:
    scores = double_robust_scores(y, w, y_hat, w_hat, tau, propensity_clip=propensity_clip)
    return scores[:, 1] - scores[:, 0]


def summarize_scores(phi: np.ndarray, estimate: float | None = None) -> dict[str, float]:
    n = len(phi)
    est = float(np.mean(phi)) if estimate is None else float(estimate)
    se = float(np.std(phi, ddof=1) / math.sqrt(n)) if n > 1 else float("nan")
    if not np.isfinite(se) or se <= 0:
        z = float("nan")
        p_value = float("nan")
    else:
        z = est / se
        p_value = float(2.0 * (1.0 - NormalDist().cdf(abs(z))))
    return {
        "estimate": est,
        "std_error": se,
        "z_score": z,
        "p_value": p_value,
        "ci_low_95": float(est - 1.96 * se) if np.isfinite(se) else float("nan"),
        "ci_high_95": float(est + 1.96 * se) if np.isfinite(se) else float("nan"),
    }


def average_treatment_effect(
    y: np.ndarray,
    w: np.ndarray,
    y_hat: np.ndarray,
    w_hat: np.ndarray,
    tau: np.ndarray,
    target_sample: str = "all",
    propensity_clip: float = 0.01,
) -> dict[str, Any]:
    """Doubly robust average effect over ``all``, ``treated``, ``control`` or ``overlap`` units."""
    if target_sample not in TARGET_SAMPLES:
        raise ValueError(f"Unsupported target_sample '{target_sample}'; expected one of {list(TARGET_SAMPLES)}")
    n = check_row_counts(y=y, w=w, y_hat=y_hat, w_hat=w_hat, tau=tau)
    n_t = int(np.sum(w == 1))
    n_c = int(np.sum(w == 0))
    if n_t == 0 or n_c == 0:
        raise EstimatorError(f"Average effect needs both arms (treated={n_t}, control={n_c})")

    e = clip_propensity(w_hat, propensity_clip)
    estimate: float | None = None
    if target_sample == "all":
        phi = dr_effect_scores(y, w, y_hat, w_hat, tau, propensity_clip=propensity_clip)
    elif target_sample == "treated":
        mu0 = y_hat - e * tau
        p1 = float(np.mean(w))
        phi = (w * (y - mu0) - (1 - w) * e / (1.0 - e) * (y - mu0)) / max(p1, 1e-8)
    elif target_sample == "control":
        mu1 = y_hat + (1.0 - e) * tau
        p0 = float(np.mean(1 - w))
        phi = ((1 - w) * (mu1 - y) + w * (1.0 - e) / e * (y - mu1)) / max(p0, 1e-8)
    else:
        overlap = e * (1.0 - e)
        dr = dr_effect_scores(y, w, y_hat, w_hat, tau, propensity_clip=propensity_clip)
        estimate = float(np.sum(overlap * dr) / np.sum(overlap))
        phi = overlap * (dr - estimate) / float(np.mean(overlap)) + estimate

    return {
        "target_sample": target_sample,
        "n_rows": n,
        "n_treated": n_t,
        "n_control": n_c,
        **summarize_scores(phi, estimate=estimate),
    }


def _robust_ols_frame(fit: Any, terms: Sequence[str], one_sided: bool) -> pd.DataFrame:
    rows: list[dict[str, Any]] = []
    for term, coef, se, t in zip(terms, fit.params, fit.bse, fit.tvalues, strict=True):
        if not np.isfinite(t):
            p_value = float("nan")
        elif one_sided:
            p_value = float(1.0 - NormalDist().cdf(float(t)))
        else:
            p_value = float(2.0 * (1.0 - NormalDist().cdf(abs(float(t)))))
        rows.append(
            {
                "term": term,
                "estimate": float(coef),
                "std_error": float(se),
                "t_value": float(t),
                "p_value": p_value,
            }
        )
    return pd.DataFrame(rows)


def calibration_test(
    y: np.ndarray,
    w: np.ndarray,
    y_hat: np.ndarray,
    w_hat: np.ndarray,
    tau: np.ndarray,
) -> pd.DataFrame:
    """Omnibus forest calibration test.

    Regresses Y - Y.hat on (W - W.hat) * mean(tau) and (W - W.hat) * (tau - mean(tau))
    without intercept, using HC3 errors. A coefficient of 1 on the first term
    means the average prediction is correct; a significantly positive second
    coefficient means the forest picks up real heterogeneity. The reported
    p-values are one-sided (H0: coefficient <= 0).
    """
    check_row_counts(y=y, w=w, y_hat=y_hat, w_hat=w_hat, tau=tau)
    w_res = np.asarray(w, dtype=float) - np.asarray(w_hat, dtype=float)
    tau_bar = float(np.mean(tau))
    design = np.column_stack([w_res * tau_bar, w_res * (np.asarray(tau, dtype=float) - tau_bar)])
    try:
        fit = sm.OLS(np.asarray(y, dtype=float) - np.asarray(y_hat, dtype=float), design).fit(cov_type="HC3")
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise EstimatorError(f"Calibration regression failed: {exc}") from exc
    return _robust_ols_frame(
        fit,
        terms=["mean_forest_prediction", "differential_forest_prediction"],
        one_sided=True,
    )


def best_linear_projection(dr_scores: np.ndarray, x: np.ndarray, feature_names: Sequence[str]) -> pd.DataFrame:
    """HC3 linear projection of the doubly robust effect scores onto the covariates."""
    check_row_counts(dr_scores=dr_scores, x=x)
    if x.shape[1] != len(feature_names):
        raise DimensionMismatch(f"{x.shape[1]} covariate column(s) but {len(feature_names)} name(s)")
    design = sm.add_constant(np.asarray(x, dtype=float), has_constant="add")
    try:
        fit = sm.OLS(np.asarray(dr_scores, dtype=float), design).fit(cov_type="HC3")
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise EstimatorError(f"Linear projection failed: {exc}") from exc
    return _robust_ols_frame(fit, terms=["(intercept)", *feature_names], one_sided=False)
