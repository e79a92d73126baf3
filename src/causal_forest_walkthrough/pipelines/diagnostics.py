"""Heterogeneity tables and plots built from a fitted causal forest."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path
from typing import Any

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from causal_forest_walkthrough.pipelines.dataset import ROW_ID_COL
from causal_forest_walkthrough.pipelines.errors import DimensionMismatch, SchemaError
from causal_forest_walkthrough.pipelines.inference import check_row_counts, summarize_scores

CATE_COL = "cate"
QUINTILE_COL = "cate_quintile"
N_QUANTILES = 5


def attach_cate(
    frame: pd.DataFrame,
    row_ids: np.ndarray,
    cate: np.ndarray,
    *,
    n_quantiles: int = N_QUANTILES,
) -> pd.DataFrame:
    """New frame with ``cate`` joined on row id and a 1..n quantile bucket.

    Row order and count of ``frame`` are preserved; every row must receive
    exactly one prediction.
    """
    check_row_counts(row_ids=row_ids, cate=cate)
    if ROW_ID_COL not in frame.columns:
        raise SchemaError(f"Frame has no '{ROW_ID_COL}' column")
    if len(frame) != len(row_ids):
        raise DimensionMismatch(f"{len(row_ids)} predictions for {len(frame)} rows")
    clashes = [c for c in (CATE_COL, QUINTILE_COL) if c in frame.columns]
    if clashes:
        raise SchemaError(f"Frame already has column(s) {clashes}")

    preds = pd.DataFrame({ROW_ID_COL: row_ids, CATE_COL: np.asarray(cate, dtype=float)})
    try:
        out = frame.merge(preds, on=ROW_ID_COL, how="left", validate="one_to_one")
    except pd.errors.MergeError as exc:
        raise DimensionMismatch(f"Row ids are not unique: {exc}") from exc
    if out[CATE_COL].isna().any():
        raise DimensionMismatch(f"{int(out[CATE_COL].isna().sum())} row(s) have no matching prediction")

    ranks = out[CATE_COL].rank(method="first")
    out[QUINTILE_COL] = pd.qcut(ranks, q=n_quantiles, labels=False).astype(int) + 1
    return out


def _smd(top: np.ndarray, bottom: np.ndarray) -> float:
    var_top = float(np.var(top, ddof=1)) if len(top) > 1 else 0.0
    var_bottom = float(np.var(bottom, ddof=1)) if len(bottom) > 1 else 0.0
    pooled = float(np.sqrt(max((var_top + var_bottom) / 2.0, 0.0)))
    if pooled < 1e-6:
        return float("nan")
    return float((np.mean(top) - np.mean(bottom)) / pooled)


def quintile_balance_table(frame: pd.DataFrame, covariates: Sequence[str]) -> pd.DataFrame:
    """Covariate means in the highest versus lowest CATE quintile."""
    if QUINTILE_COL not in frame.columns:
        raise SchemaError(f"Frame has no '{QUINTILE_COL}' column; call attach_cate first")
    top_q = int(frame[QUINTILE_COL].max())
    bottom_q = int(frame[QUINTILE_COL].min())
    top = frame[frame[QUINTILE_COL] == top_q]
    bottom = frame[frame[QUINTILE_COL] == bottom_q]

    rows: list[dict[str, Any]] = []
    for col in covariates:
        if col not in frame.columns:
            raise SchemaError(f"Covariate not found: {col}")
        top_vals = pd.to_numeric(top[col], errors="coerce").dropna().to_numpy(dtype=float)
        bottom_vals = pd.to_numeric(bottom[col], errors="coerce").dropna().to_numpy(dtype=float)
        if len(top_vals) == 0 or len(bottom_vals) == 0:
            continue
        mean_top = float(np.mean(top_vals))
        mean_bottom = float(np.mean(bottom_vals))
        rows.append(
            {
                "covariate": col,
                "mean_bottom_quintile": mean_bottom,
                "mean_top_quintile": mean_top,
                "difference": mean_top - mean_bottom,
                "smd": _smd(top_vals, bottom_vals),
                "n_bottom": int(len(bottom_vals)),
                "n_top": int(len(top_vals)),
            }
        )
    return pd.DataFrame(rows)


def quintile_effect_table(frame: pd.DataFrame, row_ids: np.ndarray, dr_scores: np.ndarray) -> pd.DataFrame:
    """Doubly robust average effect inside each CATE quintile."""
    check_row_counts(row_ids=row_ids, dr_scores=dr_scores)
    if QUINTILE_COL not in frame.columns:
        raise SchemaError(f"Frame has no '{QUINTILE_COL}' column; call attach_cate first")
    scores = pd.DataFrame({ROW_ID_COL: row_ids, "dr_score": np.asarray(dr_scores, dtype=float)})
    merged = frame[[ROW_ID_COL, CATE_COL, QUINTILE_COL]].merge(scores, on=ROW_ID_COL, how="inner", validate="one_to_one")
    if len(merged) != len(frame):
        raise DimensionMismatch(f"Scores cover {len(merged)} of {len(frame)} rows")

    rows: list[dict[str, Any]] = []
    for quintile, g in merged.groupby(QUINTILE_COL, sort=True):
        rows.append(
            {
                QUINTILE_COL: int(quintile),
                "n_rows": int(len(g)),
                "mean_cate": float(g[CATE_COL].mean()),
                **summarize_scores(g["dr_score"].to_numpy(dtype=float)),
            }
        )
    return pd.DataFrame(rows)


def plot_cate_histogram(cate: np.ndarray, out_path: Path, *, bins: int = 30, title: str = "Predicted CATE") -> None:
    values = np.asarray(cate, dtype=float)
    plt.figure(figsize=(8, 5))
    plt.hist(values[np.isfinite(values)], bins=bins, color="#4e79a7", edgecolor="white")
    plt.axvline(float(np.nanmean(values)), color="#e15759", linestyle="--", label="mean")
    plt.title(title)
    plt.xlabel("CATE estimate")
    plt.ylabel("Count")
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_path, dpi=150)
    plt.close()


def plot_variable_importance(importance: pd.DataFrame, out_path: Path, *, top_n: int = 20) -> None:
    top = importance.head(int(top_n)).iloc[::-1]
    plt.figure(figsize=(10, 6))
    plt.barh(top["feature"], top["importance"], color="#1b9e77")
    plt.title("Causal forest variable importance")
    plt.xlabel("Split-frequency importance")
    plt.tight_layout()
    plt.savefig(out_path, dpi=180)
    plt.close()
