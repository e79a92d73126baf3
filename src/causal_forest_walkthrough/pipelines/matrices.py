"""Projection of table columns into the numeric matrices the forests consume."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd

from causal_forest_walkthrough.pipelines.dataset import (
    ROW_ID_COL,
    TARGET_COL,
    TREATMENT_COL,
    dedupe_keep_order,
)
from causal_forest_walkthrough.pipelines.errors import SchemaError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesignMatrices:
    row_ids: np.ndarray
    x: np.ndarray
    w: np.ndarray
    y: np.ndarray
    covariates: tuple[str, ...]

    @property
    def n_rows(self) -> int:
        return int(self.x.shape[0])


def require_columns(frame: pd.DataFrame, columns: Sequence[str]) -> None:
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise SchemaError(f"Missing required column(s): {missing}")


def _numeric_column(frame: pd.DataFrame, col: str, allow_missing: bool) -> pd.Series:
    raw = frame[col]
    try:
        vals = pd.to_numeric(raw, errors="coerce")
    except (TypeError, ValueError) as exc:
        raise SchemaError(f"Column '{col}' is not numeric-coercible: {exc}") from exc

    bad = vals.isna() & raw.notna()
    if bool(bad.any()):
        examples = raw[bad].astype(str).unique()[:3].tolist()
        raise SchemaError(f"Column '{col}' is not numeric-coercible (e.g. {examples})")
    if not allow_missing and bool(vals.isna().any()):
        raise SchemaError(f"Column '{col}' has {int(vals.isna().sum())} missing value(s)")
    return vals.astype(float)


def extract_matrix(frame: pd.DataFrame, columns: Sequence[str], *, allow_missing: bool = False) -> np.ndarray:
    """Dense float matrix with one column per name, in the order given."""
    columns = list(columns)
    require_columns(frame, columns)
    if not columns:
        return np.empty((len(frame), 0), dtype=float)
    parts = [_numeric_column(frame, col, allow_missing).to_numpy(dtype=float) for col in columns]
    return np.column_stack(parts)


def extract_vector(frame: pd.DataFrame, column: str, *, allow_missing: bool = False) -> np.ndarray:
    return extract_matrix(frame, [column], allow_missing=allow_missing)[:, 0]


def select_covariates(covariates: Sequence[str]) -> list[str]:
    selected = dedupe_keep_order(covariates)
    if len(selected) != len(covariates):
        dupes = sorted({c for c in covariates if list(covariates).count(c) > 1})
        LOGGER.warning("Dropping duplicated covariate name(s): %s", dupes)
    if not selected:
        raise SchemaError("No covariates selected")
    return selected


def build_design(
    frame: pd.DataFrame,
    covariates: Sequence[str],
    *,
    treatment_col: str = TREATMENT_COL,
    outcome_col: str = TARGET_COL,
) -> DesignMatrices:
    covariates = select_covariates(covariates)
    require_columns(frame, [ROW_ID_COL, *covariates, treatment_col, outcome_col])

    x = extract_matrix(frame, covariates)
    w = extract_vector(frame, treatment_col)
    y = extract_vector(frame, outcome_col)

    levels = set(np.unique(w).tolist())
    if not levels <= {0.0, 1.0}:
        raise SchemaError(f"Treatment column '{treatment_col}' must be binary 0/1, found levels {sorted(levels)[:5]}")

    return DesignMatrices(
        row_ids=frame[ROW_ID_COL].to_numpy(),
        x=x,
        w=w,
        y=y,
        covariates=tuple(covariates),
    )


def build_orthogonalization_matrix(
    frame: pd.DataFrame,
    dummy_cols: Sequence[str],
    covariates: Sequence[str] = (),
) -> np.ndarray:
    """X_orth: fixed-effect dummies, optionally followed by the covariates."""
    columns = dedupe_keep_order([*dummy_cols, *covariates])
    if not dummy_cols:
        raise SchemaError("No fixed-effect dummy columns supplied")
    return extract_matrix(frame, columns)
