"""Dataset loading and table widening for the causal forest walkthrough."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

import numpy as np
import pandas as pd

from causal_forest_walkthrough.pipelines.errors import LoadError, SchemaError

TARGET_COL = "y"
TREATMENT_COL = "Treatment"
ROW_ID_COL = "row_id"
COVARIATE_COLS = ["female", "par_inc", "par_sch", "native"]
FIXED_EFFECT_COLS = ["fe_state", "fe_year"]

SUPPORTED_SUFFIXES = {".dta", ".csv"}

LOGGER = logging.getLogger(__name__)


def clean_columns(cols: Iterable[object]) -> list[str]:
    return [" ".join(str(c).strip().split()) for c in cols]


def dedupe_keep_order(items: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            out.append(item)
            seen.add(item)
    return out


def load_dataset(data_path: Path) -> pd.DataFrame:
    """Read a Stata or CSV table without altering its rows.

    Column names are whitespace-normalized; order and value types are kept.
    """
    data_path = Path(data_path)
    if not data_path.exists():
        raise LoadError(f"Missing dataset: {data_path}")
    suffix = data_path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise LoadError(
            f"Unsupported dataset format '{suffix}' for {data_path}; expected one of {sorted(SUPPORTED_SUFFIXES)}"
        )

    try:
        if suffix == ".dta":
            df = pd.read_stata(data_path)
        else:
            df = pd.read_csv(data_path)
    except (OSError, ValueError) as exc:
        raise LoadError(f"Could not read dataset {data_path}: {exc}") from exc

    df.columns = clean_columns(df.columns)
    LOGGER.info("Loaded %d rows x %d columns from %s", len(df), df.shape[1], data_path)
    return df


def with_row_ids(frame: pd.DataFrame) -> pd.DataFrame:
    """Return a copy keyed by an explicit ``row_id`` column (file order)."""
    if ROW_ID_COL in frame.columns:
        ids = frame[ROW_ID_COL]
        if ids.isna().any() or not ids.is_unique:
            raise SchemaError(f"Existing '{ROW_ID_COL}' column is not a unique identifier")
        return frame.copy()
    out = frame.reset_index(drop=True)
    out.insert(0, ROW_ID_COL, np.arange(len(out), dtype=np.int64))
    return out


def add_fixed_effect_dummies(
    frame: pd.DataFrame,
    fe_cols: Sequence[str] = FIXED_EFFECT_COLS,
) -> tuple[pd.DataFrame, list[str]]:
    """Append one 0/1 column per fixed-effect level.

    The raw category columns are left in place; callers pick the dummy names
    returned alongside the widened frame.
    """
    missing = [c for c in fe_cols if c not in frame.columns]
    if missing:
        raise SchemaError(f"Fixed-effect column(s) not found: {missing}")

    categories = frame[list(fe_cols)].astype("string")
    dummies = pd.get_dummies(categories, prefix=list(fe_cols), prefix_sep="_", dtype=float)
    clashes = sorted(set(dummies.columns) & set(frame.columns))
    if clashes:
        raise SchemaError(f"Dummy columns would overwrite existing columns: {clashes}")

    out = pd.concat([frame, dummies], axis=1)
    return out, dummies.columns.tolist()


def simulate_dataset(n_rows: int = 1000, seed: int = 42, with_fixed_effects: bool = True) -> pd.DataFrame:
    """Synthetic table with the walkthrough schema and a heterogeneous effect.

    Treatment is exactly balanced; the effect grows with ``female`` and
    ``par_inc``.
    """
    if n_rows < 2:
        raise ValueError("n_rows must be at least 2")
    rng = np.random.default_rng(seed)

    female = rng.binomial(1, 0.5, size=n_rows).astype(float)
    par_inc = rng.normal(0.0, 1.0, size=n_rows)
    par_sch = rng.integers(8, 21, size=n_rows).astype(float)
    native = rng.binomial(1, 0.8, size=n_rows).astype(float)
    treatment = rng.permutation(np.arange(n_rows) % 2).astype(int)

    tau = 1.0 + 1.5 * female + 0.5 * par_inc
    y = 2.0 + 0.3 * par_sch + 0.4 * native + tau * treatment + rng.normal(0.0, 1.0, size=n_rows)

    df = pd.DataFrame(
        {
            TARGET_COL: y,
            TREATMENT_COL: treatment,
            "female": female,
            "par_inc": par_inc,
            "par_sch": par_sch,
            "native": native,
        }
    )
    if with_fixed_effects:
        states = np.array([f"S{i:02d}" for i in range(8)])
        state = rng.choice(states, size=n_rows)
        year = rng.integers(2010, 2015, size=n_rows)
        state_shift = dict(zip(states, rng.normal(0.0, 1.0, size=len(states)), strict=True))
        df["fe_state"] = state
        df["fe_year"] = year
        df[TARGET_COL] = df[TARGET_COL] + pd.Series(state).map(state_shift).to_numpy() + 0.2 * (year - 2010)
    return df
