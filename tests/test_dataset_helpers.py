from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from causal_forest_walkthrough.pipelines import dataset as ds
from causal_forest_walkthrough.pipelines.errors import LoadError, SchemaError


def test_load_dataset_reads_stata_and_cleans_column_names(tmp_path: Path) -> None:
    df = pd.DataFrame(
        {
            "y": [1.5, 2.5, 3.5],
            "Treatment": [0, 1, 0],
            "female": [1.0, 0.0, 1.0],
            "fe_state": ["A", "B", "A"],
        }
    )
    path = tmp_path / "sample.dta"
    df.to_stata(path, write_index=False)

    out = ds.load_dataset(path)
    assert out.columns.tolist() == ["y", "Treatment", "female", "fe_state"]
    assert len(out) == 3
    assert out["fe_state"].tolist() == ["A", "B", "A"]


def test_load_dataset_csv_normalizes_whitespace(tmp_path: Path) -> None:
    path = tmp_path / "sample.csv"
    path.write_text(" y ,Treatment,par  inc\n1,0,2\n3,1,4\n", encoding="utf-8")
    out = ds.load_dataset(path)
    assert out.columns.tolist() == ["y", "Treatment", "par inc"]


def test_load_dataset_failures_raise_load_error(tmp_path: Path) -> None:
    with pytest.raises(LoadError):
        ds.load_dataset(tmp_path / "missing.dta")

    unsupported = tmp_path / "data.xlsx"
    unsupported.write_bytes(b"")
    with pytest.raises(LoadError):
        ds.load_dataset(unsupported)

    broken = tmp_path / "broken.dta"
    broken.write_bytes(b"\x07not a stata file")
    with pytest.raises(LoadError):
        ds.load_dataset(broken)


def test_with_row_ids_returns_new_frame_in_file_order() -> None:
    df = pd.DataFrame({"y": [5.0, 6.0, 7.0]}, index=[10, 11, 12])
    out = ds.with_row_ids(df)
    assert out[ds.ROW_ID_COL].tolist() == [0, 1, 2]
    assert out.columns[0] == ds.ROW_ID_COL
    assert ds.ROW_ID_COL not in df.columns


def test_with_row_ids_rejects_duplicate_existing_ids() -> None:
    df = pd.DataFrame({ds.ROW_ID_COL: [1, 1], "y": [0.0, 1.0]})
    with pytest.raises(SchemaError):
        ds.with_row_ids(df)


def test_add_fixed_effect_dummies_keeps_raw_columns() -> None:
    df = pd.DataFrame({"fe_state": ["A", "B", "A"], "fe_year": [2010, 2010, 2011]})
    out, dummy_cols = ds.add_fixed_effect_dummies(df, ["fe_state", "fe_year"])

    assert dummy_cols == ["fe_state_A", "fe_state_B", "fe_year_2010", "fe_year_2011"]
    assert {"fe_state", "fe_year"} <= set(out.columns)
    assert out["fe_state_A"].tolist() == [1.0, 0.0, 1.0]
    assert df.columns.tolist() == ["fe_state", "fe_year"]


def test_add_fixed_effect_dummies_missing_column() -> None:
    with pytest.raises(SchemaError):
        ds.add_fixed_effect_dummies(pd.DataFrame({"fe_state": ["A"]}), ["fe_state", "fe_year"])


def test_simulate_dataset_schema_and_balance() -> None:
    df = ds.simulate_dataset(n_rows=200, seed=3)
    expected = {ds.TARGET_COL, ds.TREATMENT_COL, *ds.COVARIATE_COLS, *ds.FIXED_EFFECT_COLS}
    assert expected <= set(df.columns)
    assert int(df[ds.TREATMENT_COL].sum()) == 100
    assert np.isfinite(df[ds.TARGET_COL]).all()
