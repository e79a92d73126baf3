import logging

import numpy as np
import pandas as pd
import pytest

from causal_forest_walkthrough.pipelines import dataset as ds
from causal_forest_walkthrough.pipelines import matrices as mx
from causal_forest_walkthrough.pipelines.errors import SchemaError


def _frame() -> pd.DataFrame:
    return ds.with_row_ids(
        pd.DataFrame(
            {
                "y": [1.0, 2.0, 3.0, 4.0],
                "Treatment": [0, 1, 0, 1],
                "female": [1, 0, 1, 0],
                "par_inc": ["10", "20", "30", "40"],
                "par_sch": [12.0, 14.0, 16.0, 18.0],
                "native": [1.0, 1.0, 0.0, 1.0],
                "fe_state": ["A", "B", "A", "B"],
            }
        )
    )


def test_extract_matrix_keeps_requested_order_and_rows() -> None:
    df = _frame()
    out = mx.extract_matrix(df, ["par_sch", "female", "par_inc"])
    assert out.shape == (len(df), 3)
    assert out[:, 0].tolist() == [12.0, 14.0, 16.0, 18.0]
    assert out[:, 2].tolist() == [10.0, 20.0, 30.0, 40.0]


def test_extract_matrix_unknown_column_raises_schema_error() -> None:
    with pytest.raises(SchemaError, match="nonexistent_var"):
        mx.extract_matrix(_frame(), ["female", "nonexistent_var"])


def test_extract_matrix_rejects_non_numeric_and_missing() -> None:
    df = _frame()
    with pytest.raises(SchemaError, match="fe_state"):
        mx.extract_matrix(df, ["fe_state"])

    with_nan = df.assign(par_sch=[12.0, np.nan, 16.0, 18.0])
    with pytest.raises(SchemaError, match="missing"):
        mx.extract_matrix(with_nan, ["par_sch"])
    relaxed = mx.extract_matrix(with_nan, ["par_sch"], allow_missing=True)
    assert np.isnan(relaxed[1, 0])


def test_build_design_dedupes_covariates(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING):
        design = mx.build_design(_frame(), ["female", "par_inc", "female", "native"])
    assert design.covariates == ("female", "par_inc", "native")
    assert design.x.shape == (4, 3)
    assert design.row_ids.tolist() == [0, 1, 2, 3]
    assert "female" in caplog.text


def test_build_design_requires_binary_treatment() -> None:
    df = _frame().assign(Treatment=[0, 1, 2, 1])
    with pytest.raises(SchemaError, match="binary"):
        mx.build_design(df, ["female"])


def test_build_orthogonalization_matrix_uses_dummies_not_raw_categories() -> None:
    widened, dummy_cols = ds.add_fixed_effect_dummies(_frame(), ["fe_state"])
    x_orth = mx.build_orthogonalization_matrix(widened, dummy_cols, ["female"])
    assert x_orth.shape == (4, 3)
    assert x_orth[:, 0].tolist() == [1.0, 0.0, 1.0, 0.0]

    with pytest.raises(SchemaError):
        mx.build_orthogonalization_matrix(widened, [], ["female"])
