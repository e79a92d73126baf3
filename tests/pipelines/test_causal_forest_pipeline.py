from __future__ import annotations

import importlib.util
import json
import sys
from pathlib import Path

import pandas as pd
import pytest

from causal_forest_walkthrough.pipelines import causal_forest_pipeline as cfp
from causal_forest_walkthrough.pipelines.errors import SchemaError


def test_parse_name_list_strips_and_drops_empty() -> None:
    assert cfp.parse_name_list(" female, par_inc ,,native ") == ["female", "par_inc", "native"]
    assert cfp.parse_name_list("") == []


def test_unknown_covariate_fails_before_any_forest_is_fit(tmp_path, monkeypatch) -> None:
    def _should_not_run(*args, **kwargs):
        raise AssertionError("forest fitted despite schema error")

    monkeypatch.setattr(cfp.est, "fit_causal_forest", _should_not_run)
    args = cfp.parse_args(
        [
            "--simulate-rows",
            "100",
            "--outputs-root",
            str(tmp_path),
            "--covariates",
            "female,nonexistent_var",
        ]
    )
    with pytest.raises(SchemaError, match="nonexistent_var"):
        cfp.run(args)


def test_run_end_to_end_writes_outputs(tmp_path) -> None:
    args = cfp.parse_args(
        [
            "--simulate-rows",
            "400",
            "--run-tag",
            "smoke",
            "--outputs-root",
            str(tmp_path),
            "--n-estimators",
            "40",
            "--n-jobs",
            "1",
        ]
    )
    result = cfp.run(args)

    out_dir = tmp_path / "causal_forest" / "smoke"
    assert result["out_dir"] == out_dir
    assert result["primary_mode"] == "orthogonalized"
    assert set(result["forests"]) == {"unconfoundedness", "orthogonalized"}
    for name in [
        "cate_predictions.csv",
        "calibration_test.csv",
        "average_treatment_effects.csv",
        "quintile_balance.csv",
        "quintile_effects.csv",
        "variable_importance.csv",
        "best_linear_projection.csv",
        "policy_tree_leaves.csv",
        "cate_histogram.png",
        "variable_importance.png",
        "policy_tree.png",
        "causal_forest_runlog.txt",
    ]:
        assert (out_dir / name).exists(), name

    predictions = pd.read_csv(out_dir / "cate_predictions.csv")
    assert len(predictions) == 400
    assert predictions["row_id"].tolist() == list(range(400))
    assert {"cate", "cate_quintile", "cate_unconfoundedness"} <= set(predictions.columns)

    ate = pd.read_csv(out_dir / "average_treatment_effects.csv")
    assert len(ate) == 8

    payload = json.loads((out_dir / "ui_causal_forest_payload.json").read_text(encoding="utf-8"))
    assert payload["primary_mode"] == "orthogonalized"
    assert "fixed effects" in payload["assumption_note"]


def test_run_without_fixed_effects_uses_unconfoundedness_forest(tmp_path) -> None:
    args = cfp.parse_args(
        [
            "--simulate-rows",
            "300",
            "--outputs-root",
            str(tmp_path),
            "--fixed-effects",
            "",
            "--n-estimators",
            "40",
            "--n-jobs",
            "1",
        ]
    )
    result = cfp.run(args)
    assert result["primary_mode"] == "unconfoundedness"
    assert list(result["forests"]) == ["unconfoundedness"]


def test_launcher_script_delegates_to_pipeline_main(monkeypatch) -> None:
    script = Path(__file__).resolve().parents[2] / "scripts" / "run_causal_forest.py"
    spec = importlib.util.spec_from_file_location("run_causal_forest", script)
    launcher = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(launcher)

    seen: list = []
    monkeypatch.setattr(cfp, "run", seen.append)
    monkeypatch.setattr(sys, "argv", ["run_causal_forest.py", "--simulate-rows", "50", "--run-tag", "cli"])
    launcher.main()

    assert len(seen) == 1
    assert seen[0].simulate_rows == 50
    assert seen[0].run_tag == "cli"
