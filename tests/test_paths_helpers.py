from pathlib import Path

import pytest

from causal_forest_walkthrough.pipelines import paths


def test_resolve_data_path_prefers_explicit_path(tmp_path: Path) -> None:
    explicit = tmp_path / "elsewhere.csv"
    assert paths.resolve_data_path(explicit, root=tmp_path) == explicit


def test_resolve_data_path_picks_first_existing_candidate(tmp_path: Path) -> None:
    raw = tmp_path / "data" / "raw"
    raw.mkdir(parents=True)
    (raw / "causal_forest_data.csv").write_text("y\n1\n", encoding="utf-8")
    assert paths.resolve_data_path(None, root=tmp_path) == raw / "causal_forest_data.csv"

    stata = tmp_path / "data" / "input" / "causal_forest_data.dta"
    stata.parent.mkdir(parents=True)
    stata.write_bytes(b"")
    assert paths.resolve_data_path(None, root=tmp_path) == stata


def test_resolve_data_path_falls_back_to_first_candidate(tmp_path: Path) -> None:
    assert paths.resolve_data_path(None, root=tmp_path) == tmp_path / "data" / "input" / "causal_forest_data.dta"


def test_run_output_dir_nests_stage_and_tag(tmp_path: Path) -> None:
    assert paths.run_output_dir(tmp_path, "demo") == tmp_path / "causal_forest" / "demo"
    with pytest.raises(ValueError):
        paths.run_output_dir(tmp_path, "../escape")
    with pytest.raises(ValueError):
        paths.run_output_dir(tmp_path, "")
