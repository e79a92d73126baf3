"""Input discovery and per-run output folders for the causal forest pipeline."""

from __future__ import annotations

from pathlib import Path

DATASET_STEM = "causal_forest_data"
DATA_DIRS = (Path("data/input"), Path("data/raw"))
# Stata first: the walkthrough dataset ships as .dta.
DATA_SUFFIXES = (".dta", ".csv")
STAGE_DIR = "causal_forest"


def project_root() -> Path:
    return Path(__file__).resolve().parents[3]


def data_candidates(root: Path) -> list[Path]:
    return [root / folder / f"{DATASET_STEM}{suffix}" for folder in DATA_DIRS for suffix in DATA_SUFFIXES]


def resolve_data_path(explicit_path: Path | None, root: Path | None = None) -> Path:
    """Explicit path as given, else the first existing default candidate.

    When nothing exists the first candidate is returned so the loader reports
    a clear missing-file error.
    """
    if explicit_path is not None:
        return Path(explicit_path)

    candidates = data_candidates(root if root is not None else project_root())
    return next((path for path in candidates if path.exists()), candidates[0])


def run_output_dir(outputs_root: Path | None, run_tag: str) -> Path:
    if not run_tag or Path(run_tag).name != run_tag:
        raise ValueError(f"run_tag must be a plain folder name, got {run_tag!r}")
    root = Path(outputs_root) if outputs_root is not None else project_root() / "outputs"
    return root / STAGE_DIR / run_tag
