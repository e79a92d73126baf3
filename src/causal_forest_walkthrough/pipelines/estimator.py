"""Causal forest fitting behind a small estimator interface.

Two backends conform to ``CausalEstimator``:

* ``DMLCausalForest`` lets econml cross-fit the outcome and propensity models
  itself (unconfoundedness mode).
* ``OrthogonalizedCausalForest`` takes caller-supplied Y.hat/W.hat and grows an
  econml GRF causal forest on the centered outcome and treatment.

The orchestration layer only sees ``FittedForest``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from functools import cached_property
from typing import Any, Protocol

import numpy as np
import pandas as pd
from econml.dml import CausalForestDML
from econml.grf import CausalForest
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.model_selection import ParameterGrid, train_test_split

from causal_forest_walkthrough.pipelines import inference
from causal_forest_walkthrough.pipelines.errors import DimensionMismatch, EstimatorError
from causal_forest_walkthrough.pipelines.matrices import DesignMatrices

LOGGER = logging.getLogger(__name__)

SUBFOREST_SIZE = 4
# Same candidate grid econml uses for CausalForestDML.tune(params="auto").
TUNE_GRID: dict[str, list[Any]] = {
    "min_weight_fraction_leaf": [0.0001, 0.01],
    "max_depth": [3, 5, None],
    "min_var_fraction_leaf": [0.001, 0.01],
}


@dataclass(frozen=True)
class ForestSettings:
    n_estimators: int = 2000
    min_samples_leaf: int = 5
    max_depth: int | None = None
    max_samples: float = 0.45
    honest: bool = True
    random_state: int = 42
    n_jobs: int = -1
    nuisance_cv: int = 2
    propensity_clip: float = 0.01

    def __post_init__(self) -> None:
        if self.n_estimators <= 0 or self.n_estimators % SUBFOREST_SIZE != 0:
            raise ValueError(f"n_estimators must be a positive multiple of {SUBFOREST_SIZE}, got {self.n_estimators}")
        if not 0.0 < self.max_samples <= 0.5:
            raise ValueError(f"max_samples must be in (0, 0.5], got {self.max_samples}")
        if not 0.0 <= self.propensity_clip < 0.5:
            raise ValueError(f"propensity_clip must be in [0, 0.5), got {self.propensity_clip}")

    def forest_kwargs(self) -> dict[str, Any]:
        return {
            "n_estimators": self.n_estimators,
            "min_samples_leaf": self.min_samples_leaf,
            "max_depth": self.max_depth,
            "max_samples": self.max_samples,
            "honest": self.honest,
            "inference": True,
            "subforest_size": SUBFOREST_SIZE,
            "random_state": self.random_state,
            "n_jobs": self.n_jobs,
        }


@dataclass(frozen=True)
class NuisancePredictions:
    row_ids: np.ndarray
    y_hat: np.ndarray
    w_hat: np.ndarray
    source: str = "supplied"


class CausalEstimator(Protocol):
    name: str

    def fit(
        self, design: DesignMatrices, nuisance: NuisancePredictions | None, tune: bool
    ) -> tuple[NuisancePredictions, dict[str, Any]]: ...

    def predict(self, x: np.ndarray | None) -> np.ndarray: ...

    def predict_interval(self, x: np.ndarray, alpha: float) -> tuple[np.ndarray, np.ndarray]: ...

    def feature_importances(self) -> np.ndarray: ...

    def get_tree(self, index: int) -> Any: ...


def _first_column(values: Any, n_rows: int) -> np.ndarray:
    return np.asarray(values, dtype=float).reshape(n_rows, -1)[:, 0]


class DMLCausalForest:
    """econml CausalForestDML with random-forest nuisance models."""

    name = "econml.dml.CausalForestDML"

    def __init__(self, settings: ForestSettings) -> None:
        self.settings = settings
        self.model: CausalForestDML | None = None
        self._x_train: np.ndarray | None = None

    def build(self) -> CausalForestDML:
        s = self.settings
        return CausalForestDML(
            model_y=RandomForestRegressor(
                n_estimators=200,
                min_samples_leaf=8,
                random_state=s.random_state,
                n_jobs=s.n_jobs,
            ),
            model_t=RandomForestClassifier(
                n_estimators=200,
                min_samples_leaf=8,
                random_state=s.random_state,
                n_jobs=s.n_jobs,
            ),
            discrete_treatment=True,
            cv=s.nuisance_cv,
            **s.forest_kwargs(),
        )

    def fit(
        self, design: DesignMatrices, nuisance: NuisancePredictions | None, tune: bool
    ) -> tuple[NuisancePredictions, dict[str, Any]]:
        if nuisance is not None:
            raise ValueError("DMLCausalForest estimates its own nuisance models; use OrthogonalizedCausalForest")
        model = self.build()
        tuned: dict[str, Any] = {}
        if tune:
            LOGGER.info("Tuning CausalForestDML over %s", TUNE_GRID)
            model.tune(design.y, design.w, X=design.x, params="auto")
            tuned = {name: getattr(model, name, None) for name in TUNE_GRID}
        model.fit(design.y, design.w, X=design.x, cache_values=True)

        y_res, t_res, x_cached, _ = model.residuals_
        if x_cached is not None and not np.allclose(np.asarray(x_cached, dtype=float), design.x, equal_nan=True):
            raise EstimatorError("Cached first-stage residuals are not in input row order")
        y_hat = design.y - _first_column(y_res, design.n_rows)
        w_hat = design.w - _first_column(t_res, design.n_rows)
        self.model = model
        self._x_train = design.x
        return NuisancePredictions(row_ids=design.row_ids, y_hat=y_hat, w_hat=w_hat, source="estimated"), tuned

    def _fitted(self) -> CausalForestDML:
        if self.model is None:
            raise EstimatorError("Forest is not fitted yet")
        return self.model

    def predict(self, x: np.ndarray | None) -> np.ndarray:
        model = self._fitted()
        if x is not None:
            return _first_column(model.effect(x), x.shape[0])

        x_train = self._x_train
        oob = _first_column(model.model_cate.oob_predict(x_train), x_train.shape[0])
        missing = ~np.isfinite(oob)
        if missing.any():
            LOGGER.warning("%d row(s) were in-bag for every tree; using full-forest predictions", int(missing.sum()))
            oob[missing] = _first_column(model.effect(x_train[missing]), int(missing.sum()))
        return oob

    def predict_interval(self, x: np.ndarray, alpha: float) -> tuple[np.ndarray, np.ndarray]:
        lb, ub = self._fitted().effect_interval(x, alpha=alpha)
        return _first_column(lb, x.shape[0]), _first_column(ub, x.shape[0])

    def feature_importances(self) -> np.ndarray:
        return np.asarray(self._fitted().feature_importances_, dtype=float).ravel()

    def get_tree(self, index: int) -> Any:
        # One tree per treatment column; the treatment is binary.
        return self._fitted()[index][0]


class OrthogonalizedCausalForest:
    """econml GRF causal forest grown on (X, W - W.hat, Y - Y.hat)."""

    name = "econml.grf.CausalForest"

    def __init__(self, settings: ForestSettings) -> None:
        self.settings = settings
        self.model: CausalForest | None = None
        self._x_train: np.ndarray | None = None

    def build(self, **overrides: Any) -> CausalForest:
        kwargs = self.settings.forest_kwargs()
        kwargs.update(overrides)
        return CausalForest(**kwargs)

    def tune(self, x: np.ndarray, w_res: np.ndarray, y_res: np.ndarray) -> dict[str, Any]:
        """Pick the grid point with the lowest held-out R-loss."""
        x_tr, x_va, w_tr, w_va, y_tr, y_va = train_test_split(
            x,
            w_res,
            y_res,
            test_size=0.5,
            random_state=self.settings.random_state,
        )
        best_params: dict[str, Any] = {}
        best_loss = float("inf")
        for params in ParameterGrid(TUNE_GRID):
            forest = self.build(**params)
            forest.fit(x_tr, w_tr, y_tr)
            tau_va = _first_column(forest.predict(x_va), x_va.shape[0])
            loss = float(np.mean((y_va - tau_va * w_va) ** 2))
            LOGGER.debug("Tuning candidate %s | r_loss=%.6f", params, loss)
            if loss < best_loss:
                best_loss = loss
                best_params = dict(params)
        LOGGER.info("Selected tuning parameters %s (r_loss=%.6f)", best_params, best_loss)
        return best_params

    def fit(
        self, design: DesignMatrices, nuisance: NuisancePredictions | None, tune: bool
    ) -> tuple[NuisancePredictions, dict[str, Any]]:
        if nuisance is None:
            raise ValueError("OrthogonalizedCausalForest requires Y.hat and W.hat")
        w_res = design.w - nuisance.w_hat
        y_res = design.y - nuisance.y_hat
        tuned = self.tune(design.x, w_res, y_res) if tune else {}
        model = self.build(**tuned)
        model.fit(design.x, w_res, y_res)
        self.model = model
        self._x_train = design.x
        return nuisance, tuned

    def _fitted(self) -> CausalForest:
        if self.model is None:
            raise EstimatorError("Forest is not fitted yet")
        return self.model

    def predict(self, x: np.ndarray | None) -> np.ndarray:
        model = self._fitted()
        if x is not None:
            return _first_column(model.predict(x), x.shape[0])

        x_train = self._x_train
        oob = _first_column(model.oob_predict(x_train), x_train.shape[0])
        missing = ~np.isfinite(oob)
        if missing.any():
            LOGGER.warning("%d row(s) were in-bag for every tree; using full-forest predictions", int(missing.sum()))
            oob[missing] = _first_column(model.predict(x_train[missing]), int(missing.sum()))
        return oob

    def predict_interval(self, x: np.ndarray, alpha: float) -> tuple[np.ndarray, np.ndarray]:
        _, lb, ub = self._fitted().predict(x, interval=True, alpha=alpha)
        return _first_column(lb, x.shape[0]), _first_column(ub, x.shape[0])

    def feature_importances(self) -> np.ndarray:
        return np.asarray(self._fitted().feature_importances_, dtype=float).ravel()

    def get_tree(self, index: int) -> Any:
        return self._fitted()[index]


@dataclass(frozen=True)
class FittedForest:
    design: DesignMatrices
    nuisance: NuisancePredictions
    backend: CausalEstimator
    mode: str
    settings: ForestSettings
    tuned_params: dict[str, Any] = field(default_factory=dict)

    @cached_property
    def training_cate(self) -> np.ndarray:
        tau = self.backend.predict(None)
        if tau.shape[0] != self.design.n_rows:
            raise DimensionMismatch(f"Forest returned {tau.shape[0]} predictions for {self.design.n_rows} rows")
        return tau

    def predict(self, x: np.ndarray | None = None) -> np.ndarray:
        """One CATE per row; out-of-bag estimates for the training rows when ``x`` is None."""
        if x is None:
            return self.training_cate.copy()
        return self.backend.predict(np.asarray(x, dtype=float))

    def predict_interval(self, x: np.ndarray | None = None, alpha: float = 0.05) -> tuple[np.ndarray, np.ndarray]:
        rows = self.design.x if x is None else np.asarray(x, dtype=float)
        return self.backend.predict_interval(rows, alpha)

    def _score_inputs(self) -> dict[str, np.ndarray]:
        return {
            "y": self.design.y,
            "w": self.design.w,
            "y_hat": self.nuisance.y_hat,
            "w_hat": self.nuisance.w_hat,
            "tau": self.training_cate,
        }

    def calibration_test(self) -> pd.DataFrame:
        return inference.calibration_test(**self._score_inputs())

    def average_treatment_effect(self, target_sample: str = "all") -> dict[str, Any]:
        return inference.average_treatment_effect(
            **self._score_inputs(),
            target_sample=target_sample,
            propensity_clip=self.settings.propensity_clip,
        )

    def double_robust_scores(self) -> np.ndarray:
        return inference.double_robust_scores(**self._score_inputs(), propensity_clip=self.settings.propensity_clip)

    def dr_effect_scores(self) -> np.ndarray:
        return inference.dr_effect_scores(**self._score_inputs(), propensity_clip=self.settings.propensity_clip)

    def best_linear_projection(self) -> pd.DataFrame:
        return inference.best_linear_projection(self.dr_effect_scores(), self.design.x, self.design.covariates)

    def variable_importance(self) -> pd.DataFrame:
        frame = pd.DataFrame(
            {
                "feature": list(self.design.covariates),
                "importance": self.backend.feature_importances(),
            }
        )
        return frame.sort_values("importance", ascending=False).reset_index(drop=True)

    def get_tree(self, index: int) -> Any:
        try:
            return self.backend.get_tree(index)
        except IndexError as exc:
            raise IndexError(f"Tree index {index} out of range for {self.settings.n_estimators} trees") from exc

    def summary(self) -> dict[str, Any]:
        return {
            "backend": self.backend.name,
            "mode": self.mode,
            "nuisance_source": self.nuisance.source,
            "n_rows": self.design.n_rows,
            "covariates": list(self.design.covariates),
            "settings": asdict(self.settings),
            "tuned_params": self.tuned_params,
        }


def fit_causal_forest(
    design: DesignMatrices,
    nuisance: NuisancePredictions | None = None,
    settings: ForestSettings | None = None,
    tune: bool = False,
) -> FittedForest:
    """Fit a causal forest on X, Y, W.

    With ``nuisance`` the supplied Y.hat/W.hat are used as-is (orthogonalized
    mode); without it the library estimates them (unconfoundedness mode).
    """
    settings = settings or ForestSettings()
    inference.check_row_counts(
        x=design.x,
        y=design.y,
        w=design.w,
        row_ids=design.row_ids,
        y_hat=None if nuisance is None else nuisance.y_hat,
        w_hat=None if nuisance is None else nuisance.w_hat,
    )
    if nuisance is not None and not np.array_equal(nuisance.row_ids, design.row_ids):
        raise DimensionMismatch("Nuisance predictions are not aligned with the design rows")
    if np.unique(design.w).size < 2:
        raise EstimatorError("Treatment has no variation; both arms are required")

    backend: CausalEstimator
    if nuisance is None:
        backend = DMLCausalForest(settings)
        mode = "unconfoundedness"
    else:
        backend = OrthogonalizedCausalForest(settings)
        mode = "orthogonalized"

    LOGGER.info(
        "Fitting causal forest | mode=%s backend=%s rows=%d covariates=%d trees=%d tune=%s",
        mode,
        backend.name,
        design.n_rows,
        design.x.shape[1],
        settings.n_estimators,
        tune,
    )
    try:
        used_nuisance, tuned = backend.fit(design, nuisance, tune)
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise EstimatorError(f"{backend.name} rejected the inputs: {exc}") from exc

    return FittedForest(
        design=design,
        nuisance=used_nuisance,
        backend=backend,
        mode=mode,
        settings=settings,
        tuned_params=tuned,
    )
