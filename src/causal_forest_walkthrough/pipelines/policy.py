"""Depth-bounded treatment policy trees over doubly robust rewards."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from econml.policy import PolicyTree

from causal_forest_walkthrough.pipelines.errors import EstimatorError
from causal_forest_walkthrough.pipelines.inference import ARM_NAMES, check_row_counts


@dataclass(frozen=True)
class PolicyTreeResult:
    tree: PolicyTree
    depth: int
    feature_names: tuple[str, ...]
    arm_names: tuple[str, ...]
    recommended_arm: np.ndarray
    leaf_ids: np.ndarray

    @property
    def n_leaves(self) -> int:
        return int(np.unique(self.leaf_ids).size)

    def leaf_table(self, rewards: np.ndarray) -> pd.DataFrame:
        """One row per leaf: size, assigned arm and mean reward of every arm."""
        check_row_counts(rewards=rewards, leaf_ids=self.leaf_ids)
        rows: list[dict[str, object]] = []
        for leaf in np.unique(self.leaf_ids):
            mask = self.leaf_ids == leaf
            arms = np.unique(self.recommended_arm[mask])
            if arms.size != 1:
                raise EstimatorError(f"Leaf {leaf} assigns {arms.size} arms")
            row: dict[str, object] = {
                "leaf_id": int(leaf),
                "n_rows": int(mask.sum()),
                "share": float(mask.mean()),
                "assigned_arm": self.arm_names[int(arms[0])],
            }
            for j, name in enumerate(self.arm_names):
                row[f"mean_reward_{name}"] = float(np.mean(rewards[mask, j]))
            rows.append(row)
        return pd.DataFrame(rows)


def fit_policy_tree(
    x: np.ndarray,
    rewards: np.ndarray,
    *,
    depth: int = 2,
    feature_names: Sequence[str] | None = None,
    arm_names: Sequence[str] = ARM_NAMES,
    min_samples_leaf: int = 5,
    random_state: int = 42,
) -> PolicyTreeResult:
    """Fit a policy tree maximizing the mean reward of the assigned arm."""
    check_row_counts(x=x, rewards=rewards)
    rewards = np.asarray(rewards, dtype=float)
    if rewards.ndim != 2 or rewards.shape[1] != len(arm_names):
        raise ValueError(f"rewards must have one column per arm {list(arm_names)}, got shape {rewards.shape}")
    if depth < 1:
        raise ValueError(f"depth must be at least 1, got {depth}")
    names = tuple(feature_names) if feature_names is not None else tuple(f"x{i}" for i in range(x.shape[1]))

    tree = PolicyTree(
        max_depth=depth,
        min_samples_leaf=min_samples_leaf,
        honest=False,
        random_state=random_state,
    )
    try:
        tree.fit(np.asarray(x, dtype=float), rewards)
    except ValueError as exc:
        raise EstimatorError(f"Policy tree rejected the inputs: {exc}") from exc

    return PolicyTreeResult(
        tree=tree,
        depth=depth,
        feature_names=names,
        arm_names=tuple(arm_names),
        recommended_arm=np.asarray(tree.predict(x), dtype=int).ravel(),
        leaf_ids=np.asarray(tree.apply(x), dtype=int).ravel(),
    )


def plot_policy_tree(result: PolicyTreeResult, out_path: Path) -> None:
    fig, ax = plt.subplots(figsize=(12, 6))
    result.tree.plot(
        ax=ax,
        feature_names=list(result.feature_names),
        treatment_names=list(result.arm_names),
        title=f"Policy tree (depth {result.depth})",
    )
    fig.tight_layout()
    fig.savefig(out_path, dpi=180)
    plt.close(fig)
