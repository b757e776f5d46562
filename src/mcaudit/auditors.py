# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
# pyre-strict

import logging
from collections.abc import Callable, Sequence
from typing import Any

import numpy as np
import pandas as pd
from mcaudit import buckets, utils
from mcaudit.base import AuditorFit, AuditorFitter, pseudo_correlation, Scorer
from mcaudit.buckets import Subpopulation
from mcaudit.exceptions import ConfigurationError, FitError
from numpy import typing as npt
from sklearn.base import clone
from sklearn.linear_model import Ridge
from sklearn.model_selection import KFold
from sklearn.tree import DecisionTreeRegressor

logger: logging.Logger = logging.getLogger(__name__)


class LearnerScorer(Scorer):
    def __init__(self, model: Any) -> None:
        self.model = model

    def score(self, data: pd.DataFrame) -> npt.NDArray:
        return np.asarray(self.model.predict(data), dtype=float).reshape(-1)


class CVScorer(Scorer):
    """Averages the scores of the models fit on the complementary folds."""

    def __init__(self, scorers: list[Scorer]) -> None:
        self.scorers = scorers

    def score(self, data: pd.DataFrame) -> npt.NDArray:
        return np.mean([scorer.score(data) for scorer in self.scorers], axis=0)


class SubpopScorer(Scorer):
    def __init__(self, subpop: Subpopulation, value: float) -> None:
        self.subpop = subpop
        self.value = value

    def score(self, data: pd.DataFrame) -> npt.NDArray:
        return buckets.subpop_membership(data, self.subpop).astype(float) * self.value


class ConstantScorer(Scorer):
    def __init__(self, value: float) -> None:
        self.value = value

    def score(self, data: pd.DataFrame) -> npt.NDArray:
        return np.full(len(data), self.value, dtype=float)


class LearnerAuditorFitter(AuditorFitter):
    """
    Uses any regression learner with fit(X, y) and predict(X) as auditor. Every fit works on a
    fresh copy of the learner, so scorers recorded in earlier iterations are never refit.
    """

    def __init__(self, learner: Any) -> None:
        if not (hasattr(learner, "fit") and hasattr(learner, "predict")):
            raise ConfigurationError(
                f"Learner must implement fit and predict, got {type(learner).__name__}."
            )
        self.learner = learner

    def fit_scorer(self, data: pd.DataFrame, residual: npt.NDArray) -> LearnerScorer:
        model = clone(self.learner, safe=False)
        try:
            model.fit(data, residual)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise FitError(
                f"Fitting {type(self.learner).__name__} on {len(data)} rows failed: {e}"
            ) from e
        return LearnerScorer(model)

    def _fit(
        self,
        data: pd.DataFrame,
        residual: npt.NDArray,
        mask: npt.NDArray[np.bool_],
    ) -> AuditorFit:
        data_masked = data.loc[mask]
        residual_masked = residual[mask]
        scorer = self.fit_scorer(data_masked, residual_masked)
        return AuditorFit(
            scorer=scorer,
            pseudo_correlation=pseudo_correlation(
                scorer.score(data_masked), residual_masked
            ),
            num_rows=len(residual_masked),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.learner!r})"


class TreeAuditorFitter(LearnerAuditorFitter):
    """Shallow regression tree auditor. Non-numeric columns are one-hot encoded."""

    def __init__(
        self,
        max_depth: int = 3,
        min_samples_leaf: int = 1,
        random_state: int | None = 0,
        **tree_params: Any,
    ) -> None:
        super().__init__(
            utils.with_feature_encoder(
                DecisionTreeRegressor(
                    max_depth=max_depth,
                    min_samples_leaf=min_samples_leaf,
                    random_state=random_state,
                    **tree_params,
                )
            )
        )


class RidgeAuditorFitter(LearnerAuditorFitter):
    """L2-regularized linear auditor. Non-numeric columns are one-hot encoded."""

    def __init__(self, alpha: float = 1.0, **ridge_params: Any) -> None:
        super().__init__(
            utils.with_feature_encoder(Ridge(alpha=alpha, **ridge_params))
        )


class CVLearnerAuditorFitter(AuditorFitter):
    """
    Cross-validated auditor fitting in the style of stacked generalization.

    The masked rows are split into k folds and one copy of the wrapped learner is fit on each
    complement. The pseudo-correlation is computed from out-of-fold scores, so an auditor that
    merely memorizes the residual does not look like exploitable miscalibration. On new data the
    fold models are averaged.
    """

    def __init__(
        self,
        fitter: LearnerAuditorFitter | Any,
        folds: int = 3,
        random_state: int | None = 0,
    ) -> None:
        if not isinstance(fitter, LearnerAuditorFitter):
            fitter = LearnerAuditorFitter(fitter)
        if folds < 2:
            raise ConfigurationError(f"`folds` must be at least 2, got {folds}.")
        self.fitter = fitter
        self.folds = folds
        self.random_state = random_state

    def _fit(
        self,
        data: pd.DataFrame,
        residual: npt.NDArray,
        mask: npt.NDArray[np.bool_],
    ) -> AuditorFit:
        rows = np.flatnonzero(mask)
        if len(rows) < self.folds:
            raise FitError(
                f"Cannot split {len(rows)} rows into {self.folds} non-empty folds."
            )
        data_masked = data.iloc[rows]
        residual_masked = residual[rows]

        out_of_fold_scores = np.empty(len(rows), dtype=float)
        scorers: list[Scorer] = []
        splitter = KFold(
            n_splits=self.folds, shuffle=True, random_state=self.random_state
        )
        for train_idx, test_idx in splitter.split(rows):
            scorer = self.fitter.fit_scorer(
                data_masked.iloc[train_idx], residual_masked[train_idx]
            )
            out_of_fold_scores[test_idx] = scorer.score(data_masked.iloc[test_idx])
            scorers.append(scorer)

        return AuditorFit(
            scorer=CVScorer(scorers),
            pseudo_correlation=pseudo_correlation(out_of_fold_scores, residual_masked),
            num_rows=len(rows),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.fitter!r}, folds={self.folds})"


class SubpopAuditorFitter(AuditorFitter):
    """
    Audits subpopulations that are known in advance instead of learning them.

    Each boosting iteration evaluates one bucket per subpopulation. The fit for subpopulation
    `index` uses its membership indicator as auditor; the returned scorer is that indicator scaled
    by the pseudo-correlation, so a correction shifts the members' predictions by their mean
    residual.

    :param subpops: column names (truthy values mark members) or functions returning one
        boolean per row
    :param index: the subpopulation fit by this instance
    """

    def __init__(self, subpops: Sequence[Subpopulation], index: int = 0) -> None:
        if len(subpops) == 0:
            raise ConfigurationError("At least one subpopulation is required.")
        if not 0 <= index < len(subpops):
            raise ConfigurationError(
                f"Subpopulation index {index} out of range for {len(subpops)} subpopulations."
            )
        self.subpops: list[Subpopulation] = list(subpops)
        self.index = index

    @property
    def is_data_driven(self) -> bool:
        return False

    def make_buckets(
        self,
        data: pd.DataFrame,
        predictions: npt.NDArray,
        num_buckets: int,
        rows: npt.NDArray | None = None,
    ) -> list[buckets.Bucket]:
        return buckets.subpop_buckets(data, self.subpops)

    def bucket_fitter(self, bucket_index: int) -> "SubpopAuditorFitter":
        return SubpopAuditorFitter(self.subpops, index=bucket_index)

    def _fit(
        self,
        data: pd.DataFrame,
        residual: npt.NDArray,
        mask: npt.NDArray[np.bool_],
    ) -> AuditorFit:
        subpop = self.subpops[self.index]
        indicator = buckets.subpop_membership(data, subpop).astype(float)
        corr = pseudo_correlation(indicator[mask], residual[mask])
        return AuditorFit(
            scorer=SubpopScorer(subpop, corr),
            pseudo_correlation=corr,
            num_rows=int(mask.sum()),
        )


class SubgroupAuditorFitter(AuditorFitter):
    """
    Like SubpopAuditorFitter, but membership is given as boolean masks over the training rows.

    Since membership cannot be recomputed from features, predicting with a model that recorded
    subgroup corrections requires the caller to pass matching masks for the new data.

    :param subgroup_masks: one boolean vector per subgroup, each with one entry per training row
    :param index: the subgroup fit by this instance; when `fit` is called without a mask, this
        subgroup's mask selects the rows
    """

    def __init__(
        self,
        subgroup_masks: Sequence[npt.ArrayLike],
        index: int = 0,
    ) -> None:
        masks = [np.asarray(mask, dtype=np.bool_).reshape(-1) for mask in subgroup_masks]
        if len(masks) == 0:
            raise ConfigurationError("At least one subgroup mask is required.")
        if len({len(mask) for mask in masks}) > 1:
            raise ConfigurationError(
                f"All subgroup masks must have the same length, got {sorted({len(m) for m in masks})}."
            )
        if not 0 <= index < len(masks):
            raise ConfigurationError(
                f"Subgroup index {index} out of range for {len(masks)} subgroups."
            )
        self.subgroup_masks: list[npt.NDArray[np.bool_]] = masks
        self.index = index

    @property
    def is_data_driven(self) -> bool:
        return False

    @property
    def num_rows(self) -> int:
        return len(self.subgroup_masks[0])

    def make_buckets(
        self,
        data: pd.DataFrame,
        predictions: npt.NDArray,
        num_buckets: int,
        rows: npt.NDArray | None = None,
    ) -> list[buckets.Bucket]:
        if rows is None and len(data) != self.num_rows:
            raise ConfigurationError(
                f"Subgroup masks have {self.num_rows} entries but the data has {len(data)} rows."
            )
        return buckets.subgroup_buckets(self.subgroup_masks, rows)

    def bucket_fitter(self, bucket_index: int) -> "SubgroupAuditorFitter":
        return SubgroupAuditorFitter(self.subgroup_masks, index=bucket_index)

    def fit(
        self,
        data: pd.DataFrame,
        residual: npt.NDArray,
        mask: npt.NDArray[np.bool_] | None = None,
    ) -> AuditorFit:
        if mask is None:
            mask = self.subgroup_masks[self.index]
        return super().fit(data, residual, mask)

    def _fit(
        self,
        data: pd.DataFrame,
        residual: npt.NDArray,
        mask: npt.NDArray[np.bool_],
    ) -> AuditorFit:
        # Masked rows are the subgroup members, so the indicator is one on all of them.
        corr = pseudo_correlation(np.ones(int(mask.sum())), residual[mask])
        return AuditorFit(
            scorer=ConstantScorer(corr),
            pseudo_correlation=corr,
            num_rows=int(mask.sum()),
        )


AUDITOR_FITTERS: dict[str, Callable[[], AuditorFitter]] = {
    "TreeAuditorFitter": TreeAuditorFitter,
    "RidgeAuditorFitter": RidgeAuditorFitter,
    "CVTreeAuditorFitter": lambda: CVLearnerAuditorFitter(TreeAuditorFitter()),
    "CVRidgeAuditorFitter": lambda: CVLearnerAuditorFitter(RidgeAuditorFitter()),
}

_AUDITOR_FITTER_ALIASES: dict[str, str] = {
    "tree": "TreeAuditorFitter",
    "ridge": "RidgeAuditorFitter",
    "cvtree": "CVTreeAuditorFitter",
    "cvridge": "CVRidgeAuditorFitter",
    **{name.lower(): name for name in AUDITOR_FITTERS},
}


def make_auditor_fitter(auditor_fitter: str | AuditorFitter | Any) -> AuditorFitter:
    """
    Resolves the `auditor_fitter` configuration value.

    :param auditor_fitter: a registered name (case and underscores are ignored, e.g. "tree" or
        "CV_Ridge"), an AuditorFitter instance, or a regression learner to wrap in a
        LearnerAuditorFitter.
    """
    if isinstance(auditor_fitter, AuditorFitter):
        return auditor_fitter
    if isinstance(auditor_fitter, str):
        key = auditor_fitter.lower().replace("_", "")
        if key not in _AUDITOR_FITTER_ALIASES:
            raise ConfigurationError(
                f"Unknown auditor fitter `{auditor_fitter}`. Available: {sorted(AUDITOR_FITTERS)}."
            )
        return AUDITOR_FITTERS[_AUDITOR_FITTER_ALIASES[key]]()
    if hasattr(auditor_fitter, "fit") and hasattr(auditor_fitter, "predict"):
        logger.info(
            f"Wrapping {type(auditor_fitter).__name__} in a LearnerAuditorFitter."
        )
        return LearnerAuditorFitter(auditor_fitter)
    raise ConfigurationError(
        f"auditor_fitter must be a name, an AuditorFitter or a learner, got {type(auditor_fitter).__name__}."
    )
