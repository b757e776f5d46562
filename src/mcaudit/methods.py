# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
# pyre-strict

import logging
import warnings
from collections.abc import Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from mcaudit import buckets, utils
from mcaudit.auditors import make_auditor_fitter, SubgroupAuditorFitter
from mcaudit.base import AuditorFit, AuditorFitter, Scorer
from mcaudit.buckets import Bucket, BucketPredicate, SubgroupPredicate
from mcaudit.exceptions import ConfigurationError, ConvergenceWarning, FitError
from numpy import typing as npt
from typing_extensions import Self

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CorrectionStep:
    iteration: int
    bucket_index: int
    predicate: BucketPredicate
    scorer: Scorer
    eta: float
    pseudo_correlation: float
    multiplicative: bool = False

    @property
    def requires_external_mask(self) -> bool:
        return self.predicate.requires_external_mask

    def apply(
        self,
        data: pd.DataFrame,
        predictions: npt.NDArray,
        mask: npt.NDArray[np.bool_],
    ) -> tuple[npt.NDArray, npt.NDArray]:
        """
        Returns the corrected predictions and the per-row magnitude of the auditor's contribution.
        Rows outside mask are left untouched and get magnitude zero.
        """
        corrected = predictions.copy()
        effect = np.zeros(len(predictions), dtype=float)
        if not mask.any():
            return corrected, effect
        update = self.eta * self.scorer.score(data.loc[mask])
        if self.multiplicative:
            corrected[mask] = np.clip(predictions[mask] * np.exp(update), 0, 1)
        else:
            corrected[mask] = np.clip(predictions[mask] + update, 0, 1)
        effect[mask] = np.abs(update)
        return corrected, effect


class ConstantPredictor:
    """Initial predictor used when none is supplied; predicts the same value for every row."""

    def __init__(self, value: float = 0.5) -> None:
        self.value = value

    def predict(self, data: pd.DataFrame) -> npt.NDArray:
        return np.full(len(data), self.value, dtype=float)

    def __call__(self, data: pd.DataFrame) -> npt.NDArray:
        return self.predict(data)

    def __repr__(self) -> str:
        return f"ConstantPredictor({self.value})"


class MultiCalibrator:
    """
    Multi-calibration boosting with pluggable auditors.

    Starting from an initial predictor, every iteration buckets the rows, fits one auditor per
    bucket to the residual, and records a correction step for the bucket whose auditor has the
    largest absolute pseudo-correlation. Training stops once no bucket exceeds `alpha`, or after
    `max_iter` iterations. Predictions are reconstructed by replaying the recorded steps.

    References:
    [1] Hebert-Johnson, U., Kim, M., Reingold, O., & Rothblum, G. (2018). Multicalibration: Calibration for the
        (computationally-identifiable) masses. In International Conference on Machine Learning (pp. 1939-1948). PMLR.
    [2] Kim, M. P., Ghorbani, A., & Zou, J. (2019). Multiaccuracy: Black-box post-processing for fairness in
        classification. In AAAI/ACM Conference on AI, Ethics, and Society (pp. 247-254).
    """

    DEFAULT_HYPERPARAMS: dict[str, Any] = {
        "auditor_fitter": "TreeAuditorFitter",
        "max_iter": 5,
        "alpha": 1e-4,
        "eta": 1.0,
        "num_buckets": 2,
        "partition": True,
        "iter_sampling": "none",
        "multiplicative": False,
        "n_jobs": 1,
    }

    def __init__(
        self,
        auditor_fitter: str | AuditorFitter | Any | None = None,
        init_predictor: Any | None = None,
        max_iter: int | None = None,
        alpha: float | None = None,
        eta: float | None = None,
        num_buckets: int | None = None,
        partition: bool | None = None,
        iter_sampling: str | None = None,
        multiplicative: bool | None = None,
        n_jobs: int | None = None,
        random_state: int | np.random.Generator | None = 42,
    ) -> None:
        """
        :param auditor_fitter: name of a registered auditor fitter ("TreeAuditorFitter", "RidgeAuditorFitter",
            "CVTreeAuditorFitter", "CVRidgeAuditorFitter"), an AuditorFitter instance, or a regression learner
            with fit/predict that is wrapped in a LearnerAuditorFitter. Defaults to "TreeAuditorFitter".
        :param init_predictor: function of the feature table returning initial predictions in [0, 1], or an
            estimator exposing predict_proba or predict. If None, a constant prediction of 0.5 is used.
        :param max_iter: maximum number of boosting iterations.
        :param alpha: iterations stop once no bucket has an absolute pseudo-correlation above alpha.
        :param eta: step size applied to every recorded correction.
        :param num_buckets: number of prediction-quantile buckets audited per iteration. Ignored for
            subpopulation and subgroup auditors, whose buckets are pre-defined.
        :param partition: whether to bucket by prediction quantile at all; if False, a single bucket holds all rows.
        :param iter_sampling: "none" uses all rows in every iteration, "split" uses a fresh disjoint chunk of the
            rows per iteration, "bootstrap" draws a bootstrap resample per iteration.
        :param multiplicative: whether corrections multiply predictions by exp(eta * score) instead of adding
            eta * score.
        :param n_jobs: number of threads used to fit the buckets of one iteration.
        :param random_state: seed or generator for the iteration sampling.
        """
        self.random_state = random_state
        if isinstance(random_state, np.random.Generator):
            self._rng: np.random.Generator = random_state
        else:
            self._rng: np.random.Generator = np.random.default_rng(random_state)

        self.auditor_fitter: AuditorFitter = make_auditor_fitter(
            self.DEFAULT_HYPERPARAMS["auditor_fitter"]
            if auditor_fitter is None
            else auditor_fitter
        )
        self.init_predictor: Any = (
            ConstantPredictor(0.5) if init_predictor is None else init_predictor
        )
        self._init_predict: utils.PredictorInterface = utils.resolve_predictor(
            self.init_predictor
        )

        self.max_iter: int = self._default("max_iter", max_iter)
        self.alpha: float = self._default("alpha", alpha)
        self.eta: float = self._default("eta", eta)
        self.num_buckets: int = self._default("num_buckets", num_buckets)
        self.partition: bool = self._default("partition", partition)
        self.iter_sampling: str = self._default("iter_sampling", iter_sampling)
        self.multiplicative: bool = self._default("multiplicative", multiplicative)
        self.n_jobs: int = self._default("n_jobs", n_jobs)
        self._check_hyperparams()

        self.steps: list[CorrectionStep] = []
        self.bucket_statistics: list[dict[str, Any]] = []
        self.converged: bool | None = None
        self._subgroup_step_indices: list[int] = []

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> Self:
        """Creates a calibrator from a configuration dictionary; unknown keys are rejected."""
        recognized = set(cls.DEFAULT_HYPERPARAMS) | {"init_predictor", "random_state"}
        unknown = set(config) - recognized
        if unknown:
            raise ConfigurationError(
                f"Unrecognized configuration options {sorted(unknown)}. Recognized: {sorted(recognized)}."
            )
        return cls(**config)

    def _default(self, name: str, value: Any) -> Any:
        return self.DEFAULT_HYPERPARAMS[name] if value is None else value

    def _check_hyperparams(self) -> None:
        if self.max_iter < 1:
            raise ConfigurationError(f"`max_iter` must be positive, got {self.max_iter}.")
        if self.alpha < 0:
            raise ConfigurationError(f"`alpha` must be non-negative, got {self.alpha}.")
        if self.eta <= 0:
            raise ConfigurationError(f"`eta` must be positive, got {self.eta}.")
        if self.num_buckets < 1:
            raise ConfigurationError(
                f"`num_buckets` must be positive, got {self.num_buckets}."
            )
        if self.n_jobs < 1:
            raise ConfigurationError(f"`n_jobs` must be positive, got {self.n_jobs}.")
        if self.iter_sampling not in utils.ITER_SAMPLING_MODES:
            raise ConfigurationError(
                f"Unknown iter_sampling `{self.iter_sampling}`, expected one of {utils.ITER_SAMPLING_MODES}."
            )

    def reset_training_state(self) -> None:
        self.steps = []
        self.bucket_statistics = []
        self.converged = None
        self._subgroup_step_indices = []

    @property
    def num_steps(self) -> int:
        return len(self.steps)

    @utils.log_fit_resources()
    def multicalibrate(self, data: pd.DataFrame | npt.ArrayLike, labels: npt.ArrayLike) -> Self:
        """Runs the boosting loop and records the correction steps.

        :param data: feature table with one row per observation. It is never modified.
        :param labels: targets in [0, 1], one per row.
        :return: the fitted calibrator
        """
        data = utils.as_frame(data)
        y = utils.check_labels(labels, len(data))
        if (
            isinstance(self.auditor_fitter, SubgroupAuditorFitter)
            and self.auditor_fitter.num_rows != len(data)
        ):
            raise ConfigurationError(
                f"Subgroup masks have {self.auditor_fitter.num_rows} entries but the data has {len(data)} rows."
            )

        if self.steps:
            logger.warning(
                "Calibrator has already been fit. All training state is reset before fitting again."
            )
        self.reset_training_state()

        sampler = utils.make_iteration_sampler(
            self.iter_sampling, len(data), self.max_iter, self._rng
        )
        logger.info(
            f"Multicalibrating {len(data)} rows with {self.auditor_fitter!r}, max_iter={self.max_iter}, "
            f"alpha={self.alpha}, eta={self.eta}, iter_sampling={self.iter_sampling}"
        )

        for iteration in range(1, self.max_iter + 1):
            rows = sampler.rows(iteration - 1)
            data_iter = data if self.iter_sampling == "none" else data.iloc[rows]
            predictions = self._replay(
                data_iter,
                t=len(self.steps),
                subgroup_masks=self._training_subgroup_masks(rows),
            )[0]
            residual = y[rows] - predictions

            iteration_buckets = self._make_buckets(data_iter, predictions, rows)
            try:
                fits = self._fit_buckets(data_iter, residual, iteration_buckets)
            except FitError:
                logger.error(
                    f"Auditor fit failed in iteration {iteration}; keeping the {len(self.steps)} steps recorded so far."
                )
                raise

            abs_corrs = [abs(fit.pseudo_correlation) for fit in fits]
            # np.argmax returns the first maximum, so ties go to the lowest bucket index.
            best = int(np.argmax(abs_corrs))
            self._record_bucket_statistics(iteration, iteration_buckets, fits, best)

            if abs_corrs[best] <= self.alpha:
                logger.info(
                    f"Iteration {iteration}: largest absolute pseudo-correlation {abs_corrs[best]:.6g} "
                    f"is not above alpha={self.alpha}. Converged after {len(self.steps)} steps."
                )
                self.converged = True
                return self

            bucket = iteration_buckets[best]
            self.steps.append(
                CorrectionStep(
                    iteration=iteration,
                    bucket_index=bucket.index,
                    predicate=bucket.predicate,
                    scorer=fits[best].scorer,
                    eta=self.eta,
                    pseudo_correlation=fits[best].pseudo_correlation,
                    multiplicative=self.multiplicative,
                )
            )
            if isinstance(bucket.predicate, SubgroupPredicate):
                self._subgroup_step_indices.append(bucket.predicate.subgroup_index)
            logger.info(
                f"Iteration {iteration}: recorded correction for bucket {bucket.index} "
                f"({bucket.predicate.describe()}, {bucket.num_rows} rows) with pseudo-correlation "
                f"{fits[best].pseudo_correlation:.6g}"
            )

        self.converged = False
        logger.warning(
            f"Multicalibration did not converge within max_iter={self.max_iter} iterations."
        )
        warnings.warn(
            f"Reached max_iter={self.max_iter} without the pseudo-correlation dropping below alpha={self.alpha}. "
            "The recorded steps are still usable.",
            ConvergenceWarning,
            stacklevel=3,
        )
        return self

    def _make_buckets(
        self,
        data: pd.DataFrame,
        predictions: npt.NDArray,
        rows: npt.NDArray,
    ) -> list[Bucket]:
        if self.auditor_fitter.is_data_driven and not self.partition:
            return buckets.single_bucket(len(data))
        iteration_buckets = self.auditor_fitter.make_buckets(
            data, predictions, self.num_buckets, rows=rows
        )
        if not iteration_buckets:
            raise ConfigurationError(
                "No bucket contains any rows; check the subpopulation or subgroup definitions."
            )
        return iteration_buckets

    def _fit_buckets(
        self,
        data: pd.DataFrame,
        residual: npt.NDArray,
        iteration_buckets: list[Bucket],
    ) -> list[AuditorFit]:
        def fit_bucket(bucket: Bucket) -> AuditorFit:
            fit = self.auditor_fitter.bucket_fitter(bucket.index).fit(
                data, residual, mask=bucket.mask
            )
            logger.debug(
                f"Bucket {bucket.index} ({bucket.num_rows} rows): pseudo-correlation {fit.pseudo_correlation:.6g}"
            )
            return fit

        if self.n_jobs > 1 and len(iteration_buckets) > 1:
            with ThreadPoolExecutor(
                max_workers=min(self.n_jobs, len(iteration_buckets))
            ) as executor:
                return list(executor.map(fit_bucket, iteration_buckets))
        return [fit_bucket(bucket) for bucket in iteration_buckets]

    def _record_bucket_statistics(
        self,
        iteration: int,
        iteration_buckets: list[Bucket],
        fits: list[AuditorFit],
        best: int,
    ) -> None:
        for position, (bucket, fit) in enumerate(zip(iteration_buckets, fits)):
            self.bucket_statistics.append(
                {
                    "iteration": iteration,
                    "bucket": bucket.index,
                    "definition": bucket.predicate.describe(),
                    "num_rows": fit.num_rows,
                    "pseudo_correlation": fit.pseudo_correlation,
                    "selected": position == best and abs(fit.pseudo_correlation) > self.alpha,
                }
            )

    def _training_subgroup_masks(
        self, rows: npt.NDArray
    ) -> list[npt.NDArray[np.bool_]] | None:
        """Per-step masks of the subgroup steps recorded so far, restricted to the iteration's rows."""
        if not self._subgroup_step_indices:
            return None
        assert isinstance(self.auditor_fitter, SubgroupAuditorFitter)
        subgroup_masks = self.auditor_fitter.subgroup_masks
        return [subgroup_masks[i][rows] for i in self._subgroup_step_indices]

    def _resolve_t(self, t: int | None) -> int:
        if t is None:
            return len(self.steps)
        if t < 0 or t > len(self.steps):
            raise ConfigurationError(
                f"Requested t={t} correction steps, but {len(self.steps)} are recorded."
            )
        return int(t)

    def _replay(
        self,
        data: pd.DataFrame,
        t: int,
        subgroup_masks: Sequence[npt.ArrayLike] | None = None,
    ) -> tuple[npt.NDArray, npt.NDArray]:
        """
        Applies the initial predictor and then the first t correction steps in recorded order.

        Returns the predictions together with a (t, num_rows) matrix holding the magnitude each
        step added per row. Training and prediction both go through this function.
        """
        predictions = utils.check_predictions(self._init_predict(data), len(data))
        effects = np.zeros((t, len(data)), dtype=float)
        external_masks = self._external_mask_iterator(t, len(data), subgroup_masks)
        for i, step in enumerate(self.steps[:t]):
            if step.requires_external_mask:
                mask = next(external_masks)
            else:
                mask = step.predicate.mask(data, predictions)
            predictions, effects[i] = step.apply(data, predictions, mask)
        return predictions, effects

    def _external_mask_iterator(
        self,
        t: int,
        num_rows: int,
        subgroup_masks: Sequence[npt.ArrayLike] | None,
    ) -> Iterator[npt.NDArray[np.bool_]]:
        num_required = sum(step.requires_external_mask for step in self.steps[:t])
        if num_required == 0:
            return iter([])
        if subgroup_masks is None:
            raise ConfigurationError(
                f"{num_required} of the first {t} correction steps use externally supplied subgroup masks; "
                "pass `subgroup_masks` with one mask per such step."
            )
        if len(subgroup_masks) != num_required:
            raise ConfigurationError(
                f"Expected {num_required} subgroup masks (one per subgroup correction step), got {len(subgroup_masks)}."
            )
        masks = [np.asarray(mask, dtype=np.bool_).reshape(-1) for mask in subgroup_masks]
        for mask in masks:
            if len(mask) != num_rows:
                raise ConfigurationError(
                    f"Subgroup mask has {len(mask)} entries but the data has {num_rows} rows."
                )
        return iter(masks)

    def predict_probs(
        self,
        data: pd.DataFrame | npt.ArrayLike,
        t: int | None = None,
        subgroup_masks: Sequence[npt.ArrayLike] | None = None,
    ) -> npt.NDArray:
        """
        Applies the calibration model to new data.

        :param data: feature table with the training columns.
        :param t: number of recorded correction steps to apply; all of them if None.
        :param subgroup_masks: required if any of the first t steps was recorded with a SubgroupAuditorFitter.
            One boolean mask over the rows of data per such step, in step order (see `subgroup_masks_for_steps`).
        :return: calibrated predictions in [0, 1].
        """
        data = utils.as_frame(data)
        if not self.steps:
            logger.warning(
                "No correction steps recorded. Returning the initial predictions."
            )
        return self._replay(data, self._resolve_t(t), subgroup_masks)[0]

    def predict(
        self,
        data: pd.DataFrame | npt.ArrayLike,
        t: int | None = None,
        subgroup_masks: Sequence[npt.ArrayLike] | None = None,
    ) -> npt.NDArray:
        return self.predict_probs(data, t=t, subgroup_masks=subgroup_masks)

    def auditor_effect(
        self,
        data: pd.DataFrame | npt.ArrayLike,
        subgroup_masks: Sequence[npt.ArrayLike] | None = None,
        t: int | None = None,
        aggregate: str = "sum",
    ) -> npt.NDArray:
        """
        Per-row magnitude of the corrections applied by the recorded steps.

        :param aggregate: "sum" or "mean" over the first t steps.
        :return: non-negative vector with one entry per row of data.
        """
        if aggregate not in ("sum", "mean"):
            raise ConfigurationError(
                f"`aggregate` must be 'sum' or 'mean', got {aggregate!r}."
            )
        data = utils.as_frame(data)
        t = self._resolve_t(t)
        if t == 0:
            return np.zeros(len(data), dtype=float)
        effects = self._replay(data, t, subgroup_masks)[1]
        return effects.sum(axis=0) if aggregate == "sum" else effects.mean(axis=0)

    def subgroup_masks_for_steps(
        self,
        masks_per_subgroup: Sequence[npt.ArrayLike],
        t: int | None = None,
    ) -> list[npt.ArrayLike]:
        """
        Orders masks given per subgroup (in the order they were given to the SubgroupAuditorFitter)
        into the per-step list consumed by `predict_probs` and `auditor_effect`.
        """
        t = self._resolve_t(t)
        num_subgroup_steps = sum(step.requires_external_mask for step in self.steps[:t])
        indices = self._subgroup_step_indices[:num_subgroup_steps]
        if indices and max(indices) >= len(masks_per_subgroup):
            raise ConfigurationError(
                f"Steps reference subgroup {max(indices)}, but only {len(masks_per_subgroup)} masks were given."
            )
        return [masks_per_subgroup[i] for i in indices]

    def as_predictor(self, t: int | None = None) -> utils.PredictorInterface:
        """Returns a function of the feature table, e.g. to serve as another calibrator's init_predictor."""
        t = self._resolve_t(t)

        def predict(data: pd.DataFrame) -> npt.NDArray:
            return self.predict_probs(data, t=t)

        return predict

    def summary(self) -> pd.DataFrame:
        """Bucket statistics of every iteration; `selected` marks buckets that produced a correction step."""
        return pd.DataFrame(
            self.bucket_statistics,
            columns=[
                "iteration",
                "bucket",
                "definition",
                "num_rows",
                "pseudo_correlation",
                "selected",
            ],
        )

    def __str__(self) -> str:
        status = {None: "not fit", True: "converged", False: "did not converge"}[
            self.converged
        ]
        header = (
            f"{type(self).__name__}: {len(self.steps)} correction steps, {status} "
            f"(max_iter={self.max_iter}, alpha={self.alpha}, eta={self.eta})"
        )
        if not self.bucket_statistics:
            return header
        return header + "\n" + self.summary().to_string(index=False)
