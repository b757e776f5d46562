# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
# pyre-strict

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
import pandas as pd

from mcaudit import buckets
from mcaudit.exceptions import FitError
from numpy import typing as npt


class Scorer(ABC):
    """A fitted auditor: maps a feature table to one numeric score per row."""

    @abstractmethod
    def score(self, data: pd.DataFrame) -> npt.NDArray:
        pass

    def __call__(self, data: pd.DataFrame) -> npt.NDArray:
        return self.score(data)


@dataclass(frozen=True, slots=True)
class AuditorFit:
    scorer: Scorer
    pseudo_correlation: float
    num_rows: int


def pseudo_correlation(scores: npt.NDArray, residual: npt.NDArray) -> float:
    """
    Mean of auditor score times residual. A signed measure of how much of the remaining
    residual the auditor can explain on the rows it was evaluated on.
    """
    return float(np.mean(np.asarray(scores, dtype=float) * residual))


class AuditorFitter(ABC):
    @abstractmethod
    def _fit(
        self,
        data: pd.DataFrame,
        residual: npt.NDArray,
        mask: npt.NDArray[np.bool_],
    ) -> AuditorFit:
        pass

    def fit(
        self,
        data: pd.DataFrame,
        residual: npt.NDArray,
        mask: npt.NDArray[np.bool_] | None = None,
    ) -> AuditorFit:
        """Fit an auditor to the residual on the rows selected by mask.

        :param data: feature table with one row per residual
        :param residual: label minus current prediction
        :param mask: boolean row selector; all rows when None
        :return: the fitted scorer together with its pseudo-correlation on the masked rows
        """
        residual = np.asarray(residual, dtype=float)
        if len(residual) != len(data):
            raise FitError(
                f"Residual has {len(residual)} entries but the data has {len(data)} rows."
            )
        if mask is None:
            mask = np.ones(len(data), dtype=np.bool_)
        else:
            mask = np.asarray(mask, dtype=np.bool_)
            if len(mask) != len(data):
                raise FitError(
                    f"Mask has {len(mask)} entries but the data has {len(data)} rows."
                )
        if not mask.any():
            raise FitError("Cannot fit an auditor on a partition without rows.")
        return self._fit(data, residual, mask)

    @property
    def is_data_driven(self) -> bool:
        """Whether buckets are derived from predictions rather than fixed subpopulations."""
        return True

    def make_buckets(
        self,
        data: pd.DataFrame,
        predictions: npt.NDArray,
        num_buckets: int,
        rows: npt.NDArray | None = None,
    ) -> list[buckets.Bucket]:
        """
        Partition the rows of data into the buckets audited in one boosting iteration.

        :param rows: positions of data's rows in the full training table; used by fitters whose
            bucket definitions were given over the training rows.
        """
        return buckets.quantile_buckets(predictions, num_buckets)

    def bucket_fitter(self, bucket_index: int) -> "AuditorFitter":
        return self
