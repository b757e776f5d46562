# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
# pyre-strict

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
from mcaudit.exceptions import ConfigurationError
from numpy import typing as npt


logger: logging.Logger = logging.getLogger(__name__)

Subpopulation = str | Callable[[pd.DataFrame], npt.NDArray]


class BucketPredicate(ABC):
    """Membership rule of a bucket that can be re-evaluated on unseen data."""

    requires_external_mask: bool = False

    @abstractmethod
    def mask(
        self, data: pd.DataFrame, predictions: npt.NDArray
    ) -> npt.NDArray[np.bool_]:
        pass

    @abstractmethod
    def describe(self) -> str:
        pass


@dataclass(frozen=True, slots=True)
class ProbRange(BucketPredicate):
    """
    Rows whose current prediction lies between lower and upper. The outermost buckets use
    infinite bounds so that every prediction falls in some bucket on unseen data.

    Rows predicted exactly at a bound are shared with the neighbouring bucket by row order:
    among the rows tied at `lower`, those from rank round(lower_tie_share * num_tied) on
    belong here, and among the rows tied at `upper`, those before rank
    round(upper_tie_share * num_tied). Both shares are cumulative over the buckets below,
    so adjacent predicates never overlap and reproduce the training split on the same rows.
    """

    lower: float
    upper: float
    lower_tie_share: float = 0.0
    upper_tie_share: float = 0.0

    def mask(
        self, data: pd.DataFrame, predictions: npt.NDArray
    ) -> npt.NDArray[np.bool_]:
        predictions = np.asarray(predictions, dtype=float)
        in_range = (predictions >= self.lower) & (predictions <= self.upper)
        at_lower = predictions == self.lower
        at_upper = predictions == self.upper
        lower_ok = ~at_lower | (
            _tie_rank(at_lower) >= _tie_count(at_lower, self.lower_tie_share)
        )
        upper_ok = ~at_upper | (
            _tie_rank(at_upper) < _tie_count(at_upper, self.upper_tie_share)
        )
        return in_range & lower_ok & upper_ok

    def describe(self) -> str:
        description = f"prediction in [{self.lower:.4g}, {self.upper:.4g})"
        if self.lower_tie_share > 0 or self.upper_tie_share > 0:
            description += (
                f", tied rows by order from {self.lower_tie_share:.2f} at lower"
                f" to {self.upper_tie_share:.2f} at upper"
            )
        return description


def _tie_rank(tied: npt.NDArray[np.bool_]) -> npt.NDArray[np.int_]:
    """Position of each tied row among the tied rows, in row order."""
    return np.cumsum(tied) - 1


def _tie_count(tied: npt.NDArray[np.bool_], share: float) -> int:
    return int(round(share * int(tied.sum())))


@dataclass(frozen=True, slots=True)
class SubpopPredicate(BucketPredicate):
    subpop: Subpopulation

    def mask(
        self, data: pd.DataFrame, predictions: npt.NDArray
    ) -> npt.NDArray[np.bool_]:
        return subpop_membership(data, self.subpop)

    def describe(self) -> str:
        if isinstance(self.subpop, str):
            return f"subpopulation {self.subpop}"
        return f"subpopulation {getattr(self.subpop, '__name__', repr(self.subpop))}"


@dataclass(frozen=True, slots=True)
class SubgroupPredicate(BucketPredicate):
    """Slot of an externally supplied mask; membership cannot be derived from features."""

    subgroup_index: int
    requires_external_mask: bool = True

    def mask(
        self, data: pd.DataFrame, predictions: npt.NDArray
    ) -> npt.NDArray[np.bool_]:
        raise ConfigurationError(
            f"Subgroup {self.subgroup_index} is defined by an external mask, pass `subgroup_masks`."
        )

    def describe(self) -> str:
        return f"subgroup mask {self.subgroup_index}"


@dataclass(frozen=True, slots=True)
class Bucket:
    index: int
    mask: npt.NDArray[np.bool_]
    predicate: BucketPredicate

    @property
    def num_rows(self) -> int:
        return int(self.mask.sum())


def subpop_membership(
    data: pd.DataFrame, subpop: Subpopulation
) -> npt.NDArray[np.bool_]:
    """
    Evaluates a subpopulation definition on a feature table.

    :param subpop: either a column name, whose truthy values mark members (missing values are
        non-members), or a function returning one boolean per row.
    """
    if isinstance(subpop, str):
        if subpop not in data.columns:
            raise ConfigurationError(
                f"Subpopulation column `{subpop}` is not present in the data."
            )
        return data[subpop].fillna(0).astype(bool).to_numpy()
    membership = np.asarray(subpop(data), dtype=np.bool_)
    if membership.shape != (len(data),):
        raise ConfigurationError(
            f"Subpopulation function returned shape {membership.shape}, expected ({len(data)},)."
        )
    return membership


def quantile_buckets(predictions: npt.NDArray, num_buckets: int) -> list[Bucket]:
    """
    Splits rows into num_buckets groups of near-equal size by quantile of the predictions.

    Rows are ordered with a stable sort, so tied predictions keep their original row order
    and a run of ties may straddle buckets. Each predicate records which share of such a
    run its bucket took, so replaying it on the same predictions selects exactly the rows
    of the bucket.
    """
    predictions = np.asarray(predictions, dtype=float)
    order = np.argsort(predictions, kind="stable")
    groups = [group for group in np.array_split(order, num_buckets) if len(group) > 0]
    # Shares of the tie run at each boundary taken by the buckets below it.
    boundary_shares = []
    for k in range(len(groups) - 1):
        boundary = predictions[groups[k + 1][0]]
        tied = predictions == boundary
        taken = sum(int(tied[group].sum()) for group in groups[: k + 1])
        boundary_shares.append((float(boundary), taken / int(tied.sum())))

    result = []
    for k, group in enumerate(groups):
        lower, lower_share = (-np.inf, 0.0) if k == 0 else boundary_shares[k - 1]
        upper, upper_share = (
            (np.inf, 0.0) if k == len(groups) - 1 else boundary_shares[k]
        )
        mask = np.zeros(len(predictions), dtype=np.bool_)
        mask[group] = True
        result.append(
            Bucket(
                index=k,
                mask=mask,
                predicate=ProbRange(
                    lower=lower,
                    upper=upper,
                    lower_tie_share=lower_share,
                    upper_tie_share=upper_share,
                ),
            )
        )
    return result


def single_bucket(num_rows: int) -> list[Bucket]:
    return [
        Bucket(
            index=0,
            mask=np.ones(num_rows, dtype=np.bool_),
            predicate=ProbRange(lower=-np.inf, upper=np.inf),
        )
    ]


def subpop_buckets(data: pd.DataFrame, subpops: Sequence[Subpopulation]) -> list[Bucket]:
    return _drop_empty(
        [
            Bucket(
                index=i,
                mask=subpop_membership(data, subpop),
                predicate=SubpopPredicate(subpop),
            )
            for i, subpop in enumerate(subpops)
        ]
    )


def subgroup_buckets(
    subgroup_masks: Sequence[npt.NDArray[np.bool_]],
    rows: npt.NDArray | None = None,
) -> list[Bucket]:
    """
    One bucket per externally supplied mask.

    :param rows: positions of the current data slice within the rows the masks were given for.
    """
    return _drop_empty(
        [
            Bucket(
                index=i,
                mask=mask if rows is None else mask[rows],
                predicate=SubgroupPredicate(i),
            )
            for i, mask in enumerate(subgroup_masks)
        ]
    )


def _drop_empty(candidates: list[Bucket]) -> list[Bucket]:
    non_empty = [bucket for bucket in candidates if bucket.mask.any()]
    if len(non_empty) < len(candidates):
        logger.warning(
            f"Skipping {len(candidates) - len(non_empty)} of {len(candidates)} buckets without rows in the current data."
        )
    return non_empty
