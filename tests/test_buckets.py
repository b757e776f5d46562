# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
# pyre-unsafe

import numpy as np
import pandas as pd
import pytest

from mcaudit import buckets
from mcaudit.exceptions import ConfigurationError


def test_quantile_buckets_split_rows_by_prediction_quantile():
    predictions = np.array([0.3, 0.1, 0.4, 0.2])

    result = buckets.quantile_buckets(predictions, 2)

    assert [bucket.index for bucket in result] == [0, 1]
    np.testing.assert_array_equal(result[0].mask, [False, True, False, True])
    np.testing.assert_array_equal(result[1].mask, [True, False, True, False])
    assert result[0].predicate == buckets.ProbRange(-np.inf, 0.3, 0.0, 0.0)
    assert result[1].predicate == buckets.ProbRange(0.3, np.inf, 0.0, 0.0)


def test_quantile_bucket_predicates_reproduce_masks_without_ties():
    predictions = np.random.RandomState(0).uniform(size=50)
    data = pd.DataFrame({"a": np.arange(50)})

    for bucket in buckets.quantile_buckets(predictions, 4):
        np.testing.assert_array_equal(
            bucket.predicate.mask(data, predictions), bucket.mask
        )


def test_quantile_buckets_break_ties_by_row_order():
    predictions = np.full(8, 0.5)
    data = pd.DataFrame({"a": np.arange(8)})

    result = buckets.quantile_buckets(predictions, 2)

    np.testing.assert_array_equal(np.flatnonzero(result[0].mask), [0, 1, 2, 3])
    np.testing.assert_array_equal(np.flatnonzero(result[1].mask), [4, 5, 6, 7])
    assert result[0].predicate.upper_tie_share == 0.5
    for bucket in result:
        np.testing.assert_array_equal(
            bucket.predicate.mask(data, predictions), bucket.mask
        )


@pytest.mark.parametrize("num_buckets", [2, 3, 4, 7])
def test_quantile_bucket_predicates_partition_rows_with_tie_runs(num_buckets):
    predictions = np.array([0.1, 0.5, 0.5, 0.2, 0.5, 0.5, 0.9, 0.5, 0.5, 0.2])
    data = pd.DataFrame({"a": np.arange(10)})

    result = buckets.quantile_buckets(predictions, num_buckets)
    replayed = [bucket.predicate.mask(data, predictions) for bucket in result]

    for bucket, mask in zip(result, replayed):
        np.testing.assert_array_equal(mask, bucket.mask)
    np.testing.assert_array_equal(np.sum(replayed, axis=0), np.ones(10))


def test_quantile_bucket_predicates_split_ties_on_new_data_by_share():
    result = buckets.quantile_buckets(np.full(4, 0.5), 2)
    unseen = np.array([0.5, 0.3, 0.5, 0.5, 0.5, 0.7])
    data = pd.DataFrame({"a": np.zeros(6)})

    masks = [bucket.predicate.mask(data, unseen) for bucket in result]

    np.testing.assert_array_equal(masks[0], [True, True, True, False, False, False])
    np.testing.assert_array_equal(masks[1], [False, False, False, True, True, True])


def test_quantile_buckets_drop_empty_buckets():
    result = buckets.quantile_buckets(np.array([0.2, 0.8, 0.5]), 5)
    assert len(result) == 3
    assert all(bucket.num_rows == 1 for bucket in result)


def test_prob_range_covers_unseen_predictions():
    predictions = np.array([0.1, 0.2, 0.7, 0.9])
    result = buckets.quantile_buckets(predictions, 2)
    unseen = np.array([-1.0, 0.5, 0.69, 0.7, 2.0])
    data = pd.DataFrame({"a": np.zeros(5)})

    masks = [bucket.predicate.mask(data, unseen) for bucket in result]

    np.testing.assert_array_equal(masks[0], [True, True, True, False, False])
    np.testing.assert_array_equal(masks[1], [False, False, False, True, True])


def test_single_bucket_covers_all_rows():
    (bucket,) = buckets.single_bucket(4)
    assert bucket.mask.all()
    assert bucket.predicate.mask(pd.DataFrame({"a": [1]}), np.array([0.3])).all()


def test_subpop_membership_from_column_treats_missing_values_as_non_members():
    data = pd.DataFrame({"flag": [1.0, 0.0, np.nan, 2.0]})
    np.testing.assert_array_equal(
        buckets.subpop_membership(data, "flag"), [True, False, False, True]
    )


def test_subpop_membership_from_function():
    data = pd.DataFrame({"age": [20, 40, 60]})
    np.testing.assert_array_equal(
        buckets.subpop_membership(data, lambda df: df["age"] > 30),
        [False, True, True],
    )


def test_subpop_membership_raises_for_unknown_column_and_bad_shape():
    data = pd.DataFrame({"age": [20, 40, 60]})
    with pytest.raises(ConfigurationError, match="not present"):
        buckets.subpop_membership(data, "income")
    with pytest.raises(ConfigurationError, match="shape"):
        buckets.subpop_membership(data, lambda df: np.ones(2))


def test_subpop_buckets_skip_subpopulations_without_rows():
    data = pd.DataFrame({"a": [1, 0, 1], "b": [0, 0, 0]})

    result = buckets.subpop_buckets(data, ["a", "b", lambda df: df["a"] == 0])

    assert [bucket.index for bucket in result] == [0, 2]
    assert isinstance(result[0].predicate, buckets.SubpopPredicate)


def test_subgroup_buckets_restrict_masks_to_rows():
    masks = [np.array([True, False, True, False]), np.array([False, True, False, True])]

    result = buckets.subgroup_buckets(masks, rows=np.array([0, 2, 2]))

    assert len(result) == 1
    np.testing.assert_array_equal(result[0].mask, [True, True, True])
    assert result[0].predicate == buckets.SubgroupPredicate(0)


def test_subgroup_predicate_requires_external_mask():
    predicate = buckets.SubgroupPredicate(1)
    assert predicate.requires_external_mask
    with pytest.raises(ConfigurationError, match="subgroup_masks"):
        predicate.mask(pd.DataFrame({"a": [1]}), np.array([0.5]))
