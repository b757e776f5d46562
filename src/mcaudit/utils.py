# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
# pyre-unsafe

import functools
import logging
import os
import threading
import time
from typing import Any, Callable, Protocol

import numpy as np
import pandas as pd

import psutil
from mcaudit.exceptions import ConfigurationError
from sklearn.compose import ColumnTransformer, make_column_selector
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder

logger = logging.getLogger(__name__)

ITER_SAMPLING_MODES = ("none", "split", "bootstrap")


def as_frame(data) -> pd.DataFrame:
    """
    Returns data as a DataFrame. Two-dimensional arrays get the column names x0, x1, ...
    DataFrames are returned as they are; the caller's table is never modified downstream.
    """
    if isinstance(data, pd.DataFrame):
        return data
    array = np.asarray(data)
    if array.ndim != 2:
        raise ConfigurationError(
            f"Feature data must be two-dimensional, got an array with {array.ndim} dimensions."
        )
    return pd.DataFrame(array, columns=[f"x{i}" for i in range(array.shape[1])])


def check_labels(labels, num_rows: int) -> np.ndarray:
    y = np.asarray(labels, dtype=float).reshape(-1)
    if len(y) != num_rows:
        raise ConfigurationError(
            f"Labels have {len(y)} entries but the data has {num_rows} rows."
        )
    if np.isnan(y).any():
        raise ConfigurationError(
            f"Labels must not contain missing values, but {np.isnan(y).sum()} of {len(y)} are null."
        )
    if (y < 0).any() or (y > 1).any():
        raise ConfigurationError(
            f"Labels must lie in the [0, 1] interval. Found min={y.min()}, max={y.max()}."
        )
    return y


def check_predictions(predictions, num_rows: int) -> np.ndarray:
    p = np.asarray(predictions, dtype=float).reshape(-1)
    if len(p) != num_rows:
        raise ConfigurationError(
            f"The initial predictor returned {len(p)} predictions for {num_rows} rows."
        )
    if np.isnan(p).any():
        raise ConfigurationError(
            f"The initial predictor returned {np.isnan(p).sum()} missing values out of {len(p)}."
        )
    out_of_bounds = (p < 0) | (p > 1)
    if out_of_bounds.any():
        logger.warning(
            f"Found {out_of_bounds.sum()} initial predictions outside [0, 1] (min={p.min()}, max={p.max()}). These are clipped."
        )
    return np.clip(p, 0, 1)


class PredictorInterface(Protocol):
    def __call__(self, data: pd.DataFrame) -> np.ndarray: ...


def resolve_predictor(init_predictor: Any) -> PredictorInterface:
    """
    Turns the supported kinds of initial predictors into a function of the feature table.

    Accepts a plain function, an estimator with predict_proba (probability of the positive
    class, i.e. column 1, is used) or an estimator with predict.
    """
    if hasattr(init_predictor, "predict_proba"):

        def predict_positive_class(data: pd.DataFrame) -> np.ndarray:
            return np.asarray(init_predictor.predict_proba(data))[:, 1]

        return predict_positive_class
    if hasattr(init_predictor, "predict"):
        return init_predictor.predict
    if callable(init_predictor):
        return init_predictor
    raise ConfigurationError(
        f"init_predictor must be callable or expose predict/predict_proba, got {type(init_predictor).__name__}."
    )


def with_feature_encoder(estimator: Any) -> Pipeline:
    """
    Prepends a one-hot encoder for non-numeric columns to an estimator. Numeric columns are
    passed through unchanged and categories unseen during fit are encoded as all zeros.
    """
    encoder = ColumnTransformer(
        [
            (
                "categorical",
                OneHotEncoder(sparse_output=False, handle_unknown="ignore"),
                make_column_selector(dtype_exclude="number"),
            )
        ],
        remainder="passthrough",
    )
    return Pipeline([("encoder", encoder), ("estimator", estimator)])


class NoopIterationSampler:
    def __init__(self, num_rows: int) -> None:
        """
        Uses all rows in every iteration.
        """
        self.num_rows = num_rows

    def rows(self, iteration: int) -> np.ndarray:
        return np.arange(self.num_rows)


class SplitIterationSampler:
    def __init__(
        self,
        num_rows: int,
        num_chunks: int,
        rng: np.random.Generator,
    ) -> None:
        """
        Shuffles the rows once and splits them into disjoint chunks. Iteration i uses chunk
        i modulo the number of chunks, so chunks are reused once all of them have been visited.
        :param num_rows: number of rows in the training data;
        :param num_chunks: number of chunks, usually the maximum number of iterations;
        :param rng: random generator used for the shuffle;
        """
        permutation = rng.permutation(num_rows)
        self.chunks: list[np.ndarray] = [
            np.sort(chunk)
            for chunk in np.array_split(permutation, max(1, num_chunks))
            if len(chunk) > 0
        ]

    def rows(self, iteration: int) -> np.ndarray:
        return self.chunks[iteration % len(self.chunks)]


class BootstrapIterationSampler:
    def __init__(self, num_rows: int, rng: np.random.Generator) -> None:
        """
        Draws a fresh bootstrap resample of all rows for every iteration.
        """
        self.num_rows = num_rows
        self.rng = rng

    def rows(self, iteration: int) -> np.ndarray:
        return np.sort(self.rng.integers(0, self.num_rows, size=self.num_rows))


def make_iteration_sampler(
    mode: str,
    num_rows: int,
    num_chunks: int,
    rng: np.random.Generator,
) -> NoopIterationSampler | SplitIterationSampler | BootstrapIterationSampler:
    if mode == "none":
        return NoopIterationSampler(num_rows)
    if mode == "split":
        return SplitIterationSampler(num_rows, num_chunks, rng)
    if mode == "bootstrap":
        return BootstrapIterationSampler(num_rows, rng)
    raise ConfigurationError(
        f"Unknown iter_sampling `{mode}`, expected one of {ITER_SAMPLING_MODES}."
    )


def _num_rows(args: tuple, kwargs: dict[str, Any]) -> int | None:
    """Row count of the first table-like argument, skipping `self`."""
    for value in (*args, *kwargs.values()):
        shape = getattr(value, "shape", None)
        if shape:
            return int(shape[0])
    return None


def log_fit_resources(samples_per_second: float = 10.0) -> Callable:
    """
    Decorator factory logging wall time and peak resident memory of a fitting call, together
    with the number of rows it was given, so memory growth can be related to the data size.

    samples_per_second: how often the background thread samples memory, e.g.
        @log_fit_resources()        # 10 samples per second (default)
        @log_fit_resources(2.0)     # 2 samples per second
    """
    if samples_per_second <= 0:
        raise ValueError("samples_per_second must be > 0")

    sample_interval = 1.0 / samples_per_second

    def decorator(func):
        log = logging.getLogger(func.__module__)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            process = psutil.Process(os.getpid())
            start_rss = process.memory_info().rss
            peak_rss = start_rss
            done = threading.Event()

            def sample_peak():
                nonlocal peak_rss
                while not done.wait(sample_interval):
                    peak_rss = max(peak_rss, process.memory_info().rss)

            started = time.perf_counter()
            sampler = threading.Thread(target=sample_peak, daemon=True)
            sampler.start()
            try:
                return func(*args, **kwargs)
            finally:
                done.set()
                sampler.join()
                peak_rss = max(peak_rss, process.memory_info().rss)
                log.info(
                    "%s: rows=%s, duration=%.2fs, peak_rss=%.1f MB (+%.1f MB over start)",
                    func.__qualname__,
                    _num_rows(args, kwargs),
                    time.perf_counter() - started,
                    peak_rss / 1024**2,
                    (peak_rss - start_rss) / 1024**2,
                )

        return wrapper

    return decorator
