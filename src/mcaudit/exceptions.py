# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
# pyre-strict


class ConfigurationError(ValueError):
    """Raised for invalid inputs or options; never recovered internally."""


class FitError(ValueError):
    """Raised when an auditor cannot be fit on a bucket."""


class ConvergenceWarning(UserWarning):
    """Issued when max_iter is reached before the miscalibration drops below alpha."""
