# -----------------------------------------------------------------------------
# Copyright 2025 Down Syndrome Education International and contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# -----------------------------------------------------------------------------
import numpy as np
import pandas as pd

INTERVAL_PROBS = (2.5, 97.5)


def to_float64_array(x: list | pd.Series | np.ndarray | None) -> np.ndarray:
    """
    Convert input to a NumPy array of float64, with None as np.nan.

    Parameters
    ----------
    x : list | pd.Series | np.ndarray | None
        Input data to be converted.

    Returns
    -------
    np.ndarray
        Converted array of type float64, with None values as np.nan.
    """
    return (
        pd.Series(x, dtype="float64")
        .convert_dtypes()
        .to_numpy(dtype="float64", na_value=np.nan, copy=True)
    )


def to_int64_array(x: list | pd.Series | np.ndarray | None) -> np.ndarray:
    """
    Convert input to a NumPy array of int64.

    Parameters
    ----------
    x : list | pd.Series | np.ndarray | None
        Input data to be converted; must not contain missing values.

    Returns
    -------
    np.ndarray
        Converted array of type int64.
    """
    return pd.Series(x, dtype="int64").to_numpy(copy=True)


def posterior_interval(draws: np.ndarray) -> tuple[float, float, float]:
    """
    Mean and central 95% interval of a one-dimensional sample.

    Parameters
    ----------
    draws : np.ndarray
        Posterior draws (any shape; flattened).

    Returns
    -------
    tuple of float
        ``(mean, lower, upper)`` with ``lower``/``upper`` the 2.5th/97.5th
        percentiles.
    """
    x = np.asarray(draws, dtype=np.float64).ravel()
    if x.size == 0:
        return (np.nan, np.nan, np.nan)
    lower, upper = np.percentile(x, INTERVAL_PROBS)
    return (float(x.mean()), float(lower), float(upper))


def exp_interval(draws: np.ndarray) -> tuple[float, float, float]:
    """
    Exponentiated mean and interval of log-scale draws.

    The mean is taken on the log scale before exponentiating, so the
    result is a geometric summary (a rate ratio).
    """
    mean, lower, upper = posterior_interval(draws)
    return (float(np.exp(mean)), float(np.exp(lower)), float(np.exp(upper)))
