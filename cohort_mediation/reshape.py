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

"""
Person-period reshaping
-----------------------
Wide subject tables (``var_w1``, ``var_w2``, ...) become one row per
(imputation, subject, responding wave). Per (imputation, subject):

    var_pm  = mean of var over the subject's rows
    var_pmc = var - var_pm

and per imputation:

    age_gmc = age - mean(age over all person-period rows)

The age mean is taken over rows, not subjects, so subjects with more waves
weigh more.
"""

from __future__ import annotations

import logging
from typing import Iterable

import pandas as pd

from .config import ReshapeConfig, wave_column
from .errors import ConfigurationError
from .imputation import ImputationResult

logger = logging.getLogger(__name__)

IMP = "imp"
WAVE = "wave"
TIME = "time"


def wide_to_long(
    instance: pd.DataFrame, imp: int, config: ReshapeConfig | None = None
) -> pd.DataFrame:
    """
    Person-period rows of one subject-level instance.

    Parameters
    ----------
    instance : pd.DataFrame
        Subject table indexed by subject id.
    imp : int
        Imputation number written to the ``imp`` column.
    config : ReshapeConfig, optional
        Layout settings.

    Returns
    -------
    pd.DataFrame
        Rows sorted by subject then wave; waves where the subject did not
        respond are omitted.
    """
    config = config or ReshapeConfig()
    missing_times = [w for w in config.waves if w not in config.wave_times]
    if missing_times:
        raise ConfigurationError(f"No time value configured for waves {missing_times}")

    parts = []
    for wave in config.waves:
        responded = instance[wave_column(config.response_indicator, wave)] == 1
        rows = instance.loc[responded]
        part = pd.DataFrame(
            {
                config.id_column: rows.index.to_numpy(),
                IMP: imp,
                WAVE: wave,
                TIME: float(config.wave_times[wave]),
            }
        )
        for var in config.time_varying:
            part[var] = rows[wave_column(var, wave)].to_numpy()
        for var in config.time_invariant:
            part[var] = rows[var].to_numpy()
        parts.append(part)

    long = pd.concat(parts, ignore_index=True)
    long = long.sort_values([config.id_column, WAVE], kind="mergesort").reset_index(
        drop=True
    )
    source = long[config.outcome_source]
    long[config.outcome] = (
        source.isin(config.outcome_levels).astype("float64").where(source.notna())
    )
    return long


def add_centering(long: pd.DataFrame, config: ReshapeConfig | None = None) -> pd.DataFrame:
    """
    Add ``_pm``/``_pmc`` columns and grand-mean-centred age.

    Person means skip missing values, so in an incomplete instance they are
    the mean of the observed values. A subject with one row has ``_pmc``
    equal to zero.
    """
    config = config or ReshapeConfig()
    out = long.copy()
    keys = [out[IMP], out[config.id_column]]
    for var in config.centred:
        values = out[var].astype("float64")
        person_mean = values.groupby(keys, sort=False).transform("mean")
        out[f"{var}_pm"] = person_mean
        out[f"{var}_pmc"] = values - person_mean
    age = out[config.age].astype("float64")
    out[f"{config.age}_gmc"] = age - age.groupby(out[IMP]).transform("mean")
    return out


def reshape_instances(
    result: ImputationResult,
    config: ReshapeConfig | None = None,
    include_original: bool = False,
) -> pd.DataFrame:
    """
    Stacked person-period table of all completed instances.

    Parameters
    ----------
    result : ImputationResult
        Output of the imputation engine.
    config : ReshapeConfig, optional
        Layout settings.
    include_original : bool
        Also reshape instance 0 (the incomplete data), e.g. for descriptives.
    """
    config = config or ReshapeConfig()
    start = 0 if include_original else 1
    frames = [
        add_centering(wide_to_long(result.instances[m], m, config), config)
        for m in range(start, len(result.instances))
    ]
    long = pd.concat(frames, ignore_index=True)
    logger.info(
        "Reshaped %d instances to %d person-period rows",
        len(frames),
        len(long),
    )
    return long


def split_instances(long: pd.DataFrame) -> dict[int, pd.DataFrame]:
    """Person-period rows keyed by imputation number."""
    return {int(m): part.reset_index(drop=True) for m, part in long.groupby(IMP)}


def long_to_wide(
    long: pd.DataFrame,
    variables: Iterable[str],
    config: ReshapeConfig | None = None,
) -> pd.DataFrame:
    """
    Re-aggregate person-period rows to one row per subject (and imputation).

    The inverse of :func:`wide_to_long` for the listed time-varying
    variables; waves without a row come back as NaN.
    """
    config = config or ReshapeConfig()
    index = [IMP, config.id_column] if long[IMP].nunique() > 1 else config.id_column
    columns = {}
    for var in variables:
        table = long.pivot(index=index, columns=WAVE, values=var)
        for wave in table.columns:
            columns[wave_column(var, int(wave))] = table[wave]
    wide = pd.DataFrame(columns)
    wide.columns.name = None
    return wide
