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
Variable derivation
-------------------
Rule-based derivation of per-wave indicators from raw survey items.

Every rule is written once, parameterised by wave, and applied to each wave
independently:

    screen_w{n}      "none" / "primary-concern-A" / "primary-concern-B" / NaN
    {scale}_sum_w{n} item sum (NaN if any item is missing)
    {scale}_pct_w{n} sum / max possible * 100
    {scale}_bin_w{n} 1 if sum > 0 else 0
    responded_w{n}   1 if any screen or subscale item was answered

Unmapped or sentinel codes become NaN; derivation never raises for a single
subject's values.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
import pandas as pd

from .config import (
    SCREEN_A,
    SCREEN_B,
    SCREEN_NONE,
    ScreenRule,
    StudyConfig,
    Subscale,
    wave_column,
)
from .errors import DerivationIndeterminate

logger = logging.getLogger(__name__)


@dataclass
class Derivation:
    """Derived subject-level table plus per-wave bookkeeping."""

    data: pd.DataFrame
    indeterminate: Dict[int, int] = field(default_factory=dict)
    excluded: List = field(default_factory=list)


# ---------------------------------------------------------------------
# (1) Item cleaning
# ---------------------------------------------------------------------


def clean_items(
    frame: pd.DataFrame,
    columns: list[str],
    valid_max: float | None = None,
    sentinels: tuple[int, ...] = (),
) -> pd.DataFrame:
    """
    Numeric copy of ``columns`` with sentinel and out-of-range codes as NaN.

    Missing columns are treated as entirely unanswered.
    """
    out = pd.DataFrame(index=frame.index)
    for col in columns:
        if col in frame.columns:
            values = pd.to_numeric(frame[col], errors="coerce").astype("float64")
        else:
            values = pd.Series(np.nan, index=frame.index, dtype="float64")
        bad = values.isin(sentinels) | (values < 0)
        if valid_max is not None:
            bad |= values > valid_max
        out[col] = values.mask(bad)
    return out


# ---------------------------------------------------------------------
# (2) Clinical screen
# ---------------------------------------------------------------------


def derive_screen(
    frame: pd.DataFrame,
    wave: int,
    rule: ScreenRule,
    sentinels: tuple[int, ...] = (),
) -> pd.Series:
    """
    Three-level screen result for one wave.

    Rules are evaluated in priority order and the first match wins:

    1. root item negative -> "none"
    2. root positive, every impairment item negative -> "none"
    3. frequency below cutoff -> "none"
    4. root positive, any impairment positive, frequency at cutoff,
       duration in range, qualifier present -> "primary-concern-B"
    5. as 4 with qualifier absent -> "primary-concern-A"

    A condition involving a missing item is never satisfied, so a subject
    matching no rule gets NaN rather than "none".

    Parameters
    ----------
    frame : pd.DataFrame
        Raw subject-level data.
    wave : int
        Wave identifier.
    rule : ScreenRule
        Item names and cutoffs.

    Returns
    -------
    pd.Series
        Object series named ``screen_w{wave}``.
    """
    def col(item: str) -> str:
        return wave_column(item, wave)

    binary = clean_items(
        frame,
        [col(rule.root), *(col(i) for i in rule.impairment), col(rule.qualifier)],
        valid_max=1,
        sentinels=sentinels,
    )
    ordinal = clean_items(
        frame, [col(rule.frequency), col(rule.specificity)], sentinels=sentinels
    )

    root = binary[col(rule.root)]
    impairment = binary[[col(i) for i in rule.impairment]]
    qualifier = binary[col(rule.qualifier)]
    frequency = ordinal[col(rule.frequency)]
    duration = ordinal[col(rule.specificity)]

    root_pos = root == 1
    impair_any = (impairment == 1).any(axis=1)
    positive = (
        root_pos
        & impair_any
        & (frequency >= rule.freq_cutoff)
        & duration.isin(rule.duration_range)
    )

    conditions = [
        (root == 0).to_numpy(),
        (root_pos & (impairment == 0).all(axis=1)).to_numpy(),
        (frequency < rule.freq_cutoff).to_numpy(),
        (positive & (qualifier == 1)).to_numpy(),
        (positive & (qualifier == 0)).to_numpy(),
    ]
    choices = [SCREEN_NONE, SCREEN_NONE, SCREEN_NONE, SCREEN_B, SCREEN_A]
    result = np.select(conditions, choices, default="")
    series = pd.Series(result, index=frame.index, dtype=object)
    return series.where(series != "", np.nan).rename(wave_column(rule.name, wave))


# ---------------------------------------------------------------------
# (3) Subscales
# ---------------------------------------------------------------------


def derive_subscale(
    frame: pd.DataFrame,
    wave: int,
    scale: Subscale,
    sentinels: tuple[int, ...] = (),
) -> pd.DataFrame:
    """
    Sum, percentage and binary scores of one subscale at one wave.

    No pairwise-complete summation: any missing item makes all three scores
    missing.
    """
    items = clean_items(
        frame,
        [wave_column(item, wave) for item in scale.items],
        valid_max=scale.item_max,
        sentinels=sentinels,
    )
    total = items.sum(axis=1, skipna=False)
    pct = total / scale.max_score * scale.scale
    binary = (total > 0).astype("float64").mask(total.isna())
    return pd.DataFrame(
        {
            wave_column(f"{scale.name}_sum", wave): total,
            wave_column(f"{scale.name}_pct", wave): pct,
            wave_column(f"{scale.name}_bin", wave): binary,
        },
        index=frame.index,
    )


def derive_wave(frame: pd.DataFrame, wave: int, study: StudyConfig) -> pd.DataFrame:
    """All per-wave indicators of one wave."""
    parts = [
        derive_screen(frame, wave, study.screen, study.missing_sentinels).to_frame()
    ]
    answered = clean_items(
        frame,
        [wave_column(item, wave) for item in study.screen.items],
        sentinels=study.missing_sentinels,
    ).notna().any(axis=1)
    for scale in study.subscales:
        parts.append(derive_subscale(frame, wave, scale, study.missing_sentinels))
        answered |= clean_items(
            frame,
            [wave_column(item, wave) for item in scale.items],
            valid_max=scale.item_max,
            sentinels=study.missing_sentinels,
        ).notna().any(axis=1)
    parts.append(answered.astype("int64").rename(wave_column("responded", wave)).to_frame())
    return pd.concat(parts, axis=1)


# ---------------------------------------------------------------------
# (4) Demographics
# ---------------------------------------------------------------------


def recode(values: pd.Series, codes: dict, sentinels: tuple[int, ...] = ()) -> pd.Series:
    """Map codes through a lookup table; sentinels and unmapped codes become NaN."""
    numeric = pd.to_numeric(values, errors="coerce")
    numeric = numeric.mask(numeric.isin(sentinels))
    return numeric.map(codes).astype(object)


def recode_demographics(frame: pd.DataFrame, study: StudyConfig) -> pd.DataFrame:
    """Gender and race categories; an absent source column gives all-missing."""
    missing = pd.Series(np.nan, index=frame.index)
    return pd.DataFrame(
        {
            "gender": recode(
                frame.get(study.gender_source, missing),
                dict(study.gender_codes),
                study.missing_sentinels,
            ),
            "race": recode(
                frame.get(study.race_source, missing),
                dict(study.race_codes),
                study.missing_sentinels,
            ),
        },
        index=frame.index,
    )


def fill_age_gaps(frame: pd.DataFrame, study: StudyConfig) -> pd.DataFrame:
    """
    Fill missing per-wave ages from the nearest observed wave.

    A gap of ``k`` waves shifts the age by ``k * study.age_step`` years.
    The previous wave is preferred over the next at equal distance. Only
    originally observed ages are used as sources.
    """
    columns = [wave_column(study.age, w) for w in study.waves]
    observed = clean_items(frame, columns, sentinels=study.missing_sentinels)
    filled = observed.copy()
    waves = list(study.waves)
    for pos, wave in enumerate(waves):
        target = wave_column(study.age, wave)
        for distance in range(1, len(waves)):
            todo = filled[target].isna()
            if not todo.any():
                break
            for other_pos in (pos - distance, pos + distance):
                if not 0 <= other_pos < len(waves):
                    continue
                other = waves[other_pos]
                source = observed[wave_column(study.age, other)]
                shift = (wave - other) * study.age_step
                fill = todo & source.notna() & filled[target].isna()
                filled.loc[fill, target] = source[fill] + shift
    return filled


# ---------------------------------------------------------------------
# (5) Whole table
# ---------------------------------------------------------------------


def derive_all(raw: pd.DataFrame, study: StudyConfig | None = None) -> Derivation:
    """
    Derive the subject-level analysis table.

    Parameters
    ----------
    raw : pd.DataFrame
        One row per subject with raw per-wave items and demographics.
    study : StudyConfig, optional
        Column contract and rules; defaults to the cohort configuration.

    Returns
    -------
    Derivation
        Table indexed by subject id (subjects without any responding wave
        removed) and the number of indeterminate screens per wave.
    """
    study = study or StudyConfig()
    if study.id_column not in raw.columns:
        raise ValueError(f"Input is missing the id column {study.id_column!r}.")
    if raw[study.id_column].duplicated().any():
        raise ValueError(f"{study.id_column} must be unique per row.")

    frame = raw.set_index(study.id_column, drop=True)
    parts = [derive_wave(frame, wave, study) for wave in study.waves]
    parts.append(fill_age_gaps(frame, study))

    parts.append(recode_demographics(frame, study))
    parts.append(frame[list(study.static_covariates)].copy())
    data = pd.concat(parts, axis=1)

    responded = data[[wave_column("responded", w) for w in study.waves]]
    keep = responded.sum(axis=1) > 0
    excluded = list(data.index[~keep])
    if excluded:
        logger.info("Excluding %d subjects with no responding wave", len(excluded))
    data = data.loc[keep]

    indeterminate = {}
    for wave in study.waves:
        screen = data[wave_column(study.screen.name, wave)]
        answered = data[wave_column("responded", wave)] == 1
        indeterminate[wave] = int((screen.isna() & answered).sum())
        if indeterminate[wave]:
            logger.info(
                "Wave %d: %d responding subjects with indeterminate screen",
                wave,
                indeterminate[wave],
            )
    total = sum(indeterminate.values())
    if total:
        warnings.warn(
            f"{total} screen results matched no rule and were left missing",
            DerivationIndeterminate,
            stacklevel=2,
        )

    return Derivation(data=data, indeterminate=indeterminate, excluded=excluded)
