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
Configuration
-------------
Centralised, immutable settings for every pipeline stage.

Each stage receives the configuration object it needs explicitly; nothing is
read from the working directory or from module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Tuple

# ---------------------------------------------------------------------
# (0) Study constants
# ---------------------------------------------------------------------

WAVES: Tuple[int, ...] = (1, 2, 3)

# Canonical time (years / 2) per wave; follows the fieldwork calendar.
WAVE_TIMES: Dict[int, float] = {1: 0.0, 2: 0.5, 3: 1.0}

SCREEN_NONE = "none"
SCREEN_A = "primary-concern-A"
SCREEN_B = "primary-concern-B"
SCREEN_LEVELS: Tuple[str, ...] = (SCREEN_NONE, SCREEN_A, SCREEN_B)

# Codes used by the survey vendor for refused / don't know / not asked.
MISSING_SENTINELS: Tuple[int, ...] = (-9, -8, 77, 99, 999)


def wave_column(name: str, wave: int) -> str:
    """Column name of a per-wave variable, e.g. ``wave_column("age", 2) == "age_w2"``."""
    return f"{name}_w{wave}"


# ---------------------------------------------------------------------
# (1) Derivation
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ScreenRule:
    """
    Items and cutoffs of the three-level clinical screen.

    The screen is positive when the root item is endorsed, at least one
    impairment item is endorsed, the frequency item reaches ``freq_cutoff``
    and the duration (specificity) item lies in ``duration_range``. The
    qualifier item then separates concern A (qualifier absent) from concern
    B (qualifier present).
    """

    root: str = "mig_root"
    impairment: Tuple[str, ...] = ("mig_impair_1", "mig_impair_2", "mig_impair_3")
    frequency: str = "mig_freq"
    qualifier: str = "mig_aura"
    specificity: str = "mig_duration"
    freq_cutoff: float = 1.0
    duration_range: Tuple[int, ...] = (1, 2)
    name: str = "screen"

    @property
    def items(self) -> Tuple[str, ...]:
        return (
            self.root,
            *self.impairment,
            self.frequency,
            self.qualifier,
            self.specificity,
        )


@dataclass(frozen=True)
class Subscale:
    """A fixed list of per-wave items scored as sum, percentage and binary."""

    name: str
    items: Tuple[str, ...]
    item_max: float
    scale: float = 100.0

    @property
    def max_score(self) -> float:
        return len(self.items) * self.item_max


DEFAULT_SUBSCALES: Tuple[Subscale, ...] = (
    Subscale("vict", tuple(f"vict_{i}" for i in range(1, 6)), item_max=2),
    Subscale("sleep", tuple(f"sleep_{i}" for i in range(1, 5)), item_max=3),
    Subscale("stress", tuple(f"stress_{i}" for i in range(1, 5)), item_max=4),
)

GENDER_CODES: Dict[int, str] = {1: "male", 2: "female", 3: "gender-diverse"}

RACE_CODES: Dict[int, str] = {
    1: "white",
    2: "black",
    3: "hispanic",
    4: "asian",
    5: "other",
}


@dataclass(frozen=True)
class StudyConfig:
    """
    Column contract and derivation rules of the cohort.

    Attributes
    ----------
    waves : tuple of int
        Wave identifiers; per-wave columns carry the suffix ``_w{wave}``.
    screen : ScreenRule
        Items of the clinical screen.
    subscales : tuple of Subscale
        Psychometric subscales derived per wave.
    gender_codes, race_codes : dict
        Lookup tables for demographic recodes; unmapped codes become missing.
    age_step : float
        Years added per wave gap when an age is carried between waves.
    """

    id_column: str = "pid"
    waves: Tuple[int, ...] = WAVES
    screen: ScreenRule = field(default_factory=ScreenRule)
    subscales: Tuple[Subscale, ...] = DEFAULT_SUBSCALES
    gender_source: str = "gender_raw"
    race_source: str = "race_raw"
    gender_codes: Mapping[int, str] = field(default_factory=lambda: dict(GENDER_CODES))
    race_codes: Mapping[int, str] = field(default_factory=lambda: dict(RACE_CODES))
    missing_sentinels: Tuple[int, ...] = MISSING_SENTINELS
    age: str = "age"
    age_step: float = 1.0
    static_covariates: Tuple[str, ...] = ("region", "urbanicity")

    def subscale(self, name: str) -> Subscale:
        for scale in self.subscales:
            if scale.name == name:
                return scale
        raise KeyError(f"Unknown subscale {name!r}")


# ---------------------------------------------------------------------
# (2) Imputation
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ImputationConfig:
    """
    Settings of the chained-equations engine.

    ``n_imputations`` completed copies are produced, each running
    ``iterations`` rounds over the incomplete variables. ``rhat_threshold``
    is the Gelman-Rubin bound above which a variable is reported as
    nonconvergent (reported only, never enforced).
    """

    n_imputations: int = 20
    iterations: int = 20
    seed: int = 2024
    regularisation: float = 100.0
    max_iter: int = 1000
    rhat_threshold: float = 1.1


# ---------------------------------------------------------------------
# (3) Reshaping
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ReshapeConfig:
    """
    Person-period layout.

    ``time_varying`` are the per-wave variables carried into long form;
    ``centred`` the subset that receives person-mean (``_pm``) and
    person-mean-centred (``_pmc``) versions.
    """

    id_column: str = "pid"
    waves: Tuple[int, ...] = WAVES
    wave_times: Mapping[int, float] = field(default_factory=lambda: dict(WAVE_TIMES))
    time_varying: Tuple[str, ...] = (
        "screen",
        "vict_bin",
        "sleep_bin",
        "stress_bin",
        "age",
    )
    centred: Tuple[str, ...] = ("vict_bin", "sleep_bin", "stress_bin")
    time_invariant: Tuple[str, ...] = ("gender", "race", "region", "urbanicity")
    response_indicator: str = "responded"
    age: str = "age"
    outcome_source: str = "screen"
    outcome: str = "screen_any"
    outcome_levels: Tuple[str, ...] = (SCREEN_A, SCREEN_B)


# ---------------------------------------------------------------------
# (4) Models and sampling
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class PriorConfig:
    """Prior scales on the log-rate scale."""

    sd_intercept: float = 2.5
    sd_beta: float = 1.0
    sd_random: float = 1.0
    lkj_eta: float = 2.0


@dataclass(frozen=True)
class SamplerConfig:
    """
    NUTS settings for every imputation-specific fit.

    ``tune`` warm-up draws are discarded per chain; ``draws`` are retained.
    A fit is flagged unreliable when any R-hat exceeds ``rhat_threshold``
    or any divergent transition occurs.
    """

    draws: int = 1000
    tune: int = 1000
    chains: int = 4
    cores: int = 4
    target_accept: float = 0.9
    seed: int = 2024
    workers: int = 1
    rhat_threshold: float = 1.01
    max_divergences: int = 0


# ---------------------------------------------------------------------
# (5) Paths
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineConfig:
    """Input location, output directory and per-stage settings."""

    output_dir: Path
    input_path: Path | None = None
    study: StudyConfig = field(default_factory=StudyConfig)
    imputation: ImputationConfig = field(default_factory=ImputationConfig)
    reshape: ReshapeConfig = field(default_factory=ReshapeConfig)
    priors: PriorConfig = field(default_factory=PriorConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)

    @property
    def imputation_path(self) -> Path:
        return Path(self.output_dir) / "imputation.pkl"

    @property
    def fits_dir(self) -> Path:
        return Path(self.output_dir) / "fits"

    @property
    def tables_dir(self) -> Path:
        return Path(self.output_dir) / "tables"
