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
import arviz as az
import numpy as np
import pandas as pd
import pytest

from cohort_mediation.config import StudyConfig, wave_column
from cohort_mediation.fitting import FitDiagnostics, FitResult


def make_raw_cohort(
    n: int = 60, seed: int = 7, missing: float = 0.1, study: StudyConfig | None = None
) -> pd.DataFrame:
    """Synthetic raw cohort in the survey's column layout."""
    study = study or StudyConfig()
    rng = np.random.default_rng(seed)
    data = {"pid": np.arange(1, n + 1)}
    rule = study.screen
    for wave in study.waves:
        data[wave_column(rule.root, wave)] = rng.integers(0, 2, n)
        for item in rule.impairment:
            data[wave_column(item, wave)] = rng.integers(0, 2, n)
        data[wave_column(rule.frequency, wave)] = rng.integers(0, 4, n)
        data[wave_column(rule.qualifier, wave)] = rng.integers(0, 2, n)
        data[wave_column(rule.specificity, wave)] = rng.integers(1, 3, n)
        for scale in study.subscales:
            for item in scale.items:
                data[wave_column(item, wave)] = rng.integers(0, int(scale.item_max) + 1, n)
        data[wave_column(study.age, wave)] = 14 + (wave - 1) + rng.integers(0, 3, n)
    data["gender_raw"] = rng.choice([1, 2, 3], n, p=[0.45, 0.45, 0.1])
    data["race_raw"] = rng.choice([1, 2, 3, 4, 5], n)
    data["region"] = rng.choice(["north", "south", "west"], n)
    data["urbanicity"] = rng.choice(["urban", "rural"], n)
    raw = pd.DataFrame(data).astype({"region": object, "urbanicity": object})

    item_cols = [
        c for c in raw.columns if c not in ("pid", "region", "urbanicity", "gender_raw", "race_raw")
    ]
    raw[item_cols] = raw[item_cols].astype("float64")
    if missing > 0:
        mask = rng.random((n, len(item_cols))) < missing
        raw[item_cols] = raw[item_cols].mask(mask)
    return raw


@pytest.fixture
def study() -> StudyConfig:
    return StudyConfig()


@pytest.fixture
def raw_cohort() -> pd.DataFrame:
    return make_raw_cohort()


def make_fit(
    model_name: str,
    imputation: int,
    exposure_draws: np.ndarray,
    predictors=("vict_bin_pmc", "time"),
    effects=("intercept", "time"),
    chains: int = 2,
    seed: int = 0,
    reliable: bool = True,
) -> FitResult:
    """FitResult around a synthetic posterior (no sampling)."""
    rng = np.random.default_rng(seed)
    exposure_draws = np.asarray(exposure_draws, dtype=np.float64).reshape(chains, -1)
    n_draws = exposure_draws.shape[1]
    beta = rng.normal(0.0, 0.1, size=(chains, n_draws, len(predictors)))
    beta[:, :, 0] = exposure_draws
    idata = az.from_dict(
        posterior={
            "intercept": rng.normal(-1.0, 0.1, size=(chains, n_draws)),
            "beta": beta,
            "sigma_re": np.abs(rng.normal(0.5, 0.05, size=(chains, n_draws, len(effects)))),
        },
        sample_stats={"diverging": np.zeros((chains, n_draws), dtype=bool)},
        coords={"predictor": list(predictors), "effect": list(effects)},
        dims={"beta": ["predictor"], "sigma_re": ["effect"]},
    )
    diagnostics = FitDiagnostics(
        max_rhat=1.0,
        min_ess_bulk=float(chains * n_draws),
        divergences=0,
        chains=chains,
        draws=n_draws,
        reliable=reliable,
    )
    return FitResult(model_name, imputation, idata, diagnostics)


@pytest.fixture(scope="session")
def cohort_factory():
    return make_raw_cohort


@pytest.fixture(scope="session")
def fit_factory():
    return make_fit


def make_person_period(n_subjects: int = 12, seed: int = 3, imp: int = 1) -> pd.DataFrame:
    """Complete person-period rows of one imputation, three waves each."""
    rng = np.random.default_rng(seed)
    pid = np.repeat(np.arange(1, n_subjects + 1), 3)
    n = pid.size

    def per_subject(values):
        return np.repeat(values, 3)

    return pd.DataFrame(
        {
            "pid": pid,
            "imp": imp,
            "wave": np.tile([1, 2, 3], n_subjects),
            "time": np.tile([0.0, 0.5, 1.0], n_subjects),
            "screen_any": rng.integers(0, 2, n).astype(float),
            "vict_bin_pmc": rng.normal(0, 0.4, n),
            "vict_bin_pm": per_subject(rng.random(n_subjects)),
            "sleep_bin_pmc": rng.normal(0, 0.4, n),
            "sleep_bin_pm": per_subject(rng.random(n_subjects)),
            "stress_bin_pmc": rng.normal(0, 0.4, n),
            "stress_bin_pm": per_subject(rng.random(n_subjects)),
            "age_gmc": rng.normal(0, 1, n),
            "gender": per_subject(rng.choice(["male", "female"], n_subjects)),
            "race": per_subject(rng.choice(["white", "black", "asian"], n_subjects)),
            "region": per_subject(rng.choice(["north", "south", "west"], n_subjects)),
            "urbanicity": per_subject(rng.choice(["urban", "rural"], n_subjects)),
        }
    )


@pytest.fixture(scope="session")
def long_factory():
    return make_person_period
