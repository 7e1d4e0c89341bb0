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
import pytest

from cohort_mediation.config import (
    SCREEN_A,
    SCREEN_B,
    SCREEN_NONE,
    ImputationConfig,
    ReshapeConfig,
)
from cohort_mediation.errors import ConfigurationError
from cohort_mediation.imputation import ImputationResult
from cohort_mediation.reshape import (
    IMP,
    TIME,
    WAVE,
    add_centering,
    long_to_wide,
    reshape_instances,
    split_instances,
    wide_to_long,
)


def wide_instance(shift: float = 0.0) -> pd.DataFrame:
    """Three subjects: all waves, wave 2 only, waves 1 and 3."""
    nan = np.nan
    frame = pd.DataFrame(
        {
            "responded_w1": [1, 0, 1],
            "responded_w2": [1, 1, 0],
            "responded_w3": [1, 0, 1],
            "screen_w1": [SCREEN_NONE, nan, SCREEN_A],
            "screen_w2": [SCREEN_B, SCREEN_A, nan],
            "screen_w3": [SCREEN_NONE, nan, nan],
            "vict_bin_w1": [1.0, nan, 0.0],
            "vict_bin_w2": [0.0, 1.0, nan],
            "vict_bin_w3": [1.0, nan, 1.0],
            "sleep_bin_w1": [0.0, nan, 1.0],
            "sleep_bin_w2": [0.0, 1.0, nan],
            "sleep_bin_w3": [1.0, nan, 1.0],
            "stress_bin_w1": [1.0, nan, 1.0],
            "stress_bin_w2": [1.0, 0.0, nan],
            "stress_bin_w3": [1.0, nan, 0.0],
            "age_w1": [14.0, 13.0, 15.0],
            "age_w2": [15.0, 14.0, 16.0],
            "age_w3": [16.0, 15.0, 17.0],
            "gender": ["male", "female", "female"],
            "race": ["white", "asian", "black"],
            "region": ["north", "south", "north"],
            "urbanicity": ["urban", "rural", "urban"],
        },
        index=pd.Index([1, 2, 3], name="pid"),
    )
    age_cols = ["age_w1", "age_w2", "age_w3"]
    frame[age_cols] = frame[age_cols] + shift
    return frame


def test_one_row_per_responding_wave():
    long = wide_to_long(wide_instance(), imp=1)
    assert long["pid"].tolist() == [1, 1, 1, 2, 3, 3]
    assert long[WAVE].tolist() == [1, 2, 3, 2, 1, 3]
    assert long[TIME].tolist() == [0.0, 0.5, 1.0, 0.5, 0.0, 1.0]
    assert (long[IMP] == 1).all()
    assert long["gender"].tolist() == ["male"] * 3 + ["female"] * 3


def test_outcome_collapses_concern_levels():
    long = wide_to_long(wide_instance(), imp=1)
    expected = [0.0, 1.0, 0.0, 1.0, 1.0, np.nan]
    np.testing.assert_array_equal(long["screen_any"].to_numpy(), expected)


def test_wave_without_time_is_rejected():
    config = ReshapeConfig(wave_times={1: 0.0, 2: 0.5})
    with pytest.raises(ConfigurationError):
        wide_to_long(wide_instance(), imp=1, config=config)


def test_person_mean_centering():
    long = add_centering(wide_to_long(wide_instance(), imp=1))
    for var in ("vict_bin", "sleep_bin", "stress_bin"):
        sums = long.groupby("pid")[f"{var}_pmc"].sum()
        np.testing.assert_allclose(sums.to_numpy(), 0.0, atol=1e-12)
        np.testing.assert_allclose(
            long[f"{var}_pm"] + long[f"{var}_pmc"], long[var].astype(float)
        )
    subject1 = long[long["pid"] == 1]
    np.testing.assert_allclose(subject1["vict_bin_pm"], 2 / 3)
    single = long[long["pid"] == 2]
    assert (single[[c for c in long.columns if c.endswith("_pmc")]] == 0).all().all()


def test_age_is_centred_over_rows():
    long = add_centering(wide_to_long(wide_instance(), imp=1))
    row_mean = long["age"].mean()
    subject_mean = long.groupby("pid")["age"].mean().mean()
    assert row_mean != pytest.approx(subject_mean)
    np.testing.assert_allclose(long["age_gmc"], long["age"] - row_mean)
    assert long["age_gmc"].sum() == pytest.approx(0.0)


def test_long_to_wide_recovers_responding_cells():
    instance = wide_instance()
    long = wide_to_long(instance, imp=1)
    wide = long_to_wide(long, ["vict_bin", "age"])
    for var in ("vict_bin", "age"):
        for wave in (1, 2, 3):
            col = f"{var}_w{wave}"
            responded = instance[f"responded_w{wave}"] == 1
            expected = instance[col].where(responded)
            pd.testing.assert_series_equal(
                wide[col], expected, check_names=False, check_index_type=False
            )


def test_instances_are_stacked_and_centred_separately():
    result = ImputationResult(
        instances=[wide_instance(), wide_instance(0.0), wide_instance(10.0)],
        methods={},
        config=ImputationConfig(n_imputations=2),
    )
    long = reshape_instances(result)
    assert sorted(long[IMP].unique().tolist()) == [1, 2]
    parts = split_instances(long)
    assert set(parts) == {1, 2}
    pd.testing.assert_series_equal(parts[1]["age_gmc"], parts[2]["age_gmc"])
    assert parts[2]["age"].mean() == pytest.approx(parts[1]["age"].mean() + 10.0)

    with_original = reshape_instances(result, include_original=True)
    assert sorted(with_original[IMP].unique().tolist()) == [0, 1, 2]


def test_multi_instance_wide_is_keyed_by_imputation():
    result = ImputationResult(
        instances=[wide_instance(), wide_instance(), wide_instance(1.0)],
        methods={},
        config=ImputationConfig(n_imputations=2),
    )
    wide = long_to_wide(reshape_instances(result), ["age"])
    assert wide.index.names == [IMP, "pid"]
    assert wide.loc[(2, 1), "age_w1"] == 15.0
    assert np.isnan(wide.loc[(1, 2), "age_w1"])
