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
from dataclasses import replace

import numpy as np
import pytest

from cohort_mediation.errors import ConfigurationError
from cohort_mediation.models import (
    Mediator,
    ModelSpecification,
    build_model,
    build_model_family,
    check_nesting,
    default_model_family,
    prepare_data,
)


def simple_spec(**kwargs) -> ModelSpecification:
    defaults = dict(
        name="m",
        outcome="screen_any",
        exposure="vict_bin_pmc",
        fixed_effects=("vict_bin_pmc", "time", "region"),
        categorical={"region": ()},
    )
    defaults.update(kwargs)
    return ModelSpecification(**defaults)


def test_default_family_is_cumulative():
    family = default_model_family()
    assert [s.name for s in family] == ["model_1", "model_2", "model_3"]
    assert family[0].mediators == ()
    assert family[2].mediators == ("sleep", "stress")
    for parent, child in zip(family, family[1:]):
        assert set(parent.fixed_effects) < set(child.fixed_effects)
        assert child.exposure == parent.exposure == "vict_bin_pmc"
        assert child.random_slopes == ("time",)


def test_single_mediator_family():
    base = simple_spec()
    family = build_model_family(
        base,
        [Mediator("sleep", ("sleep_bin_pmc",)), Mediator("stress", ("stress_bin_pmc",))],
        cumulative=False,
    )
    assert "sleep_bin_pmc" not in family[2].fixed_effects
    assert family[2].fixed_effects == base.fixed_effects + ("stress_bin_pmc",)
    with pytest.raises(ConfigurationError):
        check_nesting(family, cumulative=True)


def test_nesting_violations_are_rejected():
    base = simple_spec(name="model_1")
    dropped = simple_spec(name="model_2", fixed_effects=("vict_bin_pmc", "age_gmc"))
    with pytest.raises(ConfigurationError):
        check_nesting([base, dropped])
    other_outcome = replace(
        base.with_terms("model_2", Mediator("sleep", ("sleep_bin_pmc",))),
        outcome="other",
    )
    with pytest.raises(ConfigurationError):
        check_nesting([base, other_outcome])
    with pytest.raises(ConfigurationError):
        check_nesting([])


def test_specification_validation():
    with pytest.raises(ConfigurationError):
        simple_spec(exposure="sleep_bin_pmc")
    with pytest.raises(ConfigurationError):
        simple_spec(family="binomial")
    with pytest.raises(ConfigurationError):
        simple_spec().with_terms("m2", Mediator("again", ("time",)))


def test_design_is_treatment_coded(long_factory):
    prep = prepare_data(long_factory(), simple_spec())
    assert prep.predictors == ["vict_bin_pmc", "time", "region[south]", "region[west]"]
    assert prep.X.shape == (36, 4)
    assert prep.n_subjects == 12
    assert prep.effects == ["intercept"]
    np.testing.assert_array_equal(prep.Z, np.ones((36, 1)))
    assert prep.y.dtype == np.int64


def test_declared_levels_fix_the_reference(long_factory):
    data = long_factory()
    spec = simple_spec(
        fixed_effects=("vict_bin_pmc", "race"),
        categorical={"race": ("white", "black", "hispanic", "asian", "other")},
    )
    prep = prepare_data(data, spec)
    assert prep.predictors[1:] == [
        "race[black]",
        "race[hispanic]",
        "race[asian]",
        "race[other]",
    ]
    assert (prep.X[:, 2] == 0).all()


@pytest.mark.parametrize(
    "column, value",
    [("time", np.nan), ("screen_any", -1.0), ("screen_any", 0.5), ("region", "east")],
)
def test_invalid_data_is_rejected(long_factory, column, value):
    data = long_factory()
    data.loc[0, column] = value
    spec = simple_spec(categorical={"region": ("north", "south", "west")})
    with pytest.raises(ValueError):
        prepare_data(data, spec)


def test_missing_column_is_rejected(long_factory):
    with pytest.raises(ValueError):
        prepare_data(long_factory().drop(columns="time"), simple_spec())


def test_random_intercept_model(long_factory):
    model = build_model(simple_spec(), long_factory())
    names = set(model.named_vars)
    assert {"intercept", "beta", "z_subject", "sigma_re", "y"} <= names
    assert "re_chol" not in names
    assert len(model.coords["predictor"]) == 4
    assert len(model.coords["subject"]) == 12


def test_random_slope_model_has_correlated_effects(long_factory):
    family = default_model_family()
    model = build_model(family[2], long_factory())
    names = set(model.named_vars)
    assert {"re_chol", "sigma_re", "corr_re"} <= names
    assert list(model.coords["effect"]) == ["intercept", "time"]
    assert "sleep_bin_pmc" in model.coords["predictor"]
