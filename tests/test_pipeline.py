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
import logging

import numpy as np
import pytest

from cohort_mediation import fitting
from cohort_mediation.__main__ import build_parser, config_from_args, main
from cohort_mediation.config import ImputationConfig, PipelineConfig, SamplerConfig
from cohort_mediation.imputation import ImputationResult
from cohort_mediation.models import prepare_data
from cohort_mediation.pipeline import run_imputation, run_pipeline

EXPOSURE = {"model_1": 0.4, "model_2": 0.3, "model_3": 0.3}


@pytest.fixture
def fake_sampler(monkeypatch, fit_factory):
    calls = []

    def fake_fit(spec, long, imputation, sampler=None, priors=None, seed=None):
        prepare_data(long, spec)
        calls.append((spec.name, imputation))
        draws = np.full(10, EXPOSURE[spec.name])
        return fit_factory(spec.name, imputation, draws, seed=imputation)

    monkeypatch.setattr(fitting, "fit_instance", fake_fit)
    return calls


@pytest.fixture(autouse=True)
def release_warning_capture():
    yield
    logging.captureWarnings(False)


def small_config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        output_dir=tmp_path / "out",
        imputation=ImputationConfig(n_imputations=2, iterations=3, seed=1),
        sampler=SamplerConfig(draws=5, chains=2),
    )


def test_imputation_artifact_is_reused(tmp_path, cohort_factory):
    config = small_config(tmp_path)
    first = run_imputation(config, cohort_factory(n=30))
    assert config.imputation_path.exists()
    again = run_imputation(config, raw=None)
    assert again.n_imputations == first.n_imputations == 2
    with pytest.raises(ValueError):
        run_imputation(config, force=True)


def test_full_pipeline_with_cached_fits(tmp_path, cohort_factory, fake_sampler):
    config = small_config(tmp_path)
    result = run_pipeline(config, raw=cohort_factory(n=30))

    assert len(fake_sampler) == 3 * 2
    assert set(result.long["imp"].unique()) == {1, 2}
    assert {"vict_bin_pmc", "vict_bin_pm", "age_gmc", "screen_any"} <= set(result.long)

    tables = result.tables
    assert set(tables) == {
        "fixed_effects",
        "variance_components",
        "mediation",
        "diagnostics",
        "imputation",
    }
    for name in tables:
        assert (config.tables_dir / f"{name}.csv").exists()

    mediation = tables["mediation"].set_index("model")
    assert mediation.loc["model_2", "percent_mediated"] == pytest.approx(25.0)
    assert mediation.loc["model_3", "mediators"] == "sleep + stress"
    assert len(tables["diagnostics"]) == 6

    cached = run_pipeline(config, allow_fit=False, export=False)
    assert len(fake_sampler) == 6
    assert cached.tables["diagnostics"]["from_cache"].all()
    np.testing.assert_allclose(
        cached.tables["mediation"]["indirect_rr"], tables["mediation"]["indirect_rr"]
    )


def test_subject_without_ages_or_region_is_modelled(tmp_path, cohort_factory, fake_sampler):
    raw = cohort_factory(n=30)
    raw.loc[0, ["age_w1", "age_w2", "age_w3"]] = np.nan
    raw.loc[1, ["region", "urbanicity"]] = np.nan
    result = run_pipeline(small_config(tmp_path), raw=raw, export=False)

    assert len(fake_sampler) == 3 * 2
    assert result.long["age_gmc"].notna().all()
    assert result.long[["region", "urbanicity"]].notna().all().all()
    first = result.long[result.long["pid"] == raw.loc[0, "pid"]]
    assert set(first["imp"]) == {1, 2}


def test_parser_builds_stage_configs(tmp_path):
    args = build_parser().parse_args(
        [
            "run",
            "--input",
            str(tmp_path / "cohort.csv"),
            "--output",
            str(tmp_path / "out"),
            "--imputations",
            "5",
            "--draws",
            "200",
            "--workers",
            "3",
            "--seed",
            "9",
            "--sampler-seed",
            "13",
        ]
    )
    config = config_from_args(args)
    assert config.imputation.n_imputations == 5
    assert config.imputation.seed == 9
    assert config.sampler.draws == 200
    assert config.sampler.workers == 3
    assert config.sampler.seed == 13
    assert config.input_path == tmp_path / "cohort.csv"

    summarise = config_from_args(
        build_parser().parse_args(["summarise", "--output", "x", "--sampler-seed", "4"])
    )
    assert summarise.imputation == ImputationConfig()
    assert summarise.sampler.seed == 4

    defaults = config_from_args(build_parser().parse_args(["run", "--output", "x", "--seed", "9"]))
    assert defaults.imputation.seed == 9
    assert defaults.sampler.seed == SamplerConfig().seed
    assert summarise.input_path is None


def test_impute_command(tmp_path, cohort_factory):
    source = tmp_path / "cohort.csv"
    cohort_factory(n=25).to_csv(source, index=False)
    out = tmp_path / "out"
    code = main(
        [
            "impute",
            "--input",
            str(source),
            "--output",
            str(out),
            "--imputations",
            "2",
            "--iterations",
            "2",
            "--log-file",
        ]
    )
    assert code == 0
    assert ImputationResult.load(out / "imputation.pkl").n_imputations == 2
    assert (out / "pipeline.log").exists()
