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
Pipeline
--------
derive -> impute -> reshape -> fit/pool -> mediation -> tables

The imputation artifact and the per-model fits are persisted under
``PipelineConfig.output_dir`` and reused on later runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import pandas as pd

from .config import PipelineConfig
from .derivation import derive_all
from .fitting import FitCache, FitResult, PooledPosterior, fit_model, pool_fits
from .imputation import ImputationResult, build_method_map, impute
from .mediation import mediation_table
from .models import ModelSpecification, default_model_family
from .reporting import (
    diagnostics_table,
    export_tables,
    fixed_effects_table,
    imputation_table,
    variance_table,
)
from .reshape import reshape_instances

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    imputation: ImputationResult
    long: pd.DataFrame
    fits: Dict[str, List[FitResult]] = field(default_factory=dict)
    pooled: Dict[str, PooledPosterior] = field(default_factory=dict)
    tables: Dict[str, pd.DataFrame] = field(default_factory=dict)


def load_input(config: PipelineConfig) -> pd.DataFrame:
    if config.input_path is None:
        raise ValueError("PipelineConfig.input_path is not set")
    logger.info("Reading %s", config.input_path)
    return pd.read_csv(config.input_path)


def run_imputation(
    config: PipelineConfig,
    raw: pd.DataFrame | None = None,
    force: bool = False,
) -> ImputationResult:
    """Derive and impute, or load the stored imputation artifact."""
    path = config.imputation_path
    if path.exists() and not force:
        logger.info("Using stored imputations from %s", path)
        return ImputationResult.load(path)
    raw = load_input(config) if raw is None else raw
    derived = derive_all(raw, config.study)
    result = impute(derived.data, build_method_map(config.study), config.imputation)
    result.save(path)
    return result


def run_models(
    long: pd.DataFrame,
    config: PipelineConfig,
    family: Sequence[ModelSpecification],
    allow_fit: bool = True,
) -> Dict[str, List[FitResult]]:
    cache = FitCache(config.fits_dir)
    fits = {}
    for spec in family:
        logger.info("Fitting %s (%s)", spec.name, ", ".join(spec.fixed_effects))
        fits[spec.name] = fit_model(
            spec, long, config.sampler, config.priors, cache, allow_fit=allow_fit
        )
    return fits


def run_pipeline(
    config: PipelineConfig,
    raw: pd.DataFrame | None = None,
    family: Sequence[ModelSpecification] | None = None,
    allow_fit: bool = True,
    export: bool = True,
) -> PipelineResult:
    """
    Run every stage and return the artifacts and summary tables.

    Parameters
    ----------
    config : PipelineConfig
        Paths and per-stage settings.
    raw : pd.DataFrame, optional
        Raw subject table; read from ``config.input_path`` when needed.
    family : sequence of ModelSpecification, optional
        Nested model family; defaults to :func:`default_model_family`.
    allow_fit : bool
        If False, only cached fits are used (missing fits raise).
    export : bool
        Write CSV tables to ``config.tables_dir``.
    """
    family = list(family or default_model_family())
    imputation = run_imputation(config, raw)
    if imputation.nonconvergent:
        logger.warning(
            "Imputation flagged nonconvergent variables: %s", imputation.nonconvergent
        )
    long = reshape_instances(imputation, config.reshape)
    fits = run_models(long, config, family, allow_fit)
    pooled = {name: pool_fits(results) for name, results in fits.items()}

    tables = {
        "fixed_effects": fixed_effects_table(pooled),
        "variance_components": variance_table(pooled),
        "mediation": mediation_table(pooled, family, seed=config.sampler.seed),
        "diagnostics": diagnostics_table(fits),
        "imputation": imputation_table(imputation),
    }
    if export:
        export_tables(tables, config.tables_dir)
    return PipelineResult(
        imputation=imputation, long=long, fits=fits, pooled=pooled, tables=tables
    )
