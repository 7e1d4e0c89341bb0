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
"""Numeric summary tables; layout and styling belong to the report step."""

from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Mapping, Sequence

import pandas as pd

from .fitting import FitResult, PooledPosterior, summarise_fixed, summarise_variance
from .imputation import ImputationResult

logger = logging.getLogger(__name__)


def fixed_effects_table(pooled: Mapping[str, PooledPosterior]) -> pd.DataFrame:
    frames = [summarise_fixed(p) for p in pooled.values()]
    table = pd.concat(frames, ignore_index=True)
    table["unreliable_imputations"] = table["model"].map(
        {name: ",".join(map(str, p.unreliable)) for name, p in pooled.items()}
    )
    return table


def variance_table(pooled: Mapping[str, PooledPosterior]) -> pd.DataFrame:
    return pd.concat([summarise_variance(p) for p in pooled.values()], ignore_index=True)


def diagnostics_table(fits: Mapping[str, Sequence[FitResult]]) -> pd.DataFrame:
    """One row per (model, imputation) with sampler diagnostics."""
    rows = []
    for name, results in fits.items():
        for fit in results:
            rows.append(
                dict(
                    model=name,
                    imputation=fit.imputation,
                    from_cache=fit.from_cache,
                    **asdict(fit.diagnostics),
                )
            )
    return pd.DataFrame(rows)


def imputation_table(result: ImputationResult) -> pd.DataFrame:
    """Missing count, method and R-hat per imputed variable."""
    original = result.instances[0]
    variables = result.imputed_variables()
    return pd.DataFrame(
        dict(
            variable=variables,
            method=[result.methods[v].value for v in variables],
            n_missing=[int(original[v].isna().sum()) for v in variables],
            rhat=[result.rhat.get(v) for v in variables],
            nonconvergent=[v in result.nonconvergent for v in variables],
        )
    )


def export_tables(tables: Mapping[str, pd.DataFrame], directory: str | Path) -> Dict[str, Path]:
    """Write each table to ``<directory>/<name>.csv``."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    paths = {}
    for name, table in tables.items():
        path = directory / f"{name}.csv"
        table.to_csv(path, index=False)
        paths[name] = path
        logger.info("Wrote %s (%d rows)", path, len(table))
    return paths
