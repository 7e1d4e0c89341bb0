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
Difference-in-coefficients mediation
------------------------------------
For an exposure coefficient β drawn from the total-effect model (β_tot) and
from a model adding mediators (β_adj), paired by draw:

    indirect_k = β_tot,k - β_adj,k                     (log scale)
    percent_k  = indirect_k / β_tot,k * 100            (draws with β_tot,k = 0 dropped)

The indirect effect is reported as exp(mean) with exp(2.5%, 97.5%); the
percentage as the mean and percentiles of the per-draw ratios.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from . import stats_utils
from .errors import PoolingMismatchError
from .fitting import PooledPosterior
from .models import ModelSpecification

logger = logging.getLogger(__name__)


@dataclass
class MediationEstimate:
    """Summary of one mediator model against the total-effect model."""

    model: str
    mediators: str
    exposure: str
    total_rr: float
    total_rr_lower: float
    total_rr_upper: float
    indirect_rr: float
    indirect_rr_lower: float
    indirect_rr_upper: float
    percent_mediated: float
    percent_lower: float
    percent_upper: float
    n_draws: int
    n_excluded: int

    def to_dict(self) -> dict:
        return asdict(self)


def align_draws(
    baseline: np.ndarray,
    adjusted: np.ndarray,
    baseline_instance: np.ndarray | None = None,
    adjusted_instance: np.ndarray | None = None,
    resample: bool = True,
    rng: np.random.Generator | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Pair two draw vectors element-wise.

    When instance labels are given draws are paired within each imputation.
    Unequal counts are brought to the smaller count by subsampling the
    longer side without replacement (order kept); with ``resample=False``
    they raise instead.

    Raises
    ------
    PoolingMismatchError
        Instance sets differ, a side is empty, or counts differ and
        resampling is disabled.
    """
    baseline = np.asarray(baseline, dtype=np.float64).ravel()
    adjusted = np.asarray(adjusted, dtype=np.float64).ravel()
    if baseline.size == 0 or adjusted.size == 0:
        raise PoolingMismatchError("Cannot pair an empty set of draws")
    rng = rng or np.random.default_rng(0)

    if baseline_instance is None or adjusted_instance is None:
        baseline_instance = np.zeros(baseline.size, dtype=np.int64)
        adjusted_instance = np.zeros(adjusted.size, dtype=np.int64)
    baseline_instance = np.asarray(baseline_instance)
    adjusted_instance = np.asarray(adjusted_instance)
    if baseline_instance.size != baseline.size or adjusted_instance.size != adjusted.size:
        raise PoolingMismatchError("Instance labels do not match the draws")

    instances = np.unique(baseline_instance)
    if not np.array_equal(instances, np.unique(adjusted_instance)):
        raise PoolingMismatchError(
            "Models were fitted to different imputations: "
            f"{instances.tolist()} vs {np.unique(adjusted_instance).tolist()}"
        )

    def subsample(x: np.ndarray, n: int) -> np.ndarray:
        if x.size == n:
            return x
        keep = np.sort(rng.choice(x.size, size=n, replace=False))
        return x[keep]

    paired_base, paired_adj = [], []
    for m in instances:
        b = baseline[baseline_instance == m]
        a = adjusted[adjusted_instance == m]
        if b.size != a.size:
            if not resample:
                raise PoolingMismatchError(
                    f"Imputation {m}: {b.size} baseline vs {a.size} adjusted draws"
                )
            logger.warning(
                "Imputation %s: resampling %d/%d draws to %d for pairing",
                m,
                b.size,
                a.size,
                min(b.size, a.size),
            )
            n = min(b.size, a.size)
            b, a = subsample(b, n), subsample(a, n)
        paired_base.append(b)
        paired_adj.append(a)
    return np.concatenate(paired_base), np.concatenate(paired_adj)


def indirect_effect_draws(baseline: np.ndarray, adjusted: np.ndarray) -> np.ndarray:
    """Log-scale indirect effect per paired draw."""
    baseline = np.asarray(baseline, dtype=np.float64)
    adjusted = np.asarray(adjusted, dtype=np.float64)
    if baseline.shape != adjusted.shape:
        raise PoolingMismatchError(
            f"Unpaired draws: {baseline.shape} vs {adjusted.shape}; use align_draws"
        )
    return baseline - adjusted


def percent_mediated_draws(
    indirect: np.ndarray, baseline: np.ndarray
) -> tuple[np.ndarray, int]:
    """
    Per-draw percent mediated.

    Returns
    -------
    tuple
        ``(percent, n_excluded)``; draws whose baseline is zero (undefined
        ratio) or whose ratio is not finite are removed, never returned as
        infinity.
    """
    indirect = np.asarray(indirect, dtype=np.float64)
    baseline = np.asarray(baseline, dtype=np.float64)
    defined = baseline != 0
    percent = np.full(indirect.shape, np.nan)
    np.divide(indirect, baseline, out=percent, where=defined)
    percent *= 100.0
    keep = defined & np.isfinite(percent)
    return percent[keep], int((~keep).sum())


def summarise_mediation(
    baseline: np.ndarray,
    adjusted: np.ndarray,
    model: str = "",
    mediators: str = "",
    exposure: str = "",
    baseline_instance: np.ndarray | None = None,
    adjusted_instance: np.ndarray | None = None,
    resample: bool = True,
    rng: np.random.Generator | None = None,
) -> MediationEstimate:
    """
    Indirect effect and percent mediated from two sets of exposure draws.

    Parameters
    ----------
    baseline, adjusted : np.ndarray
        Log-scale exposure coefficient draws of the total-effect model and
        of the mediator model.
    model, mediators, exposure : str
        Labels carried into the estimate.
    baseline_instance, adjusted_instance : np.ndarray, optional
        Imputation of each draw, for pairing within imputations.
    resample : bool
        Subsample to a common count when draw counts differ.

    Returns
    -------
    MediationEstimate
    """
    base, adj = align_draws(
        baseline, adjusted, baseline_instance, adjusted_instance, resample, rng
    )
    indirect = indirect_effect_draws(base, adj)
    percent, excluded = percent_mediated_draws(indirect, base)
    if excluded:
        logger.info("%s: %d draws excluded from percent mediated", model, excluded)

    total = stats_utils.exp_interval(base)
    ind = stats_utils.exp_interval(indirect)
    pct = stats_utils.posterior_interval(percent)
    return MediationEstimate(
        model=model,
        mediators=mediators,
        exposure=exposure,
        total_rr=total[0],
        total_rr_lower=total[1],
        total_rr_upper=total[2],
        indirect_rr=ind[0],
        indirect_rr_lower=ind[1],
        indirect_rr_upper=ind[2],
        percent_mediated=pct[0],
        percent_lower=pct[1],
        percent_upper=pct[2],
        n_draws=int(indirect.size),
        n_excluded=excluded,
    )


def mediation_table(
    pooled: Mapping[str, PooledPosterior],
    family: Sequence[ModelSpecification],
    seed: int = 0,
    resample: bool = True,
) -> pd.DataFrame:
    """
    Mediation estimates of every mediator model against the first model.

    Parameters
    ----------
    pooled : mapping
        Pooled posterior per model name.
    family : sequence of ModelSpecification
        Nested family; ``family[0]`` is the total-effect model.
    seed : int
        Seed of the resampling generator.
    """
    base_spec = family[0]
    exposure = base_spec.exposure
    base = pooled[base_spec.name]
    rng = np.random.default_rng(seed)
    rows = []
    for spec in family[1:]:
        adjusted = pooled[spec.name]
        estimate = summarise_mediation(
            base.fixed[exposure],
            adjusted.fixed[exposure],
            model=spec.name,
            mediators=" + ".join(spec.mediators),
            exposure=exposure,
            baseline_instance=base.instance,
            adjusted_instance=adjusted.instance,
            resample=resample,
            rng=rng,
        )
        rows.append(estimate.to_dict())
    return pd.DataFrame(rows)
