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
Fitting and pooling
-------------------
Each specification is sampled independently on every imputed instance
(instances 1..M). Per instance:

    pm.sample(draws, tune, chains)   warm-up discarded, draws retained
    R-hat, bulk ESS, divergences     -> FitDiagnostics (flag, never dropped)

Fits are cached as ``fits/<model>/imp_<m>.nc`` with a fingerprint of
specification, data, priors, sampler settings and seed in ``meta.json``.
Traces are written to a temporary file and renamed after sampling, so an
abandoned fit leaves nothing to reuse.

Pooling concatenates the retained draws of all instances; each instance's
posterior already carries its within-imputation uncertainty.
"""

from __future__ import annotations

import hashlib
import json
import logging
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Sequence

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm

from . import stats_utils
from .config import PriorConfig, SamplerConfig
from .errors import ModelFitDivergence
from .models import ModelSpecification, build_model
from .reshape import IMP, split_instances

logger = logging.getLogger(__name__)

KEPT_VARS = ["intercept", "beta", "sigma_re"]


# ---------------------------------------------------------------------
# (1) Results and diagnostics
# ---------------------------------------------------------------------


@dataclass
class FitDiagnostics:
    """Convergence summary of one fit."""

    max_rhat: float
    min_ess_bulk: float
    divergences: int
    chains: int
    draws: int
    reliable: bool


@dataclass
class FitResult:
    """Posterior of one specification on one imputation."""

    model_name: str
    imputation: int
    idata: az.InferenceData
    diagnostics: FitDiagnostics
    from_cache: bool = False


def _finite_values(dataset) -> np.ndarray:
    values = [np.asarray(dataset[v]).ravel() for v in dataset.data_vars]
    values = np.concatenate(values) if values else np.array([np.nan])
    values = values[np.isfinite(values)]
    return values


def diagnose(idata: az.InferenceData, sampler: SamplerConfig) -> FitDiagnostics:
    """R-hat, bulk ESS and divergence count of the kept parameters."""
    posterior = idata.posterior[[v for v in KEPT_VARS if v in idata.posterior]]
    chains = int(posterior.sizes["chain"])
    draws = int(posterior.sizes["draw"])

    max_rhat = np.nan
    if chains > 1:
        rhat = _finite_values(az.rhat(posterior))
        max_rhat = float(rhat.max()) if rhat.size else np.nan
    ess = _finite_values(az.ess(posterior, method="bulk"))
    min_ess = float(ess.min()) if ess.size else np.nan

    divergences = 0
    if hasattr(idata, "sample_stats") and "diverging" in idata.sample_stats:
        divergences = int(np.asarray(idata.sample_stats["diverging"]).sum())

    reliable = divergences <= sampler.max_divergences and not (
        np.isfinite(max_rhat) and max_rhat > sampler.rhat_threshold
    )
    return FitDiagnostics(
        max_rhat=max_rhat,
        min_ess_bulk=min_ess,
        divergences=divergences,
        chains=chains,
        draws=draws,
        reliable=reliable,
    )


def _flag(result: FitResult, sampler: SamplerConfig) -> None:
    d = result.diagnostics
    if not d.reliable:
        warnings.warn(
            f"{result.model_name} imputation {result.imputation}: "
            f"max R-hat {d.max_rhat:.3f}, {d.divergences} divergent transitions; "
            "fit kept but flagged unreliable",
            ModelFitDivergence,
            stacklevel=3,
        )


# ---------------------------------------------------------------------
# (2) Sampling
# ---------------------------------------------------------------------


def instance_seeds(seed: int, imputations: Sequence[int]) -> Dict[int, int]:
    """Independent, reproducible sampler seeds per imputation number."""
    children = np.random.SeedSequence(seed).spawn(max(imputations) + 1)
    return {m: int(children[m].generate_state(1)[0]) for m in imputations}


def fit_instance(
    spec: ModelSpecification,
    long: pd.DataFrame,
    imputation: int,
    sampler: SamplerConfig | None = None,
    priors: PriorConfig | None = None,
    seed: int | None = None,
) -> FitResult:
    """
    Sample one specification on one imputed person-period instance.

    Parameters
    ----------
    spec : ModelSpecification
        Model to fit.
    long : pd.DataFrame
        Person-period rows of a single imputation.
    imputation : int
        Imputation number (for labelling).
    sampler : SamplerConfig, optional
        Draws, warm-up, chains and thresholds.
    priors : PriorConfig, optional
        Prior scales.
    seed : int, optional
        Random seed; defaults to ``sampler.seed``.

    Returns
    -------
    FitResult
        Posterior of the fixed effects, intercept and random-effect standard
        deviations, with diagnostics. Unreliable fits are returned flagged.
    """
    sampler = sampler or SamplerConfig()
    model = build_model(spec, long, priors)
    with model:
        idata = pm.sample(
            draws=sampler.draws,
            tune=sampler.tune,
            chains=sampler.chains,
            cores=sampler.cores,
            target_accept=sampler.target_accept,
            random_seed=sampler.seed if seed is None else seed,
            progressbar=False,
            return_inferencedata=True,
        )
    kept = az.InferenceData(
        posterior=idata.posterior[KEPT_VARS],
        sample_stats=idata.sample_stats,
    )
    result = FitResult(
        model_name=spec.name,
        imputation=imputation,
        idata=kept,
        diagnostics=diagnose(kept, sampler),
    )
    _flag(result, sampler)
    return result


def _fit_worker(
    spec: ModelSpecification,
    long: pd.DataFrame,
    imputation: int,
    sampler: SamplerConfig,
    priors: PriorConfig,
    seed: int,
) -> FitResult:
    # chains run sequentially inside a worker process
    return fit_instance(spec, long, imputation, replace(sampler, cores=1), priors, seed)


# ---------------------------------------------------------------------
# (3) Cache
# ---------------------------------------------------------------------


def fingerprint(
    spec: ModelSpecification,
    long: pd.DataFrame,
    sampler: SamplerConfig,
    priors: PriorConfig,
    seed: int,
) -> str:
    """SHA-256 over specification, model data, priors, sampler settings and seed."""
    settings = asdict(sampler)
    for key in ("cores", "workers", "rhat_threshold", "max_divergences"):
        settings.pop(key)
    payload = json.dumps(
        {
            "spec": spec.to_dict(),
            "priors": asdict(priors),
            "sampler": settings,
            "seed": seed,
        },
        sort_keys=True,
        default=str,
    ).encode("utf-8")
    digest = hashlib.sha256(payload)
    data = long[spec.columns].reset_index(drop=True)
    digest.update(pd.util.hash_pandas_object(data, index=False).to_numpy().tobytes())
    return digest.hexdigest()


class FitCache:
    """
    Directory of fitted traces keyed by model name and imputation.

    Layout: ``<root>/<model>/imp_<m>.nc`` and ``<root>/<model>/meta.json``.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def trace_path(self, model_name: str, imputation: int) -> Path:
        return self.root / model_name / f"imp_{imputation:03d}.nc"

    def _meta_path(self, model_name: str) -> Path:
        return self.root / model_name / "meta.json"

    def _read_meta(self, model_name: str) -> dict:
        path = self._meta_path(model_name)
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _write_meta(self, model_name: str, meta: dict) -> None:
        path = self._meta_path(model_name)
        tmp = path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2, sort_keys=True)
        tmp.replace(path)

    def has(self, model_name: str, imputation: int, key: str | None = None) -> bool:
        """True when a trace exists (and, if ``key`` is given, matches it)."""
        if not self.trace_path(model_name, imputation).exists():
            return False
        if key is None:
            return True
        stored = self._read_meta(model_name).get(str(imputation))
        if stored != key:
            logger.warning(
                "%s imputation %d: cached fit was made with different inputs; refitting",
                model_name,
                imputation,
            )
            return False
        return True

    def load(
        self, model_name: str, imputation: int, sampler: SamplerConfig
    ) -> FitResult:
        with az.rc_context(rc={"data.load": "eager"}):
            idata = az.from_netcdf(self.trace_path(model_name, imputation))
        return FitResult(
            model_name=model_name,
            imputation=imputation,
            idata=idata,
            diagnostics=diagnose(idata, sampler),
            from_cache=True,
        )

    def save(self, result: FitResult, key: str) -> Path:
        path = self.trace_path(result.model_name, result.imputation)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".nc.tmp")
        result.idata.to_netcdf(str(tmp))
        tmp.replace(path)
        meta = self._read_meta(result.model_name)
        meta[str(result.imputation)] = key
        self._write_meta(result.model_name, meta)
        return path


# ---------------------------------------------------------------------
# (4) Fitting across imputations
# ---------------------------------------------------------------------


def fit_model(
    spec: ModelSpecification,
    long: pd.DataFrame,
    sampler: SamplerConfig | None = None,
    priors: PriorConfig | None = None,
    cache: FitCache | None = None,
    allow_fit: bool = True,
) -> List[FitResult]:
    """
    Fit one specification to every imputation in a stacked long table.

    Instance 0 (incomplete data) is skipped. Cached fits with a matching
    fingerprint are loaded; the rest are sampled, serially or with
    ``sampler.workers`` processes, and cached once complete.

    Returns
    -------
    list of FitResult
        Ordered by imputation number.
    """
    sampler = sampler or SamplerConfig()
    priors = priors or PriorConfig()
    instances = {m: part for m, part in split_instances(long).items() if m != 0}
    if not instances:
        raise ValueError(f"{spec.name}: no imputed instances in data ({IMP} > 0)")
    seeds = instance_seeds(sampler.seed, list(instances))

    results: Dict[int, FitResult] = {}
    todo = []
    for m, data in instances.items():
        key = fingerprint(spec, data, sampler, priors, seeds[m])
        if cache is not None and cache.has(spec.name, m, key):
            results[m] = cache.load(spec.name, m, sampler)
            _flag(results[m], sampler)
        else:
            todo.append((m, key))

    if todo and not allow_fit:
        raise FileNotFoundError(
            f"{spec.name}: no cached fit for imputations {[m for m, _ in todo]}"
        )
    if results:
        logger.info("%s: loaded %d cached fits", spec.name, len(results))

    def finished(result: FitResult, key: str) -> None:
        if cache is not None:
            cache.save(result, key)
        results[result.imputation] = result
        logger.info(
            "%s: imputation %d sampled (max R-hat %.3f, %d divergences)",
            spec.name,
            result.imputation,
            result.diagnostics.max_rhat,
            result.diagnostics.divergences,
        )

    if todo and sampler.workers > 1:
        keys = dict(todo)
        with ProcessPoolExecutor(max_workers=sampler.workers) as pool:
            futures = {
                pool.submit(
                    _fit_worker, spec, instances[m], m, sampler, priors, seeds[m]
                ): m
                for m, _ in todo
            }
            for future in as_completed(futures):
                result = future.result()
                _flag(result, sampler)
                finished(result, keys[futures[future]])
    else:
        for m, key in todo:
            logger.info("%s: sampling imputation %d", spec.name, m)
            finished(
                fit_instance(spec, instances[m], m, sampler, priors, seeds[m]), key
            )

    return [results[m] for m in sorted(results)]


# ---------------------------------------------------------------------
# (5) Pooling
# ---------------------------------------------------------------------


@dataclass
class PooledPosterior:
    """
    Draws of all instances of one model, concatenated in imputation order.

    ``instance[k]`` is the imputation that produced draw ``k`` of every
    parameter array.
    """

    model_name: str
    fixed: Dict[str, np.ndarray]
    sigma: Dict[str, np.ndarray]
    instance: np.ndarray
    unreliable: List[int] = field(default_factory=list)

    @property
    def n_draws(self) -> int:
        return int(self.instance.size)

    def variance(self, effect: str) -> np.ndarray:
        return self.sigma[effect] ** 2


def _flatten(idata: az.InferenceData, var: str, dim: str | None = None) -> Dict[str, np.ndarray]:
    da = idata.posterior[var]
    if dim is None:
        return {var: np.asarray(da.stack(sample=("chain", "draw"))).ravel()}
    return {
        str(label): np.asarray(da.sel({dim: label}).stack(sample=("chain", "draw"))).ravel()
        for label in da[dim].values
    }


def pool_fits(fits: Sequence[FitResult]) -> PooledPosterior:
    """Concatenate the retained draws of all imputations of one model."""
    if not fits:
        raise ValueError("No fits to pool")
    names = {f.model_name for f in fits}
    if len(names) != 1:
        raise ValueError(f"Cannot pool fits of different models: {sorted(names)}")

    fixed: Dict[str, List[np.ndarray]] = {}
    sigma: Dict[str, List[np.ndarray]] = {}
    instance = []
    for fit in sorted(fits, key=lambda f: f.imputation):
        parts = {**_flatten(fit.idata, "intercept"), **_flatten(fit.idata, "beta", "predictor")}
        for name, draws in parts.items():
            fixed.setdefault(name, []).append(draws)
        for name, draws in _flatten(fit.idata, "sigma_re", "effect").items():
            sigma.setdefault(name, []).append(draws)
        instance.append(np.full(parts["intercept"].size, fit.imputation, dtype=np.int64))

    pooled = PooledPosterior(
        model_name=names.pop(),
        fixed={k: np.concatenate(v) for k, v in fixed.items()},
        sigma={k: np.concatenate(v) for k, v in sigma.items()},
        instance=np.concatenate(instance),
        unreliable=[f.imputation for f in fits if not f.diagnostics.reliable],
    )
    sizes = {k: v.size for k, v in {**pooled.fixed, **pooled.sigma}.items()}
    if any(size != pooled.n_draws for size in sizes.values()):
        raise ValueError(f"{pooled.model_name}: parameter draw counts differ {sizes}")
    return pooled


def summarise_fixed(pooled: PooledPosterior) -> pd.DataFrame:
    """Pooled mean, 95% interval and rate ratio per fixed-effect term."""
    rows = []
    for term, draws in pooled.fixed.items():
        mean, lower, upper = stats_utils.posterior_interval(draws)
        rr, rr_lower, rr_upper = stats_utils.exp_interval(draws)
        rows.append(
            dict(
                model=pooled.model_name,
                term=term,
                estimate=mean,
                lower=lower,
                upper=upper,
                rate_ratio=rr,
                rr_lower=rr_lower,
                rr_upper=rr_upper,
                n_draws=draws.size,
            )
        )
    return pd.DataFrame(rows)


def summarise_variance(pooled: PooledPosterior) -> pd.DataFrame:
    """Pooled random-effect variances (squared standard-deviation draws)."""
    rows = []
    for effect in pooled.sigma:
        mean, lower, upper = stats_utils.posterior_interval(pooled.variance(effect))
        rows.append(
            dict(
                model=pooled.model_name,
                effect=effect,
                variance=mean,
                lower=lower,
                upper=upper,
                n_draws=pooled.n_draws,
            )
        )
    return pd.DataFrame(rows)
