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
Multiple imputation by chained equations
========================================
For every incomplete variable v with method m(v), and for each imputation
i = 1..M (own random stream):

    initialise   v[mis] ~ draws from v[obs]
    repeat T rounds, visiting incomplete variables in column order:
        (X*, y*)  = bootstrap resample of observed rows of (X_-v, v)
        p(v | X)  = LogisticRegression(X*, y*)   (binary or multinomial)
        v[mis]    ~ Categorical(p(v | X[mis]))

Numeric variables (ages) use BayesianRidge(X*, y*) in place of the logit
and draw v[mis] ~ Normal(mean, sd) from its predictive distribution.

Bootstrapping the observed rows before each fit carries parameter
uncertainty into the draws. Instance 0 of the result is the original table.

Mixing is summarised by the mean imputed code per round (one chain per
imputation) and a Gelman-Rubin R-hat over the second half of the rounds.
Convergence is reported, never enforced.
"""

from __future__ import annotations

import logging
import pickle
import warnings
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping

import arviz as az
import numpy as np
import pandas as pd
from sklearn.linear_model import BayesianRidge, LogisticRegression

from .config import ImputationConfig, StudyConfig, wave_column
from .errors import ConfigurationError, ImputationNonconvergence

logger = logging.getLogger(__name__)


class ImputationMethod(str, Enum):
    """Conditional model used to fill a variable."""

    POLYREG = "polyreg"  # unordered categorical, multinomial logit
    LOGREG = "logreg"  # binary, logistic
    NORM = "norm"  # continuous, Bayesian linear regression
    NONE = "none"  # passed through


# ---------------------------------------------------------------------
# (0) Method map
# ---------------------------------------------------------------------


def build_method_map(study: StudyConfig | None = None) -> Dict[str, ImputationMethod]:
    """
    Explicit variable -> method mapping for the derived cohort table.

    Screens, demographic categories and static covariates are multinomial,
    binary subscale scores logistic and ages normal. Sums, percentages and
    response indicators are passed through.
    """
    study = study or StudyConfig()
    methods: Dict[str, ImputationMethod] = {}
    for wave in study.waves:
        methods[wave_column(study.screen.name, wave)] = ImputationMethod.POLYREG
        for scale in study.subscales:
            methods[wave_column(f"{scale.name}_bin", wave)] = ImputationMethod.LOGREG
            methods[wave_column(f"{scale.name}_sum", wave)] = ImputationMethod.NONE
            methods[wave_column(f"{scale.name}_pct", wave)] = ImputationMethod.NONE
        methods[wave_column("responded", wave)] = ImputationMethod.NONE
        methods[wave_column(study.age, wave)] = ImputationMethod.NORM
    methods["gender"] = ImputationMethod.POLYREG
    methods["race"] = ImputationMethod.POLYREG
    for col in study.static_covariates:
        methods[col] = ImputationMethod.POLYREG
    return methods


# ---------------------------------------------------------------------
# (1) Result artifact
# ---------------------------------------------------------------------


@dataclass
class ImputationResult:
    """
    All completed copies of the subject table plus diagnostics.

    Attributes
    ----------
    instances : list of pd.DataFrame
        ``instances[0]`` is the incomplete input, ``instances[1..M]`` the
        completed copies; all share index and columns.
    methods : dict
        Method used per variable.
    chain_means : pd.DataFrame
        Long table (variable, imputation, iteration, value).
    rhat : dict
        Gelman-Rubin statistic per imputed variable (NaN when undefined).
    nonconvergent : list of str
        Variables whose R-hat exceeded the configured threshold.
    """

    instances: List[pd.DataFrame]
    methods: Dict[str, ImputationMethod]
    config: ImputationConfig
    chain_means: pd.DataFrame = field(default_factory=pd.DataFrame)
    rhat: Dict[str, float] = field(default_factory=dict)
    nonconvergent: List[str] = field(default_factory=list)

    @property
    def n_imputations(self) -> int:
        return len(self.instances) - 1

    def complete(self, m: int) -> pd.DataFrame:
        """Copy of instance ``m`` (0 = original)."""
        return self.instances[m].copy()

    def imputed_variables(self) -> List[str]:
        original = self.instances[0]
        return [
            col
            for col, method in self.methods.items()
            if method is not ImputationMethod.NONE
            and col in original.columns
            and original[col].isna().any()
        ]

    def save(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("wb") as f:
            pickle.dump(self, f, protocol=pickle.HIGHEST_PROTOCOL)
        tmp.replace(path)
        logger.info("Saved %d imputations to %s", self.n_imputations, path)
        return path

    @classmethod
    def load(cls, path: str | Path) -> "ImputationResult":
        with Path(path).open("rb") as f:
            result = pickle.load(f)
        if not isinstance(result, cls):
            raise TypeError(f"{path} does not contain an ImputationResult")
        return result


# ---------------------------------------------------------------------
# (2) Conditional models
# ---------------------------------------------------------------------


def _is_categorical(series: pd.Series, method: ImputationMethod) -> bool:
    if method is ImputationMethod.POLYREG:
        return True
    return not pd.api.types.is_numeric_dtype(series)


def _design(
    data: pd.DataFrame, columns: List[str], categorical: set[str]
) -> np.ndarray:
    """Dummy-coded categoricals and standardised numerics as one matrix."""
    parts = []
    for col in columns:
        if col in categorical:
            dummies = pd.get_dummies(
                data[col].astype(str), prefix=col, drop_first=True, dtype="float64"
            )
            parts.append(dummies.to_numpy())
        else:
            x = data[col].to_numpy(dtype="float64")
            sd = x.std()
            x = x - x.mean()
            parts.append((x / sd if sd > 0 else x)[:, None])
    if not parts:
        return np.empty((len(data), 0))
    return np.hstack(parts)


def _draw_categorical(
    X_obs: np.ndarray,
    y_obs: np.ndarray,
    X_mis: np.ndarray,
    rng: np.random.Generator,
    config: ImputationConfig,
) -> np.ndarray:
    """Fit on a bootstrap resample of observed rows and draw missing values."""
    n_obs = y_obs.shape[0]
    boot = rng.integers(0, n_obs, size=n_obs)
    Xb, yb = X_obs[boot], y_obs[boot]
    classes = np.unique(yb)
    if classes.size == 1:
        return np.repeat(classes[0], X_mis.shape[0])

    if X_obs.shape[1] == 0:
        probs = np.array([(yb == c).mean() for c in classes])
        return rng.choice(classes, size=X_mis.shape[0], p=probs)

    model = LogisticRegression(C=config.regularisation, max_iter=config.max_iter)
    model.fit(Xb, yb)
    proba = model.predict_proba(X_mis)
    u = rng.random(X_mis.shape[0])[:, None]
    choice = (u > proba.cumsum(axis=1)).sum(axis=1)
    choice = np.minimum(choice, model.classes_.size - 1)
    return model.classes_[choice]


def _draw_numeric(
    X_obs: np.ndarray,
    y_obs: np.ndarray,
    X_mis: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """Bootstrap BayesianRidge fit; draws from its predictive normal."""
    n_obs = y_obs.shape[0]
    boot = rng.integers(0, n_obs, size=n_obs)
    Xb, yb = X_obs[boot], y_obs[boot]
    if X_obs.shape[1] == 0 or n_obs < 2:
        return rng.normal(yb.mean(), yb.std(), size=X_mis.shape[0])

    model = BayesianRidge()
    model.fit(Xb, yb)
    mean, sd = model.predict(X_mis, return_std=True)
    return rng.normal(mean, sd)


def _chain_statistic(values: pd.Series, levels: list | None) -> float:
    if levels is not None:
        codes = pd.Categorical(values, categories=levels).codes
        return float(codes.mean()) if codes.size else np.nan
    return float(values.astype("float64").mean()) if len(values) else np.nan


# ---------------------------------------------------------------------
# (3) Engine
# ---------------------------------------------------------------------


def _impute_once(
    frame: pd.DataFrame,
    targets: List[str],
    predictors: List[str],
    categorical: set[str],
    methods: Mapping[str, ImputationMethod],
    levels: Dict[str, list | None],
    rng: np.random.Generator,
    config: ImputationConfig,
) -> tuple[pd.DataFrame, np.ndarray]:
    data = frame.copy()
    missing = {var: frame[var].isna().to_numpy() for var in targets}
    for var in targets:
        observed = frame[var].dropna().to_numpy()
        data.loc[missing[var], var] = rng.choice(observed, size=missing[var].sum())

    chain = np.full((len(targets), config.iterations), np.nan)
    for it in range(config.iterations):
        for j, var in enumerate(targets):
            mis = missing[var]
            others = [c for c in predictors if c != var]
            X = _design(data, others, categorical)
            if methods[var] is ImputationMethod.NORM:
                y = data[var].to_numpy(dtype="float64")
                draws = _draw_numeric(X[~mis], y[~mis], X[mis], rng)
            else:
                y = data[var].to_numpy()
                draws = _draw_categorical(X[~mis], y[~mis], X[mis], rng, config)
            data.loc[mis, var] = draws
            chain[j, it] = _chain_statistic(data.loc[mis, var], levels[var])
        logger.debug("Iteration %d/%d complete", it + 1, config.iterations)

    for var in targets:
        if methods[var] is ImputationMethod.LOGREG:
            data[var] = data[var].astype(frame[var].dtype)
    return data, chain


def _rhat(chains: np.ndarray) -> float:
    """Split-free Gelman-Rubin over (imputation, iteration) chains."""
    half = chains[:, chains.shape[1] // 2 :]
    if half.shape[0] < 2 or half.shape[1] < 4 or not np.isfinite(half).all():
        return np.nan
    if np.allclose(half, half[0, 0]):
        return np.nan
    return float(np.asarray(az.rhat(half)))


def impute(
    frame: pd.DataFrame,
    methods: Mapping[str, ImputationMethod] | None = None,
    config: ImputationConfig | None = None,
) -> ImputationResult:
    """
    Produce ``config.n_imputations`` completed copies of ``frame``.

    Parameters
    ----------
    frame : pd.DataFrame
        Subject-level table (one row per subject).
    methods : mapping, optional
        Variable -> ImputationMethod; unlisted variables are passed through.
        Defaults to :func:`build_method_map`.
    config : ImputationConfig, optional
        Number of imputations, iterations and seed.

    Returns
    -------
    ImputationResult
    """
    config = config or ImputationConfig()
    methods = dict(methods if methods is not None else build_method_map())
    unknown = [v for v in methods if v not in frame.columns]
    if unknown:
        raise ConfigurationError(f"Method map refers to unknown columns: {unknown}")
    for col in frame.columns:
        methods.setdefault(col, ImputationMethod.NONE)
    if config.n_imputations < 1:
        raise ConfigurationError("n_imputations must be at least 1")

    targets = [
        col
        for col in frame.columns
        if methods[col] is not ImputationMethod.NONE and frame[col].isna().any()
    ]
    for var in targets:
        if frame[var].notna().sum() == 0:
            raise ValueError(f"{var} has no observed values to impute from")

    passive = [
        col
        for col in frame.columns
        if methods[col] is ImputationMethod.NONE and frame[col].isna().any()
    ]
    if passive:
        logger.warning(
            "Incomplete variables without an imputation method are passed "
            "through and not used as predictors: %s",
            passive,
        )
    predictors = [col for col in frame.columns if col not in passive]
    categorical = {col for col in predictors if _is_categorical(frame[col], methods[col])}
    levels = {
        var: (
            sorted(frame[var].dropna().unique().tolist(), key=str)
            if var in categorical
            else None
        )
        for var in targets
    }

    seeds = np.random.SeedSequence(config.seed).spawn(config.n_imputations)
    instances = [frame.copy()]
    chains = np.full((len(targets), config.n_imputations, config.iterations), np.nan)

    if not targets:
        logger.info("No incomplete variables to impute; returning copies")
        instances.extend(frame.copy() for _ in range(config.n_imputations))
        return ImputationResult(instances=instances, methods=methods, config=config)

    logger.info(
        "Imputing %d variables, %d imputations x %d iterations",
        len(targets),
        config.n_imputations,
        config.iterations,
    )
    for m, seed in enumerate(seeds, start=1):
        rng = np.random.default_rng(seed)
        data, chain = _impute_once(
            frame, targets, predictors, categorical, methods, levels, rng, config
        )
        instances.append(data)
        chains[:, m - 1, :] = chain
        logger.info("Imputation %d/%d complete", m, config.n_imputations)

    records = []
    rhat = {}
    for j, var in enumerate(targets):
        rhat[var] = _rhat(chains[j])
        for m in range(config.n_imputations):
            for it in range(config.iterations):
                records.append((var, m + 1, it + 1, chains[j, m, it]))
    chain_means = pd.DataFrame(
        records, columns=["variable", "imputation", "iteration", "value"]
    )
    nonconvergent = [
        var for var, r in rhat.items() if np.isfinite(r) and r > config.rhat_threshold
    ]
    if nonconvergent:
        warnings.warn(
            f"Chained equations did not mix for {nonconvergent} "
            f"(R-hat > {config.rhat_threshold}); inspect chain_means",
            ImputationNonconvergence,
            stacklevel=2,
        )

    return ImputationResult(
        instances=instances,
        methods=methods,
        config=config,
        chain_means=chain_means,
        rhat=rhat,
        nonconvergent=nonconvergent,
    )
