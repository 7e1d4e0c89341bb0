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
# Poisson GLMM with subject random effects (person-period data)
#
# Notation in code mirrors the math below:
#   y   : binary / count outcome per person-period row
#   X   : fixed-effect design (treatment-coded categoricals)
#   β   : fixed effects on the log-rate scale; exp(β) are rate ratios
#   u   : subject random effects (intercept and optional slopes)
#   σ   : random-effect standard deviations; σ² reported as variances
#
# Identifiability choices:
#   • Random effects are non-centred (u = z · L, z ~ N(0, 1)).
#   • With slopes, L is an LKJ Cholesky factor so intercept and slopes
#     may correlate, as (1 + time | pid) would.
# -----------------------------------------------------------------------------
"""
Nested Poisson mixed models
===========================
Linear predictor (row i, subject j = j[i]):
    η_i = α + X_i β + u_{j,0} + Σ_s u_{j,s} Z_{i,s}
Observation:
    y_i ~ Poisson(exp(η_i))

A model family is one base specification plus a list of mediator additions;
model k+1 repeats every term of model k and adds one mediator, so the
exposure coefficient is comparable along the chain.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt

from . import stats_utils
from .config import GENDER_CODES, RACE_CODES, PriorConfig
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# (0) Specifications
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Mediator:
    """A candidate mediator and the model terms that represent it."""

    label: str
    terms: Tuple[str, ...]


@dataclass(frozen=True)
class ModelSpecification:
    """
    One model of the nested family.

    Attributes
    ----------
    name : str
        Identifier, used as the fit cache key.
    outcome : str
        Person-period outcome column (non-negative integers).
    exposure : str
        Term whose coefficient is compared across the family.
    fixed_effects : tuple of str
        Predictor columns, including the exposure.
    categorical : dict
        Categorical predictors mapped to their levels; the first level is
        the reference. An empty tuple means levels are taken from the data
        in sorted order.
    random_slopes : tuple of str
        Columns with subject-varying slopes (random intercept always present).
    mediators : tuple of str
        Labels of the mediators added relative to the base model.
    """

    name: str
    outcome: str
    exposure: str
    fixed_effects: Tuple[str, ...]
    categorical: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    random_slopes: Tuple[str, ...] = ()
    mediators: Tuple[str, ...] = ()
    id_column: str = "pid"
    family: str = "poisson"

    def __post_init__(self):
        if self.exposure not in self.fixed_effects:
            raise ConfigurationError(
                f"{self.name}: exposure {self.exposure!r} is not a fixed effect"
            )
        if len(set(self.fixed_effects)) != len(self.fixed_effects):
            raise ConfigurationError(f"{self.name}: duplicated fixed effects")
        if self.family != "poisson":
            raise ConfigurationError(f"{self.name}: unsupported family {self.family!r}")

    @property
    def columns(self) -> List[str]:
        """Data columns the model reads."""
        cols = [self.id_column, self.outcome, *self.fixed_effects]
        cols.extend(s for s in self.random_slopes if s not in cols)
        return cols

    def with_terms(self, name: str, mediator: Mediator) -> "ModelSpecification":
        clash = [t for t in mediator.terms if t in self.fixed_effects]
        if clash:
            raise ConfigurationError(f"{name}: terms already in the model: {clash}")
        return replace(
            self,
            name=name,
            fixed_effects=self.fixed_effects + tuple(mediator.terms),
            mediators=self.mediators + (mediator.label,),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["categorical"] = {k: list(v) for k, v in self.categorical.items()}
        return d


def build_model_family(
    base: ModelSpecification,
    mediators: Sequence[Mediator],
    cumulative: bool = True,
    prefix: str = "model",
) -> List[ModelSpecification]:
    """
    Nested model family from a base specification.

    Parameters
    ----------
    base : ModelSpecification
        Total-effect model; renamed ``{prefix}_1``.
    mediators : sequence of Mediator
        Additions in order.
    cumulative : bool
        If True model k+1 = model k + mediator k; otherwise every mediator
        model is base + one mediator.

    Returns
    -------
    list of ModelSpecification
        ``[base, ...]`` satisfying :func:`check_nesting`.
    """
    family = [replace(base, name=f"{prefix}_1", mediators=())]
    for k, mediator in enumerate(mediators, start=2):
        parent = family[-1] if cumulative else family[0]
        family.append(parent.with_terms(f"{prefix}_{k}", mediator))
    check_nesting(family, cumulative=cumulative)
    return family


def check_nesting(family: Sequence[ModelSpecification], cumulative: bool = True) -> None:
    """Raise ConfigurationError unless every model contains its parent's terms."""
    if not family:
        raise ConfigurationError("Empty model family")
    base = family[0]
    for k, spec in enumerate(family[1:], start=1):
        parent = family[k - 1] if cumulative else base
        for attr in ("outcome", "exposure", "random_slopes", "id_column", "family"):
            if getattr(spec, attr) != getattr(base, attr):
                raise ConfigurationError(f"{spec.name}: {attr} differs from base model")
        missing = [t for t in parent.fixed_effects if t not in spec.fixed_effects]
        if missing or len(spec.fixed_effects) <= len(parent.fixed_effects):
            raise ConfigurationError(
                f"{spec.name} is not nested in {parent.name} (missing {missing})"
            )


def default_model_family() -> List[ModelSpecification]:
    """
    Models of the cohort analysis.

    Model 1 relates within-person victimisation to the screen outcome with
    its between-person mean, time, age and demographics; models 2 and 3 add
    sleep problems and then stress, within and between.
    """
    base = ModelSpecification(
        name="model_1",
        outcome="screen_any",
        exposure="vict_bin_pmc",
        fixed_effects=(
            "vict_bin_pmc",
            "vict_bin_pm",
            "time",
            "age_gmc",
            "gender",
            "race",
            "region",
            "urbanicity",
        ),
        categorical={
            "gender": tuple(GENDER_CODES.values()),
            "race": tuple(RACE_CODES.values()),
            "region": (),
            "urbanicity": (),
        },
        random_slopes=("time",),
    )
    mediators = [
        Mediator("sleep", ("sleep_bin_pmc", "sleep_bin_pm")),
        Mediator("stress", ("stress_bin_pmc", "stress_bin_pm")),
    ]
    return build_model_family(base, mediators)


# ---------------------------------------------------------------------
# (1) Data preparation
# ---------------------------------------------------------------------


@dataclass
class PreparedData:
    """Arrays and coordinates consumed by `build_model`."""

    n_obs: int
    n_subjects: int
    X: np.ndarray  # (n_obs, P)
    predictors: List[str]
    Z: np.ndarray  # (n_obs, 1 + S), first column ones
    effects: List[str]
    subject_idx: np.ndarray  # (n_obs,)
    subjects: np.ndarray  # (n_subjects,)
    y: np.ndarray  # (n_obs,)
    coords: Dict[str, np.ndarray]


def _levels(values: pd.Series, declared: Tuple[str, ...]) -> List[str]:
    observed = values.astype(str).unique().tolist()
    if not declared:
        return sorted(observed)
    unknown = sorted(set(observed) - set(declared))
    if unknown:
        raise ValueError(f"{values.name}: levels {unknown} not in {list(declared)}")
    return list(declared)


def prepare_data(long: pd.DataFrame, spec: ModelSpecification) -> PreparedData:
    """
    Validates the person-period table and builds the design.

    Notes
    -----
    - Categorical predictors are treatment coded; columns are named
      ``term[level]``.
    - Rows must be complete: models are only fitted to imputed instances.
    """
    absent = [c for c in spec.columns if c not in long.columns]
    if absent:
        raise ValueError(f"{spec.name}: columns not in data: {absent}")
    data = long[spec.columns]
    incomplete = data.columns[data.isna().any()].tolist()
    if incomplete:
        raise ValueError(f"{spec.name}: missing values in {incomplete}")

    blocks = []
    predictors: List[str] = []
    for term in spec.fixed_effects:
        if term in spec.categorical:
            values = data[term].astype(str)
            levels = _levels(data[term], tuple(spec.categorical[term]))
            for level in levels[1:]:
                blocks.append((values == level).to_numpy(dtype=np.float64))
                predictors.append(f"{term}[{level}]")
        else:
            blocks.append(stats_utils.to_float64_array(data[term]))
            predictors.append(term)
    X = np.column_stack(blocks) if blocks else np.empty((len(data), 0))

    slopes = [stats_utils.to_float64_array(data[s]) for s in spec.random_slopes]
    Z = np.column_stack([np.ones(len(data)), *slopes])
    effects = ["intercept", *spec.random_slopes]

    y = stats_utils.to_float64_array(data[spec.outcome])
    if (y < 0).any() or not np.allclose(y, np.round(y)):
        raise ValueError(f"{spec.name}: outcome must be non-negative integers")

    subject_idx, subjects = pd.factorize(data[spec.id_column], sort=True)

    coords = dict(
        obs=np.arange(len(data)),
        predictor=np.array(predictors, dtype=str),
        subject=np.asarray(subjects),
        effect=np.array(effects, dtype=str),
        effect_other=np.array(effects, dtype=str),
    )
    return PreparedData(
        n_obs=len(data),
        n_subjects=len(subjects),
        X=X,
        predictors=predictors,
        Z=Z,
        effects=effects,
        subject_idx=subject_idx.astype(np.int64),
        subjects=np.asarray(subjects),
        y=stats_utils.to_int64_array(np.round(y)),
        coords=coords,
    )


# ---------------------------------------------------------------------
# (2) Model construction
# ---------------------------------------------------------------------


def build_model(
    spec: ModelSpecification,
    long: pd.DataFrame,
    priors: PriorConfig | None = None,
) -> pm.Model:
    """
    Build the PyMC model of one specification on one imputed instance.

    Parameters
    ----------
    spec : ModelSpecification
        Terms and random-effect structure.
    long : pd.DataFrame
        Complete person-period rows of a single imputation.
    priors : PriorConfig, optional
        Prior scales on the log-rate scale.

    Returns
    -------
    model : pm.Model
    """
    priors = priors or PriorConfig()
    prep = prepare_data(long, spec)
    n_effects = len(prep.effects)

    # Centre the intercept prior on the observed log rate.
    base_rate = max(float(prep.y.mean()), 1e-3)

    with pm.Model(coords=prep.coords) as model:
        X = pm.Data("X", prep.X, dims=("obs", "predictor"))
        Z = pm.Data("Z", prep.Z, dims=("obs", "effect"))
        subject_idx = pm.Data("subject_idx", prep.subject_idx, dims=("obs",))

        intercept = pm.Normal("intercept", mu=np.log(base_rate), sigma=priors.sd_intercept)
        beta = pm.Normal("beta", mu=0.0, sigma=priors.sd_beta, dims=("predictor",))

        z = pm.Normal("z_subject", 0.0, 1.0, dims=("subject", "effect"))
        if n_effects == 1:
            sigma = pm.HalfNormal("sigma_re", priors.sd_random, dims=("effect",))
            u = z * sigma
        else:
            chol, corr, sds = pm.LKJCholeskyCov(
                "re_chol",
                n=n_effects,
                eta=priors.lkj_eta,
                sd_dist=pm.HalfNormal.dist(priors.sd_random, shape=n_effects),
                compute_corr=True,
            )
            pm.Deterministic("sigma_re", sds, dims=("effect",))
            pm.Deterministic("corr_re", corr, dims=("effect", "effect_other"))
            u = pt.dot(z, chol.T)

        eta = intercept + pt.dot(X, beta) + (u[subject_idx] * Z).sum(axis=1)
        pm.Poisson("y", mu=pt.exp(eta), observed=prep.y, dims=("obs",))

    logger.debug(
        "%s: %d rows, %d subjects, %d predictors",
        spec.name,
        prep.n_obs,
        prep.n_subjects,
        len(prep.predictors),
    )
    return model
