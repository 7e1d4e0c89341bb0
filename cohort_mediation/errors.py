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
Errors and diagnostic warnings raised by the pipeline stages.

Row-level problems (an indeterminate screen, an unmapped code) become missing
values. Stage-level problems are either warnings whose details are also stored
on the returned artifact, or exceptions when continuing would give wrong
numbers.
"""


class DerivationIndeterminate(UserWarning):
    """Per-wave derivation inputs matched no rule; the result is missing."""


class ImputationNonconvergence(UserWarning):
    """Chained-equation streams did not mix for one or more variables."""


class ModelFitDivergence(UserWarning):
    """Sampler reported divergences or elevated R-hat for a fit."""


class PoolingMismatchError(ValueError):
    """Posterior draws cannot be paired across models or imputations."""


class ConfigurationError(ValueError):
    """Configuration refers to unknown variables or breaks an invariant."""
