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
Command line entry point.

    python -m cohort_mediation run --input cohort.csv --output results/
    python -m cohort_mediation impute --input cohort.csv --output results/
    python -m cohort_mediation summarise --output results/
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .config import ImputationConfig, PipelineConfig, SamplerConfig
from .pipeline import run_imputation, run_pipeline

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str, log_file: Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)
    logging.captureWarnings(True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cohort_mediation",
        description="Multiple imputation, Bayesian multilevel models and mediation.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--output", type=Path, required=True, help="Output directory")
        p.add_argument("--log-level", default="info")
        p.add_argument("--log-file", action="store_true", help="Also log to <output>/pipeline.log")

    def imputation_args(p: argparse.ArgumentParser) -> None:
        defaults = ImputationConfig()
        p.add_argument("--input", type=Path, help="Raw cohort CSV")
        p.add_argument("--imputations", type=int, default=defaults.n_imputations)
        p.add_argument("--iterations", type=int, default=defaults.iterations)
        p.add_argument("--seed", type=int, default=defaults.seed, help="Imputation seed")
        p.add_argument("--force", action="store_true", help="Re-run imputation")

    def sampler_args(p: argparse.ArgumentParser) -> None:
        defaults = SamplerConfig()
        p.add_argument("--draws", type=int, default=defaults.draws)
        p.add_argument("--tune", type=int, default=defaults.tune)
        p.add_argument("--chains", type=int, default=defaults.chains)
        p.add_argument("--cores", type=int, default=defaults.cores)
        p.add_argument("--workers", type=int, default=defaults.workers)
        p.add_argument("--target-accept", type=float, default=defaults.target_accept)
        p.add_argument("--sampler-seed", type=int, default=defaults.seed, help="MCMC seed")

    run = sub.add_parser("run", help="Run the full pipeline")
    common(run)
    imputation_args(run)
    sampler_args(run)

    imp = sub.add_parser("impute", help="Derive and impute only")
    common(imp)
    imputation_args(imp)

    summ = sub.add_parser("summarise", help="Rebuild tables from stored fits")
    common(summ)
    sampler_args(summ)
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    config = PipelineConfig(output_dir=args.output, input_path=getattr(args, "input", None))
    if hasattr(args, "imputations"):
        config = replace(
            config,
            imputation=replace(
                config.imputation,
                n_imputations=args.imputations,
                iterations=args.iterations,
                seed=args.seed,
            ),
        )
    if hasattr(args, "draws"):
        config = replace(
            config,
            sampler=replace(
                config.sampler,
                draws=args.draws,
                tune=args.tune,
                chains=args.chains,
                cores=args.cores,
                workers=args.workers,
                target_accept=args.target_accept,
                seed=args.sampler_seed,
            ),
        )
    return config


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.output / "pipeline.log" if args.log_file else None)
    config = config_from_args(args)
    logger = logging.getLogger("cohort_mediation")

    if args.command == "impute":
        result = run_imputation(config, force=args.force)
        logger.info("%d imputations available at %s", result.n_imputations, config.imputation_path)
        return 0

    if args.command == "run" and args.force and config.imputation_path.exists():
        config.imputation_path.unlink()

    result = run_pipeline(config, allow_fit=args.command == "run")
    mediation = result.tables["mediation"]
    if not mediation.empty:
        logger.info(
            "Mediation:\n%s",
            mediation[["model", "mediators", "indirect_rr", "percent_mediated"]].to_string(
                index=False
            ),
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
