"""
Command-line interface for hinge-model validation.

Usage:
    python -m hinge_validation validate [-c CONFIG]
    python -m hinge_validation simulate [-c CONFIG] [-o DIR] [--seed N]
    python -m hinge_validation recover [-c CONFIG] [-n ITERATIONS] [-o DIR]
    python -m hinge_validation check DATA.csv [-c CONFIG] [-o DIR]
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(name)-38s  %(levelname)-8s  %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _adapter(config):
    from .inference import CmdStanAdapter

    return CmdStanAdapter(
        rhat_threshold=config.rhat_threshold,
        max_divergent_fraction=config.max_divergent_fraction,
    )


# ── subcommands ─────────────────────────────────────────────────────

def cmd_validate(args: argparse.Namespace) -> None:
    """Validate a configuration file without sampling anything."""
    from .config import StudyConfig

    config = StudyConfig.from_yaml(args.config)
    warnings = (
        config.generator.validate(log_warnings=False) + config.validate(log_warnings=False)
    )
    gen = config.generator
    print(f"✅  Config valid  ({gen.group_count} groups, n in [{gen.min_n}, {gen.max_n}], "
          f"changepoint={gen.changepoint:g})")
    print(f"    Sampler: {config.sampler.chains} chains × {config.sampler.iterations} "
          f"iterations ({config.sampler.warmup} warmup)")
    print(f"    PPC: {config.replicate_count} replicates of summary '{config.summary_fn}'")
    stan_file = Path(config.stan_file)
    if stan_file.exists():
        print(f"✅  Stan model found  ({stan_file.name})")
    else:
        print(f"⚠️   Stan model not found at {stan_file}")
    for w in warnings:
        print(f"⚠️   {w}")


def cmd_simulate(args: argparse.Namespace) -> None:
    """Draw one synthetic dataset and write it with its true parameters."""
    from .config import StudyConfig
    from .data_model import save_dataset, save_json
    from .truth_generator import TruthGenerator

    config = StudyConfig.from_yaml(args.config)
    seed = config.seed if args.seed is None else args.seed
    truth = TruthGenerator().generate(config.generator, np.random.default_rng(seed))

    output_dir = Path(args.output or Path(config.results_dir) / "simulated")
    save_dataset(truth.dataset, output_dir / "dataset.csv")
    save_json(
        {
            "seed": seed,
            "hyperparameters": truth.hyperparameters.to_dict(),
            "group_parameters": truth.group_parameters.to_dict(),
        },
        output_dir / "true_parameters.json",
    )
    print(f"✅  Simulated {len(truth.dataset)} observations over "
          f"{truth.dataset.group_count} groups → {output_dir}")


def cmd_recover(args: argparse.Namespace) -> None:
    """Run a calibration (repeated parameter recovery) study."""
    from .calibration import CalibrationStudy
    from .config import StudyConfig

    config = StudyConfig.from_yaml(args.config)
    study = CalibrationStudy(config, _adapter(config), output_dir=args.output)
    result = study.run(n_iterations=args.iterations)

    print(f"✅  Calibration complete: {result.n_completed} iterations, "
          f"{len(result.failures)} failed")
    with pd.option_context("display.width", 120, "display.precision", 3):
        print(result.summary_table.to_string(index=False))
    print(f"    Output: {result.output_dir}")


def cmd_check(args: argparse.Namespace) -> None:
    """Posterior predictive check on an observed CSV dataset."""
    from .config import StudyConfig
    from .data_model import dataset_from_frame, save_json
    from .inference import ModelSpec
    from .posterior_predictive_checks import run_posterior_predictive_check

    config = StudyConfig.from_yaml(args.config)
    changepoint = config.generator.changepoint if args.changepoint is None else args.changepoint
    frame = pd.read_csv(args.data)
    dataset, mapping = dataset_from_frame(
        frame,
        changepoint,
        group_column=args.group_column,
        predictor_column=args.predictor_column,
        response_column=args.response_column,
    )

    output_dir = Path(args.output or Path(config.results_dir) / "ppc")
    result = run_posterior_predictive_check(
        dataset,
        _adapter(config),
        model_spec=ModelSpec(stan_file=config.stan_file),
        sampler_config=config.sampler,
        summary_fn=config.summary_fn,
        replicate_count=config.replicate_count,
        quantiles=config.quantiles,
        seed=config.seed,
        max_workers=config.max_workers,
        timeout=config.timeout,
        output_dir=output_dir,
        show_progress=True,
    )
    save_json({str(label): gid for label, gid in mapping.items()}, output_dir / "group_mapping.json")

    agg = result.report.aggregate
    print(f"✅  Posterior predictive check ({config.summary_fn}, "
          f"{config.replicate_count} replicates)")
    print(f"    Aggregate: observed={agg.empirical:.3f}  "
          f"replicate mean={agg.simulated_mean:.3f}  p={agg.p_value:.3f}")
    extreme = result.report.extreme_groups()
    if extreme:
        labels = {gid: label for label, gid in mapping.items()}
        print(f"⚠️   Extreme groups: {', '.join(str(labels[g]) for g in extreme)}")
    print(f"    Output: {output_dir}")


# ── main entry point ────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="hinge-validation",
        description="Simulation-based validation of the hierarchical hinge model",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Debug-level logging"
    )
    sub = parser.add_subparsers(dest="command")

    # validate
    p_val = sub.add_parser("validate", help="Validate a study config")
    p_val.add_argument("-c", "--config", default=None, help="Path to YAML config")
    p_val.set_defaults(func=cmd_validate)

    # simulate
    p_sim = sub.add_parser("simulate", help="Write one synthetic dataset and its truth")
    p_sim.add_argument("-c", "--config", default=None, help="Path to YAML config")
    p_sim.add_argument("-o", "--output", default=None, help="Output directory")
    p_sim.add_argument("--seed", type=int, default=None, help="Override the config seed")
    p_sim.set_defaults(func=cmd_simulate)

    # recover
    p_rec = sub.add_parser("recover", help="Run a calibration study")
    p_rec.add_argument("-c", "--config", default=None, help="Path to YAML config")
    p_rec.add_argument("-n", "--iterations", type=int, default=None,
                       help="Override n_iterations from the config")
    p_rec.add_argument("-o", "--output", default=None, help="Output directory")
    p_rec.set_defaults(func=cmd_recover)

    # check
    p_chk = sub.add_parser("check", help="Posterior predictive check on a CSV dataset")
    p_chk.add_argument("data", help="CSV with one row per observation")
    p_chk.add_argument("-c", "--config", default=None, help="Path to YAML config")
    p_chk.add_argument("-o", "--output", default=None, help="Output directory")
    p_chk.add_argument("--changepoint", type=float, default=None,
                       help="Override the config changepoint")
    p_chk.add_argument("--group-column", default="group")
    p_chk.add_argument("--predictor-column", default="predictor")
    p_chk.add_argument("--response-column", default="response")
    p_chk.set_defaults(func=cmd_check)

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    args.func(args)
