from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from empcal.config import RunConfig, load_run_config
from empcal.inference.calibrate import calibrate_confidence_interval
from empcal.inference.model import SystematicErrorModel, fit_systematic_error_model
from empcal.inference.traditional import compute_traditional_ci
from empcal.io.tables import read_controls, read_estimates
from empcal.simulate import simulate_controls

console = Console()

DEFAULT_CONFIG_PATH = Path("default_config.yaml")


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _load_config(args: argparse.Namespace, overrides: dict) -> RunConfig:
    return load_run_config(
        DEFAULT_CONFIG_PATH,
        Path(args.config) if getattr(args, "config", None) else None,
        overrides,
    )


def _model_table(model: SystematicErrorModel) -> Table:
    frame = model.to_frame()
    table = Table(title="Systematic error model")
    table.add_column("parameter")
    for column in frame.columns:
        table.add_column(column, justify="right")
    for name, row in frame.iterrows():
        table.add_row(name, *[f"{value:.4f}" for value in row])
    return table


def _fit_from_controls(path: Path, config: RunConfig) -> SystematicErrorModel:
    controls = read_controls(path)
    console.log(f"Fitting systematic error model on {len(controls)} controls")
    return fit_systematic_error_model(
        controls["log_rr"],
        controls["se_log_rr"],
        controls["true_log_rr"],
        estimate_covariance_matrix=config.fit.estimate_covariance_matrix,
        config=config.fit,
    )


def cmd_simulate(args: argparse.Namespace) -> None:
    config = _load_config(
        args,
        {
            "seed": args.seed,
            "simulation.n": args.n,
            "simulation.mean": args.mean,
            "simulation.sd": args.sd,
            "simulation.true_log_rr": args.true_log_rr,
        },
    )
    sim = config.simulation
    controls = simulate_controls(
        sim.n,
        mean=sim.mean,
        sd=sim.sd,
        true_log_rr=sim.true_log_rr,
        seed=config.seed,
    )
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    controls.to_csv(out_path, index=False)
    console.log(f"Wrote {len(controls)} simulated controls to {out_path}")


def cmd_fit(args: argparse.Namespace) -> None:
    config = _load_config(args, {"fit.estimate_covariance_matrix": False if args.no_covariance else None})
    model = _fit_from_controls(Path(args.controls), config)
    console.print(_model_table(model))


def cmd_calibrate(args: argparse.Namespace) -> None:
    config = _load_config(
        args,
        {
            "calibration.ci_width": args.ci_width,
            "calibration.jobs": args.jobs,
            "fit.estimate_covariance_matrix": False,
        },
    )
    model = _fit_from_controls(Path(args.controls), config)
    console.print(_model_table(model))

    estimates = read_estimates(Path(args.estimates))
    ci_width = config.calibration.ci_width
    calibrated = calibrate_confidence_interval(
        estimates["log_rr"],
        estimates["se_log_rr"],
        model,
        ci_width=ci_width,
        config=config.calibration,
    )
    out = estimates.copy()
    for column in calibrated.columns:
        out[f"calibrated_{column}"] = calibrated[column].to_numpy()
    if args.traditional:
        traditional = compute_traditional_ci(estimates["log_rr"], estimates["se_log_rr"], ci_width)
        for key, values in traditional.items():
            out[key] = values
    n_missing = int(calibrated["log_rr"].isna().sum())
    if n_missing:
        console.log(f"{n_missing} estimate(s) could not be calibrated")
    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out.to_csv(out_path, index=False)
    console.log(f"Wrote calibrated estimates to {out_path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="empcal")
    parser.add_argument("--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    simulate = sub.add_parser("simulate", help="Simulate control estimates")
    simulate.add_argument("--n", type=int, help="Number of controls")
    simulate.add_argument("--mean", type=float)
    simulate.add_argument("--sd", type=float)
    simulate.add_argument("--true-log-rr", type=float, nargs="+")
    simulate.add_argument("--seed", type=int)
    simulate.add_argument("--out", required=True)
    simulate.add_argument("--config")
    simulate.set_defaults(func=cmd_simulate)

    fit = sub.add_parser("fit", help="Fit a systematic error model to controls")
    fit.add_argument("--controls", required=True)
    fit.add_argument("--no-covariance", action="store_true")
    fit.add_argument("--config")
    fit.set_defaults(func=cmd_fit)

    calibrate = sub.add_parser("calibrate", help="Calibrate confidence intervals of estimates")
    calibrate.add_argument("--controls", required=True)
    calibrate.add_argument("--estimates", required=True)
    calibrate.add_argument("--out", required=True)
    calibrate.add_argument("--ci-width", type=float)
    calibrate.add_argument("--jobs", type=int)
    calibrate.add_argument("--traditional", action="store_true")
    calibrate.add_argument("--config")
    calibrate.set_defaults(func=cmd_calibrate)

    return parser


def main(argv: List[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
