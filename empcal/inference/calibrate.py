from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from empcal.config import BracketConfig, CalibrationConfig
from empcal.inference.model import SystematicErrorModel
from empcal.inference.solvers import RootFinder, brent_root

logger = logging.getLogger(__name__)

# Signed stand-in for the ratio term when the combined standard deviation
# overflows, so the bracket search still sees which side of the root it is on.
DENOMINATOR_EPS = 1e-10

RESULT_COLUMNS = ["log_rr", "log_lb95_rr", "log_ub95_rr", "se_log_rr"]


@dataclass
class CalibratedEstimate:
    log_rr: float
    log_lb95_rr: float
    log_ub95_rr: float
    se_log_rr: float


def calibration_equation(x: float, z: float, log_rr: float, se: float, model: SystematicErrorModel) -> float:
    numerator = float(model.bias(x)) - log_rr
    with np.errstate(over="ignore"):
        sd = model.noise_sd(x)
        denominator = float(np.sqrt(sd * sd + se * se))
    if np.isinf(denominator):
        if numerator > 0:
            return z + DENOMINATOR_EPS
        return z - DENOMINATOR_EPS
    return z + numerator / denominator


def _find_bracket(
    func,
    slope_log_sd: float,
    bracket: BracketConfig,
) -> Tuple[float, float] | None:
    if slope_log_sd > 0:
        lower = upper = bracket.lower
        while func(upper) < 0 and upper < bracket.upper:
            upper += bracket.step
        if upper == lower or upper >= bracket.upper:
            return None
    else:
        upper = lower = bracket.upper
        while func(lower) > 0 and lower > bracket.lower:
            lower -= bracket.step
        if upper == lower or lower <= bracket.lower:
            return None
    return lower, upper


def log_bound(
    ci_width: float,
    lower_bound: bool,
    log_rr: float,
    se: float,
    model: SystematicErrorModel,
    bracket: BracketConfig | None = None,
    root_finder: RootFinder | None = None,
) -> float:
    """Solve for the true log effect at which the calibrated bound of width ``ci_width`` sits.

    Returns NaN when no sign change is found inside the bracket search range.
    """
    bracket = bracket or BracketConfig()
    root_finder = root_finder or brent_root
    z = norm.ppf((1 - ci_width) / 2)
    if lower_bound:
        z = -z

    def func(x: float) -> float:
        return calibration_equation(x, z, log_rr, se, model)

    interval = _find_bracket(func, model.log_sd_slope, bracket)
    if interval is None:
        logger.debug("No bracket found for log_rr=%s, se=%s, z=%s", log_rr, se, z)
        return np.nan
    return root_finder(func, interval[0], interval[1])


def calibrate_estimate(
    log_rr: float,
    se_log_rr: float,
    model: SystematicErrorModel,
    ci_width: float = 0.95,
    bracket: BracketConfig | None = None,
    root_finder: RootFinder | None = None,
) -> CalibratedEstimate:
    if not (np.isfinite(log_rr) and np.isfinite(se_log_rr)):
        return CalibratedEstimate(np.nan, np.nan, np.nan, np.nan)
    point = log_bound(0, True, log_rr, se_log_rr, model, bracket, root_finder)
    lb = log_bound(ci_width, True, log_rr, se_log_rr, model, bracket, root_finder)
    ub = log_bound(ci_width, False, log_rr, se_log_rr, model, bracket, root_finder)
    with np.errstate(divide="ignore", invalid="ignore"):
        se = (lb - ub) / (2 * norm.ppf((1 - ci_width) / 2))
    return CalibratedEstimate(float(point), float(lb), float(ub), float(se))


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return np.nan


def calibrate_confidence_interval(
    log_rr,
    se_log_rr,
    model: SystematicErrorModel,
    ci_width: float | None = None,
    config: CalibrationConfig | None = None,
    root_finder: RootFinder | None = None,
) -> pd.DataFrame:
    """Compute calibrated point estimates and confidence intervals.

    Each estimate is corrected for the systematic error described by ``model``.
    Rows are returned in input order; rows with a missing or non-finite estimate
    or standard error, and bounds with no solution, are NaN. ``ci_width`` defaults
    to ``config.ci_width``.
    """
    config = config or CalibrationConfig()
    if ci_width is None:
        ci_width = config.ci_width
    if not 0.0 <= ci_width <= 1.0:
        raise ValueError(f"ci_width must lie in [0, 1], got {ci_width}")
    index = log_rr.index if isinstance(log_rr, pd.Series) else None
    estimates = [_to_float(v) for v in log_rr]
    errors = [_to_float(v) for v in se_log_rr]
    if len(estimates) != len(errors):
        raise ValueError(f"Input lengths differ: log_rr={len(estimates)}, se_log_rr={len(errors)}")

    def _run(pair: Tuple[float, float]) -> Dict[str, float]:
        return asdict(
            calibrate_estimate(pair[0], pair[1], model, ci_width, config.bracket, root_finder)
        )

    rows: List[Dict[str, float]] = []
    with ThreadPoolExecutor(max_workers=max(1, config.jobs)) as executor:
        for row in executor.map(_run, zip(estimates, errors)):
            rows.append(row)
    return pd.DataFrame(rows, columns=RESULT_COLUMNS, index=index)
