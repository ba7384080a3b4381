from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from empcal.config import FitConfig
from empcal.inference.solvers import Minimizer, bfgs_minimizer, numerical_hessian

logger = logging.getLogger(__name__)

PARAMETER_NAMES = ("mean_intercept", "mean_slope", "log_sd_intercept", "log_sd_slope")

# Returned in place of a non-finite negative log-likelihood so the optimizer
# sees a large finite value and moves away from the region.
NONFINITE_NLL = 99999.0

BFGS_PRECISION_LOSS_STATUS = 2


class InsufficientDataError(ValueError):
    """No usable control estimates remain after sanitization."""


class ModelFitError(RuntimeError):
    """The systematic error model could not be fitted or its covariance inverted."""


@dataclass(frozen=True, eq=False)
class SystematicErrorModel:
    """Systematic error as a function of the true log effect size.

    The mean of the error is ``mean_intercept + mean_slope * x`` and its standard
    deviation is ``exp(log_sd_intercept + log_sd_slope * x)``.
    """

    mean_intercept: float
    mean_slope: float
    log_sd_intercept: float
    log_sd_slope: float
    covariance: np.ndarray | None = None
    lb95: np.ndarray | None = None
    ub95: np.ndarray | None = None

    @classmethod
    def from_params(cls, params: Sequence[float], **uncertainty) -> "SystematicErrorModel":
        values = [float(p) for p in params]
        if len(values) != 4:
            raise ValueError(f"Expected 4 parameters, got {len(values)}")
        return cls(*values, **uncertainty)

    @property
    def params(self) -> np.ndarray:
        return np.array([self.mean_intercept, self.mean_slope, self.log_sd_intercept, self.log_sd_slope])

    @property
    def stderr(self) -> np.ndarray | None:
        if self.covariance is None:
            return None
        return np.sqrt(np.diag(self.covariance))

    def bias(self, x):
        return self.mean_intercept + self.mean_slope * np.asarray(x, dtype=float)

    def noise_sd(self, x):
        return np.exp(self.log_sd_intercept + self.log_sd_slope * np.asarray(x, dtype=float))

    def to_frame(self) -> pd.DataFrame:
        table = pd.DataFrame({"estimate": self.params}, index=pd.Index(PARAMETER_NAMES, name="parameter"))
        if self.covariance is not None:
            table["stderr"] = self.stderr
            table["lb95"] = self.lb95
            table["ub95"] = self.ub95
        return table


def _as_array(values) -> np.ndarray:
    return np.asarray(pd.to_numeric(pd.Series(values, dtype=object), errors="coerce"), dtype=float)


def sanitize_controls(
    log_rr,
    se_log_rr,
    true_log_rr,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Drop controls whose estimate or standard error is infinite or missing.

    Each removal step logs a warning and works on the output of the previous one.
    """
    log_rr = _as_array(log_rr)
    se_log_rr = _as_array(se_log_rr)
    true_log_rr = _as_array(true_log_rr)
    if not (log_rr.size == se_log_rr.size == true_log_rr.size):
        raise ValueError(
            f"Input lengths differ: log_rr={log_rr.size}, se_log_rr={se_log_rr.size}, "
            f"true_log_rr={true_log_rr.size}"
        )

    passes = (
        ("infinite standard error", lambda lr, se: np.isinf(se)),
        ("NA standard error", lambda lr, se: np.isnan(se)),
        ("infinite log_rr", lambda lr, se: np.isinf(lr)),
        ("NA log_rr", lambda lr, se: np.isnan(lr)),
    )
    for label, predicate in passes:
        drop = predicate(log_rr, se_log_rr)
        if drop.any():
            logger.warning(
                "%d estimate(s) with %s detected. Removing before fitting error model",
                int(drop.sum()),
                label,
            )
            keep = ~drop
            log_rr, se_log_rr, true_log_rr = log_rr[keep], se_log_rr[keep], true_log_rr[keep]
    return log_rr, se_log_rr, true_log_rr


def gaussian_product(mu1, mu2, sd1, sd2):
    """Density at ``mu1`` of the convolution of N(mu2, sd2) with zero-mean noise of sd ``sd1``."""
    var = sd1**2 + sd2**2
    return (2 * np.pi) ** (-0.5) * var ** (-0.5) * np.exp(-((mu1 - mu2) ** 2) / (2 * var))


def neg_log_likelihood(
    theta: np.ndarray,
    log_rr: np.ndarray,
    se_log_rr: np.ndarray,
    true_log_rr: np.ndarray,
) -> float:
    mean = theta[0] + theta[1] * true_log_rr
    sd = np.exp(theta[2] + theta[3] * true_log_rr)
    with np.errstate(divide="ignore", over="ignore", invalid="ignore"):
        result = -np.sum(np.log(gaussian_product(log_rr, mean, se_log_rr, sd)))
    if not np.isfinite(result):
        return NONFINITE_NLL
    return float(result)


def _check_optimum(result) -> None:
    if not np.all(np.isfinite(result.x)):
        raise ModelFitError(f"Optimizer returned a non-finite optimum: {result.get('message', '')}")
    if result.get("success", True):
        return
    status = result.get("status")
    if status == BFGS_PRECISION_LOSS_STATUS:
        logger.warning("Optimizer stopped early: %s", result.get("message", ""))
        return
    raise ModelFitError(f"Optimizer did not converge (status={status}): {result.get('message', '')}")


def fit_systematic_error_model(
    log_rr,
    se_log_rr,
    true_log_rr,
    estimate_covariance_matrix: bool | None = None,
    config: FitConfig | None = None,
    minimizer: Minimizer | None = None,
) -> SystematicErrorModel:
    """Fit the systematic error model to control estimates with known true effect sizes.

    The mean and log standard deviation of the error distribution are linear in the
    true effect size. Parameters are found by maximum likelihood; when
    ``estimate_covariance_matrix`` is set the inverse of the numerical Hessian gives
    their covariance and 95% confidence bounds. It defaults to
    ``config.estimate_covariance_matrix``.

    Raises:
        InsufficientDataError: If no controls survive sanitization.
        ModelFitError: If the optimizer fails or the Hessian is singular.
    """
    config = config or FitConfig()
    if estimate_covariance_matrix is None:
        estimate_covariance_matrix = config.estimate_covariance_matrix
    log_rr, se_log_rr, true_log_rr = sanitize_controls(log_rr, se_log_rr, true_log_rr)
    if log_rr.size == 0:
        raise InsufficientDataError("No control estimates left to fit the systematic error model")

    def objective(theta: np.ndarray) -> float:
        return neg_log_likelihood(theta, log_rr, se_log_rr, true_log_rr)

    if minimizer is None:
        minimizer = bfgs_minimizer(config.parscale, max_iter=config.max_iter, gtol=config.gtol)
    result = minimizer(objective, np.asarray(config.start, dtype=float))
    _check_optimum(result)
    theta = np.asarray(result.x, dtype=float)
    logger.debug("Fitted systematic error model on %d controls: %s", log_rr.size, theta)

    if not estimate_covariance_matrix:
        return SystematicErrorModel.from_params(theta)

    steps = config.hessian_step * np.asarray(config.parscale, dtype=float)
    hessian = numerical_hessian(objective, theta, steps)
    try:
        covariance = np.linalg.inv(hessian)
    except np.linalg.LinAlgError as exc:
        raise ModelFitError("Hessian is singular; the controls do not identify the error model") from exc
    stderr = np.sqrt(np.diag(covariance))
    return SystematicErrorModel.from_params(
        theta,
        covariance=covariance,
        lb95=theta + norm.ppf(0.025) * stderr,
        ub95=theta + norm.ppf(0.975) * stderr,
    )
