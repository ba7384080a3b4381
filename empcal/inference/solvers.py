"""Numerical strategies used by the fitter and the calibrator.

Both consumers accept these as arguments so they can be swapped for other
optimizers, root finders or test doubles.
"""
from __future__ import annotations

from typing import Callable, Sequence

import numpy as np
from scipy.optimize import OptimizeResult, brentq, minimize

Objective = Callable[[np.ndarray], float]
Minimizer = Callable[[Objective, np.ndarray], OptimizeResult]
RootFinder = Callable[[Callable[[float], float], float, float], float]


def bfgs_minimizer(
    parscale: Sequence[float],
    max_iter: int = 1000,
    gtol: float = 1e-5,
) -> Minimizer:
    """BFGS on the rescaled vector ``x / parscale``, reported on the original scale."""
    scale = np.asarray(parscale, dtype=float)

    def _minimize(objective: Objective, x0: np.ndarray) -> OptimizeResult:
        result = minimize(
            lambda scaled: objective(scaled * scale),
            np.asarray(x0, dtype=float) / scale,
            method="BFGS",
            options={"maxiter": max_iter, "gtol": gtol, "disp": False},
        )
        result.x = result.x * scale
        return result

    return _minimize


def numerical_hessian(func: Objective, x: np.ndarray, steps: Sequence[float]) -> np.ndarray:
    """Central finite-difference Hessian of ``func`` at ``x`` with one step size per parameter."""
    x = np.asarray(x, dtype=float)
    h = np.asarray(steps, dtype=float)
    n = x.size
    hess = np.zeros((n, n))
    for i in range(n):
        for j in range(i, n):
            ei = np.zeros(n)
            ej = np.zeros(n)
            ei[i] = h[i]
            ej[j] = h[j]
            value = (
                func(x + ei + ej)
                - func(x + ei - ej)
                - func(x - ei + ej)
                + func(x - ei - ej)
            ) / (4.0 * h[i] * h[j])
            hess[i, j] = value
            hess[j, i] = value
    return hess


def brent_root(func: Callable[[float], float], lower: float, upper: float) -> float:
    return float(brentq(func, lower, upper))
