from __future__ import annotations

from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

ArrayLike = Union[float, Sequence[float], np.ndarray]


def _recycle(values: ArrayLike, n: int) -> np.ndarray:
    arr = np.atleast_1d(np.asarray(values, dtype=float))
    if arr.size == 0:
        raise ValueError("Cannot recycle an empty sequence")
    return np.resize(arr, n)


def simulate_controls(
    n: int,
    mean: float = 0.0,
    sd: float = 0.1,
    se_log_rr: Optional[ArrayLike] = None,
    true_log_rr: ArrayLike = 0.0,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Simulate control estimates with Gaussian systematic error.

    Each control draws a systematic error ``N(mean, sd)`` and then a log estimate
    around ``true_log_rr`` plus that error with its own standard error. Standard
    errors default to ``Uniform(0.01, 0.2)``; ``true_log_rr`` and ``se_log_rr`` are
    recycled to length ``n``.
    """
    rng = np.random.default_rng(seed)
    if se_log_rr is None:
        se = rng.uniform(0.01, 0.2, size=n)
    else:
        se = _recycle(se_log_rr, n)
    truth = _recycle(true_log_rr, n)
    theta = rng.normal(mean, sd, size=n)
    log_rr = rng.normal(theta + truth, se)
    return pd.DataFrame({"log_rr": log_rr, "se_log_rr": se, "true_log_rr": truth})
