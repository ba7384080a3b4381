from __future__ import annotations

from typing import Dict

import numpy as np
from scipy.stats import norm


def compute_traditional_ci(log_rr, se_log_rr, ci_width: float = 0.95) -> Dict[str, object]:
    """Uncalibrated point estimate and confidence interval on the ratio scale.

    Scalars in give floats out; array-likes give arrays.
    """
    log_rr = np.asarray(log_rr, dtype=float)
    se_log_rr = np.asarray(se_log_rr, dtype=float)
    z = norm.ppf(1 - (1 - ci_width) / 2)
    out = {
        "rr": np.exp(log_rr),
        "lb": np.exp(log_rr - z * se_log_rr),
        "ub": np.exp(log_rr + z * se_log_rr),
    }
    if log_rr.ndim == 0 and se_log_rr.ndim == 0:
        return {key: float(value) for key, value in out.items()}
    return out
