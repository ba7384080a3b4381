from empcal.inference.calibrate import CalibratedEstimate, calibrate_confidence_interval, calibrate_estimate
from empcal.inference.model import (
    InsufficientDataError,
    ModelFitError,
    SystematicErrorModel,
    fit_systematic_error_model,
)
from empcal.inference.traditional import compute_traditional_ci

__all__ = [
    "CalibratedEstimate",
    "InsufficientDataError",
    "ModelFitError",
    "SystematicErrorModel",
    "calibrate_confidence_interval",
    "calibrate_estimate",
    "compute_traditional_ci",
    "fit_systematic_error_model",
]
