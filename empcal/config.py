from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class FitConfig(BaseModel):
    start: List[float] = Field(
        default_factory=lambda: [0.0, 1.0, -2.0, 0.0],
        description="Starting values for mean intercept, mean slope, log-sd intercept, log-sd slope.",
    )
    parscale: List[float] = Field(
        default_factory=lambda: [1.0, 1.0, 10.0, 10.0],
        description="Per-parameter scaling applied by the optimizer.",
    )
    max_iter: int = Field(1000, description="Maximum optimizer iterations.")
    gtol: float = Field(1e-5, description="Gradient norm tolerance for BFGS.")
    hessian_step: float = Field(1e-3, description="Finite-difference step, in parscale units, for the Hessian.")
    estimate_covariance_matrix: bool = Field(True, description="Compute parameter covariance from the Hessian.")

    @field_validator("start", "parscale")
    @classmethod
    def _four_parameters(cls, value: List[float]) -> List[float]:
        if len(value) != 4:
            raise ValueError(f"Expected 4 values, got {len(value)}")
        return value


class BracketConfig(BaseModel):
    lower: float = Field(-100.0, description="Lower end of the bracket grid search.")
    upper: float = Field(100.0, description="Upper end of the bracket grid search.")
    step: float = Field(1.0, description="Grid step of the bracket search.")

    @field_validator("step")
    @classmethod
    def _positive_step(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Bracket step must be positive")
        return value


class CalibrationConfig(BaseModel):
    ci_width: float = Field(0.95, ge=0.0, le=1.0, description="Width of the calibrated confidence interval.")
    jobs: int = Field(1, description="Worker threads for per-estimate root solving.")
    bracket: BracketConfig = Field(default_factory=BracketConfig)


class SimulationConfig(BaseModel):
    n: int = Field(150, description="Number of simulated controls.")
    mean: float = Field(0.0, description="Mean of the systematic error.")
    sd: float = Field(0.1, description="Standard deviation of the systematic error.")
    true_log_rr: List[float] = Field(default_factory=lambda: [0.0], description="True log effect sizes, recycled.")


class RunConfig(BaseModel):
    seed: Optional[int] = 42
    fit: FitConfig = Field(default_factory=FitConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)


def _merge(base: Dict[str, object], update: Dict[str, object]) -> Dict[str, object]:
    out = dict(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_run_config(
    default_path: Path | None,
    override_path: Path | None = None,
    cli_overrides: Dict[str, object] | None = None,
) -> RunConfig:
    """Build a RunConfig from a default YAML file, an optional override file and CLI values.

    CLI overrides use dotted keys (``calibration.ci_width``); ``None`` values are ignored.
    """
    data: Dict[str, object] = {}
    if default_path is not None and default_path.exists():
        data = yaml.safe_load(default_path.read_text()) or {}
    if override_path:
        override = yaml.safe_load(override_path.read_text()) or {}
        data = _merge(data, override)
    for key, value in (cli_overrides or {}).items():
        if value is None:
            continue
        nested: Dict[str, object] = {}
        cursor = nested
        parts = key.split(".")
        for part in parts[:-1]:
            cursor[part] = {}
            cursor = cursor[part]
        cursor[parts[-1]] = value
        data = _merge(data, nested)
    return RunConfig(**data)
