"""empcal: Empirical calibration of effect-estimate confidence intervals using control outcomes."""
from importlib.metadata import version

__all__ = ["__version__"]

try:
    __version__ = version("empcal")
except Exception:  # pragma: no cover - package metadata not available in dev
    __version__ = "0.1.0"
