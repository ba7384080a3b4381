from empcal.io.tables import read_controls, read_estimates

__all__ = ["read_controls", "read_estimates"]
