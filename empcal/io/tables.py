from __future__ import annotations

from pathlib import Path
from typing import Set

import pandas as pd

CONTROL_COLUMNS = {"log_rr", "se_log_rr", "true_log_rr"}
ESTIMATE_COLUMNS = {"log_rr", "se_log_rr"}


def _read_table(path: Path, required: Set[str]) -> pd.DataFrame:
    df = pd.read_csv(path)
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"Missing columns {sorted(missing)} in {path}")
    for column in required:
        df[column] = pd.to_numeric(df[column], errors="coerce")
    return df


def read_controls(path: Path) -> pd.DataFrame:
    return _read_table(path, CONTROL_COLUMNS)


def read_estimates(path: Path) -> pd.DataFrame:
    return _read_table(path, ESTIMATE_COLUMNS)
