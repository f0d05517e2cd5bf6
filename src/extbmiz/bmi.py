"""BMI from paired weight (kg) and height (cm)."""

from typing import Optional

import numpy as np
import pandas as pd

from .columns import is_missing
from .exceptions import MissingMeasurement


def calc_bmi(weight: Optional[float], height: Optional[float]) -> float:
    """
    Calculate BMI = weight / (height / 100)².

    Args:
        weight: Weight in kg
        height: Height in cm

    Returns:
        BMI in kg/m²

    Raises:
        MissingMeasurement: If either value is missing or non-positive
    """
    if is_missing(weight):
        raise MissingMeasurement("BMI requires a weight", field="wt")
    if is_missing(height):
        raise MissingMeasurement("BMI requires a height", field="ht")
    weight, height = float(weight), float(height)
    if weight <= 0:
        raise MissingMeasurement(f"Weight must be positive, got {weight}", field="wt")
    if height <= 0:
        raise MissingMeasurement(f"Height must be positive, got {height}", field="ht")
    return weight / (height / 100.0) ** 2


def simple_bmi(
    wide_df: pd.DataFrame, wt_col: str = "wt", ht_col: str = "ht", bmi_col: str = "bmi"
) -> pd.DataFrame:
    """
    Add a BMI column to a wide table.

    Rows missing either measurement (or with non-positive values) get NaN.
    The input frame is not modified.

    Args:
        wide_df: Wide table, e.g. the output of ``longwide``
        wt_col: Weight column in kg
        ht_col: Height column in cm
        bmi_col: Name of the BMI column to write

    Returns:
        Copy of ``wide_df`` with ``bmi_col`` added
    """
    for col in (wt_col, ht_col):
        if col not in wide_df.columns:
            raise ValueError(f"Column '{col}' does not exist in DataFrame")

    weight = pd.to_numeric(wide_df[wt_col], errors="coerce").to_numpy(dtype=np.float64)
    height = pd.to_numeric(wide_df[ht_col], errors="coerce").to_numpy(dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        usable = (weight > 0) & (height > 0)
        bmi = np.where(usable, weight / (height / 100.0) ** 2, np.nan)

    out = wide_df.copy()
    out[bmi_col] = bmi
    return out
