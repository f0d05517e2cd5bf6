"""
CDC growth reference table: loading, validation and LMS interpolation.

The table is loaded once per process with ``load_reference_table`` and then
passed explicitly to every computation. Its arrays are read-only, so a single
instance can be shared by any number of worker threads.
"""

import logging
from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import InvalidAge, InvalidSex, ReferenceTableLoadError
from .models import LMSParameters

logger = logging.getLogger(__name__)

MEASURES = ("weight", "height", "bmi")
SEXES = (1, 2)
KEY_COLUMNS = ["sex", "agemos", "measure"]
REQUIRED_COLUMNS = KEY_COLUMNS + ["L", "M", "S"]
PERCENTILE_COLUMNS = ["p95", "p97"]
DEFAULT_REFERENCE_FILE = "cdc_reference.csv"

CURVE_DTYPE = np.dtype(
    [
        ("age", "f8"),
        ("L", "f8"),
        ("M", "f8"),
        ("S", "f8"),
        ("p95", "f8"),
        ("p97", "f8"),
    ]
)


def _get_reference_data_path() -> str:
    """Get the package holding the bundled reference data."""
    return "extbmiz.data"


class ReferenceTable:
    """
    Immutable LMS reference curves keyed by (sex, measure).

    Each curve is a structured array sorted by age in months with fields
    ``age, L, M, S, p95, p97`` (p95/p97 are NaN except for BMI).

    Args:
        curves: (sex, measure) -> structured array with ``CURVE_DTYPE`` fields

    Raises:
        ReferenceTableLoadError: If a (sex, measure) curve is missing or empty
    """

    def __init__(self, curves: Dict[Tuple[int, str], np.ndarray]):
        missing = [
            f"{measure}/sex={sex}"
            for sex in SEXES
            for measure in MEASURES
            if (sex, measure) not in curves or len(curves[(sex, measure)]) == 0
        ]
        if missing:
            raise ReferenceTableLoadError(
                f"Reference table is missing curves for: {', '.join(missing)}"
            )

        self._curves: Dict[Tuple[int, str], np.ndarray] = {}
        for (sex, measure), curve in curves.items():
            curve = np.sort(np.asarray(curve).astype(CURVE_DTYPE), order="age")
            curve.flags.writeable = False
            self._curves[(int(sex), measure)] = curve

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "ReferenceTable":
        """
        Build a table from one row per (sex, agemos, measure).

        Args:
            df: Columns sex, agemos, measure, L, M, S and, for BMI rows, p95, p97

        Raises:
            ReferenceTableLoadError: On any malformed row
        """
        missing_cols = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing_cols:
            raise ReferenceTableLoadError(
                f"Reference table is missing required columns: {missing_cols}"
            )
        if df.empty:
            raise ReferenceTableLoadError("Reference table is empty")

        df = df.copy()
        df["measure"] = df["measure"].astype(str).str.strip().str.lower()
        numeric_cols = ["sex", "agemos", "L", "M", "S"]
        for col in numeric_cols + [c for c in PERCENTILE_COLUMNS if c in df.columns]:
            df[col] = pd.to_numeric(df[col], errors="coerce")

        _check_rows(
            ~np.isfinite(df[numeric_cols].to_numpy(dtype=np.float64)).all(axis=1),
            df.index,
            "missing or non-numeric sex/agemos/L/M/S",
        )
        _check_rows(df["S"] <= 0, df.index, "S must be > 0")
        _check_rows(df["M"] <= 0, df.index, "M must be > 0")
        _check_rows(df["agemos"] < 0, df.index, "negative agemos")
        _check_rows(~df["sex"].isin(SEXES), df.index, f"sex must be one of {SEXES}")
        _check_rows(
            ~df["measure"].isin(MEASURES), df.index, f"measure must be one of {MEASURES}"
        )
        _check_rows(
            df.duplicated(subset=KEY_COLUMNS, keep=False),
            df.index,
            "duplicate (sex, agemos, measure) key",
        )

        is_bmi = df["measure"] == "bmi"
        if is_bmi.any():
            missing_pct = [c for c in PERCENTILE_COLUMNS if c not in df.columns]
            if missing_pct:
                raise ReferenceTableLoadError(
                    f"Reference table has BMI rows but no {missing_pct} columns"
                )
            pct = df[PERCENTILE_COLUMNS].to_numpy(dtype=np.float64)
            _check_rows(
                is_bmi & ~np.isfinite(pct).all(axis=1),
                df.index,
                "missing or non-numeric p95/p97 on BMI row",
            )
            _check_rows(
                is_bmi & ((df["p95"] <= 0) | (df["p97"] <= df["p95"])),
                df.index,
                "BMI rows need 0 < p95 < p97",
            )

        curves = {}
        for (sex, measure), group in df.groupby(["sex", "measure"]):
            curve = np.zeros(len(group), dtype=CURVE_DTYPE)
            curve["age"] = group["agemos"].to_numpy(dtype=np.float64)
            for col in ("L", "M", "S"):
                curve[col] = group[col].to_numpy(dtype=np.float64)
            for col in PERCENTILE_COLUMNS:
                curve[col] = (
                    group[col].to_numpy(dtype=np.float64)
                    if measure == "bmi"
                    else np.nan
                )
            curves[(int(sex), measure)] = curve
        return cls(curves)

    def curve(self, sex: int, measure: str) -> np.ndarray:
        """Read-only structured array for one sex and measure."""
        try:
            return self._curves[(sex, measure)]
        except (KeyError, TypeError):
            raise InvalidSex(
                f"No {measure} reference curve for sex code {sex!r}", field="sex"
            ) from None

    def age_range(self, sex: int, measure: str) -> Tuple[float, float]:
        """Tabulated (min, max) age in months for one sex and measure."""
        ages = self.curve(sex, measure)["age"]
        return float(ages[0]), float(ages[-1])

    def common_age_range(self, measures: Iterable[str] = MEASURES) -> Tuple[float, float]:
        """Age range in months covered by every given measure for both sexes."""
        ranges = [self.age_range(sex, m) for sex in SEXES for m in measures]
        return max(r[0] for r in ranges), min(r[1] for r in ranges)

    def lookup(self, sex: int, measure: str, agemos: float) -> LMSParameters:
        """
        LMS parameters at ``agemos``, linearly interpolated between the two
        nearest tabulated ages (exact at tabulated ages).

        Raises:
            InvalidSex: No curve for this sex code
            InvalidAge: Age outside the tabulated range
        """
        curve = self.curve(sex, measure)
        ages = curve["age"]
        if not (ages[0] <= agemos <= ages[-1]):
            raise InvalidAge(
                f"Age {agemos:.4f} months is outside the {measure} reference range "
                f"[{ages[0]:g}, {ages[-1]:g}]",
                field="agem",
            )
        L, M, S = (float(np.interp(agemos, ages, curve[col])) for col in ("L", "M", "S"))
        if measure != "bmi":
            return LMSParameters(L=L, M=M, S=S)
        p95, p97 = (float(np.interp(agemos, ages, curve[col])) for col in PERCENTILE_COLUMNS)
        return LMSParameters(L=L, M=M, S=S, p95=p95, p97=p97)

    def __repr__(self) -> str:
        low, high = self.common_age_range()
        return f"ReferenceTable(curves={len(self._curves)}, agemos=[{low:g}, {high:g}])"


def _check_rows(mask: Union[pd.Series, np.ndarray], index: pd.Index, problem: str) -> None:
    mask = np.asarray(mask, dtype=bool)
    if mask.any():
        rows = index[mask][:5].tolist()
        more = f" (+{int(mask.sum()) - 5} more)" if mask.sum() > 5 else ""
        raise ReferenceTableLoadError(
            f"Malformed reference table rows {rows}{more}: {problem}"
        )


def load_reference_table(path: Optional[Union[str, Path]] = None) -> ReferenceTable:
    """
    Load and validate the LMS reference table.

    Args:
        path: CSV file; defaults to the copy bundled with the package

    Returns:
        ReferenceTable ready to be shared across computations

    Raises:
        ReferenceTableLoadError: If the file cannot be read or any row is malformed
    """
    try:
        if path is None:
            source = f"{_get_reference_data_path()}/{DEFAULT_REFERENCE_FILE}"
            with (
                resources.files(_get_reference_data_path())
                .joinpath(DEFAULT_REFERENCE_FILE)
                .open("rb") as f
            ):
                df = pd.read_csv(f)
        else:
            source = str(path)
            df = pd.read_csv(path)
    except (FileNotFoundError, ModuleNotFoundError):
        raise ReferenceTableLoadError(
            f"Growth reference data file not found: {source}. "
            "Pass a path explicitly or run 'scripts/download_data.py' to generate reference data."
        ) from None
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ReferenceTableLoadError(
            f"Failed to read growth reference data: {e}"
        ) from e

    table = ReferenceTable.from_frame(df)
    logger.info(f"Loaded reference table from {source}: {table!r}")
    return table
