"""
extbmiz: CDC growth z-scores with extended BMI percentiles for severe obesity.

Typical use:

    from extbmiz import load_reference_table, longwide, simple_bmi, ext_bmiz

    reference = load_reference_table()
    wide = simple_bmi(longwide(observations))
    out = ext_bmiz(wide, reference)
"""

from .bmi import calc_bmi, simple_bmi
from .columns import ColumnMapper
from .config import ExtBMIZConfig, LongWideConfig
from .engine import ExtBMIZOutput, compute_record, ext_bmiz, normalize_age
from .exceptions import (
    ExtBMIZError,
    InvalidAge,
    InvalidSex,
    MissingField,
    MissingMeasurement,
    RecordError,
    ReferenceTableLoadError,
)
from .longwide import longwide
from .models import BMIZResult, LMSParameters, WideRecord
from .reference import ReferenceTable, load_reference_table
from .sex import recode_sex

__all__ = [
    "BMIZResult",
    "ColumnMapper",
    "ExtBMIZConfig",
    "ExtBMIZError",
    "ExtBMIZOutput",
    "InvalidAge",
    "InvalidSex",
    "LMSParameters",
    "LongWideConfig",
    "MissingField",
    "MissingMeasurement",
    "RecordError",
    "ReferenceTable",
    "ReferenceTableLoadError",
    "WideRecord",
    "calc_bmi",
    "compute_record",
    "ext_bmiz",
    "load_reference_table",
    "longwide",
    "normalize_age",
    "recode_sex",
    "simple_bmi",
]
