"""Sex code recoding between the upstream (0/1) and canonical (1/2) conventions."""

from typing import Any, Hashable

import pandas as pd

from .columns import is_missing
from .exceptions import InvalidSex

MALE = 1
FEMALE = 2


def recode_sex(
    input_data: pd.DataFrame,
    source_col: str = "sex",
    source_male: Hashable = 0,
    source_female: Hashable = 1,
    target_col: str = "sex_recoded",
    target_male: Hashable = 1,
    target_female: Hashable = 2,
) -> pd.DataFrame:
    """
    Recode a sex column into another coding convention.

    Values matching neither source code become missing. Recoding with the
    source and target codes swapped restores the original column.

    Args:
        input_data: Table holding the sex column
        source_col: Column to read
        source_male: Male code in ``source_col``
        source_female: Female code in ``source_col``
        target_col: Column to write (may equal ``source_col``)
        target_male: Male code to write
        target_female: Female code to write

    Returns:
        Copy of ``input_data`` with ``target_col`` set
    """
    if source_col not in input_data.columns:
        raise ValueError(f"Column '{source_col}' does not exist in DataFrame")
    if source_male == source_female or target_male == target_female:
        raise ValueError("Male and female codes must differ")

    out = input_data.copy()
    out[target_col] = input_data[source_col].map(
        {source_male: target_male, source_female: target_female}
    )
    return out


def canonical_sex(value: Any) -> int:
    """
    Validate a canonical sex code (1=male, 2=female).

    Integral floats such as 1.0 are accepted, as produced by pandas for
    columns with missing values.

    Raises:
        InvalidSex: If the value is missing or not 1/2
    """
    if is_missing(value):
        raise InvalidSex("Sex code is missing", field="sex")
    try:
        code = float(value)
    except (TypeError, ValueError):
        raise InvalidSex(f"Unrecognized sex code {value!r}", field="sex") from None
    if code not in (MALE, FEMALE):
        raise InvalidSex(f"Unrecognized sex code {value!r}; expected 1 or 2", field="sex")
    return int(code)
