"""
Resolution of canonical field names to the columns of an input table.
"""

from typing import Any, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .exceptions import MissingField


class ColumnMapper:
    """
    Map canonical fields (age, sex, weight, ...) onto actual column names.

    The mapper never copies data: ``get`` reads a single value out of a row
    mapping using the configured column name. ``validate`` is meant to be
    called once per table, before any row is read.

    Usage:
        mapper = ColumnMapper(config.column_map(), required=["subjid", "sex"])
        mapper.validate(df.columns)
        sex = mapper.get(row, "sex")

    Args:
        mapping: Canonical field name -> column name
        required: Fields that must resolve to a present column
        one_of: Groups of alternatives; each group is satisfied when every
            field of at least one alternative resolves
    """

    def __init__(
        self,
        mapping: Mapping[str, str],
        required: Iterable[str] = (),
        one_of: Sequence[Sequence[Sequence[str]]] = (),
    ):
        self.mapping = dict(mapping)
        self.required = list(required)
        self.one_of = [[list(alt) for alt in group] for group in one_of]
        self._present: Optional[set] = None

        unknown = [f for f in self.required if f not in self.mapping]
        unknown += [f for g in self.one_of for alt in g for f in alt if f not in self.mapping]
        if unknown:
            raise ValueError(f"No column configured for fields: {sorted(set(unknown))}")

    def validate(self, columns: Iterable[str]) -> None:
        """
        Check that required fields resolve against the given columns.

        Args:
            columns: Column names of the table about to be processed

        Raises:
            MissingField: Naming every unresolved required field
        """
        present = set(columns)
        unresolved = [f for f in self.required if self.mapping[f] not in present]
        missing: List[str] = [f"{f} (column '{self.mapping[f]}')" for f in unresolved]
        for group in self.one_of:
            if not any(all(self.mapping[f] in present for f in alt) for alt in group):
                options = " or ".join("+".join(alt) for alt in group)
                missing.append(f"one of {options}")
                unresolved.append(group[0][0])
        if missing:
            raise MissingField(
                f"Missing required columns: {', '.join(missing)}",
                field=unresolved[0],
            )
        self._present = {f for f, col in self.mapping.items() if col in present}

    def has(self, field: str) -> bool:
        """Whether ``field`` resolved to a column during ``validate``."""
        if self._present is None:
            raise RuntimeError("ColumnMapper.validate() must be called first")
        return field in self._present

    def column(self, field: str) -> str:
        return self.mapping[field]

    def get(self, row: Mapping[str, Any], field: str, default: Any = None) -> Any:
        """
        Read ``field`` from a row mapping.

        Missing columns and missing values (None/NaN) both return ``default``.
        """
        value = row.get(self.mapping[field], default)
        if is_missing(value):
            return default
        return value


def is_missing(value: Any) -> bool:
    """None, NaN and pandas NA/NaT count as missing."""
    if value is None:
        return True
    return bool(pd.api.types.is_scalar(value) and pd.isna(value))
