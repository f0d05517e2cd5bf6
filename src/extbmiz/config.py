"""
Configuration models for the long-to-wide transformer and the z-score engine.

Both models are validated once, before any data is touched. Column names
default to the canonical names produced by the upstream component, so the
output of ``longwide`` can be fed to ``ext_bmiz`` without any mapping.
"""

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


def _check_column_name(v: str) -> str:
    if not isinstance(v, str) or not v.strip():
        raise ValueError("Column name must be a non-empty string")
    return v


class LongWideConfig(BaseModel):
    """
    Configuration for reshaping long observations into wide visit rows.

    Attributes:
        id_col (str): Observation identifier column ('id').
        subjid_col (str): Subject identifier column ('subjid').
        sex_col (str): Upstream sex code column ('sex'), 0=male, 1=female by default.
        agedays_col (str): Age in days column ('agedays').
        param_col (str): Parameter type column ('param').
        measurement_col (str): Measurement value column ('measurement').
        status_col (str): Inclusion status column ('gcr_result').
        height_param (str): Parameter label for heights in cm ('HEIGHTCM').
        weight_param (str): Parameter label for weights in kg ('WEIGHTKG').
        inclusion_types (List[str]): Status labels that qualify a row (['Include']).
        include_all (bool): Ignore statuses and keep unmatched observations as
            partial rows. False by default.
        sex_codes (Dict[int, int]): Upstream to canonical sex code map ({0: 1, 1: 2}).
    """

    model_config = ConfigDict(frozen=True)

    id_col: str = "id"
    subjid_col: str = "subjid"
    sex_col: str = "sex"
    agedays_col: str = "agedays"
    param_col: str = "param"
    measurement_col: str = "measurement"
    status_col: str = "gcr_result"
    height_param: str = "HEIGHTCM"
    weight_param: str = "WEIGHTKG"
    inclusion_types: List[str] = ["Include"]
    include_all: bool = False
    sex_codes: Dict[int, int] = {0: 1, 1: 2}

    @field_validator(
        "id_col",
        "subjid_col",
        "sex_col",
        "agedays_col",
        "param_col",
        "measurement_col",
        "status_col",
    )
    @classmethod
    def validate_column_names(cls, v: str) -> str:
        """Ensure column names are valid string identifiers."""
        return _check_column_name(v)

    @field_validator("inclusion_types")
    @classmethod
    def validate_inclusion_types(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("inclusion_types must contain at least one label")
        return v

    @field_validator("sex_codes")
    @classmethod
    def validate_sex_codes(cls, v: Dict[int, int]) -> Dict[int, int]:
        if sorted(v.values()) != [1, 2]:
            raise ValueError("sex_codes must map onto the canonical codes 1 and 2")
        return v

    @model_validator(mode="after")
    def validate_unique_columns(self) -> "LongWideConfig":
        columns = [
            self.id_col,
            self.subjid_col,
            self.sex_col,
            self.agedays_col,
            self.param_col,
            self.measurement_col,
            self.status_col,
        ]
        if len(columns) != len(set(columns)):
            raise ValueError("Configuration must specify unique column names")
        if self.height_param == self.weight_param:
            raise ValueError("height_param and weight_param must differ")
        return self

    def column_map(self) -> Dict[str, str]:
        """Canonical field name -> configured column name."""
        return {
            "id": self.id_col,
            "subjid": self.subjid_col,
            "sex": self.sex_col,
            "agedays": self.agedays_col,
            "param": self.param_col,
            "measurement": self.measurement_col,
            "status": self.status_col,
        }


class ExtBMIZConfig(BaseModel):
    """
    Configuration for the extended BMI z-score engine.

    Attributes:
        subjid_col (str): Subject identifier column ('subjid'). Required.
        agedays_col (str): Age in days column ('agedays'). Used for output and
            to derive age in months when ``agem_col`` is absent.
        agem_col (str): Age in months column ('agem').
        sex_col (str): Sex column ('sex'), 1=male, 2=female. Required.
        wt_col (str): Weight in kg ('wt').
        ht_col (str): Height in cm ('ht').
        bmi_col (str): BMI column ('bmi'). Derived from weight/height when absent.
        wt_id_col (str): Weight observation id ('wt_id'). Optional.
        ht_id_col (str): Height observation id ('ht_id'). Optional.
        adjust_integer_age (bool): Add 0.5 to ages in months to place them at
            the middle of the month, when the month column holds whole months
            only. Ages derived from age in days are never adjusted. True by
            default.
    """

    model_config = ConfigDict(frozen=True)

    subjid_col: str = "subjid"
    agedays_col: str = "agedays"
    agem_col: str = "agem"
    sex_col: str = "sex"
    wt_col: str = "wt"
    ht_col: str = "ht"
    bmi_col: str = "bmi"
    wt_id_col: str = "wt_id"
    ht_id_col: str = "ht_id"
    adjust_integer_age: bool = True

    @field_validator(
        "subjid_col",
        "agedays_col",
        "agem_col",
        "sex_col",
        "wt_col",
        "ht_col",
        "bmi_col",
        "wt_id_col",
        "ht_id_col",
    )
    @classmethod
    def validate_column_names(cls, v: str) -> str:
        """Ensure column names are valid string identifiers."""
        return _check_column_name(v)

    @model_validator(mode="after")
    def validate_unique_columns(self) -> "ExtBMIZConfig":
        if len(set(self.column_map().values())) != len(self.column_map()):
            raise ValueError("Configuration must specify unique column names")
        return self

    def column_map(self) -> Dict[str, str]:
        """Canonical field name -> configured column name."""
        return {
            "subjid": self.subjid_col,
            "agedays": self.agedays_col,
            "agem": self.agem_col,
            "sex": self.sex_col,
            "wt": self.wt_col,
            "ht": self.ht_col,
            "bmi": self.bmi_col,
            "wt_id": self.wt_id_col,
            "ht_id": self.ht_id_col,
        }
