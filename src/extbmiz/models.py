"""Record types passed between the transformer and the z-score engine."""

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Hashable, List, Optional

DAYS_PER_YEAR = 365.25
MONTHS_PER_YEAR = 12.0


@dataclass(frozen=True)
class LMSParameters:
    """
    LMS parameters at one sex/age for one measurement.

    Attributes:
        L: Box-Cox power
        M: Median
        S: Coefficient of variation (> 0)
        p95: 95th percentile magnitude (BMI only)
        p97: 97th percentile magnitude (BMI only)
    """

    L: float
    M: float
    S: float
    p95: Optional[float] = None
    p97: Optional[float] = None


@dataclass(frozen=True)
class WideRecord:
    """One subject-visit with aligned weight and height."""

    subjid: Hashable
    agem: Optional[float]
    sex: Any
    agedays: Optional[float] = None
    agey: Optional[float] = None
    wt: Optional[float] = None
    wt_id: Optional[Hashable] = None
    ht: Optional[float] = None
    ht_id: Optional[Hashable] = None
    bmi: Optional[float] = None

    @classmethod
    def from_agedays(cls, subjid: Hashable, agedays: float, sex: Any, **kwargs) -> "WideRecord":
        """Build a record deriving years and months from age in days."""
        agey = agedays / DAYS_PER_YEAR
        return cls(
            subjid=subjid,
            agedays=agedays,
            agey=agey,
            agem=agey * MONTHS_PER_YEAR,
            sex=sex,
            **kwargs,
        )


@dataclass(frozen=True)
class BMIZResult:
    """
    Z-scores, percentiles and obesity classification for one WideRecord.

    ``ext_bmip``/``ext_bmiz`` equal ``bmip``/``bmiz`` when bmip <= 95, and
    ``sigma`` is NaN there.
    """

    subjid: Hashable
    agedays: Optional[float]
    agey: float
    agem: float
    sex: int
    wt: float
    wt_id: Optional[Hashable]
    ht: float
    ht_id: Optional[Hashable]
    bmi: float
    bmi_l: float
    bmi_m: float
    bmi_s: float
    waz: float
    mod_waz: float
    haz: float
    mod_haz: float
    bmiz: float
    mod_bmiz: float
    bmip: float
    p95: float
    p97: float
    bmip95: float
    wap: float
    hap: float
    obese: int
    sev_obese: int
    ext_bmiz: float
    ext_bmip: float
    sigma: float
    _bivwaz: bool
    _bivhaz: bool
    _bivbmi: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


RESULT_COLUMNS: List[str] = [f.name for f in fields(BMIZResult)]
WIDE_COLUMNS: List[str] = [
    "subjid",
    "agedays",
    "agey",
    "agem",
    "sex",
    "wt",
    "wt_id",
    "ht",
    "ht_id",
]
