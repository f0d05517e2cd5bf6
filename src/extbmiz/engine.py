"""
Extended BMI z-score engine.

Computes CDC LMS z-scores and percentiles for weight, height and BMI,
modified z-scores, BMI as a percent of the 95th percentile, and extended BMI
percentiles/z-scores above the 95th percentile (half-normal tail model).

``compute_record`` handles one WideRecord and has no side effects;
``ext_bmiz`` runs it over a table, optionally on a thread pool, and collects
per-record failures without stopping the batch.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Mapping, Optional, Tuple
import logging

import numpy as np
import pandas as pd
from tqdm import tqdm

from . import zscores
from .bmi import calc_bmi
from .columns import ColumnMapper, is_missing
from .config import ExtBMIZConfig
from .exceptions import InvalidAge, MissingField, MissingMeasurement, RecordError
from .models import (
    DAYS_PER_YEAR,
    MONTHS_PER_YEAR,
    RESULT_COLUMNS,
    BMIZResult,
    LMSParameters,
    WideRecord,
)
from .reference import ReferenceTable
from .sex import canonical_sex

logger = logging.getLogger(__name__)

INTEGER_AGE_OFFSET = 0.5
OBESE_BMIP95 = 100.0
SEVERE_OBESE_BMIP95 = 120.0
ERROR_COLUMNS = ["row", "subjid", "agedays", "agem", "error", "message"]
DEFAULT_CHUNK_SIZE = 1000

# Order of measurements in the per-record arrays
_MEASURES = ("bmi", "weight", "height")


@dataclass(frozen=True)
class ExtBMIZOutput:
    """
    Result of a batch run.

    Attributes:
        results: One row per successfully computed record, indexed by the input
            row label, columns in ``RESULT_COLUMNS`` order
        errors: One row per failed record with columns ``ERROR_COLUMNS``
    """

    results: pd.DataFrame
    errors: pd.DataFrame


def normalize_age(
    agem: Optional[float],
    reference: ReferenceTable,
    adjust_integer_age: bool = True,
) -> float:
    """
    Age in months used for reference lookups.

    Integer ages are moved to the middle of the month (+0.5) when
    ``adjust_integer_age`` is set; fractional ages are used as is. Callers
    decide whether the ages were recorded in whole months and pass False
    otherwise.

    Raises:
        InvalidAge: If the age is missing, non-positive or outside the BMI
            reference range
    """
    if is_missing(agem):
        raise InvalidAge("Age in months is missing", field="agem")
    agem = float(agem)
    if adjust_integer_age and agem.is_integer():
        agem += INTEGER_AGE_OFFSET
    if agem <= 0:
        raise InvalidAge(f"Age must be positive, got {agem:g} months", field="agem")
    low, high = reference.common_age_range(("bmi",))
    if not (low <= agem <= high):
        raise InvalidAge(
            f"Age {agem:.4f} months is outside the reference range [{low:g}, {high:g}]",
            field="agem",
        )
    return agem


def compute_record(
    record: WideRecord,
    reference: ReferenceTable,
    adjust_integer_age: bool = True,
) -> BMIZResult:
    """
    Compute z-scores, percentiles and the extended BMI values for one record.

    BMI is taken from the record or derived from weight and height. Weight and
    height are optional; their scores are NaN when absent.

    Args:
        record: Subject-visit with canonical sex (1/2) and age in months
        reference: Loaded reference table (read only)
        adjust_integer_age: Treat ``agem`` as recorded in whole months and add
            0.5 when it is an integer. Never applied when ``agem`` equals the
            age derived from ``agedays``.

    Returns:
        BMIZResult; ``agem`` holds the normalized age used for lookups

    Raises:
        InvalidSex: Sex missing or not 1/2
        InvalidAge: Age missing, non-positive or out of the reference range
        MissingMeasurement: No usable BMI (nor weight and height to derive it),
            or a non-finite measurement
    """
    sex = canonical_sex(record.sex)
    agedays = _float_or_raise(record.agedays, InvalidAge, "agedays")
    agem = _float_or_raise(record.agem, InvalidAge, "agem")
    if agem is not None and agedays is not None and _is_age_from_days(agedays, agem):
        adjust_integer_age = False
    agem = normalize_age(agem, reference, adjust_integer_age)

    wt = _float_or_raise(record.wt, MissingMeasurement, "wt")
    ht = _float_or_raise(record.ht, MissingMeasurement, "ht")
    bmi = _float_or_raise(record.bmi, MissingMeasurement, "bmi")
    if bmi is None:
        bmi = calc_bmi(wt, ht)
    if bmi <= 0:
        raise MissingMeasurement(f"BMI must be positive, got {bmi:g}", field="bmi")

    values = {"bmi": bmi, "weight": wt, "height": ht}
    params: Dict[str, Optional[LMSParameters]] = {
        measure: reference.lookup(sex, measure, agem)
        if values[measure] is not None
        else None
        for measure in _MEASURES
    }

    X = np.array([_nan_if_none(values[m]) for m in _MEASURES])
    L, M, S = (
        np.array([getattr(params[m], p) if params[m] else np.nan for m in _MEASURES])
        for p in ("L", "M", "S")
    )
    z = zscores.lms_zscore(X, L, M, S)
    mod_z = zscores.modified_zscore(X, M, L, S)
    pct = zscores.lms_percentile(z)

    bmi_lms = params["bmi"]
    bmiz, waz, haz = (float(v) for v in z)
    bmip, wap, hap = (float(v) for v in pct)
    p95, p97 = bmi_lms.p95, bmi_lms.p97

    bmip95 = 100.0 * bmi / p95
    sigma = (
        float(zscores.half_normal_sigma(p95, p97))
        if bmip > zscores.TAIL_ANCHOR_PCT
        else np.nan
    )
    ext_bmip = float(zscores.extended_bmip(bmi, p95, sigma, bmip))
    ext_bmiz = float(zscores.extended_bmiz(ext_bmip, bmiz, bmip))

    flags = zscores.compute_biv_flags(
        {"mod_bmiz": mod_z[0], "mod_waz": mod_z[1], "mod_haz": mod_z[2]}
    )

    return BMIZResult(
        subjid=record.subjid,
        agedays=record.agedays,
        agey=record.agey if not is_missing(record.agey) else agem / MONTHS_PER_YEAR,
        agem=agem,
        sex=sex,
        wt=_nan_if_none(wt),
        wt_id=record.wt_id,
        ht=_nan_if_none(ht),
        ht_id=record.ht_id,
        bmi=bmi,
        bmi_l=bmi_lms.L,
        bmi_m=bmi_lms.M,
        bmi_s=bmi_lms.S,
        waz=waz,
        mod_waz=float(mod_z[1]),
        haz=haz,
        mod_haz=float(mod_z[2]),
        bmiz=bmiz,
        mod_bmiz=float(mod_z[0]),
        bmip=bmip,
        p95=p95,
        p97=p97,
        bmip95=bmip95,
        wap=wap,
        hap=hap,
        obese=int(bmip95 >= OBESE_BMIP95),
        sev_obese=int(bmip95 >= SEVERE_OBESE_BMIP95),
        ext_bmiz=ext_bmiz,
        ext_bmip=ext_bmip,
        sigma=sigma,
        _bivwaz=bool(flags["_bivwaz"]),
        _bivhaz=bool(flags["_bivhaz"]),
        _bivbmi=bool(flags["_bivbmi"]),
    )


def record_from_row(row: Mapping[str, Any], mapper: ColumnMapper) -> WideRecord:
    """
    Build a WideRecord from one input row through a validated mapper.

    Age in months is derived from age in days when the row has no month value.

    Raises:
        MissingField: Row has no subject identifier
        InvalidAge: Age values are not numeric
        MissingMeasurement: Measurements are not numeric or not finite
    """
    subjid = mapper.get(row, "subjid")
    if subjid is None:
        raise MissingField("Record has no subjid", field="subjid")

    agedays = _float_or_raise(mapper.get(row, "agedays"), InvalidAge, "agedays")
    agem = _float_or_raise(mapper.get(row, "agem"), InvalidAge, "agem")
    fields = dict(
        sex=mapper.get(row, "sex"),
        wt=_float_or_raise(mapper.get(row, "wt"), MissingMeasurement, "wt"),
        wt_id=mapper.get(row, "wt_id"),
        ht=_float_or_raise(mapper.get(row, "ht"), MissingMeasurement, "ht"),
        ht_id=mapper.get(row, "ht_id"),
        bmi=_float_or_raise(mapper.get(row, "bmi"), MissingMeasurement, "bmi"),
    )
    if agem is None and agedays is not None:
        return WideRecord.from_agedays(subjid, agedays, **fields)

    return WideRecord(
        subjid=subjid,
        agedays=agedays,
        agey=agem / MONTHS_PER_YEAR if agem is not None else None,
        agem=agem,
        **fields,
    )


def ext_bmiz(
    data: pd.DataFrame,
    reference: ReferenceTable,
    config: Optional[ExtBMIZConfig] = None,
    workers: Optional[int] = None,
    progress_bar: bool = False,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    **overrides,
) -> ExtBMIZOutput:
    """
    Calculate extended BMI z-scores and related measures for a wide table.

    Column mappings are validated once before any row is read. Rows that fail
    (invalid sex, age out of range, missing BMI, missing subjid) are reported
    in ``errors`` and do not stop the batch.

    Usage:
        reference = load_reference_table()
        out = ext_bmiz(simple_bmi(longwide(obs)), reference, workers=4)
        out.results[["subjid", "agedays", "ext_bmiz", "ext_bmip"]]

    Args:
        data: Wide table (e.g. ``longwide`` output), not modified
        reference: Loaded reference table, shared read-only by all workers
        config: Column names and age adjustment; defaults to ``ExtBMIZConfig()``.
            The +0.5 month adjustment applies only when the month column is
            integer typed or every non-missing value in it is a whole number.
        workers: Thread count; None or 1 runs in the calling thread
        progress_bar: Show a tqdm progress bar over row chunks
        chunk_size: Rows per unit of work
        **overrides: Individual ``ExtBMIZConfig`` fields, applied on top of ``config``

    Returns:
        ExtBMIZOutput with results indexed by input row label and the error table

    Raises:
        MissingField: If required columns cannot be resolved
        ValueError: If the configuration is invalid
    """
    if config is None:
        config = ExtBMIZConfig(**overrides)
    elif overrides:
        config = ExtBMIZConfig(**{**config.model_dump(), **overrides})
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")

    mapper = ColumnMapper(
        config.column_map(),
        required=["subjid", "sex"],
        one_of=[[["agem"], ["agedays"]], [["bmi"], ["wt", "ht"]]],
    )
    mapper.validate(data.columns)
    _warn_units(data, mapper)

    # Whole-month ages are decided per column, not per value
    adjust = config.adjust_integer_age and _whole_month_ages(data, mapper)
    if adjust:
        logger.info(f"ext_bmiz: ages recorded in whole months, adding {INTEGER_AGE_OFFSET}")

    rows = list(enumerate(zip(data.index, data.to_dict("records"))))
    chunks = [rows[i : i + chunk_size] for i in range(0, len(rows), chunk_size)]

    computed: List[Tuple[int, Hashable, BMIZResult]] = []
    failed: List[Tuple[int, Dict[str, Any]]] = []

    def run_chunk(chunk):
        done, errors = [], []
        for position, (label, row) in chunk:
            try:
                record = record_from_row(row, mapper)
                done.append(
                    (position, label, compute_record(record, reference, adjust))
                )
            except RecordError as e:
                errors.append((position, _error_row(label, row, mapper, e)))
        return done, errors

    with tqdm(total=len(chunks), desc="ext_bmiz", disable=not progress_bar) as pbar:
        if workers is not None and workers > 1 and len(chunks) > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(run_chunk, chunk) for chunk in chunks]
                for future in as_completed(futures):
                    done, errors = future.result()
                    computed.extend(done)
                    failed.extend(errors)
                    pbar.update(1)
        else:
            for chunk in chunks:
                done, errors = run_chunk(chunk)
                computed.extend(done)
                failed.extend(errors)
                pbar.update(1)

    # Completion order is arbitrary under threads; restore input order
    computed.sort(key=lambda item: item[0])
    failed.sort(key=lambda item: item[0])

    results = pd.DataFrame(
        [result.to_dict() for _, _, result in computed],
        index=pd.Index([label for _, label, _ in computed], name=data.index.name),
        columns=RESULT_COLUMNS,
    )
    errors = pd.DataFrame([error for _, error in failed], columns=ERROR_COLUMNS)

    if failed:
        counts = errors["error"].value_counts().to_dict()
        logger.warning(f"ext_bmiz: {len(failed)} of {len(rows)} records failed: {counts}")
    clamped = int((results["ext_bmiz"] == zscores.EXTENDED_BMIZ_CAP).sum()) if len(results) else 0
    if clamped:
        logger.info(
            f"ext_bmiz: {clamped} extended BMI z-scores set to {zscores.EXTENDED_BMIZ_CAP}"
        )
    logger.info(f"ext_bmiz: computed {len(results)} of {len(rows)} records")
    return ExtBMIZOutput(results=results, errors=errors)


def _warn_units(data: pd.DataFrame, mapper: ColumnMapper) -> None:
    def column(field: str) -> Optional[np.ndarray]:
        if not mapper.has(field):
            return None
        return pd.to_numeric(data[mapper.column(field)], errors="coerce").to_numpy(
            dtype=np.float64
        )

    agemos = column("agem")
    if agemos is None:
        agemos = column("agedays") / DAYS_PER_YEAR * MONTHS_PER_YEAR
    zscores.log_unit_warnings(agemos, height=column("ht"), weight=column("wt"))


def _error_row(
    label: Hashable, row: Mapping[str, Any], mapper: ColumnMapper, error: RecordError
) -> Dict[str, Any]:
    return {
        "row": label,
        "subjid": mapper.get(row, "subjid"),
        "agedays": mapper.get(row, "agedays"),
        "agem": mapper.get(row, "agem"),
        "error": type(error).__name__,
        "message": str(error),
    }


def _float_or_raise(value: Any, error_cls: type, field: str) -> Optional[float]:
    if is_missing(value):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise error_cls(f"Non-numeric {field} value {value!r}", field=field) from None
    if not np.isfinite(number):
        raise error_cls(f"Non-finite {field} value {number!r}", field=field)
    return number


def _nan_if_none(value: Optional[float]) -> float:
    return np.nan if value is None else value


def _whole_month_ages(data: pd.DataFrame, mapper: ColumnMapper) -> bool:
    """True when the age-in-months column holds whole months only."""
    if not mapper.has("agem"):
        return False
    ages = data[mapper.column("agem")]
    if pd.api.types.is_integer_dtype(ages):
        return True
    values = pd.to_numeric(ages, errors="coerce").dropna().to_numpy(dtype=np.float64)
    return bool(len(values)) and bool(np.all(np.mod(values, 1.0) == 0.0))


def _is_age_from_days(agedays: float, agem: float) -> bool:
    return bool(np.isclose(agem, agedays / DAYS_PER_YEAR * MONTHS_PER_YEAR, rtol=0.0, atol=1e-9))
