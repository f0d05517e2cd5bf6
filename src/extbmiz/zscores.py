"""
Z-Score Calculation Utilities for Growth Metrics

This module provides vectorized functions for calculating age- and sex-specific
z-scores for anthropometric measurements using CDC LMS reference parameters.
Includes LMS transformations, modified z-scores, the half-normal extension of
BMI percentiles above the 95th percentile, and BIV detection thresholds.

All functions accept scalars or arrays and broadcast their arguments.
"""

from typing import Dict, List, Optional, Tuple
import logging

import numpy as np
from numba import jit
from scipy import stats

logger = logging.getLogger(__name__)

# Constants
L_ZERO_THRESHOLD = 1e-6
MOD_Z_TAIL = 2.0

# Half-normal tail model anchored at the 95th BMI percentile
TAIL_ANCHOR_PCT = 95.0
TAIL_REFERENCE_PCT = 97.0
EXTENDED_BMIP_LIMIT = 99.99999999999999
EXTENDED_BMIZ_CAP = 8.21

# CDC SAS program cutoffs on modified z-scores: flag -> (source, low, high)
BIV_THRESHOLDS: Dict[str, Tuple[str, float, float]] = {
    "_bivwaz": ("mod_waz", -5.0, 8.0),
    "_bivhaz": ("mod_haz", -5.0, 4.0),
    "_bivbmi": ("mod_bmiz", -4.0, 8.0),
}


def _as_float_arrays(*values) -> Tuple[Tuple[int, ...], List[np.ndarray]]:
    """Broadcast inputs to a common shape and return flat float64 copies."""
    arrays = np.broadcast_arrays(*[np.asarray(v, dtype=np.float64) for v in values])
    shape = arrays[0].shape
    return shape, [np.ascontiguousarray(a).ravel() for a in arrays]


@jit(nopython=True, cache=True)
def _lms_zscore_1d(
    x: np.ndarray, l: np.ndarray, m: np.ndarray, s: np.ndarray
) -> np.ndarray:
    z = np.empty(x.shape[0], dtype=np.float64)
    for i in range(x.shape[0]):
        valid = (
            np.isfinite(x[i])
            and np.isfinite(l[i])
            and np.isfinite(m[i])
            and x[i] > 0.0
            and m[i] > 0.0
            and s[i] > 0.0
        )
        if not valid:
            z[i] = np.nan
        elif abs(l[i]) < L_ZERO_THRESHOLD:
            z[i] = np.log(x[i] / m[i]) / s[i]
        else:
            z[i] = ((x[i] / m[i]) ** l[i] - 1.0) / (l[i] * s[i])
    return z


def lms_zscore(X, L, M, S) -> np.ndarray:
    """
    Calculate LMS z-scores.

    Implements the LMS method from Cole (1990). Three curves: median (M),
    coefficient of variation (S), Box-Cox power (L).

    For L ≠ 0: z = ((X/M)^L - 1) / (L * S)
    For L ≈ 0: z = ln(X/M) / S (the limit of the power transform as L -> 0)

    Non-positive or non-finite values, and S <= 0, give NaN.

    References:
    - Cole, T.J. (1990). "The LMS method for constructing normalized growth standards."
      European Journal of Clinical Nutrition, 44(1), 45-60.

    Args:
        X: Observed values (kg, cm or kg/m²)
        L: Box-Cox power
        M: Median at age/sex
        S: Coefficient of variation at age/sex

    Returns:
        Z-scores with the broadcast shape of the inputs
    """
    shape, (x, l, m, s) = _as_float_arrays(X, L, M, S)
    if x.size == 0:
        return np.full(shape, np.nan)
    return _lms_zscore_1d(x, l, m, s).reshape(shape)


def lms_value(z, L, M, S) -> np.ndarray:
    """
    Inverse LMS transformation: the measurement at z-score ``z``.

    X = M * (1 + L*S*z)^(1/L), or M * exp(S*z) when L ≈ 0.
    NaN where 1 + L*S*z <= 0 (no real solution).
    """
    z, L, M, S = np.broadcast_arrays(*[np.asarray(v, dtype=np.float64) for v in (z, L, M, S)])
    small = np.abs(L) < L_ZERO_THRESHOLD
    safe_L = np.where(small, 1.0, L)
    with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
        base = 1.0 + safe_L * S * z
        power = np.where(base > 0, base, np.nan) ** (1.0 / safe_L)
        value = np.where(small, M * np.exp(S * z), M * power)
    return value


def lms_percentile(z) -> np.ndarray:
    """Percentile (0-100) of a z-score under the standard normal."""
    return 100.0 * stats.norm.cdf(z)


def modified_zscore(X, M, L, S, z_tail: float = MOD_Z_TAIL) -> np.ndarray:
    """
    Calculate modified z-scores for BIV detection.

    Measures the distance from the median in units of half the distance
    between the median and the value at z=±z_tail (inverse LMS). Above the
    median the upper spread is used, below the median the lower one, so a
    single extreme value cannot inflate its own scale.

    Args:
        X: Observed values
        M: Median values (from LMS reference)
        L: Box-Cox power
        S: Coefficient of variation
        z_tail: Tail z-score defining the spread (CDC uses 2)

    Returns:
        Modified z-scores (0 at median; ±z_tail at the z=±z_tail values)
    """
    X, M, L, S = np.broadcast_arrays(*[np.asarray(v, dtype=np.float64) for v in (X, M, L, S)])
    upper = lms_value(z_tail, L, M, S)
    lower = lms_value(-z_tail, L, M, S)

    with np.errstate(invalid="ignore", divide="ignore"):
        sd_pos = (upper - M) / z_tail
        sd_neg = (M - lower) / z_tail
        mod_z = np.where(
            X > M, (X - M) / sd_pos, np.where(X < M, (X - M) / sd_neg, 0.0)
        )

    valid = np.isfinite(X) & np.isfinite(M) & (S > 0) & (X > 0)
    return np.where(valid, mod_z, np.nan)


def half_normal_sigma(p95, p97) -> np.ndarray:
    """
    Scale of the half-normal tail anchored at the 95th percentile.

    Above the 95th percentile the tail holds 5% of the population, 2% of which
    lies between the 95th and 97th percentiles. Matching that share gives
    HalfNormalCDF((p97 - p95) / sigma) = 2/5, hence

        sigma = (p97 - p95) / HalfNormalPPF(0.4)     (= (p97 - p95) / Φ⁻¹(0.7))

    Args:
        p95: 95th percentile BMI at age/sex
        p97: 97th percentile BMI at age/sex

    Returns:
        sigma > 0, NaN where p97 <= p95 or inputs are not finite
    """
    p95, p97 = np.broadcast_arrays(np.asarray(p95, dtype=np.float64), np.asarray(p97, dtype=np.float64))
    band = (TAIL_REFERENCE_PCT - TAIL_ANCHOR_PCT) / (100.0 - TAIL_ANCHOR_PCT)
    with np.errstate(invalid="ignore"):
        sigma = (p97 - p95) / stats.halfnorm.ppf(band)
    return np.where(np.isfinite(sigma) & (sigma > 0), sigma, np.nan)


def extended_bmip(bmi, p95, sigma, bmip) -> np.ndarray:
    """
    Extend BMI percentiles beyond the 95th percentile.

    For bmip <= 95: return bmip unchanged.
    For bmip > 95: 95 + 5 * HalfNormalCDF((bmi - p95) / sigma), capped at 100.

    Args:
        bmi: BMI values
        p95: 95th percentile BMI values
        sigma: Half-normal scale (see ``half_normal_sigma``)
        bmip: LMS BMI percentiles (0-100)

    Returns:
        Extended percentiles
    """
    bmi, p95, sigma, bmip = np.broadcast_arrays(
        *[np.asarray(v, dtype=np.float64) for v in (bmi, p95, sigma, bmip)]
    )
    with np.errstate(invalid="ignore", divide="ignore"):
        tail = TAIL_ANCHOR_PCT + (100.0 - TAIL_ANCHOR_PCT) * stats.halfnorm.cdf(
            (bmi - p95) / sigma
        )
    tail = np.minimum(tail, 100.0)
    return np.where(bmip > TAIL_ANCHOR_PCT, tail, bmip)


def extended_bmiz(ext_bmip, bmiz, bmip) -> np.ndarray:
    """
    Extended BMI z-scores from extended percentiles.

    For bmip <= 95: return the LMS z-score unchanged.
    For bmip > 95: Φ⁻¹(ext_bmip / 100), with cap at 8.21. Percentiles above
    99.99999999999999 would give an infinite quantile and are set to 8.21.

    Args:
        ext_bmip: Extended percentiles (see ``extended_bmip``)
        bmiz: LMS BMI z-scores
        bmip: LMS BMI percentiles (0-100)

    Returns:
        Extended z-scores
    """
    ext_bmip, bmiz, bmip = np.broadcast_arrays(
        *[np.asarray(v, dtype=np.float64) for v in (ext_bmip, bmiz, bmip)]
    )
    with np.errstate(invalid="ignore", divide="ignore"):
        z = stats.norm.ppf(ext_bmip / 100.0)
    z = np.where(ext_bmip > EXTENDED_BMIP_LIMIT, EXTENDED_BMIZ_CAP, z)
    z = np.minimum(z, EXTENDED_BMIZ_CAP)
    return np.where(bmip > TAIL_ANCHOR_PCT, z, bmiz)


def compute_biv_flags(modified: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
    """
    Compute BIV flags from modified z-scores per CDC thresholds.

    Weight-for-age: mod_waz < -5 or > 8
    Height-for-age: mod_haz < -5 or > 4
    BMI-for-age: mod_bmiz < -4 or > 8

    Args:
        modified: Mapping of 'mod_waz' / 'mod_haz' / 'mod_bmiz' to arrays;
            missing keys are skipped

    Returns:
        Flag name -> boolean array (False where the modified z-score is NaN)
    """
    flags = {}
    for flag, (source, low, high) in BIV_THRESHOLDS.items():
        if source not in modified:
            continue
        mod_z = np.asarray(modified[source], dtype=np.float64)
        with np.errstate(invalid="ignore"):
            flag_values = (mod_z < low) | (mod_z > high)
        flags[flag] = np.where(np.isnan(mod_z), False, flag_values)
    return flags


def log_unit_warnings(
    agemos: np.ndarray,
    height: Optional[np.ndarray] = None,
    weight: Optional[np.ndarray] = None,
) -> None:
    """Log warnings for potential unit mismatches in a batch."""
    height = _finite(height)
    weight = _finite(weight)
    agemos = _finite(agemos)

    if height.size and np.mean(height) < 20:
        logger.warning(
            "Height values have mean <20 - heights should be in cm, units suspect"
        )
    elif height.size and np.percentile(height, 95) > 200:
        logger.warning(
            "Height values >200 cm detected - may be inches instead of cm"
        )
    if weight.size and np.percentile(weight, 99) > 300:
        logger.warning("Weight values >300 kg detected - may be lbs instead of kg")
    if agemos.size and np.max(agemos) > 241 and np.mean(agemos) > 30:
        logger.warning(
            "Age values >241 months detected - ages may be in days or years instead of months"
        )
    elif agemos.size and np.max(agemos) <= 20:
        logger.warning("All ages <=20 months - ages may be in years instead of months")


def _finite(values: Optional[np.ndarray]) -> np.ndarray:
    if values is None:
        return np.empty(0)
    values = np.asarray(values, dtype=np.float64)
    return values[np.isfinite(values)]
