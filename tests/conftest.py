import numpy as np
import pandas as pd
import pytest
from scipy import stats

from extbmiz.reference import ReferenceTable, load_reference_table

# CDC-style tabulation: 24.0 then every half month up to 240.5
REFERENCE_AGES = np.concatenate([[24.0], np.arange(24.5, 241.0, 1.0)])

# measure -> (L, median at 24 months, median slope per month, S)
SYNTHETIC_CURVES = {
    "weight": (-0.5, 12.0, 0.25, 0.12),
    "height": (1.0, 86.0, 0.45, 0.04),
    "bmi": (-2.0, 16.5, 0.03, 0.13),
}


def _inverse_lms(z: float, L: float, M: np.ndarray, S: float) -> np.ndarray:
    return M * (1.0 + L * S * z) ** (1.0 / L)


def build_reference_frame() -> pd.DataFrame:
    """Smooth synthetic LMS curves for both sexes in the reference CSV layout."""
    frames = []
    for sex, scale in ((1, 1.0), (2, 0.97)):
        for measure, (L, m0, slope, S) in SYNTHETIC_CURVES.items():
            M = scale * (m0 + slope * (REFERENCE_AGES - 24.0))
            frame = pd.DataFrame(
                {
                    "sex": sex,
                    "agemos": REFERENCE_AGES,
                    "measure": measure,
                    "L": L,
                    "M": M,
                    "S": S,
                    "p95": np.nan,
                    "p97": np.nan,
                }
            )
            if measure == "bmi":
                frame["p95"] = _inverse_lms(stats.norm.ppf(0.95), L, M, S)
                frame["p97"] = _inverse_lms(stats.norm.ppf(0.97), L, M, S)
            frames.append(frame)
    return pd.concat(frames, ignore_index=True)


# CDC extended BMI example: boy aged 50.5 months with BMI 22.6, published
# P95 17.8219 and sigma 2.3983, giving ext_bmip 99.7683 and ext_bmiz 2.83
CDC_TAIL_AGES = (49.5, 50.5, 51.5)
CDC_TAIL_P95 = 17.8219
CDC_TAIL_SIGMA = 2.3983


def build_documented_tail_frame() -> pd.DataFrame:
    """
    Synthetic table whose boys' BMI rows around 50.5 months carry the CDC
    published tail parameters.

    M is rescaled so the LMS 95th percentile equals P95, and P97 is placed
    so that (P97 - P95) / Φ⁻¹(0.7) is the published sigma.
    """
    frame = build_reference_frame()
    rows = (
        (frame["sex"] == 1)
        & (frame["measure"] == "bmi")
        & frame["agemos"].isin(CDC_TAIL_AGES)
    )
    L, _, _, S = SYNTHETIC_CURVES["bmi"]
    frame.loc[rows, "M"] = CDC_TAIL_P95 / _inverse_lms(stats.norm.ppf(0.95), L, 1.0, S)
    frame.loc[rows, "p95"] = CDC_TAIL_P95
    frame.loc[rows, "p97"] = CDC_TAIL_P95 + CDC_TAIL_SIGMA * stats.norm.ppf(0.7)
    return frame


@pytest.fixture
def reference_frame() -> pd.DataFrame:
    """Synthetic reference table rows."""
    return build_reference_frame()


@pytest.fixture(scope="session")
def reference_csv(tmp_path_factory):
    """Synthetic reference table written to disk."""
    path = tmp_path_factory.mktemp("reference") / "reference.csv"
    build_reference_frame().to_csv(path, index=False)
    return path


@pytest.fixture(scope="session")
def reference(reference_csv) -> ReferenceTable:
    """Loaded synthetic reference table, shared by all tests."""
    return load_reference_table(reference_csv)


@pytest.fixture(scope="session")
def documented_tail_reference() -> ReferenceTable:
    """Reference table carrying the CDC published tail parameters at 50.5 months."""
    return ReferenceTable.from_frame(build_documented_tail_frame())


@pytest.fixture
def observations() -> pd.DataFrame:
    """
    Long observations for two subjects.

    Subject 'a' has a matched visit at 1000 days and an excluded height at
    2000 days; subject 'b' has a matched visit at 1500 days and a lone weight
    at 3000 days.
    """
    return pd.DataFrame(
        {
            "id": [1, 2, 3, 4, 5, 6, 7],
            "subjid": ["a", "a", "a", "a", "b", "b", "b"],
            "sex": [0, 0, 0, 0, 1, 1, 1],
            "agedays": [1000, 1000, 2000, 2000, 1500, 1500, 3000],
            "param": [
                "WEIGHTKG",
                "HEIGHTCM",
                "WEIGHTKG",
                "HEIGHTCM",
                "WEIGHTKG",
                "HEIGHTCM",
                "WEIGHTKG",
            ],
            "measurement": [14.0, 95.0, 20.0, 115.0, 17.0, 100.0, 30.0],
            "gcr_result": [
                "Include",
                "Include",
                "Include",
                "Exclude-Carried-Forward",
                "Include",
                "Include",
                "Include",
            ],
        }
    )


@pytest.fixture
def wide_data() -> pd.DataFrame:
    """Wide visit rows with canonical sex codes and fractional ages in months."""
    return pd.DataFrame(
        {
            "subjid": ["a", "b", "c", "d"],
            "agedays": [1000.0, 1500.0, 3660.0, 5000.0],
            "agem": [32.85, 49.28, 120.25, 164.27],
            "sex": [1, 2, 1, 2],
            "wt": [14.0, 17.0, 40.1, 80.0],
            "wt_id": [1, 5, 9, 11],
            "ht": [95.0, 100.0, 132.5, 160.0],
            "ht_id": [2, 6, 10, 12],
        }
    )
