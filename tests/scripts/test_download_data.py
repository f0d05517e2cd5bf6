"""
Tests for scripts/download_data.py - Reference table acquisition.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest
from scipy import stats

# Add scripts to path for testing
script_dir = Path(__file__).parent.parent.parent / "scripts"
sys.path.insert(0, str(script_dir))

from download_data import (  # noqa: E402  # type: ignore
    DATA_SOURCES,
    OUTPUT_COLS,
    compute_sha256,
    download_csv,
    main,
    parse_cdc_csv,
)

from extbmiz.exceptions import ReferenceTableLoadError  # noqa: E402
from extbmiz.reference import load_reference_table  # noqa: E402
from extbmiz.zscores import lms_value  # noqa: E402


def _lms_csv(header: str, L: float, M: float, S: float, extra=None) -> str:
    """CDC-style rows for both sexes at 23.5, 24.0 and 24.5 months."""
    rows = [header]
    for sex in (1, 2):
        for age in (23.5, 24.0, 24.5):
            m = M + 0.1 * (age - 23.5) + 0.05 * sex
            values = [sex, age, L, m, S]
            if extra is not None:
                values += extra(m)
            rows.append(",".join(str(v) for v in values))
    return "\n".join(rows)


@pytest.fixture
def sample_cdc_wtage_csv():
    """Sample CDC wtage CSV content."""
    return _lms_csv("Sex,Agemos,L,M,S", -0.216, 12.4, 0.108)


@pytest.fixture
def sample_cdc_statage_csv():
    """Sample CDC statage CSV content."""
    return _lms_csv("Sex,Agemos,L,M,S", 0.941, 86.4, 0.040)


@pytest.fixture
def sample_cdc_bmi_csv():
    """Sample CDC BMI CSV content with P95/P97 columns."""
    return _lms_csv(
        "Sex,Agemos,L,M,S,P95,P97", -1.982, 16.5, 0.080, extra=lambda m: [m * 1.2, m * 1.3]
    )


@pytest.fixture
def sample_sources(sample_cdc_wtage_csv, sample_cdc_statage_csv, sample_cdc_bmi_csv):
    """URL -> CSV content for every configured source."""
    content = {
        "weight": sample_cdc_wtage_csv,
        "height": sample_cdc_statage_csv,
        "bmi": sample_cdc_bmi_csv,
    }
    return {url: content[measure] for measure, url in DATA_SOURCES.values()}


def _mock_session(mock_session_class):
    mock_session_instance = MagicMock()
    mock_session_instance.__enter__ = MagicMock(return_value=mock_session_instance)
    mock_session_instance.__exit__ = MagicMock(return_value=None)
    mock_session_class.return_value = mock_session_instance
    return mock_session_instance


class TestDownloadCSV:
    """Test download_csv function."""

    def test_tc001_download_valid_cdc_url(self):
        """Download valid CDC URL successfully."""
        with patch("download_data.requests.Session") as mock_session_class:
            session = _mock_session(mock_session_class)
            mock_response = MagicMock()
            mock_response.text = "mock,csv,content"
            session.get.return_value = mock_response

            assert download_csv("http://example.com/csv") == "mock,csv,content"
            session.get.assert_called_once_with(
                "http://example.com/csv", timeout=30, verify=True
            )

    def test_tc002_handle_network_timeout(self):
        """Network failures propagate after being logged."""
        with patch("download_data.requests.Session") as mock_session_class:
            session = _mock_session(mock_session_class)
            session.get.side_effect = Exception("timeout")
            with pytest.raises(Exception, match="timeout"):
                download_csv("http://example.com")

    def test_tc003_handle_http_error_status_codes(self):
        """HTTP error status codes raise."""
        with patch("download_data.requests.Session") as mock_session_class:
            session = _mock_session(mock_session_class)
            mock_response = MagicMock()
            mock_response.raise_for_status.side_effect = Exception("404 Client Error")
            session.get.return_value = mock_response
            with pytest.raises(Exception, match="404"):
                download_csv("http://example.com")


class TestComputeSHA256:
    """Test compute_sha256 function."""

    def test_tc004_compute_sha256_correct(self):
        expected = "6ae8a75555209fd6c44157c0aed8016e763ff435a19cf186f76863140143ff72"
        assert compute_sha256("test content") == expected


class TestParseCDCCSV:
    """Test parse_cdc_csv function."""

    def test_tc005_parse_wtage_filters_under_24(self, sample_cdc_wtage_csv):
        result = parse_cdc_csv(sample_cdc_wtage_csv, "weight")
        assert list(result.columns) == OUTPUT_COLS
        assert result["agemos"].min() == 24.0
        assert len(result) == 4
        assert set(result["measure"]) == {"weight"}
        assert result["p95"].isna().all() and result["p97"].isna().all()
        assert result["sex"].dtype.kind == "i"

    def test_tc006_parse_bmi_uses_percentile_columns(self, sample_cdc_bmi_csv):
        result = parse_cdc_csv(sample_cdc_bmi_csv, "bmi")
        assert np.allclose(result["p95"], result["M"] * 1.2)
        assert np.allclose(result["p97"], result["M"] * 1.3)

    def test_tc007_parse_bmi_without_percentiles(self):
        """Missing P95/P97 columns fall back to the inverse LMS transform."""
        content = _lms_csv("Sex,Agemos,L,M,S", -1.982, 16.5, 0.080)
        result = parse_cdc_csv(content, "bmi")
        expected = lms_value(stats.norm.ppf(0.95), result["L"], result["M"], result["S"])
        assert np.allclose(result["p95"], expected)
        assert (result["p97"] > result["p95"]).all()

    def test_tc008_skip_repeated_header_rows(self, sample_cdc_bmi_csv):
        lines = sample_cdc_bmi_csv.splitlines()
        content = "\n".join(lines[:4] + [lines[0]] + lines[4:])
        result = parse_cdc_csv(content, "bmi")
        assert len(result) == 4

    def test_tc009_case_insensitive_headers_and_bom(self):
        content = "\ufeffSEX, AGEMOS, l, m, s\n1,24.0,-0.2,12.4,0.1\n2,24.0,-0.2,12.1,0.1"
        result = parse_cdc_csv(content, "weight")
        assert result["M"].tolist() == [12.4, 12.1]

    def test_tc010_missing_required_columns(self):
        with pytest.raises(ValueError, match="missing required columns"):
            parse_cdc_csv("Sex,Agemos,L,M\n1,24.0,-0.2,12.4", "weight")

    def test_tc011_no_rows_at_or_above_24(self):
        with pytest.raises(ValueError, match="no rows"):
            parse_cdc_csv("Sex,Agemos,L,M,S\n1,0.0,-0.2,3.5,0.1", "weight")


class TestMainFunction:
    """Test main function."""

    def test_tc012_main_end_to_end(self, tmp_path, sample_sources):
        output = tmp_path / "cdc_reference.csv"
        with patch("download_data.download_csv", side_effect=sample_sources.__getitem__):
            table = main(output=output)

        assert output.exists()
        assert len(table) == 12
        saved = pd.read_csv(output)
        assert list(saved.columns) == OUTPUT_COLS

        metadata = json.loads(output.with_suffix(".json").read_text())
        assert set(metadata) == set(DATA_SOURCES)
        assert all(len(entry["sha256"]) == 64 for entry in metadata.values())

        reference = load_reference_table(output)
        assert reference.common_age_range() == (24.0, 24.5)

    def test_tc013_main_strict_mode_raises_on_error(self, tmp_path, sample_sources):
        def flaky(url):
            if url == DATA_SOURCES["statage"][1]:
                raise Exception("503 Server Error")
            return sample_sources[url]

        with patch("download_data.download_csv", side_effect=flaky):
            with pytest.raises(RuntimeError, match="statage"):
                main(strict_mode=True, output=tmp_path / "out.csv")
        assert not (tmp_path / "out.csv").exists()

    def test_tc014_main_non_strict_rejects_incomplete_table(self, tmp_path, sample_sources):
        """Without a height source the table fails the package validation."""

        def flaky(url):
            if url == DATA_SOURCES["statage"][1]:
                raise Exception("503 Server Error")
            return sample_sources[url]

        with patch("download_data.download_csv", side_effect=flaky):
            with pytest.raises(ReferenceTableLoadError, match="height"):
                main(output=tmp_path / "out.csv")

    def test_tc015_main_all_sources_fail(self, tmp_path):
        with patch("download_data.download_csv", side_effect=Exception("offline")):
            with pytest.raises(RuntimeError, match="No reference sources"):
                main(output=tmp_path / "out.csv")
