#!/usr/bin/env python3
"""
Download CDC growth chart LMS data and build the extbmiz reference table.

This script downloads the CDC 2000 weight-for-age, stature-for-age and
BMI-for-age LMS files, keeps ages from 24 months on, and writes a single CSV
with one row per (sex, agemos, measure):

    sex,agemos,measure,L,M,S,p95,p97

p95/p97 are only filled for BMI rows; they come from the P95/P97 columns of
the CDC file, or from the inverse LMS transform when those columns are
absent. The result is validated with the same loader the package uses before
it is written, next to a JSON file recording the source URLs and hashes.
"""

import argparse
import hashlib
import io
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from scipy import stats
from tqdm import tqdm
from urllib3.util.retry import Retry

from extbmiz.reference import DEFAULT_REFERENCE_FILE, ReferenceTable
from extbmiz.zscores import lms_value

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Required columns for parsing (case-insensitive)
REQUIRED_COLS = ["sex", "agemos", "l", "m", "s"]
OUTPUT_COLS = ["sex", "agemos", "measure", "L", "M", "S", "p95", "p97"]
MIN_AGEMOS = 24.0

# Data sources: name -> (measure, URL)
DATA_SOURCES: Dict[str, tuple] = {
    "wtage": ("weight", "https://www.cdc.gov/growthcharts/data/zscore/wtage.csv"),
    "statage": ("height", "https://www.cdc.gov/growthcharts/data/zscore/statage.csv"),
    "bmiagerev": ("bmi", "https://www.cdc.gov/growthcharts/data/zscore/bmiagerev.csv"),
}

DEFAULT_OUTPUT = (
    Path(__file__).parent.parent / "src" / "extbmiz" / "data" / DEFAULT_REFERENCE_FILE
)


def download_csv(url: str, timeout: int = 30) -> str:
    """Download CSV content from URL with retries."""
    try:
        retry_strategy = Retry(
            total=3,
            status_forcelist=[429, 500, 502, 503, 504],
            backoff_factor=2,  # Exponential backoff
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)

        with requests.Session() as session:
            session.mount("https://", adapter)
            session.mount("http://", adapter)
            response = session.get(url, timeout=timeout, verify=True)
            response.raise_for_status()
            return response.text
    except Exception as e:
        logger.error(f"Failed to download {url}: {e}")
        raise


def compute_sha256(content: str) -> str:
    """Compute SHA-256 hash of content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def parse_cdc_csv(content: str, measure: str) -> pd.DataFrame:
    """
    Parse one CDC LMS file into reference table rows.

    Header matching is case-insensitive. Rows whose sex or age is not numeric
    (the CDC BMI file repeats its header between the sexes) are skipped.

    Args:
        content: Raw CSV text
        measure: 'weight', 'height' or 'bmi'

    Returns:
        DataFrame with ``OUTPUT_COLS``, ages >= 24 months

    Raises:
        ValueError: If a required column is missing or no rows remain
    """
    raw = pd.read_csv(io.StringIO(content.lstrip("\ufeff")), dtype=str, skipinitialspace=True)
    columns = {c.strip().lower(): c for c in raw.columns}

    missing = [c for c in REQUIRED_COLS if c not in columns]
    if missing:
        raise ValueError(f"{measure}: missing required columns {missing}")

    def numeric(name: str) -> pd.Series:
        return pd.to_numeric(raw[columns[name]].str.strip(), errors="coerce")

    frame = pd.DataFrame(
        {
            "sex": numeric("sex"),
            "agemos": numeric("agemos"),
            "measure": measure,
            "L": numeric("l"),
            "M": numeric("m"),
            "S": numeric("s"),
        }
    )
    for pct, z in (("p95", stats.norm.ppf(0.95)), ("p97", stats.norm.ppf(0.97))):
        if measure != "bmi":
            frame[pct] = np.nan
        elif pct in columns:
            frame[pct] = numeric(pct)
        else:
            logger.info(f"{measure}: no {pct.upper()} column, using inverse LMS")
            frame[pct] = lms_value(z, frame["L"], frame["M"], frame["S"])

    non_data = frame["sex"].isna() | frame["agemos"].isna()
    if non_data.any():
        logger.info(f"{measure}: skipped {int(non_data.sum())} non-data rows")
    frame = frame[~non_data & (frame["agemos"] >= MIN_AGEMOS)]
    if frame.empty:
        raise ValueError(f"{measure}: no rows at or above {MIN_AGEMOS} months")

    frame["sex"] = frame["sex"].astype(int)
    return frame[OUTPUT_COLS].reset_index(drop=True)


def save_reference(table: pd.DataFrame, metadata: Dict[str, dict], output_path: Path) -> None:
    """Write the reference CSV and its source metadata JSON."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(output_path, index=False)
    metadata_path = output_path.with_suffix(".json")
    metadata_path.write_text(json.dumps(metadata, indent=2, sort_keys=True))
    logger.info(f"Saved {len(table)} reference rows to {output_path}")


def main(strict_mode: bool = False, output: Optional[Path] = None) -> pd.DataFrame:
    """Download, parse, validate and save the reference table."""
    output_path = Path(output) if output is not None else DEFAULT_OUTPUT

    frames: List[pd.DataFrame] = []
    metadata: Dict[str, dict] = {}
    failed_sources = []

    with tqdm(total=len(DATA_SOURCES), desc="Fetching sources") as pbar:
        for name, (measure, url) in DATA_SOURCES.items():
            pbar.set_postfix({"source": name})
            try:
                csv_content = download_csv(url)
                frames.append(parse_cdc_csv(csv_content, measure))
                metadata[name] = {
                    "url": url,
                    "sha256": compute_sha256(csv_content),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            except Exception as e:
                failed_sources.append(name)
                logger.error(f"Failed to process {name}: {e}")
            pbar.update(1)

    if strict_mode and failed_sources:
        raise RuntimeError(
            f"Strict mode failed: Unable to process sources: {', '.join(failed_sources)}"
        )
    if not frames:
        raise RuntimeError("No reference sources could be processed")

    table = (
        pd.concat(frames, ignore_index=True)
        .sort_values(["measure", "sex", "agemos"], kind="stable")
        .reset_index(drop=True)
    )

    # Fails loudly on anything the package loader would reject
    reference = ReferenceTable.from_frame(table)
    logger.info(f"Verification: {reference!r}")

    save_reference(table, metadata, output_path)
    return table


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Download CDC growth reference data and build the extbmiz reference table."
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help=f"Output CSV path (default: {DEFAULT_OUTPUT})",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Strict mode: exit on any error instead of continuing with warnings",
    )
    args = parser.parse_args()

    main(strict_mode=args.strict, output=args.output)
