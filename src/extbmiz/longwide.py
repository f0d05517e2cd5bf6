"""
Reshape long growth observations into one row per subject-visit.

Input has one row per measurement (height or weight) with an inclusion
status assigned by an upstream cleaning step. Output has one row per
(subjid, agedays) with weight and height side by side, as required by the
z-score engine.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from .columns import ColumnMapper
from .config import LongWideConfig
from .models import DAYS_PER_YEAR, MONTHS_PER_YEAR, WIDE_COLUMNS

logger = logging.getLogger(__name__)

JOIN_KEYS = ["subjid", "agedays"]


def longwide(
    obs_df: pd.DataFrame, config: Optional[LongWideConfig] = None, **overrides
) -> pd.DataFrame:
    """
    Transform long observations into wide visit rows.

    Heights and weights are paired on exact (subjid, agedays) equality. Only
    observations whose status is in ``inclusion_types`` are used, unless
    ``include_all`` is set, in which case statuses are ignored and unmatched
    observations are kept as partial rows with the other side missing.

    Args:
        obs_df: Long observations (not modified)
        config: Column names and filters; defaults to ``LongWideConfig()``
        **overrides: Individual ``LongWideConfig`` fields, applied on top of ``config``

    Returns:
        DataFrame with columns subjid, agedays, agey, agem, sex, wt, wt_id, ht,
        ht_id, sorted by subjid and agedays. ``sex`` is recoded to 1/2.

    Raises:
        MissingField: If a configured column is absent
        ValueError: If the configuration is invalid
    """
    if config is None:
        config = LongWideConfig(**overrides)
    elif overrides:
        config = LongWideConfig(**{**config.model_dump(), **overrides})

    required = ["id", "subjid", "sex", "agedays", "param", "measurement"]
    if not config.include_all:
        required.append("status")
    mapper = ColumnMapper(config.column_map(), required=required)
    mapper.validate(obs_df.columns)

    obs = obs_df
    if not config.include_all:
        obs = obs[obs[mapper.column("status")].isin(config.inclusion_types)]

    keyless = obs[mapper.column("subjid")].isna() | obs[mapper.column("agedays")].isna()
    if keyless.any():
        logger.warning(
            f"Dropping {int(keyless.sum())} observations without subjid or agedays"
        )
        obs = obs[~keyless]

    wts = _param_series(obs, mapper, config, config.weight_param, "wt")
    hts = _param_series(obs, mapper, config, config.height_param, "ht")

    how = "outer" if config.include_all else "inner"
    wide = wts.merge(hts, on=JOIN_KEYS, how=how, suffixes=("_wt", "_ht"))

    wide["sex"] = wide["sex_wt"].combine_first(wide["sex_ht"]).map(config.sex_codes)
    unmapped = wide["sex"].isna() & wide["sex_wt"].combine_first(wide["sex_ht"]).notna()
    if unmapped.any():
        logger.warning(
            f"{int(unmapped.sum())} rows have sex codes outside {sorted(config.sex_codes)}; "
            "sex set to missing"
        )

    agedays = pd.to_numeric(wide["agedays"], errors="coerce")
    wide["agey"] = agedays / DAYS_PER_YEAR
    wide["agem"] = wide["agey"] * MONTHS_PER_YEAR

    wide = wide.sort_values(JOIN_KEYS, kind="stable").reset_index(drop=True)
    logger.info(
        f"longwide: {len(obs_df)} observations -> {len(wide)} visit rows "
        f"({'outer' if config.include_all else 'matched'} join)"
    )
    return wide[WIDE_COLUMNS]


def _param_series(
    obs: pd.DataFrame,
    mapper: ColumnMapper,
    config: LongWideConfig,
    param: str,
    name: str,
) -> pd.DataFrame:
    """One measurement type as (subjid, agedays, sex, <name>, <name>_id), one row per visit."""
    part = obs[obs[mapper.column("param")] == param]

    if config.include_all and mapper.column("status") in part.columns:
        # Qualifying observations win when several share a visit
        rank = np.where(
            part[mapper.column("status")].isin(config.inclusion_types), 0, 1
        )
        part = part.iloc[np.argsort(rank, kind="stable")]

    part = pd.DataFrame(
        {
            "subjid": part[mapper.column("subjid")].to_numpy(),
            "agedays": part[mapper.column("agedays")].to_numpy(),
            "sex": part[mapper.column("sex")].to_numpy(),
            name: pd.to_numeric(part[mapper.column("measurement")], errors="coerce").to_numpy(),
            f"{name}_id": part[mapper.column("id")].to_numpy(),
        }
    )

    duplicated = part.duplicated(subset=JOIN_KEYS, keep="first")
    if duplicated.any():
        logger.warning(
            f"Dropping {int(duplicated.sum())} duplicate {param} observations "
            "sharing a subjid/agedays visit"
        )
        part = part[~duplicated]
    return part
