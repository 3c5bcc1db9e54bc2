import math

import numpy as np
import pandas as pd

from aaqtool.config import EngineConfig
from aaqtool.utils import parse_float

RAW_DEPTH = "_raw_depth"
DEPTH_BIN = "_depth_bin"
B1M_FLAG = "_b1m_flag"


def calculate_depth_bin(depth, config=None):
    """
    Depth segment for a single reading.
    floor mode: 0.7 -> 0.5, 1.4 -> 1.0; round mode: 0.7 -> 0.5, 0.8 -> 1.0
    """
    if config is None:
        config = EngineConfig()
    steps = depth / config.bin_size
    if config.bin_rounding == "round":
        return math.floor(steps + 0.5) * config.bin_size
    return math.floor(steps) * config.bin_size


def depth_bins(depths, config=None):
    """Vectorized calculate_depth_bin over a float Series (NaN stays NaN)."""
    if config is None:
        config = EngineConfig()
    steps = depths.astype(float) / config.bin_size
    if config.bin_rounding == "round":
        steps = steps + 0.5
    return pd.Series(np.floor(steps) * config.bin_size, index=depths.index)


def apply_b1m_flag(df, config=None):
    """
    Flags the near-bottom rows of one file.

    The flagged bin is (deepest bin - b1m_offset). Files whose raw maximum
    depth stays under b1m_min_depth get 0 on every row.
    df must carry RAW_DEPTH and DEPTH_BIN columns.
    """
    if config is None:
        config = EngineConfig()
    df_flag = df.copy()
    df_flag[B1M_FLAG] = 0

    bins = df_flag[DEPTH_BIN]
    raw = df_flag[RAW_DEPTH]
    if bins.notna().sum() == 0 or raw.max() < config.b1m_min_depth:
        return df_flag

    flag_bin = bins.max() - config.b1m_offset
    mask = (bins - flag_bin).abs() < config.bin_tolerance
    df_flag.loc[mask, B1M_FLAG] = 1
    return df_flag


def classify_depths(values, config=None):
    """
    Builds the per-row depth table for one file.

    values: raw depth cells (strings); unparseable cells give NaN depth,
    NaN bin and flag 0.
    """
    if config is None:
        config = EngineConfig()
    parsed = [parse_float(v) for v in values]
    raw = pd.Series([np.nan if v is None else v for v in parsed], dtype=float)
    df = pd.DataFrame({RAW_DEPTH: raw, DEPTH_BIN: depth_bins(raw, config)})
    return apply_b1m_flag(df, config)
