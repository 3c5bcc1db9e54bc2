"""
Merged exports built from (station, card) assignments.

Format A (raw merge) emits every data row of every assigned file.
Format B (binned averages) collapses each file's rows per depth bin.
Both start with the fixed station/file/position/bin columns followed by the
union of source columns (first file's order, then new names as first seen).
"""

import logging

import numpy as np
import pandas as pd

from aaqtool.binning import B1M_FLAG, DEPTH_BIN, classify_depths
from aaqtool.config import EngineConfig
from aaqtool.parser import (
    find_datetime_column,
    find_depth_column,
    find_lat_column,
    find_lon_column,
)
from aaqtool.utils import parse_float, round_half_up

logger = logging.getLogger(__name__)

STATION_HEADERS = ["地点ID", "地点名", "ファイル名", "地点緯度(マスタ)", "地点経度(マスタ)"]
START_HEADERS = ["開始位置緯度", "開始位置経度"]
END_HEADERS = ["終了位置緯度", "終了位置経度"]
BIN_HEADERS = ["水深区分", "B-1mフラグ"]
ROW_COUNT_HEADER = "データ件数"
COLLISION_PREFIX = "元_"


def fixed_headers(config=None):
    if config is None:
        config = EngineConfig()
    headers = STATION_HEADERS + START_HEADERS
    if config.export_end_position:
        headers = headers + END_HEADERS
    return headers + BIN_HEADERS


def _usable(assignments):
    for a in assignments:
        parsed = a.card.parsed
        if parsed is None or parsed.error:
            continue
        yield a


def build_union_columns(assignments):
    """Source column names across all usable files, first-seen order."""
    seen = set()
    ordered = []
    for a in _usable(assignments):
        for h in a.card.parsed.header_row:
            if h not in seen:
                seen.add(h)
                ordered.append(h)
    return ordered


def output_column_names(union_cols, fixed):
    """Source names that clash with a fixed header get the 元_ prefix."""
    return [COLLISION_PREFIX + c if c in fixed else c for c in union_cols]


def _blank(value):
    return "" if value is None else value


def _file_frame(parsed, union_cols, config):
    """
    Returns (data, depth) DataFrames for one file.

    data holds the source cells aligned to union_cols ('' where the file
    lacks a column); depth holds raw depth, bin and B-1m flag per row.
    """
    records = [dict(zip(parsed.header_row, row)) for row in parsed.data_rows]
    data = pd.DataFrame.from_records(records, columns=list(dict.fromkeys(parsed.header_row)))
    data = data.reindex(columns=union_cols, fill_value="")

    depth_idx = find_depth_column(parsed.header_row)
    if depth_idx >= 0:
        depth_values = [row[depth_idx] for row in parsed.data_rows]
    else:
        depth_values = [None] * len(parsed.data_rows)
    depth = classify_depths(depth_values, config)
    return data, depth


def _fixed_part(a, depth_bin, flag, config):
    parsed = a.card.parsed
    gps = parsed.gps_coord
    part = [
        a.station_id or "",
        a.station_name or "",
        a.card.file_name,
        _blank(a.station_lat),
        _blank(a.station_lon),
        gps.lat if gps else "",
        gps.lon if gps else "",
    ]
    if config.export_end_position:
        end = parsed.metadata.end_position
        part += [end.lat if end else "", end.lon if end else ""]
    part += ["" if pd.isna(depth_bin) else float(depth_bin), int(flag)]
    return part


def merge_all_data(assignments, config=None):
    """
    Format A: every data row of every assignment.

    Row order is assignment order, then the file's own row order.

    Returns:
        (headers, rows)
    """
    if config is None:
        config = EngineConfig()
    fixed = fixed_headers(config)
    union_cols = build_union_columns(assignments)
    headers = fixed + output_column_names(union_cols, fixed)

    rows = []
    for a in _usable(assignments):
        data, depth = _file_frame(a.card.parsed, union_cols, config)
        values = data.values.tolist()
        for i, cells in enumerate(values):
            fixed_part = _fixed_part(a, depth[DEPTH_BIN].iat[i], depth[B1M_FLAG].iat[i], config)
            rows.append(fixed_part + cells)
    logger.info(f"Raw merge: {len(rows)} rows, {len(union_cols)} source columns")
    return headers, rows


def is_numeric_column(values, config=None):
    """
    True when at least numeric_threshold of the first numeric_sample_size
    non-empty values parse as numbers.
    """
    if config is None:
        config = EngineConfig()
    sample = [v for v in values if v is not None and v != ""][:config.numeric_sample_size]
    if not sample:
        return False
    numeric = sum(1 for v in sample if parse_float(v) is not None)
    return numeric / len(sample) >= config.numeric_threshold


def _group_order(bins):
    """Ascending bin values, with the no-depth group (NaN) last."""
    keys = sorted(bins.dropna().unique().tolist())
    groups = [bins.index[bins == k] for k in keys]
    if bins.isna().any():
        keys.append(np.nan)
        groups.append(bins.index[bins.isna()])
    return list(zip(keys, groups))


def _average(values, config):
    parsed = pd.Series([parse_float(v) for v in values], dtype=float)
    if parsed.notna().sum() == 0:
        return ""
    return round_half_up(parsed.mean(), config.average_decimals)


def calculate_depth_bin_averages(assignments, config=None):
    """
    Format B: one row per (file, depth bin).

    Within a bin the observation-datetime column and the first lat/lon-like
    columns keep the first row's value, numeric columns are averaged, and
    anything else keeps the first row's value. The B-1m flag is OR-ed over
    the group and データ件数 records the group size.

    Returns:
        (headers, rows)
    """
    if config is None:
        config = EngineConfig()
    fixed = fixed_headers(config)
    union_cols = build_union_columns(assignments)
    headers = fixed + output_column_names(union_cols, fixed) + [ROW_COUNT_HEADER]

    rows = []
    for a in _usable(assignments):
        parsed = a.card.parsed
        data, depth = _file_frame(parsed, union_cols, config)

        file_headers = parsed.header_row
        first_only = set()
        for idx in (find_datetime_column(file_headers),
                    find_lat_column(file_headers),
                    find_lon_column(file_headers)):
            if idx >= 0:
                first_only.add(file_headers[idx])

        for bin_key, index in _group_order(depth[DEPTH_BIN]):
            group = data.loc[index]
            first = group.iloc[0]
            flag = int(depth.loc[index, B1M_FLAG].max())

            cells = []
            for col in union_cols:
                if col in first_only:
                    cells.append(first[col])
                elif is_numeric_column(group[col].tolist(), config):
                    cells.append(_average(group[col].tolist(), config))
                else:
                    cells.append(first[col])

            rows.append(_fixed_part(a, bin_key, flag, config) + cells + [len(group)])
    logger.info(f"Depth-bin averages: {len(rows)} rows")
    return headers, rows
