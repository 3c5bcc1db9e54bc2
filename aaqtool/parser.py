import logging
import re

from aaqtool.config import EngineConfig
from aaqtool.models import MasterParseResult, ObservationMetadata, ParsedObservation
from aaqtool.station_manager import build_station
from aaqtool.utils import convert_gps_coordinate, parse_float

logger = logging.getLogger(__name__)

# Master CSV column names
COL_NAME = "地点名"
COL_NAME_READ = "地点名_読み"
COL_ID = "地点ID"
COL_CATEGORY = "調査区分"
COL_LAT = "緯度"
COL_LON = "経度"
COL_NOTE = "備考"
COL_KEYWORDS = "ファイル名キーワード"
COL_TEMPLATE = "テンプレート"

REQUIRED_MASTER_COLUMNS = [COL_NAME, COL_ID, COL_CATEGORY]

# Observation header hints
DATETIME_HINT = "観測日時"
DEPTH_HINT = "深度"

ERROR_NO_HEADER = "Header row not found"
ERROR_NO_DATA = "No data rows"

_SAMPLE_COUNT = re.compile(r"^SampleCnt=(\d+)", re.IGNORECASE)
_START_POSITION = re.compile(r"^StartPosition=(.+)", re.IGNORECASE)
_END_POSITION = re.compile(r"^EndPosition=(.+)", re.IGNORECASE)
_LAT_HINT = re.compile(r"緯度|lat", re.IGNORECASE)
_LON_HINT = re.compile(r"経度|lon", re.IGNORECASE)


def split_lines(text):
    """Splits CSV text into lines (CRLF, CR and LF)."""
    return text.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def parse_csv_line(line):
    """
    Splits one CSV line into fields.

    Two states, unquoted and quoted. Unquoted: a comma closes the field
    (stripped of surrounding whitespace) and a quote opens a quoted run.
    Quoted: "" is a literal quote, a lone quote closes the run, commas are
    literal. An unterminated quote leaves the rest of the line literal.
    """
    fields = []
    current = []
    in_quote = False
    i = 0
    n = len(line)
    while i < n:
        ch = line[i]
        if in_quote:
            if ch == '"' and i + 1 < n and line[i + 1] == '"':
                current.append('"')
                i += 1
            elif ch == '"':
                in_quote = False
            else:
                current.append(ch)
        else:
            if ch == '"':
                in_quote = True
            elif ch == ",":
                fields.append("".join(current).strip())
                current = []
            else:
                current.append(ch)
        i += 1
    fields.append("".join(current).strip())
    return fields


# --- Header helpers (shared with the merge engine) ---

def _first_index(headers, predicate):
    for i, h in enumerate(headers):
        if predicate(h):
            return i
    return -1


def find_datetime_column(headers):
    return _first_index(headers, lambda h: DATETIME_HINT in h or "date" in h.lower())


def find_depth_column(headers):
    return _first_index(headers, lambda h: DEPTH_HINT in h or "depth" in h.lower())


def find_lat_column(headers):
    return _first_index(headers, lambda h: bool(_LAT_HINT.search(h)))


def find_lon_column(headers):
    return _first_index(headers, lambda h: bool(_LON_HINT.search(h)))


def looks_like_master(text):
    """True when the first line reads like a station master header."""
    first = split_lines(text)[0] if text else ""
    return COL_NAME in first and COL_LAT in first


def _split_tokens(value, sep):
    return [t.strip() for t in value.split(sep) if t.strip()] if value else []


def parse_master_csv(text):
    """
    Parses station master CSV text.

    Line 1 is the header; columns are looked up by name. 地点名, 地点ID and
    調査区分 are required. Rows without a name or id are skipped. A repeated
    id is reported and both the original and the repeat are marked invalid.

    Returns:
        MasterParseResult(stations, errors). errors are warnings unless no
        header could be read, in which case stations is empty.
    """
    lines = [l for l in split_lines(text) if l.strip() != ""]
    if not lines:
        return MasterParseResult([], [ERROR_NO_HEADER])

    headers = parse_csv_line(lines[0])
    col_idx = {}
    for i, h in enumerate(headers):
        col_idx.setdefault(h.strip(), i)

    missing = [c for c in REQUIRED_MASTER_COLUMNS if c not in col_idx]
    if missing:
        return MasterParseResult([], [f"Missing required columns: {', '.join(missing)}"])

    stations = []
    errors = []
    first_seen = {}  # id -> (station index, line number)

    for i, line in enumerate(lines[1:], start=2):
        fields = parse_csv_line(line)

        def get(name):
            idx = col_idx.get(name)
            if idx is None or idx >= len(fields):
                return ""
            return fields[idx].strip()

        name = get(COL_NAME)
        station_id = get(COL_ID)
        if not name or not station_id:
            continue

        station = build_station(
            station_id=station_id,
            name=name,
            category=get(COL_CATEGORY),
            name_read=get(COL_NAME_READ),
            lat=parse_float(get(COL_LAT)),
            lon=parse_float(get(COL_LON)),
            note=get(COL_NOTE),
            keywords=_split_tokens(get(COL_KEYWORDS), "|"),
            templates=_split_tokens(get(COL_TEMPLATE), "/"),
        )

        if station_id in first_seen:
            original_idx, original_line = first_seen[station_id]
            errors.append(f"Duplicate id: {station_id} (line {original_line} and line {i})")
            stations[original_idx].invalid = True
            station.invalid = True
        else:
            first_seen[station_id] = (len(stations), i)
        stations.append(station)

    if errors:
        logger.warning(f"Master CSV has {len(errors)} duplicate id(s)")
    return MasterParseResult(stations, errors)


def _find_header_index(lines, config):
    """
    Locates the column header row.

    1. the line right after the `[Item]` marker
    2. the first line (within header_scan_lines) mentioning 観測日時 / date
    3. the fixed fallback index (flagged)

    Returns (index, fallback_used).
    """
    for i, line in enumerate(lines):
        if line.strip() == config.header_marker:
            return i + 1, False

    for i, line in enumerate(lines[:config.header_scan_lines]):
        if DATETIME_HINT in line or "date" in line.lower():
            return i, False

    return config.header_fallback_index, True


def _extract_metadata(lines, config):
    meta = ObservationMetadata()
    for line in lines[:config.metadata_scan_lines]:
        m = _SAMPLE_COUNT.match(line)
        if m:
            meta.sample_count = int(m.group(1))
        m = _START_POSITION.match(line)
        if m:
            meta.start_position = convert_gps_coordinate(m.group(1))
        m = _END_POSITION.match(line)
        if m:
            meta.end_position = convert_gps_coordinate(m.group(1))
    return meta


def parse_observation_csv(text, file_name, config=None):
    """
    Parses one instrument dump file into a ParsedObservation.

    Metadata (SampleCnt=, StartPosition=, EndPosition=) is read from the
    first lines independently of where the header sits. Every non-blank line
    after the header is a data row, padded or cut to the header width.
    """
    if config is None:
        config = EngineConfig()

    lines = split_lines(text)
    result = ParsedObservation(file_name=file_name)
    result.metadata = _extract_metadata(lines, config)

    header_idx, fallback = _find_header_index(lines, config)
    result.header_fallback_used = fallback
    if header_idx >= len(lines):
        result.error = ERROR_NO_HEADER
        logger.warning(f"{file_name}: header row not found")
        return result

    result.header_row_index = header_idx
    result.header_row = parse_csv_line(lines[header_idx])
    width = len(result.header_row)

    data_rows = []
    for line in lines[header_idx + 1:]:
        if not line.strip():
            continue
        fields = parse_csv_line(line)
        if len(fields) < width:
            fields = fields + [""] * (width - len(fields))
        data_rows.append(fields[:width])

    if not data_rows:
        result.error = ERROR_NO_DATA
        logger.warning(f"{file_name}: no data rows after header line {header_idx + 1}")
        return result
    result.data_rows = data_rows

    headers = result.header_row
    dt_idx = find_datetime_column(headers)
    if dt_idx >= 0 and data_rows[0][dt_idx]:
        result.first_date_time = data_rows[0][dt_idx]

    depth_idx = find_depth_column(headers)
    if depth_idx >= 0:
        depths = [parse_float(row[depth_idx]) for row in data_rows]
        depths = [d for d in depths if d is not None]
        if depths:
            result.max_depth = max(depths)

    if fallback:
        logger.warning(f"{file_name}: header taken from fixed line {header_idx + 1}")
    return result
