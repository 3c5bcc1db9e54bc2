import csv
import io
import math
import re
from datetime import datetime

from aaqtool.models import Coordinate

# Leading numeric prefix, the way spreadsheet exports and instrument dumps
# are read elsewhere in the tool ("12.5m" -> 12.5, "abc" -> None).
_FLOAT_PREFIX = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")

_DATETIME_PATTERN = re.compile(
    r"(\d{4})[/\-](\d{1,2})[/\-](\d{1,2})\s+(\d{1,2}):(\d{2}):(\d{2})"
)

EARTH_RADIUS_M = 6371000


def parse_float(value):
    """
    Parses the leading number of a cell. Returns None when nothing parses.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return None if isinstance(value, float) and math.isnan(value) else float(value)
    match = _FLOAT_PREFIX.match(str(value))
    if not match:
        return None
    return float(match.group(1))


def round_half_up(value, digits):
    """Rounds half towards +inf (no banker's rounding)."""
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def format_number(value):
    """Renders floats without a trailing '.0' for whole numbers."""
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, float):
        if math.isfinite(value) and value == int(value):
            return str(int(value))
        return repr(value)
    return str(value)


def _packed_to_degrees(value):
    degrees = math.floor(value / 100)
    minutes = math.fmod(value, 100)
    return degrees + minutes / 60


def convert_gps_coordinate(text):
    """
    Parses a GPS position string to decimal degrees.

    Format: DDMM.MMMM,<N|S>,DDDMM.MMMM,<E|W>
    e.g. "3419.09130,N,13226.93637,E" -> Coordinate(34.3181883, 132.4489395)

    Returns:
        Coordinate, or None when the string has fewer than four parts or
        either packed value does not parse.
    """
    if not text:
        return None
    parts = [p.strip() for p in text.strip().split(",")]
    if len(parts) < 4:
        return None

    lat_val = parse_float(parts[0])
    lon_val = parse_float(parts[2])
    if lat_val is None or lon_val is None:
        return None

    lat = _packed_to_degrees(lat_val)
    if parts[1] == "S":
        lat = -lat
    lon = _packed_to_degrees(lon_val)
    if parts[3] == "W":
        lon = -lon

    # 7 decimals is ~1 cm; drops floating noise
    return Coordinate(lat=round_half_up(lat, 7), lon=round_half_up(lon, 7))


def parse_date_time(text):
    """
    Normalizes "2018/06/14 8:42:18" / "2018-06-14 08:42:18" style stamps.
    Returns a naive datetime or None.
    """
    if not text:
        return None
    m = _DATETIME_PATTERN.search(text)
    if not m:
        return None
    try:
        return datetime(*(int(g) for g in m.groups()))
    except ValueError:
        return None


def calculate_distance(lat1, lon1, lat2, lon2):
    """Great-circle distance in metres, or None if any coordinate is missing."""
    if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
        return None
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def format_csv_cell(value):
    """Cell text before quoting: None -> '', whole floats without '.0'."""
    if value is None:
        return ""
    return format_number(value)


def generate_csv_bytes(headers, rows):
    """
    Renders headers + rows as CSV for download.

    csv.writer quotes cells holding a comma, quote or line break. Lines are
    CRLF-separated with no trailing terminator, and a UTF-8 BOM is prepended
    so spreadsheet tools pick the encoding up on their own.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\r\n")
    writer.writerow([format_csv_cell(h) for h in headers])
    for row in rows:
        writer.writerow([format_csv_cell(v) for v in row])
    text = buffer.getvalue()
    if text.endswith("\r\n"):
        text = text[:-2]
    return ("\ufeff" + text).encode("utf-8")


def generate_output_file_name(fmt, prefix="", now=None):
    """結合_生データ_YYYYMMDD_HHMM.csv (A) / 結合_水深平均_YYYYMMDD_HHMM.csv (B)."""
    if now is None:
        now = datetime.now()
    stamp = now.strftime("%Y%m%d_%H%M")
    label = "生データ" if fmt == "A" else "水深平均"
    name = f"結合_{label}_{stamp}.csv"
    prefix = (prefix or "").strip()
    return f"{prefix}_{name}" if prefix else name
