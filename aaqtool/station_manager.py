import re

from aaqtool.models import Station

DEFAULT_CATEGORY = "未設定"

MASTER_EXPORT_HEADERS = [
    "地点ID", "地点名", "地点名_読み", "調査区分", "テンプレート",
    "緯度", "経度", "ファイル名キーワード", "備考",
]

MASTER_TEMPLATE_ROWS = [
    ["ST001", "津久根", "つくね", "定点", "広島湾調査", "35.6812", "139.7671",
     "つくね|tsukune|tukune", "備考を入力"],
    ["ST002", "似島", "にのしま", "臨時", "広島湾調査/溶存酸素", "35.6812", "139.7671",
     "にのしま|ninoshima|ninosima", "備考を入力"],
]

_AUTO_ID = re.compile(r"^ST(\d+)$")


def build_station(station_id, name, category="", name_read="", lat=None, lon=None,
                  note="", keywords=None, templates=None):
    """Creates a Station, defaulting an empty category to 未設定."""
    return Station(
        id=station_id,
        name=name,
        category=category or DEFAULT_CATEGORY,
        name_read=name_read,
        lat=lat,
        lon=lon,
        note=note,
        keywords=list(keywords or []),
        templates=list(templates or []),
    )


def next_station_id(stations):
    """Returns the next free ST### id (max existing STn + 1)."""
    max_num = 0
    for s in stations:
        m = _AUTO_ID.match(s.id)
        if m:
            max_num = max(max_num, int(m.group(1)))
    return f"ST{max_num + 1:03d}"


def validate_station(stations, station, editing_id=None):
    """
    Checks a station coming from the edit form.
    Returns an error message or None.
    """
    if not station.name or not station.id:
        return "Station name and id are required"
    for s in stations:
        if s.id == station.id and s.id != editing_id and not s.invalid:
            return f'Station id "{station.id}" is already in use'
    return None


def _blank_if_none(value):
    return "" if value is None else value


def master_export_table(stations):
    """Headers and rows for re-exporting the valid stations."""
    rows = []
    for s in stations:
        if s.invalid:
            continue
        rows.append([
            s.id,
            s.name,
            s.name_read,
            s.category,
            "/".join(s.templates),
            _blank_if_none(s.lat),
            _blank_if_none(s.lon),
            "|".join(s.keywords),
            s.note,
        ])
    return MASTER_EXPORT_HEADERS, rows


def master_template_table():
    return MASTER_EXPORT_HEADERS, [list(r) for r in MASTER_TEMPLATE_ROWS]
