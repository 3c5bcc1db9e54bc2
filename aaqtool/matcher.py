import logging
import re

logger = logging.getLogger(__name__)

_CSV_SUFFIX = re.compile(r"\.csv$", re.IGNORECASE)
_LEADING_DIGITS = re.compile(r"^\d+")
_LEADING_PUNCT = re.compile(r"^[\s\-_#.()\[\]]+")
_ASCII_WORD = re.compile(r"^[A-Za-z0-9]+$")


def normalize_file_name(file_name):
    """
    Normalizes a file name for keyword matching.

    "20240601_Tsukune_01.csv" -> "tsukune 01"
    """
    name = _CSV_SUFFIX.sub("", file_name)
    name = _LEADING_DIGITS.sub("", name)
    name = _LEADING_PUNCT.sub("", name)
    name = name.replace("_", " ")
    return name.lower()


def match_keyword(normalized_name, keyword):
    """
    ASCII-only keywords must equal a whole space-separated word
    ("eta" does not match "etanaka"); anything else matches as a substring.
    """
    kw = keyword.lower()
    if _ASCII_WORD.match(kw):
        return kw in normalized_name.split()
    return kw in normalized_name


def station_keywords(station):
    if station.keywords:
        return station.keywords
    return [station.name.lower()]


def match_stations(file_name, stations):
    """Ids of every station with at least one matching keyword."""
    normalized = normalize_file_name(file_name)
    matches = []
    for st in stations:
        if st.invalid:
            continue
        if any(kw and match_keyword(normalized, kw) for kw in station_keywords(st)):
            matches.append(st.id)
    return matches


def auto_assign_files(cards, stations):
    """
    Assigns cards to stations by file name.

    A card is assigned only when exactly one station matches; zero or
    several matches leave it unclassified. Cards with a parse error are
    never matched.

    Returns:
        assigned: {station_id: [card_id, ...]} in card order
        unclassified: [card_id, ...]
    """
    assigned = {}
    unclassified = []
    for card in cards:
        if card.parsed is not None and card.parsed.error:
            unclassified.append(card.id)
            continue
        matches = match_stations(card.file_name, stations)
        if len(matches) == 1:
            assigned.setdefault(matches[0], []).append(card.id)
        else:
            if len(matches) > 1:
                logger.info(f"{card.file_name}: ambiguous match {matches}, left unclassified")
            unclassified.append(card.id)
    return assigned, unclassified
