"""
Data models for stations, observation cards and export results.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Coordinate:
    """A position in decimal degrees."""

    lat: float
    lon: float


@dataclass
class Station:
    """A monitoring station from the master list."""

    id: str
    name: str
    category: str = "未設定"
    name_read: str = ""
    lat: Optional[float] = None
    lon: Optional[float] = None
    note: str = ""
    keywords: List[str] = field(default_factory=list)
    templates: List[str] = field(default_factory=list)
    invalid: bool = False  # duplicate id in the master file


@dataclass
class MasterParseResult:
    stations: List[Station]
    errors: List[str]

    @property
    def valid_stations(self):
        return [s for s in self.stations if not s.invalid]


@dataclass
class ObservationMetadata:
    sample_count: Optional[int] = None
    start_position: Optional[Coordinate] = None
    end_position: Optional[Coordinate] = None


@dataclass
class ParsedObservation:
    """Result of parsing one instrument dump file."""

    file_name: str
    header_row_index: int = -1
    header_row: List[str] = field(default_factory=list)
    data_rows: List[List[str]] = field(default_factory=list)
    metadata: ObservationMetadata = field(default_factory=ObservationMetadata)
    first_date_time: Optional[str] = None
    max_depth: Optional[float] = None
    header_fallback_used: bool = False
    error: Optional[str] = None

    @property
    def gps_coord(self):
        return self.metadata.start_position


@dataclass
class ObservationCard:
    id: str
    file_name: str
    parsed: ParsedObservation
    station_id: str = ""  # "" = unclassified


@dataclass
class Assignment:
    """One (station, card) pair handed to the merge engine."""

    station_id: str
    station_name: str
    station_lat: Optional[float]
    station_lon: Optional[float]
    card: ObservationCard


@dataclass
class Notice:
    level: str  # success | info | warn | error
    message: str


@dataclass
class ExportResult:
    file_name: str
    headers: List[str]
    rows: List[list]
    data: bytes

    @property
    def row_count(self):
        return len(self.rows)
