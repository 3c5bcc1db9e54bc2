import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Optional

logger = logging.getLogger(__name__)

CONFIG_FILE = "aaqtool_config.json"

BIN_ROUNDING_MODES = ("floor", "round")


@dataclass
class EngineConfig:
    """
    Options for parsing, matching and export.

    The two field-tool variants differed only in these switches, so a single
    engine reads them instead of keeping separate code paths.
    """

    # Depth binning
    bin_size: float = 0.5
    bin_rounding: str = "floor"
    b1m_offset: float = 1.0
    b1m_min_depth: float = 1.0
    bin_tolerance: float = 1e-9

    # Header discovery
    header_marker: str = "[Item]"
    header_scan_lines: int = 150
    header_fallback_index: int = 68
    metadata_scan_lines: int = 200

    # Binned averages
    numeric_sample_size: int = 20
    numeric_threshold: float = 0.8
    average_decimals: int = 6

    # Variant switches
    export_end_position: bool = False
    overwrite_all_enabled: bool = True
    match_all_stations: bool = False

    # Files
    observation_encoding: Optional[str] = None
    large_file_bytes: int = 50 * 1024 * 1024
    output_prefix: str = ""

    def __post_init__(self):
        if self.bin_rounding not in BIN_ROUNDING_MODES:
            raise ValueError(
                f"bin_rounding must be one of {BIN_ROUNDING_MODES}, got {self.bin_rounding!r}"
            )
        if self.observation_encoding not in (None, "SJIS", "UTF-8"):
            raise ValueError(f"Unsupported observation_encoding: {self.observation_encoding!r}")


def load_json_file(filepath, default=None):
    if default is None:
        default = {}
    if os.path.exists(filepath):
        try:
            with open(filepath, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading {filepath}: {e}")
            return default
    return default


def load_config(filepath=CONFIG_FILE):
    """Loads engine options from JSON, falling back to defaults for missing keys."""
    raw = load_json_file(filepath, {})
    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        logger.warning(f"Ignoring unknown config keys in {filepath}: {', '.join(unknown)}")
    return EngineConfig(**{k: v for k, v in raw.items() if k in known})


def save_config(config, filepath=CONFIG_FILE):
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(asdict(config), f, indent=4, ensure_ascii=False)
