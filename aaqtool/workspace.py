"""
Session state for one sorting/merging session.

Owns the station list, the card map and the assignment index
({station_id or "": [card_id, ...]}). Every mutation goes through the
methods here so that each card sits in exactly one bucket at all times.
The UI shell reads the state, calls these entry points and renders
drain_notices(); confirmations are obtained from the injected
DecisionProvider.
"""

import logging
import math
from datetime import datetime

from aaqtool import decisions as dec
from aaqtool.config import EngineConfig
from aaqtool.decisions import Prompt, StaticDecisions
from aaqtool.encoding import DecodeError, FileReadError, read_text, upload_size
from aaqtool.matcher import auto_assign_files
from aaqtool.merge import calculate_depth_bin_averages, merge_all_data
from aaqtool.models import Assignment, ExportResult, Notice, ObservationCard
from aaqtool.parser import (
    ERROR_NO_DATA,
    looks_like_master,
    parse_master_csv,
    parse_observation_csv,
)
from aaqtool.station_manager import (
    build_station,
    master_export_table,
    master_template_table,
    next_station_id,
    validate_station,
)
from aaqtool.utils import (
    calculate_distance,
    generate_csv_bytes,
    generate_output_file_name,
    parse_date_time,
)

logger = logging.getLogger(__name__)

UNCLASSIFIED = ""

_LOG_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def depth_resolution(parsed):
    """max depth / row count; smaller is finer, inf when unknown."""
    if parsed is None or not parsed.max_depth or not parsed.data_rows:
        return math.inf
    return parsed.max_depth / len(parsed.data_rows)


class Workspace:
    def __init__(self, config=None, decisions=None):
        self.config = config or EngineConfig()
        self.decisions = decisions or StaticDecisions()
        self.stations = []
        self.cards = {}
        self.card_order = []
        self.assignments = {UNCLASSIFIED: []}
        self.swimlane_ids = []
        self.notices = []
        self._card_seq = 0
        self._overwrite_all = False

    # --- Notices ---

    def notify(self, level, message):
        logger.log(_LOG_LEVELS.get(level, logging.INFO), message)
        self.notices.append(Notice(level, message))

    def drain_notices(self):
        notices, self.notices = self.notices, []
        return notices

    # --- Lookups ---

    def station(self, station_id):
        """Valid station with this id, else any (invalid) one, else None."""
        fallback = None
        for s in self.stations:
            if s.id == station_id:
                if not s.invalid:
                    return s
                fallback = fallback or s
        return fallback

    def valid_stations(self):
        return [s for s in self.stations if not s.invalid]

    def active_stations(self):
        """Stations considered by auto-assignment."""
        if self.config.match_all_stations:
            return self.valid_stations()
        return [s for s in self.valid_stations() if s.id in self.swimlane_ids]

    def unclassified_ids(self):
        return list(self.assignments.get(UNCLASSIFIED, []))

    def get_file_counts(self):
        return {sid: len(ids) for sid, ids in self.assignments.items() if sid != UNCLASSIFIED}

    # --- Assignment index ---

    def _move_assignment(self, card_id, from_id, to_id):
        bucket = self.assignments.get(from_id)
        if bucket is not None and card_id in bucket:
            bucket.remove(card_id)
        if to_id is not None:
            self.assignments.setdefault(to_id, []).append(card_id)

    def move_card(self, card_id, station_id):
        """Moves one card to a station ("" = unclassified)."""
        card = self.cards[card_id]
        if station_id != UNCLASSIFIED:
            st = self.station(station_id)
            if st is None or st.invalid:
                raise ValueError(f"Unknown or invalid station id: {station_id}")
        if card.station_id == station_id:
            return
        self._move_assignment(card_id, card.station_id, station_id)
        card.station_id = station_id

    def move_cards(self, card_ids, station_id):
        for card_id in card_ids:
            if card_id in self.cards:
                self.move_card(card_id, station_id)

    def _unassign_station(self, station_id):
        for card_id in list(self.assignments.get(station_id, [])):
            self.move_card(card_id, UNCLASSIFIED)
        self.assignments.pop(station_id, None)

    # --- Station master ---

    async def load_master(self, file, mode=None):
        """
        Loads a station master CSV.

        mode: "reset" replaces everything and returns all cards to
        unclassified; "diff" keeps assignments for ids still present.
        When stations are already loaded and mode is None the decision
        provider is asked. Returns True when the master was applied.
        """
        if self.stations and mode is None:
            mode = await self.decisions.choose(Prompt(
                dec.MASTER_RELOAD,
                "Reload station master",
                "Stations are already loaded. Reset everything or update by id?",
                (dec.RESET, dec.DIFF, dec.CANCEL),
            ))
            if mode == dec.CANCEL:
                return False
        mode = mode or dec.RESET

        try:
            name, text, encoding = read_text(file)
        except (DecodeError, FileReadError) as e:
            self.notify("error", f"Read error: {e}")
            return False

        result = parse_master_csv(text)
        for error in result.errors:
            self.notify("error", error)
        valid = result.valid_stations
        if not valid:
            self.notify("error", f"No valid station data found in {name}")
            return False

        if mode == dec.RESET:
            for sid in [s for s in self.assignments if s != UNCLASSIFIED]:
                self._unassign_station(sid)
            self.swimlane_ids = []
        else:
            new_ids = {s.id for s in valid}
            for s in self.stations:
                if s.id not in new_ids:
                    self._unassign_station(s.id)
                    if s.id in self.swimlane_ids:
                        self.swimlane_ids.remove(s.id)
        self.stations = result.stations

        self.notify("success", f"Loaded station master {name} ({len(valid)} stations, {encoding})")
        self._auto_assign_unclassified()
        return True

    def add_station(self, name, station_id=None, category="", name_read="", lat=None, lon=None,
                    note="", keywords=None, templates=None):
        """Adds a station from the edit form and activates its swimlane."""
        station = build_station(
            station_id=station_id or next_station_id(self.stations),
            name=name, category=category, name_read=name_read, lat=lat, lon=lon,
            note=note, keywords=keywords, templates=templates,
        )
        error = validate_station(self.stations, station)
        if error:
            self.notify("error", error)
            return None
        self.stations.append(station)
        self.swimlane_ids.append(station.id)
        self.notify("success", f"Added station: {station.name}")
        return station

    def update_station(self, editing_id, **changes):
        """Edits a station. Renaming the id carries its cards along."""
        current = self.station(editing_id)
        if current is None:
            raise KeyError(editing_id)
        fields = {
            "station_id": current.id, "name": current.name, "category": current.category,
            "name_read": current.name_read, "lat": current.lat, "lon": current.lon,
            "note": current.note, "keywords": current.keywords, "templates": current.templates,
        }
        if "id" in changes:
            changes["station_id"] = changes.pop("id")
        fields.update(changes)
        updated = build_station(**fields)
        error = validate_station(self.stations, updated, editing_id=editing_id)
        if error:
            self.notify("error", error)
            return None

        self.stations[self.stations.index(current)] = updated
        if updated.id != editing_id:
            card_ids = self.assignments.pop(editing_id, [])
            self.assignments.setdefault(updated.id, []).extend(card_ids)
            for card_id in card_ids:
                self.cards[card_id].station_id = updated.id
            if editing_id in self.swimlane_ids:
                self.swimlane_ids[self.swimlane_ids.index(editing_id)] = updated.id
        self.notify("success", f"Updated station: {updated.name}")
        return updated

    def delete_station(self, station_id):
        """Removes a station; its cards go back to unclassified."""
        st = self.station(station_id)
        if st is None:
            return False
        self._unassign_station(station_id)
        if station_id in self.swimlane_ids:
            self.swimlane_ids.remove(station_id)
        self.stations = [s for s in self.stations if s.id != station_id]
        self.notify("success", f"Deleted station: {st.name}")
        return True

    # --- Swimlanes ---

    def _activate(self, targets):
        added = [s for s in targets if not s.invalid and s.id not in self.swimlane_ids]
        for s in added:
            self.swimlane_ids.append(s.id)
        if added:
            self._auto_assign_unclassified()
        return len(added)

    def add_swimlane(self, station_id):
        st = self.station(station_id)
        if st is None or st.invalid:
            return 0
        return self._activate([st])

    def add_swimlanes_by_category(self, category):
        return self._activate([s for s in self.stations if s.category == category])

    def add_swimlanes_by_template(self, template):
        return self._activate([s for s in self.stations if template in s.templates])

    def add_all_swimlanes(self):
        return self._activate(self.stations)

    def remove_swimlane(self, station_id):
        """Deactivates a station; it stays in the master list."""
        self._unassign_station(station_id)
        if station_id in self.swimlane_ids:
            self.swimlane_ids.remove(station_id)

    def reset_swimlanes(self):
        for sid in [s for s in self.assignments if s != UNCLASSIFIED]:
            self._unassign_station(sid)
        self.swimlane_ids = []

    # --- Auto-assignment ---

    def _auto_assign_unclassified(self):
        stations = self.active_stations()
        if not stations:
            return 0
        cards = [self.cards[cid] for cid in self.unclassified_ids() if cid in self.cards]
        assigned, _ = auto_assign_files(cards, stations)
        count = 0
        for station_id, card_ids in assigned.items():
            for card_id in card_ids:
                self.move_card(card_id, station_id)
                count += 1
        return count

    def auto_assign(self):
        """Re-runs auto-assignment over the unclassified cards."""
        if not self.active_stations():
            self.notify("warn", "No active stations. Add a station first")
            return 0
        count = self._auto_assign_unclassified()
        if count:
            self.notify("success", f"Auto-assigned {count} file(s)")
        else:
            self.notify("info", "No files could be auto-assigned")
        return count

    # --- Observation files ---

    async def load_observations(self, files):
        """
        Loads dropped observation files one at a time, in order.
        Returns the cards that were registered or replaced.
        """
        csv_files = []
        for f in files:
            name = getattr(f, "name", None) or str(f)
            if name.lower().endswith(".csv"):
                csv_files.append(f)
            else:
                self.notify("warn", f"Ignored non-CSV file: {name}")
        if not csv_files:
            return []

        self._overwrite_all = False
        loaded = []
        for f in csv_files:
            card = await self._load_single_observation(f, multiple=len(csv_files) > 1)
            if card is not None:
                loaded.append(card)
        self._auto_assign_unclassified()
        return loaded

    async def _load_single_observation(self, file, multiple=False):
        size = upload_size(file)
        if size is not None and size > self.config.large_file_bytes:
            name = getattr(file, "name", None) or str(file)
            choice = await self.decisions.choose(Prompt(
                dec.LARGE_FILE,
                "Large file",
                f"{name} is larger than {self.config.large_file_bytes // (1024 * 1024)} MB. Load it anyway?",
                (dec.CONTINUE, dec.SKIP),
            ))
            if choice != dec.CONTINUE:
                self.notify("info", f"Skipped large file: {name}")
                return None

        try:
            name, text, _ = read_text(file, self.config.observation_encoding)
        except (DecodeError, FileReadError) as e:
            self.notify("error", f"Read error: {e}")
            return None

        if looks_like_master(text):
            self.notify("warn", f"{name} looks like a station master CSV, not observation data")
            return None

        parsed = parse_observation_csv(text, name, self.config)
        if parsed.error == ERROR_NO_DATA:
            self.notify("error", f"No data rows, discarded: {name}")
            return None

        same_name = [c for c in self.cards.values() if c.file_name == name]
        if same_name:
            conflict = next(
                (c for c in same_name if c.parsed.first_date_time == parsed.first_date_time), None
            )
            if conflict is None:
                return self._register_card(name, parsed)
            return await self._resolve_duplicate(conflict, name, parsed, multiple)

        new_dt = parse_date_time(parsed.first_date_time)
        if new_dt is not None:
            same_obs = next(
                (c for c in self.cards.values()
                 if parse_date_time(c.parsed.first_date_time) == new_dt),
                None,
            )
            if same_obs is not None:
                return self._supersede(same_obs, name, parsed)

        return self._register_card(name, parsed)

    async def _resolve_duplicate(self, conflict, name, parsed, multiple):
        if self._overwrite_all:
            return self._overwrite_card(conflict, name, parsed)

        options = (dec.OVERWRITE, dec.SKIP)
        if multiple and self.config.overwrite_all_enabled:
            options = (dec.OVERWRITE, dec.OVERWRITE_ALL, dec.SKIP)
        stamp = parsed.first_date_time or "unknown time"
        choice = await self.decisions.choose(Prompt(
            dec.DUPLICATE_FILE,
            "Same file name and observation time",
            f"{name} ({stamp}) is already loaded. Overwrite it?",
            options,
        ))
        if choice == dec.OVERWRITE_ALL:
            self._overwrite_all = True
            return self._overwrite_card(conflict, name, parsed)
        if choice == dec.OVERWRITE:
            return self._overwrite_card(conflict, name, parsed)
        self.notify("info", f"Skipped duplicate: {name}")
        return None

    def _supersede(self, existing, name, parsed):
        """Same observation under another name: keep the finer depth resolution."""
        if depth_resolution(parsed) < depth_resolution(existing.parsed):
            card = self._overwrite_card(existing, name, parsed)
            self.notify("info", f"Replaced {existing.file_name} with finer-resolution {name}")
            return card
        self.notify("info", f"Dropped {name}: {existing.file_name} has equal or finer resolution")
        return None

    def _overwrite_card(self, old, name, parsed):
        saved_station = old.station_id
        self._remove_card_state(old.id)
        card = self._register_card(name, parsed)
        st = self.station(saved_station) if saved_station else None
        if st is not None and not st.invalid:
            self.move_card(card.id, saved_station)
        return card

    def _register_card(self, name, parsed):
        self._card_seq += 1
        card = ObservationCard(id=f"card_{self._card_seq}", file_name=name, parsed=parsed)
        self.cards[card.id] = card
        self.card_order.append(card.id)
        self.assignments.setdefault(UNCLASSIFIED, []).append(card.id)
        if parsed.error:
            self.notify("warn", f"{name}: {parsed.error}")
        elif parsed.header_fallback_used:
            self.notify("warn", f"Header taken from line {parsed.header_row_index + 1}: {name}")
        return card

    def _remove_card_state(self, card_id):
        card = self.cards.pop(card_id, None)
        if card is None:
            return None
        self._move_assignment(card_id, card.station_id, None)
        if card_id in self.card_order:
            self.card_order.remove(card_id)
        return card

    def remove_card(self, card_id):
        card = self._remove_card_state(card_id)
        if card is None:
            return False
        self.notify("info", f"Removed file: {card.file_name}")
        return True

    def card_summaries(self):
        """Plain rows describing each card, in registration order."""
        summaries = []
        for card_id in self.card_order:
            card = self.cards[card_id]
            parsed = card.parsed
            st = self.station(card.station_id) if card.station_id else None
            gps = parsed.gps_coord
            if parsed.error:
                status = "error"
            elif parsed.header_fallback_used:
                status = "warning"
            else:
                status = "ok"
            distance = None
            if st is not None and gps is not None:
                distance = calculate_distance(st.lat, st.lon, gps.lat, gps.lon)
            summaries.append({
                "card_id": card.id,
                "file_name": card.file_name,
                "station_id": card.station_id,
                "station_name": st.name if st else "",
                "sample_count": parsed.metadata.sample_count,
                "rows": len(parsed.data_rows),
                "max_depth": parsed.max_depth,
                "first_date_time": parsed.first_date_time,
                "lat": gps.lat if gps else None,
                "lon": gps.lon if gps else None,
                "distance_m": distance,
                "status": status,
                "error": parsed.error,
            })
        return summaries

    # --- Export ---

    def build_output_assignments(self, exclude_unclassified=False, exclude_warning=False):
        assignments = []
        for station_id, card_ids in self.assignments.items():
            if exclude_unclassified and station_id == UNCLASSIFIED:
                continue
            st = self.station(station_id) if station_id else None
            for card_id in card_ids:
                card = self.cards.get(card_id)
                if card is None or card.parsed.error:
                    continue
                if exclude_warning and card.parsed.header_fallback_used:
                    continue
                assignments.append(Assignment(
                    station_id=st.id if st else "",
                    station_name=st.name if st else "",
                    station_lat=st.lat if st else None,
                    station_lon=st.lon if st else None,
                    card=card,
                ))
        return assignments

    async def _ask_include(self, kind, title, message):
        """Returns (proceed, exclude)."""
        choice = await self.decisions.choose(Prompt(
            kind, title, message, (dec.INCLUDE, dec.EXCLUDE, dec.CANCEL)
        ))
        if choice == dec.CANCEL:
            return False, False
        return True, choice == dec.EXCLUDE

    async def export_csv(self, fmt, prefix=None, now=None):
        """
        Builds export A (raw merge) or B (depth-bin averages).
        Returns ExportResult, or None when nothing was exported.
        """
        if fmt not in ("A", "B"):
            raise ValueError(f"Unknown export format: {fmt}")
        if not self.cards:
            self.notify("warn", "No files to export")
            return None

        exclude_unclassified = False
        unclassified = self.unclassified_ids()
        if unclassified:
            proceed, exclude_unclassified = await self._ask_include(
                dec.UNCLASSIFIED_EXPORT,
                "Unclassified files",
                f"{len(unclassified)} file(s) are unclassified. Include them in the export?",
            )
            if not proceed:
                return None

        warn_ids = [
            cid for sid, ids in self.assignments.items() for cid in ids
            if self.cards[cid].parsed.header_fallback_used and not self.cards[cid].parsed.error
            and not (exclude_unclassified and sid == UNCLASSIFIED)
        ]
        exclude_warning = False
        if warn_ids:
            proceed, exclude_warning = await self._ask_include(
                dec.WARNING_EXPORT,
                "Header detection warning",
                f"{len(warn_ids)} file(s) had their header taken from a fixed line. Include them?",
            )
            if not proceed:
                return None

        assignments = self.build_output_assignments(exclude_unclassified, exclude_warning)
        if not assignments:
            self.notify("warn", "No files to export")
            return None

        if fmt == "A":
            headers, rows = merge_all_data(assignments, self.config)
        else:
            headers, rows = calculate_depth_bin_averages(assignments, self.config)
        if prefix is None:
            prefix = self.config.output_prefix
        file_name = generate_output_file_name(fmt, prefix, now)
        result = ExportResult(file_name, headers, rows, generate_csv_bytes(headers, rows))
        self.notify("success", f"Exported {file_name} ({result.row_count} rows)")
        return result

    def export_master_csv(self, now=None):
        """Current stations (including form edits) in the master schema."""
        headers, rows = master_export_table(self.stations)
        if not rows:
            self.notify("warn", "No station data to export")
            return None
        if now is None:
            now = datetime.now()
        file_name = f"地点マスタ_{now.strftime('%Y%m%d')}.csv"
        return ExportResult(file_name, headers, rows, generate_csv_bytes(headers, rows))

    def master_template_csv(self):
        headers, rows = master_template_table()
        return ExportResult("地点マスタ_テンプレート.csv", headers, rows,
                            generate_csv_bytes(headers, rows))
