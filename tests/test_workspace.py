import asyncio
import io
from datetime import datetime

import pytest

from aaqtool import decisions as dec
from aaqtool.config import EngineConfig
from aaqtool.decisions import CallbackDecisions, StaticDecisions
from aaqtool.workspace import UNCLASSIFIED, Workspace

MASTER = (
    "地点名,地点ID,調査区分,緯度,経度,ファイル名キーワード,テンプレート\n"
    "津久根,ST001,定点,34.3181883,132.4489395,tsukune|つくね,広島湾\n"
    "似島,ST002,臨時,34.33,132.45,ninoshima,広島湾/溶存酸素\n"
)


def make_upload(name, text, encoding="utf-8-sig"):
    f = io.BytesIO(text.encode(encoding))
    f.name = name
    return f


def observation(start_time, depths=(0.3, 0.7, 1.4, 1.9)):
    lines = [
        "[Header]",
        f"SampleCnt={len(depths)}",
        "StartPosition=3419.09130,N,13226.93637,E",
        "[Item]",
        "観測日時,深度[m],水温",
    ]
    for i, d in enumerate(depths):
        lines.append(f"{start_time}:{i:02d},{d},{20 - i}")
    return "\n".join(lines) + "\n"


def fallback_observation():
    lines = [f"Meta{i}=1" for i in range(68)] + ["depth,temp", "0.5,10", "1.5,11"]
    return "\n".join(lines)


def run(coro):
    return asyncio.run(coro)


def loaded_workspace(answers=None, config=None):
    ws = Workspace(config, StaticDecisions(answers))
    assert run(ws.load_master(make_upload("master.csv", MASTER)))
    ws.add_all_swimlanes()
    ws.drain_notices()
    return ws


def test_load_master():
    print("Testing master load...")
    ws = Workspace()
    assert run(ws.load_master(make_upload("master.csv", MASTER)))

    assert [s.id for s in ws.stations] == ["ST001", "ST002"]
    assert ws.swimlane_ids == []
    notices = ws.drain_notices()
    assert notices[-1].level == "success"
    print("✅ Master load passed!")


def test_load_master_structural_error():
    ws = Workspace()
    assert not run(ws.load_master(make_upload("bad.csv", "地点名,緯度\nA,34\n")))
    assert ws.stations == []
    levels = [n.level for n in ws.drain_notices()]
    assert levels == ["error", "error"]


def test_load_observations_auto_assign():
    print("Testing observation load and auto-assign...")
    ws = loaded_workspace()
    cards = run(ws.load_observations([
        make_upload("20240601_tsukune.csv", observation("2024/06/01 10:00")),
        make_upload("20240601_ninoshima.csv", observation("2024/06/01 11:00")),
        make_upload("20240601_other.csv", observation("2024/06/01 12:00")),
        make_upload("notes.txt", "hello"),
    ]))

    assert [c.file_name for c in cards] == [
        "20240601_tsukune.csv", "20240601_ninoshima.csv", "20240601_other.csv",
    ]
    assert ws.get_file_counts() == {"ST001": 1, "ST002": 1}
    assert len(ws.assignments[UNCLASSIFIED]) == 1
    notices = ws.drain_notices()
    assert any("notes.txt" in n.message and n.level == "warn" for n in notices)
    print("✅ Observation load passed!")


def test_every_card_in_exactly_one_bucket():
    ws = loaded_workspace()
    run(ws.load_observations([
        make_upload("a_tsukune.csv", observation("2024/06/01 10:00")),
        make_upload("b.csv", observation("2024/06/01 11:00")),
    ]))
    ws.move_cards(list(ws.cards), "ST002")
    ws.move_card("card_1", UNCLASSIFIED)
    placed = [cid for ids in ws.assignments.values() for cid in ids]
    assert sorted(placed) == sorted(ws.cards)
    assert len(placed) == len(set(placed))


def test_duplicate_prompt_declined():
    print("Testing duplicate file prompt...")
    ws = loaded_workspace({dec.DUPLICATE_FILE: dec.SKIP})
    text = observation("2024/06/01 10:00")
    run(ws.load_observations([make_upload("20240601_tsukune.csv", text)]))
    run(ws.load_observations([make_upload("20240601_tsukune.csv", text)]))

    asked = [p for p in ws.decisions.asked if p.kind == dec.DUPLICATE_FILE]
    assert len(asked) == 1
    assert list(ws.cards) == ["card_1"]
    assert ws.assignments["ST001"] == ["card_1"]
    print("✅ Duplicate prompt passed!")


def test_duplicate_overwrite_keeps_station():
    ws = loaded_workspace({dec.DUPLICATE_FILE: dec.OVERWRITE})
    run(ws.load_observations([make_upload("20240601_x.csv", observation("2024/06/01 10:00"))]))
    ws.move_card("card_1", "ST002")

    run(ws.load_observations([
        make_upload("20240601_x.csv", observation("2024/06/01 10:00", depths=(0.1, 0.2))),
    ]))
    assert list(ws.cards) == ["card_2"]
    assert ws.cards["card_2"].station_id == "ST002"
    assert ws.assignments["ST002"] == ["card_2"]
    assert len(ws.cards["card_2"].parsed.data_rows) == 2


def test_overwrite_all_in_batch():
    ws = loaded_workspace({dec.DUPLICATE_FILE: dec.OVERWRITE_ALL})
    first = [
        make_upload("a.csv", observation("2024/06/01 10:00")),
        make_upload("b.csv", observation("2024/06/01 11:00")),
    ]
    run(ws.load_observations(first))
    run(ws.load_observations(first))

    asked = [p for p in ws.decisions.asked if p.kind == dec.DUPLICATE_FILE]
    assert len(asked) == 1
    assert dec.OVERWRITE_ALL in asked[0].options
    assert sorted(c.file_name for c in ws.cards.values()) == ["a.csv", "b.csv"]


def test_same_name_different_time_is_new_card():
    ws = loaded_workspace()
    run(ws.load_observations([make_upload("a.csv", observation("2024/06/01 10:00"))]))
    run(ws.load_observations([make_upload("a.csv", observation("2024/06/02 10:00"))]))
    assert len(ws.cards) == 2
    assert ws.decisions.asked == []


def test_finer_resolution_supersedes():
    ws = loaded_workspace()
    run(ws.load_observations([
        make_upload("coarse_tsukune.csv", observation("2024/06/01 10:00", depths=(0.5, 1.0))),
    ]))
    assert ws.get_file_counts() == {"ST001": 1}

    run(ws.load_observations([
        make_upload("fine.csv", observation("2024/06/01 10:00", depths=(0.25, 0.5, 0.75, 1.0))),
    ]))
    assert [c.file_name for c in ws.cards.values()] == ["fine.csv"]
    # replacement keeps the superseded card's station
    assert ws.cards["card_2"].station_id == "ST001"

    run(ws.load_observations([
        make_upload("coarser.csv", observation("2024/06/01 10:00", depths=(1.0,))),
    ]))
    assert [c.file_name for c in ws.cards.values()] == ["fine.csv"]
    assert ws.decisions.asked == []


def test_no_data_file_discarded():
    ws = Workspace()
    cards = run(ws.load_observations([make_upload("empty.csv", "[Item]\n観測日時,深度\n")]))
    assert cards == []
    assert ws.cards == {}
    assert ws.drain_notices()[0].level == "error"


def test_header_not_found_registered_with_error():
    ws = Workspace()
    cards = run(ws.load_observations([make_upload("short.csv", "a\nb\n")]))
    assert len(cards) == 1
    assert cards[0].parsed.error is not None
    assert ws.assignments[UNCLASSIFIED] == [cards[0].id]


def test_master_file_dropped_as_observation():
    ws = Workspace()
    cards = run(ws.load_observations([make_upload("master.csv", MASTER)]))
    assert cards == []
    assert ws.drain_notices()[0].level == "warn"


def test_large_file_prompt():
    ws = Workspace(EngineConfig(large_file_bytes=10), StaticDecisions({dec.LARGE_FILE: dec.SKIP}))
    cards = run(ws.load_observations([make_upload("big.csv", observation("2024/06/01 10:00"))]))
    assert cards == []
    assert ws.decisions.asked[0].kind == dec.LARGE_FILE

    ws.decisions = StaticDecisions({dec.LARGE_FILE: dec.CONTINUE})
    cards = run(ws.load_observations([make_upload("big.csv", observation("2024/06/01 10:00"))]))
    assert len(cards) == 1


def test_decode_failure_skips_only_that_file():
    ws = Workspace(EngineConfig(observation_encoding="UTF-8"))
    bad = io.BytesIO(b"\xff\xfe\xfa\n")
    bad.name = "bad.csv"
    cards = run(ws.load_observations([bad, make_upload("good.csv", observation("2024/06/01 10:00"))]))
    assert [c.file_name for c in cards] == ["good.csv"]
    assert ws.drain_notices()[0].level == "error"


def test_move_card_errors():
    ws = loaded_workspace()
    with pytest.raises(KeyError):
        ws.move_card("card_99", "ST001")
    run(ws.load_observations([make_upload("a.csv", observation("2024/06/01 10:00"))]))
    with pytest.raises(ValueError):
        ws.move_card("card_1", "ST999")


def test_rename_onto_duplicate_id_keeps_cards_placed():
    master = "地点名,地点ID,調査区分\nA,ST001,x\nB,ST001,y\nC,ST002,z\n"
    ws = Workspace()
    assert run(ws.load_master(make_upload("master.csv", master)))
    run(ws.load_observations([make_upload("obs.csv", observation("2024/06/01 10:00"))]))
    with pytest.raises(ValueError):
        ws.move_card("card_1", "ST001")

    ws.move_card("card_1", "ST002")
    assert ws.update_station("ST002", id="ST001") is not None
    placed = [cid for ids in ws.assignments.values() for cid in ids]
    assert placed == ["card_1"]
    assert ws.get_file_counts()["ST001"] == 1
    assert ws.cards["card_1"].station_id == "ST001"


def test_remove_card():
    ws = loaded_workspace()
    run(ws.load_observations([make_upload("a_tsukune.csv", observation("2024/06/01 10:00"))]))
    assert ws.remove_card("card_1")
    assert ws.cards == {}
    assert ws.get_file_counts() == {"ST001": 0}
    assert not ws.remove_card("card_1")


def test_master_reload_diff():
    print("Testing master diff reload...")
    ws = loaded_workspace({dec.MASTER_RELOAD: dec.DIFF})
    run(ws.load_observations([
        make_upload("a_tsukune.csv", observation("2024/06/01 10:00")),
        make_upload("b_ninoshima.csv", observation("2024/06/01 11:00")),
    ]))
    assert ws.get_file_counts() == {"ST001": 1, "ST002": 1}

    new_master = "地点名,地点ID,調査区分,ファイル名キーワード\n津久根,ST001,定点,tsukune\n"
    assert run(ws.load_master(make_upload("master2.csv", new_master)))

    assert ws.decisions.asked[-1].kind == dec.MASTER_RELOAD
    assert [s.id for s in ws.stations] == ["ST001"]
    assert ws.get_file_counts() == {"ST001": 1}
    assert ws.assignments[UNCLASSIFIED] == ["card_2"]
    assert ws.swimlane_ids == ["ST001"]
    print("✅ Diff reload passed!")


def test_master_reload_reset():
    ws = loaded_workspace()
    run(ws.load_observations([make_upload("a_tsukune.csv", observation("2024/06/01 10:00"))]))
    assert run(ws.load_master(make_upload("master.csv", MASTER), mode=dec.RESET))
    assert ws.swimlane_ids == []
    assert ws.get_file_counts() == {}
    assert ws.assignments[UNCLASSIFIED] == ["card_1"]


def test_master_reload_cancel():
    ws = loaded_workspace({dec.MASTER_RELOAD: dec.CANCEL})
    assert not run(ws.load_master(make_upload("other.csv", "地点名,地点ID,調査区分\nX,ST010,定点\n")))
    assert [s.id for s in ws.stations] == ["ST001", "ST002"]


def test_swimlanes():
    ws = Workspace()
    run(ws.load_master(make_upload("master.csv", MASTER)))
    run(ws.load_observations([make_upload("a_ninoshima.csv", observation("2024/06/01 10:00"))]))
    assert ws.get_file_counts() == {}

    assert ws.add_swimlanes_by_template("溶存酸素") == 1
    assert ws.swimlane_ids == ["ST002"]
    assert ws.get_file_counts() == {"ST002": 1}

    assert ws.add_swimlanes_by_category("定点") == 1
    assert ws.add_all_swimlanes() == 0

    ws.remove_swimlane("ST002")
    assert ws.swimlane_ids == ["ST001"]
    assert ws.assignments[UNCLASSIFIED] == ["card_1"]
    assert ws.station("ST002") is not None

    ws.reset_swimlanes()
    assert ws.swimlane_ids == []


def test_match_all_stations_config():
    ws = Workspace(EngineConfig(match_all_stations=True))
    run(ws.load_master(make_upload("master.csv", MASTER)))
    run(ws.load_observations([make_upload("a_ninoshima.csv", observation("2024/06/01 10:00"))]))
    assert ws.get_file_counts() == {"ST002": 1}


def test_auto_assign_notices():
    ws = Workspace()
    assert ws.auto_assign() == 0
    assert ws.drain_notices()[0].level == "warn"

    run(ws.load_master(make_upload("master.csv", MASTER)))
    run(ws.load_observations([make_upload("a_tsukune.csv", observation("2024/06/01 10:00"))]))
    ws.swimlane_ids = ["ST001"]
    ws.drain_notices()
    assert ws.auto_assign() == 1
    assert ws.drain_notices()[0].level == "success"


def test_station_crud():
    ws = loaded_workspace()
    run(ws.load_observations([make_upload("a_tsukune.csv", observation("2024/06/01 10:00"))]))

    added = ws.add_station("宇品", keywords=["ujina"])
    assert added.id == "ST003"
    assert "ST003" in ws.swimlane_ids
    assert ws.add_station("重複", station_id="ST001") is None
    assert ws.drain_notices()[-1].level == "error"

    ws.update_station("ST001", id="ST100", name="津久根沖")
    assert ws.station("ST001") is None
    assert ws.station("ST100").name == "津久根沖"
    assert ws.assignments["ST100"] == ["card_1"]
    assert ws.cards["card_1"].station_id == "ST100"

    assert ws.delete_station("ST100")
    assert ws.cards["card_1"].station_id == UNCLASSIFIED
    assert "ST100" not in ws.swimlane_ids


def test_card_summaries():
    ws = loaded_workspace()
    run(ws.load_observations([make_upload("a_tsukune.csv", observation("2024/06/01 10:00"))]))
    summary = ws.card_summaries()[0]
    assert summary["station_id"] == "ST001"
    assert summary["status"] == "ok"
    assert summary["sample_count"] == 4
    assert summary["max_depth"] == 1.9
    assert summary["distance_m"] < 1.0


def test_export_formats():
    print("Testing export...")
    ws = loaded_workspace()
    run(ws.load_observations([make_upload("a_tsukune.csv", observation("2024/06/01 10:00"))]))
    now = datetime(2024, 6, 1, 12, 30)

    raw = run(ws.export_csv("A", now=now))
    assert raw.file_name == "結合_生データ_20240601_1230.csv"
    assert raw.row_count == 4
    assert raw.data.startswith(b"\xef\xbb\xbf")
    lines = raw.data.decode("utf-8-sig").split("\r\n")
    assert lines[0].startswith("地点ID,地点名,ファイル名")
    assert lines[2].split(",")[7:9] == ["0.5", "1"]

    binned = run(ws.export_csv("B", prefix="広島湾", now=now))
    assert binned.file_name == "広島湾_結合_水深平均_20240601_1230.csv"
    assert binned.row_count == 4
    assert binned.headers[-1] == "データ件数"
    assert ws.decisions.asked == []

    with pytest.raises(ValueError):
        run(ws.export_csv("C"))
    print("✅ Export passed!")


def test_export_nothing_loaded():
    ws = Workspace()
    assert run(ws.export_csv("A")) is None
    assert ws.drain_notices()[0].level == "warn"


def test_export_unclassified_prompt():
    ws = loaded_workspace({dec.UNCLASSIFIED_EXPORT: [dec.EXCLUDE, dec.CANCEL, dec.INCLUDE]})
    run(ws.load_observations([
        make_upload("a_tsukune.csv", observation("2024/06/01 10:00")),
        make_upload("b_other.csv", observation("2024/06/01 11:00", depths=(0.5,))),
    ]))

    excluded = run(ws.export_csv("A"))
    assert excluded.row_count == 4
    assert run(ws.export_csv("A")) is None
    included = run(ws.export_csv("A"))
    assert included.row_count == 5
    # unclassified rows carry empty station columns
    assert any(row[0] == "" and row[2] == "b_other.csv" for row in included.rows)


def test_export_warning_prompt():
    ws = loaded_workspace({dec.WARNING_EXPORT: dec.EXCLUDE, dec.UNCLASSIFIED_EXPORT: dec.INCLUDE})
    run(ws.load_observations([
        make_upload("a_tsukune.csv", observation("2024/06/01 10:00")),
        make_upload("odd.csv", fallback_observation()),
    ]))
    assert ws.cards["card_2"].parsed.header_fallback_used

    result = run(ws.export_csv("A"))
    kinds = [p.kind for p in ws.decisions.asked]
    assert kinds == [dec.UNCLASSIFIED_EXPORT, dec.WARNING_EXPORT]
    assert result.row_count == 4
    assert "depth" not in result.headers


def test_export_warning_prompt_skips_unreadable_files():
    ws = loaded_workspace({dec.UNCLASSIFIED_EXPORT: dec.INCLUDE})
    run(ws.load_observations([
        make_upload("short.csv", "a\nb\n"),
        make_upload("a_tsukune.csv", observation("2024/06/01 10:00")),
    ]))
    assert ws.cards["card_1"].parsed.error is not None

    result = run(ws.export_csv("A"))
    assert dec.WARNING_EXPORT not in [p.kind for p in ws.decisions.asked]
    assert result.row_count == 4


def test_callback_decisions():
    seen = []

    async def answer(prompt):
        seen.append(prompt.kind)
        return dec.OVERWRITE

    ws = Workspace(decisions=CallbackDecisions(answer))
    text = observation("2024/06/01 10:00")
    run(ws.load_observations([make_upload("a.csv", text)]))
    run(ws.load_observations([make_upload("a.csv", text)]))
    assert seen == [dec.DUPLICATE_FILE]
    assert list(ws.cards) == ["card_2"]


def test_master_export_and_template():
    ws = loaded_workspace()
    ws.add_station("宇品", lat=34.34)
    exported = ws.export_master_csv(now=datetime(2024, 6, 1))
    assert exported.file_name == "地点マスタ_20240601.csv"
    assert [r[0] for r in exported.rows] == ["ST001", "ST002", "ST003"]
    assert exported.rows[1][4] == "広島湾/溶存酸素"

    # round trip through the master parser
    again = Workspace()
    assert run(again.load_master(io.BytesIO(exported.data)))
    assert [s.id for s in again.stations] == ["ST001", "ST002", "ST003"]
    assert again.station("ST001").keywords == ["tsukune", "つくね"]

    template = ws.master_template_csv()
    assert template.file_name == "地点マスタ_テンプレート.csv"
    assert template.row_count == 2
