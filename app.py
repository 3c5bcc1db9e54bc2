# AAQ Merge Tool - app.py
# Imports
import asyncio
import io

import matplotlib.pyplot as plt
import pandas as pd
import streamlit as st

from aaqtool import decisions as dec
from aaqtool.binning import DEPTH_BIN, RAW_DEPTH, classify_depths
from aaqtool.config import CONFIG_FILE, load_config
from aaqtool.decisions import StaticDecisions
from aaqtool.parser import find_depth_column
from aaqtool.utils import parse_float
from aaqtool.workspace import UNCLASSIFIED, Workspace

# Page Config
st.set_page_config(page_title="AAQ Merge Tool", layout="wide")

UNCLASSIFIED_LABEL = "(Unclassified)"


# --- Helper Functions ---

def get_workspace():
    if "workspace" not in st.session_state:
        st.session_state["workspace"] = Workspace(load_config(CONFIG_FILE))
    return st.session_state["workspace"]


def sidebar_decisions():
    """Answers for the confirmations the workspace may ask during an action."""
    st.sidebar.subheader("Confirmations")
    duplicate = st.sidebar.radio(
        "Same file name and time",
        [dec.SKIP, dec.OVERWRITE, dec.OVERWRITE_ALL],
        horizontal=True,
    )
    large = st.sidebar.radio("Files over the size limit", [dec.SKIP, dec.CONTINUE], horizontal=True)
    unclassified = st.sidebar.radio(
        "Unclassified files on export", [dec.INCLUDE, dec.EXCLUDE, dec.CANCEL], horizontal=True
    )
    warning = st.sidebar.radio(
        "Header-warning files on export", [dec.INCLUDE, dec.EXCLUDE, dec.CANCEL], horizontal=True
    )
    return StaticDecisions({
        dec.DUPLICATE_FILE: duplicate,
        dec.LARGE_FILE: large,
        dec.UNCLASSIFIED_EXPORT: unclassified,
        dec.WARNING_EXPORT: warning,
    })


def show_notices(ws):
    for notice in ws.drain_notices():
        if notice.level == "success":
            st.success(notice.message)
        elif notice.level == "warn":
            st.warning(notice.message)
        elif notice.level == "error":
            st.error(notice.message)
        else:
            st.info(notice.message)


def build_depth_profile_png(card, config):
    """
    Plots every numeric column against depth for one file, with the depth
    bin boundaries drawn as horizontal lines.
    """
    parsed = card.parsed
    depth_idx = find_depth_column(parsed.header_row)
    if depth_idx < 0:
        return None
    depth = classify_depths([row[depth_idx] for row in parsed.data_rows], config)

    df = pd.DataFrame(parsed.data_rows, columns=parsed.header_row)
    df = df.loc[:, ~df.columns.duplicated()]
    numeric = {}
    for col in df.columns:
        if col == parsed.header_row[depth_idx]:
            continue
        values = pd.Series([parse_float(v) for v in df[col]], dtype=float)
        if values.notna().sum() > 0:
            numeric[col] = values
    if not numeric:
        return None

    cols = list(numeric)[:6]
    fig, axes = plt.subplots(1, len(cols), figsize=(3 * len(cols), 6), sharey=True,
                             constrained_layout=True, squeeze=False)
    for ax, col in zip(axes[0], cols):
        ax.plot(numeric[col], depth[RAW_DEPTH], linewidth=1)
        for b in depth[DEPTH_BIN].dropna().unique():
            ax.axhline(b, color="grey", alpha=0.2, linewidth=0.8)
        ax.set_title(col, fontsize=9)
        ax.grid(alpha=0.3)
    axes[0][0].invert_yaxis()
    axes[0][0].set_ylabel("Depth (m)")
    fig.suptitle(card.file_name)

    png_buffer = io.BytesIO()
    fig.savefig(png_buffer, format="png", dpi=120)
    plt.close(fig)
    png_buffer.seek(0)
    return png_buffer.getvalue()


# --- UI Components ---

def master_sidebar(ws):
    st.sidebar.header("Station Master")
    master_file = st.sidebar.file_uploader("Station master CSV", type=["csv"], key="master_upload")
    mode = None
    if ws.stations:
        mode = st.sidebar.radio("Reload mode", [dec.DIFF, dec.RESET], horizontal=True)
    if master_file is not None and st.sidebar.button("Load master"):
        asyncio.run(ws.load_master(master_file, mode))

    tmpl = ws.master_template_csv()
    st.sidebar.download_button("Download master template", data=tmpl.data,
                               file_name=tmpl.file_name, mime="text/csv")
    if ws.valid_stations():
        exported = ws.export_master_csv()
        st.sidebar.download_button("Export current master", data=exported.data,
                                   file_name=exported.file_name, mime="text/csv")


def swimlane_controls(ws):
    stations = ws.valid_stations()
    if not stations:
        st.info("Load a station master to start sorting files.")
        return
    c1, c2, c3, c4 = st.columns(4)
    names = {s.id: f"{s.id} {s.name}" for s in stations}
    with c1:
        sid = st.selectbox("Station", list(names), format_func=names.get, key="lane_station")
        if st.button("Add swimlane"):
            ws.add_swimlane(sid)
    with c2:
        categories = sorted({s.category for s in stations})
        cat = st.selectbox("Category", categories, key="lane_category")
        if st.button("Add by category"):
            ws.add_swimlanes_by_category(cat)
    with c3:
        templates = sorted({t for s in stations for t in s.templates})
        if templates:
            tpl = st.selectbox("Template", templates, key="lane_template")
            if st.button("Add by template"):
                ws.add_swimlanes_by_template(tpl)
    with c4:
        if st.button("Add all stations"):
            ws.add_all_swimlanes()
        if st.button("Clear swimlanes"):
            ws.reset_swimlanes()
        if st.button("Auto-assign"):
            ws.auto_assign()


def station_form(ws):
    with st.expander("Add station"):
        with st.form("add_station", clear_on_submit=True):
            name = st.text_input("Station name")
            station_id = st.text_input("Station id (blank = auto)")
            category = st.text_input("Category")
            col1, col2 = st.columns(2)
            lat = col1.text_input("Latitude")
            lon = col2.text_input("Longitude")
            keywords = st.text_input("File name keywords (| separated)")
            if st.form_submit_button("Add"):
                ws.add_station(
                    name.strip(),
                    station_id=station_id.strip() or None,
                    category=category.strip(),
                    lat=parse_float(lat),
                    lon=parse_float(lon),
                    keywords=[k.strip() for k in keywords.split("|") if k.strip()],
                )


def board(ws):
    lanes = [UNCLASSIFIED] + [sid for sid in ws.swimlane_ids if ws.station(sid)]
    lanes += [sid for sid, ids in ws.assignments.items() if sid and ids and sid not in lanes]
    labels = {UNCLASSIFIED: UNCLASSIFIED_LABEL}
    labels.update({sid: f"{sid} {ws.station(sid).name}" for sid in lanes if sid})
    counts = ws.get_file_counts()

    for sid in lanes:
        card_ids = ws.assignments.get(sid, [])
        title = labels[sid] if not sid else f"{labels[sid]} ({counts.get(sid, 0)})"
        with st.expander(title, expanded=bool(card_ids)):
            if sid and st.button("Remove swimlane", key=f"rm_lane_{sid}"):
                ws.remove_swimlane(sid)
                st.rerun()
            for card_id in list(card_ids):
                card = ws.cards[card_id]
                c1, c2, c3 = st.columns([3, 2, 1])
                status = "❌" if card.parsed.error else ("⚠️" if card.parsed.header_fallback_used else "")
                c1.write(f"{status} {card.file_name}")
                target = c2.selectbox(
                    "Move to", lanes, index=lanes.index(sid), format_func=labels.get,
                    key=f"move_{card_id}", label_visibility="collapsed",
                )
                if target != sid:
                    ws.move_card(card_id, target)
                    st.rerun()
                if c3.button("Remove", key=f"rm_{card_id}"):
                    ws.remove_card(card_id)
                    st.rerun()


def export_section(ws):
    st.header("Export")
    prefix = st.text_input("File name prefix", value=ws.config.output_prefix)
    col_a, col_b = st.columns(2)
    for col, fmt, label in ((col_a, "A", "Raw merge (A)"), (col_b, "B", "Depth-bin averages (B)")):
        with col:
            if st.button(f"Build {label}"):
                result = asyncio.run(ws.export_csv(fmt, prefix=prefix))
                if result is not None:
                    st.session_state[f"export_{fmt}"] = result
            result = st.session_state.get(f"export_{fmt}")
            if result is not None:
                st.download_button(f"Download {result.file_name}", data=result.data,
                                   file_name=result.file_name, mime="text/csv", key=f"dl_{fmt}")
                st.dataframe(pd.DataFrame(result.rows[:50], columns=result.headers),
                             use_container_width=True)


# --- Main App ---

def main():
    st.title("AAQ Merge Tool")
    ws = get_workspace()

    master_sidebar(ws)
    st.sidebar.divider()
    decisions = sidebar_decisions()
    ws.decisions = decisions

    tab1, tab2, tab3 = st.tabs(["1. Files & Stations", "2. Preview", "3. Export"])

    with tab1:
        st.header("Observation Files")
        uploaded = st.file_uploader("Drop AAQ CSV files", accept_multiple_files=True, key="obs_upload")
        if uploaded and st.button("Load files"):
            asyncio.run(ws.load_observations(uploaded))
        swimlane_controls(ws)
        station_form(ws)
        board(ws)

    with tab2:
        st.header("File Summary")
        summaries = ws.card_summaries()
        if not summaries:
            st.info("No files loaded.")
        else:
            st.dataframe(pd.DataFrame(summaries), use_container_width=True)
            names = {s["card_id"]: s["file_name"] for s in summaries}
            card_id = st.selectbox("Depth profile", list(names), format_func=names.get)
            png = build_depth_profile_png(ws.cards[card_id], ws.config)
            if png is None:
                st.info("No depth column or numeric data in this file.")
            else:
                st.image(png, use_container_width=True)

    with tab3:
        export_section(ws)

    show_notices(ws)


if __name__ == "__main__":
    main()
