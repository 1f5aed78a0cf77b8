import json

import pytest

from fullcup.progress import CompleteEvent, ProgressBus, SearchCompleteEvent, SearchStartEvent, StartEvent
from fullcup.reporting import (
    ProgressFileWriter,
    atomic_write_text,
    atomic_writer,
    render_summary,
    write_shops_csv,
)


def test_atomic_write_replaces_file_and_leaves_no_temp_files(tmp_path):
    target = tmp_path / "summary.txt"
    target.write_text("old", encoding="utf-8")

    atomic_write_text(str(target), "new")

    assert target.read_text(encoding="utf-8") == "new"
    assert [p.name for p in tmp_path.iterdir()] == ["summary.txt"]


def test_atomic_writer_keeps_original_on_failure(tmp_path):
    target = tmp_path / "shops.json"
    target.write_text("[]", encoding="utf-8")

    with pytest.raises(RuntimeError):
        with atomic_writer(str(target)) as f:
            f.write("partial")
            raise RuntimeError("disk full")

    assert target.read_text(encoding="utf-8") == "[]"
    assert [p.name for p in tmp_path.iterdir()] == ["shops.json"]


def test_shops_csv_encodes_list_columns(tmp_path):
    target = tmp_path / "shops.csv"
    write_shops_csv(
        str(target),
        [{"place_id": "p1", "name": "Catalina Coffee", "types": ["cafe"], "source_grid_ids": ["g1", "g2"], "extra": 1}],
    )

    lines = target.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("place_id,name,")
    assert '"[""g1"", ""g2""]"' in lines[1]


def test_progress_writer_throttles_but_always_writes_completion(tmp_path):
    now = [0.0]
    bus = ProgressBus()
    target = tmp_path / "progress.json"
    writer = ProgressFileWriter(
        str(target), bus, write_interval_seconds=2.0, log_every=0, clock=lambda: now[0]
    )
    writer.attach()

    bus.emit(StartEvent(mode="test", total_estimated_searches=1))
    assert writer.writes == 1

    now[0] = 0.5
    bus.emit(SearchStartEvent(id="a", level=0, lat=29.7, lng=-95.3, radius=1500))
    assert writer.writes == 1

    now[0] = 2.5
    bus.emit(SearchCompleteEvent(id="a", level=0, result_count=3, api_calls=1))
    assert writer.writes == 2

    now[0] = 2.6
    bus.emit(CompleteEvent(total_areas_searched=1, total_places=3, api_calls=1, subdivisions=0))
    assert writer.writes == 3

    payload = json.loads(target.read_text(encoding="utf-8"))
    assert payload["last_event"]["type"] == "complete"
    assert payload["summary"]["total_places"] == 3
    assert [ev["type"] for ev in payload["recent_events"]] == [
        "start",
        "search-start",
        "search-complete",
        "complete",
    ]


def test_render_summary_lists_nonzero_duplicates():
    lines = render_summary(
        {
            "mode": "test",
            "status": "aborted",
            "abort_reason": "exceeded max_api_calls (used 51 of limit 50)",
            "total_areas_searched": 12,
            "unique_shops": 30,
            "rejection_counts": {"chain_excluded": 4},
            "duplicates_by_grid": {"g1": 2, "g2": 0},
        }
    )

    assert "Status: aborted" in lines
    assert "Abort reason: exceeded max_api_calls (used 51 of limit 50)" in lines
    assert "  - chain_excluded: 4" in lines
    assert "  - g1: 2" in lines
    assert "  - g2: 0" not in lines
