import csv
import json

import pytest

from fullcup import pipeline
from fullcup.geo import GridPoint
from fullcup.models import FilteredPlace, RawPlace, SearchResult, UpsertItem
from fullcup.store import STATUS_ACTIVE, STATUS_TEMPORARILY_CLOSED, ShopStore


def coffee_place(place_id, lat=29.76, lng=-95.37, name="Catalina Coffee"):
    return RawPlace(
        name=name,
        place_id=place_id,
        lat=lat,
        lng=lng,
        types=("cafe",),
        primary_type="cafe",
        business_status="OPERATIONAL",
    )


class FakeSearchPort:
    result_cap = 20

    def __init__(self, places):
        self.places = places
        self.calls = 0

    def search(self, lat, lng, radius_m, keyword):
        self.calls += 1
        return SearchResult(places=list(self.places), api_calls_used=1)


POINTS = [
    GridPoint(id="primary-0-0", lat=29.75, lng=-95.38, radius_m=1500),
    GridPoint(id="primary-0-1", lat=29.75, lng=-95.36, radius_m=1500),
]


def run_offline(tmp_path, port, **kwargs):
    kwargs.setdefault("rate_limit_ms", 0)
    kwargs.setdefault("max_api_calls", 100)
    return pipeline.run(
        api_key=None,
        mode="test",
        places_client=port,
        shops_db_path=str(tmp_path / "shops.db"),
        output_dir=str(tmp_path / "out"),
        points=POINTS,
        **kwargs,
    )


def test_offline_run_writes_outputs_and_dedups_across_grids(tmp_path):
    port = FakeSearchPort([coffee_place("shared"), coffee_place("bucks", name="Starbucks")])

    result = run_offline(tmp_path, port)

    out = tmp_path / "out"
    for name in ("shops.csv", "shops.json", "tasks.csv", "summary.json", "summary.txt", "progress.json"):
        assert (out / name).exists(), name

    assert [shop["place_id"] for shop in result.shops] == ["shared"]
    assert result.shops[0]["source_grid_ids"] == ["primary-0-0", "primary-0-1"]
    assert result.shops[0]["preferred_grid_id"] == "primary-0-0"
    assert result.report["unique_shops"] == 1
    assert result.report["duplicates_by_grid"] == {"primary-0-0": 1, "primary-0-1": 1}
    assert result.report["rejection_counts"] == {"chain_excluded": 2}
    assert result.summary.persisted_inserted == 1
    assert result.summary.persisted_updated == 1
    assert result.sync_run_id == 1

    with open(out / "shops.csv", newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert rows[0]["name"] == "Catalina Coffee"
    assert json.loads(rows[0]["types"]) == ["cafe"]

    with open(out / "tasks.csv", newline="", encoding="utf-8") as f:
        tasks = list(csv.DictReader(f))
    assert [t["task_id"] for t in tasks] == ["primary-0-0", "primary-0-1"]

    progress = json.loads((out / "progress.json").read_text(encoding="utf-8"))
    assert progress["last_event"]["type"] == "complete"
    assert progress["summary"]["total_areas_searched"] == 2

    summary_text = (out / "summary.txt").read_text(encoding="utf-8")
    assert "Status: completed" in summary_text
    assert "Unique shops: 1" in summary_text

    store = ShopStore(str(tmp_path / "shops.db"))
    try:
        assert [shop["google_place_id"] for shop in store.all_shops()] == ["shared"]
        assert store.sync_history()[0]["status"] == "success"
    finally:
        store.close()


def test_budget_abort_is_recorded_and_still_writes_outputs(tmp_path):
    port = FakeSearchPort([coffee_place("shared")])

    result = run_offline(tmp_path, port, max_api_calls=0)

    assert result.summary.aborted is True
    assert result.report["status"] == "aborted"
    assert (tmp_path / "out" / "shops.csv").exists()
    progress = json.loads((tmp_path / "out" / "progress.json").read_text(encoding="utf-8"))
    assert progress["last_event"]["type"] == "abort"

    store = ShopStore(str(tmp_path / "shops.db"))
    try:
        history = store.sync_history()
        assert history[0]["status"] == "aborted"
        assert "exceeded max_api_calls" in history[0]["error"]
    finally:
        store.close()


def test_mark_stale_flags_shops_missing_from_completed_run(tmp_path):
    db_path = str(tmp_path / "shops.db")
    store = ShopStore(db_path)
    store.upsert_batch(
        [
            UpsertItem(
                place=FilteredPlace(place=coffee_place("old")),
                source_grid_id="primary-0-0",
                grid_radius=1500,
                search_level=0,
            )
        ]
    )
    store.conn.execute("UPDATE coffee_shops SET last_seen_at = '2000-01-01T00:00:00+00:00'")
    store.conn.commit()
    store.close()

    result = run_offline(tmp_path, FakeSearchPort([coffee_place("new")]), mark_stale=True)

    assert result.report["stale_marked"] == 1
    store = ShopStore(db_path)
    try:
        assert store.get_shop("old")["status"] == STATUS_TEMPORARILY_CLOSED
        assert store.get_shop("new")["status"] == STATUS_ACTIVE
    finally:
        store.close()


def test_mark_stale_is_skipped_for_aborted_runs(tmp_path):
    result = run_offline(
        tmp_path, FakeSearchPort([coffee_place("new")]), mark_stale=True, max_api_calls=0
    )
    assert result.summary.aborted is True
    assert result.report["stale_marked"] is None


def test_no_persist_skips_store(tmp_path):
    result = run_offline(tmp_path, FakeSearchPort([coffee_place("a")]), persist=False, write_outputs=False)

    assert result.sync_run_id is None
    assert not (tmp_path / "shops.db").exists()
    assert not (tmp_path / "out").exists()
    assert len(result.shops) == 1


def test_missing_api_key_without_client_raises(tmp_path):
    with pytest.raises(ValueError):
        pipeline.run(api_key=None, persist=False, write_outputs=False, output_dir=str(tmp_path))


def test_second_concurrent_run_is_rejected(tmp_path):
    assert pipeline._RUN_LOCK.acquire(blocking=False)
    try:
        with pytest.raises(pipeline.RunInProgressError):
            run_offline(tmp_path, FakeSearchPort([]))
    finally:
        pipeline._RUN_LOCK.release()

    result = run_offline(tmp_path, FakeSearchPort([]), persist=False, write_outputs=False)
    assert result.summary.aborted is False
