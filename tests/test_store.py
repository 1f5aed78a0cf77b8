from fullcup.models import FilteredPlace, RawPlace, UpsertItem
from fullcup.store import (
    STATUS_ACTIVE,
    STATUS_CLOSED,
    STATUS_TEMPORARILY_CLOSED,
    ShopStore,
    map_business_status,
    synthesize_place_id,
)


def item(place_id, name="Catalina Coffee", business_status="OPERATIONAL", grid_id="primary-0-0", **kwargs):
    place = RawPlace(
        name=name,
        place_id=place_id,
        lat=kwargs.pop("lat", 29.75),
        lng=kwargs.pop("lng", -95.38),
        types=("cafe", "food"),
        primary_type="cafe",
        business_status=business_status,
        rating=4.7,
        user_rating_count=812,
        formatted_address="2201 Washington Ave, Houston, TX",
    )
    return UpsertItem(
        place=FilteredPlace(place=place),
        source_grid_id=grid_id,
        grid_radius=kwargs.pop("grid_radius", 1500),
        search_level=kwargs.pop("search_level", 0),
    )


def test_upsert_reports_inserted_and_updated():
    store = ShopStore(":memory:")

    first = store.upsert_batch([item("a"), item("b")])
    second = store.upsert_batch(
        [item("a", grid_id="primary-0-0-sub-NE", grid_radius=1125, search_level=1), item("c")]
    )

    assert (first.inserted, first.updated, first.errors) == (2, 0, [])
    assert (second.inserted, second.updated) == (1, 1)
    shop = store.get_shop("a")
    assert shop["source_grid_id"] == "primary-0-0-sub-NE"
    assert shop["grid_radius"] == 1125
    assert shop["search_level"] == 1
    assert shop["types"] == ["cafe", "food"]
    assert shop["status"] == STATUS_ACTIVE
    assert len(store.all_shops()) == 3
    store.close()


def test_upsert_counts_across_small_batches():
    store = ShopStore(":memory:")
    store.upsert_batch([item("a")])

    result = store.upsert_batch([item("a"), item("b"), item("c")], batch_size=1)

    assert (result.inserted, result.updated) == (2, 1)
    store.close()


def test_place_without_id_gets_synthetic_id():
    store = ShopStore(":memory:")
    no_id = item(None, name="Blue Door Cafe", lat=29.7, lng=-95.3)

    store.upsert_batch([no_id])

    expected = "local:Blue_Door_Cafe:29.7:-95.3"
    assert synthesize_place_id(no_id.place.place) == expected
    assert store.get_shop(expected)["name"] == "Blue Door Cafe"
    store.close()


def test_business_status_mapping():
    assert map_business_status("OPERATIONAL") == STATUS_ACTIVE
    assert map_business_status("CLOSED_TEMPORARILY") == STATUS_TEMPORARILY_CLOSED
    assert map_business_status("CLOSED_PERMANENTLY") == STATUS_CLOSED
    assert map_business_status(None) == STATUS_ACTIVE

    store = ShopStore(":memory:")
    store.upsert_batch([item("gone", business_status="CLOSED_PERMANENTLY")])
    assert store.get_shop("gone")["status"] == STATUS_CLOSED
    store.close()


def test_mark_not_seen_since_only_touches_active_shops():
    store = ShopStore(":memory:")
    store.upsert_batch([item("a"), item("b"), item("gone", business_status="CLOSED_PERMANENTLY")])

    marked = store.mark_not_seen_since("9999-01-01T00:00:00+00:00")

    assert marked == 2
    assert store.get_shop("a")["status"] == STATUS_TEMPORARILY_CLOSED
    assert store.get_shop("gone")["status"] == STATUS_CLOSED
    assert store.mark_not_seen_since("2000-01-01T00:00:00+00:00") == 0
    store.close()


def test_sync_history_is_recorded():
    store = ShopStore(":memory:")

    run_id = store.record_sync_run(
        mode="test",
        started_at="2026-01-01T00:00:00+00:00",
        finished_at="2026-01-01T00:05:00+00:00",
        areas_searched=10,
        places_found=42,
        api_calls=12,
        status="aborted",
        error="exceeded max_api_calls (used 12 of limit 11)",
    )

    history = store.sync_history()
    assert run_id == 1
    assert len(history) == 1
    assert history[0]["status"] == "aborted"
    assert history[0]["places_found"] == 42
    store.close()


def test_failed_batches_are_reported_not_raised():
    store = ShopStore(":memory:")
    store.conn.execute("DROP TABLE coffee_shops")

    result = store.upsert_batch([item("a"), item("b")], batch_size=1)

    assert (result.inserted, result.updated) == (0, 0)
    assert len(result.errors) == 2
    assert result.errors[0].startswith("batch 1:")
    store.close()
