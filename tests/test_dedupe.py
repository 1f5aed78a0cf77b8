from fullcup.dedupe import GridPlaces, dedupe_places, dedupe_within_task, place_identity
from fullcup.models import RawPlace


def place(place_id, name="Shop", lat=29.76, lng=-95.37):
    return RawPlace(name=name, place_id=place_id, lat=lat, lng=lng)


def test_every_input_place_is_mapped():
    per_grid = {
        "g1": GridPlaces([place("a"), place("b")], radius=1500, level=0),
        "g2": GridPlaces([place("b"), place("c")], radius=1500, level=0),
    }
    output = dedupe_places(per_grid)

    assert set(output.mapping) == {"a", "b", "c"}
    assert [p.place_id for p in output.deduped_places] == ["a", "b", "c"]
    assert output.mapping["b"].all_source_grid_ids == ("g1", "g2")


def test_smaller_radius_wins_regardless_of_order():
    shared = place("x")
    forward = {
        "big": GridPlaces([shared], radius=1000, level=0),
        "small": GridPlaces([shared], radius=500, level=1),
    }
    backward = {
        "small": GridPlaces([shared], radius=500, level=1),
        "big": GridPlaces([shared], radius=1000, level=0),
    }

    for per_grid in (forward, backward):
        result = dedupe_places(per_grid).mapping["x"]
        assert result.preferred_source_grid_id == "small"
        assert result.preferred_radius == 500


def test_radius_preference_can_be_disabled():
    shared = place("x")
    per_grid = {
        "big": GridPlaces([shared], radius=1000, level=2),
        "small": GridPlaces([shared], radius=500, level=1),
    }
    result = dedupe_places(per_grid, prefer_smaller_radius=False).mapping["x"]
    assert result.preferred_source_grid_id == "big"


def test_deeper_level_breaks_radius_tie():
    shared = place("x")
    per_grid = {
        "shallow": GridPlaces([shared], radius=500, level=1),
        "deep": GridPlaces([shared], radius=500, level=2),
    }
    assert dedupe_places(per_grid).mapping["x"].preferred_source_grid_id == "deep"


def test_first_encountered_breaks_full_tie():
    first = place("x", name="First")
    second = place("x", name="Second")
    per_grid = {
        "g1": GridPlaces([first], radius=500, level=1),
        "g2": GridPlaces([second], radius=500, level=1),
    }
    result = dedupe_places(per_grid).mapping["x"]
    assert result.preferred_source_grid_id == "g1"
    assert result.chosen_place.name == "First"


def test_places_without_id_use_name_and_coordinates():
    a = RawPlace(name="Blue Bottle ", lat=29.7, lng=-95.3)
    b = RawPlace(name="blue bottle", lat=29.7000001, lng=-95.3000001)
    c = RawPlace(name="blue bottle", lat=29.71, lng=-95.3)

    assert place_identity(a) == "blue bottle|29.700000|-95.300000"
    output = dedupe_places({"g1": [a], "g2": [b, c]})
    assert len(output.deduped_places) == 2


def test_inputs_are_not_mutated_and_outputs_carry_provenance():
    original = place("x")
    per_grid = {
        "g1": GridPlaces([original], radius=1500, level=0),
        "g2": GridPlaces([original], radius=1125, level=1),
    }
    output = dedupe_places(per_grid)

    assert original.provenance is None
    deduped = output.deduped_places[0]
    assert deduped is not original
    assert deduped.provenance.preferred_grid_id == "g2"
    assert deduped.provenance.source_grid_ids == ("g1", "g2")
    assert deduped.to_dict()["preferred_radius"] == 1125


def test_duplicates_by_grid_counts_shared_places():
    per_grid = {
        "g1": [place("x"), place("y")],
        "g2": [place("x")],
        "g3": [],
    }
    output = dedupe_places(per_grid)

    assert output.duplicates_by_grid == {"g1": 1, "g2": 1, "g3": 0}
    assert output.mapping["y"].preferred_radius is None


def test_dedupe_within_task_keeps_first_occurrence():
    places = [place("a", name="A1"), place("b"), place("a", name="A2")]
    unique = dedupe_within_task(places)
    assert [(p.place_id, p.name) for p in unique] == [("a", "A1"), ("b", "Shop")]
