import json

import pytest

import run
from fullcup import config
from fullcup.config import FilterConfig
from fullcup.geo import generate_grid

OVERRIDABLE = [
    "TEST_CENTER",
    "TEST_BOUNDARIES",
    "PRODUCTION_BOUNDARIES",
    "SERVICE_REGION",
    "TEST_GRID_COLS",
    "TEST_GRID_ROWS",
    "TEST_GRID_SPACING_KM",
    "PRODUCTION_GRID_COLS",
    "PRODUCTION_GRID_ROWS",
    "DEFAULT_PRIMARY_RADIUS_M",
    "EXCLUDED_CHAINS",
    "COFFEE_KEYWORDS",
    "EXCLUDE_KEYWORDS",
    "COFFEE_TYPES",
    "EXCLUDED_TYPES",
    "MAX_API_CALLS_PER_RUN",
    "RATE_LIMIT_MS",
    "MAX_SUBDIVISION_DEPTH",
    "SEARCH_KEYWORD",
    "SEARCH_MODE",
]


@pytest.fixture
def restore_config(monkeypatch):
    for name in OVERRIDABLE:
        monkeypatch.setattr(config, name, getattr(config, name))


def test_missing_config_file_returns_false(tmp_path, restore_config):
    assert config.load_discovery_config(str(tmp_path / "nope.json")) is False


def test_config_file_overrides_defaults(tmp_path, restore_config):
    path = tmp_path / "discovery_config.json"
    path.write_text(
        json.dumps(
            {
                "test_center": {"lat": 29.8, "lng": -95.4},
                "service_region": {"north": 30.0, "south": 29.5, "east": -95.0, "west": -95.8},
                "grid": {"test_cols": 1, "test_rows": 2, "primary_radius_m": 1200},
                "filters": {"excluded_chains": ["Blacksmith"]},
                "run": {"max_api_calls": 7, "max_depth": 2, "keyword": "espresso"},
            }
        ),
        encoding="utf-8",
    )

    assert config.load_discovery_config(str(path)) is True

    points = generate_grid("test")
    assert len(points) == 2
    assert all(p.radius_m == 1200 for p in points)
    assert config.MAX_API_CALLS_PER_RUN == 7
    assert config.MAX_SUBDIVISION_DEPTH == 2
    assert config.SEARCH_KEYWORD == "espresso"
    # Untouched values keep their defaults.
    assert config.RATE_LIMIT_MS == 1000

    cfg = FilterConfig()
    assert cfg.excluded_chains == ("blacksmith",)
    assert cfg.service_region.north == 30.0


def test_preflight_reports_missing_key(monkeypatch, capsys, restore_config):
    monkeypatch.setattr(run, "load_env", lambda *args, **kwargs: None)
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)

    code = run.main(["--preflight", "--config", "does-not-exist.json"])
    assert code == 1
    assert "Config file not found" in capsys.readouterr().err

    code = run.main(["--preflight"])
    out = capsys.readouterr().out
    assert code == 1
    assert "API key: MISSING" in out
    assert "Preflight: FAIL" in out


def test_preflight_passes_with_key(monkeypatch, capsys, restore_config):
    monkeypatch.setattr(run, "load_env", lambda *args, **kwargs: None)
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "dummy")

    code = run.main(["--preflight", "--mode", "production"])
    out = capsys.readouterr().out
    assert code == 0
    assert "Grid (production): OK (72 primary points)" in out
    assert "Preflight: PASS" in out
