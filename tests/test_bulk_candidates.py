"""
Bulk media index scoring and the index cache.
"""
import argparse

import pandas as pd
import pytest

from photo_crawler import bulk_candidates as bulk
from photo_crawler.config import ScoringConfig
from photo_crawler.errors import ConfigurationError
from photo_crawler.models import Venue

VENUE = Venue(id="cafe-central", name="Café Central", lat=48.21, lon=16.36, city="Vienna", country="Austria")


def record(identifier, title, license="BY-SA-4.0", creator="Jane Doe"):
    return bulk.MediaRecord(
        identifier=identifier,
        title=title,
        creator=creator,
        url=f"https://media.test/{identifier}.jpg",
        thumbnail_url="",
        license=license,
        source_url=f"https://media.test/{identifier}",
    )


class TestScoreRecord:
    """Point breakdown for a single title."""

    def test_full_match(self):
        # name 50 + fuzzy 30 + city 20 + country 10 + "cafe" keyword 5
        r = record("a", "Cafe Central cafe in Vienna, Austria")
        assert bulk.score_record(VENUE, r) == 115

    def test_city_only(self):
        assert bulk.score_record(VENUE, record("b", "Skyline of Vienna")) == 20

    def test_keywords_are_whole_words(self):
        assert bulk.score_record(VENUE, record("c", "Barcelona harbour")) == 0
        assert bulk.score_record(VENUE, record("d", "Hotel bar at night")) == 10

    def test_plural_keywords_count(self):
        venue = Venue(id="zq", name="Zzz Qqq", lat=0, lon=0)
        r = record("p", "Best Restaurants and Cafes", license="CC0-1.0")
        assert bulk.score_record(venue, r) == 10
        assert [c.record.identifier for c in bulk.find_candidates(venue, [r])] == ["p"]

    def test_empty_city_never_matches(self):
        venue = Venue(id="x", name="Mauerpark", lat=0, lon=0, city="", country="")
        assert bulk.score_record(venue, record("e", "Sunset")) == 0

    def test_weights_are_configurable(self):
        cfg = ScoringConfig().with_overrides(city_points=1)
        assert bulk.score_record(VENUE, record("f", "Skyline of Vienna"), cfg) == 1


class TestFindCandidates:
    """License filter, ranking and top-N."""

    def test_non_commercial_licenses_discarded(self):
        records = [
            record("nc", "Café Central Vienna", license="BY-NC-4.0"),
            record("nd", "Café Central Vienna", license="BY-ND-2.0"),
            record("ok", "Café Central Vienna", license="CC0-1.0"),
        ]
        found = bulk.find_candidates(VENUE, records)
        assert [c.record.identifier for c in found] == ["ok"]

    def test_zero_scores_dropped(self):
        assert bulk.find_candidates(VENUE, [record("z", "A dog on a beach")]) == []

    def test_top_n_sorted_with_stable_ties(self):
        records = [
            record("city1", "Vienna at night"),
            record("best", "Café Central, Vienna"),
            record("city2", "Vienna in winter"),
            record("city3", "Old Vienna"),
        ]
        found = bulk.find_candidates(VENUE, records)
        assert [c.record.identifier for c in found] == ["best", "city1", "city2"]
        assert found[0].score > found[1].score == found[2].score

    def test_top_override(self):
        records = [record(str(i), "Vienna") for i in range(5)]
        assert len(bulk.find_candidates(VENUE, records, top_n=5)) == 5

    def test_output_row(self):
        row = bulk.find_candidates(VENUE, [record("r1", "Café Central Vienna", creator="")])[0].to_row()
        assert row["slug"] == "cafe-central"
        assert row["source_id"] == "r1"
        assert row["author"] == "Unknown"
        assert row["license"] == "CC-BY-SA-4.0"
        assert row["thumbnail_url"] == row["url"]
        assert row["source_url"] == "https://media.test/r1"


class TestMediaIndexCache:
    """Explicit cache with an injected clock."""

    def test_loads_once_within_ttl(self, tmp_path):
        loads = []
        now = [0.0]

        def loader(path):
            loads.append(path)
            return [record("x", "Vienna")]

        cache = bulk.MediaIndexCache(tmp_path / "index.csv", ttl=60, clock=lambda: now[0], loader=loader)
        cache.get()
        now[0] = 59
        cache.get()
        assert len(loads) == 1

        now[0] = 60
        cache.get()
        assert len(loads) == 2

    def test_invalidate_forces_reload(self, tmp_path):
        loads = []
        cache = bulk.MediaIndexCache(tmp_path / "i.csv", clock=lambda: 0.0, loader=lambda p: loads.append(p) or [])
        cache.get()
        cache.invalidate()
        cache.get()
        assert len(loads) == 2


class TestLoadIndex:
    """CSV parsing of the bulk export."""

    def test_joins_license_version(self, tmp_path):
        path = tmp_path / "openverse.csv"
        pd.DataFrame([
            {"identifier": "a", "title": "Vienna", "creator": "Ann", "url": "https://m.test/a.jpg",
             "thumbnail_url": "", "license": "by-sa", "license_version": "4.0"},
            {"identifier": "b", "title": "No url", "creator": "", "url": "",
             "thumbnail_url": "", "license": "cc0", "license_version": ""},
        ]).to_csv(path, index=False)
        records = bulk.load_media_index(path)
        assert len(records) == 1
        assert records[0].license == "BY-SA-4.0"
        assert records[0].source_url == ""

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "bad.csv"
        pd.DataFrame([{"identifier": "a", "title": "t"}]).to_csv(path, index=False)
        with pytest.raises(ConfigurationError):
            bulk.load_media_index(path)


class TestRun:
    """Stage run: matched venues skipped, CSV written."""

    def test_run_writes_candidates(self, tmp_path):
        places = tmp_path / "places.csv"
        pd.DataFrame([
            {"slug": "cafe-central", "name": "Café Central", "lat": 48.21, "lon": 16.36, "city": "Vienna", "country": "Austria"},
            {"slug": "matched", "name": "Vienna Park", "lat": 48.2, "lon": 16.3, "city": "Vienna", "country": "Austria"},
        ]).to_csv(places, index=False)
        matches = tmp_path / "osm_matches.csv"
        pd.DataFrame([{"slug": "matched", "osm_id": "1", "osm_type": "node", "name": "Vienna Park",
                       "image_url": "", "wikidata": "", "score": 0.9}]).to_csv(matches, index=False)
        output = tmp_path / "out.csv"

        records = [record("v1", "Café Central in Vienna"), record("v2", "Vienna Park in spring")]
        cache = bulk.MediaIndexCache(tmp_path / "unused.csv", loader=lambda p: records)
        args = argparse.Namespace(places=str(places), matches=str(matches), index="unused", top=None, output=str(output))

        found = bulk.run(args, cache=cache)

        assert {c.venue_id for c in found} == {"cafe-central"}
        df = pd.read_csv(output, dtype=str, keep_default_na=False)
        assert list(df.columns) == ["slug", "source_id", "title", "url", "thumbnail_url", "author", "license", "source_url", "score"]
        assert df["source_id"].tolist()[0] == "v1"
