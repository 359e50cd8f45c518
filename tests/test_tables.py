"""
CSV hand-off between stages.
"""
import pandas as pd

from photo_crawler.tables import WIKIMEDIA_COLS, read_places, text, write_table


class TestCells:
    """Cell cleaning."""

    def test_missing_values(self):
        assert text(None) == ""
        assert text(float("nan")) == ""
        assert text("  Vienna ") == "Vienna"

    def test_nan_spelled_as_text_is_a_value(self):
        assert text("Nan") == "Nan"
        assert text("NaN") == "NaN"


class TestPlaces:
    """Venue loading."""

    def test_venue_named_nan_is_kept(self, tmp_path):
        path = tmp_path / "places.csv"
        path.write_text(
            "slug,name,lat,lon,city,country\n"
            "nan-bar,Nan,48.2,16.37,Nan,Vietnam\n"
            ",Nameless,48.2,16.37,Vienna,Austria\n"
            "no-coords,Somewhere,,,Vienna,Austria\n",
            encoding="utf-8",
        )
        venues = read_places(path)
        assert [(v.id, v.name, v.city) for v in venues] == [("nan-bar", "Nan", "Nan")]


class TestWriteTable:
    """Fixed-column output."""

    def test_overwrites_with_header(self, tmp_path):
        path = tmp_path / "out" / "wikimedia.csv"
        write_table([{"slug": "a", "commons_file": "A.jpg"}], path, WIKIMEDIA_COLS)
        count = write_table([{"slug": "b", "url": "https://x.test/b.jpg"}], path, WIKIMEDIA_COLS)

        df = pd.read_csv(path, dtype=str, keep_default_na=False)
        assert count == 1
        assert list(df.columns) == WIKIMEDIA_COLS
        assert df["slug"].tolist() == ["b"]
        assert df.loc[0, "commons_file"] == ""
