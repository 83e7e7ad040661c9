"""Tests for the STANOX / CRS / TIPLOC location index."""

from railfeeds.services.rail_dto import Location
from railfeeds.services.reference import LocationIndex


class TestLocationIndex:
    """Lookups across the three coding schemes."""

    def test_lookups_are_case_insensitive(self, locations):
        assert locations.by_crs("kgx").name == "LONDON KINGS CROSS"
        assert locations.by_stanox(" 72420 ").crs == "FPK"
        assert locations.by_tiploc("stevnge").stanox == "72600"

    def test_crs_maps_to_every_stanox_and_tiploc(self, locations):
        assert locations.stanox_for_crs("KGX") == ("72410", "72411")
        assert locations.tiplocs_for_crs("KGX") == ("KNGX", "KNGXSIG")
        assert locations.crs_for_tiploc("KNGXSIG") == "KGX"

    def test_unknown_codes_return_empty(self, locations):
        assert locations.by_crs("ZZZ") is None
        assert locations.by_stanox(None) is None
        assert locations.stanox_for_crs("ZZZ") == ()
        assert locations.crs_for_tiploc("NOWHERE") is None

    def test_rows_without_codes_are_skipped(self):
        index = LocationIndex(
            [Location(name="EMPTY"), Location(name="", tiploc="abc")]
        )

        assert len(index) == 1
        assert index.by_tiploc("ABC").name == "ABC"

    def test_load_replaces_whole_table(self, locations):
        count = locations.load([Location(name="YORK", stanox="16000", crs="YRK")])

        assert count == 1
        assert locations.by_crs("KGX") is None
        assert locations.by_crs("YRK") is not None

    def test_passenger_stations_one_per_crs(self, locations):
        stations = locations.passenger_stations()

        assert [s.crs for s in stations] == ["FPK", "KGX", "PBO", "SVG"]

    def test_search_ranks_crs_then_exact_then_prefix_then_substring(self):
        index = LocationIndex(
            [
                Location(name="CROSS GATES", crs="CRG", stanox="1"),
                Location(name="KINGS CROSS", crs="KGX", stanox="2"),
                Location(name="CROSS", crs="XCR", stanox="3"),
                Location(name="CROSSFLATTS", crs="CFL", stanox="4"),
            ]
        )

        results = index.search("cross")

        assert [loc.crs for loc in results] == ["XCR", "CRG", "CFL", "KGX"]
        assert index.search("kgx")[0].crs == "KGX"
        assert index.search("  ") == []
        assert len(index.search("cross", limit=2)) == 2
