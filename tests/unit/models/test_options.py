"""Tests for unified search option parsing."""

from __future__ import annotations

import pytest

from searchindex.engines.base.exceptions import ValidationError
from searchindex.models.options import (
    DEFAULT_PER_PAGE,
    MAX_PER_PAGE,
    RangeFilter,
    SearchOptions,
    is_unified_sort,
    parse_filters,
    parse_histogram,
)


class TestPaging:
    def test_defaults(self) -> None:
        options = SearchOptions.parse(None)
        assert (options.page, options.per_page, options.offset) == (1, DEFAULT_PER_PAGE, 0)

    @pytest.mark.parametrize(
        ("raw", "page", "per_page"),
        [
            ({"page": "3", "perPage": "10"}, 3, 10),
            ({"page": 0}, 1, DEFAULT_PER_PAGE),
            ({"page": -4}, 1, DEFAULT_PER_PAGE),
            ({"perPage": 0}, 1, DEFAULT_PER_PAGE),
            ({"perPage": 10_000}, 1, MAX_PER_PAGE),
            ({"page": ""}, 1, DEFAULT_PER_PAGE),
        ],
    )
    def test_clamping(self, raw: dict, page: int, per_page: int) -> None:
        options = SearchOptions.parse(raw)
        assert (options.page, options.per_page) == (page, per_page)

    def test_offset(self) -> None:
        assert SearchOptions.parse({"page": 3, "perPage": 15}).offset == 30

    @pytest.mark.parametrize("raw", [{"page": "two"}, {"perPage": True}, {"maxValuesPerFacet": "many"}])
    def test_non_integers_rejected(self, raw: dict) -> None:
        with pytest.raises(ValidationError, match="must be an integer"):
            SearchOptions.parse(raw)

    def test_parsed_options_pass_through(self) -> None:
        options = SearchOptions(per_page=3)
        assert SearchOptions.parse(options) is options


class TestFilters:
    def test_shapes(self) -> None:
        filters = parse_filters(
            {
                "category": ["news", "", None, "sport"],
                "price": {"min": "10", "max": 20},
                "published_at": {"min": "2024-01-01"},
                "active": True,
                "empty": [],
                "open": {"min": None, "max": ""},
                "skipped": None,
            }
        )
        assert filters == {
            "category": ["news", "sport"],
            "price": RangeFilter(min=10.0, max=20),
            "published_at": RangeFilter(min="2024-01-01"),
            "active": True,
        }

    def test_json_string(self) -> None:
        assert parse_filters('{"category": "news"}') == {"category": "news"}
        assert parse_filters("  ") == {}

    def test_parsed_ranges_are_kept(self) -> None:
        assert parse_filters({"price": RangeFilter(max=5)}) == {"price": RangeFilter(max=5)}
        assert parse_filters({"price": RangeFilter()}) == {}

    @pytest.mark.parametrize(
        ("raw", "message"),
        [
            ("{broken", "Invalid JSON in filters"),
            ('["a"]', "filters must be a JSON object"),
            ({"price": {"gte": 1}}, "only 'min' and 'max' keys"),
            ({"price": {}}, "only 'min' and 'max' keys"),
            ({"tags": [["nested"]]}, "list values must be scalars"),
            ({"price": {"min": [1]}}, "Invalid range bound for 'price'"),
            ({"x": object()}, "Invalid filter value for 'x'"),
        ],
    )
    def test_malformed(self, raw: object, message: str) -> None:
        with pytest.raises(ValidationError, match=message):
            parse_filters(raw)


class TestSortAndHighlight:
    def test_unified_sort(self) -> None:
        options = SearchOptions.parse({"sort": '{"price": "desc", "title": "asc"}'})
        assert options.sort == {"price": "desc", "title": "asc"}
        assert "sort" not in options.native

    def test_native_sort_passes_through(self) -> None:
        native = [{"price": {"order": "desc", "missing": "_last"}}]
        options = SearchOptions.parse({"sort": native})
        assert options.sort == {}
        assert options.native["sort"] == native

    @pytest.mark.parametrize(
        ("sort", "expected"),
        [({"a": "asc"}, True), ({"a": "up"}, False), ({}, False), (["a"], False)],
    )
    def test_is_unified_sort(self, sort: object, expected: bool) -> None:
        assert is_unified_sort(sort) is expected

    def test_highlight_forms(self) -> None:
        assert SearchOptions.parse({"highlight": True}).highlight_fields is None
        assert SearchOptions.parse({"highlight": ["title", 3]}).highlight_fields == ["title", "3"]
        assert SearchOptions.parse({}).highlight_fields == []
        native = SearchOptions.parse({"highlight": {"fields": {"title": {}}}})
        assert native.wants_highlight is False
        assert native.native["highlight"] == {"fields": {"title": {}}}


class TestOtherOptions:
    def test_field_lists(self) -> None:
        options = SearchOptions.parse({"facets": "category, brand,", "fields": ["title"], "stats": "price"})
        assert options.facets == ["category", "brand"]
        assert options.fields == ["title"]
        assert options.stats == ["price"]
        assert SearchOptions.parse({"fields": ""}).fields is None

    def test_attributes_to_retrieve_empty_list_is_kept(self) -> None:
        assert SearchOptions.parse({"attributesToRetrieve": []}).attributes_to_retrieve == []
        assert SearchOptions.parse({}).attributes_to_retrieve is None

    def test_native_remainder(self) -> None:
        options = SearchOptions.parse({"perPage": 5, "hitsPerPage": 7, "filter_by": "x:=1"})
        assert options.native == {"hitsPerPage": 7, "filter_by": "x:=1"}

    def test_histogram(self) -> None:
        histogram = parse_histogram({"price": 10, "year": {"interval": 1, "min": 2000}, "bad": {"interval": 0}})
        assert set(histogram) == {"price", "year"}
        assert histogram["price"].interval == 10.0
        assert histogram["year"].min == 2000.0

    def test_geo(self) -> None:
        options = SearchOptions.parse({"geoFilter": '{"lat": 52.5, "lng": 13.4, "radius": 5000}'})
        assert options.geo_filter is not None
        assert options.geo_filter.radius == 5000
        with pytest.raises(ValidationError, match="Invalid geoFilter"):
            SearchOptions.parse({"geoFilter": {"lat": 200, "lng": 0, "radius": 1}})
        with pytest.raises(ValidationError, match="geoSort must be an object"):
            SearchOptions.parse({"geoSort": "[1, 2]"})

    def test_embedding(self) -> None:
        options = SearchOptions.parse({"embedding": [1, 0.5], "embeddingField": "vec", "vectorSearch": 1})
        assert options.embedding == [1.0, 0.5]
        assert (options.embedding_field, options.vector_search) == ("vec", True)
        assert options.loggable()["embedding"] == "(2 dims)"
        with pytest.raises(ValidationError, match="embedding must be a list of numbers"):
            SearchOptions.parse({"embedding": ["a"]})
