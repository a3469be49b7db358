"""
Tests for libctl.query — SQL composition without a database.
"""

import pytest

from libctl.query import compile_recent, compile_search, prefix_match_expression
from libctl.types import SearchParams


class TestPrefixExpression:
    def test_quoted_prefix_terms(self):
        assert prefix_match_expression(["quart", "rep"]) == '"quart"* "rep"*'

    def test_embedded_quotes_doubled(self):
        assert prefix_match_expression(['say"hi']) == '"say""hi"*'

    def test_operators_are_quoted(self):
        assert prefix_match_expression(["NOT", "OR"]) == '"NOT"* "OR"*'


class TestCompileSearch:
    def test_listing_mode(self):
        q = compile_search(SearchParams())
        assert q.mode == "list"
        assert "files_fts" not in q.sql
        assert q.params == [50]

    def test_blank_query_is_listing(self):
        assert compile_search(SearchParams(query="   ")).mode == "list"

    def test_fts_mode(self):
        q = compile_search(SearchParams(query="quart rep", limit=5))
        assert q.mode == "fts"
        assert "files_fts MATCH ?" in q.sql
        assert q.params == ['"quart"* "rep"*', 5]

    def test_like_mode(self):
        q = compile_search(SearchParams(query="quart"), fts_available=False)
        assert q.mode == "like"
        assert "MATCH" not in q.sql
        assert "quart%" in q.params
        assert "% quart%" in q.params

    def test_like_escapes_wildcards(self):
        q = compile_search(SearchParams(query="50%_off"), fts_available=False)
        assert "50\\%\\_off%" in q.params

    def test_date_bounds_anded(self):
        q = compile_search(SearchParams(query="x", from_date="2024-01-01", to_date="2024-12-31"))
        assert "f.modified >= ?" in q.sql
        assert "f.modified <= ?" in q.sql
        assert q.params[-3:] == ["2024-01-01", "2024-12-31", 50]

    def test_ordering(self):
        q = compile_search(SearchParams())
        assert "ORDER BY f.modified DESC, f.id DESC LIMIT ?" in q.sql

    @pytest.mark.parametrize("limit", [0, -1, True, 2.5, "10"])
    def test_invalid_limit(self, limit):
        with pytest.raises(ValueError, match="limit"):
            compile_search(SearchParams(limit=limit))

    def test_non_string_date(self):
        with pytest.raises(ValueError, match="from_date"):
            compile_search(SearchParams(from_date=20240101))


class TestCompileRecent:
    def test_recent(self):
        q = compile_recent(7)
        assert q.mode == "recent"
        assert "last_opened IS NOT NULL" in q.sql
        assert "ORDER BY f.last_opened DESC" in q.sql
        assert q.params == [7]

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            compile_recent(0)
