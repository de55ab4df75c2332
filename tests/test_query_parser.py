"""Test suite for the WHERE-clause parser and spatial query execution.

Validates that attribute filters are parsed into expression trees without
any dynamic code execution, that malformed input is rejected with a
position, and that spatial queries combine relationship and attribute
filters with ordering, limits and projection.
"""

import pytest

from geotoolkit.error_handler import QueryParseError
from geotoolkit.geometry.model import Feature
from geotoolkit.geometry.topology import SpatialRelationship
from geotoolkit.query_parser import (
    Between,
    Comparison,
    FieldRef,
    InList,
    IsNull,
    Like,
    Literal,
    LogicalOp,
    NotOp,
    SpatialQuery,
    WhereParser,
    evaluate,
    execute_query,
    get_where_parser,
    like_to_regex,
    matches_where,
    parse_order_by,
    parse_where,
)


class TestWhereParser:
    """Test cases for WhereParser."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = WhereParser()

    def test_singleton_parser(self):
        """Test that global parser returns same instance."""
        assert get_where_parser() is get_where_parser()

    def test_simple_comparison(self):
        """Test a field compared with a number."""
        assert self.parser.parse("population > 1000") == Comparison(
            '>', FieldRef('population'), Literal(1000)
        )

    def test_literal_types(self):
        """Test integer, float, string, boolean and NULL literals."""
        assert self.parser.parse("a = -2.5").right == Literal(-2.5)
        assert self.parser.parse("a = 'it''s'").right == Literal("it's")
        assert self.parser.parse("a = TRUE").right == Literal(True)
        assert self.parser.parse("a = null").right == Literal(None)
        assert isinstance(self.parser.parse("a = 3").right.value, int)

    def test_not_equal_spellings(self):
        """Test that <> and != parse to the same operator."""
        assert self.parser.parse("a <> 1") == self.parser.parse("a != 1")

    def test_precedence(self):
        """Test that AND binds tighter than OR."""
        node = self.parser.parse("a = 1 OR b = 2 AND c = 3")
        assert isinstance(node, LogicalOp)
        assert node.op == 'OR'
        assert isinstance(node.operands[1], LogicalOp)
        assert node.operands[1].op == 'AND'

    def test_parentheses_override_precedence(self):
        """Test grouping with parentheses."""
        node = self.parser.parse("(a = 1 OR b = 2) AND c = 3")
        assert node.op == 'AND'
        assert node.operands[0].op == 'OR'

    def test_predicates(self):
        """Test LIKE, IN, IS NULL, BETWEEN and their negations."""
        assert self.parser.parse("name LIKE 'San%'") == Like(FieldRef('name'), 'San%')
        assert self.parser.parse("name NOT LIKE 'San%'") == Like(FieldRef('name'), 'San%', True)
        assert self.parser.parse("kind IN ('a', 'b')") == InList(
            FieldRef('kind'), (Literal('a'), Literal('b'))
        )
        assert self.parser.parse("kind IS NOT NULL") == IsNull(FieldRef('kind'), True)
        assert self.parser.parse("x NOT BETWEEN 1 AND 5") == Between(
            FieldRef('x'), Literal(1), Literal(5), True
        )
        assert self.parser.parse("NOT a = 1") == NotOp(Comparison('=', FieldRef('a'), Literal(1)))

    def test_quoted_field_names(self):
        """Test double-quoted identifiers, including keywords."""
        assert self.parser.parse('"order" = 1').left == FieldRef('order')

    def test_keywords_case_insensitive(self):
        """Test lower-case keywords."""
        node = self.parser.parse("a = 1 and b is null")
        assert node.op == 'AND'


class TestMalformedWhere:
    """Test rejection of malformed or hostile input."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = WhereParser()

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_empty_input(self, text):
        """Test that empty clauses are rejected."""
        with pytest.raises(QueryParseError, match="non-empty string"):
            self.parser.parse(text)

    @pytest.mark.parametrize("text,message", [
        ("a = ", "Unexpected end of expression"),
        ("(a = 1", "Missing closing parenthesis"),
        ("a = 1)", "Unexpected"),
        ("a LIKE 5", "LIKE requires a string pattern"),
        ("a IN 1, 2", "parenthesized list"),
        ("a BETWEEN 1 OR 2", "BETWEEN requires AND"),
        ("a IS 5", "NULL"),
        ("a NOT = 1", "NOT must be followed by"),
        ("a = 1; DROP TABLE t", "Unexpected character"),
        ("__import__('os').system('ls')", "Unexpected"),
    ])
    def test_malformed(self, text, message):
        """Test that malformed expressions raise QueryParseError."""
        with pytest.raises(QueryParseError, match=message):
            self.parser.parse(text)

    def test_error_position(self):
        """Test that errors carry the failing position."""
        with pytest.raises(QueryParseError) as exc_info:
            self.parser.parse("a = 1 AND AND b = 2")
        assert exc_info.value.metadata['position'] == 10
        assert "at position 10" in exc_info.value.message

    def test_nesting_limit(self):
        """Test that pathologically nested input is rejected."""
        text = "(" * 100 + "a = 1" + ")" * 100
        with pytest.raises(QueryParseError, match="nested too deeply"):
            self.parser.parse(text)

    def test_moderate_nesting_allowed(self):
        """Test that reasonable nesting parses."""
        text = "(" * 10 + "a = 1" + ")" * 10
        assert self.parser.parse(text) == Comparison('=', FieldRef('a'), Literal(1))


class TestEvaluation:
    """Test expression evaluation against property mappings."""

    properties = {
        'name': 'San Jose',
        'population': 1000000,
        'kind': 'city',
        'area': 465.0,
        'address': {'state': 'CA'},
        'notes': None,
    }

    @pytest.mark.parametrize("text,expected", [
        ("population > 500000", True),
        ("population >= 1000000 AND kind = 'city'", True),
        ("kind = 'town' OR area < 500", True),
        ("NOT kind = 'city'", False),
        ("name LIKE 'San%'", True),
        ("name LIKE 'san%'", False),
        ("name LIKE 'San _ose'", True),
        ("name NOT LIKE '%ville'", True),
        ("kind IN ('town', 'city')", True),
        ("kind NOT IN ('town', 'city')", False),
        ("area BETWEEN 400 AND 500", True),
        ("area NOT BETWEEN 400 AND 500", False),
        ("notes IS NULL", True),
        ("missing IS NULL", True),
        ("name IS NOT NULL", True),
        ("address.state = 'CA'", True),
    ])
    def test_matches(self, text, expected):
        """Test evaluation of each predicate form."""
        assert matches_where(text, self.properties) is expected

    def test_null_comparisons_are_false(self):
        """Test that comparisons with NULL never match."""
        assert matches_where("notes = NULL", self.properties) is False
        assert matches_where("notes != 1", self.properties) is False
        assert matches_where("missing < 5", self.properties) is False

    @pytest.mark.parametrize("text,expected", [
        ("NOT (notes = 1)", False),
        ("NOT missing BETWEEN 1 AND 5", False),
        ("missing NOT IN (1, 2)", False),
        ("kind NOT IN ('town', NULL)", False),
        ("kind IN ('city', NULL)", True),
        ("NOT (notes = 1 AND kind = 'town')", True),
        ("NOT (notes = 1 OR kind = 'city')", False),
        ("NOT (notes = 1 OR kind = 'town')", False),
        ("notes = 1 OR kind = 'city'", True),
        ("NOT notes", False),
        ("NOT (notes IS NULL)", False),
    ])
    def test_null_three_valued_logic(self, text, expected):
        """Test that UNKNOWN survives NOT and is resolved by AND/OR as in SQL."""
        assert matches_where(text, self.properties) is expected

    def test_mismatched_types_are_false(self):
        """Test that incomparable values do not raise."""
        assert matches_where("name > 5", self.properties) is False

    def test_field_to_field_comparison(self):
        """Test comparing two properties."""
        assert matches_where("a < b", {'a': 1, 'b': 2}) is True

    def test_bare_field_truthiness(self):
        """Test a bare field reference as a predicate."""
        assert evaluate(parse_where("active"), {'active': True}) is True
        assert evaluate(parse_where("active"), {'active': 0}) is False

    def test_like_to_regex_escapes(self):
        """Test that regex metacharacters in patterns are literal."""
        assert like_to_regex("a.b%").fullmatch("a.bcd")
        assert like_to_regex("a.b%").fullmatch("axbcd") is None

    def test_unknown_node(self):
        """Test that unknown nodes are rejected."""
        with pytest.raises(TypeError, match="Unknown expression node"):
            evaluate(object(), {})


class TestOrderBy:
    """Test ORDER BY parsing."""

    def test_terms(self):
        """Test directions and defaults."""
        assert parse_order_by("a DESC, b") == [('a', True), ('b', False)]
        assert parse_order_by("c asc") == [('c', False)]

    @pytest.mark.parametrize("text,message", [
        ("a DESC b", "Malformed ORDER BY term"),
        ("a,,b", "Malformed ORDER BY term"),
        ("a SIDEWAYS", "Unknown sort direction"),
    ])
    def test_malformed(self, text, message):
        """Test rejection of malformed terms."""
        with pytest.raises(QueryParseError, match=message):
            parse_order_by(text)


class TestSpatialQuery:
    """Test query construction and execution."""

    def test_defaults_to_intersects(self, square):
        """Test the default relationship when a geometry is given."""
        assert SpatialQuery(geometry=square).spatial_rel == SpatialRelationship.INTERSECTS
        assert SpatialQuery().spatial_rel is None

    def test_invalid_relationship(self, square):
        """Test that unknown relationships raise QueryParseError."""
        with pytest.raises(QueryParseError, match="Unknown spatial relationship"):
            SpatialQuery(geometry=square, spatial_rel="adjacent")

    def test_invalid_limit(self):
        """Test that limits cannot be negative."""
        with pytest.raises(QueryParseError, match="limit must be non-negative"):
            SpatialQuery(limit=-1)

    def test_where_parsed_eagerly(self):
        """Test that a bad WHERE clause fails at construction."""
        with pytest.raises(QueryParseError):
            SpatialQuery(where="a = = 1")

    def test_within_and_where(self, factory, grid_features):
        """Test combining a spatial filter with an attribute filter."""
        window = factory.create_polygon([[1.5, 1.5], [4.5, 1.5], [4.5, 3.5], [1.5, 3.5], [1.5, 1.5]])
        query = SpatialQuery(geometry=window, spatial_rel="within", where="x >= 3")
        result = execute_query(grid_features, query)
        assert sorted(f.id for f in result) == ["p3_2", "p3_3", "p4_2", "p4_3"]
        assert all(f in grid_features for f in result)

    def test_order_limit_and_projection(self, grid_features):
        """Test ordering, limiting and field projection."""
        query = SpatialQuery(where="y = 0", order_by="x DESC", limit=3,
                             fields=['x'], return_geometry=False)
        result = execute_query(grid_features, query)
        assert [f.properties for f in result] == [{'x': 9}, {'x': 8}, {'x': 7}]
        assert all(f.geometry is None for f in result)
        assert [f.id for f in result] == ["p9_0", "p8_0", "p7_0"]

    def test_missing_values_sort_last(self, factory):
        """Test that features without the sort key come last in both directions."""
        features = [
            Feature(factory.create_point([0, 0]), {'rank': 2}, id='a'),
            Feature(factory.create_point([0, 0]), {}, id='b'),
            Feature(factory.create_point([0, 0]), {'rank': 1}, id='c'),
        ]
        ascending = execute_query(features, SpatialQuery(order_by="rank"))
        descending = execute_query(features, SpatialQuery(order_by="rank DESC"))
        assert [f.id for f in ascending] == ['c', 'a', 'b']
        assert [f.id for f in descending] == ['a', 'c', 'b']

    def test_features_without_geometry_skipped(self, square):
        """Test that a spatial filter skips features lacking geometry."""
        features = [Feature(None, {'a': 1})]
        assert execute_query(features, SpatialQuery(geometry=square)) == []
        assert len(execute_query(features, SpatialQuery(where="a = 1"))) == 1

    def test_limit_zero(self, grid_features):
        """Test that a zero limit returns nothing."""
        assert execute_query(grid_features, SpatialQuery(limit=0)) == []
