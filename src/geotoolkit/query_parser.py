"""Spatial Query Parser and WHERE-clause evaluator for geotoolkit.

This module turns attribute filters such as
``"population > 1000 AND name LIKE 'San%'"`` into a typed expression tree
and evaluates it directly against a feature's property mapping. Combined with
a spatial relationship filter it implements the query surface consumed by
feature stores.

Security Approach:
- Tokenize with a fixed set of compiled patterns; anything else is rejected
- Parse by recursive descent into immutable AST nodes with a nesting limit
- Evaluate nodes by pattern over their types; no dynamic code is ever built
  or executed
- Report the failing position and a truncated expression on parse errors
"""

import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .error_handler import QueryParseError, TopologyError
from .logging_manager import get_logger
from .geometry.model import Feature, Geometry
from .geometry.topology import SpatialRelationship, TopologyEngine, parse_relationship

logger = get_logger(__name__)

MAX_NESTING = 64


# ============================================================================
# AST
# ============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class FieldRef:
    """Property lookup; dotted names descend into nested mappings."""
    name: str


Operand = Union[Literal, FieldRef]


@dataclass(frozen=True)
class Comparison:
    op: str
    left: Operand
    right: Operand


@dataclass(frozen=True)
class LogicalOp:
    op: str  # "AND" | "OR"
    operands: Tuple['Node', ...]


@dataclass(frozen=True)
class NotOp:
    operand: 'Node'


@dataclass(frozen=True)
class InList:
    operand: Operand
    values: Tuple[Operand, ...]
    negated: bool = False


@dataclass(frozen=True)
class Like:
    operand: Operand
    pattern: str
    negated: bool = False


@dataclass(frozen=True)
class IsNull:
    operand: Operand
    negated: bool = False


@dataclass(frozen=True)
class Between:
    operand: Operand
    low: Operand
    high: Operand
    negated: bool = False


Node = Union[Literal, FieldRef, Comparison, LogicalOp, NotOp, InList, Like, IsNull, Between]


# ============================================================================
# Tokenizer and parser
# ============================================================================

@dataclass
class Token:
    kind: str
    value: Any
    position: int


class WhereParser:
    """Recursive-descent parser for SQL-style WHERE expressions.

    Grammar::

        expr      := and_expr (OR and_expr)*
        and_expr  := not_expr (AND not_expr)*
        not_expr  := NOT not_expr | predicate
        predicate := '(' expr ')' | operand [tail]
        tail      := cmp_op operand
                   | [NOT] LIKE string
                   | [NOT] IN '(' operand (',' operand)* ')'
                   | IS [NOT] NULL
                   | [NOT] BETWEEN operand AND operand
    """

    KEYWORDS = {'AND', 'OR', 'NOT', 'LIKE', 'IN', 'IS', 'NULL', 'BETWEEN', 'TRUE', 'FALSE'}

    COMPARISON_OPERATORS = {'=', '!=', '<>', '<', '<=', '>', '>='}

    def __init__(self):
        """Initialize the parser with its token patterns."""
        self._compile_token_patterns()

    def _compile_token_patterns(self) -> None:
        """Compile the ordered token patterns."""
        self.token_pattern = re.compile(r"""
            (?P<ws>\s+)
          | (?P<number>-?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?)
          | (?P<string>'(?:[^']|'')*')
          | (?P<quoted>"(?:[^"]|"")+")
          | (?P<op><=|>=|<>|!=|=|<|>)
          | (?P<lparen>\()
          | (?P<rparen>\))
          | (?P<comma>,)
          | (?P<word>[A-Za-z_][A-Za-z0-9_.]*)
        """, re.VERBOSE)

    def tokenize(self, text: str) -> List[Token]:
        """Split an expression into tokens.

        Args:
            text: WHERE-clause text

        Returns:
            Token list terminated by an ``eof`` token

        Raises:
            QueryParseError: On any character sequence outside the grammar
        """
        tokens: List[Token] = []
        position = 0
        while position < len(text):
            match = self.token_pattern.match(text, position)
            if match is None:
                raise QueryParseError(f"Unexpected character {text[position]!r} at {position}",
                                      expression=text, position=position)
            kind = match.lastgroup
            raw = match.group()
            if kind == 'number':
                tokens.append(Token('literal', float(raw) if any(c in raw for c in '.eE') else int(raw),
                                    position))
            elif kind == 'string':
                tokens.append(Token('literal', raw[1:-1].replace("''", "'"), position))
            elif kind == 'quoted':
                tokens.append(Token('field', raw[1:-1].replace('""', '"'), position))
            elif kind == 'word':
                upper = raw.upper()
                if upper in ('TRUE', 'FALSE'):
                    tokens.append(Token('literal', upper == 'TRUE', position))
                elif upper in self.KEYWORDS:
                    tokens.append(Token(upper, upper, position))
                else:
                    tokens.append(Token('field', raw, position))
            elif kind != 'ws':
                tokens.append(Token(kind, raw, position))
            position = match.end()
        tokens.append(Token('eof', None, len(text)))
        return tokens

    def parse(self, text: str) -> Node:
        """Parse a WHERE clause into an expression tree.

        Args:
            text: WHERE-clause text

        Returns:
            Root AST node

        Raises:
            QueryParseError: If the expression is empty or malformed
        """
        if not text or not isinstance(text, str) or not text.strip():
            raise QueryParseError("WHERE clause must be a non-empty string", expression=text or "")
        state = _ParseState(self.tokenize(text), text)
        node = self._expr(state, 0)
        if state.peek().kind != 'eof':
            state.fail(f"Unexpected {state.peek().value!r}")
        logger.debug("Parsed WHERE clause", expression=text[:100])
        return node

    # -- grammar rules ------------------------------------------------------

    def _expr(self, state: '_ParseState', depth: int) -> Node:
        if depth > MAX_NESTING:
            state.fail("Expression nested too deeply")
        operands = [self._and_expr(state, depth)]
        while state.accept('OR'):
            operands.append(self._and_expr(state, depth))
        return operands[0] if len(operands) == 1 else LogicalOp('OR', tuple(operands))

    def _and_expr(self, state: '_ParseState', depth: int) -> Node:
        operands = [self._not_expr(state, depth)]
        while state.accept('AND'):
            operands.append(self._not_expr(state, depth))
        return operands[0] if len(operands) == 1 else LogicalOp('AND', tuple(operands))

    def _not_expr(self, state: '_ParseState', depth: int) -> Node:
        negations = 0
        while state.accept('NOT'):
            negations += 1
        node = self._predicate(state, depth)
        for _ in range(negations):
            node = NotOp(node)
        return node

    def _predicate(self, state: '_ParseState', depth: int) -> Node:
        if state.accept('lparen'):
            node = self._expr(state, depth + 1)
            state.expect('rparen', "Missing closing parenthesis")
            return node

        left = self._operand(state)
        token = state.peek()
        if token.kind == 'op':
            state.advance()
            op = '!=' if token.value == '<>' else token.value
            return Comparison(op, left, self._operand(state))

        negated = state.accept('NOT')
        if state.accept('LIKE'):
            pattern = state.expect('literal', "LIKE requires a string pattern")
            if not isinstance(pattern.value, str):
                state.fail("LIKE requires a string pattern")
            return Like(left, pattern.value, negated)
        if state.accept('IN'):
            state.expect('lparen', "IN requires a parenthesized list")
            values = [self._operand(state)]
            while state.accept('comma'):
                values.append(self._operand(state))
            state.expect('rparen', "Missing closing parenthesis after IN list")
            return InList(left, tuple(values), negated)
        if state.accept('BETWEEN'):
            low = self._operand(state)
            state.expect('AND', "BETWEEN requires AND")
            high = self._operand(state)
            return Between(left, low, high, negated)
        if negated:
            state.fail("NOT must be followed by LIKE, IN or BETWEEN here")

        if state.accept('IS'):
            is_not = state.accept('NOT')
            state.expect('NULL', "IS must be followed by [NOT] NULL")
            return IsNull(left, is_not)
        return left

    def _operand(self, state: '_ParseState') -> Operand:
        token = state.peek()
        if token.kind == 'literal':
            state.advance()
            return Literal(token.value)
        if token.kind == 'NULL':
            state.advance()
            return Literal(None)
        if token.kind == 'field':
            state.advance()
            return FieldRef(token.value)
        state.fail("Expected a field name or literal"
                   if token.kind != 'eof' else "Unexpected end of expression")


class _ParseState:
    """Cursor over a token list."""

    def __init__(self, tokens: List[Token], text: str):
        self.tokens = tokens
        self.text = text
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != 'eof':
            self.index += 1
        return token

    def accept(self, kind: str) -> bool:
        if self.peek().kind == kind:
            self.advance()
            return True
        return False

    def expect(self, kind: str, message: str) -> Token:
        if self.peek().kind != kind:
            self.fail(message)
        return self.advance()

    def fail(self, message: str):
        position = self.peek().position
        raise QueryParseError(f"{message} at position {position}",
                              expression=self.text, position=position)


# ============================================================================
# Evaluation
# ============================================================================

_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    '=': operator.eq,
    '!=': operator.ne,
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
}

_MISSING = object()


def _lookup(properties: Mapping[str, Any], name: str) -> Any:
    if name in properties:
        return properties[name]
    current: Any = properties
    for part in name.split('.'):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _value(node: Operand, properties: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    return _lookup(properties, node.name)


def _compare(op: str, left: Any, right: Any) -> bool:
    """SQL-style comparison: NULL or mismatched types compare false."""
    if left is None or right is None:
        return False
    try:
        return bool(_COMPARATORS[op](left, right))
    except TypeError:
        return False


def like_to_regex(pattern: str) -> 're.Pattern':
    """Translate a LIKE pattern (``%`` any run, ``_`` one character) to a regex."""
    parts = []
    for char in pattern:
        if char == '%':
            parts.append('.*')
        elif char == '_':
            parts.append('.')
        else:
            parts.append(re.escape(char))
    return re.compile(''.join(parts), re.DOTALL)


def _truth(node: Node, properties: Mapping[str, Any]) -> Optional[bool]:
    """SQL three-valued truth of ``node``; None stands for UNKNOWN."""
    if isinstance(node, LogicalOp):
        results = [_truth(child, properties) for child in node.operands]
        decisive = node.op == 'OR'
        if decisive in results:
            return decisive
        return None if None in results else not decisive
    if isinstance(node, NotOp):
        result = _truth(node.operand, properties)
        return None if result is None else not result
    if isinstance(node, Comparison):
        left, right = _value(node.left, properties), _value(node.right, properties)
        if left is None or right is None:
            return None
        return _compare(node.op, left, right)
    if isinstance(node, InList):
        value = _value(node.operand, properties)
        if value is None:
            return None
        candidates = [_value(v, properties) for v in node.values]
        if any(_compare('=', value, c) for c in candidates):
            return not node.negated
        if None in candidates:
            return None
        return node.negated
    if isinstance(node, Like):
        value = _value(node.operand, properties)
        if value is None:
            return None
        if not isinstance(value, str):
            return False
        return (like_to_regex(node.pattern).fullmatch(value) is not None) != node.negated
    if isinstance(node, IsNull):
        return (_value(node.operand, properties) is None) != node.negated
    if isinstance(node, Between):
        value = _value(node.operand, properties)
        low, high = _value(node.low, properties), _value(node.high, properties)
        if value is None or low is None or high is None:
            return None
        inside = _compare('>=', value, low) and _compare('<=', value, high)
        return inside != node.negated
    if isinstance(node, (Literal, FieldRef)):
        value = _value(node, properties)
        return None if value is None else bool(value)
    raise TypeError(f"Unknown expression node: {type(node).__name__}")


def evaluate(node: Node, properties: Mapping[str, Any]) -> bool:
    """Evaluate an expression tree against a property mapping.

    Uses SQL three-valued logic: missing properties read as NULL, any
    comparison with NULL is UNKNOWN, and NOT of UNKNOWN stays UNKNOWN.
    Only a TRUE result matches, so ``NOT (x = 1)`` does not match a
    feature whose ``x`` is NULL.
    """
    return _truth(node, properties or {}) is True


# Global parser instance for efficient reuse
_where_parser = None


def get_where_parser() -> WhereParser:
    """Get the global WhereParser instance.

    Returns:
        WhereParser instance
    """
    global _where_parser
    if _where_parser is None:
        _where_parser = WhereParser()
    return _where_parser


def parse_where(text: str) -> Node:
    """Parse a WHERE clause with the global parser."""
    return get_where_parser().parse(text)


def matches_where(text: str, properties: Mapping[str, Any]) -> bool:
    return evaluate(parse_where(text), properties)


# ============================================================================
# Spatial query
# ============================================================================

@dataclass
class SpatialQuery:
    """
    Query against a feature collection.

    ``spatial_rel`` describes the feature's relationship to ``geometry``
    (``within`` selects features lying inside the query geometry) and
    defaults to ``intersects`` when a geometry is given. ``order_by`` is a
    comma-separated list of ``field [ASC|DESC]`` terms.
    """
    geometry: Optional[Geometry] = None
    spatial_rel: Optional[Union[str, SpatialRelationship]] = None
    where: Optional[str] = None
    fields: Optional[List[str]] = None
    return_geometry: bool = True
    order_by: Optional[str] = None
    limit: Optional[int] = None
    where_ast: Optional[Node] = field(default=None, init=False, repr=False)
    order_terms: List[Tuple[str, bool]] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        if self.spatial_rel is not None:
            try:
                self.spatial_rel = parse_relationship(self.spatial_rel)
            except TopologyError as e:
                raise QueryParseError(f"Unknown spatial relationship: {self.spatial_rel}",
                                      cause=e)
        elif self.geometry is not None:
            self.spatial_rel = SpatialRelationship.INTERSECTS
        if self.limit is not None and self.limit < 0:
            raise QueryParseError(f"limit must be non-negative, got {self.limit}")
        if self.where:
            self.where_ast = parse_where(self.where)
        if self.order_by:
            self.order_terms = parse_order_by(self.order_by)


def parse_order_by(text: str) -> List[Tuple[str, bool]]:
    """``"a DESC, b"`` -> ``[('a', True), ('b', False)]`` (name, descending)."""
    terms = []
    for chunk in text.split(','):
        parts = chunk.split()
        if not parts or len(parts) > 2:
            raise QueryParseError(f"Malformed ORDER BY term: {chunk.strip()!r}", expression=text)
        direction = parts[1].upper() if len(parts) == 2 else 'ASC'
        if direction not in ('ASC', 'DESC'):
            raise QueryParseError(f"Unknown sort direction: {parts[1]}", expression=text)
        terms.append((parts[0], direction == 'DESC'))
    return terms


def _sort(features: List[Feature], terms: Sequence[Tuple[str, bool]]) -> List[Feature]:
    """Stable multi-key sort; missing values sort last in either direction."""
    result = list(features)
    for name, descending in reversed(terms):
        present = [f for f in result if _lookup(f.properties, name) is not None]
        missing = [f for f in result if _lookup(f.properties, name) is None]
        try:
            present.sort(key=lambda f: _lookup(f.properties, name), reverse=descending)
        except TypeError:
            present.sort(key=lambda f: str(_lookup(f.properties, name)), reverse=descending)
        result = present + missing
    return result


def execute_query(features: Iterable[Feature], query: SpatialQuery,
                  topology: Optional[TopologyEngine] = None) -> List[Feature]:
    """
    Run a query over in-memory features.

    Applies, in order: the spatial filter, the WHERE clause, ordering, the
    limit, then field and geometry projection. Projected results are new
    ``Feature`` objects; unprojected results are the input features.
    """
    topology = topology or TopologyEngine()
    selected = []
    for feature in features:
        if query.geometry is not None:
            if feature.geometry is None:
                continue
            if not topology.relate(feature.geometry, query.geometry, query.spatial_rel):
                continue
        if query.where_ast is not None and not evaluate(query.where_ast, feature.properties):
            continue
        selected.append(feature)

    if query.order_terms:
        selected = _sort(selected, query.order_terms)
    if query.limit is not None:
        selected = selected[:query.limit]

    if query.fields is None and query.return_geometry:
        return selected
    projected = []
    for feature in selected:
        properties = feature.properties
        if query.fields is not None:
            properties = {name: _lookup(feature.properties, name) for name in query.fields}
        projected.append(Feature(
            geometry=feature.geometry if query.return_geometry else None,
            properties=dict(properties),
            id=feature.id
        ))
    logger.debug("Query executed", matched=len(projected))
    return projected
