from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, List, Optional, Tuple, Union

from .errors import QueryParseError
from .utils import clean_block

AGGREGATE_FUNCTIONS = {"COUNT", "COUNT_DISTINCT", "SUM", "AVG", "MIN", "MAX"}
TRANSPARENT_FUNCTIONS = {"TOLABEL", "CONVERTCURRENCY", "FORMAT"}
_CLAUSE_KEYWORDS = {"FROM", "WHERE", "WITH", "GROUP", "HAVING", "ORDER", "LIMIT", "OFFSET", "FOR", "USING"}
_SET_OPERATORS = {"IN", "NOT IN", "INCLUDES", "EXCLUDES"}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^'\\]|\\.)*')
  | (?P<datetime>\d{4}-\d{2}-\d{2}(?:T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)?)
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<bind>:[A-Za-z_][A-Za-z0-9_]*)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*(?::\d+)?)
  | (?P<op>!=|<>|<=|>=|=|<|>)
  | (?P<punct>[(),*-])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int

    @property
    def upper(self) -> str:
        return self.text.upper()


def tokenize_soql(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise QueryParseError(f"unexpected character {text[pos]!r}", pos)
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind, match.group(0), pos))
        pos = match.end()
    return tokens


# --- expression nodes ----------------------------------------------------


@dataclass(frozen=True)
class FieldExpr:
    name: str
    alias: Optional[str] = None

    @property
    def is_path(self) -> bool:
        return "." in self.name

    def render(self) -> str:
        return f"{self.name} {self.alias}" if self.alias else self.name


@dataclass(frozen=True)
class FunctionExpr:
    function: str
    args: Tuple[Union[str, "FunctionExpr"], ...] = ()
    alias: Optional[str] = None

    @property
    def is_aggregate(self) -> bool:
        return self.function.upper() in AGGREGATE_FUNCTIONS

    @property
    def field(self) -> str:
        """Innermost field argument, or '' for COUNT()."""
        for arg in self.args:
            if isinstance(arg, FunctionExpr):
                return arg.field
            return arg
        return ""

    def signature(self) -> str:
        name = self.function.lower()
        if name in {f.lower() for f in TRANSPARENT_FUNCTIONS} and self.args:
            first = self.args[0]
            return first.signature() if isinstance(first, FunctionExpr) else first.lower()
        inner = ", ".join(a.signature() if isinstance(a, FunctionExpr) else a.lower() for a in self.args)
        return f"{name}({inner})"

    def render(self) -> str:
        inner = ", ".join(a.render() if isinstance(a, FunctionExpr) else a for a in self.args)
        text = f"{self.function}({inner})"
        return f"{text} {self.alias}" if self.alias else text


@dataclass(frozen=True)
class TypeofBranch:
    object_type: str
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class TypeofExpr:
    field: str
    branches: Tuple[TypeofBranch, ...]
    else_fields: Tuple[str, ...] = ()

    def render(self) -> str:
        parts = [f"TYPEOF {self.field}"]
        for branch in self.branches:
            parts.append(f"WHEN {branch.object_type} THEN {', '.join(branch.fields)}")
        if self.else_fields:
            parts.append(f"ELSE {', '.join(self.else_fields)}")
        parts.append("END")
        return " ".join(parts)


@dataclass(frozen=True)
class SubqueryExpr:
    query: "ParsedQueryAst"

    def render(self) -> str:
        return f"({self.query.render()})"


SelectItem = Union[FieldExpr, FunctionExpr, TypeofExpr, SubqueryExpr]


@dataclass(frozen=True)
class Literal:
    raw: str
    kind: str  # string | number | boolean | null | date | date_literal | bind

    @property
    def value(self) -> Any:
        if self.kind == "string":
            return re.sub(r"\\(.)", r"\1", self.raw[1:-1])
        if self.kind == "number":
            return float(self.raw) if "." in self.raw else int(self.raw)
        if self.kind == "boolean":
            return self.raw.upper() == "TRUE"
        if self.kind == "null":
            return None
        return self.raw


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: Union[Literal, Tuple[Literal, ...], "ParsedQueryAst"]
    function: Optional[str] = None

    @property
    def is_semi_join(self) -> bool:
        return isinstance(self.value, ParsedQueryAst)

    def render(self) -> str:
        lhs = f"{self.function}({self.field})" if self.function else self.field
        if isinstance(self.value, ParsedQueryAst):
            rhs = f"({self.value.render()})"
        elif isinstance(self.value, tuple):
            rhs = "(" + ", ".join(v.raw for v in self.value) + ")"
        else:
            rhs = self.value.raw
        return f"{lhs} {self.operator} {rhs}"


@dataclass(frozen=True)
class BoolExpr:
    operator: str  # AND | OR
    operands: Tuple["Condition", ...]

    def render(self) -> str:
        parts = [f"({op.render()})" if isinstance(op, BoolExpr) else op.render() for op in self.operands]
        return f" {self.operator} ".join(parts)


@dataclass(frozen=True)
class NotExpr:
    operand: "Condition"

    def render(self) -> str:
        inner = self.operand.render()
        return f"NOT ({inner})" if isinstance(self.operand, BoolExpr) else f"NOT {inner}"


Condition = Union[Comparison, BoolExpr, NotExpr]


@dataclass(frozen=True)
class OrderItem:
    expr: Union[FieldExpr, FunctionExpr]
    direction: Optional[str] = None
    nulls: Optional[str] = None

    def render(self) -> str:
        text = self.expr.render()
        if self.direction:
            text += f" {self.direction}"
        if self.nulls:
            text += f" NULLS {self.nulls}"
        return text


@dataclass(frozen=True)
class ParentLookup:
    path: str
    field: str


@dataclass(frozen=True)
class SubqueryInfo:
    relationship_name: str
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class ParsedQueryAst:
    main_object: str
    select: Tuple[SelectItem, ...] = ()
    object_alias: Optional[str] = None
    using_scope: Optional[str] = None
    where: Optional[Condition] = None
    with_clause: Optional[str] = None
    group_by: Tuple[Union[FieldExpr, FunctionExpr], ...] = ()
    group_by_mode: Optional[str] = None  # ROLLUP | CUBE
    having: Optional[Condition] = None
    order_by: Tuple[OrderItem, ...] = ()
    limit: Optional[int] = None
    offset: Optional[int] = None
    for_clause: Optional[str] = None

    @classmethod
    def parse(cls, query: str) -> Tuple[Optional["ParsedQueryAst"], List[str]]:
        text = query.strip()
        if not text:
            return None, ["empty query"]
        try:
            return parse_soql(text), []
        except QueryParseError as exc:
            return None, [str(exc)]

    # --- derived views ---

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(item.name for item in self.select if isinstance(item, FieldExpr))

    @property
    def aggregates(self) -> Tuple[FunctionExpr, ...]:
        return tuple(item for item in self.select if isinstance(item, FunctionExpr) and item.is_aggregate)

    @property
    def parent_lookups(self) -> Tuple[ParentLookup, ...]:
        lookups = []
        for name in self.fields:
            if "." in name:
                path, leaf = name.rsplit(".", 1)
                lookups.append(ParentLookup(path, leaf))
        return tuple(lookups)

    @property
    def subqueries(self) -> Tuple[SubqueryInfo, ...]:
        return tuple(
            SubqueryInfo(item.query.main_object, item.query.fields)
            for item in self.select
            if isinstance(item, SubqueryExpr)
        )

    @property
    def typeof_clauses(self) -> Tuple[TypeofExpr, ...]:
        return tuple(item for item in self.select if isinstance(item, TypeofExpr))

    def render(self) -> str:
        parts = ["SELECT " + ", ".join(item.render() for item in self.select)]
        parts.append(f"FROM {self.main_object}" + (f" {self.object_alias}" if self.object_alias else ""))
        if self.using_scope:
            parts.append(f"USING SCOPE {self.using_scope}")
        if self.where is not None:
            parts.append(f"WHERE {self.where.render()}")
        if self.with_clause:
            parts.append(f"WITH {self.with_clause}")
        if self.group_by:
            items = ", ".join(g.render() for g in self.group_by)
            parts.append(f"GROUP BY {self.group_by_mode}({items})" if self.group_by_mode else f"GROUP BY {items}")
        if self.having is not None:
            parts.append(f"HAVING {self.having.render()}")
        if self.order_by:
            parts.append("ORDER BY " + ", ".join(o.render() for o in self.order_by))
        if self.limit is not None:
            parts.append(f"LIMIT {self.limit}")
        if self.offset is not None:
            parts.append(f"OFFSET {self.offset}")
        if self.for_clause:
            parts.append(f"FOR {self.for_clause}")
        return " ".join(parts)


# --- parser --------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize_soql(text)
        self.index = 0

    def peek(self, offset: int = 0) -> Optional[Token]:
        idx = self.index + offset
        return self.tokens[idx] if idx < len(self.tokens) else None

    def advance(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise QueryParseError("unexpected end of query", len(self.text))
        self.index += 1
        return tok

    def at_keyword(self, *words: str) -> bool:
        for offset, word in enumerate(words):
            tok = self.peek(offset)
            if tok is None or tok.kind != "ident" or tok.upper != word:
                return False
        return True

    def accept_keyword(self, *words: str) -> bool:
        if self.at_keyword(*words):
            self.index += len(words)
            return True
        return False

    def expect_keyword(self, *words: str) -> None:
        if not self.accept_keyword(*words):
            tok = self.peek()
            raise QueryParseError(f"expected {' '.join(words)}", tok.pos if tok else len(self.text))

    def at_punct(self, char: str) -> bool:
        tok = self.peek()
        return tok is not None and tok.kind == "punct" and tok.text == char

    def expect_punct(self, char: str) -> None:
        if not self.at_punct(char):
            tok = self.peek()
            raise QueryParseError(f"expected '{char}'", tok.pos if tok else len(self.text))
        self.index += 1

    def expect_ident(self, what: str) -> Token:
        tok = self.peek()
        if tok is None or tok.kind != "ident":
            raise QueryParseError(f"expected {what}", tok.pos if tok else len(self.text))
        self.index += 1
        return tok

    def _alias_follows(self) -> bool:
        tok = self.peek()
        if tok is None or tok.kind != "ident" or "." in tok.text:
            return False
        return tok.upper not in _CLAUSE_KEYWORDS and tok.upper not in {"AND", "OR", "ASC", "DESC", "NULLS"}

    def _read_alias(self) -> Optional[str]:
        self.accept_keyword("AS")
        if self._alias_follows():
            return self.advance().text
        return None

    # query

    def parse_query(self, nested: bool = False) -> ParsedQueryAst:
        self.expect_keyword("SELECT")
        select: List[SelectItem] = [self.parse_select_item()]
        while self.at_punct(","):
            self.advance()
            select.append(self.parse_select_item())
        self.expect_keyword("FROM")
        main_object = self.expect_ident("object name").text
        object_alias = None
        if self._alias_follows():
            object_alias = self.advance().text

        using_scope = None
        if self.accept_keyword("USING", "SCOPE"):
            using_scope = self.expect_ident("scope").text
        where = self.parse_condition() if self.accept_keyword("WHERE") else None
        with_clause = self._collect_clause_text() if self.accept_keyword("WITH") else None
        group_by: List[Union[FieldExpr, FunctionExpr]] = []
        group_mode = None
        if self.accept_keyword("GROUP", "BY"):
            tok = self.peek()
            if tok is not None and tok.kind == "ident" and tok.upper in {"ROLLUP", "CUBE"}:
                group_mode = self.advance().upper
                self.expect_punct("(")
                group_by = self._expr_list()
                self.expect_punct(")")
            else:
                group_by = self._expr_list()
        having = self.parse_condition() if self.accept_keyword("HAVING") else None
        order_by: List[OrderItem] = []
        if self.accept_keyword("ORDER", "BY"):
            order_by.append(self.parse_order_item())
            while self.at_punct(","):
                self.advance()
                order_by.append(self.parse_order_item())
        limit = self._int_clause("LIMIT")
        offset = self._int_clause("OFFSET")
        for_clause = self._collect_clause_text() if self.accept_keyword("FOR") else None

        tok = self.peek()
        if tok is not None and not (nested and tok.kind == "punct" and tok.text == ")"):
            raise QueryParseError(f"unexpected token {tok.text!r}", tok.pos)
        return ParsedQueryAst(
            main_object=main_object,
            select=tuple(select),
            object_alias=object_alias,
            using_scope=using_scope,
            where=where,
            with_clause=with_clause,
            group_by=tuple(group_by),
            group_by_mode=group_mode,
            having=having,
            order_by=tuple(order_by),
            limit=limit,
            offset=offset,
            for_clause=for_clause,
        )

    def _int_clause(self, keyword: str) -> Optional[int]:
        if not self.accept_keyword(keyword):
            return None
        tok = self.advance()
        if tok.kind != "number" or "." in tok.text:
            raise QueryParseError(f"{keyword} expects an integer", tok.pos)
        return int(tok.text)

    def _collect_clause_text(self) -> str:
        words: List[str] = []
        while True:
            tok = self.peek()
            if tok is None or (tok.kind == "punct" and tok.text == ")"):
                break
            if tok.kind == "ident" and tok.upper in {"GROUP", "HAVING", "ORDER", "LIMIT", "OFFSET", "FOR"}:
                break
            words.append(self.advance().text)
        if not words:
            raise QueryParseError("empty clause", self.peek().pos if self.peek() else len(self.text))
        return " ".join(words)

    def parse_select_item(self) -> SelectItem:
        if self.at_punct("("):
            self.advance()
            sub = self.parse_query(nested=True)
            self.expect_punct(")")
            return SubqueryExpr(sub)
        if self.at_keyword("TYPEOF"):
            return self.parse_typeof()
        expr = self.parse_value_expr()
        alias = self._read_alias()
        return replace(expr, alias=alias) if alias else expr

    def parse_value_expr(self) -> Union[FieldExpr, FunctionExpr]:
        tok = self.expect_ident("field")
        if self.at_punct("("):
            self.advance()
            args: List[Union[str, FunctionExpr]] = []
            while not self.at_punct(")"):
                nxt = self.peek()
                if nxt is not None and nxt.kind == "ident" and self.peek(1) is not None and self.peek(1).text == "(":
                    args.append(self.parse_value_expr())  # type: ignore[arg-type]
                else:
                    args.append(self.advance().text)
                if self.at_punct(","):
                    self.advance()
            self.expect_punct(")")
            return FunctionExpr(tok.text, tuple(args))
        return FieldExpr(tok.text)

    def _expr_list(self) -> List[Union[FieldExpr, FunctionExpr]]:
        items = [self.parse_value_expr()]
        while self.at_punct(","):
            self.advance()
            items.append(self.parse_value_expr())
        return items

    def parse_typeof(self) -> TypeofExpr:
        self.expect_keyword("TYPEOF")
        fld = self.expect_ident("polymorphic field").text
        branches: List[TypeofBranch] = []
        else_fields: Tuple[str, ...] = ()
        while self.accept_keyword("WHEN"):
            obj = self.expect_ident("object type").text
            self.expect_keyword("THEN")
            branches.append(TypeofBranch(obj, self._field_names()))
        if self.accept_keyword("ELSE"):
            else_fields = self._field_names()
        self.expect_keyword("END")
        if not branches:
            raise QueryParseError("TYPEOF requires at least one WHEN branch", self.peek().pos if self.peek() else len(self.text))
        return TypeofExpr(fld, tuple(branches), else_fields)

    def _field_names(self) -> Tuple[str, ...]:
        names = [self.expect_ident("field").text]
        while self.at_punct(","):
            self.advance()
            names.append(self.expect_ident("field").text)
        return tuple(names)

    def parse_order_item(self) -> OrderItem:
        expr = self.parse_value_expr()
        direction = None
        nulls = None
        if self.at_keyword("ASC") or self.at_keyword("DESC"):
            direction = self.advance().upper
        if self.accept_keyword("NULLS"):
            nulls = self.expect_ident("FIRST or LAST").upper
        return OrderItem(expr, direction, nulls)

    # conditions

    def parse_condition(self) -> Condition:
        operands = [self._and_expr()]
        while self.accept_keyword("OR"):
            operands.append(self._and_expr())
        return operands[0] if len(operands) == 1 else BoolExpr("OR", tuple(operands))

    def _and_expr(self) -> Condition:
        operands = [self._not_expr()]
        while self.accept_keyword("AND"):
            operands.append(self._not_expr())
        return operands[0] if len(operands) == 1 else BoolExpr("AND", tuple(operands))

    def _not_expr(self) -> Condition:
        if self.accept_keyword("NOT"):
            return NotExpr(self._not_expr())
        if self.at_punct("("):
            self.advance()
            inner = self.parse_condition()
            self.expect_punct(")")
            return inner
        return self.parse_comparison()

    def parse_comparison(self) -> Comparison:
        lhs = self.parse_value_expr()
        if isinstance(lhs, FunctionExpr):
            field_name, function = lhs.field, lhs.function
        else:
            field_name, function = lhs.name, None

        tok = self.advance()
        if tok.kind == "op":
            operator = tok.text
        elif tok.kind == "ident" and tok.upper == "NOT" and self.at_keyword("IN"):
            self.advance()
            operator = "NOT IN"
        elif tok.kind == "ident" and tok.upper in {"LIKE", "IN", "INCLUDES", "EXCLUDES"}:
            operator = tok.upper
        else:
            raise QueryParseError(f"expected comparison operator, got {tok.text!r}", tok.pos)

        if operator in _SET_OPERATORS:
            self.expect_punct("(")
            if self.at_keyword("SELECT"):
                sub = self.parse_query(nested=True)
                self.expect_punct(")")
                return Comparison(field_name, operator, sub, function)
            values = [self.parse_literal()]
            while self.at_punct(","):
                self.advance()
                values.append(self.parse_literal())
            self.expect_punct(")")
            return Comparison(field_name, operator, tuple(values), function)
        return Comparison(field_name, operator, self.parse_literal(), function)

    def parse_literal(self) -> Literal:
        tok = self.advance()
        if tok.kind == "punct" and tok.text == "-":
            nxt = self.advance()
            if nxt.kind != "number":
                raise QueryParseError("expected number after '-'", nxt.pos)
            return Literal("-" + nxt.text, "number")
        if tok.kind == "string":
            return Literal(tok.text, "string")
        if tok.kind == "number":
            return Literal(tok.text, "number")
        if tok.kind == "datetime":
            return Literal(tok.text, "date")
        if tok.kind == "bind":
            return Literal(tok.text, "bind")
        if tok.kind == "ident":
            if tok.upper in {"TRUE", "FALSE"}:
                return Literal(tok.text, "boolean")
            if tok.upper == "NULL":
                return Literal(tok.text, "null")
            return Literal(tok.text, "date_literal")
        raise QueryParseError(f"expected a value, got {tok.text!r}", tok.pos)


def parse_soql(text: str) -> ParsedQueryAst:
    """Parse one SOQL statement; raises QueryParseError on malformed input."""
    return _Parser(text.strip().rstrip(";")).parse_query()


def extract_soql_block(text: str) -> str:
    """Pull the SELECT statement out of free-form model output."""
    body = clean_block(text)
    fenced = re.search(r"```(?:soql|sql)?\s*\n(.*?)```", text, flags=re.DOTALL | re.IGNORECASE)
    if fenced:
        body = fenced.group(1).strip()
    match = re.search(r"\bSELECT\b.*", body, flags=re.IGNORECASE | re.DOTALL)
    if not match:
        return body.strip()
    return re.sub(r"\s+", " ", match.group(0)).strip().rstrip(";")


def iter_comparisons(node: Optional[Condition]) -> Iterator[Comparison]:
    if node is None:
        return
    if isinstance(node, Comparison):
        yield node
    elif isinstance(node, NotExpr):
        yield from iter_comparisons(node.operand)
    else:
        for operand in node.operands:
            yield from iter_comparisons(operand)


def where_comparisons(node: Optional[Condition]) -> List[Comparison]:
    return list(iter_comparisons(node))


def semi_joins(node: Optional[Condition]) -> List[Comparison]:
    return [c for c in iter_comparisons(node) if c.is_semi_join]


def has_operator(node: Optional[Condition], operators: set) -> bool:
    if node is None:
        return False
    if isinstance(node, BoolExpr):
        if node.operator in operators:
            return True
        return any(has_operator(op, operators) for op in node.operands)
    if isinstance(node, NotExpr):
        return has_operator(node.operand, operators)
    return node.operator in operators


def map_comparisons(node: Optional[Condition], fn) -> Optional[Condition]:
    """Rebuild a condition tree with ``fn`` applied to every comparison."""
    if node is None:
        return None
    if isinstance(node, Comparison):
        return fn(node)
    if isinstance(node, NotExpr):
        return NotExpr(map_comparisons(node.operand, fn))
    return BoolExpr(node.operator, tuple(map_comparisons(op, fn) for op in node.operands))


__all__ = [
    "Token",
    "tokenize_soql",
    "FieldExpr",
    "FunctionExpr",
    "TypeofBranch",
    "TypeofExpr",
    "SubqueryExpr",
    "Literal",
    "Comparison",
    "BoolExpr",
    "NotExpr",
    "OrderItem",
    "ParentLookup",
    "SubqueryInfo",
    "ParsedQueryAst",
    "parse_soql",
    "extract_soql_block",
    "where_comparisons",
    "semi_joins",
    "has_operator",
    "map_comparisons",
    "AGGREGATE_FUNCTIONS",
]
