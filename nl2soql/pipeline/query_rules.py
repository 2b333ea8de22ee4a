"""
Structural SOQL rules that need no metadata lookups.

Text-level syntax guards run before parsing; the remaining checks work on a
ParsedQueryAst and return ValidationMessage lists the validator merges.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import List, Optional, Tuple

from .models import ValidationMessage
from .soql_ast import (
    FieldExpr,
    FunctionExpr,
    ParsedQueryAst,
    SubqueryExpr,
    TypeofExpr,
    has_operator,
    where_comparisons,
)

DEFAULT_LIMIT = 1000

TOOLING_API_OBJECTS = frozenset(
    {
        "EntityDefinition",
        "FieldDefinition",
        "EntityParticle",
        "Publisher",
        "RelationshipInfo",
        "SearchLayout",
        "StandardAction",
        "UserEntityAccess",
        "UserFieldAccess",
    }
)

ID_RELATIONSHIP_NAMES = {
    "ownerid": "Owner",
    "contactid": "Contact",
    "accountid": "Account",
    "createdbyid": "CreatedBy",
    "lastmodifiedbyid": "LastModifiedBy",
    "userid": "User",
    "parentid": "Parent",
    "whatid": "What",
    "whoid": "Who",
}

_SYNTAX_RULES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\bIS\s+NOT\s+EMPTY\b", re.I), "IS NOT EMPTY is not valid SOQL. Use != null instead."),
    (re.compile(r"\bIS\s+EMPTY\b", re.I), "IS EMPTY is not valid SOQL. Use = null instead."),
    (re.compile(r"\bEXISTS\s*\(", re.I), "EXISTS is not supported in SOQL. Use a semi-join: Id IN (SELECT ...)."),
    (
        re.compile(r"\b(?:AND|OR)\s+\(\s*SELECT\b", re.I),
        "Subqueries in WHERE must be semi-joins of the form Field IN (SELECT ...).",
    ),
    (re.compile(r"\b(?:UNION|EXCEPT|INTERSECT)\b", re.I), "Set operators (UNION, EXCEPT, INTERSECT) are not supported in SOQL."),
    (re.compile(r"\bAS\s+[A-Za-z_]", re.I), "SOQL does not support AS for aliases. Write the alias directly after the expression."),
    (re.compile(r"(?<![A-Za-z0-9_']):[A-Za-z_]"), "Bind variables are not allowed. Inline literal values instead."),
]

_ID_LIKE_RE = re.compile(r"\b(\w+Id)\s+(?i:LIKE)\s+'([^']+)'")
_SUSPICIOUS_ID_RE = re.compile(r"'(00[1356][^']*)'")
_ID_PREFIX_RE = re.compile(r"^0[0-9a-zA-Z]{2}")


def is_tooling_api_object(name: str) -> bool:
    return name in TOOLING_API_OBJECTS


def _strip_literals(soql: str) -> str:
    return re.sub(r"'(?:[^'\\]|\\.)*'", "''", soql)


def check_syntax(soql: str) -> List[ValidationMessage]:
    """Reject constructs that are valid SQL but not SOQL."""
    text = _strip_literals(soql)
    messages = [ValidationMessage("error", msg) for rx, msg in _SYNTAX_RULES if rx.search(text)]
    if re.search(r"\bHAVING\b", text, re.I) and not re.search(r"\bGROUP\s+BY\b", text, re.I):
        messages.append(ValidationMessage("error", "HAVING requires a GROUP BY clause."))
    messages.extend(check_id_field_like_patterns(soql))
    return messages


def check_id_field_like_patterns(soql: str) -> List[ValidationMessage]:
    """``OwnerId LIKE 'John%'`` means a name filter on the related record."""
    messages: List[ValidationMessage] = []
    for match in _ID_LIKE_RE.finditer(soql):
        fld, value = match.group(1), match.group(2)
        if fld.lower() in {"recordid", "recordtypeid"} or _ID_PREFIX_RE.match(value):
            continue
        rel = ID_RELATIONSHIP_NAMES.get(fld.lower(), fld[:-2])
        corrected = f"{rel}.Name LIKE '{value}'"
        messages.append(
            ValidationMessage(
                "error",
                f'Cannot use LIKE on ID field "{fld}". Use "{corrected}" to filter by the related record name.',
                original=match.group(0),
                corrected=corrected,
            )
        )
    return messages


def check_suspicious_ids(soql: str) -> List[ValidationMessage]:
    return [
        ValidationMessage(
            "error",
            f"Found ID literal '{m.group(1)}'. Do NOT guess IDs; filter by Name or use a semi-join instead.",
        )
        for m in _SUSPICIOUS_ID_RE.finditer(soql)
    ]


def check_tooling_constraints(ast: ParsedQueryAst) -> List[ValidationMessage]:
    obj = ast.main_object
    if not is_tooling_api_object(obj):
        return []
    errors: List[str] = []
    if any(a.function.upper() == "COUNT" for a in ast.aggregates):
        errors.append(f"COUNT() is not supported when querying {obj}. Remove the aggregate function.")
    if ast.group_by:
        errors.append(f"GROUP BY is not supported when querying {obj}. Remove the GROUP BY clause.")
    if ast.limit is not None:
        errors.append(f"LIMIT is not supported when querying {obj}. Remove the LIMIT clause.")
    if ast.offset is not None:
        errors.append(f"OFFSET is not supported when querying {obj}. Remove the OFFSET clause.")
    if has_operator(ast.where, {"OR"}):
        errors.append(f"OR operators are not supported when querying {obj}. Use multiple queries or AND conditions.")
    if has_operator(ast.where, {"!=", "<>"}):
        errors.append(
            f"Not-equals operators (!= or <>) are not supported when querying {obj}. Use positive filters only."
        )
    return [ValidationMessage("error", e) for e in errors]


def check_governor_limits(ast: ParsedQueryAst) -> Tuple[List[ValidationMessage], Optional[int]]:
    """Leading-wildcard warnings plus a LIMIT correction for non-tooling objects."""
    messages: List[ValidationMessage] = []
    for cmp in where_comparisons(ast.where):
        if cmp.operator != "LIKE" or isinstance(cmp.value, (tuple, ParsedQueryAst)):
            continue
        value = cmp.value.value
        if isinstance(value, str) and value.startswith("%"):
            messages.append(
                ValidationMessage(
                    "warning",
                    f"Leading wildcard in \"{cmp.field} LIKE '{value}'\" may cause non-selective query errors "
                    "on large datasets. Consider using a suffix wildcard instead.",
                )
            )
    if is_tooling_api_object(ast.main_object) or ast.limit is not None:
        return messages, None
    messages.append(
        ValidationMessage(
            "correction",
            f'Query has no LIMIT clause. Adding "LIMIT {DEFAULT_LIMIT}" for safety.',
            corrected=f"LIMIT {DEFAULT_LIMIT}",
        )
    )
    return messages, DEFAULT_LIMIT


def apply_suggested_limit(ast: ParsedQueryAst, limit: int) -> ParsedQueryAst:
    if ast.limit is not None:
        return ast
    return replace(ast, limit=limit)


def _signature(item) -> str:
    if isinstance(item, FieldExpr):
        return item.name.lower()
    if isinstance(item, FunctionExpr):
        return item.signature()
    return ""


def check_aggregates(ast: ParsedQueryAst) -> List[ValidationMessage]:
    """With any aggregate selected, every plain selection must be grouped."""
    if not ast.aggregates:
        return []
    grouped = {_signature(g) for g in ast.group_by}
    messages: List[ValidationMessage] = []
    for item in ast.select:
        if isinstance(item, TypeofExpr):
            messages.append(ValidationMessage("error", "TYPEOF clauses cannot be used with aggregate functions."))
            continue
        if isinstance(item, SubqueryExpr) or (isinstance(item, FunctionExpr) and item.is_aggregate):
            continue
        signature = _signature(item)
        if signature not in grouped:
            messages.append(
                ValidationMessage(
                    "error",
                    f"Field '{signature}' is selected but not present in the GROUP BY clause. When using aggregate "
                    "functions, all non-aggregated fields must be included in the GROUP BY clause.",
                )
            )
    return messages


__all__ = [
    "DEFAULT_LIMIT",
    "TOOLING_API_OBJECTS",
    "is_tooling_api_object",
    "check_syntax",
    "check_id_field_like_patterns",
    "check_suspicious_ids",
    "check_tooling_constraints",
    "check_governor_limits",
    "apply_suggested_limit",
    "check_aggregates",
]
