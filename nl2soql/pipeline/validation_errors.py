"""
Canonical validator message texts.

The validator builds its messages through these helpers and the entity
resolver parses them back, so both sides stay in sync.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Pattern

OBJECT = "object"
RELATIONSHIP = "relationship"
FIELD = "field"


@dataclass(frozen=True)
class ErrorPattern:
    kind: str
    template: Callable[..., str]
    regex: Pattern[str]


VALIDATION_ERROR_PATTERNS: Dict[str, ErrorPattern] = {
    "OBJECT_NOT_FOUND": ErrorPattern(
        OBJECT,
        lambda name: f'Object "{name}" not found in the metadata graph',
        re.compile(r'Object "(?P<name>[^"]+)" not found in the metadata graph'),
    ),
    "OBJECT_NOT_FOUND_WITH_SUGGESTION": ErrorPattern(
        OBJECT,
        lambda name, suggestion: f'Object "{name}" not found, using "{suggestion}"',
        re.compile(r'Object "(?P<name>[^"]+)" not found, using "(?P<suggestion>[^"]+)"'),
    ),
    "RELATIONSHIP_NOT_FOUND": ErrorPattern(
        RELATIONSHIP,
        lambda name, parent: f'Relationship "{name}" not found on {parent}',
        re.compile(r'^Relationship "(?P<name>[^"]+)" not found on (?P<context>\w+)'),
    ),
    "CHILD_RELATIONSHIP_NOT_FOUND": ErrorPattern(
        RELATIONSHIP,
        lambda name, parent: f'Child relationship "{name}" not found on {parent}',
        re.compile(r'Child relationship "(?P<name>[^"]+)" not found on (?P<context>\w+)'),
    ),
    "CHILD_RELATIONSHIP_NOT_FOUND_WITH_SUGGESTION": ErrorPattern(
        RELATIONSHIP,
        lambda name, parent, suggestion: f'Child relationship "{name}" not found on {parent}. Did you mean "{suggestion}"?',
        re.compile(
            r'Child relationship "(?P<name>[^"]+)" not found on (?P<context>\w+)\. Did you mean "(?P<suggestion>[^"]+)"\?'
        ),
    ),
    "FIELD_NOT_FOUND": ErrorPattern(
        FIELD,
        lambda name, obj: f'Field "{name}" not found on {obj} - check spelling or use available fields',
        re.compile(r'Field "(?P<name>[^"]+)" not found on (?P<context>\w+) - check spelling'),
    ),
    "FIELD_NOT_FOUND_WITH_SUGGESTION": ErrorPattern(
        FIELD,
        lambda name, obj, suggestion: f'Field "{name}" not found on {obj}, using "{suggestion}"',
        re.compile(r'Field "(?P<name>[^"]+)" not found on (?P<context>\w+), using "(?P<suggestion>[^"]+)"'),
    ),
    "TYPEOF_UNKNOWN_OBJECT": ErrorPattern(
        OBJECT,
        lambda name: f'Unknown object type "{name}" in TYPEOF clause',
        re.compile(r'Unknown object type "(?P<name>[^"]+)" in TYPEOF clause'),
    ),
    "TYPEOF_FIELD_NOT_FOUND": ErrorPattern(
        FIELD,
        lambda name, subtype: f'Field "{name}" not found on subtype "{subtype}" in TYPEOF clause',
        re.compile(r'Field "(?P<name>[^"]+)" not found on subtype "(?P<context>[^"]+)" in TYPEOF clause'),
    ),
}

# Most specific first so the suggestion variants win over their bare forms.
_PARSE_ORDER: List[str] = [
    "OBJECT_NOT_FOUND_WITH_SUGGESTION",
    "OBJECT_NOT_FOUND",
    "CHILD_RELATIONSHIP_NOT_FOUND_WITH_SUGGESTION",
    "CHILD_RELATIONSHIP_NOT_FOUND",
    "RELATIONSHIP_NOT_FOUND",
    "TYPEOF_FIELD_NOT_FOUND",
    "FIELD_NOT_FOUND_WITH_SUGGESTION",
    "FIELD_NOT_FOUND",
    "TYPEOF_UNKNOWN_OBJECT",
]


@dataclass
class ParsedValidationError:
    key: str
    kind: str
    name: str
    context: Optional[str] = None
    suggestion: Optional[str] = None


def render(key: str, *args: str) -> str:
    return VALIDATION_ERROR_PATTERNS[key].template(*args)


def parse_validation_error(message: str) -> Optional[ParsedValidationError]:
    for key in _PARSE_ORDER:
        pattern = VALIDATION_ERROR_PATTERNS[key]
        match = pattern.regex.search(message)
        if match:
            groups = match.groupdict()
            return ParsedValidationError(
                key=key,
                kind=pattern.kind,
                name=groups["name"],
                context=groups.get("context"),
                suggestion=groups.get("suggestion"),
            )
    return None


def is_object_not_found_error(message: str) -> bool:
    parsed = parse_validation_error(message)
    return bool(parsed and parsed.kind == OBJECT)


def is_relationship_not_found_error(message: str) -> bool:
    parsed = parse_validation_error(message)
    return bool(parsed and parsed.kind == RELATIONSHIP)


def is_field_not_found_error(message: str) -> bool:
    parsed = parse_validation_error(message)
    return bool(parsed and parsed.kind == FIELD)


__all__ = [
    "VALIDATION_ERROR_PATTERNS",
    "ErrorPattern",
    "ParsedValidationError",
    "render",
    "parse_validation_error",
    "is_object_not_found_error",
    "is_relationship_not_found_error",
    "is_field_not_found_error",
]
