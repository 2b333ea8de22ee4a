from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence, Set

from .models import FieldSchema, GroundedEntity, ObjectSchema, SchemaContext
from .schema_context import KNOWN_POLYMORPHIC_FIELDS, STOPWORDS

logger = logging.getLogger(__name__)

FULL = "full"
SKELETON = "skeleton"
SKELETON_MAX_FIELDS = 15

EMPTY_CONTEXT_TEXT = "No specific schema context available. Use standard Salesforce object names."

RELATIONSHIP_RULES = """\
1. PARENT LOOKUP [LOW COST - ALWAYS PREFER]:
   Use dot notation directly in SELECT.
   Example: SELECT Id, Account.Name, Account.Industry FROM Contact
   Never use a subquery for a parent: (SELECT Name FROM Account) is INVALID

2. SEMI-JOIN FILTER [LOW COST - FOR FILTERING BY CHILD]:
   When filtering parents by child criteria (not retrieving child data):
   Example: SELECT Id, Name FROM Account WHERE Id IN (SELECT AccountId FROM Case WHERE Status = 'Open')

3. CHILD SUBQUERY [MODERATE COST - ONLY FOR LISTING CHILDREN]:
   Only use when the user explicitly wants a LIST of related child records.
   Example: SELECT Id, Name, (SELECT Id, Subject FROM Cases) FROM Account"""

DATE_LITERAL_GUIDANCE = """\
GUIDANCE FOR DATE FIELDS:
- Use standard SOQL date literals (TODAY, YESTERDAY, LAST_N_DAYS:30, THIS_MONTH, etc.) whenever possible.
- Do not calculate specific dates unless absolutely necessary."""

POLYMORPHIC_RULES = """\
POLYMORPHIC FIELD RULES:
- WhoId/WhatId are foreign key fields; Who/What are relationship names.
- NEVER use dot notation on polymorphic FK fields: Task.WhoId.Name is INVALID
- USE TYPEOF ON THE RELATIONSHIP NAME (not the Id field):
  CORRECT: SELECT TYPEOF Who WHEN Contact THEN FirstName, LastName END FROM Task
  WRONG:   SELECT TYPEOF WhoId WHEN Contact THEN FirstName END FROM Task
- Use Relationship.Type to filter: WHERE What.Type = 'Account'"""

NEGATIVE_CONSTRAINTS = """\
NEGATIVE CONSTRAINTS (validation hard failures):
1. NEVER use 15/18-char ID literals (e.g., OwnerId = '005...').
2. NEVER use subqueries for parent fields (e.g., (SELECT Name FROM Account)). Use Account.Name.
3. NEVER use "IS NOT EMPTY". Use "Id IN (SELECT ...)"."""


def has_polymorphic_fields(context: SchemaContext) -> bool:
    return any(f.is_polymorphic for o in context.objects for f in o.fields)


def _has_date_fields(context: SchemaContext) -> bool:
    return any(
        f.api_name in ("CreatedDate", "LastModifiedDate") or f.type in ("date", "datetime")
        for o in context.objects
        for f in o.fields
    )


def _prompt_tokens(query: str) -> Set[str]:
    return {w for w in re.split(r"[\s,.?!]+", query.lower()) if len(w) > 3 and w not in STOPWORDS}


def _full_field_line(f: FieldSchema) -> str:
    line = f"    - {f.api_name} ({f.type})"
    if f.picklist_values:
        line += f" - Values: {', '.join(f.picklist_values)}"
    if f.is_polymorphic:
        targets = f.polymorphic_targets or []
        shown = "|".join(targets[:5]) or "Multiple"
        more = "..." if len(targets) > 5 else ""
        line += f"\n      POLYMORPHIC: Use TYPEOF {f.relationship_name or 'UnknownRel'} WHEN... (Targets: {shown}{more})"
        known = KNOWN_POLYMORPHIC_FIELDS.get(f.api_name)
        if known:
            line += f" - {known.description}"
    return line


def format_full_schema(context: SchemaContext) -> str:
    lines: List[str] = ["AVAILABLE SCHEMA:"]
    for obj in context.objects:
        lines.append("")
        lines.append(f"Object: {obj.api_name} ({obj.label})")
        if obj.fields:
            lines.append("  Fields:")
            lines.extend(_full_field_line(f) for f in obj.fields)
        if obj.parent_relationships:
            lines.append("  Parent lookups [LOW COST - PREFERRED]:")
            for rel in obj.parent_relationships:
                lines.append(
                    f"    - {rel.relationship_name}.FieldName -> access {rel.target_object} fields "
                    f"(e.g., {rel.relationship_name}.Name)"
                )
        if obj.child_relationships:
            lines.append("  Child relationships [MODERATE COST - only when listing child items]:")
            for rel in obj.child_relationships:
                lines.append(f"    - (SELECT fields FROM {rel.relationship_name}) -> get related {rel.child_object} records")
    for warning in context.warnings:
        lines.append("")
        lines.append(f"WARNING ({warning.severity}): {warning.message}")
    lines.extend(["", "Use ONLY the objects, fields, and relationships listed above.", "", NEGATIVE_CONSTRAINTS])
    return "\n".join(lines)


def _skeleton_score(f: FieldSchema, entity_terms: Set[str], tokens: Set[str]) -> int:
    score = 0
    name = f.api_name.lower()
    label = f.label.lower()
    if name in ("id", "name"):
        score += 20
    if f.is_polymorphic:
        score += 15
    if name in entity_terms or label in entity_terms:
        score += 10
    if any(t in name or t in label for t in tokens):
        score += 5
    if f.type in ("picklist", "reference"):
        score += 1
    return score


def _skeleton_field(f: FieldSchema) -> str:
    if f.picklist_values:
        return f"{f.api_name}({f.type}:{'|'.join(f.picklist_values[:5])})"
    if f.is_polymorphic:
        targets = "/".join((f.polymorphic_targets or [])[:3]) or "Multiple"
        return f"{f.api_name}(POLYMORPHIC:{f.relationship_name or 'RELATIONSHIP'}->{targets})"
    return f"{f.api_name}({f.type})"


def format_skeleton_schema(
    context: SchemaContext,
    query: str,
    entities: Optional[Sequence[GroundedEntity]] = None,
    max_fields: int = SKELETON_MAX_FIELDS,
) -> str:
    """Compact listing: the top ``max_fields`` fields per object, scored against the question."""
    entity_terms: Set[str] = set()
    for entity in entities or ():
        entity_terms.add(entity.value.lower())
        best = entity.best_match
        if best is not None:
            entity_terms.update(fld.split(".")[-1].lower() for fld in best.fields)
    tokens = _prompt_tokens(query)
    in_context = set(context.object_names())

    lines: List[str] = ["SCHEMA (Skeleton Mode):"]
    for obj in context.objects:
        lines.append(f"\n{obj.api_name} ({obj.label}):")
        ranked = sorted(obj.fields, key=lambda f: (-_skeleton_score(f, entity_terms, tokens), f.api_name))
        top = ranked[:max_fields]
        logger.debug("skeleton fields for %s: %s", obj.api_name, [f.api_name for f in top])
        lines.append(f"  Fields: {', '.join(_skeleton_field(f) for f in top)}")
        parents = [r for r in obj.parent_relationships if r.target_object in in_context]
        if parents:
            lines.append(f"  Parents: {', '.join(f'{r.relationship_name}->{r.target_object}' for r in parents)}")
        children = [r for r in obj.child_relationships if r.child_object in in_context]
        if children:
            lines.append(f"  Children: {', '.join(f'{r.relationship_name}->{r.child_object}' for r in children)}")
    if has_polymorphic_fields(context):
        lines.append("\n" + POLYMORPHIC_RULES)
    lines.append("\nRULES: Use Parent.Field for lookups. Use (SELECT FROM Children) for subqueries. No ID literals.")
    return "\n".join(lines)


def format_schema_for_prompt(
    context: SchemaContext,
    mode: str = SKELETON,
    query: str = "",
    entities: Optional[Sequence[GroundedEntity]] = None,
    max_fields: int = SKELETON_MAX_FIELDS,
) -> str:
    if context.is_empty:
        return EMPTY_CONTEXT_TEXT
    if mode == SKELETON and query:
        return format_skeleton_schema(context, query, entities, max_fields)

    rules = [RELATIONSHIP_RULES]
    if _has_date_fields(context):
        rules.append(DATE_LITERAL_GUIDANCE)
    if has_polymorphic_fields(context):
        rules.append(POLYMORPHIC_RULES)
    return "\n\n".join(rules) + "\n\n" + format_full_schema(context)


def object_summary(objects: Iterable[ObjectSchema]) -> str:
    return ", ".join(f"{o.api_name}({len(o.fields)})" for o in objects)


__all__ = [
    "format_schema_for_prompt",
    "format_full_schema",
    "format_skeleton_schema",
    "has_polymorphic_fields",
    "object_summary",
    "EMPTY_CONTEXT_TEXT",
    "POLYMORPHIC_RULES",
    "FULL",
    "SKELETON",
]
