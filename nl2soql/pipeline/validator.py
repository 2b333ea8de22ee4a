from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .entity_resolver import EntityResolution, EntityResolver
from .graph_store import GraphStore
from .grounding import is_proper_noun
from .models import ChildRelationshipInfo, GraphField, GraphObject, GraphRelationship, ValidationMessage
from .query_rules import (
    apply_suggested_limit,
    check_aggregates,
    check_governor_limits,
    check_suspicious_ids,
    check_syntax,
    check_tooling_constraints,
)
from .soql_ast import (
    Comparison,
    FieldExpr,
    Literal,
    ParsedQueryAst,
    SubqueryExpr,
    map_comparisons,
    semi_joins,
    where_comparisons,
)
from .utils import closest_match, dedupe, levenshtein
from .validation_errors import parse_validation_error, render

logger = logging.getLogger(__name__)

PICKLIST_TYPES = {"picklist", "multipicklist"}


@runtime_checkable
class LiveMetadataSource(Protocol):
    """Describe call against the live org, used when the graph has no record."""

    async def describe_child_relationships(self, object_api_name: str) -> List[ChildRelationshipInfo]: ...


@dataclass
class MatchResult:
    found: bool
    corrected_name: Optional[str] = None
    suggestion: Optional[str] = None


@dataclass
class RelationshipMatch:
    found: bool
    target_object: Optional[str] = None
    relationship_name: Optional[str] = None
    suggestion: Optional[str] = None
    suggested_target: Optional[str] = None


@dataclass
class ParentLookupResult:
    is_valid: bool
    error: Optional[str] = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    is_valid: bool
    soql: str
    was_corrected: bool = False
    messages: List[ValidationMessage] = field(default_factory=list)
    ast: Optional[ParsedQueryAst] = None

    @property
    def errors(self) -> List[ValidationMessage]:
        return [m for m in self.messages if m.type == "error"]

    @property
    def corrections(self) -> List[ValidationMessage]:
        return [m for m in self.messages if m.type == "correction"]


@dataclass
class EnhancedValidationResult:
    result: ValidationResult
    resolutions: Dict[str, EntityResolution] = field(default_factory=dict)
    hints: List[str] = field(default_factory=list)

    @property
    def corrected_soql(self) -> Optional[str]:
        return self.result.soql if self.result.was_corrected else None


# --- matching ------------------------------------------------------------


def find_object_match(name: str, objects: Sequence[GraphObject]) -> MatchResult:
    lowered = name.lower()
    for obj in objects:
        if obj.api_name.lower() == lowered:
            return MatchResult(True, corrected_name=obj.api_name)
    return MatchResult(False, suggestion=closest_match(name, [o.api_name for o in objects]))


def find_field_match(name: str, fields: Sequence[GraphField]) -> MatchResult:
    lowered = name.lower()
    for fld in fields:
        if fld.api_name.lower() == lowered:
            return MatchResult(True, corrected_name=fld.api_name)
    for fld in fields:
        if fld.label and fld.label.lower() == lowered:
            return MatchResult(True, corrected_name=fld.api_name)
    return MatchResult(False, suggestion=closest_match(name, [f.api_name for f in fields]))


def find_relationship_match(part: str, relationships: Sequence[GraphRelationship]) -> RelationshipMatch:
    """Exact name, target object, then the nearest outgoing relationship as a suggestion."""
    lowered = part.lower()
    outgoing = [r for r in relationships if r.direction == "outgoing"]

    for rel in outgoing:
        if rel.relationship_name and rel.relationship_name.lower() == lowered:
            return RelationshipMatch(True, rel.target_object, rel.relationship_name)
    for rel in outgoing:
        if rel.target_object.lower() == lowered:
            return RelationshipMatch(True, rel.target_object, rel.relationship_name)

    best: Optional[GraphRelationship] = None
    best_suggestion: Optional[str] = None
    best_distance = 4
    for rel in outgoing:
        if not rel.relationship_name:
            continue
        distance = levenshtein(lowered, rel.relationship_name.lower())
        if distance < best_distance:
            best, best_suggestion, best_distance = rel, rel.relationship_name, distance
    for rel in outgoing:
        distance = levenshtein(lowered, rel.target_object.lower())
        if distance < best_distance:
            best, best_suggestion, best_distance = rel, rel.relationship_name or rel.target_object, distance

    if best is None:
        for predicate in (lambda n: n.startswith(lowered), lambda n: lowered in n):
            for rel in outgoing:
                if rel.relationship_name and predicate(rel.relationship_name.lower()):
                    best, best_suggestion = rel, rel.relationship_name
                    break
            if best is not None:
                break

    if best is None:
        return RelationshipMatch(False)
    return RelationshipMatch(False, suggestion=best_suggestion, suggested_target=best.target_object)


def find_closest_picklist_value(value: str, values: Sequence[str]) -> Optional[str]:
    return closest_match(value, values)


def _available(names: Sequence[str], total: Optional[int] = None) -> str:
    shown = ", ".join(names[:5])
    return shown + ("..." if (total if total is not None else len(names)) > 5 else "")


# --- AST rewrites ---------------------------------------------------------


def _rename_select(ast: ParsedQueryAst, old: str, new: str) -> ParsedQueryAst:
    items = tuple(replace(i, name=new) if isinstance(i, FieldExpr) and i.name == old else i for i in ast.select)
    return replace(ast, select=items)


def _rename_where(ast: ParsedQueryAst, old: str, new: str) -> ParsedQueryAst:
    def _swap(cmp: Comparison) -> Comparison:
        return replace(cmp, field=new) if cmp.field == old else cmp

    return replace(ast, where=map_comparisons(ast.where, _swap))


def _replace_literal(ast: ParsedQueryAst, fld: str, old: str, new: str) -> ParsedQueryAst:
    quoted = "'" + new.replace("'", "\\'") + "'"

    def _fix(lit: Literal) -> Literal:
        if lit.kind != "string":
            return lit
        if lit.value == old:
            return Literal(quoted, "string")
        parts = str(lit.value).split(";")
        if old in parts:
            fixed = ";".join(new if p == old else p for p in parts)
            return Literal("'" + fixed.replace("'", "\\'") + "'", "string")
        return lit

    def _swap(cmp: Comparison) -> Comparison:
        if cmp.field.lower() != fld.lower() or isinstance(cmp.value, ParsedQueryAst):
            return cmp
        if isinstance(cmp.value, tuple):
            return replace(cmp, value=tuple(_fix(v) for v in cmp.value))
        return replace(cmp, value=_fix(cmp.value))

    return replace(ast, where=map_comparisons(ast.where, _swap))


class SoqlValidator:
    """
    Checks a candidate SOQL string against the metadata graph.

    Safe rewrites (case fixes, near-miss names, a default LIMIT) are applied to
    the returned query and reported as corrections; anything else is an error
    or warning for the caller to act on.
    """

    def __init__(
        self,
        graph_store: GraphStore,
        live_metadata: Optional[LiveMetadataSource] = None,
        resolver: Optional[EntityResolver] = None,
    ) -> None:
        self.graph_store = graph_store
        self.live_metadata = live_metadata
        self.resolver = resolver or EntityResolver(graph_store)

    async def validate(self, soql: str, org_id: Optional[str] = None) -> ValidationResult:
        syntax_errors = check_syntax(soql)
        if syntax_errors:
            return ValidationResult(False, soql, messages=syntax_errors)
        id_errors = check_suspicious_ids(soql)
        if id_errors:
            return ValidationResult(False, soql, messages=id_errors)

        ast, parse_errors = ParsedQueryAst.parse(soql)
        if ast is None:
            logger.debug("unparseable query %r: %s", soql, parse_errors)
            return ValidationResult(False, soql, messages=[ValidationMessage("error", "Could not parse SOQL query")])

        tooling_errors = check_tooling_constraints(ast)
        if tooling_errors:
            return ValidationResult(False, soql, messages=tooling_errors, ast=ast)

        try:
            return await self._validate_ast(soql, ast, org_id)
        except Exception as exc:
            logger.error("validation failed for %r: %s", soql, exc)
            return ValidationResult(
                False, soql, messages=[ValidationMessage("error", f"Validation failed: {exc}")], ast=ast
            )

    async def _validate_ast(self, soql: str, ast: ParsedQueryAst, org_id: Optional[str]) -> ValidationResult:
        messages: List[ValidationMessage] = []
        corrected = False

        all_objects = await self.graph_store.get_all_objects(org_id)
        main_object = ast.main_object
        match = find_object_match(main_object, all_objects)
        if not match.found:
            if not match.suggestion:
                messages.append(ValidationMessage("error", render("OBJECT_NOT_FOUND", main_object)))
                return ValidationResult(False, soql, messages=messages, ast=ast)
            messages.append(
                ValidationMessage(
                    "correction",
                    render("OBJECT_NOT_FOUND_WITH_SUGGESTION", main_object, match.suggestion),
                    original=main_object,
                    corrected=match.suggestion,
                )
            )
            main_object = match.suggestion
            ast = replace(ast, main_object=main_object)
            corrected = True
        elif match.corrected_name != main_object:
            main_object = match.corrected_name or main_object
            ast = replace(ast, main_object=main_object)
            corrected = True

        object_fields = await self.graph_store.get_object_fields(main_object, org_id)
        for name in dedupe(ast.fields):
            if "." in name:
                continue
            fmatch = find_field_match(name, object_fields)
            if fmatch.found:
                if fmatch.corrected_name and fmatch.corrected_name != name:
                    ast = _rename_select(ast, name, fmatch.corrected_name)
                    corrected = True
            elif fmatch.suggestion:
                messages.append(
                    ValidationMessage(
                        "correction",
                        render("FIELD_NOT_FOUND_WITH_SUGGESTION", name, main_object, fmatch.suggestion),
                        original=name,
                        corrected=fmatch.suggestion,
                    )
                )
                ast = _rename_select(ast, name, fmatch.suggestion)
                corrected = True
            else:
                messages.append(ValidationMessage("error", render("FIELD_NOT_FOUND", name, main_object)))

        for lookup in ast.parent_lookups:
            ast, msg = await self._check_lookup(ast, main_object, lookup.path, lookup.field, org_id, in_where=False)
            if msg:
                messages.append(msg)
                corrected = corrected or msg.type == "correction"

        for sub in ast.subqueries:
            messages.extend(await self.validate_subquery(main_object, sub.relationship_name, sub.fields, org_id))

        if ast.where is not None:
            picklist_messages, ast = await self._check_picklists(ast, main_object, object_fields, org_id)
            messages.extend(picklist_messages)
            corrected = corrected or any(m.type == "correction" for m in picklist_messages)

        messages.extend(check_aggregates(ast))
        messages.extend(await self._check_typeof(ast, all_objects, org_id))

        if ast.where is not None:
            dotted = dedupe(c.field for c in where_comparisons(ast.where) if "." in c.field and not c.is_semi_join)
            for dotted_field in dotted:
                path, leaf = dotted_field.rsplit(".", 1)
                ast, msg = await self._check_lookup(ast, main_object, path, leaf, org_id, in_where=True)
                if msg:
                    messages.append(msg)
                    corrected = corrected or msg.type == "correction"
            messages.extend(await self._check_semi_joins(ast, all_objects, org_id))

        governor_messages, suggested_limit = check_governor_limits(ast)
        messages.extend(governor_messages)
        if suggested_limit is not None:
            ast = apply_suggested_limit(ast, suggested_limit)
            corrected = True

        has_errors = any(m.is_error for m in messages)
        return ValidationResult(
            is_valid=not has_errors,
            soql=ast.render() if corrected else soql,
            was_corrected=corrected,
            messages=messages,
            ast=ast,
        )

    # parent lookups

    async def validate_parent_lookup(
        self, from_object: str, path: str, field_name: str, org_id: Optional[str] = None
    ) -> ParentLookupResult:
        try:
            current = from_object
            for part in path.split("."):
                relationships = await self.graph_store.get_object_relationships(current, org_id)
                rel = find_relationship_match(part, relationships)
                if not rel.found:
                    error = render("RELATIONSHIP_NOT_FOUND", part, current)
                    if rel.suggestion:
                        error += f'. Did you mean "{rel.suggestion}"'
                        if rel.suggested_target:
                            error += f" (targets {rel.suggested_target})"
                        error += "?"
                    else:
                        names = [r.relationship_name for r in relationships if r.direction == "outgoing" and r.relationship_name]
                        if names:
                            error += f". Available: {_available(names, len(relationships))}"
                    return ParentLookupResult(False, error, rel.suggestion)
                current = rel.target_object or current

            target_fields = await self.graph_store.get_object_fields(current, org_id)
            if any(f.api_name.lower() == field_name.lower() for f in target_fields):
                return ParentLookupResult(True)
            suggestion = closest_match(field_name, [f.api_name for f in target_fields])
            error = f'Field "{field_name}" not found on {current}'
            if suggestion:
                error += f'. Did you mean "{suggestion}"?'
            return ParentLookupResult(False, error, suggestion)
        except Exception as exc:
            logger.debug("parent lookup %s.%s on %s failed: %s", path, field_name, from_object, exc)
            return ParentLookupResult(False, str(exc))

    async def _check_lookup(
        self,
        ast: ParsedQueryAst,
        main_object: str,
        path: str,
        leaf: str,
        org_id: Optional[str],
        *,
        in_where: bool,
    ) -> Tuple[ParsedQueryAst, Optional[ValidationMessage]]:
        result = await self.validate_parent_lookup(main_object, path, leaf, org_id)
        if result.is_valid:
            return ast, None
        original = f"{path}.{leaf}"
        if not result.suggestion:
            fallback = f"Invalid field path in WHERE clause: {original}" if in_where else f"Invalid parent lookup: {original}"
            return ast, ValidationMessage("error", result.error or fallback)

        where_label = " in WHERE" if in_where else ""
        if (result.error or "").startswith("Field "):
            fixed = f"{path}.{result.suggestion}"
            text = f'Field "{leaf}"{where_label} corrected to "{result.suggestion}" on {path}'
        else:
            segments = path.split(".")
            fixed = ".".join(segments[:-1] + [result.suggestion, leaf])
            text = f'Relationship "{segments[-1]}"{where_label} corrected to "{result.suggestion}"'
        ast = _rename_where(ast, original, fixed) if in_where else _rename_select(ast, original, fixed)
        return ast, ValidationMessage("correction", text, original=original, corrected=fixed)

    # child subqueries

    async def validate_subquery(
        self, parent_object: str, relationship_name: str, fields: Sequence[str], org_id: Optional[str] = None
    ) -> List[ValidationMessage]:
        lowered = relationship_name.lower()
        child_object: Optional[str] = None
        known: List[ChildRelationshipInfo] = []
        try:
            known = await self.graph_store.get_child_relationships(parent_object, org_id)
        except Exception as exc:
            logger.debug("child relationship lookup failed for %s: %s", parent_object, exc)
        for rel in known:
            if rel.relationship_name.lower() == lowered:
                child_object = rel.child_object
                break

        if child_object is None and org_id and self.live_metadata is not None:
            try:
                for rel in await self.live_metadata.describe_child_relationships(parent_object):
                    if rel.relationship_name.lower() == lowered:
                        child_object = rel.child_object
                        logger.debug("resolved %s on %s via live describe", relationship_name, parent_object)
                        break
            except Exception as exc:
                logger.debug("live describe failed for %s: %s", parent_object, exc)

        if child_object is None:
            names = [r.relationship_name for r in known]
            suggestion = closest_match(relationship_name, names)
            if suggestion:
                text = render("CHILD_RELATIONSHIP_NOT_FOUND_WITH_SUGGESTION", relationship_name, parent_object, suggestion)
            else:
                text = render("CHILD_RELATIONSHIP_NOT_FOUND", relationship_name, parent_object) + ". "
                text += f"Available: {_available(names)}" if names else "If valid, sync metadata for this object first."
            return [ValidationMessage("error", text)]

        messages: List[ValidationMessage] = []
        try:
            child_fields = {f.api_name.lower() for f in await self.graph_store.get_object_fields(child_object, org_id)}
        except Exception as exc:
            logger.debug("could not load fields for %s: %s", child_object, exc)
            return messages
        for name in fields:
            if "." in name or "(" in name:
                continue
            if name.lower() not in child_fields:
                messages.append(
                    ValidationMessage(
                        "warning", f'Field "{name}" may not exist on {child_object} (in {relationship_name} subquery)'
                    )
                )
        return messages

    # picklists, TYPEOF and semi-joins

    async def _check_picklists(
        self, ast: ParsedQueryAst, main_object: str, object_fields: Sequence[GraphField], org_id: Optional[str]
    ) -> Tuple[List[ValidationMessage], ParsedQueryAst]:
        picklists = {f.api_name.lower(): f for f in object_fields if f.type in PICKLIST_TYPES}
        messages: List[ValidationMessage] = []
        if not picklists:
            return messages, ast
        cached: Dict[str, List[str]] = {}
        for cmp in where_comparisons(ast.where):
            fld = picklists.get(cmp.field.lower())
            if fld is None or cmp.is_semi_join:
                continue
            literals = cmp.value if isinstance(cmp.value, tuple) else (cmp.value,)
            values: List[str] = []
            for lit in literals:
                if lit.kind != "string":
                    continue
                text = str(lit.value)
                values.extend(text.split(";") if cmp.operator in {"INCLUDES", "EXCLUDES"} else [text])
            if not values:
                continue
            try:
                if fld.api_name not in cached:
                    cached[fld.api_name] = await self.graph_store.get_picklist_values(main_object, fld.api_name, org_id)
            except Exception as exc:
                logger.debug("picklist values unavailable for %s: %s", fld.api_name, exc)
                continue
            active = cached[fld.api_name]
            if not active:
                continue
            for value in values:
                if value in active:
                    continue
                closest = find_closest_picklist_value(value, active)
                if closest and closest.lower() == value.lower():
                    ast = _replace_literal(ast, fld.api_name, value, closest)
                    messages.append(
                        ValidationMessage(
                            "correction",
                            f'Picklist value "{value}" for {fld.api_name} corrected to "{closest}"',
                            original=value,
                            corrected=closest,
                        )
                    )
                elif closest:
                    messages.append(
                        ValidationMessage(
                            "error",
                            f'Invalid picklist value "{value}" for {fld.api_name}. Did you mean "{closest}"?',
                            original=value,
                            corrected=closest,
                        )
                    )
                else:
                    messages.append(
                        ValidationMessage(
                            "error", f'Invalid picklist value "{value}" for {fld.api_name}. Valid: {_available(active)}'
                        )
                    )
        return messages, ast

    async def _check_typeof(
        self, ast: ParsedQueryAst, all_objects: Sequence[GraphObject], org_id: Optional[str]
    ) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        for clause in ast.typeof_clauses:
            for branch in clause.branches:
                match = find_object_match(branch.object_type, all_objects)
                if not match.found:
                    messages.append(ValidationMessage("error", render("TYPEOF_UNKNOWN_OBJECT", branch.object_type)))
                    continue
                subtype_fields = await self.graph_store.get_object_fields(match.corrected_name or branch.object_type, org_id)
                for name in branch.fields:
                    if not find_field_match(name, subtype_fields).found:
                        messages.append(
                            ValidationMessage("error", render("TYPEOF_FIELD_NOT_FOUND", name, branch.object_type))
                        )
        return messages

    async def _check_semi_joins(
        self, ast: ParsedQueryAst, all_objects: Sequence[GraphObject], org_id: Optional[str]
    ) -> List[ValidationMessage]:
        messages: List[ValidationMessage] = []
        for cmp in semi_joins(ast.where):
            sub = cmp.value
            if not isinstance(sub, ParsedQueryAst):
                continue
            match = find_object_match(sub.main_object, all_objects)
            if not match.found:
                messages.append(ValidationMessage("error", f'Object "{sub.main_object}" not found in semi-join subquery'))
                continue
            obj_name = match.corrected_name or sub.main_object
            try:
                sub_fields = await self.graph_store.get_object_fields(obj_name, org_id)
            except Exception as exc:
                logger.warning("semi-join lookup failed for %s: %s", obj_name, exc)
                continue
            selected = [i.name for i in sub.select if isinstance(i, FieldExpr)]
            if not selected or "." in selected[0]:
                continue
            fmatch = find_field_match(selected[0], sub_fields)
            if fmatch.found:
                continue
            text = f'Field "{selected[0]}" not found on "{obj_name}" in semi-join subquery.'
            if fmatch.suggestion:
                text += f' Did you mean "{fmatch.suggestion}"?'
            else:
                lookups = [f.api_name for f in sub_fields if f.api_name.endswith("Id")][:5]
                if lookups:
                    text += f" Available lookup fields: {', '.join(lookups)}"
            messages.append(ValidationMessage("error", text))
        return messages

    # enhanced

    async def validate_enhanced(self, soql: str, org_id: Optional[str] = None) -> EnhancedValidationResult:
        """Validation plus canonical-name suggestions for unknown objects and relationships."""
        result = await self.validate(soql, org_id)
        enhanced = EnhancedValidationResult(result)
        problems = [m for m in result.messages if m.type in ("error", "warning")]
        enhanced.resolutions = await self.resolver.resolve_from_messages(problems, org_id)
        for name, resolution in enhanced.resolutions.items():
            enhanced.hints.append(f'"{name}" resolves to {resolution.resolved_api_name} ({resolution.resolution_type}).')
        for msg in problems:
            parsed = parse_validation_error(msg.message)
            if parsed is None or parsed.name in enhanced.resolutions or not parsed.context:
                continue
            if "_" not in parsed.name and is_proper_noun(parsed.name):
                enhanced.hints.append(
                    f'"{parsed.name}" looks like a record name rather than schema; filter with '
                    f"{parsed.context}.Name LIKE '{parsed.name}%' instead."
                )
        return enhanced


__all__ = [
    "SoqlValidator",
    "ValidationResult",
    "EnhancedValidationResult",
    "ParentLookupResult",
    "MatchResult",
    "RelationshipMatch",
    "LiveMetadataSource",
    "find_object_match",
    "find_field_match",
    "find_relationship_match",
    "find_closest_picklist_value",
]
