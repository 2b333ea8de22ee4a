from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .container import ServiceContainer
from .draft_phase import DraftPhaseResult, should_run_draft_phase
from .few_shot import format_examples_for_prompt
from .field_pruning import CORE_FIELDS, DEFAULT_MAX_FIELDS_PER_TABLE, field_map
from .grounding import GroundingOptions, format_grounding_for_prompt
from .models import GraphField, GroundedEntity, SchemaContext, SoqlExample
from .prompt_format import SKELETON, format_schema_for_prompt
from .react_loop import ToolParam, ToolRegistry, ToolSpec
from .run_logger import DEFAULT_LOG_RETAIN, RunLogger
from .schema_context import extract_potential_entities, select_relevant_fields
from .validator import EnhancedValidationResult

logger = logging.getLogger(__name__)

MIN_PRUNED_FIELDS = 4
DRAFT_FIELDS_PER_OBJECT = 50


@dataclass
class PreparedPrompt:
    question: str
    context: SchemaContext
    fields: Dict[str, List[str]] = field(default_factory=dict)
    draft: Optional[DraftPhaseResult] = None
    entities: List[GroundedEntity] = field(default_factory=list)
    examples: List[SoqlExample] = field(default_factory=list)
    prompt: str = ""
    cache_hit: bool = False


def merge_field_strategies(
    scoped: Mapping[str, Sequence[str]],
    draft: Mapping[str, Sequence[str]],
    lexical: Mapping[str, Sequence[str]],
    tables: Sequence[str],
    valid_fields_by_table: Mapping[str, Set[str]],
    max_fields: int = DEFAULT_MAX_FIELDS_PER_TABLE,
) -> Dict[str, List[str]]:
    """
    Priority-ordered union per table over fields that exist: core fields,
    scoped vector hits, draft mentions, then lexical matches while slots remain.
    """
    merged: Dict[str, List[str]] = {}
    for table in tables:
        valid = valid_fields_by_table.get(table) or set()
        chosen = [c for c in CORE_FIELDS if c in valid]
        for source in (scoped, draft):
            chosen.extend(f for f in source.get(table, ()) if f in valid and f not in chosen)
        remaining = max_fields - len(chosen)
        if remaining > 0:
            extra = [f for f in lexical.get(table, ()) if f in valid and f not in chosen]
            chosen.extend(extra[:remaining])
        merged[table] = chosen[:max_fields]
    return merged


def prune_context(context: SchemaContext, fields: Mapping[str, Sequence[str]]) -> SchemaContext:
    objects = []
    for obj in context.objects:
        keep = set(fields.get(obj.api_name, ()))
        pruned = [f for f in obj.fields if f.api_name in keep]
        if len(pruned) < MIN_PRUNED_FIELDS:
            pruned = list(obj.fields)
        objects.append(replace(obj, fields=pruned))
    return replace(context, objects=objects)


class GroundingPipeline:
    """
    Prepares the grounded prompt material for one question and checks candidate
    queries against the metadata graph.
    """

    def __init__(
        self,
        container: ServiceContainer,
        *,
        prompt_mode: str = SKELETON,
        max_fields: int = DEFAULT_MAX_FIELDS_PER_TABLE,
        log_dir: Optional[str] = None,
        log_retain: int = DEFAULT_LOG_RETAIN,
        trace: bool = False,
    ) -> None:
        self.container = container
        self.prompt_mode = prompt_mode
        self.max_fields = max_fields
        self.log_dir = log_dir
        self.log_retain = log_retain
        self.trace = trace
        self.last_run_logger: Optional[RunLogger] = None

    def _run_logger(self, run_logger: Optional[RunLogger]) -> Optional[RunLogger]:
        if run_logger is not None:
            return run_logger
        if self.trace:
            return RunLogger(base_dir=self.log_dir, retain=self.log_retain)
        return None

    async def _all_fields(self, tables: Sequence[str], org_id: Optional[str]) -> Dict[str, List[GraphField]]:
        out: Dict[str, List[GraphField]] = {}
        for table in tables:
            try:
                out[table] = await self.container.graph_store.get_object_fields(table, org_id)
            except Exception as exc:
                logger.warning("could not load fields for %s: %s", table, exc)
                out[table] = []
        return out

    async def _run_draft(
        self, question: str, context: SchemaContext, all_fields: Mapping[str, List[GraphField]]
    ) -> Optional[DraftPhaseResult]:
        phase = self.container.draft_phase
        if phase is None or not should_run_draft_phase(self.container.settings.enable_draft_phase):
            return None
        schema_text = "\n\n".join(
            f"OBJECT: {obj.api_name} ({obj.label})\nFIELDS:\n"
            + "\n".join(f"  - {f.api_name} ({f.type})" for f in all_fields.get(obj.api_name, [])[:DRAFT_FIELDS_PER_OBJECT])
            for obj in context.objects
        )
        valid = {t: {f.api_name for f in fields} for t, fields in all_fields.items()}
        return await phase.run(question, schema_text, context.object_names(), valid)

    async def prepare(
        self, question: str, org_id: Optional[str] = None, *, run_logger: Optional[RunLogger] = None
    ) -> PreparedPrompt:
        rl = self._run_logger(run_logger)
        self.last_run_logger = rl
        if rl is not None:
            rl.start(question, {"org_id": org_id, "prompt_mode": self.prompt_mode, "max_fields": self.max_fields})

        try:
            prepared = await self._prepare(question, org_id, rl)
        except Exception as exc:
            if rl is not None:
                rl.finalize("error", {"error": str(exc)})
            raise
        if rl is not None:
            rl.log_prompt(prepared.prompt)
            rl.finalize("success", {"objects": prepared.context.object_names()})
        return prepared

    async def _prepare(self, question: str, org_id: Optional[str], rl: Optional[RunLogger]) -> PreparedPrompt:
        c = self.container
        started = time.monotonic()
        cache_hit = c.cache.get(question, org_id) is not None
        context = await c.context_builder.get_context(question, org_id)
        tables = context.object_names()
        if rl is not None:
            rl.log_stage(
                "context",
                {
                    "objects": tables,
                    "cache_hit": cache_hit,
                    "warnings": [w.message for w in context.warnings],
                    "duration_ms": (time.monotonic() - started) * 1000,
                },
                ok=not context.is_empty,
            )

        all_fields = await self._all_fields(tables, org_id)
        scoped = await c.field_searcher.search_fields_scoped(tables, question, self.max_fields, org_id=org_id)
        draft = await self._run_draft(question, context, all_fields)
        lexical = {t: [f.api_name for f in select_relevant_fields(fs, question, self.max_fields)] for t, fs in all_fields.items()}
        valid = {t: {f.api_name for f in fs} for t, fs in all_fields.items()}
        fields = merge_field_strategies(
            field_map(scoped),
            draft.extracted_columns if draft and draft.success else {},
            lexical,
            tables,
            valid,
            self.max_fields,
        )
        if rl is not None:
            rl.log_stage("fields", {"fields": fields, "fallbacks": [r.object_api_name for r in scoped if r.used_fallback]})
            if draft is not None:
                rl.log_stage(
                    "draft",
                    {"draft": draft.draft_soql, "error": draft.error, "duration_ms": draft.duration_ms},
                    ok=draft.success,
                )

        values = extract_potential_entities(question).potential_values
        entities = await c.grounding.build_grounding_context(
            values,
            c.settings.grounding_timeout_s,
            GroundingOptions(org_id=org_id, context_objects=tables or None),
        )
        if rl is not None:
            rl.log_stage(
                "grounding",
                {"values": len(values), "grounded": len(entities)},
                ok=len(entities) == len(values),
            )

        retriever = c.few_shot
        examples = await retriever.find_similar(question) if retriever is not None else []
        if rl is not None:
            rl.log_stage("few_shot", {"examples": [e.id for e in examples]})

        pruned = prune_context(context, fields)
        sections = [format_schema_for_prompt(pruned, self.prompt_mode, question, entities, self.max_fields)]
        grounding_text = format_grounding_for_prompt(entities)
        if grounding_text:
            sections.append(grounding_text)
        if examples:
            sections.append("EXAMPLES:\n" + format_examples_for_prompt(examples))

        logger.info(
            "prepared prompt for %r: %s objects, %s grounded values, %s examples",
            question,
            len(tables),
            len(entities),
            len(examples),
        )
        return PreparedPrompt(
            question=question,
            context=context,
            fields=fields,
            draft=draft,
            entities=list(entities),
            examples=examples,
            prompt="\n\n".join(sections),
            cache_hit=cache_hit,
        )

    async def check(
        self, soql: str, org_id: Optional[str] = None, *, run_logger: Optional[RunLogger] = None
    ) -> EnhancedValidationResult:
        enhanced = await self.container.validator.validate_enhanced(soql, org_id)
        result = enhanced.result
        if run_logger is not None:
            run_logger.log_stage(
                "validation",
                {
                    "messages": [{"type": m.type, "message": m.message} for m in result.messages],
                    "soql": result.soql,
                    "hints": enhanced.hints,
                },
                ok=result.is_valid,
            )
        logger.info(
            "checked query: valid=%s corrected=%s (%s messages)", result.is_valid, result.was_corrected, len(result.messages)
        )
        return enhanced

    def tool_registry(self, org_id: Optional[str] = None) -> ToolRegistry:
        """Tools a generation loop can call while drafting a query."""
        registry = ToolRegistry()

        async def _validate(args: Dict[str, Any]) -> Dict[str, Any]:
            enhanced = await self.check(args["soql"], org_id)
            return {
                "is_valid": enhanced.result.is_valid,
                "soql": enhanced.corrected_soql or enhanced.result.soql,
                "messages": [{"type": m.type, "message": m.message} for m in enhanced.result.messages],
                "hints": enhanced.hints,
            }

        async def _ground(args: Dict[str, Any]) -> List[Dict[str, Any]]:
            entity = await self.container.grounding.ground(
                args["value"], GroundingOptions(org_id=org_id, context_objects=args.get("objects"))
            )
            return [
                {"type": r.type.value, "confidence": r.confidence, "filter": r.suggested_filter}
                for r in entity.results
            ]

        async def _schema(args: Dict[str, Any]) -> str:
            context = await self.container.context_builder.get_context(args["question"], org_id)
            return format_schema_for_prompt(context, args.get("mode") or self.prompt_mode, args["question"])

        registry.register(
            ToolSpec(
                "validate_soql",
                "Validate a SOQL query against the org schema and return corrections.",
                _validate,
                [ToolParam("soql", "string", "The SOQL query to check")],
            )
        )
        registry.register(
            ToolSpec(
                "ground_value",
                "Resolve a value from the question to a filter pattern.",
                _ground,
                [
                    ToolParam("value", "string", "Value text, e.g. a status or a company name"),
                    ToolParam("objects", "array", "Objects to restrict the lookup to", required=False, items="string"),
                ],
            )
        )
        registry.register(
            ToolSpec(
                "get_schema_context",
                "Describe the objects and fields relevant to a question.",
                _schema,
                [
                    ToolParam("question", "string", "Natural language question"),
                    ToolParam("mode", "string", "Rendering mode", required=False, enum=("full", "skeleton")),
                ],
            )
        )
        return registry


__all__ = ["GroundingPipeline", "PreparedPrompt", "merge_field_strategies", "prune_context"]
