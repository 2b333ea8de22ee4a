from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from .graph_store import GraphStore
from .models import RelationshipTarget, ValidationMessage
from .validation_errors import FIELD, ParsedValidationError, parse_validation_error

logger = logging.getLogger(__name__)

DIRECT_OBJECT = "direct_object"
RELATIONSHIP_TARGET = "relationship_target"
CHILD_RELATIONSHIP = "child_relationship"


@dataclass
class EntityResolution:
    resolved_api_name: str
    resolution_type: str
    relationship_info: Optional[RelationshipTarget] = None


def _suffix_candidates(name: str) -> List[str]:
    if name.lower().endswith("__r"):
        return [name[:-3] + "__c"]
    if name.lower().endswith("ies") and len(name) > 3:
        return [name[:-3] + "y", name[:-1]]
    if name.lower().endswith("s") and len(name) > 1:
        return [name[:-1]]
    return []


class EntityResolver:
    """Maps a bare object or relationship name onto a canonical object API name."""

    def __init__(self, graph_store: GraphStore) -> None:
        self.graph_store = graph_store

    async def _direct(self, name: str, org_id: Optional[str]) -> Optional[str]:
        try:
            obj = await self.graph_store.get_object(name, org_id)
        except Exception as exc:
            logger.debug("direct lookup failed for %s: %s", name, exc)
            return None
        return obj.api_name if obj else None

    async def resolve(self, name: str, org_id: Optional[str] = None) -> Optional[EntityResolution]:
        if not name or not name.strip():
            return None
        name = name.strip()

        direct = await self._direct(name, org_id)
        if direct:
            return EntityResolution(direct, DIRECT_OBJECT)

        for lookup in (self.graph_store.find_relationship_target, self.graph_store.find_child_relationship_target):
            try:
                target = await lookup(name, org_id)
            except Exception as exc:
                logger.debug("relationship lookup failed for %s: %s", name, exc)
                target = None
            if target:
                return EntityResolution(target.target_object, RELATIONSHIP_TARGET, target)

        for candidate in _suffix_candidates(name):
            resolved = await self._direct(candidate, org_id)
            if resolved:
                return EntityResolution(resolved, CHILD_RELATIONSHIP)
        return None

    async def resolve_from_messages(
        self, messages: Iterable[Union[ValidationMessage, str]], org_id: Optional[str] = None
    ) -> Dict[str, EntityResolution]:
        resolved: Dict[str, EntityResolution] = {}
        for missing in extract_missing_entities(messages):
            if missing.name in resolved:
                continue
            hit = await self.resolve(missing.name, org_id)
            if hit:
                resolved[missing.name] = hit
        return resolved


def extract_missing_entities(messages: Iterable[Union[ValidationMessage, str]]) -> List[ParsedValidationError]:
    """Object and relationship names that validation could not find."""
    found: List[ParsedValidationError] = []
    for msg in messages:
        text = msg if isinstance(msg, str) else msg.message
        parsed = parse_validation_error(text)
        if parsed and parsed.kind != FIELD and not parsed.suggestion:
            found.append(parsed)
    return found


__all__ = [
    "EntityResolver",
    "EntityResolution",
    "extract_missing_entities",
    "DIRECT_OBJECT",
    "RELATIONSHIP_TARGET",
    "CHILD_RELATIONSHIP",
]
