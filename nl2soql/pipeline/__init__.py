
from .pipeline import GroundingPipeline, PreparedPrompt
from .container import ServiceContainer
from .config import Settings
from .cache import SchemaContextCache
from .graph_store import GraphStore, MemoryGraphStore
from .models import FieldSchema, GroundedEntity, GroundingResult, ObjectSchema, SchemaContext, ScopedFieldResult, ValidationMessage
from .schema_context import SchemaContextBuilder
from .field_pruning import ScopedFieldSearcher
from .draft_phase import DraftPhase, DraftPhaseResult
from .grounding import GroundingOptions, ValueGroundingService
from .entity_resolver import EntityResolution, EntityResolver
from .few_shot import FewShotRetriever, MemoryExampleStore
from .soql_ast import ParsedQueryAst
from .validator import EnhancedValidationResult, SoqlValidator, ValidationResult
from .react_loop import ReactLoop, ToolParam, ToolRegistry, ToolSpec
from .run_logger import RunLogger

__all__ = [
    "GroundingPipeline",
    "PreparedPrompt",
    "ServiceContainer",
    "Settings",
    "SchemaContextCache",
    "GraphStore",
    "MemoryGraphStore",
    "FieldSchema",
    "GroundedEntity",
    "GroundingResult",
    "ObjectSchema",
    "SchemaContext",
    "ScopedFieldResult",
    "ValidationMessage",
    "SchemaContextBuilder",
    "ScopedFieldSearcher",
    "DraftPhase",
    "DraftPhaseResult",
    "GroundingOptions",
    "ValueGroundingService",
    "EntityResolution",
    "EntityResolver",
    "FewShotRetriever",
    "MemoryExampleStore",
    "ParsedQueryAst",
    "SoqlValidator",
    "ValidationResult",
    "EnhancedValidationResult",
    "ReactLoop",
    "ToolParam",
    "ToolRegistry",
    "ToolSpec",
    "RunLogger",
]
