from __future__ import annotations

from typing import Iterable, List, Mapping, Optional

from .models import AntiPatternWarning

BUSINESS_CORE = "business_core"
CUSTOM = "custom"
SYSTEM = "system"
SYSTEM_DERIVED = "system_derived"
PLATFORM_EVENT = "platform_event"
CUSTOM_METADATA = "custom_metadata"

EXCLUDED_CATEGORIES = frozenset({SYSTEM, SYSTEM_DERIVED, PLATFORM_EVENT, CUSTOM_METADATA})

BUSINESS_INTENT_KEYWORDS = (
    "customer",
    "client",
    "sale",
    "deal",
    "opportunity",
    "lead",
    "contact",
    "account",
    "revenue",
    "pipeline",
    "forecast",
    "quota",
)
SYSTEM_INTENT_KEYWORDS = (
    "debug",
    "log",
    "error",
    "trace",
    "monitor",
    "audit",
    "system",
    "admin",
    "setup",
    "metadata",
)

DERIVED_SUFFIXES = ("Feed", "History", "Share", "ChangeEvent")

SETUP_ADMIN_OBJECTS = frozenset(
    {
        "AuthProvider",
        "AuthSession",
        "LoginHistory",
        "LoginGeo",
        "SetupAuditTrail",
        "PermissionSet",
        "PermissionSetAssignment",
        "PermissionSetGroup",
        "Profile",
        "UserRole",
        "ConnectedApplication",
        "OauthToken",
        "ApexClass",
        "ApexTrigger",
        "ApexPage",
        "CustomField",
        "CustomObject",
        "FieldPermissions",
        "ObjectPermissions",
        "SetupEntityAccess",
        "NamedCredential",
    }
)


def categorize_object(api_name: str, declared: Optional[str] = None) -> str:
    """Category from the graph if it has one, otherwise from naming conventions."""
    if declared:
        return declared
    if api_name.endswith("__mdt"):
        return CUSTOM_METADATA
    if api_name.endswith("__e"):
        return PLATFORM_EVENT
    if api_name in SETUP_ADMIN_OBJECTS:
        return SYSTEM
    if any(api_name.endswith(s) and len(api_name) > len(s) for s in DERIVED_SUFFIXES):
        return SYSTEM_DERIVED
    if api_name.endswith("__c"):
        return CUSTOM
    return BUSINESS_CORE


def detect_intent(text: str) -> str:
    lowered = text.lower()
    business = sum(1 for kw in BUSINESS_INTENT_KEYWORDS if kw in lowered)
    system = sum(1 for kw in SYSTEM_INTENT_KEYWORDS if kw in lowered)
    if business > system:
        return "business"
    if system > business:
        return "system"
    return "unknown"


def _business_alternative(api_name: str) -> Optional[str]:
    for suffix in DERIVED_SUFFIXES:
        if api_name.endswith(suffix):
            parent = api_name[: -len(suffix)]
            return f'Query the parent object "{parent}" instead, or use a subquery if you need {suffix.lower()} data.'
    return None


def detect_anti_patterns(
    objects: Iterable[str], user_intent: str, categories: Optional[Mapping[str, Optional[str]]] = None
) -> List[AntiPatternWarning]:
    """Flag object choices that rarely match what the question asks for."""
    categories = categories or {}
    intent = detect_intent(user_intent)
    lowered = user_intent.lower()
    warnings: List[AntiPatternWarning] = []
    for obj in objects:
        category = categorize_object(obj, categories.get(obj))
        if category in (SYSTEM, SYSTEM_DERIVED) and intent == "business":
            warnings.append(
                AntiPatternWarning(
                    "system_object_query",
                    obj,
                    f'Object "{obj}" is a system object ({category}). Did you mean to query a business object?',
                    "warning",
                    _business_alternative(obj),
                )
            )
        if category == CUSTOM_METADATA and not any(w in lowered for w in ("metadata", "configuration", "setting")):
            warnings.append(
                AntiPatternWarning(
                    "metadata_type_data_query",
                    obj,
                    f'Object "{obj}" is a Custom Metadata Type, not a data object. '
                    "These store configuration, not transactional data.",
                    "error",
                    "Custom Metadata Types are for configuration. For business data, use standard or custom objects.",
                )
            )
        if category == PLATFORM_EVENT:
            warnings.append(
                AntiPatternWarning(
                    "category_mismatch",
                    obj,
                    f'Object "{obj}" is a Platform Event and cannot be queried with SOQL. '
                    "Use the EventBus for subscribing to events.",
                    "error",
                )
            )
    return warnings


__all__ = [
    "categorize_object",
    "detect_intent",
    "detect_anti_patterns",
    "EXCLUDED_CATEGORIES",
    "BUSINESS_CORE",
    "CUSTOM",
    "SYSTEM",
    "SYSTEM_DERIVED",
    "PLATFORM_EVENT",
    "CUSTOM_METADATA",
]
