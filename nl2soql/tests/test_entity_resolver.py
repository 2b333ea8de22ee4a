import asyncio

from nl2soql.pipeline.entity_resolver import (
    CHILD_RELATIONSHIP,
    DIRECT_OBJECT,
    RELATIONSHIP_TARGET,
    EntityResolver,
    extract_missing_entities,
)
from nl2soql.pipeline.models import ValidationMessage
from nl2soql.pipeline.validation_errors import (
    is_field_not_found_error,
    is_object_not_found_error,
    is_relationship_not_found_error,
    parse_validation_error,
    render,
)
from nl2soql.tests.fakes import make_store


def _resolve(name):
    return asyncio.run(EntityResolver(make_store()).resolve(name))


def test_direct_object_names_resolve_case_insensitively():
    resolution = _resolve("opportunity")

    assert resolution.resolved_api_name == "Opportunity"
    assert resolution.resolution_type == DIRECT_OBJECT


def test_relationship_names_resolve_to_their_target():
    resolution = _resolve("Who")

    assert resolution.resolved_api_name == "Contact"
    assert resolution.resolution_type == RELATIONSHIP_TARGET
    assert resolution.relationship_info.source_object == "Task"
    assert resolution.relationship_info.field_api_name == "WhoId"


def test_child_relationship_names_resolve_to_the_child_object():
    resolution = _resolve("Opportunities")

    assert resolution.resolved_api_name == "Opportunity"
    assert resolution.resolution_type == RELATIONSHIP_TARGET
    assert resolution.relationship_info.source_object == "Account"


def test_plural_names_fall_back_to_suffix_stripping():
    resolution = _resolve("Leads")

    assert resolution.resolved_api_name == "Lead"
    assert resolution.resolution_type == CHILD_RELATIONSHIP


def test_unknown_names_do_not_resolve():
    assert _resolve("Widgets") is None
    assert _resolve("  ") is None


def test_resolve_from_messages_skips_field_errors_and_suggestions():
    messages = [
        ValidationMessage("error", render("OBJECT_NOT_FOUND", "Leads")),
        ValidationMessage("error", render("FIELD_NOT_FOUND", "Foo", "Account")),
        ValidationMessage("correction", render("OBJECT_NOT_FOUND_WITH_SUGGESTION", "Acount", "Account")),
        render("CHILD_RELATIONSHIP_NOT_FOUND", "Cases", "Contact"),
    ]

    resolved = asyncio.run(EntityResolver(make_store()).resolve_from_messages(messages))

    assert set(resolved) == {"Leads", "Cases"}
    assert resolved["Leads"].resolved_api_name == "Lead"
    assert resolved["Cases"].resolved_api_name == "Case"


def test_extract_missing_entities():
    found = extract_missing_entities(
        [
            render("RELATIONSHIP_NOT_FOUND", "Who", "Contact") + ". Available: Account, Owner",
            render("TYPEOF_UNKNOWN_OBJECT", "Robot"),
            render("TYPEOF_FIELD_NOT_FOUND", "Email", "Lead"),
            "Query has no LIMIT clause.",
        ]
    )

    assert [(f.name, f.context) for f in found] == [("Who", "Contact"), ("Robot", None)]


def test_rendered_messages_parse_back():
    parsed = parse_validation_error(render("CHILD_RELATIONSHIP_NOT_FOUND_WITH_SUGGESTION", "Contactz", "Account", "Contacts"))
    assert parsed.key == "CHILD_RELATIONSHIP_NOT_FOUND_WITH_SUGGESTION"
    assert (parsed.name, parsed.context, parsed.suggestion) == ("Contactz", "Account", "Contacts")

    parsed = parse_validation_error(render("FIELD_NOT_FOUND_WITH_SUGGESTION", "Nmae", "Account", "Name"))
    assert (parsed.kind, parsed.suggestion) == ("field", "Name")

    assert parse_validation_error("something else entirely") is None


def test_error_kind_helpers():
    assert is_object_not_found_error(render("OBJECT_NOT_FOUND", "Foo"))
    assert is_relationship_not_found_error(render("RELATIONSHIP_NOT_FOUND", "Accnt", "Contact"))
    assert is_field_not_found_error(render("TYPEOF_FIELD_NOT_FOUND", "Email", "Lead"))
    assert not is_field_not_found_error(render("OBJECT_NOT_FOUND", "Foo"))
