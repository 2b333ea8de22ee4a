import asyncio
import re
import unittest

from nl2soql.pipeline.models import SchemaContext
from nl2soql.pipeline.prompt_format import (
    EMPTY_CONTEXT_TEXT,
    FULL,
    POLYMORPHIC_RULES,
    SKELETON,
    format_schema_for_prompt,
    has_polymorphic_fields,
    object_summary,
)
from nl2soql.pipeline.schema_context import SchemaContextBuilder
from nl2soql.pipeline.semantic_search import SemanticSearchService
from nl2soql.tests.fakes import make_store


def _context(question):
    store = make_store()
    return asyncio.run(SchemaContextBuilder(SemanticSearchService(store), store).build_context(question))


class FullModeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.context = _context("show accounts with their contacts")
        self.text = format_schema_for_prompt(self.context, FULL)

    def test_lists_fields_with_picklist_values(self):
        self.assertIn("AVAILABLE SCHEMA:", self.text)
        self.assertIn("Object: Account", self.text)
        self.assertIn("    - Industry (picklist) - Values: Finance, Healthcare, Retail, Technology", self.text)

    def test_lists_relationships_by_cost(self):
        self.assertIn("    - Account.FieldName -> access Account fields (e.g., Account.Name)", self.text)
        self.assertIn("    - (SELECT fields FROM Contacts) -> get related Contact records", self.text)
        self.assertIn("PARENT LOOKUP [LOW COST - ALWAYS PREFER]", self.text)

    def test_rule_blocks_follow_the_fields_present(self):
        self.assertIn("GUIDANCE FOR DATE FIELDS", self.text)
        self.assertNotIn("POLYMORPHIC FIELD RULES", self.text)
        self.assertIn("NEVER use 15/18-char ID literals", self.text)

    def test_skeleton_without_a_question_falls_back_to_full(self):
        self.assertEqual(format_schema_for_prompt(self.context, SKELETON, ""), self.text)


class SkeletonModeTests(unittest.TestCase):
    def test_keeps_top_fields_and_in_context_relationships(self):
        context = _context("show accounts with their contacts")

        text = format_schema_for_prompt(context, SKELETON, "show accounts with their contacts", max_fields=2)

        self.assertTrue(text.startswith("SCHEMA (Skeleton Mode):"))
        account_fields = next(line for line in text.splitlines() if line.startswith("  Fields:"))
        self.assertIn("Id(", account_fields)
        self.assertIn("Name(", account_fields)
        self.assertNotIn("Industry", account_fields)
        self.assertIn("  Children: Contacts->Contact", text)
        self.assertNotIn("Opportunities->", text)
        self.assertIn("  Parents: Account->Account", text)

    def test_question_terms_promote_matching_fields(self):
        context = _context("accounts by industry")

        text = format_schema_for_prompt(context, SKELETON, "accounts by industry", max_fields=3)

        self.assertIn("Industry(picklist:Finance|Healthcare|Retail|Technology)", text)

    def test_polymorphic_fields_get_typeof_guidance(self):
        context = _context("show tasks")
        self.assertTrue(has_polymorphic_fields(context))

        skeleton = format_schema_for_prompt(context, SKELETON, "show tasks")
        self.assertIn("WhoId(POLYMORPHIC:Who->Contact/Lead)", skeleton)
        self.assertIn(POLYMORPHIC_RULES, skeleton)

        full = format_schema_for_prompt(context, FULL)
        self.assertIn("POLYMORPHIC: Use TYPEOF Who WHEN... (Targets: Contact|Lead)", full)


def test_empty_context_text():
    assert format_schema_for_prompt(SchemaContext(), SKELETON, "anything") == EMPTY_CONTEXT_TEXT


def test_object_summary():
    summary = object_summary(_context("show accounts with their contacts").objects)

    assert re.fullmatch(r"Account\(\d+\), Contact\(\d+\)", summary)
