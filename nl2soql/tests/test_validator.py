import asyncio
import unittest

from nl2soql.pipeline.graph_store import MemoryGraphStore
from nl2soql.pipeline.models import ChildRelationshipInfo
from nl2soql.pipeline.validator import SoqlValidator, find_closest_picklist_value, find_field_match
from nl2soql.tests.fakes import make_store, sample_document


class _OfflineStore(MemoryGraphStore):
    async def get_all_objects(self, org_id=None):
        raise RuntimeError("graph offline")


class _LiveMetadata:
    def __init__(self, relationships):
        self.relationships = relationships
        self.calls = 0

    async def describe_child_relationships(self, object_api_name):
        self.calls += 1
        return self.relationships


class SoqlValidatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.validator = SoqlValidator(make_store())

    def validate(self, soql, org_id=None):
        return asyncio.run(self.validator.validate(soql, org_id))

    def test_missing_limit_is_the_only_correction(self):
        result = self.validate("SELECT Id FROM Account")

        self.assertTrue(result.is_valid)
        self.assertTrue(result.was_corrected)
        self.assertEqual(len(result.corrections), 1)
        self.assertIn("LIMIT 1000", result.corrections[0].message)
        self.assertEqual(result.soql, "SELECT Id FROM Account LIMIT 1000")

    def test_tooling_object_with_or_reports_one_error_and_no_limit(self):
        result = self.validate(
            "SELECT Id FROM EntityDefinition WHERE QualifiedApiName = 'Account' OR QualifiedApiName = 'Contact'"
        )

        self.assertFalse(result.is_valid)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.corrections, [])
        self.assertIn("OR operators are not supported when querying EntityDefinition", result.errors[0].message)

    def test_valid_query_is_returned_unchanged(self):
        soql = "SELECT Id, Name, Account.Name FROM Contact WHERE Email != null LIMIT 10"
        result = self.validate(soql)

        self.assertTrue(result.is_valid)
        self.assertFalse(result.was_corrected)
        self.assertEqual(result.messages, [])
        self.assertEqual(result.soql, soql)

    def test_object_and_field_case_is_normalised(self):
        result = self.validate("SELECT id, name FROM account LIMIT 5")

        self.assertTrue(result.is_valid)
        self.assertEqual(result.soql, "SELECT Id, Name FROM Account LIMIT 5")

    def test_misspelled_object_is_corrected(self):
        result = self.validate("SELECT Id FROM Acount LIMIT 5")

        self.assertEqual(result.corrections[0].corrected, "Account")
        self.assertEqual(result.soql, "SELECT Id FROM Account LIMIT 5")

    def test_unknown_object_is_an_error(self):
        result = self.validate("SELECT Id FROM Zebra__c LIMIT 5")

        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors[0].message, 'Object "Zebra__c" not found in the metadata graph')

    def test_misspelled_field_is_corrected(self):
        result = self.validate("SELECT Id, Nmae FROM Account LIMIT 5")

        self.assertTrue(result.is_valid)
        self.assertEqual(result.corrections[0].message, 'Field "Nmae" not found on Account, using "Name"')
        self.assertEqual(result.soql, "SELECT Id, Name FROM Account LIMIT 5")

    def test_relationship_typo_in_select_is_corrected(self):
        result = self.validate("SELECT Id, Accnt.Name FROM Contact LIMIT 10")

        self.assertTrue(result.is_valid)
        self.assertEqual(result.corrections[0].message, 'Relationship "Accnt" corrected to "Account"')
        self.assertEqual(result.soql, "SELECT Id, Account.Name FROM Contact LIMIT 10")

    def test_relationship_typo_in_where_is_corrected(self):
        result = self.validate("SELECT Id FROM Contact WHERE Accnt.Name = 'Acme' LIMIT 5")

        self.assertEqual(result.corrections[0].message, 'Relationship "Accnt" in WHERE corrected to "Account"')
        self.assertEqual(result.soql, "SELECT Id FROM Contact WHERE Account.Name = 'Acme' LIMIT 5")

    def test_parent_field_typo_is_corrected(self):
        result = self.validate("SELECT Id, Account.Industri FROM Contact LIMIT 5")

        self.assertEqual(result.corrections[0].message, 'Field "Industri" corrected to "Industry" on Account')
        self.assertEqual(result.soql, "SELECT Id, Account.Industry FROM Contact LIMIT 5")

    def test_validate_parent_lookup_suggests_relationship(self):
        lookup = asyncio.run(self.validator.validate_parent_lookup("Contact", "Accnt", "Name"))

        self.assertFalse(lookup.is_valid)
        self.assertEqual(lookup.suggestion, "Account")
        self.assertIn('Did you mean "Account" (targets Account)?', lookup.error)

    def test_validate_parent_lookup_lists_available_relationships(self):
        lookup = asyncio.run(self.validator.validate_parent_lookup("Contact", "Who", "Name"))

        self.assertFalse(lookup.is_valid)
        self.assertIsNone(lookup.suggestion)
        self.assertIn("Available: Account, Owner", lookup.error)

    def test_multi_hop_parent_lookup(self):
        lookup = asyncio.run(self.validator.validate_parent_lookup("Contact", "Account.Owner", "Email"))

        self.assertTrue(lookup.is_valid)

    def test_picklist_case_mismatch_is_corrected(self):
        result = self.validate("SELECT Id FROM Account WHERE Industry = 'technology' LIMIT 5")

        self.assertTrue(result.is_valid)
        self.assertEqual(result.corrections[0].message, 'Picklist value "technology" for Industry corrected to "Technology"')
        self.assertEqual(result.soql, "SELECT Id FROM Account WHERE Industry = 'Technology' LIMIT 5")

    def test_unknown_picklist_value_is_an_error_with_suggestion(self):
        result = self.validate("SELECT Id FROM Account WHERE Industry IN ('Tech', 'Finance') LIMIT 5")

        self.assertFalse(result.is_valid)
        self.assertEqual(
            result.errors[0].message, 'Invalid picklist value "Tech" for Industry. Did you mean "Technology"?'
        )

    def test_child_subquery_checks(self):
        ok = self.validate("SELECT Id, (SELECT Id, LastName FROM Contacts) FROM Account LIMIT 5")
        self.assertEqual(ok.messages, [])

        typo = self.validate("SELECT Id, (SELECT Id FROM Contactz) FROM Account LIMIT 5")
        self.assertFalse(typo.is_valid)
        self.assertEqual(
            typo.errors[0].message, 'Child relationship "Contactz" not found on Account. Did you mean "Contacts"?'
        )

        unknown_field = self.validate("SELECT Id, (SELECT Id, Foo FROM Contacts) FROM Account LIMIT 5")
        self.assertTrue(unknown_field.is_valid)
        self.assertEqual([m.type for m in unknown_field.messages], ["warning"])

    def test_live_describe_resolves_unsynced_child_relationships(self):
        live = _LiveMetadata([ChildRelationshipInfo("Tasks", "Task", "WhatId")])
        validator = SoqlValidator(make_store(), live_metadata=live)

        messages = asyncio.run(validator.validate_subquery("Account", "Tasks", ["Id", "Subject"], "org-1"))

        self.assertEqual(messages, [])
        self.assertEqual(live.calls, 1)
        without_org = asyncio.run(validator.validate_subquery("Account", "Tasks", ["Id"]))
        self.assertEqual(without_org[0].type, "error")

    def test_aggregate_grouping_errors(self):
        result = self.validate("SELECT Industry, COUNT(Id) FROM Account LIMIT 5")

        self.assertFalse(result.is_valid)
        self.assertIn("GROUP BY", result.errors[0].message)

    def test_typeof_branches_are_checked(self):
        ok = self.validate("SELECT TYPEOF Who WHEN Contact THEN Email WHEN Lead THEN Company END FROM Task LIMIT 5")
        self.assertTrue(ok.is_valid)

        bad = self.validate("SELECT TYPEOF Who WHEN Lead THEN Email WHEN Robot THEN Name END FROM Task LIMIT 5")
        self.assertEqual(
            [m.message for m in bad.errors],
            [
                'Field "Email" not found on subtype "Lead" in TYPEOF clause',
                'Unknown object type "Robot" in TYPEOF clause',
            ],
        )

    def test_semi_join_field_is_checked(self):
        ok = self.validate("SELECT Id FROM Account WHERE Id IN (SELECT AccountId FROM Contact) LIMIT 5")
        self.assertTrue(ok.is_valid)

        bad = self.validate("SELECT Id FROM Account WHERE Id IN (SELECT AcountId FROM Contact) LIMIT 5")
        self.assertEqual(
            bad.errors[0].message,
            'Field "AcountId" not found on "Contact" in semi-join subquery. Did you mean "AccountId"?',
        )

    def test_syntax_errors_short_circuit(self):
        result = self.validate("SELECT Id FROM Account WHERE Phone IS NOT EMPTY")

        self.assertFalse(result.is_valid)
        self.assertIsNone(result.ast)
        self.assertEqual(len(result.messages), 1)

    def test_guessed_ids_short_circuit(self):
        result = self.validate("SELECT Id FROM Contact WHERE AccountId = '001000000000001' LIMIT 5")

        self.assertFalse(result.is_valid)
        self.assertIn("Do NOT guess IDs", result.errors[0].message)

    def test_unparseable_query(self):
        result = self.validate("SELECT Id FROM")

        self.assertEqual([m.message for m in result.messages], ["Could not parse SOQL query"])

    def test_store_failure_becomes_validation_error(self):
        validator = SoqlValidator(_OfflineStore.from_dict(sample_document()))

        result = asyncio.run(validator.validate("SELECT Id FROM Account"))

        self.assertFalse(result.is_valid)
        self.assertEqual(result.errors[0].message, "Validation failed: graph offline")


class EnhancedValidationTests(unittest.TestCase):
    def test_unknown_relationship_resolves_to_target_object(self):
        validator = SoqlValidator(make_store())

        enhanced = asyncio.run(validator.validate_enhanced("SELECT Id, Who.Name FROM Contact LIMIT 5"))

        self.assertFalse(enhanced.result.is_valid)
        self.assertEqual(enhanced.resolutions["Who"].resolved_api_name, "Contact")
        self.assertIn('"Who" resolves to Contact (relationship_target).', enhanced.hints)
        self.assertIsNone(enhanced.corrected_soql)

    def test_record_names_used_as_relationships_get_a_hint(self):
        validator = SoqlValidator(make_store())

        enhanced = asyncio.run(validator.validate_enhanced("SELECT Id, Acme.Name FROM Contact LIMIT 5"))

        self.assertEqual(enhanced.resolutions, {})
        self.assertTrue(any("looks like a record name" in h and "Contact.Name LIKE 'Acme%'" in h for h in enhanced.hints))

    def test_corrected_soql_is_exposed(self):
        validator = SoqlValidator(make_store())

        enhanced = asyncio.run(validator.validate_enhanced("SELECT Id FROM Account"))

        self.assertEqual(enhanced.corrected_soql, "SELECT Id FROM Account LIMIT 1000")


def test_field_match_accepts_labels():
    store = make_store()
    fields = asyncio.run(store.get_object_fields("Account"))

    assert find_field_match("Billing State", fields).corrected_name == "BillingState"
    assert find_field_match("industry", fields).corrected_name == "Industry"
    assert find_field_match("Industri", fields).suggestion == "Industry"


def test_closest_picklist_value():
    assert find_closest_picklist_value("closed w", ["Prospecting", "Closed Won"]) == "Closed Won"
    assert find_closest_picklist_value("zzzzzz", ["Prospecting", "Closed Won"]) is None
