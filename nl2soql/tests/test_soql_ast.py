import unittest

from nl2soql.pipeline.errors import QueryParseError
from nl2soql.pipeline.soql_ast import (
    BoolExpr,
    Comparison,
    FieldExpr,
    FunctionExpr,
    Literal,
    NotExpr,
    ParsedQueryAst,
    extract_soql_block,
    has_operator,
    map_comparisons,
    parse_soql,
    semi_joins,
    tokenize_soql,
    where_comparisons,
)


class ParseTests(unittest.TestCase):
    def test_parses_clauses(self):
        ast = parse_soql(
            "SELECT Id, Name, Account.Name FROM Contact "
            "WHERE Email != null AND CreatedDate = LAST_N_DAYS:30 "
            "ORDER BY Name DESC NULLS LAST LIMIT 10 OFFSET 5"
        )

        self.assertEqual(ast.main_object, "Contact")
        self.assertEqual(ast.fields, ("Id", "Name", "Account.Name"))
        self.assertEqual([(p.path, p.field) for p in ast.parent_lookups], [("Account", "Name")])
        self.assertEqual(ast.limit, 10)
        self.assertEqual(ast.offset, 5)
        self.assertEqual(ast.order_by[0].direction, "DESC")
        self.assertEqual(ast.order_by[0].nulls, "LAST")
        comparisons = where_comparisons(ast.where)
        self.assertEqual([c.operator for c in comparisons], ["!=", "="])
        self.assertEqual(comparisons[0].value.kind, "null")
        self.assertEqual(comparisons[1].value.kind, "date_literal")

    def test_aggregates_and_group_by(self):
        ast = parse_soql("SELECT Industry, COUNT(Id) cnt FROM Account GROUP BY Industry HAVING COUNT(Id) > 2")

        self.assertEqual(len(ast.aggregates), 1)
        agg = ast.aggregates[0]
        self.assertEqual(agg.function, "COUNT")
        self.assertEqual(agg.alias, "cnt")
        self.assertEqual(agg.signature(), "count(id)")
        self.assertEqual([g.name for g in ast.group_by], ["Industry"])
        self.assertEqual(ast.having.function, "COUNT")

    def test_transparent_functions_sign_as_their_argument(self):
        fn = FunctionExpr("toLabel", ("StageName",))
        self.assertEqual(fn.signature(), "stagename")
        nested = FunctionExpr("SUM", (FunctionExpr("convertCurrency", ("Amount",)),))
        self.assertEqual(nested.signature(), "sum(amount)")
        self.assertEqual(nested.field, "Amount")

    def test_child_subqueries_and_typeof(self):
        ast = parse_soql(
            "SELECT Id, (SELECT LastName FROM Contacts), "
            "TYPEOF What WHEN Account THEN Name, Industry WHEN Opportunity THEN Amount ELSE Name END "
            "FROM Task"
        )

        self.assertEqual([(s.relationship_name, s.fields) for s in ast.subqueries], [("Contacts", ("LastName",))])
        typeof = ast.typeof_clauses[0]
        self.assertEqual(typeof.field, "What")
        self.assertEqual([b.object_type for b in typeof.branches], ["Account", "Opportunity"])
        self.assertEqual(typeof.branches[0].fields, ("Name", "Industry"))
        self.assertEqual(typeof.else_fields, ("Name",))
        self.assertEqual(ast.fields, ("Id",))

    def test_semi_joins_and_set_operators(self):
        ast = parse_soql(
            "SELECT Id FROM Account WHERE Id IN (SELECT AccountId FROM Opportunity WHERE StageName = 'Closed Won') "
            "AND Industry NOT IN ('Retail', 'Finance')"
        )

        joins = semi_joins(ast.where)
        self.assertEqual(len(joins), 1)
        self.assertEqual(joins[0].value.main_object, "Opportunity")
        industry = where_comparisons(ast.where)[-1]
        self.assertEqual(industry.operator, "NOT IN")
        self.assertEqual([lit.value for lit in industry.value], ["Retail", "Finance"])

    def test_not_and_nested_boolean_conditions(self):
        ast = parse_soql("SELECT Id FROM Case WHERE NOT (Status = 'Closed' OR Priority = 'Low') AND IsClosed = false")

        self.assertIsInstance(ast.where, BoolExpr)
        self.assertIsInstance(ast.where.operands[0], NotExpr)
        self.assertTrue(has_operator(ast.where, {"OR"}))
        self.assertFalse(has_operator(ast.where, {"!="}))
        self.assertIs(where_comparisons(ast.where)[-1].value.value, False)

    def test_parse_reports_errors_instead_of_raising(self):
        ast, errors = ParsedQueryAst.parse("SELECT Id FROM")
        self.assertIsNone(ast)
        self.assertTrue(errors)

        ast, errors = ParsedQueryAst.parse("   ")
        self.assertIsNone(ast)
        self.assertEqual(errors, ["empty query"])

    def test_parse_soql_raises_with_position(self):
        with self.assertRaises(QueryParseError) as ctx:
            parse_soql("SELECT Id FROM Account LIMIT ten")
        self.assertIsNotNone(ctx.exception.position)


class RenderTests(unittest.TestCase):
    def test_render_normalises_whitespace(self):
        ast = parse_soql("SELECT   Id,Name\nFROM Account\nWHERE Industry = 'Technology'  LIMIT 5;")

        self.assertEqual(ast.render(), "SELECT Id, Name FROM Account WHERE Industry = 'Technology' LIMIT 5")

    def test_render_is_stable_under_reparse(self):
        text = (
            "SELECT Id, (SELECT Id FROM Contacts) FROM Account "
            "WHERE (Industry = 'Technology' OR Industry = 'Finance') AND AnnualRevenue > 1000000 "
            "ORDER BY Name ASC LIMIT 50"
        )
        once = parse_soql(text).render()
        self.assertEqual(parse_soql(once).render(), once)
        self.assertIn("(Industry = 'Technology' OR Industry = 'Finance') AND AnnualRevenue > 1000000", once)

    def test_map_comparisons_rewrites_without_mutating(self):
        ast = parse_soql("SELECT Id FROM Contact WHERE Accnt.Name = 'Acme' AND Email != null")

        def _swap(cmp: Comparison) -> Comparison:
            return Comparison("Account.Name", cmp.operator, cmp.value) if cmp.field == "Accnt.Name" else cmp

        rewritten = map_comparisons(ast.where, _swap)

        self.assertEqual(rewritten.render(), "Account.Name = 'Acme' AND Email != null")
        self.assertEqual(ast.where.render(), "Accnt.Name = 'Acme' AND Email != null")


def test_literal_values():
    assert Literal("'O\\'Brien'", "string").value == "O'Brien"
    assert Literal("42", "number").value == 42
    assert Literal("1.5", "number").value == 1.5
    assert Literal("TRUE", "boolean").value is True
    assert Literal("NULL", "null").value is None


def test_boolean_and_null_literals_keep_their_spelling():
    ast = parse_soql("SELECT Id FROM Contact WHERE IsDeleted = false AND Email != null")

    values = [c.value for c in where_comparisons(ast.where)]
    assert [(v.raw, v.kind, v.value) for v in values] == [("false", "boolean", False), ("null", "null", None)]
    assert ast.where.render() == "IsDeleted = false AND Email != null"


def test_tokenizer_keeps_dotted_paths_and_date_literals():
    kinds = [(t.kind, t.text) for t in tokenize_soql("Account.Name = 'x' AND CloseDate > 2024-01-01")]

    assert kinds == [
        ("ident", "Account.Name"),
        ("op", "="),
        ("string", "'x'"),
        ("ident", "AND"),
        ("ident", "CloseDate"),
        ("op", ">"),
        ("datetime", "2024-01-01"),
    ]


def test_field_alias_renders():
    assert FieldExpr("Name", "n").render() == "Name n"


def test_extract_soql_block_from_model_output():
    text = "Here is the query:\n```sql\nSELECT Id\n  FROM Account\n  LIMIT 5;\n```\nThanks"

    assert extract_soql_block(text) == "SELECT Id FROM Account LIMIT 5"
    assert extract_soql_block("select Name from Lead") == "select Name from Lead"
