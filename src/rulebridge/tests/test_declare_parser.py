import unittest

from rulebridge.errors import SourceSyntaxError
from rulebridge.schema.declare import parse_declarations, render_type
from rulebridge.schema.definitions import FieldKind, decode_literal, kind_for_type_text


class TestDeclareParser(unittest.TestCase):
    def test_end_inside_string_default_does_not_close_block(self) -> None:
        (note,) = parse_declarations(
            'declare Note\n    text : String = "the end"\n    weight : double = 1.5d\nend\n'
        )
        self.assertEqual(note.field_names(), ["text", "weight"])
        self.assertEqual(note.get_field("text").default_value(), "the end")
        self.assertEqual(note.get_field("weight").default_value(), 1.5)

    def test_empty_block_and_extends(self) -> None:
        empty, child = parse_declarations(
            "declare Marker\nend\n\ndeclare Manager extends com.acme.Employee\n"
            "    reports : int\nend\n"
        )
        self.assertEqual(empty.fields, ())
        self.assertEqual(child.metadata["extends"], "com.acme.Employee")
        self.assertIn("declare Manager extends com.acme.Employee", render_type(child))

    def test_qualified_declaration_name_sets_package(self) -> None:
        (item,) = parse_declarations("declare shop.Item\n    sku : String @required\nend")
        self.assertEqual(item.name, "Item")
        self.assertEqual(item.package, "shop")
        self.assertTrue(item.get_field("sku").required)

    def test_unterminated_block_reports_header_line(self) -> None:
        with self.assertRaises(SourceSyntaxError) as ctx:
            parse_declarations("package a;\ndeclare Broken\n    name : String\n")
        self.assertEqual(ctx.exception.line, 2)
        self.assertIn("missing 'end'", ctx.exception.message)

    def test_duplicate_field_is_a_syntax_error(self) -> None:
        with self.assertRaises(SourceSyntaxError) as ctx:
            parse_declarations("declare Twice\n    a : int\n    a : long\nend")
        self.assertIn("Duplicate field 'a'", ctx.exception.message)

    def test_kind_table(self) -> None:
        self.assertEqual(kind_for_type_text("java.lang.String"), (FieldKind.STRING, None))
        self.assertEqual(kind_for_type_text("short"), (FieldKind.INT, None))
        self.assertEqual(kind_for_type_text("BigInteger"), (FieldKind.LONG, None))
        self.assertEqual(kind_for_type_text("BigDecimal"), (FieldKind.DOUBLE, None))
        self.assertEqual(kind_for_type_text("Set<String>"), (FieldKind.LIST, None))
        self.assertEqual(kind_for_type_text("TreeMap<String, Integer>"), (FieldKind.MAP, None))
        self.assertEqual(
            kind_for_type_text("com.acme.Address"), (FieldKind.OBJECT, "com.acme.Address")
        )

    def test_decode_literal(self) -> None:
        self.assertIsNone(decode_literal("null"))
        self.assertEqual(decode_literal("42L"), 42)
        self.assertEqual(decode_literal("-3"), -3)
        self.assertEqual(decode_literal('"a\\tb"'), "a\tb")
        self.assertEqual(decode_literal("new HashMap()"), {})
        self.assertEqual(decode_literal("SOME_CONSTANT"), "SOME_CONSTANT")


if __name__ == "__main__":
    unittest.main()
