import unittest

from rulebridge.errors import SchemaConflict, SchemaError
from rulebridge.schema.definitions import FieldDefinition, FieldKind
from rulebridge.schema.registry import TypeRegistry


PERSON_SOURCE = """
package com.example.people;

declare Person
    name : String @key
    age : Integer @key
    adult : Boolean = false
end

declare Address
    @role(fact)
    street : String
    tags : java.util.List<String> = new java.util.ArrayList()
end
"""


def _shape(registry: TypeRegistry) -> dict:
    return {
        definition.name: {
            (item.name, item.kind, item.ref_type, item.default, item.required)
            for item in definition.fields
        }
        for definition in registry.definitions()
    }


class TestTypeRegistry(unittest.TestCase):
    def test_load_from_source_uses_package_statement(self) -> None:
        registry = TypeRegistry()
        self.assertEqual(registry.load_from_source(PERSON_SOURCE), 2)
        person = registry.get("Person")
        assert person is not None
        self.assertEqual(person.package, "com.example.people")
        self.assertEqual(person.field_names(), ["name", "age", "adult"])
        self.assertEqual([item.name for item in person.required_fields()], ["name", "age"])
        self.assertIs(registry.get("com.example.people.Person"), person)
        address = registry.get("Address")
        assert address is not None
        self.assertEqual(address.metadata, {"role": "fact"})
        self.assertEqual(address.get_field("tags").kind, FieldKind.LIST)

    def test_render_round_trip(self) -> None:
        registry = TypeRegistry()
        registry.load_from_source(PERSON_SOURCE)
        rendered = registry.render()
        self.assertIn("declare Person", rendered)
        self.assertIn("    name : String @key", rendered)
        self.assertIn("    adult : Boolean = false", rendered)
        self.assertIn("\n\ndeclare Address", rendered)

        reloaded = TypeRegistry()
        reloaded.load_from_source(rendered)
        self.assertEqual(_shape(reloaded), _shape(registry))
        self.assertEqual(reloaded.get("Address").metadata, {"role": "fact"})

    def test_render_subset_skips_unknown_names(self) -> None:
        registry = TypeRegistry()
        registry.load_from_source(PERSON_SOURCE)
        rendered = registry.render(["Address", "Missing"])
        self.assertTrue(rendered.startswith("declare Address"))
        self.assertNotIn("Person", rendered)
        self.assertEqual(registry.render(["Missing"]), "")

    def test_compatible_upsert_merges_fields(self) -> None:
        registry = TypeRegistry()
        first = registry.upsert("Order", None, [FieldDefinition.of_type("id", "String")])
        second = registry.upsert(
            "Order",
            None,
            [
                FieldDefinition.of_type("id", "String", required=True),
                FieldDefinition.of_type("amount", "double"),
            ],
        )
        self.assertEqual(second.field_names(), ["id", "amount"])
        # The existing field wins on overlap.
        self.assertFalse(second.get_field("id").required)
        self.assertGreater(second.revision, first.revision)

    def test_incompatible_upsert_replaces_or_raises_when_strict(self) -> None:
        registry = TypeRegistry()
        registry.upsert("Order", None, [FieldDefinition.of_type("amount", "double")])
        with self.assertRaises(SchemaConflict) as ctx:
            registry.upsert(
                "Order", None, [FieldDefinition.of_type("amount", "String")], strict=True
            )
        self.assertEqual(ctx.exception.type_name, "Order")
        self.assertEqual(registry.get("Order").get_field("amount").kind, FieldKind.DOUBLE)

        replaced = registry.upsert("Order", None, [FieldDefinition.of_type("amount", "String")])
        self.assertEqual(replaced.get_field("amount").kind, FieldKind.STRING)

    def test_identical_upsert_keeps_revision_and_is_silent(self) -> None:
        registry = TypeRegistry()
        seen: list[str] = []
        registry.add_listener(seen.append)
        stored = registry.upsert("Tag", None, [FieldDefinition.of_type("label", "String")])
        again = registry.upsert("Tag", None, [FieldDefinition.of_type("label", "String")])
        self.assertEqual(again.revision, stored.revision)
        self.assertEqual(seen, ["Tag"])

    def test_listeners_see_remove_and_clear(self) -> None:
        registry = TypeRegistry()
        registry.load_from_source(PERSON_SOURCE)
        seen: list[str] = []
        registry.add_listener(seen.append)
        self.assertTrue(registry.remove("Address"))
        self.assertFalse(registry.remove("Address"))
        registry.clear()
        self.assertEqual(seen, ["Address", "Person"])
        self.assertEqual(registry.size(), 0)

    def test_require_unknown_type(self) -> None:
        with self.assertRaisesRegex(SchemaError, "Unknown type: 'Ghost'"):
            TypeRegistry().require("Ghost")

    def test_load_from_json(self) -> None:
        registry = TypeRegistry()
        count = registry.load_from_json(
            """
            [
              {"name": "Customer", "fields": [{"name": "name", "type": "string"}]},
              {
                "name": "Order",
                "package": "shop",
                "fields": [
                  {"name": "id", "type": "string", "required": true},
                  {"name": "amount", "type": "double", "default": 0},
                  {"name": "customer", "type": "object", "objectType": "Customer"},
                  {"name": "extra", "type": "object"}
                ]
              }
            ]
            """
        )
        self.assertEqual(count, 2)
        order = registry.get("Order")
        self.assertEqual(order.package, "shop")
        self.assertTrue(order.get_field("id").required)
        self.assertEqual(order.get_field("amount").default_value(), 0)
        self.assertEqual(order.get_field("customer").kind, FieldKind.OBJECT)
        self.assertEqual(order.get_field("customer").ref_type, "Customer")
        self.assertEqual(order.get_field("extra").kind, FieldKind.MAP)

    def test_load_from_json_rejects_bad_payload(self) -> None:
        registry = TypeRegistry()
        with self.assertRaises(SchemaError):
            registry.load_from_json("{not json")
        with self.assertRaises(SchemaError):
            registry.load_from_json([{"fields": []}])

    def test_copy_and_merge(self) -> None:
        registry = TypeRegistry()
        registry.load_from_source(PERSON_SOURCE)
        clone = registry.copy()
        clone.remove("Person")
        self.assertTrue(registry.has("Person"))

        other = TypeRegistry()
        other.upsert("Invoice", None, [FieldDefinition.of_type("total", "double")])
        self.assertEqual(registry.merge(other), 1)
        self.assertEqual(registry.names(), ["Person", "Address", "Invoice"])
        self.assertIn("Invoice", registry)


if __name__ == "__main__":
    unittest.main()
