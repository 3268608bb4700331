import gc
import threading
import time
import unittest
import weakref

from rulebridge.diagnostics import Severity
from rulebridge.errors import InputError, MaterializationError, MissingRequiredFields, SchemaError
from rulebridge.facts.base import PropertyBagFact
from rulebridge.facts.compiled import (
    CompiledFact,
    CompiledTypeCache,
    FactPopulationWarning,
    compile_fact_class,
)
from rulebridge.facts.detect import ChainedDetector, KeyPatternDetector
from rulebridge.facts.materializer import FactMaterializer
from rulebridge.schema.definitions import FieldDefinition
from rulebridge.schema.registry import TypeRegistry


TYPES = """
declare Person
    name : String @key
    age : Integer @key
    adult : Boolean = false
    address : Address
end

declare Address
    city : String
    zip : String
end

declare Order
    orderId : String @key
    amount : double
    lines : java.util.List
end
"""


def _registry() -> TypeRegistry:
    registry = TypeRegistry()
    registry.load_from_source(TYPES)
    return registry


class TestFactMaterializer(unittest.TestCase):
    def test_absent_optional_field_gets_declared_default(self) -> None:
        fact = FactMaterializer(_registry()).materialize("Person", {"name": "Ann", "age": 17})
        self.assertIsInstance(fact, PropertyBagFact)
        self.assertEqual(fact.type_name, "Person")
        self.assertIs(fact.get("adult"), False)
        self.assertIsNone(fact.get("address"))
        self.assertEqual(fact.describe(), "Person{name=Ann, age=17, adult=False, address=None}")

    def test_missing_required_fields_lists_exactly_the_omitted_ones(self) -> None:
        materializer = FactMaterializer(_registry())
        with self.assertRaises(MissingRequiredFields) as ctx:
            materializer.materialize("Person", {"age": 3})
        self.assertEqual(ctx.exception.fields, ["name"])
        with self.assertRaises(MissingRequiredFields) as ctx:
            materializer.materialize("Person", {"adult": True})
        self.assertEqual(ctx.exception.fields, ["name", "age"])

    def test_explicit_null_counts_as_present(self) -> None:
        materializer = FactMaterializer(_registry())
        with self.assertRaises(MissingRequiredFields) as ctx:
            materializer.materialize("Person", {"name": None})
        self.assertEqual(ctx.exception.fields, ["age"])
        fact = materializer.materialize("Person", {"name": None, "age": 3})
        self.assertIsNone(fact.get("name"))
        self.assertEqual(fact.get("age"), 3)

    def test_unknown_type(self) -> None:
        with self.assertRaises(SchemaError):
            FactMaterializer(_registry()).materialize("Ghost", {})

    def test_values_are_coerced_to_declared_kinds(self) -> None:
        materializer = FactMaterializer(_registry())
        fact = materializer.materialize(
            "Person",
            {
                "name": 7,
                "age": "42",
                "adult": "YES",
                "address": {"city": "Oslo", "zip": 150},
                "nickname": "ignored",
            },
        )
        self.assertEqual(fact.get("name"), "7")
        self.assertEqual(fact.get("age"), 42)
        self.assertIs(fact.get("adult"), True)
        address = fact.get("address")
        self.assertEqual(address.type_name, "Address")
        self.assertEqual(address.get("zip"), "150")
        self.assertNotIn("nickname", fact.field_names())

        order = materializer.materialize("Order", {"orderId": "o1", "amount": 3, "lines": "x"})
        self.assertEqual(order.get("amount"), 3.0)
        self.assertEqual(order.get("lines"), ["x"])

    def test_unconvertible_value_names_field_and_type(self) -> None:
        with self.assertRaisesRegex(MaterializationError, "field 'age' of type 'Person'"):
            FactMaterializer(_registry()).materialize("Person", {"name": "A", "age": "4.5"})

    def test_materialize_array_is_fail_fast_with_index(self) -> None:
        materializer = FactMaterializer(_registry())
        facts = materializer.materialize_array(
            "Order", '[{"orderId": "a"}, {"orderId": "b", "amount": 2.5}]'
        )
        self.assertEqual([fact.get("orderId") for fact in facts], ["a", "b"])
        with self.assertRaises(MissingRequiredFields) as ctx:
            materializer.materialize_array("Order", [{"orderId": "a"}, {"amount": 1}])
        self.assertEqual(ctx.exception.index, 1)
        self.assertIn("Element 1", str(ctx.exception))
        with self.assertRaisesRegex(MaterializationError, "Element 0"):
            materializer.materialize_array("Order", [{"orderId": "a", "amount": "lots"}])

    def test_malformed_json(self) -> None:
        materializer = FactMaterializer(_registry())
        with self.assertRaises(InputError):
            materializer.materialize_array("Order", "[{")
        with self.assertRaises(InputError):
            materializer.materialize_auto_detect('{"orderId": "a"}')

    def test_auto_detect_keeps_order_and_reports_warnings(self) -> None:
        materializer = FactMaterializer(_registry())
        result = materializer.materialize_auto_detect(
            [
                {"_type": "Order", "orderId": "o1"},
                {"name": "Bo", "age": 30},
                {"mystery": True},
                {"_type": "Person", "name": "NoAge"},
                "not an object",
                {"orderId": "o2", "amount": 1},
            ]
        )
        self.assertEqual(
            [getattr(fact, "type_name", None) for fact in result.facts],
            ["Order", "Person", None, "Order"],
        )
        self.assertEqual(result.facts[2], {"mystery": True})
        self.assertEqual(len(result.diagnostics), 3)
        self.assertTrue(all(item.severity is Severity.WARNING for item in result.diagnostics))
        self.assertIn("Element 3 skipped", result.diagnostics[1].message)

    def test_auto_detect_skip_policy(self) -> None:
        materializer = FactMaterializer(_registry(), unresolved="skip")
        result = materializer.materialize_auto_detect([{"mystery": 1}, {"_type": "Nope"}])
        self.assertEqual(result.facts, [])
        self.assertEqual(len(result.diagnostics), 2)
        self.assertIn("unknown type 'Nope'", result.diagnostics[1].message)

    def test_custom_detector(self) -> None:
        detector = ChainedDetector(KeyPatternDetector({"Address": ("city",)}))
        materializer = FactMaterializer(_registry(), detector=detector)
        result = materializer.materialize_auto_detect([{"city": "Rome", "zip": "00100"}])
        self.assertEqual(result.facts[0].type_name, "Address")
        self.assertEqual(result.diagnostics, [])

    def test_compiled_strategy_matches_property_bag(self) -> None:
        registry = _registry()
        compiled = FactMaterializer(
            registry, strategy="compiled", compiled_cache=CompiledTypeCache()
        )
        bag = FactMaterializer(registry)
        payload = {"name": "Ann", "age": 17}
        fact = compiled.materialize("Person", payload)
        self.assertIsInstance(fact, CompiledFact)
        self.assertEqual(type(fact).__name__, "Person")
        self.assertEqual(fact.name, "Ann")
        self.assertIs(fact.get("adult"), False)
        self.assertEqual(fact, bag.materialize("Person", payload))
        fact.set("age", 18)
        self.assertEqual(fact.get("age"), 18)
        with self.assertRaises(MaterializationError):
            fact.set("age", "old")
        with self.assertRaises(TypeError):
            hash(fact)

    def test_compiled_population_skips_bad_field_with_warning(self) -> None:
        definition = _registry().require("Order")
        cls = compile_fact_class(definition)
        with self.assertWarns(FactPopulationWarning):
            fact = cls.populate({"orderId": "o1", "amount": "not a number"})
        self.assertEqual(fact.get("orderId"), "o1")
        self.assertIsNone(fact.get("amount"))

    def test_reserved_field_names_stay_reachable(self) -> None:
        registry = TypeRegistry()
        registry.upsert(
            "Odd",
            None,
            [FieldDefinition.of_type("copy", "String"), FieldDefinition.of_type("_id", "int")],
        )
        fact = compile_fact_class(registry.require("Odd")).populate({"copy": "c", "_id": 4})
        self.assertEqual(fact.snapshot(), {"copy": "c", "_id": 4})


class TestCompiledTypeCache(unittest.TestCase):
    def test_concurrent_first_requests_compile_once(self) -> None:
        definition = _registry().require("Person")
        calls: list[str] = []

        def slow_compiler(item):
            calls.append(item.name)
            time.sleep(0.05)
            return compile_fact_class(item)

        cache = CompiledTypeCache(slow_compiler)
        results: list[type] = []
        lock = threading.Lock()
        start = threading.Barrier(8)

        def worker() -> None:
            start.wait()
            compiled = cache.get(definition)
            with lock:
                results.append(compiled)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(calls, ["Person"])
        self.assertEqual(len(results), 8)
        self.assertTrue(all(item is results[0] for item in results))
        self.assertEqual(cache.compilations, 1)

    def test_injected_empty_cache_is_used(self) -> None:
        cache = CompiledTypeCache()
        materializer = FactMaterializer(_registry(), strategy="compiled", compiled_cache=cache)
        fact = materializer.materialize("Address", {"city": "Oslo"})
        self.assertEqual(cache.compilations, 1)
        self.assertEqual(len(cache), 1)
        self.assertIs(cache.cached("Address"), type(fact))

    def test_bound_registry_is_not_kept_alive(self) -> None:
        cache = CompiledTypeCache()
        registry = _registry()
        cache.bind(registry)
        cache.bind(registry)
        self.assertEqual(len(registry._listeners), 1)
        ref = weakref.ref(registry)
        del registry
        gc.collect()
        self.assertIsNone(ref())

        fresh = _registry()
        FactMaterializer(fresh, strategy="compiled", compiled_cache=cache).materialize(
            "Address", {"city": "Oslo"}
        )
        fresh.remove("Address")
        self.assertIsNone(cache.cached("Address"))

    def test_redefinition_invalidates_cached_class(self) -> None:
        registry = _registry()
        cache = CompiledTypeCache()
        materializer = FactMaterializer(registry, strategy="compiled", compiled_cache=cache)
        first = type(materializer.materialize("Order", {"orderId": "a"}))
        self.assertIs(cache.cached("Order"), first)

        registry.upsert("Order", None, [FieldDefinition.of_type("amount", "String")])
        self.assertIsNone(cache.cached("Order"))
        fact = materializer.materialize("Order", {"amount": "a lot"})
        self.assertIsNot(type(fact), first)
        self.assertEqual(fact.get("amount"), "a lot")

    def test_compilation_overtaken_by_invalidation_is_not_cached(self) -> None:
        definition = _registry().require("Address")

        def racing_compiler(item):
            cache.invalidate(item.name)
            return compile_fact_class(item)

        cache = CompiledTypeCache(racing_compiler)
        compiled = cache.get(definition)
        self.assertTrue(issubclass(compiled, CompiledFact))
        self.assertIsNone(cache.cached("Address"))
        self.assertEqual(len(cache), 0)


if __name__ == "__main__":
    unittest.main()
