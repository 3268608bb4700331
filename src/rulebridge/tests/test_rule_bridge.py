import unittest

from rulebridge.api import CompiledFact, RuleBridge, RuntimeConfig, Severity


TYPES = """
declare Person
    name : String @key
    age : Integer @key
    adult : Boolean = false
end
"""

RULES = """
package people;

rule "Mark adults"
when
    $p : Person( age >= 18, adult == false )
then
    modify($p) { setAdult(true) }
end

rule "shout"
when
    Person( adult == true )
then
    System.out.println("adult");
end
"""


class TestRuleBridge(unittest.TestCase):
    def test_validate_then_execute_json(self) -> None:
        bridge = RuleBridge()
        self.assertEqual(bridge.load_types(TYPES), 1)
        findings = bridge.validate(RULES)
        self.assertEqual([item.severity for item in findings], [Severity.WARNING])
        self.assertIsNone(bridge.find_faulty_line(RULES))

        result = bridge.execute_json(RULES, [{"name": "Ann", "age": 19}, {"name": "Bo", "age": 9}])
        self.assertEqual(result.fired, 2)
        adults = [fact.get("name") for fact in result.facts_of_type("Person") if fact.get("adult")]
        self.assertEqual(adults, ["Ann"])

    def test_compiled_strategy(self) -> None:
        bridge = RuleBridge(RuntimeConfig(strategy="compiled"))
        bridge.load_types(TYPES)
        fact = bridge.materializer.materialize("Person", {"name": "Ann", "age": "40"})
        self.assertIsInstance(fact, CompiledFact)
        result = bridge.execute(RULES, [fact])
        self.assertEqual(result.fired, 2)
        self.assertIs(fact.get("adult"), True)

    def test_knowledge_base_lifecycle(self) -> None:
        bridge = RuleBridge()
        bridge.load_types(TYPES)
        info = bridge.build_knowledge_base("people", RULES, "inline")
        self.assertEqual(info.name, "people")
        self.assertTrue(bridge.store.has_session())

        person = bridge.materializer.materialize("Person", {"name": "Cy", "age": 30})
        result = bridge.store.run([person])
        self.assertEqual(result.fired, 2)
        self.assertEqual(bridge.store.get_info().fact_count, 1)
        bridge.store.dispose()
        self.assertFalse(bridge.store.has_knowledge_base())

    def test_instances_share_nothing(self) -> None:
        first, second = RuleBridge(), RuleBridge()
        first.load_types(TYPES)
        self.assertFalse(second.registry.has("Person"))
        self.assertIsNot(first.store, second.store)


if __name__ == "__main__":
    unittest.main()
