import unittest

from rulebridge.config import RuntimeConfig
from rulebridge.engine.reference import ReferenceEngine
from rulebridge.errors import CompilationError, ExecutionError, InputError
from rulebridge.execution.executor import ExecutionResult, RuleSessionExecutor
from rulebridge.facts.base import PropertyBagFact
from rulebridge.schema.registry import TypeRegistry


COUNTER_RULES = """
declare Counter
    count : int
end

rule "Count up"
when
    $c : Counter( count < 10 )
then
    modify($c) { setCount($c.getCount() + 1) }
end
"""

PEOPLE_RULES = """
declare Person
    name : String
    age : int
    adult : boolean = false
end

rule "Mark adults"
when
    $p : Person( age >= 18, adult == false )
then
    modify($p) { setAdult(true) }
end
"""


class _RecordingContainer:
    def __init__(self, inner) -> None:
        self.inner = inner
        self.release_id = inner.release_id
        self.sessions = []

    def new_session(self):
        session = self.inner.new_session()
        self.sessions.append(session)
        return session


def _executor(config=None) -> RuleSessionExecutor:
    registry = TypeRegistry()
    return RuleSessionExecutor(ReferenceEngine(registry), registry=registry, config=config)


class TestRuleSessionExecutor(unittest.TestCase):
    def test_max_firings_limits_activations(self) -> None:
        executor = _executor()
        counter = PropertyBagFact("Counter", {"count": 0})
        result = executor.execute(COUNTER_RULES, [counter], max_firings=3)
        self.assertEqual(result.fired, 3)
        self.assertEqual(counter.get("count"), 3)

        counter = PropertyBagFact("Counter", {"count": 0})
        result = executor.execute(COUNTER_RULES, [counter], max_firings=0)
        self.assertEqual(result.fired, 10)
        self.assertEqual(result.facts_of_type("Counter")[0].get("count"), 10)

    def test_watchdog_caps_unbounded_runs(self) -> None:
        executor = _executor(RuntimeConfig(firing_watchdog=4))
        counter = PropertyBagFact("Counter", {"count": 0})
        with self.assertLogs("rulebridge.execution.executor", level="WARNING"):
            result = executor.execute(COUNTER_RULES, [counter])
        self.assertEqual(result.fired, 4)
        # An explicit limit wins over the watchdog.
        result = executor.execute(COUNTER_RULES, [PropertyBagFact("Counter", {"count": 0})], 6)
        self.assertEqual(result.fired, 6)

    def test_session_is_disposed_on_success_and_failure(self) -> None:
        executor = _executor()
        source = PEOPLE_RULES + (
            '\nrule "Broken"\nwhen\n    $p : Person( )\nthen\n    insert($p.getMissing());\nend\n'
        )
        container = _RecordingContainer(executor.build_container(source))
        person = PropertyBagFact("Person", {"name": "Ann", "age": 3, "adult": False})
        with self.assertRaises(ExecutionError) as ctx:
            executor.execute_with_container(container, [person])
        self.assertEqual(ctx.exception.phase, "fire")
        self.assertIn("Cannot insert null", str(ctx.exception))
        self.assertTrue(container.sessions[0].disposed)

        container = _RecordingContainer(executor.build_container(PEOPLE_RULES))
        result = executor.execute_with_container(container, [person])
        self.assertEqual(result.fired, 0)
        self.assertTrue(container.sessions[0].disposed)

    def test_blank_source(self) -> None:
        with self.assertRaises(InputError):
            _executor().execute(" ", [])

    def test_compilation_error_carries_isolated_fault(self) -> None:
        executor = _executor()
        executor.registry.load_from_source("declare Person\n    name : String\n    age : int\nend")
        source = "\n".join(
            [
                "package demo;",
                'rule "Adults"',
                "when",
                "    $p : Person( age >= 18 )",
                "    Person( name != null",
                "then System.out.println($p.getName()); end",
            ]
        )
        with self.assertRaises(CompilationError) as ctx:
            executor.execute(source, [])
        fault = ctx.exception.fault
        self.assertIsNotNone(fault)
        self.assertEqual(fault.line_number, 5)
        self.assertIn("Error at line 5", str(ctx.exception))

    def test_compilation_error_with_line_skips_isolation(self) -> None:
        executor = _executor()
        with self.assertRaises(CompilationError) as ctx:
            executor.execute("declare Broken\n    name : String\n", [])
        self.assertIsNone(ctx.exception.fault)
        self.assertEqual(ctx.exception.diagnostics[0].line, 1)

    def test_isolation_can_be_disabled(self) -> None:
        executor = _executor(RuntimeConfig(isolate_faults=False))
        self.assertIsNone(executor.isolator)
        with self.assertRaises(CompilationError) as ctx:
            executor.execute('rule "R"\nwhen\n    Ghost( )\nthen\nend', [])
        self.assertIsNone(ctx.exception.fault)
        self.assertIn("Ghost", str(ctx.exception))

    def test_execute_json_materializes_declared_types(self) -> None:
        executor = _executor()
        result = executor.execute_json(
            PEOPLE_RULES,
            '[{"name": "Ann", "age": 20}, {"_type": "Person", "name": "Bob", "age": 12},'
            ' {"unknown": 1}]',
        )
        self.assertIsInstance(result, ExecutionResult)
        self.assertTrue(executor.registry.has("Person"))
        self.assertEqual(result.fired, 1)
        self.assertEqual(len(result.diagnostics), 1)

        payload = result.to_dict()
        self.assertEqual(payload["executionStatus"], "success")
        self.assertEqual(payload["factsCount"], 3)
        self.assertEqual(payload["firedRules"], 1)
        self.assertEqual(
            payload["facts"][0],
            {
                "type": "Person",
                "fields": {"name": "Ann", "age": 20, "adult": True},
                "isDynamicObject": True,
            },
        )
        self.assertEqual(payload["facts"][2], {"type": "Map", "value": {"unknown": 1}})
        self.assertEqual(payload["diagnostics"][0]["severity"], "warning")

    def test_to_dict_for_plain_values(self) -> None:
        payload = ExecutionResult(facts=["x", 2, 2.5, True], fired=0).to_dict()
        self.assertEqual(
            [entry["type"] for entry in payload["facts"]],
            ["String", "Integer", "Double", "Boolean"],
        )
        self.assertNotIn("diagnostics", payload)


if __name__ == "__main__":
    unittest.main()
