from datetime import datetime
import itertools
import threading
import unittest

from rulebridge.engine.reference import ReferenceEngine
from rulebridge.errors import ExecutionError
from rulebridge.execution.executor import RuleSessionExecutor
from rulebridge.execution.locks import ReadWriteLock
from rulebridge.execution.store import KnowledgeBaseStore
from rulebridge.facts.base import PropertyBagFact
from rulebridge.schema.registry import TypeRegistry


COUNTER_RULES = """
package counting;

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


class _FakeSession:
    _ids = itertools.count(100)

    def __init__(self, facts=(), fail_on_dispose: bool = False) -> None:
        self.id = next(self._ids)
        self.facts = list(facts)
        self.disposals = 0
        self.fail_on_dispose = fail_on_dispose

    def insert(self, fact):
        self.facts.append(fact)
        return fact

    def fire_all_rules(self, max_firings=None) -> int:
        return 0

    def get_objects(self):
        return list(self.facts)

    def get_fact_handles(self):
        return list(self.facts)

    def delete(self, handle) -> None:
        self.facts.remove(handle)

    def fact_count(self) -> int:
        return len(self.facts)

    def dispose(self) -> None:
        self.disposals += 1
        if self.fail_on_dispose:
            raise RuntimeError("dispose failed")


class _FakeContainer:
    release_id = "test:kb:1"

    def new_session(self):
        return _FakeSession()


class TestKnowledgeBaseStore(unittest.TestCase):
    def test_concurrent_stores_leave_one_live_session(self) -> None:
        store = KnowledgeBaseStore()
        sessions = [_FakeSession() for _ in range(16)]
        start = threading.Barrier(len(sessions))

        def worker(index: int) -> None:
            start.wait()
            store.store(f"kb{index}", _FakeContainer(), sessions[index])

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(len(sessions))]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        live = [session for session in sessions if session.disposals == 0]
        self.assertEqual(len(live), 1)
        self.assertTrue(all(session.disposals <= 1 for session in sessions))
        self.assertEqual(sum(session.disposals for session in sessions), len(sessions) - 1)
        self.assertEqual(store.get_info().session_id, live[0].id)

    def test_info_and_clear_facts(self) -> None:
        store = KnowledgeBaseStore()
        self.assertIsNone(store.get_info())
        self.assertFalse(store.has_knowledge_base())
        store.store("rules", _FakeContainer(), _FakeSession(["a", "b"]), "unit test")

        info = store.get_info()
        self.assertEqual(info.fact_count, 2)
        payload = info.to_dict()
        self.assertEqual(payload["name"], "rules")
        self.assertEqual(payload["releaseId"], "test:kb:1")
        self.assertEqual(payload["sourceDescription"], "unit test")
        self.assertTrue(payload["sessionActive"])
        self.assertIsNotNone(datetime.fromisoformat(payload["createdAt"]).tzinfo)

        self.assertEqual(store.clear_facts(), 2)
        self.assertEqual(store.get_info().fact_count, 0)

    def test_store_without_session(self) -> None:
        store = KnowledgeBaseStore()
        store.store("empty", _FakeContainer(), None)
        self.assertTrue(store.has_knowledge_base())
        self.assertFalse(store.has_session())
        info = store.get_info()
        self.assertEqual((info.session_id, info.fact_count), (-1, 0))
        self.assertFalse(info.session_active)
        self.assertEqual(store.clear_facts(), 0)
        with self.assertRaises(ExecutionError) as ctx:
            store.run(["x"])
        self.assertEqual(ctx.exception.phase, "run")

    def test_failed_dispose_still_installs_new_session(self) -> None:
        store = KnowledgeBaseStore()
        store.store("first", _FakeContainer(), _FakeSession(fail_on_dispose=True))
        with self.assertRaises(RuntimeError):
            store.store("second", _FakeContainer(), _FakeSession())
        self.assertEqual(store.get_info().name, "second")

    def test_storing_the_installed_session_again_keeps_it_alive(self) -> None:
        store = KnowledgeBaseStore()
        session = _FakeSession(["a"])
        store.store("rules", _FakeContainer(), session)
        store.store("renamed", _FakeContainer(), session, "same session")
        self.assertEqual(session.disposals, 0)
        info = store.get_info()
        self.assertEqual((info.name, info.session_id), ("renamed", session.id))
        self.assertTrue(info.session_active)
        self.assertEqual(store.clear_facts(), 1)

    def test_dispose(self) -> None:
        store = KnowledgeBaseStore()
        session = _FakeSession()
        store.store("rules", _FakeContainer(), session)
        store.dispose()
        self.assertEqual(session.disposals, 1)
        self.assertFalse(store.has_knowledge_base())
        store.dispose()

    def test_build_and_run_keep_the_session_open(self) -> None:
        registry = TypeRegistry()
        executor = RuleSessionExecutor(ReferenceEngine(registry), registry=registry)
        store = KnowledgeBaseStore()
        info = store.build(executor, "counting", COUNTER_RULES, "counter rules")
        self.assertTrue(info.release_id.startswith("rulebridge:counting:"))
        self.assertEqual(info.fact_count, 0)

        result = store.run([PropertyBagFact("Counter", {"count": 0})])
        self.assertEqual(result.fired, 10)
        self.assertEqual(store.get_info().fact_count, 1)

        results = store.run_batches(
            [[PropertyBagFact("Counter", {"count": 0})], [PropertyBagFact("Counter", {"count": 8})]]
        )
        self.assertEqual([item.fired for item in results], [10, 2])
        self.assertEqual([len(item.facts) for item in results], [1, 1])


class TestReadWriteLock(unittest.TestCase):
    def test_unmatched_release(self) -> None:
        lock = ReadWriteLock()
        with self.assertRaises(RuntimeError):
            lock.release_read()
        with self.assertRaises(RuntimeError):
            lock.release_write()

    def test_readers_share_and_writer_excludes(self) -> None:
        lock = ReadWriteLock()
        lock.acquire_read()
        lock.acquire_read()
        lock.release_read()
        lock.release_read()

        entered = threading.Event()

        def reader() -> None:
            with lock.read_locked():
                entered.set()

        with lock.write_locked():
            thread = threading.Thread(target=reader)
            thread.start()
            self.assertFalse(entered.wait(0.05))
        self.assertTrue(entered.wait(1.0))
        thread.join()


if __name__ == "__main__":
    unittest.main()
