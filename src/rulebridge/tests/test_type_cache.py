import os
from pathlib import Path
import tempfile
import unittest
from unittest import mock

from rulebridge.api import RuleBridge
from rulebridge.config import RuntimeConfig
from rulebridge.schema.cache import (
    cache_type_definitions,
    clear_type_cache,
    load_type_definitions_from_cache,
    type_cache_dir,
)
from rulebridge.schema.registry import TypeRegistry


TYPES = """
package shop;

declare Customer
    name : String @key
end

declare Order
    orderId : String @key
    customer : Customer
    total : double = 0.0
end
"""


class TestTypeCache(unittest.TestCase):
    def test_persist_and_restore_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            registry = TypeRegistry()
            registry.load_from_source(TYPES)
            self.assertEqual(registry.persist(tmp), 2)

            restored = TypeRegistry()
            self.assertEqual(restored.restore(tmp), 2)
            self.assertEqual(sorted(restored.names()), ["Customer", "Order"])
            order = restored.require("Order")
            self.assertEqual(order.package, "shop")
            self.assertEqual(order, registry.require("Order"))
            self.assertEqual(order.get_field("customer").ref_type, "Customer")

            self.assertEqual(clear_type_cache(tmp), 2)
            self.assertEqual(TypeRegistry().restore(tmp), 0)

    def test_persist_drops_removed_types(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            registry = TypeRegistry()
            registry.load_from_source(TYPES)
            registry.persist(tmp)
            self.assertTrue(registry.remove("Order"))
            self.assertEqual(registry.persist(tmp), 1)

            restored = TypeRegistry()
            self.assertEqual(restored.restore(tmp), 1)
            self.assertEqual(restored.names(), ["Customer"])

            self.assertEqual(cache_type_definitions([registry.require("Customer")], tmp), 1)
            self.assertEqual(len(load_type_definitions_from_cache(tmp)), 1)

    def test_cache_dir_from_environment(self) -> None:
        with mock.patch.dict(os.environ, {"RULEBRIDGE_TYPE_CACHE_DIR": "/srv/types"}):
            self.assertEqual(type_cache_dir(), Path("/srv/types"))
        self.assertEqual(type_cache_dir("/explicit"), Path("/explicit"))

    def test_facade_uses_configured_cache_dir(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            bridge = RuleBridge(RuntimeConfig(cache_dir=tmp))
            bridge.load_types(TYPES)
            self.assertEqual(bridge.persist_types(), 2)

            other = RuleBridge(RuntimeConfig(cache_dir=tmp))
            self.assertEqual(other.restore_types(), 2)
            self.assertIn("declare Order", other.render_types(["Order"]))


if __name__ == "__main__":
    unittest.main()
