from __future__ import annotations

import importlib
import unittest


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("tradesafe")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_main_app(self):
        module = importlib.import_module("main")
        app = getattr(module, "app", None)
        self.assertIsNotNone(app)

    def test_import_order_routes_segment(self):
        module = importlib.import_module("tradesafe.segments.segment_orders")
        self.assertIsNotNone(getattr(module, "orders_bp", None))


if __name__ == "__main__":
    unittest.main()
