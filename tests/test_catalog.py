import unittest
from datetime import date, datetime, timezone

from signal_scanner.core.catalog import Catalog
from signal_scanner.core.fallback import generate_fallback_series
from signal_scanner.core.models import ScanMode


class CatalogTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.catalog = Catalog.load()

    def test_packaged_catalog(self):
        self.assertEqual(len(self.catalog.tracked), 12)
        self.assertGreater(len(self.catalog.universe), 50)
        self.assertTrue(all(m.mer > 0 for m in self.catalog.tracked))

    def test_mode_sizes(self):
        small = self.catalog.scan_universe(ScanMode.SMALL)
        medium = self.catalog.scan_universe(ScanMode.MEDIUM)
        self.assertEqual(len(small), 20)
        self.assertEqual(len(medium), 50)
        self.assertEqual(medium[:20], small)

    def test_full_mode_includes_tracked_once(self):
        full = self.catalog.scan_universe("full")
        symbols = [m.symbol for m in full]
        self.assertEqual(len(symbols), len(set(symbols)))
        for m in self.catalog.tracked:
            self.assertIn(m.symbol, symbols)

    def test_lookup_by_either_symbol(self):
        self.assertEqual(self.catalog.get("XIU.TO").symbol, "XIU")
        self.assertEqual(self.catalog.get("RY").provider_symbol, "RY.TO")
        self.assertIsNone(self.catalog.get("NOPE"))

    def test_from_dict(self):
        catalog = Catalog.from_dict({
            "modes": {"small": 1},
            "universe": [
                {"symbol": "A", "provider_symbol": "A.TO", "name": "Alpha", "category": "Banks"},
                {"symbol": "A", "provider_symbol": "A.TO", "name": "Alpha again"},
                {"symbol": "B", "provider_symbol": "B.TO", "name": "Beta"},
            ],
        })
        self.assertEqual([m.symbol for m in catalog.universe], ["A", "B"])
        self.assertEqual(catalog.universe[0].description, "Alpha: Banks")
        self.assertEqual(len(catalog.scan_universe(ScanMode.SMALL)), 1)
        self.assertEqual(catalog.tracked, [])

    def test_empty_catalog(self):
        self.assertEqual(Catalog.from_dict({}).scan_universe(ScanMode.FULL), [])


class FallbackSeriesTests(unittest.TestCase):
    TODAY = date(2024, 6, 28)

    def test_deterministic(self):
        a = generate_fallback_series("XEQT", today=self.TODAY)
        b = generate_fallback_series("XEQT", today=self.TODAY)
        self.assertEqual(a, b)
        self.assertNotEqual(a, generate_fallback_series("ZAG", today=self.TODAY))

    def test_weekday_bars_only(self):
        points = generate_fallback_series("XIU", today=self.TODAY)
        self.assertGreater(len(points), 120)
        self.assertEqual(points[-1].date, "2024-06-28")
        for p in points:
            moment = datetime.fromtimestamp(p.timestamp, tz=timezone.utc)
            self.assertLess(moment.weekday(), 5)
            self.assertEqual(moment.hour, 16)
            self.assertEqual(moment.date().isoformat(), p.date)

    def test_prices_are_sane(self):
        points = generate_fallback_series("TEC", today=self.TODAY)
        timestamps = [p.timestamp for p in points]
        self.assertEqual(timestamps, sorted(timestamps))
        for p in points:
            self.assertGreater(p.close, 0)
            self.assertGreaterEqual(p.high, p.close)
            self.assertLessEqual(p.low, p.close)
            self.assertGreater(p.volume, 0)


if __name__ == "__main__":
    unittest.main()
