import asyncio
import unittest

from aiohttp import web
from aiohttp.test_utils import TestServer

from signal_scanner.clients.yahoo_client import MarketDataGateway, parse_chart, parse_search
from signal_scanner.core.catalog import Catalog
from signal_scanner.core.config import Settings
from signal_scanner.core.errors import (
    GatewayTimeoutError,
    NetworkError,
    RateLimitedError,
    UpstreamFormatError,
)
from signal_scanner.core.models import InstrumentMetadata, LogStatus, ScanLogEntry, ScanMode
from signal_scanner.core.orchestrator import ScanOrchestrator
from signal_scanner.core.rate_limiter import FixedIntervalGate
from signal_scanner.db.cache_store import MemoryCacheStore
from signal_scanner.db.scan_cache import ScanCache

from support import chart_payload, rising

SLOW = "slow"


class ParseChartTests(unittest.TestCase):
    def test_partial_bars_dropped(self):
        points = parse_chart(chart_payload(rising(30), gaps=(3, 7)))
        self.assertEqual(len(points), 28)

    def test_bars_sorted_by_time(self):
        payload = chart_payload(rising(5))
        result = payload["chart"]["result"][0]
        result["timestamp"].reverse()
        for values in result["indicators"]["quote"][0].values():
            values.reverse()
        points = parse_chart(payload)
        self.assertEqual([p.close for p in points], rising(5))

    def test_unexpected_shape(self):
        for payload in ({"foo": 1}, [], {"chart": {"result": [{"timestamp": [1]}]}}):
            with self.assertRaises(UpstreamFormatError):
                parse_chart(payload)

    def test_no_result(self):
        with self.assertRaises(UpstreamFormatError) as ctx:
            parse_chart({"chart": {"result": None, "error": {"code": "Not Found"}}})
        self.assertIn("Not Found", str(ctx.exception))

    def test_no_complete_bars(self):
        with self.assertRaises(UpstreamFormatError):
            parse_chart(chart_payload(rising(3), gaps=(0, 1, 2)))

    def test_search_keeps_equities_and_etfs(self):
        results = parse_search({"quotes": [
            {"symbol": "RY.TO", "shortname": "Royal Bank", "exchDisp": "Toronto", "quoteType": "EQUITY"},
            {"symbol": "XIU.TO", "longname": "iShares S&P/TSX 60", "quoteType": "ETF"},
            {"symbol": "^GSPTSE", "shortname": "S&P/TSX", "quoteType": "INDEX"},
            {"symbol": "RYM", "quoteType": "MUTUALFUND"},
        ]})
        self.assertEqual([r.symbol for r in results], ["RY.TO", "XIU.TO"])
        self.assertEqual(results[1].name, "iShares S&P/TSX 60")
        self.assertEqual(results[1].exchange, "Unknown")
        self.assertEqual(parse_search({"unexpected": True}), [])


class GatewayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.charts = {}
        self.relays = {"r1": (200, None), "r2": (200, None)}
        self.hits = []

        app = web.Application()
        app.router.add_get("/chart/{symbol}", self.chart_handler)
        app.router.add_get("/search", self.search_handler)
        app.router.add_get("/relay/{name}", self.relay_handler)
        self.server = TestServer(app)
        await self.server.start_server()
        self.gateways = []

    async def asyncTearDown(self):
        for gateway in self.gateways:
            await gateway.close()
        await self.server.close()

    async def respond(self, outcome):
        status, body = outcome
        if status == SLOW:
            await asyncio.sleep(0.5)
            status = 200
        if body is None:
            body = chart_payload(rising(30))
        if isinstance(body, str):
            return web.Response(text=body, status=status)
        return web.json_response(body, status=status)

    async def chart_handler(self, request):
        symbol = request.match_info["symbol"]
        self.hits.append(("direct", symbol))
        self.assertEqual(request.query["range"], "6mo")
        self.assertEqual(request.query["interval"], "1d")
        return await self.respond(self.charts.get(symbol, (200, None)))

    async def search_handler(self, request):
        self.hits.append(("search", request.query["q"]))
        return web.json_response({"quotes": [
            {"symbol": "RY.TO", "shortname": "Royal Bank", "exchDisp": "Toronto", "quoteType": "EQUITY"},
            {"symbol": "RY-OPT", "quoteType": "OPTION"},
        ]})

    async def relay_handler(self, request):
        name = request.match_info["name"]
        self.hits.append((name, request.query["url"]))
        return await self.respond(self.relays[name])

    def gateway(self, **overrides):
        settings = dict(
            chart_base_url=str(self.server.make_url("/chart")),
            search_base_url=str(self.server.make_url("/search")),
            relays=[
                ("r1", str(self.server.make_url("/relay/r1")) + "?url={url}"),
                ("r2", str(self.server.make_url("/relay/r2")) + "?url={url}"),
            ],
            request_timeout=0.2,
        )
        settings.update(overrides)
        gateway = MarketDataGateway(Settings(**settings))
        self.gateways.append(gateway)
        return gateway

    # direct route

    async def test_direct_fetch(self):
        self.charts["XIU.TO"] = (200, chart_payload(rising(30), gaps=(3, 7)))
        entry = ScanLogEntry(id=1, symbol="XIU")
        points = await self.gateway().fetch_series_logged("XIU.TO", entry)

        self.assertEqual(len(points), 28)
        self.assertEqual(self.hits, [("direct", "XIU.TO")])
        self.assertEqual(entry.route_used, "direct")
        self.assertFalse(entry.used_fallback_route)
        self.assertEqual(entry.http_status, 200)
        self.assertEqual(entry.bar_count, 28)
        self.assertGreater(entry.response_bytes, 0)
        self.assertGreaterEqual(entry.duration_ms, 0)
        # the caller decides the final status
        self.assertEqual(entry.status, LogStatus.PENDING)

    async def test_direct_rate_limited(self):
        self.charts["XIU.TO"] = (429, {"error": "slow down"})
        entry = ScanLogEntry(id=1, symbol="XIU")
        with self.assertRaises(RateLimitedError):
            await self.gateway().fetch_series_logged("XIU.TO", entry)
        self.assertEqual(entry.http_status, 429)
        self.assertTrue(entry.note)

    async def test_direct_http_error(self):
        self.charts["XIU.TO"] = (500, "boom")
        with self.assertRaises(NetworkError) as ctx:
            await self.gateway().fetch_series("XIU.TO")
        self.assertNotIsInstance(ctx.exception, RateLimitedError)
        self.assertEqual(ctx.exception.http_status, 500)

    async def test_non_json_body(self):
        self.charts["XIU.TO"] = (200, "<html>captcha</html>")
        with self.assertRaises(UpstreamFormatError):
            await self.gateway().fetch_series("XIU.TO")

    async def test_direct_timeout(self):
        self.charts["XIU.TO"] = (SLOW, None)
        entry = ScanLogEntry(id=1, symbol="XIU")
        with self.assertRaises(GatewayTimeoutError):
            await self.gateway().fetch_series_logged("XIU.TO", entry)
        self.assertIn("timed out", entry.note)

    async def test_connection_refused(self):
        gateway = self.gateway(chart_base_url="http://127.0.0.1:9/chart")
        with self.assertRaises(NetworkError):
            await gateway.fetch_series("XIU.TO")

    # relay route

    async def test_relay_fetch(self):
        entry = ScanLogEntry(id=1, symbol="XIU")
        points = await self.gateway(route_mode="relay").fetch_series_logged("XIU.TO", entry)
        self.assertEqual(len(points), 30)
        self.assertEqual(len(self.hits), 1)
        name, target = self.hits[0]
        self.assertEqual(name, "r1")
        self.assertIn("/chart/XIU.TO?range=6mo", target)
        self.assertEqual(entry.route_used, "r1")
        self.assertFalse(entry.used_fallback_route)

    async def test_relay_falls_back_in_order(self):
        self.relays["r1"] = (500, "bad gateway")
        entry = ScanLogEntry(id=1, symbol="XIU")
        await self.gateway(route_mode="relay").fetch_series_logged("XIU.TO", entry)
        self.assertEqual([h[0] for h in self.hits], ["r1", "r2"])
        self.assertEqual(entry.route_used, "r2")
        self.assertTrue(entry.used_fallback_route)

    async def test_relay_rate_limit_stops_immediately(self):
        self.relays["r1"] = (429, "too many requests")
        entry = ScanLogEntry(id=1, symbol="XIU")
        with self.assertRaises(RateLimitedError):
            await self.gateway(route_mode="relay").fetch_series_logged("XIU.TO", entry)
        self.assertEqual([h[0] for h in self.hits], ["r1"])
        self.assertEqual(entry.http_status, 429)

    async def test_throttled_relay_in_a_scan(self):
        self.relays["r1"] = (429, "too many requests")
        catalog = Catalog([], [InstrumentMetadata(symbol="XYZ", provider_symbol="XYZ", name="XYZ Corp")])
        orch = ScanOrchestrator(
            self.gateway(route_mode="relay"), ScanCache(MemoryCacheStore()), catalog=catalog, gate=FixedIntervalGate(0),
        )
        state = await orch.run_scan(ScanMode.SMALL)
        self.assertEqual(state.failed_symbols, ["XYZ"])
        self.assertEqual([h[0] for h in self.hits], ["r1"])
        [entry] = orch.log_entries()
        self.assertEqual(entry.status, LogStatus.THROTTLED)
        self.assertEqual(entry.route_used, "r1")

    async def test_all_relays_fail(self):
        self.relays = {"r1": (500, "x"), "r2": (503, "y")}
        entry = ScanLogEntry(id=1, symbol="XIU")
        with self.assertRaises(NetworkError) as ctx:
            await self.gateway(route_mode="relay").fetch_series_logged("XIU.TO", entry)
        self.assertNotIsInstance(ctx.exception, GatewayTimeoutError)
        self.assertEqual(entry.route_used, "r2")
        self.assertIn("r1: HTTP 500", entry.note)

    async def test_all_relays_time_out(self):
        self.relays = {"r1": (SLOW, None), "r2": (SLOW, None)}
        with self.assertRaises(GatewayTimeoutError):
            await self.gateway(route_mode="relay").fetch_series("XIU.TO")

    # search

    async def test_search(self):
        results = await self.gateway().search("royal bank")
        self.assertEqual([r.symbol for r in results], ["RY.TO"])
        self.assertEqual(self.hits, [("search", "royal bank")])

    async def test_blank_search_skips_network(self):
        self.assertEqual(await self.gateway().search("   "), [])
        self.assertEqual(self.hits, [])


if __name__ == "__main__":
    unittest.main()
