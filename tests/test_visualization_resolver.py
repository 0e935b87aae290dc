import asyncio
import unittest

from services.ai.chat.chat_models import ChartSpec, ChatMessage, ExtractedUserData
from services.ai.chat.errors import MarketDataError
from services.ai.chat.module_policy import OperatingMode
from services.ai.chat.visualization_resolver import VisualizationResolver
from services.ai.chat.user_data_parser import extract_user_data
from services.market.market_data_client import ASSET_NAMES, MarketSeries, OhlcPoint


def _series(symbol: str, asset_type: str, closes) -> MarketSeries:
    points = [
        OhlcPoint(time=f"2024-01-{i + 1:02d}", open=c, high=c, low=c, close=c)
        for i, c in enumerate(closes)
    ]
    return MarketSeries(
        symbol=symbol,
        asset_type=asset_type,
        name=ASSET_NAMES.get(symbol, symbol),
        points=points,
    )


class _FakeMarketData:
    def __init__(self, fail=(), slow=(), delay: float = 1.0):
        self.fail = set(fail)
        self.slow = set(slow)
        self.delay = delay
        self.calls = []

    async def fetch_series(self, symbol: str, asset_type: str, days: int) -> MarketSeries:
        self.calls.append((symbol, asset_type, days))
        if symbol in self.fail:
            raise MarketDataError(symbol, "upstream down")
        if symbol in self.slow:
            await asyncio.sleep(self.delay)
        return _series(symbol, asset_type, [100.0, 110.0, 121.0])


def _resolve(resolver, mode, *, raw_text="", structured=None, **kwargs):
    return asyncio.run(resolver.resolve(mode, raw_text, structured, **kwargs))


class TestComparisonRule(unittest.TestCase):
    def test_bandingkan_btc_dan_eth_is_one_comparison_chart(self):
        market = _FakeMarketData()
        resolver = VisualizationResolver(market)
        result = _resolve(
            resolver,
            OperatingMode.MARKET_ANALYSIS,
            message="bandingkan BTC dan ETH",
            language="id",
        )
        self.assertEqual(result.rule, "comparison")
        self.assertIsNone(result.charts)
        self.assertEqual(result.chart.type, "comparison")
        self.assertEqual(result.chart.y_key, ["BTC", "ETH"])
        self.assertEqual(len(result.chart.comparison_assets), 2)
        self.assertEqual(result.chart.title, "Perbandingan Performa - 1M")
        self.assertEqual(result.chart.data[0]["BTC"], 100.0)
        self.assertEqual(result.chart.data[-1]["ETH"], 121.0)
        self.assertEqual(result.chart.comparison_assets[0].change_percent, 21.0)
        self.assertIsNotNone(result.table)

        payload = result.chart.model_dump(by_alias=True, exclude_none=True)
        self.assertEqual(payload["yKey"], ["BTC", "ETH"])
        self.assertEqual(len(payload["comparisonAssets"]), 2)

    def test_comparison_symbols_from_history(self):
        history = [
            ChatMessage(role="user", content="BTC: naik 3%"),
            ChatMessage(role="user", content="ETH naik berapa?"),
        ]
        resolver = VisualizationResolver(_FakeMarketData())
        result = _resolve(
            resolver,
            OperatingMode.MARKET_ANALYSIS,
            message="bandingkan dengan yang lain",
            history=history,
        )
        self.assertEqual(result.rule, "comparison")
        self.assertEqual(result.chart.y_key, ["ETH", "BTC"])

    def test_one_failing_symbol_of_two_degrades_to_notice(self):
        resolver = VisualizationResolver(_FakeMarketData(fail={"ETH"}))
        result = _resolve(resolver, OperatingMode.MARKET_ANALYSIS, message="compare BTC vs ETH")
        self.assertIsNone(result.chart)
        self.assertIn("BTC, ETH", result.notice)

    def test_one_failing_symbol_of_three_is_dropped(self):
        resolver = VisualizationResolver(_FakeMarketData(fail={"SOL"}))
        result = _resolve(
            resolver, OperatingMode.MARKET_ANALYSIS, message="compare BTC, ETH and SOL"
        )
        self.assertEqual(result.chart.y_key, ["BTC", "ETH"])
        self.assertIn("SOL", result.notice)

    def test_market_rules_skipped_outside_market_modes(self):
        market = _FakeMarketData()
        resolver = VisualizationResolver(market)
        result = _resolve(resolver, OperatingMode.BUSINESS_ADMIN, message="bandingkan BTC dan ETH")
        self.assertEqual(result.rule, "none")
        self.assertEqual(market.calls, [])


class TestMultiSymbolRule(unittest.TestCase):
    def test_one_chart_per_symbol(self):
        resolver = VisualizationResolver(_FakeMarketData())
        result = _resolve(resolver, OperatingMode.MARKET_ANALYSIS, message="harga BTC dan ETH")
        self.assertEqual(result.rule, "multi_symbol")
        self.assertEqual([c.symbol for c in result.charts], ["BTC", "ETH"])
        self.assertIsNone(result.notice)

    def test_failing_symbol_is_isolated(self):
        resolver = VisualizationResolver(_FakeMarketData(fail={"ETH"}))
        result = _resolve(resolver, OperatingMode.MARKET_ANALYSIS, message="harga BTC dan ETH")
        self.assertEqual([c.symbol for c in result.charts], ["BTC"])
        self.assertIn("ETH", result.notice)

    def test_slow_symbol_times_out(self):
        resolver = VisualizationResolver(_FakeMarketData(slow={"ETH"}, delay=1.0), fetch_timeout_s=0.05)
        result = _resolve(resolver, OperatingMode.MARKET_ANALYSIS, message="harga BTC dan ETH")
        self.assertEqual([c.symbol for c in result.charts], ["BTC"])
        self.assertIn("ETH", result.notice)

    def test_all_failing_gives_notice_only(self):
        resolver = VisualizationResolver(_FakeMarketData(fail={"BTC", "ETH"}))
        result = _resolve(resolver, OperatingMode.MARKET_ANALYSIS, message="harga BTC dan ETH")
        self.assertIsNone(result.charts)
        self.assertTrue(result.notice)


class TestPriorityChain(unittest.TestCase):
    def test_router_chart_wins_without_fetching(self):
        market = _FakeMarketData()
        resolver = VisualizationResolver(market)
        router_chart = ChartSpec(type="candlestick", title="BTC", symbol="BTC")
        result = _resolve(
            resolver,
            OperatingMode.MARKET_ANALYSIS,
            structured={"action": "show_chart", "symbol": "ETH"},
            router_chart=router_chart,
            message="harga BTC dan ETH",
        )
        self.assertEqual(result.rule, "router_chart")
        self.assertIs(result.chart, router_chart)
        self.assertEqual(market.calls, [])

    def test_structured_symbol_chart_with_message_override(self):
        market = _FakeMarketData()
        resolver = VisualizationResolver(market)
        result = _resolve(
            resolver,
            OperatingMode.MARKET_ANALYSIS,
            raw_text="raw",
            structured={
                "action": "show_chart",
                "symbol": "eth",
                "chart_type": "line",
                "timeframe": "6M",
                "message": "ETH is trending up.",
            },
            message="gimana ETH?",
        )
        self.assertEqual(result.rule, "structured_output")
        self.assertEqual(result.chart.symbol, "ETH")
        self.assertEqual(result.chart.type, "line")
        self.assertEqual(result.response_text, "ETH is trending up.")
        self.assertEqual(market.calls, [("ETH", "crypto", 180)])

    def test_structured_fetch_failure_becomes_notice(self):
        resolver = VisualizationResolver(_FakeMarketData(fail={"BTC"}))
        result = _resolve(
            resolver,
            OperatingMode.MARKET_ANALYSIS,
            structured={"action": "show_chart", "symbol": "BTC", "asset_type": "crypto"},
            message="BTC",
        )
        self.assertIsNone(result.chart)
        self.assertIn("BTC", result.notice)

    def test_structured_data_chart(self):
        resolver = VisualizationResolver(_FakeMarketData())
        result = _resolve(
            resolver,
            OperatingMode.BUSINESS_ADMIN,
            structured={
                "action": "show_chart",
                "chart_type": "pie",
                "title": "Mix",
                "data": [{"name": "A", "value": 1}, {"name": "B", "value": 2}],
                "source": "user",
            },
        )
        self.assertEqual(result.chart.type, "pie")
        self.assertEqual(result.chart.source, "user")
        self.assertEqual(len(result.chart.data), 2)

    def test_structured_table(self):
        resolver = VisualizationResolver(_FakeMarketData())
        result = _resolve(
            resolver,
            OperatingMode.REPORT_GENERATOR,
            structured={
                "action": "show_table",
                "title": "Stock",
                "data": [{"item": "pen", "qty": 3}, {"item": "ink", "qty": 1, "note": "low"}],
            },
        )
        self.assertEqual(result.table.columns, ["item", "qty", "note"])
        self.assertEqual(len(result.table.rows), 2)

    def test_market_intent_builds_chart_without_structured_output(self):
        market = _FakeMarketData()
        resolver = VisualizationResolver(market)
        result = _resolve(
            resolver, OperatingMode.MARKET_ANALYSIS, message="tampilkan grafik BTC 30 hari"
        )
        self.assertEqual(result.rule, "market_intent")
        self.assertEqual(result.chart.symbol, "BTC")
        self.assertEqual(result.chart.timeframe, "1M")
        self.assertEqual(market.calls, [("BTC", "crypto", 30)])

    def test_low_confidence_symbol_does_not_chart(self):
        resolver = VisualizationResolver(_FakeMarketData())
        result = _resolve(resolver, OperatingMode.MARKET_ANALYSIS, message="BTC")
        self.assertEqual(result.rule, "none")

    def test_deferred_visualization_uses_user_numbers(self):
        resolver = VisualizationResolver(_FakeMarketData())
        data = ExtractedUserData(labels=["Jan", "Feb"], data_points=2, values=[100.0, 120.0])
        result = _resolve(
            resolver,
            OperatingMode.CHAT,
            message="buatkan grafik garis penjualan: Jan 100, Feb 120",
            extracted_user_data=data,
        )
        self.assertEqual(result.rule, "deferred_visualization")
        self.assertEqual(result.chart.type, "line")
        self.assertEqual(result.chart.data, [{"name": "Jan", "value": 100.0}, {"name": "Feb", "value": 120.0}])

    def test_deferred_chart_keeps_years_out_of_values(self):
        message = "Buat grafik penjualan Jan 2024 100, Feb 2024 150, Mar 2024 130"
        resolver = VisualizationResolver(_FakeMarketData())
        result = _resolve(
            resolver,
            OperatingMode.CHAT,
            message=message,
            extracted_user_data=extract_user_data(message),
        )
        self.assertEqual(result.rule, "deferred_visualization")
        self.assertEqual([row["value"] for row in result.chart.data], [100.0, 150.0, 130.0])
        self.assertEqual(result.chart.data[0]["name"], "Januari 2024")

    def test_deferred_falls_back_to_allowed_type(self):
        resolver = VisualizationResolver(_FakeMarketData())
        data = ExtractedUserData(labels=["A", "B"], data_points=2, values=[1.0, 2.0])
        result = _resolve(
            resolver,
            OperatingMode.CHAT,
            message="buatkan pie chart: A 1, B 2",
            extracted_user_data=data,
        )
        self.assertEqual(result.chart.type, "bar")

    def test_rules_subset(self):
        market = _FakeMarketData()
        resolver = VisualizationResolver(market)
        result = _resolve(
            resolver,
            OperatingMode.MARKET_ANALYSIS,
            message="tampilkan grafik BTC",
            rules=("comparison", "multi_symbol"),
        )
        self.assertEqual(result.rule, "none")
        self.assertEqual(market.calls, [])


if __name__ == "__main__":
    unittest.main()
