import asyncio
import json
import unittest

from config.pipeline_config import PipelineConfig
from services.ai.chat.chat_models import AnswerEnvelope, ChatRequest
from services.ai.chat.chat_orchestrator import ChatOrchestrator, PipelineState, StreamingAnswer
from services.ai.chat.errors import ModelTransportError
from services.ai.chat.module_policy import OperatingMode
from services.cache.cache_backend import cache_clear_local
from services.market.market_data_client import MarketSeries, OhlcPoint


class _FakeModelConfig:
    model = "fake-model"


class _FakeModelClient:
    supports_streaming = True

    def __init__(self, reply="Here is my answer.", chunks=("Hello ", "world"), stream_error=None, generate_error=None):
        self.config = _FakeModelConfig()
        self.reply = reply
        self.chunks = chunks
        self.stream_error = stream_error
        self.generate_error = generate_error
        self.generate_calls = []
        self.stream_calls = 0

    async def generate(self, *, system_prompt: str, user_prompt: str, temperature=None):
        self.generate_calls.append(
            {"system_prompt": system_prompt, "user_prompt": user_prompt, "temperature": temperature}
        )
        if self.generate_error is not None:
            raise self.generate_error
        return self.reply

    async def stream_answer(self, *, system_prompt: str, user_prompt: str, temperature=None):
        self.stream_calls += 1
        if self.stream_error is not None:
            raise self.stream_error
        for chunk in self.chunks:
            yield chunk


class _StalledStream:
    """Opened stream whose first read fails; records whether it was closed."""

    def __init__(self, error=None):
        self.error = error
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.error is not None:
            raise self.error
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


class _StalledModelClient(_FakeModelClient):
    def __init__(self, stream, **kwargs):
        super().__init__(**kwargs)
        self.stream = stream

    def stream_answer(self, *, system_prompt: str, user_prompt: str, temperature=None):
        self.stream_calls += 1
        return self.stream


class _RecordingImageGenerator:
    def __init__(self, url="https://img.example/1.png", error=None):
        self.url = url
        self.error = error
        self.prompts = []

    async def __call__(self, message):
        self.prompts.append(message)
        if self.error is not None:
            raise self.error
        return self.url


class _FakeMarketData:
    def __init__(self):
        self.calls = []

    async def fetch_series(self, symbol: str, asset_type: str, days: int) -> MarketSeries:
        self.calls.append(symbol)
        closes = [100.0, 110.0, 121.0]
        return MarketSeries(
            symbol=symbol,
            asset_type=asset_type,
            name=symbol,
            points=[
                OhlcPoint(time=f"2024-01-0{i + 1}", open=c, high=c, low=c, close=c)
                for i, c in enumerate(closes)
            ],
        )


class _ListUsageSink:
    def __init__(self):
        self.records = []

    def record(self, rec):
        self.records.append(rec)


def _orchestrator(model=None, market=None, cache=False, **kwargs):
    return ChatOrchestrator(
        model_client=model or _FakeModelClient(),
        market_data=market or _FakeMarketData(),
        usage_sink=kwargs.pop("usage_sink", None) or _ListUsageSink(),
        config=PipelineConfig(response_cache_enabled=cache),
        **kwargs,
    )


async def _respond_and_drain(orch, req):
    outcome = await orch.respond(req)
    if isinstance(outcome, StreamingAnswer):
        chunks = [c async for c in outcome.chunks]
        return outcome, chunks
    return outcome, None


def _parse_event(raw: str):
    lines = [ln for ln in raw.split("\n") if ln]
    return lines[0].replace("event: ", ""), json.loads(lines[1].replace("data: ", ""))


async def _collect_events(orch, req):
    return [_parse_event(e) async for e in orch.stream_sse(req)]


class TestStreamingPath(unittest.TestCase):
    def test_prose_request_streams(self):
        model = _FakeModelClient()
        orch = _orchestrator(model)
        req = ChatRequest(message="how do I improve cash flow?", stream=True)
        outcome, chunks = asyncio.run(_respond_and_drain(orch, req))

        self.assertIsInstance(outcome, StreamingAnswer)
        self.assertEqual("".join(chunks), "Hello world")
        self.assertIn(PipelineState.STREAMING, outcome.states)
        self.assertEqual(model.generate_calls, [])

    def test_failed_stream_start_demotes_to_blocking(self):
        model = _FakeModelClient(reply="Collect invoices faster.", stream_error=ModelTransportError("boom"))
        orch = _orchestrator(model)
        req = ChatRequest(message="how do I improve cash flow?", stream=True)
        outcome, _ = asyncio.run(_respond_and_drain(orch, req))

        self.assertIsInstance(outcome, AnswerEnvelope)
        self.assertFalse(outcome.streamed)
        self.assertEqual(outcome.pipeline_state, PipelineState.DONE.value)
        self.assertEqual(outcome.response, "Collect invoices faster.")
        self.assertEqual(model.stream_calls, 1)
        self.assertEqual(len(model.generate_calls), 1)

    def test_sse_events_for_stream(self):
        orch = _orchestrator()
        req = ChatRequest(message="how do I improve cash flow?", stream=True, conversation_id="cid-1")
        events = asyncio.run(_collect_events(orch, req))

        names = [name for name, _ in events]
        self.assertEqual(names, ["meta", "token", "token", "done"])
        self.assertTrue(events[0][1]["streamed"])
        self.assertEqual(events[0][1]["request_id"], "cid-1")
        self.assertEqual(events[1][1]["text"], "Hello ")

    def test_failed_first_read_closes_stream(self):
        stream = _StalledStream(error=ModelTransportError("reset"))
        model = _StalledModelClient(stream, reply="Collect invoices faster.")
        orch = _orchestrator(model)
        req = ChatRequest(message="how do I improve cash flow?", stream=True)
        outcome, _ = asyncio.run(_respond_and_drain(orch, req))

        self.assertIsInstance(outcome, AnswerEnvelope)
        self.assertTrue(stream.closed)
        self.assertEqual(len(model.generate_calls), 1)

    def test_empty_stream_is_closed_and_demoted(self):
        stream = _StalledStream()
        model = _StalledModelClient(stream, reply="Collect invoices faster.")
        orch = _orchestrator(model)
        req = ChatRequest(message="how do I improve cash flow?", stream=True)
        outcome, _ = asyncio.run(_respond_and_drain(orch, req))

        self.assertEqual(outcome.response, "Collect invoices faster.")
        self.assertTrue(stream.closed)


class TestBlockingPath(unittest.TestCase):
    def test_sse_events_for_blocking_answer(self):
        orch = _orchestrator()
        req = ChatRequest(message="buatkan surat penawaran kerja sama", stream=True)
        events = asyncio.run(_collect_events(orch, req))

        names = [name for name, _ in events]
        self.assertEqual(names, ["meta", "answer", "done"])
        self.assertFalse(events[0][1]["streamed"])
        self.assertEqual(events[1][1]["mode"], "letter_generator")

    def test_letter_mode_fills_letter_field(self):
        model = _FakeModelClient(reply="Dengan hormat, kami menawarkan kerja sama.")
        orch = _orchestrator(model)
        outcome = asyncio.run(orch.respond(ChatRequest(message="buatkan surat penawaran kerja sama")))

        self.assertEqual(outcome.mode, OperatingMode.LETTER_GENERATOR)
        self.assertEqual(outcome.letter, "Dengan hormat, kami menawarkan kerja sama.")
        self.assertAlmostEqual(model.generate_calls[0]["temperature"], 0.7)

    def test_letter_prompt_carries_template_and_placeholders(self):
        model = _FakeModelClient(reply="Dengan hormat, saya mengundurkan diri.")
        orch = _orchestrator(model)
        asyncio.run(orch.respond(ChatRequest(message="buatkan surat pengunduran diri untuk kantor saya")))

        system_prompt = model.generate_calls[0]["system_prompt"]
        self.assertIn("Letter type: resignation", system_prompt)
        self.assertIn("intent to resign", system_prompt)
        self.assertIn("[NAMA]", system_prompt)
        self.assertIn("[JABATAN]", system_prompt)
        self.assertIn("[TANGGAL]", system_prompt)

    def test_consistency_rejection_keeps_prose_drops_chart(self):
        reply = (
            "Berikut grafiknya.\n```json\n"
            + json.dumps(
                {
                    "action": "show_chart",
                    "chart_type": "bar",
                    "source": "user",
                    "xKey": "name",
                    "yKey": "value",
                    "data": [
                        {"name": "Jan", "value": 100},
                        {"name": "Feb", "value": 120},
                        {"name": "Mar", "value": 90},
                        {"name": "Apr", "value": 130},
                    ],
                }
            )
            + "\n```"
        )
        orch = _orchestrator(_FakeModelClient(reply=reply))
        req = ChatRequest(message="buatkan grafik penjualan: Jan 100, Feb 120, Mar 90")
        outcome = asyncio.run(orch.respond(req))

        self.assertEqual(outcome.pipeline_state, PipelineState.REJECTED.value)
        self.assertIsNone(outcome.chart)
        self.assertIsNone(outcome.structured_output)
        self.assertTrue(outcome.response.startswith("Berikut grafiknya."))
        self.assertIn("ketidakcocokan", outcome.response)
        self.assertIn("Data count mismatch", " ".join(outcome.validation.errors))

    def test_module_rejection_returns_fallback_only(self):
        reply = (
            "Harga BTC naik tajam minggu ini.\n```json\n"
            + json.dumps(
                {
                    "action": "show_chart",
                    "chart_type": "candlestick",
                    "symbol": "BTC",
                    "asset_type": "crypto",
                    "data": [{"time": "2024-01-01", "close": 100}],
                }
            )
            + "\n```"
        )
        orch = _orchestrator(_FakeModelClient(reply=reply))
        req = ChatRequest(message="tampilkan grafik penjualan toko", mode="business_admin")
        outcome = asyncio.run(orch.respond(req))

        self.assertEqual(outcome.pipeline_state, PipelineState.REJECTED.value)
        self.assertIsNone(outcome.chart)
        self.assertNotIn("Harga BTC", outcome.response)
        self.assertIn("[Module Guard]", " ".join(outcome.validation.errors))

    def test_valid_user_chart_is_attached(self):
        reply = (
            "Penjualan naik.\n```json\n"
            + json.dumps(
                {
                    "action": "show_chart",
                    "chart_type": "bar",
                    "source": "user",
                    "xKey": "name",
                    "yKey": "value",
                    "data": [{"name": "Jan", "value": 100}, {"name": "Feb", "value": 120}],
                }
            )
            + "\n```"
        )
        orch = _orchestrator(_FakeModelClient(reply=reply))
        outcome = asyncio.run(orch.respond(ChatRequest(message="buatkan grafik penjualan: Jan 100, Feb 120")))

        self.assertEqual(outcome.pipeline_state, PipelineState.DONE.value)
        self.assertEqual(outcome.response, "Penjualan naik.")
        self.assertEqual(outcome.chart.type, "bar")
        self.assertEqual(outcome.to_payload()["chart"]["xKey"], "name")

    def test_market_comparison_is_prefetched_once(self):
        market = _FakeMarketData()
        model = _FakeModelClient(reply="BTC dan ETH sama-sama naik 21%.")
        orch = _orchestrator(model, market)
        outcome = asyncio.run(orch.respond(ChatRequest(message="bandingkan BTC dan ETH", stream=True)))

        self.assertEqual(outcome.mode, OperatingMode.MARKET_ANALYSIS)
        self.assertEqual(outcome.chart.type, "comparison")
        self.assertEqual(outcome.chart.y_key, ["BTC", "ETH"])
        self.assertIsNotNone(outcome.table)
        self.assertEqual(outcome.market_data["symbols"], ["BTC", "ETH"])
        self.assertEqual(sorted(market.calls), ["BTC", "ETH"])
        self.assertIn("BTC (BTC): price 121.0", model.generate_calls[0]["system_prompt"])
        self.assertEqual(model.stream_calls, 0)

    def test_requested_image_url_is_attached(self):
        images = _RecordingImageGenerator()
        orch = _orchestrator(_FakeModelClient(reply="Ini konsep poster promo Anda."), image_generator=images)
        req = ChatRequest(message="buatkan poster promo kopi", image_generation=True, stream=True)
        outcome = asyncio.run(orch.respond(req))

        self.assertIsInstance(outcome, AnswerEnvelope)
        self.assertEqual(outcome.image_url, "https://img.example/1.png")
        self.assertEqual(outcome.to_payload()["image_url"], "https://img.example/1.png")
        self.assertEqual(images.prompts, ["buatkan poster promo kopi"])

    def test_image_not_generated_without_toggle(self):
        images = _RecordingImageGenerator()
        orch = _orchestrator(image_generator=images)
        outcome = asyncio.run(orch.respond(ChatRequest(message="buatkan poster promo kopi")))

        self.assertIsNone(outcome.image_url)
        self.assertEqual(images.prompts, [])

    def test_image_failure_is_isolated(self):
        images = _RecordingImageGenerator(error=RuntimeError("quota"))
        orch = _orchestrator(_FakeModelClient(reply="Ini konsep poster promo Anda."), image_generator=images)
        req = ChatRequest(message="buatkan poster promo kopi", image_generation=True)
        outcome = asyncio.run(orch.respond(req))

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.pipeline_state, PipelineState.DONE.value)
        self.assertEqual(outcome.response, "Ini konsep poster promo Anda.")
        self.assertIsNone(outcome.image_url)

    def test_model_failure_gives_apology(self):
        orch = _orchestrator(_FakeModelClient(generate_error=ModelTransportError("down")))
        outcome = asyncio.run(orch.respond(ChatRequest(message="how do I improve cash flow?")))

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.pipeline_state, PipelineState.FAILED.value)
        self.assertTrue(outcome.response)

    def test_placeholder_reply_is_replaced(self):
        orch = _orchestrator(_FakeModelClient(reply="null"))
        outcome = asyncio.run(orch.respond(ChatRequest(message="how do I improve cash flow?")))
        self.assertNotEqual(outcome.response, "null")
        self.assertTrue(outcome.response.startswith("Sorry"))


class TestContextAndCache(unittest.TestCase):
    def setUp(self):
        cache_clear_local()

    def tearDown(self):
        cache_clear_local()

    def test_retrieval_context_reaches_prompt(self):
        async def retriever(query, user_id, file_ids):
            return "Revenue grew 12% in Q3."

        model = _FakeModelClient()
        orch = _orchestrator(model, retriever=retriever)
        req = ChatRequest(message="summarize this document", file_ids=["f1"], user_id="u1")
        outcome = asyncio.run(orch.respond(req))

        self.assertTrue(outcome.document_analysis_active)
        self.assertIn("Revenue grew 12% in Q3.", model.generate_calls[0]["system_prompt"])

    def test_retrieval_failure_is_isolated(self):
        async def retriever(query, user_id, file_ids):
            raise RuntimeError("vector store down")

        orch = _orchestrator(retriever=retriever)
        req = ChatRequest(message="summarize this document", file_ids=["f1"])
        outcome = asyncio.run(orch.respond(req))

        self.assertTrue(outcome.success)
        self.assertFalse(outcome.document_analysis_active)

    def test_cache_hit_skips_model(self):
        model = _FakeModelClient(reply="Working capital is current assets minus current liabilities.")
        sink = _ListUsageSink()
        orch = _orchestrator(model, cache=True, usage_sink=sink)
        req = ChatRequest(message="What is working capital?")

        first = asyncio.run(orch.respond(req))
        second = asyncio.run(orch.respond(req))

        self.assertFalse(first.cached)
        self.assertTrue(second.cached)
        self.assertEqual(second.pipeline_state, PipelineState.CACHED.value)
        self.assertEqual(second.response, first.response)
        self.assertEqual(len(model.generate_calls), 1)
        self.assertEqual([r.cached for r in sink.records], [False, True])

    def test_time_sensitive_questions_are_not_cached(self):
        model = _FakeModelClient()
        orch = _orchestrator(model, cache=True)
        req = ChatRequest(message="what should I do today?")

        asyncio.run(orch.respond(req))
        second = asyncio.run(orch.respond(req))

        self.assertFalse(second.cached)
        self.assertEqual(len(model.generate_calls), 2)


if __name__ == "__main__":
    unittest.main()
