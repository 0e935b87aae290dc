from __future__ import annotations


class PipelineError(Exception):
    """Base class for chat pipeline failures that callers may recover from."""


class ModelTransportError(PipelineError):
    """The model-invocation service failed (stream start, generate call)."""


class UpstreamFetchError(PipelineError):
    """A market, retrieval or search fetch failed."""


class MarketDataError(UpstreamFetchError):
    def __init__(self, symbol: str, reason: str):
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason
