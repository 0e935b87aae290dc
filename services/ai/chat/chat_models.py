from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from services.ai.chat.module_policy import OperatingMode, parse_mode


Role = Literal["system", "user", "assistant"]
AssetType = Literal["crypto", "stock", "mixed"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = Field(max_length=8000)

    @field_validator("content")
    @classmethod
    def _strip_content(cls, v: str) -> str:
        return (v or "").strip()


class ChatRequest(BaseModel):
    """Per-request context. Immutable once validated."""

    model_config = ConfigDict(frozen=True)

    message: str = Field(min_length=1, max_length=8000)
    history: List[ChatMessage] = Field(default_factory=list, max_length=40)
    mode: Optional[OperatingMode] = None
    context_text: Optional[str] = Field(default=None, max_length=20000)
    stream: bool = False
    web_search: bool = False
    image_generation: bool = False
    file_ids: List[str] = Field(default_factory=list, max_length=10)
    user_id: Optional[str] = Field(default=None, max_length=128)
    conversation_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("message")
    @classmethod
    def _strip_message(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("message must not be blank")
        return v

    @field_validator("history")
    @classmethod
    def _drop_empty_history(cls, v: List[ChatMessage]) -> List[ChatMessage]:
        return [m for m in v if m.content]

    @field_validator("mode", mode="before")
    @classmethod
    def _parse_mode(cls, v: Any) -> Optional[OperatingMode]:
        if v is None or (isinstance(v, str) and v.strip().lower() in ("", "auto")):
            return None
        mode = parse_mode(v)
        if mode is None:
            raise ValueError(f"unknown mode: {v!r}")
        return mode


# ── Model output ─────────────────────────────────────────────────────────

class CandidateResponse(BaseModel):
    """Raw model output for one turn. `structured` is untrusted."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    structured: Optional[Dict[str, Any]] = None

    @property
    def action(self) -> Optional[str]:
        if not isinstance(self.structured, dict):
            return None
        action = self.structured.get("action")
        return action if isinstance(action, str) else None


class ExtractedUserData(BaseModel):
    model_config = ConfigDict(frozen=True)

    labels: List[str] = Field(default_factory=list)
    data_points: int = 0
    values: List[float] = Field(default_factory=list)
    is_comparison: bool = False


class MiddlewareResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    payload: Optional[CandidateResponse] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    fallback_message: Optional[str] = None


# ── Visualization payloads ─────────────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ComparisonAsset(_CamelModel):
    symbol: str
    name: str
    asset_type: str
    exchange: Optional[str] = None
    market: Optional[str] = None
    currency: str = "USD"
    current_price: Optional[float] = None
    change: Optional[float] = None
    change_percent: Optional[float] = None
    rsi: Optional[float] = None
    trend: Optional[str] = None


class ChartSpec(_CamelModel):
    type: str
    title: str
    data: List[Dict[str, Any]] = Field(default_factory=list)
    x_key: str = "name"
    y_key: Union[str, List[str]] = "value"
    source: Optional[str] = None
    symbol: Optional[str] = None
    asset_type: Optional[str] = None
    timeframe: Optional[str] = None
    current_price: Optional[float] = None
    change_24h: Optional[float] = Field(default=None, alias="change24h")
    comparison_assets: Optional[List[ComparisonAsset]] = None


class TableSpec(_CamelModel):
    title: str
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class ValidationReport(BaseModel):
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class AnswerEnvelope(BaseModel):
    """Final answer handed to the rendering layer."""

    success: bool
    response: str
    mode: OperatingMode
    chart: Optional[ChartSpec] = None
    charts: Optional[List[ChartSpec]] = None
    table: Optional[TableSpec] = None
    structured_output: Optional[Dict[str, Any]] = None
    letter: Optional[str] = None
    image_url: Optional[str] = None
    market_data: Optional[Dict[str, Any]] = None
    validation: Optional[ValidationReport] = None
    cached: bool = False
    streamed: bool = False
    pipeline_state: str = "done"
    web_search_active: bool = False
    document_analysis_active: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def format_sse(event: str, data: Dict[str, Any]) -> str:
    payload = json.dumps(data, separators=(",", ":"), ensure_ascii=True)
    return f"event: {event}\ndata: {payload}\n\n"
