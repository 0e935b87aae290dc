# JSON Schema for the structured action the model may attach to an answer.
# Purely structural; mode policy is enforced by the other guards.

_PRIMITIVE = {"type": ["string", "number", "boolean", "null"]}

_ROW = {
    "type": "object",
    "minProperties": 1,
    "additionalProperties": _PRIMITIVE,
}

_NON_EMPTY_STRING = {"type": "string", "minLength": 1}

STRUCTURED_ACTION_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["action"],
    "properties": {
        "action": {"enum": ["show_chart", "show_table", "text_only"]},
        "chart_type": _NON_EMPTY_STRING,
        "data": {"type": "array", "minItems": 1, "items": _ROW},
        "xKey": _NON_EMPTY_STRING,
        "yKey": {
            "oneOf": [
                _NON_EMPTY_STRING,
                {"type": "array", "minItems": 1, "items": _NON_EMPTY_STRING},
            ]
        },
        "title": {"type": "string"},
        "source": {"type": "string"},
        "symbol": _NON_EMPTY_STRING,
        "asset_type": {"enum": ["crypto", "stock"]},
        "timeframe": {"type": "string"},
        "message": {"type": "string"},
        "module": {"type": "string"},
        "chart": {"type": "object"},
    },
    "allOf": [
        {
            "if": {"properties": {"action": {"const": "show_chart"}}},
            "then": {"anyOf": [{"required": ["data"]}, {"required": ["symbol"]}]},
        },
        {
            "if": {"properties": {"action": {"const": "show_table"}}},
            "then": {"required": ["data"]},
        },
    ],
}
