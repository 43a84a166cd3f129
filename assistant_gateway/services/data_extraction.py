"""
Data Extraction Service.

Turns free-text conversation into typed form fields. A JSON-Schema form
definition is converted into a function tool, the LLM is forced to call
that tool, and the returned arguments are parsed into fields with
confidence scores. Results from successive turns are folded into a
per-session map where a field's confidence never goes down.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Iterable, Mapping, Optional, Protocol

from assistant_gateway.config import get_settings
from assistant_gateway.errors import ExtractionError, UpstreamError
from assistant_gateway.logging_config import get_logger
from assistant_gateway.schemas.extraction import (
    ExtractedField,
    ExtractionResult,
    ExtractionStatus,
    FieldSchema,
    FormSchema,
)
from assistant_gateway.services.llm_client import ToolCall

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.5

SCALAR_TYPES = {"integer", "number", "string", "boolean"}

EXTRACTION_SYSTEM_PROMPT = """You are a data extraction assistant for {form_label} forms.
Your task is to extract the form fields mentioned in the conversation.

IMPORTANT GUIDELINES:
1. Only extract fields that are explicitly mentioned or can be confidently inferred
2. Assign confidence scores: 1.0 for explicitly stated values, 0.7-0.9 for strongly implied, 0.5-0.7 for inferred
3. Do not make assumptions about missing data - leave fields unextracted if not mentioned
4. Convert values to the declared type (e.g., "65 years old" -> 65 for an integer age)
5. For categorical fields, map to the closest valid enum value
6. Note any ambiguities or fields requiring clarification"""

EXTRACTION_USER_INSTRUCTION = (
    "Based on the conversation above, extract all relevant fields for the form. "
    "Use the extract function to provide structured data."
)

INCREMENTAL_NOTE = (
    "Previously extracted fields:\n{previous}\n\n"
    "Extract any NEW or UPDATED fields from the following message."
)


class ToolCallingLLM(Protocol):
    async def complete_with_tool(
        self,
        messages: list[dict[str, Any]],
        tool: dict[str, Any],
        model: str,
        temperature: float = 0.1,
    ) -> ToolCall | None: ...


# -- Tool construction --

def tool_name_for(form_type: str) -> str:
    return f"extract_{form_type}_fields"


def build_tool(form_schema: FormSchema, form_type: str) -> dict[str, Any]:
    """
    Convert a form schema into a function tool specification.

    Deterministic: the same schema and form type always produce the same
    tool, property order included.
    """
    properties: dict[str, Any] = {}
    for field_name, field_def in form_schema.properties.items():
        properties[field_name] = _field_to_parameter(field_def)

    required = [name for name in form_schema.required if name in properties]

    return {
        "type": "function",
        "function": {
            "name": tool_name_for(form_type),
            "description": (
                f"Extract fields for the {form_type.upper()} form from the information provided. "
                "Only extract fields that are explicitly mentioned or can be confidently inferred. "
                "Include a confidence score (0-1) for each extracted field."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "extracted_fields": {
                        "type": "object",
                        "description": "The extracted field values",
                        "properties": properties,
                        "required": required,
                    },
                    "confidence_scores": {
                        "type": "object",
                        "description": (
                            "Confidence score (0-1) for each extracted field. "
                            "1.0 = explicitly stated, 0.7-0.9 = strongly implied, 0.5-0.7 = inferred"
                        ),
                        "additionalProperties": {"type": "number", "minimum": 0, "maximum": 1},
                    },
                    "extraction_notes": {
                        "type": "string",
                        "description": "Notes about uncertainties or fields that need clarification",
                    },
                },
                "required": ["extracted_fields", "confidence_scores"],
            },
        },
    }


def _map_type(json_schema_type: Optional[str]) -> str:
    return json_schema_type if json_schema_type in SCALAR_TYPES else "string"


def _field_to_parameter(field_def: FieldSchema) -> dict[str, Any]:
    if field_def.type == "array" and field_def.items is not None:
        # Array fields are unwrapped to their item type
        prop: dict[str, Any] = {"type": _map_type(field_def.items.type)}
        if field_def.items.enum:
            prop["enum"] = list(field_def.items.enum)
    else:
        prop = {"type": _map_type(field_def.type)}
        if field_def.enum:
            prop["enum"] = list(field_def.enum)

    description = _field_description(field_def)
    if description:
        prop["description"] = description

    if field_def.minimum is not None:
        prop["minimum"] = field_def.minimum
    if field_def.maximum is not None:
        prop["maximum"] = field_def.maximum
    return prop


def _field_description(field_def: FieldSchema) -> str:
    parts: list[str] = []
    if field_def.title:
        parts.append(field_def.title)
    if field_def.description:
        parts.append(field_def.description)
    if field_def.synonyms:
        parts.append(f"Also known as: {', '.join(field_def.synonyms)}")
    return ". ".join(parts)


# -- Extraction --

def new_extraction_id() -> str:
    return f"ext_{uuid.uuid4().hex[:12]}"


async def extract(
    llm: ToolCallingLLM,
    turns: list[dict[str, Any]],
    form_schema: FormSchema,
    form_type: str,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    timeout: Optional[float] = None,
) -> ExtractionResult:
    """
    Run one constrained extraction over conversation turns.

    Never raises: network errors, timeouts, malformed arguments and
    replies without a tool call all yield an empty ``partial`` result.

    Args:
        llm: Client able to run a forced tool call.
        turns: Chat-completion messages, oldest first.
        form_schema: Form definition to extract against.
        form_type: Short form identifier, used in the tool name and prompt.
        model: Model override; defaults to ``settings.default_model``.
        temperature: Defaults to ``settings.extraction_temperature``.
        timeout: Caller-side bound; defaults to ``settings.extraction_timeout_seconds``.
    """
    settings = get_settings()
    extraction_id = new_extraction_id()

    logger.info(
        "extraction_started",
        extraction_id=extraction_id,
        form_type=form_type,
        turns=len(turns),
    )

    try:
        tool = build_tool(form_schema, form_type)
        messages = [
            {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT.format(form_label=form_type.upper())},
            *turns,
            {"role": "user", "content": EXTRACTION_USER_INSTRUCTION},
        ]
        tool_call = await asyncio.wait_for(
            llm.complete_with_tool(
                messages,
                tool,
                model=model or settings.default_model,
                temperature=settings.extraction_temperature if temperature is None else temperature,
            ),
            timeout=timeout or settings.extraction_timeout_seconds,
        )
        if tool_call is None:
            raise ExtractionError("No tool call in extraction response")

        result = parse_tool_call(extraction_id, tool_call)
    except asyncio.TimeoutError:
        logger.warning("extraction_timeout", extraction_id=extraction_id)
        return ExtractionResult.empty(extraction_id)
    except (ExtractionError, UpstreamError) as e:
        logger.warning("extraction_failed", extraction_id=extraction_id, error=e.message)
        return ExtractionResult.empty(extraction_id)
    except Exception as e:
        logger.error("extraction_unexpected_error", extraction_id=extraction_id, error=str(e))
        return ExtractionResult.empty(extraction_id)

    logger.info(
        "extraction_complete",
        extraction_id=extraction_id,
        fields_extracted=len(result.fields),
        avg_confidence=round(result.confidence, 3),
    )
    return result


async def extract_from_message(
    llm: ToolCallingLLM,
    message: str,
    previous_fields: Iterable[ExtractedField],
    form_schema: FormSchema,
    form_type: str,
    **model_opts: Any,
) -> ExtractionResult:
    """Incremental extraction: only new or changed fields relative to ``previous_fields``."""
    turns: list[dict[str, Any]] = [{"role": "user", "content": message}]

    previous = list(previous_fields)
    if previous:
        summary = "\n".join(
            f"{f.field_name}: {_format_value(f.value)} (confidence: {f.confidence})"
            for f in previous
        )
        turns.insert(0, {"role": "system", "content": INCREMENTAL_NOTE.format(previous=summary)})

    return await extract(llm, turns, form_schema, form_type, **model_opts)


def parse_tool_call(extraction_id: str, tool_call: ToolCall) -> ExtractionResult:
    """
    Parse tool arguments into an ExtractionResult.

    Raises:
        ExtractionError: if the arguments are not a JSON object.
    """
    try:
        args = json.loads(tool_call.arguments)
    except json.JSONDecodeError as e:
        raise ExtractionError("Tool arguments are not valid JSON") from e
    if not isinstance(args, dict):
        raise ExtractionError("Tool arguments must be an object")

    extracted = args.get("extracted_fields") or {}
    scores = args.get("confidence_scores") or {}
    if not isinstance(extracted, dict) or not isinstance(scores, dict):
        raise ExtractionError("extracted_fields and confidence_scores must be objects")

    fields: list[ExtractedField] = []
    for field_name, value in extracted.items():
        if _is_empty(value):
            continue
        fields.append(ExtractedField(
            field_name=field_name,
            value=value,
            confidence=_coerce_confidence(scores.get(field_name)),
        ))

    notes = args.get("extraction_notes")
    return ExtractionResult(
        extraction_id=extraction_id,
        fields=fields,
        status=ExtractionStatus.COMPLETE if fields else ExtractionStatus.PARTIAL,
        confidence=_avg_confidence(fields),
        notes=notes if isinstance(notes, str) else None,
        raw_tool_call=args,
    )


# -- Merging --

def merge_fields(
    current: Mapping[str, ExtractedField],
    incoming: Iterable[ExtractedField],
) -> tuple[dict[str, ExtractedField], list[str]]:
    """
    Fold ``incoming`` into ``current`` under confidence monotonicity.

    A field replaces the stored one only when its confidence is strictly
    greater. Returns the new map and the names that changed.
    """
    merged = dict(current)
    changed: list[str] = []
    for f in incoming:
        existing = merged.get(f.field_name)
        if existing is None or f.confidence > existing.confidence:
            merged[f.field_name] = f
            if f.field_name not in changed:
                changed.append(f.field_name)
    return merged, changed


# -- Helpers --

def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _coerce_confidence(raw: Any) -> float:
    if isinstance(raw, bool) or raw is None:
        return DEFAULT_CONFIDENCE
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if value != value:  # NaN
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, value))


def _avg_confidence(fields: list[ExtractedField]) -> float:
    if not fields:
        return 0.0
    return sum(f.confidence for f in fields) / len(fields)


def _format_value(value: Any) -> str:
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)
