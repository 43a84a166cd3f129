"""
Data models for form schemas and structured extraction results.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from assistant_gateway.schemas.base import CamelModel


class FieldItems(BaseModel):
    """``items`` of an array-typed form field."""
    model_config = ConfigDict(extra="allow")

    type: str = "string"
    enum: Optional[list[Any]] = None


class FieldSchema(BaseModel):
    """One property of a JSON-Schema form definition."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = "string"
    title: Optional[str] = None
    description: Optional[str] = None
    enum: Optional[list[Any]] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    items: Optional[FieldItems] = None
    # Alternative names users say for this field ("BP" for blood pressure)
    synonyms: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("synonyms", "medicalTerms"),
    )


class FormSchema(BaseModel):
    """A JSON-Schema object describing the form to fill."""
    model_config = ConfigDict(extra="allow")

    type: str = "object"
    title: Optional[str] = None
    description: Optional[str] = None
    properties: dict[str, FieldSchema] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


class ExtractionStatus(str, Enum):
    PARTIAL = "partial"
    COMPLETE = "complete"


class ExtractedField(CamelModel):
    """A single field extracted from conversation."""
    field_name: str
    value: Any
    confidence: float = Field(ge=0.0, le=1.0)
    source: Optional[str] = None


class ExtractionResult(CamelModel):
    """Outcome of one extraction call."""
    extraction_id: str
    fields: list[ExtractedField] = Field(default_factory=list)
    status: ExtractionStatus = ExtractionStatus.PARTIAL
    confidence: float = 0.0
    notes: Optional[str] = None
    raw_tool_call: Optional[dict[str, Any]] = None

    @classmethod
    def empty(cls, extraction_id: str) -> "ExtractionResult":
        return cls(extraction_id=extraction_id)
