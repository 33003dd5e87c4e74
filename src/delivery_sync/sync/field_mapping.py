"""Notion property mappings for project sync.

Defines:
- ProjectField: the closed set of project fields mirrored to Notion.
- PROJECT_PROPERTY_MAP: maps every ProjectField to its Notion property name,
  Notion property type and value codec. verify_property_map() checks it at
  startup so a field can never be silently left out.
- to_remote_properties(): project -> Notion API ``properties`` payload.
- from_remote_properties(): Notion ``properties`` -> partial project patch,
  reporting (never raising) values that violate their declared type.
- build_page_blocks(): overview content written when a page is first created.

All functions here are pure; no I/O.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.delivery_sync.projects.schemas import (
    PaymentStatus,
    ProjectRead,
    ProjectStatus,
    ProjectTier,
)
from src.delivery_sync.sync.errors import ConfigurationError

# Notion rejects rich text segments longer than this
RICH_TEXT_SEGMENT_LIMIT = 2000

# Link property carrying the local project id; written on create, never pulled
LINK_PROPERTY = "Internal ID"


class ProjectField(str, Enum):
    """Project fields mirrored to Notion. Values are ProjectRead attribute names."""

    NAME = "name"
    STATUS = "status"
    TIER = "tier"
    ADDRESS = "project_address"
    PAYMENT_STATUS = "payment_status"
    BUDGET = "budget_cents"
    DUE_DATE = "due_date"


class PropertyType(str, Enum):
    TITLE = "title"
    RICH_TEXT = "rich_text"
    SELECT = "select"
    NUMBER = "number"
    DATE = "date"


@dataclass(frozen=True)
class PropertySpec:
    """How one project field is represented in Notion.

    ``encode`` turns the domain value into the primitive carried by the
    Notion property (str for text/select/date, number for number) and
    ``decode`` reverses it, raising ValueError for values outside the
    field's type.
    """

    notion_name: str
    type: PropertyType
    encode: Callable[[Any], Any]
    decode: Callable[[Any], Any]
    colors: dict[str, str] | None = None


class MappingError(BaseModel):
    field: str
    property_name: str
    raw_value: Any = None
    message: str


class MappingResult(BaseModel):
    """Partial project patch pulled from Notion plus any rejected values."""

    patch: dict[str, Any] = Field(default_factory=dict)
    errors: list[MappingError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# ── Field Codecs ─────────────────────────────────────────────────────────────


def _decode_required_text(value: Any) -> str:
    if not value or not str(value).strip():
        raise ValueError("value is required")
    return str(value)


def _encode_optional_text(value: Any) -> str | None:
    return value or None


def _decode_optional_text(value: Any) -> str | None:
    return str(value) if value else None


def _decode_status(value: Any) -> ProjectStatus:
    if value is None:
        raise ValueError("status is required")
    normalized = str(value).strip().upper().replace(" ", "_")
    try:
        return ProjectStatus(normalized)
    except ValueError:
        raise ValueError(f"unknown status option {value!r}") from None


def _encode_tier(value: ProjectTier) -> str:
    return ProjectTier(value).label


def _decode_tier(value: Any) -> ProjectTier:
    if value is None:
        raise ValueError("tier is required")
    label = str(value).strip()
    # Pages created by older integrations carry "Tier <n>"
    if label.lower().startswith("tier "):
        try:
            return ProjectTier(int(label[5:]))
        except ValueError:
            raise ValueError(f"unknown tier option {value!r}") from None
    return ProjectTier.from_label(label)


def _decode_payment_status(value: Any) -> PaymentStatus:
    if value is None:
        raise ValueError("payment status is required")
    try:
        return PaymentStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"unknown payment status option {value!r}") from None


def _encode_cents(value: int | None) -> float | None:
    if value is None:
        return None
    return float(Decimal(value) / 100)


def _decode_cents(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"expected a number, got {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"expected a number, got {value!r}") from None
    if amount < 0:
        raise ValueError("budget cannot be negative")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _encode_date(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _decode_date(value: Any) -> date | None:
    if not value:
        return None
    text = str(value)
    try:
        if len(text) > 10:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError:
        raise ValueError(f"invalid date {value!r}") from None


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ── Notion Property Mappings ───────────────────────────────────────────────

STATUS_COLORS: dict[str, str] = {
    "INTAKE": "gray",
    "ONBOARDING": "blue",
    "IN_PROGRESS": "yellow",
    "AWAITING_FEEDBACK": "orange",
    "REVISIONS": "purple",
    "DELIVERED": "green",
    "CLOSED": "default",
}

TIER_COLORS: dict[str, str] = {
    "Seedling": "green",
    "Sprout": "blue",
    "Canopy": "purple",
    "Legacy": "orange",
}

PAYMENT_COLORS: dict[str, str] = {
    "pending": "yellow",
    "paid": "green",
    "failed": "red",
    "refunded": "gray",
}

PROJECT_PROPERTY_MAP: dict[ProjectField, PropertySpec] = {
    ProjectField.NAME: PropertySpec("Name", PropertyType.TITLE, str, _decode_required_text),
    ProjectField.STATUS: PropertySpec(
        "Status", PropertyType.SELECT, _enum_value, _decode_status, STATUS_COLORS
    ),
    ProjectField.TIER: PropertySpec(
        "Tier", PropertyType.SELECT, _encode_tier, _decode_tier, TIER_COLORS
    ),
    ProjectField.ADDRESS: PropertySpec(
        "Address", PropertyType.RICH_TEXT, _encode_optional_text, _decode_optional_text
    ),
    ProjectField.PAYMENT_STATUS: PropertySpec(
        "Payment Status",
        PropertyType.SELECT,
        _enum_value,
        _decode_payment_status,
        PAYMENT_COLORS,
    ),
    ProjectField.BUDGET: PropertySpec("Budget", PropertyType.NUMBER, _encode_cents, _decode_cents),
    ProjectField.DUE_DATE: PropertySpec("Due Date", PropertyType.DATE, _encode_date, _decode_date),
}


def verify_property_map(
    property_map: dict[ProjectField, PropertySpec] | None = None,
) -> None:
    """Check the property map covers every ProjectField exactly once.

    Raises:
        ConfigurationError: If a field is missing or two fields share a Notion property.
    """
    if property_map is None:
        property_map = PROJECT_PROPERTY_MAP

    missing = [f.value for f in ProjectField if f not in property_map]
    if missing:
        raise ConfigurationError(f"Notion property map is missing fields: {missing}")

    names = [spec.notion_name for spec in property_map.values()]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates or LINK_PROPERTY in names:
        raise ConfigurationError(
            f"Notion property names must be unique: {duplicates or [LINK_PROPERTY]}"
        )


# ── Notion Value Wrappers ──────────────────────────────────────────────────


def _rich_text(content: str | None) -> list[dict[str, Any]]:
    if not content:
        return []
    return [
        {"type": "text", "text": {"content": content[i : i + RICH_TEXT_SEGMENT_LIMIT]}}
        for i in range(0, len(content), RICH_TEXT_SEGMENT_LIMIT)
    ]


def _wrap(spec: PropertySpec, primitive: Any) -> dict[str, Any]:
    if spec.type == PropertyType.TITLE:
        return {"title": _rich_text(primitive)}
    if spec.type == PropertyType.RICH_TEXT:
        return {"rich_text": _rich_text(primitive)}
    if spec.type == PropertyType.NUMBER:
        return {"number": primitive}
    if spec.type == PropertyType.SELECT:
        if primitive is None:
            return {"select": None}
        option: dict[str, Any] = {"name": str(primitive)}
        if spec.colors and primitive in spec.colors:
            option["color"] = spec.colors[primitive]
        return {"select": option}
    if spec.type == PropertyType.DATE:
        return {"date": {"start": primitive} if primitive else None}
    raise ValueError(f"Unsupported property type: {spec.type}")


def _plain_text(segments: Any) -> str | None:
    if not isinstance(segments, list):
        raise ValueError(f"expected rich text segments, got {type(segments).__name__}")
    parts: list[str] = []
    for segment in segments:
        if not isinstance(segment, dict):
            raise ValueError(f"expected a rich text segment object, got {type(segment).__name__}")
        text = segment.get("plain_text")
        if text is None:
            body = segment.get("text") or {}
            text = body.get("content", "") if isinstance(body, dict) else None
        if not isinstance(text, str):
            raise ValueError(f"rich text segment has no text content: {segment!r}")
        parts.append(text)
    joined = "".join(parts)
    return joined or None


def _unwrap(spec: PropertySpec, prop_value: Any) -> Any:
    """Extract the primitive from a Notion property value.

    Raises:
        ValueError: If the value does not have the declared property shape.
    """
    if not isinstance(prop_value, dict):
        raise ValueError(f"expected a property object, got {type(prop_value).__name__}")

    declared = prop_value.get("type")
    if declared is not None and declared != spec.type.value:
        raise ValueError(f"expected {spec.type.value} property, got {declared}")

    if spec.type in (PropertyType.TITLE, PropertyType.RICH_TEXT):
        return _plain_text(prop_value.get(spec.type.value, []))

    if spec.type == PropertyType.NUMBER:
        number = prop_value.get("number")
        if number is not None and (isinstance(number, bool) or not isinstance(number, (int, float))):
            raise ValueError(f"expected a number, got {number!r}")
        return number

    if spec.type == PropertyType.SELECT:
        select_val = prop_value.get("select")
        if select_val and not isinstance(select_val, dict):
            raise ValueError(f"expected a select option object, got {type(select_val).__name__}")
        return select_val.get("name") if select_val else None

    if spec.type == PropertyType.DATE:
        date_val = prop_value.get("date")
        if date_val and not isinstance(date_val, dict):
            raise ValueError(f"expected a date object, got {type(date_val).__name__}")
        return date_val.get("start") if date_val else None

    raise ValueError(f"Unsupported property type: {spec.type}")


# ── Conversion Functions ───────────────────────────────────────────────────


def local_values(entity: ProjectRead) -> dict[str, Any]:
    """Mapped field values of a project, normalized for comparison with pulled values."""
    values: dict[str, Any] = {}
    for field in ProjectField:
        value = getattr(entity, field.value)
        if isinstance(value, str) and not value and field != ProjectField.NAME:
            value = None
        values[field.value] = value
    return values


def encode_values(
    values: dict[str, Any],
    property_map: dict[ProjectField, PropertySpec] | None = None,
) -> dict[str, Any]:
    """Convert a (partial) dict of field name -> domain value to Notion properties.

    Unmapped keys are ignored.
    """
    if property_map is None:
        property_map = PROJECT_PROPERTY_MAP

    properties: dict[str, Any] = {}
    for field, spec in property_map.items():
        if field.value not in values:
            continue
        properties[spec.notion_name] = _wrap(spec, spec.encode(values[field.value]))
    return properties


def to_remote_properties(
    entity: ProjectRead,
    property_map: dict[ProjectField, PropertySpec] | None = None,
) -> dict[str, Any]:
    """Convert a project to the Notion API ``properties`` payload.

    Every mapped field is present; empty values are sent as empty Notion
    values so clearing a field locally clears it remotely too.

    Args:
        entity: The project to map.
        property_map: Optional custom property map. Defaults to PROJECT_PROPERTY_MAP.

    Returns:
        Dict suitable for the Notion API ``properties`` parameter.
    """
    return encode_values(local_values(entity), property_map)


def from_remote_properties(
    properties: dict[str, Any],
    property_map: dict[ProjectField, PropertySpec] | None = None,
) -> MappingResult:
    """Convert Notion page properties to a partial project patch.

    Unmapped properties are ignored. Mapped properties that are absent from
    ``properties`` are absent from the patch. Values that violate their
    declared type are collected in ``errors`` rather than raised.

    Args:
        properties: Notion page ``properties`` dict (API response or a payload
            produced by to_remote_properties).
        property_map: Optional custom property map. Defaults to PROJECT_PROPERTY_MAP.

    Returns:
        MappingResult with the patch keyed by ProjectField value.
    """
    if property_map is None:
        property_map = PROJECT_PROPERTY_MAP

    result = MappingResult()
    for field, spec in property_map.items():
        if spec.notion_name not in properties:
            continue
        raw = properties[spec.notion_name]
        try:
            result.patch[field.value] = spec.decode(_unwrap(spec, raw))
        except ValueError as exc:
            result.errors.append(
                MappingError(
                    field=field.value,
                    property_name=spec.notion_name,
                    raw_value=raw,
                    message=str(exc),
                )
            )
    return result


def decode_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Field values recorded in a stored payload (best effort, errors dropped)."""
    if not payload:
        return {}
    return from_remote_properties(payload).patch


def diff_properties(current: dict[str, Any], baseline: dict[str, Any] | None) -> dict[str, Any]:
    """Properties in ``current`` whose value differs from ``baseline``."""
    baseline = baseline or {}
    return {name: value for name, value in current.items() if baseline.get(name) != value}


def link_property(entity_id: str) -> dict[str, Any]:
    """The Internal ID property linking a page back to its project."""
    return {LINK_PROPERTY: {"rich_text": _rich_text(entity_id)}}


# ── Page Content ───────────────────────────────────────────────────────────


def _text_block(block_type: str, content: str, **extra: Any) -> dict[str, Any]:
    return {
        "object": "block",
        "type": block_type,
        block_type: {"rich_text": [{"type": "text", "text": {"content": content}}], **extra},
    }


def build_page_blocks(entity: ProjectRead) -> list[dict[str, Any]]:
    """Overview content appended to a project page when it is created."""
    return [
        _text_block("heading_2", "Project Overview"),
        _text_block("callout", f"Tier: {ProjectTier(entity.tier).label}", icon={"emoji": "🌱"}),
        _text_block(
            "callout",
            f"Address: {entity.project_address or 'N/A'}",
            icon={"emoji": "📍"},
        ),
        {"object": "block", "type": "divider", "divider": {}},
        _text_block("heading_2", "Deliverables"),
        _text_block(
            "paragraph",
            "Deliverables will appear here as they are added to the project.",
        ),
    ]
