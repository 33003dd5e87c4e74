"""Unit tests for Notion property mapping.

Tests to_remote_properties, from_remote_properties, verify_property_map and
the diff/link/page-content helpers. Pure functions -- no I/O.
"""

from __future__ import annotations

from datetime import date

import pytest

from src.delivery_sync.projects.schemas import (
    PaymentStatus,
    ProjectRead,
    ProjectStatus,
    ProjectTier,
)
from src.delivery_sync.sync.errors import ConfigurationError
from src.delivery_sync.sync.field_mapping import (
    LINK_PROPERTY,
    PROJECT_PROPERTY_MAP,
    RICH_TEXT_SEGMENT_LIMIT,
    ProjectField,
    PropertySpec,
    PropertyType,
    build_page_blocks,
    diff_properties,
    encode_values,
    from_remote_properties,
    link_property,
    local_values,
    to_remote_properties,
    verify_property_map,
)


def _make_project(**overrides) -> ProjectRead:
    defaults = {
        "id": "0b6f2a5e-3f7e-4d8e-9a31-2c1f4b8e7d10",
        "name": "Hillside Residence",
        "status": ProjectStatus.IN_PROGRESS,
        "tier": ProjectTier.CANOPY,
        "project_address": "12 Orchard Lane, Portland",
        "payment_status": PaymentStatus.paid,
        "budget_cents": 1_250_050,
        "due_date": date(2026, 5, 1),
    }
    defaults.update(overrides)
    return ProjectRead(**defaults)


def _api_title(text: str) -> dict:
    """Title property as returned by the Notion API (with plain_text)."""
    return {
        "id": "title",
        "type": "title",
        "title": [{"type": "text", "text": {"content": text}, "plain_text": text}],
    }


def _api_select(name: str | None) -> dict:
    return {"id": "abc", "type": "select", "select": {"name": name, "color": "blue"} if name else None}


# ── Outbound Mapping ─────────────────────────────────────────────────────────


class TestToRemoteProperties:
    """Test project -> Notion properties."""

    def test_every_mapped_field_is_present(self):
        """All seven mapped Notion properties are emitted."""
        props = to_remote_properties(_make_project())
        assert set(props) == {spec.notion_name for spec in PROJECT_PROPERTY_MAP.values()}

    def test_property_shapes(self):
        """Values use the Notion property type declared in the map."""
        props = to_remote_properties(_make_project())

        assert props["Name"] == {"title": [{"type": "text", "text": {"content": "Hillside Residence"}}]}
        assert props["Status"] == {"select": {"name": "IN_PROGRESS", "color": "yellow"}}
        assert props["Tier"] == {"select": {"name": "Canopy", "color": "purple"}}
        assert props["Payment Status"] == {"select": {"name": "paid", "color": "green"}}
        assert props["Budget"] == {"number": 12500.5}
        assert props["Due Date"] == {"date": {"start": "2026-05-01"}}

    def test_empty_values_clear_remote(self):
        """Empty optional fields become empty Notion values, not omissions."""
        props = to_remote_properties(
            _make_project(project_address="", budget_cents=None, due_date=None)
        )
        assert props["Address"] == {"rich_text": []}
        assert props["Budget"] == {"number": None}
        assert props["Due Date"] == {"date": None}

    def test_long_text_is_split_into_segments(self):
        """Text longer than the segment limit is sent as several rich text segments."""
        address = "x" * (RICH_TEXT_SEGMENT_LIMIT * 2 + 10)
        props = to_remote_properties(_make_project(project_address=address))

        segments = props["Address"]["rich_text"]
        assert [len(s["text"]["content"]) for s in segments] == [
            RICH_TEXT_SEGMENT_LIMIT,
            RICH_TEXT_SEGMENT_LIMIT,
            10,
        ]

    def test_encode_values_ignores_unmapped_keys(self):
        """Partial encoding only emits the fields given."""
        props = encode_values({"status": ProjectStatus.DELIVERED, "remote_document_id": "x"})
        assert props == {"Status": {"select": {"name": "DELIVERED", "color": "green"}}}


# ── Inbound Mapping ──────────────────────────────────────────────────────────


class TestFromRemoteProperties:
    """Test Notion properties -> project patch."""

    def test_round_trip_preserves_values(self):
        """Mapping a project out and back yields the same field values."""
        project = _make_project()
        result = from_remote_properties(to_remote_properties(project))

        assert result.ok
        assert result.patch == local_values(project)

    def test_round_trip_of_long_text(self):
        """Segmented rich text is joined back together."""
        address = "y" * (RICH_TEXT_SEGMENT_LIMIT + 5)
        project = _make_project(project_address=address)
        result = from_remote_properties(to_remote_properties(project))
        assert result.patch["project_address"] == address

    def test_api_response_shapes(self):
        """Properties as returned by pages.retrieve are decoded."""
        result = from_remote_properties(
            {
                "Name": _api_title("Lakeview Cabin"),
                "Status": _api_select("Awaiting Feedback"),
                "Tier": _api_select("Tier 2"),
                "Payment Status": _api_select("Pending"),
                "Budget": {"id": "n", "type": "number", "number": 19.995},
                "Due Date": {"id": "d", "type": "date", "date": {"start": "2026-06-30T00:00:00.000Z"}},
                "Address": {"id": "a", "type": "rich_text", "rich_text": []},
            }
        )

        assert result.ok
        assert result.patch == {
            "name": "Lakeview Cabin",
            "status": ProjectStatus.AWAITING_FEEDBACK,
            "tier": ProjectTier.SPROUT,
            "project_address": None,
            "payment_status": PaymentStatus.pending,
            "budget_cents": 2000,
            "due_date": date(2026, 6, 30),
        }

    def test_missing_and_unmapped_properties(self):
        """Absent mapped properties are absent from the patch; unmapped ones are ignored."""
        result = from_remote_properties(
            {"Name": _api_title("Only Name"), "Owner": {"type": "people", "people": []}}
        )
        assert result.ok
        assert result.patch == {"name": "Only Name"}

    def test_invalid_values_are_reported_not_raised(self):
        """Type violations become MappingErrors; valid fields still map."""
        result = from_remote_properties(
            {
                "Name": _api_title("Broken Page"),
                "Status": _api_select("Abandoned"),
                "Budget": {"type": "number", "number": -5},
                "Tier": {"type": "rich_text", "rich_text": []},
            }
        )

        assert not result.ok
        assert result.patch == {"name": "Broken Page"}
        assert {e.field for e in result.errors} == {"status", "budget_cents", "tier"}
        status_error = next(e for e in result.errors if e.field == "status")
        assert status_error.property_name == "Status"
        assert "Abandoned" in status_error.message

    def test_empty_title_is_an_error(self):
        """The project name is required."""
        result = from_remote_properties({"Name": {"type": "title", "title": []}})
        assert [e.field for e in result.errors] == ["name"]

    def test_boolean_number_rejected(self):
        """JSON booleans are not numbers."""
        result = from_remote_properties({"Budget": {"type": "number", "number": True}})
        assert [e.field for e in result.errors] == ["budget_cents"]

    @pytest.mark.parametrize(
        "prop",
        [
            {"type": "rich_text", "rich_text": ["12 Oak Lane"]},
            {"type": "rich_text", "rich_text": [{"type": "text", "text": "12 Oak Lane"}]},
            {"type": "rich_text", "rich_text": [{"type": "text", "text": {"content": 12}}]},
        ],
    )
    def test_malformed_rich_text_segments_are_mapping_errors(self, prop):
        """Segments that are not text objects are reported, never raised."""
        result = from_remote_properties({"Name": _api_title("Oak"), "Address": prop})
        assert [e.field for e in result.errors] == ["project_address"]
        assert result.patch == {"name": "Oak"}

    def test_malformed_select_and_date_are_mapping_errors(self):
        result = from_remote_properties(
            {
                "Status": {"type": "select", "select": "INTAKE"},
                "Due Date": {"type": "date", "date": "2026-04-01"},
            }
        )
        assert {e.field for e in result.errors} == {"status", "due_date"}


# ── Property Map Verification ────────────────────────────────────────────────


class TestVerifyPropertyMap:
    """Test startup verification of the property map."""

    def test_default_map_is_complete(self):
        """The shipped map covers every ProjectField."""
        verify_property_map()

    def test_missing_field_fails(self):
        """Dropping a field from the map is a configuration error."""
        incomplete = {k: v for k, v in PROJECT_PROPERTY_MAP.items() if k != ProjectField.DUE_DATE}
        with pytest.raises(ConfigurationError, match="due_date"):
            verify_property_map(incomplete)

    def test_duplicate_notion_names_fail(self):
        """Two fields cannot share one Notion property."""
        clashing = dict(PROJECT_PROPERTY_MAP)
        clashing[ProjectField.ADDRESS] = PropertySpec("Name", PropertyType.RICH_TEXT, str, str)
        with pytest.raises(ConfigurationError, match="Name"):
            verify_property_map(clashing)

    def test_link_property_is_reserved(self):
        """No field may be mapped onto the Internal ID link property."""
        clashing = dict(PROJECT_PROPERTY_MAP)
        clashing[ProjectField.ADDRESS] = PropertySpec(LINK_PROPERTY, PropertyType.RICH_TEXT, str, str)
        with pytest.raises(ConfigurationError):
            verify_property_map(clashing)


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestHelpers:
    """Test diff, link and page content helpers."""

    def test_diff_properties(self):
        """Only properties that differ from the baseline are returned."""
        current = to_remote_properties(_make_project(status=ProjectStatus.DELIVERED))
        baseline = to_remote_properties(_make_project())
        assert diff_properties(current, baseline) == {
            "Status": {"select": {"name": "DELIVERED", "color": "green"}}
        }

    def test_diff_without_baseline_returns_everything(self):
        """With no baseline every property is considered changed."""
        current = to_remote_properties(_make_project())
        assert diff_properties(current, None) == current

    def test_link_property(self):
        """The link property carries the project id as rich text."""
        assert link_property("abc") == {
            LINK_PROPERTY: {"rich_text": [{"type": "text", "text": {"content": "abc"}}]}
        }

    def test_page_blocks_describe_project(self):
        """Overview blocks include the tier label and address."""
        blocks = build_page_blocks(_make_project(project_address=None))
        texts = [
            b[b["type"]]["rich_text"][0]["text"]["content"]
            for b in blocks
            if b["type"] != "divider"
        ]
        assert "Tier: Canopy" in texts
        assert "Address: N/A" in texts
        assert blocks[0]["type"] == "heading_2"
