"""Tests for message templates."""

import pytest

from school_notify.notifications.templates import (
    get_message,
    has_message,
    load_templates,
    render_content,
)

REMINDER_TYPES = [
    "training_reminder",
    "match_reminder",
    "tournament_reminder",
    "meeting_reminder",
    "payment_reminder",
    "birthday_reminder",
    "general_event_reminder",
    "immediate_reminder",
]


class TestRenderContent:
    def test_substitutes_placeholders(self):
        assert render_content("Hola {{ name }}", {"name": "Ana"}) == "Hola Ana"

    def test_whitespace_inside_braces_is_optional(self):
        assert render_content("{{name}} / {{  name  }}", {"name": "Ana"}) == "Ana / Ana"

    def test_unknown_placeholders_are_left_as_is(self):
        assert render_content("Hola {{ name }} {{ other }}", {"name": "Ana"}) == (
            "Hola Ana {{ other }}"
        )

    def test_none_values_are_left_as_is(self):
        assert render_content("Lugar: {{ place }}", {"place": None}) == "Lugar: {{ place }}"

    def test_no_variables_returns_template(self):
        assert render_content("Hola {{ name }}", {}) == "Hola {{ name }}"


class TestMessages:
    @pytest.mark.parametrize("message_type", REMINDER_TYPES)
    def test_every_reminder_type_has_all_channels(self, message_type):
        templates = load_templates()

        assert set(templates[message_type]) >= {"whatsapp", "email_subject", "email_body"}

    def test_get_message_renders(self):
        message = get_message(
            "birthday_reminder", "whatsapp", {"attendee_name": "Ana", "school_name": "Club"}
        )

        assert "Ana" in message
        assert "Club" in message

    def test_get_message_unknown_type_raises(self):
        with pytest.raises(KeyError):
            get_message("nope", "whatsapp", {})

    def test_has_message(self):
        assert has_message("whatsapp_help", "whatsapp")
        assert not has_message("whatsapp_help", "email_body")
        assert not has_message("nope", "whatsapp")
