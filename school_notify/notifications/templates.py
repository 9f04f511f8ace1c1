"""Message template loading and rendering."""

import re
from pathlib import Path

import yaml


# {{ variable }} placeholders; whitespace inside the braces is optional
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

_templates: dict | None = None


def load_templates() -> dict:
    """
    Load message templates from YAML file.

    Caches templates after first load.
    """
    global _templates
    if _templates is not None:
        return _templates

    yaml_path = Path(__file__).parent / "messages.yaml"
    with open(yaml_path, encoding="utf-8") as f:
        _templates = yaml.safe_load(f)

    return _templates


def render_content(template: str, variables: dict | None) -> str:
    """
    Substitute {{ name }} placeholders with values from `variables`.

    Placeholders without a matching variable are left untouched, so a
    partially rendered message is still readable and the gap is visible.
    """
    if not template or not variables:
        return template

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables or variables[name] is None:
            return match.group(0)
        return str(variables[name])

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def get_message(message_type: str, channel: str, context: dict) -> str:
    """
    Get and render a message for a specific type and channel.

    Args:
        message_type: e.g., "training_reminder", "whatsapp_help"
        channel: e.g., "whatsapp", "email_subject", "email_body"
        context: Variables to substitute

    Raises:
        KeyError: If the message type or channel isn't defined
    """
    templates = load_templates()
    template = templates[message_type][channel]
    return render_content(template, context)


def has_message(message_type: str, channel: str) -> bool:
    return channel in load_templates().get(message_type, {})
