"""Placeholder templates for reminder titles and notes."""

import re
from typing import Mapping, Optional

PLACEHOLDERS = ("sender", "channel", "message", "permalink", "date")

DEFAULT_TITLE_TEMPLATE = "Slack: {sender} in #{channel}"
DEFAULT_NOTES_TEMPLATE = r"{message}\n\n{permalink}"

_KNOWN_PATTERN = re.compile(r"\{(" + "|".join(PLACEHOLDERS) + r")\}")
_ANY_PATTERN = re.compile(r"\{([a-zA-Z_]+)\}")
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


def render(template: str, context: Mapping[str, Optional[str]]) -> str:
    """Fill a template with mention context.

    Known placeholders are replaced in a single pass, so values that
    themselves look like placeholders are left alone. Unknown ``{...}``
    tokens are kept verbatim. A literal ``\\n`` becomes a line break.

    When there is no permalink, the blank lines it leaves behind are
    collapsed and the result is trimmed.

    Examples:
        >>> render("Slack: {sender} in #{channel}", {"sender": "Jane Doe", "channel": "general"})
        'Slack: Jane Doe in #general'
        >>> render(r"{message}\\n\\n{permalink}", {"message": "hi", "permalink": None})
        'hi'
    """

    def substitute(match: re.Match) -> str:
        return context.get(match.group(1)) or ""

    result = _KNOWN_PATTERN.sub(substitute, template)
    result = result.replace("\\n", "\n")

    if not context.get("permalink"):
        result = _EXCESS_BLANK_LINES.sub("\n\n", result)
        result = result.strip()

    return result


def unknown_placeholders(template: str) -> list[str]:
    """Return ``{name}`` tokens in the template that render() won't fill."""
    unknown = []
    for name in _ANY_PATTERN.findall(template):
        token = f"{{{name}}}"
        if name not in PLACEHOLDERS and token not in unknown:
            unknown.append(token)
    return unknown
