"""Prompt template interpolation, composition and built-in fallbacks.

Templates use `{{variable}}` placeholders. Interpolation is a single pass:
substituted values are never scanned for placeholders again, and the text
sent to the model never contains a `{{` token. Stray doubled braces in a
template collapse; braces inside email text are spaced apart, never dropped.

A type-specific fragment is composed with a base template structurally: the
base is split into a preamble and a schema footer (its `footer` column, or
the text from the last splice-marker line onwards), and the fragment becomes
the middle slot.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import regex

PLACEHOLDER_PATTERN = regex.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_DOUBLED_OPEN_BRACE = regex.compile(r"\{\{+")
_OPEN_BRACE_RUN = regex.compile(r"\{(?=\{)")

DEFAULT_SPLICE_MARKER = "Return a JSON object with this exact structure"

DEFAULT_BOOKING_TYPES = (
    "flight",
    "hotel",
    "car_rental",
    "train",
    "cruise",
    "restaurant",
    "event",
    "private_terminal",
    "other",
)

FALLBACK_PARSING_PROMPT = """You are an expert travel email parser. Extract ALL relevant information from this confirmation email.
You MUST respond with valid JSON only. Do not include any explanatory text outside the JSON.

IMPORTANT RULES:
1. Extract dates in ISO format (YYYY-MM-DD HH:MM)
2. Identify confirmation/booking numbers (remove spaces, clean format)
3. Extract passenger names exactly as shown
4. Parse prices and currency (numbers only for amount)
5. Identify locations (cities, airports, addresses)
6. If information is missing, use null
7. Always respond with valid JSON only

Return a JSON object with this exact structure:
{
  "type": "{{emailType}}",
  "confirmation_number": "string or null",
  "passenger_name": "string or null",
  "travel_dates": {
    "departure": "YYYY-MM-DD HH:MM or null",
    "return": "YYYY-MM-DD HH:MM or null"
  },
  "locations": {
    "origin": "string or null",
    "destination": "string or null"
  },
  "price": {
    "amount": number or null,
    "currency": "string or null"
  },
  "details": {}
}

Email content:
{{emailContent}}"""

FALLBACK_CLASSIFICATION_PROMPT = """Classify this email as one of: {{bookingTypes}}

Email content: {{emailContent}}...

Respond with only the classification word."""

TIME_PARSING_INSTRUCTIONS = """CRITICAL TIME PARSING RULES:
- Convert ALL times to 24-hour format (HH:MM)
- Examples: 4:00 PM -> 16:00, 11:00 AM -> 11:00, 2:00 PM -> 14:00
- Look for exact phrases: "pickup at", "check-in", "check-out", "departure", "arrival"
- Pay close attention to AM/PM indicators
- If time seems wrong, double-check the original email text

EXTRACTED TIMES FROM EMAIL:
{{extractedTimes}}"""

EMAIL_CONTENT_SUFFIX = "\n\nEmail content:\n{{emailContent}}"

_BODY_VARIABLES = ("emailContent", "emailBody")


def _neutralize(value: object) -> str:
    # Keeps every brace; only separates adjacent opening ones
    return "" if value is None else _OPEN_BRACE_RUN.sub("{ ", str(value))


def interpolate(template: str, variables: Mapping[str, object]) -> str:
    """Replace every `{{name}}` placeholder in one pass.

    Missing or None values become the empty string. Values are not
    re-scanned. The output never contains `{{`:

    - stray `{{` in the template text itself collapse to `{`
    - in values, adjacent opening braces are spaced apart (`{{X}}` becomes
      `{ {X}}`), so email text keeps all of its characters
    """
    pieces: list[str] = []

    def _append(piece: str) -> None:
        if piece.startswith("{") and pieces and pieces[-1].endswith("{"):
            piece = " " + piece
        if piece:
            pieces.append(piece)

    last = 0
    for match in PLACEHOLDER_PATTERN.finditer(template):
        _append(_DOUBLED_OPEN_BRACE.sub("{", template[last : match.start()]))
        _append(_neutralize(variables.get(match.group(1))))
        last = match.end()
    _append(_DOUBLED_OPEN_BRACE.sub("{", template[last:]))
    return "".join(pieces)


def placeholders(template: str) -> set[str]:
    """Names of the placeholders a template uses."""
    return {m.group(1) for m in PLACEHOLDER_PATTERN.finditer(template)}


def references_body(template: str) -> bool:
    return any(name in _BODY_VARIABLES for name in placeholders(template))


@dataclass(frozen=True)
class ComposedPrompt:
    """Base template split into slots with a type-specific body in the middle."""

    preamble: str
    type_specific_body: str = ""
    schema_footer: str = ""

    def render(self) -> str:
        parts = (self.preamble.strip(), self.type_specific_body.strip(), self.schema_footer.strip())
        return "\n\n".join(part for part in parts if part)


def split_base(
    text: str, footer: str | None = None, marker: str = DEFAULT_SPLICE_MARKER
) -> ComposedPrompt:
    """Split a base template into preamble and schema footer.

    An explicit footer wins. Otherwise the footer starts at the beginning of
    the last line containing `marker`; without a marker the whole text is
    preamble and fragments are appended after it.
    """
    if footer:
        return ComposedPrompt(preamble=text, schema_footer=footer)

    index = text.rfind(marker) if marker else -1
    if index < 0:
        return ComposedPrompt(preamble=text)

    line_start = text.rfind("\n", 0, index) + 1
    return ComposedPrompt(preamble=text[:line_start], schema_footer=text[line_start:])


def compose(
    base_text: str,
    fragment: str,
    footer: str | None = None,
    marker: str = DEFAULT_SPLICE_MARKER,
) -> ComposedPrompt:
    """Place a type fragment between a base template's preamble and footer."""
    split = split_base(base_text, footer, marker)
    return ComposedPrompt(
        preamble=split.preamble,
        type_specific_body=fragment,
        schema_footer=split.schema_footer,
    )


def classification_fallback(booking_types: Iterable[str]) -> str:
    """Built-in classification prompt listing the known booking types."""
    types = list(dict.fromkeys(booking_types)) or list(DEFAULT_BOOKING_TYPES)
    if "other" not in types:
        types.append("other")
    return FALLBACK_CLASSIFICATION_PROMPT.replace("{{bookingTypes}}", ", ".join(types))
