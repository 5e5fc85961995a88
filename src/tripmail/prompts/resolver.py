"""Prompt resolution for classification and extraction.

Resolution order for extraction prompts (first success wins):
1. Self-contained type template: used verbatim, only placeholders filled.
2. Base + type fragment: fragment placed between the base preamble and the
   base schema footer.
3. Base only: `{{emailType}}` carries the booking type label.
4. Type fragment without a base: composed with the built-in fallback.
5. Built-in fallback prompt.

The resolver is a pure function of the snapshot and its inputs; usage
recording happens in the engine.

Usage:
    from tripmail.prompts.resolver import PromptResolver

    resolver = PromptResolver(config.prompts)
    resolved = resolver.resolve(snapshot, "hotel", body, hints)
    send_to_model(resolved.text)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from tripmail.config_schema import PromptsConfig
from tripmail.core.logging import get_logger
from tripmail.db.records import BASE_TEMPLATE_TYPE, PromptTemplate
from tripmail.prompts.templates import (
    EMAIL_CONTENT_SUFFIX,
    FALLBACK_PARSING_PROMPT,
    TIME_PARSING_INSTRUCTIONS,
    classification_fallback,
    compose,
    interpolate,
    references_body,
    split_base,
)
from tripmail.prompts.time_hints import TimeHint, format_time_hints

if TYPE_CHECKING:
    from tripmail.rules.cache import ConfigSnapshot

logger = get_logger(__name__)

PromptSource = Literal["type_template", "composed", "base", "fragment_fallback", "fallback"]


@dataclass(frozen=True)
class ResolvedPrompt:
    """A fully interpolated prompt and where it came from.

    Attributes:
        text: Prompt text ready for the model (no placeholders left)
        source: Which resolution step produced it
        email_type: Booking type the prompt was resolved for
        template_ids: Stored templates used, type template first
    """

    text: str
    source: PromptSource
    email_type: str
    template_ids: tuple[int, ...] = ()

    @property
    def template_id(self) -> int | None:
        return self.template_ids[0] if self.template_ids else None


class PromptResolver:
    """Selects and interpolates prompts from a config snapshot."""

    def __init__(self, config: PromptsConfig | None = None):
        self.config = config or PromptsConfig()

    def build_variables(
        self,
        snapshot: ConfigSnapshot,
        email_type: str,
        body: str,
        time_hints: Sequence[TimeHint] = (),
    ) -> dict[str, str]:
        """Runtime values available to every template."""
        segment = snapshot.segment_type(email_type)
        rendered_hints = format_time_hints(time_hints)
        return {
            "emailContent": body,
            "emailBody": body,
            "emailType": email_type,
            "typeName": email_type,
            "displayName": segment.display_name if segment else email_type,
            "extractedTimes": rendered_hints,
            "timeHints": rendered_hints,
            "timeParsingInstructions": TIME_PARSING_INSTRUCTIONS.replace(
                "{{extractedTimes}}", rendered_hints
            ),
        }

    def select(
        self, snapshot: ConfigSnapshot, email_type: str
    ) -> tuple[str, PromptSource, tuple[int, ...]]:
        """Pick the uninterpolated prompt text for a booking type."""
        marker = self.config.splice_marker
        base = snapshot.template("parsing", BASE_TEMPLATE_TYPE)
        typed: PromptTemplate | None = None
        if email_type != BASE_TEMPLATE_TYPE:
            typed = snapshot.template("parsing", email_type)

        if typed is not None and typed.self_contained:
            return typed.prompt, "type_template", (typed.id,)

        if typed is not None and base is not None:
            composed = compose(base.prompt, typed.prompt, base.footer, marker)
            return composed.render(), "composed", (typed.id, base.id)

        if base is not None:
            whole = split_base(base.prompt, base.footer, marker)
            return whole.render(), "base", (base.id,)

        if typed is not None:
            composed = compose(FALLBACK_PARSING_PROMPT, typed.prompt, marker=marker)
            return composed.render(), "fragment_fallback", (typed.id,)

        return FALLBACK_PARSING_PROMPT, "fallback", ()

    def resolve(
        self,
        snapshot: ConfigSnapshot,
        email_type: str,
        body: str,
        time_hints: Sequence[TimeHint] = (),
    ) -> ResolvedPrompt:
        """Resolve the extraction prompt for one email.

        Args:
            snapshot: Config snapshot shared with the classification step
            email_type: Booking type label
            body: Email body text
            time_hints: Clock times extracted from the body

        Returns:
            ResolvedPrompt; never raises for missing templates
        """
        text, source, template_ids = self.select(snapshot, email_type)
        if not references_body(text):
            text += EMAIL_CONTENT_SUFFIX

        variables = self.build_variables(snapshot, email_type, body, time_hints)
        resolved = ResolvedPrompt(
            text=interpolate(text, variables),
            source=source,
            email_type=email_type,
            template_ids=template_ids,
        )
        logger.debug(
            "prompt_resolved",
            email_type=email_type,
            source=source,
            template_ids=list(template_ids),
            length=len(resolved.text),
        )
        return resolved

    def resolve_classification(self, snapshot: ConfigSnapshot, body: str) -> ResolvedPrompt:
        """Resolve the classification prompt, using an excerpt of the body."""
        excerpt = (body or "")[: self.config.classification_excerpt_chars]
        template = snapshot.template("classification", BASE_TEMPLATE_TYPE)
        variables = {"emailContent": excerpt, "emailBody": excerpt}

        if template is None:
            return ResolvedPrompt(
                text=interpolate(classification_fallback(snapshot.segment_types), variables),
                source="fallback",
                email_type=BASE_TEMPLATE_TYPE,
            )

        return ResolvedPrompt(
            text=interpolate(template.prompt, variables),
            source="base",
            email_type=BASE_TEMPLATE_TYPE,
            template_ids=(template.id,),
        )
