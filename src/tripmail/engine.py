"""Classification and configuration resolution engine.

The engine sits between raw email text and the language-model call. It is a
library consumed by the ingestion pipeline:

1. classify: email -> booking type label (priority-ordered rules)
2. resolve_prompt: label + body -> model-ready extraction prompt
3. (pipeline calls the model)
4. resolve_timezone: label + model output -> authoritative IANA timezone

Every public operation is total: an unreachable rule store degrades to the
default label, the built-in prompt and the global fallback timezone instead
of raising. Only programming errors propagate.

Snapshot consistency: `prepare()` and `finalize()` each work from a single
config snapshot. Callers that need classification and timezone resolution
for one email to see the same rules can pass the PreparedEmail's snapshot to
`finalize()`.

Usage:
    from tripmail.config import get_config
    from tripmail.engine import ItineraryEngine
    from tripmail.rules.matcher import EmailInput

    engine = ItineraryEngine(store, get_config())
    engine.refresh_config()  # once per batch

    prepared = await engine.prepare(EmailInput(body=body, subject=subject, from_address=sender))
    model_output = await call_model(prepared.prompt.text)
    segment = await engine.finalize(
        prepared.email_type, model_output, body, snapshot=prepared.snapshot
    )
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from tripmail.config import config_changes, get_config, reload_config_if_changed
from tripmail.config_schema import AppConfig
from tripmail.core.errors import StoreUnavailable
from tripmail.core.logging import get_logger, set_correlation_id
from tripmail.db.records import OUTCOME_SOURCE, PromptUsage
from tripmail.prompts.resolver import PromptResolver, ResolvedPrompt
from tripmail.prompts.time_hints import TimeHint, extract_time_hints
from tripmail.prompts.usage import UsageTracker
from tripmail.rules.cache import Clock, ConfigCache, ConfigSnapshot
from tripmail.rules.matcher import ClassificationResult, EmailInput, RuleMatcher
from tripmail.rules.subjects import subject_variations
from tripmail.timezone.display import apply_arrival_window, apply_timezone, format_segment
from tripmail.timezone.resolver import TimezoneResolution, TimezoneResolver

if TYPE_CHECKING:
    from tripmail.db.store import RuleStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class PreparedEmail:
    """Everything the pipeline needs before calling the model.

    Attributes:
        classification: Booking type decision
        prompt: Resolved extraction prompt
        time_hints: Clock times extracted from the body
        snapshot: Config snapshot both decisions were made from
    """

    classification: ClassificationResult
    prompt: ResolvedPrompt
    time_hints: tuple[TimeHint, ...]
    snapshot: ConfigSnapshot

    @property
    def email_type(self) -> str:
        return self.classification.label


class ItineraryEngine:
    """Public surface of the classification and resolution engine.

    Attributes:
        store: Rule store (read through the cache; usage records written)
        config: Application configuration
        cache: Snapshot cache over the store
    """

    def __init__(
        self,
        store: RuleStore,
        config: AppConfig | None = None,
        clock: Clock = time.monotonic,
    ):
        self.store = store
        self.cache = ConfigCache(store, clock=clock)
        self.usage = UsageTracker(store)
        self.apply_config(config or AppConfig())

    def apply_config(self, config: AppConfig) -> None:
        """Install a new config without dropping the cached snapshot.

        Collaborators built from config are rebuilt; cache TTL and back-off
        apply from the next freshness check.
        """
        self.config = config
        self.cache.ttl_seconds = config.cache.ttl_seconds
        self.cache.retry_after_seconds = config.cache.retry_after_seconds
        self.matcher = RuleMatcher(default_label=config.classification.default_label)
        self.prompts = PromptResolver(config.prompts)
        self.timezones = TimezoneResolver(config.timezone)
        self.usage.enabled = config.prompts.track_usage

    def refresh_config(self) -> bool:
        """Pick up an edited config file; call once per ingestion batch.

        Returns:
            True if the engine now runs on a different config

        Raises:
            ConfigLoadError, ConfigValidationError: If no config was ever loaded
                and the file cannot be loaded now
        """
        reload_config_if_changed()
        config = get_config()
        if config is self.config:
            return False
        logger.info("engine_config_applied", changed=config_changes(self.config, config))
        self.apply_config(config)
        return True

    async def snapshot(self) -> ConfigSnapshot:
        """Current config snapshot; an empty one if the store was never readable."""
        try:
            return await self.cache.snapshot()
        except StoreUnavailable as e:
            logger.warning(
                "rule_store_unavailable",
                operation=e.operation,
                error=str(e),
                degraded_to="built-in defaults",
            )
            return ConfigSnapshot.empty()

    def invalidate_cache(self) -> None:
        """Drop the cached snapshot; the next call reloads from the store."""
        self.cache.invalidate()

    # =========================================================================
    # Classification
    # =========================================================================

    async def classify(self, email: EmailInput) -> str:
        """Classify an email into a booking type label."""
        result = await self.classify_detailed(email)
        return result.label

    async def classify_detailed(
        self, email: EmailInput, snapshot: ConfigSnapshot | None = None
    ) -> ClassificationResult:
        """Classify an email, reporting the winning rule and sender trust."""
        snapshot = snapshot or await self.snapshot()
        result = self.matcher.classify(
            email, snapshot.rules, snapshot.find_sender_rule(email.from_address)
        )
        if snapshot.is_empty:
            result = ClassificationResult(
                label=result.label,
                rule_name=result.rule_name,
                match_reason=result.match_reason,
                sender_trust=result.sender_trust,
                degraded=True,
            )

        logger.info(
            "email_classified",
            email_type=result.label,
            rule=result.rule_name,
            sender=email.from_address,
            subject=email.subject,
            sender_trust=result.sender_trust,
            degraded=result.degraded,
        )
        return result

    # =========================================================================
    # Prompts
    # =========================================================================

    async def _resolve_prompt(
        self,
        snapshot: ConfigSnapshot,
        email_type: str,
        body: str,
        time_hints: Sequence[TimeHint] | None,
    ) -> ResolvedPrompt:
        if time_hints is None:
            time_hints = extract_time_hints(body)

        started = time.perf_counter()
        resolved = self.prompts.resolve(snapshot, email_type, body, time_hints)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        await self.usage.record(
            PromptUsage(
                template_id=resolved.template_id,
                email_type=email_type,
                success=True,
                source=resolved.source,
                response_ms=elapsed_ms,
            )
        )
        return resolved

    async def resolve_prompt(
        self,
        email_type: str,
        body: str,
        time_hints: Sequence[TimeHint] | None = None,
    ) -> str:
        """Resolve the extraction prompt for a booking type.

        Args:
            email_type: Booking type label (usually from classify)
            body: Email body
            time_hints: Pre-extracted clock times; None extracts them from body

        Returns:
            Prompt text with every placeholder filled
        """
        snapshot = await self.snapshot()
        resolved = await self._resolve_prompt(snapshot, email_type, body, time_hints)
        return resolved.text

    async def resolve_classification_prompt(self, body: str) -> str:
        """Resolve the prompt for model-based classification."""
        snapshot = await self.snapshot()
        return self.prompts.resolve_classification(snapshot, body).text

    async def record_prompt_outcome(
        self,
        template_id: int | None,
        email_type: str,
        success: bool,
        error_message: str | None = None,
        response_ms: int | None = None,
        token_usage: int | None = None,
    ) -> None:
        """Record how the model call with a resolved prompt went."""
        await self.usage.record(
            PromptUsage(
                template_id=template_id,
                email_type=email_type,
                success=success,
                source=OUTCOME_SOURCE,
                error_message=error_message,
                response_ms=response_ms,
                token_usage=token_usage,
            )
        )

    # =========================================================================
    # Timezone and display
    # =========================================================================

    async def resolve_timezone(
        self,
        email_type: str,
        model_output: Any = None,
        raw_body: str | None = None,
    ) -> str:
        """Resolve the authoritative IANA timezone for an extracted booking."""
        resolution = await self.resolve_timezone_detailed(email_type, model_output, raw_body)
        return resolution.timezone

    async def resolve_timezone_detailed(
        self,
        email_type: str,
        model_output: Any = None,
        raw_body: str | None = None,
        snapshot: ConfigSnapshot | None = None,
    ) -> TimezoneResolution:
        snapshot = snapshot or await self.snapshot()
        return self.timezones.resolve(snapshot, email_type, model_output, raw_body)

    async def format_segment(self, email_type: str, data: Any) -> Any:
        """Attach display fields for the booking type (unchanged if unformatted)."""
        snapshot = await self.snapshot()
        return format_segment(snapshot.segment_type(email_type), data)

    # =========================================================================
    # Lookups
    # =========================================================================

    async def list_segment_types(self) -> list[dict[str, Any]]:
        """Active booking types in the current snapshot."""
        snapshot = await self.snapshot()
        return [
            {
                "name": segment.name,
                "display_name": segment.display_name,
                "description": segment.description,
                "is_active": segment.is_active,
            }
            for segment in snapshot.segment_types.values()
        ]

    async def subject_variations(self, email_type: str, subject: str) -> list[str]:
        """Subject strings to search for when re-identifying an email."""
        snapshot = await self.snapshot()
        return subject_variations(subject, snapshot.subject_patterns_for(email_type))

    # =========================================================================
    # End-to-end helpers
    # =========================================================================

    async def prepare(self, email: EmailInput, email_id: str | None = None) -> PreparedEmail:
        """Classify an email and resolve its prompt from one snapshot.

        Args:
            email: Raw email fields
            email_id: Correlation id attached to every log event for this email
        """
        if email_id is not None:
            set_correlation_id(email_id)

        snapshot = await self.snapshot()
        classification = await self.classify_detailed(email, snapshot)
        hints = tuple(extract_time_hints(email.body))
        prompt = await self._resolve_prompt(snapshot, classification.label, email.body, hints)
        return PreparedEmail(
            classification=classification,
            prompt=prompt,
            time_hints=hints,
            snapshot=snapshot,
        )

    async def finalize(
        self,
        email_type: str,
        model_output: Any,
        raw_body: str | None = None,
        snapshot: ConfigSnapshot | None = None,
    ) -> dict[str, Any]:
        """Turn model output into a segment record ready for persistence.

        Applies the private-terminal arrival window, display formatting and
        the resolved timezone, all from one snapshot.
        """
        snapshot = snapshot or await self.snapshot()
        data = model_output if isinstance(model_output, dict) else {}

        if email_type in self.config.timezone.facility_types:
            data = apply_arrival_window(data, self.config.private_terminal)

        resolution = self.timezones.resolve(snapshot, email_type, data, raw_body)
        data = format_segment(snapshot.segment_type(email_type), data)
        result = apply_timezone(data, resolution.timezone)
        result["_metadata"]["timezone_step"] = resolution.step

        logger.info(
            "segment_finalized",
            email_type=email_type,
            timezone=resolution.timezone,
            timezone_step=resolution.step,
        )
        return result
