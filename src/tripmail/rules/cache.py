"""Time-boxed snapshot cache over the rule store.

The cache holds one immutable ConfigSnapshot. Readers take a reference to
the current snapshot and use it for a whole email, so classification,
prompt resolution and timezone resolution all see the same rules even if a
reload completes in between.

Reload behavior:
- A snapshot is fresh while `clock() - loaded_at < ttl` and no invalidation
  happened since it was loaded.
- Concurrent callers that find the snapshot stale share one in-flight reload.
- If a reload fails, the last good snapshot keeps being served and no new
  reload is attempted for `retry_after_seconds`.
- The cache subscribes to the store, so administrative writes invalidate it
  synchronously.

Usage:
    from tripmail.rules.cache import ConfigCache

    cache = ConfigCache(store, ttl_seconds=300)
    snapshot = await cache.snapshot()
    rules = snapshot.rules
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from tripmail.core.errors import (
    AmbiguousActiveTemplate,
    MissingTypeConfiguration,
    StoreUnavailable,
)
from tripmail.core.logging import get_logger
from tripmail.db.records import (
    PromptTemplate,
    RuleSet,
    SegmentTypeConfig,
    SenderRule,
    SubjectPattern,
)
from tripmail.rules.matcher import CompiledRule, compile_rules

if TYPE_CHECKING:
    from tripmail.db.store import RuleStore

logger = get_logger(__name__)

Clock = Callable[[], float]


class _Miss:
    def __repr__(self) -> str:
        return "MISS"


# Returned by ConfigCache.get() when the collection is absent or stale
MISS: Any = _Miss()

COLLECTIONS = (
    "classification_rules",
    "sender_rules",
    "subject_patterns",
    "segment_types",
    "prompt_templates",
)


def _select_templates(
    templates: tuple[PromptTemplate, ...],
) -> tuple[dict[tuple[str, str], PromptTemplate], list[AmbiguousActiveTemplate]]:
    """Pick one template per (category, type), highest version first."""
    grouped: dict[tuple[str, str], list[PromptTemplate]] = {}
    for template in templates:
        if template.is_active:
            grouped.setdefault((template.category, template.template_type), []).append(template)

    selected = {}
    ambiguities = []
    for key, candidates in grouped.items():
        candidates.sort(key=lambda t: (t.version, t.id), reverse=True)
        selected[key] = candidates[0]
        if len(candidates) > 1:
            ambiguity = AmbiguousActiveTemplate(key[0], key[1], [t.version for t in candidates])
            ambiguities.append(ambiguity)
            logger.warning(
                "ambiguous_active_template",
                category=key[0],
                template_type=key[1],
                versions=ambiguity.versions,
                using_version=candidates[0].version,
            )
    return selected, ambiguities


@dataclass(frozen=True)
class ConfigSnapshot:
    """An immutable, consistent view of every rule collection.

    Attributes:
        rule_set: Collections as loaded from the store
        rules: Compiled classification rules in evaluation order
        segment_types: Active segment types by name
        templates: The active template per (category, type)
        ambiguities: Audit trail of (category, type) pairs with several
            active templates
        loaded_at: Cache clock reading when the snapshot was built
        generation: Cache invalidation generation the load started in
    """

    rule_set: RuleSet
    rules: tuple[CompiledRule, ...]
    segment_types: MappingProxyType[str, SegmentTypeConfig]
    templates: MappingProxyType[tuple[str, str], PromptTemplate]
    ambiguities: tuple[AmbiguousActiveTemplate, ...] = ()
    loaded_at: float = float("-inf")
    generation: int = -1
    is_empty: bool = False

    @classmethod
    def build(cls, rule_set: RuleSet, loaded_at: float, generation: int = 0) -> ConfigSnapshot:
        templates, ambiguities = _select_templates(rule_set.prompt_templates)
        return cls(
            rule_set=rule_set,
            rules=compile_rules(rule_set.classification_rules),
            segment_types=MappingProxyType(
                {t.name: t for t in rule_set.segment_types if t.is_active}
            ),
            templates=MappingProxyType(templates),
            ambiguities=tuple(ambiguities),
            loaded_at=loaded_at,
            generation=generation,
        )

    @classmethod
    def empty(cls) -> ConfigSnapshot:
        """Snapshot with no rules, used when the store has never been readable."""
        return cls(
            rule_set=RuleSet(),
            rules=(),
            segment_types=MappingProxyType({}),
            templates=MappingProxyType({}),
            is_empty=True,
        )

    @property
    def sender_rules(self) -> tuple[SenderRule, ...]:
        return self.rule_set.sender_rules

    @property
    def subject_patterns(self) -> tuple[SubjectPattern, ...]:
        return self.rule_set.subject_patterns

    def segment_type(self, name: str) -> SegmentTypeConfig | None:
        return self.segment_types.get(name)

    def require_segment_type(self, name: str) -> SegmentTypeConfig:
        """Get an active segment type.

        Raises:
            MissingTypeConfiguration: If the type has no active configuration
        """
        segment = self.segment_types.get(name)
        if segment is None:
            raise MissingTypeConfiguration(name)
        return segment

    def template(self, category: str, template_type: str) -> PromptTemplate | None:
        return self.templates.get((category, template_type))

    def find_sender_rule(self, address: str) -> SenderRule | None:
        """First sender rule (most recent first) contained in the address."""
        if not address:
            return None
        address_lower = address.lower()
        for rule in self.rule_set.sender_rules:
            if rule.is_active and rule.sender_pattern.lower() in address_lower:
                return rule
        return None

    def subject_patterns_for(self, email_type: str) -> list[SubjectPattern]:
        return [
            p for p in self.rule_set.subject_patterns if p.is_active and p.email_type == email_type
        ]


class ConfigCache:
    """Single-flight, TTL-bounded cache of the rule store.

    Attributes:
        store: Rule store the snapshots are loaded from
        ttl_seconds: Maximum age of a snapshot before it is reloaded
        retry_after_seconds: Back-off after a failed reload
    """

    def __init__(
        self,
        store: RuleStore,
        ttl_seconds: float = 300,
        retry_after_seconds: float = 30,
        clock: Clock = time.monotonic,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.retry_after_seconds = retry_after_seconds
        self._clock = clock
        self._snapshot: ConfigSnapshot | None = None
        self._generation = 0
        self._retry_at: float | None = None
        self._last_error: StoreUnavailable | None = None
        self._inflight: asyncio.Task[ConfigSnapshot] | None = None
        self.reload_count = 0

        store.subscribe(self.invalidate)

    @property
    def current(self) -> ConfigSnapshot | None:
        """The last loaded snapshot, without triggering a reload."""
        return self._snapshot

    def is_fresh(self) -> bool:
        snapshot = self._snapshot
        if snapshot is None or snapshot.generation != self._generation:
            return False
        return self._clock() - snapshot.loaded_at < self.ttl_seconds

    def get(self, key: str) -> Any:
        """Return a cached collection, or MISS if absent or stale.

        Args:
            key: One of COLLECTIONS
        """
        if key not in COLLECTIONS:
            raise KeyError(f"Unknown cache collection '{key}'")
        if not self.is_fresh():
            return MISS
        if key == "segment_types":
            return self._snapshot.segment_types
        return getattr(self._snapshot.rule_set, key)

    def invalidate(self) -> None:
        """Mark the current snapshot stale; the next reader reloads."""
        self._generation += 1
        self._retry_at = None
        logger.debug("config_cache_invalidated", generation=self._generation)

    async def snapshot(self) -> ConfigSnapshot:
        """Return a fresh snapshot, reloading if needed.

        Raises:
            StoreUnavailable: If the store has never been readable
        """
        if self.is_fresh():
            return self._snapshot

        if self._retry_at is not None and self._clock() < self._retry_at:
            if self._snapshot is not None:
                return self._snapshot
            error = self._last_error
            raise StoreUnavailable(
                f"Rule store unavailable, retrying after back-off: {error}",
                operation=error.operation if error else None,
            ) from error

        generation = self._generation
        snapshot = await self.load()
        if snapshot.generation < generation and self._retry_at is None:
            # Joined a reload that started before the last invalidation
            snapshot = await self.load()
        return snapshot

    async def load(self) -> ConfigSnapshot:
        """Force a reload, joining one already in flight.

        Raises:
            StoreUnavailable: If the reload fails and there is no previous snapshot
        """
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._reload(self._generation))
        return await asyncio.shield(self._inflight)

    async def _reload(self, generation: int) -> ConfigSnapshot:
        started = self._clock()
        try:
            rule_set = await self.store.load_all()
        except StoreUnavailable as e:
            self._retry_at = self._clock() + self.retry_after_seconds
            self._last_error = e
            if self._snapshot is None:
                logger.error(
                    "config_cache_load_failed",
                    error=str(e),
                    operation=e.operation,
                    retry_after_seconds=self.retry_after_seconds,
                )
                raise
            logger.warning(
                "config_cache_reload_failed",
                error=str(e),
                serving_snapshot_age=round(self._clock() - self._snapshot.loaded_at, 1),
                retry_after_seconds=self.retry_after_seconds,
            )
            return self._snapshot
        finally:
            self._inflight = None

        snapshot = ConfigSnapshot.build(rule_set, loaded_at=started, generation=generation)
        self._snapshot = snapshot
        self._retry_at = None
        self._last_error = None
        self.reload_count += 1
        logger.info(
            "config_cache_loaded",
            classification_rules=len(snapshot.rules),
            segment_types=len(snapshot.segment_types),
            templates=len(snapshot.templates),
            ambiguous_templates=len(snapshot.ambiguities),
        )
        return snapshot
