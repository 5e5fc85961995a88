"""Prompt usage tracking.

Counts resolutions per template in memory and forwards each record to the
rule store's prompt_usage table. Recording is best-effort: a store failure is
logged and never interrupts prompt resolution. Model outcome records add to
the failure counts but not to the use counts.

Usage:
    from tripmail.prompts.usage import UsageTracker

    tracker = UsageTracker(store)
    await tracker.record(PromptUsage(template_id=7, email_type="hotel", success=True))
    tracker.counts()  # {7: 1}
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import TYPE_CHECKING

from tripmail.core.logging import get_logger
from tripmail.db.records import PromptUsage

if TYPE_CHECKING:
    from tripmail.db.store import RuleStore

logger = get_logger(__name__)

# Counter key for prompts that came from the built-in fallbacks
FALLBACK_KEY = "fallback"


class UsageTracker:
    """Thread-safe usage counters with store forwarding.

    Attributes:
        store: Destination for usage records, or None to count in memory only
    """

    def __init__(self, store: RuleStore | None = None, enabled: bool = True):
        self.store = store
        self.enabled = enabled
        self._lock = threading.Lock()
        self._counts: Counter[int | str] = Counter()
        self._failures: Counter[int | str] = Counter()

    def increment(self, usage: PromptUsage) -> None:
        key: int | str = usage.template_id if usage.template_id is not None else FALLBACK_KEY
        with self._lock:
            if usage.counts_as_use:
                self._counts[key] += 1
            if not usage.success:
                self._failures[key] += 1

    async def record(self, usage: PromptUsage) -> None:
        """Count a usage and forward it to the store.

        Never raises: forwarding errors are logged and dropped.
        """
        if not self.enabled:
            return
        self.increment(usage)
        if self.store is None:
            return
        try:
            await self.store.record_prompt_usage(usage)
        except Exception as e:
            logger.warning(
                "prompt_usage_record_failed",
                template_id=usage.template_id,
                email_type=usage.email_type,
                error=str(e),
            )

    def counts(self) -> dict[int | str, int]:
        with self._lock:
            return dict(self._counts)

    def failures(self) -> dict[int | str, int]:
        with self._lock:
            return dict(self._failures)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._failures.clear()
