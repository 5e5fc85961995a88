"""Tests for prompt usage tracking."""

import threading
from unittest.mock import AsyncMock, MagicMock

from tripmail.core.errors import DatabaseError
from tripmail.db.records import OUTCOME_SOURCE, PromptUsage
from tripmail.prompts.usage import FALLBACK_KEY, UsageTracker


class TestUsageTracker:
    async def test_counts_and_forwards(self):
        store = MagicMock()
        store.record_prompt_usage = AsyncMock()
        tracker = UsageTracker(store)

        usage = PromptUsage(template_id=7, email_type="hotel", success=True)
        await tracker.record(usage)
        await tracker.record(PromptUsage(template_id=None, email_type="other", success=False))

        assert tracker.counts() == {7: 1, FALLBACK_KEY: 1}
        assert tracker.failures() == {FALLBACK_KEY: 1}
        store.record_prompt_usage.assert_any_await(usage)
        assert store.record_prompt_usage.await_count == 2

    async def test_model_outcome_is_not_a_new_use(self):
        tracker = UsageTracker()

        await tracker.record(PromptUsage(template_id=7, email_type="hotel", success=True))
        await tracker.record(
            PromptUsage(template_id=7, email_type="hotel", success=False, source=OUTCOME_SOURCE)
        )

        assert tracker.counts() == {7: 1}
        assert tracker.failures() == {7: 1}

    async def test_store_failure_is_swallowed(self):
        store = MagicMock()
        store.record_prompt_usage = AsyncMock(side_effect=DatabaseError("disk full"))
        tracker = UsageTracker(store)

        await tracker.record(PromptUsage(template_id=3, email_type="flight", success=True))

        assert tracker.counts() == {3: 1}

    async def test_disabled_tracker_records_nothing(self):
        store = MagicMock()
        store.record_prompt_usage = AsyncMock()
        tracker = UsageTracker(store, enabled=False)

        await tracker.record(PromptUsage(template_id=3, email_type="flight", success=True))

        assert tracker.counts() == {}
        store.record_prompt_usage.assert_not_awaited()

    def test_concurrent_increments_are_not_lost(self):
        tracker = UsageTracker()
        usage = PromptUsage(template_id=1, email_type="hotel", success=True)

        def worker() -> None:
            for _ in range(1000):
                tracker.increment(usage)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.counts() == {1: 8000}

    def test_reset(self):
        tracker = UsageTracker()
        tracker.increment(PromptUsage(template_id=1, email_type="hotel", success=False))

        tracker.reset()

        assert tracker.counts() == {}
        assert tracker.failures() == {}
