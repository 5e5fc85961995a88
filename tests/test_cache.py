"""Tests for the rule snapshot cache.

Tests cover:
- TTL-bounded freshness with an injected clock
- Invalidation (explicit and through store change notifications)
- Single-flight reloads under concurrent callers
- Serving the last good snapshot while the store is unavailable
- Active template selection and ambiguity reporting
"""

import asyncio

import pytest
from helpers import FakeClock, FakeStore, make_rule, make_template

from tripmail.core.errors import MissingTypeConfiguration, StoreUnavailable
from tripmail.db.records import RuleSet, SegmentTypeConfig, SenderRule, SubjectPattern
from tripmail.rules.cache import MISS, ConfigCache, ConfigSnapshot


class SlowStore(FakeStore):
    """FakeStore whose load_all yields to the event loop first."""

    async def load_all(self) -> RuleSet:
        await asyncio.sleep(0.01)
        return await super().load_all()


def _rule_set() -> RuleSet:
    return RuleSet(
        segment_types=(
            SegmentTypeConfig(name="hotel", display_name="Hotel"),
            SegmentTypeConfig(name="train", display_name="Train", is_active=False),
        ),
        classification_rules=(make_rule("hotel_keyword_hotel", "hotel", "hotel", priority=10),),
        sender_rules=(
            SenderRule(id=2, name="ps_member", sender_pattern="memberservices@reserveps.com"),
            SenderRule(
                id=1, name="ps_domain", sender_pattern="@reserveps.com", trust_level="untrusted"
            ),
        ),
        subject_patterns=(
            SubjectPattern(id=1, name="thompson", email_type="hotel", pattern="Thompson Austin"),
            SubjectPattern(id=2, name="alamo", email_type="car_rental", pattern="Alamo"),
        ),
    )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore(_rule_set())


@pytest.fixture
def cache(fake_store: FakeStore, clock: FakeClock) -> ConfigCache:
    return ConfigCache(fake_store, ttl_seconds=300, retry_after_seconds=30, clock=clock)


# ---------------------------------------------------------------------------
# Freshness
# ---------------------------------------------------------------------------


class TestFreshness:
    async def test_first_call_loads(self, cache: ConfigCache, fake_store: FakeStore):
        snapshot = await cache.snapshot()

        assert fake_store.loads == 1
        assert cache.reload_count == 1
        assert [c.name for c in snapshot.rules] == ["hotel_keyword_hotel"]

    async def test_served_from_cache_within_ttl(
        self, cache: ConfigCache, fake_store: FakeStore, clock: FakeClock
    ):
        first = await cache.snapshot()
        clock.advance(299)
        second = await cache.snapshot()

        assert second is first
        assert fake_store.loads == 1

    async def test_reloads_after_ttl(
        self, cache: ConfigCache, fake_store: FakeStore, clock: FakeClock
    ):
        first = await cache.snapshot()
        clock.advance(300)
        second = await cache.snapshot()

        assert second is not first
        assert fake_store.loads == 2

    async def test_invalidate_forces_reload(self, cache: ConfigCache, fake_store: FakeStore):
        await cache.snapshot()
        cache.invalidate()

        assert not cache.is_fresh()
        await cache.snapshot()
        assert fake_store.loads == 2

    async def test_store_change_notification_invalidates(
        self, cache: ConfigCache, fake_store: FakeStore
    ):
        await cache.snapshot()
        assert cache.is_fresh()

        fake_store.notify()

        assert not cache.is_fresh()

    async def test_get_returns_collections_when_fresh(self, cache: ConfigCache):
        assert cache.get("classification_rules") is MISS

        await cache.snapshot()

        assert len(cache.get("classification_rules")) == 1
        assert set(cache.get("segment_types")) == {"hotel"}

    async def test_get_returns_miss_when_stale(self, cache: ConfigCache, clock: FakeClock):
        await cache.snapshot()
        clock.advance(301)
        assert cache.get("sender_rules") is MISS

    def test_get_unknown_collection(self, cache: ConfigCache):
        with pytest.raises(KeyError):
            cache.get("everything")


# ---------------------------------------------------------------------------
# Single-flight reloads
# ---------------------------------------------------------------------------


class TestSingleFlight:
    async def test_concurrent_callers_share_one_load(self, clock: FakeClock):
        store = SlowStore(_rule_set())
        cache = ConfigCache(store, clock=clock)

        snapshots = await asyncio.gather(*(cache.snapshot() for _ in range(10)))

        assert store.loads == 1
        assert all(s is snapshots[0] for s in snapshots)

    async def test_invalidation_during_reload_triggers_another(self, clock: FakeClock):
        store = SlowStore(_rule_set())
        cache = ConfigCache(store, clock=clock)

        first = asyncio.ensure_future(cache.snapshot())
        await asyncio.sleep(0)
        cache.invalidate()
        second = await cache.snapshot()
        await first

        assert store.loads == 2
        assert second.generation == 1
        assert cache.is_fresh()


# ---------------------------------------------------------------------------
# Store failures
# ---------------------------------------------------------------------------


class TestStoreFailures:
    async def test_never_loaded_raises(self, cache: ConfigCache, fake_store: FakeStore):
        fake_store.error = StoreUnavailable("down", operation="load_all")

        with pytest.raises(StoreUnavailable):
            await cache.snapshot()

    async def test_never_loaded_backs_off(
        self, cache: ConfigCache, fake_store: FakeStore, clock: FakeClock
    ):
        fake_store.error = StoreUnavailable("down", operation="load_all")

        for _ in range(5):
            with pytest.raises(StoreUnavailable) as exc_info:
                await cache.snapshot()
            assert exc_info.value.operation == "load_all"
        assert fake_store.loads == 1

        clock.advance(31)
        fake_store.error = None
        snapshot = await cache.snapshot()

        assert fake_store.loads == 2
        assert [c.name for c in snapshot.rules] == ["hotel_keyword_hotel"]

    async def test_serves_stale_snapshot_on_failure(
        self, cache: ConfigCache, fake_store: FakeStore, clock: FakeClock
    ):
        good = await cache.snapshot()
        clock.advance(301)
        fake_store.error = StoreUnavailable("down", operation="load_all")

        stale = await cache.snapshot()

        assert stale is good
        assert fake_store.loads == 2

    async def test_backs_off_after_failure(
        self, cache: ConfigCache, fake_store: FakeStore, clock: FakeClock
    ):
        await cache.snapshot()
        clock.advance(301)
        fake_store.error = StoreUnavailable("down", operation="load_all")
        await cache.snapshot()

        clock.advance(10)
        await cache.snapshot()
        assert fake_store.loads == 2

        clock.advance(25)
        fake_store.error = None
        recovered = await cache.snapshot()
        assert fake_store.loads == 3
        assert cache.is_fresh()
        assert recovered.loaded_at == clock.now

    async def test_invalidate_clears_back_off(
        self, cache: ConfigCache, fake_store: FakeStore, clock: FakeClock
    ):
        await cache.snapshot()
        clock.advance(301)
        fake_store.error = StoreUnavailable("down", operation="load_all")
        await cache.snapshot()

        fake_store.error = None
        cache.invalidate()
        await cache.snapshot()

        assert fake_store.loads == 3


# ---------------------------------------------------------------------------
# Snapshot contents
# ---------------------------------------------------------------------------


class TestConfigSnapshot:
    def test_only_active_segment_types(self):
        snapshot = ConfigSnapshot.build(_rule_set(), loaded_at=0)

        assert snapshot.segment_type("hotel") is not None
        assert snapshot.segment_type("train") is None

    def test_require_segment_type(self):
        snapshot = ConfigSnapshot.build(_rule_set(), loaded_at=0)

        with pytest.raises(MissingTypeConfiguration) as exc_info:
            snapshot.require_segment_type("cruise")

        assert exc_info.value.email_type == "cruise"

    def test_highest_active_version_wins(self):
        rule_set = RuleSet(
            prompt_templates=(
                make_template(1, "hotel", "version two", version=2),
                make_template(2, "hotel", "version three", version=3),
            )
        )

        snapshot = ConfigSnapshot.build(rule_set, loaded_at=0)

        assert snapshot.template("parsing", "hotel").prompt == "version three"
        assert len(snapshot.ambiguities) == 1
        assert snapshot.ambiguities[0].versions == [3, 2]

    def test_inactive_templates_ignored(self):
        rule_set = RuleSet(
            prompt_templates=(
                make_template(1, "hotel", "active", version=1),
                make_template(2, "hotel", "draft", version=2, is_active=False),
            )
        )

        snapshot = ConfigSnapshot.build(rule_set, loaded_at=0)

        assert snapshot.template("parsing", "hotel").prompt == "active"
        assert snapshot.ambiguities == ()

    def test_find_sender_rule_first_match(self):
        snapshot = ConfigSnapshot.build(_rule_set(), loaded_at=0)

        rule = snapshot.find_sender_rule("MemberServices@ReservePS.com")
        assert rule.name == "ps_member"
        assert snapshot.find_sender_rule("help@reserveps.com").name == "ps_domain"
        assert snapshot.find_sender_rule("someone@example.com") is None
        assert snapshot.find_sender_rule("") is None

    def test_subject_patterns_for_type(self):
        snapshot = ConfigSnapshot.build(_rule_set(), loaded_at=0)

        assert [p.name for p in snapshot.subject_patterns_for("hotel")] == ["thompson"]

    def test_empty_snapshot(self):
        snapshot = ConfigSnapshot.empty()

        assert snapshot.is_empty
        assert snapshot.rules == ()
        assert snapshot.template("parsing", "base") is None
