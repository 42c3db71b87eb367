# tests/test_achievement_service.py
from __future__ import annotations

import asyncio
from datetime import date

import pytest

from progression.core.errors import StoreUnavailable
from progression.core.xp_config import XPReason
from progression.services.achievement_criteria import Criterion
from progression.services.achievement_service import AchievementService
from progression.services.achievement_definitions import ACHIEVEMENTS
from progression.services.activity_source import InMemoryActivitySource
from progression.services.ledger_store import InMemoryLedgerStore
from progression.services.xp_service import XPService
from tests.fixtures import FrozenClock, make_partner, make_timeline_event

pytestmark = pytest.mark.asyncio


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def activity() -> InMemoryActivitySource:
    return InMemoryActivitySource()


@pytest.fixture
def service(store, activity, clock) -> AchievementService:
    return AchievementService(store, XPService(store, clock=clock), activity, clock=clock)


async def test_definitions_in_fixed_order():
    assert [d.type for d in ACHIEVEMENTS] == [
        "first_partner",
        "five_partners",
        "ten_partners",
        "first_exclusive",
        "low_simp_master",
        "intimacy_champion",
        "data_enthusiast",
        "weekly_warrior",
        "streak_legend",
        "red_flag_detector",
        "graveyard_reaper",
        "phoenix",
        "social_butterfly",
        "validator",
        "level_10",
    ]


async def test_nothing_to_unlock_for_new_user(service):
    assert await service.evaluate("u1", "g1") == []


async def test_first_partner_unlocks_once_with_xp(service, activity, store):
    activity.upsert_partner(make_partner())

    unlocked = await service.evaluate("u1", "g1")

    assert [a.achievement_type for a in unlocked] == ["first_partner"]
    assert unlocked[0].xp_reward == 50
    progress = await store.get_progress("u1")
    assert progress.current_xp == 50
    history = await store.list_transactions("u1")
    assert history[0].reason == XPReason.ACHIEVEMENT_UNLOCKED.value
    assert history[0].amount == 50
    assert history[0].metadata["achievement_type"] == "first_partner"


async def test_repeated_evaluation_is_idempotent(service, activity, store):
    activity.upsert_partner(make_partner())

    await service.evaluate("u1", "g1")
    for _ in range(5):
        assert await service.evaluate("u1", "g1") == []

    assert len(await service.get_user_achievements("u1")) == 1
    assert await store.count_transactions("u1", XPReason.ACHIEVEMENT_UNLOCKED.value) == 1


async def test_concurrent_evaluations_unlock_once(service, activity, store):
    activity.upsert_partner(make_partner())

    results = await asyncio.gather(*(service.evaluate("u1", "g1") for _ in range(4)))

    assert sum(len(r) for r in results) == 1
    assert (await store.get_progress("u1")).current_xp == 50


async def test_partner_and_status_predicates(service, activity):
    for i in range(5):
        activity.upsert_partner(make_partner(status="Graveyard", partner_id=f"dead-{i}"))
    activity.upsert_partner(make_partner(status="Exclusive", partner_id="bae"))

    unlocked = {a.achievement_type for a in await service.evaluate("u1", "g1")}

    assert {"first_partner", "five_partners", "first_exclusive", "graveyard_reaper"} <= unlocked
    assert "ten_partners" not in unlocked


async def test_low_simp_master_ignores_graveyard_and_zero(service, activity):
    activity.upsert_partner(make_partner(simp_index=40, partner_id="a"))
    activity.upsert_partner(make_partner(simp_index=80, partner_id="b"))
    activity.upsert_partner(make_partner(simp_index=10, status="Graveyard", partner_id="c"))
    activity.upsert_partner(make_partner(simp_index=0, partner_id="d"))

    assert not await service.has_achievement("u1", "low_simp_master")
    await service.evaluate("u1", "g1")
    assert not await service.has_achievement("u1", "low_simp_master")

    activity.upsert_partner(make_partner(simp_index=99, partner_id="e"))
    await service.evaluate("u1", "g1")
    assert await service.has_achievement("u1", "low_simp_master")


async def test_intimacy_champion_needs_ten(service, activity):
    activity.upsert_partner(make_partner(intimacy_score=9, partner_id="a"))
    await service.evaluate("u1", "g1")
    assert not await service.has_achievement("u1", "intimacy_champion")

    activity.upsert_partner(make_partner(intimacy_score=10, partner_id="a"))
    await service.evaluate("u1", "g1")
    assert await service.has_achievement("u1", "intimacy_champion")


async def test_red_flag_detector_counts_red_flags_only(service, activity):
    activity.upsert_partner(make_partner(partner_id="p1"))
    for _ in range(9):
        activity.add_timeline_event(make_timeline_event("p1", event_type="red_flag"))
    activity.add_timeline_event(make_timeline_event("p1", event_type="date"))
    await service.evaluate("u1", "g1")
    assert not await service.has_achievement("u1", "red_flag_detector")

    activity.add_timeline_event(make_timeline_event("p1", event_type="red_flag", severity="Minor"))
    await service.evaluate("u1", "g1")
    assert await service.has_achievement("u1", "red_flag_detector")


async def test_phoenix_from_second_chance_transaction(service, store, clock):
    xp = XPService(store, clock=clock)
    await xp.award("u1", "g1", XPReason.SECOND_CHANCE, "p1")

    unlocked = await service.evaluate("u1", "g1")

    assert [a.achievement_type for a in unlocked] == ["phoenix"]


async def test_streak_legend(service, store):
    await store.update_progress(
        "u1",
        lambda p: p.model_copy(update={"streak_count": 30, "last_activity_date": date(2025, 1, 15)}),
    )

    unlocked = await service.evaluate("u1", "g1")

    assert [a.achievement_type for a in unlocked] == ["streak_legend"]


async def test_level_10_unlocks_in_same_pass(service, activity, store, clock):
    # 45_000 XP gets to level 10 exactly; first_partner tops up earlier in the pass
    xp = XPService(store, clock=clock)
    await xp.award("u1", "g1", XPReason.PARTNER_ADDED, "p1", amount=44_990)
    activity.upsert_partner(make_partner())

    unlocked, awards = await service.evaluate_with_awards("u1", "g1")

    assert [a.achievement_type for a in unlocked] == ["first_partner", "level_10"]
    assert awards[0].leveled_up
    assert (await store.get_progress("u1")).level == 10


async def test_failing_predicate_is_skipped(service, activity, monkeypatch):
    activity.upsert_partner(make_partner())

    async def _broken(*args, **kwargs):
        raise RuntimeError("timeline table missing")

    monkeypatch.setattr(activity, "count_timeline_events", _broken)

    unlocked = await service.evaluate("u1", "g1")

    assert [a.achievement_type for a in unlocked] == ["first_partner"]


async def test_store_outage_propagates(service, store, activity, monkeypatch):
    activity.upsert_partner(make_partner())

    async def _down(*args, **kwargs):
        raise StoreUnavailable("pool closed")

    monkeypatch.setattr(store, "count_transactions", _down)

    with pytest.raises(StoreUnavailable):
        await service.evaluate("u1", "g1")
    # unlocks committed before the failure stay
    assert await service.has_achievement("u1", "first_partner")


async def test_achievement_progress_lists_all(service, activity):
    activity.upsert_partner(make_partner())
    await service.evaluate("u1", "g1")

    progress = await service.get_achievement_progress("u1")

    assert len(progress) == 15
    assert progress[0].achievement_type == "first_partner"
    assert progress[0].unlocked and progress[0].unlocked_at is not None
    assert not any(p.unlocked for p in progress[1:])


async def test_unpaid_unlock_rewarded_on_next_pass(service, activity, store, monkeypatch):
    activity.upsert_partner(make_partner())
    original = store.append_transaction
    failures = [StoreUnavailable("connection reset")]

    async def _flaky(txn, **kwargs):
        if failures:
            raise failures.pop()
        return await original(txn, **kwargs)

    monkeypatch.setattr(store, "append_transaction", _flaky)

    with pytest.raises(StoreUnavailable):
        await service.evaluate("u1", "g1")
    assert await service.has_achievement("u1", "first_partner")
    assert (await store.get_progress("u1")).current_xp == 0

    unlocked, awards = await service.evaluate_with_awards("u1", "g1")

    assert unlocked == []
    assert [(a.reason, a.amount) for a in awards] == [("achievement_unlocked", 50)]
    assert (await store.get_progress("u1")).current_xp == 50

    assert await service.evaluate_with_awards("u1", "g1") == ([], [])
    assert await store.count_transactions("u1", XPReason.ACHIEVEMENT_UNLOCKED.value) == 1


async def test_criterion_must_implement_evaluate():
    with pytest.raises(TypeError):
        Criterion()
