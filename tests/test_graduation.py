"""Tests for level graduation and the retention sweep."""

import uuid
from datetime import timedelta

import pytest

from memlayer.config import GraduationConfig
from memlayer.errors import BackendUnavailable
from memlayer.memory.db import to_iso, utcnow
from memlayer.memory.graduation import GraduationEngine, target_level
from memlayer.memory.models import EventType, MemoryLevel, TextPayload, VectorRecord

NOW = utcnow()


@pytest.fixture
def engine(db, ledger, index, config):
    return GraduationEngine(db, ledger, index, config.graduation)


@pytest.fixture
def add(ledger, index):
    def _add(text, age_days=0, session="s1"):
        ts = NOW - timedelta(days=age_days)
        event_id = ledger.append(session, EventType.PROMPT, TextPayload(text), timestamp=ts).event_id
        index.upsert([VectorRecord(event_id, [1.0, 0.0], ts, session, "prompt")])
        return event_id

    return _add


@pytest.fixture
def use(db, citations):
    """Insert a usage row with an explicit timestamp."""

    def _use(event_id, session="s1", days_ago=0):
        cid = citations.get_or_create(event_id)
        db.conn.execute(
            "INSERT INTO citation_usages (usage_id, citation_id, session_id, used_at) VALUES (?, ?, ?, ?)",
            (uuid.uuid4().hex, cid, session, to_iso(NOW - timedelta(days=days_ago))),
        )

    return _use


class TestTargetLevel:
    @pytest.mark.parametrize(
        "total, window, sessions, expected",
        [
            (0, 0, 0, MemoryLevel.L0),
            (1, 1, 1, MemoryLevel.L1),
            (3, 2, 1, MemoryLevel.L1),
            (3, 3, 1, MemoryLevel.L2),
            (3, 3, 3, MemoryLevel.L3),
            (5, 0, 5, MemoryLevel.L1),
            (10, 3, 3, MemoryLevel.L4),
            (10, 3, 2, MemoryLevel.L2),
        ],
    )
    def test_ladder(self, total, window, sessions, expected):
        assert target_level(total, window, sessions, GraduationConfig()) == expected


class TestRecomputeLevels:
    def test_promotions(self, engine, ledger, add, use):
        once = add("used once")
        often = add("used often")
        shared = add("used everywhere")
        never = add("never used")
        use(once)
        for _ in range(3):
            use(often)
        for session in ("s1", "s2", "s3"):
            use(shared, session=session)

        report = engine.recompute_levels(now=NOW)
        assert report.scanned == 3
        assert report.promoted == 3
        assert ledger.get_by_id(once).level == MemoryLevel.L1
        assert ledger.get_by_id(often).level == MemoryLevel.L2
        assert ledger.get_by_id(shared).level == MemoryLevel.L3
        assert ledger.get_by_id(never).level == MemoryLevel.L0
        assert report.transitions == {"L0->L1": 1, "L0->L2": 1, "L0->L3": 1}

    def test_l4(self, engine, ledger, add, use):
        event_id = add("canonical answer")
        for i in range(10):
            use(event_id, session=f"s{i % 3}")
        engine.recompute_levels(now=NOW)
        assert ledger.get_by_id(event_id).level == MemoryLevel.L4

    def test_old_uses_outside_window(self, engine, ledger, add, use):
        event_id = add("old favourite")
        for _ in range(3):
            use(event_id, days_ago=20)
        engine.recompute_levels(now=NOW)
        assert ledger.get_by_id(event_id).level == MemoryLevel.L1

    def test_never_demotes(self, engine, ledger, add, use):
        event_id = add("promoted earlier")
        ledger.set_level(event_id, MemoryLevel.L3)
        use(event_id)
        report = engine.recompute_levels(now=NOW)
        assert report.promoted == 0
        assert ledger.get_by_id(event_id).level == MemoryLevel.L3

    def test_idempotent(self, engine, ledger, add, use):
        event_id = add("used")
        for _ in range(3):
            use(event_id)
        engine.recompute_levels(now=NOW)
        again = engine.recompute_levels(since=NOW - timedelta(days=1), now=NOW)
        assert again.promoted == 0
        assert ledger.get_by_id(event_id).level == MemoryLevel.L2

    def test_dry_run_writes_nothing(self, engine, ledger, add, use):
        event_id = add("used")
        use(event_id)
        report = engine.recompute_levels(now=NOW, dry_run=True)
        assert report.dry_run
        assert report.promoted == 1
        assert report.transitions == {"L0->L1": 1}
        assert ledger.get_by_id(event_id).level == MemoryLevel.L0
        assert engine.last_run() is None

    def test_last_run_recorded(self, engine):
        assert engine.last_run() is None
        engine.recompute_levels(now=NOW)
        assert engine.last_run() == NOW

    def test_incremental_scope(self, engine, add, use):
        early = add("early")
        use(early, days_ago=2)
        engine.recompute_levels(now=NOW - timedelta(days=1))

        late = add("late")
        use(late)
        report = engine.recompute_levels(now=NOW)
        assert report.scanned == 1
        assert report.promoted == 1


class TestRetentionSweep:
    @pytest.mark.asyncio
    async def test_prunes_stale_unused_l0(self, engine, ledger, index, add):
        stale = add("stale", age_days=60)
        fresh = add("fresh", age_days=1)

        report = await engine.retention_sweep(now=NOW)
        assert report.deleted == 1
        assert ledger.get_by_id(stale) is None
        assert not index.has(stale)
        assert ledger.get_by_id(fresh) is not None
        assert index.has(fresh)

    @pytest.mark.asyncio
    async def test_keeps_accessed_and_used(self, engine, ledger, add, use):
        accessed = add("accessed", age_days=60)
        ledger.record_access([accessed])
        used = add("used", age_days=60)
        use(used, days_ago=59)

        report = await engine.retention_sweep(now=NOW)
        assert report.deleted == 0
        assert ledger.get_by_id(accessed) is not None
        assert ledger.get_by_id(used) is not None

    @pytest.mark.asyncio
    async def test_demotes_stale_l1(self, engine, ledger, add, use):
        stale = add("stale l1", age_days=60)
        use(stale, days_ago=59)
        engine.recompute_levels(now=NOW)
        assert ledger.get_by_id(stale).level == MemoryLevel.L1

        report = await engine.retention_sweep(now=NOW)
        assert report.demoted == 1
        assert ledger.get_by_id(stale).level == MemoryLevel.L0

    @pytest.mark.asyncio
    async def test_demotion_is_sticky(self, engine, db, ledger, add, use):
        event_id = add("used once in 2020", age_days=2400)
        use(event_id, days_ago=2300)
        engine.recompute_levels(now=NOW)
        assert (await engine.retention_sweep(now=NOW)).demoted == 1

        assert engine.recompute_levels(since=NOW - timedelta(days=3650), now=NOW).promoted == 0
        db.conn.execute("DELETE FROM sweep_state")
        assert engine.recompute_levels(now=NOW).promoted == 0
        assert ledger.get_by_id(event_id).level == MemoryLevel.L0

        # Fresh usage after the demotion counts again.
        use(event_id, days_ago=-1)
        engine.recompute_levels(since=NOW - timedelta(days=3650), now=NOW + timedelta(days=1))
        assert ledger.get_by_id(event_id).level == MemoryLevel.L1

    @pytest.mark.asyncio
    async def test_recent_use_keeps_l1(self, engine, ledger, add, use):
        event_id = add("still relevant", age_days=60)
        use(event_id, days_ago=1)
        engine.recompute_levels(now=NOW)
        report = await engine.retention_sweep(now=NOW)
        assert report.demoted == 0
        assert ledger.get_by_id(event_id).level == MemoryLevel.L1

    @pytest.mark.asyncio
    async def test_l2_and_above_untouched(self, engine, ledger, add):
        ids = [add(f"graduated {level}", age_days=400) for level in (2, 3, 4)]
        for event_id, level in zip(ids, (MemoryLevel.L2, MemoryLevel.L3, MemoryLevel.L4)):
            ledger.set_level(event_id, level)
        report = await engine.retention_sweep(now=NOW)
        assert (report.demoted, report.deleted) == (0, 0)
        assert all(ledger.get_by_id(event_id) for event_id in ids)

    @pytest.mark.asyncio
    async def test_dry_run(self, engine, ledger, index, add):
        stale = add("stale", age_days=60)
        report = await engine.retention_sweep(now=NOW, dry_run=True)
        assert report.dry_run
        assert report.deleted == 1
        assert report.candidates == [stale]
        assert ledger.get_by_id(stale) is not None
        assert index.has(stale)

    @pytest.mark.asyncio
    async def test_max_age_override(self, engine, ledger, add):
        event_id = add("a week old", age_days=7)
        assert (await engine.retention_sweep(now=NOW)).deleted == 0
        assert (await engine.retention_sweep(max_age_days=5, now=NOW)).deleted == 1
        assert ledger.get_by_id(event_id) is None

    @pytest.mark.asyncio
    async def test_index_failure_leaves_ledger(self, engine, ledger, index, add):
        stale = add("stale", age_days=60)
        index.fail_with = RuntimeError("index offline")
        with pytest.raises(BackendUnavailable):
            await engine.retention_sweep(now=NOW)
        assert ledger.get_by_id(stale) is not None
