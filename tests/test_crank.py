"""
Unit tests for CrankScheduler.

Tests:
- One crank per due market, batched
- Overlapping ticks are skipped, not queued
- Inactivity after repeated failures, slow retry, reactivation
- Authority markets get a price push first
- A failed price push still cranks
- crank.stale emitted on the transition only, judged from a fresh engine read
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.pubkey import Pubkey

from perp_keeper.crank import CrankScheduler
from perp_keeper.event_bus import EventBus, EventType
from perp_keeper.retry import SubmitResult
from tests.helpers import make_ledger, make_market, record_events


def markets(slab_builder, count, **engine):
    result = []
    for _ in range(count):
        builder = slab_builder()
        if engine:
            builder.set_engine(**engine)
        result.append(make_market(builder.build(), address=Pubkey.new_unique()))
    return result


def scheduler(ledger, keypair, clock, **kwargs):
    kwargs.setdefault("interval_secs", 5)
    return CrankScheduler(ledger, keypair, clock=clock, **kwargs)


class TestTick:
    @pytest.mark.asyncio
    async def test_cranks_every_market(self, slab_builder, keypair, clock):
        ledger = make_ledger()
        tracked = markets(slab_builder, 3)
        crank = scheduler(ledger, keypair, clock)

        result = await crank.tick(tracked)

        assert result == {"success": 3, "failed": 0, "skipped": 0}
        assert ledger.submit.await_count == 3
        [ix] = ledger.submit.await_args.args[0]
        assert bytes(ix.data) == bytes([5, 0xFF, 0xFF, 0])
        for market in tracked:
            state = crank.get_state(market.address)
            assert state.success_count == 1
            assert state.last_signature == "5igSig1111"

    @pytest.mark.asyncio
    async def test_not_due_markets_are_skipped(self, slab_builder, keypair, clock):
        ledger = make_ledger()
        tracked = markets(slab_builder, 2)
        crank = scheduler(ledger, keypair, clock)
        await crank.tick(tracked)

        clock.advance(2)
        assert await crank.tick() == {"success": 0, "failed": 0, "skipped": 2}

        clock.advance(3)
        assert await crank.tick() == {"success": 2, "failed": 0, "skipped": 0}

    @pytest.mark.asyncio
    async def test_batches_run_concurrently_within_batch(self, slab_builder, keypair, clock):
        in_flight = 0
        peak = 0

        async def submit(*args, **kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return SubmitResult.ok("sig")

        ledger = make_ledger()
        ledger.submit = AsyncMock(side_effect=submit)
        crank = scheduler(ledger, keypair, clock, batch_size=4)

        result = await crank.tick(markets(slab_builder, 10))

        assert result["success"] == 10
        assert peak == 4

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, slab_builder, keypair, clock):
        release = asyncio.Event()

        async def submit(*args, **kwargs):
            await release.wait()
            return SubmitResult.ok("sig")

        ledger = make_ledger()
        ledger.submit = AsyncMock(side_effect=submit)
        crank = scheduler(ledger, keypair, clock)
        tracked = markets(slab_builder, 2)

        first = asyncio.create_task(crank.tick(tracked))
        await asyncio.sleep(0)
        skipped = await crank.tick()
        release.set()
        done = await first

        assert skipped == {"success": 0, "failed": 0, "skipped": 2}
        assert done["success"] == 2
        assert crank.skipped_ticks == 1
        assert ledger.submit.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_markets(self, slab_builder, keypair, clock):
        tracked = markets(slab_builder, 3)
        bad = tracked[1]

        async def submit(instructions, *args, **kwargs):
            if instructions[0].accounts[1].pubkey == bad.slab_address:
                raise ConnectionError("connection reset")
            return SubmitResult.ok("sig")

        ledger = make_ledger()
        ledger.submit = AsyncMock(side_effect=submit)
        bus = EventBus()
        events = record_events(bus)
        crank = scheduler(ledger, keypair, clock, event_bus=bus)

        result = await crank.tick(tracked)

        assert result == {"success": 2, "failed": 1, "skipped": 0}
        assert "connection reset" in crank.get_state(bad.address).last_error
        await bus.dispatch_pending()
        failures = [e for e in events if e.event_type is EventType.CRANK_FAILURE]
        assert [e.market for e in failures] == [bad.address]


class TestInactivity:
    @pytest.mark.asyncio
    async def test_market_parked_after_consecutive_failures(self, slab_builder, keypair, clock):
        ledger = make_ledger(submit_result=SubmitResult.permanent("custom program error: 0x5"))
        [market] = markets(slab_builder, 1)
        crank = scheduler(ledger, keypair, clock, max_consecutive_failures=3, inactive_interval_secs=300)

        for _ in range(3):
            await crank.tick([market])
            clock.advance(5)

        state = crank.get_state(market.address)
        assert state.is_active is False
        assert state.consecutive_failures == 3

        # Parked: normal interval no longer applies.
        assert (await crank.tick())["skipped"] == 1
        clock.advance(300)
        assert (await crank.tick())["failed"] == 1

    @pytest.mark.asyncio
    async def test_success_reactivates(self, slab_builder, keypair, clock):
        ledger = make_ledger(submit_result=SubmitResult.permanent("custom program error: 0x5"))
        [market] = markets(slab_builder, 1)
        crank = scheduler(ledger, keypair, clock, max_consecutive_failures=2, inactive_interval_secs=300)
        for _ in range(2):
            await crank.tick([market])
            clock.advance(5)
        assert crank.get_state(market.address).is_active is False

        ledger.submit = AsyncMock(return_value=SubmitResult.ok("sig"))
        clock.advance(300)
        await crank.tick()

        state = crank.get_state(market.address)
        assert state.is_active is True
        assert state.consecutive_failures == 0
        assert crank.status()["active_markets"] == 1


class TestOracleAndStaleness:
    @pytest.mark.asyncio
    async def test_authority_market_pushes_before_crank(self, slab_builder, keypair, clock):
        authority_market = make_market(slab_builder().set_oracle_authority(keypair.pubkey()).build())
        other_market = make_market(slab_builder().build(), address=Pubkey.new_unique())
        oracle = MagicMock()
        oracle.push_price = AsyncMock(return_value=True)
        crank = scheduler(make_ledger(), keypair, clock, oracle=oracle)

        await crank.tick([authority_market, other_market])

        oracle.push_price.assert_awaited_once_with(authority_market)

    @pytest.mark.asyncio
    async def test_push_failure_does_not_skip_crank(self, slab_builder, keypair, clock, caplog):
        market = make_market(slab_builder().set_oracle_authority(keypair.pubkey()).build())
        oracle = MagicMock()
        oracle.push_price = AsyncMock(side_effect=RuntimeError("rpc down"))
        ledger = make_ledger()
        crank = scheduler(ledger, keypair, clock, oracle=oracle)

        with caplog.at_level("WARNING", logger="perp_keeper.crank"):
            result = await crank.tick([market])

        assert result == {"success": 1, "failed": 0, "skipped": 0}
        ledger.submit.assert_awaited_once()
        assert "Price push failed" in caplog.text

    @pytest.mark.asyncio
    async def test_stale_event_on_transition(self, slab_builder, keypair, clock):
        data = slab_builder().set_engine(current_slot=1000, last_crank_slot=100, max_crank_staleness=50).build()
        market = make_market(data, address=Pubkey.new_unique())
        failing = SubmitResult.permanent("custom program error: 0x5")
        ledger = make_ledger({market.slab_address: data}, submit_result=failing)
        bus = EventBus()
        events = record_events(bus)
        crank = scheduler(ledger, keypair, clock, event_bus=bus)

        await crank.tick([market])
        clock.advance(5)
        await crank.tick()

        await bus.dispatch_pending()
        stale_events = [e for e in events if e.event_type is EventType.CRANK_STALE]
        assert len(stale_events) == 1
        assert stale_events[0].data == {"current_slot": 1000, "last_crank_slot": 100}
        assert crank.get_state(market.address).is_stale is True

    @pytest.mark.asyncio
    async def test_staleness_follows_ledger_not_discovery_snapshot(self, slab_builder, keypair, clock):
        builder = slab_builder().set_engine(current_slot=1000, last_crank_slot=100, max_crank_staleness=50)
        market = make_market(builder.build(), address=Pubkey.new_unique())
        fresh = builder.set_engine(current_slot=1000, last_crank_slot=990, max_crank_staleness=50).build()
        failing = SubmitResult.permanent("custom program error: 0x5")
        ledger = make_ledger({market.slab_address: fresh}, submit_result=failing)
        bus = EventBus()
        events = record_events(bus)
        crank = scheduler(ledger, keypair, clock, event_bus=bus)

        await crank.tick([market])

        assert crank.get_state(market.address).is_stale is False
        await bus.dispatch_pending()
        assert EventType.CRANK_STALE not in [e.event_type for e in events]

    @pytest.mark.asyncio
    async def test_landed_crank_clears_staleness_and_it_can_recur(self, slab_builder, keypair, clock):
        data = slab_builder().set_engine(current_slot=1000, last_crank_slot=100, max_crank_staleness=50).build()
        market = make_market(data, address=Pubkey.new_unique())
        failing = SubmitResult.permanent("custom program error: 0x5")
        ledger = make_ledger({market.slab_address: data}, submit_result=failing)
        bus = EventBus()
        events = record_events(bus)
        crank = scheduler(ledger, keypair, clock, event_bus=bus)

        await crank.tick([market])
        assert crank.get_state(market.address).is_stale is True

        ledger.submit = AsyncMock(return_value=SubmitResult.ok("sig"))
        clock.advance(5)
        await crank.tick()
        assert crank.get_state(market.address).is_stale is False

        ledger.submit = AsyncMock(return_value=failing)
        clock.advance(5)
        await crank.tick()

        await bus.dispatch_pending()
        assert [e.event_type for e in events].count(EventType.CRANK_STALE) == 2

    @pytest.mark.asyncio
    async def test_untracked_markets_are_forgotten(self, slab_builder, keypair, clock):
        first, second = markets(slab_builder, 2)
        crank = scheduler(make_ledger(), keypair, clock)
        await crank.tick([first, second])

        crank.track([second])

        assert crank.get_state(first.address) is None
        assert crank.get_state(second.address).success_count == 1
