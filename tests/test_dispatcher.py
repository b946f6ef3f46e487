"""Tests for signaltrader.dispatcher — worker pool, ordering and broker failures."""

import asyncio

import pytest

from signaltrader.broker.models import TradeOrder, TradeOutcome
from signaltrader.broker.paper_broker import PaperBroker
from signaltrader.dispatcher import SignalDispatcher
from signaltrader.events import (
    ExecutionFailed,
    OrderPlaced,
    PipelineFailed,
    SignalRejected,
    TradeClosed,
)
from signaltrader.pipeline import PipelineError
from signaltrader.signals.models import InboundMessage, Rejected


def _order(order_id="o-1", channel_id="ch", amount=10.0) -> TradeOrder:
    return TradeOrder(
        order_id=order_id,
        channel_id=channel_id,
        action="CALL",
        asset="EUR/USD",
        amount=amount,
        expiration_seconds=60,
        broker="pocket_option",
        confidence=85,
        risk_level="low",
    )


def _message(channel_id: str, seq: int) -> InboundMessage:
    return InboundMessage(channel_id=channel_id, text=f"msg {seq}", timestamp=seq)


class _RecordingPipeline:
    """Pipeline stand-in that records processing order and overlap per channel."""

    def __init__(self, decisions=None, delay=0.005):
        self._decisions = decisions or {}
        self._delay = delay
        self.processed: list[tuple[str, str]] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}
        self.outcomes = []
        self.failures = []

    async def process(self, message):
        channel = message.channel_id
        self.active[channel] = self.active.get(channel, 0) + 1
        self.max_active[channel] = max(self.max_active.get(channel, 0), self.active[channel])
        await asyncio.sleep(self._delay)
        self.processed.append((channel, message.text))
        self.active[channel] -= 1
        decision = self._decisions.get(message.text, Rejected("not a signal", channel))
        if isinstance(decision, Exception):
            raise decision
        return decision

    def record_outcome(self, order, outcome):
        self.outcomes.append((order, outcome))

    def record_execution_failure(self, order):
        self.failures.append(order)


class _FailingBroker:
    def __init__(self):
        self.calls = 0

    async def place_order(self, order):
        self.calls += 1
        raise ConnectionError("broker offline")


class _RejectingBroker:
    async def place_order(self, order):
        return TradeOutcome(success=False, trade_id="", profit=0.0)


# ── Ordering ─────────────────────────────────────────────────────────────


class TestOrdering:
    @pytest.mark.asyncio
    async def test_per_channel_fifo_with_parallel_channels(self):
        pipeline = _RecordingPipeline()
        dispatcher = SignalDispatcher(pipeline, PaperBroker(), worker_count=3)
        dispatcher.start()
        for seq in range(5):
            dispatcher.submit(_message("a", seq))
            dispatcher.submit(_message("b", seq))
        await dispatcher.join()
        await dispatcher.stop()

        for channel in ("a", "b"):
            texts = [text for ch, text in pipeline.processed if ch == channel]
            assert texts == [f"msg {i}" for i in range(5)]
            assert pipeline.max_active[channel] == 1
        assert dispatcher.backlog == 0

    @pytest.mark.asyncio
    async def test_consume_async_source(self):
        pipeline = _RecordingPipeline(delay=0)
        dispatcher = SignalDispatcher(pipeline, PaperBroker())

        async def _source():
            for seq in range(3):
                yield _message("a", seq)

        dispatcher.start()
        await dispatcher.consume(_source())
        await dispatcher.join()
        await dispatcher.stop()
        assert [text for _, text in pipeline.processed] == ["msg 0", "msg 1", "msg 2"]


# ── Events and execution ─────────────────────────────────────────────────


class TestExecution:
    @pytest.mark.asyncio
    async def test_rejection_published(self):
        pipeline = _RecordingPipeline(delay=0)
        dispatcher = SignalDispatcher(pipeline, PaperBroker())
        events = []
        dispatcher.events.subscribe(events.append)
        await dispatcher.handle(_message("a", 1))
        assert len(events) == 1
        assert isinstance(events[0], SignalRejected)

    @pytest.mark.asyncio
    async def test_approved_order_placed_and_closed(self):
        order = _order()
        pipeline = _RecordingPipeline({"msg 1": order}, delay=0)
        broker = PaperBroker(balance=100.0, win_probability=1.0, seed=1)
        dispatcher = SignalDispatcher(pipeline, broker)
        events = []
        dispatcher.events.subscribe(events.append)

        await dispatcher.handle(_message("ch", 1))
        await dispatcher.join()

        assert [type(e) for e in events] == [OrderPlaced, TradeClosed]
        assert events[1].outcome.result == "win"
        assert pipeline.outcomes[0][0] is order
        assert broker.placed_orders == [order]

    @pytest.mark.asyncio
    async def test_broker_exception_reported_not_retried(self):
        order = _order()
        pipeline = _RecordingPipeline({"msg 1": order}, delay=0)
        broker = _FailingBroker()
        dispatcher = SignalDispatcher(pipeline, broker)
        events = []
        dispatcher.events.subscribe(events.append)

        await dispatcher.handle(_message("ch", 1))
        await dispatcher.join()

        assert broker.calls == 1
        assert isinstance(events[-1], ExecutionFailed)
        assert "broker offline" in events[-1].error
        assert pipeline.failures == [order]
        assert pipeline.outcomes == []

    @pytest.mark.asyncio
    async def test_broker_reported_failure(self):
        order = _order()
        pipeline = _RecordingPipeline({"msg 1": order}, delay=0)
        dispatcher = SignalDispatcher(pipeline, _RejectingBroker())
        events = []
        dispatcher.events.subscribe(events.append)

        await dispatcher.handle(_message("ch", 1))
        await dispatcher.join()

        assert isinstance(events[-1], ExecutionFailed)
        assert events[-1].outcome is not None
        assert len(pipeline.outcomes) == 1

    @pytest.mark.asyncio
    async def test_duplicate_order_not_resubmitted(self):
        order = _order()
        pipeline = _RecordingPipeline({"msg 1": order}, delay=0)
        broker = PaperBroker(balance=100.0, seed=3)
        dispatcher = SignalDispatcher(pipeline, broker)

        await dispatcher.handle(_message("ch", 1))
        await dispatcher.handle(_message("ch", 1))
        await dispatcher.join()

        assert len(broker.placed_orders) == 1

    @pytest.mark.asyncio
    async def test_submitted_ids_are_bounded(self):
        orders = {f"msg {i}": _order(f"o-{i}") for i in range(1, 4)}
        pipeline = _RecordingPipeline(orders, delay=0)
        broker = PaperBroker(balance=100.0, seed=3)
        dispatcher = SignalDispatcher(pipeline, broker, submitted_limit=2)

        for seq in (1, 2, 3):
            await dispatcher.handle(_message("ch", seq))
        await dispatcher.handle(_message("ch", 3))
        await dispatcher.join()

        assert list(dispatcher._submitted) == ["o-2", "o-3"]
        assert sorted(o.order_id for o in broker.placed_orders) == ["o-1", "o-2", "o-3"]

    @pytest.mark.asyncio
    async def test_pipeline_error_published(self):
        pipeline = _RecordingPipeline({"msg 1": PipelineError("boom")}, delay=0)
        dispatcher = SignalDispatcher(pipeline, PaperBroker())
        events = []
        dispatcher.events.subscribe(events.append)

        await dispatcher.handle(_message("ch", 1))

        assert isinstance(events[0], PipelineFailed)
        assert events[0].error == "boom"

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_stop_dispatch(self):
        pipeline = _RecordingPipeline(delay=0)
        dispatcher = SignalDispatcher(pipeline, PaperBroker())
        seen = []

        def _broken(event):
            raise RuntimeError("listener bug")

        dispatcher.events.subscribe(_broken)
        dispatcher.events.subscribe(seen.append)
        await dispatcher.handle(_message("a", 1))
        assert len(seen) == 1


# ── Paper broker ─────────────────────────────────────────────────────────


class TestPaperBroker:
    @pytest.mark.asyncio
    async def test_win_pays_payout(self):
        broker = PaperBroker(balance=100.0, payout=0.85, win_probability=1.0)
        outcome = await broker.place_order(_order(amount=10.0))
        assert outcome.success
        assert outcome.profit == pytest.approx(8.5)
        assert await broker.get_balance() == pytest.approx(108.5)

    @pytest.mark.asyncio
    async def test_loss_costs_stake(self):
        broker = PaperBroker(balance=100.0, win_probability=0.0)
        outcome = await broker.place_order(_order(amount=10.0))
        assert outcome.result == "loss"
        assert await broker.get_balance() == pytest.approx(90.0)

    @pytest.mark.asyncio
    async def test_insufficient_balance_raises(self):
        broker = PaperBroker(balance=5.0)
        with pytest.raises(ValueError, match="Insufficient"):
            await broker.place_order(_order(amount=10.0))
        assert broker.placed_orders == []
