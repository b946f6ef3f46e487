"""SignalDispatcher — bounded worker pool with per-channel FIFO ordering.

Messages from one channel are processed strictly in arrival order, one at
a time.  Different channels run concurrently on up to ``worker_count``
workers.  Approved orders are handed to the broker sink as background
tasks so settlement does not block the next message.
"""

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Optional, Protocol

from signaltrader.broker.models import TradeOrder, TradeOutcome
from signaltrader.events import (
    EventBus,
    ExecutionFailed,
    OrderPlaced,
    PipelineFailed,
    SignalRejected,
    TradeClosed,
)
from signaltrader.pipeline import PipelineError, SignalPipeline
from signaltrader.signals.models import InboundMessage, Rejected

logger = logging.getLogger("signaltrader.dispatcher")


class BrokerSink(Protocol):
    async def place_order(self, order: TradeOrder) -> TradeOutcome:
        ...


class SignalDispatcher:
    """Feeds messages through the pipeline and orders through the broker.

    Args:
        pipeline: The ``SignalPipeline``.
        broker: Broker sink implementing ``place_order``.
        events: Event bus for rejections, placements and outcomes.
        worker_count: Number of concurrent workers.
        submitted_limit: Order ids remembered for duplicate detection.
    """

    def __init__(
        self,
        pipeline: SignalPipeline,
        broker: BrokerSink,
        events: Optional[EventBus] = None,
        worker_count: int = 2,
        submitted_limit: int = 10_000,
    ) -> None:
        self._pipeline = pipeline
        self._broker = broker
        self.events = events or EventBus()
        self._worker_count = max(1, worker_count)
        self._pending: dict[str, deque[InboundMessage]] = {}
        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._executions: set[asyncio.Task] = set()
        self._submitted: OrderedDict[str, None] = OrderedDict()
        self._submitted_limit = max(1, submitted_limit)
        self._running = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def backlog(self) -> int:
        """Messages waiting to be processed."""
        return sum(len(q) for q in self._pending.values())

    def start(self) -> None:
        """Spawn the worker tasks.  Must be called inside a running loop."""
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"signal-worker-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("Dispatcher started with %d worker(s).", self._worker_count)

    async def stop(self) -> None:
        """Cancel workers.  In-flight broker executions are awaited."""
        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._executions:
            await asyncio.gather(*self._executions, return_exceptions=True)
        logger.info("Dispatcher stopped.")

    async def join(self) -> None:
        """Wait until every submitted message and broker execution is done."""
        await self._ready.join()
        while self._executions:
            await asyncio.gather(*list(self._executions), return_exceptions=True)

    # ── Intake ───────────────────────────────────────────────────────────

    def submit(self, message: InboundMessage) -> None:
        """Queue *message* behind earlier messages from the same channel."""
        queue = self._pending.get(message.channel_id)
        if queue is None:
            self._pending[message.channel_id] = deque([message])
            self._ready.put_nowait(message.channel_id)
        else:
            queue.append(message)

    async def consume(self, source) -> None:
        """Submit every message yielded by an async iterable *source*."""
        async for message in source:
            if not self._running:
                break
            self.submit(message)

    # ── Workers ──────────────────────────────────────────────────────────

    async def _worker(self, index: int) -> None:
        while True:
            channel_id = await self._ready.get()
            queue = self._pending[channel_id]
            message = queue.popleft()
            try:
                await self.handle(message)
            finally:
                if queue:
                    self._ready.put_nowait(channel_id)
                else:
                    del self._pending[channel_id]
                self._ready.task_done()

    async def handle(self, message: InboundMessage) -> None:
        """Process one message and dispatch its decision."""
        try:
            decision = await self._pipeline.process(message)
        except PipelineError as exc:
            self.events.publish(PipelineFailed(message=message, error=str(exc)))
            return
        except Exception as exc:
            logger.exception("Unexpected error on channel '%s'", message.channel_id)
            self.events.publish(PipelineFailed(message=message, error=str(exc)))
            return

        if isinstance(decision, Rejected):
            self.events.publish(SignalRejected(message=message, rejection=decision))
            return

        if decision.order_id in self._submitted:
            logger.debug("Order %s already submitted — skipping duplicate", decision.order_id)
            return
        self._remember(decision.order_id)
        task = asyncio.create_task(self._execute(decision))
        self._executions.add(task)
        task.add_done_callback(self._executions.discard)

    def _remember(self, order_id: str) -> None:
        self._submitted[order_id] = None
        while len(self._submitted) > self._submitted_limit:
            self._submitted.popitem(last=False)

    async def _execute(self, order: TradeOrder) -> None:
        """Place *order* once.  Failures are reported, never retried."""
        self.events.publish(OrderPlaced(order=order))
        try:
            outcome = await self._broker.place_order(order)
        except Exception as exc:
            logger.error("Broker rejected order %s (%s %s %.2f): %s",
                         order.order_id, order.action, order.asset, order.amount, exc)
            self._pipeline.record_execution_failure(order)
            self.events.publish(ExecutionFailed(order=order, error=str(exc)))
            return

        self._pipeline.record_outcome(order, outcome)
        if not outcome.success:
            logger.error("Order %s failed at broker (trade %s)", order.order_id, outcome.trade_id)
            self.events.publish(
                ExecutionFailed(order=order, error="broker reported failure", outcome=outcome)
            )
            return

        logger.info("Trade %s closed: %s %.2f", outcome.trade_id, outcome.result, outcome.profit)
        self.events.publish(TradeClosed(order=order, outcome=outcome))
