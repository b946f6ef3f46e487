"""Internal API routers — /status, /trades, /channels, /signals, /settings endpoints.

No business logic, no DB access beyond the channel snapshot. Delegates to
the pipeline, dispatcher and shared state.
"""

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from signaltrader.config import ConfigurationError
from signaltrader.events import (
    ExecutionFailed,
    OrderPlaced,
    PipelineEvent,
    PipelineFailed,
    SignalRejected,
    TradeClosed,
)

logger = logging.getLogger("signaltrader")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_pipeline = None  # Set via configure_routers()
_dispatcher = None  # Set via configure_routers()
_channel_repo = None  # Set via configure_routers()
_started_at: Optional[datetime] = None
_signal_history: list = []  # Recent pipeline events (max 50 entries)

_HISTORY_LIMIT = 50


def configure_routers(pipeline=None, dispatcher=None, channel_repo=None) -> None:
    """Inject the running pipeline, dispatcher and channel repo."""
    global _pipeline, _dispatcher, _channel_repo, _started_at  # noqa: PLW0603
    _pipeline = pipeline
    _dispatcher = dispatcher
    _channel_repo = channel_repo
    _started_at = datetime.now(timezone.utc)
    _signal_history.clear()
    if dispatcher is not None:
        dispatcher.events.subscribe(record_event)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_event(event: PipelineEvent) -> None:
    """Event listener that appends a summary of *event* to the signal log."""
    if isinstance(event, SignalRejected):
        entry = {
            "event": "rejected",
            "channel_id": event.message.channel_id,
            "reason": event.rejection.reason,
            "confidence": event.rejection.confidence,
        }
    elif isinstance(event, OrderPlaced):
        entry = {
            "event": "placed",
            "channel_id": event.order.channel_id,
            "order_id": event.order.order_id,
            "action": event.order.action,
            "asset": event.order.asset,
            "amount": event.order.amount,
            "confidence": event.order.confidence,
            "martingale_step": event.order.martingale_step,
        }
    elif isinstance(event, TradeClosed):
        entry = {
            "event": "closed",
            "channel_id": event.order.channel_id,
            "order_id": event.order.order_id,
            "result": event.outcome.result,
            "profit": event.outcome.profit,
        }
    elif isinstance(event, ExecutionFailed):
        entry = {
            "event": "execution_failed",
            "channel_id": event.order.channel_id,
            "order_id": event.order.order_id,
            "error": event.error,
        }
    elif isinstance(event, PipelineFailed):
        entry = {
            "event": "error",
            "channel_id": event.message.channel_id,
            "error": event.error,
        }
    else:
        return

    entry["recorded_at"] = _now_iso()
    _signal_history.append(entry)
    if len(_signal_history) > _HISTORY_LIMIT:
        del _signal_history[0]


def _require_pipeline():
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not running")
    return _pipeline


def _channel_payload(record) -> dict:
    data = asdict(record)
    data["performance"]["win_rate"] = round(record.performance.win_rate, 2)
    data["performance"]["realized_win_rate"] = round(
        record.performance.realized_win_rate, 2
    )
    return data


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return dispatcher, account and pipeline counters."""
    pipeline = _require_pipeline()
    uptime = 0
    if _started_at is not None:
        uptime = int((datetime.now(timezone.utc) - _started_at).total_seconds())
    return {
        "running": bool(_dispatcher and _dispatcher.running),
        "backlog": _dispatcher.backlog if _dispatcher else 0,
        "uptime_seconds": uptime,
        "account": pipeline.account.snapshot(),
        "pipeline": asdict(pipeline.stats),
        "cache_entries": len(pipeline.cache),
        "channels": len(pipeline.confidence_model.channels),
        "martingale_sequences": len(pipeline.sequencer.sequences),
    }


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=20, ge=1, le=100),
    channel: Optional[str] = Query(default=None),
):
    """Return closed trades, newest first, with the window's performance."""
    account = _require_pipeline().account
    trades = account.trade_history(limit=limit, channel_id=channel)
    return {
        "trades": [dict(asdict(t), result=t.result) for t in trades],
        "total": len(trades),
        "performance": asdict(account.performance()),
    }


@router.get("/trades/open")
async def get_open_trades():
    """Return trades still awaiting settlement."""
    account = _require_pipeline().account
    return {
        "trades": [asdict(t) for t in account.open_trades()],
        "exposure": account.open_exposure,
    }


@router.get("/channels")
async def get_channels():
    """Return every known channel with its history."""
    pipeline = _require_pipeline()
    records = sorted(pipeline.confidence_model.channels.values(), key=lambda r: r.channel_id)
    return {"channels": [_channel_payload(r) for r in records]}


@router.patch("/channels/{channel_id}")
async def patch_channel(channel_id: str, body: dict):
    """Update name, broker, min_confidence or martingale_enabled for a channel."""
    pipeline = _require_pipeline()
    try:
        record = pipeline.confidence_model.update_channel(channel_id, **body)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown channel '{channel_id}'") from None
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None

    if _channel_repo is not None:
        _channel_repo.save([record])
    logger.info("Channel '%s' updated: %s", channel_id, ", ".join(sorted(body)))
    return _channel_payload(record)


@router.get("/signals")
async def get_signals(
    limit: int = Query(default=20, ge=1, le=_HISTORY_LIMIT),
):
    """Return recent pipeline events, newest first."""
    recent = _signal_history[-limit:]
    recent.reverse()
    return {"signals": recent}


@router.get("/settings")
async def get_settings():
    """Return the current trading configuration."""
    return asdict(_require_pipeline().trading)


@router.patch("/settings")
async def patch_settings(body: dict):
    """Apply runtime trading changes.

    Invalid changes are rejected with 422 and leave the running settings
    untouched.
    """
    pipeline = _require_pipeline()
    try:
        trading = pipeline.update_trading_config(**body)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    return asdict(trading)
