"""signaltrader — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
live Telegram intake and JSONL replay, both settled by the paper broker.
"""

import json
import logging
import pathlib
from typing import AsyncIterator

from fastapi import FastAPI

from signaltrader.api.routers import router
from signaltrader.signals.models import InboundMessage

app = FastAPI(title="signaltrader Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("signaltrader")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


def parse_replay_line(line: str) -> InboundMessage:
    """Parse one JSONL replay record into an ``InboundMessage``.

    Raises:
        ValueError: If the line is not JSON or lacks ``channel_id``/``text``.
    """
    data = json.loads(line)
    if not isinstance(data, dict) or "channel_id" not in data or "text" not in data:
        raise ValueError("replay record needs 'channel_id' and 'text'")
    return InboundMessage(
        channel_id=str(data["channel_id"]),
        text=data["text"],
        timestamp=int(data.get("timestamp", 0)),
        message_id=data.get("message_id"),
    )


async def replay_messages(path: pathlib.Path) -> AsyncIterator[InboundMessage]:
    """Yield messages from a JSONL file, skipping blank and malformed lines."""
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                yield parse_replay_line(line)
            except ValueError as exc:
                logger.warning("Skipping replay line %d: %s", lineno, exc)


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments, wire the components and run."""
    import argparse
    import asyncio
    import signal

    from signaltrader.api.routers import configure_routers
    from signaltrader.broker.paper_broker import PaperBroker
    from signaltrader.config import load_channels, load_config
    from signaltrader.dispatcher import SignalDispatcher
    from signaltrader.llm.client import LLMClient
    from signaltrader.pipeline import SignalPipeline
    from signaltrader.repos.channel_repo import ChannelRepo
    from signaltrader.repos.db import init_db
    from signaltrader.risk.account import AccountRiskState
    from signaltrader.signals.extractor import SignalExtractor
    from signaltrader.telegram.source import TelegramSource

    parser = argparse.ArgumentParser(description="signaltrader signal-to-trade bot")
    parser.add_argument(
        "--mode",
        choices=["paper"],
        default="paper",
        help="Execution mode (default: paper)",
    )
    parser.add_argument(
        "--replay",
        metavar="FILE",
        help="Process messages from a JSONL file instead of Telegram",
    )
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the pipeline without the API server",
    )
    parser.add_argument("--env-file", help="Path to a .env file")
    args = parser.parse_args()

    config = load_config(args.env_file, require_telegram=not args.replay)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db(config.db_path)

    client = LLMClient(config) if config.llm_enabled else None
    if client is None:
        logger.warning("LLM_API_KEY not set — using keyword fallback extraction only.")
    extractor = SignalExtractor(
        config.trading,
        client=client,
        timeout=config.llm_timeout_seconds,
        max_retries=config.llm_max_retries,
        retry_delay=config.llm_retry_delay,
    )
    pipeline = SignalPipeline(
        config.trading,
        extractor,
        account=AccountRiskState(balance=config.account_balance),
    )

    channel_repo = ChannelRepo(config.db_path)
    for record in channel_repo.load_all():
        pipeline.confidence_model.restore(record)
    pipeline.register_channels(load_channels(config.channels_path, config.trading))

    broker = PaperBroker(balance=config.account_balance)
    dispatcher = SignalDispatcher(pipeline, broker, worker_count=config.worker_count)
    configure_routers(pipeline=pipeline, dispatcher=dispatcher, channel_repo=channel_repo)

    if args.replay:
        replay_path = pathlib.Path(args.replay)
        if not replay_path.is_file():
            parser.error(f"replay file not found: {replay_path}")
        telegram = None
        source = replay_messages(replay_path)
    else:
        telegram = TelegramSource(config)
        source = telegram.stream()

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        if telegram is not None:
            telegram.stop()
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, handle_shutdown)

    try:
        if args.engine_only:
            asyncio.run(_run_engine(dispatcher, source, args.mode))
        else:
            asyncio.run(_run_with_api(dispatcher, source, args.mode, config.api_port))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        saved = channel_repo.save(list(pipeline.confidence_model.channels.values()))
        logger.info("Saved %d channel record(s) to %s", saved, config.db_path)


async def _run_engine(dispatcher, source, mode: str) -> None:
    """Feed *source* through the dispatcher until it is exhausted."""
    logger.info("Starting signaltrader in %s mode.", mode)
    dispatcher.start()
    try:
        await dispatcher.consume(source)
        await dispatcher.join()
    finally:
        await dispatcher.stop()
    logger.info("signaltrader engine stopped.")


async def _run_with_api(dispatcher, source, mode: str, port: int = 8080) -> None:
    """Start the API server and the engine concurrently."""
    import asyncio

    import uvicorn

    uvi_config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(uvi_config)

    logger.info("API available at http://localhost:%d", port)
    results = await asyncio.gather(
        server.serve(),
        _run_engine(dispatcher, source, mode),
        return_exceptions=True,
    )
    logger.info("signaltrader stopped. Results: %s", results)


if __name__ == "__main__":
    _run_cli()
