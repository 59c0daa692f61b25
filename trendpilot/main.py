"""TrendPilot — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
paper trading and recorded-sample replay.
"""

import logging

from fastapi import FastAPI

from trendpilot.api.routers import router

app = FastAPI(title="TrendPilot Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("trendpilot")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio
    import signal

    from trendpilot.config import load_config

    parser = argparse.ArgumentParser(description="TrendPilot trend-following bot")
    parser.add_argument(
        "--mode",
        choices=["paper", "replay"],
        default="paper",
        help="Run mode (default: paper)",
    )
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument(
        "--replay-file",
        help="CSV of instrument_id,timestamp,price,volume_24h (replay mode)",
    )
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run trading engines without the API server",
    )
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=0,
        help="Stop each engine after this many cycles (0 = unlimited)",
    )
    args = parser.parse_args(argv)

    config = load_config(args.env_file)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.mode == "replay":
        if not args.replay_file:
            parser.error("--replay-file is required in replay mode")
        asyncio.run(_run_replay(config, args.replay_file))
        return

    from trendpilot.api.routers import configure_routers
    from trendpilot.engine_manager import EngineManager
    from trendpilot.feeds.registry import build_feed, build_fetcher
    from trendpilot.repos.db import init_db
    from trendpilot.repos.trade_repo import TradeRepo

    init_db(config.db_path)
    trade_repo = TradeRepo(config.db_path)
    feed = build_feed(config, build_fetcher(config))
    manager = EngineManager(
        config=config, feed=feed, trade_repo=trade_repo, mode=args.mode,
    )
    configure_routers(engine_manager=manager, trade_repo=trade_repo)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received — stopping gracefully.")
        manager.stop_all()

    signal.signal(signal.SIGINT, handle_shutdown)

    if args.engine_only:
        asyncio.run(_run_engines_only(manager, args.max_cycles))
    else:
        asyncio.run(_run_engine_manager(manager, config.health_port, args.max_cycles))


async def _run_engine_manager(manager, port: int = 8080, max_cycles: int = 0) -> None:
    """Start the API server and all engines concurrently."""
    import asyncio

    import uvicorn

    logger.info(
        "Starting TrendPilot with %d instrument(s).", len(manager.config.instruments),
    )

    uvi_config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(uvi_config)

    async def _run_engines():
        try:
            await manager.run_all(max_cycles=max_cycles)
        finally:
            await manager.shutdown()
            server.should_exit = True

    logger.info("Status API available at http://localhost:%d", port)
    results = await asyncio.gather(
        server.serve(),
        _run_engines(),
        return_exceptions=True,
    )
    _print_final_status(manager)
    logger.info("TrendPilot stopped. Results: %s", results)


async def _run_engines_only(manager, max_cycles: int = 0) -> None:
    """Run engines without starting the API server."""
    logger.info(
        "Starting TrendPilot engines (no API) with %d instrument(s).",
        len(manager.config.instruments),
    )
    try:
        await manager.run_all(max_cycles=max_cycles)
    finally:
        await manager.shutdown()
    _print_final_status(manager)
    logger.info("TrendPilot engines stopped.")


def _print_final_status(manager) -> None:
    from trendpilot.cli.dashboard import print_status

    print_status(manager.get_status(), manager.strategy.stats().to_dict())


async def _run_replay(config, replay_file: str) -> None:
    """Replay recorded samples and log the summary."""
    from trendpilot.backtest.replay import ReplayEngine, load_samples_csv
    from trendpilot.cli.dashboard import print_status
    from trendpilot.ledger.performance import summarize_trades

    samples = load_samples_csv(replay_file)
    result = await ReplayEngine(config).run(samples)
    summary = summarize_trades(result["trades"])
    print_status(
        {
            "mode": "replay",
            "running": False,
            "account": {
                "current_capital": result["final_capital"],
                "drawdown_pct": result["stats"].max_drawdown_pct,
            },
            "open_positions": result["open_positions"],
        },
        result["stats"].to_dict(),
    )
    logger.info(
        "Replay complete: %d trades, net profit %.4f, profit factor %s",
        summary["total_trades"], summary["net_profit"], summary["profit_factor"],
    )


if __name__ == "__main__":
    _run_cli()
