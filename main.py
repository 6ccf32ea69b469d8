"""
Agent Engine launcher
==========================================

Usage:
  python main.py serve                        # control API + queue worker
  python main.py run "Collect product names on example.com"
  python main.py run "..." --heuristic        # no LLM, heuristic planner only
  python main.py init-db                      # create tables
"""
import argparse
import asyncio
import json
import sys

from aiohttp import web
from loguru import logger

from config import settings
from agent_engine.api import create_app
from agent_engine.database import (
    AsyncSessionLocal,
    SqlAuditLogger,
    SqlCheckpointStore,
    SqlMemoryStore,
    close_async_db,
    init_async_db,
)
from agent_engine.engine import AgentEngine
from agent_engine.llm_planner import LLMPlanner
from agent_engine.planner import HeuristicPlanner
from agent_engine.queue import AgentQueue


def setup_logging() -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level="DEBUG" if settings.debug else settings.log_level,
    )
    logger.add(
        "logs/agent_engine_{time}.log",
        rotation="1 day",
        retention="7 days",
        level="INFO",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} - {message}"
    )


def build_engine(heuristic: bool = False) -> AgentEngine:
    if heuristic or not settings.llm_api_url:
        if not heuristic:
            logger.warning("⚠️ LLM_API_URL not set, falling back to the heuristic planner")
        planner = HeuristicPlanner()
    else:
        planner = LLMPlanner()
    return AgentEngine(
        store=SqlCheckpointStore(AsyncSessionLocal),
        memory=SqlMemoryStore(AsyncSessionLocal),
        planner=planner,
        audit=SqlAuditLogger(AsyncSessionLocal),
    )


async def run_once(args: argparse.Namespace) -> int:
    await init_async_db()
    engine = build_engine(args.heuristic)
    try:
        run = await engine.create_run(
            args.prompt,
            model=args.model,
            memory_key=args.memory_key,
            preferences={"ignore_robots_txt": args.ignore_robots_txt},
            agent_browser=args.browser,
            run_headless=not args.headed,
        )
        run = await engine.run(run.id)
    finally:
        await close_async_db()

    print(json.dumps(
        {
            "id": run.id,
            "status": run.status.value,
            "error": run.error_message,
            "steps": (run.plan_state or {}).get("steps", []),
        },
        ensure_ascii=False,
        indent=2,
    ))
    return 0 if run.status.value == "completed" else 1


async def serve(args: argparse.Namespace) -> None:
    await init_async_db()
    engine = build_engine(args.heuristic)
    queue = AgentQueue(engine)
    app = create_app(engine, queue)

    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host=args.host, port=args.port)
    await site.start()
    logger.info(f"🚀 Agent Engine API listening on http://{args.host}:{args.port} (env={settings.app_env.value})")
    logger.info("📖 API Documentation:")
    logger.info("   - POST   /runs               - create a run")
    logger.info("   - GET    /runs/{id}          - run status and checkpoint")
    logger.info("   - GET    /runs/{id}/audit    - audit trail")
    logger.info("   - POST   /runs/{id}          - stop / resume / approve / override")
    logger.info("   - DELETE /runs/{id}          - delete a run")
    logger.info("   - GET    /health             - health check")

    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Received shutdown signal...")
    finally:
        await runner.cleanup()
        await close_async_db()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Agent Engine - autonomous browser task runner")
    parser.add_argument("--heuristic", action="store_true", help="use the heuristic planner instead of the LLM")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="start the control API and queue worker")
    serve_parser.add_argument("--host", default=settings.api_host)
    serve_parser.add_argument("--port", type=int, default=settings.api_port)

    run_parser = subparsers.add_parser("run", help="run one prompt in the foreground")
    run_parser.add_argument("prompt", type=str)
    run_parser.add_argument("--model", type=str, default=None)
    run_parser.add_argument("--memory-key", type=str, default=None)
    run_parser.add_argument("--browser", type=str, default=None, help="chromium, firefox or webkit")
    run_parser.add_argument("--headed", action="store_true", help="show the browser window")
    run_parser.add_argument("--ignore-robots-txt", action="store_true")

    subparsers.add_parser("init-db", help="create database tables")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging()

    if args.command == "init-db":
        asyncio.run(init_async_db())
        logger.info("✅ Database tables created")
        return 0
    if args.command == "run":
        return asyncio.run(run_once(args))
    try:
        asyncio.run(serve(args))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    return 0


if __name__ == "__main__":
    sys.exit(main())
