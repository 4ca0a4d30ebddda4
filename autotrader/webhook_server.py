# autotrader/webhook_server.py
import hashlib
import hmac
import json
import logging
from typing import Optional

import aiohttp
import asyncpg
from aiohttp import web, web_request
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from autotrader.config import Config
from autotrader.orchestrator import CycleOrchestrator
from autotrader.trading.db_logger import log_event

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", Config)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", CycleOrchestrator)
SESSION_KEY = web.AppKey("session", aiohttp.ClientSession)
POOL_KEY = web.AppKey("pool", object)
SCHEDULER_KEY = web.AppKey("scheduler", AsyncIOScheduler)

SHUTDOWN_GRACE_SECONDS = 30


def verify_signature(secret: str, payload: bytes, signature: str) -> bool:
    if not secret:
        return True
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[7:]
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


async def handle_root(request: web_request.Request):
    return web.Response(text="Autonomous Trader Server is Live")


async def handle_health(request: web_request.Request):
    return web.json_response({"status": "healthy", "service": "autotrader"})


async def handle_trigger(request: web_request.Request):
    config = request.app[CONFIG_KEY]
    body = await request.read()
    if not verify_signature(config.trigger_secret, body, request.headers.get("X-Signature-256", "")):
        logger.warning("Invalid trigger signature")
        return web.json_response({"status": "error", "message": "Invalid signature"}, status=401)

    try:
        data = json.loads(body.decode()) if body else {}
    except (UnicodeDecodeError, json.JSONDecodeError):
        return web.json_response({"status": "error", "message": "Invalid JSON"}, status=400)
    if not isinstance(data, dict):
        return web.json_response({"status": "error", "message": "Expected a JSON object"}, status=400)

    account_id: Optional[str] = data.get("accountId") or data.get("userId")
    force = data.get("force", False)
    if not isinstance(force, bool):
        return web.json_response({"status": "error", "message": "force must be a boolean"}, status=400)
    if force and not account_id:
        return web.json_response({"status": "error", "message": "force requires accountId"}, status=400)

    logger.info(f"Manual trigger received: account={account_id or 'ALL'}, force={force}")
    request.app[ORCHESTRATOR_KEY].dispatch(str(account_id) if account_id else None, force)
    return web.json_response(
        {"status": "accepted", "accountId": account_id, "force": force},
        status=202,
    )


def start_scheduler(orchestrator: CycleOrchestrator) -> AsyncIOScheduler:
    """Every-minute sweep over all accounts with automation enabled.

    The job only dispatches the sweep, so a slow account never holds back the next tick.
    """
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        orchestrator.tick,
        CronTrigger(minute="*", timezone="UTC"),
        id="autonomous_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Autonomous sweep scheduler started (every minute)")
    return scheduler


async def init_app(app: web.Application):
    """Runs once the event loop is up: pool, HTTP session, orchestrator, timer."""
    config = app[CONFIG_KEY]
    pool = None
    if config.database_url:
        pool = await asyncpg.create_pool(config.database_url, min_size=1, max_size=10)
    else:
        logger.warning("DB_URL not configured, settings store unavailable")
    session = aiohttp.ClientSession()

    app[POOL_KEY] = pool
    app[SESSION_KEY] = session
    orchestrator = CycleOrchestrator.create(config, session, pool)
    app[ORCHESTRATOR_KEY] = orchestrator
    app[SCHEDULER_KEY] = start_scheduler(orchestrator)

    await log_event(pool, "startup", details={"service": "autotrader"}, message="Trigger server started")


async def cleanup_app(app: web.Application):
    scheduler = app.get(SCHEDULER_KEY)
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
    orchestrator = app.get(ORCHESTRATOR_KEY)
    if orchestrator is not None:
        await orchestrator.wait_background(timeout=SHUTDOWN_GRACE_SECONDS)
    session = app.get(SESSION_KEY)
    if session is not None:
        await session.close()
    pool = app.get(POOL_KEY)
    if pool is not None:
        await pool.close()


def create_app(config: Config, orchestrator: Optional[CycleOrchestrator] = None) -> web.Application:
    """Build the aiohttp app. Passing an orchestrator skips the startup wiring (tests)."""
    app = web.Application()
    app[CONFIG_KEY] = config
    app.router.add_get("/", handle_root)
    app.router.add_get("/health", handle_health)
    app.router.add_post("/trigger", handle_trigger)

    if orchestrator is not None:
        app[ORCHESTRATOR_KEY] = orchestrator
    else:
        app.on_startup.append(init_app)
        app.on_cleanup.append(cleanup_app)
    return app


def main():
    config = Config.from_env()
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, config.log_level.upper(), logging.INFO),
    )
    if not config.master_key:
        logger.error("APP_SECRET_KEY is not set, every sweep will abort")
    app = create_app(config)
    logger.info(f"Starting trigger server on {config.host}:{config.port}")
    web.run_app(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
