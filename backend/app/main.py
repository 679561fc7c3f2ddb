"""OKR Automation Engine — scheduler service entrypoint.

Runs the schedule manager in-process until SIGINT/SIGTERM. Webhook and
manual invocations call ``WorkflowExecutor.execute_workflow`` directly
from the embedding application.
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator

from app.config import get_settings
from core.logging_config import setup_logging
from db.database import AsyncSessionLocal, close_db, init_db
from integrations.dispatcher import ActionDispatcher
from notifications.manager import get_notification_manager
from triggers.schedule_manager import ScheduleManager
from workflow.engine import WorkflowExecutor


@asynccontextmanager
async def lifespan() -> AsyncIterator[ScheduleManager]:
    """Service startup and shutdown."""
    settings = get_settings()
    setup_logging()

    try:
        settings.validate_secrets()
    except RuntimeError as e:
        print(f"[startup] FATAL: {e}")
        raise

    await init_db()

    notif_mgr = get_notification_manager()
    notif_mgr.configure_channels(settings.notification_channels_config())
    print(f"[startup] Notification channels: {', '.join(notif_mgr.available_channels)}")

    dispatcher = ActionDispatcher(AsyncSessionLocal, settings)
    executor = WorkflowExecutor(
        session_factory=AsyncSessionLocal,
        settings=settings,
        notifications=notif_mgr,
        dispatcher=dispatcher,
    )
    print(f"[startup] Workflow executor ready (integrations: {', '.join(dispatcher.integration_types)})")

    schedules = ScheduleManager(executor, AsyncSessionLocal, settings)
    count = await schedules.initialize()
    print(f"[startup] Schedule manager ready ({count} schedule(s) registered)")

    print(f"[startup] {settings.APP_NAME} v{settings.APP_VERSION} started ({settings.ENVIRONMENT})")
    try:
        yield schedules
    finally:
        await schedules.shutdown()
        await close_db()
        print("[shutdown] Service stopped")


async def serve() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with lifespan():
        await stop.wait()


def main() -> None:
    asyncio.run(serve())


if __name__ == "__main__":
    main()
