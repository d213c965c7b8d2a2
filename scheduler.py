import logging
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, session_scope
from services import users_with_tokens
from sync import SyncEngine, SyncError


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        engine_getter: Callable[[], SyncEngine],
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        interval_minutes: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.scheduler = AsyncIOScheduler(timezone=settings.timezone)
        self.engine_getter = engine_getter
        self.session_factory = session_factory
        self.interval_minutes = (
            settings.sync_interval_minutes
            if interval_minutes is None
            else interval_minutes
        )

    async def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope(self.session_factory) as session:
            users = users_with_tokens(session)

        engine = self.engine_getter()
        synced = 0
        for user_id, access_token in users:
            try:
                await engine.sync(user_id, access_token)
            except SyncError as exc:
                # Already recorded on the user's sync state; move on.
                logger.warning(
                    f"scheduler_sync_failed: user_id={user_id} "
                    f"kind={type(exc).__name__}"
                )
                continue
            except Exception:
                logger.exception(f"scheduler_sync_error: user_id={user_id}")
                continue
            synced += 1
        logger.info(
            f"scheduler_run: source={source} users={len(users)} synced={synced}"
        )
        return synced

    def start(self) -> None:
        if self.interval_minutes <= 0:
            logger.info("Background sync disabled")
            return

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="sync_remembered_users",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with background sync every {self.interval_minutes}m"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
