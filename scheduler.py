import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from security import TokenSigner
from services import AuthService

logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        signer: TokenSigner,
    ) -> None:
        self.session_factory = session_factory
        self.signer = signer
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    async def _run_job(self, source: str = "manual") -> int:
        async with self.session_factory() as session:
            count = await AuthService(session, self.signer).purge_expired_refresh_tokens()
        logger.info(f"refresh_tokens_purged: source={source} count={count}")
        return count

    def start(self) -> None:
        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly"],
            id="purge_refresh_tokens",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.start()
        logger.info("Scheduler started with hourly refresh token purge")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
