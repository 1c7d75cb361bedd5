"""
Фоновые задачи хранилища: ежедневный дрип пулов, возврат истёкших подписок
на FREE, сборка батчей на вывод и периодическая проверка цепочек леджера.
"""
import logging

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from vault.config import settings
from vault.db import SessionLocal
from vault.services import ledger
from vault.services.allocation import AllocationService
from vault.services.subscriptions import expire_subscriptions
from vault.services.withdrawals import WithdrawalService

logger = logging.getLogger(__name__)


async def run_daily_drip(session_factory: async_sessionmaker = SessionLocal):
    try:
        await AllocationService.run_daily_drip(session_factory)
    except Exception:
        logger.exception("❌ Daily drip упал")


async def run_withdrawal_batching(session_factory: async_sessionmaker = SessionLocal):
    try:
        async with session_factory() as session:
            batch = await WithdrawalService.batch_pending(session)
        if batch is None:
            logger.info("Нет заявок на вывод для батча")
    except Exception:
        logger.exception("❌ Сборка батча выводов упала")


async def run_subscription_expiry(session_factory: async_sessionmaker = SessionLocal):
    try:
        async with session_factory() as session:
            expired = await expire_subscriptions(session)
        logger.info("Истёкших подписок: %s", len(expired))
    except Exception:
        logger.exception("❌ Проверка истёкших подписок упала")


async def run_chain_audit(session_factory: async_sessionmaker = SessionLocal) -> list:
    """Проверяет каждый счёт в отдельной сессии; повреждённые счета блокируются в verify_chain."""
    async with session_factory() as session:
        accounts = await ledger.list_accounts(session)

    broken = []
    for account_id in accounts:
        try:
            async with session_factory() as session:
                verdict = await ledger.verify_chain(session, account_id)
            if not verdict:
                broken.append(verdict)
        except Exception:
            logger.exception("Ошибка проверки цепочки %s", account_id)

    logger.info("Аудит цепочек: счетов %s, повреждено %s", len(accounts), len(broken))
    return broken


class VaultScheduler:

    def __init__(self, session_factory: async_sessionmaker = SessionLocal):
        self.session_factory = session_factory
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
            timezone="UTC",
        )

    def setup_jobs(self):
        self.scheduler.add_job(
            run_daily_drip,
            trigger=CronTrigger(hour=settings.drip_hour_utc, minute=0, timezone="UTC"),
            args=[self.session_factory],
            id="daily_drip",
            name="💧 Daily drip пулов",
            replace_existing=True,
        )
        logger.info("✅ Daily drip в %02d:00 UTC", settings.drip_hour_utc)

        # батч после дрипа, чтобы не спорить за одни и те же счета
        self.scheduler.add_job(
            run_withdrawal_batching,
            trigger=CronTrigger(hour=settings.drip_hour_utc, minute=30, timezone="UTC"),
            args=[self.session_factory],
            id="withdrawal_batching",
            name="📦 Батч выводов",
            replace_existing=True,
        )
        logger.info("✅ Батч выводов в %02d:30 UTC", settings.drip_hour_utc)

        self.scheduler.add_job(
            run_subscription_expiry,
            trigger=CronTrigger(hour=settings.drip_hour_utc, minute=15, timezone="UTC"),
            args=[self.session_factory],
            id="subscription_expiry",
            name="🎫 Возврат истёкших подписок на FREE",
            replace_existing=True,
        )
        logger.info("✅ Истечение подписок в %02d:15 UTC", settings.drip_hour_utc)

        self.scheduler.add_job(
            run_chain_audit,
            trigger=IntervalTrigger(hours=settings.audit_interval_hours),
            args=[self.session_factory],
            id="chain_audit",
            name="🔗 Аудит цепочек леджера",
            replace_existing=True,
        )
        logger.info("✅ Аудит цепочек каждые %s ч", settings.audit_interval_hours)

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Планировщик запущен, задач: %s", len(self.scheduler.get_jobs()))

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Планировщик остановлен")
