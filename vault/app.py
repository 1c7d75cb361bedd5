import asyncio
import logging
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties

from .config import settings
from .db import SessionLocal, init_models
from .handlers import start, admin_ledger, admin_pools, admin_withdrawals
from .jobs.scheduler import VaultScheduler
from .middlewares.db import DataBaseSessionMiddleware
from .middlewares.throttling import ThrottlingMiddleware
from .services.tiers import seed_default_tiers

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


async def main():
    if not settings.bot_token:
        logger.error("❌ BOT_TOKEN не задан, запуск невозможен")
        return

    await init_models()
    async with SessionLocal() as session:
        created = await seed_default_tiers(session)
    if created:
        logger.info("🎫 Добавлено тарифов по умолчанию: %s", created)

    bot = Bot(
        token=settings.bot_token,
        default=DefaultBotProperties(parse_mode="HTML"),
    )
    dp = Dispatcher()

    # Антифлуд, потом сессия
    dp.message.outer_middleware(ThrottlingMiddleware())
    dp.update.middleware(DataBaseSessionMiddleware())

    # Роутеры
    dp.include_router(start.router)
    dp.include_router(admin_ledger.router)
    dp.include_router(admin_pools.router)
    dp.include_router(admin_withdrawals.router)

    scheduler = VaultScheduler(SessionLocal)
    scheduler.start()

    logger.info("🚀 Бот запускается...")

    try:
        await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
    finally:
        logger.info("🛑 Остановка бота...")
        scheduler.shutdown()
        await bot.session.close()
        logger.info("✅ Сессия закрыта")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("⚠️ Бот был остановлен вручную")
