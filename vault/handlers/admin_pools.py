from aiogram import F, Router
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from vault.config import settings
from vault.services.allocation import AllocationService
from vault.services.tiers import TIER_ORDER
from vault.utils.formatting import format_amount

router = Router()


@router.message(F.text.startswith("/pools"))
async def cmd_pools(message: Message, session: AsyncSession):
    if message.from_user.id not in settings.admins:
        return

    text = ["🎱 <b>ПУЛЫ ПО ТАРИФАМ</b>\n"]
    for tier_name in TIER_ORDER[1:]:
        status = await AllocationService.get_pool_status(session, tier_name)
        seeded = " (мин. сид)" if status.seeded else ""
        text.append(
            f"\n🎫 <b>{status.tier_name}</b>\n"
            f"┣ Подписчиков: <b>{status.active_subscribers}</b>\n"
            f"┣ Пул на день: <b>{format_amount(status.daily_total_pool)}</b>{seeded}\n"
        )
        for game, balance in sorted(status.pool_balances.items()):
            text.append(f"┣ {game}: {format_amount(balance)} (выдано {format_amount(status.released.get(game, 0))})\n")
        text.append(f"┗ 🎰 Джекпот месяца: <b>{format_amount(status.jackpot_vault)}</b>\n")

    await message.answer("".join(text))
