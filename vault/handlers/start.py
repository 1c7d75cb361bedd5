import html

from aiogram import Router
from aiogram.filters import Command, CommandStart
from aiogram.types import Message
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault.exceptions import RefillUnavailable
from vault.models.ledger_entry import Currency
from vault.models.users import User
from vault.services import ledger
from vault.services.energy import (
    apply_full_tank_refill, current_energy, energy_percentage, get_refill_cooldown_remaining, time_until_full,
)
from vault.services.tiers import tier_resolver
from vault.utils.formatting import format_amount, format_duration

router = Router()


async def get_user_by_telegram(session: AsyncSession, telegram_id: int) -> User | None:
    result = await session.execute(select(User).where(User.telegram_id == telegram_id))
    return result.scalar_one_or_none()


@router.message(CommandStart())
async def cmd_start(message: Message, session: AsyncSession):
    user = await get_user_by_telegram(session, message.from_user.id)

    if not user:
        # новый пользователь
        user = User(
            telegram_id=message.from_user.id,
            username=message.from_user.username,
        )
        session.add(user)
        await session.commit()

    name = html.escape(message.from_user.first_name or "друг")
    await message.answer(
        f"👋 Привет, <b>{name}</b>!\n\n"
        f"🎫 Тариф: <b>{user.tier}</b>\n"
        "💰 Баланс и энергия: /balance\n"
        "⚡ Полный бак энергии: /refill"
    )


@router.message(Command("balance"))
async def cmd_balance(message: Message, session: AsyncSession):
    user = await get_user_by_telegram(session, message.from_user.id)
    if not user:
        await message.answer("❌ Сначала нажмите /start")
        return

    config = await tier_resolver.resolve(session, user.tier)
    usdt = await ledger.current_balance(session, user.id, Currency.USDT)
    coins = await ledger.current_balance(session, user.id, Currency.COINS)
    energy = current_energy(user.energy, user.max_energy, user.last_energy_refill, config)
    cooldown = get_refill_cooldown_remaining(user.last_free_refill, config)

    refill = "доступен ✅" if cooldown.can_refill else f"через {format_duration(cooldown.remaining_ms / 1000)}"
    await message.answer(
        f"💼 <b>Ваш баланс</b>\n\n"
        f"┣ 💵 <b>{format_amount(usdt, 'USDT')}</b>\n"
        f"┗ 🪙 <b>{format_amount(coins, 'COINS')}</b>\n\n"
        f"⚡ <b>Энергия</b>: {energy}/{user.max_energy} ({energy_percentage(energy, user.max_energy):.0f}%)\n"
        f"┣ До полного: {time_until_full(energy, user.max_energy, config)}\n"
        f"┗ Полный бак: {refill}\n\n"
        f"🎫 Тариф: <b>{config.name}</b> (x{config.tap_multiplier} за тап)"
    )


@router.message(Command("refill"))
async def cmd_refill(message: Message, session: AsyncSession):
    user = await get_user_by_telegram(session, message.from_user.id)
    if not user:
        await message.answer("❌ Сначала нажмите /start")
        return

    config = await tier_resolver.resolve(session, user.tier)
    try:
        await apply_full_tank_refill(session, user, config)
    except RefillUnavailable as e:
        await message.answer(f"⏳ {html.escape(str(e))}")
        return

    await message.answer(f"⚡ Энергия восстановлена: <b>{user.energy}/{user.max_energy}</b>")
