import html

from aiogram import F, Router
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from vault.config import settings
from vault.services import ledger
from vault.utils.formatting import format_amount

router = Router()

ENTRIES_LIMIT = 15


def format_entry_line(entry) -> str:
    sign = "+" if entry.direction == "credit" else "−"
    created = entry.created_at.strftime("%d.%m.%Y %H:%M") if entry.created_at else "—"
    return (
        f"┣ #{entry.sequence} {created} | {entry.entry_type}\n"
        f"┃   {sign}{format_amount(entry.amount, entry.currency)} → {format_amount(entry.balance_after, entry.currency)}\n"
    )


@router.message(F.text.startswith("/ledger"))
async def cmd_ledger(message: Message, session: AsyncSession):
    if message.from_user.id not in settings.admins:
        return

    parts = message.text.split()
    if len(parts) != 2:
        await message.answer(
            "❌ Неверный формат.\n\n"
            "Использование:\n"
            "<code>/ledger &lt;account_id&gt;</code>"
        )
        return

    account_id = parts[1]
    entries = await ledger.get_entries(session, account_id, limit=ENTRIES_LIMIT)
    if not entries:
        await message.answer(f"📭 По счёту <code>{html.escape(account_id)}</code> записей нет.")
        return

    halted = await ledger.is_halted(session, account_id)
    text = [f"📒 <b>ЛЕДЖЕР</b> <code>{html.escape(account_id)}</code>\n"]
    if halted:
        text.append("⛔ <b>Списания заблокированы</b>\n")
    text.append("\n")
    text.extend(format_entry_line(e) for e in entries)
    text.append(f"┗ Показаны последние {len(entries)}")
    await message.answer("".join(text))


@router.message(F.text.startswith("/verify_chain"))
async def cmd_verify_chain(message: Message, session: AsyncSession):
    if message.from_user.id not in settings.admins:
        return

    parts = message.text.split()
    if len(parts) != 2:
        await message.answer("❌ Использование: <code>/verify_chain &lt;account_id&gt;</code>")
        return

    account_id = parts[1]
    verdict = await ledger.verify_chain(session, account_id)
    if verdict:
        balances = "\n".join(
            f"┣ {format_amount(amount, currency)}" for currency, amount in sorted(verdict.balances.items())
        ) or "┣ —"
        await message.answer(
            f"✅ Цепочка <code>{html.escape(account_id)}</code> цела\n\n"
            f"┣ Записей: <b>{verdict.total_entries}</b>\n"
            f"{balances}"
        )
        return

    await message.answer(
        f"🚨 <b>Цепочка повреждена</b>: <code>{html.escape(account_id)}</code>\n\n"
        f"┣ Позиция: <b>{verdict.broken_at}</b>\n"
        f"┣ Запись: <code>{verdict.entry_id or '—'}</code>\n"
        f"┣ Причина: <code>{verdict.reason}</code>\n"
        f"┗ Списания по счёту заблокированы. Снять: <code>/unhalt {html.escape(account_id)}</code>"
    )


@router.message(F.text.startswith("/unhalt"))
async def cmd_unhalt(message: Message, session: AsyncSession):
    if message.from_user.id not in settings.admins:
        return

    parts = message.text.split()
    if len(parts) != 2:
        await message.answer("❌ Использование: <code>/unhalt &lt;account_id&gt;</code>")
        return

    await ledger.release_halt(session, parts[1])
    await message.answer(f"🔓 Блокировка счёта <code>{html.escape(parts[1])}</code> снята")
