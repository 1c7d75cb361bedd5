import html

from aiogram import F, Router
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from vault.config import settings
from vault.exceptions import VaultError
from vault.services.withdrawals import WithdrawalService
from vault.utils.formatting import format_amount

router = Router()


@router.message(F.text.startswith("/batch_withdrawals"))
async def cmd_batch_withdrawals(message: Message, session: AsyncSession):
    if message.from_user.id not in settings.admins:
        return

    batch = await WithdrawalService.batch_pending(session)
    if batch is None:
        await message.answer("📭 Нет заявок на вывод.")
        return

    members = await WithdrawalService.get_batch_withdrawals(session, batch.id)
    lines = "".join(
        f"┣ <code>{w.id}</code> {format_amount(w.net_amount, w.currency)} → <code>{html.escape(w.to_wallet)}</code>\n"
        for w in members
    )
    await message.answer(
        f"📦 <b>БАТЧ</b> <code>{batch.id}</code>\n\n"
        f"┣ Заявок: <b>{batch.total_withdrawals}</b>\n"
        f"┣ Сумма: <b>{format_amount(batch.total_gross)}</b>\n"
        f"┣ Комиссии: <b>{format_amount(batch.total_fees)}</b>\n"
        f"┣ К выплате: <b>{format_amount(batch.total_net)}</b>\n\n"
        f"{lines}"
        f"┗ Результат: <code>/batch_result {batch.id} [id неуспешных...]</code>"
    )


@router.message(F.text.startswith("/batch_result"))
async def cmd_batch_result(message: Message, session: AsyncSession):
    if message.from_user.id not in settings.admins:
        return

    parts = message.text.split()
    if len(parts) < 2:
        await message.answer(
            "❌ Неверный формат.\n\n"
            "Использование:\n"
            "<code>/batch_result &lt;batch_id&gt; [id неуспешных заявок...]</code>"
        )
        return

    batch_id, failed_ids = parts[1], parts[2:]
    try:
        batch = await WithdrawalService.mark_batch_result(session, batch_id, failed_ids, error_text="отмечено администратором")
    except VaultError as e:
        await message.answer(f"❌ {html.escape(str(e))}")
        return

    await message.answer(
        f"✅ Батч <code>{batch.id}</code>: <b>{batch.status}</b>\n"
        f"┗ Неуспешных: <b>{len(failed_ids)}</b> из {batch.total_withdrawals}"
    )


@router.message(F.text.startswith("/reject_withdrawal"))
async def cmd_reject_withdrawal(message: Message, session: AsyncSession):
    if message.from_user.id not in settings.admins:
        return

    parts = message.text.split(maxsplit=2)
    if len(parts) < 2:
        await message.answer("❌ Использование: <code>/reject_withdrawal &lt;id&gt; [причина]</code>")
        return

    reason = parts[2] if len(parts) > 2 else None
    try:
        withdrawal = await WithdrawalService.reject_withdrawal(session, parts[1], reason)
    except VaultError as e:
        await message.answer(f"❌ {html.escape(str(e))}")
        return

    await message.answer(
        f"↩️ Вывод <code>{withdrawal.id}</code> отклонён\n"
        f"┗ Возвращено: <b>{format_amount(withdrawal.gross_amount, withdrawal.currency)}</b>"
    )
