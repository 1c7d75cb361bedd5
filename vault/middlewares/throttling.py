import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import Message, TelegramObject
from aiolimiter import AsyncLimiter

from vault.config import settings

logger = logging.getLogger(__name__)


class ThrottlingMiddleware(BaseMiddleware):
    """
    Антифлуд команд: у каждого пользователя свой AsyncLimiter.
    Сообщение сверх лимита не ждёт очереди, а отбрасывается с предупреждением.
    """

    def __init__(self, rate: int | None = None, time_period: int | None = None):
        super().__init__()
        rate = rate or settings.throttle_rate
        time_period = time_period or settings.throttle_period
        # user_id -> AsyncLimiter
        self.user_limiters: Dict[int, AsyncLimiter] = defaultdict(lambda: AsyncLimiter(rate, time_period))

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        if not isinstance(event, Message) or event.from_user is None:
            return await handler(event, data)

        limiter = self.user_limiters[event.from_user.id]
        if not limiter.has_capacity():
            logger.debug("Флуд от %s, сообщение пропущено", event.from_user.id)
            await event.answer("⏳ Слишком часто. Подождите пару секунд.")
            return None

        async with limiter:
            return await handler(event, data)
