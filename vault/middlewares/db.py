from typing import Callable, Awaitable, Dict, Any
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject
from sqlalchemy.ext.asyncio import async_sessionmaker

from vault.db import SessionLocal


class DataBaseSessionMiddleware(BaseMiddleware):
    """Открывает сессию на апдейт и отдаёт её хендлеру как `session`."""

    def __init__(self, session_factory: async_sessionmaker = SessionLocal):
        super().__init__()
        self.session_factory = session_factory

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        async with self.session_factory() as session:
            data["session"] = session
            return await handler(event, data)
