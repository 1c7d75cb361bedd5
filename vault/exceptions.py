class VaultError(Exception):
    """Базовая ошибка финансового ядра."""


class InvalidAmount(VaultError):
    pass


class InsufficientFunds(VaultError):
    def __init__(self, account_id: str, requested, available):
        self.account_id = account_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Недостаточно средств на счёте {account_id}: запрошено {requested}, доступно {available}"
        )


class InsufficientBalance(InsufficientFunds):
    """Вывод больше текущего баланса пользователя."""


class ChainIntegrityViolation(VaultError):
    """Цепочка хешей счёта повреждена, списания заблокированы до ручного аудита."""

    def __init__(self, account_id: str, position: int | None = None, entry_id: str | None = None):
        self.account_id = account_id
        self.position = position
        self.entry_id = entry_id
        where = f" (запись #{position}, {entry_id})" if position is not None else ""
        super().__init__(f"Нарушена целостность леджера счёта {account_id}{where}")


class AllocationExpired(VaultError):
    pass


class DuplicateDrip(VaultError):
    pass


class RoundingOverflow(VaultError):
    pass


class UnknownTier(VaultError):
    pass


class PaymentMismatch(VaultError):
    pass


class RefillUnavailable(VaultError):
    def __init__(self, message: str, remaining_ms: int | None = None):
        self.remaining_ms = remaining_ms
        super().__init__(message)


class WithdrawalError(VaultError):
    pass


class TapRateExceeded(VaultError):
    """Тапов в секунду больше, чем физически возможно: сессия отклоняется целиком."""
