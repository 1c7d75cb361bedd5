from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

CURRENCY_QUANT = Decimal("0.0001")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # float -> str, чтобы не тащить двоичный хвост 0.1000000000000000055...
    return Decimal(str(value))


def quantize(value, rounding=ROUND_HALF_UP) -> Decimal:
    return to_decimal(value).quantize(CURRENCY_QUANT, rounding=rounding)


def truncate(value) -> Decimal:
    return quantize(value, rounding=ROUND_DOWN)


def format_amount(value, currency: str = "USDT") -> str:
    amount = to_decimal(value or 0)
    if currency == "COINS":
        return f"{int(amount):,}".replace(",", " ") + " coins"
    return f"{amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)} {currency}"


def format_duration(total_seconds: float) -> str:
    total_seconds = max(0, int(total_seconds))
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
