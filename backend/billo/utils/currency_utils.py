from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Sequence

from billo.core.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class Currency:
    code: str
    symbol: str
    name: str


# First entry is the fallback for unknown codes
SUPPORTED_CURRENCIES: list[Currency] = [
    Currency("USD", "$", "US Dollar"),
    Currency("EUR", "€", "Euro"),
    Currency("GBP", "£", "British Pound"),
    Currency("INR", "₹", "Indian Rupee"),
    Currency("CAD", "C$", "Canadian Dollar"),
    Currency("AUD", "A$", "Australian Dollar"),
    Currency("JPY", "¥", "Japanese Yen"),
    Currency("CNY", "¥", "Chinese Yuan"),
]

_BY_CODE = {c.code: c for c in SUPPORTED_CURRENCIES}


def get_currency_by_code(code: str | None) -> Currency:
    return _BY_CODE.get((code or "").upper(), SUPPORTED_CURRENCIES[0])


def is_supported_currency(code: str | None) -> bool:
    return (code or "").upper() in _BY_CODE


def _to_decimal(value) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
    if not result.is_finite():
        return None
    return result


def parse_amount(value) -> Decimal:
    """Lenient parse for display and aggregation. Garbage becomes zero."""
    result = _to_decimal(value)
    if result is None:
        return ZERO
    return result.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_money(value, field: str = "amount", allow_zero: bool = True) -> Decimal:
    """Strict parse for anything that gets persisted.

    Raises ValidationError naming ``field`` for missing, non-numeric,
    non-finite or negative input.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required", field=field)
    result = _to_decimal(value)
    if result is None:
        raise ValidationError(f"{field} must be a valid number", field=field)
    if result < 0 or (not allow_zero and result == 0):
        raise ValidationError(f"{field} must be positive", field=field)
    return result.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount, currency_code: str = "USD") -> str:
    currency = get_currency_by_code(currency_code)
    value = parse_amount(amount)
    return f"{currency.symbol}{value:.2f}"


def to_cents(amount) -> int:
    return int((Decimal(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal(100)).quantize(CENT)


def money_str(amount) -> str:
    """Render a Decimal/str/int as a 2-decimal string."""
    return f"{Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP):.2f}"


def allocate_cents(total_cents: int, weights: Sequence, order: Sequence | None = None) -> list[int]:
    """
    Apportion ``total_cents`` proportionally to ``weights`` (largest remainder).

    The result sums exactly to ``total_cents``. Every slot first gets the floor
    of its exact share; leftover cents go one at a time to the slots with the
    largest fractional remainder, ties broken by ``order`` (a sort key per slot,
    defaults to the slot index). All-zero weights allocate nothing.
    """
    weights = [Decimal(w) for w in weights]
    total_weight = sum(weights, Decimal(0))
    if not weights or total_weight <= 0:
        return [0] * len(weights)

    base = []
    remainders = []
    for w in weights:
        exact = Decimal(total_cents) * w / total_weight
        floor = int(exact.to_integral_value(rounding="ROUND_FLOOR"))
        base.append(floor)
        remainders.append(exact - floor)

    leftover = total_cents - sum(base)
    keys = list(order) if order is not None else list(range(len(weights)))
    ranked = sorted(range(len(weights)), key=lambda i: (-remainders[i], keys[i]))
    for i in ranked[:leftover]:
        base[i] += 1
    return base


def compute_shares(amount, user_ids: Iterable) -> dict:
    """
    Split amount evenly into shares that sum EXACTLY to amount.

    Works in integer cents. Each user gets floor(amount / n); the residual
    cents go one each to the first users in ascending id order, so a single
    stray cent always lands on the lexicographically-first id.

    Returns a dict mapping user_id to their share (Decimal).
    """
    user_ids = list(dict.fromkeys(user_ids))
    n = len(user_ids)
    if n == 0:
        return {}

    amount_cents = to_cents(amount)
    base_cents = amount_cents // n
    extra_count = amount_cents % n

    sorted_ids = sorted(user_ids, key=str)
    shares = {}
    for i, uid in enumerate(sorted_ids):
        cents = base_cents + (1 if i < extra_count else 0)
        shares[uid] = from_cents(cents)
    return shares
