from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from .config import DEFAULT_DEPOSIT_PERCENT, PLATFORM_FEE_PERCENT
from .transitions import BookingMode

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    return to_money(to_money(amount) * Decimal(percent) / HUNDRED)


@dataclass(frozen=True)
class Quote:
    total_amount: Decimal
    deposit_amount: Decimal
    platform_fee: Decimal

    @property
    def balance(self) -> Decimal:
        return self.total_amount - self.deposit_amount


def quote(
    mode: BookingMode,
    base_price: Decimal,
    deposit_percent: Decimal | None = None,
    fee_percent: Decimal = PLATFORM_FEE_PERCENT,
) -> Quote:
    """
    The customer pays the service price plus the platform fee. SOS bookings
    pay that total upfront; normal bookings pay a deposit share of it first.
    """
    base = to_money(base_price)
    if base <= 0:
        raise ValueError("base price must be positive")
    fee = percent_of(base, fee_percent)
    total = base + fee

    if BookingMode(mode) == BookingMode.SOS:
        deposit = total
    else:
        pct = DEFAULT_DEPOSIT_PERCENT if deposit_percent is None else Decimal(deposit_percent)
        if pct <= 0 or pct > HUNDRED:
            raise ValueError("deposit percent must be in (0, 100]")
        deposit = min(total, max(CENT, percent_of(total, pct)))

    return Quote(
        total_amount=total,
        deposit_amount=deposit,
        platform_fee=fee,
    )
