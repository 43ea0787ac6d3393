from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal

from cylinder_ledger.core.errors import ValidationError
from cylinder_ledger.services.pricing import quantize_money, to_decimal
from cylinder_ledger.services.policy import DepositPolicy


@dataclass(frozen=True)
class LostCylinderFee:
    base_fee: Decimal
    replacement_cost: Decimal
    administrative_fee: Decimal
    total_fee: Decimal
    quantity: int = 1

    @property
    def unit_total_fee(self) -> Decimal:
        return self.total_fee / self.quantity

    def as_dict(self) -> dict[str, object]:
        return {key: (str(value) if isinstance(value, Decimal) else value) for key, value in asdict(self).items()}


def compute_fee(policy: DepositPolicy, capacity_l: Decimal, unit_deposit: Decimal, quantity: int = 1) -> LostCylinderFee:
    """Fee charged when cylinders are not coming back.

    base = unit deposit x size multiplier, replacement = unit deposit x replacement
    multiplier, admin = admin rate x (base + replacement). Each part is priced per
    cylinder and multiplied by quantity, so totals stay exact multiples of the unit fee.
    """
    capacity = to_decimal(capacity_l)
    unit = to_decimal(unit_deposit)
    if capacity <= 0:
        raise ValidationError("Cylinder capacity must be greater than zero")
    if unit < 0:
        raise ValidationError("Unit deposit cannot be negative")
    if int(quantity) < 1:
        raise ValidationError("Quantity must be at least 1")

    rounding = policy.rounding
    count = int(quantity)
    base = quantize_money(unit * policy.size_multiplier(capacity), rounding=rounding)
    replacement = quantize_money(unit * policy.lost_fee_replacement_multiplier, rounding=rounding)
    admin = quantize_money((base + replacement) * policy.lost_fee_admin_rate, rounding=rounding)
    return LostCylinderFee(
        base_fee=base * count,
        replacement_cost=replacement * count,
        administrative_fee=admin * count,
        total_fee=(base + replacement + admin) * count,
        quantity=count,
    )
