from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from cylinder_ledger.core.config import Settings, settings
from cylinder_ledger.models.deposit import CylinderCondition, DamageSeverity
from cylinder_ledger.services.pricing import MoneyRounding


DEFAULT_CONDITION_PERCENTAGES: Mapping[CylinderCondition, Decimal] = MappingProxyType(
    {
        CylinderCondition.excellent: Decimal("100"),
        CylinderCondition.good: Decimal("90"),
        CylinderCondition.fair: Decimal("75"),
        CylinderCondition.poor: Decimal("50"),
        CylinderCondition.damaged: Decimal("25"),
        CylinderCondition.scrap: Decimal("0"),
    }
)

DEFAULT_SEVERITY_PERCENTAGES: Mapping[DamageSeverity, Decimal] = MappingProxyType(
    {
        DamageSeverity.minor: Decimal("85"),
        DamageSeverity.moderate: Decimal("60"),
        DamageSeverity.severe: Decimal("25"),
    }
)

DEFAULT_SIZE_TIERS: tuple[tuple[Decimal, Decimal], ...] = (
    (Decimal("6"), Decimal("1.2")),
    (Decimal("13"), Decimal("1.5")),
    (Decimal("45"), Decimal("1.8")),
)


@dataclass(frozen=True)
class DepositPolicy:
    """Tenant-level deposit policy handed explicitly to every rule engine."""

    condition_percentages: Mapping[CylinderCondition, Decimal] = field(default_factory=lambda: DEFAULT_CONDITION_PERCENTAGES)
    severity_percentages: Mapping[DamageSeverity, Decimal] = field(default_factory=lambda: DEFAULT_SEVERITY_PERCENTAGES)

    lost_fee_size_tiers: tuple[tuple[Decimal, Decimal], ...] = DEFAULT_SIZE_TIERS
    lost_fee_default_multiplier: Decimal = Decimal("2.0")
    lost_fee_replacement_multiplier: Decimal = Decimal("2.5")
    lost_fee_admin_rate: Decimal = Decimal("0.15")

    brand_exchange_fee: Decimal = Decimal("50.00")
    brand_exchange_fee_overrides: Mapping[str, Decimal] = field(default_factory=lambda: MappingProxyType({}))
    generic_brand_codes: frozenset[str] = frozenset({"GENERIC", "ANY"})

    return_window_days: int = 30
    grace_period_days: int = 7
    cancel_chargeback: bool = True
    expiry_chargeback: bool = True
    expiry_lost_fee: bool = False

    default_currency: str = "KES"
    rounding: MoneyRounding = "half_up"

    def condition_percentage(self, condition: CylinderCondition) -> Decimal:
        return Decimal(self.condition_percentages[CylinderCondition(condition)])

    def severity_percentage(self, severity: DamageSeverity) -> Decimal:
        return Decimal(self.severity_percentages[DamageSeverity(severity)])

    def size_multiplier(self, capacity_l: Decimal) -> Decimal:
        for max_capacity, multiplier in sorted(self.lost_fee_size_tiers):
            if capacity_l <= max_capacity:
                return Decimal(multiplier)
        return Decimal(self.lost_fee_default_multiplier)

    def exchange_fee_for(self, brand: str | None) -> Decimal:
        key = normalize_brand(brand)
        if key and key in self.brand_exchange_fee_overrides:
            return Decimal(self.brand_exchange_fee_overrides[key])
        return Decimal(self.brand_exchange_fee)

    def is_generic_brand(self, brand: str | None) -> bool:
        return normalize_brand(brand) in self.generic_brand_codes

    def currency(self, code: str | None) -> str:
        return (code or self.default_currency).strip().upper()


def normalize_brand(value: str | None) -> str:
    return (value or "").strip().upper()


def policy_from_settings(source: Settings) -> DepositPolicy:
    return DepositPolicy(
        condition_percentages=MappingProxyType(
            {
                CylinderCondition.excellent: source.refund_pct_excellent,
                CylinderCondition.good: source.refund_pct_good,
                CylinderCondition.fair: source.refund_pct_fair,
                CylinderCondition.poor: source.refund_pct_poor,
                CylinderCondition.damaged: source.refund_pct_damaged,
                CylinderCondition.scrap: source.refund_pct_scrap,
            }
        ),
        severity_percentages=MappingProxyType(
            {
                DamageSeverity.minor: source.damage_pct_minor,
                DamageSeverity.moderate: source.damage_pct_moderate,
                DamageSeverity.severe: source.damage_pct_severe,
            }
        ),
        lost_fee_size_tiers=tuple((Decimal(cap), Decimal(mult)) for cap, mult in source.lost_fee_size_tiers),
        lost_fee_default_multiplier=source.lost_fee_default_multiplier,
        lost_fee_replacement_multiplier=source.lost_fee_replacement_multiplier,
        lost_fee_admin_rate=source.lost_fee_admin_rate,
        brand_exchange_fee=source.brand_exchange_fee,
        brand_exchange_fee_overrides=MappingProxyType(
            {normalize_brand(code): Decimal(fee) for code, fee in source.brand_exchange_fee_overrides.items()}
        ),
        generic_brand_codes=frozenset(normalize_brand(code) for code in source.generic_brand_codes),
        return_window_days=max(1, int(source.credit_return_window_days)),
        grace_period_days=max(0, int(source.credit_grace_period_days)),
        cancel_chargeback=bool(source.credit_cancel_chargeback),
        expiry_chargeback=bool(source.credit_expiry_chargeback),
        expiry_lost_fee=bool(source.credit_expiry_lost_fee),
        default_currency=source.default_currency.strip().upper(),
        rounding=source.money_rounding,  # type: ignore[arg-type]
    )


def get_policy() -> DepositPolicy:
    return policy_from_settings(settings)
