from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from cylinder_ledger.models.deposit import CylinderCondition, CylinderStatus
from cylinder_ledger.schemas.deposit import DamageAssessment
from cylinder_ledger.services import brands, conditions, lost_fees
from cylinder_ledger.services.policy import DepositPolicy
from cylinder_ledger.services.pricing import ZERO, apply_percentage, clamp_non_negative, line_total


@dataclass(frozen=True)
class ReturnValuation:
    evaluation: conditions.ConditionEvaluation
    brand: brands.BrandExchange
    gross_credit: Decimal
    net_credit: Decimal
    lost_fee: lost_fees.LostCylinderFee | None = None

    @property
    def deductions(self) -> Decimal:
        return self.gross_credit - self.net_credit


def value_return(
    policy: DepositPolicy,
    *,
    capacity_l: Decimal,
    unit_amount: Decimal,
    quantity: int,
    cylinder_status: CylinderStatus | None = None,
    condition: CylinderCondition | None = None,
    damage_assessment: DamageAssessment | None = None,
    refund_percentage: Decimal | None = None,
    original_brand: str | None = None,
    accepted_brand: str | None = None,
) -> ReturnValuation:
    """Value ``quantity`` returned cylinders worth ``unit_amount`` each.

    Lost cylinders earn nothing back and carry a lost-cylinder fee instead.
    """
    evaluation = conditions.evaluate(
        policy,
        condition=condition,
        cylinder_status=cylinder_status,
        damage_assessment=damage_assessment,
        refund_percentage=refund_percentage,
    )
    if cylinder_status == CylinderStatus.lost:
        return ReturnValuation(
            evaluation=evaluation,
            brand=brands.BrandExchange(fee=ZERO, reconciliation_status=None),
            gross_credit=ZERO,
            net_credit=ZERO,
            lost_fee=lost_fees.compute_fee(policy, capacity_l, unit_amount, quantity),
        )

    full_value = line_total(unit_amount, quantity, rounding=policy.rounding)
    gross = apply_percentage(full_value, evaluation.refund_percentage, rounding=policy.rounding)
    exchange = brands.exchange_fee(policy, original_brand, accepted_brand, quantity)
    net = clamp_non_negative(gross - exchange.fee)
    return ReturnValuation(evaluation=evaluation, brand=exchange, gross_credit=gross, net_credit=net)
