from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from cylinder_ledger.core.errors import ValidationError
from cylinder_ledger.models.deposit import CylinderCondition, CylinderStatus
from cylinder_ledger.schemas.deposit import DamageAssessment
from cylinder_ledger.services.pricing import HUNDRED, ZERO, quantize_money, to_decimal
from cylinder_ledger.services.policy import DepositPolicy


@dataclass(frozen=True)
class ConditionEvaluation:
    refund_percentage: Decimal
    basis: str
    deduction_breakdown: dict[str, Any] = field(default_factory=dict)


def _explicit(percentage: object) -> ConditionEvaluation:
    value = to_decimal(percentage)
    if value < 0 or value > HUNDRED:
        raise ValidationError("Refund percentage must be between 0 and 100", refund_percentage=str(value))
    return ConditionEvaluation(refund_percentage=value, basis="explicit", deduction_breakdown={"deduction_pct": str(HUNDRED - value)})


def _from_assessment(policy: DepositPolicy, assessment: DamageAssessment) -> ConditionEvaluation:
    percentage = policy.severity_percentage(assessment.severity)
    breakdown: dict[str, Any] = {
        "damage_type": assessment.damage_type,
        "severity": assessment.severity.value,
        "deduction_pct": str(HUNDRED - percentage),
    }
    # Informational only; the severity percentage already prices the damage.
    if assessment.repair_cost_estimate is not None:
        breakdown["repair_cost_estimate"] = str(quantize_money(assessment.repair_cost_estimate, rounding=policy.rounding))
    return ConditionEvaluation(refund_percentage=percentage, basis="damage_assessment", deduction_breakdown=breakdown)


def evaluate(
    policy: DepositPolicy,
    *,
    condition: CylinderCondition | None = None,
    cylinder_status: CylinderStatus | None = None,
    damage_assessment: DamageAssessment | None = None,
    refund_percentage: Decimal | None = None,
) -> ConditionEvaluation:
    """Resolve the refund percentage for one returned cylinder line.

    Precedence is lost status, then an explicit percentage, then a damage assessment,
    then the condition grade. A damaged cylinder without an assessment uses the
    ``damaged`` grade.
    """
    if cylinder_status == CylinderStatus.lost:
        return ConditionEvaluation(refund_percentage=ZERO, basis="lost", deduction_breakdown={"deduction_pct": str(HUNDRED)})
    if refund_percentage is not None:
        return _explicit(refund_percentage)
    if damage_assessment is not None:
        return _from_assessment(policy, damage_assessment)

    if condition is None:
        condition = CylinderCondition.damaged if cylinder_status == CylinderStatus.damaged else CylinderCondition.excellent
    percentage = policy.condition_percentage(condition)
    return ConditionEvaluation(
        refund_percentage=percentage,
        basis="condition",
        deduction_breakdown={"condition": CylinderCondition(condition).value, "deduction_pct": str(HUNDRED - percentage)},
    )
