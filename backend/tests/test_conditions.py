from decimal import Decimal

import pytest

from cylinder_ledger.core.errors import ValidationError
from cylinder_ledger.models.deposit import CylinderCondition, CylinderStatus, DamageSeverity
from cylinder_ledger.schemas.deposit import DamageAssessment
from cylinder_ledger.services import conditions
from cylinder_ledger.services.policy import DepositPolicy


@pytest.mark.parametrize(
    ("condition", "expected"),
    [
        (CylinderCondition.excellent, Decimal("100")),
        (CylinderCondition.good, Decimal("90")),
        (CylinderCondition.fair, Decimal("75")),
        (CylinderCondition.poor, Decimal("50")),
        (CylinderCondition.damaged, Decimal("25")),
        (CylinderCondition.scrap, Decimal("0")),
    ],
)
def test_condition_grades(condition: CylinderCondition, expected: Decimal) -> None:
    result = conditions.evaluate(DepositPolicy(), condition=condition)
    assert result.refund_percentage == expected
    assert result.basis == "condition"


def test_damage_assessment_uses_severity_and_keeps_repair_cost_informational() -> None:
    assessment = DamageAssessment(damage_type="dent", severity=DamageSeverity.moderate, repair_cost_estimate=Decimal("400"))
    result = conditions.evaluate(
        DepositPolicy(),
        cylinder_status=CylinderStatus.damaged,
        condition=CylinderCondition.good,
        damage_assessment=assessment,
    )
    assert result.refund_percentage == Decimal("60")
    assert result.basis == "damage_assessment"
    assert result.deduction_breakdown["repair_cost_estimate"] == "400.00"
    assert result.deduction_breakdown["deduction_pct"] == "40"


def test_damaged_without_assessment_falls_back_to_damaged_grade() -> None:
    result = conditions.evaluate(DepositPolicy(), cylinder_status=CylinderStatus.damaged)
    assert result.refund_percentage == Decimal("25")


def test_lost_cylinder_earns_nothing_even_with_explicit_percentage() -> None:
    result = conditions.evaluate(DepositPolicy(), cylinder_status=CylinderStatus.lost, refund_percentage=Decimal("80"))
    assert result.refund_percentage == Decimal("0")
    assert result.basis == "lost"


def test_explicit_percentage_wins_and_is_bounded() -> None:
    result = conditions.evaluate(DepositPolicy(), condition=CylinderCondition.poor, refund_percentage=Decimal("70"))
    assert result.refund_percentage == Decimal("70")
    assert result.basis == "explicit"
    with pytest.raises(ValidationError):
        conditions.evaluate(DepositPolicy(), refund_percentage=Decimal("120"))


def test_policy_tables_are_configurable() -> None:
    policy = DepositPolicy(condition_percentages={**DepositPolicy().condition_percentages, CylinderCondition.good: Decimal("80")})
    assert conditions.evaluate(policy, condition=CylinderCondition.good).refund_percentage == Decimal("80")
