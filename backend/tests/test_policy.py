from dataclasses import replace
from decimal import Decimal

import pytest

from cylinder_ledger.core.config import Settings
from cylinder_ledger.models.deposit import CylinderCondition, DamageSeverity
from cylinder_ledger.services.policy import DepositPolicy, policy_from_settings


def test_default_policy_carries_percentage_tables() -> None:
    policy = DepositPolicy()
    assert policy.condition_percentage(CylinderCondition.good) == Decimal("90")
    assert policy.condition_percentage(CylinderCondition.scrap) == Decimal("0")
    assert policy.severity_percentage(DamageSeverity.moderate) == Decimal("60")
    assert len(policy.condition_percentages) == len(CylinderCondition)

    with pytest.raises(TypeError):
        policy.condition_percentages[CylinderCondition.good] = Decimal("10")  # type: ignore[index]


def test_policy_from_settings_reads_overrides() -> None:
    policy = policy_from_settings(Settings(refund_pct_good=Decimal("80"), damage_pct_moderate=Decimal("55")))
    assert policy.condition_percentage(CylinderCondition.good) == Decimal("80")
    assert policy.condition_percentage(CylinderCondition.excellent) == Decimal("100")
    assert policy.severity_percentage(DamageSeverity.moderate) == Decimal("55")

    tweaked = replace(policy, expiry_lost_fee=True)
    assert tweaked.condition_percentages is policy.condition_percentages
