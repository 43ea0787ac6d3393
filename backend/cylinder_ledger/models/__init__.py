from cylinder_ledger.db.base import Base  # noqa: F401
from cylinder_ledger.models.deposit import (
    CustomerDepositAccount,
    CylinderCondition,
    CylinderStatus,
    DamageSeverity,
    DepositRate,
    DepositTransaction,
    DepositTransactionLine,
    RefundMethod,
    TransactionType,
)  # noqa: F401
from cylinder_ledger.models.credit import (
    BrandReconciliationStatus,
    CreditStatus,
    EmptyReturnCredit,
    EmptyReturnCreditStatusHistory,
    EmptyReturnEvent,
)  # noqa: F401

__all__ = [
    "Base",
    "BrandReconciliationStatus",
    "CreditStatus",
    "CustomerDepositAccount",
    "CylinderCondition",
    "CylinderStatus",
    "DamageSeverity",
    "DepositRate",
    "DepositTransaction",
    "DepositTransactionLine",
    "EmptyReturnCredit",
    "EmptyReturnCreditStatusHistory",
    "EmptyReturnEvent",
    "RefundMethod",
    "TransactionType",
]
