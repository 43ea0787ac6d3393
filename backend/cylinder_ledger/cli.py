import argparse
import asyncio
import json
import uuid
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from cylinder_ledger.core.errors import DepositError
from cylinder_ledger.db.session import SessionLocal
from cylinder_ledger.services import balances, credits, rates
from cylinder_ledger.services.policy import get_policy


def _parse_uuid(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID((raw or "").strip())
    except ValueError:
        raise SystemExit(f"Invalid UUID: {raw}")


def _parse_date(raw: str | None) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        raise SystemExit(f"Invalid date (expected YYYY-MM-DD): {raw}")


def _parse_decimal(raw: str) -> Decimal:
    try:
        return Decimal((raw or "").strip())
    except InvalidOperation:
        raise SystemExit(f"Invalid number: {raw}")


def _emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, default=str, sort_keys=True))


async def expire_overdue(today: date | None) -> Dict[str, Any]:
    async with SessionLocal() as session:
        result = await credits.expire_overdue(session, policy=get_policy(), today=today)
    return {
        "expired": result.expired,
        "entered_grace": result.entered_grace,
        "skipped_conflicts": result.skipped_conflicts,
        "forfeited_amount": result.forfeited_amount,
        "charged_amount": result.charged_amount,
        "lost_fee_amount": result.lost_fee_amount,
    }


async def lookup_rate(capacity_l: Decimal, currency_code: str | None, as_of: date | None) -> Dict[str, Any]:
    policy = get_policy()
    async with SessionLocal() as session:
        rate = await rates.lookup_rate(session, capacity_l, policy.currency(currency_code), as_of)
    return {
        "id": rate.id,
        "capacity_l": rate.capacity_l,
        "currency_code": rate.currency_code,
        "deposit_amount": rate.deposit_amount,
        "effective_date": rate.effective_date,
        "end_date": rate.end_date,
    }


async def show_balance(customer_id: uuid.UUID, currency_code: str | None) -> Dict[str, Any]:
    policy = get_policy()
    async with SessionLocal() as session:
        balance = await balances.get_balance(session, customer_id, policy.currency(currency_code))
    return {
        "customer_id": balance.customer_id,
        "currency_code": balance.currency_code,
        "total_deposit_balance": balance.total_deposit_balance,
        "pending_refunds": balance.pending_refunds,
        "available_for_refund": balance.available_for_refund,
        "open_credit_count": balance.open_credit_count,
    }


async def reconcile(customer_id: uuid.UUID | None, currency_code: str | None) -> Dict[str, Any]:
    policy = get_policy()
    async with SessionLocal() as session:
        if customer_id is not None:
            targets = [(customer_id, policy.currency(currency_code))]
        else:
            accounts = await balances.list_accounts(session, currency_code=currency_code)
            targets = [(account.customer_id, account.currency_code) for account in accounts]
        corrected = []
        for target_customer, target_currency in targets:
            outcome = await balances.reconcile_account(session, target_customer, target_currency)
            if outcome.corrected:
                corrected.append(
                    {
                        "customer_id": outcome.customer_id,
                        "currency_code": outcome.currency_code,
                        "cached_balance": outcome.cached_balance,
                        "ledger_balance": outcome.ledger_balance,
                    }
                )
    return {"checked": len(targets), "corrected": corrected}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cylinder deposit ledger operations")
    subparsers = parser.add_subparsers(dest="command")

    expire = subparsers.add_parser("expire-overdue", help="Run the empty return credit expiry sweep once")
    expire.add_argument("--today", help="Evaluate deadlines as of this date (YYYY-MM-DD)")

    lookup = subparsers.add_parser("lookup-rate", help="Show the deposit rate in force for a cylinder size")
    lookup.add_argument("--capacity", required=True, help="Cylinder capacity in litres")
    lookup.add_argument("--currency", help="ISO currency code (defaults to DEFAULT_CURRENCY)")
    lookup.add_argument("--as-of", help="Effective date (YYYY-MM-DD)")

    balance = subparsers.add_parser("balance", help="Show a customer's deposit balance")
    balance.add_argument("--customer", required=True, help="Customer UUID")
    balance.add_argument("--currency", help="ISO currency code (defaults to DEFAULT_CURRENCY)")

    recon = subparsers.add_parser("reconcile", help="Resync cached account balances with the transaction log")
    recon.add_argument("--customer", help="Customer UUID (default: every account)")
    recon.add_argument("--currency", help="ISO currency code")
    return parser


def _run_cli_command(args: argparse.Namespace) -> Dict[str, Any] | None:
    if args.command == "expire-overdue":
        return asyncio.run(expire_overdue(_parse_date(args.today)))
    if args.command == "lookup-rate":
        return asyncio.run(lookup_rate(_parse_decimal(args.capacity), args.currency, _parse_date(args.as_of)))
    if args.command == "balance":
        return asyncio.run(show_balance(_parse_uuid(args.customer), args.currency))
    if args.command == "reconcile":
        customer = _parse_uuid(args.customer) if args.customer else None
        return asyncio.run(reconcile(customer, args.currency))
    return None


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        payload = _run_cli_command(args)
    except DepositError as exc:
        _emit({"error": exc.code, "detail": exc.detail})
        return 1
    if payload is None:
        parser.print_help()
        return 2
    _emit(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
