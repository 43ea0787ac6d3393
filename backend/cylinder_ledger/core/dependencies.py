from uuid import UUID

from fastapi import Header, HTTPException, status

from cylinder_ledger.services.policy import DepositPolicy, get_policy


def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> UUID | None:
    """Optional acting user; authentication happens upstream of this service."""
    if not x_actor_id:
        return None
    try:
        return UUID(x_actor_id.strip())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Actor-Id header")


def get_deposit_policy() -> DepositPolicy:
    return get_policy()
