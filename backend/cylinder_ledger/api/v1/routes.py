from fastapi import APIRouter

from cylinder_ledger.api.v1 import credits, deposits
from cylinder_ledger.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(deposits.router)
api_router.include_router(credits.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
