from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from sales_ledger.models_sqlalchemy import get_db
from sales_ledger.services import analytics
from sales_ledger.services.auth import get_current_user_id
from sales_ledger.services.credential_provider import CredentialProvider
from sales_ledger.services.errors import CredentialProviderUnavailable
from sales_ledger.services.ledger_store import LedgerStore
from sales_ledger.services.sync_orchestrator import SyncOrchestrator
from sales_ledger.utils.logger import logger

router = APIRouter(prefix="/sales", tags=["sales"])

# Shared so every request for a user goes through the same per-user write lock.
_ledger = LedgerStore()


def get_ledger() -> LedgerStore:
    return _ledger


def get_credential_provider() -> CredentialProvider:
    return CredentialProvider()


def get_orchestrator(
    provider: CredentialProvider = Depends(get_credential_provider),
    ledger: LedgerStore = Depends(get_ledger),
) -> SyncOrchestrator:
    return SyncOrchestrator(provider, ledger)


class SyncRequest(BaseModel):
    days_back: int = Field(30, ge=1, le=365)
    deadline_seconds: Optional[float] = Field(None, gt=0)


@router.get("")
async def get_sales(
    platform: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    days_back: Optional[int] = Query(None, ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return analytics.list_sales(
        db, user_id, platform=platform, status=status_filter, days_back=days_back, page=page, limit=limit
    )


@router.get("/stats")
async def get_sales_stats(
    platform: Optional[str] = None,
    days_back: int = Query(30, ge=1),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return analytics.sales_stats(db, user_id, platform=platform, days_back=days_back)


@router.get("/analytics")
async def get_analytics(
    platform: Optional[str] = None,
    days_back: Optional[str] = Query("30", description="Number of days, or 'all'"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return analytics.analytics_report(db, user_id, platform=platform, days_back=_parse_days_back(days_back))


@router.get("/customers")
async def get_customers(
    platform: Optional[str] = None,
    days_back: Optional[str] = Query("all", description="Number of days, or 'all'"),
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return analytics.customer_report(
        db, user_id, platform=platform, days_back=_parse_days_back(days_back), limit=limit
    )


@router.post("/sync")
async def sync_sales(
    request: SyncRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    logger.info(f"Manual sync requested by user {user_id} for {request.days_back} days")
    try:
        return await orchestrator.run_sync(
            user_id, request.days_back, deadline_seconds=request.deadline_seconds
        )
    except CredentialProviderUnavailable as exc:
        logger.error(f"Sync for user {user_id} aborted: {exc}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.get("/sync-history")
async def get_sync_history(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    ledger: LedgerStore = Depends(get_ledger),
):
    return {"runs": [run.to_dict() for run in ledger.list_sync_runs(user_id, limit=limit)]}


def _parse_days_back(value: Optional[str]) -> Optional[int]:
    if value is None or value == analytics.ALL:
        return None
    try:
        days = int(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="days_back must be a number or 'all'")
    if days < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="days_back must be positive")
    return days
