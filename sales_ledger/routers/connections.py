from fastapi import APIRouter, Depends, HTTPException, status

from sales_ledger.models_sqlalchemy.models import Platform
from sales_ledger.routers.sales import get_credential_provider
from sales_ledger.services.auth import get_current_user_id
from sales_ledger.services.credential_provider import CredentialProvider

router = APIRouter(prefix="/connections", tags=["connections"])


@router.get("")
async def get_connections(
    user_id: str = Depends(get_current_user_id),
    provider: CredentialProvider = Depends(get_credential_provider),
):
    connected = {c["platform"]: c for c in provider.connection_status(user_id)}
    return {
        "connections": [
            connected.get(p.value, {"platform": p.value, "connected": False}) for p in Platform
        ]
    }


@router.post("/{platform}/disconnect")
async def disconnect_platform(
    platform: Platform,
    user_id: str = Depends(get_current_user_id),
    provider: CredentialProvider = Depends(get_credential_provider),
):
    if not provider.disconnect(user_id, platform.value):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active {platform.value} connection",
        )
    return {"message": f"{platform.value} disconnected successfully"}
