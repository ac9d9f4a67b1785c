from __future__ import annotations

from fastapi import APIRouter, Depends

from mediavault.identity.auth import get_auth_context
from mediavault.identity.jwt_service import AuthContext
from mediavault.quota.models import StorageStats
from mediavault.quota.service import get_quota_service

router = APIRouter(prefix="/storage", tags=["storage"])


@router.get("/stats", response_model=StorageStats)
async def storage_stats(auth: AuthContext = Depends(get_auth_context)):
    return await get_quota_service().storage_stats(auth.user_id)
