from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header

from mediavault.diagnostics.models import DiagnosticsRequest
from mediavault.diagnostics.service import get_diagnostics_service, troubleshooting_guide
from mediavault.identity.auth import bearer_token, get_auth_context
from mediavault.identity.jwt_service import AuthContext

router = APIRouter(prefix="/diagnostics", tags=["diagnostics"])


@router.post("/run")
async def run_diagnostics(
    payload: Optional[DiagnosticsRequest] = Body(default=None),
    authorization: Optional[str] = Header(default=None),
    auth: AuthContext = Depends(get_auth_context),
):
    request = payload or DiagnosticsRequest()
    report = await get_diagnostics_service().run_full_diagnostics(
        auth.user_id,
        blog_id=request.blog_id,
        token=bearer_token(authorization),
        client_features=request.client_features,
    )
    return {
        "report": report.model_dump(mode="json"),
        "guide": troubleshooting_guide(report).model_dump(),
    }
