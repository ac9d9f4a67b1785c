from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel

from mediavault.compression.models import SourceImage
from mediavault.identity.auth import get_auth_context
from mediavault.identity.jwt_service import AuthContext
from mediavault.uploads.models import UploadSnapshot
from mediavault.uploads.service import get_upload_registry

router = APIRouter(prefix="/uploads", tags=["uploads"])


class SettingsPatch(BaseModel):
    quality: Optional[int] = None
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    output_format: Optional[str] = None
    file_name: Optional[str] = None


@router.post("", response_model=UploadSnapshot)
async def start_upload(
    file: UploadFile = File(...),
    current_path: Optional[str] = Form(None),
    auth: AuthContext = Depends(get_auth_context),
):
    """Select a source image and return the session with its preview."""
    registry = get_upload_registry()
    session = registry.create(auth.user_id)
    source = SourceImage(
        name=file.filename or "image",
        content_type=file.content_type or "application/octet-stream",
        data=await file.read(),
    )
    try:
        await session.select_file(source, current_path=current_path)
    except Exception:
        registry.discard(session.id)
        raise
    return session.snapshot()


@router.get("/{session_id}", response_model=UploadSnapshot)
async def get_upload(session_id: str, auth: AuthContext = Depends(get_auth_context)):
    return get_upload_registry().get(session_id, auth.user_id).snapshot()


@router.patch("/{session_id}/settings", response_model=UploadSnapshot)
async def update_upload_settings(
    session_id: str,
    payload: SettingsPatch,
    auth: AuthContext = Depends(get_auth_context),
):
    session = get_upload_registry().get(session_id, auth.user_id)
    changes = payload.model_dump(exclude_none=True)
    file_name = changes.pop("file_name", None)
    if file_name is not None:
        session.rename_target(file_name)
    if changes:
        await session.update_settings(**changes)
    return session.snapshot()


@router.post("/{session_id}/commit", response_model=UploadSnapshot)
async def commit_upload(session_id: str, auth: AuthContext = Depends(get_auth_context)):
    session = get_upload_registry().get(session_id, auth.user_id)
    await session.commit()
    return session.snapshot()


@router.post("/{session_id}/confirm", response_model=UploadSnapshot)
async def confirm_upload(session_id: str, auth: AuthContext = Depends(get_auth_context)):
    session = get_upload_registry().get(session_id, auth.user_id)
    await session.confirm()
    return session.snapshot()


@router.post("/{session_id}/cancel", response_model=UploadSnapshot)
async def cancel_upload(session_id: str, auth: AuthContext = Depends(get_auth_context)):
    session = get_upload_registry().get(session_id, auth.user_id)
    session.cancel_confirmation()
    return session.snapshot()


@router.delete("/{session_id}")
async def discard_upload(session_id: str, auth: AuthContext = Depends(get_auth_context)):
    get_upload_registry().remove(session_id, auth.user_id)
    return {"id": session_id, "deleted": True}
