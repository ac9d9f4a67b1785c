from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from mediavault.common.error_envelope import error_response
from mediavault.file_manager.models import AssetKind, DeleteResult, StoredAsset
from mediavault.file_manager.service import FileManagerService
from mediavault.identity.auth import get_auth_context
from mediavault.identity.jwt_service import AuthContext

router = APIRouter(prefix="/storage", tags=["storage"])

VALID_OPERATIONS = ["createFolder", "renameFile", "renameFolder", "moveFile", "moveFolder", "copyFile"]


class StorageOperationRequest(BaseModel):
    operation: str
    source_path: Optional[str] = None
    dest_path: Optional[str] = None
    new_name: Optional[str] = None


class DeleteRequest(BaseModel):
    path: str
    recursive: bool = False


def _require(value: Optional[str], field: str) -> str:
    if not value:
        error_response(
            code="storage.missing_field",
            message=f"{field} is required",
            status_code=400,
            resource_kind="storage_item",
            details={"field": field},
        )
    return value  # type: ignore[return-value]


@router.get("/items", response_model=List[StoredAsset])
async def list_items(
    path: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
):
    service = FileManagerService(auth.user_id)
    return await service.list(path)


@router.post("/operations")
async def storage_operation(
    payload: StorageOperationRequest,
    auth: AuthContext = Depends(get_auth_context),
):
    service = FileManagerService(auth.user_id)
    op = payload.operation
    if op == "createFolder":
        folder = await service.create_folder(_require(payload.dest_path, "dest_path"), _require(payload.new_name, "new_name"))
        return {"success": True, "operation": op, "result": folder.model_dump(mode="json")}
    if op in ("renameFile", "renameFolder"):
        kind = AssetKind.file if op == "renameFile" else AssetKind.folder
        result = await service.rename(_require(payload.source_path, "source_path"), _require(payload.new_name, "new_name"), kind=kind)
        return {"success": True, "operation": op, "result": result.model_dump()}
    if op in ("moveFile", "moveFolder"):
        kind = AssetKind.file if op == "moveFile" else AssetKind.folder
        result = await service.move(_require(payload.source_path, "source_path"), _require(payload.dest_path, "dest_path"), kind=kind)
        return {"success": True, "operation": op, "result": result.model_dump()}
    if op == "copyFile":
        copied = await service.copy_file(_require(payload.source_path, "source_path"), _require(payload.dest_path, "dest_path"))
        return {"success": True, "operation": op, "result": copied.model_dump(mode="json")}
    error_response(
        code="storage.invalid_operation",
        message=f"Invalid operation: {op}",
        status_code=400,
        resource_kind="storage_item",
        details={"valid_operations": VALID_OPERATIONS},
    )


@router.delete("/items", response_model=DeleteResult)
async def delete_item(
    payload: DeleteRequest,
    auth: AuthContext = Depends(get_auth_context),
):
    service = FileManagerService(auth.user_id)
    return await service.delete(payload.path, recursive=payload.recursive)


@router.get("/download-url")
async def download_url(
    path: str = Query(...),
    auth: AuthContext = Depends(get_auth_context),
):
    service = FileManagerService(auth.user_id)
    return {"path": path, "url": await service.get_download_url(path)}
