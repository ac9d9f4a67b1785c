"""Path confinement for per-user storage prefixes.

Every file-manager path is checked here before any backend call is made.
"""
from __future__ import annotations

from mediavault.common.errors import SecurityViolation


def sandbox_root(user_id: str) -> str:
    if not user_id or "/" in user_id or user_id in {".", ".."}:
        raise SecurityViolation("Invalid user id for storage access", details={"user_id": user_id})
    return f"users/{user_id}/public_images"


def ensure_within_sandbox(path: str, root: str) -> str:
    """Return the normalised path, or raise SecurityViolation."""
    if path is None:
        raise SecurityViolation("Path is required")
    if "\\" in path or "//" in path:
        raise SecurityViolation("Access denied: malformed path", details={"path": path})
    normalised = path.rstrip("/")
    if any(segment in {"..", "."} for segment in normalised.split("/")):
        raise SecurityViolation("Access denied: relative path segments", details={"path": path})
    if normalised != root and not normalised.startswith(root + "/"):
        raise SecurityViolation(
            "Access denied: path is outside your storage area",
            details={"path": path, "root": root},
        )
    return normalised


def is_root(path: str, root: str) -> bool:
    return path.rstrip("/") == root


def parent_of(path: str) -> str:
    return path.rsplit("/", 1)[0]


def leaf_of(path: str) -> str:
    return path.rsplit("/", 1)[-1]
