from __future__ import annotations

import re

from mediavault.common.errors import InvalidName

FOLDER_NAME_MAX = 50
FILE_NAME_MAX = 100

_FOLDER_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_FILE_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _check_common(name: str, label: str, max_len: int) -> str:
    trimmed = (name or "").strip()
    if not trimmed:
        raise InvalidName(f"{label} name is required")
    if len(trimmed) > max_len:
        raise InvalidName(f"{label} name must be {max_len} characters or less", details={"name": trimmed})
    if "/" in trimmed or "\\" in trimmed:
        raise InvalidName(f"{label} name cannot contain slashes", details={"name": trimmed})
    return trimmed


def validate_folder_name(name: str) -> str:
    trimmed = _check_common(name, "Folder", FOLDER_NAME_MAX)
    if trimmed.startswith(".") or trimmed.endswith("."):
        raise InvalidName("Folder name cannot start or end with a dot", details={"name": trimmed})
    if not _FOLDER_PATTERN.match(trimmed):
        raise InvalidName(
            "Folder name can only contain letters, numbers, hyphens, and underscores",
            details={"name": trimmed},
        )
    return trimmed


def validate_file_name(name: str) -> str:
    trimmed = _check_common(name, "File", FILE_NAME_MAX)
    if not _FILE_PATTERN.match(trimmed):
        raise InvalidName(
            "File name can only contain letters, numbers, dots, hyphens, and underscores",
            details={"name": trimmed},
        )
    return trimmed
