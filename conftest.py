import os
import sys
from pathlib import Path

import pytest

# Ensure repo root on sys.path for imports from anywhere in tests tree.
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("ENV", "test")
os.environ.setdefault("AUTH_JWT_SIGNING", "test-signing-secret")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("CONTENT_BACKEND", "memory")

from mediavault.compression.service import set_compression_service  # noqa: E402
from mediavault.content.service import set_content_repo  # noqa: E402
from mediavault.diagnostics.service import set_diagnostics_service  # noqa: E402
from mediavault.quota.service import set_quota_service  # noqa: E402
from mediavault.storage.service import set_blob_storage, set_url_cache  # noqa: E402
from mediavault.uploads.service import set_upload_registry  # noqa: E402


def _reset_defaults() -> None:
    set_blob_storage(None)
    set_url_cache(None)
    set_content_repo(None)
    set_quota_service(None)
    set_compression_service(None)
    set_upload_registry(None)
    set_diagnostics_service(None)


@pytest.fixture(autouse=True)
def fresh_services():
    _reset_defaults()
    yield
    _reset_defaults()
