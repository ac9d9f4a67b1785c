"""On-demand diagnostics for the image pipeline.

Seven independent checks run in a fixed order. A check that raises is
recorded as failed; the battery always completes. Only the upload pipeline
check writes to storage, and it removes its own test object.
"""
from __future__ import annotations

import asyncio
import io
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from PIL import Image, features

from mediavault.common.errors import ObjectNotFound, present
from mediavault.config import runtime_config
from mediavault.content.repository import ContentRepository
from mediavault.content.service import get_content_repo
from mediavault.diagnostics.models import (
    CheckResult,
    ClientFeatures,
    DiagnosticsReport,
    DiagnosticsSummary,
    Severity,
    TroubleshootingGuide,
    TroubleshootingStep,
)
from mediavault.file_manager.sandbox import sandbox_root
from mediavault.identity.jwt_service import JwtService, verify_token
from mediavault.quota.service import QuotaService, get_quota_service
from mediavault.storage.backends import BlobStorage
from mediavault.storage.service import get_blob_storage, get_url_cache
from mediavault.storage.url_cache import DownloadUrlCache

logger = logging.getLogger(__name__)

CHECK_ORDER = [
    "authentication",
    "storage_access",
    "upload_pipeline",
    "data_association",
    "url_accessibility",
    "offline_cache",
    "browser_compatibility",
]

# output format -> Pillow feature name
CODEC_FEATURES = {"webp": "webp", "jpeg": "jpg", "png": "zlib"}


def overall_health(failed: int) -> Severity:
    if failed == 0:
        return Severity.healthy
    if failed <= 2:
        return Severity.warning
    return Severity.critical


def _dedupe(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def summarize(checks: List[CheckResult]) -> DiagnosticsSummary:
    passed = sum(1 for c in checks if c.success)
    failed = len(checks) - passed
    return DiagnosticsSummary(
        total_tests=len(checks),
        passed_tests=passed,
        failed_tests=failed,
        overall_health=overall_health(failed),
        issues=_dedupe([issue for c in checks for issue in c.issues]),
        recommendations=_dedupe([rec for c in checks for rec in c.recommendations]),
    )


def _test_png() -> bytes:
    img = Image.new("RGB", (100, 100), (0, 122, 255))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


class DiagnosticsService:
    def __init__(
        self,
        storage: Optional[BlobStorage] = None,
        content: Optional[ContentRepository] = None,
        quota: Optional[QuotaService] = None,
        url_cache: Optional[DownloadUrlCache] = None,
        jwt_service: Optional[JwtService] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._storage = storage
        self._content = content
        self._quota = quota
        self._url_cache = url_cache
        self._jwt_service = jwt_service
        self._http_client = http_client

    @property
    def storage(self) -> BlobStorage:
        return self._storage or get_blob_storage()

    @property
    def content(self) -> ContentRepository:
        return self._content or get_content_repo()

    @property
    def quota(self) -> QuotaService:
        return self._quota or get_quota_service()

    @property
    def url_cache(self) -> DownloadUrlCache:
        return self._url_cache or get_url_cache()

    async def run_full_diagnostics(
        self,
        user_id: str,
        blog_id: Optional[str] = None,
        token: Optional[str] = None,
        client_features: Optional[ClientFeatures] = None,
    ) -> DiagnosticsReport:
        logger.info(f"Running diagnostics for {user_id} (blog={blog_id})")
        collected_urls: List[str] = []
        runners: Dict[str, Callable[[], Awaitable[CheckResult]]] = {
            "authentication": lambda: self.check_authentication(user_id, token),
            "storage_access": lambda: self.check_storage_access(user_id),
            "upload_pipeline": lambda: self.check_upload_pipeline(user_id),
            "data_association": lambda: self.check_data_association(user_id, blog_id, collected_urls),
            "url_accessibility": lambda: self.check_url_accessibility(collected_urls),
            "offline_cache": lambda: self.check_offline_cache(),
            "browser_compatibility": lambda: self.check_browser_compatibility(client_features),
        }
        checks: List[CheckResult] = []
        for name in CHECK_ORDER:
            try:
                result = await runners[name]()
            except Exception as exc:
                logger.warning(f"Diagnostic check {name} raised: {exc}")
                shown = present(exc)
                result = CheckResult(
                    name=name,
                    success=False,
                    details={"error": shown.technical or shown.message},
                    issues=[f"{name} check failed: {shown.message}"],
                )
            checks.append(result)
        summary = summarize(checks)
        logger.info(
            f"Diagnostics for {user_id}: {summary.passed_tests}/{summary.total_tests} passed "
            f"({summary.overall_health.value})"
        )
        return DiagnosticsReport(user_id=user_id, blog_id=blog_id, checks=checks, summary=summary)

    async def check_authentication(self, user_id: str, token: Optional[str]) -> CheckResult:
        result = CheckResult(name="authentication")
        if not token:
            result.issues.append("User not authenticated")
            result.recommendations.append("Sign in before uploading images")
            return result
        verified = verify_token(token, self._jwt_service)
        result.details["user_id"] = verified
        if verified != user_id:
            result.issues.append("Token belongs to a different user")
            result.recommendations.append("Log out and log back in")
            return result
        result.success = True
        return result

    async def check_storage_access(self, user_id: str) -> CheckResult:
        result = CheckResult(name="storage_access")
        prefixes = {
            "public_images": sandbox_root(user_id),
            "private": f"users/{user_id}/private",
            "images": f"users/{user_id}/images",
        }
        for label, prefix in prefixes.items():
            try:
                listing = await self.storage.list(prefix)
                result.details[label] = {
                    "accessible": True,
                    "items": len(listing.files) + len(listing.folders),
                }
            except Exception as exc:
                result.details[label] = {"accessible": False, "error": str(exc)}
                result.issues.append(f"Cannot access {label} storage")
        result.success = any(entry["accessible"] for entry in result.details.values())
        if not result.success:
            result.recommendations.append("Check storage permissions for your account")
        return result

    async def check_upload_pipeline(self, user_id: str) -> CheckResult:
        result = CheckResult(name="upload_pipeline")
        data = _test_png()
        limit_bytes = await self.quota.resolve_limit_bytes(user_id)
        decision = await self.quota.can_upload(user_id, len(data), limit_bytes)
        result.details["quota_check"] = decision.allowed
        if not decision.allowed:
            result.issues.append("Storage quota exceeded")
            result.recommendations.append("Free up storage or ask an administrator for a larger limit")
            return result
        path = f"{sandbox_root(user_id)}/debug-test-{int(time.time() * 1000)}.png"
        result.details["test_path"] = path
        written = False
        try:
            await self.storage.put(path, data, "image/png", {"purpose": "diagnostics"})
            written = True
            result.details["upload"] = True
            meta = await self.storage.get_metadata(path)
            result.details["metadata_size"] = meta.size
            result.details["download_url"] = await self.storage.get_download_url(path)
            result.success = True
        except Exception as exc:
            result.issues.append(f"Upload pipeline failed: {present(exc).message}")
            result.recommendations.append("Retry the upload and contact support if it keeps failing")
        finally:
            if written:
                try:
                    await self.storage.delete(path)
                    result.details["cleanup"] = True
                except Exception as exc:
                    logger.warning(f"Could not remove diagnostics object {path}: {exc}")
                    result.details["cleanup"] = False
        return result

    async def check_data_association(self, user_id: str, blog_id: Optional[str], collected: List[str]) -> CheckResult:
        result = CheckResult(name="data_association")
        if not blog_id:
            result.issues.append("No blog selected")
            result.recommendations.append("Select a blog to check its images")
            return result
        refs = await asyncio.to_thread(self.content.list_image_refs, user_id, blog_id)
        content_images = [r for r in refs if r.source == "content"]
        product_images = [r for r in refs if r.source == "product"]
        result.details.update(
            {
                "content_images": len(content_images),
                "product_images": len(product_images),
                "total_images": len(refs),
            }
        )
        collected.extend(r.url for r in refs)
        if not refs:
            result.issues.append("No images found in content or products")
            result.recommendations.append("Add a featured image or product image to test display")
        result.success = True
        return result

    async def _probe(self, client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
        try:
            response = await client.head(url, follow_redirects=False)
        except httpx.HTTPError as exc:
            return {"url": url, "accessible": False, "error": str(exc)}
        return {"url": url, "accessible": 200 <= response.status_code < 400, "status": response.status_code}

    async def check_url_accessibility(self, urls: List[str]) -> CheckResult:
        result = CheckResult(name="url_accessibility")
        http_urls = [u for u in _dedupe(urls) if u.startswith(("http://", "https://"))]
        skipped = len(_dedupe(urls)) - len(http_urls)
        if skipped:
            result.details["skipped"] = skipped
        if not http_urls:
            result.details["tested"] = 0
            result.success = True
            return result
        client = self._http_client or httpx.AsyncClient(timeout=runtime_config.get_diagnostics_url_timeout())
        try:
            probes = [await self._probe(client, url) for url in http_urls]
        finally:
            if self._http_client is None:
                await client.aclose()
        failures = [p for p in probes if not p["accessible"]]
        result.details.update({"tested": len(probes), "accessible": len(probes) - len(failures), "probes": probes})
        for probe in failures:
            result.issues.append(f"Image URL not accessible: {probe['url']}")
        if failures:
            result.recommendations.append("Check that stored images allow public read access")
        result.success = not failures
        return result

    async def check_offline_cache(self) -> CheckResult:
        result = CheckResult(name="offline_cache")
        ttl = runtime_config.get_url_cache_ttl_seconds()
        conflicts: List[Dict[str, Any]] = []
        entries = self.url_cache.entries()
        for entry in entries:
            try:
                await self.storage.get_metadata(entry.path)
            except ObjectNotFound:
                conflicts.append({"path": entry.path, "severity": "high", "reason": "object no longer exists"})
                continue
            if self.url_cache.age(entry) > ttl:
                conflicts.append({"path": entry.path, "severity": "low", "reason": "cached URL is stale"})
        high = [c for c in conflicts if c["severity"] == "high"]
        result.details.update({"cached_urls": len(entries), "has_conflicts": bool(conflicts), "conflicts": conflicts})
        if high:
            result.issues.append(f"{len(high)} cached image URL(s) point to deleted files")
            result.recommendations.append("Clear the image cache and reload")
        elif conflicts:
            result.recommendations.append("Refresh stale image links")
        result.success = not high
        return result

    async def check_browser_compatibility(self, client_features: Optional[ClientFeatures]) -> CheckResult:
        result = CheckResult(name="browser_compatibility")
        if client_features is None:
            result.details["client_reported"] = False
            result.issues.append("Client did not report its features")
        else:
            result.details["client"] = client_features.model_dump()
            if not client_features.fetch or not client_features.promises:
                result.issues.append("Browser is missing required features (fetch, promises)")
                result.recommendations.append("Update to a modern browser version")
            if not client_features.file_reader:
                result.issues.append("FileReader is not supported; image previews are unavailable")
        codecs = {fmt: bool(features.check(name)) for fmt, name in CODEC_FEATURES.items()}
        result.details["server_codecs"] = codecs
        missing = [fmt for fmt, ok in codecs.items() if not ok]
        for fmt in missing:
            result.issues.append(f"Server image library lacks {fmt} support")
        if missing:
            result.recommendations.append("Install Pillow with webp, jpeg and zlib support")
        client_ok = client_features is None or (client_features.fetch and client_features.promises)
        result.success = bool(client_ok) and not missing
        return result


def troubleshooting_guide(report: DiagnosticsReport) -> TroubleshootingGuide:
    guide = TroubleshootingGuide()

    def failed(name: str) -> bool:
        check = report.check(name)
        return check is None or not check.success

    def add(title: str, description: str, actions: List[str], priority: str) -> None:
        guide.steps.append(
            TroubleshootingStep(
                step=len(guide.steps) + 1,
                title=title,
                description=description,
                actions=actions,
                priority=priority,
            )
        )

    if failed("authentication"):
        add(
            "Fix Authentication Issues",
            "Resolve user authentication problems",
            ["Log out and log back in", "Check for expired sessions", "Verify the token signing configuration"],
            "high",
        )
    if failed("storage_access"):
        add(
            "Fix Storage Access",
            "Resolve storage permission issues",
            [
                "Check storage access rules",
                "Verify the user can write to their storage path",
                "Test storage access from the storage console",
            ],
            "high",
        )
    if failed("upload_pipeline"):
        add(
            "Fix Upload Pipeline",
            "Resolve failures while writing or verifying uploads",
            ["Check the storage quota", "Retry the upload", "Check server logs for storage errors"],
            "high",
        )
    association = report.check("data_association")
    if failed("data_association") or (association and association.details.get("total_images") == 0):
        add(
            "Fix Data Association",
            "Ensure images are properly saved to content/products",
            [
                "Check if images are being saved to database records",
                "Verify content/product update functions",
                "Test creating new content with images",
            ],
            "high",
        )
    if failed("url_accessibility"):
        add(
            "Fix URL Accessibility",
            "Resolve image URL generation and access issues",
            [
                "Check storage rules for public read access",
                "Verify image URLs are being generated correctly",
                "Test image URLs directly in browser",
            ],
            "medium",
        )
    cache = report.check("offline_cache")
    if cache and cache.details.get("has_conflicts"):
        add(
            "Resolve Cache Conflicts",
            "Fix offline caching interference",
            ["Clear browser cache and reload", "Temporarily disable service worker", "Check service worker image handling logic"],
            "low",
        )
    if failed("browser_compatibility"):
        add(
            "Fix Browser Compatibility",
            "Resolve browser feature support issues",
            ["Update to a modern browser version", "Add polyfills for missing features", "Test in different browsers"],
            "medium",
        )
    if not guide.steps:
        add(
            "General Troubleshooting",
            "All tests passed - try these general solutions",
            [
                "Hard refresh the page (Ctrl+F5 or Cmd+Shift+R)",
                "Clear browser cache and cookies",
                "Try in an incognito/private window",
                "Check browser console for JavaScript errors",
            ],
            "low",
        )
    return guide


_default_service: Optional[DiagnosticsService] = None


def get_diagnostics_service() -> DiagnosticsService:
    global _default_service
    if _default_service is None:
        _default_service = DiagnosticsService()
    return _default_service


def set_diagnostics_service(service: Optional[DiagnosticsService]) -> None:
    """Override the default service (useful for tests)."""
    global _default_service
    _default_service = service
