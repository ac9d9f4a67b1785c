import asyncio

import httpx
import pytest

from mediavault.content.models import Blog, ContentItem, Product, UserProfile
from mediavault.content.repository import InMemoryContentRepository
from mediavault.diagnostics.models import CheckResult, ClientFeatures, Severity
from mediavault.diagnostics.service import (
    CHECK_ORDER,
    DiagnosticsService,
    overall_health,
    summarize,
    troubleshooting_guide,
)
from mediavault.identity.jwt_service import JwtService
from mediavault.quota.service import QuotaService
from mediavault.storage.backends import InMemoryBlobStorage
from mediavault.storage.url_cache import DownloadUrlCache

ROOT = "users/u1/public_images"
FULL_FEATURES = ClientFeatures(fetch=True, promises=True, file_reader=True, canvas=True)


def _jwt():
    return JwtService(secret_provider=lambda: "diag-secret")


def _content():
    repo = InMemoryContentRepository()
    repo.add_blog(Blog(id="b1", owner_id="u1"))
    repo.add_content(ContentItem(id="c1", blog_id="b1", featured_image_url="https://cdn.example.com/ok.webp"))
    repo.add_product(Product(id="p1", blog_id="b1", image_urls=["https://cdn.example.com/missing.webp"]))
    return repo


def _http_client():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("missing.webp"):
            return httpx.Response(404)
        return httpx.Response(200)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _service(storage=None, content=None, url_cache=None, http_client=None):
    storage = storage or InMemoryBlobStorage()
    content = content or _content()
    return DiagnosticsService(
        storage=storage,
        content=content,
        quota=QuotaService(storage, content),
        url_cache=url_cache or DownloadUrlCache(),
        jwt_service=_jwt(),
        http_client=http_client,
    )


def _run(service, **kwargs):
    async def run():
        return await service.run_full_diagnostics("u1", **kwargs)

    return asyncio.run(run())


def test_runs_every_check_in_order():
    token = _jwt().issue_token({"sub": "u1"})
    storage = InMemoryBlobStorage()
    report = _run(
        _service(storage=storage, http_client=_http_client()),
        blog_id="b1",
        token=token,
        client_features=FULL_FEATURES,
    )
    assert [c.name for c in report.checks] == CHECK_ORDER
    by_name = {c.name: c for c in report.checks}
    assert by_name["authentication"].success
    assert by_name["storage_access"].success
    assert by_name["upload_pipeline"].success
    assert by_name["data_association"].details["total_images"] == 2
    assert by_name["url_accessibility"].success is False
    assert "https://cdn.example.com/missing.webp" in by_name["url_accessibility"].issues[0]
    assert report.summary.failed_tests == 1
    assert report.summary.overall_health == Severity.warning
    # the pipeline check cleans up after itself
    assert storage.keys() == []


def test_missing_token_and_blog_fail_their_checks():
    report = _run(_service(), client_features=FULL_FEATURES)
    by_name = {c.name: c for c in report.checks}
    assert by_name["authentication"].success is False
    assert "User not authenticated" in by_name["authentication"].issues
    assert by_name["data_association"].success is False
    assert by_name["url_accessibility"].success is True


def test_token_for_another_user_fails_authentication():
    token = _jwt().issue_token({"sub": "u2"})
    report = _run(_service(), token=token)
    assert report.check("authentication").success is False


def test_raising_check_is_recorded_not_propagated():
    class BrokenContent(InMemoryContentRepository):
        def list_image_refs(self, user_id, blog_id):
            raise RuntimeError("registry down")

    report = _run(_service(content=BrokenContent()), blog_id="b1")
    association = report.check("data_association")
    assert association.success is False
    assert association.issues
    assert len(report.checks) == len(CHECK_ORDER)


def test_offline_cache_conflicts():
    now = [10_000.0]
    cache = DownloadUrlCache(clock=lambda: now[0])
    storage = InMemoryBlobStorage()
    asyncio.run(storage.put(f"{ROOT}/kept.webp", b"x", "image/webp"))
    cache.put(f"{ROOT}/kept.webp", "memory://kept")
    service = _service(storage=storage, url_cache=cache)

    now[0] += 7200
    stale = asyncio.run(service.check_offline_cache())
    assert stale.success is True
    assert stale.details["has_conflicts"] is True
    assert stale.details["conflicts"][0]["severity"] == "low"

    cache.put(f"{ROOT}/deleted.webp", "memory://deleted")
    broken = asyncio.run(service.check_offline_cache())
    assert broken.success is False
    assert {c["severity"] for c in broken.details["conflicts"]} == {"low", "high"}


def test_browser_compatibility():
    service = _service()
    ok = asyncio.run(service.check_browser_compatibility(FULL_FEATURES))
    assert ok.success is True
    assert set(ok.details["server_codecs"]) == {"webp", "jpeg", "png"}

    no_reader = asyncio.run(
        service.check_browser_compatibility(ClientFeatures(fetch=True, promises=True, file_reader=False))
    )
    assert no_reader.success is True
    assert no_reader.issues

    old = asyncio.run(service.check_browser_compatibility(ClientFeatures(fetch=False, promises=True)))
    assert old.success is False


def test_upload_pipeline_respects_quota():
    content = _content()
    storage = InMemoryBlobStorage()
    service = DiagnosticsService(
        storage=storage,
        content=content,
        quota=QuotaService(storage, content),
        url_cache=DownloadUrlCache(),
        jwt_service=_jwt(),
    )
    content.save_profile(UserProfile(user_id="u1", total_storage_mb=0))
    result = asyncio.run(service.check_upload_pipeline("u1"))
    assert result.success is False
    assert "Storage quota exceeded" in result.issues
    assert storage.keys() == []


@pytest.mark.parametrize("failed,expected", [(0, Severity.healthy), (1, Severity.warning), (2, Severity.warning), (3, Severity.critical)])
def test_overall_health(failed, expected):
    assert overall_health(failed) == expected


def test_summary_deduplicates_issues():
    checks = [
        CheckResult(name="a", success=False, issues=["x"], recommendations=["r"]),
        CheckResult(name="b", success=False, issues=["x", "y"], recommendations=["r"]),
        CheckResult(name="c", success=True),
    ]
    summary = summarize(checks)
    assert (summary.total_tests, summary.passed_tests, summary.failed_tests) == (3, 1, 2)
    assert summary.issues == ["x", "y"]
    assert summary.recommendations == ["r"]


def test_guide_orders_steps_by_failed_area():
    report = _run(_service(), client_features=FULL_FEATURES)
    guide = troubleshooting_guide(report)
    titles = [s.title for s in guide.steps]
    assert titles == ["Fix Authentication Issues", "Fix Data Association"]
    assert [s.step for s in guide.steps] == [1, 2]
    assert guide.steps[0].priority == "high"


def test_guide_without_failures_is_general():
    token = _jwt().issue_token({"sub": "u1"})
    content = InMemoryContentRepository()
    content.add_blog(Blog(id="b1", owner_id="u1"))
    content.add_content(ContentItem(id="c1", blog_id="b1", featured_image_url="https://cdn.example.com/ok.webp"))
    report = _run(
        _service(content=content, http_client=_http_client()),
        blog_id="b1",
        token=token,
        client_features=FULL_FEATURES,
    )
    assert report.summary.overall_health == Severity.healthy
    guide = troubleshooting_guide(report)
    assert [s.title for s in guide.steps] == ["General Troubleshooting"]
