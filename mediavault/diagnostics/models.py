from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    healthy = "healthy"
    warning = "warning"
    critical = "critical"


class CheckResult(BaseModel):
    name: str
    success: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class DiagnosticsSummary(BaseModel):
    total_tests: int
    passed_tests: int
    failed_tests: int
    overall_health: Severity
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class DiagnosticsReport(BaseModel):
    user_id: str
    blog_id: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    checks: List[CheckResult] = Field(default_factory=list)
    summary: DiagnosticsSummary

    def check(self, name: str) -> Optional[CheckResult]:
        return next((c for c in self.checks if c.name == name), None)


class TroubleshootingStep(BaseModel):
    step: int
    title: str
    description: str
    actions: List[str]
    priority: str  # "high" | "medium" | "low"


class TroubleshootingGuide(BaseModel):
    title: str = "Image Troubleshooting Guide"
    steps: List[TroubleshootingStep] = Field(default_factory=list)


class ClientFeatures(BaseModel):
    """Capabilities reported by the calling client."""
    fetch: bool = False
    promises: bool = False
    file_reader: bool = False
    canvas: bool = False
    service_worker: bool = False
    intersection_observer: bool = False


class DiagnosticsRequest(BaseModel):
    blog_id: Optional[str] = None
    client_features: Optional[ClientFeatures] = None
