"""
Performance Gate.

After a deployment goes live the gate audits the page, compares it with the
site's baseline, and either keeps the deployment or rolls it back (including
the pull request when its coordinates are known). The decision itself is an
outcome, not an exception.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .audit import AuditError
from .config import GateThresholds
from .github_client import GitHubError, GitHubPublisher, GitHubTokenProvider, PullRequestRef
from .models import DeploymentStatusEnum, OpportunityStatusEnum
from .repository import GrowthStore, InvalidTransitionError
from .schemas import AuditReport, BaselineScores


logger = logging.getLogger(__name__)


class Auditor(Protocol):
    async def audit(self, url: str) -> AuditReport: ...


@dataclass
class GateResult:
    passed: bool
    delta: float
    reasons: List[str] = field(default_factory=list)


def evaluate_gate(
    report: AuditReport, baseline: BaselineScores, thresholds: GateThresholds
) -> GateResult:
    """
    Apply the regression rules; every violated rule contributes a reason.

    Comparisons are strict. A relative check against a baseline value of zero
    or less cannot be evaluated and is skipped.
    """
    reasons: List[str] = []
    delta = report.performance - baseline.performance

    if report.performance < thresholds.minimum_performance:
        reasons.append(
            f"Performance score {report.performance:.2f} below minimum threshold "
            f"{thresholds.minimum_performance}"
        )
    if delta < -thresholds.maximum_drop:
        reasons.append(f"Performance score dropped by {abs(delta) * 100:.1f}%")

    if report.cls > thresholds.maximum_cls:
        reasons.append(f"CLS score {report.cls:.3f} exceeds maximum {thresholds.maximum_cls}")
    if baseline.cls > 0 and report.cls > baseline.cls * thresholds.cls_relative_increase:
        reasons.append(f"CLS increased by {(report.cls / baseline.cls - 1) * 100:.1f}%")

    if report.lcp > thresholds.maximum_lcp:
        reasons.append(f"LCP {report.lcp:.0f}ms exceeds maximum {thresholds.maximum_lcp:.0f}ms")
    if baseline.lcp > 0 and report.lcp > baseline.lcp * thresholds.lcp_relative_increase:
        reasons.append(f"LCP increased by {(report.lcp / baseline.lcp - 1) * 100:.1f}%")

    return GateResult(passed=not reasons, delta=delta, reasons=reasons)


@dataclass
class GateOutcome:
    deployment_id: int
    status: str
    passed: bool
    message: str
    baseline: BaselineScores
    threshold: float
    report: Optional[AuditReport] = None
    delta: Optional[float] = None
    reasons: List[str] = field(default_factory=list)
    revert_pr: Optional[PullRequestRef] = None
    rollback_error: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        report = self.report
        return {
            "success": self.passed,
            "message": self.message,
            "performance": {
                "currentScore": report.performance if report else None,
                "previousScore": self.baseline.performance,
                "delta": self.delta,
                "threshold": self.threshold,
                "reasons": list(self.reasons),
                "lighthouse": report.categories if report else None,
                "vitals": report.vitals if report else None,
            },
        }


class DeploymentGate:
    def __init__(
        self,
        store: GrowthStore,
        auditor: Auditor,
        publisher: GitHubPublisher,
        token_provider: GitHubTokenProvider,
        *,
        thresholds: Optional[GateThresholds] = None,
        audit_timeout: float = 180.0,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.auditor = auditor
        self.publisher = publisher
        self.token_provider = token_provider
        self.thresholds = thresholds or GateThresholds()
        self.audit_timeout = audit_timeout
        self.log = log or logger

    async def run(
        self,
        deployment_id: int,
        site_url: str,
        *,
        pr_number: Optional[int] = None,
        repository: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> GateOutcome:
        deployment = self.store.get_deployment(deployment_id)
        if deployment.status != DeploymentStatusEnum.PR_CREATED:
            raise InvalidTransitionError(
                f"Deployment {deployment_id} is {deployment.status}, not awaiting the gate"
            )

        baseline = self.store.get_baseline_scores(deployment.site_id)
        threshold = self.thresholds.minimum_performance

        try:
            report = await asyncio.wait_for(self.auditor.audit(site_url), self.audit_timeout)
        except (asyncio.TimeoutError, AuditError) as exc:
            self.log.exception("Audit failed for deployment %s (%s)", deployment_id, site_url)
            self.store.complete_deployment(
                deployment_id,
                status=DeploymentStatusEnum.FAILED,
                opportunity_status=OpportunityStatusEnum.FAILED,
                before_score=baseline.performance,
            )
            return GateOutcome(
                deployment_id=deployment_id,
                status=DeploymentStatusEnum.FAILED,
                passed=False,
                message=f"Performance audit failed: {str(exc) or 'timed out'}",
                baseline=baseline,
                threshold=threshold,
            )

        result = evaluate_gate(report, baseline, self.thresholds)

        if result.passed:
            self.store.complete_deployment(
                deployment_id,
                status=DeploymentStatusEnum.DEPLOYED,
                opportunity_status=OpportunityStatusEnum.DEPLOYED,
                before_score=baseline.performance,
                after_score=report.performance,
                performance_delta=result.delta,
            )
            self.log.info(
                "Gate passed for deployment %s: performance %.2f (delta %+.3f)",
                deployment_id,
                report.performance,
                result.delta,
            )
            return GateOutcome(
                deployment_id=deployment_id,
                status=DeploymentStatusEnum.DEPLOYED,
                passed=True,
                message="Deployment successful, performance checks passed",
                baseline=baseline,
                threshold=threshold,
                report=report,
                delta=result.delta,
            )

        self.store.complete_deployment(
            deployment_id,
            status=DeploymentStatusEnum.ROLLED_BACK,
            opportunity_status=OpportunityStatusEnum.ROLLED_BACK,
            before_score=baseline.performance,
            after_score=report.performance,
            performance_delta=result.delta,
        )
        self.log.warning(
            "Gate failed for deployment %s: %s", deployment_id, "; ".join(result.reasons)
        )
        outcome = GateOutcome(
            deployment_id=deployment_id,
            status=DeploymentStatusEnum.ROLLED_BACK,
            passed=False,
            message="Performance regression detected, deployment rolled back",
            baseline=baseline,
            threshold=threshold,
            report=report,
            delta=result.delta,
            reasons=result.reasons,
        )

        site = deployment.site
        number = pr_number or deployment.pr_number
        repo = repository or (site.github_repo if site else None)
        repo_owner = owner or (site.github_owner if site else None)
        if not (number and repo and repo_owner):
            self.log.warning("No PR coordinates for deployment %s; skipping PR rollback", deployment_id)
            return outcome

        try:
            token = await self.token_provider.get_token(
                site.github_installation_id if site else None
            )
            outcome.revert_pr = await self.publisher.rollback_pull_request(
                repo_owner, repo, number, token
            )
        except GitHubError as exc:
            self.log.exception("PR rollback failed for deployment %s", deployment_id)
            outcome.rollback_error = str(exc)
        return outcome
