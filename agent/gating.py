# Folder: ci-triage/agent/gating.py
#
# Decides how much to trust a finding before it becomes an issue.
#
# Deterministic evidence or a verified model file/line claim → validated,
# confidence threshold bypassed. Everything else is held to the minimum
# confidence; below it the issue is still created, labeled as triage.

import logging
from typing import List, Optional

from agent.verification import VerificationEngine
from ingestion.event_schema import (
    DEPENDENCY_VULNERABILITY, HARD_CODED_SECRET, AnalysisResult, EvidenceBundle,
    GatingDecision,
)

logger = logging.getLogger(__name__)


def _dedupe(labels: List[str]) -> List[str]:
    out = []
    for label in labels:
        if label not in out:
            out.append(label)
    return out


class Gate:

    def __init__(self, verifier: VerificationEngine, min_confidence: float):
        self.verifier = verifier
        self.min_confidence = min_confidence

    def decide(self, analysis: AnalysisResult, evidence: Optional[EvidenceBundle],
               project_id: str, commit_sha: str) -> GatingDecision:
        deterministic = bool(evidence and evidence.has_deterministic_finding)

        # ── Model claims are only trusted once re-read at the commit ──────
        ai_verified = False
        reason = None
        if analysis.file and not analysis.deterministic:
            result = self.verifier.verify(
                project_id, analysis.file, analysis.line, analysis.match, commit_sha
            )
            ai_verified = result.verified
            reason = result.reason
            logger.info(
                f"Model claim {analysis.file}:{analysis.line or '?'} "
                f"{'verified' if ai_verified else 'NOT verified'} ({result.reason})"
            )

        confident = analysis.confidence >= self.min_confidence
        labels = ["ai:analysis"]

        root = analysis.root_cause.lower()
        if analysis.root_cause == HARD_CODED_SECRET or "secret" in root or "api key" in root:
            labels += ["ai:security", "severity:critical"]
        elif analysis.root_cause == DEPENDENCY_VULNERABILITY:
            labels += ["ai:dependency", "severity:medium"]

        if deterministic:
            labels += ["ai:validated", "ai:deterministic"]
        elif ai_verified:
            labels += ["ai:validated", "ai:claim-verified"]
        elif not confident:
            labels += ["ai:unverified", "ai:triage"]

        return GatingDecision(
            deterministic_verified=deterministic,
            ai_claim_verified=ai_verified,
            allow_auto_create=deterministic or ai_verified or confident,
            labels=_dedupe(labels),
            verification_reason=reason,
        )
