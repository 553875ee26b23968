# Folder: ci-triage/ingestion/event_schema.py
#
# These are the core data models used EVERYWHERE in the project.
# Every other file imports from here.
#
# Flow:
# webhook payload → TriageEvent → EvidenceBundle (+ AnalysisResult)
#                 → GatingDecision → IssueWrite → TriageOutcome

import math
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventKind(str, Enum):
    JOB = "job"
    PIPELINE = "pipeline"


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    MANUAL = "manual"
    RUNNING = "running"


class TriageStatus(str, Enum):
    IGNORED = "ignored"
    SKIPPED = "skipped"
    ISSUE_CREATED = "issue_created"          # deterministic finding, no model
    ISSUE_CREATED_AI = "issue_created_ai"    # model analysis
    FAILED = "failed"


# Root causes that are not model prose
HARD_CODED_SECRET = "HARD_CODED_SECRET"
DEPENDENCY_VULNERABILITY = "DEPENDENCY_VULNERABILITY"
AI_UNAVAILABLE = "AI_UNAVAILABLE"
INSUFFICIENT_EVIDENCE = "INSUFFICIENT_EVIDENCE"


class TriageEvent(BaseModel):
    """
    One normalized CI notification.

    Built at the boundary by ingestion.normalizer - nothing past that
    point ever looks at raw webhook payloads.
    """
    model_config = ConfigDict(frozen=True)

    kind: EventKind
    project_id: Optional[str] = None     # "owner/repo"
    pipeline_id: Optional[int] = None    # workflow run id
    job_id: Optional[int] = None         # workflow job id
    job_name: str = ""
    job_stage: str = ""                  # workflow name
    status: JobStatus
    commit_sha: str = ""
    web_url: Optional[str] = None

    def for_job(self, job: "JobSummary") -> "TriageEvent":
        """Child job event for a job listed under this pipeline"""
        return TriageEvent(
            kind=EventKind.JOB,
            project_id=self.project_id,
            pipeline_id=self.pipeline_id,
            job_id=job.id,
            job_name=job.name,
            job_stage=job.stage or self.job_stage,
            status=job.status,
            commit_sha=job.commit_sha or self.commit_sha,
            web_url=job.web_url,
        )


class JobSummary(BaseModel):
    """A job as listed by the code host for one pipeline"""
    id: int
    name: str
    stage: str = ""
    status: JobStatus
    commit_sha: str = ""
    web_url: Optional[str] = None


class RepoHit(BaseModel):
    """One secret-pattern match inside a file fetched at the job commit"""
    file: str
    line: Optional[int] = None
    match: str
    pattern: str                         # e.g. "aws_access_key"
    context: str = ""
    verified: bool = False
    reason: str = ""

    def masked_match(self) -> str:
        """The match with everything but a short prefix hidden"""
        return self.match[:4] + "*" * min(12, max(0, len(self.match) - 4))


class DependencyFinding(BaseModel):
    """
    Heuristic staleness finding.
    A major version mismatch is NOT a CVE and must never be labeled one.
    """
    package: str
    installed_version: Optional[str] = None
    latest_version: Optional[str] = None
    severity: str                        # "medium", "low" or "unknown"
    reason: Optional[str] = None
    ecosystem: str = "npm"


class EvidenceMetadata(BaseModel):
    project_id: Optional[str] = None
    commit_sha: str = ""
    files_attempted: List[str] = Field(default_factory=list)
    files_fetched: List[str] = Field(default_factory=list)
    fetch_failures: List[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=datetime.now)


class EvidenceBundle(BaseModel):
    """
    Deterministic findings, collected without any model involvement.
    An empty bundle with error set means collection degraded.
    """
    repo_hits: List[RepoHit] = Field(default_factory=list)
    dependency_high: List[DependencyFinding] = Field(default_factory=list)
    dependency_other: List[DependencyFinding] = Field(default_factory=list)
    metadata: EvidenceMetadata = Field(default_factory=EvidenceMetadata)
    error: Optional[str] = None

    @property
    def verified_hits(self) -> List[RepoHit]:
        return [h for h in self.repo_hits if h.verified]

    @property
    def has_deterministic_finding(self) -> bool:
        return bool(self.verified_hits or self.dependency_high)


class AnalysisResult(BaseModel):
    """
    Normalized root-cause analysis, from the model or from deterministic evidence.
    Confidence is always clamped into [0, 1].
    """
    stage: str
    root_cause: str
    suggested_fix: str
    confidence: float = 0.0
    explain: str = ""

    # Optional claims the model may make - only trusted after verification
    file: Optional[str] = None
    line: Optional[int] = None
    match: Optional[str] = None

    # True when produced by detectors rather than the model
    deterministic: bool = False

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        try:
            n = float(v)
        except (TypeError, ValueError, OverflowError):
            return 0.0
        if not math.isfinite(n):
            return 0.0
        return max(0.0, min(1.0, n))

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, v):
        try:
            n = int(v)
        except (TypeError, ValueError, OverflowError):
            return None
        return n if n > 0 else None

    @property
    def is_fallback(self) -> bool:
        return self.root_cause in (AI_UNAVAILABLE, INSUFFICIENT_EVIDENCE)


class VerificationResult(BaseModel):
    verified: bool
    reason: str


class GatingDecision(BaseModel):
    """Derived per event, never persisted"""
    deterministic_verified: bool
    ai_claim_verified: bool
    allow_auto_create: bool
    labels: List[str]
    verification_reason: Optional[str] = None


class FingerprintRecord(BaseModel):
    fingerprint: str
    project_id: str
    issue_ref: int
    first_seen: int                      # unix seconds
    last_seen: int
    occurrences: int = 1


class IssueWrite(BaseModel):
    """What the publisher did for one fingerprint"""
    action: str                          # "created" or "appended"
    issue_ref: int
    fingerprint: str
    duplicate_issue: Optional[int] = None  # our issue that lost a creation race
    gating: Optional[GatingDecision] = None


class TriageOutcome(BaseModel):
    """Terminal status of one event"""
    status: TriageStatus
    reason: Optional[str] = None
    error: Optional[str] = None
    project_id: Optional[str] = None
    job_id: Optional[int] = None
    pipeline_id: Optional[int] = None
    fingerprint: Optional[str] = None
    issue_ref: Optional[int] = None
    action: Optional[str] = None
    duplicate_issue: Optional[int] = None
    analysis: Optional[AnalysisResult] = None
    model_invoked: bool = False
    children: List["TriageOutcome"] = Field(default_factory=list)


TriageOutcome.model_rebuild()
