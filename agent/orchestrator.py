# Folder: ci-triage/agent/orchestrator.py
#
# The state machine that takes one CI event to a terminal status.
# Called once per normalized event; events are independent of each other.
#
# Flow:
# TriageEvent → fetch log → collect evidence
#            → verified secret?      → HARD_CODED_SECRET (no model)
#            → major-version drift?  → DEPENDENCY_VULNERABILITY (no model)
#            → needs the model?      → analyze | skipped
#            → gate + dedupe         → issue created / appended

import logging
import random
import time
from typing import Callable, List, Optional

from actions.issue_publisher import IssuePublisher
from agent.analysis_client import AnalysisClient, fallback_analysis
from agent.event_sink import EventSink, LoggingEventSink
from agent.evidence_collector import EvidenceCollector
from agent.fingerprint import make_fingerprint
from agent.signals import SuspicionPolicy
from config import Settings
from ingestion.event_schema import (
    DEPENDENCY_VULNERABILITY, HARD_CODED_SECRET, AnalysisResult, EventKind,
    EvidenceBundle, JobStatus, JobSummary, TriageEvent, TriageOutcome, TriageStatus,
)
from ingestion.log_parser import excerpt, sanitize, signature_excerpt, tail_lines

logger = logging.getLogger(__name__)

SECRET_CONFIDENCE = 0.99
DEPENDENCY_CONFIDENCE = 0.9

# Statuses where the model is always consulted
ALWAYS_ANALYZE = (JobStatus.FAILED, JobStatus.CANCELED, JobStatus.MANUAL)


def secret_analysis(event: TriageEvent, evidence: EvidenceBundle) -> AnalysisResult:
    hit = evidence.verified_hits[0]
    others = len(evidence.verified_hits) - 1
    return AnalysisResult(
        stage=event.job_stage or event.job_name or "unknown",
        root_cause=HARD_CODED_SECRET,
        suggested_fix=(
            f"Remove the credential from {hit.file} (line {hit.line or '?'}), rotate it, "
            f"and inject it through CI secrets instead."
        ),
        confidence=SECRET_CONFIDENCE,
        explain=(
            f"Secret pattern '{hit.pattern}' matched in {hit.file}:{hit.line or '?'} at commit "
            f"{(event.commit_sha or 'unknown')[:12]} and was re-confirmed in the fetched content"
            + (f" ({others} more verified hit(s))." if others else ".")
        ),
        file=hit.file,
        line=hit.line,
        deterministic=True,
    )


def dependency_analysis(event: TriageEvent, evidence: EvidenceBundle) -> AnalysisResult:
    packages = ", ".join(
        f"{d.package} ({d.installed_version} → {d.latest_version})"
        for d in evidence.dependency_high[:10]
    )
    return AnalysisResult(
        stage=event.job_stage or event.job_name or "unknown",
        root_cause=DEPENDENCY_VULNERABILITY,
        suggested_fix=f"Review and upgrade outdated major versions: {packages}.",
        confidence=DEPENDENCY_CONFIDENCE,
        explain=(
            f"{len(evidence.dependency_high)} declared dependencies are a major version behind "
            f"the latest release. This is a staleness heuristic, not a reported advisory."
        ),
        deterministic=True,
    )


class TriageOrchestrator:
    """
    Coordinates collection, analysis, gating and publishing for one event.

    No step except the log fetch and the issue creation can fail the event:
    evidence and model problems degrade to empty/fallback results.
    """

    def __init__(self, settings: Settings, code_host,
                 evidence_collector: EvidenceCollector,
                 analysis_client: AnalysisClient,
                 publisher: IssuePublisher,
                 suspicion: Optional[SuspicionPolicy] = None,
                 sink: Optional[EventSink] = None,
                 sampler: Callable[[], float] = random.random):
        self.settings = settings
        self.code_host = code_host
        self.collector = evidence_collector
        self.analysis = analysis_client
        self.publisher = publisher
        self.suspicion = suspicion or SuspicionPolicy()
        self.sink = sink or LoggingEventSink()
        self.sampler = sampler

    # ── Entry point ────────────────────────────────────────────────────────

    def process(self, event: Optional[TriageEvent]) -> TriageOutcome:
        if event is None:
            return TriageOutcome(status=TriageStatus.IGNORED, reason="unrecognized_event")
        if event.kind is EventKind.PIPELINE:
            return self.handle_pipeline(event)
        return self.triage_job(event)

    # ── Policy helpers ─────────────────────────────────────────────────────

    def is_monitored(self, job_name: str, stage: str) -> bool:
        names = self.settings.monitored_job_names
        stages = self.settings.monitored_stages
        if not names and not stages:
            return True
        return job_name in names or stage in stages

    def should_sample_success(self) -> bool:
        if not self.settings.enable_success_analysis:
            return False
        rate = self.settings.success_sampling_rate
        if rate <= 1:
            return True
        return self.sampler() < 1.0 / rate

    def _publish(self, name: str, record: dict) -> None:
        try:
            self.sink.publish(name, record)
        except Exception as e:
            logger.debug(f"Event sink rejected {name}: {e}")

    # ── Pipeline events fan out into job events ───────────────────────────

    def handle_pipeline(self, event: TriageEvent) -> TriageOutcome:
        base = dict(project_id=event.project_id, pipeline_id=event.pipeline_id)
        if not event.project_id:
            return TriageOutcome(status=TriageStatus.IGNORED, reason="missing_project_id", **base)
        if event.pipeline_id is None:
            return TriageOutcome(status=TriageStatus.IGNORED, reason="missing_pipeline_id", **base)

        if event.status is JobStatus.FAILED:
            wanted = lambda j: j.status in ALWAYS_ANALYZE
        elif event.status is JobStatus.SUCCESS and self.should_sample_success():
            wanted = lambda j: self.is_monitored(j.name, j.stage)
        else:
            return TriageOutcome(status=TriageStatus.IGNORED,
                                 reason="pipeline_not_actionable", **base)

        try:
            jobs: List[JobSummary] = self.code_host.list_pipeline_jobs(
                event.project_id, event.pipeline_id
            )
        except Exception as e:
            logger.error(f"Could not list jobs for run {event.pipeline_id}: {e}")
            return TriageOutcome(status=TriageStatus.FAILED, reason="failed_to_list_jobs",
                                 error=str(e), **base)

        targets = [j for j in jobs if wanted(j)]
        logger.info(
            f"Run {event.pipeline_id} ({event.status.value}): "
            f"{len(targets)}/{len(jobs)} jobs selected"
        )

        children = []
        for job in targets:
            try:
                children.append(self.triage_job(event.for_job(job), sampled=True))
            except Exception as e:
                # One bad job must not stop the rest of the run
                logger.error(f"Job {job.id} triage crashed: {e}", exc_info=True)
                children.append(TriageOutcome(status=TriageStatus.FAILED, reason="job_triage_error",
                                              error=str(e), job_id=job.id, **base))

        reason = "pipeline_fanned_out" if children else "no_matching_jobs"
        return TriageOutcome(status=_aggregate(children), reason=reason,
                             children=children, **base)

    # ── Job events ─────────────────────────────────────────────────────────

    def triage_job(self, event: TriageEvent, sampled: bool = False) -> TriageOutcome:
        start_time = time.time()
        base = dict(project_id=event.project_id, pipeline_id=event.pipeline_id,
                    job_id=event.job_id)

        # ── Step 1: Is this event usable at all? ──────────────────────────
        if not event.project_id:
            return TriageOutcome(status=TriageStatus.IGNORED, reason="missing_project_id", **base)
        if event.job_id is None:
            if event.pipeline_id is None:
                return TriageOutcome(status=TriageStatus.IGNORED,
                                     reason="missing_pipeline_and_job_id", **base)
            # Only the run is known - triage its jobs instead
            return self.handle_pipeline(event)
        if not sampled and not self.is_monitored(event.job_name, event.job_stage):
            return TriageOutcome(status=TriageStatus.IGNORED, reason="job_not_monitored", **base)
        if event.status is JobStatus.SUCCESS and not sampled and not self.should_sample_success():
            return TriageOutcome(status=TriageStatus.SKIPPED, reason="success_sampled_out", **base)

        logger.info(
            f"\n{'='*60}\n"
            f"🔍 TRIAGE STARTED\n"
            f"Project: {event.project_id}\n"
            f"Job:     {event.job_name} ({event.job_id}) - {event.status.value}\n"
            f"Commit:  {event.commit_sha}\n"
            f"{'='*60}"
        )
        self._publish("triage.started", event.model_dump(mode="json"))

        # ── Step 2: Job log (the fetch layer already retried) ─────────────
        try:
            raw_log = self.code_host.get_job_trace(event.project_id, event.job_id)
        except Exception as e:
            logger.error(f"Failed to fetch job log for {event.job_id}: {e}")
            outcome = TriageOutcome(status=TriageStatus.FAILED, reason="failed_to_fetch_trace",
                                    error=str(e), **base)
            self._publish("triage.finished", outcome.model_dump(mode="json"))
            return outcome

        # ── Step 3: Sanitized tail for analysis, excerpt for humans ──────
        safe_log = sanitize(raw_log)
        log_tail = tail_lines(safe_log, self.settings.log_tail_lines)
        display_excerpt = excerpt(safe_log, self.settings.excerpt_lines)

        # ── Step 4: Deterministic evidence ────────────────────────────────
        step_start = time.time()
        evidence = self.collector.collect(event.project_id, event.commit_sha, log_tail)
        logger.info(f"Evidence step took {time.time()-step_start:.1f}s")
        self._publish("evidence.collected", {
            "job_id": event.job_id,
            "verified_hits": len(evidence.verified_hits),
            "dependency_high": len(evidence.dependency_high),
            "files_fetched": len(evidence.metadata.files_fetched),
            "error": evidence.error,
        })

        # ── Steps 5-7: Decide where the analysis comes from ──────────────
        model_invoked = False
        if evidence.verified_hits:
            analysis = secret_analysis(event, evidence)
            logger.info("Verified secret in repository - skipping model")
        elif evidence.dependency_high:
            analysis = dependency_analysis(event, evidence)
            logger.info("Major-version dependency drift - skipping model")
        else:
            if event.status not in ALWAYS_ANALYZE:
                signals = self.suspicion.signals(log_tail)
                if not signals:
                    logger.info(f"Job {event.job_id} {event.status.value} with clean log - skipped")
                    outcome = TriageOutcome(status=TriageStatus.SKIPPED,
                                            reason="no_suspicious_signals", **base)
                    self._publish("triage.finished", outcome.model_dump(mode="json"))
                    return outcome
                logger.info(f"Suspicious signals in {event.status.value} job: {signals}")

            step_start = time.time()
            model_invoked = True
            try:
                analysis = self.analysis.analyze(log_tail, event.job_name, evidence)
            except Exception as e:
                logger.error(f"Analysis client raised: {e}", exc_info=True)
                analysis = fallback_analysis(event.job_name, str(e))
            logger.info(f"Model step took {time.time()-step_start:.1f}s")

        self._publish("analysis.completed", {
            "job_id": event.job_id,
            "root_cause": analysis.root_cause,
            "confidence": analysis.confidence,
            "deterministic": analysis.deterministic,
        })

        # ── Step 8: Gate, dedupe, publish ─────────────────────────────────
        fingerprint = make_fingerprint(
            event.project_id, event.pipeline_id, event.job_id, event.commit_sha,
            signature_excerpt(safe_log, self.settings.excerpt_lines),
            self.settings.fp_hmac_key,
        )
        try:
            write = self.publisher.create_or_append(
                event, fingerprint, evidence, analysis, display_excerpt
            )
        except Exception as e:
            logger.error(f"Issue creation failed for {fingerprint}: {e}", exc_info=True)
            outcome = TriageOutcome(status=TriageStatus.FAILED, reason="issue_creation_failed",
                                    error=str(e), fingerprint=fingerprint, analysis=analysis,
                                    model_invoked=model_invoked, **base)
            self._publish("triage.finished", outcome.model_dump(mode="json"))
            return outcome

        status = TriageStatus.ISSUE_CREATED if analysis.deterministic else TriageStatus.ISSUE_CREATED_AI
        outcome = TriageOutcome(
            status=status,
            fingerprint=fingerprint,
            issue_ref=write.issue_ref,
            action=write.action,
            duplicate_issue=write.duplicate_issue,
            analysis=analysis,
            model_invoked=model_invoked,
            **base,
        )

        logger.info(
            f"\n{'='*60}\n"
            f"✅ TRIAGE COMPLETE in {time.time()-start_time:.1f}s\n"
            f"Root cause: {analysis.root_cause}\n"
            f"Confidence: {analysis.confidence:.0%}\n"
            f"Issue:      #{write.issue_ref} ({write.action})\n"
            f"{'='*60}"
        )
        self._publish("triage.finished", outcome.model_dump(mode="json"))
        return outcome


def _aggregate(children: List[TriageOutcome]) -> TriageStatus:
    """Pipeline status: the most significant child status wins"""
    statuses = {c.status for c in children}
    for status in (TriageStatus.ISSUE_CREATED_AI, TriageStatus.ISSUE_CREATED,
                   TriageStatus.FAILED, TriageStatus.SKIPPED):
        if status in statuses:
            return status
    return TriageStatus.IGNORED
