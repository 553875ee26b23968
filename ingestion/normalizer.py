# Folder: ci-triage/ingestion/normalizer.py
#
# Turns raw GitHub Actions webhook payloads into TriageEvent.
# This is the only place that knows about payload shapes:
#
#   workflow_job  → kind=job
#   workflow_run  → kind=pipeline
#
# Anything else is not ours and normalizes to None.

import logging
from typing import Optional

from ingestion.event_schema import EventKind, JobStatus, TriageEvent

logger = logging.getLogger(__name__)

# GitHub conclusion → our status
_CONCLUSIONS = {
    "success": JobStatus.SUCCESS,
    "neutral": JobStatus.SUCCESS,
    "skipped": JobStatus.SUCCESS,
    "failure": JobStatus.FAILED,
    "timed_out": JobStatus.FAILED,
    "startup_failure": JobStatus.FAILED,
    "cancelled": JobStatus.CANCELED,
    "action_required": JobStatus.MANUAL,
}


def map_status(status: Optional[str], conclusion: Optional[str]) -> JobStatus:
    """
    GitHub reports progress in `status` and the result in `conclusion`.
    Only a completed run has a conclusion worth mapping.
    """
    status = (status or "").lower()
    conclusion = (conclusion or "").lower()

    if status and status != "completed":
        return JobStatus.RUNNING
    return _CONCLUSIONS.get(conclusion, JobStatus.RUNNING if not conclusion else JobStatus.FAILED)


def _as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _detect_kind(payload: dict, event_name: Optional[str]) -> Optional[EventKind]:
    if event_name == "workflow_job" or "workflow_job" in payload:
        return EventKind.JOB
    if event_name == "workflow_run" or "workflow_run" in payload:
        return EventKind.PIPELINE
    return None


def normalize_event(payload: dict, event_name: Optional[str] = None) -> Optional[TriageEvent]:
    """
    Build the canonical event from a webhook payload.

    event_name is the X-GitHub-Event header when the caller has it;
    without it we sniff the payload keys.
    """
    if not isinstance(payload, dict):
        return None

    kind = _detect_kind(payload, event_name)
    if kind is None:
        logger.debug(f"Unrecognized payload keys: {sorted(payload)[:10]}")
        return None

    repo = payload.get("repository") or {}
    project_id = repo.get("full_name") or None

    if kind is EventKind.JOB:
        job = payload.get("workflow_job") or {}
        return TriageEvent(
            kind=kind,
            project_id=project_id,
            pipeline_id=_as_int(job.get("run_id")),
            job_id=_as_int(job.get("id")),
            job_name=job.get("name") or "",
            job_stage=job.get("workflow_name") or "",
            status=map_status(job.get("status"), job.get("conclusion")),
            commit_sha=job.get("head_sha") or "",
            web_url=job.get("html_url"),
        )

    run = payload.get("workflow_run") or {}
    return TriageEvent(
        kind=kind,
        project_id=project_id,
        pipeline_id=_as_int(run.get("id")),
        job_name=run.get("name") or "",
        job_stage=run.get("name") or "",
        status=map_status(run.get("status"), run.get("conclusion")),
        commit_sha=run.get("head_sha") or "",
        web_url=run.get("html_url"),
    )
