# Folder: ci-triage/actions/issue_publisher.py
#
# Turns a finding into exactly one tracked issue per fingerprint.
#
# Decision order:
#   1. fingerprint in local store     → comment on that issue, bump counter
#   2. fingerprint in an open issue   → backfill store, comment
#   3. gate the finding               → labels / validated or triage
#   4. create issue, insert mapping   → on a lost race, point our issue at
#                                       the winner and move evidence there

import logging
import sqlite3
from typing import Optional

from agent.gating import Gate
from ingestion.event_schema import (
    AnalysisResult, EvidenceBundle, IssueWrite, TriageEvent,
)
from storage.fingerprint_store import FingerprintStore

logger = logging.getLogger(__name__)

TITLE_ROOT_CHARS = 60


class IssuePublisher:

    def __init__(self, code_host, store: FingerprintStore, gate: Gate,
                 web_base_url: str = "https://github.com"):
        self.code_host = code_host
        self.store = store
        self.gate = gate
        self.web_base_url = web_base_url.rstrip("/")

    def create_or_append(self, event: TriageEvent, fingerprint: str,
                         evidence: Optional[EvidenceBundle], analysis: AnalysisResult,
                         log_excerpt: str = "") -> IssueWrite:
        """
        Raises only when the issue itself cannot be created.
        Comment failures are logged and the write still counts.
        """
        project_id = event.project_id

        # ── 1. Local store ─────────────────────────────────────────────────
        existing = None
        try:
            existing = self.store.get(fingerprint)
        except sqlite3.Error as e:
            logger.warning(f"Fingerprint lookup failed, falling back to search: {e}")

        if existing and existing.issue_ref:
            self._comment(project_id, existing.issue_ref,
                          build_comment_body(event, analysis, log_excerpt))
            try:
                self.store.bump_occurrence(fingerprint)
            except sqlite3.Error as e:
                logger.warning(f"Could not bump occurrence for {fingerprint}: {e}")
            logger.info(f"Fingerprint {fingerprint} seen before → appended to #{existing.issue_ref}")
            return IssueWrite(action="appended", issue_ref=existing.issue_ref,
                              fingerprint=fingerprint)

        # ── 2. Remote search (store lost or restarted) ─────────────────────
        remote = None
        try:
            matches = self.code_host.search_open_issues(project_id, fingerprint)
            remote = matches[0] if matches else None
        except Exception as e:
            logger.warning(f"Issue search failed: {e}")

        if remote is not None:
            target = remote
            try:
                record, _ = self.store.insert_atomic(fingerprint, project_id, remote)
                target = record.issue_ref
            except sqlite3.Error as e:
                logger.warning(f"Could not backfill mapping for {fingerprint}: {e}")
            self._comment(project_id, target, build_comment_body(event, analysis, log_excerpt))
            logger.info(f"Fingerprint {fingerprint} found remotely → appended to #{target}")
            return IssueWrite(action="appended", issue_ref=target, fingerprint=fingerprint)

        # ── 3. Gate ────────────────────────────────────────────────────────
        gating = self.gate.decide(analysis, evidence, project_id, event.commit_sha)

        # ── 4. Create, then claim the fingerprint ──────────────────────────
        title = build_title(event, analysis, gating.deterministic_verified, gating.ai_claim_verified)
        body = self.build_issue_body(event, fingerprint, evidence, analysis, gating, log_excerpt)
        issue_ref = self.code_host.create_issue(project_id, title, body, gating.labels)

        try:
            record, inserted = self.store.insert_atomic(fingerprint, project_id, issue_ref)
        except sqlite3.Error as e:
            logger.warning(f"Mapping insert failed, keeping issue #{issue_ref}: {e}")
            return IssueWrite(action="created", issue_ref=issue_ref,
                              fingerprint=fingerprint, gating=gating)

        if not inserted and record.issue_ref != issue_ref:
            winner = record.issue_ref
            logger.warning(
                f"Race on fingerprint {fingerprint}: #{winner} won, "
                f"consolidating #{issue_ref} into it"
            )
            self._comment(
                project_id, issue_ref,
                f"Duplicate issue created (race). Consolidating evidence into existing issue #{winner}.",
            )
            self._comment(project_id, winner, build_comment_body(event, analysis, log_excerpt))
            return IssueWrite(action="appended", issue_ref=winner, fingerprint=fingerprint,
                              duplicate_issue=issue_ref, gating=gating)

        return IssueWrite(action="created", issue_ref=issue_ref,
                          fingerprint=fingerprint, gating=gating)

    def _comment(self, project_id: str, issue_ref: int, body: str) -> None:
        try:
            self.code_host.create_issue_comment(project_id, issue_ref, body)
        except Exception as e:
            logger.error(f"Failed to append comment to #{issue_ref}: {e}")

    def build_issue_body(self, event: TriageEvent, fingerprint: str,
                         evidence: Optional[EvidenceBundle], analysis: AnalysisResult,
                         gating, log_excerpt: str) -> str:
        run_url = f"{self.web_base_url}/{event.project_id}/actions/runs/{event.pipeline_id}"
        job_url = event.web_url or (f"{run_url}/job/{event.job_id}" if event.job_id else run_url)

        if gating.deterministic_verified:
            verification = "- Deterministic evidence detected and re-confirmed in the repository at this commit."
        elif gating.ai_claim_verified:
            verification = (
                f"- Model-provided file/line claim verified at commit `{event.commit_sha}` "
                f"({gating.verification_reason})."
            )
        else:
            verification = (
                "- No deterministic verification found; issue created from model analysis "
                "and confidence gating."
            )

        return f"""## Automated CI Triage

| Field | Value |
|-------|-------|
| Job | `{event.job_name or event.job_id}` |
| Stage | {analysis.stage} |
| Commit | `{event.commit_sha or 'unknown'}` |
| Confidence | {analysis.confidence:.0%} |
| Fingerprint | `{fingerprint}` |

## Root Cause

**{analysis.root_cause}**

{analysis.explain}

## Suggested Fix

{analysis.suggested_fix}

## Verification

{verification}
{_evidence_section(evidence)}
**Run:** {run_url}
**Job:** {job_url}

<details><summary>Log excerpt</summary>

```
{log_excerpt or '(no excerpt captured)'}
```

</details>

_This issue was auto-generated by CI triage. Repeat occurrences are added as comments._
"""


def _evidence_section(evidence: Optional[EvidenceBundle]) -> str:
    if evidence is None or not evidence.has_deterministic_finding:
        return ""
    lines = ["", "## Evidence", ""]
    for hit in evidence.verified_hits:
        lines.append(
            f"- `{hit.file}:{hit.line or '?'}` {hit.pattern} `{hit.masked_match()}` ({hit.reason})"
        )
    for dep in evidence.dependency_high:
        lines.append(
            f"- `{dep.package}` declared {dep.installed_version}, latest {dep.latest_version} "
            f"({dep.reason}; version heuristic, not an advisory)"
        )
    lines.append("")
    return "\n".join(lines)


def build_title(event: TriageEvent, analysis: AnalysisResult,
                deterministic: bool, ai_verified: bool) -> str:
    label = "VERIFIED" if deterministic else "AI-VERIFIED" if ai_verified else (
        analysis.stage or event.job_name or "CI"
    )
    short_root = "".join(
        c for c in analysis.root_cause if c.isalnum() or c in " _"
    )[:TITLE_ROOT_CHARS].strip() or "Insight"
    return f"🚨 {label} | {short_root} | {event.job_name or 'job'} | Run {event.pipeline_id}"


def build_comment_body(event: TriageEvent, analysis: AnalysisResult, log_excerpt: str) -> str:
    return "\n".join([
        "**New occurrence detected**",
        f"**Run:** {event.pipeline_id}",
        f"**Job:** {event.job_name} ({event.job_id})",
        f"**Commit:** `{event.commit_sha}`",
        f"**Root cause:** {analysis.root_cause}",
        f"**Confidence:** {analysis.confidence:.2f}",
        "",
        "**Log excerpt:**",
        "```",
        log_excerpt or "(no excerpt captured)",
        "```",
        "",
        "_Appended automatically by CI triage._",
    ])
