# Folder: ci-triage/agent/analysis_client.py
#
# Root-cause analysis by the language model.
# The only place that talks to the model service.
#
# Owns the call policy:
#   - global ceiling on in-flight calls (callers beyond it wait)
#   - hard timeout per call
#   - retry with backoff + jitter for transient failures
#   - one corrective re-prompt when the output breaks the schema
#   - structured AI_UNAVAILABLE fallback, never an exception

import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Optional

import anthropic

from agent.response_parser import parse_model_response
from agent.retry import RetryPolicy
from config import Settings
from ingestion.event_schema import (
    AI_UNAVAILABLE, INSUFFICIENT_EVIDENCE, AnalysisResult, EvidenceBundle,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a helpful assistant specialized in CI/CD failure analysis."

_TRANSIENT_TEXT = re.compile(r"rate.?limit|overload|unavailable|timed?.?out|ECONNRESET", re.I)


class ModelError(Exception):
    pass


class ModelTimeout(ModelError):
    """The call did not finish inside the hard timeout"""


def is_transient_model_error(e: Exception) -> bool:
    if isinstance(e, ModelTimeout):
        return True
    if isinstance(e, (anthropic.RateLimitError, anthropic.APIConnectionError,
                      anthropic.InternalServerError)):
        return True
    if isinstance(e, anthropic.APIStatusError):
        return e.status_code in (408, 409, 429) or e.status_code >= 500
    return bool(_TRANSIENT_TEXT.search(str(e)))


def model_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.model_max_retries + 1,
        base_delay=settings.model_base_backoff_sec,
        max_delay=settings.model_max_backoff_sec,
        retryable=is_transient_model_error,
    )


class AnthropicCompleter:
    """complete(prompt) -> text over the Anthropic Messages API"""

    def __init__(self, settings: Settings, client: Optional[anthropic.Anthropic] = None):
        self.model = settings.anthropic_model
        self.max_tokens = settings.model_max_tokens
        # SDK retries off - AnalysisClient decides when to retry
        self.client = client or anthropic.Anthropic(
            api_key=settings.anthropic_api_key,
            max_retries=0,
            timeout=settings.model_timeout_sec,
        )

    def complete(self, prompt: str) -> str:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )


def _evidence_for_prompt(evidence: Optional[EvidenceBundle]) -> Optional[dict]:
    """
    Only verified hits go to the model, and never the secret text itself.
    Dependency findings are heuristics and are labeled as such.
    """
    if evidence is None:
        return None
    return {
        "repo_hits": [
            {"file": h.file, "line": h.line, "pattern": h.pattern, "reason": h.reason}
            for h in evidence.verified_hits
        ],
        "dependencies": [
            {
                "package": d.package,
                "installed_version": d.installed_version,
                "latest_version": d.latest_version,
                "severity": d.severity,
                "reason": d.reason,
                "note": "version staleness heuristic, not an advisory",
            }
            for d in evidence.dependency_high + evidence.dependency_other
        ],
    }


def build_prompt(job_name: str, logs: str, evidence: Optional[EvidenceBundle] = None,
                 max_lines: int = 1200) -> str:
    """
    Strict prompt: exact schema, no invented files/lines/advisories,
    explicit INSUFFICIENT_EVIDENCE escape hatch.
    """
    log_tail = "\n".join((logs or "").splitlines()[-max_lines:])

    evidence_text = "None supplied."
    ev = _evidence_for_prompt(evidence)
    if ev is not None:
        evidence_text = json.dumps(ev, indent=2)

    return f"""You are an expert DevOps CI/CD assistant. You will be given sanitized CI logs and optional verified evidence.

═══════════════════════════════════════
JOB
═══════════════════════════════════════
{job_name or "unknown"}

═══════════════════════════════════════
VERIFIED EVIDENCE
═══════════════════════════════════════
{evidence_text}

═══════════════════════════════════════
LOGS (sanitized tail)
═══════════════════════════════════════
{log_tail}

═══════════════════════════════════════
YOUR TASK
═══════════════════════════════════════
Respond ONLY with valid JSON matching this exact schema (no extra text, no markdown):

{{
  "stage": "<pipeline stage or job name>",
  "root_cause": "<one sentence explanation, or the literal string {INSUFFICIENT_EVIDENCE}>",
  "suggested_fix": "<short fix steps>",
  "confidence": 0.0,
  "explain": "<2-3 sentence explanation>",
  "file": null,
  "line": null,
  "match": null
}}

Rules:
- Do NOT invent file names, line numbers, CVE identifiers or advisory URLs that are not present in the logs or the evidence above.
- Only fill "file", "line" and "match" when the logs name that exact file and line; "match" must be text copied verbatim from that line.
- If there is not enough concrete evidence to determine a root cause, return root_cause "{INSUFFICIENT_EVIDENCE}" and confidence 0.0.
- confidence is a number between 0.0 and 1.0.
- Keep the explanation truthful, concise, and based only on the logs and evidence."""


def _corrective_prompt(prompt: str, job_name: str) -> str:
    fallback = json.dumps({
        "stage": job_name or "unknown",
        "root_cause": INSUFFICIENT_EVIDENCE,
        "suggested_fix": "insufficient_evidence",
        "confidence": 0.0,
        "explain": "Insufficient evidence to determine root cause.",
    })
    return (
        f"{prompt}\n\nSTRICT REPEAT: your previous answer did not match the schema. "
        f"Return ONLY the JSON object now. If you cannot, return exactly: {fallback}"
    )


def to_analysis(parsed: dict, stage_default: str = "") -> Optional[AnalysisResult]:
    """
    Schema check. Returns None when a required string field is missing
    or confidence is absent.
    """
    if not isinstance(parsed, dict):
        return None
    for key in ("root_cause", "suggested_fix"):
        if not isinstance(parsed.get(key), str) or not parsed[key].strip():
            return None
    if "confidence" not in parsed:
        return None
    stage = parsed.get("stage")
    if stage is not None and not isinstance(stage, str):
        return None

    explain = parsed.get("explain")
    file_claim = parsed.get("file")
    match_claim = parsed.get("match")
    result = AnalysisResult(
        stage=stage or stage_default or "unknown",
        root_cause=parsed["root_cause"].strip(),
        suggested_fix=parsed["suggested_fix"].strip(),
        confidence=parsed["confidence"],
        explain=explain if isinstance(explain, str) else "",
        file=file_claim if isinstance(file_claim, str) and file_claim else None,
        line=parsed.get("line"),
        match=match_claim if isinstance(match_claim, str) and match_claim else None,
    )
    if result.root_cause == INSUFFICIENT_EVIDENCE:
        result = result.model_copy(update={"confidence": 0.0})
    return result


def fallback_analysis(stage: str, message: str) -> AnalysisResult:
    return AnalysisResult(
        stage=stage or "unknown",
        root_cause=AI_UNAVAILABLE,
        suggested_fix="Manual triage required",
        confidence=0.0,
        explain=message[:1500],
    )


class AnalysisClient:
    """
    Thread-safe. One instance is shared by every worker so the
    concurrency ceiling is global to the process.
    """

    def __init__(self, settings: Settings, completer, retry_policy: Optional[RetryPolicy] = None):
        self.completer = completer
        self.retry = retry_policy or model_retry_policy(settings)
        self.timeout = settings.model_timeout_sec
        self.max_lines = settings.log_tail_lines
        self._slots = threading.BoundedSemaphore(settings.model_concurrency)
        # A slot is held by the worker running the call, so an abandoned
        # call keeps its slot until it really finishes
        self._executor = ThreadPoolExecutor(
            max_workers=settings.model_concurrency,
            thread_name_prefix="model-call",
        )

    def _complete_holding_slot(self, prompt: str) -> str:
        try:
            return self.completer.complete(prompt)
        finally:
            self._slots.release()

    def _complete_once(self, prompt: str) -> str:
        # Waiting for a slot is not part of the call timeout
        self._slots.acquire()
        try:
            future = self._executor.submit(self._complete_holding_slot, prompt)
        except Exception:
            self._slots.release()
            raise
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            if future.cancel():
                self._slots.release()  # never started
            raise ModelTimeout(f"model call exceeded {self.timeout:.0f}s timeout")

    def _invoke(self, prompt: str) -> str:
        return self.retry.call(lambda: self._complete_once(prompt), label="model call")

    def _parse(self, text: str, stage: str) -> Optional[AnalysisResult]:
        try:
            parsed = parse_model_response(text, "analyze")
            return to_analysis(parsed, stage)
        except (ValueError, OverflowError) as e:
            # pydantic's ValidationError is a ValueError
            logger.debug(f"Model response rejected: {e}")
            return None

    def analyze(self, logs: str, job_name: str = "",
                evidence: Optional[EvidenceBundle] = None) -> AnalysisResult:
        """
        Runs the full call policy. Each model call waits for a free slot.
        Always returns an AnalysisResult.
        """
        prompt = build_prompt(job_name, logs, evidence, self.max_lines)

        try:
            text = self._invoke(prompt)
        except Exception as e:
            logger.error(f"Model persistent failure: {e}")
            return fallback_analysis(job_name, str(e))

        result = self._parse(text, job_name)
        if result is not None:
            return result

        # ── One corrective re-prompt ─────────────────────────────────────
        logger.warning("Model response invalid or unparsable, attempting one corrective retry")
        try:
            text = self._invoke(_corrective_prompt(prompt, job_name))
        except Exception as e:
            logger.warning(f"Corrective retry failed: {e}")
            return fallback_analysis(job_name, str(e))

        result = self._parse(text, job_name)
        if result is not None:
            return result

        logger.warning("Corrective retry still invalid, using fallback")
        return fallback_analysis(
            job_name,
            f"Model returned unparseable output. Extracted text (truncated): {(text or '')[:1200]}",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)
