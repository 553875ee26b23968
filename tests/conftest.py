"""Shared fakes for the triage pipeline tests.

Nothing here talks to GitHub, the registries or the model service.
"""

import json
import threading

import pytest

from agent.analysis_client import AnalysisClient, is_transient_model_error
from agent.event_sink import MemoryEventSink
from agent.evidence_collector import EvidenceCollector
from agent.gating import Gate
from agent.orchestrator import TriageOrchestrator
from agent.retry import RetryPolicy
from agent.verification import VerificationEngine
from actions.issue_publisher import IssuePublisher
from config import Settings
from ingestion.event_schema import EventKind, JobStatus, TriageEvent
from storage.fingerprint_store import FingerprintStore


class FakeCodeHost:
    """In-memory code host. Every call is recorded in `calls`."""

    def __init__(self, files=None, trace="", jobs=None):
        self.files = dict(files or {})
        self.trace = trace
        self.traces = {}
        self.jobs = list(jobs or [])
        self.search_results = {}
        self.issues = []
        self.comments = []
        self.calls = []
        self.create_error = None
        self.comment_error = None
        self.list_error = None
        self._next_issue = 100
        self._lock = threading.Lock()

    def list_pipeline_jobs(self, project_id, run_id):
        self.calls.append(("list_pipeline_jobs", project_id, run_id))
        if self.list_error:
            raise self.list_error
        return list(self.jobs)

    def get_job_trace(self, project_id, job_id):
        self.calls.append(("get_job_trace", project_id, job_id))
        trace = self.traces.get(job_id, self.trace)
        if isinstance(trace, Exception):
            raise trace
        return trace

    def get_file_at_commit(self, project_id, path, ref):
        self.calls.append(("get_file_at_commit", path, ref))
        content = self.files.get(path)
        if isinstance(content, Exception):
            raise content
        return content

    def search_open_issues(self, project_id, text):
        self.calls.append(("search_open_issues", project_id, text))
        return list(self.search_results.get(text, []))

    def create_issue(self, project_id, title, body, labels=None):
        if self.create_error:
            raise self.create_error
        with self._lock:
            self._next_issue += 1
            number = self._next_issue
            self.issues.append({
                "number": number, "title": title, "body": body, "labels": list(labels or []),
            })
        return number

    def create_issue_comment(self, project_id, issue_number, body):
        if self.comment_error:
            raise self.comment_error
        with self._lock:
            self.comments.append((issue_number, body))


class FakeCompleter:
    """Returns (or raises) the queued responses in order; repeats the last one."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []
        self._lock = threading.Lock()

    @property
    def calls(self):
        return len(self.prompts)

    def complete(self, prompt):
        with self._lock:
            self.prompts.append(prompt)
            index = min(len(self.prompts), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response


class FakeRegistry:

    def __init__(self, latest=None):
        self.latest = dict(latest or {})
        self.lookups = []

    def latest_version(self, package, ecosystem):
        self.lookups.append((package, ecosystem))
        value = self.latest.get(package)
        if isinstance(value, Exception):
            raise value
        return value


def model_json(**overrides):
    payload = {
        "stage": "test",
        "root_cause": "Unit test assertion failed in checkout flow",
        "suggested_fix": "Fix the expected total in the checkout test",
        "confidence": 0.8,
        "explain": "The assertion compares 10 to 12.",
        "file": None,
        "line": None,
        "match": None,
    }
    payload.update(overrides)
    return json.dumps(payload)


def no_sleep_policy(max_attempts=3):
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=0.0,
                       retryable=is_transient_model_error, sleep=lambda s: None)


def job_event(**overrides):
    fields = dict(
        kind=EventKind.JOB,
        project_id="acme/shop",
        pipeline_id=900,
        job_id=42,
        job_name="unit-tests",
        job_stage="CI",
        status=JobStatus.FAILED,
        commit_sha="0123456789abcdef0123456789abcdef01234567",
    )
    fields.update(overrides)
    return TriageEvent(**fields)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        fingerprint_db_path=str(tmp_path / "fingerprints.db"),
        model_timeout_sec=5.0,
        model_concurrency=2,
    )


@pytest.fixture
def store(settings):
    s = FingerprintStore(settings.fingerprint_db_path)
    yield s
    s.close()


@pytest.fixture
def build_orchestrator(store):
    """Factory: wires real components around the given fakes."""
    clients = []

    def _build(settings, host, completer, registry=None, sink=None, sampler=None):
        collector = EvidenceCollector(host, registry=registry or FakeRegistry())
        analysis = AnalysisClient(settings, completer, retry_policy=no_sleep_policy())
        clients.append(analysis)
        gate = Gate(VerificationEngine(host), settings.min_confidence_to_create)
        publisher = IssuePublisher(host, store, gate)
        kwargs = {"sink": sink or MemoryEventSink()}
        if sampler is not None:
            kwargs["sampler"] = sampler
        return TriageOrchestrator(settings, host, collector, analysis, publisher, **kwargs)

    yield _build
    for client in clients:
        client.close()
