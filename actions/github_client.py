# Folder: ci-triage/actions/github_client.py
#
# Everything we need from the code host, behind one small class:
#   - list jobs of a workflow run
#   - download a job log
#   - read a file at an exact commit
#   - search / create / comment on issues
#
# Every call goes through the shared RetryPolicy. Failures come out
# as CodeHostError with the HTTP status attached.

import logging
import threading
from typing import Dict, List, Optional

import requests
from github import Auth, Github, GithubException, UnknownObjectException

from agent.retry import RetryPolicy
from config import Settings
from ingestion.event_schema import JobSummary
from ingestion.normalizer import map_status

logger = logging.getLogger(__name__)


class CodeHostError(Exception):
    """A code host call failed. status is None for transport errors."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message if status is None else f"{message} (HTTP {status})")
        self.status = status

    @property
    def transient(self) -> bool:
        if self.status is None or self.status == 429 or self.status >= 500:
            return True
        # GitHub answers secondary rate limits with 403
        return self.status == 403 and "rate limit" in str(self).lower()


def is_transient_codehost_error(e: Exception) -> bool:
    return isinstance(e, CodeHostError) and e.transient


def codehost_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.codehost_max_retries + 1,
        base_delay=settings.codehost_base_backoff_sec,
        max_delay=settings.model_max_backoff_sec,
        retryable=is_transient_codehost_error,
    )


def _wrap(e: GithubException, what: str) -> CodeHostError:
    message = e.data.get("message") if isinstance(e.data, dict) else None
    return CodeHostError(f"{what} failed: {message or e}", e.status)


class GitHubClient:
    """Thin GitHub Actions client. Safe to share between threads."""

    def __init__(self, settings: Settings, retry_policy: Optional[RetryPolicy] = None,
                 github: Optional[Github] = None, session: Optional[requests.Session] = None):
        self.settings = settings
        self.retry = retry_policy or codehost_retry_policy(settings)
        timeout = int(settings.codehost_timeout_sec)
        # retry=None: our RetryPolicy owns retries
        self.gh = github or Github(
            auth=Auth.Token(settings.github_token) if settings.github_token else None,
            base_url=settings.github_api_url,
            timeout=timeout,
            retry=None,
        )
        self.session = session or requests.Session()
        self._repos: Dict[str, object] = {}
        self._lock = threading.Lock()

    def _repo(self, project_id: str):
        with self._lock:
            repo = self._repos.get(project_id)
            if repo is None:
                repo = self.gh.get_repo(project_id, lazy=True)
                self._repos[project_id] = repo
            return repo

    def _call(self, what: str, fn):
        def attempt():
            try:
                return fn()
            except GithubException as e:
                raise _wrap(e, what) from e
            except requests.RequestException as e:
                raise CodeHostError(f"{what} failed: {e}") from e
        return self.retry.call(attempt, label=what)

    # ── Reads ──────────────────────────────────────────────────────────────

    def list_pipeline_jobs(self, project_id: str, run_id: int) -> List[JobSummary]:
        """All jobs of a workflow run. PyGithub walks the pages for us."""
        def fetch():
            run = self._repo(project_id).get_workflow_run(run_id)
            jobs = []
            for job in run.jobs():
                jobs.append(JobSummary(
                    id=job.id,
                    name=job.name or "",
                    stage=job.raw_data.get("workflow_name") or "",
                    status=map_status(job.status, job.conclusion),
                    commit_sha=job.head_sha or "",
                    web_url=job.html_url,
                ))
            return jobs
        return self._call(f"list jobs for run {run_id}", fetch)

    def get_job_trace(self, project_id: str, job_id: int) -> str:
        """
        Plain-text log of one job.
        The logs endpoint redirects to a short-lived blob URL; requests follows it.
        """
        url = f"{self.settings.github_api_url}/repos/{project_id}/actions/jobs/{job_id}/logs"
        headers = {"Accept": "application/vnd.github+json"}
        if self.settings.github_token:
            headers["Authorization"] = f"Bearer {self.settings.github_token}"

        def fetch():
            resp = self.session.get(url, headers=headers,
                                    timeout=self.settings.codehost_timeout_sec)
            if resp.status_code >= 400:
                raise CodeHostError(
                    f"fetch job log {job_id} failed: {resp.text[:200]}", resp.status_code
                )
            return resp.text
        return self._call(f"fetch job log {job_id}", fetch)

    def get_file_at_commit(self, project_id: str, path: str, ref: str) -> Optional[str]:
        """
        File content at an exact commit.
        Returns None when the path does not exist there (or is a directory).
        """
        def fetch():
            try:
                kwargs = {"ref": ref} if ref else {}
                content = self._repo(project_id).get_contents(path, **kwargs)
            except UnknownObjectException:
                return None
            if isinstance(content, list):
                return None
            return content.decoded_content.decode("utf-8", errors="replace")
        return self._call(f"fetch {path}@{(ref or 'HEAD')[:12]}", fetch)

    def search_open_issues(self, project_id: str, text: str) -> List[int]:
        """Numbers of open issues whose body mentions text (first 20)"""
        query = f'"{text}" repo:{project_id} is:issue is:open in:body'

        def fetch():
            numbers = []
            for issue in self.gh.search_issues(query):
                numbers.append(issue.number)
                if len(numbers) >= 20:
                    break
            return numbers
        return self._call("search issues", fetch)

    # ── Writes ─────────────────────────────────────────────────────────────

    def create_issue(self, project_id: str, title: str, body: str,
                     labels: Optional[List[str]] = None) -> int:
        def create():
            issue = self._repo(project_id).create_issue(
                title=title, body=body, labels=labels or []
            )
            return issue.number
        number = self._call("create issue", create)
        logger.info(f"Issue #{number} created in {project_id}")
        return number

    def create_issue_comment(self, project_id: str, issue_number: int, body: str) -> None:
        def comment():
            self._repo(project_id).get_issue(issue_number).create_comment(body)
        self._call(f"comment on #{issue_number}", comment)
