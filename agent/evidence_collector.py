# Folder: ci-triage/agent/evidence_collector.py
#
# Deterministic evidence. NO model call - pure data retrieval.
#
#   1. Pull candidate file paths out of the log tail (+ manifests)
#   2. Fetch each one at the exact commit
#   3. Run fixed secret patterns over the content and re-check each match
#   4. Compare declared dependency versions against the registries
#
# collect() never raises. A broken collection comes back as an
# empty bundle with `error` set.

import json
import logging
import re
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

import requests

from agent.retry import RetryPolicy
from ingestion.event_schema import (
    DependencyFinding, EvidenceBundle, EvidenceMetadata, RepoHit,
)

logger = logging.getLogger(__name__)

NPM_MANIFEST = "package.json"
PY_MANIFEST = "requirements.txt"
LOCKFILES = ("package-lock.json", "yarn.lock")
MANIFESTS = (NPM_MANIFEST,) + LOCKFILES + (PY_MANIFEST,)

# ── Candidate path extraction ─────────────────────────────────────────────

_URL = re.compile(r"\b[a-z][a-z0-9+.-]*://\S+", re.I)

_PATH_PATTERNS = [
    # unix-like paths with an extension, optional :line
    re.compile(r"(?:[A-Za-z0-9_\-.~]+/)+[A-Za-z0-9_\-.~]+\.[A-Za-z0-9_]+(?::\d+)?"),
    # windows paths
    re.compile(r"[A-Za-z]:\\(?:[^\\/:*?\"<>|\r\n]+\\)+[^\\/:*?\"<>|\r\n]+\.[A-Za-z0-9_]+(?::\d+)?"),
    # JS stack frames: at fn (file:line:col)
    re.compile(r"at\s+.*?\(([^()\s]+:\d+(?::\d+)?)\)"),
    # Python tracebacks: File "path", line N
    re.compile(r"File \"([^\"]+)\", line \d+"),
]

# Checkout prefixes on hosted runners - strip to get a repo-relative path
_RUNNER_PREFIXES = [
    re.compile(r"^(?:home/runner/work|__w)/[^/]+/[^/]+/"),
    re.compile(r"^builds/[^/]+/[^/]+/"),
]
_WINDOWS_RUNNER_PREFIX = re.compile(r"^a/[^/]+/[^/]+/")
_LINE_SUFFIX = re.compile(r"(?::\d+){1,2}$")
_DRIVE = re.compile(r"^[A-Za-z]:/")


def _clean_path(raw: str) -> str:
    path = _LINE_SUFFIX.sub("", raw.strip()).replace("\\", "/")
    if _DRIVE.match(path):
        path = _WINDOWS_RUNNER_PREFIX.sub("", _DRIVE.sub("", path))
    path = re.sub(r"^\./", "", path).lstrip("/")
    for prefix in _RUNNER_PREFIXES:
        path = prefix.sub("", path)
    return path


def extract_candidate_files(log_tail: str, limit: int = 200) -> List[str]:
    """
    Path-like and stack-trace-like strings from the log, manifests first.
    Deduplicated, order preserved, capped at `limit`.
    """
    found: "OrderedDict[str, None]" = OrderedDict((m, None) for m in MANIFESTS)
    text = _URL.sub(" ", log_tail or "")

    for pattern in _PATH_PATTERNS:
        for m in pattern.finditer(text):
            raw = m.group(1) if m.groups() else m.group(0)
            if not raw:
                continue
            cleaned = _clean_path(raw)
            if cleaned and cleaned not in found:
                found[cleaned] = None

    return list(found)[:limit]


# ── Secret patterns ───────────────────────────────────────────────────────

SECRET_PATTERNS: List[Tuple[str, "re.Pattern"]] = [
    ("aws_access_key", re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    ("google_api_key", re.compile(r"\bAIza[0-9A-Za-z_-]{35}\b")),
    ("long_token", re.compile(r"\b[A-Za-z0-9_-]{40,}\b")),
    ("pem_block", re.compile(r"-----BEGIN [A-Z ]+-----[\s\S]*?-----END [A-Z ]+-----")),
    ("jwt", re.compile(r"\b[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}\b")),
    ("secret_in_url", re.compile(r"https?://[^\s'\"]+?[?&](?:token|api_key|key)=[^\s&'\"]+", re.I)),
]

_HEX_ONLY = re.compile(r"^[0-9a-fA-F]+$")


def find_secrets_in_content(content: str) -> List[dict]:
    """
    Every pattern hit with its line number and a 5-line context window.
    Pure-hex long tokens are commit SHAs and checksums, not secrets.
    """
    hits = []
    if not content:
        return hits
    lines = content.split("\n")

    for name, pattern in SECRET_PATTERNS:
        for m in pattern.finditer(content):
            match = m.group(0)
            if name == "long_token" and _HEX_ONLY.match(match):
                continue
            line = content.count("\n", 0, m.start()) + 1
            start = max(0, line - 3)
            hits.append({
                "pattern": name,
                "match": match,
                "line": line,
                "context": "\n".join(lines[start:start + 5]),
            })
    return hits


# ── Dependencies ──────────────────────────────────────────────────────────

_REQ_LINE = re.compile(r"^([A-Za-z0-9][A-Za-z0-9._-]*)(?:\[[^\]]*\])?\s*((?:==|>=|~=|<=|>|<|!=)[^;#\s]+)?")


def parse_package_json(content: str) -> Dict[str, str]:
    try:
        obj = json.loads(content)
    except (ValueError, TypeError):
        return {}
    if not isinstance(obj, dict):
        return {}
    deps = {}
    for key in ("dependencies", "devDependencies"):
        section = obj.get(key)
        if isinstance(section, dict):
            deps.update({str(k): str(v) for k, v in section.items()})
    return deps


def parse_requirements(content: str) -> Dict[str, str]:
    deps = {}
    for raw in (content or "").splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or line.startswith("-") or "://" in line:
            continue
        m = _REQ_LINE.match(line)
        if m:
            deps[m.group(1)] = m.group(2) or ""
    return deps


def _strip_version(v: str) -> str:
    return re.sub(r"^[\s\^~><=!v]*", "", v or "").split(",")[0].strip()


def compare_major(installed: str, latest: str) -> Tuple[bool, bool]:
    """(equal, same_major) on the leading numeric component only"""
    a, b = _strip_version(installed), _strip_version(latest)
    return a == b, a.split(".")[0] == b.split(".")[0]


def _has_numeric_major(version: str) -> bool:
    return bool(re.match(r"^\d+", _strip_version(version)))


class PackageRegistry:
    """Latest published versions from npm and PyPI"""

    NPM_URL = "https://registry.npmjs.org/{name}"
    PYPI_URL = "https://pypi.org/pypi/{name}/json"

    def __init__(self, session: Optional[requests.Session] = None,
                 retry_policy: Optional[RetryPolicy] = None, timeout: float = 10.0):
        self.session = session or requests.Session()
        self.retry = retry_policy or RetryPolicy(
            max_attempts=3, base_delay=0.2, max_delay=2.0,
            retryable=lambda e: isinstance(e, requests.RequestException),
        )
        self.timeout = timeout

    def _get_json(self, url: str) -> Optional[dict]:
        def fetch():
            resp = self.session.get(url, timeout=self.timeout)
            if resp.status_code >= 500:
                resp.raise_for_status()
            if resp.status_code != 200:
                return None
            return resp.json()
        return self.retry.call(fetch, label=f"registry {url}")

    def latest_version(self, package: str, ecosystem: str) -> Optional[str]:
        if ecosystem == "pypi":
            data = self._get_json(self.PYPI_URL.format(name=package))
            return ((data or {}).get("info") or {}).get("version")
        data = self._get_json(self.NPM_URL.format(name=requests.utils.quote(package, safe="@")))
        return ((data or {}).get("dist-tags") or {}).get("latest")


# ── Collector ─────────────────────────────────────────────────────────────

class EvidenceCollector:

    def __init__(self, code_host, registry: Optional[PackageRegistry] = None,
                 max_candidates: int = 200, max_dependencies: int = 80):
        self.code_host = code_host
        self.registry = registry or PackageRegistry()
        self.max_candidates = max_candidates
        self.max_dependencies = max_dependencies

    def collect(self, project_id: str, commit_sha: str, log_tail: str) -> EvidenceBundle:
        """Never raises - see module header"""
        try:
            return self._collect(project_id, commit_sha, log_tail)
        except Exception as e:
            logger.warning(f"Evidence collection failed, continuing without it: {e}", exc_info=True)
            return EvidenceBundle(
                metadata=EvidenceMetadata(project_id=project_id, commit_sha=commit_sha or ""),
                error=f"collection_failed: {e}",
            )

    def _collect(self, project_id: str, commit_sha: str, log_tail: str) -> EvidenceBundle:
        bundle = EvidenceBundle(
            metadata=EvidenceMetadata(project_id=project_id, commit_sha=commit_sha or "")
        )
        if not project_id:
            bundle.error = "project_id_missing"
            return bundle

        # ── 1. Candidates ─────────────────────────────────────────────────
        candidates = extract_candidate_files(log_tail, self.max_candidates)
        bundle.metadata.files_attempted = candidates

        # ── 2. Fetch at commit ────────────────────────────────────────────
        fetched = self._fetch_all(project_id, commit_sha, candidates, bundle.metadata)
        if not fetched:
            logger.warning(
                f"No files could be fetched for {project_id}@{(commit_sha or '')[:12]} "
                f"({len(candidates)} candidates)"
            )

        # ── 3. Secrets ────────────────────────────────────────────────────
        for path, content in fetched.items():
            if path.rsplit("/", 1)[-1] in LOCKFILES:
                continue  # checksums and tarball URLs, not code
            for hit in find_secrets_in_content(content):
                # Re-check against the fetched content before trusting the hit
                verified = hit["match"] in content
                bundle.repo_hits.append(RepoHit(
                    file=path,
                    line=hit["line"],
                    match=hit["match"],
                    pattern=hit["pattern"],
                    context=hit["context"],
                    verified=verified,
                    reason="match_in_file" if verified else "not_found_on_verify",
                ))

        # ── 4. Dependencies ───────────────────────────────────────────────
        if NPM_MANIFEST in fetched:
            self._check_dependencies(parse_package_json(fetched[NPM_MANIFEST]), "npm", bundle)
        if PY_MANIFEST in fetched:
            self._check_dependencies(parse_requirements(fetched[PY_MANIFEST]), "pypi", bundle)

        logger.info(
            f"Evidence: {len(bundle.metadata.files_fetched)}/{len(candidates)} files fetched | "
            f"{len(bundle.verified_hits)} verified secret hits | "
            f"{len(bundle.dependency_high)} major-version mismatches"
        )
        return bundle

    def _fetch_all(self, project_id: str, commit_sha: str, paths: Iterable[str],
                   metadata: EvidenceMetadata) -> Dict[str, str]:
        fetched = {}
        for path in paths:
            try:
                content = self.code_host.get_file_at_commit(project_id, path, commit_sha)
            except Exception as e:
                metadata.fetch_failures.append(f"{path}: {e}")
                continue
            if content is None:
                continue  # not in the repo at this commit
            fetched[path] = content
            metadata.files_fetched.append(path)
        return fetched

    def _check_dependencies(self, deps: Dict[str, str], ecosystem: str,
                            bundle: EvidenceBundle) -> None:
        for package, declared in list(deps.items())[:self.max_dependencies]:
            if not _has_numeric_major(declared):
                bundle.dependency_other.append(DependencyFinding(
                    package=package, installed_version=declared or None,
                    severity="unknown", reason="unpinned_or_unparseable", ecosystem=ecosystem,
                ))
                continue
            try:
                latest = self.registry.latest_version(package, ecosystem)
            except Exception as e:
                logger.debug(f"Registry lookup failed for {package}: {e}")
                latest = None

            if not latest:
                bundle.dependency_other.append(DependencyFinding(
                    package=package, installed_version=declared,
                    severity="unknown", reason="registry_lookup_failed", ecosystem=ecosystem,
                ))
                continue

            _, same_major = compare_major(declared, latest)
            if same_major:
                bundle.dependency_other.append(DependencyFinding(
                    package=package, installed_version=declared, latest_version=latest,
                    severity="low", ecosystem=ecosystem,
                ))
            else:
                # Heuristic only - never an advisory claim
                bundle.dependency_high.append(DependencyFinding(
                    package=package, installed_version=declared, latest_version=latest,
                    severity="medium", reason="major_version_mismatch", ecosystem=ecosystem,
                ))
