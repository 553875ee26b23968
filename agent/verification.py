# Folder: ci-triage/agent/verification.py
#
# Checks a file/line claim made by the model against the repository
# at the exact commit. A claim we could not check is NOT verified.

import logging
from typing import Optional

from ingestion.event_schema import VerificationResult

logger = logging.getLogger(__name__)


class VerificationEngine:

    def __init__(self, code_host):
        self.code_host = code_host

    def verify(self, project_id: str, file_path: str, line: Optional[int],
               match: Optional[str], commit_sha: str) -> VerificationResult:
        """
        Verified when the claimed line exists and either no match text was
        given or the match is on that line. A match found elsewhere in the
        file is accepted as a softer fallback.
        """
        if not project_id or not file_path or not commit_sha:
            return VerificationResult(verified=False, reason="missing_parameters")

        try:
            content = self.code_host.get_file_at_commit(project_id, file_path, commit_sha)
        except Exception as e:
            logger.info(f"Claim verification could not fetch {file_path}: {e}")
            return VerificationResult(verified=False, reason=f"fetch_error: {e}")

        if not content:
            return VerificationResult(verified=False, reason="file_not_found_at_commit")

        lines = content.split("\n")
        if line and 0 < line <= len(lines):
            if not match:
                return VerificationResult(verified=True, reason="line_exists")
            if match in lines[line - 1]:
                return VerificationResult(verified=True, reason="match_found")
            if match in content:
                return VerificationResult(verified=True, reason="match_found_elsewhere")
            return VerificationResult(verified=False, reason="match_not_found_on_line")

        if match and match in content:
            return VerificationResult(verified=True, reason="match_found_elsewhere")

        return VerificationResult(verified=False, reason="evidence_not_found")
