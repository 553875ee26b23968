# Folder: ci-triage/agent/fingerprint.py
#
# Deterministic dedup key for a failure signature.
# Same inputs → same fingerprint; change any field → different one.

import hashlib
import hmac
import re
from typing import Optional, Union

EXCERPT_SLICE = 200      # chars of the excerpt that go into the hash
FINGERPRINT_LENGTH = 12  # hex chars (~48 bits)

_WS = re.compile(r"\s+")


def norm(value) -> str:
    if value is None:
        return ""
    return _WS.sub(" ", str(value).strip())


def make_fingerprint(project_id: str, pipeline_id: Optional[Union[int, str]] = None,
                     job_id: Optional[Union[int, str]] = None, commit_sha: str = "",
                     excerpt: str = "", hmac_key: Optional[str] = None) -> str:
    """
    Hash of project, pipeline (or job when there is no pipeline),
    commit and the start of the log excerpt. Keyed with HMAC when
    a key is configured so fingerprints can't be guessed from outside.
    """
    piece = ":".join([
        norm(project_id),
        norm(pipeline_id if pipeline_id not in (None, "") else job_id),
        norm(commit_sha),
        norm(excerpt)[:EXCERPT_SLICE],
    ]).encode("utf-8")

    if hmac_key:
        digest = hmac.new(hmac_key.encode("utf-8"), piece, hashlib.sha256).hexdigest()
    else:
        digest = hashlib.sha256(piece).hexdigest()
    return digest[:FINGERPRINT_LENGTH]
