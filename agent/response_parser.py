# Folder: ci-triage/agent/response_parser.py
#
# Pulls one JSON object out of whatever the model sent back:
# bare JSON, fenced blocks, prose around braces, or a cut-off reply.

import json
import re
import logging

logger = logging.getLogger(__name__)

# Longest tail we try to salvage from a cut-off response
_MAX_SALVAGE_CHARS = 4000


def parse_model_response(raw_response: str, step_name: str = "analyze") -> dict:
    """
    Parses the model's JSON response handling all edge cases.
    Raises ValueError when nothing in the text is a JSON object.
    """
    logger.debug(f"[{step_name}] Raw response length: {len(raw_response or '')}")

    text = (raw_response or "").strip()

    # Try 1: Direct JSON parse
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    # Try 2: Extract from ```json ... ``` fences
    fence_pattern = r"```(?:json)?\s*([\s\S]*?)\s*```"
    for match in re.findall(fence_pattern, text):
        try:
            parsed = json.loads(match.strip())
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            continue

    # Try 3: Find outermost { } block
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(text[start:end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    # Try 4: Response got cut off - look for the last complete object
    if start != -1:
        subset = text[start:start + _MAX_SALVAGE_CHARS]
        for i in range(len(subset), 0, -1):
            if subset[i - 1] != "}":
                continue
            try:
                parsed = json.loads(subset[:i])
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                continue

    logger.warning(
        f"[{step_name}] Failed to parse. "
        f"Raw start: {text[:300]}"
    )
    raise ValueError(
        f"Could not parse model response for {step_name}. "
        f"Raw: {text[:200]}"
    )
