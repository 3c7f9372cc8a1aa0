from __future__ import annotations

import re
from typing import Any, Dict

TOKENISH = re.compile(r"(?i)(secret|token|password|apikey|api_key)")
HEX_LONG = re.compile(r"\b[0-9a-f]{32,}\b", re.I)
PULUMI_TOKEN = re.compile(r"\bpul-[0-9a-z]{20,}\b", re.I)

REDACTED = "[REDACTED]"


def redact_string(s: str) -> str:
    if TOKENISH.search(s) or HEX_LONG.search(s) or PULUMI_TOKEN.search(s):
        return REDACTED
    return s


def redact_env(env: Dict[str, Any]) -> Dict[str, Any]:
    # secret-tagged values and token-looking names are masked, plain values stay readable
    out: Dict[str, Any] = {}
    for k, v in env.items():
        if isinstance(v, dict) or TOKENISH.search(k):
            out[k] = REDACTED
        else:
            out[k] = redact_string(str(v))
    return out
