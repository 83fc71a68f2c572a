# MIT License
# Copyright (c) 2025 Gordon Trevorrow
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
# Author: Gordon Trevorrow

import json
import logging
import sys
from typing import Any, Optional

ROOT_LOGGER_NAME = "cloud-session"
REDACTED = "***"
# Normalized (lowercase, no separators) fragments that mark a field as secret
SECRET_FIELD_MARKERS = (
    "token",
    "secret",
    "statehandle",
    "password",
    "passwd",
    "cookie",
    "assertion",
    "samlresponse",
    "passcode",
    "authorization",
    "verifier",
)
# "code" alone is too broad (status_code), so codes are matched by exact name
SECRET_FIELD_NAMES = {"code", "authcode", "authorizationcode", "otp", "otc", "totp", "otpcode", "devicecode"}


def get_logger(area: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{area}")


def setup_logging(level_str: str) -> None:
    level = getattr(logging, level_str.upper(), logging.INFO)
    root = logging.getLogger(ROOT_LOGGER_NAME)
    h = logging.StreamHandler(sys.stderr)
    h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
    root.addHandler(h)
    root.setLevel(level)


def _normalize(name: str) -> str:
    return name.replace("_", "").replace("-", "").replace(".", "").lower()


def is_secret_field(name: str) -> bool:
    norm = _normalize(name)
    if norm in SECRET_FIELD_NAMES:
        return True
    return any(marker in norm for marker in SECRET_FIELD_MARKERS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with every secret-named field replaced.

    Dicts are walked recursively (lists too), so nested provider payloads such as
    ``{"credentials": {"passcode": ...}}`` are covered.
    """
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if isinstance(k, str) and is_secret_field(k) and not isinstance(v, (dict, list)):
                out[k] = REDACTED if v not in (None, "") else v
            else:
                out[k] = redact(v)
        return out
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def redact_text(text: Optional[str], limit: int = 2000) -> Optional[str]:
    """Redact a raw provider body when it is JSON; truncate anything else."""
    if text is None:
        return None
    try:
        obj = json.loads(text)
    except (ValueError, TypeError):
        return text[:limit]
    return json.dumps(redact(obj))[:limit]


def log_fields(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    """Log ``message`` with key=value fields, redacting by field name before formatting."""
    if not logger.isEnabledFor(level):
        return
    safe = redact(fields)
    rendered = " ".join(f"{k}={v}" for k, v in safe.items())
    if rendered:
        logger.log(level, "%s %s", message, rendered)
    else:
        logger.log(level, "%s", message)
