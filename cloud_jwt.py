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

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class JwtClaims:
    claims: dict
    expires_at: Optional[datetime]

    def get(self, name: str, default=None):
        return self.claims.get(name, default)


def _payload(token_str: str) -> Optional[dict]:
    parts = token_str.split(".")
    if len(parts) < 2:
        return None
    payload_b64 = parts[1]
    pad = '=' * (-len(payload_b64) % 4)  # JWT payloads drop their base64 padding
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + pad))
    except (ValueError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


def decode_jwt_exp(token_str: str) -> Optional[datetime]:
    payload = _payload(token_str)
    if payload is None:
        return None
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(int(exp), tz=timezone.utc)


def decode_jwt(token_str: str) -> Optional[JwtClaims]:
    """Decode (without verifying) a bearer token's claims and pre-compute its expiry."""
    payload = _payload(token_str)
    if payload is None:
        return None
    return JwtClaims(claims=payload, expires_at=decode_jwt_exp(token_str))
