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
import re
from typing import Any, Optional

from cloud_errors import ResponseDecodeError
from cloud_logging import get_logger

LOG = get_logger("json")

MIN_DEPTH = 15
MAX_DEPTH = 100
DEPTH_HEADROOM = 3

_UNICODE_ESCAPE_RE = re.compile(r"\\u([0-9a-fA-F]{4})")
_HEX_ESCAPE_RE = re.compile(r"\\x([0-9a-fA-F]{2})")


# ---------- Sniffing ----------

def looks_like_json(text: Optional[str]) -> bool:
    """Cheap shape check: an object or array, ignoring surrounding whitespace and a BOM."""
    if not text:
        return False
    s = text.lstrip("\ufeff").strip()
    if len(s) < 2:
        return False
    return (s[0] == "{" and s[-1] == "}") or (s[0] == "[" and s[-1] == "]")


def detect_depth(text: str) -> int:
    """Return the maximum object/array nesting depth of ``text``.

    Brackets inside string literals are ignored; malformed input is scanned
    best-effort so the caller still gets a usable number before decoding.
    """
    depth = 0
    max_depth = 0
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
            if depth > max_depth:
                max_depth = depth
        elif ch in "}]":
            if depth > 0:
                depth -= 1
    return max_depth


def optimal_depth(text: str) -> int:
    return max(MIN_DEPTH, min(MAX_DEPTH, detect_depth(text) + DEPTH_HEADROOM))


# ---------- Decoding ----------

def decode(text: str, depth: Optional[int] = None) -> Any:
    """Decode ``text`` case-sensitively, bounded by a nesting-depth budget.

    Keys that differ only by case stay distinct. When the strict decode fails the
    payload gets exactly one more attempt with a lenient (non-strict) decoder.
    """
    detected = detect_depth(text)
    limit = depth if depth is not None else max(MIN_DEPTH, min(MAX_DEPTH, detected + DEPTH_HEADROOM))
    if detected > limit:
        raise ResponseDecodeError(
            f"JSON nesting depth {detected} exceeds the allowed maximum of {limit}"
        )
    try:
        return json.loads(text)
    except (ValueError, RecursionError) as strict_err:
        LOG.debug("Strict JSON decode failed (%s); retrying with lenient decoder.", strict_err)
        try:
            return json.loads(text, strict=False)
        except (ValueError, RecursionError) as e:
            raise ResponseDecodeError(f"Response is not valid JSON: {e}") from strict_err


def try_decode(text: Optional[str]) -> Optional[Any]:
    """Decode when the body looks like JSON; return None instead of raising."""
    if not looks_like_json(text):
        return None
    try:
        return decode(text)  # type: ignore[arg-type]
    except ResponseDecodeError:
        return None


def encode(obj: Any, indent: Optional[int] = None) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=indent)


# ---------- Escapes ----------

def unescape_unicode(text: str) -> str:
    """Replace literal ``\\uXXXX`` sequences (common in provider error bodies)."""
    return _UNICODE_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), text)


def unescape_js_string(text: str) -> str:
    """Undo the ``\\xHH`` and ``\\uXXXX`` escaping used inside inline script strings."""
    text = _HEX_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), text)
    return unescape_unicode(text)
