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

"""Normalization and merging of the two upstream pagination envelopes.

Shape A (``ITEMS_TOTAL``):      {"items": [...], "count": n, "offset": o, "total": t}
Shape B (``PAGINATION_BLOCK``): {"<anything>": [...], "pagination": {"total_count": t, "count_per_page": n}}
"""

import copy
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from cloud_errors import RequestError, ResponseDecodeError
from cloud_http_classifier import CRITICAL_PAGE_STATUS_CODES
from cloud_logging import get_logger

LOG = get_logger("pagination")

DEFAULT_PAGE_SIZE = 100


class PageShape(Enum):
    ITEMS_TOTAL = "items-total"
    PAGINATION_BLOCK = "pagination-block"
    SCALAR = "scalar"


@dataclass
class PageInfo:
    shape: PageShape
    collection_key: Optional[str] = None
    total: int = 0


@dataclass
class PaginatedResponse:
    items: list
    total: int
    shape: PageShape
    collection_key: Optional[str]
    envelope: dict
    failed_pages: list = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)

    @property
    def complete(self) -> bool:
        return not self.failed_pages


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def inspect_page(payload: Any) -> PageInfo:
    if not isinstance(payload, dict):
        return PageInfo(PageShape.SCALAR)
    total = _as_int(payload.get("total"))
    if isinstance(payload.get("items"), list) and total is not None:
        return PageInfo(PageShape.ITEMS_TOTAL, "items", total)
    pagination = payload.get("pagination")
    if isinstance(pagination, dict):
        block_total = _as_int(pagination.get("total_count"))
        if block_total is not None:
            for key, value in payload.items():
                if key != "pagination" and isinstance(value, list):
                    return PageInfo(PageShape.PAGINATION_BLOCK, key, block_total)
    return PageInfo(PageShape.SCALAR)


def page_count(total: int, page_size: int = DEFAULT_PAGE_SIZE) -> int:
    if total <= 0:
        return 0
    return math.ceil(total / page_size)


def _merge_into(envelope: dict, page: dict) -> None:
    # every list-valued field is merged, not only the main collection
    for key, value in envelope.items():
        if isinstance(value, list):
            more = page.get(key)
            if isinstance(more, list):
                value.extend(more)


def merge_pages(
    first_page: dict,
    fetch_page: Callable[[int], Any],
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Optional[PaginatedResponse]:
    """Fetch and merge the pages after ``first_page``.

    ``fetch_page(index)`` returns the decoded payload of zero-based page ``index``.
    A ``RequestError`` whose status is 401/403/404 aborts the merge; any other failed
    page, including one whose body does not decode, is recorded in ``failed_pages``
    and skipped. Returns None when the first page is not a recognized paginated envelope.
    """
    info = inspect_page(first_page)
    if info.shape is PageShape.SCALAR:
        return None

    envelope = copy.deepcopy(first_page)
    pages = page_count(info.total, page_size)
    failed = []
    for index in range(1, pages):
        try:
            page = fetch_page(index)
        except (RequestError, ResponseDecodeError) as e:
            if getattr(e, "status_code", None) in CRITICAL_PAGE_STATUS_CODES:
                raise
            LOG.warning("Page %d of %d failed (%s); continuing without it.", index + 1, pages, e)
            failed.append(index)
            continue
        if not isinstance(page, dict):
            LOG.warning("Page %d of %d returned a non-object payload; skipping it.", index + 1, pages)
            failed.append(index)
            continue
        _merge_into(envelope, page)

    items = envelope.get(info.collection_key, [])
    if info.shape is PageShape.ITEMS_TOTAL and "count" in envelope:
        envelope["count"] = len(items)
    if failed:
        LOG.warning("Paginated result is incomplete: %d of %d item(s) retrieved; failed page index(es): %s",
                    len(items), info.total, ", ".join(str(i) for i in failed))
    elif len(items) != info.total:
        LOG.warning("Merged %d item(s) but the service declared a total of %d.", len(items), info.total)
    return PaginatedResponse(
        items=items,
        total=info.total,
        shape=info.shape,
        collection_key=info.collection_key,
        envelope=envelope,
        failed_pages=failed,
    )
