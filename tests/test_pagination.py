from urllib.parse import parse_qs, urlparse

import pytest

from cloud_errors import RequestError
from cloud_pagination import PageShape, inspect_page, merge_pages, page_count
from cloud_request_engine import RequestEngine, RequestOptions
from cloud_settings import PlatformEndpoints
from fakes import FakeClock, FakeResponse, FakeSession

SERVERS = "https://global.api.greenlake.hpe.com/compute-ops/v1/servers"
ACCOUNTS = "https://aquila-user-api.common.cloud.hpe.com/accounts/ui/v1/customer/list-accounts"


def items_total_pages(total, fail_offsets=None):
    """Shape A responder slicing ``total`` synthetic items by the offset/limit query."""
    fail_offsets = fail_offsets or {}

    def respond(method, url, kwargs):
        q = parse_qs(urlparse(url).query)
        offset, limit = int(q["offset"][0]), int(q["limit"][0])
        if offset in fail_offsets:
            return FakeResponse(fail_offsets[offset], body={"message": "page unavailable"})
        items = [{"id": i} for i in range(offset, min(offset + limit, total))]
        return FakeResponse(200, body={"items": items, "count": len(items), "offset": offset, "total": total})

    return respond


def make_engine(http, **kwargs):
    clock = FakeClock()
    return RequestEngine(PlatformEndpoints(), http=http, sleep=clock.sleep, **kwargs), clock


def offsets(http):
    return [c.query["offset"] for c in http.calls]


# Test intent: the number of pages is the ceiling of total/page size, zero for an empty listing.
def test_page_count():
    assert page_count(0) == 0
    assert page_count(1) == 1
    assert page_count(100) == 1
    assert page_count(101) == 2
    assert page_count(250, 100) == 3


# Test intent: both envelope shapes are recognized; anything else is a scalar payload.
def test_inspect_page_shapes():
    assert inspect_page({"items": [], "total": 0}).shape is PageShape.ITEMS_TOTAL
    info = inspect_page({"customers": [{}], "pagination": {"total_count": 7}})
    assert info.shape is PageShape.PAGINATION_BLOCK
    assert info.collection_key == "customers"
    assert info.total == 7
    assert inspect_page({"id": "x"}).shape is PageShape.SCALAR
    assert inspect_page([1, 2]).shape is PageShape.SCALAR


# Test intent: a declared total of 0 yields a single request and an empty, complete result.
def test_zero_total_single_request():
    http = FakeSession().add("GET", SERVERS, items_total_pages(0))
    engine, _ = make_engine(http)
    result = engine.execute(SERVERS)
    assert len(http.calls) == 1
    assert result.items == []
    assert result.complete


# Test intent: 250 items at a page size of 100 take exactly three requests at offsets
# 0, 100 and 200, and the merged envelope reports the full count.
def test_250_items_three_pages():
    http = FakeSession().add("GET", SERVERS, items_total_pages(250))
    engine, _ = make_engine(http)
    result = engine.execute(SERVERS)
    assert offsets(http) == ["0", "100", "200"]
    assert all(c.query["limit"] == "100" for c in http.calls)
    assert len(result.items) == 250
    assert result.data == result.items
    assert result.page.envelope["count"] == 250
    assert [i["id"] for i in result.items] == list(range(250))


# Test intent: an exact multiple of the page size never requests an empty trailing page.
def test_exact_multiple_has_no_extra_page():
    http = FakeSession().add("GET", SERVERS, items_total_pages(200))
    engine, _ = make_engine(http)
    result = engine.execute(SERVERS)
    assert offsets(http) == ["0", "100"]
    assert len(result.items) == 200


# Test intent: a page that keeps failing with a non-critical status is recorded by its
# zero-based index and the rest of the listing is still returned.
def test_failed_page_is_recorded():
    http = FakeSession().add("GET", SERVERS, items_total_pages(250, fail_offsets={100: 500}))
    engine, clock = make_engine(http, max_retries=2)
    result = engine.execute(SERVERS)
    assert result.failed_pages == [1]
    assert not result.complete
    assert len(result.items) == 150
    assert offsets(http) == ["0", "100", "100", "200"]
    assert clock.sleeps == [1.0]


# Test intent: 401/403/404 on any page aborts the whole paginated call.
def test_critical_page_failure_aborts():
    http = FakeSession().add("GET", SERVERS, items_total_pages(250, fail_offsets={200: 403}))
    engine, _ = make_engine(http)
    with pytest.raises(RequestError) as exc:
        engine.execute(SERVERS)
    assert exc.value.status_code == 403


# Test intent: the pagination-block shape on the UI doorway uses offset/count_per_page and
# merges whatever the collection key is called.
def test_pagination_block_on_doorway():
    def respond(method, url, kwargs):
        q = parse_qs(urlparse(url).query)
        offset, size = int(q["offset"][0]), int(q["count_per_page"][0])
        rows = [{"platform_customer_id": f"ws-{i}"} for i in range(offset, min(offset + size, 150))]
        return FakeResponse(200, body={"customers": rows, "pagination": {"total_count": 150, "offset": offset}})

    http = FakeSession().add("GET", ACCOUNTS, respond)
    engine, _ = make_engine(http)
    result = engine.execute(ACCOUNTS)
    assert [c.query["offset"] for c in http.calls] == ["0", "100"]
    assert len(result.items) == 150
    assert result.page.collection_key == "customers"


# Test intent: an explicit page size in the caller's URI disables automatic pagination.
def test_explicit_limit_disables_pagination():
    http = FakeSession().add("GET", SERVERS, FakeResponse(200, body={"items": [{"id": 1}], "total": 500}))
    engine, _ = make_engine(http)
    result = engine.execute(SERVERS + "?limit=1")
    assert len(http.calls) == 1
    assert "offset" not in http.calls[0].query
    assert result.items == [{"id": 1}]


# Test intent: merge_pages merges every list field and records non-object pages as failed.
def test_merge_pages_direct():
    first = {"items": [1, 2], "total": 6, "count": 2, "warnings": ["w0"]}
    pages = {1: {"items": [3, 4], "warnings": ["w1"]}, 2: "garbage"}
    merged = merge_pages(first, lambda i: pages[i], page_size=2)
    assert merged.items == [1, 2, 3, 4]
    assert merged.envelope["warnings"] == ["w0", "w1"]
    assert merged.failed_pages == [2]
    assert first["items"] == [1, 2]
    assert merge_pages({"id": 1}, lambda i: None) is None


# Test intent: POST is only treated as a paginated read on the UI doorway when opted in.
def test_post_pagination_is_opt_in():
    def respond(method, url, kwargs):
        offset = int(parse_qs(urlparse(url).query).get("offset", ["0"])[0])
        rows = [{"n": i} for i in range(offset, min(offset + 100, 120))]
        return FakeResponse(200, body={"rows": rows, "pagination": {"total_count": 120}})

    http = FakeSession().add("POST", ACCOUNTS, respond)
    engine, _ = make_engine(http)
    plain = engine.execute(ACCOUNTS, "POST", {"filter": "x"})
    assert len(http.calls) == 1
    assert len(plain.items) == 100

    paged = engine.execute(ACCOUNTS, "POST", {"filter": "x"}, RequestOptions(paginate_post=True))
    assert len(http.calls) == 3
    assert len(paged.items) == 120


# Test intent: a page whose body looks like JSON but does not parse is recorded as failed
# instead of aborting the listing.
def test_undecodable_page_is_recorded():
    good = items_total_pages(250)

    def respond(method, url, kwargs):
        if parse_qs(urlparse(url).query)["offset"][0] == "100":
            return FakeResponse(200, text='{"items": [1,}', headers={"Content-Type": "application/json"})
        return good(method, url, kwargs)

    http = FakeSession().add("GET", SERVERS, respond)
    engine, _ = make_engine(http)
    result = engine.execute(SERVERS)
    assert result.failed_pages == [1]
    assert len(result.items) == 150
    assert offsets(http) == ["0", "100", "200"]
