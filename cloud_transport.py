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

import socket
import ssl
from typing import Callable, Iterable
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.ssl_ import create_urllib3_context

from cloud_errors import ConnectivityError
from cloud_logging import get_logger

LOG = get_logger("transport")

USER_AGENT = "cloud-session-tools/1.0 (+python-requests)"
# Browser-like UA for IdP pages that branch on it
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
REACHABILITY_TIMEOUT = 5.0


# ---------- TLS / HTTPS enforcement ----------

def tls12_context() -> ssl.SSLContext:
    ctx = create_urllib3_context()
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    return ctx


class Tls12Adapter(HTTPAdapter):
    """HTTPAdapter whose pools refuse anything older than TLS 1.2."""

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = tls12_context()
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["ssl_context"] = tls12_context()
        return super().proxy_manager_for(proxy, **proxy_kwargs)


class PlainHttpRefusingAdapter(HTTPAdapter):
    def send(self, request, **kwargs):
        raise ConnectivityError(f"Refusing to send a request over plain HTTP: {request.url}")


def ensure_https(url: str) -> str:
    if urlparse(url).scheme != "https":
        raise ConnectivityError(f"Only HTTPS endpoints are supported: {url}")
    return url


def new_http_session(browser_like: bool = False) -> requests.Session:
    s = requests.Session()
    s.mount("https://", Tls12Adapter())
    s.mount("http://", PlainHttpRefusingAdapter())
    s.headers["User-Agent"] = BROWSER_USER_AGENT if browser_like else USER_AGENT
    return s


# ---------- Reachability ----------

def check_reachability(
    hosts: Iterable[str],
    port: int = 443,
    timeout: float = REACHABILITY_TIMEOUT,
    resolver: Callable = socket.getaddrinfo,
    connector: Callable = socket.create_connection,
) -> None:
    """Resolve and open a TCP connection to every host; raise ConnectivityError on the first failure."""
    for host in hosts:
        try:
            resolver(host, port)
        except (socket.gaierror, OSError) as e:
            raise ConnectivityError(
                f"DNS resolution failed for {host}: {e}. Check your network, proxy and DNS settings."
            ) from e
        try:
            conn = connector((host, port), timeout)
        except OSError as e:
            raise ConnectivityError(
                f"Cannot open a TCP connection to {host}:{port}: {e}. Check firewall or proxy settings."
            ) from e
        try:
            conn.close()
        except OSError:
            pass
        LOG.debug("Reachability check passed for %s:%d", host, port)


def host_of(url: str) -> str:
    return (urlparse(url).hostname or "").lower()
