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

"""Process-wide session: identity tokens, workspace context, ephemeral API credential, service tokens.

``SessionManager`` is the only writer of session state. The request engine reads
tokens through ``auth_headers()`` and asks for ``refresh_if_needed()`` before each call.
"""

import base64
import os
import socket
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests

from cloud_auth_orchestrator import (
    AuthOrchestrator,
    IdentityTokens,
    post_token_request,
    tokens_from_response,
    utcnow,
)
from cloud_errors import (
    CloudSessionError,
    CredentialLimitError,
    RequestError,
    SessionExpiredError,
    TeardownError,
    TokenRefreshError,
    WorkspaceError,
)
from cloud_idp_common import MfaPrompts
from cloud_jwt import decode_jwt
from cloud_logging import get_logger
from cloud_request_engine import EndpointFamily, NormalizedResult, RequestEngine, RequestOptions
from cloud_secrets import SealedSecret, process_box
from cloud_settings import PlatformEndpoints, load_endpoints
from cloud_transport import new_http_session

LOG = get_logger("session")

SESSION_WINDOW = timedelta(minutes=120)
V1_REFRESH_MINUTES = 110
V2_REFRESH_SECONDS = 120
V1_TOKEN_LIFETIME = 7200
V2_TOKEN_LIFETIME = 900
CREDENTIAL_CEILING = 7
DEFAULT_CREDENTIAL_PREFIX = "cloudsession"
# v2 token endpoint answers these when the workspace has no v2 API
V2_UNSUPPORTED_STATUSES = {400, 404}


def b64_basic(client_id: str, client_secret: str) -> str:
    return base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()


# ---------- Data model ----------

@dataclass
class Workspace:
    id: str
    name: str
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None


@dataclass
class APICredential:
    id: str
    name: str
    client_id: str
    secret: SealedSecret
    workspace_id: str
    created_at: datetime


@dataclass
class ServiceToken:
    version: str
    access_token: str
    created_at: datetime
    expires_in: int

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.expires_in)

    def seconds_left(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()

    def __repr__(self) -> str:
        return f"ServiceToken(version={self.version}, access_token=***, expires_at={self.expires_at.isoformat()})"


@dataclass
class Session:
    identity: IdentityTokens
    username: str
    display_name: Optional[str] = None
    workspace: Optional[Workspace] = None
    workspaces_count: int = 0
    credentials: List[APICredential] = field(default_factory=list)
    service_tokens: Dict[str, ServiceToken] = field(default_factory=dict)
    cookie: Optional[str] = None
    v2_supported: bool = True

    @property
    def authoritative_token(self) -> Optional[ServiceToken]:
        return self.service_tokens.get("v2") or self.service_tokens.get("v1")

    @property
    def expires_at(self) -> datetime:
        return self.identity.created_at + SESSION_WINDOW


def needs_refresh(token: ServiceToken, now: datetime) -> bool:
    if token.version == "v2":
        return token.seconds_left(now) <= V2_REFRESH_SECONDS
    return token.seconds_left(now) / 60.0 <= V1_REFRESH_MINUTES


def credential_name(prefix: str, now: datetime, hostname: Optional[str] = None, pid: Optional[int] = None) -> str:
    host = (hostname or socket.gethostname()).split(".")[0] or "host"
    host = "".join(c if c.isalnum() or c == "-" else "-" for c in host)
    return f"{prefix}_{host}_{pid if pid is not None else os.getpid()}_{now.strftime('%Y%m%d%H%M%S')}"


def session_cookie(headers: dict) -> Optional[str]:
    raw = headers.get("Set-Cookie") or headers.get("set-cookie")
    if not raw:
        return None
    return raw.split(";", 1)[0].strip() or None


def _workspace_from(item: dict) -> Optional[Workspace]:
    ws_id = item.get("platform_customer_id") or item.get("customer_id") or item.get("id")
    name = item.get("company_name") or item.get("name") or item.get("account_name")
    if not ws_id:
        return None
    return Workspace(id=str(ws_id), name=str(name or ws_id), organization_id=item.get("organization_id"))


class SessionManager:
    def __init__(
        self,
        endpoints: Optional[PlatformEndpoints] = None,
        http: Optional[requests.Session] = None,
        orchestrator: Optional[AuthOrchestrator] = None,
        prompts: Optional[MfaPrompts] = None,
        credential_prefix: str = DEFAULT_CREDENTIAL_PREFIX,
        max_retries: int = 5,
        retry_delay: float = 1.0,
        page_size: int = 100,
        poll_interval: float = 3.0,
        poll_timeout: float = 120.0,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.http = http or new_http_session()
        self.endpoints = endpoints or load_endpoints(self.http)
        self.orchestrator = orchestrator or AuthOrchestrator(
            self.endpoints, http=self.http, prompts=prompts, poll_interval=poll_interval,
            poll_timeout=poll_timeout, now=now, sleep=sleep,
        )
        self.engine = RequestEngine(self.endpoints, credentials=self, http=self.http, max_retries=max_retries,
                                    retry_delay=retry_delay, page_size=page_size, sleep=sleep)
        self.credential_prefix = credential_prefix
        self.now = now
        self.session: Optional[Session] = None
        self._lock = threading.RLock()

    # ---------- engine-facing ----------

    def auth_headers(self, family: EndpointFamily) -> dict:
        with self._lock:
            s = self.session
            if s is None:
                return {}
            if family is EndpointFamily.PLATFORM_IDENTITY:
                return {"Cookie": s.cookie} if s.cookie else {}
            if family is EndpointFamily.FEDERATED_IDENTITY:
                return {"Authorization": f"Bearer {s.identity.access_token}"}
            token = s.authoritative_token
            if token is None:
                raise SessionExpiredError("No service token is available for this session. Run connect again.")
            return {"Authorization": f"Bearer {token.access_token}"}

    def request(self, uri: str, method: str = "GET", body: Any = None,
                options: Optional[RequestOptions] = None) -> NormalizedResult:
        return self.engine.execute(uri, method, body, options)

    def _call(self, uri: str, method: str = "GET", body: Any = None, **opts) -> NormalizedResult:
        return self.engine.execute(uri, method, body, RequestOptions(skip_refresh=True, **opts))

    # ---------- connect / establish ----------

    def connect(self, username: str, password: Optional[str] = None, workspace: Optional[str] = None,
                sso: bool = False, remove_existing_credentials: bool = False) -> Session:
        if self.session is not None:
            LOG.info("Replacing the existing session for %s", self.session.username)
            self.tear_down()
        tokens = self.orchestrator.authenticate(username, password=password, sso=sso)
        return self.establish_session(tokens, workspace, username=username,
                                      remove_existing_credentials=remove_existing_credentials)

    def establish_session(self, tokens: IdentityTokens, workspace_name: Optional[str] = None,
                          username: Optional[str] = None, remove_existing_credentials: bool = False) -> Session:
        claims = decode_jwt(tokens.id_token) if tokens.id_token else None
        user = username or (claims.get("email") if claims else None) or "unknown"
        display = None
        if claims:
            display = claims.get("name") or " ".join(
                p for p in (claims.get("given_name"), claims.get("family_name")) if p) or None
        with self._lock:
            self.session = Session(identity=tokens, username=user, display_name=display)
            try:
                self._open_platform_session(tokens)
                workspaces = self.list_workspaces()
                self.session.workspaces_count = len(workspaces)
                ws = self._resolve_workspace(workspaces, workspace_name)
                self._enter_workspace(ws, remove_existing_credentials)
            except Exception:
                # no credential created by a failed connect outlives it
                self._remove_credentials()
                self.session = None
                raise
            LOG.info("Session established for %s in workspace %s (%s); service tokens: %s",
                     user, ws.name, ws.id, ", ".join(sorted(self.session.service_tokens)) or "none")
            return self.session

    def _open_platform_session(self, tokens: IdentityTokens) -> None:
        res = self._call(self.endpoints.session_url, "POST", {},
                         headers={"Authorization": f"Bearer {tokens.access_token}"})
        cookie = session_cookie(res.headers)
        if cookie is None:
            raise WorkspaceError("The platform did not issue a session cookie; the identity may lack platform access.")
        self.session.cookie = cookie

    def list_workspaces(self) -> List[Workspace]:
        res = self._call(self.endpoints.workspaces_url)
        out = []
        for item in res.items:
            if isinstance(item, dict):
                ws = _workspace_from(item)
                if ws is not None:
                    out.append(ws)
        return out

    @staticmethod
    def _resolve_workspace(workspaces: List[Workspace], name: Optional[str]) -> Workspace:
        if not workspaces:
            raise WorkspaceError("No workspace is visible to this account. Ask a workspace admin to invite you.")
        if name:
            wanted = name.strip().lower()
            for ws in workspaces:
                if ws.name.lower() == wanted or ws.id.lower() == wanted:
                    return ws
            raise WorkspaceError(
                f"Workspace '{name}' was not found or is not permitted for this account. "
                f"Visible workspaces: {', '.join(w.name for w in workspaces)}"
            )
        if len(workspaces) == 1:
            return workspaces[0]
        raise WorkspaceError(
            f"{len(workspaces)} workspaces are visible; name one of: {', '.join(w.name for w in workspaces)}"
        )

    def _load_workspace(self, ws: Workspace) -> None:
        res = self._call(self.endpoints.load_account_url(ws.id))
        cookie = session_cookie(res.headers)
        if cookie:
            self.session.cookie = cookie
        self.session.workspace = ws

    # ---------- API credentials ----------

    def _list_credentials(self) -> list:
        res = self._call(self.endpoints.credentials_url)
        return [c for c in res.items if isinstance(c, dict)]

    def _delete_credential(self, credential_id: str) -> None:
        self._call(self.endpoints.credential_url(credential_id), "DELETE")

    def _provision_credential(self, ws: Workspace, remove_existing: bool) -> APICredential:
        existing = self._list_credentials()
        if remove_existing:
            prefix = self.credential_prefix + "_"
            for c in list(existing):
                cname = c.get("credential_name") or c.get("name") or ""
                cid = c.get("id") or c.get("credential_id")
                if cname.startswith(prefix) and cid:
                    LOG.info("Removing previous API credential %s", cname)
                    self._delete_credential(str(cid))
                    existing.remove(c)
        if len(existing) >= CREDENTIAL_CEILING:
            raise CredentialLimitError(
                f"This user already has {len(existing)} API credentials (limit {CREDENTIAL_CEILING}). "
                "Delete unused credentials or reconnect with remove_existing_credentials=True."
            )
        now = self.now()
        name = credential_name(self.credential_prefix, now)
        res = self._call(self.endpoints.credentials_url, "POST", {"credential_name": name, "workspace_id": ws.id})
        data = res.data if isinstance(res.data, dict) else {}
        if not data.get("client_id") or not data.get("client_secret"):
            raise WorkspaceError("Credential creation returned no client id/secret; the role may not allow API access.")
        cred = APICredential(
            id=str(data.get("id") or data.get("credential_id") or data["client_id"]),
            name=name,
            client_id=data["client_id"],
            secret=process_box().seal(data["client_secret"]),
            workspace_id=ws.id,
            created_at=now,
        )
        self.session.credentials.append(cred)
        LOG.info("Created API credential %s", name)
        return cred

    def _remove_credentials(self) -> List[CloudSessionError]:
        """Delete every credential of the session, one at a time.

        A credential whose delete fails stays on the session so a later teardown can
        retry it; the failures are logged and returned.
        """
        failures = []
        for cred in list(self.session.credentials):
            try:
                self._delete_credential(cred.id)
            except CloudSessionError as e:
                LOG.warning("Could not delete API credential %s: %s", cred.name, e)
                failures.append(e)
                continue
            self.session.credentials.remove(cred)
            LOG.info("Deleted API credential %s", cred.name)
        return failures

    # ---------- service tokens ----------

    def _exchange(self, cred: APICredential, version: str) -> ServiceToken:
        if version == "v2":
            url = self.endpoints.v2_token_url(cred.workspace_id)
            default_lifetime = V2_TOKEN_LIFETIME
        else:
            url = self.endpoints.token_url
            default_lifetime = V1_TOKEN_LIFETIME
        headers = {"Authorization": "Basic " + b64_basic(cred.client_id, process_box().reveal(cred.secret))}
        res = self._call(url, "POST", {"grant_type": "client_credentials"}, form=True, headers=headers)
        data = res.data if isinstance(res.data, dict) else {}
        if not data.get("access_token"):
            raise TokenRefreshError(f"{version} token endpoint returned no access_token")
        return ServiceToken(version=version, access_token=data["access_token"], created_at=self.now(),
                            expires_in=int(data.get("expires_in") or default_lifetime))

    def _exchange_all(self) -> None:
        """Exchange the current credential for v1 and (when available) v2 service tokens."""
        s = self.session
        if not s.credentials:
            raise TokenRefreshError("No API credential to exchange; switch workspace or reconnect.")
        cred = s.credentials[-1]
        errors = {}
        fresh = {}
        for version in ("v1", "v2"):
            if version == "v2" and not s.v2_supported:
                continue
            try:
                fresh[version] = self._exchange(cred, version)
            except RequestError as e:
                if version == "v2" and e.status_code in V2_UNSUPPORTED_STATUSES:
                    LOG.info("The workspace does not offer v2 service tokens; using v1 only.")
                    s.v2_supported = False
                    continue
                errors[version] = e
            except TokenRefreshError as e:
                errors[version] = e
        if not fresh:
            detail = "; ".join(f"{v}: {e}" for v, e in errors.items())
            raise TokenRefreshError(f"Could not obtain any service token ({detail})")
        for version, e in errors.items():
            LOG.warning("%s service token refresh failed (%s); continuing without it.", version, e)
            s.service_tokens.pop(version, None)
        s.service_tokens.update(fresh)

    def _load_organization(self) -> None:
        s = self.session
        if "v2" not in s.service_tokens or s.workspace is None:
            return
        try:
            res = self._call(self.endpoints.organizations_url)
        except CloudSessionError as e:
            LOG.warning("Could not read organization details: %s", e)
            return
        orgs = [o for o in res.items if isinstance(o, dict)]
        if orgs:
            s.workspace.organization_id = str(orgs[0].get("id") or s.workspace.organization_id or "") or None
            s.workspace.organization_name = orgs[0].get("name")

    # ---------- lifecycle ----------

    def _enter_workspace(self, ws: Workspace, remove_existing: bool = False) -> None:
        s = self.session
        s.service_tokens.clear()
        s.v2_supported = True
        self._load_workspace(ws)
        self._provision_credential(ws, remove_existing)
        self._exchange_all()
        self._load_organization()

    def switch_workspace(self, name: str) -> Session:
        """Move the session to workspace ``name``.

        If the new workspace cannot be entered, the session goes back to the previous
        one with a fresh credential. When that fails too the session is closed, so it
        never remains in a workspace without a usable credential.
        """
        with self._lock:
            s = self._require_session()
            target = self._resolve_workspace(self.list_workspaces(), name)
            previous = s.workspace
            self._remove_credentials()
            try:
                self._enter_workspace(target)
            except Exception as e:
                LOG.warning("Could not switch to workspace %s (%s); returning to %s.", target.name, e, previous.name)
                self._remove_credentials()
                try:
                    self._enter_workspace(previous)
                except CloudSessionError as restore_error:
                    LOG.error("Could not return to workspace %s (%s); the session is closed.",
                              previous.name, restore_error)
                    self._remove_credentials()
                    self.session = None
                raise
            LOG.info("Switched to workspace %s (%s)", target.name, target.id)
            return s

    def _require_session(self) -> Session:
        s = self.session
        if s is None:
            raise SessionExpiredError("No active session. Run connect first.")
        if self.now() >= s.expires_at:
            raise SessionExpiredError(
                f"The session expired at {s.expires_at.isoformat()}. Run connect again to re-authenticate."
            )
        return s

    def refresh_if_needed(self, force: bool = False) -> None:
        with self._lock:
            s = self._require_session()
            token = s.authoritative_token
            if not force and token is not None and not needs_refresh(token, self.now()):
                return
            LOG.info("Refreshing session tokens (forced=%s)", force)
            self._refresh_identity(s)
            self._load_workspace(s.workspace)
            self._exchange_all()

    def _refresh_identity(self, s: Session) -> None:
        if not s.identity.refresh_token:
            LOG.debug("No identity refresh token; keeping the current identity token.")
            return
        data = {
            "grant_type": "refresh_token",
            "refresh_token": s.identity.refresh_token,
            "client_id": self.endpoints.client_id,
        }
        try:
            tok = post_token_request(self.http, self.endpoints.token_url, data, "refresh")
        except CloudSessionError as e:
            raise TokenRefreshError(f"Identity token refresh failed: {e}") from e
        tok.setdefault("refresh_token", s.identity.refresh_token)
        tok.setdefault("id_token", s.identity.id_token)
        s.identity = tokens_from_response(tok, self.now())

    def tear_down(self) -> None:
        with self._lock:
            s = self.session
            if s is None:
                LOG.warning("No active session to tear down.")
                return
            if self.now() >= s.expires_at:
                LOG.warning("Session already expired at %s; nothing to tear down server-side.", s.expires_at.isoformat())
                self.session = None
                return
            failures = [("delete API credentials", e) for e in self._remove_credentials()]
            for step, action in (
                ("end platform session", lambda: self._call(self.endpoints.end_session_url, "POST", {})),
                ("revoke identity token", lambda: self._revoke(s.identity)),
            ):
                try:
                    action()
                except CloudSessionError as e:
                    LOG.warning("Teardown step '%s' failed: %s", step, e)
                    failures.append((step, e))
            self.session = None
            if failures:
                raise TeardownError(failures) from failures[0][1]
            LOG.info("Session for %s torn down.", s.username)

    disconnect = tear_down

    def _revoke(self, identity: IdentityTokens) -> None:
        token = identity.refresh_token or identity.access_token
        hint = "refresh_token" if identity.refresh_token else "access_token"
        self._call(self.endpoints.revocation_url, "POST",
                   {"token": token, "token_type_hint": hint, "client_id": self.endpoints.client_id}, form=True)
