import json

import pyotp
import pytest

from cloud_errors import (
    AuthFlowError,
    InvalidOtpError,
    MfaDeniedError,
    MfaTimeoutError,
    MfaUnsupportedError,
    SsoConfigurationError,
)
from cloud_idp_common import (
    IdpKind,
    MfaPrompts,
    SamlAssertion,
    detect_provider,
    follow_redirects,
    next_hop,
    parse_saml_form,
)
from cloud_idp_entra import EntraAdapter, is_kmsi_page, parse_config
from cloud_idp_okta import OktaAdapter
from cloud_idp_pingid import PingIdAdapter, find_flow_id, resolve_hosts
from fakes import FakeClock, FakeResponse, FakeSession, html, redirect

ACS = "https://auth.hpe.com/sso/saml2/0oa-acs"
SAML_PAGE = SamlAssertion(action=ACS, saml_response="PHNhbWxwOlJlc3BvbnNlLz4=", relay_state="rs-42").to_html()
TOTP_SEED = "JBSWY3DPEHPK3PXP"


def make(adapter_cls, http, notes=None, **prompt_kwargs):
    clock = FakeClock()
    notes = [] if notes is None else notes
    prompts = MfaPrompts(notify=notes.append, **prompt_kwargs)
    return adapter_cls(http, prompts, clock=clock, sleep=clock.sleep), clock


def assert_saml(assertion):
    assert assertion.action == ACS
    assert assertion.saml_response == "PHNhbWxwOlJlc3BvbnNlLz4="
    assert assertion.relay_state == "rs-42"
    assert assertion.form_payload() == {"SAMLResponse": "PHNhbWxwOlJlc3BvbnNlLz4=", "RelayState": "rs-42"}
    assert "PHNhbW" not in repr(assertion)


# ---------- detection ----------

# Test intent: provider detection follows URL host, then redirect target, then body
# keywords, then the SAML action host.
def test_detect_provider_priority():
    assert detect_provider("https://corp.okta.com/app/x") is IdpKind.OKTA
    assert detect_provider("https://login.microsoftonline.com/t/saml2") is IdpKind.ENTRA_ID
    assert detect_provider("https://auth.pingone.eu/env/as/authorize") is IdpKind.PING_ID
    # URL host wins over a body that mentions another provider
    assert detect_provider("https://corp.okta.com/x", body="$Config={}") is IdpKind.OKTA
    assert detect_provider("https://sso.corp.example/x", redirect_target="https://corp.oktapreview.com/y") is IdpKind.OKTA
    assert detect_provider("https://sso.corp.example/x", body="<script>$Config = {};</script>") is IdpKind.ENTRA_ID
    assert detect_provider("https://sso.corp.example/x", body="var stateToken = 'a';") is IdpKind.OKTA
    assert detect_provider("https://sso.corp.example/x", saml_action="https://login.microsoftonline.com/a") is IdpKind.ENTRA_ID
    assert detect_provider("https://sso.corp.example/x", body="<html>hello</html>") is IdpKind.NONE


# Test intent: the redirect walker handles HTTP, meta-refresh, JS and auto-submit hops,
# stops before requesting a matching URL, and gives up on loops.
def test_follow_redirects_hops_and_cap():
    http = (FakeSession()
            .add("GET", "https://a.example/1", redirect("/2"))
            .add("GET", "https://a.example/2", html('<meta http-equiv="refresh" content="0; url=https://a.example/3">'))
            .add("GET", "https://a.example/3", html("<script>window.location.href = 'https://a.example/4';</script>"))
            .add("GET", "https://a.example/4", html(
                '<body onload="document.forms[0].submit()"><form method="post" action="/5">'
                '<input name="wresult" value="x"/></form></body>'))
            .add("POST", "https://a.example/5", redirect("https://a.example/done?code=1")))
    final, history = follow_redirects(http, "https://a.example/1", stop=lambda u: "code=" in u)
    assert history[-1] == "https://a.example/done?code=1"
    assert [c.method for c in http.calls] == ["GET", "GET", "GET", "GET", "POST"]
    assert http.calls[-1].kwargs["data"] == {"wresult": "x"}

    loop = FakeSession().add("GET", "https://loop.example/", redirect("https://loop.example/"))
    with pytest.raises(AuthFlowError):
        follow_redirects(loop, "https://loop.example/", max_hops=5)
    assert len(loop.calls) == 5


# Test intent: a SAML POST-binding form is never mistaken for an auto-submit hop.
def test_saml_form_is_terminal():
    page = html(SAML_PAGE)
    page.url = "https://idp.example/sso"
    assert next_hop(page) is None
    assert_saml(parse_saml_form(SAML_PAGE))


# Test intent: TOTP codes come from the seed when one is configured, prompts are
# validated, and non-interactive mode refuses to prompt.
def test_mfa_prompts_otp_sources():
    assert pyotp.TOTP(TOTP_SEED).verify(MfaPrompts(otp_secret=TOTP_SEED).otp_code(), valid_window=1)
    assert MfaPrompts(secret_prompt=lambda m: " 654321 ").otp_code() == "654321"
    with pytest.raises(MfaUnsupportedError):
        MfaPrompts(secret_prompt=lambda m: "12ab").otp_code()
    with pytest.raises(MfaUnsupportedError):
        MfaPrompts(non_interactive=True).otp_code()


# ---------- Okta ----------

OKTA_TENANT = "https://corp.okta.com"
OKTA_SUCCESS = OKTA_TENANT + "/login/token/redirect?stateToken=ok"


def okta_session(answer_body=None):
    tenant = OKTA_TENANT
    if answer_body is None:
        answer_body = {"stateHandle": "o-4", "success": {"href": OKTA_SUCCESS}}
    return (FakeSession()
            .add("POST", tenant + "/idp/idx/introspect", FakeResponse(200, body={
                "stateHandle": "o-1",
                "remediation": {"value": [{"name": "identify", "value": [{"name": "identifier"}, {"name": "credentials"}]}]},
            }))
            .add("POST", tenant + "/idp/idx/identify", FakeResponse(200, body={
                "stateHandle": "o-2",
                "remediation": {"value": [{"name": "select-authenticator-authenticate"}]},
                "authenticators": {"value": [{"key": "google_otp", "id": "aut-g", "methods": [{"type": "otp"}]}]},
            }))
            .add("POST", tenant + "/idp/idx/challenge", FakeResponse(200, body={
                "stateHandle": "o-3",
                "remediation": {"value": [{"name": "challenge-authenticator"}]},
                "currentAuthenticator": {"value": {"key": "google_otp"}},
            }))
            .add("POST", tenant + "/idp/idx/challenge/answer", FakeResponse(200, body=answer_body))
            .add("GET", OKTA_SUCCESS, html(SAML_PAGE)))


# Test intent: a federated Okta tenant runs password + TOTP through IDX and its success
# redirect yields the SAML assertion.
def test_okta_adapter_totp_to_saml():
    http = okta_session()
    adapter, _ = make(OktaAdapter, http, otp_secret=TOTP_SEED)
    page = html("<script>var stateToken = 'okta\\x2Dst';</script>")
    page.url = "https://corp.okta.com/app/platform/sso/saml"

    assertion = adapter.authenticate({"response": page, "password": "pw"}, "dave@corp.example")

    assert_saml(assertion)
    identify = http.calls_to("https://corp.okta.com/idp/idx/identify")[0].json_body
    assert identify["credentials"] == {"passcode": "pw"}
    answer = http.calls_to("https://corp.okta.com/idp/idx/challenge/answer")[0].json_body
    assert answer["stateHandle"] == "o-3"
    assert len(answer["credentials"]["passcode"]) == 6


# Test intent: a rejected one-time code on the Okta tenant is reported as InvalidOtpError.
def test_okta_adapter_rejected_code():
    bad = {
        "stateHandle": "o-4",
        "remediation": {"value": [{"name": "challenge-authenticator", "value": [{
            "name": "credentials", "form": {"value": [{
                "name": "passcode",
                "messages": {"value": [{"message": "Invalid code", "i18n": {"key": "api.authn.error.PASSCODE_INVALID"},
                                        "class": "ERROR"}]},
            }]},
        }]}]},
    }
    http = okta_session(bad)
    adapter, _ = make(OktaAdapter, http, otp_secret=TOTP_SEED)
    page = html("var stateToken = 'x';")
    page.url = "https://corp.okta.com/app/platform/sso/saml"
    with pytest.raises(InvalidOtpError):
        adapter.authenticate({"response": page}, "dave@corp.example")


# ---------- Entra ID ----------

ENTRA = "https://login.microsoftonline.com"


def config_page(cfg):
    return html("<html><script>\n//<![CDATA[\n$Config=" + json.dumps(cfg) + ";\n//]]>\n</script></html>")


def entra_page():
    page = config_page({
        "sFT": "ft-1", "sCtx": "ctx-1", "canary": "can-1", "apiCanary": "api-1",
        "urlGetCredentialType": ENTRA + "/common/GetCredentialType?mkt=en-US",
        "urlPost": "/tenant/login", "correlationId": "corr-1", "sessionId": "sess-1",
        "hpgid": 1104, "hpgact": 1800,
    })
    page.url = ENTRA + "/tenant/saml2?SAMLRequest=abc"
    return page


# Test intent: Entra ID passwordless sign-in shows the number, polls the session state
# until approved, answers the Keep Me Signed In interstitial and returns the SAML form.
def test_entra_adapter_remote_ngc_with_kmsi():
    http = (FakeSession()
            .add("POST", ENTRA + "/common/GetCredentialType", FakeResponse(200, body={
                "IfExistsResult": 0, "FlowToken": "ft-2", "apiCanary": "api-2",
                "Credentials": {"RemoteNgcParams": {"SessionIdentifier": "sid-1", "Entropy": 37, "DefaultType": 1}},
            }))
            .add("POST", ENTRA + "/common/GetSessionState.srf",
                 FakeResponse(200, body={"AuthorizationState": 0}), FakeResponse(200, body={"AuthorizationState": 2}))
            .add("POST", ENTRA + "/tenant/login", config_page({
                "pgid": "KmsiInterrupt", "urlPost": "/kmsi", "sFT": "ft-3", "sCtx": "ctx-3", "canary": "can-3"}))
            .add("POST", ENTRA + "/kmsi", html(SAML_PAGE)))
    notes = []
    adapter, clock = make(EntraAdapter, http, notes=notes)

    assertion = adapter.authenticate({"response": entra_page()}, "Erin@Corp.Example")

    assert_saml(assertion)
    assert any("37" in n for n in notes)
    assert clock.sleeps == [3.0]
    cred_call = http.calls_to(ENTRA + "/common/GetCredentialType")[0]
    assert cred_call.kwargs["json"]["username"] == "erin@corp.example"
    assert cred_call.kwargs["headers"]["canary"] == "api-1"
    polls = http.calls_to(ENTRA + "/common/GetSessionState.srf")
    assert [p.kwargs["json"] for p in polls] == [{"DeviceCode": "sid-1"}] * 2
    login = http.calls_to(ENTRA + "/tenant/login")[0].kwargs["data"]
    assert login["psRNGCSLK"] == "sid-1"
    assert login["type"] == "22"
    assert login["flowToken"] == "ft-2"
    kmsi = http.calls_to(ENTRA + "/kmsi")[0].kwargs["data"]
    assert kmsi["type"] == "28"
    assert kmsi["flowToken"] == "ft-3"


# Test intent: a denied Authenticator request (AuthorizationState 1) stops the sign-in.
def test_entra_adapter_denied_after_begin_auth():
    http = (FakeSession()
            .add("POST", ENTRA + "/common/GetCredentialType", FakeResponse(200, body={"IfExistsResult": 0}))
            .add("POST", ENTRA + "/common/SAS/BeginAuth", FakeResponse(200, body={
                "Success": True, "SessionId": "sess-b", "Entropy": 0, "FlowToken": "ft-b", "Ctx": "ctx-b"}))
            .add("POST", ENTRA + "/common/GetSessionState.srf", FakeResponse(200, body={"AuthorizationState": 1})))
    adapter, _ = make(EntraAdapter, http)
    with pytest.raises(MfaDeniedError):
        adapter.authenticate({"response": entra_page()}, "erin@corp.example")
    begin = http.calls_to(ENTRA + "/common/SAS/BeginAuth")[0].kwargs["json"]
    assert begin["AuthMethodId"] == "PhoneAppNotification"
    assert http.calls_to(ENTRA + "/common/GetSessionState.srf")[0].kwargs["json"] == {"DeviceCode": "sess-b"}


# Test intent: Entra ID polling stops at its 120-poll ceiling with an MFA timeout.
def test_entra_adapter_poll_ceiling():
    http = (FakeSession()
            .add("POST", ENTRA + "/common/GetCredentialType", FakeResponse(200, body={
                "Credentials": {"RemoteNgcParams": {"SessionIdentifier": "sid-1", "Entropy": 12}}}))
            .add("POST", ENTRA + "/common/GetSessionState.srf", FakeResponse(200, body={"AuthorizationState": 0})))
    clock = FakeClock()
    adapter = EntraAdapter(http, MfaPrompts(notify=lambda m: None), poll_timeout=10_000, clock=clock, sleep=clock.sleep)
    with pytest.raises(MfaTimeoutError):
        adapter.authenticate({"response": entra_page()}, "erin@corp.example")
    assert len(http.calls_to(ENTRA + "/common/GetSessionState.srf")) == 120


# Test intent: the $Config parser and KMSI detector read the embedded page state.
def test_entra_config_helpers():
    page = config_page({"pgid": "KmsiInterrupt", "urlPost": "/kmsi"})
    cfg = parse_config(page.text)
    assert cfg["urlPost"] == "/kmsi"
    assert is_kmsi_page(cfg)
    assert not is_kmsi_page({"pgid": "Login", "urlPost": "/common/login"})
    assert parse_config("<html>no config</html>") is None


# ---------- PingID ----------

PING_ENV = "0f1e2d3c-4b5a-6978-8a9b-0c1d2e3f4a5b"
PING_AUTH = "https://auth.pingone.eu"
PING_PPM = "https://authenticator.pingone.eu/pingid/ppm/auth"


def ping_page(body="<html>PingOne</html>"):
    page = html(body)
    page.url = f"{PING_AUTH}/{PING_ENV}/saml20/idp/sso?flowId=flow-9"
    return page


# Test intent: PingOne hosts and the environment id are derived from the landing URL.
def test_ping_host_resolution():
    hosts = resolve_hosts(f"https://auth.pingone.eu/{PING_ENV}/saml20/idp/sso")
    assert hosts.region == "eu"
    assert hosts.environment_id == PING_ENV
    assert hosts.authenticator_base == "https://authenticator.pingone.eu"
    assert find_flow_id("https://x/y?flowId=abc", "") == "abc"
    assert find_flow_id("https://x/y", '{"flowId": "def-1"}') == "def-1"
    with pytest.raises(SsoConfigurationError):
        resolve_hosts("https://auth.pingone.eu/not-an-env/x")


# Test intent: PingID push with number matching is polled until approved and the
# callback yields the SAML form.
def test_pingid_adapter_push():
    http = (FakeSession()
            .add("POST", f"{PING_AUTH}/{PING_ENV}/flows/flow-9", FakeResponse(200, body={
                "status": "MFA_REQUIRED", "_embedded": {"ppm_request": "ppm-req-1"}}))
            .add("POST", PING_PPM, FakeResponse(200, body={"status": "PENDING", "sessionId": "ps-1", "numberMatching": 58}))
            .add("POST", PING_PPM + "/status",
                 FakeResponse(200, body={"status": "PENDING"}),
                 FakeResponse(200, body={"status": "APPROVED", "ppm_response": "ppm-resp-1"}))
            .add("POST", f"{PING_AUTH}/{PING_ENV}/rp/callback/pingid", html(SAML_PAGE)))
    notes = []
    adapter, clock = make(PingIdAdapter, http, notes=notes)

    assertion = adapter.authenticate({"response": ping_page()}, "frank@corp.example")

    assert_saml(assertion)
    assert any("58" in n for n in notes)
    lookup = http.calls_to(f"{PING_AUTH}/{PING_ENV}/flows/flow-9")[0]
    assert lookup.kwargs["headers"]["Content-Type"] == "application/vnd.pingidentity.user.lookup+json"
    assert json.loads(lookup.kwargs["data"]) == {"username": "frank@corp.example"}
    callback = http.calls_to(f"{PING_AUTH}/{PING_ENV}/rp/callback/pingid")[0].kwargs["data"]
    assert callback == {"ppm_request": "ppm-req-1", "ppm_response": "ppm-resp-1"}
    assert len(clock.sleeps) == 1


# Test intent: a PingOne policy that only asks for a password is a configuration error.
def test_pingid_password_only_policy():
    http = FakeSession().add("POST", f"{PING_AUTH}/{PING_ENV}/flows/flow-9",
                             FakeResponse(200, body={"status": "PASSWORD_REQUIRED"}))
    adapter, _ = make(PingIdAdapter, http)
    with pytest.raises(SsoConfigurationError):
        adapter.authenticate({"response": ping_page()}, "frank@corp.example")


# Test intent: a policy that switches to a one-time code prompts once and reports a
# rejected code as InvalidOtpError.
def test_pingid_otp_rejected():
    http = (FakeSession()
            .add("POST", f"{PING_AUTH}/{PING_ENV}/flows/flow-9", FakeResponse(200, body={"ppm_request": "r"}))
            .add("POST", PING_PPM, FakeResponse(200, body={"status": "POLICY_OTP", "sessionId": "ps-2"}))
            .add("POST", PING_PPM + "/otp", FakeResponse(200, body={"status": "INVALID_OTP"})))
    adapter, _ = make(PingIdAdapter, http, secret_prompt=lambda m: "112233")
    with pytest.raises(InvalidOtpError):
        adapter.authenticate({"response": ping_page()}, "frank@corp.example")
    assert http.calls_to(PING_PPM + "/otp")[0].kwargs["data"]["otp"] == "112233"


# Test intent: a PingID push that stays PENDING ends in MfaTimeoutError at the poll
# deadline and never reaches the callback.
def test_pingid_push_times_out():
    http = (FakeSession()
            .add("POST", f"{PING_AUTH}/{PING_ENV}/flows/flow-9", FakeResponse(200, body={"ppm_request": "r"}))
            .add("POST", PING_PPM, FakeResponse(200, body={"status": "PENDING", "sessionId": "ps-3"}))
            .add("POST", PING_PPM + "/status", FakeResponse(200, body={"status": "PENDING"})))
    clock = FakeClock()
    adapter = PingIdAdapter(http, MfaPrompts(notify=lambda m: None), poll_interval=3, poll_timeout=10,
                            clock=clock, sleep=clock.sleep)

    with pytest.raises(MfaTimeoutError):
        adapter.authenticate({"response": ping_page()}, "frank@corp.example")

    assert len(http.calls_to(PING_PPM + "/status")) == 4
    assert clock.sleeps == [3, 3, 3]
    assert not http.calls_to(f"{PING_AUTH}/{PING_ENV}/rp/callback/pingid")
