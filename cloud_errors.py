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

"""Exception hierarchy shared by the authentication, session and request layers.

Every fatal condition surfaces as a subclass of ``CloudSessionError`` so callers can
catch the whole family or a single classified failure. Messages never carry tokens,
passwords or client secrets.
"""

from typing import Optional


class CloudSessionError(Exception):
    """Base class for every error raised by the cloud session tooling."""


# ---------- Connectivity ----------

class ConnectivityError(CloudSessionError):
    """DNS or TCP reachability to a core platform host failed."""


# ---------- Credentials / authorization ----------

class AuthenticationError(CloudSessionError):
    pass


class WrongPasswordError(AuthenticationError):
    pass


class PasswordExpiredError(AuthenticationError):
    pass


class InsufficientPermissionsError(AuthenticationError):
    pass


class InvalidTokenError(AuthenticationError):
    pass


# ---------- MFA ----------

class MfaError(CloudSessionError):
    pass


class MfaDeniedError(MfaError):
    pass


class MfaTimeoutError(MfaError):
    pass


class MfaUnsupportedError(MfaError):
    pass


class AuthenticatorOutdatedError(MfaError):
    pass


class MfaEnrollmentRequiredError(MfaError):
    pass


class InvalidOtpError(MfaError):
    pass


# ---------- SSO / flow ----------

class SsoConfigurationError(CloudSessionError):
    pass


class AuthFlowError(CloudSessionError):
    """An authentication step failed in a way no specific error describes.

    ``step`` names the orchestrator or adapter step, ``provider`` the identity provider
    in play, and ``raw_response`` the (already redacted) provider payload for diagnostics.
    """

    def __init__(self, message: str, step: Optional[str] = None, provider: Optional[str] = None,
                 raw_response: Optional[str] = None):
        self.step = step
        self.provider = provider
        self.raw_response = raw_response
        parts = [message]
        if step:
            parts.append(f"step={step}")
        if provider:
            parts.append(f"provider={provider}")
        text = " | ".join(parts)
        if raw_response:
            text += f"\nProvider response: {raw_response}"
        super().__init__(text)


# ---------- Session ----------

class SessionExpiredError(CloudSessionError):
    """The session is no longer valid; the caller must reconnect."""

    def __init__(self, message: str = "Session expired or unauthorized. Run connect again to re-authenticate."):
        super().__init__(message)


class WorkspaceError(CloudSessionError):
    pass


class CredentialLimitError(CloudSessionError):
    pass


class TokenRefreshError(CloudSessionError):
    pass


class TeardownError(CloudSessionError):
    """One or more server-side teardown steps failed; ``failures`` pairs each step with its error.

    Local session state is already cleared when this is raised.
    """

    def __init__(self, failures: list):
        self.failures = list(failures)
        super().__init__("Teardown incomplete: " + "; ".join(f"{step}: {err}" for step, err in self.failures))


# ---------- Request engine ----------

class RequestError(CloudSessionError):
    """A fatal HTTP failure with the composed, human-readable provider message."""

    def __init__(self, message: str, status_code: Optional[int] = None, issues: Optional[list] = None,
                 uri: Optional[str] = None):
        self.status_code = status_code
        self.issues = list(issues or [])
        self.uri = uri
        super().__init__(message)


class TransientHttpError(RequestError):
    """Transient failures persisted after the retry budget was spent."""


class ResponseDecodeError(CloudSessionError):
    pass
