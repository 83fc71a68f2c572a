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

from cloud_idp_common import (
    Challenge,
    IdpAdapter,
    IdpKind,
    PollStatus,
    SamlAssertion,
    follow_redirects,
    parse_saml_form,
)
from cloud_idx import IdxClient, IdxFlow, IdxResponse, extract_state_token
from cloud_logging import get_logger
from cloud_transport import host_of

LOG = get_logger("idp.okta")


class OktaAdapter(IdpAdapter):
    """Federated Okta tenant: IDX transaction on the tenant host, then ``success.href`` to the SAML form.

    ``context`` needs ``response`` (the tenant sign-in page reached by the redirect
    chain) and may carry ``password``.
    """

    kind = IdpKind.OKTA

    def initiate(self, context: dict, identifier: str) -> Challenge:
        page = context["response"]
        base = f"https://{host_of(page.url)}"
        state_token = extract_state_token(page.text)
        if not state_token:
            raise self.fail("No state token found on the Okta sign-in page", step="okta:state-token")

        flow = IdxFlow(
            IdxClient(base, self.http, provider=self.kind.value),
            password=context.get("password"),
            otp_source=self.prompts.otp_code,
            notify=self.prompts.notify,
            poll_interval=self.poll_interval,
            poll_timeout=self.poll_timeout,
            clock=self.clock,
            sleep=self.sleep,
        )
        idx = flow.advance(flow.start(state_token, identifier))
        challenge = Challenge(
            provider=self.kind,
            method=flow.current.method if flow.current else "password",
            context={"flow": flow, "idx": idx},
        )
        challenge.status = self._status(flow, challenge)
        return challenge

    def _status(self, flow: IdxFlow, challenge: Challenge) -> PollStatus:
        idx: IdxResponse = challenge.context["idx"]
        if idx.success_href:
            return PollStatus.APPROVED
        if idx.poll_pending:
            return PollStatus.PENDING
        # push approved, but the policy asks for another factor
        idx = flow.advance(idx)
        challenge.context["idx"] = idx
        if idx.success_href:
            return PollStatus.APPROVED
        if idx.poll_pending:
            return PollStatus.PENDING
        raise self.fail("Okta transaction ended without success", step="okta:advance")

    def poll(self, challenge: Challenge) -> PollStatus:
        flow: IdxFlow = challenge.context["flow"]
        challenge.context["idx"] = flow.poll_once(challenge.context["idx"])
        return self._status(flow, challenge)

    def redeem(self, challenge: Challenge) -> SamlAssertion:
        href = challenge.context["idx"].success_href
        final, _history = follow_redirects(self.http, href)
        assertion = parse_saml_form(final.text, final.url)
        if assertion is None:
            raise self.fail("Okta success redirect did not produce a SAML form", step="okta:redeem")
        return assertion
