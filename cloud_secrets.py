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

"""In-memory protection for client secrets.

Secrets are sealed with AES-GCM under a key generated once per process, so a secret
is only plaintext for the duration of a single ``reveal()`` call.
"""

import os
from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM


@dataclass(frozen=True)
class SealedSecret:
    nonce: bytes
    ct: bytes

    def __repr__(self) -> str:
        return "SealedSecret(***)"


class SecretBox:
    def __init__(self, key: Optional[bytes] = None):
        self._aesgcm = AESGCM(key or AESGCM.generate_key(bit_length=256))

    def seal(self, secret: str) -> SealedSecret:
        nonce = os.urandom(12)
        ct = self._aesgcm.encrypt(nonce, secret.encode("utf-8"), None)
        return SealedSecret(nonce=nonce, ct=ct)

    def reveal(self, sealed: SealedSecret) -> str:
        return self._aesgcm.decrypt(sealed.nonce, sealed.ct, None).decode("utf-8")


_PROCESS_BOX: Optional[SecretBox] = None


def process_box() -> SecretBox:
    global _PROCESS_BOX
    if _PROCESS_BOX is None:
        _PROCESS_BOX = SecretBox()
    return _PROCESS_BOX
