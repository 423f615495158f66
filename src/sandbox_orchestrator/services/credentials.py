"""Credential field codecs.

Only fields whose name matches the sensitivity pattern are transformed.
Encoded values carry an ``enc:`` prefix so already-encoded input is left
alone and legacy plaintext values still decode.
"""
from __future__ import annotations

import base64
import binascii
import logging
from typing import Dict, Mapping

from sandbox_orchestrator.util import is_sensitive_key

logger = logging.getLogger(__name__)

ENCODED_PREFIX = "enc:"


class PrefixCredentialCodec:
    """Reversible base64 encoding of sensitive fields at rest.

    This keeps secrets out of casual view in the row store; deployments that
    need real encryption plug in their own codec.
    """

    def encrypt(self, fields: Mapping[str, str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for key, value in (fields or {}).items():
            text = "" if value is None else str(value)
            if is_sensitive_key(key) and text and not text.startswith(ENCODED_PREFIX):
                text = ENCODED_PREFIX + base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")
            out[str(key)] = text
        return out

    def decrypt(self, fields: Mapping[str, str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for key, value in (fields or {}).items():
            text = "" if value is None else str(value)
            if text.startswith(ENCODED_PREFIX):
                try:
                    text = base64.urlsafe_b64decode(text[len(ENCODED_PREFIX):].encode("ascii")).decode("utf-8")
                except (binascii.Error, UnicodeDecodeError, ValueError):
                    logger.warning("credentials.decode_failed key=%s", key)
            out[str(key)] = text
        return out
