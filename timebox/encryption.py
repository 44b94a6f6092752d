"""
Payload encryption for timebox.

A dead-man's switch exists to hold a message that must stay private until
the switch times out. Without a codec, that message sits in plaintext in the
workflow's start event, readable by anyone with access to the Temporal
server or its database. The same goes for webhook URLs, which often embed
tokens.

EncryptionCodec encrypts every payload on the client/worker side before it
is sent, and decrypts on the way back:

    Client/Worker → DataConverter (JSON) → EncryptionCodec.encode → Temporal Server
    Temporal Server → EncryptionCodec.decode → DataConverter → Client/Worker

KEY ROTATION:
    TIMEBOX_ENCRYPTION_KEYS holds one or more comma-separated Fernet keys.
    The first key encrypts new payloads; every key is tried when decrypting
    (cryptography's MultiFernet). To rotate, put the new key first and keep
    the old key listed until no running workflow still needs it.

Search attributes and failure messages bypass the codec. Keep secrets out of
both.
"""

import dataclasses
import logging
import os
from typing import Iterable, List

import temporalio.converter
from cryptography.fernet import Fernet, MultiFernet
from temporalio.api.common.v1 import Payload
from temporalio.converter import PayloadCodec

logger = logging.getLogger(__name__)

ENCODING = b"binary/encrypted"
KEYS_ENV = "TIMEBOX_ENCRYPTION_KEYS"

# Well-known key for local development only, so a worker and a client
# started without configuration can still read each other's payloads.
_DEV_KEY = b"kD4u8l0Bsm7QnYyq3pXg0oQx0V2a1y9cD6w5b7mTq3E="


def load_keys() -> list[bytes]:
    raw = os.environ.get(KEYS_ENV, "")
    keys = [k.strip().encode() for k in raw.split(",") if k.strip()]
    if not keys:
        logger.warning(
            f"{KEYS_ENV} is not set; using the development encryption key. "
            "Do not run like this outside local development."
        )
        keys = [_DEV_KEY]
    return keys


class EncryptionCodec(PayloadCodec):
    """Fernet (AES-128-CBC + HMAC-SHA256) codec with rotation support."""

    def __init__(self, keys: Iterable[bytes] | None = None) -> None:
        key_list = list(keys) if keys is not None else load_keys()
        if not key_list:
            raise ValueError("EncryptionCodec needs at least one key")
        self._fernet = MultiFernet([Fernet(k) for k in key_list])

    async def encode(self, payloads: List[Payload]) -> List[Payload]:
        return [
            Payload(
                metadata={"encoding": ENCODING},
                data=self._fernet.encrypt(p.SerializeToString()),
            )
            for p in payloads
        ]

    async def decode(self, payloads: List[Payload]) -> List[Payload]:
        decoded = []
        for p in payloads:
            # Payloads written before encryption was switched on pass through.
            if p.metadata.get("encoding") != ENCODING:
                decoded.append(p)
                continue
            plain = Payload()
            plain.ParseFromString(self._fernet.decrypt(p.data))
            decoded.append(plain)
        return decoded


def build_data_converter(
    keys: Iterable[bytes] | None = None,
) -> temporalio.converter.DataConverter:
    """
    Default Temporal converter with EncryptionCodec attached.

    The worker and every client must build this with the same keys.
    """
    return dataclasses.replace(
        temporalio.converter.default(),
        payload_codec=EncryptionCodec(keys),
    )
