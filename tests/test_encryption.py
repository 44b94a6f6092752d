"""
Tests for the payload codec.

The dead-man's switch message is the secret these tests care about: it must
never reach the Temporal server in plaintext, and it must survive the full
encrypt → transmit → decrypt path intact.
"""

import uuid

import pytest
from cryptography.fernet import Fernet, InvalidToken
from temporalio.api.common.v1 import Payload
from temporalio.client import Client
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from tests._recorders import WEBHOOK, NotificationRecorder
from timebox.encryption import (
    _DEV_KEY,
    ENCODING,
    KEYS_ENV,
    EncryptionCodec,
    build_data_converter,
    load_keys,
)
from timebox.models import DMSRequest
from timebox.workflows import DeadManSwitchWorkflow

SECRET = b'{"id": "vault", "message": "the key is under the mat"}'


def _payload() -> Payload:
    return Payload(metadata={"encoding": b"json/plain"}, data=SECRET)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# TEST 1: Encrypt → decrypt roundtrip
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#
# WHAT THIS PROVES:
#     The payload comes back byte-for-byte, and the message is not visible
#     in the ciphertext.

@pytest.mark.asyncio
async def test_codec_roundtrip_hides_message():
    codec = EncryptionCodec([Fernet.generate_key()])

    [encrypted] = await codec.encode([_payload()])
    assert encrypted.metadata["encoding"] == ENCODING
    assert b"under the mat" not in encrypted.data

    [decrypted] = await codec.decode([encrypted])
    assert decrypted.data == SECRET
    assert decrypted.metadata["encoding"] == b"json/plain"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# TEST 2: Wrong key fails
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#
# WHAT THIS PROVES:
#     Access to the Temporal database without the key reveals nothing.

@pytest.mark.asyncio
async def test_wrong_key_raises_invalid_token():
    encrypted = await EncryptionCodec([Fernet.generate_key()]).encode([_payload()])

    with pytest.raises(InvalidToken):
        await EncryptionCodec([Fernet.generate_key()]).decode(encrypted)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# TEST 3: Key rotation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#
# WHAT THIS PROVES:
#     With the new key listed first and the old one kept, payloads written
#     under the old key still decrypt, and new payloads use the new key.

@pytest.mark.asyncio
async def test_rotation_keeps_old_payloads_readable():
    old_key, new_key = Fernet.generate_key(), Fernet.generate_key()
    written_before = await EncryptionCodec([old_key]).encode([_payload()])

    rotated = EncryptionCodec([new_key, old_key])
    [decrypted] = await rotated.decode(written_before)
    assert decrypted.data == SECRET

    written_after = await rotated.encode([_payload()])
    [decrypted] = await EncryptionCodec([new_key]).decode(written_after)
    assert decrypted.data == SECRET


@pytest.mark.asyncio
async def test_unencrypted_payloads_pass_through():
    codec = EncryptionCodec([Fernet.generate_key()])
    [decoded] = await codec.decode([_payload()])
    assert decoded.data == SECRET


def test_keys_come_from_environment(monkeypatch):
    k1, k2 = Fernet.generate_key(), Fernet.generate_key()
    monkeypatch.setenv(KEYS_ENV, f"{k1.decode()}, {k2.decode()}")
    assert load_keys() == [k1, k2]


def test_missing_keys_fall_back_to_dev_key(monkeypatch):
    monkeypatch.delenv(KEYS_ENV, raising=False)
    assert load_keys() == [_DEV_KEY]


def test_empty_key_list_is_rejected():
    with pytest.raises(ValueError):
        EncryptionCodec([])


def test_data_converter_carries_codec():
    converter = build_data_converter([Fernet.generate_key()])
    assert isinstance(converter.payload_codec, EncryptionCodec)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# TEST 4: Dead-man's switch with encryption (integration)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#
# WHAT THIS PROVES:
#     Request dataclasses, queries and the activity input all survive the
#     encrypted pipeline, and the webhook still receives the plain message.
#
# WHAT COULD BREAK:
#     - Client constructor API changes (namespace kwarg)
#     - DataConverter with PayloadCodec not wrapping correctly

@pytest.mark.asyncio
async def test_dms_timeout_with_encryption():
    async with await WorkflowEnvironment.start_time_skipping() as env:
        encrypted_client = Client(
            env.client.service_client,
            namespace=env.client.namespace,
            data_converter=build_data_converter([Fernet.generate_key()]),
        )
        recorder = NotificationRecorder()

        async with Worker(
            encrypted_client,
            task_queue="test-timebox-encrypted",
            workflows=[DeadManSwitchWorkflow],
            activities=[recorder.activity()],
        ):
            result = await encrypted_client.execute_workflow(
                DeadManSwitchWorkflow.run,
                DMSRequest(id="vault", message="the key is under the mat", duration_seconds=30, webhook=WEBHOOK),
                id=f"test-dms-encrypted-{uuid.uuid4()}",
                task_queue="test-timebox-encrypted",
            )

            assert result.timed_out is True
            assert recorder.delivered[0].payload["message"] == "the key is under the mat"
