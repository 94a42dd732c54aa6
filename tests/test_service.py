"""
Tests for FieldEncryptionService: round trips, tampering, key lifecycle,
rotation, and credential payloads.
"""

from __future__ import annotations

import asyncio
import base64

import pytest
import structlog

from safetypin_crypto import (
    NONCE_SIZE,
    AesGcmCipher,
    AuthenticationFailure,
    DerivedLocalKeySource,
    Envelope,
    FieldEncryptionService,
    KeyNotFoundError,
    KeySourceUnavailable,
    MalformedEnvelope,
    RotationUnsupported,
    SerializationError,
    ServiceClosedError,
    StaticKeySource,
    derive_local_key,
)

from .conftest import TEST_SECRET, RecordingKeySource

CARD = "4111-1111-1111-1111"


def _tamper(token: str, index: int) -> str:
    env = Envelope.from_token(token)
    blob = bytearray(env.to_blob())
    blob[index] ^= 0x80
    return Envelope.from_blob(bytes(blob), env.key_version).to_token()


class TestEncryptDecrypt:
    async def test_roundtrip(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt("hello")
        assert await local_service.decrypt(token) == "hello"

    @pytest.mark.parametrize("plaintext", ["", "a", "ünïcødé ✓", "x" * 10_000, "line1\nline2"])
    async def test_roundtrip_various(
        self, local_service: FieldEncryptionService, plaintext: str
    ) -> None:
        assert await local_service.decrypt(await local_service.encrypt(plaintext)) == plaintext

    async def test_same_plaintext_different_envelopes(
        self, local_service: FieldEncryptionService
    ) -> None:
        a = await local_service.encrypt(CARD)
        b = await local_service.encrypt(CARD)
        assert a != b
        assert await local_service.decrypt(a) == CARD
        assert await local_service.decrypt(b) == CARD

    async def test_card_number_scenario(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt(CARD)
        assert await local_service.decrypt(token) == CARD

        last = token[-1]
        corrupted = token[:-1] + ("A" if last != "A" else "B")
        with pytest.raises(AuthenticationFailure):
            await local_service.decrypt(corrupted)

    async def test_token_is_versioned(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt(CARD)
        assert token.startswith("1:")
        blob = base64.b64decode(token[2:])
        assert len(blob) == NONCE_SIZE + 16 + len(CARD)

    async def test_flipped_tag_bit(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt(CARD)
        with pytest.raises(AuthenticationFailure):
            await local_service.decrypt(_tamper(token, NONCE_SIZE + 3))

    async def test_flipped_ciphertext_bit(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt(CARD)
        with pytest.raises(AuthenticationFailure):
            await local_service.decrypt(_tamper(token, -1))

    async def test_short_token(self, local_service: FieldEncryptionService) -> None:
        with pytest.raises(MalformedEnvelope):
            await local_service.decrypt(base64.b64encode(b"\x00" * 31).decode())

    async def test_invalid_base64(self, local_service: FieldEncryptionService) -> None:
        with pytest.raises(MalformedEnvelope):
            await local_service.decrypt("%%% not an envelope %%%")

    async def test_wrong_key(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt(CARD)
        other = FieldEncryptionService(DerivedLocalKeySource("another-secret"))
        with pytest.raises(AuthenticationFailure):
            await other.decrypt(token)

    async def test_same_dev_secret_interoperates(
        self, local_service: FieldEncryptionService
    ) -> None:
        token = await local_service.encrypt(CARD)
        other = FieldEncryptionService(DerivedLocalKeySource(TEST_SECRET))
        assert await other.decrypt(token) == CARD

    async def test_unversioned_token_decrypts(self, local_service: FieldEncryptionService) -> None:
        legacy = AesGcmCipher.encrypt(derive_local_key(TEST_SECRET), CARD.encode()).to_token()
        assert ":" not in legacy
        assert await local_service.decrypt(legacy) == CARD

    async def test_non_utf8_plaintext(self, local_service: FieldEncryptionService) -> None:
        token = AesGcmCipher.encrypt(derive_local_key(TEST_SECRET), b"\xff\xfe", 1).to_token()
        with pytest.raises(MalformedEnvelope):
            await local_service.decrypt(token)


class TestInitialization:
    async def test_lazy_initialization(self, recording_source: RecordingKeySource) -> None:
        service = FieldEncryptionService(recording_source)
        assert not service.initialized
        assert service.active_version is None
        await service.encrypt("x")
        assert service.initialized
        assert service.active_version == 1

    async def test_initialize_is_idempotent(self, recording_source: RecordingKeySource) -> None:
        service = FieldEncryptionService(recording_source)
        await service.initialize()
        await service.initialize()
        assert recording_source.calls == 1

    async def test_concurrent_first_use_fetches_once(
        self, recording_source: RecordingKeySource
    ) -> None:
        service = FieldEncryptionService(recording_source)
        tokens = await asyncio.gather(*(service.encrypt(f"value-{i}") for i in range(20)))
        assert recording_source.calls == 1
        plaintexts = await asyncio.gather(*(service.decrypt(t) for t in tokens))
        assert plaintexts == [f"value-{i}" for i in range(20)]

    async def test_failure_propagates_and_allows_retry(
        self, recording_source: RecordingKeySource
    ) -> None:
        service = FieldEncryptionService(recording_source)
        recording_source.fail = True
        with pytest.raises(KeySourceUnavailable):
            await service.encrypt("x")
        assert not service.initialized

        recording_source.fail = False
        await service.initialize()
        assert service.initialized

    async def test_independent_services_hold_independent_keys(self) -> None:
        a = FieldEncryptionService(StaticKeySource(b"a" * 32))
        b = FieldEncryptionService(StaticKeySource(b"b" * 32))
        token = await a.encrypt(CARD)
        with pytest.raises(AuthenticationFailure):
            await b.decrypt(token)

    def test_invalid_max_key_versions(self) -> None:
        with pytest.raises(ValueError):
            FieldEncryptionService(DerivedLocalKeySource(), max_key_versions=0)

    def test_reuse_across_event_loops(self, recording_source: RecordingKeySource) -> None:
        service = FieldEncryptionService(recording_source, production=True)

        async def rotate_twice():
            # The second rotation waits on the lock held by the first.
            return await asyncio.gather(service.rotate(), service.rotate())

        first = asyncio.run(rotate_twice())
        second = asyncio.run(rotate_twice())

        assert [kv.version for kv in first + second] == [1, 2, 3, 4]
        assert recording_source.calls == 4

    async def test_events_stay_off_stdout_without_logging_setup(
        self, recording_source: RecordingKeySource, capsys: pytest.CaptureFixture[str]
    ) -> None:
        structlog.reset_defaults()
        service = FieldEncryptionService(recording_source)
        await service.decrypt(await service.encrypt(CARD))
        await service.shutdown()

        assert capsys.readouterr().out == ""


class TestRotation:
    async def test_rotation_outside_production_warns(
        self, local_service: FieldEncryptionService
    ) -> None:
        await local_service.initialize()
        with pytest.warns(RotationUnsupported):
            assert await local_service.rotate() is None
        assert local_service.active_version == 1

    async def test_rotation_with_non_rotating_source_warns(self) -> None:
        service = FieldEncryptionService(DerivedLocalKeySource(TEST_SECRET), production=True)
        with pytest.warns(RotationUnsupported):
            assert await service.rotate() is None

    async def test_rotation_keeps_old_versions_readable(
        self, production_service: FieldEncryptionService
    ) -> None:
        old_token = await production_service.encrypt(CARD)

        new_version = await production_service.rotate()

        assert new_version is not None
        assert new_version.version == 2
        assert production_service.active_version == 2
        new_token = await production_service.encrypt(CARD)
        assert new_token.startswith("2:")
        assert await production_service.decrypt(old_token) == CARD
        assert await production_service.decrypt(new_token) == CARD

    async def test_rotation_before_initialization(
        self, production_service: FieldEncryptionService, recording_source: RecordingKeySource
    ) -> None:
        version = await production_service.rotate()
        assert version is not None and version.version == 1
        assert recording_source.calls == 1

    async def test_evicted_version_raises(
        self, production_service: FieldEncryptionService
    ) -> None:
        token = await production_service.encrypt(CARD)
        for _ in range(3):
            await production_service.rotate()

        assert production_service.active_version == 4
        with pytest.raises(KeyNotFoundError):
            await production_service.decrypt(token)

    async def test_failed_rotation_leaves_ring_unchanged(
        self, production_service: FieldEncryptionService, recording_source: RecordingKeySource
    ) -> None:
        token = await production_service.encrypt(CARD)
        recording_source.fail = True
        with pytest.raises(KeySourceUnavailable):
            await production_service.rotate()
        assert production_service.active_version == 1
        assert await production_service.decrypt(token) == CARD

    async def test_unversioned_token_after_rotation(
        self, production_service: FieldEncryptionService, recording_source: RecordingKeySource
    ) -> None:
        await production_service.initialize()
        legacy = AesGcmCipher.encrypt(recording_source.keys[0], CARD.encode()).to_token()
        await production_service.rotate()
        assert await production_service.decrypt(legacy) == CARD

    async def test_needs_reencrypt_and_reencrypt(
        self, production_service: FieldEncryptionService
    ) -> None:
        token = await production_service.encrypt(CARD)
        assert not production_service.needs_reencrypt(token)

        await production_service.rotate()
        assert production_service.needs_reencrypt(token)

        fresh = await production_service.reencrypt(token)
        assert fresh.startswith("2:")
        assert not production_service.needs_reencrypt(fresh)
        assert await production_service.decrypt(fresh) == CARD

    async def test_concurrent_use_during_rotation(
        self, production_service: FieldEncryptionService
    ) -> None:
        await production_service.initialize()

        async def roundtrip(i: int) -> str:
            return await production_service.decrypt(await production_service.encrypt(str(i)))

        results = await asyncio.gather(
            production_service.rotate(), *(roundtrip(i) for i in range(20))
        )
        assert results[1:] == [str(i) for i in range(20)]


class TestShutdown:
    async def test_operations_after_shutdown(self, recording_source: RecordingKeySource) -> None:
        service = FieldEncryptionService(recording_source)
        token = await service.encrypt(CARD)
        await service.shutdown()
        await service.shutdown()

        assert service.closed
        assert service.key_ring is None
        with pytest.raises(ServiceClosedError):
            await service.encrypt(CARD)
        with pytest.raises(ServiceClosedError):
            await service.decrypt(token)
        with pytest.raises(ServiceClosedError):
            await service.initialize()

    async def test_context_manager(self, recording_source: RecordingKeySource) -> None:
        async with FieldEncryptionService(recording_source) as service:
            assert service.initialized
            assert await service.decrypt(await service.encrypt("x")) == "x"
        assert service.closed


class TestCredentials:
    async def test_dict_roundtrip(self, local_service: FieldEncryptionService) -> None:
        creds = {"accessKeyId": "AKIA...", "secretAccessKey": "s3cr3t", "nested": {"a": 1}}
        token = await local_service.encrypt_credentials(creds)
        assert await local_service.decrypt_credentials(token) == creds

    async def test_list_roundtrip(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt_credentials(["a", 1, None])
        assert await local_service.decrypt_credentials(token) == ["a", 1, None]

    async def test_string_passthrough(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt_credentials("plain-password")
        assert await local_service.decrypt_credentials(token) == "plain-password"

    async def test_bracketed_non_json_string(self, local_service: FieldEncryptionService) -> None:
        token = await local_service.encrypt_credentials("{not json")
        assert await local_service.decrypt_credentials(token) == "{not json"

    async def test_unserializable(self, local_service: FieldEncryptionService) -> None:
        with pytest.raises(SerializationError):
            await local_service.encrypt_credentials({"when": object()})


class TestHelpers:
    def test_hash_for_lookup_without_key(self) -> None:
        service = FieldEncryptionService(DerivedLocalKeySource())
        assert service.hash_for_lookup("user@example.com") == service.hash_for_lookup(
            "user@example.com"
        )
        assert service.hash_for_lookup("user@example.com") != service.hash_for_lookup(
            "user2@example.com"
        )
        assert not service.initialized

    def test_generate_secure_id(self) -> None:
        ident = FieldEncryptionService.generate_secure_id(12)
        assert len(bytes.fromhex(ident)) == 12
