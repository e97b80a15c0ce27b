"""Test payload encryption at rest."""

import pytest

from caresync.core.exceptions import StorageFailure
from caresync.utils.encryption import EncryptionService


@pytest.mark.phi_encryption
class TestEncryptionService:
    """AES-256-GCM round trips and tamper detection."""

    @pytest.fixture
    def service(self):
        return EncryptionService("0123456789abcdef0123456789abcdef", "test-salt")

    def test_round_trip(self, service):
        token = service.encrypt('{"diagnosis": "malaria"}')

        assert "malaria" not in token
        assert service.decrypt(token) == '{"diagnosis": "malaria"}'

    def test_same_plaintext_encrypts_differently(self, service):
        assert service.encrypt("x") != service.encrypt("x")

    def test_empty_values_pass_through(self, service):
        assert service.encrypt("") == ""
        assert service.decrypt("") == ""

    def test_wrong_key_fails(self, service):
        token = service.encrypt("secret")
        other = EncryptionService("fedcba9876543210fedcba9876543210", "test-salt")

        with pytest.raises(StorageFailure):
            other.decrypt(token)

    def test_tampered_ciphertext_fails(self, service):
        token = bytearray(service.encrypt("secret").encode())
        middle = len(token) // 2
        token[middle] = ord("A") if token[middle] != ord("A") else ord("B")

        with pytest.raises(StorageFailure):
            service.decrypt(bytes(token).decode())
