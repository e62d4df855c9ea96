import base64
import pytest

from core.errors import EncryptionKeyError, FormatError, TamperError
from services.cipher import (
    MIN_SEALED_LENGTH,
    NONCE_LENGTH,
    TAG_LENGTH,
    Cipher,
    SealedValue,
    algorithm_info,
    generate_key,
    open_sealed,
    seal,
)


@pytest.mark.unit
class TestSealAndOpen:

    def setup_method(self):
        self.key = bytes.fromhex(generate_key())

    @pytest.mark.parametrize("plaintext", [
        b"",
        b"hunter2",
        "pässwörd with ünicode ✓".encode("utf-8"),
        b"\x00\xff" * 500,
    ])
    def test_round_trip(self, plaintext):
        """Test that open_sealed returns exactly what seal was given."""
        blob = seal(plaintext, self.key)

        assert open_sealed(blob, self.key) == plaintext
        assert len(blob) == NONCE_LENGTH + len(plaintext) + TAG_LENGTH

    def test_fresh_nonce_per_seal(self):
        """Test that sealing the same plaintext twice gives different blobs."""
        first = seal(b"same value", self.key)
        second = seal(b"same value", self.key)

        assert first != second
        assert first[:NONCE_LENGTH] != second[:NONCE_LENGTH]

    def test_any_single_bit_flip_is_detected(self):
        """Test that flipping any one bit of the blob fails authentication."""
        blob = seal(b"db-pass", self.key)

        for byte_index in range(len(blob)):
            for bit in range(8):
                tampered = bytearray(blob)
                tampered[byte_index] ^= 1 << bit
                with pytest.raises(TamperError):
                    open_sealed(bytes(tampered), self.key)

    def test_wrong_key_is_tamper_error(self):
        """Test that opening with another key looks the same as tampering."""
        blob = seal(b"db-pass", self.key)
        other_key = bytes.fromhex(generate_key())

        with pytest.raises(TamperError):
            open_sealed(blob, other_key)

    def test_truncated_blob(self):
        """Test that a blob shorter than nonce plus tag is a format error."""
        with pytest.raises(FormatError):
            open_sealed(b"\x00" * (MIN_SEALED_LENGTH - 1), self.key)

    @pytest.mark.parametrize("key", [b"", b"\x00" * 16, b"\x00" * 33, "not-bytes"])
    def test_wrong_key_size(self, key):
        """Test that keys other than 32 bytes are rejected on both sides."""
        with pytest.raises(EncryptionKeyError):
            seal(b"value", key)
        with pytest.raises(EncryptionKeyError):
            open_sealed(b"\x00" * MIN_SEALED_LENGTH, key)

    def test_cipher_object_matches_functions(self):
        """Test that the Cipher object wraps seal and open."""
        cipher = Cipher()

        blob = cipher.seal(b"value", self.key)

        assert cipher.open(blob, self.key) == b"value"
        assert open_sealed(blob, self.key) == b"value"


@pytest.mark.unit
class TestSealedValue:

    def setup_method(self):
        self.key = bytes.fromhex(generate_key())
        self.payload = seal(b"db-pass", self.key)

    def test_encode_format(self):
        """Test the "<keyVersion>:<base64>" storage form."""
        encoded = SealedValue(key_version=3, payload=self.payload).encode()

        version, _, body = encoded.partition(":")
        assert version == "3"
        assert base64.b64decode(body) == self.payload

    def test_decode(self):
        """Test decoding a stored value back into version and payload."""
        stored = f"7:{base64.b64encode(self.payload).decode()}"

        sealed = SealedValue.decode(stored)

        assert sealed.key_version == 7
        assert sealed.payload == self.payload
        assert open_sealed(sealed.payload, self.key) == b"db-pass"

    @pytest.mark.parametrize("stored", [
        "",
        "no-separator",
        ":AAAA",
        "0:" + "A" * 40,
        "-1:" + "A" * 40,
        "abc:" + "A" * 40,
        "1.5:" + "A" * 40,
        "١:" + "A" * 40,
        "1:not base64 at all!!",
        "1:" + base64.b64encode(b"short").decode(),
    ])
    def test_decode_rejects_malformed_values(self, stored):
        """Test that every malformed stored value raises FormatError."""
        with pytest.raises(FormatError):
            SealedValue.decode(stored)

    def test_decode_rejects_non_string(self):
        """Test that decoding bytes is a format error, not a crash."""
        with pytest.raises(FormatError):
            SealedValue.decode(b"1:AAAA")


@pytest.mark.unit
def test_generate_key_shape():
    """Test that generated keys are 64 hex characters."""
    key = generate_key()

    assert len(key) == 64
    assert len(bytes.fromhex(key)) == 32
    assert generate_key() != key


@pytest.mark.unit
def test_algorithm_info():
    info = algorithm_info()

    assert info == {"algorithm": "aes-256-gcm", "key_length": 32, "nonce_length": 12, "tag_length": 16}
