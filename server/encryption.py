# Envelope Decryption (RSA-OAEP wrapped CEK + AES-256-GCM payload)

import base64, binascii, json, logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from storage import write_file_atomically

logger = logging.getLogger("voicemail.encryption")

CEK_LENGTH = 32  # AES-256
IV_LENGTH = 12   # 96 bits for AES-GCM standard
TAG_LENGTH = 16
MIN_RSA_KEY_BITS = 2048


class RecordingState(Enum):
    RECEIVED = "received"
    KEY_LOADED = "key_loaded"
    KEY_UNWRAPPED = "key_unwrapped"
    PAYLOAD_VERIFIED = "payload_verified"
    DECRYPTED = "decrypted"


class DecryptionError(Exception):
    """Base class for every decryption failure. `stage` is the last state reached."""

    kind = "decryption_error"

    def __init__(self, message: str, stage: Optional[RecordingState] = None):
        super().__init__(message)
        self.stage = stage


class MalformedInput(DecryptionError):
    kind = "malformed_input"


class KeyLoadFailed(DecryptionError):
    kind = "key_load_failed"


class UnwrapFailed(DecryptionError):
    kind = "unwrap_failed"


class AuthenticationFailed(DecryptionError):
    kind = "authentication_failed"


def _oaep() -> padding.OAEP:
    # SHA-256 for both the digest and MGF1, must match the sender exactly
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MalformedInput(f"{what} is not valid base64") from e


@dataclass(frozen=True)
class EncryptionDetails:
    """Wrapped CEK and IV as the provider hands them out (both base64)."""

    encrypted_cek: str
    iv: str
    type: str = "rsa-aes"

    @classmethod
    def from_callback(cls, value: Union[str, dict]) -> "EncryptionDetails":
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise MalformedInput("encryption details are not valid JSON") from e
        if not isinstance(value, dict):
            raise MalformedInput("encryption details must be an object")
        encrypted_cek = value.get("encrypted_cek")
        iv = value.get("iv")
        if not encrypted_cek or not iv:
            raise MalformedInput("encryption details missing encrypted_cek or iv")
        return cls(encrypted_cek=encrypted_cek, iv=iv, type=value.get("type", "rsa-aes"))


# --- Key Store ---

def load_private_key(pem_bytes: bytes) -> rsa.RSAPrivateKey:
    """
    Parse PEM-encoded private key bytes. Only unencrypted RSA keys of at
    least 2048 bits are accepted.
    """
    try:
        key = serialization.load_pem_private_key(pem_bytes, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyLoadFailed("private key is not valid PEM key material") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyLoadFailed(f"private key must be RSA, got {type(key).__name__}")
    if key.key_size < MIN_RSA_KEY_BITS:
        raise KeyLoadFailed(f"RSA key too small: {key.key_size} bits (minimum {MIN_RSA_KEY_BITS})")
    return key


def read_private_key(path: Union[str, Path]) -> rsa.RSAPrivateKey:
    # Read fresh on every call so a rotated key file is always picked up
    try:
        with open(path, "rb") as f:
            pem_bytes = f.read()
    except OSError as e:
        raise KeyLoadFailed(f"cannot read private key file: {e.strerror}") from e
    return load_private_key(pem_bytes)


# --- Decryption Steps ---

def unwrap_key(wrapped_key_b64: str, private_key: rsa.RSAPrivateKey) -> bytes:
    """RSA-OAEP-SHA256 decrypt the wrapped CEK. Returns exactly 32 bytes."""
    wrapped = _b64decode(wrapped_key_b64, "wrapped key")
    try:
        cek = private_key.decrypt(wrapped, _oaep())
    except ValueError as e:
        raise UnwrapFailed("RSA-OAEP decryption of the wrapped key failed") from e

    if len(cek) != CEK_LENGTH:
        raise UnwrapFailed(f"unwrapped key is {len(cek)} bytes, expected {CEK_LENGTH}")
    return cek


def decrypt_payload(ciphertext_with_tag: bytes, iv: bytes, cek: bytes) -> bytes:
    """
    AES-256-GCM decrypt `ciphertext || tag` (tag = trailing 16 bytes, no AAD).

    AESGCM.decrypt verifies the tag before handing back any plaintext, so
    nothing unauthenticated ever leaves this function.
    """
    if len(iv) != IV_LENGTH:
        raise MalformedInput(f"IV must be {IV_LENGTH} bytes, got {len(iv)}")
    if len(ciphertext_with_tag) < TAG_LENGTH:
        raise MalformedInput(
            f"payload is {len(ciphertext_with_tag)} bytes, shorter than the {TAG_LENGTH}-byte tag"
        )
    if len(cek) != CEK_LENGTH:
        raise MalformedInput(f"CEK must be {CEK_LENGTH} bytes, got {len(cek)}")

    aesgcm = AESGCM(cek)
    try:
        return aesgcm.decrypt(iv, bytes(ciphertext_with_tag), None)
    except InvalidTag as e:
        raise AuthenticationFailed("GCM tag verification failed") from e


def decrypt_direct(payload: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    """Small control payloads encrypted straight to the RSA key, no CEK."""
    try:
        return private_key.decrypt(bytes(payload), _oaep())
    except ValueError as e:
        raise UnwrapFailed("RSA-OAEP decryption of the payload failed") from e


# --- Orchestration ---

def decrypt_recording(
    encrypted_bytes: bytes,
    wrapped_key_b64: Optional[str],
    iv_b64: Optional[str],
    private_key_path: Union[str, Path],
    output_path: Optional[Union[str, Path]] = None,
    recording_id: str = "-",
) -> bytes:
    """
    Decrypt one recording.

    With a wrapped key the hybrid scheme is used (unwrap CEK, then AES-GCM).
    Without one the whole payload is RSA-OAEP decrypted directly. If
    `output_path` is given the plaintext is written there atomically, and only
    once it has been fully verified.
    """
    state = RecordingState.RECEIVED
    hybrid = wrapped_key_b64 is not None

    try:
        # Validate the input shape before touching any key material
        if hybrid:
            if iv_b64 is None:
                raise MalformedInput("wrapped key supplied without an IV")
            iv = _b64decode(iv_b64, "IV")
            if len(iv) != IV_LENGTH:
                raise MalformedInput(f"IV must be {IV_LENGTH} bytes, got {len(iv)}")
            if len(encrypted_bytes) < TAG_LENGTH:
                raise MalformedInput(
                    f"payload is {len(encrypted_bytes)} bytes, shorter than the {TAG_LENGTH}-byte tag"
                )
        elif iv_b64 is not None:
            raise MalformedInput("IV supplied without a wrapped key")

        private_key = read_private_key(private_key_path)
        state = RecordingState.KEY_LOADED

        if hybrid:
            cek = unwrap_key(wrapped_key_b64, private_key)
            state = RecordingState.KEY_UNWRAPPED
            plaintext = decrypt_payload(encrypted_bytes, iv, cek)
        else:
            plaintext = decrypt_direct(encrypted_bytes, private_key)
        state = RecordingState.PAYLOAD_VERIFIED

        if output_path is not None:
            write_file_atomically(Path(output_path), plaintext)
        state = RecordingState.DECRYPTED

    except DecryptionError as e:
        if e.stage is None:
            e.stage = state
        logger.warning(
            "[!] Decryption failed for %s: %s at stage %s", recording_id, e.kind, e.stage.value
        )
        raise

    logger.info(
        "[DECRYPT] %s decrypted (%s mode, %d bytes)",
        recording_id, "hybrid" if hybrid else "direct", len(plaintext),
    )
    return plaintext


def decrypt_recording_file(
    encrypted_path: Union[str, Path],
    wrapped_key_b64: Optional[str],
    iv_b64: Optional[str],
    private_key_path: Union[str, Path],
    output_path: Optional[Union[str, Path]] = None,
    recording_id: Optional[str] = None,
) -> bytes:
    encrypted_path = Path(encrypted_path)
    recording_id = recording_id or encrypted_path.stem
    try:
        encrypted_bytes = encrypted_path.read_bytes()
    except OSError as e:
        error = MalformedInput(f"cannot read encrypted file: {e.strerror}", RecordingState.RECEIVED)
        logger.warning(
            "[!] Decryption failed for %s: %s at stage %s", recording_id, error.kind, error.stage.value
        )
        raise error from e

    return decrypt_recording(
        encrypted_bytes,
        wrapped_key_b64,
        iv_b64,
        private_key_path,
        output_path=output_path,
        recording_id=recording_id,
    )
