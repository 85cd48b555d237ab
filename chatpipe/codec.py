"""
Pluggable content transforms applied to message content at rest.

Every codec maps plaintext to a storable string and back:
    encode(plain) -> stored
    decode(stored) -> plain

- IdentityCodec: stores plaintext unchanged.
- AesGcmCodec: AES-256-GCM with a key derived from a shared secret.
- RsaOaepCodec: hybrid envelope; a fresh AES key per message wrapped with
  RSA-OAEP (SHA-256), the content sealed with AES-GCM.

Encoding is randomized for both encrypting codecs, so two encodings of the
same plaintext never compare equal at rest.
"""

import base64
import binascii
import json
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from chatpipe.errors import CodecError

NONCE_BYTES = 12


def b64(b: bytes) -> str:
    ''' Encode bytes to a Base64 string '''
    return base64.b64encode(b).decode()


def b64d(s: str) -> bytes:
    ''' Decode a Base64 string to bytes '''
    return base64.b64decode(s.encode(), validate=True)


class ContentCodec:
    """Base class for content transforms."""

    name = "base"

    def encode(self, plain: str) -> str:
        raise NotImplementedError

    def decode(self, stored: str) -> str:
        raise NotImplementedError


class IdentityCodec(ContentCodec):
    name = "identity"

    def encode(self, plain: str) -> str:
        return plain

    def decode(self, stored: str) -> str:
        return stored


class AesGcmCodec(ContentCodec):
    """
    AES-256-GCM codec.
    Stored form: Base64 of nonce || ciphertext || tag.
    """

    name = "aes"

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("AES key must be 32 bytes")
        self._aes = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str) -> "AesGcmCodec":
        ''' Derive a 256-bit key from a configured secret with HKDF-SHA256 '''
        if not secret:
            raise ValueError("CODEC_SECRET must be set for the aes codec")
        key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=b"chatpipe message content",
        ).derive(secret.encode("utf-8"))
        return cls(key)

    def encode(self, plain: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        ct = self._aes.encrypt(nonce, plain.encode("utf-8"), None)
        return b64(nonce + ct)

    def decode(self, stored: str) -> str:
        try:
            raw = b64d(stored)
            nonce, ct = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
            return self._aes.decrypt(nonce, ct, None).decode("utf-8")
        except (InvalidTag, binascii.Error, ValueError) as e:
            raise CodecError(f"Cannot decode AES content: {e.__class__.__name__}") from e


class RsaOaepCodec(ContentCodec):
    """
    Hybrid RSA-OAEP codec.
    Stored form: JSON {"k": wrapped AES key, "n": nonce, "c": ciphertext||tag}, all Base64.
    """

    name = "rsa"

    def __init__(self, private_key):
        self._private_key = private_key
        self._public_key = private_key.public_key()

    @classmethod
    def generate(cls, bits: int = 2048) -> "RsaOaepCodec":
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=bits))

    @classmethod
    def from_pem(cls, pem: str) -> "RsaOaepCodec":
        if not pem:
            raise ValueError("CODEC_PRIVATE_KEY_PEM must be set for the rsa codec")
        return cls(serialization.load_pem_private_key(pem.encode(), password=None))

    def private_pem(self) -> str:
        return self._private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()

    @staticmethod
    def _oaep():
        return padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()),
                            algorithm=hashes.SHA256(),
                            label=None)

    def encode(self, plain: str) -> str:
        key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(NONCE_BYTES)
        ct = AESGCM(key).encrypt(nonce, plain.encode("utf-8"), None)
        wrapped = self._public_key.encrypt(key, self._oaep())
        return json.dumps({"k": b64(wrapped), "n": b64(nonce), "c": b64(ct)})

    def decode(self, stored: str) -> str:
        try:
            envelope = json.loads(stored)
            key = self._private_key.decrypt(b64d(envelope["k"]), self._oaep())
            return AESGCM(key).decrypt(b64d(envelope["n"]), b64d(envelope["c"]), None).decode("utf-8")
        except (InvalidTag, binascii.Error, ValueError, KeyError, TypeError) as e:
            raise CodecError(f"Cannot decode RSA content: {e.__class__.__name__}") from e


def build_codec(name: str, secret: str = "", private_key_pem: Optional[str] = None) -> ContentCodec:
    """
    Select the content codec at configuration time.

    Args:
        name: identity, aes or rsa
        secret: Shared secret for the aes codec
        private_key_pem: PEM private key for the rsa codec
    """
    name = (name or "identity").lower()
    if name == "identity":
        return IdentityCodec()
    if name == "aes":
        return AesGcmCodec.from_secret(secret)
    if name == "rsa":
        return RsaOaepCodec.from_pem(private_key_pem or "")
    raise ValueError(f"Unknown codec: {name}")
