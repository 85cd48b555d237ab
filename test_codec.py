"""
Tests for content codecs.

Tests cover:
- Identity passthrough
- AES-GCM and RSA-OAEP hybrid encoding
- Tampered or foreign content raising CodecError
- Codec selection from configuration
"""

import json

import pytest

from chatpipe.codec import AesGcmCodec, IdentityCodec, RsaOaepCodec, build_codec
from chatpipe.errors import CodecError


@pytest.fixture(scope="module")
def rsa_codec():
    return RsaOaepCodec.generate()


class TestIdentityCodec:

    def test_passthrough(self):
        codec = IdentityCodec()

        assert codec.encode("héllo") == "héllo"
        assert codec.decode("héllo") == "héllo"


class TestAesGcmCodec:

    def test_decode_restores_plaintext(self):
        codec = AesGcmCodec.from_secret("s3cret")

        assert codec.decode(codec.encode("héllo wörld")) == "héllo wörld"

    def test_encoding_is_randomized(self):
        codec = AesGcmCodec.from_secret("s3cret")

        assert codec.encode("same") != codec.encode("same")

    def test_same_secret_derives_same_key(self):
        stored = AesGcmCodec.from_secret("shared").encode("hi")

        assert AesGcmCodec.from_secret("shared").decode(stored) == "hi"

    def test_wrong_key_raises_codec_error(self):
        stored = AesGcmCodec.from_secret("one").encode("hi")

        with pytest.raises(CodecError):
            AesGcmCodec.from_secret("two").decode(stored)

    def test_plaintext_input_raises_codec_error(self):
        with pytest.raises(CodecError):
            AesGcmCodec.from_secret("k").decode("not base64 at all!")

    def test_key_length_checked(self):
        with pytest.raises(ValueError):
            AesGcmCodec(b"short")

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            AesGcmCodec.from_secret("")


class TestRsaOaepCodec:

    def test_decode_restores_plaintext(self, rsa_codec):
        text = "long message " * 200

        assert rsa_codec.decode(rsa_codec.encode(text)) == text

    def test_envelope_fields(self, rsa_codec):
        envelope = json.loads(rsa_codec.encode("hi"))

        assert set(envelope) == {"k", "n", "c"}

    def test_pem_round_trip(self, rsa_codec):
        restored = RsaOaepCodec.from_pem(rsa_codec.private_pem())

        assert restored.decode(rsa_codec.encode("hi")) == "hi"

    def test_foreign_key_raises_codec_error(self, rsa_codec):
        other = RsaOaepCodec.generate()

        with pytest.raises(CodecError):
            other.decode(rsa_codec.encode("hi"))

    def test_garbage_raises_codec_error(self, rsa_codec):
        with pytest.raises(CodecError):
            rsa_codec.decode("plain text")


class TestBuildCodec:

    def test_default_is_identity(self):
        assert isinstance(build_codec(""), IdentityCodec)

    def test_aes(self):
        assert isinstance(build_codec("AES", secret="k"), AesGcmCodec)

    def test_rsa(self, rsa_codec):
        assert isinstance(build_codec("rsa", private_key_pem=rsa_codec.private_pem()), RsaOaepCodec)

    def test_unknown(self):
        with pytest.raises(ValueError):
            build_codec("rot13")
