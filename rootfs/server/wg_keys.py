import base64
import binascii

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.serialization import (
    Encoding, NoEncryption, PrivateFormat, PublicFormat,
)

KEY_LEN = 32


class KeyParseError(ValueError):
    pass


def _decode(text):
    if not isinstance(text, str):
        raise KeyParseError(f"key must be a string, got {type(text).__name__}")
    try:
        raw = base64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise KeyParseError(f"invalid base64 key {text!r}: {e}")
    if len(raw) != KEY_LEN:
        raise KeyParseError(f"incorrect key size: {len(raw)} bytes, expected {KEY_LEN}")
    return raw


class _Key:
    __slots__ = ("_raw",)

    def __init__(self, raw):
        raw = bytes(raw)
        if len(raw) != KEY_LEN:
            raise KeyParseError(f"incorrect key size: {len(raw)} bytes, expected {KEY_LEN}")
        object.__setattr__(self, "_raw", raw)

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    @classmethod
    def parse(cls, text):
        return cls(_decode(text))

    @property
    def raw(self):
        return self._raw

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self._raw == other._raw

    def __hash__(self):
        return hash((type(self).__name__, self._raw))

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __str__(self):
        return base64.b64encode(self._raw).decode("ascii")

    def __repr__(self):
        return f"{type(self).__name__}({str(self)!r})"


class PublicKey(_Key):
    __slots__ = ()


class PrivateKey(_Key):
    """Curve25519 private key in the wg(8) text encoding."""

    __slots__ = ()

    @classmethod
    def generate(cls):
        priv = X25519PrivateKey.generate()
        return cls(priv.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()))

    def public_key(self):
        priv = X25519PrivateKey.from_private_bytes(self._raw)
        return PublicKey(priv.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw))

    def __repr__(self):
        return "PrivateKey(<hidden>)"
