"""
Key handling, key wrapping and value sealing.

Two primitives back every vault:
- Wrap: X25519 ephemeral-static agreement -> HKDF-SHA256 -> ChaCha20-Poly1305,
  producing an ASCII-armored blob that only the matching identity can open.
- Seal: ChaCha20-Poly1305 under the 32-byte DEK, output nonce || ct || tag.

Security Note:
    Never log plaintext, DEKs or private keys.
    Nonces are random 96-bit values drawn per call.
"""

import base64
import os
from pathlib import Path
from typing import Iterable, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from .errors import AccessDeniedError, CryptoError, EmptyRecipientsError, IntegrityError

DEK_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
X25519_SIZE = 32

PUBLIC_KEY_PREFIX = "envseal1"
SECRET_KEY_PREFIX = "ENVSEAL-SECRET-KEY-"

ARMOR_HEADER = "-----BEGIN ENVSEAL WRAPPED KEY-----"
ARMOR_FOOTER = "-----END ENVSEAL WRAPPED KEY-----"
ARMOR_WIDTH = 64

WRAP_VERSION = 1
WRAP_INFO = b"envseal/wrap/v1"
MAX_STANZAS = 255


def b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64d(s: str) -> bytes:
    padded = s + "=" * (-len(s) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def _raw_public(pub: X25519PublicKey) -> bytes:
    return pub.public_bytes(Encoding.Raw, PublicFormat.Raw)


class Identity:
    """An X25519 keypair. The secret form is a single line of text."""

    def __init__(self, private_key: X25519PrivateKey):
        self._private_key = private_key

    @property
    def secret(self) -> str:
        raw = self._private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        return SECRET_KEY_PREFIX + b64e(raw)

    @property
    def public_key(self) -> str:
        return PUBLIC_KEY_PREFIX + b64e(_raw_public(self._private_key.public_key()))

    def exchange(self, peer: X25519PublicKey) -> bytes:
        return self._private_key.exchange(peer)

    def __repr__(self):
        return f"Identity(public_key={self.public_key!r})"


def generate_identity() -> Identity:
    """Generate a new keypair."""
    return Identity(X25519PrivateKey.generate())


def parse_identity(text: str) -> Identity:
    """Parse the single-line secret form of an identity."""
    text = (text or "").strip()
    if not text.startswith(SECRET_KEY_PREFIX):
        raise CryptoError("malformed identity: missing prefix")
    try:
        raw = b64d(text[len(SECRET_KEY_PREFIX):])
    except (ValueError, UnicodeEncodeError):
        raise CryptoError("malformed identity: bad encoding") from None
    if len(raw) != X25519_SIZE:
        raise CryptoError("malformed identity: wrong key length")
    return Identity(X25519PrivateKey.from_private_bytes(raw))


def load_identity(path: Path) -> Identity:
    """Read an identity from a single-line key file."""
    path = Path(path).expanduser()
    content = path.read_text(encoding="utf-8")
    try:
        return parse_identity(content)
    except CryptoError as e:
        raise CryptoError(f"{path}: {e}") from None


def parse_public_key(text: str) -> X25519PublicKey:
    """Parse a public key string, raising CryptoError if it is malformed."""
    text = (text or "").strip()
    if not text.startswith(PUBLIC_KEY_PREFIX):
        raise CryptoError(f"invalid public key: expected prefix {PUBLIC_KEY_PREFIX!r}")
    try:
        raw = b64d(text[len(PUBLIC_KEY_PREFIX):])
    except (ValueError, UnicodeEncodeError):
        raise CryptoError("invalid public key: bad encoding") from None
    if len(raw) != X25519_SIZE:
        raise CryptoError("invalid public key: wrong key length")
    return X25519PublicKey.from_public_bytes(raw)


# ---------------------------------------------------------------------------
# DEK lifecycle
# ---------------------------------------------------------------------------

def generate_dek() -> bytearray:
    """Return a fresh random DEK in a mutable buffer so it can be zeroed."""
    return bytearray(os.urandom(DEK_SIZE))


def zero(buf: Optional[bytearray]) -> None:
    """Overwrite key material in place."""
    if buf is None:
        return
    buf[:] = bytes(len(buf))


def _check_key(key) -> None:
    if len(key) != DEK_SIZE:
        raise CryptoError(f"invalid DEK size: got {len(key)}, want {DEK_SIZE}")


# ---------------------------------------------------------------------------
# Wrapping
# ---------------------------------------------------------------------------

def _derive_wrap_key(shared: bytes, ephemeral_pub: bytes, recipient_pub: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=ephemeral_pub + recipient_pub,
        info=WRAP_INFO,
    )
    return hkdf.derive(shared)


def _armor(payload: bytes) -> str:
    body = base64.b64encode(payload).decode("ascii")
    lines = [body[i:i + ARMOR_WIDTH] for i in range(0, len(body), ARMOR_WIDTH)]
    return "\n".join([ARMOR_HEADER, *lines, ARMOR_FOOTER]) + "\n"


def _dearmor(text: str) -> bytes:
    lines = [line.strip() for line in text.strip().splitlines()]
    if len(lines) < 3 or lines[0] != ARMOR_HEADER or lines[-1] != ARMOR_FOOTER:
        raise ValueError("bad armor")
    return base64.b64decode("".join(lines[1:-1]), validate=True)


def wrap_key(key: bytes, public_keys: Union[str, Iterable[str]]) -> str:
    """Encrypt a short key to one or more public keys.

    Args:
        key: Key bytes to protect (the DEK).
        public_keys: One public key string or an iterable of them.

    Returns:
        Armored text with one stanza per public key.
    """
    if isinstance(public_keys, str):
        public_keys = [public_keys]
    recipients = [parse_public_key(k) for k in public_keys]
    if not recipients:
        raise EmptyRecipientsError("no recipients provided")
    if len(recipients) > MAX_STANZAS:
        raise CryptoError(f"too many recipients in one envelope (max {MAX_STANZAS})")

    stanzas = []
    for recipient in recipients:
        ephemeral = X25519PrivateKey.generate()
        ephemeral_pub = _raw_public(ephemeral.public_key())
        try:
            shared = ephemeral.exchange(recipient)
        except ValueError as e:
            raise CryptoError(f"invalid public key: {e}") from None
        wk = _derive_wrap_key(shared, ephemeral_pub, _raw_public(recipient))
        nonce = os.urandom(NONCE_SIZE)
        ct = ChaCha20Poly1305(wk).encrypt(nonce, bytes(key), None)
        stanzas.append(ephemeral_pub + nonce + ct)

    payload = bytes([WRAP_VERSION, len(stanzas)]) + b"".join(stanzas)
    return _armor(payload)


def unwrap_key(armored: str, identity: Identity, expected_size: Optional[int] = DEK_SIZE) -> bytearray:
    """Recover a wrapped key with the given identity.

    Every failure (bad armor, no matching stanza, wrong length) raises the
    same AccessDeniedError.
    """
    if not armored or identity is None:
        raise AccessDeniedError()
    try:
        data = _dearmor(armored)
        version, count, rest = data[0], data[1], data[2:]
        if version != WRAP_VERSION or count == 0 or len(rest) % count:
            raise ValueError("bad envelope")
        size = len(rest) // count
        if size <= X25519_SIZE + NONCE_SIZE + TAG_SIZE:
            raise ValueError("bad stanza")
        recipient_pub = _raw_public(parse_public_key(identity.public_key))
    except (ValueError, IndexError):
        raise AccessDeniedError() from None

    for i in range(count):
        stanza = rest[i * size:(i + 1) * size]
        ephemeral_pub = stanza[:X25519_SIZE]
        nonce = stanza[X25519_SIZE:X25519_SIZE + NONCE_SIZE]
        ct = stanza[X25519_SIZE + NONCE_SIZE:]
        try:
            shared = identity.exchange(X25519PublicKey.from_public_bytes(ephemeral_pub))
            wk = _derive_wrap_key(shared, ephemeral_pub, recipient_pub)
            key = bytearray(ChaCha20Poly1305(wk).decrypt(nonce, ct, None))
        except (InvalidTag, ValueError):
            continue
        if expected_size is not None and len(key) != expected_size:
            zero(key)
            continue
        return key

    raise AccessDeniedError()


# ---------------------------------------------------------------------------
# Sealing
# ---------------------------------------------------------------------------

def seal(plaintext: bytes, key) -> bytes:
    """Encrypt with ChaCha20-Poly1305 under the DEK.

    Format: [nonce 12B][ciphertext][tag 16B]
    """
    _check_key(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + ChaCha20Poly1305(bytes(key)).encrypt(nonce, plaintext, None)


def unseal(blob: bytes, key) -> bytes:
    """Decrypt a sealed blob, raising IntegrityError if authentication fails."""
    _check_key(key)
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise IntegrityError("ciphertext too short")
    nonce, ct = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return ChaCha20Poly1305(bytes(key)).decrypt(nonce, ct, None)
    except InvalidTag:
        raise IntegrityError("failed to decrypt value (possible corruption or incorrect DEK)") from None
