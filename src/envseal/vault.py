"""
Envelope-encrypted secrets document.

Layout of a persisted vault::

    _envseal:
      recipients:
      - identifier: envseal1...
        wrapped_key: |
          -----BEGIN ENVSEAL WRAPPED KEY-----
          ...
    secrets:
      API_KEY: ENC[x25519,chacha20,<base64>]
    LEGACY_KEY: plain or sealed value kept for backwards compatibility

One DEK seals every value. The DEK is wrapped separately for each recipient,
and exists in memory only while the vault is unlocked.
"""

import base64
import binascii
import enum
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Union

from . import crypto
from .config import METADATA_KEY, RESERVED_KEYS, SECRETS_KEY
from .crypto import Identity
from .errors import (
    AccessDeniedError,
    CryptoError,
    EmptyRecipientsError,
    IntegrityError,
    InvalidFormatError,
    InvalidNameError,
    InvalidPubKeyError,
    KeyNotFoundError,
    MissingMetadataError,
    NotUnlockedError,
    ReservedNameError,
)
from .locking import RWLock
from .storage import DocumentStore, dump_document, load_document

logger = logging.getLogger("envseal.vault")

SEAL_PREFIX = "ENC[x25519,chacha20,"
SEAL_SUFFIX = "]"


class UnsealPolicy(enum.Enum):
    """What get_all_secrets does with an entry that fails to unseal."""

    RAW = "raw"        # return the stored value unchanged
    MARKER = "marker"  # return an "<unreadable: ...>" marker
    STRICT = "strict"  # raise the IntegrityError


@dataclass
class RecipientEntry:
    identifier: str
    wrapped_key: str

    def to_dict(self) -> dict:
        return {"identifier": self.identifier, "wrapped_key": self.wrapped_key}


# ---------------------------------------------------------------------------
# Value encoding
# ---------------------------------------------------------------------------

def encode_sealed(blob: bytes) -> str:
    return SEAL_PREFIX + base64.b64encode(blob).decode("ascii") + SEAL_SUFFIX


def is_sealed(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(SEAL_PREFIX) and value.endswith(SEAL_SUFFIX)


def decode_sealed(value: str) -> bytes:
    payload = value[len(SEAL_PREFIX):len(value) - len(SEAL_SUFFIX)]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise IntegrityError("sealed value is not valid base64") from None


def seal_value(plaintext: str, dek) -> str:
    """Seal a string under the DEK and wrap it in the ENC[...] marker."""
    return encode_sealed(crypto.seal(plaintext.encode("utf-8"), dek))


def unseal_value(value: str, dek) -> str:
    """Unseal a marked value; unmarked values are legacy plaintext and pass through."""
    if not is_sealed(value):
        return value
    plaintext = crypto.unseal(decode_sealed(value), dek)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise IntegrityError("sealed value is not valid UTF-8") from None


def normalize_recipients(public_keys: Union[str, Iterable[str]]) -> list[str]:
    """Trim, drop empties, dedupe and sort public keys; validate each one."""
    if isinstance(public_keys, str):
        public_keys = [public_keys]
    keys = sorted({k.strip() for k in public_keys if k and k.strip()})
    if not keys:
        raise EmptyRecipientsError()
    for key in keys:
        try:
            crypto.parse_public_key(key)
        except CryptoError as e:
            raise InvalidPubKeyError(str(e)) from None
    return keys


def _parse_metadata(meta: Any) -> list[RecipientEntry]:
    # Malformed entries are kept as blanks so unlock fails closed
    if not isinstance(meta, dict):
        return []
    recipients = meta.get("recipients")
    if not isinstance(recipients, list):
        return []
    entries = []
    for item in recipients:
        item = item if isinstance(item, dict) else {}
        identifier = item.get("identifier")
        wrapped = item.get("wrapped_key")
        entries.append(RecipientEntry(
            identifier=identifier if isinstance(identifier, str) else "",
            wrapped_key=wrapped if isinstance(wrapped, str) else "",
        ))
    return entries


class Vault:
    """A secrets document plus, while unlocked, its DEK.

    All reads take a shared lock and all mutations an exclusive one, so one
    instance can be used from several threads.
    """

    def __init__(self, store: DocumentStore):
        self._store = store
        self._lock = RWLock()
        # None means the document has no metadata block at all
        self._metadata: Optional[list[RecipientEntry]] = None
        self._secrets: dict[str, Any] = {}
        self._legacy: dict[Any, Any] = {}
        self._dek: Optional[bytearray] = None

    @classmethod
    def load(cls, store: DocumentStore) -> "Vault":
        """Load a vault in the locked state. A missing document gives an empty vault."""
        vault = cls(store)
        data = store.load()
        if data:
            vault._apply_document(load_document(data))
        return vault

    @classmethod
    def create(cls, store: DocumentStore, recipients: Iterable[str]) -> "Vault":
        """Create a new vault with a fresh DEK for ``recipients``. Left unlocked."""
        vault = cls(store)
        vault.initialize(recipients)
        return vault

    def _apply_document(self, doc: dict) -> None:
        doc = dict(doc)
        if METADATA_KEY in doc:
            self._metadata = _parse_metadata(doc.pop(METADATA_KEY))
        else:
            self._metadata = None

        secrets = doc.pop(SECRETS_KEY, None)
        if secrets is None:
            secrets = {}
        if not isinstance(secrets, dict):
            raise InvalidFormatError("invalid secrets format: expected a mapping")
        if any(not isinstance(k, str) for k in secrets):
            raise InvalidFormatError("invalid secrets format: non-string key")

        self._secrets = dict(secrets)
        self._legacy = doc

    def to_document(self) -> dict:
        """Return the serializable form: metadata, canonical secrets, then legacy keys."""
        with self._lock.read():
            return self._document()

    def _document(self) -> dict:
        doc = {}
        if self._metadata is not None:
            doc[METADATA_KEY] = {"recipients": [e.to_dict() for e in self._metadata]}
        doc[SECRETS_KEY] = dict(sorted(self._secrets.items()))
        for key, value in self._legacy.items():
            doc[key] = value
        return doc

    def save(self) -> None:
        """Write the document through the store."""
        with self._lock.write():
            if not self._metadata and self._has_sealed_values():
                raise EmptyRecipientsError("vault holds sealed values but has no recipients")
            data = dump_document(self._document())
            self._store.save(data)
        logger.debug("Saved vault with %d secrets", len(self._secrets))

    def _has_sealed_values(self) -> bool:
        values = list(self._secrets.values()) + list(self._legacy.values())
        return any(is_sealed(v) for v in values)

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def is_unlocked(self) -> bool:
        with self._lock.read():
            return self._dek is not None

    @property
    def has_metadata(self) -> bool:
        with self._lock.read():
            return self._metadata is not None

    @property
    def recipients(self) -> list[str]:
        """Identifiers of the current recipient entries, in stored order."""
        with self._lock.read():
            return [e.identifier for e in self._metadata or []]

    def keys(self) -> list[str]:
        """Names of all secrets, canonical and legacy. Works while locked."""
        with self._lock.read():
            names = set(self._secrets)
            names.update(k for k, v in self._legacy.items() if isinstance(k, str) and isinstance(v, str))
            return sorted(names)

    def _require_unlocked(self) -> bytearray:
        if self._dek is None:
            raise NotUnlockedError()
        return self._dek

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.lock()
        return False

    # -----------------------------------------------------------------------
    # Key lifecycle
    # -----------------------------------------------------------------------

    def initialize(self, recipients: Iterable[str]) -> None:
        """Mint a new DEK, wrap it for ``recipients`` and start with no values."""
        keys = normalize_recipients(recipients)
        dek = crypto.generate_dek()
        try:
            entries = self._wrap_for(dek, keys)
        except BaseException:
            crypto.zero(dek)
            raise

        with self._lock.write():
            crypto.zero(self._dek)
            self._dek = dek
            self._metadata = entries
            self._secrets = {}
            self._legacy = {}
        logger.info("Initialized vault for %d recipients", len(entries))

    def unlock(self, identity: Union[Identity, str]) -> None:
        """Load the DEK from the first recipient entry this identity can open.

        Raises:
            CryptoError: ``identity`` is a string that is not a well-formed
                secret key. Raised before the metadata is looked at.
            MissingMetadataError: The document has no metadata block.
            AccessDeniedError: No entry could be opened. Never says why.
        """
        if isinstance(identity, str):
            identity = crypto.parse_identity(identity)

        with self._lock.write():
            if self._metadata is None:
                raise MissingMetadataError()

            for entry in self._metadata:
                try:
                    dek = crypto.unwrap_key(entry.wrapped_key, identity)
                except AccessDeniedError:
                    continue
                crypto.zero(self._dek)
                self._dek = dek
                logger.debug("Vault unlocked")
                return

        raise AccessDeniedError()

    def lock(self) -> None:
        """Zero and drop the DEK. Safe to call on a locked vault."""
        with self._lock.write():
            crypto.zero(self._dek)
            self._dek = None

    def _wrap_for(self, dek: bytearray, keys: list[str]) -> list[RecipientEntry]:
        return [RecipientEntry(identifier=k, wrapped_key=crypto.wrap_key(dek, [k])) for k in keys]

    def rewrap_recipients(self, public_keys: Iterable[str]) -> None:
        """
        Re-wrap the existing DEK for exactly ``public_keys``.

        Sealed values are untouched. A removed recipient who already holds
        the DEK can still read them; use rotate_key to revoke.
        """
        keys = normalize_recipients(public_keys)
        with self._lock.write():
            dek = self._require_unlocked()
            self._metadata = self._wrap_for(dek, keys)
        logger.info("Re-wrapped DEK for %d recipients", len(keys))

    def rotate_key(self, public_keys: Iterable[str]) -> None:
        """
        Mint a new DEK, wrap it for ``public_keys`` and re-seal every value.

        Either everything is replaced or nothing is. Legacy top-level string
        values are moved into the canonical secrets map, sealed. A legacy
        value shadowed by a canonical one of the same name is still checked
        under the old DEK, then dropped; the canonical value wins.
        """
        keys = normalize_recipients(public_keys)
        with self._lock.write():
            old_dek = self._require_unlocked()

            plaintexts = {}
            for name, value in self._secrets.items():
                plaintexts[name] = self._reveal(value, old_dek)
            migrated = []
            for name, value in self._legacy.items():
                if not (isinstance(name, str) and isinstance(value, str)):
                    continue
                plaintext = unseal_value(value, old_dek)
                if name not in plaintexts:
                    plaintexts[name] = plaintext
                migrated.append(name)

            new_dek = crypto.generate_dek()
            try:
                entries = self._wrap_for(new_dek, keys)
                secrets = {name: seal_value(p, new_dek) for name, p in plaintexts.items()}
            except BaseException:
                crypto.zero(new_dek)
                raise

            self._metadata = entries
            self._secrets = secrets
            self._legacy = {k: v for k, v in self._legacy.items() if k not in migrated}
            self._dek = new_dek
            crypto.zero(old_dek)
            plaintexts.clear()

        logger.info(
            "Rotated DEK for %d recipients, re-sealed %d secrets (%d migrated from legacy keys)",
            len(keys), len(secrets), len(migrated),
        )

    # -----------------------------------------------------------------------
    # Values
    # -----------------------------------------------------------------------

    @staticmethod
    def _check_name(name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise InvalidNameError("key cannot be empty")
        if name in RESERVED_KEYS:
            raise ReservedNameError(f"cannot use reserved name {name!r}")
        return name

    @staticmethod
    def _reveal(value: Any, dek: bytearray) -> str:
        if not isinstance(value, str):
            raise InvalidFormatError("value is not a string")
        return unseal_value(value, dek)

    def set_secret(self, name: str, plaintext: str) -> None:
        """Seal ``plaintext`` under ``name``, replacing any canonical or legacy value."""
        name = self._check_name(name)
        if not isinstance(plaintext, str):
            raise InvalidFormatError("value must be a string")
        with self._lock.write():
            dek = self._require_unlocked()
            self._secrets[name] = seal_value(plaintext, dek)
            self._legacy.pop(name, None)

    def unset_secret(self, name: str) -> None:
        name = self._check_name(name)
        with self._lock.write():
            self._require_unlocked()
            if name not in self._secrets and name not in self._legacy:
                raise KeyNotFoundError(f"key {name!r} does not exist")
            self._secrets.pop(name, None)
            self._legacy.pop(name, None)

    def get_secret(self, name: str) -> str:
        """Return a plaintext value, checking the secrets map before legacy keys."""
        name = self._check_name(name)
        with self._lock.read():
            dek = self._require_unlocked()
            if name in self._secrets:
                return self._reveal(self._secrets[name], dek)
            if name in self._legacy:
                return self._reveal(self._legacy[name], dek)
        raise KeyNotFoundError(f"key not found: {name}")

    def get_all_secrets(self, policy: UnsealPolicy = UnsealPolicy.RAW) -> dict[str, str]:
        """
        Return every secret as plaintext.

        An entry that fails to unseal does not abort the listing unless
        ``policy`` is STRICT. With RAW the stored value is returned as-is,
        with MARKER an ``<unreadable: ...>`` string. Failures are logged.
        Legacy top-level entries that are not strings are skipped.
        """
        policy = UnsealPolicy(policy)
        with self._lock.read():
            dek = self._require_unlocked()
            out = {}
            candidates = list(self._secrets.items()) + [
                (k, v) for k, v in self._legacy.items() if isinstance(k, str) and isinstance(v, str)
            ]
            for name, value in candidates:
                if name in out:
                    continue
                try:
                    out[name] = self._reveal(value, dek)
                except IntegrityError as e:
                    if policy is UnsealPolicy.STRICT:
                        raise
                    logger.warning("Could not unseal %s: %s", name, e)
                    if policy is UnsealPolicy.MARKER:
                        out[name] = f"<unreadable: {e}>"
                    else:
                        out[name] = value if isinstance(value, str) else str(value)
            return out
