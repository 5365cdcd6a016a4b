"""Roster of authorized users (the envseal.yaml manifest)."""

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from . import crypto
from .errors import CryptoError, InvalidNameError, InvalidPubKeyError, UserExistsError, UserNotFoundError
from .locking import RWLock
from .storage import DocumentStore, dump_document, load_document

logger = logging.getLogger("envseal.roster")

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]{1,63}$")


@dataclass(frozen=True)
class User:
    name: str
    public_key: str

    def to_dict(self) -> dict:
        return {"name": self.name, "public_key": self.public_key}


def _sort_key(user: User):
    return (user.name, user.public_key)


def normalize_users(entries: Iterable[Any]) -> list[User]:
    """
    Best-effort repair of a hand-edited user list.

    Trims fields, drops entries without a public key, keeps the first entry
    for each public key and sorts by name then public key.
    """
    seen = set()
    users = []
    for item in entries or []:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        public_key = str(item.get("public_key") or "").strip()
        if not public_key:
            continue
        if public_key in seen:
            continue
        seen.add(public_key)
        users.append(User(name=name, public_key=public_key))
    users.sort(key=_sort_key)
    return users


class Roster:
    """Who may decrypt. Independent of any vault: edits here grant or revoke
    nothing until a vault is re-wrapped or rotated against public_keys().
    """

    def __init__(self, store: DocumentStore, project_name: str = "", users: Iterable[User] = ()):
        self._store = store
        self._lock = RWLock()
        self.project_name = project_name
        self._users: list[User] = sorted(users, key=_sort_key)

    @classmethod
    def load(cls, store: DocumentStore) -> "Roster":
        """Load a roster; a missing document gives an empty one."""
        data = store.load()
        doc = load_document(data) if data else {}
        raw_users = doc.get("access_control") or []
        users = normalize_users(raw_users if isinstance(raw_users, list) else [])
        if isinstance(raw_users, list) and len(users) != len(raw_users):
            logger.warning("Dropped %d invalid or duplicate roster entries", len(raw_users) - len(users))
        return cls(store, project_name=str(doc.get("project_name") or ""), users=users)

    def _document(self) -> dict:
        return {
            "project_name": self.project_name,
            "access_control": [u.to_dict() for u in self._users],
        }

    def to_document(self) -> dict:
        with self._lock.read():
            return self._document()

    def save(self) -> None:
        """Persist the roster as it stands when the write lock is taken."""
        with self._lock.write():
            self._store.save(dump_document(self._document()))

    @property
    def users(self) -> list[User]:
        with self._lock.read():
            return list(self._users)

    def __len__(self):
        with self._lock.read():
            return len(self._users)

    def add_user(self, name: str, public_key: str) -> User:
        """Add a user, rejecting duplicate public keys.

        Raises:
            InvalidNameError: Empty name or one that does not match NAME_PATTERN.
            InvalidPubKeyError: Empty or unparseable public key.
            UserExistsError: The public key is already on the roster.
        """
        name = (name or "").strip()
        public_key = (public_key or "").strip()
        if not name:
            raise InvalidNameError("name cannot be empty")
        if not NAME_PATTERN.match(name):
            raise InvalidNameError(
                f"invalid name {name!r}: use 2-64 letters, digits, '.', '_' or '-', starting with a letter or digit"
            )
        if not public_key:
            raise InvalidPubKeyError("public key cannot be empty")
        try:
            crypto.parse_public_key(public_key)
        except CryptoError as e:
            raise InvalidPubKeyError(str(e)) from None

        user = User(name=name, public_key=public_key)
        with self._lock.write():
            if any(u.public_key == public_key for u in self._users):
                raise UserExistsError()
            self._users.append(user)
            self._users.sort(key=_sort_key)
        logger.info("Added user %s", name)
        return user

    def remove_user(self, identifier: str) -> bool:
        """Remove every user whose name or public key equals ``identifier``."""
        identifier = (identifier or "").strip()
        if not identifier:
            return False
        with self._lock.write():
            kept = [u for u in self._users if identifier not in (u.name, u.public_key)]
            found = len(kept) != len(self._users)
            self._users = kept
        if found:
            logger.info("Removed user %s", identifier)
        return found

    def remove_user_strict(self, identifier: str) -> None:
        if not self.remove_user(identifier):
            raise UserNotFoundError(f"user {(identifier or '').strip()!r} not found")

    def public_keys(self) -> list[str]:
        """Public keys in roster order, for wrapping a vault's DEK."""
        with self._lock.read():
            return [u.public_key for u in self._users if u.public_key]

    def find_user_by_public_key(self, public_key: str) -> Optional[User]:
        public_key = (public_key or "").strip()
        with self._lock.read():
            for u in self._users:
                if u.public_key == public_key:
                    return u
        return None
