"""Exceptions raised by envseal."""


class EnvsealError(Exception):
    """Base exception for envseal errors."""
    pass


class CryptoError(EnvsealError, ValueError):
    """Key material could not be parsed or used."""
    pass


# Vault errors


class VaultError(EnvsealError):
    """Base exception for vault errors."""
    pass


class NotUnlockedError(VaultError):
    """Operation requires the DEK but the vault is locked."""

    def __init__(self, message: str = "vault is locked: unlock it with a recipient identity first"):
        super().__init__(message)


class AccessDeniedError(VaultError):
    """No recipient entry could be unwrapped with the supplied identity.

    The message is fixed on purpose. Wrong key, malformed entry and empty
    recipient list are indistinguishable to the caller.
    """

    def __init__(self, message: str = "access denied: your private key is not in the recipients list"):
        super().__init__(message)


class MissingMetadataError(VaultError):
    """The document has no metadata block at all."""

    def __init__(self, message: str = "corrupt or uninitialized file: missing _envseal block"):
        super().__init__(message)


class EmptyRecipientsError(VaultError, ValueError):
    """Recipient list is empty after normalization."""

    def __init__(self, message: str = "recipients list cannot be empty"):
        super().__init__(message)


class ReservedNameError(VaultError, ValueError):
    """Name collides with a reserved document key."""
    pass


class KeyNotFoundError(VaultError, KeyError):
    """Secret name not present in the vault."""

    def __str__(self):
        # KeyError quotes its argument, keep plain messages
        return str(self.args[0]) if self.args else "key not found"


class IntegrityError(VaultError, ValueError):
    """Stored value failed authentication or could not be decoded."""
    pass


class InvalidFormatError(IntegrityError):
    """Stored document or value has an unexpected shape."""
    pass


# Roster errors


class RosterError(EnvsealError):
    """Base exception for roster errors."""
    pass


class InvalidNameError(VaultError, RosterError, ValueError):
    """Secret or user name is empty or malformed."""
    pass


class InvalidPubKeyError(VaultError, RosterError, ValueError):
    """Public key is empty or malformed."""
    pass


class UserExistsError(RosterError, ValueError):
    """A user with this public key already exists."""

    def __init__(self, message: str = "a user with this public key already exists"):
        super().__init__(message)


class UserNotFoundError(RosterError, LookupError):
    """No user matches the given name or public key."""

    def __init__(self, message: str = "user not found"):
        super().__init__(message)
