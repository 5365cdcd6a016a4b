"""Tests for the envelope-encrypted vault."""

import stat
import threading

import pytest
import yaml

from envseal import crypto
from envseal.config import METADATA_KEY, SECRETS_KEY
from envseal.errors import (
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
from envseal.storage import FileStore, MemoryStore, dump_document
from envseal.vault import (
    SEAL_PREFIX,
    UnsealPolicy,
    Vault,
    is_sealed,
    normalize_recipients,
    seal_value,
    unseal_value,
)


def _captured_dek(vault, identity):
    """What a recipient could extract from the stored file right now."""
    for entry in vault.to_document()[METADATA_KEY]["recipients"]:
        try:
            return crypto.unwrap_key(entry["wrapped_key"], identity)
        except AccessDeniedError:
            continue
    raise AccessDeniedError()


def _reload(store):
    return Vault.load(MemoryStore(store.data))


class TestValueEncoding:

    def test_sealed_marker(self):
        dek = crypto.generate_dek()
        value = seal_value("v", dek)
        assert value.startswith(SEAL_PREFIX) and value.endswith("]")
        assert is_sealed(value)
        assert unseal_value(value, dek) == "v"

    def test_plain_value_passes_through(self):
        assert not is_sealed("plain")
        assert not is_sealed(5)
        assert unseal_value("plain", crypto.generate_dek()) == "plain"

    def test_bad_base64_is_integrity_error(self):
        with pytest.raises(IntegrityError):
            unseal_value(SEAL_PREFIX + "!!!]", crypto.generate_dek())

    def test_normalize_recipients(self, alice, bob):
        """Trimmed, deduplicated and sorted."""
        keys = normalize_recipients([" " + bob.public_key, alice.public_key, bob.public_key, "", "  "])
        assert keys == sorted([alice.public_key, bob.public_key])

    def test_normalize_recipients_empty(self):
        with pytest.raises(EmptyRecipientsError):
            normalize_recipients(["", "   "])

    def test_normalize_recipients_invalid(self):
        with pytest.raises(InvalidPubKeyError):
            normalize_recipients(["not-a-key"])


class TestLifecycle:
    """Initialize, unlock and lock."""

    def test_initialize_requires_recipients(self, store):
        with pytest.raises(EmptyRecipientsError):
            Vault.create(store, [])

    def test_create_is_unlocked(self, store, alice):
        vault = Vault.create(store, [alice.public_key])
        assert vault.is_unlocked
        assert vault.recipients == [alice.public_key]
        assert vault.keys() == []

    def test_unlock_determinism(self, store, alice, bob, mallory):
        """Any member unlocks; an outsider gets AccessDenied."""
        vault = Vault.create(store, [alice.public_key, bob.public_key])
        vault.save()
        for member in (alice, bob):
            loaded = _reload(store)
            assert not loaded.is_unlocked
            loaded.unlock(member)
            assert loaded.is_unlocked
        with pytest.raises(AccessDeniedError):
            _reload(store).unlock(mallory)

    def test_unlock_with_secret_string(self, store, alice):
        Vault.create(store, [alice.public_key]).save()
        vault = _reload(store)
        vault.unlock(alice.secret)
        assert vault.is_unlocked

    def test_unlock_with_malformed_secret_string(self, store, alice):
        Vault.create(store, [alice.public_key]).save()
        vault = _reload(store)
        with pytest.raises(CryptoError):
            vault.unlock("ENVSEAL-SECRET-KEY-not!base64")
        assert not vault.is_unlocked

    def test_missing_metadata(self, alice):
        vault = Vault.load(MemoryStore(b"secrets: {}\n"))
        assert not vault.has_metadata
        with pytest.raises(MissingMetadataError):
            vault.unlock(alice)

    def test_missing_document_is_uninitialized(self, alice):
        with pytest.raises(MissingMetadataError):
            Vault.load(MemoryStore()).unlock(alice)

    @pytest.mark.parametrize("meta", [
        "garbage",
        {"recipients": "garbage"},
        {"recipients": []},
        {"recipients": ["x", {"identifier": 1, "wrapped_key": None}]},
        {"recipients": [{"identifier": "k", "wrapped_key": "-----BEGIN ENVSEAL WRAPPED KEY-----\nAAAA\n-----END ENVSEAL WRAPPED KEY-----\n"}]},
    ])
    def test_malformed_metadata_is_access_denied(self, alice, meta):
        """Corrupt metadata fails the same way as a wrong key."""
        vault = Vault.load(MemoryStore(dump_document({METADATA_KEY: meta})))
        with pytest.raises(AccessDeniedError) as excinfo:
            vault.unlock(alice)
        assert str(excinfo.value) == str(AccessDeniedError())

    def test_first_matching_entry_wins(self, alice, bob):
        """A corrupt entry before a good one does not block unlock."""
        good = crypto.wrap_key(crypto.generate_dek(), [alice.public_key])
        doc = {METADATA_KEY: {"recipients": [
            {"identifier": bob.public_key, "wrapped_key": "corrupt"},
            {"identifier": alice.public_key, "wrapped_key": good},
        ]}}
        vault = Vault.load(MemoryStore(dump_document(doc)))
        vault.unlock(alice)
        assert vault.is_unlocked

    def test_lock_is_idempotent(self, store, alice):
        vault = Vault.create(store, [alice.public_key])
        vault.lock()
        assert not vault.is_unlocked
        vault.lock()
        assert not vault.is_unlocked

    def test_lock_zeroes_key(self, store, alice):
        vault = Vault.create(store, [alice.public_key])
        dek = vault._dek
        vault.lock()
        assert dek == bytearray(crypto.DEK_SIZE)

    def test_context_manager_locks(self, store, alice):
        with Vault.create(store, [alice.public_key]) as vault:
            assert vault.is_unlocked
        assert not vault.is_unlocked


class TestSecrets:
    """Set, get, unset and listing."""

    @pytest.fixture
    def vault(self, store, alice):
        return Vault.create(store, [alice.public_key])

    def test_set_and_get(self, vault):
        vault.set_secret("K", "v")
        assert vault.get_secret("K") == "v"
        assert is_sealed(vault.to_document()[SECRETS_KEY]["K"])

    def test_set_draws_fresh_nonce(self, vault):
        vault.set_secret("K", "v")
        first = vault.to_document()[SECRETS_KEY]["K"]
        vault.set_secret("K", "v")
        assert vault.to_document()[SECRETS_KEY]["K"] != first

    def test_name_is_trimmed(self, vault):
        vault.set_secret("  K  ", "v")
        assert vault.keys() == ["K"]
        assert vault.get_secret("K") == "v"

    @pytest.mark.parametrize("name", [METADATA_KEY, SECRETS_KEY])
    def test_reserved_names(self, vault, name):
        with pytest.raises(ReservedNameError):
            vault.set_secret(name, "v")
        with pytest.raises(ReservedNameError):
            vault.get_secret(name)

    def test_empty_name(self, vault):
        with pytest.raises(InvalidNameError):
            vault.set_secret("  ", "v")

    def test_non_string_value_rejected(self, vault):
        with pytest.raises(InvalidFormatError):
            vault.set_secret("K", 5)

    def test_get_missing(self, vault):
        with pytest.raises(KeyNotFoundError):
            vault.get_secret("NOPE")

    def test_unset(self, vault):
        vault.set_secret("K", "v")
        vault.unset_secret("K")
        assert vault.keys() == []
        with pytest.raises(KeyNotFoundError):
            vault.unset_secret("K")

    def test_locked_operations(self, vault):
        """Every value operation needs the DEK."""
        vault.set_secret("K", "v")
        vault.lock()
        with pytest.raises(NotUnlockedError):
            vault.get_secret("K")
        with pytest.raises(NotUnlockedError):
            vault.set_secret("K", "w")
        with pytest.raises(NotUnlockedError):
            vault.unset_secret("K")
        with pytest.raises(NotUnlockedError):
            vault.get_all_secrets()
        with pytest.raises(NotUnlockedError):
            vault.rewrap_recipients(vault.recipients)
        with pytest.raises(NotUnlockedError):
            vault.rotate_key(vault.recipients)
        assert vault.keys() == ["K"]

    def test_save_and_load(self, tmp_path, alice):
        path = tmp_path / "secrets.enc.yaml"
        vault = Vault.create(FileStore(path), [alice.public_key])
        vault.set_secret("B", "2")
        vault.set_secret("A", "1")
        vault.save()

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        raw = yaml.safe_load(path.read_text())
        assert list(raw) == [METADATA_KEY, SECRETS_KEY]
        assert list(raw[SECRETS_KEY]) == ["A", "B"]
        assert "1" not in raw[SECRETS_KEY].values()

        loaded = Vault.load(FileStore(path))
        loaded.unlock(alice)
        assert loaded.get_all_secrets() == {"A": "1", "B": "2"}

    def test_save_refuses_sealed_values_without_recipients(self, alice):
        dek = crypto.generate_dek()
        doc = {METADATA_KEY: {"recipients": []}, SECRETS_KEY: {"K": seal_value("v", dek)}}
        vault = Vault.load(MemoryStore(dump_document(doc)))
        with pytest.raises(EmptyRecipientsError):
            vault.save()

    def test_secrets_block_must_be_mapping(self):
        with pytest.raises(InvalidFormatError):
            Vault.load(MemoryStore(b"secrets: [1, 2]\n"))


class TestLegacy:
    """Top-level values from older files."""

    @pytest.fixture
    def store(self, alice):
        vault = Vault.create(MemoryStore(), [alice.public_key])
        dek = vault._dek
        doc = vault.to_document()
        doc[SECRETS_KEY] = {"NUM": 5, "SEALED": seal_value("s", dek)}
        doc["OLD_PLAIN"] = "plain"
        doc["OLD_SEALED"] = seal_value("sealed-legacy", dek)
        doc["nested"] = {"a": 1}
        return MemoryStore(dump_document(doc))

    @pytest.fixture
    def vault(self, store, alice):
        vault = Vault.load(store)
        vault.unlock(alice)
        return vault

    def test_get_falls_back_to_legacy(self, vault):
        assert vault.get_secret("SEALED") == "s"
        assert vault.get_secret("OLD_PLAIN") == "plain"
        assert vault.get_secret("OLD_SEALED") == "sealed-legacy"

    def test_non_string_value(self, vault):
        """Present but malformed is not the same as missing."""
        with pytest.raises(InvalidFormatError):
            vault.get_secret("NUM")
        with pytest.raises(InvalidFormatError):
            vault.get_secret("nested")

    def test_set_moves_legacy_into_secrets(self, vault):
        vault.set_secret("OLD_PLAIN", "new")
        doc = vault.to_document()
        assert "OLD_PLAIN" not in doc
        assert is_sealed(doc[SECRETS_KEY]["OLD_PLAIN"])

    def test_unset_removes_legacy(self, vault):
        vault.unset_secret("OLD_PLAIN")
        assert "OLD_PLAIN" not in vault.to_document()

    def test_get_all_skips_non_string_legacy(self, vault):
        values = vault.get_all_secrets()
        assert values == {
            "NUM": "5",
            "SEALED": "s",
            "OLD_PLAIN": "plain",
            "OLD_SEALED": "sealed-legacy",
        }

    def test_unknown_keys_survive_save(self, vault, store):
        vault.save()
        doc = yaml.safe_load(store.data)
        assert doc["nested"] == {"a": 1}
        assert doc["OLD_PLAIN"] == "plain"


class TestGetAllPolicies:
    """Listing when an entry cannot be unsealed."""

    @pytest.fixture
    def vault(self, alice):
        vault = Vault.create(MemoryStore(), [alice.public_key])
        vault.set_secret("GOOD", "ok")
        doc = vault.to_document()
        doc[SECRETS_KEY]["BAD"] = seal_value("x", crypto.generate_dek())
        loaded = Vault.load(MemoryStore(dump_document(doc)))
        loaded.unlock(alice)
        return loaded

    def test_raw(self, vault):
        values = vault.get_all_secrets()
        assert values["GOOD"] == "ok"
        assert is_sealed(values["BAD"])

    def test_marker(self, vault):
        values = vault.get_all_secrets(UnsealPolicy.MARKER)
        assert values["GOOD"] == "ok"
        assert values["BAD"].startswith("<unreadable:")

    def test_strict(self, vault):
        with pytest.raises(IntegrityError):
            vault.get_all_secrets(UnsealPolicy.STRICT)

    def test_get_secret_reports_integrity_error(self, vault):
        with pytest.raises(IntegrityError):
            vault.get_secret("BAD")


class TestRecipients:
    """Rewrap versus rotation."""

    def test_rewrap_grants_access(self, store, alice, bob):
        vault = Vault.create(store, [alice.public_key])
        vault.set_secret("K", "v")
        vault.rewrap_recipients([alice.public_key, bob.public_key])
        vault.save()

        loaded = _reload(store)
        loaded.unlock(bob)
        assert loaded.get_secret("K") == "v"

    def test_rewrap_keeps_values_and_key(self, store, alice, bob):
        """A DEK captured before removal still opens the unchanged values."""
        vault = Vault.create(store, [alice.public_key, bob.public_key])
        vault.set_secret("K", "v")
        captured = _captured_dek(vault, bob)
        sealed_before = vault.to_document()[SECRETS_KEY]

        vault.rewrap_recipients([alice.public_key])

        doc = vault.to_document()
        assert doc[SECRETS_KEY] == sealed_before
        assert unseal_value(doc[SECRETS_KEY]["K"], captured) == "v"
        assert vault.recipients == [alice.public_key]
        with pytest.raises(AccessDeniedError):
            _captured_dek(vault, bob)

    def test_rewrap_validation_leaves_state(self, store, alice):
        vault = Vault.create(store, [alice.public_key])
        before = vault.to_document()
        with pytest.raises(EmptyRecipientsError):
            vault.rewrap_recipients([" "])
        with pytest.raises(InvalidPubKeyError):
            vault.rewrap_recipients(["bogus"])
        assert vault.to_document() == before

    def test_rotate_revokes(self, store, alice, bob):
        """After rotation the old DEK opens nothing."""
        vault = Vault.create(store, [alice.public_key, bob.public_key])
        vault.set_secret("K", "v")
        captured = _captured_dek(vault, bob)

        vault.rotate_key([alice.public_key])

        doc = vault.to_document()
        with pytest.raises(IntegrityError):
            unseal_value(doc[SECRETS_KEY]["K"], captured)
        for entry in doc[METADATA_KEY]["recipients"]:
            with pytest.raises(AccessDeniedError):
                crypto.unwrap_key(entry["wrapped_key"], bob)
        assert vault.get_secret("K") == "v"
        assert _captured_dek(vault, alice) != captured

    def test_rotate_migrates_legacy_strings(self, alice):
        vault = Vault.create(MemoryStore(), [alice.public_key])
        doc = vault.to_document()
        doc["OLD"] = "plain"
        doc["extra"] = [1, 2]
        loaded = Vault.load(MemoryStore(dump_document(doc)))
        loaded.unlock(alice)

        loaded.rotate_key([alice.public_key])

        doc = loaded.to_document()
        assert "OLD" not in doc
        assert is_sealed(doc[SECRETS_KEY]["OLD"])
        assert doc["extra"] == [1, 2]
        assert loaded.get_secret("OLD") == "plain"

    def test_rotate_is_all_or_nothing(self, alice, bob):
        """A value that fails to unseal aborts rotation with nothing changed."""
        vault = Vault.create(MemoryStore(), [alice.public_key])
        vault.set_secret("A", "1")
        doc = vault.to_document()
        doc[SECRETS_KEY]["B"] = seal_value("2", crypto.generate_dek())
        loaded = Vault.load(MemoryStore(dump_document(doc)))
        loaded.unlock(alice)
        before = loaded.to_document()
        dek_before = bytes(loaded._dek)

        with pytest.raises(IntegrityError):
            loaded.rotate_key([bob.public_key])

        assert loaded.to_document() == before
        assert bytes(loaded._dek) == dek_before
        assert loaded.get_secret("A") == "1"

    def test_rotate_drops_shadowed_legacy_values(self, alice):
        """A legacy value hidden behind a canonical one is not left under the old DEK."""
        vault = Vault.create(MemoryStore(), [alice.public_key])
        vault.set_secret("K", "current")
        old_dek = bytes(vault._dek)
        doc = vault.to_document()
        doc["K"] = seal_value("stale", old_dek)
        loaded = Vault.load(MemoryStore(dump_document(doc)))
        loaded.unlock(alice)

        loaded.rotate_key([alice.public_key])

        doc = loaded.to_document()
        assert "K" not in doc
        sealed = [v for v in doc[SECRETS_KEY].values() if is_sealed(v)]
        assert sealed
        for value in sealed:
            with pytest.raises(IntegrityError):
                unseal_value(value, old_dek)
        assert loaded.get_secret("K") == "current"

    def test_rotate_checks_shadowed_legacy_values(self, alice):
        """A tampered shadowed legacy value still aborts rotation."""
        vault = Vault.create(MemoryStore(), [alice.public_key])
        vault.set_secret("K", "current")
        doc = vault.to_document()
        doc["K"] = seal_value("stale", crypto.generate_dek())
        loaded = Vault.load(MemoryStore(dump_document(doc)))
        loaded.unlock(alice)
        before = loaded.to_document()

        with pytest.raises(IntegrityError):
            loaded.rotate_key([alice.public_key])
        assert loaded.to_document() == before

    def test_rotate_rejects_non_string(self, alice):
        doc = Vault.create(MemoryStore(), [alice.public_key]).to_document()
        doc[SECRETS_KEY]["NUM"] = 7
        loaded = Vault.load(MemoryStore(dump_document(doc)))
        loaded.unlock(alice)
        with pytest.raises(InvalidFormatError):
            loaded.rotate_key([alice.public_key])


class TestConcurrency:

    def test_parallel_reads_and_writes(self, store, alice):
        vault = Vault.create(store, [alice.public_key])
        vault.set_secret("K", "0")
        errors = []

        def reader():
            try:
                for _ in range(50):
                    assert vault.get_secret("K").isdigit()
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        def writer():
            try:
                for i in range(50):
                    vault.set_secret("K", str(i))
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(4)] + [threading.Thread(target=writer)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert vault.get_secret("K") == "49"


class TestScenario:

    def test_add_then_revoke(self, store, alice, bob):
        """Init for A, add B by rewrap, drop A by rotation."""
        vault = Vault.create(store, [alice.public_key])
        vault.set_secret("K", "v")
        vault.save()

        vault = _reload(store)
        vault.unlock(alice)
        assert vault.get_secret("K") == "v"

        vault.rewrap_recipients([alice.public_key, bob.public_key])
        vault.save()
        _reload(store).unlock(bob)

        vault.rotate_key([bob.public_key])
        vault.save()

        with pytest.raises(AccessDeniedError):
            _reload(store).unlock(alice)
        as_bob = _reload(store)
        as_bob.unlock(bob)
        assert as_bob.get_secret("K") == "v"
