"""Unit tests for EncryptStorage: hashing, encryption, salt and lifecycle behaviour."""

import asyncio

import pytest

from encrypt_storage import (
    AUTHENTICITY_ERROR_MESSAGE,
    AuthenticityError,
    ConfigurationError,
    EncryptStorage,
    StorageClosedError,
    StorageError,
)
from encrypt_storage.core.storage import nonce_key, resolve_salt, salt_slot
from encrypt_storage.security import decode, generate_hash, import_key

FAST = 1000


@pytest.fixture
def make(tmp_path):
    """Build storages rooted in one temporary directory."""

    def _make(key="raw key", **options):
        options.setdefault("iterations", FAST)
        return EncryptStorage(key=key, path=tmp_path, **options)

    return _make


async def all_records(storage: EncryptStorage):
    db = await storage.get_db()
    name = await storage.get_store_name()
    keys = await db.get_all_keys(name)
    values = await db.get_all(name)
    return keys, values


# ==============================================================================
# Helpers
# ==============================================================================

def test_nonce_key() -> None:
    assert nonce_key("abc") == "abc-nonce"
    assert nonce_key(b"abc") == b"abc-nonce"
    assert nonce_key(bytearray(b"x")) == b"x-nonce"


def test_salt_slot_is_digest_of_sentinel() -> None:
    assert salt_slot() == generate_hash("o-salt")


# ==============================================================================
# Saving data
# ==============================================================================

@pytest.mark.asyncio
async def test_set_with_raw_key(make) -> None:
    storage = make()
    await storage.set("any key", "any value")
    keys, _ = await all_records(storage)
    # salt + ciphertext + nonce
    assert len(keys) == 3
    await storage.close()


@pytest.mark.asyncio
async def test_set_with_imported_crypto_key(make) -> None:
    storage = make(key=import_key("rawkey"))
    await storage.set("any key", "any value")
    assert await storage.get("any key") == "any value"
    await storage.close()


@pytest.mark.asyncio
async def test_no_plaintext_at_rest(make) -> None:
    storage = make(key="any key")
    await storage.set("logical key", "secret value")
    keys, values = await all_records(storage)

    assert "logical key" not in keys
    assert b"logical key" not in keys
    for value in values:
        assert value != "secret value"
        assert b"secret value" not in bytes(value)
    await storage.close()


@pytest.mark.asyncio
async def test_records_are_addressed_by_digest(make) -> None:
    storage = make()
    await storage.set("k", "v")
    keys, _ = await all_records(storage)
    assert set(keys) == {generate_hash("k"), generate_hash("k-nonce"), generate_hash("o-salt")}
    await storage.close()


@pytest.mark.asyncio
async def test_table_and_db_names_are_hashed(make) -> None:
    storage = make(db="dbName", name="storeName")
    await storage.set("k", "v")

    assert await storage.get_store_name() == decode(generate_hash("storeName"))
    db = await storage.get_db()
    assert db.name == decode(generate_hash("dbName"))

    databases = await storage._factory.list()
    assert all(d["name"] != "dbName" for d in databases)
    await storage.close()


@pytest.mark.asyncio
async def test_set_overwrites(make) -> None:
    storage = make()
    await storage.set("k", "first")
    await storage.set("k", "second")
    assert await storage.get("k") == "second"
    await storage.close()


@pytest.mark.asyncio
async def test_set_rejects_unsupported_types(make) -> None:
    storage = make()
    with pytest.raises(TypeError):
        await storage.set("k", 42)
    with pytest.raises(TypeError):
        await storage.set(42, "v")
    await storage.close()


# ==============================================================================
# Getting data
# ==============================================================================

@pytest.mark.asyncio
async def test_roundtrip(make) -> None:
    storage = make(key="any key")
    await storage.set("any key", "any value")
    assert await storage.get("any key") == "any value"
    await storage.close()


@pytest.mark.asyncio
async def test_roundtrip_binary(make) -> None:
    storage = make()
    payload = bytes(range(256))
    await storage.set(b"\x00binary key", payload)
    assert await storage.get_bytes(b"\x00binary key") == payload
    await storage.close()


@pytest.mark.asyncio
async def test_binary_keys_have_distinct_nonces(make) -> None:
    storage = make()
    await storage.set(b"one", "1")
    await storage.set(b"two", "2")
    assert await storage.get(b"one") == "1"
    assert await storage.get(b"two") == "2"
    await storage.close()


@pytest.mark.asyncio
async def test_unicode_roundtrip(make) -> None:
    storage = make()
    await storage.set("clé 🔑", "valeur ✓")
    assert await storage.get("clé 🔑") == "valeur ✓"
    await storage.close()


@pytest.mark.asyncio
async def test_missing_key_returns_none(make) -> None:
    storage = make()
    assert await storage.get("never written") is None
    assert await storage.get_bytes("never written") is None
    await storage.close()


@pytest.mark.asyncio
async def test_missing_nonce_is_authenticity_error(make) -> None:
    storage = make()
    await storage.set("k", "v")
    db = await storage.get_db()
    await db.delete(await storage.get_store_name(), generate_hash("k-nonce"))

    with pytest.raises(AuthenticityError):
        await storage.get("k")
    await storage.close()


@pytest.mark.asyncio
async def test_corrupted_ciphertext_is_authenticity_error(make) -> None:
    storage = make()
    await storage.set("k", "v")
    db = await storage.get_db()
    name = await storage.get_store_name()
    ciphertext = await db.get(name, generate_hash("k"))
    await db.put(name, generate_hash("k"), bytes([ciphertext[0] ^ 0xFF]) + ciphertext[1:])

    with pytest.raises(AuthenticityError, match=AUTHENTICITY_ERROR_MESSAGE):
        await storage.get("k")
    await storage.close()


# ==============================================================================
# Cross-instance equivalence and isolation
# ==============================================================================

@pytest.mark.asyncio
async def test_same_tuple_reads_across_instances(make) -> None:
    salt = bytes([1, 2, 3, 4])
    first = make(key="anykey", db="anydb", name="anystore", salt=salt, iterations=100)
    await first.set("any key", "any value")

    second = make(key="anykey", db="anydb", name="anystore", salt=salt, iterations=100)
    assert await second.get("any key") == "any value"

    await second.set("other", "written by second")
    assert await first.get("other") == "written by second"
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_default_salt_is_shared_through_the_table(make) -> None:
    first = make(key="any")
    await first.set("any key", "any value")
    second = make(key="any")
    assert await second.get("any key") == "any value"

    ctx1 = await first.resolve()
    ctx2 = await second.resolve()
    assert ctx1.salt == ctx2.salt
    assert len(ctx1.salt) == 8
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_different_secret_fails_authenticity(make) -> None:
    first = make(key="key1")
    await first.set("any key", "any value")
    second = make(key="key2")

    with pytest.raises(AuthenticityError) as excinfo:
        await second.get("any key")
    assert str(excinfo.value) == AUTHENTICITY_ERROR_MESSAGE
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_different_iterations_fail_authenticity(make) -> None:
    salt = bytes([1, 2, 3])
    first = make(key="anyKey", db="anydb", name="anyStore", salt=salt, iterations=123)
    await first.set("any key", "any value")
    second = make(key="anyKey", db="anydb", name="anyStore", salt=salt, iterations=1213)

    with pytest.raises(AuthenticityError):
        await second.get("any key")
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_stored_salt_wins_over_configured_salt(make) -> None:
    first = make(key="anyKey", db="anydb", name="anyStore", salt=bytes([1, 2, 3]))
    await first.set("any key", "any value")

    second = make(key="anyKey", db="anydb", name="anyStore", salt=bytes([1, 22, 13]))
    ctx = await second.resolve()
    assert ctx.salt == bytes([1, 2, 3])
    assert await second.get("any key") == "any value"
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_different_salt_fails_authenticity(make) -> None:
    """Data written under one salt cannot be read by a key derived from another."""
    first = make(key="anyKey", db="anydb", name="anyStore", salt=bytes([1, 2, 3]))
    await first.set("any key", "any value")
    await first.clear()
    await first.close()

    # move the ciphertext to a table that was salted differently
    writer = make(key="anyKey", db="otherdb", name="anyStore", salt=bytes([9, 9, 9]))
    await writer.set("any key", "any value")
    db = await writer.get_db()
    name = await writer.get_store_name()
    ciphertext = await db.get(name, generate_hash("any key"))
    nonce = await db.get(name, generate_hash("any key-nonce"))

    reader = make(key="anyKey", db="anydb", name="anyStore")
    reader_db = await reader.get_db()
    reader_name = await reader.get_store_name()
    await reader_db.put(reader_name, generate_hash("any key"), ciphertext)
    await reader_db.put(reader_name, generate_hash("any key-nonce"), nonce)

    with pytest.raises(AuthenticityError):
        await reader.get("any key")
    await writer.close()
    await reader.close()


@pytest.mark.asyncio
async def test_different_db_is_isolated(make) -> None:
    first = make(key="anykey", db="db1")
    await first.set("any key", "any value")
    second = make(key="anykey", db="db2")
    assert await second.get("any key") is None
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_different_table_in_same_db_is_isolated(make) -> None:
    first = make(key="anykey", db="shared", name="table-a")
    await first.set("any key", "value a")
    second = make(key="anykey", db="shared", name="table-b")
    assert await second.get("any key") is None

    await second.set("any key", "value b")
    assert await first.get("any key") == "value a"
    assert await second.get("any key") == "value b"

    db = await second.get_db()
    assert db.version == 2
    assert len(db.object_store_names) == 2
    await first.close()
    await second.close()


# ==============================================================================
# Deleting and clearing
# ==============================================================================

@pytest.mark.asyncio
async def test_delete_keeps_salt(make) -> None:
    storage = make(key="any")
    await storage.set("any key 1", "any data 1")
    await storage.delete("any key 1")

    keys, _ = await all_records(storage)
    assert keys == [generate_hash("o-salt")]
    await storage.close()


@pytest.mark.asyncio
async def test_delete_only_given_key(make) -> None:
    storage = make(key="any")
    await storage.set("any key 1", "any data 1")
    await storage.set("any key 2", "any data 2")
    await storage.delete("any key 1")

    assert await storage.get("any key 1") is None
    assert await storage.get("any key 2") == "any data 2"
    await storage.close()


@pytest.mark.asyncio
async def test_delete_missing_key_is_noop(make) -> None:
    storage = make()
    await storage.delete("never written")
    await storage.delete("never written")
    await storage.close()


@pytest.mark.asyncio
async def test_deleted_data_invisible_to_other_instance(make) -> None:
    first = make(key="raw key")
    await first.set("any key", "any data")
    await first.delete("any key")
    second = make(key="raw key")
    assert await second.get("any key") is None
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_clear_leaves_only_salt(make) -> None:
    storage = make(key="any key")
    await storage.set("any key 1", "any data 1")
    await storage.set("any key 2", "any data 2")
    salt_before = (await storage.resolve()).salt
    await storage.clear()

    keys, values = await all_records(storage)
    assert keys == [generate_hash("o-salt")]
    assert values == [salt_before]

    db = await storage.get_db()
    assert len(db.object_store_names) == 1
    await storage.close()


@pytest.mark.asyncio
async def test_set_after_clear_readable_by_new_instance(make) -> None:
    storage = make(key="raw key", log=True)
    await storage.set("any key", "any value")
    await storage.clear()
    await storage.set("any key", "any value")

    other = make(key="raw key")
    assert await other.get("any key") == "any value"
    await storage.close()
    await other.close()


@pytest.mark.asyncio
async def test_concrete_scenario(make) -> None:
    storage = make(key="k")
    await storage.set("a", "1")
    await storage.set("b", "2")
    assert await storage.get("a") == "1"
    assert await storage.get("b") == "2"

    await storage.delete("a")
    assert await storage.get("a") is None
    assert await storage.get("b") == "2"

    await storage.clear()
    assert await storage.get("b") is None

    db = await storage.get_db()
    assert await db.count(await storage.get_store_name()) == 1
    await storage.close()


# ==============================================================================
# Salt resolution
# ==============================================================================

@pytest.mark.asyncio
async def test_resolve_salt_read_else_write(make) -> None:
    storage = make()
    db = await storage.get_db()
    name = await storage.get_store_name()
    stored = (await storage.resolve()).salt

    assert await resolve_salt(db, name) == stored
    assert await resolve_salt(db, name, b"other salt") == stored

    await db.clear(name)
    assert await resolve_salt(db, name, b"fresh") == b"fresh"
    assert await db.get(name, salt_slot()) == b"fresh"
    await storage.close()


# ==============================================================================
# Resolution and lifecycle
# ==============================================================================

@pytest.mark.asyncio
async def test_resolution_runs_once(make, monkeypatch) -> None:
    from encrypt_storage.core import storage as storage_module

    opens = []
    derivations = []
    original_derive = storage_module.derive_key

    def counting_derive(*args, **kwargs):
        derivations.append(args)
        return original_derive(*args, **kwargs)

    monkeypatch.setattr(storage_module, "derive_key", counting_derive)

    storage = make()
    assert storage.state == "resolving"
    original_open = storage._factory.open

    async def counting_open(*args, **kwargs):
        opens.append(args)
        return await original_open(*args, **kwargs)

    # the eager task has not started yet, so it picks up the patched method
    monkeypatch.setattr(storage._factory, "open", counting_open)

    await asyncio.gather(*(storage.set(f"k{i}", str(i)) for i in range(5)))
    assert len(opens) == 1
    assert len(derivations) == 1
    assert storage.state == "ready"

    results = await asyncio.gather(*(storage.get(f"k{i}") for i in range(5)))
    assert results == ["0", "1", "2", "3", "4"]
    assert len(derivations) == 1
    await storage.close()


@pytest.mark.asyncio
async def test_derived_key_is_cached(make) -> None:
    storage = make()
    await storage.set("a", "1")
    first = storage._key_task
    await storage.set("b", "2")
    assert storage._key_task is first
    await storage.close()


@pytest.mark.asyncio
async def test_context_is_frozen(make) -> None:
    storage = make()
    ctx = await storage.resolve()
    with pytest.raises(AttributeError):
        ctx.salt = b"changed"
    await storage.close()


@pytest.mark.asyncio
async def test_cipher_key_used_as_is(make) -> None:
    from encrypt_storage.security import generate_key

    cipher_key = generate_key({"name": "AES-GCM", "length": 256}, ["encrypt", "decrypt"])
    storage = make(key=cipher_key)
    await storage.set("k", "v")
    assert await storage.get("k") == "v"

    other = make(key=generate_key({"name": "AES-GCM", "length": 256}, ["encrypt", "decrypt"]))
    with pytest.raises(AuthenticityError):
        await other.get("k")
    await storage.close()
    await other.close()


@pytest.mark.asyncio
async def test_hkdf_base_key_roundtrip_and_sharing(make) -> None:
    storage = make(key=import_key(b"input keying material", "HKDF"))
    await storage.set("k", "v")
    assert await storage.get("k") == "v"

    same = make(key=import_key(b"input keying material", "HKDF"))
    assert await same.get("k") == "v"

    other = make(key=import_key(b"other keying material", "HKDF"))
    with pytest.raises(AuthenticityError):
        await other.get("k")
    for s in (storage, same, other):
        await s.close()


@pytest.mark.asyncio
async def test_hkdf_key_depends_on_table_salt(make) -> None:
    """The HKDF salt is the table salt, so a key derived for one table cannot read another."""
    first = make(key=import_key(b"ikm", "HKDF"), name="one", salt=bytes(range(8)))
    second = make(key=import_key(b"ikm", "HKDF"), name="two", salt=bytes(range(8, 16)))
    await first.set("k", "from one")

    db = await first.get_db()
    one = await first.get_store_name()
    ciphertext = await db.get(one, generate_hash("k"))
    nonce = await db.get(one, generate_hash("k-nonce"))

    two_db = await second.get_db()
    two = await second.get_store_name()
    await two_db.put(two, generate_hash("k"), ciphertext)
    await two_db.put(two, generate_hash("k-nonce"), nonce)
    with pytest.raises(AuthenticityError):
        await second.get("k")
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_argon2id_base_key_roundtrip_and_sharing(make) -> None:
    salt = bytes(range(8))
    storage = make(key=import_key(b"pw", "Argon2id"), iterations=1, salt=salt)
    await storage.set("k", "v")
    assert await storage.get("k") == "v"

    same = make(key=import_key(b"pw", "Argon2id"), iterations=1)
    assert await same.get("k") == "v"
    for s in (storage, same):
        await s.close()


@pytest.mark.asyncio
async def test_argon2id_iterations_are_time_cost(make) -> None:
    storage = make(key=import_key(b"pw", "Argon2id"), iterations=1, salt=bytes(range(8)))
    await storage.set("k", "v")

    slower = make(key=import_key(b"pw", "Argon2id"), iterations=2)
    with pytest.raises(AuthenticityError):
        await slower.get("k")
    await storage.close()
    await slower.close()


def test_argon2id_rejects_pbkdf2_scale_iterations(tmp_path) -> None:
    with pytest.raises(ConfigurationError, match="time_cost"):
        EncryptStorage(key=import_key(b"pw", "Argon2id"), iterations=100_000, path=tmp_path)


@pytest.mark.asyncio
async def test_close_after_failed_resolution(tmp_path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_bytes(b"")
    storage = EncryptStorage(key="k", iterations=FAST, path=blocker)

    with pytest.raises(StorageError):
        await storage.set("k", "v")
    # what `async with` runs after a failing body; it must not raise over it
    assert await storage.__aexit__(StorageError, None, None) is None
    assert storage.state == "closed"
    with pytest.raises(StorageClosedError):
        await storage.get("k")


def test_close_before_use_opens_nothing(tmp_path) -> None:
    storage = EncryptStorage(key="k", iterations=FAST, path=tmp_path / "untouched")
    asyncio.run(storage.close())
    assert storage.state == "closed"
    assert not (tmp_path / "untouched").exists()


@pytest.mark.asyncio
async def test_operations_after_close_fail(make) -> None:
    storage = make()
    await storage.set("k", "v")
    await storage.close()
    assert storage.state == "closed"

    with pytest.raises(StorageClosedError):
        await storage.get("k")
    with pytest.raises(StorageClosedError):
        await storage.set("k", "v")
    # closing twice is harmless
    await storage.close()


@pytest.mark.asyncio
async def test_close_preserves_data(make) -> None:
    storage = make(key="any key")
    await storage.set("any key", "any data")
    await storage.close()

    reopened = make(key="any key")
    assert await reopened.get("any key") == "any data"
    await reopened.close()


@pytest.mark.asyncio
async def test_destroy_deletes_database(make) -> None:
    storage = make(key="any key")
    await storage.set("any key", "any data")
    db_name = (await storage.get_db()).name
    await storage.destroy()
    assert storage.state == "destroyed"
    assert all(d["name"] != db_name for d in await storage._factory.list())

    rebuilt = make(key="any key")
    assert await rebuilt.get("any key") is None
    keys, _ = await all_records(rebuilt)
    assert keys == [generate_hash("o-salt")]
    await rebuilt.destroy()


@pytest.mark.asyncio
async def test_destroy_after_close(make) -> None:
    storage = make()
    await storage.set("k", "v")
    await storage.close()
    await storage.delete_db()
    assert storage.state == "destroyed"
    assert await storage._factory.list() == []


@pytest.mark.asyncio
async def test_async_context_manager(make) -> None:
    async with make(key="ctx") as storage:
        await storage.set("k", "v")
        assert storage.state == "ready"
    assert storage.state == "closed"

    async with make(key="ctx") as again:
        assert await again.get("k") == "v"


def test_construction_without_loop_defers_resolution(tmp_path) -> None:
    storage = EncryptStorage(key="k", path=tmp_path, iterations=FAST)
    assert storage.state == "uninitialized"

    async def scenario():
        await storage.set("k", "v")
        value = await storage.get("k")
        await storage.close()
        return value

    assert asyncio.run(scenario()) == "v"
