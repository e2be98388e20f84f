from tracking import ClientIdentityProvider, MemoryClientStorage, SqliteClientStorage, StorageUnavailable
from tracking.identity import CLIENT_IDENTITY_KEY, MIGRATION_FLAG_KEY, migrate_legacy_tracking


class BrokenStorage:
    def get(self, key):
        raise StorageUnavailable("disk full")

    def set(self, key, value):
        raise StorageUnavailable("disk full")

    def setdefault(self, key, value):
        raise StorageUnavailable("disk full")

    def remove(self, key):
        raise StorageUnavailable("disk full")

    def keys(self):
        raise StorageUnavailable("disk full")


def test_client_id_is_created_once_and_survives_restarts(tmp_path):
    path = tmp_path / "client.sqlite"
    first = ClientIdentityProvider(SqliteClientStorage(path)).get_or_create_client_id()
    again = ClientIdentityProvider(SqliteClientStorage(path)).get_or_create_client_id()

    assert first.startswith("client_")
    assert again == first


def test_namespaces_are_separate_devices(tmp_path):
    path = tmp_path / "client.sqlite"
    a = ClientIdentityProvider(SqliteClientStorage(path, namespace="phone")).get_or_create_client_id()
    b = ClientIdentityProvider(SqliteClientStorage(path, namespace="laptop")).get_or_create_client_id()
    assert a != b


def test_existing_identity_is_never_regenerated():
    storage = MemoryClientStorage({CLIENT_IDENTITY_KEY: "client_existing"})
    provider = ClientIdentityProvider(storage)
    assert provider.get_or_create_client_id() == "client_existing"
    assert provider.identity(user_id="u1").client_id == "client_existing"
    assert provider.identity(user_id="u1").user_id == "u1"


def test_unavailable_storage_degrades_to_volatile_id():
    provider = ClientIdentityProvider(BrokenStorage())
    first = provider.get_or_create_client_id()
    assert provider.degraded is True
    assert first.startswith("client_")
    assert provider.get_or_create_client_id() == first


def test_unwritable_storage_path_degrades(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    provider = ClientIdentityProvider(SqliteClientStorage(blocker / "client.sqlite"))
    assert provider.get_or_create_client_id().startswith("client_")
    assert provider.degraded is True


def test_legacy_tracking_keys_are_cleared_once_and_identity_kept():
    storage = MemoryClientStorage(
        {
            CLIENT_IDENTITY_KEY: "client_keep",
            "pizzeria_order_tracking": "[...]",
            "pizzeria_last_order": "{...}",
            "unrelated": "1",
        }
    )
    assert migrate_legacy_tracking(storage) == 2
    assert storage.get(CLIENT_IDENTITY_KEY) == "client_keep"
    assert storage.get("unrelated") == "1"
    assert storage.get(MIGRATION_FLAG_KEY) == "true"

    storage.set("pizzeria_active_order", "{...}")
    assert migrate_legacy_tracking(storage) == 0
    assert storage.get("pizzeria_active_order") == "{...}"


class StaleReadStorage(SqliteClientStorage):
    """Sees the key as missing, as a session that read just before another one wrote."""

    def get(self, key):
        return None


def test_concurrent_sessions_on_one_device_agree_on_the_identity(tmp_path):
    path = tmp_path / "client.sqlite"
    issued = ClientIdentityProvider(SqliteClientStorage(path, namespace="phone")).get_or_create_client_id()

    late = ClientIdentityProvider(StaleReadStorage(path, namespace="phone")).get_or_create_client_id()

    assert late == issued
    assert SqliteClientStorage(path, namespace="phone").get(CLIENT_IDENTITY_KEY) == issued


def test_memory_setdefault_keeps_first_value():
    storage = MemoryClientStorage()
    assert storage.setdefault(CLIENT_IDENTITY_KEY, "client_a") == "client_a"
    assert storage.setdefault(CLIENT_IDENTITY_KEY, "client_b") == "client_a"


def test_legacy_migration_on_unavailable_storage_is_skipped():
    assert migrate_legacy_tracking(BrokenStorage()) == 0
