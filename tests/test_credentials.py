import pytest

from groupcast.session.credentials import CREDENTIALS_FILE, CredentialStore, validate_tenant_id
from groupcast.session.errors import InvalidTenantId, StorageError


def test_save_then_load_returns_same_blob(tmp_path):
    store = CredentialStore(tmp_path / "auth")

    store.save("t1", {"me": {"id": "5511@s.whatsapp.net"}, "keys": [1, 2]})

    assert store.load("t1") == {"me": {"id": "5511@s.whatsapp.net"}, "keys": [1, 2]}
    assert store.exists("t1") is True


def test_load_missing_tenant_returns_none(tmp_path):
    store = CredentialStore(tmp_path)

    assert store.load("nobody") is None
    assert store.exists("nobody") is False


def test_tenants_are_isolated(tmp_path):
    store = CredentialStore(tmp_path)
    store.save("t1", {"owner": "t1"})
    store.save("t2", {"owner": "t2"})

    store.clear("t1")

    assert store.load("t1") is None
    assert store.load("t2") == {"owner": "t2"}


def test_clear_is_idempotent(tmp_path):
    store = CredentialStore(tmp_path)
    store.save("t1", {"a": 1})

    store.clear("t1")
    store.clear("t1")

    assert not (tmp_path / "t1").exists()


def test_corrupted_blob_raises_storage_error(tmp_path):
    store = CredentialStore(tmp_path)
    (tmp_path / "t1").mkdir()
    (tmp_path / "t1" / CREDENTIALS_FILE).write_text("{broken", encoding="utf-8")

    with pytest.raises(StorageError):
        store.load("t1")


def test_unserialisable_blob_raises_storage_error(tmp_path):
    store = CredentialStore(tmp_path)

    with pytest.raises(StorageError):
        store.save("t1", {"bad": object()})

    assert not (tmp_path / "t1" / CREDENTIALS_FILE).exists()


def test_list_tenants_returns_sorted_directories(tmp_path):
    store = CredentialStore(tmp_path)
    store.save("zeta", {})
    store.save("alpha", {})
    (tmp_path / "stray.txt").write_text("x", encoding="utf-8")

    assert store.list_tenants() == ["alpha", "zeta"]


@pytest.mark.parametrize("tenant_id", ["", "../etc", "a/b", ".hidden", "a..b"])
def test_unsafe_tenant_ids_are_rejected(tenant_id):
    with pytest.raises(InvalidTenantId):
        validate_tenant_id(tenant_id)


def test_invalid_tenant_id_is_a_value_error(tmp_path):
    store = CredentialStore(tmp_path)

    with pytest.raises(ValueError):
        store.load("../escape")
