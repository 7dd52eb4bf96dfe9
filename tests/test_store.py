"""Tests for the YAML-backed configuration store."""
from __future__ import annotations

from pathlib import Path

import pytest

from storectl.locking import LockManager
from storectl.state import ConfigStore, StoreError, join_key, normalize_key, open_views

PRODUCT_KEY = "SOFTWARE\\EcommerceStarter"


def test_normalize_key_collapses_separators() -> None:
    """Forward slashes and doubled separators normalise to single backslashes."""
    assert normalize_key("SOFTWARE//EcommerceStarter\\\\DemoShop\\") == (
        "SOFTWARE\\EcommerceStarter\\DemoShop"
    )
    assert join_key("SOFTWARE", "EcommerceStarter", "DemoShop") == (
        "SOFTWARE\\EcommerceStarter\\DemoShop"
    )
    with pytest.raises(StoreError):
        normalize_key("\\\\")


def test_set_values_creates_ancestors_and_persists(tmp_path: Path) -> None:
    """Writing a key creates its parents and survives a reload."""
    store = ConfigStore(tmp_path / "store")

    store.set_values(f"{PRODUCT_KEY}\\DemoShop", {"SiteName": "DemoShop", "LocalhostPort": 8080})

    reloaded = ConfigStore(tmp_path / "store")
    assert reloaded.key_exists(PRODUCT_KEY)
    assert reloaded.read_values(f"{PRODUCT_KEY}\\DemoShop") == {
        "SiteName": "DemoShop",
        "LocalhostPort": 8080,
    }
    assert oct(store.path.stat().st_mode & 0o777) == "0o640"


def test_lookups_are_case_insensitive(tmp_path: Path) -> None:
    """Key and value names match regardless of case."""
    store = ConfigStore(tmp_path / "store")
    store.set_values(f"{PRODUCT_KEY}\\DemoShop", {"InstallPath": "C:\\inetpub\\DemoShop"})

    assert store.key_exists("software\\ecommercestarter\\DEMOSHOP")
    assert store.get_value(f"{PRODUCT_KEY}\\demoshop", "installpath") == "C:\\inetpub\\DemoShop"
    assert store.get_value(f"{PRODUCT_KEY}\\demoshop", "Missing", default="x") == "x"


def test_set_values_replaces_differently_cased_name(tmp_path: Path) -> None:
    """Overwriting a value keeps a single entry under the new spelling."""
    store = ConfigStore(tmp_path / "store")
    key = f"{PRODUCT_KEY}\\DemoShop"
    store.set_values(key, {"version": "1.0.0"})

    store.set_values(key, {"Version": "1.0.6"})

    assert store.read_values(key) == {"Version": "1.0.6"}


def test_set_missing_values_never_overwrites(tmp_path: Path) -> None:
    """Only absent names are written by set_missing_values."""
    store = ConfigStore(tmp_path / "store")
    key = f"{PRODUCT_KEY}\\DemoShop"
    store.set_values(key, {"CompanyName": "Demo Inc"})

    written = store.set_missing_values(key, {"companyname": "Other", "Version": "1.0.0"})

    assert written == ["Version"]
    assert store.read_values(key) == {"CompanyName": "Demo Inc", "Version": "1.0.0"}


def test_unsupported_value_type_is_rejected(tmp_path: Path) -> None:
    """Only strings, integers and string lists can be stored."""
    store = ConfigStore(tmp_path / "store")

    with pytest.raises(StoreError, match="Unsupported store value type"):
        store.set_values(PRODUCT_KEY, {"Enabled": True})  # type: ignore[dict-item]


def test_list_subkeys_returns_immediate_children(tmp_path: Path) -> None:
    """Only direct children are listed, with their original spelling."""
    store = ConfigStore(tmp_path / "store")
    store.set_values(f"{PRODUCT_KEY}\\ShopB", {"SiteName": "ShopB"})
    store.set_values(f"{PRODUCT_KEY}\\ShopA\\Nested", {"x": "y"})

    assert store.list_subkeys(PRODUCT_KEY) == ["ShopA", "ShopB"]


def test_delete_key_removes_subtree_but_not_parent(tmp_path: Path) -> None:
    """Deleting an instance key leaves the shared parent and siblings alone."""
    store = ConfigStore(tmp_path / "store")
    store.set_values(f"{PRODUCT_KEY}\\ShopA", {"SiteName": "ShopA"})
    store.set_values(f"{PRODUCT_KEY}\\ShopAB", {"SiteName": "ShopAB"})

    assert store.delete_key(f"{PRODUCT_KEY}\\shopa") is True

    assert store.key_exists(PRODUCT_KEY)
    assert store.list_subkeys(PRODUCT_KEY) == ["ShopAB"]
    assert store.delete_key(f"{PRODUCT_KEY}\\shopa") is False


def test_delete_values_reports_removed_names(tmp_path: Path) -> None:
    """delete_values returns the stored spelling of each removed value."""
    store = ConfigStore(tmp_path / "store")
    key = f"{PRODUCT_KEY}\\DemoShop"
    store.set_values(key, {"DatabaseServer": "db01", "DatabaseName": "Shop"})

    assert store.delete_values(key, ["databaseserver", "Absent"]) == ["DatabaseServer"]
    assert store.read_values(key) == {"DatabaseName": "Shop"}


def test_malformed_document_raises(tmp_path: Path) -> None:
    """A store file that is not a mapping is reported."""
    store = ConfigStore(tmp_path / "store")
    store.ensure_root()
    store.path.write_text("- nope\n", encoding="utf-8")

    with pytest.raises(StoreError, match="must contain a mapping"):
        store.read_keys()


def test_open_views_share_root_and_lock_manager(tmp_path: Path) -> None:
    """Views are separate documents under one root."""
    locks = LockManager(tmp_path / "run", default_timeout=1.0)
    primary, secondary = open_views(tmp_path / "store", locks=locks)

    primary.set_values(PRODUCT_KEY, {"Owner": "64"})

    assert primary.path.name == "view-64.yml"
    assert secondary.path.name == "view-32.yml"
    assert secondary.read_values(PRODUCT_KEY) is None
    assert (tmp_path / "run" / "store" / "64.lock").exists()
