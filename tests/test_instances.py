"""Tests for the per-instance store accessors."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest

from storectl.state import InstanceStore, StoreError, normalize_display_version
from storectl.state.instances import (
    CONNECTION_ENCRYPTED,
    LAST_MIGRATION_DATE,
    PORT,
    SCHEMA_VERSION,
)


def test_write_record_sets_site_name(instances: InstanceStore) -> None:
    """Records always carry their site name."""
    instances.write_record("DemoShop", {PORT: 8080, "CompanyName": "Demo Inc"})

    record = instances.get_record("demoshop")
    assert record is not None
    assert record.text("SiteName") == "DemoShop"
    assert record.port == 8080
    assert record.view == "64"
    assert instances.list_sites() == ["DemoShop"]


def test_record_port_ignores_invalid_values(instances: InstanceStore) -> None:
    """Non-numeric or non-positive ports are treated as absent."""
    instances.write_record("DemoShop", {PORT: "abc"})
    assert instances.get_record("DemoShop").port is None  # type: ignore[union-attr]

    instances.write_record("DemoShop", {PORT: 0})
    assert instances.get_record("DemoShop").port is None  # type: ignore[union-attr]


def test_records_in_secondary_view_are_found(instances: InstanceStore) -> None:
    """A record written only to the 32-bit view is still visible."""
    legacy_view = instances.stores[1]
    legacy_view.set_values(instances.instance_key("OldShop"), {"SiteName": "OldShop"})

    record = instances.get_record("OldShop")

    assert record is not None
    assert record.view == "32"
    assert instances.list_sites() == ["OldShop"]

    instances.write_record("OldShop", {PORT: 8081})
    assert instances.primary.read_values(instances.instance_key("OldShop")) is None


def test_secret_round_trip_is_encrypted_at_rest(instances: InstanceStore) -> None:
    """Secrets are stored as opaque blobs and decrypt back to plaintext."""
    connection = "Server=localhost;Database=Shop;Trusted_Connection=True"
    assert instances.set_secret("DemoShop", CONNECTION_ENCRYPTED, connection) is True

    raw = instances.get_record("DemoShop").text(CONNECTION_ENCRYPTED)  # type: ignore[union-attr]
    assert raw is not None and "Server=" not in raw
    assert instances.get_secret("DemoShop", CONNECTION_ENCRYPTED) == connection
    assert instances.set_secret("DemoShop", CONNECTION_ENCRYPTED, "other", overwrite=False) is False
    assert instances.get_secret("Missing", CONNECTION_ENCRYPTED) is None


def test_to_dict_masks_secrets(instances: InstanceStore) -> None:
    """Serialised records never expose encrypted values."""
    instances.set_secret("DemoShop", CONNECTION_ENCRYPTED, "Server=x")

    data = instances.get_record("DemoShop").to_dict()  # type: ignore[union-attr]

    assert data[CONNECTION_ENCRYPTED] == "<encrypted>"


def test_schema_version_never_regresses(instances: InstanceStore) -> None:
    """Lowering the schema version is refused."""
    stamp = datetime(2025, 1, 2, tzinfo=UTC)
    instances.set_schema_version("DemoShop", 2, migrated_at=stamp)

    assert instances.get_schema_version("DemoShop") == 2
    record = instances.get_record("DemoShop")
    assert record.get(LAST_MIGRATION_DATE) == stamp.isoformat()  # type: ignore[union-attr]

    with pytest.raises(StoreError, match="Refusing to lower"):
        instances.set_schema_version("DemoShop", 1)


def test_malformed_schema_version_raises(instances: InstanceStore) -> None:
    """A non-integer schema marker is reported instead of guessed."""
    instances.write_record("DemoShop", {SCHEMA_VERSION: "two"})

    with pytest.raises(StoreError, match="malformed"):
        instances.get_schema_version("DemoShop")


def test_fill_missing_and_remove_fields(instances: InstanceStore) -> None:
    """fill_missing keeps existing values and remove_fields reports deletions."""
    instances.write_record("DemoShop", {"CompanyName": "Demo Inc"})

    written = instances.fill_missing("DemoShop", {"CompanyName": "Other", "Version": "1.0.0"})
    removed = instances.remove_fields("DemoShop", ["Version", "Nope"])

    assert written == ["Version"]
    assert removed == ["Version"]
    assert instances.get_record("DemoShop").text("CompanyName") == "Demo Inc"  # type: ignore[union-attr]


def test_remove_instance_keeps_parent_and_siblings(instances: InstanceStore) -> None:
    """Only the target's keys are deleted."""
    for site in ("ShopA", "ShopB"):
        instances.write_record(site, {PORT: 8080})
        instances.register_program(site, {"DisplayName": f"EcommerceStarter - {site}"})
    instances.register_tool({"DisplayName": "EcommerceStarter"})
    instances.stores[1].set_values(instances.legacy_program_key("ShopA"), {"DisplayName": "old"})

    removed = instances.remove_instance("ShopA")

    assert any(entry.endswith("EcommerceStarter\\ShopA") for entry in removed)
    assert instances.primary.key_exists(instances.product_key)
    assert instances.list_sites() == ["ShopB"]
    assert instances.get_program("ShopA") is None
    assert instances.get_program("ShopB") is not None
    assert instances.get_tool() is not None


def test_list_programs_skips_tool_entry(instances: InstanceStore) -> None:
    """Per-site Programs entries are listed without the global tool entry."""
    instances.register_program("DemoShop", {"DisplayName": "EcommerceStarter - DemoShop"})
    instances.register_tool({"DisplayName": "EcommerceStarter"})

    programs = instances.list_programs()

    assert [(view, name) for view, name, _ in programs] == [("64", "EcommerceStarter_DemoShop")]
    assert instances.remove_tool() is True
    assert instances.get_tool() is None


def test_list_programs_requires_product_separator(instances: InstanceStore) -> None:
    """Keys that merely start with the product name are not site entries."""
    instances.register_program("DemoShop", {"DisplayName": "EcommerceStarter - DemoShop"})
    instances.primary.set_values(
        instances.legacy_program_key("EcommerceStarterTools"), {"DisplayName": "Other product"}
    )

    names = [name for _, name, _ in instances.list_programs()]

    assert names == ["EcommerceStarter_DemoShop"]


def test_legacy_program_entry_is_read_and_removed(instances: InstanceStore) -> None:
    """Entries registered under the bare site name are still recognised."""
    instances.primary.set_values(instances.legacy_program_key("DemoShop"), {"DisplayName": "x"})

    assert instances.get_program("DemoShop") == {"DisplayName": "x"}
    assert instances.remove_program("DemoShop") == [f"64:{instances.legacy_program_key('DemoShop')}"]
    assert instances.get_program("DemoShop") is None


def test_deferred_deletes_are_queued(instances: InstanceStore) -> None:
    """Paths queued for restart deletion use the pending-rename pair format."""
    instances.schedule_deferred_delete("C:\\Program Files\\EcommerceStarter")
    instances.schedule_deferred_delete("C:\\inetpub\\DemoShop")

    assert instances.pending_deletes() == [
        "C:\\Program Files\\EcommerceStarter",
        "C:\\inetpub\\DemoShop",
    ]


def test_invalid_site_names_are_rejected(instances: InstanceStore) -> None:
    """Site names cannot address other keys."""
    with pytest.raises(StoreError, match="Invalid site name"):
        instances.instance_key("..\\Other")
    with pytest.raises(StoreError):
        instances.instance_key("  ")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("1.0.6.0", "1.0.6"), ("2.1", "2.1.0"), ("3", "3.0.0"), ("1.0.6-beta", "1.0.6")],
)
def test_normalize_display_version(raw: str, expected: str) -> None:
    """Display versions are reduced to three numeric components."""
    assert normalize_display_version(raw) == expected
