"""Tests for the brand / pump type usage rebuild."""

from typing import Callable

import mongomock
import pytest
from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from usage_sync import build_usage, sync_all_usage, sync_brand_usage, sync_pump_type_usage


def _usage_snapshot(db: Database) -> dict:
    snapshot = {}
    for doc in db.brand.find({}).sort("_id", 1):
        snapshot[("brand", doc["_id"])] = (doc["product_usage"], doc["product_line_usage"])
    for doc in db.pumptype.find({}).sort("_id", 1):
        snapshot[("pumptype", doc["_id"])] = (doc["product_usage"], doc["sub_pump_type_usage"])
    return snapshot


# ============================================================================
# build_usage
# ============================================================================


class TestBuildUsage:
    """Tests for the pure recompute step."""

    def test_seeds_every_declared_sub_id(self) -> None:
        """Declared sub ids get an empty list even with no products."""
        product_usage, sub_usage = build_usage([], ["a", "b"], "product_line_id")

        assert product_usage == []
        assert sub_usage == {"a": [], "b": []}

    def test_groups_products_by_sub_id(self) -> None:
        """Names land under their sub id; products without one only count at the top level."""
        products = [
            {"name": "P1", "product_line_id": "a"},
            {"name": "P2", "product_line_id": None},
            {"name": "P3", "product_line_id": "a"},
        ]

        product_usage, sub_usage = build_usage(products, ["a", "b"], "product_line_id")

        assert product_usage == ["P1", "P2", "P3"]
        assert sub_usage == {"a": ["P1", "P3"], "b": []}

    def test_undeclared_sub_id_gets_an_entry(self) -> None:
        """A product pointing at an unknown sub id still creates a key."""
        _, sub_usage = build_usage([{"name": "P1", "sub_pump_type": ObjectId("0" * 24)}], [], "sub_pump_type")

        assert sub_usage == {"0" * 24: ["P1"]}


# ============================================================================
# Brands
# ============================================================================


class TestSyncBrandUsage:
    """Tests for sync_brand_usage."""

    def test_busch_rotary_vane_scenario(
        self, db: Database, make_brand: Callable, make_product: Callable
    ) -> None:
        """Two products on one product line show up on the brand and on the line."""
        busch = make_brand("Busch", ["Rotary Vane"])
        line_id = str(busch["product_lines"][0]["_id"])
        make_product("RV-100", brand=busch["_id"], product_line_id=line_id)
        make_product("RV-200", brand=busch["_id"], product_line_id=line_id)

        result = sync_brand_usage(db)

        doc = db.brand.find_one({"_id": busch["_id"]})
        assert result == {"success": True, "message": "Brand usage sync completed for 1 brands"}
        assert doc["product_usage"] == ["RV-100", "RV-200"]
        assert doc["product_line_usage"] == {line_id: ["RV-100", "RV-200"]}

    def test_usage_matches_products_per_brand(
        self, db: Database, make_brand: Callable, make_product: Callable
    ) -> None:
        """Each brand lists exactly the products pointing at it."""
        busch = make_brand("Busch")
        leybold = make_brand("Leybold")
        make_product("RV-100", brand=busch["_id"])
        make_product("SV-40", brand=leybold["_id"])
        make_product("Unbranded")

        sync_brand_usage(db)

        assert db.brand.find_one({"_id": busch["_id"]})["product_usage"] == ["RV-100"]
        assert db.brand.find_one({"_id": leybold["_id"]})["product_usage"] == ["SV-40"]

    def test_every_product_line_has_a_key(self, db: Database, make_brand: Callable) -> None:
        """Unused product lines get an empty list."""
        brand = make_brand("Pfeiffer", ["Scroll", "Roots", "Turbo"])

        sync_brand_usage(db)

        usage = db.brand.find_one({"_id": brand["_id"]})["product_line_usage"]
        assert set(usage) == {str(line["_id"]) for line in brand["product_lines"]}
        assert all(names == [] for names in usage.values())

    def test_removed_product_line_is_pruned(
        self, db: Database, make_brand: Callable
    ) -> None:
        """A line deleted from the brand disappears from the map on the next sync."""
        brand = make_brand("Edwards", ["Dry", "Oil Sealed"])
        sync_brand_usage(db)
        kept = brand["product_lines"][0]
        db.brand.update_one({"_id": brand["_id"]}, {"$set": {"product_lines": [kept]}})

        sync_brand_usage(db)

        usage = db.brand.find_one({"_id": brand["_id"]})["product_line_usage"]
        assert usage == {str(kept["_id"]): []}

    def test_removed_line_still_referenced_keeps_entry(
        self, db: Database, make_brand: Callable, make_product: Callable
    ) -> None:
        """A product still pointing at a removed line keeps that id in the map."""
        brand = make_brand("Edwards", ["Dry", "Oil Sealed"])
        removed_id = str(brand["product_lines"][1]["_id"])
        make_product("E2M", brand=brand["_id"], product_line_id=removed_id)
        db.brand.update_one({"_id": brand["_id"]}, {"$set": {"product_lines": brand["product_lines"][:1]}})

        sync_brand_usage(db)

        usage = db.brand.find_one({"_id": brand["_id"]})["product_line_usage"]
        assert usage[removed_id] == ["E2M"]

    def test_deleted_product_is_dropped(
        self, db: Database, make_brand: Callable, make_product: Callable
    ) -> None:
        """Deleting a product and re-syncing removes its name."""
        brand = make_brand("Busch")
        gone = make_product("RV-100", brand=brand["_id"])
        make_product("RV-200", brand=brand["_id"])
        sync_brand_usage(db)
        db.product.delete_one({"_id": gone["_id"]})

        sync_brand_usage(db)

        assert db.brand.find_one({"_id": brand["_id"]})["product_usage"] == ["RV-200"]


# ============================================================================
# Pump types
# ============================================================================


class TestSyncPumpTypeUsage:
    """Tests for sync_pump_type_usage."""

    def test_sub_pump_type_usage(
        self, db: Database, make_pump_type: Callable, make_product: Callable
    ) -> None:
        """Products are grouped under their sub pump type id."""
        rotary = make_pump_type("Rotary Vane", ["Single Stage", "Two Stage"])
        single, double = rotary["sub_pump_types"]
        make_product("RA-0100", pump_type=rotary["_id"], sub_pump_type=single["_id"])
        make_product("RA-0250", pump_type=rotary["_id"], sub_pump_type=single["_id"])
        make_product("RD-0016", pump_type=rotary["_id"])

        result = sync_pump_type_usage(db)

        doc = db.pumptype.find_one({"_id": rotary["_id"]})
        assert result["message"] == "Usage sync completed for 1 pump types"
        assert doc["product_usage"] == ["RA-0100", "RA-0250", "RD-0016"]
        assert doc["sub_pump_type_usage"] == {
            str(single["_id"]): ["RA-0100", "RA-0250"],
            str(double["_id"]): [],
        }

    def test_orphan_sub_pump_type_gets_entry(
        self, db: Database, make_pump_type: Callable, make_product: Callable
    ) -> None:
        """A sub pump type id the parent does not declare is still tracked."""
        scroll = make_pump_type("Scroll")
        orphan = ObjectId()
        make_product("XDS-10", pump_type=scroll["_id"], sub_pump_type=orphan)

        sync_pump_type_usage(db)

        usage = db.pumptype.find_one({"_id": scroll["_id"]})["sub_pump_type_usage"]
        assert usage == {str(orphan): ["XDS-10"]}

    def test_stale_keys_replaced(self, db: Database, make_pump_type: Callable) -> None:
        """The previous map is replaced, not merged."""
        scroll = make_pump_type("Scroll", ["Oil Free"])
        db.pumptype.update_one(
            {"_id": scroll["_id"]}, {"$set": {"sub_pump_type_usage": {"stale": ["Old"]}, "product_usage": ["Old"]}}
        )

        sync_pump_type_usage(db)

        doc = db.pumptype.find_one({"_id": scroll["_id"]})
        assert doc["product_usage"] == []
        assert doc["sub_pump_type_usage"] == {str(scroll["sub_pump_types"][0]["_id"]): []}

    def test_write_failure_stops_loop_without_rollback(
        self, db: Database, make_pump_type: Callable, make_product: Callable, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A failed save aborts the rest; earlier parents keep their new values."""
        first = make_pump_type("Claw")
        second = make_pump_type("Roots")
        third = make_pump_type("Screw")
        for pump_type in (first, second, third):
            make_product(f"{pump_type['pump_type']}-1", pump_type=pump_type["_id"])

        original = mongomock.Collection.update_one
        calls = []

        def flaky(self, filter, update, *args, **kwargs):
            calls.append(filter["_id"])
            if len(calls) == 2:
                raise PyMongoError("connection lost")
            return original(self, filter, update, *args, **kwargs)

        monkeypatch.setattr(mongomock.Collection, "update_one", flaky)

        with pytest.raises(PyMongoError):
            sync_pump_type_usage(db)

        assert len(calls) == 2
        assert db.pumptype.find_one({"_id": first["_id"]})["product_usage"] == ["Claw-1"]
        assert db.pumptype.find_one({"_id": second["_id"]})["product_usage"] == []
        assert db.pumptype.find_one({"_id": third["_id"]})["product_usage"] == []


# ============================================================================
# Full sync
# ============================================================================


class TestSyncAllUsage:
    """Tests for sync_all_usage."""

    def test_combines_messages(
        self, db: Database, make_brand: Callable, make_pump_type: Callable
    ) -> None:
        """The summary mentions both sub-syncs."""
        make_brand("Busch")
        make_pump_type("Scroll")
        make_pump_type("Roots")

        result = sync_all_usage(db)

        assert result["success"] is True
        assert result["message"] == (
            "All usage tracking synchronized successfully. "
            "Usage sync completed for 2 pump types. "
            "Brand usage sync completed for 1 brands."
        )

    def test_second_run_is_identical(
        self, db: Database, make_brand: Callable, make_pump_type: Callable, make_product: Callable
    ) -> None:
        """Re-running with unchanged products produces the same usage data."""
        brand = make_brand("Busch", ["Rotary Vane", "Claw"])
        pump_type = make_pump_type("Rotary Vane", ["Single Stage"])
        make_product(
            "RV-100",
            brand=brand["_id"],
            product_line_id=str(brand["product_lines"][0]["_id"]),
            pump_type=pump_type["_id"],
            sub_pump_type=pump_type["sub_pump_types"][0]["_id"],
        )
        make_product("MINK", brand=brand["_id"], product_line_id=str(brand["product_lines"][1]["_id"]))

        sync_all_usage(db)
        first = _usage_snapshot(db)
        sync_all_usage(db)

        assert _usage_snapshot(db) == first

    def test_dropped_usage_is_rebuilt(
        self, db: Database, make_brand: Callable, make_product: Callable
    ) -> None:
        """Usage fields are pure cache: unsetting them and re-syncing restores them."""
        brand = make_brand("Busch", ["Rotary Vane"])
        make_product("RV-100", brand=brand["_id"], product_line_id=str(brand["product_lines"][0]["_id"]))
        sync_all_usage(db)
        before = _usage_snapshot(db)
        db.brand.update_many({}, {"$unset": {"product_usage": "", "product_line_usage": ""}})

        sync_all_usage(db)

        assert _usage_snapshot(db) == before

    def test_pump_type_failure_skips_brands(
        self, db: Database, make_brand: Callable, make_pump_type: Callable, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """An error in the pump type pass propagates and the brand pass never runs."""
        brand = make_brand("Busch")
        db.brand.update_one({"_id": brand["_id"]}, {"$set": {"product_usage": ["stale"]}})
        make_pump_type("Scroll")

        def broken(self, *args, **kwargs):
            raise PyMongoError("server selection timeout")

        monkeypatch.setattr(mongomock.Collection, "update_one", broken)

        with pytest.raises(PyMongoError):
            sync_all_usage(db)

        monkeypatch.undo()
        assert db.brand.find_one({"_id": brand["_id"]})["product_usage"] == ["stale"]
