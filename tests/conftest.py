"""Shared fixtures: an in-memory MongoDB and factories for catalog documents."""

from typing import Callable, Iterable, Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.database import Database

import main


@pytest.fixture
def db() -> Database:
    """Fresh mongomock database per test."""
    return mongomock.MongoClient()["catalog_test"]


@pytest.fixture
def client(db: Database):
    """TestClient whose handlers receive the mongomock database."""
    main.app.dependency_overrides[main.get_db] = lambda: db
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def _slugify(name: str) -> str:
    return name.lower().replace(" ", "-")


def _subdocs(names: Iterable[str]) -> list:
    return [
        {"_id": ObjectId(), "name": n, "slug": _slugify(n), "is_active": True, "display_order": i}
        for i, n in enumerate(names)
    ]


@pytest.fixture
def make_brand(db: Database) -> Callable[..., dict]:
    def factory(name: str, lines: Iterable[str] = ()) -> dict:
        doc = {
            "name": name,
            "slug": _slugify(name),
            "product_lines": _subdocs(lines),
            "product_usage": [],
            "product_line_usage": {},
        }
        doc["_id"] = db.brand.insert_one(doc).inserted_id
        return doc

    return factory


@pytest.fixture
def make_pump_type(db: Database) -> Callable[..., dict]:
    def factory(name: str, subs: Iterable[str] = ()) -> dict:
        doc = {
            "pump_type": name,
            "slug": _slugify(name),
            "sub_pump_types": _subdocs(subs),
            "product_usage": [],
            "sub_pump_type_usage": {},
        }
        doc["_id"] = db.pumptype.insert_one(doc).inserted_id
        return doc

    return factory


@pytest.fixture
def make_product(db: Database) -> Callable[..., dict]:
    def factory(
        name: str,
        brand: Optional[ObjectId] = None,
        product_line_id: Optional[str] = None,
        pump_type: Optional[ObjectId] = None,
        sub_pump_type: Optional[ObjectId] = None,
    ) -> dict:
        doc = {
            "name": name,
            "slug": _slugify(name),
            "brand": brand,
            "product_line_id": product_line_id,
            "pump_type": pump_type,
            "sub_pump_type": sub_pump_type,
        }
        doc["_id"] = db.product.insert_one(doc).inserted_id
        return doc

    return factory


@pytest.fixture
def make_business_type(db: Database) -> Callable[..., dict]:
    def factory(name: str, customer_ids: Iterable[ObjectId] = ()) -> dict:
        doc = {"name": name, "customer_ids": list(customer_ids)}
        doc["_id"] = db.businesstype.insert_one(doc).inserted_id
        return doc

    return factory


@pytest.fixture
def make_industry(db: Database) -> Callable[..., dict]:
    def factory(name: str) -> dict:
        doc = {"name": name, "slug": _slugify(name), "is_active": True, "display_order": 0}
        doc["_id"] = db.industry.insert_one(doc).inserted_id
        return doc

    return factory


@pytest.fixture
def customer_payload() -> Callable[..., dict]:
    """Request body for the customer endpoints/services."""

    def factory(name: str, business_type: ObjectId, industry: Iterable[ObjectId] = (), slug: Optional[str] = None) -> dict:
        return {
            "name": name,
            "slug": slug or _slugify(name),
            "business_type": str(business_type),
            "industry": [str(i) for i in industry],
        }

    return factory
