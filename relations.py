"""
Cross-collection consistency for customers and the entities they point at.

MongoDB gives no foreign keys or cascades, so each relationship is kept here
behind a small back-reference object:

- businesstype.customer_ids      stored array, maintained on customer writes
- customer.industry              queried live, no array on the industry
- application.recommended_industries  queried live
- brand/pumptype.product_usage   stored by the usage sync job (usage_sync.py),
                                 with a live product query while it is empty

Deletes of a referenced entity are refused while anything still uses it.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.database import Database

from database import create_document, to_object_id, update_document
from errors import ConflictError, NotFoundError, ValidationFailed
from schemas import Customer, IndustryStats

logger = logging.getLogger(__name__)


class ArrayBackReference:
    """Child ids stored as an array on the parent document."""

    def __init__(self, parent_collection: str, array_field: str, child_collection: str):
        self.parent_collection = parent_collection
        self.array_field = array_field
        self.child_collection = child_collection

    def add(self, db: Database, parent_id: ObjectId, child_id: ObjectId) -> int:
        # Raw update, no schema validation. An unknown parent matches nothing.
        res = db[self.parent_collection].update_one(
            {"_id": parent_id}, {"$addToSet": {self.array_field: child_id}}
        )
        return res.matched_count

    def remove(self, db: Database, parent_id: ObjectId, child_id: ObjectId) -> int:
        res = db[self.parent_collection].update_one(
            {"_id": parent_id}, {"$pull": {self.array_field: child_id}}
        )
        return res.matched_count

    def ids(self, parent: dict) -> List[ObjectId]:
        return list(parent.get(self.array_field) or [])

    def count(self, parent: dict) -> int:
        return len(self.ids(parent))

    def referrers(self, db: Database, parent: dict, fields: Optional[Dict[str, int]] = None) -> List[dict]:
        ids = self.ids(parent)
        if not ids:
            return []
        return list(
            db[self.child_collection].find({"_id": {"$in": ids}}, fields or {"name": 1}).sort("_id", 1)
        )

    def replace(self, db: Database, parent_id: ObjectId, child_ids: List[ObjectId]) -> None:
        db[self.parent_collection].update_one(
            {"_id": parent_id}, {"$set": {self.array_field: child_ids}}
        )


class QueryBackReference:
    """References found by querying the child collection; nothing stored on the parent."""

    def __init__(self, child_collection: str, field: str):
        self.child_collection = child_collection
        self.field = field

    def count(self, db: Database, parent_id: ObjectId) -> int:
        return db[self.child_collection].count_documents({self.field: parent_id})

    def referrers(
        self,
        db: Database,
        parent_id: ObjectId,
        extra: Optional[Dict[str, Any]] = None,
        fields: Optional[Dict[str, int]] = None,
    ) -> List[dict]:
        query = {self.field: parent_id}
        query.update(extra or {})
        return list(db[self.child_collection].find(query, fields or {"name": 1}).sort("name", 1))

    def detach(self, db: Database, parent_id: ObjectId) -> int:
        """Pull parent_id out of every child's reference array."""
        res = db[self.child_collection].update_many(
            {self.field: parent_id}, {"$pull": {self.field: parent_id}}
        )
        return res.modified_count


class UsageBackReference:
    """Product names cached on the parent by the usage sync job."""

    field = "product_usage"

    def names(self, parent: dict) -> List[str]:
        return list(parent.get(self.field) or [])


BUSINESS_TYPE_CUSTOMERS = ArrayBackReference("businesstype", "customer_ids", "customer")
INDUSTRY_CUSTOMERS = QueryBackReference("customer", "industry")
INDUSTRY_APPLICATIONS = QueryBackReference("application", "recommended_industries")
PRODUCT_USAGE = UsageBackReference()
BRAND_PRODUCTS = QueryBackReference("product", "brand")
PUMP_TYPE_PRODUCTS = QueryBackReference("product", "pump_type")


# ---------------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------------

def require_object_id(value: str, label: str) -> ObjectId:
    oid = to_object_id(value)
    if oid is None:
        raise NotFoundError(f"{label} not found")
    return oid


def reference_ids(values: List[str], label: str) -> List[ObjectId]:
    ids = []
    for value in values:
        oid = to_object_id(value)
        if oid is None:
            raise ValidationFailed("Invalid data format", [f"{label}: '{value}' is not a valid id"])
        ids.append(oid)
    return ids


def check_industries(db: Database, industry_ids: List[ObjectId]) -> None:
    if not industry_ids:
        return
    unique = list(set(industry_ids))
    if db["industry"].count_documents({"_id": {"$in": unique}}) != len(unique):
        raise ValidationFailed("One or more invalid industry IDs", ["industry: unknown id"])


def customer_document(payload: Customer) -> Dict[str, Any]:
    doc = payload.model_dump()
    doc["business_type"] = reference_ids([payload.business_type], "business_type")[0]
    doc["industry"] = reference_ids(payload.industry, "industry")
    return doc


def _blocked(entity: str, noun: str, count: int, names: List[str]) -> ConflictError:
    listed = ", ".join(names)
    return ConflictError(
        f"Cannot delete {entity}. It is currently assigned to {count} {noun}(s): {listed}",
        {f"{noun}_count": count, f"{noun}_names": names},
    )


# ---------------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------------

def create_customer(db: Database, payload: Customer) -> dict:
    doc = customer_document(payload)
    if db["customer"].find_one({"slug": doc["slug"]}):
        raise ConflictError("Customer slug already exists")
    if not db["businesstype"].find_one({"_id": doc["business_type"]}, {"_id": 1}):
        raise ValidationFailed("Invalid business type ID", ["business_type: unknown id"])
    check_industries(db, doc["industry"])

    customer_id = ObjectId(create_document("customer", doc, database=db))
    BUSINESS_TYPE_CUSTOMERS.add(db, doc["business_type"], customer_id)
    logger.info("Created customer %s (%s)", doc["name"], customer_id)
    return db["customer"].find_one({"_id": customer_id})


def update_customer(db: Database, customer_id: str, payload: Customer) -> dict:
    oid = require_object_id(customer_id, "Customer")
    current = db["customer"].find_one({"_id": oid})
    if not current:
        raise NotFoundError("Customer not found")

    doc = customer_document(payload)
    # All checks run before any business type is touched
    if db["customer"].find_one({"slug": doc["slug"], "_id": {"$ne": oid}}, {"_id": 1}):
        raise ConflictError("Customer slug already exists")
    check_industries(db, doc["industry"])

    old_type = current.get("business_type")
    new_type = doc["business_type"]
    if old_type != new_type:
        if old_type is not None:
            BUSINESS_TYPE_CUSTOMERS.remove(db, old_type, oid)
        BUSINESS_TYPE_CUSTOMERS.add(db, new_type, oid)
        logger.info("Customer %s moved from business type %s to %s", oid, old_type, new_type)

    update_document("customer", oid, doc, database=db)
    return db["customer"].find_one({"_id": oid})


def delete_customer(db: Database, customer_id: str) -> dict:
    oid = require_object_id(customer_id, "Customer")
    current = db["customer"].find_one({"_id": oid})
    if not current:
        raise NotFoundError("Customer not found")

    if current.get("business_type") is not None:
        BUSINESS_TYPE_CUSTOMERS.remove(db, current["business_type"], oid)
    db["customer"].delete_one({"_id": oid})
    logger.info("Deleted customer %s", current.get("name"))
    return {"message": "Customer deleted successfully", "deleted_customer": current.get("name")}


# ---------------------------------------------------------------------------------
# Guarded deletes
# ---------------------------------------------------------------------------------

def delete_business_type(db: Database, business_type_id: str) -> dict:
    oid = require_object_id(business_type_id, "Business type")
    business_type = db["businesstype"].find_one({"_id": oid})
    if not business_type:
        raise NotFoundError("Business type not found")

    # Ids whose customer document is gone still count
    count = BUSINESS_TYPE_CUSTOMERS.count(business_type)
    if count > 0:
        names = [c.get("name") for c in BUSINESS_TYPE_CUSTOMERS.referrers(db, business_type)]
        logger.warning("Refusing to delete business type %s: %d customers", business_type["name"], count)
        raise _blocked("business type", "customer", count, names)

    db["businesstype"].delete_one({"_id": oid})
    return {"message": "Business type deleted successfully", "deleted_business_type": business_type["name"]}


def delete_industry(db: Database, industry_id: str) -> dict:
    oid = require_object_id(industry_id, "Industry")
    industry = db["industry"].find_one({"_id": oid})
    if not industry:
        raise NotFoundError("Industry not found")

    if INDUSTRY_CUSTOMERS.count(db, oid) > 0:
        names = [c.get("name") for c in INDUSTRY_CUSTOMERS.referrers(db, oid)]
        logger.warning("Refusing to delete industry %s: %d customers", industry["name"], len(names))
        raise _blocked("industry", "customer", len(names), names)

    detached = INDUSTRY_APPLICATIONS.detach(db, oid)
    db["industry"].delete_one({"_id": oid})
    return {
        "message": "Industry deleted successfully",
        "deleted_industry": industry["name"],
        "applications_updated": detached,
    }


def _product_names(db: Database, products: QueryBackReference, parent: dict) -> List[str]:
    # Stored usage lags product writes until the next sync
    names = PRODUCT_USAGE.names(parent)
    if names:
        return names
    return [p["name"] for p in products.referrers(db, parent["_id"])]


def delete_brand(db: Database, brand_id: str) -> dict:
    oid = require_object_id(brand_id, "Brand")
    brand = db["brand"].find_one({"_id": oid})
    if not brand:
        raise NotFoundError("Brand not found")
    names = _product_names(db, BRAND_PRODUCTS, brand)
    if names:
        raise _blocked("brand", "product", len(names), names)
    db["brand"].delete_one({"_id": oid})
    return {"message": "Brand deleted successfully", "deleted_brand": brand["name"]}


def delete_pump_type(db: Database, pump_type_id: str) -> dict:
    oid = require_object_id(pump_type_id, "Pump type")
    pump_type = db["pumptype"].find_one({"_id": oid})
    if not pump_type:
        raise NotFoundError("Pump type not found")
    names = _product_names(db, PUMP_TYPE_PRODUCTS, pump_type)
    if names:
        raise _blocked("pump type", "product", len(names), names)
    db["pumptype"].delete_one({"_id": oid})
    return {"message": "Pump type deleted successfully", "deleted_pump_type": pump_type["pump_type"]}


# ---------------------------------------------------------------------------------
# Read-side helpers and repair jobs
# ---------------------------------------------------------------------------------

def describe_business_type(db: Database, business_type: dict) -> dict:
    customers = BUSINESS_TYPE_CUSTOMERS.referrers(
        db, business_type, {"name": 1, "slug": 1, "customer_status": 1}
    )
    return {
        "_id": business_type["_id"],
        "name": business_type["name"],
        "customers": customers,
        "customer_count": BUSINESS_TYPE_CUSTOMERS.count(business_type),
        "created_at": business_type.get("created_at"),
        "updated_at": business_type.get("updated_at"),
    }


def rebuild_business_type_customers(db: Database) -> dict:
    """Recompute every business type's customer_ids from customer.business_type."""
    by_type: Dict[ObjectId, List[ObjectId]] = {}
    for customer in db["customer"].find({}, {"business_type": 1}).sort("_id", 1):
        by_type.setdefault(customer.get("business_type"), []).append(customer["_id"])

    counts = {}
    for business_type in db["businesstype"].find({}, {"name": 1}).sort("_id", 1):
        ids = by_type.get(business_type["_id"], [])
        BUSINESS_TYPE_CUSTOMERS.replace(db, business_type["_id"], ids)
        counts[business_type["name"]] = len(ids)
        logger.info('Updated business type "%s": %d customers', business_type["name"], len(ids))

    return {
        "success": True,
        "message": f"Customer relations rebuilt for {len(counts)} business types",
        "business_types": counts,
    }


def refresh_industry_stats(db: Database, industry_id: ObjectId) -> Dict[str, Any]:
    stats = IndustryStats(
        customer_count=INDUSTRY_CUSTOMERS.count(db, industry_id),
        application_count=INDUSTRY_APPLICATIONS.count(db, industry_id),
        last_updated=datetime.now(timezone.utc),
    ).model_dump()
    db["industry"].update_one({"_id": industry_id}, {"$set": {"stats": stats}})
    return stats


def industry_customers(db: Database, industry_id: str, status: Optional[str] = None) -> dict:
    oid = require_object_id(industry_id, "Industry")
    industry = db["industry"].find_one({"_id": oid}, {"name": 1, "slug": 1})
    if not industry:
        raise NotFoundError("Industry not found")
    extra = {"customer_status": status} if status else None
    customers = INDUSTRY_CUSTOMERS.referrers(
        db, oid, extra, {"name": 1, "slug": 1, "customer_status": 1, "business_type": 1}
    )
    return {"industry": industry, "customers": customers, "total": len(customers)}
