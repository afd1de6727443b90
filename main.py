import logging
import os
import re
from contextlib import asynccontextmanager
from typing import List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import database
from database import create_document, get_documents, to_object_id, update_document
from errors import CatalogError, ConflictError, NotFoundError, ValidationFailed
from logging_setup import setup_logging
from relations import (
    check_industries,
    create_customer,
    delete_brand,
    delete_business_type,
    delete_customer,
    delete_industry,
    delete_pump_type,
    describe_business_type,
    industry_customers,
    rebuild_business_type_customers,
    reference_ids,
    refresh_industry_stats,
    require_object_id,
    update_customer,
)
from schemas import Application, Brand, BusinessType, Customer, Industry, IndustryStats, Product, PumpType
from usage_sync import BRANDS, compute_usage, sync_all_usage

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    database.close_db()


app = FastAPI(title="Vacuum Pump Catalog Admin API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------------

def get_db() -> Database:
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return database.db


def to_str_id(doc):
    """Make a Mongo document JSON friendly: _id -> id, ObjectId -> str at any depth."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [to_str_id(v) for v in doc]
    if isinstance(doc, dict):
        out = {}
        for key, value in doc.items():
            if key == "_id":
                out["id"] = str(value)
            else:
                out[key] = to_str_id(value)
        return out
    return doc


def name_taken(db: Database, collection: str, field: str, value: str, exclude_id: Optional[ObjectId] = None) -> bool:
    """Case-insensitive exact match on `field`."""
    query = {field: {"$regex": f"^{re.escape(value)}$", "$options": "i"}}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return db[collection].find_one(query, {"_id": 1}) is not None


def slug_taken(db: Database, collection: str, slug: str, exclude_id: Optional[ObjectId] = None) -> bool:
    query = {"slug": slug}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return db[collection].find_one(query, {"_id": 1}) is not None


def embed(items) -> List[dict]:
    """Turn ProductLine / SubPumpType payloads into stored sub-documents with an _id."""
    out = []
    for item in items:
        data = item.model_dump(exclude={"id"})
        if item.id:
            oid = to_object_id(item.id)
            if oid is None:
                raise ValidationFailed("Invalid data format", [f"id: '{item.id}' is not a valid id"])
        else:
            oid = ObjectId()
        data["_id"] = oid
        out.append(data)
    return out


def load_or_404(db: Database, collection: str, doc_id: str, label: str) -> dict:
    oid = require_object_id(doc_id, label)
    doc = db[collection].find_one({"_id": oid})
    if not doc:
        raise NotFoundError(f"{label} not found")
    return doc


# ---------------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------------

@app.exception_handler(CatalogError)
async def catalog_error_handler(request: Request, exc: CatalogError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=409, content={"detail": "A document with this value already exists"})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Database operation failed"})


# ---------------------------------------------------------------------------------
# Health and info
# ---------------------------------------------------------------------------------

@app.get("/")
def read_root():
    return {"message": "Vacuum Pump Catalog Admin API Ready"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    db = database.db
    if db is not None:
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    else:
        response["database"] = "⚠️  Available but not initialized"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


# ---------------------------------------------------------------------------------
# Usage tracking
# ---------------------------------------------------------------------------------

@app.post("/api/admin/sync-usage")
def sync_usage(db: Database = Depends(get_db)):
    try:
        return sync_all_usage(db)
    except Exception:
        logger.exception("Error in usage sync")
        raise HTTPException(status_code=500, detail="Failed to sync usage tracking")


# ---------------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------------

def product_document(db: Database, payload: Product) -> dict:
    doc = payload.model_dump()
    for field, collection, label in (("brand", "brand", "Brand"), ("pump_type", "pumptype", "Pump type")):
        if doc[field]:
            oid = reference_ids([doc[field]], field)[0]
            if not db[collection].find_one({"_id": oid}, {"_id": 1}):
                raise ValidationFailed(f"Invalid {label.lower()} ID", [f"{field}: unknown id"])
            doc[field] = oid
    if doc["sub_pump_type"]:
        doc["sub_pump_type"] = reference_ids([doc["sub_pump_type"]], "sub_pump_type")[0]
    return doc


@app.get("/api/admin/products")
def list_products(brand: Optional[str] = None, pump_type: Optional[str] = None, db: Database = Depends(get_db)):
    query = {}
    if brand:
        query["brand"] = reference_ids([brand], "brand")[0]
    if pump_type:
        query["pump_type"] = reference_ids([pump_type], "pump_type")[0]
    docs = get_documents("product", query, database=db, sort=[("name", 1)])
    return [to_str_id(d) for d in docs]


@app.post("/api/admin/products", status_code=201)
def create_product(payload: Product, db: Database = Depends(get_db)):
    if slug_taken(db, "product", payload.slug):
        raise ConflictError("Product slug already exists")
    doc = product_document(db, payload)
    product_id = create_document("product", doc, database=db)
    return to_str_id(db.product.find_one({"_id": ObjectId(product_id)}))


@app.get("/api/admin/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return to_str_id(load_or_404(db, "product", product_id, "Product"))


@app.put("/api/admin/products/{product_id}")
def update_product(product_id: str, payload: Product, db: Database = Depends(get_db)):
    current = load_or_404(db, "product", product_id, "Product")
    if slug_taken(db, "product", payload.slug, current["_id"]):
        raise ConflictError("Product slug already exists")
    update_document("product", current["_id"], product_document(db, payload), database=db)
    return get_product(product_id, db)


@app.delete("/api/admin/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db)):
    # Usage lists on brands/pump types are refreshed by the next sync
    current = load_or_404(db, "product", product_id, "Product")
    db.product.delete_one({"_id": current["_id"]})
    return {"message": "Product deleted successfully", "deleted_product": current["name"]}


# ---------------------------------------------------------------------------------
# Brands
# ---------------------------------------------------------------------------------

@app.get("/api/admin/brands")
def list_brands(db: Database = Depends(get_db)):
    brands = []
    for brand in get_documents("brand", {}, database=db, sort=[("name", 1)]):
        if not brand.get("product_usage"):
            # Never synced: compute from products for this response only
            brand["product_usage"], brand["product_line_usage"] = compute_usage(db, BRANDS, brand)
        brands.append(to_str_id(brand))
    return brands


@app.post("/api/admin/brands", status_code=201)
def create_brand(payload: Brand, db: Database = Depends(get_db)):
    if name_taken(db, "brand", "name", payload.name):
        raise ConflictError("Brand with this name already exists")
    if slug_taken(db, "brand", payload.slug):
        raise ConflictError("Brand slug already exists")
    doc = payload.model_dump()
    doc["product_lines"] = embed(payload.product_lines)
    doc["product_usage"] = []
    doc["product_line_usage"] = {str(line["_id"]): [] for line in doc["product_lines"]}
    brand_id = create_document("brand", doc, database=db)
    return to_str_id(db.brand.find_one({"_id": ObjectId(brand_id)}))


@app.put("/api/admin/brands/{brand_id}")
def update_brand(brand_id: str, payload: Brand, db: Database = Depends(get_db)):
    current = load_or_404(db, "brand", brand_id, "Brand")
    if name_taken(db, "brand", "name", payload.name, current["_id"]):
        raise ConflictError("Brand with this name already exists")
    if slug_taken(db, "brand", payload.slug, current["_id"]):
        raise ConflictError("Brand slug already exists")
    doc = payload.model_dump()
    doc["product_lines"] = embed(payload.product_lines)
    update_document("brand", current["_id"], doc, database=db)
    return to_str_id(db.brand.find_one({"_id": current["_id"]}))


@app.delete("/api/admin/brands/{brand_id}")
def remove_brand(brand_id: str, db: Database = Depends(get_db)):
    return delete_brand(db, brand_id)


# ---------------------------------------------------------------------------------
# Pump types
# ---------------------------------------------------------------------------------

@app.get("/api/admin/pump-types")
def list_pump_types(db: Database = Depends(get_db)):
    docs = get_documents("pumptype", {}, database=db, sort=[("pump_type", 1)])
    return [to_str_id(d) for d in docs]


@app.post("/api/admin/pump-types", status_code=201)
def create_pump_type(payload: PumpType, db: Database = Depends(get_db)):
    if name_taken(db, "pumptype", "pump_type", payload.pump_type):
        raise ConflictError("Pump type with this name already exists")
    if slug_taken(db, "pumptype", payload.slug):
        raise ConflictError("Pump type with this slug already exists")
    doc = payload.model_dump()
    doc["sub_pump_types"] = embed(payload.sub_pump_types)
    doc["product_usage"] = []
    doc["sub_pump_type_usage"] = {str(sub["_id"]): [] for sub in doc["sub_pump_types"]}
    pump_type_id = create_document("pumptype", doc, database=db)
    return to_str_id(db.pumptype.find_one({"_id": ObjectId(pump_type_id)}))


@app.put("/api/admin/pump-types/{pump_type_id}")
def update_pump_type(pump_type_id: str, payload: PumpType, db: Database = Depends(get_db)):
    current = load_or_404(db, "pumptype", pump_type_id, "Pump type")
    if name_taken(db, "pumptype", "pump_type", payload.pump_type, current["_id"]):
        raise ConflictError("Pump type with this name already exists")
    if slug_taken(db, "pumptype", payload.slug, current["_id"]):
        raise ConflictError("Pump type with this slug already exists")
    doc = payload.model_dump()
    doc["sub_pump_types"] = embed(payload.sub_pump_types)
    update_document("pumptype", current["_id"], doc, database=db)
    return to_str_id(db.pumptype.find_one({"_id": current["_id"]}))


@app.delete("/api/admin/pump-types/{pump_type_id}")
def remove_pump_type(pump_type_id: str, db: Database = Depends(get_db)):
    return delete_pump_type(db, pump_type_id)


# ---------------------------------------------------------------------------------
# Business types
# ---------------------------------------------------------------------------------

@app.get("/api/admin/business-types")
def list_business_types(db: Database = Depends(get_db)):
    docs = get_documents("businesstype", {}, database=db, sort=[("name", 1)])
    return [to_str_id(describe_business_type(db, d)) for d in docs]


@app.post("/api/admin/business-types", status_code=201)
def create_business_type(payload: BusinessType, db: Database = Depends(get_db)):
    if name_taken(db, "businesstype", "name", payload.name):
        raise ConflictError("Business type with this name already exists")
    business_type_id = create_document("businesstype", {"name": payload.name, "customer_ids": []}, database=db)
    logger.info("Created business type %s", payload.name)
    return to_str_id(describe_business_type(db, db.businesstype.find_one({"_id": ObjectId(business_type_id)})))


@app.put("/api/admin/business-types/{business_type_id}")
def update_business_type(business_type_id: str, payload: BusinessType, db: Database = Depends(get_db)):
    current = load_or_404(db, "businesstype", business_type_id, "Business type")
    if name_taken(db, "businesstype", "name", payload.name, current["_id"]):
        raise ConflictError("Business type with this name already exists")
    update_document("businesstype", current["_id"], {"name": payload.name}, database=db)
    return to_str_id(describe_business_type(db, db.businesstype.find_one({"_id": current["_id"]})))


@app.delete("/api/admin/business-types/{business_type_id}")
def remove_business_type(business_type_id: str, db: Database = Depends(get_db)):
    return delete_business_type(db, business_type_id)


@app.post("/api/admin/business-types/rebuild-relations")
def rebuild_business_type_relations(db: Database = Depends(get_db)):
    return rebuild_business_type_customers(db)


# ---------------------------------------------------------------------------------
# Industries
# ---------------------------------------------------------------------------------

@app.get("/api/admin/industries")
def list_industries(update_stats: bool = False, db: Database = Depends(get_db)):
    industries = get_documents("industry", {}, database=db, sort=[("display_order", 1), ("name", 1)])
    if update_stats:
        for industry in industries:
            try:
                industry["stats"] = refresh_industry_stats(db, industry["_id"])
            except PyMongoError:
                logger.exception("Error updating stats for industry %s", industry.get("name"))
    return [to_str_id(d) for d in industries]


@app.post("/api/admin/industries", status_code=201)
def create_industry(payload: Industry, db: Database = Depends(get_db)):
    if name_taken(db, "industry", "name", payload.name):
        raise ConflictError("Industry with this name already exists")
    if slug_taken(db, "industry", payload.slug):
        raise ConflictError("Industry slug already exists")
    doc = payload.model_dump()
    doc["stats"] = IndustryStats().model_dump()
    industry_id = create_document("industry", doc, database=db)
    return to_str_id(db.industry.find_one({"_id": ObjectId(industry_id)}))


@app.get("/api/admin/industries/{industry_id}")
def get_industry(industry_id: str, db: Database = Depends(get_db)):
    return to_str_id(load_or_404(db, "industry", industry_id, "Industry"))


@app.put("/api/admin/industries/{industry_id}")
def update_industry(industry_id: str, payload: Industry, db: Database = Depends(get_db)):
    current = load_or_404(db, "industry", industry_id, "Industry")
    if name_taken(db, "industry", "name", payload.name, current["_id"]):
        raise ConflictError("Industry with this name already exists")
    if slug_taken(db, "industry", payload.slug, current["_id"]):
        raise ConflictError("Industry slug already exists")
    update_document("industry", current["_id"], payload.model_dump(), database=db)
    return get_industry(industry_id, db)


@app.delete("/api/admin/industries/{industry_id}")
def remove_industry(industry_id: str, db: Database = Depends(get_db)):
    return delete_industry(db, industry_id)


@app.get("/api/industries/{industry_id}/customers")
def list_industry_customers(industry_id: str, status: Optional[str] = None, db: Database = Depends(get_db)):
    return to_str_id(industry_customers(db, industry_id, status))


# ---------------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------------

def application_document(db: Database, payload: Application) -> dict:
    doc = payload.model_dump()
    doc["recommended_industries"] = reference_ids(payload.recommended_industries, "recommended_industries")
    check_industries(db, doc["recommended_industries"])
    return doc


@app.get("/api/admin/applications")
def list_applications(db: Database = Depends(get_db)):
    docs = get_documents("application", {}, database=db, sort=[("name", 1)])
    return [to_str_id(d) for d in docs]


@app.post("/api/admin/applications", status_code=201)
def create_application(payload: Application, db: Database = Depends(get_db)):
    if slug_taken(db, "application", payload.slug):
        raise ConflictError("Application slug already exists")
    application_id = create_document("application", application_document(db, payload), database=db)
    return to_str_id(db.application.find_one({"_id": ObjectId(application_id)}))


@app.put("/api/admin/applications/{application_id}")
def update_application(application_id: str, payload: Application, db: Database = Depends(get_db)):
    current = load_or_404(db, "application", application_id, "Application")
    if slug_taken(db, "application", payload.slug, current["_id"]):
        raise ConflictError("Application slug already exists")
    update_document("application", current["_id"], application_document(db, payload), database=db)
    return to_str_id(db.application.find_one({"_id": current["_id"]}))


@app.delete("/api/admin/applications/{application_id}")
def delete_application(application_id: str, db: Database = Depends(get_db)):
    current = load_or_404(db, "application", application_id, "Application")
    db.application.delete_one({"_id": current["_id"]})
    return {"message": "Application deleted successfully", "deleted_application": current["name"]}


# ---------------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------------

@app.get("/api/admin/customers")
def list_customers(db: Database = Depends(get_db)):
    docs = get_documents("customer", {}, database=db, sort=[("created_at", -1)])
    return [to_str_id(d) for d in docs]


@app.post("/api/admin/customers", status_code=201)
def add_customer(payload: Customer, db: Database = Depends(get_db)):
    return to_str_id(create_customer(db, payload))


@app.get("/api/admin/customers/{customer_id}")
def get_customer(customer_id: str, db: Database = Depends(get_db)):
    return to_str_id(load_or_404(db, "customer", customer_id, "Customer"))


@app.put("/api/admin/customers/{customer_id}")
def edit_customer(customer_id: str, payload: Customer, db: Database = Depends(get_db)):
    return to_str_id(update_customer(db, customer_id, payload))


@app.delete("/api/admin/customers/{customer_id}")
def remove_customer(customer_id: str, db: Database = Depends(get_db)):
    return delete_customer(db, customer_id)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
