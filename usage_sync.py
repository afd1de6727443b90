"""
Usage tracking synchronization

Brand and PumpType documents carry denormalized lists of the products that
reference them:

- brand.product_usage / brand.product_line_usage   (product line id -> names)
- pumptype.product_usage / pumptype.sub_pump_type_usage (sub pump type id -> names)

Product writes do not maintain these fields. They are a cache rebuilt from the
product collection by the functions below, which are safe to re-run at any
time. Each parent document is recomputed and written on its own; a failure
stops the loop and leaves already-written parents updated.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, NamedTuple, Tuple

from pymongo.database import Database

logger = logging.getLogger(__name__)


class UsageTarget(NamedTuple):
    collection: str
    label_field: str      # display name used in log lines
    product_ref: str      # product field pointing at the parent
    sub_list: str         # embedded sub-document array on the parent
    sub_ref: str          # product field holding the sub-document id
    sub_usage: str        # parent field holding the id -> names map
    noun: str


PUMP_TYPES = UsageTarget(
    collection="pumptype",
    label_field="pump_type",
    product_ref="pump_type",
    sub_list="sub_pump_types",
    sub_ref="sub_pump_type",
    sub_usage="sub_pump_type_usage",
    noun="pump types",
)

BRANDS = UsageTarget(
    collection="brand",
    label_field="name",
    product_ref="brand",
    sub_list="product_lines",
    sub_ref="product_line_id",
    sub_usage="product_line_usage",
    noun="brands",
)


def build_usage(
    products: Iterable[dict], sub_ids: Iterable[str], sub_ref: str
) -> Tuple[List[str], Dict[str, List[str]]]:
    """Compute (product_usage, sub_usage) for one parent.

    Every declared sub id gets a key, even with no products. A product pointing
    at an id the parent does not declare still gets an entry under that id.
    """
    product_usage: List[str] = []
    sub_usage: Dict[str, List[str]] = {str(sid): [] for sid in sub_ids}
    for product in products:
        name = product.get("name")
        product_usage.append(name)
        ref = product.get(sub_ref)
        if ref:
            sub_usage.setdefault(str(ref), []).append(name)
    return product_usage, sub_usage


def compute_usage(db: Database, target: UsageTarget, parent: dict) -> Tuple[List[str], Dict[str, List[str]]]:
    """Query the products referencing `parent` and build its usage fields."""
    products = db["product"].find(
        {target.product_ref: parent["_id"]},
        {"name": 1, target.sub_ref: 1},
    ).sort("_id", 1)
    sub_ids = [sub.get("_id") for sub in parent.get(target.sub_list) or [] if sub.get("_id") is not None]
    return build_usage(products, sub_ids, target.sub_ref)


def _sync(db: Database, target: UsageTarget) -> int:
    parents = db[target.collection].find(
        {}, {target.label_field: 1, target.sub_list: 1}
    ).sort("_id", 1)
    logger.info("Starting usage sync for %s", target.noun)

    count = 0
    for parent in parents:
        product_usage, sub_usage = compute_usage(db, target, parent)
        db[target.collection].update_one(
            {"_id": parent["_id"]},
            {
                "$set": {
                    "product_usage": product_usage,
                    target.sub_usage: sub_usage,
                    "updated_at": datetime.now(timezone.utc),
                }
            },
        )
        count += 1
        logger.info(
            'Synced %s "%s": %d products',
            target.collection,
            parent.get(target.label_field),
            len(product_usage),
        )
    return count


def sync_pump_type_usage(db: Database) -> dict:
    """Rebuild product_usage and sub_pump_type_usage on every pump type."""
    try:
        count = _sync(db, PUMP_TYPES)
    except Exception:
        logger.exception("Error syncing pump type usage")
        raise
    logger.info("Pump type usage sync completed")
    return {"success": True, "message": f"Usage sync completed for {count} pump types"}


def sync_brand_usage(db: Database) -> dict:
    """Rebuild product_usage and product_line_usage on every brand."""
    try:
        count = _sync(db, BRANDS)
    except Exception:
        logger.exception("Error syncing brand usage")
        raise
    logger.info("Brand usage sync completed")
    return {"success": True, "message": f"Brand usage sync completed for {count} brands"}


def sync_all_usage(db: Database) -> dict:
    """Pump types first, then brands. Any failure propagates to the caller."""
    logger.info("Starting full usage tracking synchronization")
    pump_type_result = sync_pump_type_usage(db)
    brand_result = sync_brand_usage(db)
    return {
        "success": True,
        "message": (
            "All usage tracking synchronized successfully. "
            f"{pump_type_result['message']}. {brand_result['message']}."
        ),
    }
