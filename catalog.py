"""Read side of the product catalog."""
from typing import Dict, Iterable, Optional

from pymongo.database import Database

from database import to_object_id


def get_product(db: Database, product_id) -> Optional[dict]:
    oid = to_object_id(product_id)
    if oid is None:
        return None
    return db["product"].find_one({"_id": oid})


def get_products(db: Database, product_ids: Iterable) -> Dict[str, dict]:
    """Fetch several products in one query, keyed by their string id."""
    oids = [oid for oid in (to_object_id(pid) for pid in product_ids) if oid is not None]
    if not oids:
        return {}
    return {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": oids}})}
