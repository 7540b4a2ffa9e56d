import math
import re
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId

DEFAULT_PAGE_SIZE = 20
SEARCH_PREVIEW_LIMIT = 6
RANDOM_SAMPLE_SIZE = 20
RELATED_SAMPLE_SIZE = 4

LETTER_SIZES = ["S", "M", "L", "XL"]
NUMBER_SIZES = ["38", "40", "42", "44"]
SNEAKER_SIZES = ["38", "39", "40", "41", "42", "43", "44"]

LETTER_CATEGORIES = {"t-shirts", "hoodies", "jackets", "polos"}
NUMBER_CATEGORIES = {"shorts", "pants", "swim shorts"}
SNEAKER_CATEGORY = "sneakers"


def serialize_doc(value: Any) -> Any:
    """Make a Mongo document JSON friendly, ObjectIds become strings."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize_doc(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    return value


def name_filter(query: Optional[str]) -> Dict[str, Any]:
    """Case-insensitive substring match on the product name."""
    return {"name": {"$regex": re.escape(query or ""), "$options": "i"}}


def paginate(collection, filter_q: Dict[str, Any], page: int, limit: int, sort: Optional[List[Tuple[str, int]]] = None) -> Dict[str, Any]:
    page = max(page, 1)
    if limit < 1:
        limit = DEFAULT_PAGE_SIZE
    total = collection.count_documents(filter_q)
    cursor = collection.find(filter_q)
    if sort:
        cursor = cursor.sort(sort)
    products = [serialize_doc(p) for p in cursor.skip((page - 1) * limit).limit(limit)]
    return {
        "currentPage": page,
        "totalPages": math.ceil(total / limit),
        "productsPerPage": limit,
        "totalProducts": total,
        "products": products,
    }


def sample(collection, size: int, match: Optional[Dict[str, Any]] = None) -> List[dict]:
    pipeline: List[Dict[str, Any]] = []
    if match:
        pipeline.append({"$match": match})
    pipeline.append({"$sample": {"size": size}})
    return [serialize_doc(p) for p in collection.aggregate(pipeline)]


def size_rules(category: Optional[str], name: Optional[str]) -> Dict[str, Any]:
    """Derive hasSize/sizeType/availableSizes from a product's category and name."""
    category = (category or "").strip().lower()
    name = (name or "").lower()
    if category in LETTER_CATEGORIES:
        return {"hasSize": True, "sizeType": "letter", "availableSizes": list(LETTER_SIZES)}
    if category in NUMBER_CATEGORIES:
        return {"hasSize": True, "sizeType": "number", "availableSizes": list(NUMBER_SIZES)}
    if category == SNEAKER_CATEGORY:
        return {"hasSize": True, "sizeType": "number", "availableSizes": list(SNEAKER_SIZES)}
    if category == "accessories" and "boxer" in name:
        return {"hasSize": True, "sizeType": "letter", "availableSizes": list(LETTER_SIZES)}
    return {"hasSize": False, "sizeType": "none", "availableSizes": []}
