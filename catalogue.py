"""Storefront read path: what the open sale offers."""

from typing import Any, Dict, List, Optional, Set

from pymongo.database import Database

from database import CATEGORIES, DISTRIBUTIONS, PRODUCERS, PRODUCTS, VARIANTS, get_document, get_documents, public
from distributions import distribution_date_keys, distribution_dates, pick_open_distribution, sale_date_key
from errors import NotFound
from offers import OfferEngine


def variant_date_keys(variant: Dict[str, Any], product: Dict[str, Any]) -> List[str]:
    """Active date keys of a variant, falling back to the product sale dates."""
    keys = [key for key in (variant.get("activeDates") or []) if isinstance(key, str)]
    if keys:
        return keys
    return [sale_date_key(d) for d in product.get("saleDates") or []]


def product_date_keys(product: Dict[str, Any], variants: List[Dict[str, Any]]) -> List[str]:
    keys: Set[str] = set()
    for variant in variants:
        keys.update(key for key in (variant.get("activeDates") or []) if isinstance(key, str))
    if not keys:
        keys = {sale_date_key(d) for d in product.get("saleDates") or []}
    return sorted(keys)


def _open_context(db: Database):
    open_dist = pick_open_distribution(get_documents(db, DISTRIBUTIONS))
    if open_dist is None:
        return None, [], []
    engine = OfferEngine(db)
    return open_dist, distribution_date_keys(open_dist), engine.active_producer_ids(open_dist["_id"])


def open_sale(db: Database) -> Optional[Dict[str, Any]]:
    open_dist = pick_open_distribution(get_documents(db, DISTRIBUTIONS))
    if open_dist is None:
        return None
    out = public(open_dist)
    out["dateKeys"] = distribution_date_keys(open_dist)
    return out


def available_products(db: Database, category_id: Optional[str] = None, producer_id: Optional[str] = None,
                       organic: Optional[str] = None, date_keys: Optional[List[str]] = None
                       ) -> List[Dict[str, Any]]:
    """Products orderable in the open sale, with price range, dates and limits.

    Returns an empty list when no sale is open.
    """
    open_dist, open_keys, active_producers = _open_context(db)
    if open_dist is None or not open_keys:
        return []
    open_set = set(open_keys)

    products = get_documents(db, PRODUCTS)
    variants_by_product: Dict[str, List[Dict[str, Any]]] = {}
    for variant in get_documents(db, VARIANTS, {"productId": {"$in": [p["_id"] for p in products]}}):
        variants_by_product.setdefault(variant["productId"], []).append(variant)

    limits: Dict[str, Dict[str, Any]] = {}
    for offer in OfferEngine(db).list_offer_items(open_dist["_id"]):
        limit_total = int(offer.get("limitTotal") or 0)
        limit_per_member = int(offer.get("limitPerMember") or 0)
        if limit_total <= 0 and limit_per_member <= 0:
            continue
        value = limit_total if limit_total > 0 else limit_per_member
        entry = limits.setdefault(offer["productId"], {"hasLimit": True, "minLimit": value})
        entry["minLimit"] = min(entry["minLimit"], value)

    results = []
    for product in products:
        if active_producers and product.get("producerId") not in active_producers:
            continue
        variants = variants_by_product.get(product["_id"], [])
        keys = product_date_keys(product, variants)
        if not open_set.intersection(keys):
            continue

        prices = [
            float(v["price"]) for v in variants
            if isinstance(v.get("price"), (int, float))
            and open_set.intersection(variant_date_keys(v, product))
        ]
        entry = public(product)
        entry["dateKeys"] = keys
        entry["priceRange"] = {"min": min(prices), "max": max(prices)} if prices else None
        entry.update(limits.get(product["_id"], {"hasLimit": False, "minLimit": None}))
        results.append(entry)

    if category_id:
        results = [p for p in results if p.get("categoryId") == category_id]
    if producer_id:
        results = [p for p in results if p.get("producerId") == producer_id]
    if organic == "bio":
        results = [p for p in results if p.get("isOrganic")]
    elif organic == "non-bio":
        results = [p for p in results if not p.get("isOrganic")]
    if date_keys:
        wanted = set(date_keys)
        results = [p for p in results if not p["dateKeys"] or wanted.intersection(p["dateKeys"])]
    return sorted(results, key=lambda p: (p.get("name") or "").lower())


def product_detail(db: Database, product_id: str) -> Dict[str, Any]:
    product = get_document(db, PRODUCTS, product_id)
    if product is None:
        raise NotFound("Product", product_id)
    variants = get_documents(db, VARIANTS, {"productId": product_id})
    open_dist, open_keys, _ = _open_context(db)

    open_dates = []
    if open_dist is not None:
        open_dates = [
            {"key": sale_date_key(d), "date": d, "dateIndex": index}
            for index, d in enumerate(distribution_dates(open_dist))
        ]
    active_variants = []
    for variant in variants:
        keys = [key for key in variant_date_keys(variant, product) if key in open_keys]
        if keys:
            out = public(variant)
            out["availableDateKeys"] = keys
            active_variants.append(out)
    available = {key for v in active_variants for key in v["availableDateKeys"]}

    out = public(product)
    out["producer"] = public(get_document(db, PRODUCERS, product.get("producerId") or ""))
    out["category"] = public(get_document(db, CATEGORIES, product.get("categoryId") or ""))
    out["variants"] = [public(v) for v in variants]
    out["activeVariants"] = active_variants
    out["availableDates"] = [entry for entry in open_dates if entry["key"] in available]
    out["openDistributionId"] = open_dist["_id"] if open_dist else None
    return out


def producer_page(db: Database, producer_id: str) -> Dict[str, Any]:
    producer = get_document(db, PRODUCERS, producer_id)
    if producer is None:
        raise NotFound("Producer", producer_id)
    available = {p["id"] for p in available_products(db, producer_id=producer_id)}
    products = []
    for product in sorted(get_documents(db, PRODUCTS, {"producerId": producer_id}),
                          key=lambda p: (p.get("name") or "").lower()):
        entry = public(product)
        entry["availableNow"] = entry["id"] in available
        products.append(entry)
    out = public(producer)
    out["products"] = products
    return out
