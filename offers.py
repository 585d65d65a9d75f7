"""
Offer configuration for a distribution.

The `offerItems` and `producers` subcollections of a distribution are a read
model projected from the catalogue: each offer item freezes the product and
variant fields at save time. Saving computes the full target set, then
upserts what changed and deletes what is stale, so repeated saves with the
same draft write nothing and readers never see an emptied subcollection.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel
from pymongo import DeleteOne, ReplaceOne, UpdateOne
from pymongo.database import Database

from database import (
    DISTRIBUTION_PRODUCERS,
    OFFER_ITEMS,
    PRODUCERS,
    PRODUCTS,
    VARIANTS,
    bulk_apply,
    get_documents,
    transaction,
)
from distributions import DistributionService, date_from_key, distribution_date_keys, sale_date_key
from schemas import OfferDraft, OfferDraftEntry

logger = logging.getLogger(__name__)

DraftKey = Tuple[str, str, int]
Draft = Dict[DraftKey, OfferDraft]


class OfferSaveResult(BaseModel):
    distribution_id: str
    offers_written: int = 0
    offers_deleted: int = 0
    offers_total: int = 0
    producers_written: int = 0
    producers_deleted: int = 0
    variants_updated: int = 0
    products_updated: int = 0
    skipped: int = 0


def offer_key(product_id: str, variant_id: str, date_index: int) -> str:
    return f"{product_id}:{variant_id}:{date_index}"


def parse_offer_key(key: str) -> DraftKey:
    product_id, variant_id, date_index = key.rsplit(":", 2)
    return product_id, variant_id, int(date_index)


def offer_item_id(distribution_id: str, product_id: str, variant_id: str, date_index: int) -> str:
    return f"{distribution_id}:{offer_key(product_id, variant_id, date_index)}"


def producer_entry_id(distribution_id: str, producer_id: str) -> str:
    return f"{distribution_id}:{producer_id}"


def draft_from_entries(entries: Iterable[OfferDraftEntry]) -> Draft:
    draft: Draft = {}
    for entry in entries:
        draft[(entry.product_id, entry.variant_id, entry.date_index)] = OfferDraft(
            enabled=entry.enabled,
            limit_per_member=entry.limit_per_member,
            limit_total=entry.limit_total,
        )
    return draft


def draft_to_entries(draft: Draft) -> List[Dict[str, Any]]:
    entries = []
    for (product_id, variant_id, date_index), value in sorted(draft.items()):
        entries.append({
            "productId": product_id,
            "variantId": variant_id,
            "dateIndex": date_index,
            **value.to_document(),
        })
    return entries


def build_offer_items(distribution_id: str, date_keys: List[str], producer_ids: Iterable[str], draft: Draft,
                      products: Iterable[Dict[str, Any]], variants: Iterable[Dict[str, Any]]
                      ) -> Tuple[Dict[str, Dict[str, Any]], int]:
    """Project the enabled draft entries into offer item documents keyed by id.

    Returns the documents and the number of draft entries that could not be
    resolved against the catalogue or the selected producers.
    """
    selected = set(producer_ids)
    product_map = {p["_id"]: p for p in products}
    variant_map = {(v["productId"], v["_id"]): v for v in variants}
    offers: Dict[str, Dict[str, Any]] = {}
    skipped = 0

    for (product_id, variant_id, date_index), entry in draft.items():
        if not entry.enabled:
            continue
        product = product_map.get(product_id)
        variant = variant_map.get((product_id, variant_id))
        if (product is None or variant is None or date_index >= len(date_keys)
                or product.get("producerId") not in selected):
            skipped += 1
            continue
        doc_id = offer_item_id(distribution_id, product_id, variant_id, date_index)
        offers[doc_id] = {
            "_id": doc_id,
            "distributionId": distribution_id,
            "producerId": product["producerId"],
            "productId": product_id,
            "variantId": variant_id,
            "dateIndex": date_index,
            "saleDateKey": date_keys[date_index],
            "limitPerMember": entry.limit_per_member,
            "limitTotal": entry.limit_total,
            "price": float(variant.get("price") or 0),
            "title": product.get("name"),
            "variantLabel": variant.get("label"),
            "imageUrl": product.get("imageUrl"),
            "isOrganic": bool(product.get("isOrganic")),
            "categoryId": product.get("categoryId"),
        }
    return offers, skipped


def build_active_dates(date_keys: List[str], producer_ids: Iterable[str], draft: Draft,
                       products: Iterable[Dict[str, Any]], variants: Iterable[Dict[str, Any]]
                       ) -> Tuple[Dict[str, List[str]], Dict[str, List[str]]]:
    """Compute new `activeDates` per variant and `saleDates` keys per product.

    Only this distribution's date keys are rewritten; keys that belong to other
    distributions stay on the variant. Products of unselected producers lose
    this distribution's keys. Products without variants are left alone.
    """
    selected = set(producer_ids)
    own_keys = set(date_keys)
    variants_by_product: Dict[str, List[Dict[str, Any]]] = {}
    for variant in variants:
        variants_by_product.setdefault(variant["productId"], []).append(variant)

    variant_dates: Dict[str, List[str]] = {}
    product_dates: Dict[str, List[str]] = {}
    for product in products:
        product_variants = variants_by_product.get(product["_id"], [])
        if not product_variants:
            continue
        is_selected = product.get("producerId") in selected
        union: Set[str] = set()
        for variant in product_variants:
            kept = {key for key in (variant.get("activeDates") or []) if key not in own_keys}
            if is_selected:
                for index, key in enumerate(date_keys):
                    entry = draft.get((product["_id"], variant["_id"], index))
                    if entry is not None and entry.enabled:
                        kept.add(key)
            variant_dates[variant["_id"]] = sorted(kept)
            union |= kept
        product_dates[product["_id"]] = sorted(union)
    return variant_dates, product_dates


def refresh_sale_dates(db: Database, product_id: str) -> List[str]:
    """Recompute a product's `saleDates` from its variants after a catalogue edit."""
    keys: Set[str] = set()
    for variant in get_documents(db, VARIANTS, {"productId": product_id}):
        keys.update(variant.get("activeDates") or [])
    ordered = sorted(keys)
    db[PRODUCTS].update_one({"_id": product_id}, {"$set": {"saleDates": [date_from_key(k) for k in ordered]}})
    return ordered


class OfferEngine:
    def __init__(self, db: Database):
        self.db = db
        self.distributions = DistributionService(db)

    def _catalogue(self) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        products = get_documents(self.db, PRODUCTS)
        variants = get_documents(self.db, VARIANTS, {"productId": {"$in": [p["_id"] for p in products]}})
        return products, variants

    def list_offer_items(self, distribution_id: str) -> List[Dict[str, Any]]:
        items = get_documents(self.db, OFFER_ITEMS, {"distributionId": distribution_id})
        return sorted(items, key=lambda o: (o.get("producerId") or "", o.get("title") or "",
                                            o.get("variantLabel") or "", o.get("dateIndex", 0)))

    def active_producer_ids(self, distribution_id: str) -> List[str]:
        docs = get_documents(self.db, DISTRIBUTION_PRODUCERS, {"distributionId": distribution_id})
        return sorted(str(d.get("producerId")) for d in docs if d.get("active") is not False)

    def default_draft(self, distribution_id: str, producer_ids: Optional[Iterable[str]] = None) -> Draft:
        """Initial wizard state for a distribution.

        A (variant, date) starts enabled when the variant lists that date key,
        or when the variant has no active dates at all. Limits come from the
        current offer items when they exist.
        """
        dist = self.distributions.get(distribution_id)
        date_keys = distribution_date_keys(dist)
        if producer_ids is None:
            producer_ids = [p["_id"] for p in get_documents(self.db, PRODUCERS)]
        selected = set(producer_ids)
        existing = {o["_id"]: o for o in get_documents(self.db, OFFER_ITEMS, {"distributionId": distribution_id})}
        products, variants = self._catalogue()
        product_map = {p["_id"]: p for p in products if p.get("producerId") in selected}

        draft: Draft = {}
        for variant in variants:
            product_id = variant["productId"]
            if product_id not in product_map:
                continue
            active = variant.get("activeDates") or []
            for index, key in enumerate(date_keys):
                current = existing.get(offer_item_id(distribution_id, product_id, variant["_id"], index))
                draft[(product_id, variant["_id"], index)] = OfferDraft(
                    enabled=key in active if active else True,
                    limit_per_member=int((current or {}).get("limitPerMember") or 0),
                    limit_total=int((current or {}).get("limitTotal") or 0),
                )
        return draft

    def save(self, distribution_id: str, producer_ids: Iterable[str], draft: Draft) -> OfferSaveResult:
        dist = self.distributions.get(distribution_id)
        date_keys = distribution_date_keys(dist)
        producer_ids = sorted(set(producer_ids))
        products, variants = self._catalogue()

        offers, skipped = build_offer_items(distribution_id, date_keys, producer_ids, draft, products, variants)
        producer_docs = {
            producer_entry_id(distribution_id, pid): {
                "_id": producer_entry_id(distribution_id, pid),
                "distributionId": distribution_id,
                "producerId": pid,
                "active": True,
            }
            for pid in producer_ids
        }
        variant_dates, product_dates = build_active_dates(date_keys, producer_ids, draft, products, variants)
        result = OfferSaveResult(distribution_id=distribution_id, skipped=skipped, offers_total=len(offers))

        with transaction(self.db) as session:
            result.producers_written, result.producers_deleted = self._sync(
                DISTRIBUTION_PRODUCERS, distribution_id, producer_docs, session)
            result.offers_written, result.offers_deleted = self._sync(
                OFFER_ITEMS, distribution_id, offers, session)

            variant_ops = [
                UpdateOne({"_id": v["_id"]}, {"$set": {"activeDates": variant_dates[v["_id"]]}})
                for v in variants
                if v["_id"] in variant_dates and sorted(v.get("activeDates") or []) != variant_dates[v["_id"]]
            ]
            result.variants_updated = bulk_apply(self.db, VARIANTS, variant_ops, session=session)

            product_ops = []
            for product in products:
                keys = product_dates.get(product["_id"])
                if keys is None:
                    continue
                current = sorted({sale_date_key(d) for d in product.get("saleDates") or []})
                if current != keys:
                    product_ops.append(UpdateOne(
                        {"_id": product["_id"]},
                        {"$set": {"saleDates": [date_from_key(key) for key in keys]}},
                    ))
            result.products_updated = bulk_apply(self.db, PRODUCTS, product_ops, session=session)

        logger.info(
            "Saved offers for distribution %s: %d offers (%d written, %d deleted), %d producers, %d skipped",
            distribution_id, result.offers_total, result.offers_written, result.offers_deleted,
            len(producer_docs), skipped,
        )
        return result

    def _sync(self, collection_name: str, distribution_id: str, desired: Dict[str, Dict[str, Any]],
              session) -> Tuple[int, int]:
        existing = {
            doc["_id"]: doc
            for doc in get_documents(self.db, collection_name, {"distributionId": distribution_id}, session=session)
        }
        upserts = [
            ReplaceOne({"_id": doc_id}, doc, upsert=True)
            for doc_id, doc in desired.items()
            if existing.get(doc_id) != doc
        ]
        deletes = [DeleteOne({"_id": doc_id}) for doc_id in existing if doc_id not in desired]
        # Upserts go first so the subcollection is never empty mid-save
        bulk_apply(self.db, collection_name, upserts + deletes, session=session)
        return len(upserts), len(deletes)

    def rebuild(self, distribution_id: str) -> OfferSaveResult:
        """Refresh every offer snapshot from the current catalogue.

        The enabled set and limits are taken from the existing offer items and
        the producer selection from the distribution's producers. Offers whose
        variant no longer exists are dropped.
        """
        draft: Draft = {}
        for offer in get_documents(self.db, OFFER_ITEMS, {"distributionId": distribution_id}):
            draft[(offer["productId"], offer["variantId"], int(offer["dateIndex"]))] = OfferDraft(
                enabled=True,
                limit_per_member=int(offer.get("limitPerMember") or 0),
                limit_total=int(offer.get("limitTotal") or 0),
            )
        return self.save(distribution_id, self.active_producer_ids(distribution_id), draft)
