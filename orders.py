"""
Checkout: turn cart lines into a validated order for the open sale.

The order header and its lines are one document, written with a single
insert, so an order can never be stored with only part of its items.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from cart import Cart
from database import DISTRIBUTIONS, OFFER_ITEMS, ORDERS, get_documents, new_id, public, transaction, utcnow
from distributions import pick_open_distribution
from errors import EmptyCart, NoOpenDistribution, OfferLimitExceeded, OfferUnavailable
from schemas import CartItem, Order, OrderItem, Totals

logger = logging.getLogger(__name__)

VALIDATED = "validated"
CANCELLED = "cancelled"


def order_totals(items) -> Dict[str, Any]:
    return {
        "totalAmount": round(sum(item.unit_price * item.quantity for item in items), 2),
        "itemCount": sum(item.quantity for item in items),
    }


def _match_offers(db: Database, distribution_id: str, items: List[CartItem], session=None
                  ) -> List[Dict[str, Any]]:
    """Return the offer item each cart line buys, in line order.

    A client-sent `offerItemId` is only trusted when that offer is for the
    same product and variant. Any line left without an offer is rejected.
    """
    offers = get_documents(db, OFFER_ITEMS, {"distributionId": distribution_id}, session=session)
    by_id = {o["_id"]: o for o in offers}
    by_line = {(o["productId"], o["variantId"], o.get("saleDateKey")): o for o in offers}
    matched = []
    for item in items:
        offer = by_id.get(item.offer_item_id) if item.offer_item_id else None
        if offer is not None and (offer["productId"], offer["variantId"]) != (item.product_id, item.variant_id):
            offer = None
        if offer is None:
            offer = by_line.get((item.product_id, item.variant_id, item.sale_date_key))
        if offer is None:
            raise OfferUnavailable(item.product_id, item.variant_id, item.sale_date_key)
        matched.append(offer)
    return matched


def _ordered_quantities(db: Database, distribution_id: str, session=None) -> Dict[str, Dict[str, int]]:
    """Quantities already ordered per offer item, overall and per member."""
    totals: Dict[str, Dict[str, int]] = {}
    orders = get_documents(db, ORDERS, {"distributionId": distribution_id, "status": VALIDATED}, session=session)
    for order in orders:
        for line in order.get("items") or []:
            offer_id = line.get("offerItemId")
            if not offer_id:
                continue
            entry = totals.setdefault(offer_id, {})
            entry["__total__"] = entry.get("__total__", 0) + int(line.get("quantity") or 0)
            member = order.get("memberId")
            entry[member] = entry.get(member, 0) + int(line.get("quantity") or 0)
    return totals


def _check_limits(member_id: str, items: List[CartItem], matched: List[Dict[str, Any]],
                  already: Dict[str, Dict[str, int]]):
    requested: Dict[str, int] = {}
    offers: Dict[str, Dict[str, Any]] = {}
    for item, offer in zip(items, matched):
        offers[offer["_id"]] = offer
        requested[offer["_id"]] = requested.get(offer["_id"], 0) + item.quantity

    for offer_id, quantity in requested.items():
        offer = offers[offer_id]
        ordered = already.get(offer_id, {})
        limit_member = int(offer.get("limitPerMember") or 0)
        if limit_member > 0 and ordered.get(member_id, 0) + quantity > limit_member:
            raise OfferLimitExceeded(offer_id, "per member", limit_member, ordered.get(member_id, 0) + quantity)
        limit_total = int(offer.get("limitTotal") or 0)
        if limit_total > 0 and ordered.get("__total__", 0) + quantity > limit_total:
            raise OfferLimitExceeded(offer_id, "total", limit_total, ordered.get("__total__", 0) + quantity)


def submit_order(db: Database, member_id: str, items: List[CartItem]) -> Dict[str, Any]:
    if not items:
        raise EmptyCart()

    with transaction(db) as session:
        open_dist = pick_open_distribution(get_documents(db, DISTRIBUTIONS, session=session))
        if open_dist is None:
            raise NoOpenDistribution()
        distribution_id = open_dist["_id"]

        matched = _match_offers(db, distribution_id, items, session=session)
        _check_limits(member_id, items, matched, _ordered_quantities(db, distribution_id, session=session))

        now = utcnow()
        lines = []
        for item, offer in zip(items, matched):
            # Price and labels come from the offer snapshot, never from the client
            unit_price = float(offer.get("price") or 0)
            lines.append(OrderItem(
                id=new_id(),
                offer_item_id=offer["_id"],
                producer_id=offer["producerId"],
                product_id=offer["productId"],
                variant_id=offer["variantId"],
                quantity=item.quantity,
                unit_price=unit_price,
                line_total=round(unit_price * item.quantity, 2),
                label=offer.get("title") or item.name,
                variant_label=offer.get("variantLabel") or "",
                sale_date_key=offer.get("saleDateKey"),
                sale_date_label=item.sale_date_label,
            ))
        order = Order(
            distribution_id=distribution_id,
            member_id=member_id,
            status=VALIDATED,
            totals=Totals(**order_totals(lines)),
            items=lines,
            created_at=now,
            validated_at=now,
        ).to_document()
        order["_id"] = new_id()
        db[ORDERS].insert_one(order, session=session)

    logger.info("Order %s validated for member %s: %d items, %.2f", order["_id"], member_id,
                order["totals"]["itemCount"], order["totals"]["totalAmount"])
    return order


def checkout(db: Database, member_id: str, cart: Cart) -> Dict[str, Any]:
    """Submit the cart as an order and empty it once the order is stored."""
    order = submit_order(db, member_id, cart.items())
    cart.clear()
    return order


def list_member_orders(db: Database, member_id: str) -> List[Dict[str, Any]]:
    cursor = db[ORDERS].find({"memberId": member_id}).sort("createdAt", DESCENDING)
    return [public(o) for o in cursor]


def list_orders(db: Database, distribution_id: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if distribution_id:
        filt["distributionId"] = distribution_id
    cursor = db[ORDERS].find(filt).sort("createdAt", DESCENDING)
    return [public(o) for o in cursor]
