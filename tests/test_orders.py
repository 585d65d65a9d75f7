"""
Tests for checkout: order building, open-sale resolution, limits and
clearing the cart.
"""

import pytest

from cart import Cart, LocalStorage
from conftest import NOW
from database import ORDERS
from distributions import DistributionService
from errors import EmptyCart, NoOpenDistribution, OfferLimitExceeded, OfferUnavailable
from offers import OfferEngine, offer_item_id
from orders import CANCELLED, VALIDATED, checkout, list_member_orders, list_orders, order_totals, submit_order
from schemas import CartItem, OfferDraft


def _line(c, product="carrots", variant="carrots_1kg", key="2024-03-06", quantity=1, price=2.5):
    return CartItem(
        product_id=c[product],
        variant_id=c[variant],
        name=product,
        variant_label=variant,
        unit_price=price,
        quantity=quantity,
        producer_id=c["farm"] if product != "cheese" else c["dairy"],
        sale_date_key=key,
    )


@pytest.fixture
def open_sale(db, catalogue, planned):
    c = catalogue
    OfferEngine(db).save(planned["_id"], [c["farm"], c["dairy"]], {
        (c["carrots"], c["carrots_1kg"], 0): OfferDraft(enabled=True, limit_per_member=3),
        (c["potatoes"], c["potatoes_2kg"], 0): OfferDraft(enabled=True, limit_total=4),
        (c["cheese"], c["cheese_piece"], 1): OfferDraft(enabled=True),
    })
    return DistributionService(db).open_distribution(planned["_id"], now=NOW)


class TestTotals:
    def test_totals_sum_lines(self, catalogue):
        items = [_line(catalogue, quantity=2, price=2.5), _line(catalogue, product="cheese",
                                                                 variant="cheese_piece", quantity=1, price=8.0)]
        assert order_totals(items) == {"totalAmount": 13.0, "itemCount": 3}


class TestSubmitOrder:
    def test_order_is_validated_for_the_open_sale(self, db, catalogue, open_sale, member):
        order = submit_order(db, member["_id"], [_line(catalogue, quantity=2)])

        stored = db[ORDERS].find_one({"_id": order["_id"]})
        assert stored["status"] == VALIDATED
        assert stored["distributionId"] == open_sale["_id"]
        assert stored["memberId"] == member["_id"]
        assert stored["totals"] == {"totalAmount": 5.0, "itemCount": 2}
        assert stored["validatedAt"] is not None
        line = stored["items"][0]
        assert line["lineTotal"] == 5.0
        assert line["saleDateKey"] == "2024-03-06"
        assert line["offerItemId"] == offer_item_id(open_sale["_id"], catalogue["carrots"],
                                                    catalogue["carrots_1kg"], 0)

    def test_all_lines_stored_in_one_document(self, db, catalogue, open_sale, member):
        items = [
            _line(catalogue),
            _line(catalogue, product="potatoes", variant="potatoes_2kg", price=3.2),
            _line(catalogue, product="cheese", variant="cheese_piece", key="2024-03-20", price=8.0),
        ]
        submit_order(db, member["_id"], items)

        assert db[ORDERS].count_documents({}) == 1
        assert len(db[ORDERS].find_one()["items"]) == 3

    def test_no_open_sale_is_rejected(self, db, catalogue, planned, member):
        with pytest.raises(NoOpenDistribution):
            submit_order(db, member["_id"], [_line(catalogue)])
        assert db[ORDERS].count_documents({}) == 0

    def test_empty_cart_is_rejected(self, db, member):
        with pytest.raises(EmptyCart):
            submit_order(db, member["_id"], [])

    def test_per_member_limit(self, db, catalogue, open_sale, member):
        submit_order(db, member["_id"], [_line(catalogue, quantity=2)])

        with pytest.raises(OfferLimitExceeded) as exc:
            submit_order(db, member["_id"], [_line(catalogue, quantity=2)])
        assert exc.value.limit == 3
        assert exc.value.requested == 4
        assert db[ORDERS].count_documents({}) == 1

    def test_total_limit_across_members(self, db, catalogue, open_sale, member, admin):
        potatoes = dict(product="potatoes", variant="potatoes_2kg", price=3.2)
        submit_order(db, member["_id"], [_line(catalogue, quantity=3, **potatoes)])

        with pytest.raises(OfferLimitExceeded) as exc:
            submit_order(db, admin["_id"], [_line(catalogue, quantity=2, **potatoes)])
        assert exc.value.limit_kind == "total"

    def test_cancelled_orders_do_not_count_towards_limits(self, db, catalogue, open_sale, member):
        first = submit_order(db, member["_id"], [_line(catalogue, quantity=3)])
        db[ORDERS].update_one({"_id": first["_id"]}, {"$set": {"status": CANCELLED}})

        submit_order(db, member["_id"], [_line(catalogue, quantity=3)])

    def test_line_without_offer_is_rejected(self, db, catalogue, open_sale, member):
        with pytest.raises(OfferUnavailable):
            submit_order(db, member["_id"], [_line(catalogue, product="carrots", variant="carrots_3kg",
                                                   price=6.0)])
        assert db[ORDERS].count_documents({}) == 0

    def test_unknown_date_cannot_dodge_limits(self, db, catalogue, open_sale, member):
        items = [
            _line(catalogue, quantity=3),
            _line(catalogue, product="cheese", variant="cheese_piece", key="1999-01-01", quantity=5, price=0.0),
        ]

        with pytest.raises(OfferUnavailable) as exc:
            submit_order(db, member["_id"], items)
        assert exc.value.sale_date_key == "1999-01-01"
        assert exc.value.status_code == 409
        assert db[ORDERS].count_documents({}) == 0

    def test_offer_id_of_another_product_is_ignored(self, db, catalogue, open_sale, member):
        cheese_offer = offer_item_id(open_sale["_id"], catalogue["cheese"], catalogue["cheese_piece"], 1)
        line = _line(catalogue, product="carrots", variant="carrots_3kg").model_copy(
            update={"offer_item_id": cheese_offer})

        with pytest.raises(OfferUnavailable):
            submit_order(db, member["_id"], [line])

    def test_price_and_labels_come_from_the_offer(self, db, catalogue, open_sale, member):
        line = _line(catalogue, quantity=2, price=0.01).model_copy(
            update={"name": "Free carrots", "variant_label": "10 kg"})

        order = submit_order(db, member["_id"], [line])

        stored = db[ORDERS].find_one({"_id": order["_id"]})
        assert stored["items"][0]["unitPrice"] == 2.5
        assert stored["items"][0]["lineTotal"] == 5.0
        assert stored["items"][0]["label"] == "Carottes"
        assert stored["items"][0]["variantLabel"] == "1 kg"
        assert stored["totals"] == {"totalAmount": 5.0, "itemCount": 2}


class TestCheckout:
    def test_checkout_clears_cart(self, db, catalogue, open_sale, member):
        cart = Cart(LocalStorage(), member["_id"])
        cart.add(_line(catalogue, quantity=2))

        order = checkout(db, member["_id"], cart)

        assert order["totals"]["itemCount"] == 2
        assert cart.items() == []

    def test_failed_checkout_keeps_cart(self, db, catalogue, planned, member):
        cart = Cart(LocalStorage(), member["_id"])
        cart.add(_line(catalogue))

        with pytest.raises(NoOpenDistribution):
            checkout(db, member["_id"], cart)
        assert len(cart.items()) == 1


class TestListing:
    def test_member_history_and_admin_listing(self, db, catalogue, open_sale, member, admin):
        submit_order(db, member["_id"], [_line(catalogue)])
        submit_order(db, admin["_id"], [_line(catalogue, product="cheese", variant="cheese_piece",
                                              key="2024-03-20", price=8.0)])

        mine = list_member_orders(db, member["_id"])
        assert len(mine) == 1
        assert "id" in mine[0] and "_id" not in mine[0]
        assert len(list_orders(db)) == 2
        assert len(list_orders(db, open_sale["_id"])) == 2
        assert list_orders(db, "other") == []
