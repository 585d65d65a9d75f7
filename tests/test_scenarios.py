"""
End-to-end scenarios across distributions, offers, catalogue, cart and signup.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from cart import Cart, LocalStorage
from catalogue import available_products
from database import DISTRIBUTIONS, OFFER_ITEMS, ORDERS, PRODUCERS, PRODUCTS, VARIANTS, create_document
from distributions import DistributionService, build_distribution_dates, sale_date_key
from errors import InviteInvalid
from invites import create_invite, redeem_invite
from offers import OfferEngine, offer_item_id
from orders import checkout
from schemas import CartItem, OfferDraft


def test_catalogue_only_shows_products_of_the_open_distribution(db):
    dates = {
        "finished": build_distribution_dates(date(2024, 1, 3), "UTC"),
        "open": build_distribution_dates(date(2024, 2, 14), "UTC"),
        "planned": build_distribution_dates(date(2024, 3, 27), "UTC"),
    }
    for status, values in dates.items():
        db[DISTRIBUTIONS].insert_one({"_id": status, "status": status, "dates": values})
    farm = create_document(db, PRODUCERS, {"name": "Ferme"})
    for name, status, index in (("Old", "finished", 2), ("Now", "open", 1), ("Later", "planned", 0)):
        product_id = create_document(db, PRODUCTS, {
            "producerId": farm, "name": name, "saleDates": [dates[status][index]],
        })
        create_document(db, VARIANTS, {"productId": product_id, "label": "u", "price": 1.0, "activeDates": []})

    assert [p["name"] for p in available_products(db)] == ["Now"]


def test_disabling_a_date_removes_offer_and_dates(db):
    farm = create_document(db, PRODUCERS, {"name": "Ferme"})
    product = create_document(db, PRODUCTS, {"producerId": farm, "name": "Oeufs", "saleDates": []})
    dist = DistributionService(db).plan_distribution(date(2024, 3, 6))
    d1, d2, _ = [sale_date_key(d) for d in dist["dates"]]
    single = create_document(db, VARIANTS, {"productId": product, "label": "x6", "price": 2.0,
                                            "activeDates": [d1]})
    double = create_document(db, VARIANTS, {"productId": product, "label": "x12", "price": 3.8,
                                            "activeDates": [d1, d2]})
    engine = OfferEngine(db)
    engine.save(dist["_id"], [farm], {
        (product, single, 0): OfferDraft(enabled=True),
        (product, double, 0): OfferDraft(enabled=True),
        (product, double, 1): OfferDraft(enabled=True),
    })

    engine.save(dist["_id"], [farm], {
        (product, single, 0): OfferDraft(enabled=True),
        (product, double, 0): OfferDraft(enabled=True),
        (product, double, 1): OfferDraft(enabled=False),
    })

    assert db[OFFER_ITEMS].find_one({"_id": offer_item_id(dist["_id"], product, double, 1)}) is None
    assert db[OFFER_ITEMS].count_documents({"distributionId": dist["_id"]}) == 2
    assert db[VARIANTS].find_one({"_id": double})["activeDates"] == [d1]
    assert [sale_date_key(d) for d in db[PRODUCTS].find_one({"_id": product})["saleDates"]] == [d1]


def test_checkout_two_lines_three_units(db, catalogue, planned, member):
    c = catalogue
    OfferEngine(db).save(planned["_id"], [c["farm"], c["dairy"]], {
        (c["carrots"], c["carrots_1kg"], 0): OfferDraft(enabled=True),
        (c["cheese"], c["cheese_piece"], 1): OfferDraft(enabled=True),
    })
    DistributionService(db).open_distribution(planned["_id"], now=datetime(2024, 3, 1, tzinfo=timezone.utc))
    cart = Cart(LocalStorage(), member["_id"])
    cart.add(CartItem(product_id=c["carrots"], variant_id=c["carrots_1kg"], name="Carottes", unit_price=2.5,
                      quantity=2, producer_id=c["farm"], sale_date_key="2024-03-06"))
    cart.add(CartItem(product_id=c["cheese"], variant_id=c["cheese_piece"], name="Tomme", unit_price=8.0,
                      quantity=1, producer_id=c["dairy"], sale_date_key="2024-03-20"))

    order = checkout(db, member["_id"], cart)

    assert db[ORDERS].count_documents({}) == 1
    stored = db[ORDERS].find_one({"_id": order["_id"]})
    assert stored["totals"] == {"totalAmount": 13.0, "itemCount": 3}
    assert len(stored["items"]) == 2
    assert cart.items() == []


def test_used_invite_rejected_even_with_matching_email(db):
    invite = create_invite(db, "bob@coop.test")
    redeem_invite(db, invite["token"], "bob@coop.test", "secret123")
    db.members.delete_many({})

    with pytest.raises(InviteInvalid):
        redeem_invite(db, invite["token"], "bob@coop.test", "secret123")


def test_opening_never_leaves_two_open(db):
    service = DistributionService(db)
    created = service.plan_periods(4, date(2024, 1, 3))
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    for offset, dist in enumerate(created):
        service.open_distribution(dist["_id"], now=now + timedelta(days=offset))
        open_ids = [d["_id"] for d in db[DISTRIBUTIONS].find({"status": "open"})]
        assert open_ids == [dist["_id"]]
