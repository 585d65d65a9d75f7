import logging
import os
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database

import catalogue
import invites
import orders
from config import get_settings
from dashboard import dashboard_stats
from database import (
    CATEGORIES,
    MEMBERS,
    PRODUCERS,
    PRODUCTS,
    VARIANTS,
    close_client,
    create_document,
    ensure_indexes,
    get_db,
    get_document,
    get_documents,
    public,
    utcnow,
)
from distributions import DistributionService, distribution_date_keys, distribution_label, next_wednesday
from errors import CoopError, NotFound
from logging_config import configure_logging
from offers import OfferEngine, draft_from_entries, draft_to_entries, refresh_sale_dates
from schemas import (
    Category,
    CheckoutRequest,
    DistributionCreate,
    InviteCreate,
    LoginRequest,
    MemberProfile,
    OfferConfigurationRequest,
    PlanPeriodsRequest,
    Producer,
    Product,
    SignupRequest,
    Variant,
)
from security import get_current_member, member_role, require_admin

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting cooperative ordering API on database %s", settings.database_name)
    # Unique email and token indexes back the signup checks
    ensure_indexes(app.dependency_overrides.get(get_db, get_db)())
    yield
    close_client()


# Fails fast with the list of missing keys
settings = get_settings()

app = FastAPI(title="Cooperative Grocery API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CoopError)
async def coop_error_handler(request: Request, exc: CoopError):
    logger.warning("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Utilities

def distribution_out(dist: Dict[str, Any]) -> Dict[str, Any]:
    out = public(dist)
    out["dateKeys"] = distribution_date_keys(dist)
    out["label"] = distribution_label(dist)
    return out


def require_document(db: Database, collection_name: str, doc_id: str, kind: str) -> Dict[str, Any]:
    doc = get_document(db, collection_name, doc_id)
    if doc is None:
        raise NotFound(kind, doc_id)
    return doc


# Health

@app.get("/")
def root():
    return {"message": "Cooperative Grocery API running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth

@app.post("/auth/signup")
def signup(payload: SignupRequest, db: Database = Depends(get_db)):
    member = invites.redeem_invite(db, payload.token, payload.email, payload.password)
    return invites.session_payload(member)


@app.post("/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    member = invites.authenticate(db, payload.email, payload.password)
    return invites.session_payload(member)


@app.get("/me")
def me(current_member: dict = Depends(get_current_member)):
    out = public(current_member)
    out["role"] = member_role(current_member)
    return out


@app.put("/me")
def update_profile(payload: MemberProfile, current_member: dict = Depends(get_current_member),
                   db: Database = Depends(get_db)):
    update = payload.to_document()
    update["updatedAt"] = utcnow()
    db[MEMBERS].update_one({"_id": current_member["_id"]}, {"$set": update})
    return me(db[MEMBERS].find_one({"_id": current_member["_id"]}))


# Storefront

@app.get("/distributions/open")
def get_open_distribution(db: Database = Depends(get_db)):
    return {"distribution": catalogue.open_sale(db)}


@app.get("/catalogue")
def list_catalogue(category: Optional[str] = None, producer: Optional[str] = None,
                   organic: Optional[str] = Query(None, pattern="^(bio|non-bio)$"),
                   dates: Optional[List[str]] = Query(None), db: Database = Depends(get_db)):
    items = catalogue.available_products(db, category_id=category, producer_id=producer,
                                         organic=organic, date_keys=dates)
    return {"items": items, "total": len(items)}


@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return catalogue.product_detail(db, product_id)


@app.get("/producers/{producer_id}")
def get_producer(producer_id: str, db: Database = Depends(get_db)):
    return catalogue.producer_page(db, producer_id)


@app.get("/categories")
def list_categories(db: Database = Depends(get_db)):
    return {"items": [public(c) for c in sorted(get_documents(db, CATEGORIES), key=lambda c: c.get("name") or "")]}


# Checkout & Orders

@app.post("/checkout")
def checkout(payload: CheckoutRequest, current_member: dict = Depends(get_current_member),
             db: Database = Depends(get_db)):
    order = orders.submit_order(db, current_member["_id"], payload.items)
    return {"order": public(order)}


@app.get("/orders")
def list_my_orders(current_member: dict = Depends(get_current_member), db: Database = Depends(get_db)):
    return {"items": orders.list_member_orders(db, current_member["_id"])}


# Admin: distributions

@app.get("/admin/distributions")
def admin_list_distributions(db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    service = DistributionService(db)
    return {"items": [distribution_out(d) for d in service.list()]}


@app.post("/admin/distributions")
def admin_create_distribution(payload: DistributionCreate, db: Database = Depends(get_db),
                              admin: dict = Depends(require_admin)):
    return distribution_out(DistributionService(db).plan_distribution(payload.first_date))


@app.post("/admin/distributions/plan")
def admin_plan_periods(payload: PlanPeriodsRequest, db: Database = Depends(get_db),
                       admin: dict = Depends(require_admin)):
    created = DistributionService(db).plan_periods(payload.count, payload.start)
    return {"items": [distribution_out(d) for d in created]}


@app.post("/admin/distributions/{distribution_id}/open")
def admin_open_distribution(distribution_id: str, db: Database = Depends(get_db),
                            admin: dict = Depends(require_admin)):
    return distribution_out(DistributionService(db).open_distribution(distribution_id))


@app.post("/admin/distributions/{distribution_id}/close")
def admin_close_distribution(distribution_id: str, db: Database = Depends(get_db),
                             admin: dict = Depends(require_admin)):
    return distribution_out(DistributionService(db).close_distribution(distribution_id))


@app.get("/admin/distributions/{distribution_id}/offers")
def admin_list_offers(distribution_id: str, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    engine = OfferEngine(db)
    dist = engine.distributions.get(distribution_id)
    return {
        "distribution": distribution_out(dist),
        "producerIds": engine.active_producer_ids(distribution_id),
        "items": [public(o) for o in engine.list_offer_items(distribution_id)],
    }


@app.get("/admin/distributions/{distribution_id}/offers/draft")
def admin_offer_draft(distribution_id: str, producer_ids: Optional[List[str]] = Query(None),
                      db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    draft = OfferEngine(db).default_draft(distribution_id, producer_ids)
    return {"offers": draft_to_entries(draft)}


@app.put("/admin/distributions/{distribution_id}/offers")
def admin_save_offers(distribution_id: str, payload: OfferConfigurationRequest,
                      db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    result = OfferEngine(db).save(distribution_id, payload.producer_ids, draft_from_entries(payload.offers))
    return result.model_dump()


@app.post("/admin/distributions/{distribution_id}/offers/rebuild")
def admin_rebuild_offers(distribution_id: str, db: Database = Depends(get_db),
                         admin: dict = Depends(require_admin)):
    return OfferEngine(db).rebuild(distribution_id).model_dump()


# Admin: catalogue

@app.get("/admin/producers")
def admin_list_producers(db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    return {"items": [public(p) for p in sorted(get_documents(db, PRODUCERS), key=lambda p: p.get("name") or "")]}


@app.post("/admin/producers")
def admin_create_producer(payload: Producer, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    return {"id": create_document(db, PRODUCERS, payload.to_document())}


@app.put("/admin/producers/{producer_id}")
def admin_update_producer(producer_id: str, payload: Producer, db: Database = Depends(get_db),
                          admin: dict = Depends(require_admin)):
    require_document(db, PRODUCERS, producer_id, "Producer")
    db[PRODUCERS].update_one({"_id": producer_id}, {"$set": {**payload.to_document(), "updatedAt": utcnow()}})
    return {"id": producer_id, "updated": True}


@app.delete("/admin/producers/{producer_id}")
def admin_delete_producer(producer_id: str, reassign_to: Optional[str] = None, db: Database = Depends(get_db),
                          admin: dict = Depends(require_admin)):
    require_document(db, PRODUCERS, producer_id, "Producer")
    dependent = db[PRODUCTS].count_documents({"producerId": producer_id})
    if dependent and not reassign_to:
        raise CoopError(f"Producer still owns {dependent} products; reassign them first")
    if dependent:
        require_document(db, PRODUCERS, reassign_to, "Producer")
        db[PRODUCTS].update_many({"producerId": producer_id}, {"$set": {"producerId": reassign_to}})
    db[PRODUCERS].delete_one({"_id": producer_id})
    return {"id": producer_id, "deleted": True, "reassigned": dependent}


@app.post("/admin/categories")
def admin_create_category(payload: Category, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    return {"id": create_document(db, CATEGORIES, payload.to_document())}


@app.delete("/admin/categories/{category_id}")
def admin_delete_category(category_id: str, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    require_document(db, CATEGORIES, category_id, "Category")
    db[CATEGORIES].delete_one({"_id": category_id})
    db[PRODUCTS].update_many({"categoryId": category_id}, {"$set": {"categoryId": None}})
    return {"id": category_id, "deleted": True}


@app.get("/admin/products")
def admin_list_products(producer: Optional[str] = None, db: Database = Depends(get_db),
                        admin: dict = Depends(require_admin)):
    filt = {"producerId": producer} if producer else {}
    items = []
    for product in sorted(get_documents(db, PRODUCTS, filt), key=lambda p: p.get("name") or ""):
        out = public(product)
        out["variants"] = [public(v) for v in get_documents(db, VARIANTS, {"productId": product["_id"]})]
        items.append(out)
    return {"items": items}


@app.post("/admin/products")
def admin_create_product(payload: Product, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    require_document(db, PRODUCERS, payload.producer_id, "Producer")
    doc = payload.to_document()
    doc["saleDates"] = []
    return {"id": create_document(db, PRODUCTS, doc)}


@app.put("/admin/products/{product_id}")
def admin_update_product(product_id: str, payload: Dict[str, Any] = Body(...), db: Database = Depends(get_db),
                         admin: dict = Depends(require_admin)):
    require_document(db, PRODUCTS, product_id, "Product")
    # saleDates is derived from the variants
    allowed = {"producerId", "name", "description", "imageUrl", "isOrganic", "categoryId", "tags"}
    update = {k: v for k, v in payload.items() if k in allowed}
    update["updatedAt"] = utcnow()
    db[PRODUCTS].update_one({"_id": product_id}, {"$set": update})
    return {"id": product_id, "updated": True}


@app.delete("/admin/products/{product_id}")
def admin_delete_product(product_id: str, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    require_document(db, PRODUCTS, product_id, "Product")
    db[VARIANTS].delete_many({"productId": product_id})
    db[PRODUCTS].delete_one({"_id": product_id})
    return {"id": product_id, "deleted": True}


@app.post("/admin/products/{product_id}/variants")
def admin_create_variant(product_id: str, payload: Variant, db: Database = Depends(get_db),
                         admin: dict = Depends(require_admin)):
    require_document(db, PRODUCTS, product_id, "Product")
    doc = payload.to_document()
    doc["productId"] = product_id
    variant_id = create_document(db, VARIANTS, doc)
    refresh_sale_dates(db, product_id)
    return {"id": variant_id}


@app.put("/admin/products/{product_id}/variants/{variant_id}")
def admin_update_variant(product_id: str, variant_id: str, payload: Variant, db: Database = Depends(get_db),
                         admin: dict = Depends(require_admin)):
    variant = require_document(db, VARIANTS, variant_id, "Variant")
    if variant.get("productId") != product_id:
        raise NotFound("Variant", variant_id)
    # activeDates is owned by the offer engine unless sent explicitly
    update = payload.to_document(exclude_unset=True)
    update["updatedAt"] = utcnow()
    db[VARIANTS].update_one({"_id": variant_id}, {"$set": update})
    return {"id": variant_id, "updated": True, "saleDates": refresh_sale_dates(db, product_id)}


@app.delete("/admin/products/{product_id}/variants/{variant_id}")
def admin_delete_variant(product_id: str, variant_id: str, db: Database = Depends(get_db),
                         admin: dict = Depends(require_admin)):
    variant = require_document(db, VARIANTS, variant_id, "Variant")
    if variant.get("productId") != product_id:
        raise NotFound("Variant", variant_id)
    db[VARIANTS].delete_one({"_id": variant_id, "productId": product_id})
    return {"id": variant_id, "deleted": True, "saleDates": refresh_sale_dates(db, product_id)}


# Admin: members, invites, orders

@app.get("/admin/members")
def admin_list_members(db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    return {"items": [public(m) for m in sorted(get_documents(db, MEMBERS), key=lambda m: m.get("email") or "")]}


@app.get("/admin/invites")
def admin_list_invites(db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    return {"items": invites.list_invites(db)}


@app.post("/admin/invites")
def admin_create_invite(payload: InviteCreate, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    invite = invites.create_invite(db, payload.email, payload.role, created_by=admin["_id"])
    return public(invite)


@app.get("/admin/orders")
def admin_list_orders(distribution: Optional[str] = None, db: Database = Depends(get_db),
                      admin: dict = Depends(require_admin)):
    return {"items": orders.list_orders(db, distribution)}


@app.get("/admin/dashboard")
def admin_dashboard(db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    return dashboard_stats(db)


# Optional: seed sample catalogue for demo
@app.post("/admin/seed")
def seed_catalogue(db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    if db[PRODUCTS].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    vegetables = create_document(db, CATEGORIES, {"name": "Legumes", "description": "Legumes de saison"})
    dairy = create_document(db, CATEGORIES, {"name": "Cremerie", "description": "Fromages et laitages"})
    farm = create_document(db, PRODUCERS, Producer(name="Ferme des Tilleuls", contact="Claire",
                                                   coop_status="active").to_document())
    goats = create_document(db, PRODUCERS, Producer(name="Chevrerie du Val", contact="Marc",
                                                    coop_status="active").to_document())
    samples = [
        (Product(producer_id=farm, name="Carottes", category_id=vegetables, is_organic=True),
         [Variant(label="1 kg", unit="kg", price=2.4), Variant(label="3 kg", unit="kg", price=6.5)]),
        (Product(producer_id=farm, name="Pommes de terre", category_id=vegetables),
         [Variant(label="2 kg", unit="kg", price=3.2)]),
        (Product(producer_id=goats, name="Crottin de chevre", category_id=dairy, is_organic=True),
         [Variant(label="Piece", unit="piece", price=2.9)]),
    ]
    for product, variants in samples:
        product_id = create_document(db, PRODUCTS, {**product.to_document(), "saleDates": []})
        for variant in variants:
            create_document(db, VARIANTS, {**variant.to_document(), "productId": product_id})
    planned = DistributionService(db).plan_periods(2, next_wednesday(date.today() + timedelta(days=1)))
    return {"seeded": True, "products": len(samples), "distributions": len(planned)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
