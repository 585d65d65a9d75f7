from datetime import datetime
from typing import Any, Dict, Optional

from pymongo.database import Database

from database import DISTRIBUTIONS, MEMBERS, ORDERS, PRODUCERS, PRODUCTS, get_documents
from distributions import (
    FINISHED_STATUSES,
    distribution_label,
    first_date,
    next_distribution,
    pick_open_distribution,
    upcoming_distributions,
)
from orders import CANCELLED


def _summary(dist: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if dist is None:
        return None
    return {"id": dist["_id"], "status": dist.get("status"), "label": distribution_label(dist)}


def dashboard_stats(db: Database, today: Optional[datetime] = None) -> Dict[str, Any]:
    distributions = get_documents(db, DISTRIBUTIONS)
    orders = [o for o in get_documents(db, ORDERS) if o.get("status") != CANCELLED]

    totals_by_distribution: Dict[str, float] = {}
    for order in orders:
        dist_id = order.get("distributionId")
        if not dist_id:
            continue
        amount = float((order.get("totals") or {}).get("totalAmount") or 0)
        totals_by_distribution[dist_id] = totals_by_distribution.get(dist_id, 0.0) + amount

    recent = sorted(
        (d for d in distributions if d.get("status") in FINISHED_STATUSES),
        key=first_date,
        reverse=True,
    )[:3]
    recent_distributions = [
        {"id": d["_id"], "label": distribution_label(d), "total": round(totals_by_distribution.get(d["_id"], 0.0), 2)}
        for d in recent
    ]

    return {
        "members": db[MEMBERS].count_documents({}),
        "products": db[PRODUCTS].count_documents({}),
        "orders": len(orders),
        "producers": db[PRODUCERS].count_documents({}),
        "revenueTotal": round(sum(float((o.get("totals") or {}).get("totalAmount") or 0) for o in orders), 2),
        "revenueRecent": round(sum(d["total"] for d in recent_distributions), 2),
        "recentDistributions": recent_distributions,
        "openDistribution": _summary(pick_open_distribution(distributions)),
        "nextDistribution": _summary(next_distribution(distributions, today)),
        "upcomingDistributions": [distribution_label(d) for d in upcoming_distributions(distributions, today)],
    }
