"""
Distribution lifecycle: open-sale selection, sale date keys and the
planned -> open -> finished state machine.

`DistributionService` is the only code allowed to change a distribution
status. Opening a distribution finishes any other open one in the same
ordered write so at most one sale is open.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from pymongo import UpdateMany, UpdateOne
from pymongo.database import Database

from config import get_settings
from database import DISTRIBUTIONS, bulk_apply, get_document, get_documents, new_id, transaction, utcnow
from errors import InvalidTransition, NotFound
from schemas import Distribution

logger = logging.getLogger(__name__)

PLANNED = "planned"
OPEN = "open"
FINISHED = "finished"
LEGACY_CLOSED = "closed"

# Case-sensitive; older documents were written with French labels
OPEN_STATUSES = frozenset({"open", "ouverte", "ouvertes"})
FINISHED_STATUSES = frozenset({FINISHED, LEGACY_CLOSED})

DATES_PER_DISTRIBUTION = 3
DAYS_BETWEEN_DATES = 14
DAYS_BETWEEN_PERIODS = DAYS_BETWEEN_DATES * DATES_PER_DISTRIBUTION
PICKUP_TIME = time(18, 0)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# Dates

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes come back naive (UTC) from the driver."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def sale_date_key(value: datetime) -> str:
    return as_utc(value).date().isoformat()


def date_from_key(key: str) -> datetime:
    return datetime.combine(date.fromisoformat(key), time(12, 0), tzinfo=timezone.utc)


def distribution_dates(dist: Dict[str, Any]) -> List[datetime]:
    return [as_utc(d) for d in (dist.get("dates") or [])[:DATES_PER_DISTRIBUTION] if d is not None]


def distribution_date_keys(dist: Optional[Dict[str, Any]]) -> List[str]:
    if not dist:
        return []
    return [sale_date_key(d) for d in distribution_dates(dist)]


def first_date(dist: Dict[str, Any]) -> datetime:
    dates = distribution_dates(dist)
    return dates[0] if dates else EPOCH


def distribution_label(dist: Optional[Dict[str, Any]]) -> str:
    if not dist:
        return "-"
    dates = distribution_dates(dist)
    if not dates:
        return str(dist.get("_id", dist.get("id", "-")))
    return " · ".join(d.strftime("%d/%m") for d in dates)


def build_distribution_dates(first_day: date, tz_name: Optional[str] = None) -> List[datetime]:
    tz = ZoneInfo(tz_name or get_settings().timezone)
    dates = []
    for index in range(DATES_PER_DISTRIBUTION):
        day = first_day + timedelta(days=index * DAYS_BETWEEN_DATES)
        dates.append(datetime.combine(day, PICKUP_TIME, tzinfo=tz).astimezone(timezone.utc))
    return dates


def next_wednesday(base: date) -> date:
    diff = (2 - base.weekday()) % 7 or 7
    return base + timedelta(days=diff)


# Selection

def is_open_status(status: Optional[str]) -> bool:
    return str(status if status is not None else "") in OPEN_STATUSES


def _opened_sort_key(dist: Dict[str, Any]):
    opened = as_utc(dist.get("openedAt")) or first_date(dist)
    return opened, str(dist.get("_id", dist.get("id", "")))


def pick_open_distribution(items: Iterable[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return the open distribution, the most recently opened one if several claim it."""
    open_items = [item for item in items if is_open_status(item.get("status"))]
    if not open_items:
        return None
    return max(open_items, key=_opened_sort_key)


def next_distribution(items: Iterable[Dict[str, Any]], today: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    today = as_utc(today) or utcnow()
    candidates = sorted(
        (item for item in items if not is_open_status(item.get("status"))),
        key=first_date,
    )
    for item in candidates:
        if first_date(item) >= today:
            return item
    return candidates[0] if candidates else None


def upcoming_distributions(items: Iterable[Dict[str, Any]], today: Optional[datetime] = None,
                           limit: int = 3) -> List[Dict[str, Any]]:
    today = as_utc(today) or utcnow()
    future = [item for item in items if distribution_dates(item) and first_date(item) > today]
    return sorted(future, key=first_date)[:limit]


# State machine

class DistributionService:
    def __init__(self, db: Database):
        self.db = db

    def list(self) -> List[Dict[str, Any]]:
        return sorted(get_documents(self.db, DISTRIBUTIONS), key=first_date)

    def get(self, distribution_id: str, session=None) -> Dict[str, Any]:
        dist = get_document(self.db, DISTRIBUTIONS, distribution_id, session=session)
        if dist is None:
            raise NotFound("Distribution", distribution_id)
        return dist

    def get_open(self) -> Optional[Dict[str, Any]]:
        return pick_open_distribution(get_documents(self.db, DISTRIBUTIONS))

    def plan_distribution(self, first_day: date) -> Dict[str, Any]:
        doc = Distribution(status=PLANNED, dates=build_distribution_dates(first_day)).to_document()
        doc["_id"] = new_id()
        doc["createdAt"] = utcnow()
        self.db[DISTRIBUTIONS].insert_one(doc)
        logger.info("Planned distribution %s starting %s", doc["_id"], first_day.isoformat())
        return doc

    def plan_periods(self, count: int, start: Optional[date] = None) -> List[Dict[str, Any]]:
        start = start or next_wednesday(utcnow().date())
        return [
            self.plan_distribution(start + timedelta(days=index * DAYS_BETWEEN_PERIODS))
            for index in range(count)
        ]

    def open_distribution(self, distribution_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        with transaction(self.db) as session:
            dist = self.get(distribution_id, session=session)
            if dist.get("status") != PLANNED:
                raise InvalidTransition(distribution_id, dist.get("status"), OPEN)
            ops = [
                UpdateMany(
                    {"_id": {"$ne": distribution_id}, "status": {"$in": sorted(OPEN_STATUSES)}},
                    {"$set": {"status": FINISHED, "closedAt": now}},
                ),
                UpdateOne(
                    {"_id": distribution_id, "status": PLANNED},
                    {"$set": {"status": OPEN, "openedAt": now}},
                ),
            ]
            bulk_apply(self.db, DISTRIBUTIONS, ops, session=session)
            opened = self.get(distribution_id, session=session)
        logger.info("Opened distribution %s (%s)", distribution_id, distribution_label(opened))
        return opened

    def close_distribution(self, distribution_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        dist = self.get(distribution_id)
        status = dist.get("status")
        if status in FINISHED_STATUSES:
            raise InvalidTransition(distribution_id, status, FINISHED)
        result = self.db[DISTRIBUTIONS].update_one(
            {"_id": distribution_id, "status": status},
            {"$set": {"status": FINISHED, "closedAt": now}},
        )
        if result.modified_count == 0:
            # Someone changed the status between the read and the write
            current = self.get(distribution_id).get("status")
            raise InvalidTransition(distribution_id, current, FINISHED)
        logger.info("Closed distribution %s", distribution_id)
        return self.get(distribution_id)
