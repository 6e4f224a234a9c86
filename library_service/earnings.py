"""
Earnings reports over borrow and purchase records.

Read-only. Borrow earnings are the settled total_borrow_price of borrows
started inside the window; purchase earnings are the amounts of
successful transactions made inside it. Windows are calendar aligned:
ISO week (Monday first), calendar month, calendar year.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, NamedTuple, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import func, select

from .borrowing import round2
from .clock import SystemClock
from .db import session_scope
from .errors import UserNotFound, ValidationError
from .models import Book, Borrow, Category, Transaction, User

logger = logging.getLogger(__name__)

TIMEFRAMES = ("week", "month", "year")
UNCATEGORIZED = "Uncategorized"
TOP_BOOKS = 5
ZERO = Decimal("0.00")


class Window(NamedTuple):
    start: datetime
    end: datetime  # exclusive

    def contains(self, when: datetime) -> bool:
        return self.start <= when < self.end


class EarningEntry(NamedTuple):
    when: datetime
    amount: Decimal
    book_id: int
    title: str
    category: Optional[str]
    source: str  # "borrow" or "purchase"


def _midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day)


def validate_timeframe(timeframe: str) -> str:
    timeframe = (timeframe or "").strip().lower()
    if timeframe not in TIMEFRAMES:
        raise ValidationError("timeframe must be one of: week, month, year")
    return timeframe


def current_window(timeframe: str, now: datetime) -> Window:
    today = now.date()
    if timeframe == "week":
        start = today - timedelta(days=today.weekday())
        return Window(_midnight(start), _midnight(start + timedelta(days=7)))
    if timeframe == "month":
        start = today.replace(day=1)
        return Window(_midnight(start), _midnight(start + relativedelta(months=1)))
    start = date(today.year, 1, 1)
    return Window(_midnight(start), _midnight(date(today.year + 1, 1, 1)))


def previous_window(timeframe: str, window: Window) -> Window:
    step = {
        "week": relativedelta(weeks=1),
        "month": relativedelta(months=1),
        "year": relativedelta(years=1),
    }[timeframe]
    return Window(window.start - step, window.start)


def bucket_key(timeframe: str, when: datetime) -> str:
    if timeframe == "year":
        return when.strftime("%Y-%m")
    return when.date().isoformat()


def bucket_keys(timeframe: str, window: Window) -> List[str]:
    step = relativedelta(months=1) if timeframe == "year" else relativedelta(days=1)
    keys = []
    cursor = window.start
    while cursor < window.end:
        keys.append(bucket_key(timeframe, cursor))
        cursor = cursor + step
    return keys


@dataclass
class EarningsReport:
    timeframe: str
    window: Window
    total_earnings: Decimal = ZERO
    borrow_earnings: Decimal = ZERO
    purchase_earnings: Decimal = ZERO
    previous_period_earnings: Decimal = ZERO
    earnings_by_category: Dict[str, Decimal] = field(default_factory=dict)
    top_selling_books: List[dict] = field(default_factory=list)
    time_series: List[dict] = field(default_factory=list)

    @property
    def growth_percent(self) -> Optional[Decimal]:
        if not self.previous_period_earnings:
            return None
        change = self.total_earnings - self.previous_period_earnings
        return round2(change / self.previous_period_earnings * 100)

    def to_dict(self):
        growth = self.growth_percent
        return {
            "timeframe": self.timeframe,
            "period": {
                "start": self.window.start.isoformat(),
                "end": self.window.end.isoformat(),
            },
            "total_earnings": str(self.total_earnings),
            "borrow_earnings": str(self.borrow_earnings),
            "purchase_earnings": str(self.purchase_earnings),
            "previous_period_earnings": str(self.previous_period_earnings),
            "growth_percent": str(growth) if growth is not None else None,
            "earnings_by_category": {k: str(v) for k, v in self.earnings_by_category.items()},
            "top_selling_books": [
                dict(b, earnings=str(b["earnings"])) for b in self.top_selling_books
            ],
            "time_series": [
                {"period": p["period"], "earnings": str(p["earnings"])}
                for p in self.time_series
            ],
        }


def build_report(timeframe: str, now: datetime, entries: Iterable[EarningEntry]) -> EarningsReport:
    """
    Fold earning entries into a report for the window containing `now`.
    Entries outside the current and previous windows are ignored, so the
    caller may over-fetch.
    """
    timeframe = validate_timeframe(timeframe)
    window = current_window(timeframe, now)
    previous = previous_window(timeframe, window)

    report = EarningsReport(timeframe=timeframe, window=window)
    series = {key: ZERO for key in bucket_keys(timeframe, window)}
    books: Dict[int, dict] = {}

    for entry in entries:
        amount = Decimal(entry.amount or 0)
        if previous.contains(entry.when):
            report.previous_period_earnings += amount
            continue
        if not window.contains(entry.when):
            continue

        report.total_earnings += amount
        if entry.source == "borrow":
            report.borrow_earnings += amount
            category = entry.category or UNCATEGORIZED
            report.earnings_by_category[category] = (
                report.earnings_by_category.get(category, ZERO) + amount
            )
        else:
            report.purchase_earnings += amount

        series[bucket_key(timeframe, entry.when)] += amount

        book = books.setdefault(
            entry.book_id,
            {"book_id": entry.book_id, "title": entry.title, "earnings": ZERO},
        )
        book["earnings"] += amount

    # sorted() is stable: equal earnings keep first-seen order
    report.top_selling_books = sorted(
        books.values(), key=lambda b: b["earnings"], reverse=True
    )[:TOP_BOOKS]
    report.time_series = [{"period": k, "earnings": v} for k, v in series.items()]

    report.total_earnings = round2(report.total_earnings)
    report.borrow_earnings = round2(report.borrow_earnings)
    report.purchase_earnings = round2(report.purchase_earnings)
    report.previous_period_earnings = round2(report.previous_period_earnings)
    return report


class EarningsService:
    def __init__(self, session_factory, clock=None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    def _entries(self, session, since: datetime, until: datetime) -> List[EarningEntry]:
        borrow_rows = session.execute(
            select(
                Borrow.borrowed_date,
                Borrow.total_borrow_price,
                Book.id,
                Book.title,
                Category.name,
            )
            .join(Book, Book.id == Borrow.book_id)
            .outerjoin(Category, Category.id == Book.category_id)
            .where(Borrow.borrowed_date >= since, Borrow.borrowed_date < until)
            .order_by(Borrow.borrowed_date, Borrow.id)
        ).all()

        purchase_rows = session.execute(
            select(
                Transaction.transaction_date,
                Transaction.total_price,
                Book.id,
                Book.title,
                Category.name,
            )
            .join(Book, Book.id == Transaction.book_id)
            .outerjoin(Category, Category.id == Book.category_id)
            .where(
                Transaction.status == "success",
                Transaction.transaction_date >= since,
                Transaction.transaction_date < until,
            )
            .order_by(Transaction.transaction_date, Transaction.id)
        ).all()

        entries = [EarningEntry(*row, source="borrow") for row in borrow_rows]
        entries += [EarningEntry(*row, source="purchase") for row in purchase_rows]
        entries.sort(key=lambda e: e.when)
        return entries

    def get_earnings(self, timeframe: str = "month") -> EarningsReport:
        timeframe = validate_timeframe(timeframe)
        now = self.clock.now()
        window = current_window(timeframe, now)
        previous = previous_window(timeframe, window)

        with session_scope(self.session_factory) as session:
            entries = self._entries(session, previous.start, window.end)

        report = build_report(timeframe, now, entries)
        logger.info(
            "Earnings %s %s..%s total=%s",
            timeframe,
            window.start.date(),
            window.end.date(),
            report.total_earnings,
        )
        return report

    def user_earnings(self, user_id) -> Decimal:
        """Sum of the borrow prices charged to one user."""
        with session_scope(self.session_factory) as session:
            if not session.get(User, user_id):
                raise UserNotFound()
            total = session.execute(
                select(func.coalesce(func.sum(Borrow.total_borrow_price), 0)).where(
                    Borrow.user_id == user_id
                )
            ).scalar_one()
            return round2(total)
