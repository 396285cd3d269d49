"""
Typed list filters.

Each list endpoint declares which columns may be filtered and how; request
parameters become Eq / DateRange / Search values and nothing else reaches
the query.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Optional, Union

from sqlalchemy import or_

from backoffice.errors import ValidationError


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class DateRange:
    field: str
    start: Optional[date] = None
    end: Optional[date] = None  # inclusive


@dataclass(frozen=True)
class Search:
    term: str


Filter = Union[Eq, DateRange, Search]


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _day_start(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


class FilterSpec:
    def __init__(self, model, *, eq: Iterable[str] = (), dates: Iterable[str] = (), search: Iterable[str] = ()):
        self.model = model
        self.eq = frozenset(eq)
        self.dates = frozenset(dates)
        self.search = tuple(search)

    def _column(self, name: str, allowed):
        if name not in allowed:
            raise ValidationError(f"Cannot filter on {name}")
        return getattr(self.model, name)

    def apply(self, query, filters: Iterable[Filter]):
        for f in filters:
            if isinstance(f, Eq):
                if f.value is None:
                    continue
                query = query.filter(self._column(f.field, self.eq) == f.value)
            elif isinstance(f, DateRange):
                col = self._column(f.field, self.dates)
                if f.start:
                    query = query.filter(col >= _day_start(f.start))
                if f.end:
                    query = query.filter(col < _day_start(f.end + timedelta(days=1)))
            elif isinstance(f, Search):
                term = (f.term or "").strip()
                if not term or not self.search:
                    continue
                pattern = f"%{_escape_like(term)}%"
                cols = [getattr(self.model, name) for name in self.search]
                query = query.filter(or_(*[c.ilike(pattern, escape="\\") for c in cols]))
            else:
                raise TypeError(f"Unsupported filter: {f!r}")
        return query


def paginate(query, page: int, limit: int):
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    pages = (total + limit - 1) // limit if limit else 0
    return items, {"page": page, "limit": limit, "total": total, "pages": pages}
