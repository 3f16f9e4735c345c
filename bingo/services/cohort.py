"""
Registro: campaign cohort selection.

A CohortFilter is a conjunction of typed predicates. It is persisted on the campaign
as {"predicates": [{"kind": ..., ...}, ...]} and resolved against verified participants
only, newest registrations first.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import ClassVar

from django.db.models import Count, Q
from django.utils.dateparse import parse_date, parse_datetime

from bingo.exceptions import ValidationFailed
from bingo.models import Participant

COHORT_ORDERING = ("-created_at", "-id")


@dataclass(frozen=True)
class Recipient:
    """Denormalized participant view used for previews and personalization."""

    id: int
    phone: str
    first_name: str = ""
    last_name: str = ""
    id_card: str = ""
    province_id: int | None = None
    province: str = ""
    canton_id: int | None = None
    canton: str = ""
    neighborhood_id: int | None = None
    neighborhood: str = ""
    table_code: str | None = None
    table_delivered: bool | None = None
    ocr_validated: bool | None = None
    created_at: datetime | None = None

    @classmethod
    def from_participant(cls, p: Participant) -> "Recipient":
        table = p.assigned_table
        return cls(
            id=p.pk,
            phone=p.phone,
            first_name=p.first_name or "",
            last_name=p.last_name or "",
            id_card=p.id_card,
            province_id=p.province_id,
            province=p.province.name if p.province else "",
            canton_id=p.canton_id,
            canton=p.canton.name if p.canton else "",
            neighborhood_id=p.neighborhood_id,
            neighborhood=p.neighborhood.name if p.neighborhood else "",
            table_code=table.code if table else None,
            table_delivered=table.delivered if table else None,
            ocr_validated=table.ocr_validated if table else None,
            created_at=p.created_at,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "id_card": self.id_card,
            "province": self.province,
            "canton": self.canton,
            "neighborhood": self.neighborhood,
            "table_code": self.table_code,
            "table_delivered": self.table_delivered,
            "ocr_validated": self.ocr_validated,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# Predicates

@dataclass(frozen=True)
class ByProvince:
    kind: ClassVar[str] = "by_province"
    province_id: int

    def to_q(self) -> Q:
        return Q(province_id=self.province_id)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.province_id}


@dataclass(frozen=True)
class ByCanton:
    kind: ClassVar[str] = "by_canton"
    canton_id: int

    def to_q(self) -> Q:
        return Q(canton_id=self.canton_id)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.canton_id}


@dataclass(frozen=True)
class ByNeighborhood:
    kind: ClassVar[str] = "by_neighborhood"
    neighborhood_id: int

    def to_q(self) -> Q:
        return Q(neighborhood_id=self.neighborhood_id)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.neighborhood_id}


@dataclass(frozen=True)
class ByNeighborhoods:
    kind: ClassVar[str] = "by_neighborhoods"
    neighborhood_ids: tuple

    def to_q(self) -> Q:
        return Q(neighborhood_id__in=list(self.neighborhood_ids))

    def to_dict(self) -> dict:
        return {"kind": self.kind, "ids": list(self.neighborhood_ids)}


@dataclass(frozen=True)
class HasTable:
    kind: ClassVar[str] = "has_table"
    flag: bool

    def to_q(self) -> Q:
        return Q(assigned_table__isnull=not self.flag)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "value": self.flag}


@dataclass(frozen=True)
class RegisteredBetween:
    """Inclusive date range on registration date; either bound may be open."""

    kind: ClassVar[str] = "registered_between"
    start: date | None = None
    end: date | None = None

    def to_q(self) -> Q:
        q = Q()
        if self.start:
            q &= Q(created_at__date__gte=self.start)
        if self.end:
            q &= Q(created_at__date__lte=self.end)
        return q

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "from": self.start.isoformat() if self.start else None,
            "to": self.end.isoformat() if self.end else None,
        }


@dataclass(frozen=True)
class TextSearch:
    kind: ClassVar[str] = "search"
    term: str

    def to_q(self) -> Q:
        term = self.term.strip()
        return (
            Q(first_name__icontains=term)
            | Q(last_name__icontains=term)
            | Q(phone__icontains=term)
            | Q(id_card__icontains=term)
        )

    def to_dict(self) -> dict:
        return {"kind": self.kind, "term": self.term}


@dataclass(frozen=True)
class ByUserIds:
    kind: ClassVar[str] = "user_ids"
    user_ids: tuple

    def to_q(self) -> Q:
        return Q(pk__in=list(self.user_ids))

    def to_dict(self) -> dict:
        return {"kind": self.kind, "ids": list(self.user_ids)}


def _as_int(value, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Invalid cohort filter", fields={name: "Must be an integer."})


def _as_int_tuple(values, name: str) -> tuple:
    if isinstance(values, (str, int)):
        values = str(values).split(",")
    return tuple(_as_int(v, name) for v in (values or []) if str(v).strip())


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _as_date(value, name: str) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_date(str(value)) or (parse_datetime(str(value)) and parse_datetime(str(value)).date())
    if not parsed:
        raise ValidationFailed("Invalid cohort filter", fields={name: "Must be an ISO date."})
    return parsed


def predicate_from_dict(data: dict):
    kind = (data or {}).get("kind")
    if kind == ByProvince.kind:
        return ByProvince(_as_int(data.get("id"), kind))
    if kind == ByCanton.kind:
        return ByCanton(_as_int(data.get("id"), kind))
    if kind == ByNeighborhood.kind:
        return ByNeighborhood(_as_int(data.get("id"), kind))
    if kind == ByNeighborhoods.kind:
        return ByNeighborhoods(_as_int_tuple(data.get("ids"), kind))
    if kind == HasTable.kind:
        return HasTable(_as_bool(data.get("value")))
    if kind == RegisteredBetween.kind:
        return RegisteredBetween(_as_date(data.get("from"), "from"), _as_date(data.get("to"), "to"))
    if kind == TextSearch.kind:
        return TextSearch(str(data.get("term") or ""))
    if kind == ByUserIds.kind:
        return ByUserIds(_as_int_tuple(data.get("ids"), kind))
    raise ValidationFailed("Invalid cohort filter", fields={"kind": f"Unknown predicate {kind!r}."})


@dataclass(frozen=True)
class CohortFilter:
    predicates: tuple = field(default_factory=tuple)

    @classmethod
    def of(cls, *predicates) -> "CohortFilter":
        return cls(tuple(predicates))

    @classmethod
    def for_user_ids(cls, user_ids) -> "CohortFilter":
        return cls((ByUserIds(tuple(int(i) for i in user_ids)),))

    @classmethod
    def from_dict(cls, data: dict | None) -> "CohortFilter":
        """
        Accept the persisted form ({"predicates": [...]}) or flat keys:
        province_id, canton_id, neighborhood_id, neighborhood_ids, has_table,
        registered_from, registered_to, search, user_ids.
        """
        data = data or {}
        if "predicates" in data:
            return cls(tuple(predicate_from_dict(p) for p in data["predicates"] or []))

        predicates = []
        if data.get("province_id") not in (None, ""):
            predicates.append(ByProvince(_as_int(data["province_id"], "province_id")))
        if data.get("canton_id") not in (None, ""):
            predicates.append(ByCanton(_as_int(data["canton_id"], "canton_id")))
        if data.get("neighborhood_id") not in (None, ""):
            predicates.append(ByNeighborhood(_as_int(data["neighborhood_id"], "neighborhood_id")))
        if data.get("neighborhood_ids"):
            predicates.append(ByNeighborhoods(_as_int_tuple(data["neighborhood_ids"], "neighborhood_ids")))
        if data.get("has_table") not in (None, ""):
            predicates.append(HasTable(_as_bool(data["has_table"])))
        if data.get("registered_from") or data.get("registered_to"):
            predicates.append(RegisteredBetween(
                _as_date(data.get("registered_from"), "registered_from"),
                _as_date(data.get("registered_to"), "registered_to"),
            ))
        if (data.get("search") or "").strip():
            predicates.append(TextSearch(data["search"].strip()))
        if data.get("user_ids"):
            predicates.append(ByUserIds(_as_int_tuple(data["user_ids"], "user_ids")))
        return cls(tuple(predicates))

    def to_dict(self) -> dict:
        return {"predicates": [p.to_dict() for p in self.predicates]}

    def to_q(self) -> Q:
        q = Q()
        for predicate in self.predicates:
            q &= predicate.to_q()
        return q


@dataclass
class CohortPage:
    items: list
    page: int
    page_size: int | None
    total_count: int


def cohort_queryset(cohort_filter: CohortFilter):
    return (
        Participant.objects.verified()
        .filter(cohort_filter.to_q())
        .select_related("province", "canton", "neighborhood", "assigned_table")
        .order_by(*COHORT_ORDERING)
    )


def resolve_cohort(cohort_filter: CohortFilter, page: int | None = None, page_size: int | None = None) -> CohortPage:
    """Whole cohort when page_size is None; otherwise the 1-based page."""
    qs = cohort_queryset(cohort_filter)
    total = qs.count()
    if page_size:
        page = max(1, int(page or 1))
        offset = (page - 1) * page_size
        rows = qs[offset:offset + page_size]
    else:
        page = 1
        rows = qs
    return CohortPage(
        items=[Recipient.from_participant(p) for p in rows],
        page=page,
        page_size=page_size,
        total_count=total,
    )


def cohort_summary(cohort_filter: CohortFilter) -> dict:
    qs = Participant.objects.verified().filter(cohort_filter.to_q())
    counts = qs.aggregate(
        total_count=Count("id"),
        with_table=Count("id", filter=Q(assigned_table__isnull=False)),
    )
    by_province = [
        {"province": row["province__name"] or "", "count": row["count"]}
        for row in qs.values("province__name").annotate(count=Count("id")).order_by("-count", "province__name")
    ]
    total = counts["total_count"] or 0
    with_table = counts["with_table"] or 0
    return {
        "total_count": total,
        "with_table": with_table,
        "without_table": total - with_table,
        "by_province": by_province,
    }


def get_recipient(user_id: int | None) -> Recipient | None:
    """Fresh denormalized view of one participant (None if the row is gone)."""
    if not user_id:
        return None
    participant = (
        Participant.objects.select_related("province", "canton", "neighborhood", "assigned_table")
        .filter(pk=user_id)
        .first()
    )
    return Recipient.from_participant(participant) if participant else None
