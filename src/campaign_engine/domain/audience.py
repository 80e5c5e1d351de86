"""Audience specifications attached to campaigns.

Campaign rows persist an ``audience_type`` string plus a JSON filter. Both are
parsed into one of the frozen variants below before resolution so the
resolver can match exhaustively.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Union
from uuid import UUID

from loguru import logger
from sqlalchemy.sql.elements import ColumnElement


@dataclass(frozen=True, slots=True)
class AllCustomers:
    pass


@dataclass(frozen=True, slots=True)
class Tagged:
    tag_ids: frozenset[UUID] = field(default_factory=frozenset)


@dataclass(frozen=True, slots=True)
class InactiveSince:
    days: int = 30


@dataclass(frozen=True, slots=True)
class WalletRange:
    min_points: int = 0
    max_points: int | None = None


@dataclass(frozen=True, slots=True)
class CustomFilter:
    """Caller-supplied predicate over the ``Customer`` model.

    ``predicate`` is either a SQLAlchemy boolean clause or a callable that
    receives the ``Customer`` model class and returns one.
    """

    predicate: ColumnElement[bool] | Callable[[Any], ColumnElement[bool]] | None = None


@dataclass(frozen=True, slots=True)
class LocationRadius:
    latitude: float | None = None
    longitude: float | None = None
    radius_km: float | None = None


@dataclass(frozen=True, slots=True)
class UnsupportedAudience:
    audience_type: str


AudienceSpec = Union[
    AllCustomers,
    Tagged,
    InactiveSince,
    WalletRange,
    CustomFilter,
    LocationRadius,
    UnsupportedAudience,
]


class AudienceSpecError(ValueError):
    """Raised when a stored audience filter cannot be parsed."""


def audience_from_filter(
    audience_type: str | None,
    audience_filter: Mapping[str, Any] | None,
    *,
    default_inactive_days: int = 30,
) -> AudienceSpec:
    """Parse the persisted ``(audience_type, audience_filter)`` pair."""

    kind = (audience_type or "all").strip().lower()
    payload = dict(audience_filter or {})

    if kind == "all":
        return AllCustomers()
    if kind == "tagged":
        raw_ids = payload.get("tag_ids", payload.get("tags")) or []
        return Tagged(tag_ids=frozenset(_coerce_uuid(value) for value in raw_ids))
    if kind in {"last_order_date", "inactive_since"}:
        days = payload.get("days_since_last_order", payload.get("days_inactive"))
        return InactiveSince(days=_coerce_int(days, default=default_inactive_days, label="days"))
    if kind in {"wallet_status", "wallet_range"}:
        min_points = _coerce_int(payload.get("min_points"), default=0, label="min_points")
        max_raw = payload.get("max_points")
        max_points = None if max_raw is None else _coerce_int(max_raw, default=0, label="max_points")
        return WalletRange(min_points=min_points, max_points=max_points)
    if kind == "custom_filter":
        # Stored custom filters are opaque; only in-process callers attach predicates.
        return CustomFilter(predicate=None)
    if kind == "location_radius":
        return LocationRadius(
            latitude=_coerce_float(payload.get("latitude", payload.get("lat"))),
            longitude=_coerce_float(payload.get("longitude", payload.get("lng"))),
            radius_km=_coerce_float(payload.get("radius_km", payload.get("radius"))),
        )

    logger.warning("Unrecognised audience type", audience_type=kind)
    return UnsupportedAudience(audience_type=kind)


def audience_to_filter(spec: AudienceSpec) -> tuple[str, dict[str, Any]]:
    """Serialise a spec back into the persisted ``(audience_type, filter)`` pair."""

    if isinstance(spec, AllCustomers):
        return "all", {}
    if isinstance(spec, Tagged):
        return "tagged", {"tag_ids": sorted(str(tag_id) for tag_id in spec.tag_ids)}
    if isinstance(spec, InactiveSince):
        return "last_order_date", {"days_since_last_order": spec.days}
    if isinstance(spec, WalletRange):
        payload: dict[str, Any] = {"min_points": spec.min_points}
        if spec.max_points is not None:
            payload["max_points"] = spec.max_points
        return "wallet_status", payload
    if isinstance(spec, CustomFilter):
        return "custom_filter", {}
    if isinstance(spec, LocationRadius):
        return "location_radius", {
            "latitude": spec.latitude,
            "longitude": spec.longitude,
            "radius_km": spec.radius_km,
        }
    return spec.audience_type, {}


def _coerce_uuid(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as error:
        raise AudienceSpecError(f"Invalid tag identifier: {value!r}") from error


def _coerce_int(value: Any, *, default: int, label: str) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as error:
        raise AudienceSpecError(f"{label} must be an integer") from error
    if number < 0:
        raise AudienceSpecError(f"{label} must be non-negative")
    return number


def _coerce_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as error:
        raise AudienceSpecError("Location coordinates must be numeric") from error


__all__ = [
    "AllCustomers",
    "AudienceSpec",
    "AudienceSpecError",
    "CustomFilter",
    "InactiveSince",
    "LocationRadius",
    "Tagged",
    "UnsupportedAudience",
    "WalletRange",
    "audience_from_filter",
    "audience_to_filter",
]
