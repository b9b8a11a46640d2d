# Overview: Service-layer operations for carrier rates; resolves the delivery fee for an order.

"""
Carrier Fee Resolution (authoritative)

Strict priority, deterministic at every tier:

1. CITY rate: an active city-scoped rate of the carrier whose normalized name
   equals the order's normalized shipping city.
2. ZONE rate: an active zone-scoped rate whose normalized name equals the
   order's normalized delivery zone.
3. FALLBACK: among all active zone rates of the carrier, order by
     a) primary catch-all names first: default, then otros
     b) rate ascending
     c) secondary catch-all names: interior, then general
     d) id ascending
   and take the first. This is a total order, so identical inputs and an
   identical rate table always yield the same fee.
4. Nothing configured: fee is 0.

Trade-off of tier 3: "interior" and "general" are catch-all names only when
rates tie. A carrier with {Interior: 45000, Central: 20000} falls back to
Central's 20000, not Interior's 45000; the cheaper real zone wins so that a
table like {Asuncion: 25000, Interior: 45000} charges an unmatched order
25000. Carriers that want a priced catch-all should name it "default" or
"otros".

Read-only. Safe to call inside a larger transaction; takes no locks.
Names are compared with text_utils.normalize_location (trim, collapse
whitespace, casefold, strip accents).
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import case

from ..models import CarrierRate
from ..models.carriers import RATE_SCOPE_CITY, RATE_SCOPE_ZONE
from codledger.text_utils import normalize_location


FALLBACK_ZONE_NAMES = ("default", "otros", "interior", "general")
# "interior" and "general" are also real delivery regions with their own (often
# higher) prices, so they only break ties between equally priced zones.
PRIMARY_FALLBACK_ZONE_NAMES = FALLBACK_ZONE_NAMES[:2]
SECONDARY_FALLBACK_ZONE_NAMES = FALLBACK_ZONE_NAMES[2:]

FEE_SOURCE_CITY = "city"
FEE_SOURCE_ZONE = "zone"
FEE_SOURCE_FALLBACK = "fallback"
FEE_SOURCE_NONE = "none"


@dataclass(frozen=True)
class FeeResolution:
    fee: int
    source: str
    rate_id: int | None = None


def _active_rates(carrier_id: int, scope: str, store_id: int | None):
    q = CarrierRate.query.filter(
        CarrierRate.carrier_id == carrier_id,
        CarrierRate.scope == scope,
        CarrierRate.is_active.is_(True),
    )
    if store_id is not None:
        q = q.filter(CarrierRate.store_id == store_id)
    return q


def _match_scope(carrier_id: int, scope: str, name: str | None, store_id: int | None) -> CarrierRate | None:
    key = normalize_location(name)
    if not key:
        return None
    # The partial unique index guarantees at most one row; id order keeps it total anyway.
    return (
        _active_rates(carrier_id, scope, store_id)
        .filter(CarrierRate.scope_key == key)
        .order_by(CarrierRate.id.asc())
        .first()
    )


def _name_rank(names: tuple[str, ...]):
    return case(
        {name: position for position, name in enumerate(names, start=1)},
        value=CarrierRate.scope_key,
        else_=len(names) + 1,
    )


def _fallback_zone_rate(carrier_id: int, store_id: int | None) -> CarrierRate | None:
    return (
        _active_rates(carrier_id, RATE_SCOPE_ZONE, store_id)
        .order_by(
            _name_rank(PRIMARY_FALLBACK_ZONE_NAMES).asc(),
            CarrierRate.rate.asc(),
            _name_rank(SECONDARY_FALLBACK_ZONE_NAMES).asc(),
            CarrierRate.id.asc(),
        )
        .first()
    )


def resolve_fee_with_source(
    carrier_id: int,
    shipping_city: str | None,
    delivery_zone: str | None,
    *,
    store_id: int | None = None,
) -> FeeResolution:
    """
    Resolve the delivery fee and report which tier produced it.

    Args:
        carrier_id: Carrier whose rate table is consulted
        shipping_city: Order's shipping city (free text)
        delivery_zone: Order's delivery zone (free text)
        store_id: Optional extra scoping to the store's rate rows

    Returns:
        FeeResolution(fee, source, rate_id)
    """
    rate = _match_scope(carrier_id, RATE_SCOPE_CITY, shipping_city, store_id)
    if rate is not None:
        return FeeResolution(fee=rate.rate, source=FEE_SOURCE_CITY, rate_id=rate.id)

    rate = _match_scope(carrier_id, RATE_SCOPE_ZONE, delivery_zone, store_id)
    if rate is not None:
        return FeeResolution(fee=rate.rate, source=FEE_SOURCE_ZONE, rate_id=rate.id)

    rate = _fallback_zone_rate(carrier_id, store_id)
    if rate is not None:
        return FeeResolution(fee=rate.rate, source=FEE_SOURCE_FALLBACK, rate_id=rate.id)

    return FeeResolution(fee=0, source=FEE_SOURCE_NONE)


def resolve_fee(
    carrier_id: int,
    shipping_city: str | None,
    delivery_zone: str | None,
    *,
    store_id: int | None = None,
) -> int:
    """Fee to charge for delivering into shipping_city / delivery_zone with this carrier."""
    return resolve_fee_with_source(carrier_id, shipping_city, delivery_zone, store_id=store_id).fee


def resolve_fee_for_order(order, carrier_id: int | None = None) -> FeeResolution:
    return resolve_fee_with_source(
        carrier_id if carrier_id is not None else order.courier_id,
        order.shipping_city,
        order.delivery_zone,
        store_id=order.store_id,
    )
