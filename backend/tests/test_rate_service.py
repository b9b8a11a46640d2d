# Overview: Pytest coverage for carrier fee resolution.

"""
Carrier Fee Resolution Tests

Priority: city rate, then zone rate, then the deterministic fallback over
zone rates, then zero.
"""

import pytest

from codledger.models import CarrierRate
from codledger.models.carriers import RATE_SCOPE_CITY, RATE_SCOPE_ZONE
from codledger.services import rate_service
from codledger.services.rate_service import (
    FEE_SOURCE_CITY,
    FEE_SOURCE_FALLBACK,
    FEE_SOURCE_NONE,
    FEE_SOURCE_ZONE,
)


class TestPriority:

    def test_city_rate_wins(self, db_session, carrier):
        res = rate_service.resolve_fee_with_source(carrier.id, "Asuncion", "Central")
        assert res.fee == 25000
        assert res.source == FEE_SOURCE_CITY

    def test_city_match_ignores_case_whitespace_and_accents(self, db_session, carrier):
        assert rate_service.resolve_fee(carrier.id, "  ASUNCIÓN ", None) == 25000
        assert rate_service.resolve_fee(carrier.id, "san   lorenzo", None) == 30000

    def test_zone_rate_when_no_city_matches(self, db_session, carrier):
        res = rate_service.resolve_fee_with_source(carrier.id, "Luque", "central")
        assert res.fee == 35000
        assert res.source == FEE_SOURCE_ZONE

    def test_zone_name_is_not_matched_against_city_rates(self, db_session, carrier):
        # "Asuncion" is a city rate; used as a zone it must not match it.
        res = rate_service.resolve_fee_with_source(carrier.id, None, "Asuncion")
        assert res.source == FEE_SOURCE_FALLBACK

    def test_no_rates_returns_zero(self, db_session, store, make_carrier):
        bare = make_carrier(store, name="Sin tarifas")
        res = rate_service.resolve_fee_with_source(bare.id, "Asuncion", "Central")
        assert res.fee == 0
        assert res.source == FEE_SOURCE_NONE
        assert res.rate_id is None

    def test_inactive_rates_are_ignored(self, db_session, store, make_carrier):
        c = make_carrier(store, name="Inactivo", cities={"Asuncion": 20000})
        rate = CarrierRate.query.filter_by(carrier_id=c.id).one()
        rate.is_active = False
        db_session.commit()

        assert rate_service.resolve_fee(c.id, "Asuncion", None) == 0

    def test_rates_of_other_carriers_are_not_used(self, db_session, store, carrier, make_carrier):
        other = make_carrier(store, name="Otro", cities={"Luque": 11000})
        assert rate_service.resolve_fee(carrier.id, "Luque", "Central") == 35000
        assert rate_service.resolve_fee(other.id, "Luque", None) == 11000


class TestFallback:

    def test_lowest_rate_when_no_catch_all_zone(self, db_session, store, make_carrier):
        c = make_carrier(store, name="X", zones={"Asuncion": 25000, "Interior": 45000})
        fees = {rate_service.resolve_fee(c.id, "Nowhere", "Unknown") for _ in range(5)}
        assert fees == {25000}

    def test_default_zone_beats_cheaper_zones(self, db_session, store, make_carrier):
        c = make_carrier(store, name="Y", zones={"Norte": 10000, "Default": 40000, "Otros": 30000})
        res = rate_service.resolve_fee_with_source(c.id, None, None)
        assert res.fee == 40000
        assert res.source == FEE_SOURCE_FALLBACK

    def test_otros_used_when_no_default(self, db_session, store, make_carrier):
        c = make_carrier(store, name="Z", zones={"Norte": 10000, "otros": 30000})
        assert rate_service.resolve_fee(c.id, "Villarrica", None) == 30000

    def test_interior_breaks_ties_between_equal_rates(self, db_session, store, make_carrier):
        c = make_carrier(store, name="W", zones={"Norte": 20000, "Interior": 20000})
        res = rate_service.resolve_fee_with_source(c.id, None, None)
        interior = CarrierRate.query.filter_by(carrier_id=c.id, scope_key="interior").one()
        assert res.rate_id == interior.id

    def test_cheaper_real_zone_beats_interior_catch_all(self, db_session, store, make_carrier):
        c = make_carrier(store, name="T", zones={"Interior": 45000, "Central": 20000})
        res = rate_service.resolve_fee_with_source(c.id, "Encarnacion", "Itapua")
        assert res.fee == 20000
        assert res.source == FEE_SOURCE_FALLBACK

    def test_id_is_final_tie_breaker(self, db_session, store, make_carrier):
        c = make_carrier(store, name="V", zones={"Norte": 20000, "Sur": 20000})
        first = (
            CarrierRate.query.filter_by(carrier_id=c.id)
            .order_by(CarrierRate.id.asc())
            .first()
        )
        for _ in range(3):
            assert rate_service.resolve_fee_with_source(c.id, None, None).rate_id == first.id

    def test_city_rates_never_used_as_fallback(self, db_session, store, make_carrier):
        c = make_carrier(store, name="U", cities={"Asuncion": 5000})
        assert rate_service.resolve_fee(c.id, "Luque", None) == 0


class TestRateModel:

    def test_scope_key_is_normalized(self, db_session, carrier):
        rate = CarrierRate.query.filter_by(carrier_id=carrier.id, scope_name="San Lorenzo").one()
        assert rate.scope_key == "san lorenzo"

    def test_invalid_scope_rejected(self, db_session, store, carrier):
        with pytest.raises(ValueError):
            CarrierRate(store_id=store.id, carrier_id=carrier.id, scope="REGION", scope_name="x", rate=1)

    def test_resolve_fee_for_order_uses_order_destination(self, db_session, store, carrier, make_order):
        order = make_order(store, carrier, city="Fernando de la Mora", zone="Central")
        res = rate_service.resolve_fee_for_order(order)
        assert (res.fee, res.source) == (35000, FEE_SOURCE_ZONE)

    def test_second_active_rate_for_same_city_rejected(self, db_session, store, carrier):
        from sqlalchemy.exc import IntegrityError

        db_session.add(CarrierRate(
            store_id=store.id, carrier_id=carrier.id, scope=RATE_SCOPE_CITY, scope_name="ASUNCION ", rate=1,
        ))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_same_name_allowed_in_city_and_zone_scope(self, db_session, store, carrier):
        db_session.add(CarrierRate(
            store_id=store.id, carrier_id=carrier.id, scope=RATE_SCOPE_ZONE, scope_name="Asuncion", rate=26000,
        ))
        db_session.commit()
        assert rate_service.resolve_fee(carrier.id, None, "asuncion") == 26000
