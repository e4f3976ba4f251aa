"""
Pricing resolution: scheme hierarchy, slab selection and the degradation chain.
"""
import unittest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from payout_service.models import utcnow
from payout_service.pricing import (
    ChargeQuote, DirectMappingStrategy, HierarchySchemeStrategy, PricingResolver, PricingStrategy,
    StaticDefaultStrategy, charge_for_scheme,
)
from fakes import add_merchant, add_scheme, add_slab, make_session_factory, make_settings

def broken_session_factory():
    raise OperationalError("SELECT 1", {}, Exception("scheme store unreachable"))

class TestSchemeHierarchy(unittest.TestCase):
    def setUp(self):
        self.sf = make_session_factory()
        self.resolver = PricingResolver(self.sf, make_settings())
        add_merchant(self.sf, "r1", distributor_id="d1", master_distributor_id="md1")

    def test_retailer_mapping_wins_over_distributor(self):
        add_scheme(self.sf, "Distributor Plan", entity_id="d1", entity_role="distributor", charge="7")
        add_scheme(self.sf, "Retail Gold", entity_id="r1", charge="4")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.charge, Decimal("4.00"))
        self.assertEqual(quote.scheme_name, "Retail Gold")
        self.assertEqual(quote.resolved_via, "retailer")

    def test_inherits_distributor_scheme(self):
        add_scheme(self.sf, "Distributor Plan", entity_id="d1", entity_role="distributor", charge="7")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.charge, Decimal("7.00"))
        self.assertEqual(quote.resolved_via, "distributor")

    def test_inherits_master_distributor_scheme(self):
        add_scheme(self.sf, "MD Plan", entity_id="md1", entity_role="master_distributor", charge="6")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.resolved_via, "master_distributor")
        self.assertEqual(quote.charge, Decimal("6.00"))

    def test_global_scheme_when_no_mapping(self):
        add_scheme(self.sf, "Global Payout", scheme_type="global", charge="8")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.resolved_via, "global")
        self.assertEqual(quote.scheme_name, "Global Payout")

    def test_lower_priority_number_wins(self):
        add_scheme(self.sf, "Fallback", entity_id="r1", charge="9", priority=200)
        add_scheme(self.sf, "Preferred", entity_id="r1", charge="2", priority=10)

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.scheme_name, "Preferred")

    def test_expired_mapping_is_ignored(self):
        add_scheme(self.sf, "Expired", entity_id="r1", charge="1",
                   mapping_effective_to=utcnow() - timedelta(hours=1))
        add_scheme(self.sf, "Distributor Plan", entity_id="d1", entity_role="distributor", charge="7")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.scheme_name, "Distributor Plan")

    def test_expired_scheme_is_ignored(self):
        add_scheme(self.sf, "Expired Promo", entity_id="r1", charge="1",
                   effective_to=utcnow() - timedelta(hours=1))

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.charge, Decimal("5.00"))
        self.assertIsNone(quote.scheme_name)
        self.assertEqual(quote.resolved_via, "default")

    def test_future_scheme_is_ignored(self):
        add_scheme(self.sf, "Next Month", entity_id="r1", charge="1",
                   effective_from=utcnow() + timedelta(days=30))
        add_scheme(self.sf, "Distributor Plan", entity_id="d1", entity_role="distributor", charge="7")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.scheme_name, "Distributor Plan")
        self.assertEqual(quote.resolved_via, "distributor")

    def test_service_type_filter(self):
        add_scheme(self.sf, "Recharge Only", entity_id="r1", charge="1", service_type="recharge")
        add_scheme(self.sf, "All Services", entity_id="d1", entity_role="distributor", charge="3",
                   service_type="all")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.scheme_name, "All Services")

class TestChargeComputation(unittest.TestCase):
    def setUp(self):
        self.sf = make_session_factory()
        self.resolver = PricingResolver(self.sf, make_settings())

    def test_slab_band_selection(self):
        scheme_id = add_scheme(self.sf, "Banded", entity_id="r1", charge="5", min_amount="0", max_amount="1000")
        add_slab(self.sf, scheme_id, "10", "1000.01", "25000")

        with self.sf() as db:
            self.assertEqual(charge_for_scheme(db, scheme_id, Decimal("999"), "IMPS"), Decimal("5.00"))
            self.assertEqual(charge_for_scheme(db, scheme_id, Decimal("5000"), "IMPS"), Decimal("10.00"))
            self.assertIsNone(charge_for_scheme(db, scheme_id, Decimal("50000"), "IMPS"))
            self.assertIsNone(charge_for_scheme(db, scheme_id, Decimal("500"), "NEFT"))

    def test_percentage_charge_rounds_half_up(self):
        add_scheme(self.sf, "Percent", entity_id="r1", charge="1.5", charge_type="percentage")

        quote = self.resolver.resolve("r1", "payout", Decimal("333"), "IMPS")

        # 333 * 1.5% = 4.995
        self.assertEqual(quote.charge, Decimal("5.00"))

    def test_zero_charge_falls_back_to_default(self):
        add_scheme(self.sf, "Free", entity_id="r1", charge="0")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote, ChargeQuote(charge=Decimal("5.00")))
        self.assertIsNone(quote.scheme_name)

    def test_mode_without_slab_uses_default(self):
        add_scheme(self.sf, "IMPS Only", entity_id="r1", charge="4")

        quote = self.resolver.resolve("r1", "payout", Decimal("500"), "NEFT")

        self.assertEqual(quote.charge, Decimal("3.00"))
        self.assertIsNone(quote.scheme_id)

class TestDegradation(unittest.TestCase):
    def test_unreachable_store_uses_static_default(self):
        resolver = PricingResolver(broken_session_factory, make_settings())

        quote = resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.charge, Decimal("5.00"))
        self.assertEqual(quote.resolved_via, "default")

    def test_direct_lookup_used_when_hierarchy_degraded(self):
        sf = make_session_factory()
        add_scheme(sf, "Retail Gold", entity_id="r1", charge="4")
        resolver = PricingResolver(strategies=[
            HierarchySchemeStrategy(broken_session_factory),
            DirectMappingStrategy(sf),
            StaticDefaultStrategy(make_settings()),
        ], settings=make_settings())

        quote = resolver.resolve("r1", "payout", Decimal("500"), "IMPS")

        self.assertEqual(quote.resolved_via, "direct")
        self.assertEqual(quote.charge, Decimal("4.00"))

    def test_first_positive_quote_wins(self):
        class Fixed(PricingStrategy):
            def __init__(self, charge):
                self.charge = charge

            def quote(self, merchant_id, service_type, amount, transfer_mode):
                return ChargeQuote(charge=Decimal(self.charge), resolved_via=self.charge)

        resolver = PricingResolver(strategies=[Fixed("0"), Fixed("2.50"), Fixed("9")], settings=make_settings())

        self.assertEqual(resolver.resolve("r1", "payout", Decimal("500"), "IMPS").charge, Decimal("2.50"))

    def test_neft_default(self):
        resolver = PricingResolver(strategies=[StaticDefaultStrategy(make_settings())], settings=make_settings())

        self.assertEqual(resolver.resolve("r1", "payout", Decimal("500"), "NEFT").charge, Decimal("3.00"))

if __name__ == "__main__":
    unittest.main()
