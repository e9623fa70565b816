from seed_data import DEMO_TRIPS, DEMO_VOUCHERS, create_seed_data
from tickethub.models import DiscountVoucher, Trip


def test_seed_data_is_idempotent(db):
    first = create_seed_data(db)
    second = create_seed_data(db)

    assert first == {"trips": len(DEMO_TRIPS), "vouchers": len(DEMO_VOUCHERS)}
    assert second == {"trips": 0, "vouchers": 0}
    assert db.query(Trip).count() == len(DEMO_TRIPS)
    assert db.query(DiscountVoucher).count() == len(DEMO_VOUCHERS)
    assert {t.name for t in db.query(Trip).filter(Trip.allow_gnpl.is_(True))} == {
        "Lalibela Rock Churches", "Danakil Depression Expedition"
    }
