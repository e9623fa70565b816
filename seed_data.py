#!/usr/bin/env python3

from datetime import date, timedelta
from decimal import Decimal

from tickethub.database import SessionLocal, run_migrations
from tickethub.models import DiscountVoucher, Trip
from tickethub.utils import utcnow

DEMO_TRIPS = [
    {"name": "Lalibela Rock Churches", "destination": "Lalibela", "days_ahead": 14, "price": "4500.00", "seats": 40, "allow_gnpl": True},
    {"name": "Simien Mountains Trek", "destination": "Debark", "days_ahead": 21, "price": "6200.00", "seats": 24, "allow_gnpl": False},
    {"name": "Gondar Castles Day Tour", "destination": "Gondar", "days_ahead": 7, "price": "1800.00", "seats": 30, "allow_gnpl": False},
    {"name": "Danakil Depression Expedition", "destination": "Afar", "days_ahead": 30, "price": "9800.00", "seats": 12, "allow_gnpl": True},
]

DEMO_VOUCHERS = [
    {"code": "WELCOME10", "percent": "10", "max_uses": None, "valid_days": 90},
    {"code": "EARLYBIRD", "percent": "15", "max_uses": 50, "valid_days": 30},
    {"code": "VIP25", "percent": "25", "max_uses": 5, "valid_days": 14},
]


def create_seed_data(db=None):
    owns_session = db is None
    if owns_session:
        run_migrations()
        db = SessionLocal()

    try:
        print("🚀 Creating seed data for TicketHub...")

        # 1. Trips
        print("Creating trips...")
        existing_trips = {name for (name,) in db.query(Trip.name).all()}
        trips = []
        for item in DEMO_TRIPS:
            if item["name"] in existing_trips:
                continue
            trips.append(Trip(
                name=item["name"],
                destination=item["destination"],
                departure_date=date.today() + timedelta(days=item["days_ahead"]),
                price_per_ticket=Decimal(item["price"]),
                total_seats=item["seats"],
                available_seats=item["seats"],
                status="active",
                allow_gnpl=item["allow_gnpl"],
            ))
        db.add_all(trips)
        db.flush()

        # 2. Discount vouchers
        print("Creating discount vouchers...")
        existing_codes = {code for (code,) in db.query(DiscountVoucher.code).all()}
        now = utcnow()
        vouchers = []
        for item in DEMO_VOUCHERS:
            if item["code"] in existing_codes:
                continue
            vouchers.append(DiscountVoucher(
                code=item["code"],
                discount_percent=Decimal(item["percent"]),
                max_uses=item["max_uses"],
                current_uses=0,
                valid_from=now,
                expires_at=now + timedelta(days=item["valid_days"]),
                is_active=True,
            ))
        db.add_all(vouchers)

        db.commit()
        print("✅ Successfully created seed data for TicketHub!")
        print(f"Created:")
        print(f"  - {len(trips)} trips")
        print(f"  - {len(vouchers)} discount vouchers")
        return {"trips": len(trips), "vouchers": len(vouchers)}

    except Exception as e:
        print(f"❌ Error creating seed data: {e}")
        db.rollback()
        raise
    finally:
        if owns_session:
            db.close()

if __name__ == "__main__":
    create_seed_data()
