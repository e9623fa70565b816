from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tickethub.auth.schemas import AdminActor
from tickethub.bookings.schemas import BookingStartRequest, PaymentMethod
from tickethub.bookings.session_service import BookingSessionService
from tickethub.database import init_db
from tickethub.models import DiscountVoucher, Trip

CUSTOMER_ID = 5550001


class FakeNotifier:
    """Records messages instead of calling the Telegram API."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.messages: List[Tuple[int, str]] = []

    @property
    def enabled(self) -> bool:
        return True

    def send_message(self, chat_id: int, text: str) -> bool:
        self.messages.append((chat_id, text))
        return self.succeed


@pytest.fixture()
def engine():
    """
    Isolated SQLite engine per test.
    StaticPool keeps the in-memory database alive across threads so the
    FastAPI TestClient sees the same data as the test body.
    """

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session: Session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def actor():
    return AdminActor(id="admin-1", username="ops")


@pytest.fixture()
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_trip(
    db: Session,
    seats: int = 5,
    price: str = "100",
    name: str = "Lalibela Weekend",
    allow_gnpl: bool = False,
    status: str = "active",
) -> Trip:
    trip = Trip(
        name=name,
        price_per_ticket=Decimal(price),
        total_seats=seats,
        available_seats=seats,
        status=status,
        allow_gnpl=allow_gnpl,
    )
    db.add(trip)
    db.commit()
    db.refresh(trip)
    return trip


def make_voucher(db: Session, code: str = "SAVE10", percent: str = "10", **kwargs) -> DiscountVoucher:
    voucher = DiscountVoucher(code=code, discount_percent=Decimal(percent), **kwargs)
    db.add(voucher)
    db.commit()
    db.refresh(voucher)
    return voucher


def start_request(trip: Trip, method: PaymentMethod = PaymentMethod.BANK, quantity: int = 1, **kwargs) -> BookingStartRequest:
    data = {
        "trip_id": trip.id,
        "payment_method": method,
        "quantity": quantity,
        "customer_name": "Selam Tesfaye",
        "phone_number": "+251 (911) 234-567",
    }
    data.update(kwargs)
    return BookingStartRequest(**data)


def start_booking(db: Session, trip: Trip, method: PaymentMethod = PaymentMethod.BANK, quantity: int = 1,
                  customer_id: int = CUSTOMER_ID, **kwargs):
    return BookingSessionService(db).start_booking(customer_id, start_request(trip, method, quantity, **kwargs))
