from typing import Dict
import logging
from sqlalchemy.orm import Session

from tickethub.exceptions import InsufficientSeats, NotFound, SeatInventoryViolation, ValidationError
from tickethub.models import Trip

logger = logging.getLogger(__name__)


class SeatInventory:
    """
    Authoritative seat counter on a trip.

    Both operations are single conditional UPDATE statements committed
    immediately, so two requests racing for the last seats can never both
    succeed. A zero row count is re-read to report the current state.
    """

    def __init__(self, db: Session):
        self.db = db

    def _get_trip(self, trip_id: int) -> Trip:
        trip = self.db.query(Trip).filter(Trip.id == trip_id).first()
        if trip is None:
            raise NotFound("Trip not found", trip_id=trip_id)
        return trip

    def available(self, trip_id: int) -> int:
        return self._get_trip(trip_id).available_seats

    def reserve(self, trip_id: int, quantity: int) -> int:
        """Decrement available seats by ``quantity``; returns the remaining count"""
        if quantity <= 0:
            raise ValidationError("Quantity must be a positive integer", quantity=quantity)

        updated = (
            self.db.query(Trip)
            .filter(Trip.id == trip_id, Trip.available_seats >= quantity)
            .update({Trip.available_seats: Trip.available_seats - quantity}, synchronize_session=False)
        )
        self.db.commit()

        trip = self._get_trip(trip_id)
        if not updated:
            raise InsufficientSeats(available=trip.available_seats, requested=quantity)

        logger.info("Reserved %s seats on trip %s (%s left)", quantity, trip_id, trip.available_seats)
        return trip.available_seats

    def release(self, trip_id: int, quantity: int) -> int:
        """Increment available seats by ``quantity``; over-release is an invariant violation"""
        if quantity <= 0:
            raise ValidationError("Quantity must be a positive integer", quantity=quantity)

        updated = (
            self.db.query(Trip)
            .filter(Trip.id == trip_id, Trip.available_seats + quantity <= Trip.total_seats)
            .update({Trip.available_seats: Trip.available_seats + quantity}, synchronize_session=False)
        )
        self.db.commit()

        trip = self._get_trip(trip_id)
        if not updated:
            logger.error(
                "Seat release of %s on trip %s would exceed total seats (%s/%s available)",
                quantity, trip_id, trip.available_seats, trip.total_seats
            )
            raise SeatInventoryViolation(
                "Seat release would exceed trip capacity",
                trip_id=trip_id,
                available=trip.available_seats,
                total=trip.total_seats,
                requested=quantity,
            )

        logger.info("Released %s seats on trip %s (%s left)", quantity, trip_id, trip.available_seats)
        return trip.available_seats

    def reserve_many(self, quantities: Dict[int, int]) -> None:
        """Reserve several trips; already-reserved trips are released if a later one fails"""
        reserved = []
        try:
            for trip_id, quantity in quantities.items():
                self.reserve(trip_id, quantity)
                reserved.append((trip_id, quantity))
        except Exception:
            for trip_id, quantity in reserved:
                self.release(trip_id, quantity)
            raise

    def release_many(self, quantities: Dict[int, int]) -> None:
        for trip_id, quantity in quantities.items():
            self.release(trip_id, quantity)
