from typing import List, Optional
from datetime import date, datetime
import logging
import re
from sqlalchemy.orm import Session

from tickethub.admin.audit_service import AuditService
from tickethub.admin.schemas import AuditAction, CheckinResult, CheckinTicketOut
from tickethub.auth.schemas import AdminActor
from tickethub.bookings.schemas import TicketStatus
from tickethub.exceptions import InvalidStateTransition, NotFound, ValidationError
from tickethub.models import Receipt, Ticket, Trip
from tickethub.utils import utcnow

logger = logging.getLogger(__name__)

SEARCHABLE_STATUSES = [TicketStatus.CONFIRMED.value, TicketStatus.USED.value]


class CheckinService:
    """Boarding check-in: confirmed tickets become used, once"""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    def _get_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.db.query(Ticket).filter(Ticket.id == ticket_id).first()
        if ticket is None:
            raise NotFound("Ticket not found", ticket_id=ticket_id)
        return ticket

    @staticmethod
    def to_out(ticket: Ticket) -> CheckinTicketOut:
        trip = ticket.trip
        receipt = ticket.receipt
        return CheckinTicketOut(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            serial_number=ticket.serial_number,
            status=ticket.ticket_status,
            trip_id=ticket.trip_id,
            trip_name=trip.name if trip else "Trip",
            destination=trip.destination if trip else None,
            departure_date=trip.departure_date if trip else None,
            customer_id=ticket.customer_id,
            customer_name=receipt.customer_name if receipt else None,
            phone_number=receipt.phone_number if receipt else None,
            reference_number=receipt.reference_number if receipt else None,
            checked_in_at=ticket.checked_in_at,
        )

    def search(self, phone: Optional[str] = None, ticket_id: Optional[str] = None,
               trip_date: Optional[date] = None, limit: int = 200) -> List[CheckinTicketOut]:
        """Find boardable tickets by id, or by the buyer's phone number"""
        query = self.db.query(Ticket).join(Receipt, Ticket.receipt_id == Receipt.id).join(Trip, Ticket.trip_id == Trip.id)
        if ticket_id:
            query = query.filter(Ticket.id == ticket_id)
        else:
            digits = re.sub(r"\D", "", phone or "")
            if not digits:
                raise ValidationError("phone is required")
            query = query.filter(
                Receipt.phone_number.contains(digits, autoescape=True),
                Ticket.ticket_status.in_(SEARCHABLE_STATUSES),
            )
        if trip_date:
            query = query.filter(Trip.departure_date == trip_date)
        tickets = query.order_by(Ticket.created_at.desc()).limit(limit).all()
        return [self.to_out(t) for t in tickets]

    def check_in(self, ticket_id: str, actor: AdminActor, trip_date: Optional[date] = None,
                 now: Optional[datetime] = None) -> CheckinResult:
        """Mark a confirmed ticket used; only allowed on the trip's departure day"""
        now = now or utcnow()
        requested = trip_date or now.date()
        ticket = self._get_ticket(ticket_id)

        departure = ticket.trip.departure_date if ticket.trip else None
        if departure and requested != departure:
            raise ValidationError(
                f"This ticket is for {departure.isoformat()}. Check-in is allowed only on trip day.",
                departure_date=departure.isoformat(),
            )

        if ticket.ticket_status == TicketStatus.USED.value:
            return CheckinResult(message="Ticket already checked in", already_checked_in=True, ticket=self.to_out(ticket))
        if ticket.ticket_status != TicketStatus.CONFIRMED.value:
            raise InvalidStateTransition(
                "Only confirmed tickets can be checked in",
                ticket_id=ticket.id,
                ticket_status=ticket.ticket_status,
            )

        updated = (
            self.db.query(Ticket)
            .filter(Ticket.id == ticket.id, Ticket.ticket_status == TicketStatus.CONFIRMED.value)
            .update(
                {Ticket.ticket_status: TicketStatus.USED.value, Ticket.checked_in_at: now},
                synchronize_session=False,
            )
        )
        self.db.commit()
        self.db.refresh(ticket)

        if not updated:
            if ticket.ticket_status == TicketStatus.USED.value:
                return CheckinResult(message="Ticket already checked in", already_checked_in=True, ticket=self.to_out(ticket))
            raise InvalidStateTransition(
                "Ticket changed while checking in",
                ticket_id=ticket.id,
                ticket_status=ticket.ticket_status,
            )

        self.audit.log(
            actor, AuditAction.TICKET_CHECKIN, "ticket", ticket.id,
            details={
                "ticket_number": ticket.ticket_number,
                "trip_id": ticket.trip_id,
                "trip_date": departure.isoformat() if departure else None,
                "check_in_date": requested.isoformat(),
            },
        )
        logger.info("Ticket %s checked in by %s", ticket.ticket_number, actor.id)

        return CheckinResult(message="Ticket checked in", ticket=self.to_out(ticket))
