from typing import List, Optional
from decimal import Decimal
import json
import base64
import logging
import random
import re
import time
import qrcode
from qrcode import constants
from io import BytesIO
from sqlalchemy.orm import Session

from tickethub.models import Receipt, Ticket, Trip
from tickethub.utils import utcnow

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _alnum(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "", value or "")


class QRCodeGenerator:
    """Renders ticket QR codes as PNG data URLs"""

    def __init__(self, box_size: int = 10, border: int = 4):
        self.box_size = box_size
        self.border = border

    def build_payload(self, ticket_id: str, serial_number: str) -> str:
        """Encode the data carried by the QR code"""
        qr_data = {
            "v": "1.0",
            "tid": ticket_id,
            "serial": serial_number,
        }
        json_data = json.dumps(qr_data, separators=(',', ':'))
        return base64.b64encode(json_data.encode()).decode()

    def generate(self, ticket_id: str, serial_number: str) -> str:
        qr = qrcode.QRCode(
            version=1,
            error_correction=constants.ERROR_CORRECT_M,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(self.build_payload(ticket_id, serial_number))
        qr.make(fit=True)

        qr_image = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        qr_image.save(buffer, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class TicketService:
    """Ticket numbering, batch creation and QR tagging"""

    def __init__(self, db: Session, qr_generator: Optional[QRCodeGenerator] = None):
        self.db = db
        self.qr_generator = qr_generator or QRCodeGenerator()

    @staticmethod
    def serial_prefix(trip_name: Optional[str]) -> str:
        initials = "".join(word[0] for word in (trip_name or "").split() if word)
        initials = _alnum(initials).upper()[:3]
        if not initials:
            return "TRP"
        return initials.ljust(3, "X")

    def generate_serial_number(self, trip: Trip, sequence: int) -> str:
        """Serial like ``ADT-0012-lq3k9a01482``"""
        trip_part = _alnum(str(trip.id)).upper()[:4].ljust(4, "0")
        stamp = _to_base36(int(time.time() * 1000))[-6:]
        suffix = f"{stamp}{sequence:02d}{random.randint(0, 999):03d}"
        return f"{self.serial_prefix(trip.name)}-{trip_part}-{suffix}"

    @staticmethod
    def generate_ticket_number(receipt_id: str, index: int) -> str:
        """Ticket number like ``1A2B3C4D-4821-1-07``"""
        return f"{receipt_id[:8].upper()}-{random.randint(0, 9999):04d}-{index + 1}-{random.randint(0, 99):02d}"

    def create_batch(self, receipt: Receipt, trip: Trip, status: str) -> List[Ticket]:
        """Stage ``receipt.quantity`` tickets for a receipt; the caller commits"""
        unit_price = Decimal(receipt.final_amount) / receipt.quantity if receipt.quantity else Decimal("0")
        issued_at = utcnow() if status == "confirmed" else None

        tickets = []
        for index in range(receipt.quantity):
            ticket = Ticket(
                receipt_id=receipt.id,
                trip_id=trip.id,
                customer_id=receipt.customer_id,
                serial_number=self.generate_serial_number(trip, index + 1),
                ticket_number=self.generate_ticket_number(receipt.id, index),
                purchase_price=unit_price.quantize(Decimal("0.01")),
                ticket_status=status,
                issued_at=issued_at,
            )
            self.db.add(ticket)
            tickets.append(ticket)
        self.db.flush()
        return tickets

    def attach_qr_codes(self, tickets: List[Ticket]) -> int:
        """Best-effort QR tagging; a failed ticket keeps a null QR payload"""
        attached = 0
        for ticket in tickets:
            try:
                ticket.qr_code = self.qr_generator.generate(ticket.id, ticket.serial_number)
                attached += 1
            except Exception:
                logger.warning("QR generation failed for ticket %s", ticket.id, exc_info=True)
        self.db.commit()
        return attached

    def get_receipt_tickets(self, receipt_id: str) -> List[Ticket]:
        return self.db.query(Ticket).filter(Ticket.receipt_id == receipt_id).order_by(Ticket.created_at).all()

    def count_receipt_tickets(self, receipt_id: str) -> int:
        return self.db.query(Ticket).filter(Ticket.receipt_id == receipt_id).count()
