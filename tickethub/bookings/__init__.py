"""
Booking & Settlement Module

This module turns a customer's intent to buy trip tickets into consistent
seat counts, receipts and tickets. It includes:

- Booking session lifecycle (start, supersede, complete, cancel, expire)
- Manual receipt submission for bank and Telebirr transfers
- Atomic seat reservation and release on trips
- Settlement of confirmed payments into receipts and tickets
- Ticket numbering and QR code tagging

Key Components:
- inventory.py: SeatInventory with conditional-update reserve/release
- session_service.py: BookingSessionService for booking attempts
- settlement.py: SettlementProcessor with compensation on partial failure
- ticket_service.py: Ticket numbering, batch creation and QR codes
- router.py: FastAPI endpoints for customers and the session sweep
- schemas.py: Pydantic models, status enums and the session transition table
"""

from .router import router
from .inventory import SeatInventory
from .session_service import BookingSessionService
from .settlement import SettlementProcessor
from .ticket_service import TicketService, QRCodeGenerator
from .schemas import (
    PaymentMethod, SessionStatus, ApprovalStatus, TicketStatus,
    BookingStartRequest, BookingStartResponse, ManualReceiptRequest,
    SettlementRequest, SettlementResult
)

__all__ = [
    "router",
    "SeatInventory",
    "BookingSessionService",
    "SettlementProcessor",
    "TicketService",
    "QRCodeGenerator",
    "PaymentMethod",
    "SessionStatus",
    "ApprovalStatus",
    "TicketStatus",
    "BookingStartRequest",
    "BookingStartResponse",
    "ManualReceiptRequest",
    "SettlementRequest",
    "SettlementResult",
]
