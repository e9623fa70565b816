from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl
import json
import re

from tickethub.payments.schemas import CallbackInput

SESSION_ID_KEYS = ("sessionId", "session_id")
CUSTOMER_ID_KEYS = ("telegramUserId", "telegram_user_id")
TRIP_ID_KEYS = ("tripId", "trip_id")
TRANSACTION_ID_KEYS = (
    "transactionId",
    "transaction_id",
    "reference",
    "outTradeNo",
    "tradeNo",
    "trxId",
    "prepay_id",
    "prepayId",
    "merch_order_id",
    "merchOrderId",
    "out_trade_no",
)
STATUS_KEYS = ("status", "tradeStatus", "trade_status", "result", "resultCode", "respCode")
DISCOUNT_CODE_KEYS = ("discountCode", "discount_code")
RAW_REQUEST_KEYS = ("rawRequest", "raw_request")
NESTED_KEYS = ("result", "data", "biz_content", "bizContent")

SUCCESS_STATUSES = {"success", "paid", "confirmed", "completed", "successful", "ok", "0", "succeed"}

UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}", re.IGNORECASE
)


def pick_string(source: Any, keys: Tuple[str, ...]) -> str:
    """First non-empty scalar value under any of ``keys``"""
    if not isinstance(source, Mapping):
        return ""
    for key in keys:
        value = source.get(key)
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def extract_session_id(transaction_id: str) -> str:
    """Session UUID embedded in a merchant transaction reference, if any"""
    match = UUID_PATTERN.search(transaction_id or "")
    return match.group(0).lower() if match else ""


def is_successful_payment(status: str) -> bool:
    return (status or "").strip().lower() in SUCCESS_STATUSES


def decode_body(raw_body: bytes) -> Dict[str, Any]:
    """Decode a JSON or form-encoded callback body into a dict"""
    if not raw_body:
        return {}
    text = raw_body.decode("utf-8", errors="replace").strip()
    if not text:
        return {}
    try:
        payload = json.loads(text)
    except ValueError:
        return dict(parse_qsl(text, keep_blank_values=True))
    if isinstance(payload, dict):
        for key in NESTED_KEYS:
            # Some gateways send nested objects as JSON strings
            if isinstance(payload.get(key), str):
                try:
                    nested = json.loads(payload[key])
                except ValueError:
                    continue
                if isinstance(nested, dict):
                    payload[key] = nested
        return payload
    return {}


class CallbackParser:
    """
    Maps loosely structured gateway callbacks onto a typed CallbackInput.

    Each field is looked up through its aliases in priority order across
    the sources: payload root, nested result/data/biz_content objects, the
    url-encoded ``rawRequest`` string, then the query string.
    """

    def _sources(self, payload: Mapping[str, Any], query: Mapping[str, str]) -> List[Mapping[str, Any]]:
        nested = [payload.get(key) for key in NESTED_KEYS if isinstance(payload.get(key), Mapping)]
        return [payload] + nested + [self._raw_request(payload, nested), query]

    @staticmethod
    def _raw_request(payload: Mapping[str, Any], nested: List[Mapping[str, Any]]) -> Dict[str, str]:
        raw = ""
        for source in [payload] + nested:
            raw = pick_string(source, RAW_REQUEST_KEYS)
            if raw:
                break
        if not raw:
            return {}
        raw = raw.replace("\r", "").replace("\n", "").strip()
        return dict(parse_qsl(raw, keep_blank_values=True))

    @staticmethod
    def _first(sources: List[Mapping[str, Any]], keys: Tuple[str, ...]) -> str:
        for source in sources:
            value = pick_string(source, keys)
            if value:
                return value
        return ""

    def parse(self, payload: Optional[Mapping[str, Any]], query: Optional[Mapping[str, str]] = None) -> CallbackInput:
        payload = payload if isinstance(payload, Mapping) else {}
        sources = self._sources(payload, query or {})

        customer_raw = self._first(sources, CUSTOMER_ID_KEYS)
        trip_raw = self._first(sources, TRIP_ID_KEYS)

        return CallbackInput(
            session_id=self._first(sources, SESSION_ID_KEYS) or None,
            customer_id=int(customer_raw) if customer_raw.isdigit() else None,
            trip_id=int(trip_raw) if trip_raw.isdigit() else None,
            transaction_id=self._first(sources, TRANSACTION_ID_KEYS),
            payment_status=self._first(sources, STATUS_KEYS).lower(),
            discount_code=self._first(sources, DISCOUNT_CODE_KEYS) or None,
        )
