"""
Provider Payload Normalization

Every provider payload the engine consumes passes through one of these
typed structs. Each field is populated by trying a fixed list of source
keys in priority order, so naming differences between providers
(`accessToken` vs `access_token`, `numAvail` vs `availability`, ...)
stop at this module.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

# Source keys, highest priority first
TOKEN_KEYS = ("token", "access_token", "accessToken")
EXPIRES_IN_KEYS = ("expiresIn", "expires_in", "expires")
REFRESH_KEYS = ("refreshToken", "refresh_token")
SCOPE_KEYS = ("scopes", "scope")
ACCOUNT_KEYS = ("accountId", "account_id", "ownerId")

BOOKING_ID_KEYS = ("bookingId", "id", "booking_id", "bookId")
PROPERTY_ID_KEYS = ("propertyId", "property_id", "propId")
ROOM_ID_KEYS = ("roomId", "room_id", "roomTypeId", "room_type_id")
RATE_CODE_KEYS = ("ratePlanCode", "rateCode", "rate_plan_code", "rateId")
ARRIVAL_KEYS = ("arrival", "arrival_date", "checkIn", "check_in")
DEPARTURE_KEYS = ("departure", "departure_date", "checkOut", "check_out")
ADULT_KEYS = ("numAdult", "adults", "num_adults")
CHILD_KEYS = ("numChild", "children", "num_children")
FIRST_NAME_KEYS = ("firstName", "first_name", "guestFirstName")
LAST_NAME_KEYS = ("lastName", "last_name", "guestName", "guestLastName")
EMAIL_KEYS = ("email", "guestEmail")
PHONE_KEYS = ("mobile", "phone", "guestPhone")
NATIONALITY_KEYS = ("country", "nationality", "country2")
PRICE_KEYS = ("price", "totalPrice", "total_amount", "total")
CURRENCY_KEYS = ("currency", "currencyCode")
NOTES_KEYS = ("comment", "notes", "guestComments")
MODIFIED_KEYS = ("modified", "modifiedTime", "updated_at")
INVOICE_KEYS = ("invoiceItems", "invoice_items", "charges")
INFO_KEYS = ("infoItems", "info_items")

# Calendar fields: normalized name -> source keys
CALENDAR_FIELD_KEYS = {
    "price1": ("price1", "rate", "price"),
    "numAvail": ("numAvail", "availability", "num_avail"),
    "stopSell": ("stopSell", "stop_sell"),
    "closedArrival": ("closedArrival", "closeOnArrival", "closed_to_arrival"),
    "closedDeparture": ("closedDeparture", "closeOnDeparture", "closed_to_departure"),
    "minStay": ("minStay", "min_stay"),
    "maxStay": ("maxStay", "max_stay"),
}


def first_present(payload: Mapping[str, Any], keys: Iterable[str], default: Any = None) -> Any:
    """Value of the first key present with a non-empty value"""
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return default


def unwrap(payload: Any) -> Any:
    """Strip the common {"data": ...} envelope"""
    if isinstance(payload, dict) and "data" in payload and not any(k in payload for k in TOKEN_KEYS):
        return payload["data"]
    return payload


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    # Stored naive in UTC
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


# ==============================================
# Auth
# ==============================================

@dataclass
class TokenGrant:
    """Result of a setup-code exchange or a token refresh"""
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    account_id: Optional[str] = None

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)

    @classmethod
    def from_payload(cls, payload: Any, default_expires_in: int = 86400) -> "TokenGrant":
        payload = unwrap(payload)
        if not isinstance(payload, dict):
            raise ValueError("Token response is not an object")

        access_token = first_present(payload, TOKEN_KEYS)
        if not access_token:
            raise ValueError("Token response carries no access token")

        scopes = first_present(payload, SCOPE_KEYS, [])
        if isinstance(scopes, str):
            scopes = [s for s in scopes.replace(",", " ").split() if s]

        account_id = first_present(payload, ACCOUNT_KEYS)
        return cls(
            access_token=str(access_token),
            expires_in=to_int(first_present(payload, EXPIRES_IN_KEYS), default_expires_in),
            refresh_token=first_present(payload, REFRESH_KEYS),
            scopes=list(scopes),
            account_id=str(account_id) if account_id is not None else None,
        )


# ==============================================
# Rate-limit telemetry
# ==============================================

@dataclass
class UsageSnapshot:
    """Rate-limit telemetry read from one response"""
    remaining: Optional[int] = None
    resets_in: Optional[float] = None
    request_cost: Optional[int] = None
    retry_after: Optional[float] = None

    @property
    def has_data(self) -> bool:
        return self.remaining is not None or self.resets_in is not None or self.request_cost is not None

    @property
    def wait_hint(self) -> Optional[float]:
        """Seconds the provider says to wait, if it said anything"""
        if self.retry_after is not None:
            return self.retry_after
        return self.resets_in

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        remaining_header: str,
        resets_in_header: str,
        cost_header: str
    ) -> "UsageSnapshot":
        def number(name: str) -> Optional[float]:
            raw = headers.get(name)
            if raw is None or raw == "":
                return None
            try:
                return float(raw)
            except ValueError:
                return None

        remaining = number(remaining_header)
        cost = number(cost_header)
        return cls(
            remaining=int(remaining) if remaining is not None else None,
            resets_in=number(resets_in_header),
            request_cost=int(cost) if cost is not None else None,
            retry_after=number("Retry-After"),
        )


# ==============================================
# ARI push / read
# ==============================================

@dataclass
class PushResponse:
    """Normalized answer to one calendar push"""
    success: bool
    modified_count: int = 0
    errors: List[Any] = field(default_factory=list)
    warnings: List[Any] = field(default_factory=list)
    info: List[Any] = field(default_factory=list)

    @staticmethod
    def _count(value: Any) -> int:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, (list, dict)):
            return len(value)
        return 0

    @staticmethod
    def _as_list(value: Any) -> List[Any]:
        if value is None:
            return []
        if isinstance(value, list):
            return value
        return [value]

    @classmethod
    def from_payload(cls, payload: Any) -> "PushResponse":
        """Accepts a single result object or a list of per-room results"""
        items = payload if isinstance(payload, list) else [payload or {}]
        result = cls(success=True)
        for item in items:
            if not isinstance(item, dict):
                continue
            result.modified_count += cls._count(item.get("modified"))
            result.errors.extend(cls._as_list(item.get("errors")))
            result.warnings.extend(cls._as_list(item.get("warnings")))
            result.info.extend(cls._as_list(item.get("info")))
            if item.get("success") is False:
                result.success = False
        if result.errors:
            result.success = False
        return result


@dataclass
class RemoteCalendarDay:
    remote_room_id: str
    day: date
    fields: Dict[str, Any]


def parse_calendar_fields(entry: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {}
    for name, keys in CALENDAR_FIELD_KEYS.items():
        for key in keys:
            if key in entry and entry[key] is not None:
                fields[name] = entry[key]
                break
    return fields


def expand_remote_calendar(payload: Any) -> List[RemoteCalendarDay]:
    """
    Flatten a calendar read into one record per (room, day).

    Entries may carry `date`, a `start:end` date, or `from`/`to`.
    """
    days: List[RemoteCalendarDay] = []
    for room in unwrap(payload) or []:
        if not isinstance(room, dict):
            continue
        room_id = str(first_present(room, ROOM_ID_KEYS, ""))
        for entry in room.get("calendar") or []:
            raw_date = str(first_present(entry, ("date", "from"), ""))
            if not raw_date:
                continue
            if ":" in raw_date:
                start_raw, end_raw = raw_date.split(":", 1)
            else:
                start_raw, end_raw = raw_date, entry.get("to") or raw_date
            start, end = parse_date(start_raw), parse_date(end_raw)
            fields = parse_calendar_fields(entry)
            current = start
            while current <= end:
                days.append(RemoteCalendarDay(room_id, current, dict(fields)))
                current += timedelta(days=1)
    return days


# ==============================================
# Bookings
# ==============================================

@dataclass
class ChargeItem:
    description: Optional[str]
    amount: Decimal
    quantity: int = 1
    charge_type: str = "Room"
    currency: Optional[str] = None


@dataclass
class BookingPayload:
    """Normalized inbound booking"""
    remote_booking_id: str
    remote_property_id: Optional[str]
    remote_room_id: Optional[str]
    remote_rate_code: Optional[str]
    arrival: date
    departure: date
    adults: int
    children: int
    status: str
    first_name: Optional[str]
    last_name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    nationality: Optional[str]
    total_amount: Optional[Decimal]
    currency: str
    notes: Optional[str]
    modified_at: Optional[datetime]
    charges: List[ChargeItem] = field(default_factory=list)
    info_items: List[Any] = field(default_factory=list)

    def guest_dict(self) -> Dict[str, Any]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "nationality": self.nationality,
        }

    def booking_dict(self) -> Dict[str, Any]:
        return {
            "remote_booking_id": self.remote_booking_id,
            "remote_property_id": self.remote_property_id,
            "remote_room_id": self.remote_room_id,
            "remote_rate_code": self.remote_rate_code,
            "arrival": self.arrival.isoformat(),
            "departure": self.departure.isoformat(),
            "adults": self.adults,
            "children": self.children,
            "status": self.status,
            "total_amount": str(self.total_amount) if self.total_amount is not None else None,
            "currency": self.currency,
        }

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "BookingPayload":
        """
        Raises ValueError when the booking id or stay dates are missing.
        Guest fields fall back to the first nested guest record.
        """
        if not isinstance(raw, Mapping):
            raise ValueError("Booking payload is not an object")

        booking_id = first_present(raw, BOOKING_ID_KEYS)
        if booking_id is None:
            raise ValueError("Booking payload carries no booking id")

        arrival = parse_date(first_present(raw, ARRIVAL_KEYS))
        departure = parse_date(first_present(raw, DEPARTURE_KEYS))
        if not arrival or not departure:
            raise ValueError(f"Booking {booking_id} has no arrival/departure")
        if departure < arrival:
            raise ValueError(f"Booking {booking_id} departs before it arrives")

        guest = raw.get("guest") if isinstance(raw.get("guest"), Mapping) else {}
        guests = raw.get("guests")
        if not guest and isinstance(guests, Sequence) and guests and isinstance(guests[0], Mapping):
            guest = guests[0]

        def guest_value(keys):
            return first_present(raw, keys) or first_present(guest, keys)

        currency = first_present(raw, CURRENCY_KEYS, "USD")
        charges = []
        for item in first_present(raw, INVOICE_KEYS, []) or []:
            if not isinstance(item, Mapping):
                continue
            charges.append(ChargeItem(
                description=first_present(item, ("description", "name", "text")),
                amount=to_decimal(first_present(item, ("amount", "price", "lineTotal")), Decimal("0")),
                quantity=to_int(first_present(item, ("qty", "quantity")), 1),
                charge_type=first_present(item, ("type", "charge_type"), "Room"),
                currency=first_present(item, CURRENCY_KEYS, currency),
            ))

        email = guest_value(EMAIL_KEYS)
        property_id = first_present(raw, PROPERTY_ID_KEYS)
        room_id = first_present(raw, ROOM_ID_KEYS)
        rate_code = first_present(raw, RATE_CODE_KEYS)

        return cls(
            remote_booking_id=str(booking_id),
            remote_property_id=str(property_id) if property_id is not None else None,
            remote_room_id=str(room_id) if room_id is not None else None,
            remote_rate_code=str(rate_code) if rate_code is not None else None,
            arrival=arrival,
            departure=departure,
            adults=to_int(first_present(raw, ADULT_KEYS), 1),
            children=to_int(first_present(raw, CHILD_KEYS), 0),
            status=str(raw.get("status") or "confirmed").lower(),
            first_name=guest_value(FIRST_NAME_KEYS),
            last_name=guest_value(LAST_NAME_KEYS),
            email=email.strip().lower() if isinstance(email, str) else None,
            phone=guest_value(PHONE_KEYS),
            nationality=guest_value(NATIONALITY_KEYS),
            total_amount=to_decimal(first_present(raw, PRICE_KEYS)),
            currency=currency,
            notes=first_present(raw, NOTES_KEYS),
            modified_at=parse_datetime(first_present(raw, MODIFIED_KEYS)),
            charges=charges,
            info_items=list(first_present(raw, INFO_KEYS, []) or []),
        )
