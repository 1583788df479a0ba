"""
Bitrix deal transform
Maps raw crm.deal.list records onto the internal order shape
"""
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pydantic import ValidationError
from opsportal.core.exceptions import TransformException
from opsportal.schemas import OrderRecord

# Custom deal fields
UF_ADDRESS = "UF_CRM_1681747087033"
UF_CUSTOMER_NAME = "UF_CRM_1681645659170"
UF_MOBILE = "UF_CRM_1681974166046"
UF_ORDER_NUMBER = "UF_CRM_1681649038953"
UF_AMOUNT_CURRENCY = "UF_CRM_1681648179537"
UF_PACKAGE_PARTNER = "UF_CRM_1681749732453"
UF_SERVICE_DATE = "UF_CRM_1681648036958"
UF_ORDER_TIME = "UF_CRM_1681647842342"
UF_COMMISSION = "UF_CRM_1681648200083"
UF_ADVANCE_AMOUNT = "UF_CRM_1681648284105"
UF_TAXES_AND_FEES = "UF_CRM_1723904458952"
UF_SLOT_TIME = "UF_CRM_1681747291577"

# Legacy deals carry everything in the title:
# "Mode : Cod,Package :AC Service (1 AC) By : OM Cooling Centre,Order : Nus87638,Mb : 98..."
TITLE_PATTERNS = {
    "mode": re.compile(r"Mode\s*:\s*([^,]+?)(?=,|$)"),
    "package": re.compile(r"Package\s*:\s*([^,]+?)(?=\s+By\s*:|,|$)"),
    "partner": re.compile(r"By\s*:\s*([^,]+?)(?=,|$)"),
    "order_number": re.compile(r"Order\s*:\s*([^,]+?)(?=,|$)"),
    "mobile_number": re.compile(r"Mb\s*:\s*(\d+)"),
    "order_date": re.compile(r"Date\s*:\s*([^,]+?)(?=\s*Time|,|$)"),
    "order_time": re.compile(r"Time\s*:\s*([^,]+?)(?=,|$)"),
    "order_total": re.compile(r"Order Total\s*:\s*([^,]+?)(?=,|$)"),
    "address": re.compile(r"Address\s*:\s*([^,]+?)(?=,|$)"),
    "city": re.compile(r"City\s*:\s*([^,]+?)(?=,|$)"),
    "pin_code": re.compile(r"Pin\s*:\s*([^,]+?)(?=,|$)"),
}

PIN_CODE_RE = re.compile(r"(\d{6})")
TRAILING_PIN_CODE_RE = re.compile(r"\s*\d{6}\s*,?\s*$")
NUMERIC_ONLY_RE = re.compile(r"^\d+$")

STAGE_STATUS_MAP = {
    "NEW": "new",
    "C2:PREPAYMENT_INVOICE": "pending",
    "C2:EXECUTING": "in_progress",
    "C2:FINAL_INVOICE": "completed",
    "C2:WON": "completed",
    "WON": "completed",
    "C2:LOSE": "cancelled",
    "LOSE": "cancelled",
}


def map_stage_to_status(stage_id: Optional[str]) -> str:
    """Map a Bitrix24 STAGE_ID to the portal order status"""
    return STAGE_STATUS_MAP.get(stage_id or "", "pending")


def is_valid_order_number(order_number: Optional[str]) -> bool:
    """Business order numbers look like 'Nus87638'; bare numeric ids are deal ids, not orders"""
    if not order_number or not order_number.strip():
        return False
    return not NUMERIC_ONLY_RE.match(order_number.strip())


def parse_bitrix_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a Bitrix ISO timestamp into a naive UTC datetime"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise TransformException(f"Invalid Bitrix timestamp: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_amount(value: Any) -> float:
    """Parse '1,250.00 INR' / '510' style amounts"""
    if value is None or value == "":
        return 0.0
    cleaned = re.sub(r"[^\d.]", "", str(value)).strip(".")
    if not cleaned:
        return 0.0
    try:
        return float(cleaned)
    except ValueError:
        raise TransformException(f"Invalid amount: {value!r}")


def parse_address(raw_address: Optional[str]) -> Dict[str, str]:
    """Split 'Plot no :192,Dibbapalem, Srinagar, Visakhapatnam , 530026, ' into parts"""
    if not raw_address:
        return {"address": "", "city": "", "pin_code": ""}

    parts = [part.strip() for part in raw_address.split(",")]
    parts = [part for part in parts if part]
    pin_match = PIN_CODE_RE.search(raw_address)
    pin_code = pin_match.group(1) if pin_match else ""

    city = ""
    if len(parts) >= 2:
        # Last part is the PIN code when present
        city = parts[-2] if pin_code and parts[-1] == pin_code else parts[-1]

    address = TRAILING_PIN_CODE_RE.sub("", raw_address).strip().rstrip(",").strip()
    return {"address": address, "city": city, "pin_code": pin_code}


def parse_title(title: str) -> Dict[str, Optional[str]]:
    parsed = {}
    for key, pattern in TITLE_PATTERNS.items():
        match = pattern.search(title)
        parsed[key] = match.group(1).strip() if match else None
    return parsed


def _text(deal: Dict[str, Any], key: str) -> Optional[str]:
    value = deal.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, list):
        value = value[0] if value else None
        if value is None:
            return None
    return str(value).strip() or None


def transform_deal_to_order(deal: Dict[str, Any]) -> OrderRecord:
    """Transform a Bitrix24 deal into an OrderRecord.

    Custom UF_CRM_* fields win; the free-text TITLE fills whatever they leave out.
    Raises TransformException for deals that cannot be mapped.
    """
    if not isinstance(deal, dict):
        raise TransformException("Deal payload is not an object")

    deal_id = _text(deal, "ID")
    title = _text(deal, "TITLE")
    if not deal_id:
        raise TransformException("Deal has no ID", {"deal": str(deal)[:200]})
    if not title:
        raise TransformException(f"Deal {deal_id} has no TITLE", {"deal_id": deal_id})

    from_title = parse_title(title)

    package_partner = _text(deal, UF_PACKAGE_PARTNER) or ""
    package_name, _, partner_name = package_partner.partition(" By : ")
    package_name = package_name.strip() or from_title["package"]
    partner_name = partner_name.strip() or from_title["partner"]

    currency = _text(deal, "CURRENCY_ID") or "INR"
    amount_currency = _text(deal, UF_AMOUNT_CURRENCY)
    if amount_currency:
        raw_amount, _, raw_currency = amount_currency.partition("|")
        amount = parse_amount(raw_amount)
        currency = raw_currency.strip() or currency
    elif from_title["order_total"]:
        amount = parse_amount(from_title["order_total"])
    else:
        amount = parse_amount(deal.get("OPPORTUNITY"))

    address_parts = parse_address(_text(deal, UF_ADDRESS))
    service_date = _text(deal, UF_SERVICE_DATE)
    order_date = from_title["order_date"]
    if service_date:
        parsed_service_date = parse_bitrix_datetime(service_date)
        order_date = parsed_service_date.date().isoformat()
    time_slot = _text(deal, UF_ORDER_TIME) or _text(deal, UF_SLOT_TIME) or from_title["order_time"]
    stage_id = _text(deal, "STAGE_ID")

    try:
        return OrderRecord(
            bitrix24_id=deal_id,
            title=title,
            mode=from_title["mode"] or "online",
            package=package_name,
            partner=partner_name,
            order_number=_text(deal, UF_ORDER_NUMBER) or from_title["order_number"],
            mobile_number=_text(deal, UF_MOBILE) or from_title["mobile_number"],
            customer_name=_text(deal, UF_CUSTOMER_NAME),
            address=address_parts["address"] or from_title["address"],
            city=address_parts["city"] or from_title["city"],
            pin_code=address_parts["pin_code"] or from_title["pin_code"],
            order_date=order_date,
            order_time=time_slot,
            time_slot=time_slot,
            service_date=service_date,
            service_type=package_name,
            commission_percentage=_text(deal, UF_COMMISSION),
            advance_amount=_text(deal, UF_ADVANCE_AMOUNT),
            taxes_and_fees=_text(deal, UF_TAXES_AND_FEES),
            stage_id=stage_id,
            stage_semantic_id=_text(deal, "STAGE_SEMANTIC_ID"),
            status=map_stage_to_status(stage_id),
            currency=currency,
            amount=amount,
            contact_id=_text(deal, "CONTACT_ID"),
            assigned_by_id=_text(deal, "ASSIGNED_BY_ID"),
            category_id=_text(deal, "CATEGORY_ID"),
            source_id=_text(deal, "SOURCE_ID"),
            comments=_text(deal, "COMMENTS"),
            is_closed=deal.get("CLOSED") == "Y",
            is_new=deal.get("IS_NEW") == "Y",
            date_created=parse_bitrix_datetime(_text(deal, "DATE_CREATE")),
            date_modified=parse_bitrix_datetime(_text(deal, "DATE_MODIFY")),
        )
    except ValidationError as e:
        raise TransformException(f"Deal {deal_id} failed validation", {"errors": str(e)})
