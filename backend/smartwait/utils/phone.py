"""Phone number helpers shared by check-in validation, SMS delivery and logging."""

import re

# Characters accepted at check-in before normalization
PHONE_INPUT_PATTERN = re.compile(r"^\+?[\d\s\-\(\)]+$")

# US numbers in E.164 form, as accepted by the SMS transport
US_E164_PATTERN = re.compile(r"^\+1[2-9]\d{2}[2-9]\d{2}\d{4}$")

_NON_DIGITS = re.compile(r"\D")


def digits_only(phone: str) -> str:
    return _NON_DIGITS.sub("", phone or "")


def normalize_phone(phone: str) -> str:
    """
    Normalize a phone number for storage.

    10 digits get a +1 prefix, 11 digits starting with 1 get a + prefix and
    other international numbers keep their digits behind a single +.
    """
    digits = digits_only(phone)

    if len(digits) == 10:
        return f"+1{digits}"

    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"

    if digits and (phone.strip().startswith("+") or len(digits) > 10):
        return f"+{digits}"

    return phone.strip()


def is_valid_phone_input(phone: str) -> bool:
    """Loose check applied to raw check-in input"""
    if not phone or not 10 <= len(phone) <= 20 or not PHONE_INPUT_PATTERN.match(phone):
        return False
    return len(digits_only(phone)) >= 10


def is_valid_phone(phone: str) -> bool:
    """Strict US E.164 check used before handing a number to the SMS transport"""
    return bool(US_E164_PATTERN.match(phone or ""))


def mask_phone(phone: str) -> str:
    """Mask all but the last four digits, for log output"""
    digits = digits_only(phone)
    if len(digits) < 4:
        return "*" * len(phone or "")
    return "*" * (len(digits) - 4) + digits[-4:]
