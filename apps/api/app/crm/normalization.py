"""Normalization helpers for client contact data and free text."""

from __future__ import annotations

import nh3
import phonenumbers
from email_validator import EmailNotValidError, validate_email

from app.core.config import get_settings
from app.crm.errors import InputValidationError


def normalize_name(name: str | None) -> str:
    value = (name or "").strip()
    if not value:
        raise InputValidationError("name must not be empty")
    return value


def normalize_email(email: str | None) -> str | None:
    """Validate and lowercase an email address; blank input yields None."""
    if email is None:
        return None
    value = email.strip()
    if not value:
        return None
    try:
        result = validate_email(value, check_deliverability=False)
    except EmailNotValidError as exc:
        raise InputValidationError(f"invalid email address '{email}'", details={"reason": str(exc)}) from exc
    return result.normalized.lower()


def normalize_phone(phone: str | None, default_country_code: str | None = None) -> str | None:
    """
    Normalize a phone number to E.164 (+79161234567).

    Numbers without a leading "+" (or "00") are read as national numbers of the
    default country, so "8 916 123 45 67" becomes +79161234567 for country code 7.

    Raises:
        InputValidationError: when the value is not a valid number for its country
    """
    if phone is None:
        return None
    cleaned = phone.strip()
    if not cleaned:
        return None
    if cleaned.startswith("00"):
        cleaned = f"+{cleaned[2:]}"

    country_code = default_country_code or get_settings().default_phone_country_code
    try:
        region = phonenumbers.region_code_for_country_code(int(country_code))
        parsed = phonenumbers.parse(cleaned, region)
    except (ValueError, phonenumbers.NumberParseException) as exc:
        raise InputValidationError(f"invalid phone number '{phone}'") from exc
    if not phonenumbers.is_valid_number(parsed):
        raise InputValidationError(f"invalid phone number '{phone}'")
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_custom_fields(fields: dict[str, str] | None) -> dict[str, str]:
    """Trim names and values, dropping entries where either is blank."""
    normalized: dict[str, str] = {}
    for raw_name, raw_value in (fields or {}).items():
        name = str(raw_name).strip()
        value = "" if raw_value is None else str(raw_value).strip()
        if name and value:
            normalized[name] = value
    return normalized


def sanitize_text(text: str | None) -> str:
    """Strip unsafe markup from externally supplied text."""
    if not text:
        return ""
    return nh3.clean(text)
