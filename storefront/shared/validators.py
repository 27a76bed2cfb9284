"""Shared validation utilities"""

import re
from typing import Optional


def normalize_phone(phone: Optional[str], default_country_code: str = "1") -> Optional[str]:
    """
    Best-effort normalization of a phone number to E.164 for Square.

    - Already "+"-prefixed numbers pass through (digits only)
    - 10 digits are assumed to be national numbers and get the default country code
    - 11 digits starting with the country code get a "+"
    - Anything else is returned stripped, for Square to judge

    Returns None for empty input.
    """
    if not phone or not phone.strip():
        return None

    phone = phone.strip()
    digits = re.sub(r"\D", "", phone)

    if phone.startswith("+"):
        return f"+{digits}"

    if len(digits) == 10:
        return f"+{default_country_code}{digits}"

    if len(digits) == 11 and digits.startswith(default_country_code):
        return f"+{digits}"

    return phone


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Args:
        email: Email address string

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()

    # Basic email validation pattern
    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

    if not re.match(email_pattern, email):
        raise ValueError("Invalid email format")

    return email
