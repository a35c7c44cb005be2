from __future__ import annotations

import re
import unicodedata
from typing import Optional
from urllib.parse import urlparse

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50
PASSWORD_MIN_LENGTH = 6
# Bounds argon2 work per request
PASSWORD_MAX_LENGTH = 128
URL_MAX_LENGTH = 2048

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_unicode(value: str) -> str:
    """NFKC-normalize so compatibility forms of the same address compare equal."""
    return unicodedata.normalize("NFKC", value)


def normalize_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # Fold case after NFKC; some compatibility capitals only become ASCII under NFKC
    normalized = normalize_unicode(value.strip()).lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("name must be a string")
    name = value.strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise ValueError(
            f"name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters"
        )
    return name


def validate_password(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


def validate_profile_image_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("profile_image_url must be a string")
    url = value.strip()
    if len(url) > URL_MAX_LENGTH:
        raise ValueError("profile_image_url too long")
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("profile_image_url must be a valid http(s) URL")
    return url


__all__ = [
    "normalize_email",
    "normalize_unicode",
    "validate_name",
    "validate_password",
    "validate_profile_image_url",
]
