"""Utility helpers for EventHub."""

from __future__ import annotations

from datetime import UTC, datetime
import re
import unicodedata
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.orm import Session

_slug_invalid = re.compile(r"[^a-z0-9]+")
_hex_color_pattern = re.compile(r"^#[0-9A-Fa-f]{6}$")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a canonical slug suitable for URLs."""
    value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    value = value.strip().lower()
    value = _slug_invalid.sub("-", value)
    value = value.strip("-")
    return value


def unique_slug(
    session: Session,
    model,
    base: str,
    *,
    exclude_id: str | None = None,
    max_length: int | None = None,
    fallback: str = "item",
) -> str:
    """Return ``base`` or ``base-N`` such that no other row of ``model`` uses it.

    ``model`` needs ``id`` and ``slug`` columns. ``exclude_id`` lets a row keep
    its own slug when it is renamed.
    """
    slug = slugify(base)
    if max_length:
        slug = slug[:max_length].rstrip("-")
    slug = slug or fallback

    def taken(candidate: str) -> bool:
        stmt = select(model.id).where(model.slug == candidate)
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        return session.scalars(stmt).first() is not None

    candidate = slug
    counter = 1
    while taken(candidate):
        candidate = f"{slug}-{counter}"
        counter += 1
    return candidate


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def is_valid_email(value: str | None) -> bool:
    """Return True when ``value`` is a syntactically valid address.

    Deliverability is not checked, so no DNS lookups happen here.
    """
    if not value:
        return False
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def is_valid_hex_color(value: str | None) -> bool:
    return bool(_hex_color_pattern.match(value or ""))


def is_valid_timezone(name: str | None) -> bool:
    """Return True when ``name`` is a known IANA timezone identifier."""
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
