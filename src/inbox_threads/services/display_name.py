from __future__ import annotations

from typing import Iterable

from inbox_threads.services.errors import ValidationError

DEFAULT_RESERVED_NAMES = (
    "admin",
    "administrator",
    "support",
    "user",
    "customer",
    "help",
    "service",
)
DEFAULT_MIN_LENGTH = 2


def validate_display_name(
    name: str | None,
    *,
    min_length: int = DEFAULT_MIN_LENGTH,
    reserved_names: Iterable[str] = DEFAULT_RESERVED_NAMES,
) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Please set your display name before generating a reply.")
    if len(cleaned) < max(1, min_length):
        raise ValidationError(f"Display name must be at least {min_length} characters long.")
    reserved = {value.strip().lower() for value in reserved_names}
    if cleaned.lower() in reserved:
        raise ValidationError(
            f"'{cleaned}' is too generic to sign a reply with. Please use your own name."
        )
    return cleaned


def is_valid_display_name(name: str | None, **kwargs) -> bool:
    try:
        validate_display_name(name, **kwargs)
    except ValidationError:
        return False
    return True
