"""Field-level visibility of a user's presence and profile data.

Every decision is made with the *owner's* settings, never the observer's.
Absent settings, or absent flags within them, mean "visible": a user who
never opened the privacy screen shares exactly what a user with every flag
set to ``True`` shares.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from .models import PrivacySettings

SettingsLike = Union[PrivacySettings, Mapping[str, Any], None]

# raw field name -> (privacy flag guarding it, value observers see when hidden)
GATED_FIELDS: dict[str, tuple[str, Any]] = {
    "isOnline": ("online_status", False),
    "lastSeen": ("last_seen", None),
    "avatarUrl": ("profile_photo", None),
}

FLAGS = {
    "onlineStatus": "online_status",
    "lastSeen": "last_seen",
    "profilePhoto": "profile_photo",
    "readReceipts": "read_receipts",
    "typingIndicator": "typing_indicator",
}


def _settings(owner_settings: SettingsLike) -> PrivacySettings:
    if isinstance(owner_settings, PrivacySettings):
        return owner_settings
    return PrivacySettings.from_mapping(owner_settings)


def allows(owner_settings: SettingsLike, flag: str) -> bool:
    """Whether ``flag`` (camelCase or snake_case) is enabled for the owner."""

    attr = FLAGS.get(flag, flag)
    if attr not in FLAGS.values():
        raise KeyError(f"unknown privacy flag: {flag}")
    return bool(getattr(_settings(owner_settings), attr))


def project(owner_settings: SettingsLike, raw_fields: Mapping[str, Any], field_name: str) -> Optional[Any]:
    """Return the value of ``field_name`` an observer may see."""

    value = raw_fields.get(field_name)
    gate = GATED_FIELDS.get(field_name)
    if gate is None:
        return value
    attr, hidden = gate
    if getattr(_settings(owner_settings), attr):
        return value
    return hidden


def project_fields(owner_settings: SettingsLike, raw_fields: Mapping[str, Any]) -> dict[str, Any]:
    settings = _settings(owner_settings)
    return {name: project(settings, raw_fields, name) for name in raw_fields}
