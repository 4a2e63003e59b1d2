"""Credential Store.

In-memory storage of the secrets a user supplied for each broker.
A payload is stored only after it satisfies the shape required by the
broker's auth type.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Mapping, Optional, Union
import logging

from src.broker_connect.config import AuthType, BrokerDescriptor, REQUIRED_CREDENTIAL_FIELDS
from src.broker_connect.exceptions import ValidationError
from src.broker_connect.registry import BrokerRegistry

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OAuthCredential:
    """Marker that the user started an OAuth flow."""
    timestamp: datetime = field(default_factory=_utc_now)
    auth_type: AuthType = field(default=AuthType.OAUTH, init=False)


@dataclass
class ApiKeyCredential:
    """API key pair."""
    api_key: str
    api_secret: str
    auth_type: AuthType = field(default=AuthType.API_KEY, init=False)

    def to_payload(self) -> dict:
        return {"apiKey": self.api_key, "apiSecret": self.api_secret}

    def __repr__(self) -> str:
        return f"ApiKeyCredential(api_key={self.api_key[:4]}***)"


@dataclass
class LoginCredential:
    """Username and password, with an optional TOTP code."""
    username: str
    password: str
    totp: Optional[str] = None
    auth_type: AuthType = field(default=AuthType.CREDENTIALS, init=False)

    def to_payload(self) -> dict:
        return {"username": self.username, "password": self.password, "totp": self.totp}

    def __repr__(self) -> str:
        return f"LoginCredential(username={self.username!r})"


StoredCredential = Union[OAuthCredential, ApiKeyCredential, LoginCredential]


# snake_case spellings accepted next to the UI's camelCase keys
_FIELD_ALIASES = {
    "apiKey": ("apiKey", "api_key"),
    "apiSecret": ("apiSecret", "api_secret"),
    "username": ("username",),
    "password": ("password",),
    "totp": ("totp",),
}


def _field(payload: Mapping[str, Any], name: str) -> Optional[str]:
    for key in _FIELD_ALIASES[name]:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def missing_fields(broker: BrokerDescriptor, payload: Optional[Mapping[str, Any]]) -> list[str]:
    """Get the required fields absent from a payload."""
    payload = payload or {}
    return [
        name for name in REQUIRED_CREDENTIAL_FIELDS[broker.auth_type]
        if _field(payload, name) is None
    ]


def build_credential(
    broker: BrokerDescriptor,
    payload: Optional[Mapping[str, Any]],
) -> StoredCredential:
    """Validate a UI payload and convert it to a typed credential.

    Raises:
        ValidationError: If fields required by the auth type are missing.
    """
    if payload is not None and not isinstance(payload, Mapping):
        raise ValidationError(
            f"Credentials for {broker.display_name} must be a mapping",
            broker_id=broker.id,
        )

    missing = missing_fields(broker, payload)
    if missing:
        raise ValidationError(
            f"{' and '.join(missing)} required for {broker.display_name}",
            fields=missing,
            broker_id=broker.id,
        )

    payload = payload or {}
    if broker.auth_type is AuthType.API_KEY:
        return ApiKeyCredential(
            api_key=_field(payload, "apiKey"),
            api_secret=_field(payload, "apiSecret"),
        )
    if broker.auth_type is AuthType.CREDENTIALS:
        return LoginCredential(
            username=_field(payload, "username"),
            password=_field(payload, "password"),
            totp=_field(payload, "totp"),
        )
    return OAuthCredential()


@dataclass
class _Entry:
    credential: StoredCredential
    stored_at: datetime = field(default_factory=_utc_now)


class CredentialStore:
    """Per-broker credential storage.

    Entries never expire unless ``ttl_seconds`` is set.

    Example:
        store = CredentialStore(BrokerRegistry())
        store.store_credential("dhan", {"apiKey": "k", "apiSecret": "s"})
        store.has_credential("dhan")  # True
    """

    def __init__(self, registry: BrokerRegistry, ttl_seconds: Optional[float] = None):
        self._registry = registry
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._entries: dict[str, _Entry] = {}

    def store_credential(
        self,
        broker_id: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> StoredCredential:
        """Validate and store a credential payload, replacing any previous one.

        Nothing is written when validation fails.

        Raises:
            UnknownBrokerError: If the broker is not in the catalog.
            ValidationError: If the payload does not match the auth type.
        """
        broker = self._registry.get_broker(broker_id)
        credential = build_credential(broker, payload)
        self._entries[broker_id] = _Entry(credential)
        logger.info(f"Stored {broker.auth_type.value} credentials for {broker_id}")
        return credential

    def _live_entry(self, broker_id: str) -> Optional[_Entry]:
        entry = self._entries.get(broker_id)
        if entry is None:
            return None
        if self._ttl is not None and _utc_now() - entry.stored_at >= self._ttl:
            logger.info(f"Credentials for {broker_id} expired")
            del self._entries[broker_id]
            return None
        return entry

    def has_credential(self, broker_id: str) -> bool:
        return self._live_entry(broker_id) is not None

    def get_credential(self, broker_id: str) -> Optional[StoredCredential]:
        entry = self._live_entry(broker_id)
        return entry.credential if entry else None

    def delete_credential(self, broker_id: str) -> bool:
        """Revoke stored credentials.

        Returns:
            True if deleted, False if none were stored.
        """
        if broker_id in self._entries:
            del self._entries[broker_id]
            logger.info(f"Deleted credentials for {broker_id}")
            return True
        return False

    def configured_brokers(self) -> list[str]:
        """Get ids of brokers with a live stored credential."""
        return [b for b in list(self._entries) if self.has_credential(b)]

    def clear(self) -> None:
        self._entries.clear()
