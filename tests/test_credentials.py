"""Tests for the credential store."""

from datetime import timedelta

import pytest

from src.broker_connect import (
    ApiKeyCredential,
    BrokerRegistry,
    CredentialStore,
    LoginCredential,
    OAuthCredential,
    UnknownBrokerError,
    ValidationError,
)
from src.broker_connect import credentials as credentials_module


@pytest.fixture
def store():
    return CredentialStore(BrokerRegistry())


class TestStoreCredential:
    """Tests for validation and storage."""

    def test_api_key_payload(self, store):
        credential = store.store_credential("dhan", {"apiKey": "k", "apiSecret": "s"})
        assert isinstance(credential, ApiKeyCredential)
        assert credential.api_key == "k"
        assert credential.api_secret == "s"
        assert store.has_credential("dhan") is True
        assert store.get_credential("dhan") == credential

    def test_snake_case_aliases(self, store):
        credential = store.store_credential("dhan", {"api_key": "k", "api_secret": "s"})
        assert credential.to_payload() == {"apiKey": "k", "apiSecret": "s"}

    def test_login_payload_with_totp(self, store):
        credential = store.store_credential(
            "angel_one", {"username": "trader", "password": "pw", "totp": "123456"}
        )
        assert isinstance(credential, LoginCredential)
        assert credential.to_payload() == {
            "username": "trader", "password": "pw", "totp": "123456",
        }

    def test_totp_optional(self, store):
        credential = store.store_credential("angel_one", {"username": "u", "password": "p"})
        assert credential.totp is None

    def test_oauth_needs_no_fields(self, store):
        credential = store.store_credential("zerodha")
        assert isinstance(credential, OAuthCredential)
        assert store.has_credential("zerodha") is True

    def test_missing_secret_names_field(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.store_credential("delta_exchange", {"apiKey": "k"})
        assert exc_info.value.fields == ["apiSecret"]
        assert "apiSecret" in exc_info.value.message
        assert store.has_credential("delta_exchange") is False

    def test_blank_values_are_missing(self, store):
        with pytest.raises(ValidationError) as exc_info:
            store.store_credential("angel_one", {"username": "  ", "password": ""})
        assert exc_info.value.fields == ["username", "password"]

    def test_non_mapping_payload_rejected(self, store):
        with pytest.raises(ValidationError):
            store.store_credential("dhan", ["k", "s"])

    def test_unknown_broker(self, store):
        with pytest.raises(UnknownBrokerError):
            store.store_credential("nope", {"apiKey": "k", "apiSecret": "s"})

    def test_rejected_payload_keeps_previous(self, store):
        store.store_credential("dhan", {"apiKey": "good", "apiSecret": "secret"})
        with pytest.raises(ValidationError):
            store.store_credential("dhan", {"apiKey": "bad"})
        assert store.get_credential("dhan").api_key == "good"

    def test_resubmission_overwrites(self, store):
        store.store_credential("dhan", {"apiKey": "one", "apiSecret": "s"})
        store.store_credential("dhan", {"apiKey": "two", "apiSecret": "s"})
        assert store.get_credential("dhan").api_key == "two"

    @pytest.mark.parametrize("broker_id,payload,valid", [
        ("delta_exchange", {"apiKey": "k", "apiSecret": "s"}, True),
        ("delta_exchange", {"username": "u", "password": "p"}, False),
        ("angel_one", {"username": "u", "password": "p"}, True),
        ("angel_one", {"apiKey": "k", "apiSecret": "s"}, False),
        ("fyers", {}, True),
    ])
    def test_has_credential_iff_shape_matches(self, store, broker_id, payload, valid):
        try:
            store.store_credential(broker_id, payload)
        except ValidationError:
            pass
        assert store.has_credential(broker_id) is valid


class TestCredentialLifecycle:
    """Tests for revocation and expiry."""

    def test_delete_credential(self, store):
        store.store_credential("dhan", {"apiKey": "k", "apiSecret": "s"})
        assert store.delete_credential("dhan") is True
        assert store.delete_credential("dhan") is False
        assert store.get_credential("dhan") is None

    def test_configured_brokers_and_clear(self, store):
        store.store_credential("dhan", {"apiKey": "k", "apiSecret": "s"})
        store.store_credential("zerodha")
        assert sorted(store.configured_brokers()) == ["dhan", "zerodha"]
        store.clear()
        assert store.configured_brokers() == []

    def test_ttl_expires_credentials(self, monkeypatch):
        store = CredentialStore(BrokerRegistry(), ttl_seconds=60)
        store.store_credential("dhan", {"apiKey": "k", "apiSecret": "s"})
        assert store.has_credential("dhan") is True

        stored_at = credentials_module._utc_now()
        monkeypatch.setattr(
            credentials_module, "_utc_now", lambda: stored_at + timedelta(seconds=61)
        )
        assert store.has_credential("dhan") is False
        assert store.configured_brokers() == []

    def test_repr_hides_secrets(self):
        api = ApiKeyCredential(api_key="abcdefgh", api_secret="topsecret")
        login = LoginCredential(username="trader", password="hunter2")
        assert "topsecret" not in repr(api)
        assert "hunter2" not in repr(login)
