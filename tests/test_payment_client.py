"""
HTTP payment gateway against a scripted requests session.
"""
import pytest
import requests

from wakeguard.clients.payments import (
    ChargeMetadata,
    ChargeStatus,
    HttpPaymentGateway,
    parse_charge_status,
)
from wakeguard.errors import PaymentProviderError, TransientError


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeSession:
    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def no_backoff_sleep(monkeypatch):
    monkeypatch.setattr("time.sleep", lambda seconds: None)


def _gateway(*responses):
    session = FakeSession(*responses)
    return HttpPaymentGateway(base_url="https://pay.test/", api_key="sk_test", session=session), session


METADATA = ChargeMetadata(challenge_id="c-1", user_id="user-1")


class TestCreateCharge:
    def test_sends_key_auth_and_metadata(self):
        gateway, session = _gateway(FakeResponse(200, {"id": "ch_1", "status": "succeeded"}))

        result = gateway.create_charge("settle:c-1:create", "cus_1", 1000, "jpy", METADATA)

        assert result.ref == "ch_1"
        assert result.status is ChargeStatus.SUCCEEDED
        sent = session.requests[0]
        assert sent["method"] == "POST"
        assert sent["url"] == "https://pay.test/v1/charges"
        assert sent["headers"] == {"Idempotency-Key": "settle:c-1:create"}
        assert sent["json"]["metadata"] == {
            "challenge_id": "c-1", "user_id": "user-1", "attempt_number": "0",
            "purpose": "challenge_penalty", "schema_version": "1",
        }
        assert session.headers["Authorization"] == "Bearer sk_test"

    def test_decline_is_a_result_not_an_error(self):
        gateway, _ = _gateway(FakeResponse(402, {
            "id": "ch_2", "status": "failed",
            "error": {"code": "card_declined", "message": "Your card was declined."},
        }))

        result = gateway.create_charge("settle:c-1:create", "cus_1", 1000, "jpy", METADATA)

        assert result.status is ChargeStatus.FAILED
        assert result.failure_code == "card_declined"

    def test_server_error_is_retried_with_the_same_key(self):
        gateway, session = _gateway(
            FakeResponse(503, {}),
            FakeResponse(200, {"id": "ch_1", "status": "processing"}),
        )

        result = gateway.create_charge("settle:c-1:create", "cus_1", 1000, "jpy", METADATA)

        assert result.status is ChargeStatus.PROCESSING
        assert len(session.requests) == 2
        assert {r["headers"]["Idempotency-Key"] for r in session.requests} == {"settle:c-1:create"}

    def test_persistent_connection_failure_raises_provider_error(self):
        gateway, session = _gateway(*[requests.ConnectionError("refused")] * 3)

        with pytest.raises(PaymentProviderError) as exc_info:
            gateway.create_charge("settle:c-1:create", "cus_1", 1000, "jpy", METADATA)

        assert isinstance(exc_info.value, TransientError)
        assert len(session.requests) == 3

    def test_client_error_is_not_retried(self):
        gateway, session = _gateway(FakeResponse(400, {"error": {"code": "bad_request"}}))

        with pytest.raises(PaymentProviderError) as exc_info:
            gateway.create_charge("settle:c-1:create", "cus_1", 1000, "jpy", METADATA)

        assert exc_info.value.code == "400"
        assert len(session.requests) == 1


class TestRetryAndRetrieve:
    def test_retry_against_previous_charge(self):
        gateway, session = _gateway(FakeResponse(200, {"id": "ch_1", "status": "succeeded"}))

        gateway.retry_charge("settle:c-1:retry:1", "ch_1", "cus_1", 1000, "jpy", METADATA)

        assert session.requests[0]["url"] == "https://pay.test/v1/charges/ch_1/retry"
        assert session.requests[0]["headers"] == {"Idempotency-Key": "settle:c-1:retry:1"}

    def test_retry_without_previous_charge_creates_one(self):
        gateway, session = _gateway(FakeResponse(200, {"id": "ch_5", "status": "succeeded"}))

        gateway.retry_charge("settle:c-1:retry:1", None, "cus_1", 1000, "jpy", METADATA)

        assert session.requests[0]["url"] == "https://pay.test/v1/charges"
        assert session.requests[0]["json"]["confirm"] is True

    def test_close_releases_session(self):
        gateway, session = _gateway()

        gateway.close()

        assert session.closed is True

    def test_retrieve(self):
        gateway, session = _gateway(FakeResponse(200, {
            "id": "ch_1", "status": "requires_payment_method",
            "last_payment_error": {"code": "insufficient_funds"},
        }))

        result = gateway.retrieve_charge("ch_1")

        assert session.requests[0]["method"] == "GET"
        assert session.requests[0]["headers"] == {}
        assert result.status is ChargeStatus.FAILED
        assert result.failure_code == "insufficient_funds"


@pytest.mark.parametrize("value,expected", [
    ("succeeded", ChargeStatus.SUCCEEDED),
    ("PAID", ChargeStatus.SUCCEEDED),
    ("requires_action", ChargeStatus.REQUIRES_ACTION),
    ("cancelled", ChargeStatus.CANCELED),
    ("something_new", ChargeStatus.PROCESSING),
    (None, ChargeStatus.PROCESSING),
])
def test_parse_charge_status(value, expected):
    assert parse_charge_status(value) is expected
