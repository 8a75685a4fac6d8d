import enum
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Optional

import requests
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import settings
from ..errors import PaymentProviderError
from ..metrics import payment_provider_duration
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

CHARGE_METADATA_VERSION = 1


class ChargeStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def in_flight(self) -> bool:
        return self in (ChargeStatus.PROCESSING, ChargeStatus.REQUIRES_ACTION)


# Provider vocabularies differ; anything unknown is treated as still in flight.
_STATUS_ALIASES = {
    "succeeded": ChargeStatus.SUCCEEDED,
    "completed": ChargeStatus.SUCCEEDED,
    "paid": ChargeStatus.SUCCEEDED,
    "processing": ChargeStatus.PROCESSING,
    "pending": ChargeStatus.PROCESSING,
    "requires_action": ChargeStatus.REQUIRES_ACTION,
    "requires_confirmation": ChargeStatus.REQUIRES_ACTION,
    "requires_payment_method": ChargeStatus.FAILED,
    "failed": ChargeStatus.FAILED,
    "declined": ChargeStatus.FAILED,
    "canceled": ChargeStatus.CANCELED,
    "cancelled": ChargeStatus.CANCELED,
}


def parse_charge_status(value: str) -> ChargeStatus:
    return _STATUS_ALIASES.get((value or "").strip().lower(), ChargeStatus.PROCESSING)


@dataclass(frozen=True)
class ChargeMetadata:
    """Closed, versioned metadata attached to every penalty charge."""
    challenge_id: str
    user_id: str
    attempt_number: int = 0
    purpose: str = "challenge_penalty"
    schema_version: int = CHARGE_METADATA_VERSION

    def to_dict(self) -> dict:
        return {k: str(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class ChargeResult:
    ref: Optional[str]
    status: ChargeStatus
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class PaymentGateway(ABC):
    """What the engine needs from a payment processor.

    Implementations must pass ``idempotency_key`` through so that the
    processor collapses repeated calls into a single real charge. I/O failures
    are raised as ``PaymentProviderError``; declines are returned as a
    ``ChargeResult`` with ``ChargeStatus.FAILED``.
    """

    @abstractmethod
    def create_charge(self, idempotency_key: str, customer_ref: str, amount: int,
                      currency: str, metadata: ChargeMetadata) -> ChargeResult: ...

    @abstractmethod
    def retrieve_charge(self, ref: str) -> ChargeResult: ...

    @abstractmethod
    def retry_charge(self, idempotency_key: str, previous_ref: Optional[str], customer_ref: str,
                     amount: int, currency: str, metadata: ChargeMetadata) -> ChargeResult: ...

    def close(self) -> None:
        """Release any connections held by the gateway."""


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code >= 500
    return False


class HttpPaymentGateway(PaymentGateway):
    """Generic REST processor client.

    ``POST /v1/charges`` creates and confirms an off-session charge,
    ``GET /v1/charges/{ref}`` reads one back and ``POST /v1/charges/{ref}/retry``
    re-attempts a declined one. Declines come back as HTTP 402.
    """

    def __init__(self, base_url: str = None, api_key: str = None, session: requests.Session = None):
        self.base_url = (base_url or settings.payment_api_url).rstrip("/")
        self.timeout = (settings.payment_connect_timeout_seconds, settings.payment_timeout_seconds)
        self.session = session or requests.Session()
        api_key = api_key or settings.payment_api_key
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def close(self):
        self.session.close()

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    def _request(self, method: str, path: str, idempotency_key: str = None, payload: dict = None) -> dict:
        """Send one request; 5xx and connection errors are retried with the same key."""
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        response = self.session.request(
            method,
            f"{self.base_url}{path}",
            json=payload,
            headers=headers,
            timeout=self.timeout
        )
        if response.status_code == 402:
            return response.json()
        response.raise_for_status()
        return response.json()

    def _call(self, operation: str, method: str, path: str, **kwargs) -> ChargeResult:
        start_time = time.time()
        try:
            body = self._request(method, path, **kwargs)
        except requests.RequestException as e:
            logger.error(f"Payment provider {operation} failed: {e}")
            status = getattr(getattr(e, "response", None), "status_code", None)
            raise PaymentProviderError(f"Payment provider {operation} failed: {e}",
                                       code=str(status) if status else None) from e
        except ValueError as e:
            raise PaymentProviderError(f"Payment provider returned invalid JSON for {operation}") from e
        finally:
            payment_provider_duration.labels(operation=operation).observe(time.time() - start_time)
        return self._to_result(body)

    @staticmethod
    def _to_result(body: dict) -> ChargeResult:
        error = body.get("error") or body.get("last_payment_error") or {}
        return ChargeResult(
            ref=body.get("id"),
            status=parse_charge_status(body.get("status") or ("failed" if error else "")),
            failure_code=error.get("code"),
            failure_message=error.get("message")
        )

    def create_charge(self, idempotency_key, customer_ref, amount, currency, metadata):
        logger.info(f"Creating charge {idempotency_key} for {amount} {currency}")
        return self._call("create", "POST", "/v1/charges", idempotency_key=idempotency_key, payload={
            "customer": customer_ref,
            "amount": amount,
            "currency": currency,
            "confirm": True,
            "off_session": True,
            "metadata": metadata.to_dict()
        })

    def retrieve_charge(self, ref):
        return self._call("retrieve", "GET", f"/v1/charges/{ref}")

    def retry_charge(self, idempotency_key, previous_ref, customer_ref, amount, currency, metadata):
        logger.info(f"Retrying charge {idempotency_key} (previous ref {previous_ref})")
        payload = {
            "customer": customer_ref,
            "amount": amount,
            "currency": currency,
            "metadata": metadata.to_dict()
        }
        if previous_ref:
            return self._call("retry", "POST", f"/v1/charges/{previous_ref}/retry",
                              idempotency_key=idempotency_key, payload=payload)
        # Nothing to retry against: issue a fresh confirmed charge under the retry key.
        payload.update(confirm=True, off_session=True)
        return self._call("retry", "POST", "/v1/charges", idempotency_key=idempotency_key, payload=payload)
