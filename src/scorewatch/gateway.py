from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import GatewayError, TransientDeliveryFailure
from .logging_utils import mask_address
from .utils import validate_url

LOGGER = logging.getLogger(__name__)

DEFAULT_CONNECT_RETRIES = 2
DEFAULT_BACKOFF_FACTOR = 0.5
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Error codes reported per recipient, grouped by how the dispatcher treats them
INVALID_ADDRESS_CODES = frozenset(
    {
        "invalid_address",
        "messaging/invalid-registration-token",
        "messaging/registration-token-not-registered",
        "unregistered",
    }
)
TRANSIENT_CODES = frozenset(
    {
        "transient",
        "messaging/unavailable",
        "messaging/internal-error",
        "messaging/quota-exceeded",
        "unavailable",
    }
)


class RecipientStatus(str, Enum):
    SUCCESS = "success"
    INVALID_ADDRESS = "invalid_address"
    TRANSIENT = "transient"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class PushMessage:
    address: str
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)
    priority: str = "normal"  # "high" | "normal"


@dataclass(frozen=True, slots=True)
class RecipientResult:
    address: str
    status: RecipientStatus
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is RecipientStatus.SUCCESS


def classify_error(code: Optional[str]) -> RecipientStatus:
    if not code:
        return RecipientStatus.OTHER
    normalized = code.strip().lower()
    if normalized in INVALID_ADDRESS_CODES:
        return RecipientStatus.INVALID_ADDRESS
    if normalized in TRANSIENT_CODES:
        return RecipientStatus.TRANSIENT
    return RecipientStatus.OTHER


class PushGateway:
    """Accepts a batch of addressed messages and reports one result per address.

    Implementations raise ``TransientDeliveryFailure`` when the whole batch may
    be retried and ``GatewayError`` when it must not be.
    """

    name: str = "gateway"

    def send_batch(self, messages: Sequence[PushMessage]) -> List[RecipientResult]:
        raise NotImplementedError

    def close(self) -> None:
        """Release transport resources; the default gateway holds none."""


class _RecipientResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str
    success: bool
    error: Optional[str] = None


class _BatchResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    results: List[_RecipientResponse] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0


class HttpPushGateway(PushGateway):
    """Push gateway speaking JSON over HTTP.

    The batch is POSTed as ``{"messages": [...]}``; the response lists one
    result per address. Only connection errors are retried at the transport
    level, batch-level retries belong to the dispatcher.
    """

    name = "http"

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
        connect_retries: int = DEFAULT_CONNECT_RETRIES,
    ) -> None:
        if not validate_url(url):
            raise GatewayError(f"Invalid push gateway URL: {url}")
        self.url = url
        self.timeout = timeout
        self.headers = {"Accept": "application/json", **{str(k): str(v) for k, v in (headers or {}).items()}}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

        self.session = session or requests.Session()
        if session is None:
            retry_strategy = Retry(
                total=connect_retries,
                connect=connect_retries,
                read=0,
                status=0,
                backoff_factor=DEFAULT_BACKOFF_FACTOR,
                allowed_methods=None,
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy, pool_maxsize=10)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

    def send_batch(self, messages: Sequence[PushMessage]) -> List[RecipientResult]:
        if not messages:
            return []
        payload = {"messages": [self._message_payload(message) for message in messages]}

        try:
            response = self.session.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientDeliveryFailure(f"Push gateway unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise GatewayError(f"Push gateway request failed: {exc}") from exc

        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientDeliveryFailure(
                f"Push gateway responded with {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            snippet = response.text[:200]
            raise GatewayError(
                f"Push gateway rejected batch ({response.status_code}): {snippet}",
                status_code=response.status_code,
            )

        return self._parse_results(response, messages)

    @staticmethod
    def _message_payload(message: PushMessage) -> Dict[str, Any]:
        return {
            "address": message.address,
            "notification": {"title": message.title, "body": message.body},
            "data": dict(message.data),
            "priority": message.priority,
            "sound": "default" if message.priority == "high" else None,
        }

    def _parse_results(self, response: requests.Response, messages: Sequence[PushMessage]) -> List[RecipientResult]:
        try:
            parsed = _BatchResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise GatewayError(
                f"Failed to parse push gateway response ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            ) from exc

        by_address = {entry.address: entry for entry in parsed.results}
        results: List[RecipientResult] = []
        for message in messages:
            entry = by_address.get(message.address)
            if entry is None:
                LOGGER.debug("Gateway omitted result for %s; treating as transient", mask_address(message.address))
                results.append(RecipientResult(message.address, RecipientStatus.TRANSIENT, "missing-result"))
            elif entry.success:
                results.append(RecipientResult(message.address, RecipientStatus.SUCCESS))
            else:
                results.append(RecipientResult(message.address, classify_error(entry.error), entry.error))
        return results

    def close(self) -> None:
        self.session.close()


class RecordingGateway(PushGateway):
    """In-memory gateway that records every batch instead of sending it.

    Used for dry runs when no gateway URL is configured. Addresses listed in
    ``invalid`` or ``transient`` report the matching failure; everything else
    succeeds.
    """

    name = "recording"

    def __init__(
        self,
        *,
        invalid: Optional[Sequence[str]] = None,
        transient: Optional[Sequence[str]] = None,
    ) -> None:
        self.invalid = set(invalid or ())
        self.transient = set(transient or ())
        self.batches: List[List[PushMessage]] = []

    @property
    def sent(self) -> List[PushMessage]:
        return [message for batch in self.batches for message in batch]

    def send_batch(self, messages: Sequence[PushMessage]) -> List[RecipientResult]:
        self.batches.append(list(messages))
        results: List[RecipientResult] = []
        for message in messages:
            if message.address in self.invalid:
                results.append(RecipientResult(message.address, RecipientStatus.INVALID_ADDRESS, "invalid_address"))
            elif message.address in self.transient:
                results.append(RecipientResult(message.address, RecipientStatus.TRANSIENT, "transient"))
            else:
                results.append(RecipientResult(message.address, RecipientStatus.SUCCESS))
        LOGGER.debug("Recorded batch of %d message(s)", len(messages))
        return results
