"""Fan-out of one rendered notification to a resolved audience.

Addresses are deduplicated and split into gateway-sized batches. Batches run on
a small thread pool; each batch retries transient failures with exponential
backoff. Invalid addresses are reported back to the caller and never pruned
here.

A batch that never gets through to the gateway fails the whole dispatch, so
the caller leaves the event unnotified. Per-recipient failures inside an
accepted batch only count towards ``failed``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

from .config import DeliverySettings
from .errors import InvalidAddress, TransientDeliveryFailure
from .gateway import PushGateway, PushMessage, RecipientStatus
from .logging_utils import mask_address, render_fields_block, render_section_block
from .models import DetectedEvent, EventPriority, Snapshot
from .preferences import SubscriberPreference
from .templates import RenderedMessage, TemplateRegistry, render_message
from .utils import chunked, unique_ordered

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    rejected: tuple[InvalidAddress, ...] = ()
    batches: int = 0

    @property
    def invalid_addresses(self) -> tuple[str, ...]:
        return tuple(item.address for item in self.rejected)


@dataclass(slots=True)
class _BatchResult:
    succeeded: int = 0
    failed: int = 0
    invalid: List[InvalidAddress] = field(default_factory=list)
    exhausted: Optional[TransientDeliveryFailure] = None


class DeliveryDispatcher:
    def __init__(
        self,
        gateway: PushGateway,
        settings: Optional[DeliverySettings] = None,
        *,
        registry: Optional[TemplateRegistry] = None,
        use_emoji: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.settings = settings or DeliverySettings()
        self.registry = registry or TemplateRegistry()
        self.use_emoji = use_emoji
        self._sleep = sleep

    def dispatch(
        self,
        event: DetectedEvent,
        audience: Sequence[SubscriberPreference],
        snapshot: Optional[Snapshot] = None,
    ) -> DeliveryOutcome:
        """Deliver ``event`` to every address in ``audience``.

        Raises:
            GatewayError: The gateway refused a batch in a non-retryable way.
            TransientDeliveryFailure: A batch still failed in transport after all retries.
        """
        addresses = unique_ordered(pref.address for pref in audience if pref.address)
        if not addresses:
            LOGGER.debug("No recipients for %s; nothing to send", event.id)
            return DeliveryOutcome()

        message = render_message(event, self.registry, snapshot=snapshot, use_emoji=self.use_emoji)
        priority = "high" if event.priority >= EventPriority.HIGH else "normal"
        batches = list(chunked(addresses, self.settings.batch_size))
        workers = max(1, min(self.settings.max_workers, len(batches)))

        results: List[_BatchResult] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scorewatch-dispatch") as executor:
            futures: List[Future[_BatchResult]] = []
            for index, batch in enumerate(batches):
                if index and self.settings.batch_pause_seconds:
                    self._sleep(self.settings.batch_pause_seconds)
                futures.append(executor.submit(self._deliver_batch, event.id, index, batch, message, priority))
            try:
                for future in futures:
                    results.append(future.result())
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        exhausted = [result.exhausted for result in results if result.exhausted is not None]
        if exhausted:
            LOGGER.error(
                "%d of %d batch(es) for %s never reached the gateway; leaving it for the next cycle",
                len(exhausted),
                len(batches),
                event.id,
            )
            raise TransientDeliveryFailure(
                f"{len(exhausted)} of {len(batches)} batch(es) for {event.id} failed: {exhausted[0]}",
                status_code=exhausted[0].status_code,
            )

        rejected: dict[str, InvalidAddress] = {}
        for result in results:
            for item in result.invalid:
                rejected.setdefault(item.address, item)
        outcome = DeliveryOutcome(
            submitted=len(addresses),
            succeeded=sum(result.succeeded for result in results),
            failed=sum(result.failed for result in results),
            rejected=tuple(rejected.values()),
            batches=len(batches),
        )
        if rejected:
            lines = [f"{mask_address(item.address)}: {item.reason or 'unregistered'}" for item in outcome.rejected]
            LOGGER.warning(render_section_block("Invalid Push Addresses", [(event.id, lines)]))
        LOGGER.info(
            render_fields_block(
                "Delivery Complete",
                {
                    "Event": event.id,
                    "Recipients": outcome.submitted,
                    "Batches": outcome.batches,
                    "Succeeded": outcome.succeeded,
                    "Failed": outcome.failed,
                    "Invalid": len(outcome.invalid_addresses),
                },
            )
        )
        return outcome

    def _deliver_batch(
        self,
        event_id: str,
        index: int,
        addresses: Sequence[str],
        message: RenderedMessage,
        priority: str,
    ) -> _BatchResult:
        result = _BatchResult()
        pending = list(addresses)
        attempt = 0
        max_retries = self.settings.max_retries

        while pending:
            outgoing = [
                PushMessage(address=address, title=message.title, body=message.body, data=message.data, priority=priority)
                for address in pending
            ]
            try:
                responses = self.gateway.send_batch(outgoing)
            except TransientDeliveryFailure as exc:
                if attempt >= max_retries:
                    LOGGER.warning(
                        "Batch %d for %s failed after %d attempt(s): %s",
                        index,
                        event_id,
                        attempt + 1,
                        exc,
                    )
                    result.failed += len(pending)
                    result.exhausted = exc
                    break
                self._backoff(event_id, index, attempt, exc)
                attempt += 1
                continue

            by_address = {response.address: response for response in responses}
            retry: List[str] = []
            for address in pending:
                response = by_address.get(address)
                status = response.status if response is not None else RecipientStatus.TRANSIENT
                if status is RecipientStatus.SUCCESS:
                    result.succeeded += 1
                elif status is RecipientStatus.INVALID_ADDRESS:
                    result.invalid.append(InvalidAddress(address, response.error if response is not None else None))
                elif status is RecipientStatus.TRANSIENT:
                    retry.append(address)
                else:
                    result.failed += 1

            if not retry:
                break
            if attempt >= max_retries:
                result.failed += len(retry)
                break
            self._backoff(event_id, index, attempt, f"{len(retry)} transient recipient failure(s)")
            attempt += 1
            pending = retry

        return result

    def _backoff(self, event_id: str, index: int, attempt: int, reason: object) -> None:
        delay = self.settings.backoff_seconds * (2**attempt)
        LOGGER.warning(
            "Retrying batch %d for %s in %.2fs (attempt %d/%d): %s",
            index,
            event_id,
            delay,
            attempt + 1,
            self.settings.max_retries,
            reason,
        )
        if delay:
            self._sleep(delay)
