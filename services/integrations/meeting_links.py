"""
services/integrations/meeting_links.py
Client for the external video-meeting provider.

Provisioning is best effort: a booking is valid without a link, and
tasks.booking_tasks.attach_missing_meeting_links retries later.
Transport errors are retried with backoff (tenacity); repeated failures open
the circuit breaker so a dead provider does not slow down reservations.
"""

import asyncio
import logging
from typing import Optional

import httpx
from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from shared.models.models import Booking
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)


class MeetingLinkProvisioner:
    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.url = url if url is not None else settings.MEETING_PROVISIONER_URL
        self.token = token if token is not None else settings.MEETING_PROVISIONER_TOKEN
        self.timeout = timeout or settings.MEETING_PROVISIONER_TIMEOUT_SECONDS
        self.breaker = breaker or circuit_breaker_manager.get_breaker("meeting-links")

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    def _request(self, payload: dict) -> str:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        response = httpx.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response.json()["meeting_link"]

    def provision_sync(self, booking: Booking) -> Optional[str]:
        """Returns the meeting link, or None if it could not be created right now."""
        if not self.enabled:
            return None

        payload = {
            "booking_id": str(booking.id),
            "teacher_id": str(booking.teacher_id),
            "student_id": str(booking.student_id),
            "start": booking.scheduled_at.isoformat(),
            "end": booking.ends_at.isoformat(),
        }
        try:
            return self.breaker.call(self._request, payload)
        except CircuitBreakerError:
            logger.warning(f"Meeting provider circuit open, booking {booking.id} left without link")
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(f"Meeting link provisioning failed for booking {booking.id}: {e}")
        return None

    async def provision(self, booking: Booking) -> Optional[str]:
        if not self.enabled:
            return None
        return await asyncio.to_thread(self.provision_sync, booking)
