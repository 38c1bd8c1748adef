"""
Mobile Handoff Service - delegates page capture to a phone

``idle -> requested -> (uploaded | expired)``. A single-use token is obtained
from the server and polled until an upload appears or the link expires.
Detection compares the reported upload count with the last one seen, so a
repeated poll result never fires twice.
"""

import io
import logging
from typing import Callable, Optional, Tuple

import qrcode

from ..collaborators import MobileHandoffApi
from ..errors import HandoffActive, InvalidTransition
from ..models.schemas import MobileUploadRequest, MobileUploadStatus
from ..monitoring.clock import epoch_ms
from ..scheduling import PeriodicTask
from ..signals import SignalBus

logger = logging.getLogger(__name__)


class MobileHandoffService:
    def __init__(
        self,
        api: MobileHandoffApi,
        public_base_url: str,
        poll_seconds: float = 30.0,
        default_expiry_minutes: int = 10,
        now_ms: Callable[[], int] = epoch_ms,
    ):
        self.api = api
        self.public_base_url = public_base_url.rstrip("/")
        self.poll_seconds = poll_seconds
        self.default_expiry_minutes = default_expiry_minutes
        self.now_ms = now_ms
        self.signals = SignalBus("mobile")

        self.request_state: Optional[MobileUploadRequest] = None
        self._last_seen_count = 0
        self._poller: Optional[PeriodicTask] = None

    @property
    def status(self) -> MobileUploadStatus:
        if self.request_state is None:
            return MobileUploadStatus.IDLE
        return self.request_state.status

    @property
    def upload_detected(self) -> bool:
        """True once any mobile upload has landed; local page channels must stay closed."""
        return self.status == MobileUploadStatus.UPLOADED

    @property
    def polling(self) -> bool:
        return self._poller is not None and self._poller.running

    async def request(self, contact: str, expiry_minutes: Optional[int] = None) -> MobileUploadRequest:
        if self.status in (MobileUploadStatus.REQUESTED, MobileUploadStatus.UPLOADED):
            raise HandoffActive(f"Mobile upload already {self.status.value}")

        expiry_minutes = expiry_minutes or self.default_expiry_minutes
        ticket = await self.api.request(contact, expiry_minutes)
        upload_url = ticket.link or f"{self.public_base_url}/mobile-upload/{ticket.token}"

        self.request_state = MobileUploadRequest(
            token=ticket.token,
            upload_url=upload_url,
            expires_at_epoch_ms=self.now_ms() + expiry_minutes * 60 * 1000,
        )
        self._last_seen_count = 0
        logger.info(f"Mobile upload link issued, expires in {expiry_minutes} minutes")
        self.signals.emit(
            "requested",
            token=ticket.token,
            upload_url=upload_url,
            expires_at_epoch_ms=self.request_state.expires_at_epoch_ms,
        )

        self._poller = PeriodicTask("mobile-handoff", self.poll_seconds, self.poll_once, run_immediately=True)
        self._poller.start()
        return self.request_state

    async def poll_once(self) -> MobileUploadStatus:
        req = self.request_state
        if req is None or req.status == MobileUploadStatus.EXPIRED:
            return self.status

        if req.status == MobileUploadStatus.REQUESTED and self.now_ms() >= req.expires_at_epoch_ms:
            self._expire()
            return self.status

        try:
            result = await self.api.poll_status(req.token)
        except Exception as e:
            logger.error(f"Error checking mobile upload status: {e}")
            return self.status

        if result.upload_count > self._last_seen_count:
            self._last_seen_count = result.upload_count
            req.upload_count = result.upload_count
            req.status = MobileUploadStatus.UPLOADED
            if result.artifact_ref:
                req.artifact_ref = result.artifact_ref
            logger.info(f"Mobile upload detected: {result.upload_count} file(s)")
            self.signals.emit(
                "detected", upload_count=result.upload_count, artifact_ref=req.artifact_ref
            )
        elif req.status == MobileUploadStatus.REQUESTED and result.status == "expired":
            self._expire()

        return self.status

    def _expire(self) -> None:
        self.request_state.status = MobileUploadStatus.EXPIRED
        self.stop()
        logger.info("Mobile upload link expired without an upload")
        self.signals.emit("expired", token=self.request_state.token)

    def stop(self) -> None:
        """Stop polling; idempotent."""
        if self._poller is not None:
            self._poller.stop()
            self._poller = None

    def time_remaining(self) -> Tuple[int, int]:
        """Minutes and seconds left on the current link."""
        if self.request_state is None:
            return 0, 0
        remaining = self.request_state.expires_at_epoch_ms - self.now_ms()
        if remaining <= 0:
            return 0, 0
        return remaining // 60000, (remaining % 60000) // 1000

    def qr_png(self) -> bytes:
        if self.request_state is None:
            raise InvalidTransition("No mobile upload has been requested")
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=8,
            border=2,
        )
        qr.add_data(self.request_state.upload_url)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buf = io.BytesIO()
        img.save(buf)
        return buf.getvalue()
