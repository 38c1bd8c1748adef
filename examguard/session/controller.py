"""
Session Controller - the one authoritative state container for an exam attempt

States: ``not_started -> active -> submitting -> submitted``; ``active ->
exiting -> submitted`` for a student-initiated exit. Every event (clock,
violations, camera, mobile handoff, browser shell) goes through a method on
this class. Entering ``submitting``/``exiting`` is the single cancellation
point for every sub-service.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Set, Tuple

from ..capture.document_pipeline import DocumentCapturePipeline
from ..capture.mobile_handoff import MobileHandoffService
from ..collaborators import ArtifactApi, MobileHandoffApi, MonitoringApi, SessionApi
from ..config import Settings, settings as default_settings
from ..errors import (
    ArtifactRequired,
    InvalidTransition,
    LocalCaptureDisabled,
    StartRejected,
    SubmissionFailed,
    UploadFailed,
)
from ..logging_utils import log_session_end, log_session_event, log_session_start
from ..models.schemas import (
    CameraOwner,
    ExamConfig,
    KeyEvent,
    MobileUploadRequest,
    Page,
    Session,
    SessionState,
    SubmitPayload,
    SubmitReason,
    SubmitResult,
)
from ..monitoring.camera_arbiter import CameraArbiter
from ..monitoring.camera_monitor import CameraMonitor
from ..monitoring.clock import DeadlineClock, epoch_ms
from ..monitoring.video import StreamOpener, open_video_stream
from ..monitoring.violation_monitor import ViolationMonitor
from ..signals import SignalBus

logger = logging.getLogger(__name__)


class FullscreenGate(Protocol):
    async def request_fullscreen(self) -> bool: ...


class ReportedFullscreen:
    """Fullscreen state as last reported by the browser shell."""

    def __init__(self, is_fullscreen: bool = False):
        self.is_fullscreen = is_fullscreen

    async def request_fullscreen(self) -> bool:
        return self.is_fullscreen


@dataclass
class PendingSubmission:
    reason: SubmitReason
    is_auto: bool
    is_exit: bool
    payload: Optional[SubmitPayload] = None


class SessionController:
    def __init__(
        self,
        exam: ExamConfig,
        session_api: SessionApi,
        monitoring_api: MonitoringApi,
        artifact_api: ArtifactApi,
        mobile_api: MobileHandoffApi,
        settings: Settings = default_settings,
        fullscreen: Optional[FullscreenGate] = None,
        stream_opener: StreamOpener = open_video_stream,
        now_ms=epoch_ms,
        student_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self.exam = exam
        self.session_api = session_api
        self.monitoring_api = monitoring_api
        self.settings = settings
        self.fullscreen = fullscreen or ReportedFullscreen()
        self.stream_opener = stream_opener
        self.signals = SignalBus("session")

        self.session = Session(
            session_id=session_id or f"EXM_{uuid.uuid4().hex[:6].upper()}",
            test_id=exam.test_id,
            student_id=student_id,
            duration_seconds=exam.duration_minutes * 60,
        )

        self.arbiter = CameraArbiter()
        self.clock = DeadlineClock(settings.CLOCK_TICK_SECONDS, now_ms)
        self.violations = ViolationMonitor(
            threshold=exam.proctoring.max_violations or settings.DEFAULT_MAX_VIOLATIONS,
            monitoring_api=monitoring_api,
            retry_seconds=settings.VIOLATION_RETRY_SECONDS,
        )
        # the session exposes the monitor's append-only log directly
        self.session.violations = self.violations.violations

        document_camera = settings.DOCUMENT_CAMERA_INDEX
        if document_camera is None:
            document_camera = settings.MONITOR_CAMERA_INDEX or 0
        self.pipeline = DocumentCapturePipeline(
            artifact_api,
            self.arbiter,
            camera_index=document_camera,
            jpeg_quality=settings.JPEG_QUALITY,
            stream_opener=stream_opener,
        )
        self.mobile = MobileHandoffService(
            mobile_api,
            settings.PUBLIC_BASE_URL,
            poll_seconds=settings.MOBILE_POLL_SECONDS,
            default_expiry_minutes=settings.MOBILE_EXPIRY_MINUTES,
            now_ms=now_ms,
        )
        self.camera: Optional[CameraMonitor] = None
        self.monitoring_session_id: Optional[str] = None

        self.result_ref: Optional[str] = None
        self.last_error: Optional[Exception] = None
        self._pending: Optional[PendingSubmission] = None
        self._submit_lock = asyncio.Lock()
        self._auto_tasks: Set[asyncio.Task] = set()

        self._wire_signals()

    # ============== Signal wiring ==============

    def _wire_signals(self) -> None:
        self.clock.signals.connect("tick", self._on_tick)
        self.clock.signals.connect("expired", self._on_clock_expired)
        self.violations.signals.connect("warn", self._on_violation_warn)
        self.violations.signals.connect("escalate", self._on_escalate)
        self.mobile.signals.connect("requested", self._forward("mobile_requested"))
        self.mobile.signals.connect("detected", self._on_mobile_detected)
        self.mobile.signals.connect("expired", self._forward("mobile_expired"))
        self.pipeline.signals.connect("finalized", self._on_pipeline_finalized)

    def _forward(self, name: str):
        def handler(**payload: Any) -> None:
            self.signals.emit(name, **payload)
        return handler

    def _on_tick(self, remaining_seconds: int, time_taken_seconds: int) -> None:
        self.session.time_taken_seconds = time_taken_seconds
        self.signals.emit("tick", remaining_seconds=remaining_seconds, time_taken_seconds=time_taken_seconds)

    def _on_clock_expired(self) -> None:
        if self.session.state == SessionState.ACTIVE:
            self._schedule_auto_submit(SubmitReason.TIME_LIMIT)

    def _on_violation_warn(self, remaining: int, violation) -> None:
        self.signals.emit("warn", remaining=remaining, violation=violation.model_dump(mode="json"))

    def _on_escalate(self, count: int, violation) -> None:
        self.signals.emit("escalate", count=count, threshold=self.violations.threshold)
        if self.session.state == SessionState.ACTIVE:
            self._schedule_auto_submit(SubmitReason.MAX_VIOLATIONS_EXCEEDED)

    def _on_mobile_detected(self, upload_count: int, artifact_ref: Optional[str]) -> None:
        if artifact_ref and not self.pipeline.locked:
            self.session.answer_artifact_ref = artifact_ref
        self.signals.emit("mobile_detected", upload_count=upload_count)

    def _on_pipeline_finalized(self, artifact_ref: str, page_count: int) -> None:
        self.session.answer_artifact_ref = artifact_ref
        self.signals.emit("artifact_finalized", artifact_ref=artifact_ref, page_count=page_count)

    def _set_state(self, state: SessionState) -> None:
        previous = self.session.state
        self.session.state = state
        self.signals.emit("state_changed", previous=previous.value, state=state.value)

    # ============== Start ==============

    def _build_camera(self) -> CameraMonitor:
        camera = CameraMonitor(
            self.arbiter,
            monitoring_api=self.monitoring_api,
            camera_index=self.settings.MONITOR_CAMERA_INDEX,
            capture_interval_ms=self.exam.camera_monitoring.capture_interval_ms or self.settings.CAPTURE_INTERVAL_MS,
            buffer_cap=self.settings.FRAME_BUFFER_CAP,
            jpeg_quality=self.settings.JPEG_QUALITY,
            stream_opener=self.stream_opener,
        )
        camera.signals.connect("degraded", self._forward("camera_degraded"))
        camera.signals.connect("fatal", self._forward("camera_fatal"))
        return camera

    async def start(self) -> Session:
        """
        Begin the attempt.

        Raises StartRejected, leaving the session not started, when fullscreen
        or a mandatory camera cannot be obtained or the server refuses.
        """
        if self.session.state != SessionState.NOT_STARTED:
            raise InvalidTransition(f"Cannot start a session that is {self.session.state.value}")

        if self.exam.proctoring.require_fullscreen:
            if not await self.fullscreen.request_fullscreen():
                raise StartRejected("This test requires fullscreen mode")

        if self.exam.camera_monitoring.enabled:
            await self._start_camera()

        try:
            result = await self.session_api.start(self.exam.test_id)
        except Exception as e:
            await self._abort_start()
            raise StartRejected("Failed to start test", cause=e) from e
        if not result.accepted:
            await self._abort_start()
            raise StartRejected(result.message or "Test start was not accepted")

        elapsed = 0
        if result.resume_state is not None:
            elapsed = result.resume_state.time_taken_seconds
            if result.resume_state.answer_artifact_ref:
                self.pipeline.restore(result.resume_state.answer_artifact_ref)
                self.session.answer_artifact_ref = result.resume_state.answer_artifact_ref

        self.clock.start(self.session.duration_seconds, elapsed_seconds=elapsed)
        self.session.started_at_epoch_ms = self.clock.anchor_ms
        self.session.time_taken_seconds = elapsed
        self.violations.arm(
            require_fullscreen=self.exam.proctoring.require_fullscreen,
            monitoring_session_id=self.monitoring_session_id,
        )
        self._set_state(SessionState.ACTIVE)
        log_session_start(self.session.session_id, self.exam.test_id, self.session.student_id, resumed=elapsed > 0)
        return self.session

    async def _start_camera(self) -> None:
        try:
            self.monitoring_session_id = await self.monitoring_api.start(
                self.exam.test_id,
                {
                    "capture_interval": self.exam.camera_monitoring.capture_interval_ms,
                    "test_type": "traditional",
                },
            )
            logger.info(f"Monitoring session created: {self.monitoring_session_id}")
        except Exception as e:
            logger.error(f"Failed to create monitoring session: {e}")

        self.camera = self._build_camera()
        self.camera.monitoring_session_id = self.monitoring_session_id
        status = await self.camera.start(mandatory=self.exam.camera_monitoring.require_camera_access)
        if status == "fatal":
            await self._abort_start()
            raise StartRejected("Camera access is required for this test")

    async def _abort_start(self) -> None:
        if self.camera is not None:
            self.camera.stop()
            self.camera = None
        await self._end_monitoring_session()

    # ============== Browser-boundary events ==============

    def on_visibility_change(self, hidden: bool) -> bool:
        return self.violations.on_visibility_change(hidden) is not None

    def report_fullscreen(self, is_fullscreen: bool) -> None:
        """Record the shell's fullscreen state without classifying it."""
        if isinstance(self.fullscreen, ReportedFullscreen):
            self.fullscreen.is_fullscreen = is_fullscreen

    def on_fullscreen_change(self, is_fullscreen: bool) -> bool:
        self.report_fullscreen(is_fullscreen)
        violation = self.violations.on_fullscreen_change(is_fullscreen)
        if violation is not None and self.session.state == SessionState.ACTIVE:
            self.signals.emit("fullscreen_required")
        return violation is not None

    def on_keydown(self, event: KeyEvent) -> Tuple[bool, bool]:
        """Returns ``(prevent_default, recorded)``."""
        before = len(self.violations.violations)
        prevent = self.violations.on_keydown(event)
        return prevent, len(self.violations.violations) > before

    def on_file_picker(self, open: bool) -> None:
        if open:
            self.violations.begin_overlay()
        else:
            self.violations.end_overlay()

    # ============== Answer pages ==============

    def _ensure_local_capture(self) -> None:
        if self.session.state != SessionState.ACTIVE:
            raise InvalidTransition("Pages can only be changed during an active test")
        if self.mobile.upload_detected:
            raise LocalCaptureDisabled("Answer sheet was already uploaded from a mobile device")

    def add_page(self, blob: bytes, content_type: Optional[str] = None) -> Page:
        self._ensure_local_capture()
        return self.pipeline.add_page(blob, content_type)

    def remove_page(self, page_id: str) -> None:
        self._ensure_local_capture()
        self.pipeline.remove_page(page_id)

    def reset_pages(self) -> None:
        self._ensure_local_capture()
        self.pipeline.reset()
        self.session.answer_artifact_ref = None

    async def capture_page(self) -> Page:
        self._ensure_local_capture()
        with self.violations.cooperative_overlay():
            return await self.pipeline.capture_via_device_camera()

    async def finalize_pages(self) -> Optional[str]:
        if self.session.state != SessionState.ACTIVE:
            raise InvalidTransition("Pages can only be finalized during an active test")
        return await self.pipeline.finalize(required=True)

    async def request_mobile_upload(self, contact: str, expiry_minutes: Optional[int] = None) -> MobileUploadRequest:
        if self.session.state != SessionState.ACTIVE:
            raise InvalidTransition("Mobile upload is only available during an active test")
        return await self.mobile.request(contact, expiry_minutes)

    def has_answer_artifact(self) -> bool:
        return bool(
            self.session.answer_artifact_ref
            or self.pipeline.locked
            or len(self.pipeline) > 0
            or self.mobile.upload_detected
        )

    # ============== Submit / exit ==============

    def _schedule_auto_submit(self, reason: SubmitReason) -> None:
        task = asyncio.get_running_loop().create_task(self._auto_submit(reason))
        self._auto_tasks.add(task)
        task.add_done_callback(self._auto_tasks.discard)

    async def _auto_submit(self, reason: SubmitReason) -> None:
        try:
            await self.submit(auto=True, reason=reason)
        except (SubmissionFailed, UploadFailed) as e:
            logger.error(f"Auto-submit ({reason.value}) failed, awaiting retry: {e}")

    async def submit(self, auto: bool = False, reason: SubmitReason = SubmitReason.MANUAL) -> Optional[SubmitResult]:
        """
        Submit the attempt. A call while a submission is already under way
        (or done) is a no-op and returns None.
        """
        if self.session.state in (SessionState.SUBMITTING, SessionState.EXITING, SessionState.SUBMITTED):
            logger.info(f"Submission already {self.session.state.value}; ignoring {reason.value}")
            return None
        if self.session.state != SessionState.ACTIVE:
            raise InvalidTransition("Test has not started")
        if not auto and self.exam.paper_submission_required and not self.has_answer_artifact():
            raise ArtifactRequired("Please upload your answer sheet before submitting")

        self._begin_submission(SessionState.SUBMITTING, PendingSubmission(reason, auto, is_exit=False))
        return await self._complete_submission()

    async def exit(self) -> Optional[SubmitResult]:
        """Leave the test early; the answer sheet is optional."""
        if self.session.state != SessionState.ACTIVE:
            raise InvalidTransition("Exit is only available during an active test")
        self._begin_submission(SessionState.EXITING, PendingSubmission(SubmitReason.EXIT, False, is_exit=True))
        return await self._complete_submission()

    async def retry_submit(self) -> Optional[SubmitResult]:
        """Retry a submission that stalled in ``submitting``/``exiting``."""
        if self.session.state == SessionState.SUBMITTED:
            return None
        if self._pending is None or self.session.state not in (SessionState.SUBMITTING, SessionState.EXITING):
            raise InvalidTransition("There is no submission to retry")
        return await self._complete_submission()

    def _begin_submission(self, state: SessionState, pending: PendingSubmission) -> None:
        # synchronous up to here: a racing trigger now sees a non-active state
        self._pending = pending
        self.session.time_taken_seconds = self.clock.time_taken_seconds()
        self._set_state(state)
        log_session_event(
            self.session.session_id,
            "submit_started",
            {"reason": pending.reason.value, "auto": pending.is_auto},
            level="warning" if pending.is_auto else "info",
        )
        self._stop_services()

    def _stop_services(self) -> None:
        for name, stop in (
            ("clock", self.clock.stop),
            ("violations", self.violations.disarm),
            ("camera", self.camera.stop if self.camera is not None else None),
            ("mobile", self.mobile.stop),
        ):
            if stop is None:
                continue
            try:
                stop()
            except Exception as e:
                logger.warning(f"Error stopping {name}: {e}")

    async def _complete_submission(self) -> Optional[SubmitResult]:
        async with self._submit_lock:
            if self.session.state == SessionState.SUBMITTED:
                return None
            pending = self._pending

            if pending.payload is None:
                artifact_ref = await self._final_artifact(pending)
                pending.payload = SubmitPayload(
                    answer_artifact_ref=artifact_ref,
                    violations=list(self.violations.violations),
                    time_taken_seconds=self.session.time_taken_seconds,
                    reason=pending.reason,
                    is_auto_submit=pending.is_auto,
                    mobile_upload_token=self.mobile.request_state.token if self.mobile.upload_detected else None,
                )

            error: Optional[SubmissionFailed] = None
            try:
                result = await self.session_api.submit(self.exam.test_id, pending.payload)
                if not result.accepted:
                    error = SubmissionFailed(result.message or "Submission was not accepted")
            except Exception as e:
                error = SubmissionFailed("Failed to submit test", cause=e)

            if error is not None:
                self._fail(pending, error)
                raise error

            self.result_ref = result.result_ref
            self.last_error = None
            self._set_state(SessionState.SUBMITTED)
            log_session_end(
                self.session.session_id,
                pending.reason.value,
                len(self.violations.violations),
                self.session.time_taken_seconds,
                self.result_ref,
            )
            self.signals.emit("submitted", result_ref=self.result_ref, reason=pending.reason.value)

        await self._end_monitoring_session()
        return result

    async def _final_artifact(self, pending: PendingSubmission) -> Optional[str]:
        if self.mobile.upload_detected and not self.pipeline.locked:
            # the phone upload is the answer sheet; local pages are never mixed in
            return self.session.answer_artifact_ref
        try:
            ref = await self.pipeline.finalize(required=False)
        except UploadFailed as e:
            if pending.is_exit:
                logger.warning(f"Exiting without answer sheet, upload failed: {e}")
                return self.session.answer_artifact_ref
            self._fail(pending, e)
            raise
        if ref is not None:
            self.session.answer_artifact_ref = ref
        return self.session.answer_artifact_ref

    def _fail(self, pending: PendingSubmission, error: Exception) -> None:
        self.last_error = error
        logger.error(f"Submission ({pending.reason.value}) failed: {error}")
        self.signals.emit("submit_failed", reason=pending.reason.value, message=str(error), retryable=True)

    async def _end_monitoring_session(self) -> None:
        session_id, self.monitoring_session_id = self.monitoring_session_id, None
        if not session_id:
            return
        if self.camera is not None:
            await self.camera.drain_frames()
        await self.violations.drain()
        try:
            await self.monitoring_api.end(session_id)
            logger.info("Monitoring session ended")
        except Exception as e:
            logger.error(f"Failed to end monitoring session: {e}")

    # ============== Teardown / status ==============

    async def dispose(self) -> None:
        """Release every sub-service without submitting (agent shutdown)."""
        self._stop_services()
        for task in list(self._auto_tasks):
            task.cancel()

    def remaining_seconds(self) -> Optional[int]:
        if self.session.state == SessionState.NOT_STARTED:
            return None
        return self.clock.remaining_seconds()

    @property
    def camera_owner(self) -> CameraOwner:
        return self.arbiter.owner

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.session.state.value,
            "remaining_seconds": self.remaining_seconds(),
            "violations": len(self.violations.violations),
            "max_violations": self.violations.threshold,
            "camera_owner": self.camera_owner.value,
            "mobile_status": self.mobile.status.value,
            "pages": len(self.pipeline),
            "pipeline_locked": self.pipeline.locked,
        }
