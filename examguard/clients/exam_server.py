"""
Exam server client - httpx implementation of every collaborator

Endpoints follow the exam server's student API:
- POST /api/student/start-test/{testId}
- POST /api/student/exit-test/{testId}
- POST /api/student/monitoring/{start,upload,violation,end}
- POST /api/student/upload-answer-sheet, /api/student/upload-answer-images
- POST /api/mobile-upload/request, GET /api/mobile-upload/status/{token}

Every response carries ``success``; a false value is treated like an HTTP
error and raised as ``CollaboratorError``.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..collaborators import ArtifactApi, MobileHandoffApi, MonitoringApi, SessionApi
from ..errors import CollaboratorError
from ..models.schemas import (
    HandoffStatus,
    HandoffTicket,
    MonitoringFrame,
    ResumeState,
    StartResult,
    SubmitPayload,
    SubmitResult,
    Violation,
)

logger = logging.getLogger(__name__)


class ExamServerClient(SessionApi, ArtifactApi, MobileHandoffApi):
    def __init__(
        self,
        base_url: str,
        test_id: str,
        api_token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.test_id = test_id
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise CollaboratorError(f"{method} {path} failed: {e}", cause=e) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or body.get("success") is False:
            message = body.get("message") or body.get("error") or f"HTTP {response.status_code}"
            logger.warning(f"Exam server rejected {method} {path}: {message}")
            raise CollaboratorError(f"{method} {path}: {message}")
        return body

    @staticmethod
    def _data(body: Dict[str, Any]) -> Dict[str, Any]:
        data = body.get("data")
        return data if isinstance(data, dict) else body

    # ============== Session ==============

    async def start(self, test_id: str) -> StartResult:
        try:
            body = await self._call("POST", f"/api/student/start-test/{test_id}", json={})
        except CollaboratorError as e:
            return StartResult(accepted=False, message=e.message)

        resume_state = None
        existing = body.get("existingResult")
        if body.get("canResume") and existing:
            resume_state = ResumeState(
                time_taken_seconds=int(existing.get("timeTaken") or 0),
                answer_artifact_ref=existing.get("answerSheetUrl"),
            )
        return StartResult(accepted=True, resume_state=resume_state, message=body.get("message"))

    async def submit(self, test_id: str, payload: SubmitPayload) -> SubmitResult:
        body = await self._call(
            "POST",
            f"/api/student/exit-test/{test_id}",
            json={
                "answerSheetUrl": payload.answer_artifact_ref,
                "violations": [v.model_dump(mode="json") for v in payload.violations],
                "timeTaken": payload.time_taken_seconds,
                "reason": payload.reason.value,
                "isAutoSubmit": payload.is_auto_submit,
                "mobileUploadToken": payload.mobile_upload_token,
            },
        )
        return SubmitResult(accepted=True, result_ref=body.get("resultId"), message=body.get("message"))

    # ============== Monitoring ==============

    async def start_monitoring(self, test_id: str, settings: Dict[str, Any]) -> str:
        body = await self._call(
            "POST", "/api/student/monitoring/start", json={"testId": test_id, "settings": settings}
        )
        session_id = body.get("sessionId")
        if not session_id:
            raise CollaboratorError("Monitoring session was not created")
        return session_id

    async def push_frame(self, session_id: str, frame: MonitoringFrame) -> None:
        await self._call(
            "POST",
            "/api/student/monitoring/upload",
            files={"monitoringImage": (f"monitoring_{session_id}.jpg", frame.image, frame.content_type)},
            data={
                "sessionId": session_id,
                "timestamp": frame.timestamp,
                "testId": self.test_id,
                "purpose": "monitoring",
                "testType": "traditional",
            },
        )

    async def push_violation(self, session_id: str, violation: Violation) -> None:
        await self._call(
            "POST",
            "/api/student/monitoring/violation",
            json={
                "sessionId": session_id,
                "testId": self.test_id,
                "type": violation.type.value,
                "details": violation.details,
                "timestamp": violation.timestamp,
            },
        )

    async def end(self, session_id: str) -> None:
        await self._call("POST", "/api/student/monitoring/end", json={"sessionId": session_id})

    # ============== Artifacts ==============

    @staticmethod
    def _artifact_ref(body: Dict[str, Any]) -> str:
        ref = body.get("viewUrl") or body.get("url") or body.get("fileId")
        if not ref:
            raise CollaboratorError("Upload response did not include a file reference")
        return ref

    async def upload_single(self, blob: bytes, content_type: str) -> str:
        body = await self._call(
            "POST",
            "/api/student/upload-answer-sheet",
            files={"answerSheet": ("answer-sheet.pdf", blob, content_type)},
            data={"testId": self.test_id},
        )
        return self._artifact_ref(body)

    async def assemble_and_upload(self, ordered_blobs: List[bytes]) -> str:
        files = [
            (f"answerImage_{index}", (f"page_{index + 1}.jpg", blob, "application/octet-stream"))
            for index, blob in enumerate(ordered_blobs)
        ]
        body = await self._call(
            "POST",
            "/api/student/upload-answer-images",
            files=files,
            data={"testId": self.test_id, "imageCount": str(len(ordered_blobs))},
        )
        return self._artifact_ref(body)

    # ============== Mobile handoff ==============

    async def request(self, contact: str, expiry_minutes: int) -> HandoffTicket:
        body = await self._call(
            "POST",
            "/api/mobile-upload/request",
            json={
                "email": contact,
                "testId": self.test_id,
                "uploadType": "answer-sheet",
                "expiryMinutes": expiry_minutes,
            },
        )
        data = self._data(body)
        token = data.get("token") or body.get("token")
        if not token:
            raise CollaboratorError("Mobile upload request did not return a token")
        return HandoffTicket(token=token, link=data.get("uploadUrl"))

    async def poll_status(self, token: str) -> HandoffStatus:
        body = await self._call("GET", f"/api/mobile-upload/status/{token}")
        data = self._data(body)
        uploaded = data.get("uploadedFiles") or []
        analytics = data.get("analytics") or {}
        upload_count = int(analytics.get("successfulUploads") or len(uploaded))
        artifact_ref = None
        if uploaded:
            latest = uploaded[-1]
            artifact_ref = latest.get("driveUrl") or latest.get("driveFileId")
        return HandoffStatus(
            status=data.get("status", "pending"),
            upload_count=upload_count,
            artifact_ref=artifact_ref,
        )


class MonitoringEndpoint(MonitoringApi):
    """Monitoring calls of ``ExamServerClient`` under the ``MonitoringApi`` names."""

    def __init__(self, client: ExamServerClient):
        self.client = client

    async def start(self, test_id: str, settings: Dict[str, Any]) -> str:
        return await self.client.start_monitoring(test_id, settings)

    async def push_frame(self, session_id: str, frame: MonitoringFrame) -> None:
        await self.client.push_frame(session_id, frame)

    async def push_violation(self, session_id: str, violation: Violation) -> None:
        await self.client.push_violation(session_id, violation)

    async def end(self, session_id: str) -> None:
        await self.client.end(session_id)
