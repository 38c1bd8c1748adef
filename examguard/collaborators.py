"""
External collaborators consumed by the proctoring core.

Only the operations the session needs are modelled here; the exam server's
wire format lives in ``examguard.clients.exam_server``.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from .models.schemas import (
    HandoffStatus,
    HandoffTicket,
    MonitoringFrame,
    StartResult,
    SubmitPayload,
    SubmitResult,
    Violation,
)


class SessionApi(ABC):
    @abstractmethod
    async def start(self, test_id: str) -> StartResult:
        ...

    @abstractmethod
    async def submit(self, test_id: str, payload: SubmitPayload) -> SubmitResult:
        ...


class MonitoringApi(ABC):
    @abstractmethod
    async def start(self, test_id: str, settings: Dict[str, Any]) -> str:
        """Open a monitoring session and return its id."""

    @abstractmethod
    async def push_frame(self, session_id: str, frame: MonitoringFrame) -> None:
        ...

    @abstractmethod
    async def push_violation(self, session_id: str, violation: Violation) -> None:
        ...

    @abstractmethod
    async def end(self, session_id: str) -> None:
        ...


class ArtifactApi(ABC):
    @abstractmethod
    async def upload_single(self, blob: bytes, content_type: str) -> str:
        """Upload a ready document and return its artifact reference."""

    @abstractmethod
    async def assemble_and_upload(self, ordered_blobs: List[bytes]) -> str:
        """Have the server merge page images into one document; return its reference."""


class MobileHandoffApi(ABC):
    @abstractmethod
    async def request(self, contact: str, expiry_minutes: int) -> HandoffTicket:
        ...

    @abstractmethod
    async def poll_status(self, token: str) -> HandoffStatus:
        ...
