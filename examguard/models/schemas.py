from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional, Union
from datetime import datetime, timezone
from enum import Enum


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ViolationType(str, Enum):
    TAB_SWITCH = "tab_switch"
    FULLSCREEN_EXIT = "fullscreen_exit"
    PROHIBITED_KEYS = "prohibited_keys"


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    SUBMITTING = "submitting"
    EXITING = "exiting"
    SUBMITTED = "submitted"


class SubmitReason(str, Enum):
    MANUAL = "manual"
    TIME_LIMIT = "time_limit"
    MAX_VIOLATIONS_EXCEEDED = "max_violations_exceeded"
    EXIT = "exit"


class MobileUploadStatus(str, Enum):
    IDLE = "idle"
    REQUESTED = "requested"
    UPLOADED = "uploaded"
    EXPIRED = "expired"


class CameraOwner(str, Enum):
    NONE = "none"
    MONITORING = "monitoring"
    CAPTURE = "capture"


class Violation(BaseModel):
    type: ViolationType
    timestamp: str = Field(default_factory=utc_now_iso)
    details: Union[str, Dict[str, Any]] = ""


class Session(BaseModel):
    session_id: str
    test_id: str
    student_id: Optional[str] = None
    state: SessionState = SessionState.NOT_STARTED
    started_at_epoch_ms: Optional[int] = None
    duration_seconds: int = 0
    time_taken_seconds: int = 0
    answer_artifact_ref: Optional[str] = None
    violations: List[Violation] = Field(default_factory=list)


class Page(BaseModel):
    id: str
    source: bytes = Field(repr=False)
    content_type: str
    order_index: int
    is_captured: bool = False


class MobileUploadRequest(BaseModel):
    token: str
    upload_url: str
    expires_at_epoch_ms: int
    status: MobileUploadStatus = MobileUploadStatus.REQUESTED
    upload_count: int = 0
    artifact_ref: Optional[str] = None


class MonitoringFrame(BaseModel):
    timestamp: str = Field(default_factory=utc_now_iso)
    image: bytes = Field(repr=False)
    content_type: str = "image/jpeg"


# ============== Test configuration ==============

class ProctoringSettings(BaseModel):
    max_violations: int = 10
    require_fullscreen: bool = False


class CameraMonitoringSettings(BaseModel):
    enabled: bool = False
    require_camera_access: bool = False
    capture_interval_ms: int = 30000


class ExamConfig(BaseModel):
    test_id: str
    duration_minutes: int = 60
    paper_submission_required: bool = False
    proctoring: ProctoringSettings = Field(default_factory=ProctoringSettings)
    camera_monitoring: CameraMonitoringSettings = Field(default_factory=CameraMonitoringSettings)


# ============== Collaborator payloads ==============

class ResumeState(BaseModel):
    time_taken_seconds: int = 0
    answer_artifact_ref: Optional[str] = None


class StartResult(BaseModel):
    accepted: bool
    resume_state: Optional[ResumeState] = None
    message: Optional[str] = None


class SubmitPayload(BaseModel):
    answer_artifact_ref: Optional[str] = None
    violations: List[Violation] = Field(default_factory=list)
    time_taken_seconds: int = 0
    reason: SubmitReason = SubmitReason.MANUAL
    is_auto_submit: bool = False
    mobile_upload_token: Optional[str] = None


class SubmitResult(BaseModel):
    accepted: bool
    result_ref: Optional[str] = None
    message: Optional[str] = None


class HandoffTicket(BaseModel):
    token: str
    link: Optional[str] = None


class HandoffStatus(BaseModel):
    status: str = "pending"
    upload_count: int = 0
    artifact_ref: Optional[str] = None


class KeyEvent(BaseModel):
    key: str
    ctrl_key: bool = False
    shift_key: bool = False
    alt_key: bool = False
    meta_key: bool = False


# ============== Agent API models ==============

class StartSessionRequest(BaseModel):
    test: ExamConfig
    student_id: Optional[str] = None
    session_id: Optional[str] = None
    # the shell enters fullscreen before asking to start
    is_fullscreen: bool = False


class VisibilityEventRequest(BaseModel):
    hidden: bool


class FullscreenEventRequest(BaseModel):
    is_fullscreen: bool


class FilePickerEventRequest(BaseModel):
    open: bool


class KeydownResponse(BaseModel):
    prevent_default: bool
    recorded: bool


class MobileHandoffRequest(BaseModel):
    contact: str
    expiry_minutes: Optional[int] = None


class MobileHandoffResponse(BaseModel):
    token: str
    upload_url: str
    expires_at_epoch_ms: int
    status: MobileUploadStatus
    upload_count: int


class PageResponse(BaseModel):
    id: str
    content_type: str
    order_index: int
    is_captured: bool
    size: int


class FinalizeResponse(BaseModel):
    answer_artifact_ref: Optional[str] = None
    locked: bool


class SubmitSessionRequest(BaseModel):
    # other reasons belong to auto-submit and exit
    reason: Literal["manual"] = "manual"


class SessionResponse(BaseModel):
    session: Session
    remaining_seconds: Optional[int] = None
    camera_owner: CameraOwner = CameraOwner.NONE
    mobile_status: MobileUploadStatus = MobileUploadStatus.IDLE
    pages: List[PageResponse] = Field(default_factory=list)
    result_ref: Optional[str] = None
    message: Optional[str] = None


class SignalEvent(BaseModel):
    type: str = "signal"
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    session_id: Optional[str] = None
