"""
Proctoring Logger - Logs session lifecycle events
"""

import logging
from typing import Dict, Any, Optional

logger = logging.getLogger("examguard.proctor")


def log_session_event(
    session_id: str,
    event_type: str,
    details: Optional[Dict[str, Any]] = None,
    level: str = "info"
):
    """
    Log a proctoring event.

    Args:
        session_id: Proctoring session ID
        event_type: Type of event (session_start, violation, submit, ...)
        details: Optional event details
        level: Log level (debug, info, warning, error)
    """
    message = f"[PROCTOR] session={session_id} event={event_type}"

    if details:
        detail_str = " ".join(f"{k}={v}" for k, v in details.items())
        message += f" {detail_str}"

    if level == "debug":
        logger.debug(message)
    elif level == "warning":
        logger.warning(message)
    elif level == "error":
        logger.error(message)
    else:
        logger.info(message)


def log_session_start(session_id: str, test_id: str, student_id: Optional[str], resumed: bool):
    """Log session start event"""
    log_session_event(
        session_id=session_id,
        event_type="session_start",
        details={
            "test_id": test_id,
            "student_id": student_id,
            "resumed": resumed
        }
    )


def log_session_end(session_id: str, reason: str, violations: int, time_taken: int, result_ref: Optional[str]):
    """Log session end event"""
    log_session_event(
        session_id=session_id,
        event_type="session_end",
        details={
            "reason": reason,
            "violations": violations,
            "time_taken": time_taken,
            "result_ref": result_ref or "none"
        }
    )


def log_violation(session_id: str, violation_type: str, count: int, threshold: int):
    """Log a recorded violation"""
    log_session_event(
        session_id=session_id,
        event_type="violation",
        details={
            "type": violation_type,
            "count": count,
            "threshold": threshold
        },
        level="warning"
    )
