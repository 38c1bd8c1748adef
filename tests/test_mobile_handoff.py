"""
Tests for handing answer-page capture off to a phone
"""
import pytest

from examguard.capture.mobile_handoff import MobileHandoffService
from examguard.errors import HandoffActive, InvalidTransition
from examguard.models.schemas import HandoffStatus, HandoffTicket, MobileUploadStatus


@pytest.fixture
def service(mobile_api, fake_time):
    svc = MobileHandoffService(
        mobile_api,
        "http://student.test/",
        poll_seconds=3600,
        default_expiry_minutes=10,
        now_ms=fake_time,
    )
    yield svc
    svc.stop()


async def _request(service, contact="student@example.com", expiry_minutes=None):
    req = await service.request(contact, expiry_minutes)
    # drive polls by hand
    service.stop()
    return req


class TestRequest:

    async def test_request_builds_link_from_token(self, service, mobile_api, fake_time):
        requested = []
        service.signals.connect("requested", lambda **p: requested.append(p))

        req = await service.request("student@example.com")

        assert req.token == "tok123"
        assert req.upload_url == "http://student.test/mobile-upload/tok123"
        assert req.expires_at_epoch_ms == fake_time() + 10 * 60 * 1000
        assert service.status == MobileUploadStatus.REQUESTED
        assert service.polling
        assert requested[0]["token"] == "tok123"
        mobile_api.request.assert_awaited_once_with("student@example.com", 10)

    async def test_server_link_preferred(self, service, mobile_api):
        mobile_api.request.return_value = HandoffTicket(token="abc", link="https://exam.test/m/abc")
        req = await _request(service, expiry_minutes=5)
        assert req.upload_url == "https://exam.test/m/abc"

    async def test_second_request_while_pending(self, service):
        await _request(service)
        with pytest.raises(HandoffActive):
            await service.request("student@example.com")

    async def test_time_remaining(self, service, fake_time):
        assert service.time_remaining() == (0, 0)
        await _request(service, expiry_minutes=10)
        fake_time.advance(75)
        assert service.time_remaining() == (8, 45)

    async def test_qr_png(self, service):
        with pytest.raises(InvalidTransition):
            service.qr_png()
        await _request(service)
        assert service.qr_png().startswith(b"\x89PNG")


class TestPolling:

    async def test_upload_detected_once_per_new_count(self, service, mobile_api):
        """Repeated status results with the same count never fire twice"""
        detected = []
        service.signals.connect("detected", lambda **p: detected.append(p))
        await _request(service)

        mobile_api.poll_status.return_value = HandoffStatus(status="active", upload_count=1, artifact_ref="drive://m1")
        await service.poll_once()
        await service.poll_once()

        assert detected == [{"upload_count": 1, "artifact_ref": "drive://m1"}]
        assert service.upload_detected
        assert service.request_state.artifact_ref == "drive://m1"

        mobile_api.poll_status.return_value = HandoffStatus(status="active", upload_count=2, artifact_ref="drive://m2")
        await service.poll_once()
        assert [d["upload_count"] for d in detected] == [1, 2]

    async def test_expiry_stops_polling(self, service, mobile_api, fake_time):
        expired = []
        service.signals.connect("expired", lambda **p: expired.append(p))
        await service.request("student@example.com")
        assert service.polling

        polls_before = mobile_api.poll_status.await_count
        fake_time.advance(10 * 60 + 1)
        assert await service.poll_once() == MobileUploadStatus.EXPIRED

        assert not service.polling
        assert expired == [{"token": "tok123"}]
        assert mobile_api.poll_status.await_count == polls_before

        await service.poll_once()
        assert len(expired) == 1

    async def test_server_reported_expiry(self, service, mobile_api):
        await _request(service)
        mobile_api.poll_status.return_value = HandoffStatus(status="expired", upload_count=0)
        assert await service.poll_once() == MobileUploadStatus.EXPIRED

    async def test_new_request_after_expiry(self, service, mobile_api, fake_time):
        await _request(service)
        fake_time.advance(11 * 60)
        await service.poll_once()

        mobile_api.request.return_value = HandoffTicket(token="tok456")
        req = await _request(service)
        assert req.token == "tok456"
        assert service.status == MobileUploadStatus.REQUESTED

    async def test_poll_error_is_not_raised(self, service, mobile_api):
        await _request(service)
        mobile_api.poll_status.side_effect = RuntimeError("offline")
        assert await service.poll_once() == MobileUploadStatus.REQUESTED
