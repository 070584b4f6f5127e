import threading
from datetime import datetime
from types import SimpleNamespace

import pytest
from firebase_admin import exceptions, messaging

from conftest import make_record
from itrack.config import Settings
from itrack.db import AppContext
from itrack.models.attendance import parse_event
from itrack.services import fcm
from itrack.services.fcm import AttendanceNotifier


def test_photo_pipeline_order():
    settings = Settings(
        debug=True,
        photo_upload_endpoints="https://a.example.com/upload, raw:https://b.example.com/raw",
        s3_bucket_photos="itrack-photos",
        photo_placeholder_url="https://cdn.example.com/placeholder.png",
    )
    context = AppContext(settings)
    context.firebase_app = object()

    pipeline = context.build_photo_pipeline()

    assert pipeline.provider_names == [
        "http:https://a.example.com/upload",
        "http:https://b.example.com/raw",
        "s3",
        "firebase",
        "placeholder",
    ]
    assert pipeline.compress_threshold_bytes == 500 * 1024


def test_unconfigured_pipeline_is_empty():
    assert AppContext(Settings(debug=True)).build_photo_pipeline().providers == []


def test_production_requires_jwt_secret():
    with pytest.raises(ValueError):
        Settings(debug=False, jwt_secret_key="change-me-in-production")
    assert Settings(debug=False, jwt_secret_key="s3cr3t").jwt_secret_key == "s3cr3t"


def test_firebase_disabled_without_credentials():
    assert fcm.init_firebase_app("") is None


@pytest.mark.anyio
class TestNotifier:
    @pytest.fixture
    def sent(self, monkeypatch):
        messages = []

        def fake_send(message, app=None):
            messages.append(message)
            return SimpleNamespace(success_count=len(message.tokens), failure_count=0)

        monkeypatch.setattr(messaging, "send_each_for_multicast", fake_send)
        return messages

    async def test_submission_goes_to_teacher(self, directory, sent):
        directory.tokens["teacher1"] = ["t-1", "t-2"]
        notifier = AttendanceNotifier(object(), directory)
        event = parse_event(make_record("e1", is_late=True))

        await notifier.submitted(event)

        assert sent[0].tokens == ["t-1", "t-2"]
        assert sent[0].data["attendance_id"] == "e1"
        assert "(late)" in sent[0].notification.body

    async def test_decision_goes_to_intern(self, directory, sent):
        directory.tokens["intern1"] = ["i-1"]
        notifier = AttendanceNotifier(object(), directory)
        event = parse_event(make_record("e1", status="rejected", approval_reason="blurry"))

        await notifier.decided(event)

        assert sent[0].tokens == ["i-1"]
        assert sent[0].data["status"] == "rejected"
        assert "Reason: blurry" in sent[0].notification.body

    async def test_large_audiences_are_batched(self, directory, sent):
        directory.tokens["teacher1"] = [f"t-{i}" for i in range(fcm.FCM_BATCH_LIMIT + 1)]
        await AttendanceNotifier(object(), directory).submitted(parse_event(make_record("e1")))
        assert [len(m.tokens) for m in sent] == [fcm.FCM_BATCH_LIMIT, 1]

    async def test_no_app_sends_nothing(self, directory, sent):
        directory.tokens["teacher1"] = ["t-1"]
        await AttendanceNotifier(None, directory).submitted(parse_event(make_record("e1")))
        assert sent == []

    async def test_delivery_errors_are_logged_not_raised(self, directory, monkeypatch):
        def failing_send(message, app=None):
            raise exceptions.UnavailableError("fcm down")

        monkeypatch.setattr(messaging, "send_each_for_multicast", failing_send)
        directory.tokens["intern1"] = ["i-1"]
        event = parse_event(make_record("e1", status="approved", clock_out=datetime(2024, 3, 1, 17)))
        await AttendanceNotifier(object(), directory).decided(event)

    async def test_send_runs_off_the_event_loop_thread(self, directory, monkeypatch):
        threads = []

        def slow_send(message, app=None):
            threads.append(threading.get_ident())
            return SimpleNamespace(success_count=1, failure_count=0)

        monkeypatch.setattr(messaging, "send_each_for_multicast", slow_send)
        directory.tokens["teacher1"] = ["t-1"]
        await AttendanceNotifier(object(), directory).submitted(parse_event(make_record("e1")))
        assert threads and threads[0] != threading.get_ident()
