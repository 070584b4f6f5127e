"""Firebase app bootstrap and Cloud Messaging for attendance updates."""
import asyncio
import logging
from typing import Optional

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from itrack.models.attendance import AttendanceEvent, AttendanceStatus
from itrack.services.directory import UserDirectory

logger = logging.getLogger(__name__)

FCM_BATCH_LIMIT = 500


def init_firebase_app(credentials_path: str, storage_bucket: str = "") -> Optional[firebase_admin.App]:
    """Create a named Firebase app, or None when Firebase is not configured."""
    if not credentials_path:
        logger.warning("FIREBASE_CREDENTIALS_PATH not set. FCM and Firebase Storage will be disabled.")
        return None
    try:
        cred = credentials.Certificate(credentials_path)
        options = {"storageBucket": storage_bucket} if storage_bucket else None
        return firebase_admin.initialize_app(cred, options, name="itrack")
    except (ValueError, OSError) as e:
        logger.error(f"Failed to initialize Firebase app: {e}")
        return None


class AttendanceNotifier:
    """Push attendance updates to the teacher (submissions) or intern (decisions).

    Delivery is best effort: failures are logged and never fail the
    attendance transition that triggered them.
    """

    def __init__(self, app: Optional[firebase_admin.App], directory: UserDirectory):
        self._app = app
        self._directory = directory

    async def _send(self, user_id: str, title: str, body: str, data: dict[str, str]) -> None:
        if self._app is None:
            return
        tokens = await self._directory.device_tokens([user_id])
        if not tokens:
            return
        for i in range(0, len(tokens), FCM_BATCH_LIMIT):
            batch = tokens[i:i + FCM_BATCH_LIMIT]
            message = messaging.MulticastMessage(
                notification=messaging.Notification(title=title, body=body),
                data=data,
                tokens=batch,
            )
            try:
                response = await asyncio.to_thread(messaging.send_each_for_multicast, message, app=self._app)
                logger.info(f"Sent attendance notification to {response.success_count} devices. Errors: {response.failure_count}")
            except (exceptions.FirebaseError, ValueError) as e:
                logger.error(f"FCM attendance notification failed: {e}")

    async def submitted(self, event: AttendanceEvent) -> None:
        kind = "time-out" if event.clock_out else "time-in"
        body = f"A {kind} at {event.location or 'unknown location'} is waiting for your approval."
        if event.is_late and not event.clock_out:
            body += " (late)"
        if event.is_early and event.clock_out:
            body += " (early)"
        await self._send(
            event.teacher_id,
            "Attendance approval needed",
            body,
            {"type": "attendance_pending", "attendance_id": event.id or "", "intern_id": event.intern_id},
        )

    async def decided(self, event: AttendanceEvent) -> None:
        verdict = "approved" if event.status == AttendanceStatus.APPROVED else "rejected"
        body = f"Your attendance for {event.clock_in.strftime('%d %b %Y')} was {verdict}."
        if event.approval_reason:
            body += f" Reason: {event.approval_reason}"
        await self._send(
            event.intern_id,
            f"Attendance {verdict}",
            body,
            {"type": "attendance_decision", "attendance_id": event.id or "", "status": verdict},
        )
