"""Time window rules for marking and editing lecture attendance.

A lecture may be marked during the first ``mark_window`` minutes after it
starts. Once marked, the record stays editable until ``edit_window`` minutes
after the start. After that the lecture is locked unless an admin approved an
extension request, which reopens it for ``extension_hours`` counted from the
approval time.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

MARK_WINDOW_MINUTES = 10
EDIT_WINDOW_MINUTES = 20
EXTENSION_VALID_HOURS = 24

STATUS_SCHEDULED = 'Scheduled'
STATUS_ONGOING = 'Ongoing'
STATUS_MISSED = 'Missed'
STATUS_COMPLETED = 'Completed'
STATUS_EXTENDED = 'Extended'


@dataclass
class WindowState:
    status: str
    can_mark: bool
    can_edit: bool
    message: str
    message_type: str = 'info'
    is_locked: bool = False
    deadline: Optional[datetime] = None
    minutes_from_start: float = 0.0

    @property
    def allows_write(self):
        return self.can_mark or self.can_edit


def minutes_from_start(start: datetime, now: datetime) -> float:
    return (now - start).total_seconds() / 60.0


def extension_deadline(extension, hours=EXTENSION_VALID_HOURS):
    if extension is None or extension.approved_at is None:
        return None
    return extension.approved_at + timedelta(hours=hours)


def _is_approved(extension):
    return (
        extension is not None
        and getattr(extension, 'status', None) == 'Approved'
        and getattr(extension, 'approved_at', None) is not None
        and getattr(extension, 'request_type', None) in ('Missed', 'Edit')
    )


def evaluate_window(start: datetime, end: datetime, now: datetime, has_attendance: bool,
                    extension=None, mark_window=MARK_WINDOW_MINUTES,
                    edit_window=EDIT_WINDOW_MINUTES,
                    extension_hours=EXTENSION_VALID_HOURS) -> WindowState:
    """Work out what a teacher may do with a lecture at ``now``.

    ``extension`` is an approved AttendanceExtensionRequest (or any object
    with ``status``, ``request_type`` and ``approved_at``). Boundaries at
    exactly ``mark_window`` and ``edit_window`` minutes belong to the
    earlier bucket.
    """
    minutes = minutes_from_start(start, now)
    locked_status = STATUS_COMPLETED if has_attendance else STATUS_MISSED

    if _is_approved(extension):
        deadline = extension_deadline(extension, extension_hours)
        if now <= deadline:
            kind = 'missed attendance' if extension.request_type == 'Missed' else 'attendance edit'
            return WindowState(
                status=STATUS_EXTENDED,
                can_mark=True,
                can_edit=True,
                message=(f"Extension approved for {kind}. You can mark/edit attendance "
                         f"until {deadline:%b %d, %I:%M %p}."),
                message_type='success',
                deadline=deadline,
                minutes_from_start=minutes,
            )
        return WindowState(
            status=locked_status,
            can_mark=False,
            can_edit=False,
            message="Extension window has expired. Contact admin for assistance.",
            message_type='error',
            is_locked=True,
            deadline=deadline,
            minutes_from_start=minutes,
        )

    if minutes < 0:
        return WindowState(
            status=STATUS_SCHEDULED,
            can_mark=False,
            can_edit=False,
            message=(f"Lecture starts in {math.ceil(-minutes)} minutes. You can mark attendance "
                     f"within {mark_window} minutes after it starts."),
            message_type='info',
            deadline=start + timedelta(minutes=mark_window),
            minutes_from_start=minutes,
        )

    if minutes <= mark_window:
        if has_attendance:
            return _edit_state(start, minutes, edit_window)
        return WindowState(
            status=STATUS_ONGOING,
            can_mark=True,
            can_edit=False,
            message=f"Lecture is ongoing. You have {math.ceil(mark_window - minutes)} minutes to mark attendance.",
            message_type='success',
            deadline=start + timedelta(minutes=mark_window),
            minutes_from_start=minutes,
        )

    if minutes <= edit_window and has_attendance:
        return _edit_state(start, minutes, edit_window)

    if has_attendance:
        message = "Lecture has ended. Attendance is now locked. Contact admin to request changes."
    else:
        message = (f"Marking window has closed ({mark_window} minutes after lecture start). "
                   "You can request an extension from admin.")
    return WindowState(
        status=locked_status,
        can_mark=False,
        can_edit=False,
        message=message,
        message_type='error',
        is_locked=True,
        minutes_from_start=minutes,
    )


def _edit_state(start, minutes, edit_window):
    return WindowState(
        status=STATUS_ONGOING,
        can_mark=True,
        can_edit=True,
        message=(f"Attendance marked. You can edit it for {math.ceil(edit_window - minutes)} "
                 f"more minutes ({edit_window} min total window)."),
        message_type='info',
        deadline=start + timedelta(minutes=edit_window),
        minutes_from_start=minutes,
    )


def window_for_lecture(lecture, now=None, config=None):
    """Evaluate a persisted Lecture using its records and latest approved extension."""
    now = now or datetime.now()
    config = config or {}
    has_attendance = len(lecture.attendance_records) > 0
    approved = [r for r in lecture.extension_requests if r.status == 'Approved' and r.approved_at]
    extension = max(approved, key=lambda r: r.approved_at) if approved else None
    return evaluate_window(
        lecture.start_datetime,
        lecture.end_datetime,
        now,
        has_attendance,
        extension=extension,
        mark_window=config.get('ATTENDANCE_MARK_WINDOW_MINUTES', MARK_WINDOW_MINUTES),
        edit_window=config.get('ATTENDANCE_EDIT_WINDOW_MINUTES', EDIT_WINDOW_MINUTES),
        extension_hours=config.get('EXTENSION_VALID_HOURS', EXTENSION_VALID_HOURS),
    )
