import logging
from datetime import datetime, timedelta

from attendance_portal import db
from attendance_portal.models import (AttendanceExtensionRequest, Lecture, TimetableRule,
                                      TeacherCourse, Notification)

logger = logging.getLogger(__name__)

REQUEST_TYPES = ('Missed', 'Edit')
OPEN_STATUSES = ('Pending', 'Approved')


def notify(user_id, title, message):
    db.session.add(Notification(user_id=user_id, title=title, message=message))


def _teacher_lectures(teacher):
    return (Lecture.query
            .join(TimetableRule, Lecture.timetable_rule_id == TimetableRule.id)
            .join(TeacherCourse, TimetableRule.teacher_course_id == TeacherCourse.id)
            .filter(TeacherCourse.teacher_id == teacher.id))


def has_open_request(lecture_id):
    return AttendanceExtensionRequest.query.filter(
        AttendanceExtensionRequest.lecture_id == lecture_id,
        AttendanceExtensionRequest.status.in_(OPEN_STATUSES),
    ).first() is not None


def is_eligible(lecture, request_type, now, lookback_days=7, mark_window=10, edit_window=20):
    """Missed: past the marking window with no records. Edit: past the edit window with records."""
    if lecture.start_datetime < now - timedelta(days=lookback_days):
        return False
    has_attendance = len(lecture.attendance_records) > 0
    if request_type == 'Missed':
        return lecture.start_datetime + timedelta(minutes=mark_window) < now and not has_attendance
    if request_type == 'Edit':
        return lecture.start_datetime + timedelta(minutes=edit_window) < now and has_attendance
    return False


def eligible_lectures(teacher, request_type, now=None, lookback_days=7, mark_window=10, edit_window=20):
    now = now or datetime.now()
    candidates = (_teacher_lectures(teacher)
                  .filter(Lecture.start_datetime >= now - timedelta(days=lookback_days),
                          Lecture.start_datetime < now)
                  .order_by(Lecture.start_datetime.desc())
                  .all())
    return [
        lec for lec in candidates
        if is_eligible(lec, request_type, now, lookback_days, mark_window, edit_window)
        and not has_open_request(lec.id)
    ]


def create_request(teacher, lecture_id, request_type, reason, now=None, lookback_days=7,
                   mark_window=10, edit_window=20):
    """Store a Pending request. Raises ValueError with a user-facing message."""
    now = now or datetime.now()
    reason = (reason or '').strip()
    if not lecture_id or not reason:
        raise ValueError("Please provide all required information for the extension request.")
    if request_type not in REQUEST_TYPES:
        raise ValueError("Invalid request type.")
    lecture = _teacher_lectures(teacher).filter(Lecture.id == lecture_id).first()
    if lecture is None:
        raise ValueError("Lecture not found.")
    if has_open_request(lecture.id):
        raise ValueError("An extension request for this lecture already exists.")
    if not is_eligible(lecture, request_type, now, lookback_days, mark_window, edit_window):
        raise ValueError("This lecture is not eligible for that kind of request.")
    req = AttendanceExtensionRequest(lecture_id=lecture.id, teacher_id=teacher.id,
                                     request_type=request_type, reason=reason[:500],
                                     status='Pending', requested_at=now)
    db.session.add(req)
    db.session.commit()
    logger.info(f"Extension request {req.id} ({request_type}) created for lecture {lecture.id}")
    return req


def _pending(request_id):
    req = db.session.get(AttendanceExtensionRequest, request_id)
    if req is None:
        raise ValueError("Extension request not found.")
    if req.status != 'Pending':
        raise ValueError("This request has already been processed.")
    return req


def approve_request(request_id, admin_user, notes=None, now=None, valid_hours=24):
    now = now or datetime.now()
    req = _pending(request_id)
    req.status = 'Approved'
    req.approved_at = now
    req.approved_by_user_id = admin_user.id if admin_user else None
    req.admin_notes = notes or None
    req.extends_until = now + timedelta(hours=valid_hours)
    req.lecture.attendance_deadline = req.extends_until
    notify(req.teacher.user_id, 'Extension request approved',
           f"You can mark/edit attendance for lecture on {req.lecture.start_datetime:%b %d, %Y %H:%M} "
           f"until {req.extends_until:%b %d, %Y %I:%M %p}.")
    db.session.commit()
    logger.info(f"Extension request {req.id} approved until {req.extends_until}")
    return req


def reject_request(request_id, admin_user, notes=None, now=None):
    now = now or datetime.now()
    req = _pending(request_id)
    req.status = 'Rejected'
    req.rejected_at = now
    req.approved_by_user_id = admin_user.id if admin_user else None
    req.admin_notes = notes or None
    notify(req.teacher.user_id, 'Extension request rejected',
           f"Your request for lecture on {req.lecture.start_datetime:%b %d, %Y %H:%M} was rejected."
           + (f" Notes: {notes}" if notes else ''))
    db.session.commit()
    logger.info(f"Extension request {req.id} rejected")
    return req


def expire_stale_requests(now=None, valid_hours=24):
    """Mark Pending requests older than ``valid_hours`` as Expired; returns how many changed."""
    now = now or datetime.now()
    cutoff = now - timedelta(hours=valid_hours)
    stale = AttendanceExtensionRequest.query.filter(
        AttendanceExtensionRequest.status == 'Pending',
        AttendanceExtensionRequest.requested_at < cutoff,
    ).all()
    for req in stale:
        req.status = 'Expired'
    if stale:
        db.session.commit()
        logger.info(f"Expired {len(stale)} stale extension requests")
    return len(stale)
