import unittest
from datetime import datetime, timedelta
from types import SimpleNamespace

from builders import AppTestCase, make_section, make_teacher, make_rule, make_lecture, make_student, mark
from attendance_portal.attendance_window import evaluate_window, window_for_lecture
from attendance_portal.models import AttendanceExtensionRequest
from attendance_portal import db

START = datetime(2025, 3, 3, 9, 0)
END = START + timedelta(hours=1)


def at_minute(m):
    return START + timedelta(minutes=m)


class EvaluateWindowTests(unittest.TestCase):

    def test_before_start_is_scheduled(self):
        state = evaluate_window(START, END, at_minute(-30), False)
        self.assertEqual(state.status, 'Scheduled')
        self.assertFalse(state.can_mark)
        self.assertFalse(state.can_edit)
        self.assertIn('starts in 30 minutes', state.message)

    def test_at_start_can_mark(self):
        state = evaluate_window(START, END, START, False)
        self.assertEqual(state.status, 'Ongoing')
        self.assertTrue(state.can_mark)
        self.assertFalse(state.can_edit)
        self.assertEqual(state.message, 'Lecture is ongoing. You have 10 minutes to mark attendance.')

    def test_exactly_ten_minutes_still_open(self):
        state = evaluate_window(START, END, at_minute(10), False)
        self.assertTrue(state.can_mark)

    def test_after_mark_window_unmarked_is_missed(self):
        state = evaluate_window(START, END, at_minute(10) + timedelta(seconds=1), False)
        self.assertEqual(state.status, 'Missed')
        self.assertFalse(state.allows_write)
        self.assertTrue(state.is_locked)
        self.assertEqual(state.message_type, 'error')
        self.assertIn('request an extension', state.message)

    def test_marked_within_twenty_minutes_is_editable(self):
        state = evaluate_window(START, END, at_minute(15), True)
        self.assertTrue(state.can_edit)
        self.assertTrue(state.can_mark)
        self.assertIn('You can edit it for 5 more minutes (20 min total window)', state.message)

    def test_marked_at_exactly_twenty_minutes_is_editable(self):
        self.assertTrue(evaluate_window(START, END, at_minute(20), True).can_edit)

    def test_marked_after_twenty_minutes_is_locked(self):
        state = evaluate_window(START, END, at_minute(20) + timedelta(seconds=1), True)
        self.assertEqual(state.status, 'Completed')
        self.assertFalse(state.allows_write)
        self.assertIn('Attendance is now locked', state.message)

    def test_custom_windows(self):
        self.assertTrue(evaluate_window(START, END, at_minute(14), False, mark_window=15).can_mark)
        self.assertFalse(evaluate_window(START, END, at_minute(16), False, mark_window=15).can_mark)

    def test_approved_extension_reopens_lecture(self):
        approved_at = START + timedelta(days=2)
        extension = SimpleNamespace(status='Approved', request_type='Missed', approved_at=approved_at)
        state = evaluate_window(START, END, approved_at + timedelta(hours=23), False, extension)
        self.assertEqual(state.status, 'Extended')
        self.assertTrue(state.can_mark)
        self.assertTrue(state.can_edit)
        self.assertEqual(state.deadline, approved_at + timedelta(hours=24))
        self.assertIn('Extension approved for missed attendance', state.message)

    def test_expired_extension_locks_lecture(self):
        approved_at = START + timedelta(days=2)
        extension = SimpleNamespace(status='Approved', request_type='Edit', approved_at=approved_at)
        state = evaluate_window(START, END, approved_at + timedelta(hours=24, seconds=1), True, extension)
        self.assertFalse(state.allows_write)
        self.assertEqual(state.status, 'Completed')
        self.assertEqual(state.message, 'Extension window has expired. Contact admin for assistance.')

    def test_pending_extension_is_ignored(self):
        extension = SimpleNamespace(status='Pending', request_type='Missed', approved_at=None)
        state = evaluate_window(START, END, at_minute(60), False, extension)
        self.assertEqual(state.status, 'Missed')


class WindowForLectureTests(AppTestCase):

    def test_uses_latest_approved_request(self):
        section = make_section()
        teacher = make_teacher()
        rule = make_rule(teacher, section)
        start = datetime.now() - timedelta(days=1)
        lecture = make_lecture(rule, start)
        now = datetime.now()
        db.session.add(AttendanceExtensionRequest(lecture_id=lecture.id, teacher_id=teacher.id,
                                                  request_type='Missed', reason='Network down',
                                                  status='Approved', approved_at=now - timedelta(hours=1)))
        db.session.commit()
        state = window_for_lecture(lecture, now)
        self.assertEqual(state.status, 'Extended')

    def test_records_mark_lecture_as_attended(self):
        section = make_section()
        teacher = make_teacher()
        rule = make_rule(teacher, section)
        student = make_student(section, '2024-CS-001')
        lecture = make_lecture(rule, datetime.now() - timedelta(minutes=12))
        mark(lecture, student)
        state = window_for_lecture(lecture)
        self.assertTrue(state.can_edit)


if __name__ == "__main__":
    unittest.main()
