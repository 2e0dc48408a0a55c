import re
import unittest
from datetime import date, datetime, timedelta
from io import BytesIO

from builders import (AppTestCase, make_user, make_section, make_teacher, make_rule, make_lecture,
                      make_student, mark, PASSWORD)
from attendance_portal import db, mail, security
from attendance_portal.models import (User, Student, Lecture, AttendanceRecord, AttendanceExtensionRequest,
                                      AuditLog)


class AuthRouteTests(AppTestCase):

    def test_healthz(self):
        response = self.client.get('/healthz')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['status'], 'ok')

    def test_home_redirects_to_login(self):
        response = self.client.get('/', follow_redirects=True)
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Login', response.data)

    def test_login_sets_session(self):
        user = make_user('admin@uni.edu', 'admin')
        response = self.client.post('/login', data={'email': 'Admin@Uni.edu', 'password': PASSWORD})
        self.assertEqual(response.status_code, 302)
        self.assertTrue(response.headers['Location'].endswith('/admin/dashboard'))
        with self.client.session_transaction() as sess:
            self.assertTrue(sess['logged_in'])
            self.assertEqual(sess['user_id'], user.id)
            self.assertEqual(sess['role'], 'admin')
        self.assertEqual(AuditLog.query.filter_by(action='login').count(), 1)

    def test_bad_login(self):
        make_user('admin@uni.edu', 'admin')
        response = self.client.post('/login', data={'email': 'admin@uni.edu', 'password': 'wrong'},
                                    follow_redirects=True)
        self.assertIn(b'Invalid email or password.', response.data)
        with self.client.session_transaction() as sess:
            self.assertNotIn('logged_in', sess)

    def test_legacy_password_login_upgrades_hash(self):
        make_user('old@uni.edu', 'student', password_hash='plain-old')
        self.client.post('/login', data={'email': 'old@uni.edu', 'password': 'plain-old'})
        self.assertTrue(User.query.filter_by(email='old@uni.edu').first().password_hash.startswith('PBKDF2$'))

    def test_login_required(self):
        response = self.client.get('/admin/dashboard')
        self.assertEqual(response.status_code, 302)
        self.assertIn('/login?next=', response.headers['Location'])

    def test_role_guard(self):
        section = make_section()
        student = make_student(section, '2024-CS-001')
        self.login_as(student.user)
        response = self.client.get('/admin/users', follow_redirects=True)
        self.assertIn(b'You are not authorized to perform this action.', response.data)

    def test_password_reset_flow(self):
        make_user('ali@uni.edu', 'student', full_name='Ali Khan')
        with mail.record_messages() as outbox:
            response = self.client.post('/forgot-password', data={'email': 'ali@uni.edu'}, follow_redirects=True)
        self.assertIn(b'If the account exists', response.data)
        self.assertEqual(len(outbox), 1)
        path = re.search(r'(/reset-password/\S+)', outbox[0].body).group(1)
        response = self.client.post(path, data={'password': 'NewPass123', 'confirm_password': 'NewPass123'},
                                    follow_redirects=True)
        self.assertIn(b'Password has been reset', response.data)
        self.assertIsNotNone(security.authenticate('ali@uni.edu', 'NewPass123'))

    def test_unknown_email_sends_nothing(self):
        with mail.record_messages() as outbox:
            self.client.post('/forgot-password', data={'email': 'ghost@uni.edu'})
        self.assertEqual(outbox, [])

    def test_bad_reset_token(self):
        response = self.client.get('/reset-password/not-a-token', follow_redirects=True)
        self.assertIn(b'Invalid reset link.', response.data)

    def test_change_password_policy(self):
        user = make_user('ali@uni.edu')
        self.login_as(user)
        response = self.client.post('/change-password', data={'current_password': PASSWORD, 'password': 'weak',
                                                              'confirm_password': 'weak'})
        self.assertIn(b'Password must be at least 8 characters.', response.data)
        self.client.post('/change-password', data={'current_password': PASSWORD, 'password': 'Better123',
                                                   'confirm_password': 'Better123'})
        self.assertIsNotNone(security.authenticate('ali@uni.edu', 'Better123'))


class TeacherRouteTests(AppTestCase):

    def setUp(self):
        super().setUp()
        self.section = make_section()
        self.teacher = make_teacher()
        self.rule = make_rule(self.teacher, self.section)
        self.ali = make_student(self.section, '2024-CS-001', full_name='Ali')
        self.sara = make_student(self.section, '2024-CS-002', full_name='Sara')
        self.login_as(self.teacher.user)

    def test_dashboard(self):
        response = self.client.get('/teacher/dashboard')
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Welcome, Dr. Teacher', response.data)

    def test_mark_attendance_in_window(self):
        lecture = make_lecture(self.rule, datetime.now() - timedelta(minutes=5))
        page = self.client.get(f'/teacher/attendance/{lecture.id}/mark')
        self.assertIn(b'Lecture is ongoing.', page.data)
        response = self.client.post(f'/teacher/attendance/{lecture.id}/mark',
                                    data={f'status_{self.ali.id}': 'Present', f'status_{self.sara.id}': 'Absent'},
                                    follow_redirects=True)
        self.assertIn(b'Attendance marked successfully! Present: 1, Absent: 1, Excused: 0', response.data)
        self.assertEqual(AttendanceRecord.query.filter_by(lecture_id=lecture.id).count(), 2)
        self.assertEqual(db.session.get(Lecture, lecture.id).status, 'Completed')

    def test_edit_within_window_updates_records(self):
        lecture = make_lecture(self.rule, datetime.now() - timedelta(minutes=15))
        mark(lecture, self.ali, 'Absent')
        mark(lecture, self.sara, 'Absent')
        self.client.post(f'/teacher/attendance/{lecture.id}/mark',
                         data={f'status_{self.ali.id}': 'Present', f'status_{self.sara.id}': 'Absent'})
        self.assertEqual(AttendanceRecord.query.filter_by(student_id=self.ali.id).one().status, 'Present')
        self.assertEqual(AttendanceRecord.query.count(), 2)

    def test_locked_lecture_rejects_marking(self):
        lecture = make_lecture(self.rule, datetime.now() - timedelta(hours=1))
        response = self.client.post(f'/teacher/attendance/{lecture.id}/mark',
                                    data={f'status_{self.ali.id}': 'Present'}, follow_redirects=True)
        self.assertIn(b'Marking window has closed', response.data)
        self.assertEqual(AttendanceRecord.query.count(), 0)

    def test_other_teacher_cannot_mark(self):
        lecture = make_lecture(self.rule, datetime.now() - timedelta(minutes=5))
        other = make_teacher('T-2', 'other@uni.edu')
        self.login_as(other.user)
        response = self.client.post(f'/teacher/attendance/{lecture.id}/mark',
                                    data={f'status_{self.ali.id}': 'Present'}, follow_redirects=True)
        self.assertIn(b'Lecture not found.', response.data)
        self.assertEqual(AttendanceRecord.query.count(), 0)

    def test_attendance_list_and_open_slot(self):
        response = self.client.get('/teacher/attendance')
        self.assertEqual(response.status_code, 200)
        today = date.today().isoformat()
        response = self.client.get(f'/teacher/attendance/open/{self.rule.id}/{today}')
        self.assertEqual(response.status_code, 302)
        self.assertEqual(Lecture.query.count(), 1)

    def test_open_slot_skips_special_session(self):
        today = date.today()
        quiz = make_lecture(self.rule, datetime.combine(today, self.rule.start_time) + timedelta(hours=5),
                            lecture_type='Quiz', created_by_teacher_id=self.teacher.id)
        response = self.client.get(f'/teacher/attendance/open/{self.rule.id}/{today.isoformat()}')
        self.assertEqual(response.status_code, 302)
        regular = Lecture.query.filter(Lecture.id != quiz.id).one()
        self.assertEqual(regular.start_datetime, datetime.combine(today, self.rule.start_time))
        self.assertTrue(response.headers['Location'].endswith(f'/teacher/attendance/{regular.id}/mark'))

    def test_extension_request(self):
        lecture = make_lecture(self.rule, datetime.now() - timedelta(days=1))
        response = self.client.post('/teacher/requests', data={'lecture_id': lecture.id, 'request_type': 'Missed',
                                                               'reason': 'Projector failure'},
                                    follow_redirects=True)
        self.assertIn(b'Extension request submitted.', response.data)
        self.assertEqual(AttendanceExtensionRequest.query.one().status, 'Pending')

    def test_special_session(self):
        tomorrow = (date.today() + timedelta(days=1)).isoformat()
        response = self.client.post('/teacher/special-sessions',
                                    data={'timetable_rule_id': self.rule.id, 'date': tomorrow,
                                          'start_time': '14:00', 'end_time': '15:00', 'lecture_type': 'MakeUp',
                                          'description': 'Missed class'},
                                    follow_redirects=True)
        self.assertIn(b'MakeUp session scheduled.', response.data)
        lecture = Lecture.query.one()
        self.assertTrue(lecture.is_special_session)

    def test_reports_csv(self):
        tc_id = self.rule.teacher_course_id
        response = self.client.get(f'/teacher/reports?tc={tc_id}&format=csv')
        self.assertEqual(response.mimetype, 'text/csv')
        self.assertIn(b'2024-CS-001', response.data)


class AdminRouteTests(AppTestCase):

    def setUp(self):
        super().setUp()
        self.admin = make_user('admin@uni.edu', 'admin', 'Admin')
        self.section = make_section('A')
        self.login_as(self.admin)

    def test_dashboard(self):
        response = self.client.get('/admin/dashboard')
        self.assertEqual(response.status_code, 200)
        self.assertIn(b'Overall attendance', response.data)

    def test_import_students_with_pdf_slips(self):
        data = {
            'file': (BytesIO(b"FullName,Email,FatherName,RollNumber\n"
                             b"Ali Khan,ali@uni.edu,Ahmed,2024-CS-001\n"
                             b"Bad Row,bad,Ahmed,2024-CS-002\n"), 'students.csv'),
            'section_id': str(self.section.id),
            'delivery': 'pdf',
        }
        response = self.client.post('/admin/import/students', data=data, content_type='multipart/form-data')
        self.assertEqual(response.mimetype, 'application/pdf')
        self.assertTrue(response.data.startswith(b'%PDF'))
        self.assertEqual(Student.query.count(), 1)

    def test_import_rejects_other_file_types(self):
        data = {'file': (BytesIO(b"not a sheet"), 'students.pdf'), 'section_id': str(self.section.id)}
        response = self.client.post('/admin/import/students', data=data, content_type='multipart/form-data',
                                    follow_redirects=True)
        self.assertIn(b'Only CSV and Excel (.xlsx) files are allowed.', response.data)
        self.assertEqual(Student.query.count(), 0)

    def test_import_teachers_with_email(self):
        data = {
            'file': (BytesIO(b"FullName,Email,BadgeNumber\nSara,sara@uni.edu,T-9\n"), 'teachers.csv'),
            'delivery': 'email',
        }
        with mail.record_messages() as outbox:
            response = self.client.post('/admin/import/teachers', data=data, content_type='multipart/form-data',
                                        follow_redirects=True)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(outbox), 1)
        self.assertIn(b'Credential emails sent: 1/1.', response.data)

    def test_reset_password_with_credential_slip(self):
        student = make_student(self.section, '2024-CS-001')
        old_hash = student.user.password_hash
        response = self.client.post(f'/admin/users/{student.user_id}/reset-password', data={'delivery': 'pdf'})
        self.assertEqual(response.mimetype, 'application/pdf')
        self.assertTrue(response.data.startswith(b'%PDF'))
        self.assertNotEqual(db.session.get(User, student.user_id).password_hash, old_hash)

    def test_add_student_user(self):
        response = self.client.post('/admin/users/add', data={
            'full_name': 'Ali', 'email': 'ali@uni.edu', 'role': 'student', 'roll_no': '2024-CS-001',
            'section_id': str(self.section.id), 'father_name': 'F'}, follow_redirects=True)
        self.assertIn(b'Temporary password', response.data)
        self.assertEqual(User.query.filter_by(email='ali@uni.edu').one().student.roll_no, '2024-CS-001')

    def test_add_user_rejects_bad_roll_number(self):
        response = self.client.post('/admin/users/add', data={
            'full_name': 'Ali', 'email': 'ali@uni.edu', 'role': 'student', 'roll_no': '24-CS-1',
            'section_id': str(self.section.id)})
        self.assertIn(b'Invalid roll number format', response.data)
        self.assertIsNone(User.query.filter_by(email='ali@uni.edu').first())

    def test_delete_student_removes_records(self):
        teacher = make_teacher()
        rule = make_rule(teacher, self.section)
        student = make_student(self.section, '2024-CS-001')
        mark(make_lecture(rule, datetime.now() - timedelta(days=1)), student)
        user_id = student.user_id
        self.client.post(f'/admin/users/{user_id}/delete')
        self.assertIsNone(db.session.get(User, user_id))
        self.assertEqual(AttendanceRecord.query.count(), 0)

    def test_generate_lectures_route(self):
        make_rule(make_teacher(), self.section, days='Mon')
        today = date.today()
        response = self.client.post('/admin/lectures/generate',
                                    data={'start_date': today.isoformat(),
                                          'end_date': (today + timedelta(days=6)).isoformat()},
                                    follow_redirects=True)
        self.assertIn(b'Successfully generated 1 lectures!', response.data)

    def test_generate_rejects_long_range(self):
        today = date.today()
        response = self.client.post('/admin/lectures/generate',
                                    data={'start_date': today.isoformat(),
                                          'end_date': (today + timedelta(days=120)).isoformat()},
                                    follow_redirects=True)
        self.assertIn(b'Maximum range is 90 days.', response.data)

    def test_approve_extension(self):
        teacher = make_teacher()
        lecture = make_lecture(make_rule(teacher, self.section), datetime.now() - timedelta(days=1))
        req = AttendanceExtensionRequest(lecture_id=lecture.id, teacher_id=teacher.id, request_type='Missed',
                                         reason='Outage', requested_at=datetime.now())
        db.session.add(req)
        db.session.commit()
        response = self.client.post(f'/admin/extension-requests/{req.id}/approve', data={'admin_notes': 'ok'},
                                    follow_redirects=True)
        self.assertIn(b'Extension request approved!', response.data)
        self.assertEqual(db.session.get(AttendanceExtensionRequest, req.id).status, 'Approved')

    def test_reports(self):
        response = self.client.get('/admin/reports/defaulters')
        self.assertEqual(response.status_code, 200)
        response = self.client.get('/admin/reports/student_attendance?format=csv')
        self.assertEqual(response.mimetype, 'text/csv')
        self.assertTrue(response.data.startswith(b'Roll No,Student Name'))
        response = self.client.get('/admin/reports/trends?format=xlsx')
        self.assertEqual(response.mimetype, 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet')
        self.assertEqual(self.client.get('/admin/reports/unknown').status_code, 404)

    def test_audit_export(self):
        self.client.post('/admin/holidays', data={'date': '2025-12-25', 'reason': 'Holiday'})
        response = self.client.get('/admin/audit/export')
        self.assertEqual(response.mimetype, 'text/csv')
        self.assertIn(b'holiday_create', response.data)


class StudentRouteTests(AppTestCase):

    def test_student_pages(self):
        section = make_section()
        student = make_student(section, '2024-CS-001', full_name='Ali Khan')
        make_rule(make_teacher(), section)
        self.login_as(student.user)
        for url in ('/student/dashboard', '/student/attendance', '/student/timetable', '/notifications'):
            response = self.client.get(url)
            self.assertEqual(response.status_code, 200, url)
        self.assertIn(b'2024-CS-001', self.client.get('/student/dashboard').data)


if __name__ == "__main__":
    unittest.main()
