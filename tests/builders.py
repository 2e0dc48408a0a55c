import os
import sys
import unittest
from datetime import date, datetime, time, timedelta

# Set environment to testing before importing app
os.environ['FLASK_ENV'] = 'testing'

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from attendance_portal import app, db
from attendance_portal.models import (User, Badge, Section, Student, Teacher, Course, TeacherCourse,
                                      TimetableRule, Lecture, AttendanceRecord)
from attendance_portal.security import hash_password

PASSWORD = 'Secret123!'
ALL_DAYS = 'Mon,Tue,Wed,Thu,Fri,Sat,Sun'


class AppTestCase(unittest.TestCase):

    def setUp(self):
        self.app = app
        self.client = self.app.test_client()
        self.app_context = self.app.app_context()
        self.app_context.push()
        db.create_all()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    def login_as(self, user):
        with self.client.session_transaction() as sess:
            sess['logged_in'] = True
            sess['user'] = user.email
            sess['user_id'] = user.id
            sess['role'] = user.role


def make_user(email, role='student', full_name='Test User', password=PASSWORD, password_hash=None, active=True):
    user = User(full_name=full_name, email=email, role=role, is_active=active,
                password_hash=password_hash or hash_password(password))
    db.session.add(user)
    db.session.commit()
    return user


def make_section(name='A', badge_name='BSCS', semester=1, session='2024-2028'):
    badge = Badge.query.filter_by(name=badge_name).first()
    if badge is None:
        badge = Badge(name=badge_name)
        db.session.add(badge)
        db.session.flush()
    section = Section(badge_id=badge.id, name=name, semester=semester, session=session)
    db.session.add(section)
    db.session.commit()
    return section


def make_student(section, roll_no, email=None, full_name='Student'):
    user = make_user(email or f"{roll_no.lower()}@uni.edu", 'student', full_name)
    student = Student(user_id=user.id, section_id=section.id, roll_no=roll_no, father_name='Father')
    db.session.add(student)
    db.session.commit()
    return student


def make_teacher(badge_number='T-1', email='teacher@uni.edu', full_name='Dr. Teacher'):
    user = make_user(email, 'teacher', full_name)
    teacher = Teacher(user_id=user.id, badge_number=badge_number, designation='Lecturer')
    db.session.add(teacher)
    db.session.commit()
    return teacher


def make_rule(teacher, section, code='CS101', days=ALL_DAYS, start_time=time(9, 0), duration=60,
              start_date=None, end_date=None):
    course = Course.query.filter_by(code=code).first()
    if course is None:
        course = Course(code=code, title=f"Course {code}")
        db.session.add(course)
        db.session.flush()
    tc = TeacherCourse(teacher_id=teacher.id, course_id=course.id, section_id=section.id)
    db.session.add(tc)
    db.session.flush()
    today = date.today()
    rule = TimetableRule(teacher_course_id=tc.id, days_of_week=days, start_time=start_time,
                         duration_minutes=duration,
                         start_date=start_date or today - timedelta(days=60),
                         end_date=end_date or today + timedelta(days=60),
                         room='Room 1', lecture_type='Theory')
    db.session.add(rule)
    db.session.commit()
    return rule


def make_lecture(rule, start, minutes=60, **kwargs):
    lecture = Lecture(timetable_rule_id=rule.id, start_datetime=start,
                      end_datetime=start + timedelta(minutes=minutes), **kwargs)
    db.session.add(lecture)
    db.session.commit()
    return lecture


def mark(lecture, student, status='Present', marked_at=None):
    record = AttendanceRecord(lecture_id=lecture.id, student_id=student.id, status=status,
                              marked_at=marked_at or lecture.start_datetime + timedelta(minutes=5))
    db.session.add(record)
    db.session.commit()
    return record


def at(d, hour=9, minute=0):
    return datetime.combine(d, time(hour, minute))
