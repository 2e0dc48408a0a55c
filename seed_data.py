from attendance_portal import app, db
from attendance_portal.models import (User, Badge, Section, Student, Teacher, Course, TeacherCourse, TimetableRule,
                                      AttendanceRecord, ROLE_ADMIN, ROLE_TEACHER, ROLE_STUDENT)
from attendance_portal.scheduling import generate_lectures
from attendance_portal.security import hash_password
from datetime import datetime, timedelta, date, time
import random

DEMO_PASSWORD = 'Demo@1234'


def seed():
    with app.app_context():
        print("Seeding database...")
        db.create_all()
        pw_hash = hash_password(DEMO_PASSWORD)

        if not User.query.filter_by(email='admin@university.edu').first():
            db.session.add(User(full_name='System Administrator', email='admin@university.edu',
                                password_hash=pw_hash, role=ROLE_ADMIN))
            print("Created admin user.")

        badge = Badge.query.filter_by(name='BSCS').first()
        if not badge:
            badge = Badge(name='BSCS')
            db.session.add(badge)
            db.session.flush()

        sections = []
        for name in ('A', 'B'):
            section = Section.query.filter_by(badge_id=badge.id, name=name, semester=1, session='2025-2029').first()
            if not section:
                section = Section(badge_id=badge.id, name=name, semester=1, session='2025-2029')
                db.session.add(section)
            sections.append(section)
        db.session.flush()
        print(f"Created {len(sections)} sections.")

        # Teachers
        for i in range(1, 4):
            email = f"teacher{i}@university.edu"
            user = User.query.filter_by(email=email).first()
            if not user:
                user = User(full_name=f"Teacher {i}", email=email, password_hash=pw_hash, role=ROLE_TEACHER)
                db.session.add(user)
                db.session.flush()
                db.session.add(Teacher(user_id=user.id, badge_number=f"T-{1000 + i}"))
        db.session.flush()
        teachers = Teacher.query.all()
        print(f"Created {len(teachers)} teachers.")

        # Students
        for section in sections:
            for i in range(1, 11):
                roll_no = f"2025-CS-{(ord(section.name) - 64) * 100 + i}"
                if Student.query.filter_by(roll_no=roll_no).first():
                    continue
                user = User(full_name=f"Student {roll_no}", email=f"{roll_no.lower()}@university.edu",
                            password_hash=pw_hash, role=ROLE_STUDENT)
                db.session.add(user)
                db.session.flush()
                db.session.add(Student(user_id=user.id, section_id=section.id, roll_no=roll_no,
                                       father_name=f"Father of {roll_no}"))
        db.session.commit()
        print(f"Created {Student.query.count()} students.")

        # Courses and timetable
        titles = ['Programming Fundamentals', 'Discrete Mathematics', 'Digital Logic']
        today = date.today()
        for i, (teacher, title) in enumerate(zip(teachers, titles)):
            code = f"CS10{i + 1}"
            course = Course.query.filter_by(code=code).first()
            if not course:
                course = Course(code=code, title=title, credit_hours=3)
                db.session.add(course)
                db.session.flush()
            for section in sections:
                tc = TeacherCourse.query.filter_by(teacher_id=teacher.id, course_id=course.id,
                                                   section_id=section.id).first()
                if tc:
                    continue
                tc = TeacherCourse(teacher_id=teacher.id, course_id=course.id, section_id=section.id)
                db.session.add(tc)
                db.session.flush()
                db.session.add(TimetableRule(teacher_course_id=tc.id, days_of_week='Mon,Wed,Fri',
                                             start_time=time(9 + i, 0), duration_minutes=60,
                                             start_date=today - timedelta(days=28),
                                             end_date=today + timedelta(days=120),
                                             room=f"Room {section.name}{i + 1}", lecture_type='Theory'))
        db.session.commit()

        result = generate_lectures(today - timedelta(days=28), today + timedelta(days=14))
        print(f"Generated {result.lectures_created} lectures.")

        # Attendance for past lectures
        now = datetime.now()
        for rule in TimetableRule.query.all():
            students = rule.teacher_course.section.students
            for lecture in rule.lectures:
                if lecture.end_datetime > now or lecture.attendance_records:
                    continue
                for student in students:
                    status = random.choice(['Present', 'Present', 'Present', 'Absent', 'Leave'])
                    db.session.add(AttendanceRecord(lecture_id=lecture.id, student_id=student.id, status=status,
                                                    marked_at=lecture.start_datetime + timedelta(minutes=5)))
                lecture.status = 'Completed'
        db.session.commit()
        print("Created attendance records.")

        print(f"Seeding complete. Demo password for every account: {DEMO_PASSWORD}")


if __name__ == "__main__":
    seed()
