from attendance_portal import db
from datetime import datetime

ROLE_ADMIN = 'admin'
ROLE_TEACHER = 'teacher'
ROLE_STUDENT = 'student'

ATTENDANCE_STATUSES = ('Present', 'Absent', 'Late', 'Leave', 'Excused')
LECTURE_TYPES = ('Regular', 'Quiz', 'Test', 'Lab', 'Practical', 'Workshop',
                 'GuestLecture', 'Review', 'MakeUp', 'Extra')


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_STUDENT)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)

    student = db.relationship('Student', backref='user', uselist=False, lazy=True)
    teacher = db.relationship('Teacher', backref='user', uselist=False, lazy=True)
    notifications = db.relationship('Notification', backref='user', lazy=True, cascade="all, delete-orphan")

    def __repr__(self):
        return f"User('{self.email}', '{self.role}')"


class Badge(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)

    sections = db.relationship('Section', backref='badge', lazy=True)

    def __repr__(self):
        return f"Badge('{self.name}')"


class Section(db.Model):
    __table_args__ = (
        db.UniqueConstraint('badge_id', 'name', 'semester', 'session', name='uq_section_identity'),
    )
    id = db.Column(db.Integer, primary_key=True)
    badge_id = db.Column(db.Integer, db.ForeignKey('badge.id'), nullable=False)
    name = db.Column(db.String(50), nullable=False)
    semester = db.Column(db.Integer, nullable=False)
    session = db.Column(db.String(20), nullable=False)

    students = db.relationship('Student', backref='section', lazy=True)
    teacher_courses = db.relationship('TeacherCourse', backref='section', lazy=True)

    @property
    def display_name(self):
        return f"{self.badge.name} {self.name} (Sem {self.semester}, {self.session})"

    def __repr__(self):
        return f"Section('{self.name}', semester={self.semester}, session='{self.session}')"


class Student(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), unique=True, nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False)
    roll_no = db.Column(db.String(30), unique=True, nullable=False)
    father_name = db.Column(db.String(100))

    attendance_records = db.relationship('AttendanceRecord', backref='student', lazy=True, cascade="all, delete-orphan")

    def __repr__(self):
        return f"Student('{self.roll_no}')"


class Teacher(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), unique=True, nullable=False)
    badge_number = db.Column(db.String(30), unique=True, nullable=False)
    designation = db.Column(db.String(100), default='Teacher')

    teacher_courses = db.relationship('TeacherCourse', backref='teacher', lazy=True)
    extension_requests = db.relationship('AttendanceExtensionRequest', backref='teacher', lazy=True)

    def __repr__(self):
        return f"Teacher('{self.badge_number}')"


class Course(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False)
    title = db.Column(db.String(150), nullable=False)
    credit_hours = db.Column(db.Integer, nullable=False, default=3)
    is_lab = db.Column(db.Boolean, nullable=False, default=False)

    teacher_courses = db.relationship('TeacherCourse', backref='course', lazy=True)

    def __repr__(self):
        return f"Course('{self.code}', '{self.title}')"


class TeacherCourse(db.Model):
    __table_args__ = (
        db.UniqueConstraint('teacher_id', 'course_id', 'section_id', name='uq_teacher_course_section'),
    )
    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('teacher.id'), nullable=False)
    course_id = db.Column(db.Integer, db.ForeignKey('course.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False)
    assigned_at = db.Column(db.DateTime, nullable=False, default=datetime.now)

    timetable_rules = db.relationship('TimetableRule', backref='teacher_course', lazy=True)


class TimetableRule(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    teacher_course_id = db.Column(db.Integer, db.ForeignKey('teacher_course.id'), nullable=False)
    days_of_week = db.Column(db.String(50), nullable=False)  # e.g. "Mon,Wed,Fri"
    start_time = db.Column(db.Time, nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False, default=60)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    room = db.Column(db.String(50))
    lecture_type = db.Column(db.String(20))  # Theory / Lab

    lectures = db.relationship('Lecture', backref='timetable_rule', lazy=True)

    @property
    def day_list(self):
        return [d.strip() for d in (self.days_of_week or '').split(',') if d.strip()]


class Lecture(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    timetable_rule_id = db.Column(db.Integer, db.ForeignKey('timetable_rule.id'), nullable=False)
    start_datetime = db.Column(db.DateTime, nullable=False)
    end_datetime = db.Column(db.DateTime, nullable=False)
    attendance_deadline = db.Column(db.DateTime)
    status = db.Column(db.String(20), nullable=False, default='Scheduled')
    lecture_type = db.Column(db.String(20), nullable=False, default='Regular')
    created_by_teacher_id = db.Column(db.Integer, db.ForeignKey('teacher.id'))
    description = db.Column(db.String(500))

    attendance_records = db.relationship('AttendanceRecord', backref='lecture', lazy=True, cascade="all, delete-orphan")
    extension_requests = db.relationship('AttendanceExtensionRequest', backref='lecture', lazy=True, cascade="all, delete-orphan")

    @property
    def teacher_course(self):
        return self.timetable_rule.teacher_course

    @property
    def is_special_session(self):
        return self.created_by_teacher_id is not None

    def __repr__(self):
        return f"Lecture({self.id}, '{self.start_datetime}')"


class AttendanceRecord(db.Model):
    __table_args__ = (
        db.UniqueConstraint('student_id', 'lecture_id', name='uq_attendance_student_lecture'),
    )
    id = db.Column(db.Integer, primary_key=True)
    lecture_id = db.Column(db.Integer, db.ForeignKey('lecture.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # Present/Absent/Late/Leave/Excused
    marked_at = db.Column(db.DateTime, nullable=False, default=datetime.now)


class AttendanceExtensionRequest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    lecture_id = db.Column(db.Integer, db.ForeignKey('lecture.id'), nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('teacher.id'), nullable=False)
    request_type = db.Column(db.String(20), nullable=False, default='Missed')  # Missed / Edit
    reason = db.Column(db.String(500), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='Pending')  # Pending/Approved/Rejected/Expired
    requested_at = db.Column(db.DateTime, nullable=False, default=datetime.now)
    approved_at = db.Column(db.DateTime)
    rejected_at = db.Column(db.DateTime)
    approved_by_user_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    admin_notes = db.Column(db.String(500))
    extends_until = db.Column(db.DateTime)

    approved_by = db.relationship('User', foreign_keys=[approved_by_user_id])


class Holiday(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    date = db.Column(db.Date, unique=True, nullable=False)
    reason = db.Column(db.String(200), nullable=False)


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(50), nullable=False)
    actor_email = db.Column(db.String(120), nullable=True)
    actor_role = db.Column(db.String(20), nullable=True)
    target = db.Column(db.String(120), nullable=True)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.now)

    def __repr__(self):
        return f"AuditLog(action='{self.action}', actor='{self.actor_email}', target='{self.target}')"
