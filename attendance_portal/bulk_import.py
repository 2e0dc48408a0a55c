"""Bulk import of students, teachers, badges and sections.

Validation never touches the database beyond read queries. Creation commits
one row at a time so a failing row is skipped without undoing the others.
"""
import csv
import logging
import re
from dataclasses import dataclass, field
from io import BytesIO, StringIO
from typing import List, Optional

from openpyxl import load_workbook

from attendance_portal import db
from attendance_portal.models import (User, Student, Teacher, Section, Badge,
                                      ROLE_STUDENT, ROLE_TEACHER)
from attendance_portal.security import generate_passwords, hash_password

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ROLL_NUMBER_HINT = "Invalid roll number format. Expected: YYYY-XX-NNN (e.g., 2023-CS-626)"
BADGES_HEADER = 'BadgeName'
SECTIONS_HEADER = 'BadgeName,Semester,Session,SectionName'

STUDENT_CSV_TEMPLATE = "FullName,Email,FatherName,RollNumber\nAli Khan,ali.khan@example.com,Ahmed Khan,2023-CS-101\n"
LEGACY_STUDENT_CSV_TEMPLATE = "FullName,Email,SectionName,BadgeNumber\nAli Khan,ali.khan@example.com,A,2023-CS-101\n"
TEACHER_CSV_TEMPLATE = "FullName,Email,BadgeNumber\nSara Malik,sara.malik@example.com,T-1001\n"

_HEADER_ALIASES = {
    'fullname': 'full_name',
    'name': 'full_name',
    'email': 'email',
    'fathername': 'father_name',
    'rollnumber': 'roll_number',
    'rollno': 'roll_number',
    'sectionname': 'section_name',
    'badgenumber': 'badge_number',
}


@dataclass
class StudentImportRecord:
    full_name: str = ''
    email: str = ''
    father_name: str = ''
    roll_number: str = ''
    section_name: Optional[str] = None
    badge_number: Optional[str] = None


@dataclass
class TeacherImportRecord:
    full_name: str = ''
    email: str = ''
    badge_number: str = ''


@dataclass
class ImportRowError:
    row_number: int
    messages: List[str]
    full_name: str = ''
    email: str = ''


@dataclass
class ImportValidationResult:
    valid_records: list = field(default_factory=list)
    errors: List[ImportRowError] = field(default_factory=list)
    total_records: int = 0

    @property
    def is_valid(self):
        return not self.errors and bool(self.valid_records)

    @property
    def error_count(self):
        return len(self.errors)


@dataclass
class UserCredential:
    email: str
    full_name: str
    password: str
    role: str
    section_name: Optional[str] = None
    identifier: Optional[str] = None


@dataclass
class BulkCreateResult:
    total_attempted: int = 0
    success_count: int = 0
    skipped_count: int = 0
    created_users: List[str] = field(default_factory=list)
    skipped_emails: List[str] = field(default_factory=list)
    credentials: List[UserCredential] = field(default_factory=list)


@dataclass
class LineValidationResult:
    """Result for the single-column badge and section files."""
    valid_items: list = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self):
        return not self.errors and bool(self.valid_items)


def is_valid_email(email) -> bool:
    return bool(email and EMAIL_RE.match(email))


def is_valid_roll_number(roll_number) -> bool:
    """Check the YYYY-XX-NNN shape, e.g. 2023-CS-626."""
    if not roll_number:
        return False
    parts = roll_number.split('-')
    if len(parts) != 3:
        return False
    year, program, sequence = parts
    if len(year) != 4 or not year.isdigit():
        return False
    if not 2 <= len(program) <= 3 or not program.isalpha():
        return False
    if not 1 <= len(sequence) <= 4 or not sequence.isdigit():
        return False
    return True


def is_excel_file(filename) -> bool:
    return bool(filename) and filename.lower().endswith('.xlsx')


def read_text(file_storage) -> str:
    if not file_storage:
        return ''
    data = file_storage.read()
    if isinstance(data, bytes):
        try:
            return data.decode('utf-8-sig')
        except UnicodeDecodeError:
            return data.decode('utf-8', errors='replace')
    return data


def _cell(value) -> str:
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _normalize_row(row):
    out = {}
    for key, value in row.items():
        if key is None:
            continue
        alias = _HEADER_ALIASES.get(key.strip().lower().replace(' ', '').replace('_', ''))
        if alias:
            out[alias] = (value or '').strip()
    return out


def _csv_records(text):
    reader = csv.DictReader(StringIO(text))
    return [_normalize_row(row) for row in reader]


def _excel_rows(stream, column_count):
    """Yield (sheet row number, values) for non-blank data rows of the first sheet."""
    data = stream.read() if hasattr(stream, 'read') else stream
    wb = load_workbook(BytesIO(data), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        for row_number, values in enumerate(ws.iter_rows(min_row=2, values_only=True), start=2):
            cells = [_cell(v) for v in list(values)[:column_count]]
            cells += [''] * (column_count - len(cells))
            if not any(cells):
                continue
            yield row_number, cells
    finally:
        wb.close()


def _record_error(result, row_number, record, messages):
    result.errors.append(ImportRowError(row_number=row_number, messages=messages,
                                        full_name=record.full_name, email=record.email))


def _cap(rows, max_rows, result):
    if max_rows and len(rows) > max_rows:
        result.errors.append(ImportRowError(
            row_number=0,
            messages=[f"File has {len(rows)} rows; only the first {max_rows} were processed."]))
        return rows[:max_rows]
    return rows


# --- Students ---

def validate_student_record(record, legacy, seen_emails=None, seen_rolls=None):
    errors = []
    seen_emails = seen_emails if seen_emails is not None else set()
    seen_rolls = seen_rolls if seen_rolls is not None else set()

    if not record.full_name:
        errors.append("Full name is required")

    if not record.email:
        errors.append("Email is required")
    elif not is_valid_email(record.email):
        errors.append("Invalid email format")
    elif User.query.filter_by(email=record.email).first():
        errors.append("Email already exists")
    elif record.email in seen_emails:
        errors.append("Duplicate email in file")

    if legacy:
        if not record.section_name:
            errors.append("Section name is required")
        elif not Section.query.filter_by(name=record.section_name).first():
            errors.append(f"Section '{record.section_name}' does not exist")
        if not record.badge_number:
            errors.append("Badge number is required")
        elif Student.query.filter_by(roll_no=record.badge_number).first():
            errors.append("Badge number already exists")
        elif record.badge_number in seen_rolls:
            errors.append("Duplicate badge number in file")
    else:
        if not record.father_name:
            errors.append("Father name is recommended")
        if not record.roll_number:
            errors.append("Roll number is required")
        elif Student.query.filter_by(roll_no=record.roll_number).first():
            errors.append("Roll number already exists")
        elif not is_valid_roll_number(record.roll_number):
            errors.append(ROLL_NUMBER_HINT)
        elif record.roll_number in seen_rolls:
            errors.append("Duplicate roll number in file")
    return errors


def _validate_students(rows, legacy, max_rows=None):
    result = ImportValidationResult()
    rows = _cap(rows, max_rows, result)
    result.total_records = len(rows)
    seen_emails, seen_rolls = set(), set()
    for row_number, record in rows:
        errors = validate_student_record(record, legacy, seen_emails, seen_rolls)
        if record.email:
            seen_emails.add(record.email)
        roll = record.badge_number if legacy else record.roll_number
        if roll:
            seen_rolls.add(roll)
        if errors:
            _record_error(result, row_number, record, errors)
        else:
            result.valid_records.append(record)
    return result


def validate_students_csv(file_storage, section_id=None, max_rows=None):
    """Validate a header-driven student CSV. ``section_id=None`` selects legacy rows."""
    legacy = section_id is None
    try:
        rows = []
        for i, row in enumerate(_csv_records(read_text(file_storage))):
            rows.append((i + 2, StudentImportRecord(
                full_name=row.get('full_name', ''),
                email=row.get('email', '').lower(),
                father_name=row.get('father_name', ''),
                roll_number=row.get('roll_number', ''),
                section_name=row.get('section_name') if legacy else None,
                badge_number=row.get('badge_number') if legacy else None,
            )))
    except Exception as e:
        logger.warning(f"Student CSV parsing failed: {e}")
        return _parse_failure(e)
    return _validate_students(rows, legacy, max_rows)


def validate_students_excel(file_storage, section_id=None, max_rows=None):
    """Validate a positional .xlsx sheet: FullName, Email, FatherName|SectionName, RollNumber|BadgeNumber."""
    legacy = section_id is None
    try:
        rows = []
        for row_number, cells in _excel_rows(file_storage, 4):
            rows.append((row_number, StudentImportRecord(
                full_name=cells[0],
                email=cells[1].lower(),
                father_name='' if legacy else cells[2],
                roll_number='' if legacy else cells[3],
                section_name=cells[2] if legacy else None,
                badge_number=cells[3] if legacy else None,
            )))
    except Exception as e:
        logger.warning(f"Student workbook parsing failed: {e}")
        return _parse_failure(e)
    return _validate_students(rows, legacy, max_rows)


def validate_students_file(file_storage, section_id=None, max_rows=None):
    if is_excel_file(getattr(file_storage, 'filename', '')):
        return validate_students_excel(file_storage, section_id, max_rows)
    return validate_students_csv(file_storage, section_id, max_rows)


def _parse_failure(exc):
    result = ImportValidationResult()
    result.errors.append(ImportRowError(row_number=0, messages=[f"File parsing error: {exc}"]))
    return result


def create_students(records, section_id=None, password_length=10):
    """Create User+Student pairs, committing each row on its own."""
    legacy = section_id is None
    result = BulkCreateResult(total_attempted=len(records))
    passwords = generate_passwords(len(records), password_length)
    for record, password in zip(records, passwords):
        try:
            if User.query.filter_by(email=record.email).first():
                result.skipped_count += 1
                result.skipped_emails.append(record.email)
                continue
            if legacy:
                section = Section.query.filter_by(name=record.section_name).first()
                if section is None:
                    result.skipped_count += 1
                    result.skipped_emails.append(record.email)
                    continue
            else:
                section = db.session.get(Section, section_id)
                if section is None:
                    raise ValueError(f"Section with ID {section_id} not found")

            user = User(full_name=record.full_name, email=record.email,
                        password_hash=hash_password(password), role=ROLE_STUDENT)
            db.session.add(user)
            db.session.flush()
            roll_no = (record.badge_number or 'N/A') if legacy else record.roll_number
            student = Student(user_id=user.id, section_id=section.id, roll_no=roll_no,
                              father_name=record.father_name or 'Not Provided')
            db.session.add(student)
            db.session.commit()

            result.credentials.append(UserCredential(
                email=user.email, full_name=user.full_name, password=password,
                role='Student', section_name=section.name, identifier=roll_no))
            result.success_count += 1
            result.created_users.append(user.email)
        except Exception as e:
            db.session.rollback()
            logger.warning(f"Skipped student {record.email}: {e}")
            result.skipped_count += 1
            result.skipped_emails.append(record.email)
    return result


# --- Teachers ---

def validate_teacher_record(record, seen_emails=None, seen_badges=None):
    errors = []
    seen_emails = seen_emails if seen_emails is not None else set()
    seen_badges = seen_badges if seen_badges is not None else set()
    if not record.full_name:
        errors.append("Full name is required")
    if not record.email:
        errors.append("Email is required")
    elif not is_valid_email(record.email):
        errors.append("Invalid email format")
    elif User.query.filter_by(email=record.email).first():
        errors.append("Email already exists")
    elif record.email in seen_emails:
        errors.append("Duplicate email in file")
    if not record.badge_number:
        errors.append("Badge number is required")
    elif Teacher.query.filter_by(badge_number=record.badge_number).first():
        errors.append(f"Badge number '{record.badge_number}' already exists")
    elif record.badge_number in seen_badges:
        errors.append(f"Duplicate badge number '{record.badge_number}' in file")
    return errors


def _validate_teachers(rows, max_rows=None):
    result = ImportValidationResult()
    rows = _cap(rows, max_rows, result)
    result.total_records = len(rows)
    seen_emails, seen_badges = set(), set()
    for row_number, record in rows:
        errors = validate_teacher_record(record, seen_emails, seen_badges)
        if record.email:
            seen_emails.add(record.email)
        if record.badge_number:
            seen_badges.add(record.badge_number)
        if errors:
            _record_error(result, row_number, record, errors)
        else:
            result.valid_records.append(record)
    return result


def validate_teachers_csv(file_storage, max_rows=None):
    try:
        rows = [
            (i + 2, TeacherImportRecord(full_name=row.get('full_name', ''),
                                        email=row.get('email', '').lower(),
                                        badge_number=row.get('badge_number', '')))
            for i, row in enumerate(_csv_records(read_text(file_storage)))
        ]
    except Exception as e:
        logger.warning(f"Teacher CSV parsing failed: {e}")
        return _parse_failure(e)
    return _validate_teachers(rows, max_rows)


def validate_teachers_excel(file_storage, max_rows=None):
    try:
        rows = [
            (row_number, TeacherImportRecord(full_name=cells[0], email=cells[1].lower(),
                                             badge_number=cells[2]))
            for row_number, cells in _excel_rows(file_storage, 3)
        ]
    except Exception as e:
        logger.warning(f"Teacher workbook parsing failed: {e}")
        return _parse_failure(e)
    return _validate_teachers(rows, max_rows)


def validate_teachers_file(file_storage, max_rows=None):
    if is_excel_file(getattr(file_storage, 'filename', '')):
        return validate_teachers_excel(file_storage, max_rows)
    return validate_teachers_csv(file_storage, max_rows)


def create_teachers(records, password_length=10):
    result = BulkCreateResult(total_attempted=len(records))
    passwords = generate_passwords(len(records), password_length)
    for record, password in zip(records, passwords):
        try:
            if User.query.filter_by(email=record.email).first():
                result.skipped_count += 1
                result.skipped_emails.append(record.email)
                continue
            user = User(full_name=record.full_name, email=record.email,
                        password_hash=hash_password(password), role=ROLE_TEACHER)
            db.session.add(user)
            db.session.flush()
            db.session.add(Teacher(user_id=user.id, badge_number=record.badge_number,
                                   designation='Teacher'))
            db.session.commit()

            result.credentials.append(UserCredential(
                email=user.email, full_name=user.full_name, password=password,
                role='Teacher', identifier=record.badge_number))
            result.success_count += 1
            result.created_users.append(user.email)
        except Exception as e:
            db.session.rollback()
            logger.warning(f"Skipped teacher {record.email}: {e}")
            result.skipped_count += 1
            result.skipped_emails.append(record.email)
    return result


# --- Badges & sections ---

def _non_blank_lines(text):
    return [line for line in text.splitlines() if line.strip()]


def validate_badges_text(text):
    result = LineValidationResult()
    lines = _non_blank_lines(text)
    if not lines:
        result.errors.append("File is empty.")
        return result
    header = lines[0].strip()
    if header.lower() != BADGES_HEADER.lower():
        result.errors.append(f"Line 1: Invalid header. Expected '{BADGES_HEADER}', but found '{header}'.")
        return result
    if len(lines) == 1:
        result.errors.append("No data rows found in the file.")
        return result

    existing = {name.lower() for (name,) in db.session.query(Badge.name).all()}
    seen = set()
    for i, line in enumerate(lines[1:], start=2):
        name = line.strip()
        if not name:
            result.errors.append(f"Line {i}: Badge name is empty.")
            continue
        if name.lower() in seen:
            result.errors.append(f"Line {i}: Duplicate badge '{name}' found in the file.")
            continue
        if name.lower() in existing:
            result.errors.append(f"Line {i}: Badge '{name}' already exists in the system.")
            continue
        seen.add(name.lower())
        result.valid_items.append(name)
    return result


def validate_badges_file(file_storage):
    try:
        return validate_badges_text(read_text(file_storage))
    except Exception as e:
        result = LineValidationResult()
        result.errors.append(f"Error reading file: {e}")
        return result


def create_badges(names):
    created = 0
    for name in names:
        try:
            db.session.add(Badge(name=name))
            db.session.commit()
            created += 1
        except Exception as e:
            db.session.rollback()
            logger.warning(f"Skipped badge {name}: {e}")
    return created


@dataclass
class SectionImportRecord:
    badge_id: int
    badge_name: str
    section_name: str
    semester: int
    session: str


def validate_sections_text(text):
    result = LineValidationResult()
    lines = _non_blank_lines(text)
    if not lines:
        result.errors.append("File is empty.")
        return result
    if lines[0].strip().lower() != SECTIONS_HEADER.lower():
        result.errors.append(f"Line 1: Invalid header. Expected '{SECTIONS_HEADER}'.")
        return result
    if len(lines) == 1:
        result.errors.append("No data rows found.")
        return result

    badges = {b.name.lower(): b.id for b in Badge.query.all()}
    existing = {
        (s.badge.name.lower(), s.semester, s.session, s.name.lower())
        for s in Section.query.all()
    }
    seen = set()
    for i, line in enumerate(lines[1:], start=2):
        parts = line.split(',')
        if len(parts) != 4:
            result.errors.append(f"Line {i}: Expected 4 columns, found {len(parts)}.")
            continue
        badge_name, semester_str, session, section_name = [p.strip() for p in parts]
        if not badge_name:
            result.errors.append(f"Line {i}: Badge name is required.")
            continue
        if badge_name.lower() not in badges:
            result.errors.append(f"Line {i}: Badge '{badge_name}' does not exist.")
            continue
        try:
            semester = int(semester_str)
        except ValueError:
            semester = 0
        if semester < 1 or semester > 8:
            result.errors.append(f"Line {i}: Invalid semester '{semester_str}' (must be 1-8).")
            continue
        if not session:
            result.errors.append(f"Line {i}: Session is required.")
            continue
        if not section_name:
            result.errors.append(f"Line {i}: Section name is required.")
            continue
        key = (badge_name.lower(), semester, session, section_name.lower())
        label = f"{badge_name} - {section_name} ({semester}/{session})"
        if key in seen:
            result.errors.append(f"Line {i}: Duplicate section '{label}' in file.")
            continue
        if key in existing:
            result.errors.append(f"Line {i}: Section '{label}' already exists.")
            continue
        seen.add(key)
        result.valid_items.append(SectionImportRecord(
            badge_id=badges[badge_name.lower()], badge_name=badge_name,
            section_name=section_name, semester=semester, session=session))
    return result


def validate_sections_file(file_storage):
    try:
        return validate_sections_text(read_text(file_storage))
    except Exception as e:
        result = LineValidationResult()
        result.errors.append(f"Error: {e}")
        return result


def create_sections(records):
    created = 0
    for rec in records:
        try:
            db.session.add(Section(badge_id=rec.badge_id, name=rec.section_name,
                                   semester=rec.semester, session=rec.session))
            db.session.commit()
            created += 1
        except Exception as e:
            db.session.rollback()
            logger.warning(f"Skipped section {rec.badge_name}/{rec.section_name}: {e}")
    return created

