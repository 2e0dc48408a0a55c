"""Lecture scheduling from timetable rules, plus the lecture CSV formats."""
import csv
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from io import StringIO
from typing import List

from attendance_portal import db
from attendance_portal.models import Lecture, TimetableRule, Holiday

logger = logging.getLogger(__name__)

DAY_ABBREVIATIONS = ('Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun')
LECTURE_CSV_HEADER = ['TimetableRuleId', 'Date', 'StartTime', 'EndTime', 'CourseCode', 'CourseName',
                      'Section', 'Badge', 'Room', 'LectureType', 'DayOfWeek', 'Status']


@dataclass
class LectureGenerationResult:
    lectures_created: int = 0
    lectures_skipped: int = 0
    total_processed: int = 0
    rules_processed: int = 0


@dataclass
class LectureImportResult:
    lectures: List[Lecture] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self):
        return not self.errors and bool(self.lectures)


def day_abbreviation(d: date) -> str:
    return DAY_ABBREVIATIONS[d.weekday()]


def rule_runs_on(rule, d: date) -> bool:
    """True when ``d`` is inside the rule's tenure and on one of its weekdays."""
    if d < rule.start_date or d > rule.end_date:
        return False
    wanted = {x.lower() for x in rule.day_list}
    return day_abbreviation(d).lower() in wanted or d.strftime('%A').lower() in wanted


def lecture_within_rule(rule, start_datetime: datetime) -> bool:
    return rule.start_date <= start_datetime.date() <= rule.end_date


def holiday_dates(start: date, end: date):
    return {h.date for h in Holiday.query.filter(Holiday.date >= start, Holiday.date <= end).all()}


def is_holiday(d: date) -> bool:
    return Holiday.query.filter_by(date=d).first() is not None


def lecture_times(rule, d: date):
    start = datetime.combine(d, rule.start_time)
    return start, start + timedelta(minutes=rule.duration_minutes)


def find_lecture_on(rule, d: date):
    """The rule's timetabled lecture on ``d``, never a teacher's special session.

    An exact match on the rule's slot wins; otherwise a Regular lecture that
    an admin moved to another time on the same day.
    """
    slot_start, _ = lecture_times(rule, d)
    day_start = datetime.combine(d, datetime.min.time())
    candidates = Lecture.query.filter(
        Lecture.timetable_rule_id == rule.id,
        Lecture.created_by_teacher_id.is_(None),
        Lecture.start_datetime >= day_start,
        Lecture.start_datetime < day_start + timedelta(days=1),
    ).order_by(Lecture.start_datetime).all()
    for lecture in candidates:
        if lecture.start_datetime == slot_start:
            return lecture
    for lecture in candidates:
        if lecture.lecture_type == 'Regular':
            return lecture
    return None


def find_or_create_lecture(rule, d: date):
    """Return the rule's lecture on ``d``, creating it from the rule's slot if missing."""
    lecture = find_lecture_on(rule, d)
    if lecture:
        return lecture
    start, end = lecture_times(rule, d)
    if not lecture_within_rule(rule, start):
        raise ValueError(f"{d.isoformat()} is outside the timetable rule's active dates.")
    lecture = Lecture(timetable_rule_id=rule.id, start_datetime=start, end_datetime=end,
                      status='Scheduled')
    db.session.add(lecture)
    db.session.commit()
    logger.info(f"Created lecture for rule {rule.id} on {d.isoformat()}")
    return lecture


def daterange(start: date, end: date):
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def generate_lectures(start: date, end: date, max_days=90) -> LectureGenerationResult:
    """Create Scheduled lectures for every active rule between ``start`` and ``end``.

    Holidays, non-matching weekdays and already existing lectures are skipped.
    Raises ValueError for an invalid range.
    """
    if end < start:
        raise ValueError("End date must be after start date.")
    if (end - start).days > max_days:
        raise ValueError(f"Maximum range is {max_days} days.")

    result = LectureGenerationResult()
    rules = TimetableRule.query.filter(TimetableRule.start_date <= end,
                                       TimetableRule.end_date >= start).all()
    result.rules_processed = len(rules)
    holidays = holiday_dates(start, end)

    for rule in rules:
        for d in daterange(start, end):
            result.total_processed += 1
            if d in holidays or not rule_runs_on(rule, d):
                result.lectures_skipped += 1
                continue
            lecture_start, lecture_end = lecture_times(rule, d)
            exists = Lecture.query.filter_by(timetable_rule_id=rule.id,
                                             start_datetime=lecture_start).first()
            if exists:
                result.lectures_skipped += 1
                continue
            db.session.add(Lecture(timetable_rule_id=rule.id, start_datetime=lecture_start,
                                   end_datetime=lecture_end, status='Scheduled'))
            result.lectures_created += 1
    db.session.commit()
    logger.info(f"Generated {result.lectures_created} lectures between {start} and {end}")
    return result


def _rule_columns(rule):
    tc = rule.teacher_course
    return [tc.course.code, tc.course.title, tc.section.name, tc.section.badge.name,
            rule.room or '', rule.lecture_type or '']


def lecture_template_csv() -> str:
    buf = StringIO()
    buf.write("# Lecture Import CSV Template\n")
    buf.write("# Date uses YYYY-MM-DD; StartTime and EndTime use HH:MM.\n")
    buf.write("# Only the first four columns are read; the rest are informational.\n")
    writer = csv.writer(buf, lineterminator='\n')
    writer.writerow(LECTURE_CSV_HEADER)
    writer.writerow([1, '2025-12-15', '09:00', '10:30', 'CS101', 'Programming Fundamentals',
                     'A', 'BSCS', 'Room 301', 'Theory', 'Mon', 'Scheduled'])
    return buf.getvalue()


def schedule_csv(start: date, end: date) -> str:
    """Projected lectures of every active rule in the range, in the import format."""
    buf = StringIO()
    writer = csv.writer(buf, lineterminator='\n')
    buf.write(f"# Lecture schedule {start.isoformat()} to {end.isoformat()}\n")
    writer.writerow(LECTURE_CSV_HEADER)
    holidays = holiday_dates(start, end)
    rules = TimetableRule.query.filter(TimetableRule.start_date <= end,
                                       TimetableRule.end_date >= start).all()
    for d in daterange(start, end):
        if d in holidays:
            continue
        for rule in sorted(rules, key=lambda r: r.start_time):
            if not rule_runs_on(rule, d):
                continue
            lecture_start, lecture_end = lecture_times(rule, d)
            writer.writerow([rule.id, d.isoformat(), lecture_start.strftime('%H:%M'),
                             lecture_end.strftime('%H:%M')] + _rule_columns(rule)
                            + [day_abbreviation(d), 'Scheduled'])
    return buf.getvalue()


def _parse_time(value):
    return datetime.strptime(value.strip(), '%H:%M').time()


def parse_lecture_csv(text) -> LectureImportResult:
    """Validate lecture rows; nothing is saved here."""
    result = LectureImportResult()
    header_seen = False
    seen = set()
    for line_number, line in enumerate(text.splitlines(), start=1):
        if not line.strip() or line.startswith('#'):
            continue
        if not header_seen:
            if 'TimetableRuleId' not in line:
                result.errors.append(f"Line {line_number}: Invalid header. Expected 'TimetableRuleId' column")
                return result
            header_seen = True
            continue
        columns = [c.strip().strip('"') for c in line.split(',')]
        if len(columns) < 4:
            result.errors.append(f"Line {line_number}: Insufficient columns. Expected at least 4 columns")
            continue
        try:
            rule_id = int(columns[0])
        except ValueError:
            result.errors.append(f"Line {line_number}: Invalid TimetableRuleId '{columns[0]}'")
            continue
        try:
            d = datetime.strptime(columns[1], '%Y-%m-%d').date()
        except ValueError:
            result.errors.append(f"Line {line_number}: Invalid Date format '{columns[1]}'. Use YYYY-MM-DD")
            continue
        try:
            start_time = _parse_time(columns[2])
        except ValueError:
            result.errors.append(f"Line {line_number}: Invalid StartTime format '{columns[2]}'. Use HH:MM")
            continue
        try:
            end_time = _parse_time(columns[3])
        except ValueError:
            result.errors.append(f"Line {line_number}: Invalid EndTime format '{columns[3]}'. Use HH:MM")
            continue

        rule = db.session.get(TimetableRule, rule_id)
        if rule is None:
            result.errors.append(f"Line {line_number}: TimetableRule ID {rule_id} not found in database")
            continue
        start_dt = datetime.combine(d, start_time)
        end_dt = datetime.combine(d, end_time)
        if end_dt <= start_dt:
            result.errors.append(f"Line {line_number}: EndTime must be after StartTime")
            continue
        if not lecture_within_rule(rule, start_dt):
            result.errors.append(f"Line {line_number}: Date {d.isoformat()} is outside the timetable rule's active dates")
            continue
        if (rule_id, start_dt) in seen or Lecture.query.filter_by(timetable_rule_id=rule_id,
                                                                  start_datetime=start_dt).first():
            result.errors.append(f"Line {line_number}: Lecture already exists for this date and time")
            continue
        if is_holiday(d):
            result.errors.append(f"Line {line_number}: Cannot create lecture on holiday {d.isoformat()}")
            continue
        status = columns[11] if len(columns) > 11 and columns[11] else 'Scheduled'
        seen.add((rule_id, start_dt))
        result.lectures.append(Lecture(timetable_rule_id=rule_id, start_datetime=start_dt,
                                       end_datetime=end_dt, status=status))
    if not header_seen and not result.errors:
        result.errors.append("No header row found in CSV file")
    return result


def import_lectures(result: LectureImportResult) -> int:
    """Save every parsed lecture in one commit; callers only pass error-free results."""
    db.session.add_all(result.lectures)
    db.session.commit()
    return len(result.lectures)
