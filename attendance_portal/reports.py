"""Attendance aggregation for the admin, teacher and student report pages.

Every percentage is ``present / expected * 100`` rounded to two places, and
only the ``Present`` status counts as attended. Report builders return lists
of plain dicts so the same rows feed templates and CSV/xlsx exports.
"""
import logging
from collections import Counter
from datetime import date, datetime, timedelta

from attendance_portal import db
from attendance_portal.models import (Student, Teacher, Section, Badge, TeacherCourse,
                                      TimetableRule, Lecture, AttendanceRecord,
                                      AttendanceExtensionRequest, Course, User)

logger = logging.getLogger(__name__)

DEFAULT_DEFAULTER_THRESHOLD = 75


def attendance_percentage(present, total):
    if not total:
        return 0
    return round(present / total * 100, 2)


def student_status(percentage):
    if percentage >= 75:
        return 'Good'
    if percentage >= 65:
        return 'Warning'
    return 'Critical'


def course_status(percentage):
    if percentage >= 75:
        return 'Excellent'
    if percentage >= 65:
        return 'Good'
    if percentage >= 50:
        return 'Average'
    return 'Poor'


def section_performance(average):
    if average >= 80:
        return 'Excellent'
    if average >= 70:
        return 'Good'
    if average >= 60:
        return 'Average'
    return 'Poor'


def analytics_bucket(percentage):
    if percentage >= 90:
        return 'top'
    if percentage >= 75:
        return 'average'
    if percentage >= 60:
        return 'at_risk'
    return 'critical'


def trend_direction(current, previous):
    if previous is None:
        return 'Stable'
    if current > previous + 2:
        return 'Up'
    if current < previous - 2:
        return 'Down'
    return 'Stable'


def late_marking_status(hours_late):
    if hours_late > 24:
        return 'Very Late (>24h)'
    if hours_late > 12:
        return 'Late (12-24h)'
    if hours_late > 0:
        return 'Slightly Late (<12h)'
    return 'On Time'


# --- query helpers ---

def _day_bounds(start, end):
    return datetime.combine(start, datetime.min.time()), datetime.combine(end + timedelta(days=1), datetime.min.time())


def lectures_query(start=None, end=None):
    q = (Lecture.query
         .join(TimetableRule, Lecture.timetable_rule_id == TimetableRule.id)
         .join(TeacherCourse, TimetableRule.teacher_course_id == TeacherCourse.id))
    if start and end:
        lo, hi = _day_bounds(start, end)
        q = q.filter(Lecture.start_datetime >= lo, Lecture.start_datetime < hi)
    return q.filter(Lecture.status != 'Cancelled')


def _status_counts(student_id, lecture_ids):
    if not lecture_ids:
        return Counter()
    rows = (db.session.query(AttendanceRecord.status, db.func.count(AttendanceRecord.id))
            .filter(AttendanceRecord.student_id == student_id,
                    AttendanceRecord.lecture_id.in_(lecture_ids))
            .group_by(AttendanceRecord.status).all())
    return Counter(dict(rows))


def _section_lecture_ids(section_id, start=None, end=None):
    return [lec.id for lec in lectures_query(start, end).filter(TeacherCourse.section_id == section_id).all()]


def _section_sizes():
    return dict(db.session.query(Student.section_id, db.func.count(Student.id)).group_by(Student.section_id).all())


def _students(section_id=None, badge_id=None):
    q = Student.query.join(Section, Student.section_id == Section.id).join(User, Student.user_id == User.id)
    if section_id:
        q = q.filter(Student.section_id == section_id)
    if badge_id:
        q = q.filter(Section.badge_id == badge_id)
    return q.order_by(Student.roll_no).all()


def _student_summary(student, lecture_ids):
    counts = _status_counts(student.id, lecture_ids)
    total = len(lecture_ids)
    present = counts.get('Present', 0)
    return {
        'student_id': student.id,
        'roll_no': student.roll_no,
        'name': student.user.full_name,
        'email': student.user.email,
        'section': student.section.name,
        'badge': student.section.badge.name,
        'total_lectures': total,
        'present': present,
        'absent': counts.get('Absent', 0),
        'late': counts.get('Late', 0),
        'leave': counts.get('Leave', 0),
        'excused': counts.get('Excused', 0),
        'percentage': attendance_percentage(present, total),
    }


# --- admin reports ---

def student_attendance_report(start, end, section_id=None, badge_id=None):
    rows = []
    lecture_cache = {}
    for student in _students(section_id, badge_id):
        if student.section_id not in lecture_cache:
            lecture_cache[student.section_id] = _section_lecture_ids(student.section_id, start, end)
        row = _student_summary(student, lecture_cache[student.section_id])
        row['status'] = student_status(row['percentage'])
        rows.append(row)
    rows.sort(key=lambda r: r['percentage'])
    return rows


def defaulters_report(start, end, threshold=DEFAULT_DEFAULTER_THRESHOLD, section_id=None, badge_id=None):
    """Students strictly below ``threshold``; students with no lectures are left out."""
    rows = []
    for row in student_attendance_report(start, end, section_id, badge_id):
        if row['total_lectures'] == 0:
            continue
        if row['percentage'] < threshold:
            row['shortage'] = round(threshold - row['percentage'], 2)
            rows.append(row)
    rows.sort(key=lambda r: r['percentage'])
    return rows


def course_attendance_report(start, end, course_id=None, section_id=None):
    q = TeacherCourse.query
    if course_id:
        q = q.filter(TeacherCourse.course_id == course_id)
    if section_id:
        q = q.filter(TeacherCourse.section_id == section_id)
    sizes = _section_sizes()
    rows = []
    for tc in q.all():
        lectures = lectures_query(start, end).filter(TeacherCourse.id == tc.id).all()
        lecture_ids = [lec.id for lec in lectures]
        students = sizes.get(tc.section_id, 0)
        counts = Counter()
        if lecture_ids:
            counts = Counter(dict(
                db.session.query(AttendanceRecord.status, db.func.count(AttendanceRecord.id))
                .filter(AttendanceRecord.lecture_id.in_(lecture_ids))
                .group_by(AttendanceRecord.status).all()))
        expected = len(lecture_ids) * students
        pct = attendance_percentage(counts.get('Present', 0), expected)
        rows.append({
            'course_code': tc.course.code,
            'course_name': tc.course.title,
            'section': tc.section.name,
            'teacher': tc.teacher.user.full_name,
            'total_lectures': len(lecture_ids),
            'total_students': students,
            'total_records': sum(counts.values()),
            'present': counts.get('Present', 0),
            'absent': counts.get('Absent', 0),
            'leave': counts.get('Leave', 0),
            'percentage': pct,
            'status': course_status(pct),
        })
    rows.sort(key=lambda r: r['percentage'], reverse=True)
    return rows


def section_comparison_report(start, end, badge_id=None):
    q = Section.query
    if badge_id:
        q = q.filter(Section.badge_id == badge_id)
    rows = []
    for section in q.order_by(Section.name).all():
        lecture_ids = _section_lecture_ids(section.id, start, end)
        percentages = [_student_summary(s, lecture_ids)['percentage'] for s in section.students]
        average = round(sum(percentages) / len(percentages), 2) if percentages else 0
        rows.append({
            'section_id': section.id,
            'section': section.name,
            'badge': section.badge.name,
            'total_students': len(percentages),
            'total_lectures': len(lecture_ids),
            'average': average,
            'excellent_students': sum(1 for p in percentages if p >= 85),
            'defaulters': sum(1 for p in percentages if p < 75),
            'performance': section_performance(average),
        })
    rows.sort(key=lambda r: r['average'], reverse=True)
    return rows


def _add_months(d, months):
    month = d.month - 1 + months
    return date(d.year + month // 12, month % 12 + 1, 1)


def trend_periods(start, end, view='weekly'):
    periods = []
    if view == 'monthly':
        current = date(start.year, start.month, 1)
        while current <= end:
            month_end = _add_months(current, 1) - timedelta(days=1)
            periods.append((current.strftime('%B %Y'), current, month_end))
            current = _add_months(current, 1)
    else:
        current = start
        while current <= end:
            week_end = current + timedelta(days=6)
            periods.append((f"Week {current:%b %d} - {week_end:%b %d, %Y}", current, week_end))
            current += timedelta(days=7)
    return periods


def attendance_trends(start, end, view='weekly'):
    """Weekly or monthly attendance for lectures that have at least one record."""
    sizes = _section_sizes()
    lectures = [lec for lec in lectures_query(start, end).all() if lec.attendance_records]
    rows = []
    previous = None
    for label, p_start, p_end in trend_periods(start, end, view):
        in_period = [lec for lec in lectures if p_start <= lec.start_datetime.date() <= p_end]
        counts = Counter(r.status for lec in in_period for r in lec.attendance_records)
        expected = sum(sizes.get(lec.teacher_course.section_id, 0) for lec in in_period)
        pct = attendance_percentage(counts.get('Present', 0), expected)
        rows.append({
            'period': label,
            'start': p_start,
            'end': p_end,
            'total_lectures': len(in_period),
            'total_records': sum(counts.values()),
            'present': counts.get('Present', 0),
            'absent': counts.get('Absent', 0),
            'leave': counts.get('Leave', 0),
            'percentage': pct,
            'trend': trend_direction(pct, previous),
        })
        previous = pct
    return rows


def teacher_stats_report():
    rows = []
    for teacher in Teacher.query.all():
        lectures = lectures_query().filter(TeacherCourse.teacher_id == teacher.id).all()
        marked = sum(1 for lec in lectures if lec.attendance_records)
        requests = AttendanceExtensionRequest.query.filter_by(teacher_id=teacher.id).all()
        rate = attendance_percentage(marked, len(lectures))
        rows.append({
            'badge_number': teacher.badge_number,
            'name': teacher.user.full_name,
            'designation': teacher.designation or '',
            'total_lectures': len(lectures),
            'marked_lectures': marked,
            'late_marked': sum(1 for r in requests if r.status == 'Approved'),
            'marking_rate': rate,
            'extension_requests': len(requests),
            'compliant': rate >= 95,
        })
    rows.sort(key=lambda r: r['marking_rate'], reverse=True)
    return rows


def teacher_stats_summary(rows):
    return {
        'total_teachers': len(rows),
        'fully_compliant': sum(1 for r in rows if r['compliant']),
        'overall_marking_rate': round(sum(r['marking_rate'] for r in rows) / len(rows), 2) if rows else 0,
    }


def late_marking_report(start, end):
    rows = []
    for lec in lectures_query(start, end).order_by(Lecture.start_datetime).all():
        if not lec.attendance_records:
            continue
        first_marked = min(r.marked_at for r in lec.attendance_records)
        hours_late = (first_marked - lec.end_datetime).total_seconds() / 3600
        if hours_late <= 0:
            continue
        tc = lec.teacher_course
        rows.append({
            'lecture_id': lec.id,
            'course': tc.course.title,
            'teacher': tc.teacher.user.full_name,
            'section': tc.section.name,
            'lecture_date': lec.start_datetime.date(),
            'lecture_end': lec.end_datetime,
            'marked_at': first_marked,
            'hours_late': round(hours_late, 2),
            'status': late_marking_status(hours_late),
        })
    return rows


def student_analytics():
    lecture_cache = {}
    summaries = []
    for student in _students():
        if student.section_id not in lecture_cache:
            lecture_cache[student.section_id] = _section_lecture_ids(student.section_id)
        summaries.append(_student_summary(student, lecture_cache[student.section_id]))
    buckets = Counter(analytics_bucket(s['percentage']) for s in summaries)
    return {
        'total_students': len(summaries),
        'top_count': buckets.get('top', 0),
        'average_count': buckets.get('average', 0),
        'at_risk_count': buckets.get('at_risk', 0),
        'critical_count': buckets.get('critical', 0),
        'top_performers': sorted(summaries, key=lambda s: s['percentage'], reverse=True)[:10],
        'defaulters': sorted([s for s in summaries if s['percentage'] < 60], key=lambda s: s['percentage']),
    }


def dashboard_summary(now=None):
    now = now or datetime.now()
    today = now.date()
    lo, hi = _day_bounds(today, today)
    total_records = AttendanceRecord.query.count()
    present = AttendanceRecord.query.filter_by(status='Present').count()
    return {
        'users': User.query.count(),
        'students': Student.query.count(),
        'teachers': Teacher.query.count(),
        'courses': Course.query.count(),
        'badges': Badge.query.count(),
        'sections': Section.query.count(),
        'lectures_today': Lecture.query.filter(Lecture.start_datetime >= lo, Lecture.start_datetime < hi).count(),
        'pending_requests': AttendanceExtensionRequest.query.filter_by(status='Pending').count(),
        'overall_percentage': attendance_percentage(present, total_records),
    }


# --- student & teacher portals ---

def student_course_breakdown(student, now=None):
    """Per-course attendance for lectures of the student's section that have started."""
    now = now or datetime.now()
    rows = []
    total_present = total_lectures = 0
    for tc in TeacherCourse.query.filter_by(section_id=student.section_id).all():
        lecture_ids = [lec.id for lec in lectures_query()
                       .filter(TeacherCourse.id == tc.id, Lecture.start_datetime <= now).all()]
        counts = _status_counts(student.id, lecture_ids)
        present = counts.get('Present', 0)
        pct = attendance_percentage(present, len(lecture_ids))
        rows.append({
            'course_code': tc.course.code,
            'course_name': tc.course.title,
            'teacher': tc.teacher.user.full_name,
            'total_lectures': len(lecture_ids),
            'present': present,
            'absent': counts.get('Absent', 0),
            'leave': counts.get('Leave', 0),
            'percentage': pct,
            'status': student_status(pct),
        })
        total_present += present
        total_lectures += len(lecture_ids)
    overall = attendance_percentage(total_present, total_lectures)
    return rows, overall


def teacher_course_summary(teacher, now=None):
    now = now or datetime.now()
    sizes = _section_sizes()
    rows = []
    for tc in TeacherCourse.query.filter_by(teacher_id=teacher.id).all():
        held = lectures_query().filter(TeacherCourse.id == tc.id, Lecture.start_datetime <= now).all()
        marked = [lec for lec in held if lec.attendance_records]
        present = sum(1 for lec in marked for r in lec.attendance_records if r.status == 'Present')
        students = sizes.get(tc.section_id, 0)
        pct = attendance_percentage(present, len(marked) * students)
        rows.append({
            'teacher_course_id': tc.id,
            'course_code': tc.course.code,
            'course_name': tc.course.title,
            'section': tc.section.display_name,
            'students': students,
            'lectures_held': len(held),
            'lectures_marked': len(marked),
            'percentage': pct,
            'status': course_status(pct),
        })
    return rows


def teacher_course_students(tc, now=None):
    now = now or datetime.now()
    lecture_ids = [lec.id for lec in lectures_query()
                   .filter(TeacherCourse.id == tc.id, Lecture.start_datetime <= now).all()]
    rows = []
    for student in _students(section_id=tc.section_id):
        row = _student_summary(student, lecture_ids)
        row['status'] = student_status(row['percentage'])
        rows.append(row)
    return rows


def student_history(student, limit=50):
    """Most recent attendance records for a student, newest first."""
    records = (AttendanceRecord.query
               .join(Lecture, AttendanceRecord.lecture_id == Lecture.id)
               .filter(AttendanceRecord.student_id == student.id)
               .order_by(Lecture.start_datetime.desc())
               .limit(limit).all())
    return records
