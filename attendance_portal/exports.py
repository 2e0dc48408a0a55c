import csv
from io import BytesIO, StringIO

from flask import Response, send_file
from openpyxl import Workbook
from openpyxl.styles import Font

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

# (header, row key) pairs per report
REPORT_COLUMNS = {
    'student_attendance': [
        ('Roll No', 'roll_no'), ('Student Name', 'name'), ('Section', 'section'), ('Badge', 'badge'),
        ('Total Lectures', 'total_lectures'), ('Present', 'present'), ('Absent', 'absent'),
        ('Leave', 'leave'), ('Attendance %', 'percentage'), ('Status', 'status'),
    ],
    'defaulters': [
        ('Roll No', 'roll_no'), ('Student Name', 'name'), ('Email', 'email'), ('Section', 'section'),
        ('Badge', 'badge'), ('Total Lectures', 'total_lectures'), ('Present', 'present'),
        ('Absent', 'absent'), ('Attendance %', 'percentage'), ('Shortage %', 'shortage'),
    ],
    'course_attendance': [
        ('Course Code', 'course_code'), ('Course Name', 'course_name'), ('Section', 'section'),
        ('Total Lectures', 'total_lectures'), ('Total Students', 'total_students'),
        ('Present', 'present'), ('Absent', 'absent'), ('Leave', 'leave'),
        ('Attendance %', 'percentage'), ('Status', 'status'),
    ],
    'section_comparison': [
        ('Section', 'section'), ('Badge', 'badge'), ('Total Students', 'total_students'),
        ('Total Lectures', 'total_lectures'), ('Avg Attendance %', 'average'),
        ('Excellent Students', 'excellent_students'), ('Defaulters', 'defaulters'),
        ('Performance', 'performance'),
    ],
    'trends': [
        ('Period', 'period'), ('Total Lectures', 'total_lectures'), ('Present', 'present'),
        ('Absent', 'absent'), ('Leave', 'leave'), ('Attendance %', 'percentage'), ('Trend', 'trend'),
    ],
    'teacher_stats': [
        ('Badge Number', 'badge_number'), ('Teacher', 'name'), ('Designation', 'designation'),
        ('Total Lectures', 'total_lectures'), ('Marked Lectures', 'marked_lectures'),
        ('Late Marked', 'late_marked'), ('Marking Rate %', 'marking_rate'),
        ('Extension Requests', 'extension_requests'),
    ],
    'late_marking': [
        ('Course', 'course'), ('Teacher', 'teacher'), ('Section', 'section'),
        ('Lecture Date', 'lecture_date'), ('Lecture End', 'lecture_end'), ('Marked At', 'marked_at'),
        ('Hours Late', 'hours_late'), ('Status', 'status'),
    ],
    'student_analytics': [
        ('Roll No', 'roll_no'), ('Student Name', 'name'), ('Section', 'section'),
        ('Total Lectures', 'total_lectures'), ('Present', 'present'), ('Attendance %', 'percentage'),
    ],
    'teacher_course_students': [
        ('Roll No', 'roll_no'), ('Student Name', 'name'), ('Total Lectures', 'total_lectures'),
        ('Present', 'present'), ('Absent', 'absent'), ('Leave', 'leave'),
        ('Attendance %', 'percentage'), ('Status', 'status'),
    ],
}


def _format(value):
    if value is None:
        return ''
    if hasattr(value, 'strftime'):
        return value.strftime('%Y-%m-%d %H:%M') if hasattr(value, 'hour') else value.strftime('%Y-%m-%d')
    return value


def rows_to_csv(columns, rows) -> str:
    buf = StringIO()
    writer = csv.writer(buf)
    writer.writerow([header for header, _ in columns])
    for row in rows:
        writer.writerow([_format(row.get(key)) for _, key in columns])
    data = buf.getvalue()
    buf.close()
    return data


def rows_to_xlsx(title, columns, rows) -> BytesIO:
    wb = Workbook()
    ws = wb.active
    ws.title = title[:31]
    ws.append([header for header, _ in columns])
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for row in rows:
        ws.append([_format(row.get(key)) for _, key in columns])
    for i, (header, _) in enumerate(columns, start=1):
        ws.column_dimensions[ws.cell(row=1, column=i).column_letter].width = max(12, len(header) + 4)
    out = BytesIO()
    wb.save(out)
    out.seek(0)
    return out


def csv_response(report, rows, filename):
    return Response(
        rows_to_csv(REPORT_COLUMNS[report], rows),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'}
    )


def xlsx_response(report, rows, filename, title=None):
    data = rows_to_xlsx(title or report.replace('_', ' ').title(), REPORT_COLUMNS[report], rows)
    return send_file(data, mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=filename)
