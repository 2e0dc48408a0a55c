"""Printable A5 credential slips, one page per account."""
from datetime import datetime
from io import BytesIO

from reportlab.lib import colors
from reportlab.lib.pagesizes import A5
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

TITLE = "University Attendance System"
WARNING = "Please change your password after first login for security purposes."
MARGIN = 15 * mm
LABEL_WIDTH = 32 * mm


def _draw_slip(c, full_name, email, password, role, identifier, section_name, login_url, generated_at):
    width, height = A5
    y = height - MARGIN - 10 * mm

    c.setFillColor(colors.HexColor('#1565c0'))
    c.setFont('Helvetica-Bold', 16)
    c.drawCentredString(width / 2, y, TITLE)
    y -= 8 * mm
    c.setFillColor(colors.HexColor('#616161'))
    c.setFont('Helvetica', 12)
    subtitle = "Teacher Login Credentials" if role.lower() == 'teacher' else "Student Login Credentials"
    c.drawCentredString(width / 2, y, subtitle)
    y -= 5 * mm
    c.setStrokeColor(colors.HexColor('#90caf9'))
    c.setLineWidth(2)
    c.line(MARGIN, y, width - MARGIN, y)

    rows = [("Name:", full_name)]
    if role.lower() == 'teacher':
        rows.append(("Badge No:", identifier or ''))
    else:
        rows.append(("Roll No:", identifier or ''))
        rows.append(("Section:", section_name or ''))
    rows.extend([("Email:", email), ("Password:", password)])

    box_top = y - 6 * mm
    box_height = (len(rows) * 9 + 6) * mm
    c.setFillColor(colors.HexColor('#f5f5f5'))
    c.setStrokeColor(colors.HexColor('#90caf9'))
    c.rect(MARGIN, box_top - box_height, width - 2 * MARGIN, box_height, fill=1, stroke=1)

    y = box_top - 9 * mm
    for label, value in rows:
        c.setFillColor(colors.HexColor('#1e88e5'))
        c.setFont('Helvetica-Bold', 10)
        c.drawString(MARGIN + 5 * mm, y, label)
        c.setFillColor(colors.black)
        if label in ("Email:", "Password:"):
            c.setFont('Courier-Bold' if label == "Password:" else 'Courier', 11)
        else:
            c.setFont('Helvetica', 11)
        c.drawString(MARGIN + 5 * mm + LABEL_WIDTH, y, str(value))
        y -= 9 * mm

    y = box_top - box_height - 10 * mm
    c.setFillColor(colors.HexColor('#1565c0'))
    c.setFont('Helvetica-Bold', 9)
    c.drawString(MARGIN, y, "Login URL:")
    c.setFont('Helvetica', 9)
    c.drawString(MARGIN, y - 5 * mm, login_url or '')

    y -= 15 * mm
    c.setFillColor(colors.HexColor('#e65100'))
    c.setFont('Helvetica-Oblique', 8)
    c.drawString(MARGIN, y, WARNING)

    c.setFillColor(colors.HexColor('#757575'))
    c.setFont('Helvetica', 7)
    c.drawCentredString(width / 2, MARGIN, f"Generated on: {generated_at:%B %d, %Y %I:%M %p}")


def credential_slips_pdf(credentials, login_url, generated_at=None) -> bytes:
    """One A5 page per UserCredential."""
    generated_at = generated_at or datetime.now()
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A5)
    c.setTitle("Login Credentials")
    for cred in credentials:
        _draw_slip(c, cred.full_name, cred.email, cred.password, cred.role,
                   cred.identifier, cred.section_name, login_url, generated_at)
        c.showPage()
    c.save()
    return buf.getvalue()


def student_credential_pdf(full_name, email, password, roll_no, section_name, login_url) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A5)
    _draw_slip(c, full_name, email, password, 'Student', roll_no, section_name, login_url, datetime.now())
    c.showPage()
    c.save()
    return buf.getvalue()


def teacher_credential_pdf(full_name, email, password, badge_number, login_url) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A5)
    _draw_slip(c, full_name, email, password, 'Teacher', badge_number, None, login_url, datetime.now())
    c.showPage()
    c.save()
    return buf.getvalue()
