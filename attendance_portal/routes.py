from flask import render_template, url_for, flash, redirect, request, jsonify, session, Response, send_file
from attendance_portal import app, db
import logging

logger = logging.getLogger(__name__)
from attendance_portal.models import (User, Badge, Section, Student, Teacher, Course, TeacherCourse,
                                      TimetableRule, Lecture, AttendanceRecord, AttendanceExtensionRequest,
                                      Holiday, Notification, AuditLog, ATTENDANCE_STATUSES, LECTURE_TYPES,
                                      ROLE_ADMIN, ROLE_TEACHER, ROLE_STUDENT)
from attendance_portal import (security, bulk_import, scheduling, extension_requests, reports,
                               exports, mailer, pdf)
from attendance_portal.attendance_window import evaluate_window, window_for_lecture
from sqlalchemy.exc import IntegrityError
from sqlalchemy import or_
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from werkzeug.utils import secure_filename
from functools import wraps
from datetime import datetime, date, timedelta
from io import BytesIO, StringIO
import csv

# --- Auth decorators ---

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not session.get('logged_in'):
            flash('Please log in to access this page.', 'warning')
            return redirect(url_for('login', next=request.path))
        return fn(*args, **kwargs)
    return wrapper

def roles_required(*roles):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not session.get('logged_in'):
                flash('Please log in to access this page.', 'warning')
                return redirect(url_for('login', next=request.path))
            role = session.get('role')
            if role not in roles:
                flash('You are not authorized to perform this action.', 'danger')
                return redirect(url_for('index'))
            return fn(*args, **kwargs)
        return wrapper
    return decorator

# --- Role-based CRUD policy ---
CRUD_PERMISSIONS = {
    'user':              {'create': ['admin'], 'read': ['admin'], 'update': ['admin'], 'delete': ['admin']},
    'badge':             {'create': ['admin'], 'read': ['admin'], 'update': ['admin'], 'delete': ['admin']},
    'section':           {'create': ['admin'], 'read': ['admin', 'teacher'], 'update': ['admin'], 'delete': ['admin']},
    'course':            {'create': ['admin'], 'read': ['admin', 'teacher'], 'update': ['admin'], 'delete': ['admin']},
    'teacher_course':    {'create': ['admin'], 'read': ['admin'], 'update': ['admin'], 'delete': ['admin']},
    'timetable':         {'create': ['admin'], 'read': ['admin', 'teacher', 'student'], 'update': ['admin'], 'delete': ['admin']},
    'lecture':           {'create': ['admin', 'teacher'], 'read': ['admin', 'teacher'], 'update': ['admin'], 'delete': ['admin', 'teacher']},
    'holiday':           {'create': ['admin'], 'read': ['admin', 'teacher', 'student'], 'update': ['admin'], 'delete': ['admin']},
    'attendance':        {'create': ['teacher'], 'read': ['admin', 'teacher', 'student'], 'update': ['teacher'], 'delete': ['admin']},
    'extension_request': {'create': ['teacher'], 'read': ['admin', 'teacher'], 'update': ['admin'], 'delete': ['admin']},
    'bulk_import':       {'create': ['admin'], 'read': ['admin']},
    'report':            {'read': ['admin', 'teacher']},
    'audit':             {'read': ['admin']},
}

def crud_required(resource: str, action: str):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if not session.get('logged_in'):
                flash('Please log in to access this page.', 'warning')
                return redirect(url_for('login', next=request.path))
            role = session.get('role')
            allowed = CRUD_PERMISSIONS.get(resource, {}).get(action, [])
            if role not in allowed:
                flash('You are not authorized to perform this action.', 'danger')
                return redirect(url_for('index'))
            return fn(*args, **kwargs)
        return wrapper
    return decorator

# --- Helper Functions ---
def current_user():
    user_id = session.get('user_id')
    return db.session.get(User, user_id) if user_id else None

def current_teacher():
    user = current_user()
    return user.teacher if user else None

def current_student():
    user = current_user()
    return user.student if user else None

def _audit(action, target=None, details=None):
    try:
        log = AuditLog(
            action=action,
            actor_email=session.get('user') or 'system',
            actor_role=session.get('role'),
            target=target,
            details=details
        )
        db.session.add(log)
        db.session.commit()
    except Exception as _e:
        db.session.rollback()
        logger.warning(f"Failed to write audit log for {action}: {_e}")

def _parse_date(value):
    try:
        return datetime.strptime((value or '').strip(), '%Y-%m-%d').date()
    except ValueError:
        return None

def _parse_time(value):
    try:
        return datetime.strptime((value or '').strip(), '%H:%M').time()
    except ValueError:
        return None

def _date_range(args, default_days=30):
    end = _parse_date(args.get('end_date')) or date.today()
    start = _parse_date(args.get('start_date')) or end - timedelta(days=default_days)
    return start, end

def _window_config():
    return {
        'ATTENDANCE_MARK_WINDOW_MINUTES': app.config.get('ATTENDANCE_MARK_WINDOW_MINUTES', 10),
        'ATTENDANCE_EDIT_WINDOW_MINUTES': app.config.get('ATTENDANCE_EDIT_WINDOW_MINUTES', 20),
        'EXTENSION_VALID_HOURS': app.config.get('EXTENSION_VALID_HOURS', 24),
    }

def _reset_serializer():
    return URLSafeTimedSerializer(app.config.get('SECRET_KEY', 'changeme'))

def _allowed_upload(filename, extensions=('csv', 'xlsx')):
    fname = secure_filename(filename or '')
    return '.' in fname and fname.rsplit('.', 1)[1].lower() in extensions

def _dashboard_endpoint(role):
    return {
        ROLE_ADMIN: 'admin_dashboard',
        ROLE_TEACHER: 'teacher_dashboard',
        ROLE_STUDENT: 'student_dashboard',
    }.get(role, 'login')

@app.context_processor
def inject_user():
    unread = 0
    if session.get('user_id'):
        try:
            unread = Notification.query.filter_by(user_id=session['user_id'], is_read=False).count()
        except Exception:
            logger.exception('Failed to count notifications')
    return {'session_role': session.get('role'), 'session_user': session.get('user'),
            'unread_notifications': unread}

@app.route("/")
def index():
    if not session.get('logged_in'):
        return redirect(url_for('login'))
    return redirect(url_for(_dashboard_endpoint(session.get('role'))))

@app.route('/dashboard')
@login_required
def dashboard():
    return redirect(url_for(_dashboard_endpoint(session.get('role'))))

# --- Authentication ---

@app.route("/login", methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        email = request.form.get('email', '').strip().lower()
        password = request.form.get('password', '')
        user = security.authenticate(email, password)
        if user:
            session.clear()
            session['logged_in'] = True
            session['user'] = user.email
            session['user_id'] = user.id
            session['role'] = user.role
            session.permanent = True
            _audit('login', target=user.email)
            flash('Logged in successfully.', 'success')
            next_url = request.args.get('next')
            if next_url and next_url.startswith('/'):
                return redirect(next_url)
            return redirect(url_for(_dashboard_endpoint(user.role)))
        logger.warning(f"Failed login for {email}")
        flash('Invalid email or password.', 'danger')
    return render_template('login.html', title='Login')

@app.route("/logout")
def logout():
    session.clear()
    flash('Logged out.', 'info')
    return redirect(url_for('login'))

@app.route('/forgot-password', methods=['GET', 'POST'])
def forgot_password():
    if not app.config.get('PASSWORD_RESET_ENABLED', True):
        flash('Password reset is disabled by the administrator.', 'warning')
        return redirect(url_for('login'))
    if request.method == 'POST':
        email = request.form.get('email', '').strip().lower()
        user = User.query.filter_by(email=email, is_active=True).first()
        # Same response whether or not the account exists
        if user:
            try:
                token = _reset_serializer().dumps(user.email, salt='password-reset')
                reset_url = url_for('reset_password', token=token, _external=True)
                if not mailer.send_password_reset_email(user, reset_url):
                    logger.warning(f"Password reset email to {user.email} was not delivered")
            except Exception:
                logger.exception('Failed to generate reset token')
        flash('If the account exists, a reset link has been sent to its email address.', 'info')
        return redirect(url_for('login'))
    return render_template('forgot_password.html', title='Forgot Password')

@app.route('/reset-password/<token>', methods=['GET', 'POST'])
def reset_password(token):
    if not app.config.get('PASSWORD_RESET_ENABLED', True):
        flash('Password reset is disabled by the administrator.', 'warning')
        return redirect(url_for('login'))
    try:
        email = _reset_serializer().loads(token, salt='password-reset',
                                          max_age=app.config.get('PASSWORD_RESET_MAX_AGE_SECONDS', 3600))
    except SignatureExpired:
        flash('Reset link has expired. Please request a new one.', 'danger')
        return redirect(url_for('forgot_password'))
    except BadSignature:
        flash('Invalid reset link.', 'danger')
        return redirect(url_for('forgot_password'))
    user = User.query.filter_by(email=email).first()
    if not user:
        flash('Account not found.', 'danger')
        return redirect(url_for('forgot_password'))
    if request.method == 'POST':
        password = request.form.get('password', '')
        confirm = request.form.get('confirm_password', '')
        error = security.password_policy_error(password, app.config.get('PASSWORD_MIN_LENGTH', 8),
                                               app.config.get('REQUIRE_STRONG_PASSWORD', True))
        if not error and password != confirm:
            error = 'Passwords do not match.'
        if error:
            flash(error, 'danger')
            return render_template('reset_password.html', title='Reset Password')
        try:
            user.password_hash = security.hash_password(password)
            db.session.commit()
            flash('Password has been reset. Please log in.', 'success')
            return redirect(url_for('login'))
        except Exception as e:
            db.session.rollback()
            logger.exception('Error resetting password')
            flash(f'Unexpected error: {str(e)}', 'danger')
    return render_template('reset_password.html', title='Reset Password')

@app.route('/change-password', methods=['GET', 'POST'])
@login_required
def change_password():
    user = current_user()
    if not user:
        flash('Account not found.', 'danger')
        return redirect(url_for('login'))
    if request.method == 'POST':
        current = request.form.get('current_password', '')
        password = request.form.get('password', '')
        confirm = request.form.get('confirm_password', '')
        error = None
        if not current:
            error = 'Current password is required.'
        elif not security.verify_password(current, user.password_hash):
            error = 'Current password is incorrect.'
        else:
            error = security.password_policy_error(password, app.config.get('PASSWORD_MIN_LENGTH', 8),
                                                   app.config.get('REQUIRE_STRONG_PASSWORD', True))
        if not error and password != confirm:
            error = 'Passwords do not match.'
        if error:
            flash(error, 'danger')
            return render_template('reset_password.html', title='Change Password', show_current=True)
        try:
            user.password_hash = security.hash_password(password)
            db.session.commit()
            _audit('change_password', target=user.email)
            flash('Password updated successfully.', 'success')
            return redirect(url_for('dashboard'))
        except Exception as e:
            db.session.rollback()
            logger.exception('Error changing password')
            flash(f'Unexpected error: {str(e)}', 'danger')
    return render_template('reset_password.html', title='Change Password', show_current=True)

@app.route('/notifications')
@login_required
def notifications():
    items = (Notification.query.filter_by(user_id=session.get('user_id'))
             .order_by(Notification.created_at.desc()).limit(100).all())
    return render_template('notifications.html', title='Notifications', notifications=items)

@app.route('/notifications/read', methods=['POST'])
@login_required
def mark_notifications_read():
    Notification.query.filter_by(user_id=session.get('user_id'), is_read=False).update({'is_read': True})
    db.session.commit()
    return redirect(url_for('notifications'))

# --- Admin: dashboard ---

@app.route('/admin/dashboard')
@roles_required(ROLE_ADMIN)
def admin_dashboard():
    expired = extension_requests.expire_stale_requests(valid_hours=app.config.get('EXTENSION_VALID_HOURS', 24))
    if expired:
        flash(f'{expired} pending extension request(s) expired.', 'info')
    summary = reports.dashboard_summary()
    recent = AuditLog.query.order_by(AuditLog.created_at.desc()).limit(10).all()
    return render_template('admin/dashboard.html', title='Admin Dashboard', summary=summary, recent_logs=recent)

# --- Admin: users ---

@app.route('/admin/users')
@crud_required('user', 'read')
def admin_users():
    page = request.args.get('page', 1, type=int)
    role = request.args.get('role', '').strip()
    q_text = request.args.get('q', '').strip()
    q = User.query
    if role:
        q = q.filter(User.role == role)
    if q_text:
        like = f"%{q_text}%"
        q = q.filter(or_(User.full_name.ilike(like), User.email.ilike(like)))
    pagination = q.order_by(User.created_at.desc()).paginate(page=page, per_page=25)
    return render_template('admin/users.html', title='Users', users=pagination.items, pagination=pagination,
                           role=role, q=q_text)

@app.route('/admin/users/add', methods=['GET', 'POST'])
@crud_required('user', 'create')
def add_user():
    sections = Section.query.order_by(Section.name).all()
    if request.method == 'POST':
        full_name = request.form.get('full_name', '').strip()
        email = request.form.get('email', '').strip().lower()
        role = request.form.get('role', ROLE_STUDENT)
        roll_no = request.form.get('roll_no', '').strip()
        father_name = request.form.get('father_name', '').strip()
        section_id = request.form.get('section_id', type=int)
        badge_number = request.form.get('badge_number', '').strip()
        designation = request.form.get('designation', '').strip() or 'Teacher'
        send_email = request.form.get('send_email') == 'on'

        errors = []
        if not full_name:
            errors.append('Full name is required.')
        if not bulk_import.is_valid_email(email):
            errors.append('A valid email is required.')
        elif User.query.filter_by(email=email).first():
            errors.append('Email already exists.')
        if role not in (ROLE_ADMIN, ROLE_TEACHER, ROLE_STUDENT):
            errors.append('Invalid role.')
        if role == ROLE_STUDENT:
            if not section_id or not db.session.get(Section, section_id):
                errors.append('Section is required for students.')
            if not bulk_import.is_valid_roll_number(roll_no):
                errors.append(bulk_import.ROLL_NUMBER_HINT)
            elif Student.query.filter_by(roll_no=roll_no).first():
                errors.append('Roll number already exists.')
        if role == ROLE_TEACHER:
            if not badge_number:
                errors.append('Badge number is required for teachers.')
            elif Teacher.query.filter_by(badge_number=badge_number).first():
                errors.append(f"Badge number '{badge_number}' already exists.")
        if errors:
            for e in errors:
                flash(e, 'danger')
            return render_template('admin/user_form.html', title='Add User', sections=sections, form=request.form)

        password = security.generate_password(app.config.get('GENERATED_PASSWORD_LENGTH', 10))
        try:
            user = User(full_name=full_name, email=email, role=role,
                        password_hash=security.hash_password(password))
            db.session.add(user)
            db.session.flush()
            section_name = None
            if role == ROLE_STUDENT:
                db.session.add(Student(user_id=user.id, section_id=section_id, roll_no=roll_no,
                                       father_name=father_name or 'Not Provided'))
                section_name = db.session.get(Section, section_id).name
            elif role == ROLE_TEACHER:
                db.session.add(Teacher(user_id=user.id, badge_number=badge_number, designation=designation))
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            flash('User could not be created because of a duplicate value.', 'danger')
            return render_template('admin/user_form.html', title='Add User', sections=sections, form=request.form)
        _audit('user_create', target=email, details=f"role={role}")
        if send_email:
            if mailer.send_credentials_email(email, full_name, password, role.title(), section_name=section_name):
                flash(f'User {email} created and credentials emailed.', 'success')
            else:
                flash(f'User {email} created but the email failed. Temporary password: {password}', 'warning')
        else:
            flash(f'User {email} created. Temporary password: {password}', 'success')
        return redirect(url_for('admin_users'))
    return render_template('admin/user_form.html', title='Add User', sections=sections, form={})

@app.route('/admin/users/<int:user_id>/edit', methods=['GET', 'POST'])
@crud_required('user', 'update')
def edit_user(user_id):
    user = db.get_or_404(User, user_id)
    sections = Section.query.order_by(Section.name).all()
    if request.method == 'POST':
        full_name = request.form.get('full_name', '').strip()
        email = request.form.get('email', '').strip().lower()
        if not full_name or not bulk_import.is_valid_email(email):
            flash('Full name and a valid email are required.', 'danger')
            return redirect(url_for('edit_user', user_id=user.id))
        other = User.query.filter(User.email == email, User.id != user.id).first()
        if other:
            flash('Email already exists.', 'danger')
            return redirect(url_for('edit_user', user_id=user.id))
        try:
            user.full_name = full_name
            user.email = email
            if user.student:
                section_id = request.form.get('section_id', type=int)
                if section_id and db.session.get(Section, section_id):
                    user.student.section_id = section_id
                user.student.father_name = request.form.get('father_name', '').strip() or user.student.father_name
            if user.teacher:
                user.teacher.designation = request.form.get('designation', '').strip() or user.teacher.designation
            db.session.commit()
            _audit('user_update', target=email)
            flash('User updated.', 'success')
            return redirect(url_for('admin_users'))
        except IntegrityError:
            db.session.rollback()
            flash('Could not update user because of a duplicate value.', 'danger')
    return render_template('admin/user_edit.html', title='Edit User', user=user, sections=sections)

@app.route('/admin/users/<int:user_id>/toggle-active', methods=['POST'])
@crud_required('user', 'update')
def toggle_user_active(user_id):
    user = db.get_or_404(User, user_id)
    if user.id == session.get('user_id'):
        flash('You cannot deactivate your own account.', 'warning')
        return redirect(url_for('admin_users'))
    user.is_active = not user.is_active
    db.session.commit()
    _audit('user_toggle_active', target=user.email, details=f"is_active={user.is_active}")
    flash(f"User {'activated' if user.is_active else 'deactivated'}.", 'success')
    return redirect(url_for('admin_users'))

@app.route('/admin/users/<int:user_id>/reset-password', methods=['POST'])
@crud_required('user', 'update')
def admin_reset_user_password(user_id):
    user = db.get_or_404(User, user_id)
    password = security.generate_password(app.config.get('GENERATED_PASSWORD_LENGTH', 10))
    user.password_hash = security.hash_password(password)
    db.session.commit()
    _audit('user_password_reset', target=user.email)
    section_name = user.student.section.name if user.student else None
    if request.form.get('delivery') == 'pdf' and (user.student or user.teacher):
        login_url = app.config.get('LOGIN_URL')
        if user.student:
            data = pdf.student_credential_pdf(user.full_name, user.email, password, user.student.roll_no,
                                              section_name, login_url)
        else:
            data = pdf.teacher_credential_pdf(user.full_name, user.email, password, user.teacher.badge_number,
                                              login_url)
        return send_file(BytesIO(data), mimetype='application/pdf', as_attachment=True,
                         download_name=f'credentials_{user.id}_{datetime.now():%Y%m%d_%H%M%S}.pdf')
    if mailer.send_credentials_email(user.email, user.full_name, password, user.role.title(), section_name=section_name):
        flash(f'New credentials emailed to {user.email}.', 'success')
    else:
        flash(f'Email failed. New temporary password for {user.email}: {password}', 'warning')
    return redirect(url_for('admin_users'))

@app.route('/admin/users/<int:user_id>/delete', methods=['POST'])
@crud_required('user', 'delete')
def delete_user(user_id):
    user = db.get_or_404(User, user_id)
    if user.id == session.get('user_id'):
        flash('You cannot delete your own account.', 'warning')
        return redirect(url_for('admin_users'))
    email = user.email
    try:
        if user.teacher:
            if user.teacher.teacher_courses:
                flash('Remove this teacher\'s course assignments before deleting the account.', 'warning')
                return redirect(url_for('admin_users'))
            AttendanceExtensionRequest.query.filter_by(teacher_id=user.teacher.id).delete()
            db.session.delete(user.teacher)
        if user.student:
            db.session.delete(user.student)
        AttendanceExtensionRequest.query.filter_by(approved_by_user_id=user.id).update({'approved_by_user_id': None})
        db.session.delete(user)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.exception(f"Failed to delete user {email}")
        flash(f'Failed to delete user: {str(e)}', 'danger')
        return redirect(url_for('admin_users'))
    _audit('user_delete', target=email)
    flash('User deleted.', 'success')
    return redirect(url_for('admin_users'))

# --- Admin: badges & sections ---

@app.route('/admin/badges', methods=['GET', 'POST'])
@crud_required('badge', 'read')
def admin_badges():
    if request.method == 'POST':
        name = request.form.get('name', '').strip()
        if not name:
            flash('Badge name is required.', 'danger')
        elif Badge.query.filter(Badge.name.ilike(name)).first():
            flash(f"Badge '{name}' already exists.", 'danger')
        else:
            db.session.add(Badge(name=name))
            db.session.commit()
            _audit('badge_create', target=name)
            flash('Badge created.', 'success')
        return redirect(url_for('admin_badges'))
    badges = Badge.query.order_by(Badge.name).all()
    return render_template('admin/badges.html', title='Badges', badges=badges)

@app.route('/admin/badges/<int:badge_id>/edit', methods=['POST'])
@crud_required('badge', 'update')
def edit_badge(badge_id):
    badge = db.get_or_404(Badge, badge_id)
    name = request.form.get('name', '').strip()
    if not name or Badge.query.filter(Badge.name.ilike(name), Badge.id != badge.id).first():
        flash('Badge name is required and must be unique.', 'danger')
        return redirect(url_for('admin_badges'))
    badge.name = name
    db.session.commit()
    flash('Badge updated.', 'success')
    return redirect(url_for('admin_badges'))

@app.route('/admin/badges/<int:badge_id>/delete', methods=['POST'])
@crud_required('badge', 'delete')
def delete_badge(badge_id):
    badge = db.get_or_404(Badge, badge_id)
    if badge.sections:
        flash('Cannot delete a badge that still has sections.', 'warning')
        return redirect(url_for('admin_badges'))
    db.session.delete(badge)
    db.session.commit()
    _audit('badge_delete', target=badge.name)
    flash('Badge deleted.', 'success')
    return redirect(url_for('admin_badges'))

@app.route('/admin/badges/import', methods=['POST'])
@crud_required('bulk_import', 'create')
def import_badges():
    result = bulk_import.validate_badges_file(request.files.get('file'))
    if not result.is_valid:
        for e in (result.errors or ['No valid badges found.'])[:10]:
            flash(e, 'danger')
        return redirect(url_for('admin_badges'))
    created = bulk_import.create_badges(result.valid_items)
    _audit('badge_import', details=f"created={created}")
    flash(f'Imported {created} badge(s).', 'success')
    return redirect(url_for('admin_badges'))

@app.route('/admin/sections', methods=['GET', 'POST'])
@crud_required('section', 'read')
def admin_sections():
    if request.method == 'POST':
        if session.get('role') != ROLE_ADMIN:
            flash('You are not authorized to perform this action.', 'danger')
            return redirect(url_for('index'))
        badge_id = request.form.get('badge_id', type=int)
        name = request.form.get('name', '').strip()
        semester = request.form.get('semester', type=int)
        sess = request.form.get('session', '').strip()
        if not badge_id or not name or not sess or not semester or not 1 <= semester <= 8:
            flash('Badge, name, session and a semester between 1 and 8 are required.', 'danger')
            return redirect(url_for('admin_sections'))
        try:
            db.session.add(Section(badge_id=badge_id, name=name, semester=semester, session=sess))
            db.session.commit()
            _audit('section_create', target=name)
            flash('Section created.', 'success')
        except IntegrityError:
            db.session.rollback()
            flash('That section already exists.', 'danger')
        return redirect(url_for('admin_sections'))
    sections = Section.query.join(Badge).order_by(Badge.name, Section.semester, Section.name).all()
    return render_template('admin/sections.html', title='Sections', sections=sections,
                           badges=Badge.query.order_by(Badge.name).all())

@app.route('/admin/sections/<int:section_id>/delete', methods=['POST'])
@crud_required('section', 'delete')
def delete_section(section_id):
    section = db.get_or_404(Section, section_id)
    if section.students or section.teacher_courses:
        flash('Cannot delete a section that has students or course assignments.', 'warning')
        return redirect(url_for('admin_sections'))
    db.session.delete(section)
    db.session.commit()
    _audit('section_delete', target=section.name)
    flash('Section deleted.', 'success')
    return redirect(url_for('admin_sections'))

@app.route('/admin/sections/import', methods=['POST'])
@crud_required('bulk_import', 'create')
def import_sections():
    result = bulk_import.validate_sections_file(request.files.get('file'))
    if not result.is_valid:
        for e in (result.errors or ['No valid sections found.'])[:10]:
            flash(e, 'danger')
        return redirect(url_for('admin_sections'))
    created = bulk_import.create_sections(result.valid_items)
    _audit('section_import', details=f"created={created}")
    flash(f'Imported {created} section(s).', 'success')
    return redirect(url_for('admin_sections'))

# --- Admin: courses & assignments ---

@app.route('/admin/courses', methods=['GET', 'POST'])
@crud_required('course', 'read')
def admin_courses():
    if request.method == 'POST':
        if session.get('role') != ROLE_ADMIN:
            flash('You are not authorized to perform this action.', 'danger')
            return redirect(url_for('index'))
        code = request.form.get('code', '').strip().upper()
        title = request.form.get('title', '').strip()
        credit_hours = request.form.get('credit_hours', 3, type=int)
        is_lab = request.form.get('is_lab') == 'on'
        if not code or not title:
            flash('Course code and title are required.', 'danger')
            return redirect(url_for('admin_courses'))
        try:
            db.session.add(Course(code=code, title=title, credit_hours=credit_hours, is_lab=is_lab))
            db.session.commit()
            _audit('course_create', target=code)
            flash('Course created.', 'success')
        except IntegrityError:
            db.session.rollback()
            flash(f"Course code '{code}' already exists.", 'danger')
        return redirect(url_for('admin_courses'))
    courses = Course.query.order_by(Course.code).all()
    return render_template('admin/courses.html', title='Courses', courses=courses)

@app.route('/admin/courses/<int:course_id>/edit', methods=['POST'])
@crud_required('course', 'update')
def edit_course(course_id):
    course = db.get_or_404(Course, course_id)
    course.title = request.form.get('title', '').strip() or course.title
    course.credit_hours = request.form.get('credit_hours', course.credit_hours, type=int)
    course.is_lab = request.form.get('is_lab') == 'on'
    db.session.commit()
    flash('Course updated.', 'success')
    return redirect(url_for('admin_courses'))

@app.route('/admin/courses/<int:course_id>/delete', methods=['POST'])
@crud_required('course', 'delete')
def delete_course(course_id):
    course = db.get_or_404(Course, course_id)
    if course.teacher_courses:
        flash('Cannot delete a course that is assigned to teachers.', 'warning')
        return redirect(url_for('admin_courses'))
    db.session.delete(course)
    db.session.commit()
    _audit('course_delete', target=course.code)
    flash('Course deleted.', 'success')
    return redirect(url_for('admin_courses'))

@app.route('/admin/teacher-courses', methods=['GET', 'POST'])
@crud_required('teacher_course', 'read')
def admin_teacher_courses():
    if request.method == 'POST':
        teacher_id = request.form.get('teacher_id', type=int)
        course_id = request.form.get('course_id', type=int)
        section_id = request.form.get('section_id', type=int)
        if not (teacher_id and course_id and section_id):
            flash('Teacher, course and section are required.', 'danger')
            return redirect(url_for('admin_teacher_courses'))
        try:
            db.session.add(TeacherCourse(teacher_id=teacher_id, course_id=course_id, section_id=section_id))
            db.session.commit()
            _audit('teacher_course_create', details=f"teacher={teacher_id},course={course_id},section={section_id}")
            flash('Course assigned.', 'success')
        except IntegrityError:
            db.session.rollback()
            flash('This teacher already teaches that course to that section.', 'danger')
        return redirect(url_for('admin_teacher_courses'))
    return render_template('admin/teacher_courses.html', title='Course Assignments',
                           assignments=TeacherCourse.query.all(),
                           teachers=Teacher.query.join(User).order_by(User.full_name).all(),
                           courses=Course.query.order_by(Course.code).all(),
                           sections=Section.query.order_by(Section.name).all())

@app.route('/admin/teacher-courses/<int:tc_id>/delete', methods=['POST'])
@crud_required('teacher_course', 'delete')
def delete_teacher_course(tc_id):
    tc = db.get_or_404(TeacherCourse, tc_id)
    if tc.timetable_rules:
        flash('Remove the timetable rules of this assignment first.', 'warning')
        return redirect(url_for('admin_teacher_courses'))
    db.session.delete(tc)
    db.session.commit()
    flash('Assignment removed.', 'success')
    return redirect(url_for('admin_teacher_courses'))

# --- Admin: timetable rules ---

@app.route('/admin/timetable-rules', methods=['GET', 'POST'])
@crud_required('timetable', 'create')
def admin_timetable_rules():
    if request.method == 'POST':
        tc_id = request.form.get('teacher_course_id', type=int)
        days = [d for d in request.form.getlist('days') if d in scheduling.DAY_ABBREVIATIONS]
        start_time = _parse_time(request.form.get('start_time'))
        duration = request.form.get('duration_minutes', 60, type=int)
        start_date = _parse_date(request.form.get('start_date'))
        end_date = _parse_date(request.form.get('end_date'))
        errors = []
        if not tc_id or not db.session.get(TeacherCourse, tc_id):
            errors.append('Course assignment is required.')
        if not days:
            errors.append('Select at least one day.')
        if not start_time:
            errors.append('Start time must be HH:MM.')
        if not duration or duration <= 0:
            errors.append('Duration must be positive.')
        if not start_date or not end_date or end_date < start_date:
            errors.append('A valid date range is required.')
        if errors:
            for e in errors:
                flash(e, 'danger')
            return redirect(url_for('admin_timetable_rules'))
        rule = TimetableRule(teacher_course_id=tc_id, days_of_week=','.join(days), start_time=start_time,
                             duration_minutes=duration, start_date=start_date, end_date=end_date,
                             room=request.form.get('room', '').strip() or None,
                             lecture_type=request.form.get('lecture_type', '').strip() or 'Theory')
        db.session.add(rule)
        db.session.commit()
        _audit('timetable_rule_create', target=str(rule.id))
        flash('Timetable rule created.', 'success')
        return redirect(url_for('admin_timetable_rules'))
    return render_template('admin/timetable_rules.html', title='Timetable Rules',
                           rules=TimetableRule.query.order_by(TimetableRule.start_date.desc()).all(),
                           assignments=TeacherCourse.query.all(), days=scheduling.DAY_ABBREVIATIONS)

@app.route('/admin/timetable-rules/<int:rule_id>/delete', methods=['POST'])
@crud_required('timetable', 'delete')
def delete_timetable_rule(rule_id):
    rule = db.get_or_404(TimetableRule, rule_id)
    if rule.lectures:
        flash('Cannot delete a rule that already has lectures.', 'warning')
        return redirect(url_for('admin_timetable_rules'))
    db.session.delete(rule)
    db.session.commit()
    flash('Timetable rule deleted.', 'success')
    return redirect(url_for('admin_timetable_rules'))

# --- Admin: lectures ---

@app.route('/admin/lectures', methods=['GET', 'POST'])
@crud_required('lecture', 'read')
def admin_lectures():
    if request.method == 'POST':
        if session.get('role') != ROLE_ADMIN:
            flash('You are not authorized to perform this action.', 'danger')
            return redirect(url_for('index'))
        rule = db.session.get(TimetableRule, request.form.get('timetable_rule_id', type=int) or 0)
        lecture_date = _parse_date(request.form.get('date'))
        start_time = _parse_time(request.form.get('start_time'))
        end_time = _parse_time(request.form.get('end_time'))
        if not rule or not lecture_date or not start_time or not end_time:
            flash('Rule, date, start and end time are required.', 'danger')
            return redirect(url_for('admin_lectures'))
        start_dt = datetime.combine(lecture_date, start_time)
        end_dt = datetime.combine(lecture_date, end_time)
        if end_dt <= start_dt:
            flash('End time must be after start time.', 'danger')
        elif not scheduling.lecture_within_rule(rule, start_dt):
            flash("Lecture date must fall within the timetable rule's active dates.", 'danger')
        elif scheduling.is_holiday(lecture_date):
            flash(f'Cannot create lecture on holiday {lecture_date.isoformat()}.', 'danger')
        else:
            db.session.add(Lecture(timetable_rule_id=rule.id, start_datetime=start_dt, end_datetime=end_dt,
                                   lecture_type=request.form.get('lecture_type') or 'Regular'))
            db.session.commit()
            _audit('lecture_create', details=f"rule={rule.id},start={start_dt.isoformat()}")
            flash('Lecture created.', 'success')
        return redirect(url_for('admin_lectures'))
    start, end = _date_range(request.args, default_days=7)
    lectures = reports.lectures_query(start, end).order_by(Lecture.start_datetime).all()
    return render_template('admin/lectures.html', title='Lectures', lectures=lectures,
                           rules=TimetableRule.query.all(), start_date=start, end_date=end,
                           lecture_types=LECTURE_TYPES)

@app.route('/admin/lectures/<int:lecture_id>/edit', methods=['GET', 'POST'])
@crud_required('lecture', 'update')
def edit_lecture(lecture_id):
    lecture = db.get_or_404(Lecture, lecture_id)
    if request.method == 'POST':
        lecture_date = _parse_date(request.form.get('date'))
        start_time = _parse_time(request.form.get('start_time'))
        end_time = _parse_time(request.form.get('end_time'))
        status = request.form.get('status', lecture.status)
        if not lecture_date or not start_time or not end_time:
            flash('Date, start and end time are required.', 'danger')
            return redirect(url_for('edit_lecture', lecture_id=lecture.id))
        start_dt = datetime.combine(lecture_date, start_time)
        end_dt = datetime.combine(lecture_date, end_time)
        if end_dt <= start_dt:
            flash('End time must be after start time.', 'danger')
            return redirect(url_for('edit_lecture', lecture_id=lecture.id))
        if not scheduling.lecture_within_rule(lecture.timetable_rule, start_dt):
            flash("Lecture date must fall within the timetable rule's active dates.", 'danger')
            return redirect(url_for('edit_lecture', lecture_id=lecture.id))
        lecture.start_datetime = start_dt
        lecture.end_datetime = end_dt
        if status in ('Scheduled', 'Completed', 'Cancelled'):
            lecture.status = status
        db.session.commit()
        _audit('lecture_update', target=str(lecture.id))
        flash('Lecture updated.', 'success')
        return redirect(url_for('admin_lectures'))
    return render_template('admin/lecture_form.html', title='Edit Lecture', lecture=lecture)

@app.route('/admin/lectures/<int:lecture_id>/delete', methods=['POST'])
@crud_required('lecture', 'update')
def delete_lecture(lecture_id):
    lecture = db.get_or_404(Lecture, lecture_id)
    db.session.delete(lecture)
    db.session.commit()
    _audit('lecture_delete', target=str(lecture_id))
    flash('Lecture deleted.', 'success')
    return redirect(url_for('admin_lectures'))

@app.route('/admin/lectures/generate', methods=['POST'])
@crud_required('lecture', 'update')
def generate_lectures():
    start = _parse_date(request.form.get('start_date'))
    end = _parse_date(request.form.get('end_date'))
    if not start or not end:
        flash('Both start and end dates are required.', 'danger')
        return redirect(url_for('admin_lectures'))
    try:
        result = scheduling.generate_lectures(start, end, app.config.get('LECTURE_GENERATION_MAX_DAYS', 90))
    except ValueError as e:
        flash(str(e), 'danger')
        return redirect(url_for('admin_lectures'))
    except Exception as e:
        db.session.rollback()
        logger.exception('Lecture generation failed')
        flash(f'Failed to generate lectures: {str(e)}', 'danger')
        return redirect(url_for('admin_lectures'))
    _audit('lecture_generate', details=f"start={start},end={end},created={result.lectures_created},"
                                        f"skipped={result.lectures_skipped}")
    flash(f'Successfully generated {result.lectures_created} lectures! '
          f'Skipped {result.lectures_skipped}, processed {result.total_processed} '
          f'day slots across {result.rules_processed} rules.', 'success')
    return redirect(url_for('admin_lectures', start_date=start.isoformat(), end_date=end.isoformat()))

@app.route('/admin/lectures/import', methods=['POST'])
@crud_required('lecture', 'update')
def import_lectures():
    file = request.files.get('file')
    if not file or not _allowed_upload(file.filename, ('csv',)):
        flash('Only CSV files are allowed.', 'danger')
        return redirect(url_for('admin_lectures'))
    result = scheduling.parse_lecture_csv(bulk_import.read_text(file))
    if result.errors:
        flash(f'Found {len(result.errors)} error(s) in CSV:', 'danger')
        for e in result.errors[:10]:
            flash(e, 'danger')
        if len(result.errors) > 10:
            flash(f'... and {len(result.errors) - 10} more errors', 'danger')
        return redirect(url_for('admin_lectures'))
    if not result.lectures:
        flash('No valid lectures found in CSV file.', 'warning')
        return redirect(url_for('admin_lectures'))
    count = scheduling.import_lectures(result)
    _audit('lecture_import', details=f"created={count}")
    flash(f'Successfully imported {count} lecture(s) from CSV.', 'success')
    return redirect(url_for('admin_lectures'))

@app.route('/admin/lectures/template')
@crud_required('lecture', 'update')
def lecture_template():
    return Response(
        scheduling.lecture_template_csv(),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="lecture_import_template_{date.today():%Y%m%d}.csv"'}
    )

@app.route('/admin/lectures/export')
@crud_required('lecture', 'update')
def export_lecture_schedule():
    start, end = _date_range(request.args, default_days=7)
    if end < start:
        flash('End date must be after start date.', 'danger')
        return redirect(url_for('admin_lectures'))
    return Response(
        scheduling.schedule_csv(start, end),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="lecture_schedule_{start:%Y%m%d}_{end:%Y%m%d}.csv"'}
    )

# --- Admin: holidays ---

@app.route('/admin/holidays', methods=['GET', 'POST'])
@crud_required('holiday', 'read')
def admin_holidays():
    if request.method == 'POST':
        if session.get('role') != ROLE_ADMIN:
            flash('You are not authorized to perform this action.', 'danger')
            return redirect(url_for('index'))
        holiday_date = _parse_date(request.form.get('date'))
        reason = request.form.get('reason', '').strip()
        if not holiday_date or not reason:
            flash('Date and reason are required.', 'danger')
            return redirect(url_for('admin_holidays'))
        try:
            db.session.add(Holiday(date=holiday_date, reason=reason))
            db.session.commit()
            _audit('holiday_create', target=holiday_date.isoformat())
            flash('Holiday added.', 'success')
        except IntegrityError:
            db.session.rollback()
            flash('A holiday already exists on that date.', 'danger')
        return redirect(url_for('admin_holidays'))
    return render_template('admin/holidays.html', title='Holidays',
                           holidays=Holiday.query.order_by(Holiday.date).all())

@app.route('/admin/holidays/<int:holiday_id>/delete', methods=['POST'])
@crud_required('holiday', 'delete')
def delete_holiday(holiday_id):
    holiday = db.get_or_404(Holiday, holiday_id)
    db.session.delete(holiday)
    db.session.commit()
    flash('Holiday removed.', 'success')
    return redirect(url_for('admin_holidays'))

# --- Admin: bulk user import ---

def _deliver_credentials(result, delivery, filename_prefix):
    """Send or package the credentials of newly created accounts."""
    if not result.credentials or delivery == 'none':
        return None
    if delivery == 'email':
        sent = mailer.send_bulk_credentials(result.credentials)
        if sent.failed_count:
            flash(f'Credential emails failed for: {", ".join(sent.failed_emails[:10])}', 'warning')
        flash(f'Credential emails sent: {sent.success_count}/{sent.total_emails}.', 'info')
        return None
    if delivery == 'pdf':
        data = pdf.credential_slips_pdf(result.credentials, app.config.get('LOGIN_URL'))
        return send_file(BytesIO(data), mimetype='application/pdf', as_attachment=True,
                         download_name=f'{filename_prefix}_credentials_{datetime.now():%Y%m%d_%H%M%S}.pdf')
    return None

@app.route('/admin/import/students', methods=['GET', 'POST'])
@crud_required('bulk_import', 'create')
def import_students():
    sections = Section.query.order_by(Section.name).all()
    if request.method == 'GET':
        return render_template('admin/import_users.html', title='Import Students', kind='students',
                               sections=sections)
    file = request.files.get('file')
    if not file or not file.filename:
        flash('Please choose a CSV or Excel file.', 'danger')
        return redirect(url_for('import_students'))
    if not _allowed_upload(file.filename):
        flash('Only CSV and Excel (.xlsx) files are allowed.', 'danger')
        return redirect(url_for('import_students'))
    legacy = request.form.get('legacy') == 'on'
    section_id = None if legacy else request.form.get('section_id', type=int)
    if not legacy and (not section_id or not db.session.get(Section, section_id)):
        flash('Select the section to import into.', 'danger')
        return redirect(url_for('import_students'))
    delivery = request.form.get('delivery', 'none')

    validation = bulk_import.validate_students_file(file, section_id,
                                                    max_rows=app.config.get('MAX_BULK_IMPORT_ROWS', 1000))
    result = None
    if validation.valid_records:
        result = bulk_import.create_students(validation.valid_records, section_id,
                                             app.config.get('GENERATED_PASSWORD_LENGTH', 10))
        _audit('student_import', details=f"created={result.success_count},skipped={result.skipped_count},"
                                          f"invalid={validation.error_count}")
        flash(f'Imported students: {result.success_count} created, {result.skipped_count} skipped, '
              f'{validation.error_count} invalid row(s).', 'success')
        download = _deliver_credentials(result, delivery, 'students')
        if download is not None:
            return download
    else:
        flash('No valid rows found in the file.', 'warning')
    return render_template('admin/import_users.html', title='Import Students', kind='students',
                           sections=sections, validation=validation, result=result)

@app.route('/admin/import/teachers', methods=['GET', 'POST'])
@crud_required('bulk_import', 'create')
def import_teachers():
    if request.method == 'GET':
        return render_template('admin/import_users.html', title='Import Teachers', kind='teachers')
    file = request.files.get('file')
    if not file or not file.filename:
        flash('Please choose a CSV or Excel file.', 'danger')
        return redirect(url_for('import_teachers'))
    if not _allowed_upload(file.filename):
        flash('Only CSV and Excel (.xlsx) files are allowed.', 'danger')
        return redirect(url_for('import_teachers'))
    delivery = request.form.get('delivery', 'none')
    validation = bulk_import.validate_teachers_file(file, max_rows=app.config.get('MAX_BULK_IMPORT_ROWS', 1000))
    result = None
    if validation.valid_records:
        result = bulk_import.create_teachers(validation.valid_records,
                                             app.config.get('GENERATED_PASSWORD_LENGTH', 10))
        _audit('teacher_import', details=f"created={result.success_count},skipped={result.skipped_count},"
                                          f"invalid={validation.error_count}")
        flash(f'Imported teachers: {result.success_count} created, {result.skipped_count} skipped, '
              f'{validation.error_count} invalid row(s).', 'success')
        download = _deliver_credentials(result, delivery, 'teachers')
        if download is not None:
            return download
    else:
        flash('No valid rows found in the file.', 'warning')
    return render_template('admin/import_users.html', title='Import Teachers', kind='teachers',
                           validation=validation, result=result)

@app.route('/admin/import/template/<kind>')
@crud_required('bulk_import', 'read')
def import_template(kind):
    templates = {
        'students': bulk_import.STUDENT_CSV_TEMPLATE,
        'students_legacy': bulk_import.LEGACY_STUDENT_CSV_TEMPLATE,
        'teachers': bulk_import.TEACHER_CSV_TEMPLATE,
        'badges': bulk_import.BADGES_HEADER + "\nBSCS\nBSSE\n",
        'sections': bulk_import.SECTIONS_HEADER + "\nBSCS,1,2024-2028,A\n",
    }
    if kind not in templates:
        return handle_404(None)
    return Response(
        templates[kind],
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{kind}_template.csv"'}
    )

# --- Admin: extension requests ---

@app.route('/admin/extension-requests')
@crud_required('extension_request', 'update')
def admin_extension_requests():
    extension_requests.expire_stale_requests(valid_hours=app.config.get('EXTENSION_VALID_HOURS', 24))
    status = request.args.get('status', '').strip()
    q = AttendanceExtensionRequest.query
    if status:
        q = q.filter(AttendanceExtensionRequest.status == status)
    items = q.order_by(AttendanceExtensionRequest.requested_at.desc()).all()
    counts = {s: AttendanceExtensionRequest.query.filter_by(status=s).count()
              for s in ('Pending', 'Approved', 'Rejected', 'Expired')}
    return render_template('admin/extension_requests.html', title='Extension Requests', requests=items,
                           counts=counts, status=status, now=datetime.now(),
                           valid_hours=app.config.get('EXTENSION_VALID_HOURS', 24))

@app.route('/admin/extension-requests/<int:request_id>/approve', methods=['POST'])
@crud_required('extension_request', 'update')
def approve_extension_request(request_id):
    try:
        req = extension_requests.approve_request(request_id, current_user(), request.form.get('admin_notes'),
                                                 valid_hours=app.config.get('EXTENSION_VALID_HOURS', 24))
    except ValueError as e:
        flash(str(e), 'danger')
        return redirect(url_for('admin_extension_requests'))
    except Exception as e:
        db.session.rollback()
        logger.exception('Error approving extension request')
        flash(f'Error approving extension request: {str(e)}', 'danger')
        return redirect(url_for('admin_extension_requests'))
    _audit('extension_approve', target=str(req.id))
    flash(f'Extension request approved! Attendance marking extended until {req.extends_until:%b %d, %Y %I:%M %p}.',
          'success')
    return redirect(url_for('admin_extension_requests'))

@app.route('/admin/extension-requests/<int:request_id>/reject', methods=['POST'])
@crud_required('extension_request', 'update')
def reject_extension_request(request_id):
    try:
        req = extension_requests.reject_request(request_id, current_user(), request.form.get('admin_notes'))
    except ValueError as e:
        flash(str(e), 'danger')
        return redirect(url_for('admin_extension_requests'))
    except Exception as e:
        db.session.rollback()
        logger.exception('Error rejecting extension request')
        flash(f'Error rejecting extension request: {str(e)}', 'danger')
        return redirect(url_for('admin_extension_requests'))
    _audit('extension_reject', target=str(req.id))
    flash('Extension request rejected.', 'info')
    return redirect(url_for('admin_extension_requests'))

# --- Admin: reports ---

REPORTS = {
    'student_attendance': 'Student Attendance',
    'defaulters': 'Defaulters',
    'course_attendance': 'Course Attendance',
    'section_comparison': 'Section Comparison',
    'trends': 'Attendance Trends',
    'teacher_stats': 'Teacher Marking Statistics',
    'late_marking': 'Late Marking',
}

def _build_report(key, args):
    """Return (rows, summary, start, end) for one admin report."""
    section_id = args.get('section_id', type=int)
    badge_id = args.get('badge_id', type=int)
    start, end = _date_range(args, default_days=90 if key == 'trends' else 30)
    summary = None
    if key == 'student_attendance':
        rows = reports.student_attendance_report(start, end, section_id, badge_id)
    elif key == 'defaulters':
        threshold = args.get('threshold', app.config.get('DEFAULTER_THRESHOLD', 75), type=float)
        rows = reports.defaulters_report(start, end, threshold, section_id, badge_id)
        summary = {'threshold': threshold, 'defaulters': len(rows)}
    elif key == 'course_attendance':
        rows = reports.course_attendance_report(start, end, args.get('course_id', type=int), section_id)
    elif key == 'section_comparison':
        rows = reports.section_comparison_report(start, end, badge_id)
    elif key == 'trends':
        view = args.get('view', 'weekly')
        rows = reports.attendance_trends(start, end, 'monthly' if view == 'monthly' else 'weekly')
    elif key == 'teacher_stats':
        rows = reports.teacher_stats_report()
        summary = reports.teacher_stats_summary(rows)
    else:
        rows = reports.late_marking_report(start, end)
    return rows, summary, start, end

@app.route('/admin/reports')
@crud_required('report', 'read')
def admin_reports():
    if session.get('role') != ROLE_ADMIN:
        return redirect(url_for('teacher_reports'))
    return render_template('admin/reports.html', title='Reports', reports=REPORTS)

@app.route('/admin/reports/<key>')
@roles_required(ROLE_ADMIN)
def admin_report(key):
    if key not in REPORTS:
        return handle_404(None)
    rows, summary, start, end = _build_report(key, request.args)
    fmt = request.args.get('format', '').lower()
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    if fmt == 'csv':
        return exports.csv_response(key, rows, f'{key}_{stamp}.csv')
    if fmt == 'xlsx':
        return exports.xlsx_response(key, rows, f'{key}_{stamp}.xlsx', REPORTS[key])
    return render_template('admin/report_table.html', title=REPORTS[key], report_key=key,
                           columns=exports.REPORT_COLUMNS[key], rows=rows, summary=summary,
                           start_date=start, end_date=end,
                           sections=Section.query.order_by(Section.name).all(),
                           badges=Badge.query.order_by(Badge.name).all(),
                           courses=Course.query.order_by(Course.code).all())

@app.route('/admin/reports/student-analytics')
@roles_required(ROLE_ADMIN)
def student_analytics():
    data = reports.student_analytics()
    fmt = request.args.get('format', '').lower()
    if fmt == 'xlsx':
        return exports.xlsx_response('student_analytics', data['defaulters'],
                                     f'student_analytics_{datetime.now():%Y%m%d_%H%M%S}.xlsx', 'Defaulters')
    return render_template('admin/student_analytics.html', title='Student Analytics', data=data,
                           columns=exports.REPORT_COLUMNS['student_analytics'])

# --- Admin: audit ---

def _audit_query(args):
    action = args.get('action', '').strip()
    actor = args.get('actor', '').strip()
    target = args.get('target', '').strip()
    q = AuditLog.query
    if action:
        q = q.filter(AuditLog.action == action)
    if actor:
        q = q.filter(AuditLog.actor_email == actor)
    if target:
        q = q.filter(AuditLog.target == target)
    start = _parse_date(args.get('start_date'))
    end = _parse_date(args.get('end_date'))
    if start:
        q = q.filter(AuditLog.created_at >= datetime.combine(start, datetime.min.time()))
    if end:
        q = q.filter(AuditLog.created_at < datetime.combine(end + timedelta(days=1), datetime.min.time()))
    return q.order_by(AuditLog.created_at.desc())

@app.route('/admin/audit')
@crud_required('audit', 'read')
def admin_audit():
    page = request.args.get('page', 1, type=int)
    pagination = _audit_query(request.args).paginate(page=page, per_page=20)
    return render_template('admin/audit.html', title='Audit Logs', logs=pagination.items,
                           pagination=pagination, args=request.args)

@app.route('/admin/audit/export')
@crud_required('audit', 'read')
def admin_audit_export():
    logs = _audit_query(request.args).all()
    buf = StringIO()
    writer = csv.writer(buf)
    writer.writerow(['created_at', 'action', 'actor_email', 'actor_role', 'target', 'details'])
    for l in logs:
        writer.writerow([
            l.created_at,
            l.action or '',
            l.actor_email or '',
            l.actor_role or '',
            l.target or '',
            (l.details or '').replace('\n', ' '),
        ])
    csv_data = buf.getvalue()
    buf.close()
    return Response(
        csv_data,
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename="audit_logs.csv"'}
    )

@app.route('/admin/test-email', methods=['GET', 'POST'])
@roles_required(ROLE_ADMIN)
def admin_test_email():
    if request.method == 'POST':
        to_email = request.form.get('email', '').strip().lower()
        if not bulk_import.is_valid_email(to_email):
            flash('A valid email is required.', 'danger')
        elif mailer.send_email(to_email, 'Test email from University Attendance System',
                               '<p>Your SMTP settings are working.</p>'):
            flash(f'Test email sent to {to_email}.', 'success')
        else:
            flash('Test email failed. Check the mail settings and the server log.', 'danger')
        return redirect(url_for('admin_test_email'))
    return render_template('admin/test_email.html', title='Test Email')

# --- Teacher portal ---

def _teacher_or_redirect():
    teacher = current_teacher()
    if not teacher:
        flash('No teacher profile is linked to this account.', 'danger')
    return teacher

def _teacher_schedule(teacher, now, days_back=7, days_ahead=7):
    """Lectures and projected timetable slots of a teacher around ``now``."""
    today = now.date()
    start, end = today - timedelta(days=days_back), today + timedelta(days=days_ahead)
    holidays = scheduling.holiday_dates(start, end)
    config = _window_config()
    items = []
    seen = set()
    rules = (TimetableRule.query.join(TeacherCourse)
             .filter(TeacherCourse.teacher_id == teacher.id).all())
    for rule in rules:
        for d in scheduling.daterange(start, end):
            if d in holidays or not scheduling.rule_runs_on(rule, d):
                continue
            lecture = scheduling.find_lecture_on(rule, d)
            if lecture:
                seen.add(lecture.id)
                state = window_for_lecture(lecture, now, config)
                items.append({'rule': rule, 'lecture': lecture, 'date': d, 'start': lecture.start_datetime,
                              'end': lecture.end_datetime, 'state': state,
                              'marked': len(lecture.attendance_records) > 0})
            else:
                lecture_start, lecture_end = scheduling.lecture_times(rule, d)
                state = evaluate_window(lecture_start, lecture_end, now, False,
                                        mark_window=config['ATTENDANCE_MARK_WINDOW_MINUTES'],
                                        edit_window=config['ATTENDANCE_EDIT_WINDOW_MINUTES'])
                items.append({'rule': rule, 'lecture': None, 'date': d, 'start': lecture_start,
                              'end': lecture_end, 'state': state, 'marked': False})
    extra = (reports.lectures_query(start, end).filter(TeacherCourse.teacher_id == teacher.id).all())
    for lecture in extra:
        if lecture.id in seen:
            continue
        items.append({'rule': lecture.timetable_rule, 'lecture': lecture, 'date': lecture.start_datetime.date(),
                      'start': lecture.start_datetime, 'end': lecture.end_datetime,
                      'state': window_for_lecture(lecture, now, config),
                      'marked': len(lecture.attendance_records) > 0})
    items.sort(key=lambda i: i['start'])
    return items

@app.route('/teacher/dashboard')
@roles_required(ROLE_TEACHER)
def teacher_dashboard():
    teacher = _teacher_or_redirect()
    if not teacher:
        return redirect(url_for('logout'))
    now = datetime.now()
    schedule = _teacher_schedule(teacher, now, days_back=0, days_ahead=0)
    courses = reports.teacher_course_summary(teacher, now)
    pending = AttendanceExtensionRequest.query.filter_by(teacher_id=teacher.id, status='Pending').count()
    return render_template('teacher/dashboard.html', title='Teacher Dashboard', teacher=teacher,
                           today_lectures=schedule, courses=courses, pending_requests=pending, now=now)

@app.route('/teacher/attendance')
@roles_required(ROLE_TEACHER)
def teacher_attendance():
    teacher = _teacher_or_redirect()
    if not teacher:
        return redirect(url_for('logout'))
    now = datetime.now()
    items = _teacher_schedule(teacher, now)
    today = now.date()
    return render_template('teacher/attendance.html', title='Attendance',
                           today_lectures=[i for i in items if i['date'] == today],
                           upcoming=[i for i in items if i['date'] > today][:10],
                           recent=[i for i in reversed(items) if i['date'] < today],
                           now=now)

@app.route('/teacher/attendance/open/<int:rule_id>/<lecture_date>')
@roles_required(ROLE_TEACHER)
def open_lecture(rule_id, lecture_date):
    teacher = _teacher_or_redirect()
    rule = db.session.get(TimetableRule, rule_id)
    d = _parse_date(lecture_date)
    if not teacher or not rule or rule.teacher_course.teacher_id != teacher.id or not d:
        flash('Lecture not found.', 'danger')
        return redirect(url_for('teacher_attendance'))
    if not scheduling.rule_runs_on(rule, d) or scheduling.is_holiday(d):
        flash('There is no lecture for this rule on that date.', 'warning')
        return redirect(url_for('teacher_attendance'))
    try:
        lecture = scheduling.find_or_create_lecture(rule, d)
    except ValueError as e:
        flash(str(e), 'danger')
        return redirect(url_for('teacher_attendance'))
    return redirect(url_for('mark_attendance', lecture_id=lecture.id))

@app.route('/teacher/attendance/<int:lecture_id>/mark', methods=['GET', 'POST'])
@crud_required('attendance', 'create')
def mark_attendance(lecture_id):
    teacher = _teacher_or_redirect()
    lecture = db.session.get(Lecture, lecture_id)
    if not teacher or not lecture or lecture.teacher_course.teacher_id != teacher.id:
        flash('Lecture not found.', 'danger')
        return redirect(url_for('teacher_attendance'))
    tc = lecture.teacher_course
    students = (Student.query.join(User).filter(Student.section_id == tc.section_id)
                .order_by(Student.roll_no).all())
    existing = {r.student_id: r for r in lecture.attendance_records}
    now = datetime.now()
    state = window_for_lecture(lecture, now, _window_config())

    if request.method == 'POST':
        if not state.allows_write or (not existing and not state.can_mark):
            flash(state.message, 'danger')
            return redirect(url_for('mark_attendance', lecture_id=lecture.id))
        counts = {'Present': 0, 'Absent': 0, 'Late': 0, 'Leave': 0, 'Excused': 0}
        try:
            for student in students:
                status = request.form.get(f'status_{student.id}', 'Absent')
                if status not in ATTENDANCE_STATUSES:
                    status = 'Absent'
                counts[status] += 1
                record = existing.get(student.id)
                if record:
                    record.status = status
                else:
                    db.session.add(AttendanceRecord(lecture_id=lecture.id, student_id=student.id,
                                                    status=status, marked_at=now))
            lecture.status = 'Completed'
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            flash('Attendance was saved by another request. Please reload and try again.', 'warning')
            return redirect(url_for('mark_attendance', lecture_id=lecture.id))
        except Exception as e:
            db.session.rollback()
            logger.exception('Failed to save attendance')
            flash(f'Failed to save attendance: {str(e)}', 'danger')
            return redirect(url_for('mark_attendance', lecture_id=lecture.id))
        _audit('attendance_mark', target=str(lecture.id),
               details=f"present={counts['Present']},absent={counts['Absent']},edit={bool(existing)}")
        flash(f"Attendance marked successfully! Present: {counts['Present']}, Absent: {counts['Absent']}, "
              f"Excused: {counts['Excused'] + counts['Leave']}", 'success')
        return redirect(url_for('teacher_attendance'))

    return render_template('teacher/mark.html', title='Mark Attendance', lecture=lecture, students=students,
                           existing=existing, state=state, statuses=ATTENDANCE_STATUSES)

@app.route('/teacher/requests', methods=['GET', 'POST'])
@crud_required('extension_request', 'read')
def teacher_requests():
    teacher = _teacher_or_redirect()
    if not teacher:
        return redirect(url_for('index'))
    cfg = dict(lookback_days=app.config.get('EXTENSION_LOOKBACK_DAYS', 7),
               mark_window=app.config.get('ATTENDANCE_MARK_WINDOW_MINUTES', 10),
               edit_window=app.config.get('ATTENDANCE_EDIT_WINDOW_MINUTES', 20))
    if request.method == 'POST':
        try:
            extension_requests.create_request(teacher, request.form.get('lecture_id', type=int),
                                              request.form.get('request_type', ''),
                                              request.form.get('reason', ''), **cfg)
            _audit('extension_request', details=f"lecture={request.form.get('lecture_id')}")
            flash('Extension request submitted. An admin will review it.', 'success')
        except ValueError as e:
            flash(str(e), 'danger')
        return redirect(url_for('teacher_requests'))
    now = datetime.now()
    mine = (AttendanceExtensionRequest.query.filter_by(teacher_id=teacher.id)
            .order_by(AttendanceExtensionRequest.requested_at.desc()).all())
    return render_template('teacher/requests.html', title='Extension Requests', requests=mine,
                           missed=extension_requests.eligible_lectures(teacher, 'Missed', now, **cfg),
                           editable=extension_requests.eligible_lectures(teacher, 'Edit', now, **cfg))

@app.route('/teacher/special-sessions', methods=['GET', 'POST'])
@crud_required('lecture', 'create')
def special_sessions():
    teacher = _teacher_or_redirect()
    if not teacher:
        return redirect(url_for('index'))
    rules = TimetableRule.query.join(TeacherCourse).filter(TeacherCourse.teacher_id == teacher.id).all()
    if request.method == 'POST':
        rule = db.session.get(TimetableRule, request.form.get('timetable_rule_id', type=int) or 0)
        session_date = _parse_date(request.form.get('date'))
        start_time = _parse_time(request.form.get('start_time'))
        end_time = _parse_time(request.form.get('end_time'))
        lecture_type = request.form.get('lecture_type', 'Extra')
        description = request.form.get('description', '').strip() or None
        error = None
        if not rule or rule not in rules:
            error = 'Select one of your timetable rules.'
        elif not session_date or not start_time or not end_time:
            error = 'Date, start and end time are required.'
        elif lecture_type not in LECTURE_TYPES or lecture_type == 'Regular':
            error = 'Select a special session type.'
        if not error:
            start_dt = datetime.combine(session_date, start_time)
            end_dt = datetime.combine(session_date, end_time)
            if end_dt <= start_dt:
                error = 'End time must be after start time.'
            elif not scheduling.lecture_within_rule(rule, start_dt):
                error = "Session date must fall within the timetable rule's active dates."
            elif scheduling.is_holiday(session_date):
                error = f'Cannot schedule a session on holiday {session_date.isoformat()}.'
        if error:
            flash(error, 'danger')
            return redirect(url_for('special_sessions'))
        db.session.add(Lecture(timetable_rule_id=rule.id, start_datetime=start_dt, end_datetime=end_dt,
                               lecture_type=lecture_type, created_by_teacher_id=teacher.id,
                               description=description))
        db.session.commit()
        _audit('special_session_create', details=f"rule={rule.id},type={lecture_type},start={start_dt.isoformat()}")
        flash(f'{lecture_type} session scheduled.', 'success')
        return redirect(url_for('special_sessions'))
    sessions_list = (Lecture.query.filter_by(created_by_teacher_id=teacher.id)
                     .order_by(Lecture.start_datetime.desc()).all())
    return render_template('teacher/special_sessions.html', title='Special Sessions', sessions=sessions_list,
                           rules=rules, lecture_types=[t for t in LECTURE_TYPES if t != 'Regular'])

@app.route('/teacher/special-sessions/<int:lecture_id>/delete', methods=['POST'])
@crud_required('lecture', 'delete')
def delete_special_session(lecture_id):
    teacher = _teacher_or_redirect()
    lecture = db.session.get(Lecture, lecture_id)
    if not teacher or not lecture or lecture.created_by_teacher_id != teacher.id:
        flash('Session not found.', 'danger')
    elif lecture.attendance_records:
        flash('Cannot delete a session that already has attendance.', 'warning')
    else:
        db.session.delete(lecture)
        db.session.commit()
        flash('Session deleted.', 'success')
    return redirect(url_for('special_sessions'))

@app.route('/teacher/reports')
@crud_required('report', 'read')
def teacher_reports():
    teacher = _teacher_or_redirect()
    if not teacher:
        return redirect(url_for('index'))
    courses = reports.teacher_course_summary(teacher)
    tc_id = request.args.get('tc', type=int)
    selected = None
    students = []
    if tc_id:
        selected = TeacherCourse.query.filter_by(id=tc_id, teacher_id=teacher.id).first()
        if selected is None:
            flash('Course not found.', 'danger')
            return redirect(url_for('teacher_reports'))
        students = reports.teacher_course_students(selected)
        if request.args.get('format') == 'csv':
            return exports.csv_response('teacher_course_students', students,
                                        f'{selected.course.code}_{selected.section.name}_attendance.csv')
    return render_template('teacher/reports.html', title='My Reports', courses=courses, selected=selected,
                           students=students, columns=exports.REPORT_COLUMNS['teacher_course_students'])

# --- Student portal ---

@app.route('/student/dashboard')
@roles_required(ROLE_STUDENT)
def student_dashboard():
    student = current_student()
    if not student:
        flash('No student profile is linked to this account.', 'danger')
        return redirect(url_for('logout'))
    rows, overall = reports.student_course_breakdown(student)
    return render_template('student/dashboard.html', title='Student Dashboard', student=student,
                           courses=rows, overall=overall, overall_status=reports.student_status(overall))

@app.route('/student/attendance')
@roles_required(ROLE_STUDENT)
def student_attendance():
    student = current_student()
    if not student:
        return redirect(url_for('logout'))
    return render_template('student/attendance.html', title='My Attendance',
                           records=reports.student_history(student, limit=200))

@app.route('/student/timetable')
@crud_required('timetable', 'read')
def student_timetable():
    student = current_student()
    if not student:
        flash('No student profile is linked to this account.', 'danger')
        return redirect(url_for('index'))
    today = date.today()
    rules = (TimetableRule.query.join(TeacherCourse)
             .filter(TeacherCourse.section_id == student.section_id,
                     TimetableRule.start_date <= today, TimetableRule.end_date >= today)
             .order_by(TimetableRule.start_time).all())
    by_day = {d: [r for r in rules if d.lower() in {x[:3].lower() for x in r.day_list}]
              for d in scheduling.DAY_ABBREVIATIONS}
    return render_template('student/timetable.html', title='My Timetable', by_day=by_day,
                           holidays=Holiday.query.filter(Holiday.date >= today).order_by(Holiday.date).limit(10).all())

# --- Health & errors ---

@app.route("/healthz")
def healthz():
    try:
        return jsonify({"status": "ok",
                        "students": Student.query.count(),
                        "teachers": Teacher.query.count(),
                        "lectures": Lecture.query.count()}), 200
    except Exception as e:
        logger.exception("Health check failed")
        return jsonify({"status": "error", "message": str(e)}), 500

@app.errorhandler(404)
def handle_404(error):
    return "<h1>404 Not Found</h1>", 404

@app.errorhandler(500)
def handle_500(error):
    logger.exception("Unhandled exception")
    return "<h1>500 Internal Server Error</h1>", 500
