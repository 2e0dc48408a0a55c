from attendance_portal import app, db, bootstrap_admin
from attendance_portal import models  # noqa: F401

with app.app_context():
    db.create_all()
    admin = bootstrap_admin()
    if admin:
        print(f"Admin account: {admin.email}")
