import os
import sys

from attendance_portal import app, db
from attendance_portal.models import User, ROLE_ADMIN
from attendance_portal.security import hash_password, generate_password


if __name__ == "__main__":
    email = (sys.argv[1] if len(sys.argv) > 1 else os.environ.get('ADMIN_EMAIL', 'admin@university.edu')).strip().lower()
    new_pw = generate_password(16)
    with app.app_context():
        user = User.query.filter_by(email=email).first()
        if not user:
            user = User(full_name='System Administrator', email=email, password_hash=hash_password(new_pw),
                        role=ROLE_ADMIN)
            db.session.add(user)
        else:
            user.password_hash = hash_password(new_pw)
            user.is_active = True
        db.session.commit()
    # Print only the password for easy copying
    print(new_pw)
