# make_admin.py
# Usage: python make_admin.py <email> [name]
import os
import sys

from sqlalchemy.exc import IntegrityError

from app import create_app
from extensions import db
from models import User


def make_admin(email, name=None):
    app = create_app()
    with app.app_context():
        user = User.query.filter_by(email=email.lower()).first()

        if user:
            print(f"Found user id={user.id}, email={user.email}. Promoting to admin...")
        else:
            password = os.environ.get("ADMIN_PASSWORD")
            if not password:
                raise RuntimeError("No such user; set ADMIN_PASSWORD to create one.")
            print(f"No user with email {email} found, creating one.")
            try:
                user = User(name=name or "Administrator", email=email.lower(), role="user")
                user.set_password(password)
                db.session.add(user)
                db.session.commit()
            except IntegrityError as e:
                db.session.rollback()
                raise RuntimeError("Failed to create admin user.") from e

        user.role = "admin"
        db.session.commit()
        print(f"User (id={user.id}, email={user.email}) is now admin.")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python make_admin.py <email> [name]")
        sys.exit(1)
    make_admin(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else None)
