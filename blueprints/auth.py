import re
from functools import wraps

from flask import Blueprint, jsonify, request, session, g, abort
from flask_login import login_user, logout_user

from extensions import db
from models import User
from logger import app_logger as logger


bp = Blueprint("auth", __name__, url_prefix="/api/auth")

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


def validate_email(email):
    return re.match(EMAIL_PATTERN, email) is not None


def current_user_or_abort():
    """The logged-in user from the session, or a 401."""
    user = getattr(g, "user", None)
    if user is None:
        user_id = session.get("user_id")
        user = db.session.get(User, user_id) if user_id else None
    if not user or not user.is_active:
        abort(401)
    return user


def user_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.user = current_user_or_abort()
        return f(*args, **kwargs)
    return decorated_function


#===========================================================================
#      SIGN UP / LOGIN
#==============================================================================
@bp.route("/signup", methods=["POST"])
def signup():
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"success": False, "message": "Invalid or missing JSON body"}), 400

    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not name or not email or not password:
        return jsonify({"success": False, "message": "All fields are required"}), 400
    if not validate_email(email):
        return jsonify({"success": False, "message": "Invalid email address"}), 400
    if len(password) < 6:
        return jsonify({"success": False, "message": "Password must be at least 6 characters"}), 400
    if User.query.filter_by(email=email).first():
        return jsonify({"success": False, "message": "Email already registered"}), 400

    user = User(name=name, email=email, role="user")
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    session["user_id"] = user.id
    login_user(user)
    logger.info(f"User {user.id} signed up")
    return jsonify({"success": True, "data": user.to_dict()}), 201


@bp.route("/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        logger.warning(f"Failed login for {email}")
        return jsonify({"success": False, "message": "Invalid email or password"}), 401
    if not user.is_active:
        return jsonify({"success": False, "message": "Account is inactive"}), 403

    session["user_id"] = user.id
    login_user(user)
    return jsonify({"success": True, "data": user.to_dict()}), 200


@bp.route("/logout", methods=["POST"])
def logout():
    session.pop("user_id", None)
    logout_user()
    return jsonify({"success": True}), 200


@bp.route("/me", methods=["GET"])
@user_required
def me():
    return jsonify({"success": True, "data": g.user.to_dict()}), 200
