from typing import Optional

import bcrypt
from sqlalchemy.orm import Session, selectinload

from models import User

SESSION_USER_KEY = "user_id"


class LoginRequired(Exception):
    pass


class AdminRequired(Exception):
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def user_from_session(session_data: dict, db: Session) -> Optional[User]:
    user_id = session_data.get(SESSION_USER_KEY)
    if not user_id:
        return None
    user = db.get(User, int(user_id), options=[selectinload(User.roles)])
    if user is None:
        # stale cookie for a removed user
        session_data.pop(SESSION_USER_KEY, None)
    return user


def login(session_data: dict, user: User) -> None:
    session_data.clear()
    session_data[SESSION_USER_KEY] = user.id


def logout(session_data: dict) -> None:
    session_data.clear()
