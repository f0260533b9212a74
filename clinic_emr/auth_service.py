from __future__ import annotations

from sqlalchemy import select

from clinic_emr.auth_models import User, UserRole
from clinic_emr.auth_security import hash_password, verify_password
from clinic_emr.db import db_session


def create_user(
    username: str,
    password: str,
    role: UserRole | str = UserRole.RECEPTION,
    first_name: str | None = None,
    last_name: str | None = None,
    email: str | None = None,
    phone_mobile: str | None = None,
) -> str:
    username = username.strip().lower()
    if not username or not password:
        raise ValueError("Username and password are required.")
    role = UserRole(role) if isinstance(role, str) else role

    with db_session() as s:
        exists = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if exists:
            raise ValueError("Username already registered.")

        u = User(
            username=username,
            password_hash=hash_password(password),
            role=role,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone_mobile=phone_mobile,
            is_active=True,
        )
        s.add(u)
        s.flush()
        return u.id


def authenticate(username: str, password: str) -> User | None:
    username = username.strip().lower()
    with db_session() as s:
        u = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            return None
        return u


def get_user_by_id(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)


def list_users_flat(role: UserRole | None = None) -> list[dict]:
    with db_session() as s:
        q = select(User).where(User.is_active.is_(True)).order_by(User.username)
        if role is not None:
            q = q.where(User.role == role)
        return [
            {
                "id": u.id,
                "username": u.username,
                "role": u.role.value,
                "name": u.full_name,
                "email": u.email,
            }
            for u in s.scalars(q)
        ]
