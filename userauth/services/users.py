"""
Provides access to the user store.

User accounts live in a relational database, reached through
:mod:`flask_sqlalchemy`. The password hash is a deferred column: it is never
loaded by ordinary queries, and only :func:`get_with_password` returns it.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Generator, Optional, Tuple

from flask_sqlalchemy import SQLAlchemy
from pytz import UTC
from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import deferred, undefer
from werkzeug.local import LocalProxy

from .. import domain, logging
from . import hasher, tokens
from .exceptions import UserExists, NoSuchUser

logger = logging.getLogger(__name__)

db: SQLAlchemy = SQLAlchemy()

_EXISTS = 'A user with that username or email already exists'


def _now() -> datetime:
    return datetime.now(tz=UTC)


class DBUser(db.Model):
    """Model for user accounts."""

    __tablename__ = 'users'

    user_id = Column(String(36), primary_key=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = deferred(Column(String(255), nullable=False))
    """Never loaded unless explicitly asked for."""
    role = Column(String(20), nullable=False, default=domain.Roles.DEFAULT)
    verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _to_domain(db_user: DBUser) -> domain.User:
    return domain.User(
        user_id=db_user.user_id,
        username=db_user.username,
        email=db_user.email,
        role=db_user.role,
        verified=bool(db_user.verified),
        created_at=_utc(db_user.created_at),
        updated_at=_utc(db_user.updated_at)
    )


@contextmanager
def transaction() -> Generator:
    """Context manager for database transaction."""
    try:
        yield db.session
        # The caller may have explicitly committed already, in order to
        # implement exception handling logic. We only want to commit here if
        # there is anything remaining that is not flushed.
        if db.session.new or db.session.dirty or db.session.deleted:
            db.session.commit()
    except Exception as e:
        logger.error('Commit failed, rolling back: %s', str(e))
        db.session.rollback()
        raise


def init_app(app: Optional[LocalProxy]) -> None:
    """Set configuration defaults and attach session to the application."""
    db.init_app(app)


def create_all() -> None:
    """Create all tables in the database."""
    db.create_all()


def drop_all() -> None:
    """Drop all tables in the database."""
    db.drop_all()


def normalize_email(email: str) -> str:
    """Addresses are stored and compared trimmed and lower-cased."""
    return email.strip().lower()


def _get_by(**criteria: str) -> Optional[DBUser]:
    try:
        db_user: Optional[DBUser] = db.session.query(DBUser) \
            .filter_by(**criteria) \
            .first()
    except SQLAlchemyError as e:
        raise IOError(f'Could not query database: {e}') from e
    return db_user


def email_exists(email: str) -> bool:
    """Determine whether a user with this e-mail address already exists."""
    return _get_by(email=normalize_email(email)) is not None


def username_exists(username: str) -> bool:
    """Determine whether a user with this username already exists."""
    return _get_by(username=username) is not None


def create(username: str, email: str, password: str,
           role: str = domain.Roles.DEFAULT) -> domain.User:
    """
    Create a new, unverified user.

    Parameters
    ----------
    username : str
    email : str
        Stored trimmed and lower-cased.
    password : str
        Plaintext; only its hash is stored.
    role : str
        One of :attr:`.domain.Roles.ALL`.

    Returns
    -------
    :class:`.domain.User`

    Raises
    ------
    :class:`.UserExists`
        When the username or e-mail address is already in use.
    IOError
        When there is a problem querying the database.

    """
    if role not in domain.Roles.ALL:
        raise ValueError(f'Unknown role: {role}')
    email = normalize_email(email)
    if username_exists(username) or email_exists(email):
        raise UserExists(_EXISTS)
    now = _now()
    db_user = DBUser(
        user_id=str(uuid.uuid4()),
        username=username,
        email=email,
        password_hash=hasher.hash_secret(password),
        role=role,
        verified=False,
        created_at=now,
        updated_at=now
    )
    try:
        with transaction() as session:
            session.add(db_user)
            session.commit()
    except IntegrityError as e:
        # Lost a race with a concurrent registration.
        raise UserExists(_EXISTS) from e
    except SQLAlchemyError as e:
        raise IOError(f'Could not create user: {e}') from e
    logger.info('Created user %s', db_user.user_id)
    return _to_domain(db_user)


def get_by_id(user_id: str) -> Optional[domain.User]:
    """Get a user by ID, without the password hash."""
    db_user = _get_by(user_id=user_id)
    return _to_domain(db_user) if db_user is not None else None


def get_by_email(email: str) -> Optional[domain.User]:
    """Get a user by e-mail address, without the password hash."""
    db_user = _get_by(email=normalize_email(email))
    return _to_domain(db_user) if db_user is not None else None


def get_by_username(username: str) -> Optional[domain.User]:
    """Get a user by username, without the password hash."""
    db_user = _get_by(username=username)
    return _to_domain(db_user) if db_user is not None else None


def get_with_password(email: str) -> Optional[Tuple[domain.User, str]]:
    """
    Get a user and their password hash, for authentication only.

    Returns
    -------
    tuple or None
        The :class:`.domain.User` and the stored password hash.

    """
    try:
        db_user: Optional[DBUser] = db.session.query(DBUser) \
            .options(undefer(DBUser.password_hash)) \
            .filter(DBUser.email == normalize_email(email)) \
            .first()
    except SQLAlchemyError as e:
        raise IOError(f'Could not query database: {e}') from e
    if db_user is None:
        return None
    return _to_domain(db_user), db_user.password_hash


def mark_verified(user_id: str) -> domain.User:
    """
    Flag a user as having completed OTP verification.

    Raises
    ------
    :class:`.NoSuchUser`
    IOError

    """
    db_user = _get_by(user_id=user_id)
    if db_user is None:
        raise NoSuchUser(f'No such user: {user_id}')
    try:
        with transaction():
            db_user.verified = True
            db_user.updated_at = _now()
    except SQLAlchemyError as e:
        raise IOError(f'Could not update user: {e}') from e
    return _to_domain(db_user)


def delete(user_id: str) -> None:
    """Delete a user, along with all of the tokens issued to them."""
    db_user = _get_by(user_id=user_id)
    if db_user is None:
        raise NoSuchUser(f'No such user: {user_id}')
    try:
        with transaction() as session:
            session.delete(db_user)
    except SQLAlchemyError as e:
        raise IOError(f'Could not delete user: {e}') from e
    tokens.delete_all_by_user(user_id)
    logger.info('Deleted user %s', user_id)
