"""Identity provider interface and per-session state."""

import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, List, Optional

from passlib.context import CryptContext
from pydantic import BaseModel

from student_dashboard.errors import AuthError
from student_dashboard.models import PredictionResult, Role, Session
from student_dashboard.projection import ViewProjector
from student_dashboard.store import ProfileStore, server_timestamp
from student_dashboard.sync import SyncChannel

logger = logging.getLogger(__name__)

# Friendly messages for identity-provider error codes
AUTH_MESSAGES = {
    'user-not-found': 'No user found with this email.',
    'wrong-password': 'Incorrect password.',
    'invalid-login-credentials': 'Invalid email or password.',
    'email-already-in-use': 'Email is already registered.',
    'password-mismatch': 'Passwords do not match',
    'session-expired': 'Please sign in again.',
}

DEMO_ACCOUNTS = {
    'admin@school.edu': {'password': 'admin123', 'role': Role.ADMIN, 'name': 'Admin User'},
    'teacher@school.edu': {'password': 'teacher123', 'role': Role.TEACHER, 'name': 'Teacher User'},
    'student@school.edu': {'password': 'student123', 'role': Role.STUDENT, 'name': 'Student User'},
}
DEMO_INSTITUTION = 'Demo University'

RETRYABLE_DEMO_CODES = {'user-not-found', 'invalid-login-credentials', 'wrong-password'}


class Persistence(str, Enum):
    LOCAL = 'local'
    SESSION = 'session'


class IdentityUser(BaseModel):
    uid: str
    email: str
    display_name: Optional[str] = None


AuthListener = Callable[[Optional[IdentityUser]], None]


def auth_error(code: str) -> AuthError:
    return AuthError(AUTH_MESSAGES.get(code, code), code=code)


class IdentityProvider(ABC):
    """External sign-in service."""

    @abstractmethod
    def sign_in(self, email: str, password: str, persistence: Persistence = Persistence.SESSION) -> IdentityUser:
        ...

    @abstractmethod
    def sign_up(self, email: str, password: str) -> IdentityUser:
        ...

    @abstractmethod
    def sign_out(self, uid: str) -> None:
        ...

    @abstractmethod
    def update_profile(self, uid: str, display_name: str) -> None:
        ...

    @abstractmethod
    def on_auth_state_changed(self, listener: AuthListener) -> Callable[[], None]:
        ...

    @property
    @abstractmethod
    def current_user(self) -> Optional[IdentityUser]:
        ...


class InMemoryIdentityProvider(IdentityProvider):
    """Email/password accounts held in process, hashed with passlib."""

    def __init__(self):
        self._pwd = CryptContext(schemes=['pbkdf2_sha256'], deprecated='auto')
        self._accounts: Dict[str, Dict[str, str]] = {}
        self._users: Dict[str, IdentityUser] = {}
        self._signed_in: Dict[str, Persistence] = {}
        self._current: Optional[str] = None
        self._listeners: List[AuthListener] = []

    def _emit(self, user: Optional[IdentityUser]) -> None:
        for listener in list(self._listeners):
            listener(user)

    def sign_in(self, email: str, password: str, persistence: Persistence = Persistence.SESSION) -> IdentityUser:
        account = self._accounts.get(email.lower())
        if account is None:
            raise auth_error('user-not-found')
        if not self._pwd.verify(password, account['password_hash']):
            raise auth_error('wrong-password')

        user = self._users[account['uid']]
        self._signed_in[user.uid] = persistence
        self._current = user.uid
        self._emit(user)
        return user

    def sign_up(self, email: str, password: str) -> IdentityUser:
        key = email.lower()
        if key in self._accounts:
            raise auth_error('email-already-in-use')

        uid = uuid.uuid4().hex
        self._accounts[key] = {'uid': uid, 'password_hash': self._pwd.hash(password)}
        user = IdentityUser(uid=uid, email=email)
        self._users[uid] = user
        # Creating an account signs it in
        self._signed_in[uid] = Persistence.SESSION
        self._current = uid
        self._emit(user)
        return user

    def sign_out(self, uid: str) -> None:
        if self._signed_in.pop(uid, None) is None:
            return
        if self._current == uid:
            self._current = next(reversed(self._signed_in), None) if self._signed_in else None
        self._emit(None)

    def update_profile(self, uid: str, display_name: str) -> None:
        user = self._users.get(uid)
        if user is not None:
            self._users[uid] = user.model_copy(update={'display_name': display_name})

    def on_auth_state_changed(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def current_user(self) -> Optional[IdentityUser]:
        if self._current is None:
            return None
        return self._users.get(self._current)


def build_session(user: IdentityUser, profile: Optional[dict]) -> Session:
    """
    Create the session from one profile fetch.

    Missing profile fields fall back to explicit defaults: identity display
    name (or 'User'), role student, empty institution.
    """
    profile = profile or {}
    raw_role = profile.get('role') or Role.STUDENT.value
    try:
        role = Role(raw_role)
    except ValueError:
        logger.warning("Unknown role %r for %s; using student", raw_role, user.email)
        role = Role.STUDENT

    return Session(
        id=user.uid,
        email=profile.get('email') or user.email,
        name=profile.get('name') or user.display_name or 'User',
        role=role,
        institution=profile.get('institution') or '',
    )


class ActiveSession:
    """Server-side state for one signed-in browser."""

    def __init__(self, token: str, session: Session):
        self.token = token
        self.session = session
        self.notifications: List[str] = []
        self.projector = ViewProjector(session, notify=self.notifications.append)
        self.current_prediction: Optional[PredictionResult] = None

    def drain_notifications(self) -> List[str]:
        pending = list(self.notifications)
        self.notifications.clear()
        return pending


class SessionManager:
    """
    Signs users in and out and keeps the sync channel running while anyone
    is signed in.
    """

    def __init__(self, identity: IdentityProvider, profiles: ProfileStore, channel: SyncChannel):
        self.identity = identity
        self.profiles = profiles
        self.channel = channel
        self._sessions: Dict[str, ActiveSession] = {}
        self.identity.on_auth_state_changed(self._log_auth_state)

    def _log_auth_state(self, user: Optional[IdentityUser]) -> None:
        if user is not None:
            logger.info("User authenticated: %s", user.email)
        else:
            logger.info("User signed out")

    def _open_session(self, user: IdentityUser) -> ActiveSession:
        session = build_session(user, self.profiles.get(user.uid))
        active = ActiveSession(secrets.token_urlsafe(32), session)
        self._sessions[active.token] = active

        self.channel.add_consumer(active.projector.on_snapshot)
        self.channel.start()
        return active

    def sign_in(self, email: str, password: str, remember_me: bool = False) -> ActiveSession:
        persistence = Persistence.LOCAL if remember_me else Persistence.SESSION
        try:
            user = self.identity.sign_in(email, password, persistence)
        except AuthError as e:
            demo = DEMO_ACCOUNTS.get(email.lower())
            if e.code in RETRYABLE_DEMO_CODES and demo and demo['password'] == password:
                return self._create_demo_account(email.lower(), demo)
            raise

        try:
            self.profiles.update(user.uid, {'lastLogin': server_timestamp()})
        except Exception as e:
            logger.warning("Could not update last login: %s", e)

        return self._open_session(user)

    def _create_demo_account(self, email: str, demo: dict) -> ActiveSession:
        logger.info("Setting up demo %s account %s", demo['role'].value, email)
        user = self.identity.sign_up(email, demo['password'])
        self.profiles.set(user.uid, {
            'name': demo['name'],
            'email': email,
            'role': demo['role'].value,
            'institution': DEMO_INSTITUTION,
            'createdAt': server_timestamp(),
        })
        self.identity.update_profile(user.uid, demo['name'])
        return self._open_session(self.identity.current_user or user)

    def register(
        self,
        full_name: str,
        email: str,
        password: str,
        confirm_password: str,
        role: Role,
        institution: str
    ) -> ActiveSession:
        if password != confirm_password:
            raise auth_error('password-mismatch')

        user = self.identity.sign_up(email, password)
        self.profiles.set(user.uid, {
            'name': full_name,
            'email': email,
            'role': role.value,
            'institution': institution,
            'createdAt': server_timestamp(),
        })
        self.identity.update_profile(user.uid, full_name)
        return self._open_session(self.identity.current_user or user)

    def sign_out(self, token: str) -> None:
        active = self._sessions.pop(token, None)
        if active is None:
            return
        self.channel.remove_consumer(active.projector.on_snapshot)
        self.identity.sign_out(active.session.id)
        if not self._sessions:
            self.channel.stop()

    def get(self, token: Optional[str]) -> ActiveSession:
        active = self._sessions.get(token) if token else None
        if active is None:
            raise auth_error('session-expired')
        return active
