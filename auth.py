import logging
import threading
from typing import Callable, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from errors import NotAuthenticatedError


logger = logging.getLogger(__name__)

SessionListener = Callable[[int, bool], None]

CREDENTIAL_MAX_AGE_SECS = 300


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="owner-session")


def _credential_serializer() -> Optional[URLSafeTimedSerializer]:
    secret = get_settings().auth_secret
    if not secret:
        return None
    return URLSafeTimedSerializer(secret, salt="owner-credential")


def issue_sign_in_credential(owner_id: int) -> str:
    """Short-lived proof of identity, minted by the identity provider."""
    serializer = _credential_serializer()
    if serializer is None:
        raise NotAuthenticatedError("Sign-in is not configured")
    return serializer.dumps({"u": owner_id})


def owner_from_credential(credential: str) -> Optional[int]:
    serializer = _credential_serializer()
    if serializer is None or not credential:
        return None
    try:
        data = serializer.loads(credential, max_age=CREDENTIAL_MAX_AGE_SECS)
    except BadSignature:
        return None
    return _owner_id(data)


def issue_session_token(owner_id: int) -> str:
    return _serializer().dumps({"u": owner_id})


def owner_from_token(token: Optional[str]) -> Optional[int]:
    """Owner id for a valid, unexpired token; ``None`` means no session."""
    if not token:
        return None
    max_age = get_settings().session_max_age_hours * 3600
    try:
        data = _serializer().loads(token, max_age=max_age)
    except BadSignature:
        # SignatureExpired is a subclass
        return None
    return _owner_id(data)


def _owner_id(data: object) -> Optional[int]:
    owner_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(owner_id, int) or owner_id <= 0:
        return None
    return owner_id


class SessionEvents:
    """Fan-out of sign-in/sign-out notifications."""

    def __init__(self) -> None:
        self._listeners: list[SessionListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, owner_id: int, active: bool) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(owner_id, active)

    def sign_in(self, owner_id: int) -> str:
        token = issue_session_token(owner_id)
        logger.info(f"session_started: owner={owner_id}")
        self._emit(owner_id, True)
        return token

    def sign_out(self, owner_id: int) -> None:
        logger.info(f"session_ended: owner={owner_id}")
        self._emit(owner_id, False)
