import secrets
import threading
import time
from functools import wraps

import jwt
from flask import current_app, jsonify, request

SESSION_COOKIE = "session_token"


class SessionManager:
    """Password-gated sessions for the file listing.

    Tokens are JWTs signed with a key generated at start-up, and each one
    must also be present in the in-memory table, so a restart or a logout
    ends every session.
    """

    def __init__(self, timeout: int, clock=time.time):
        self.timeout   = timeout
        self.clock     = clock
        self._secret   = secrets.token_hex(48)
        self._sessions = {}
        self._lock     = threading.Lock()

    def issue(self) -> str:
        jti = secrets.token_hex(16)
        with self._lock:
            self._purge()
            self._sessions[jti] = self.clock() + self.timeout
        return jwt.encode({"sub": "list", "jti": jti}, self._secret, algorithm="HS256")

    def _claims(self, token):
        try:
            return jwt.decode(token, self._secret, algorithms=["HS256"])
        except jwt.InvalidTokenError:
            return None

    def verify(self, token) -> bool:
        if not token:
            return False
        claims = self._claims(token)
        if not claims:
            return False
        with self._lock:
            expires_at = self._sessions.get(claims.get("jti"))
            if expires_at is None:
                return False
            if self.clock() >= expires_at:
                del self._sessions[claims["jti"]]
                return False
        return True

    def revoke(self, token):
        claims = self._claims(token) if token else None
        if claims:
            with self._lock:
                self._sessions.pop(claims.get("jti"), None)

    def _purge(self):
        now = self.clock()
        for jti in [j for j, exp in self._sessions.items() if now >= exp]:
            del self._sessions[jti]

    def __len__(self):
        with self._lock:
            return len(self._sessions)


# ─────────────────────────────────────────────────────────────
# DECORATORS
# ─────────────────────────────────────────────────────────────
def _host():
    return current_app.extensions["filehost"]


def _same(given, expected) -> bool:
    return bool(given) and bool(expected) and secrets.compare_digest(str(given), str(expected))


def require_api_key(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not _same(request.headers.get("X-API-Key"), _host().settings.api_key):
            return jsonify({"success": False, "message": "Invalid or missing API key"}), 401
        return f(*args, **kwargs)
    return wrapper


def require_admin(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        settings = _host().settings
        creds    = request.authorization
        if (creds is None
                or not _same(creds.username, settings.admin_username)
                or not _same(creds.password, settings.admin_password)):
            resp = jsonify({"success": False, "message": "Unauthorized"})
            resp.status_code = 401
            resp.headers["WWW-Authenticate"] = 'Basic realm="Admin"'
            return resp
        return f(*args, **kwargs)
    return wrapper


def require_session(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        token = request.cookies.get(SESSION_COOKIE)
        if not token:
            return jsonify({"success": False, "message": "Not authenticated"}), 401
        if not _host().sessions.verify(token):
            return jsonify({"success": False, "message": "Session expired"}), 401
        return f(*args, **kwargs)
    return wrapper
