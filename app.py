# filehost — HTTP layer: upload, download, listing and admin endpoints

import mimetypes
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from flask import Flask, abort, jsonify, make_response, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from loguru import logger
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

import naming
from auth import SESSION_COOKIE, SessionManager, require_admin, require_api_key, require_session
from cleanup import ExpirySweeper, human_size, remove_stored_file
from config import Settings
from errors import InvalidTTL, PartialCleanupFailure, StorageIOError
from store import FileRecord, MetadataStore, validate_ttl

DATE_RE = re.compile(r"^\d{8}$")

# stored files would be left behind under the old root
RESTART_ONLY_KEYS = {"storage.images_dir"}


@dataclass
class HostContext:
    store: MetadataStore
    sweeper: ExpirySweeper
    settings: Settings
    sessions: SessionManager
    clock: Callable[[], float] = field(default=None)

    def refresh_settings(self, app_config: dict = None):
        self.settings = Settings.from_store(self.store)
        self.sessions.timeout = self.settings.session_timeout
        self.sweeper.storage_root = self.settings.images_dir
        if app_config is not None:
            app_config["MAX_CONTENT_LENGTH"] = self.settings.max_file_size


# ─────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────
def remote_address() -> str:
    """Client address as reported by the proxy chain. Recorded, never trusted."""
    ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
    return ip.split(",")[0].strip()


def save_upload(f, dest):
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        f.save(dest)
    except FileNotFoundError:
        # a sweep removed the empty date directory between mkdir and save
        dest.parent.mkdir(parents=True, exist_ok=True)
        f.save(dest)


def sanitize_filename(name: str) -> str:
    name = secure_filename(name)
    name = re.sub(r"[^\w.\-]", "_", name)
    return name[:255]


def isoformat(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def record_json(rec: FileRecord) -> dict:
    data = rec.to_dict()
    data["download_url"] = f"/files/{rec.relative_path}"
    data["expires_at_iso"] = isoformat(rec.expires_at)
    return data


def error(status: int, message: str):
    return jsonify({"success": False, "message": message}), status


# ─────────────────────────────────────────────────────────────
# APP
# ─────────────────────────────────────────────────────────────
def create_app(store: MetadataStore, sweeper: ExpirySweeper = None,
               settings: Settings = None, sessions: SessionManager = None) -> Flask:
    settings = settings or Settings.from_store(store)
    sweeper  = sweeper or ExpirySweeper(store, settings.images_dir, clock=store.clock)
    sessions = sessions or SessionManager(settings.session_timeout, clock=store.clock)
    host     = HostContext(store, sweeper, settings, sessions, clock=store.clock)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_file_size
    app.extensions["filehost"] = host

    default_limits = ([f"{settings.rate_limit_per_minute}/minute"]
                      if settings.rate_limit_per_minute > 0 else [])
    limiter = Limiter(get_remote_address, app=app,
                      default_limits=default_limits,
                      storage_uri="memory://")

    @app.before_request
    def check_whitelist():
        allowed = host.settings.ip_whitelist
        peer    = get_remote_address()
        if allowed and peer not in allowed:
            logger.warning(f"Rejected request from {peer} (not whitelisted)")
            return error(403, "Forbidden")

    @app.after_request
    def security_headers(response):
        response.headers["X-Content-Type-Options"]  = "nosniff"
        response.headers["X-Frame-Options"]         = "DENY"
        response.headers["Referrer-Policy"]         = "no-referrer"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; img-src 'self'; media-src 'self'; "
            "style-src 'unsafe-inline'; frame-ancestors 'none'; sandbox"
        )
        response.headers.pop("Server", None)
        return response

    # ─────────────────────────────────────────────────────────
    # UPLOAD / DOWNLOAD
    # ─────────────────────────────────────────────────────────
    @app.route("/upload", methods=["POST"])
    @require_api_key
    def upload():
        s = host.settings
        if "file" not in request.files:
            return error(400, "No file uploaded")

        f = request.files["file"]
        if not f.filename:
            return error(400, "Invalid file name")

        ttl = validate_ttl(request.form.get("ttl") or s.default_ttl, s.max_ttl)
        original_name = sanitize_filename(request.form.get("filename") or f.filename) or "unnamed"

        now  = host.clock()
        rel  = naming.generate_path(original_name, now)
        dest = naming.storage_path(s.images_dir, rel)
        try:
            save_upload(f, dest)
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise StorageIOError(f"failed to save {rel}: {e}") from e

        size = dest.stat().st_size
        if size == 0 or size > s.max_file_size:
            dest.unlink(missing_ok=True)
            return error(400 if size == 0 else 413, "Empty file" if size == 0 else "File too large")

        record = FileRecord.create(rel, original_name, size, ttl,
                                   source_address=remote_address(), now=now, max_ttl=s.max_ttl)
        file_id = store.insert_file(record)
        logger.info(f"File uploaded: {rel} (original: {original_name}, size: {size} bytes, TTL: {ttl}h)")

        return jsonify({
            "success":      True,
            "message":      "File uploaded successfully",
            "id":           file_id,
            "file_path":    rel,
            "download_url": f"/files/{rel}",
            "size":         size,
            "expires_at":   isoformat(record.expires_at),
        })

    def serve_file(relative_path: str):
        record = store.get_file_by_path(relative_path)
        if record is None:
            abort(404)
        if record.expires_at < host.clock():
            try:
                remove_stored_file(store, host.settings.images_dir, relative_path)
            except PartialCleanupFailure as e:
                logger.error(f"Could not remove expired file on access: {e}")
            abort(410)

        try:
            full = naming.storage_path(host.settings.images_dir, relative_path)
        except ValueError:
            abort(403)
        if not full.is_file():
            abort(404)

        mime = mimetypes.guess_type(full.name)[0] or "application/octet-stream"
        logger.info(f"File downloaded: {relative_path} from {remote_address()}")
        return send_file(full, mimetype=mime, download_name=record.original_name)

    @app.route("/files/<path:relative_path>", methods=["GET"])
    def download(relative_path):
        return serve_file(relative_path)

    @app.route("/<date>/<name>", methods=["GET"])
    def direct_download(date, name):
        if not DATE_RE.match(date):
            abort(404)
        return serve_file(f"{date}/{name}")

    @app.route("/files/<path:relative_path>", methods=["DELETE"])
    @require_api_key
    def delete(relative_path):
        freed = remove_stored_file(store, host.settings.images_dir, relative_path)
        if freed is None:
            return error(404, "File not found")
        return jsonify({"success": True, "file_path": relative_path, "freed_bytes": freed})

    # ─────────────────────────────────────────────────────────
    # LISTING (password session)
    # ─────────────────────────────────────────────────────────
    @app.route("/api/login", methods=["POST"])
    @limiter.limit("10 per 5 minutes")
    def login():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return error(400, "Invalid request")

        password = str(data.get("password", ""))
        expected = host.settings.list_password
        if not password or not expected or password != expected:
            logger.warning(f"Failed list login from {remote_address()}")
            return error(401, "Invalid password")

        resp = make_response(jsonify({"success": True}))
        resp.set_cookie(SESSION_COOKIE, host.sessions.issue(),
                        max_age=host.settings.session_timeout,
                        path="/", httponly=True, samesite="Lax")
        logger.info(f"User logged in from {remote_address()}")
        return resp

    @app.route("/api/logout", methods=["POST"])
    def logout():
        host.sessions.revoke(request.cookies.get(SESSION_COOKIE))
        resp = make_response(jsonify({"success": True}))
        resp.delete_cookie(SESSION_COOKIE, path="/")
        return resp

    @app.route("/api/files", methods=["GET"])
    @require_session
    def list_files():
        date = request.args.get("path", "").strip("/")
        if date:
            if not DATE_RE.match(date):
                return error(400, "Invalid directory")
            files, dates = [record_json(r) for r in store.list_by_date_prefix(date)], []
        else:
            files, dates = [], store.list_dates()
        return jsonify({
            "success":      True,
            "current_path": date,
            "files":        files,
            "directories":  dates,
        })

    # ─────────────────────────────────────────────────────────
    # ADMIN (basic auth)
    # ─────────────────────────────────────────────────────────
    @app.route("/api/admin/config", methods=["GET"])
    @require_admin
    def admin_get_config():
        return jsonify({"success": True, "config": store.get_all_config()})

    @app.route("/api/admin/config", methods=["PUT"])
    @require_admin
    def admin_set_config():
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or not data:
            return error(400, "Expected a JSON object of config keys")
        frozen = sorted(set(map(str, data)) & RESTART_ONLY_KEYS)
        if frozen:
            return error(400, f"{', '.join(frozen)} can only be changed with `filehost set` "
                              f"while the server is stopped")
        for key, value in data.items():
            store.set_config(str(key), "" if value is None else str(value))
        host.refresh_settings(app.config)
        logger.info(f"Config updated by admin: {', '.join(sorted(map(str, data)))}")
        return jsonify({"success": True, "config": store.get_all_config()})

    @app.route("/api/admin/stats", methods=["GET"])
    @require_admin
    def admin_stats():
        count, total = store.stats()
        last = host.sweeper.last_result
        return jsonify({
            "success":      True,
            "total_files":  count,
            "total_size":   total,
            "sweeper":      host.sweeper.state.value,
            "last_cleanup": last.to_dict() if last else None,
        })

    @app.route("/api/admin/cleanup", methods=["POST"])
    @require_admin
    def admin_cleanup():
        result = host.sweeper.run_once()
        return jsonify({"success": True, **result.to_dict()})

    @app.route("/health")
    def health():
        count, total = store.stats()
        return jsonify({
            "status": "ok",
            "storage_info": {"total_files": count, "total_size": human_size(total)},
        })

    # ─────────────────────────────────────────────────────────
    # ERROR HANDLERS
    # ─────────────────────────────────────────────────────────
    @app.errorhandler(InvalidTTL)
    def invalid_ttl(e):
        return error(400, str(e))

    @app.errorhandler(StorageIOError)
    def storage_error(e):
        logger.error(f"Storage error: {e}")
        return error(500, "Storage error")

    @app.errorhandler(HTTPException)
    def http_error(e):
        messages = {
            404: "Not found",
            410: "File expired",
            413: f"File too large. Limit: {human_size(host.settings.max_file_size)}",
            429: "Too many requests",
        }
        return error(e.code, messages.get(e.code, e.description or e.name))

    @app.errorhandler(500)
    def server_error(e):
        return error(500, "Internal error")

    return app
