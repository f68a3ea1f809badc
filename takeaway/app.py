import os
import secrets
import shutil
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Optional
from urllib.parse import quote

from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from .access import Allow, authorize_read, resolve_credential
from .auth import TOKEN_MAX_AGE_SECONDS, CredentialService, load_speakers
from .errors import (
    AuthError,
    FileTooLargeError,
    InternalError,
    NotFoundError,
    RangeNotSatisfiableError,
    TakeawayError,
    ValidationError,
)
from .events import EventConfigStore, JsonEventConfigStore
from .logs import configure_logging, get_logger, sanitize_log_value
from .storage import (
    BYTES_PER_MB,
    DATA_DIR,
    LOGS_DIR,
    UPLOADS_DIR,
    CatalogueStore,
    DirectoryCatalogue,
    ensure_directories,
    is_safe_filename,
)
from .streaming import FileStreamer
from .uploads import MAX_UPLOAD_SIZE_BYTES, MAX_UPLOAD_SIZE_MB, UploadPipeline

# Multipart framing on top of the largest accepted file.
FORM_OVERHEAD_BYTES = 1 * BYTES_PER_MB

config_logger = get_logger("takeaway.config")


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        config_logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


LOGIN_RATE_LIMIT_PER_MINUTE = _safe_int_env("TAKEAWAY_LOGIN_RATE_LIMIT_PER_MINUTE", 10)

lifecycle_logger = get_logger("takeaway.lifecycle")
security_logger = get_logger("takeaway.security")

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=os.environ.get("TAKEAWAY_RATE_LIMIT_STORAGE", "memory://"),
)

api = Blueprint("api", __name__, url_prefix="/api")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def login_rate_limit_string() -> str:
    return f"{LOGIN_RATE_LIMIT_PER_MINUTE} per minute"


def _load_secret_key(data_dir: Path) -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = data_dir / ".secret_key"
    try:
        ensure_directories(data_dir)
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            config_logger.warning(
                "Secret key file exists but is empty, regenerating"
            )
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)
        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as secret_file:
            secret_file.write(generated)
            secret_file.flush()
            os.fsync(secret_file.fileno())
        config_logger.warning(
            "Generated new secret key - stored in %s", secret_path
        )
        return generated
    except OSError as error:
        config_logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Tokens will not survive restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


@dataclass
class TakeawayServices:
    events: EventConfigStore
    catalogue: CatalogueStore
    credentials: CredentialService
    streamer: FileStreamer
    uploads: UploadPipeline
    clock: Callable[[], datetime]
    uploads_dir: Path


def _services() -> TakeawayServices:
    return current_app.extensions["takeaway"]


def _bearer_token() -> Optional[str]:
    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def require_speaker(view: Callable):
    """Allow only requests carrying a valid speaker bearer token."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        token = _bearer_token()
        if not token:
            security_logger.warning(
                "speaker_auth_missing endpoint=%s method=%s", request.endpoint, request.method
            )
            raise AuthError("Access token required")
        g.principal = _services().credentials.verify(token)
        return view(*args, **kwargs)

    return wrapped


def require_read_access(view: Callable):
    """Run the attendee access gate: speaker token or shareable link, then the event window."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        services = _services()
        credential = resolve_credential(
            request.args.get("link"), request.headers.get("Authorization")
        )
        decision = authorize_read(
            credential,
            services.events.config,
            services.clock(),
            services.credentials.verify,
        )
        if not isinstance(decision, Allow):
            security_logger.warning(
                "read_access_denied endpoint=%s reason=%s",
                request.endpoint,
                decision.reason.value,
            )
            raise decision.to_error()
        g.access = decision
        return view(*args, **kwargs)

    return wrapped


def _require_safe_filename(filename: str) -> None:
    if not is_safe_filename(filename):
        security_logger.warning(
            "unsafe_filename_rejected filename=%s ip=%s",
            sanitize_log_value(filename),
            request.remote_addr or "unknown",
        )
        raise ValidationError(f"Invalid filename: {filename}" if filename else "Invalid filename")


def _stream_size(stream: BinaryIO) -> int:
    try:
        position = stream.tell()
        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(position)
        return size
    except (AttributeError, OSError, ValueError):
        return request.content_length or 0


def _close_stream_safely(file_storage: FileStorage) -> None:
    stream = getattr(file_storage, "stream", None)
    if stream is None or not hasattr(stream, "close"):
        return
    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed filename=%s error=%s",
            sanitize_log_value(file_storage.filename or "unknown"),
            sanitize_log_value(str(error)),
        )


def _shareable_url(token: str) -> str:
    base = os.environ.get("TAKEAWAY_PUBLIC_BASE_URL") or request.host_url
    return f"{base.rstrip('/')}/attendee.html?link={quote(token)}"


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None and request.form:
        payload = request.form.to_dict()
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@api.route("/auth/login", methods=["POST"])
@limiter.limit(lambda: login_rate_limit_string())
def login():
    payload = request.get_json(silent=True) or request.form.to_dict()
    username = payload.get("username") if isinstance(payload, dict) else None
    password = payload.get("password") if isinstance(payload, dict) else None
    if not isinstance(username, str) or not isinstance(password, str) or not username.strip() or not password:
        raise ValidationError("Username and password are required")

    services = _services()
    token = services.credentials.login(username.strip(), password)
    principal = services.credentials.verify(token)
    return jsonify(
        {
            "success": True,
            "token": token,
            "expiresIn": TOKEN_MAX_AGE_SECONDS,
            "user": principal.to_dict(),
        }
    )


@api.route("/auth/verify", methods=["POST"])
@require_speaker
def verify_token():
    return jsonify({"valid": True, "user": g.principal.to_dict()})


# ---------------------------------------------------------------------------
# Event configuration
# ---------------------------------------------------------------------------


@api.route("/event/status", methods=["GET"])
def event_status():
    services = _services()
    return jsonify(
        {"success": True, "event": services.events.config.public_dict(services.clock())}
    )


@api.route("/event/configure", methods=["POST"])
@require_speaker
def configure_event():
    services = _services()
    now = services.clock()
    config = services.events.update(_json_body(), now)
    lifecycle_logger.info("event_configured principal_id=%s", g.principal.id)
    return jsonify(
        {
            "success": True,
            "message": "Event configuration updated",
            "event": config.public_dict(now),
        }
    )


@api.route("/event/generate-link", methods=["POST"])
@require_speaker
def generate_link():
    services = _services()
    token = services.events.generate_shareable_link(services.clock())
    lifecycle_logger.info("shareable_link_rotated principal_id=%s", g.principal.id)
    return jsonify({"success": True, "token": token, "url": _shareable_url(token)})


@api.route("/event/shareable-link", methods=["GET"])
@require_speaker
def shareable_link():
    token = _services().events.config.shareable_link_token
    if not token:
        raise NotFoundError("No shareable link has been generated")
    return jsonify({"success": True, "token": token, "url": _shareable_url(token)})


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@api.route("/upload", methods=["POST"])
@require_speaker
def upload_file():
    upload = request.files.get("file")
    if not isinstance(upload, FileStorage) or not upload.filename:
        raise ValidationError("No file uploaded")

    services = _services()
    try:
        record = services.uploads.accept(
            upload.stream,
            upload.mimetype,
            upload.filename,
            _stream_size(upload.stream),
            g.principal.id,
            services.clock(),
        )
    finally:
        _close_stream_safely(upload)

    return (
        jsonify(
            {
                "success": True,
                "message": "File uploaded successfully",
                "file": record.to_dict(),
            }
        ),
        201,
    )


@api.route("/files", methods=["GET"])
@require_read_access
def list_files():
    records = _services().catalogue.list_all()
    return jsonify([record.to_dict() for record in records])


@api.route("/files/<filename>", methods=["GET"])
@require_read_access
def serve_file(filename: str):
    _require_safe_filename(filename)
    return _services().streamer.serve(
        filename,
        range_header=request.headers.get("Range"),
        force_download=request.args.get("download") == "true",
    )


@api.route("/files/<filename>/info", methods=["GET"])
@require_read_access
def file_info(filename: str):
    _require_safe_filename(filename)
    catalogue = _services().catalogue
    if catalogue.binary_size(filename) is None:
        raise NotFoundError("File not found")
    return jsonify(catalogue.get(filename).to_dict())


@api.route("/files/bulk-download", methods=["POST"])
@require_read_access
def bulk_download():
    payload = request.get_json(silent=True)
    filenames = payload.get("filenames") if isinstance(payload, dict) else None
    if not isinstance(filenames, list) or not filenames:
        raise ValidationError("Invalid filenames array")
    for filename in filenames:
        if not isinstance(filename, str):
            raise ValidationError("Invalid filenames array")
        _require_safe_filename(filename)

    link_suffix = ""
    if g.access.via_link:
        link_suffix = f"&link={quote(request.args.get('link', ''))}"
    downloads = [
        {
            "filename": filename,
            "url": f"/api/files/{quote(filename)}?download=true{link_suffix}",
        }
        for filename in filenames
    ]
    return jsonify(
        {
            "success": True,
            "downloads": downloads,
            "message": "Use the provided URLs to download individual files",
        }
    )


@api.route("/health", methods=["GET"])
def health_check():
    services = _services()
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        ensure_directories(services.uploads_dir)
        usage = shutil.disk_usage(services.uploads_dir)
        disk_free_gb = usage.free / (1024 ** 3)
        checks["disk_space_gb"] = round(disk_free_gb, 2)
        checks["disk_space_status"] = "warning" if disk_free_gb < 1 else "ok"
    except OSError as error:
        checks["disk_space_gb"] = 0
        checks["disk_space_status"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        check_file = services.uploads_dir / f".health_check_{uuid.uuid4().hex}"
        check_file.write_text("health_check", encoding="utf-8")
        check_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["event_status"] = services.events.get_status(services.clock()).value

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), (200 if healthy else 503)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _register_hooks(app: Flask) -> None:
    @app.before_request
    def add_request_id() -> None:
        """Assign a request identifier for downstream logging."""

        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.after_request
    def log_request_completion(response: Response):
        lifecycle_logger.info(
            "request_completed method=%s path=%s status=%d",
            request.method,
            sanitize_log_value(request.path),
            response.status_code,
        )
        return response

    @app.after_request
    def add_security_headers(response: Response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Attendee pages embed PDFs and videos in frames from the same origin.
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(TakeawayError)
    def handle_takeaway_error(error: TakeawayError):
        if isinstance(error, InternalError):
            lifecycle_logger.error(
                "request_failed code=%s path=%s", error.code, sanitize_log_value(request.path)
            )
        else:
            lifecycle_logger.info(
                "request_rejected code=%s status=%d path=%s",
                error.code,
                error.status_code,
                sanitize_log_value(request.path),
            )
        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        if isinstance(error, RangeNotSatisfiableError):
            response.headers["Content-Range"] = f"bytes */{error.size}"
        return response

    @app.errorhandler(RequestEntityTooLarge)
    def handle_file_too_large(error):
        if request.path.startswith("/api/upload"):
            return handle_takeaway_error(
                FileTooLargeError(f"File too large. Maximum size is {MAX_UPLOAD_SIZE_MB}MB.")
            )
        return jsonify({"error": "Request too large"}), 413

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        lifecycle_logger.exception(
            "unhandled_exception path=%s error=%s",
            sanitize_log_value(request.path),
            sanitize_log_value(str(error)),
        )
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500


def create_app(
    config_overrides: Optional[Dict[str, Any]] = None,
    *,
    event_store: Optional[EventConfigStore] = None,
    catalogue: Optional[CatalogueStore] = None,
    credentials: Optional[CredentialService] = None,
    clock: Callable[[], datetime] = utcnow,
    data_dir: Path = DATA_DIR,
    uploads_dir: Path = UPLOADS_DIR,
    logs_dir: Path = LOGS_DIR,
) -> Flask:
    """Build the Flask application with its stores wired in."""

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_SIZE_BYTES + FORM_OVERHEAD_BYTES
    app.config.update(config_overrides or {})

    if not app.config.get("TESTING"):
        configure_logging(Path(logs_dir))
    if not app.config.get("SECRET_KEY"):
        app.config["SECRET_KEY"] = _load_secret_key(Path(data_dir))

    ensure_directories(Path(data_dir), Path(uploads_dir))

    if event_store is None:
        event_store = JsonEventConfigStore(Path(data_dir) / "event.json")
    event_store.load(clock())

    if catalogue is None:
        catalogue = DirectoryCatalogue(Path(uploads_dir))

    if credentials is None:
        credentials = CredentialService(
            load_speakers(Path(data_dir) / "speakers.json"), app.config["SECRET_KEY"]
        )

    app.extensions["takeaway"] = TakeawayServices(
        events=event_store,
        catalogue=catalogue,
        credentials=credentials,
        streamer=FileStreamer(catalogue),
        uploads=UploadPipeline(catalogue),
        clock=clock,
        uploads_dir=Path(uploads_dir),
    )

    limiter.init_app(app)
    _register_hooks(app)
    _register_error_handlers(app)
    app.register_blueprint(api)

    lifecycle_logger.info(
        "app_started uploads_dir=%s event_status=%s",
        uploads_dir,
        event_store.get_status(clock()).value,
    )
    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", "3001")), debug=False)
