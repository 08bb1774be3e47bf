import logging
import os
import time
import uuid
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from flask import (
    Blueprint,
    Flask,
    Response,
    current_app,
    g,
    has_request_context,
    jsonify,
    make_response,
    request,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from werkzeug.sansio.multipart import (
    Data,
    Epilogue,
    Field,
    File,
    MultipartDecoder,
    NeedData,
)

from .catalog import PartialUploadError, build_catalog, upload
from .config import Settings, load_settings
from .storage import ObjectStore, ObjectStoreError, sanitize_log_value

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
BYTES_PER_MB = 1024 * 1024
STORE_EXTENSION = "imagebucket.store"

CORS_ALLOW_METHODS = "GET, POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type"
CORS_MIMETYPES = {"application/json", "text/plain"}

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging(logs_dir: Path) -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


_base_lifecycle_logger = logging.getLogger("imagebucket.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


class MalformedUploadError(ValueError):
    """Raised when a multipart upload body cannot be decoded."""


@dataclass
class UploadRequest:
    file_name: str
    tags: str
    data: bytes


def parse_multipart(body: bytes, boundary: str) -> Dict[str, bytes]:
    """Split a multipart/form-data *body* into a mapping of part name to bytes.

    Later parts with a repeated name replace earlier ones.
    """

    try:
        decoder = MultipartDecoder(boundary.encode("latin-1"))
    except UnicodeEncodeError as error:
        raise MalformedUploadError("Multipart boundary is not valid") from error

    decoder.receive_data(body)
    decoder.receive_data(None)

    parts: Dict[str, bytes] = {}
    current_name: Optional[str] = None
    chunks = []
    try:
        event = decoder.next_event()
        while not isinstance(event, (Epilogue, NeedData)):
            if isinstance(event, (Field, File)):
                current_name = event.name
                parts[current_name] = b""
                chunks = []
            elif isinstance(event, Data) and current_name is not None:
                chunks.append(event.data)
                if not event.more_data:
                    parts[current_name] = b"".join(chunks)
            event = decoder.next_event()
    except ValueError as error:
        raise MalformedUploadError(f"Unable to parse multipart body: {error}") from error

    if isinstance(event, NeedData):
        raise MalformedUploadError("Multipart body ended unexpectedly")
    return parts


def _decode_text_part(parts: Dict[str, bytes], name: str) -> str:
    try:
        return parts.get(name, b"").decode("utf-8")
    except UnicodeDecodeError as error:
        raise MalformedUploadError(f"Form field '{name}' is not valid UTF-8") from error


def extract_upload(parts: Dict[str, bytes]) -> UploadRequest:
    return UploadRequest(
        file_name=_decode_text_part(parts, "fileName"),
        tags=_decode_text_part(parts, "tags"),
        data=parts.get("file", b""),
    )


limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
bp = Blueprint("imagebucket", __name__)


def _get_store():
    return current_app.extensions[STORE_EXTENSION]


def _plain_text(body: str, status: int) -> Response:
    return Response(body, status=status, mimetype="text/plain")


@bp.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@bp.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.calculate_content_length() or 0,
    )
    return response


@bp.after_app_request
def add_cors_headers(response: Response):
    """Attach cross-origin headers to preflight, JSON and plain-text replies."""

    is_preflight = request.method == "OPTIONS"
    if is_preflight or response.mimetype in CORS_MIMETYPES:
        response.headers["Access-Control-Allow-Origin"] = current_app.config["CORS_ORIGIN"]
        response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
        response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
        response.headers["Access-Control-Allow-Credentials"] = "true"

    if is_preflight:
        response.set_data(b"")
        response.mimetype = "text/plain"
    return response


@bp.after_app_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@bp.app_errorhandler(ObjectStoreError)
def handle_object_store_error(error: ObjectStoreError):
    lifecycle_logger.error(
        "object_store_unavailable operation=%s key=%s",
        error.operation,
        sanitize_log_value(error.file_name),
    )
    payload = {
        "error": "Object storage request failed",
        "operation": error.operation,
    }
    return make_response(jsonify(payload), 502)


@bp.app_errorhandler(PartialUploadError)
def handle_partial_upload(error: PartialUploadError):
    lifecycle_logger.error(
        "upload_partially_applied key=%s", sanitize_log_value(error.file_name)
    )
    payload = {
        "error": "File stored but its tags could not be written",
        "operation": error.operation,
        "fileName": error.file_name,
        "objectWritten": True,
    }
    return make_response(jsonify(payload), 502)


@bp.app_errorhandler(MalformedUploadError)
def handle_malformed_upload(error: MalformedUploadError):
    lifecycle_logger.warning(
        "upload_body_rejected error=%s", sanitize_log_value(str(error))
    )
    return make_response(jsonify({"error": str(error)}), 500)


@bp.app_errorhandler(413)
def handle_file_too_large(error):
    return jsonify({"error": "File too large"}), 413


@bp.app_errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@bp.app_errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    # HTTP errors keep their own status and handlers.
    if isinstance(error, HTTPException):
        return error
    lifecycle_logger.exception(
        "unhandled_error method=%s path=%s",
        request.method,
        sanitize_log_value(request.path),
    )
    return make_response(jsonify({"error": "Internal server error"}), 500)


@bp.route("/contents", methods=["GET"])
def get_bucket_contents():
    term = request.args.get("filter", "")
    result = build_catalog(_get_store(), term)
    if not result.ok:
        lifecycle_logger.warning(
            "contents_failed reason=%s filter=%s",
            type(result.error).__name__,
            sanitize_log_value(term),
        )
        return _plain_text(str(result.error), 500)

    return jsonify({"data": [entry.to_dict() for entry in result.entries]})


@bp.route("/upload", methods=["POST"])
@limiter.limit(lambda: current_app.config["UPLOAD_RATE_LIMIT"])
def upload_file():
    if request.mimetype != "multipart/form-data":
        return _plain_text("Content-Type not multipart/form-data", 400)

    boundary = request.mimetype_params.get("boundary")
    if not boundary:
        return _plain_text(
            "`Content-Type: multipart/form-data` boundary param not provided", 400
        )

    parts = parse_multipart(request.get_data(cache=False), boundary)
    upload_request = extract_upload(parts)
    upload(
        _get_store(),
        upload_request.file_name,
        upload_request.data,
        upload_request.tags,
    )
    lifecycle_logger.info(
        "upload_completed key=%s size=%d tags=%s",
        sanitize_log_value(upload_request.file_name),
        len(upload_request.data),
        sanitize_log_value(upload_request.tags),
    )
    return _plain_text("Image Uploaded", 200)


@bp.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        _get_store().check_bucket()
        checks["bucket"] = "ok"
    except ObjectStoreError as error:
        checks["bucket"] = f"error: {str(error)[:100]}"
        healthy = False

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503

    return jsonify(
        {
            "status": status,
            "timestamp": time.time(),
            "checks": checks,
        }
    ), code


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ObjectStore] = None,
    config: Optional[Dict[str, Any]] = None,
) -> Flask:
    """Build the Flask application.

    *settings* default to :func:`load_settings`, which fails loudly when a
    required variable is missing. *store* defaults to a boto3-backed
    :class:`ObjectStore` for the configured bucket.
    """

    if settings is None:
        settings = load_settings()
    if store is None:
        store = ObjectStore.from_settings(settings)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_size_mb * BYTES_PER_MB
    app.config["CORS_ORIGIN"] = settings.cors_origin
    app.config["UPLOAD_RATE_LIMIT"] = settings.upload_rate_limit_string()
    if config:
        app.config.update(config)
    app.logger.setLevel(numeric_level)

    if settings.logs_dir is not None:
        _configure_file_logging(settings.logs_dir)

    app.extensions[STORE_EXTENSION] = store
    limiter.init_app(app)
    app.register_blueprint(bp)

    lifecycle_logger.info(
        "app_created bucket=%s region=%s cors_origin=%s",
        settings.bucket_name,
        settings.region,
        settings.cors_origin,
    )
    return app
