import atexit
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import ClientDisconnected
from werkzeug.http import parse_options_header
from werkzeug.wsgi import wrap_file

from .access import AccessService, FileDownload
from .config import Settings
from .database import MetadataStore
from .errors import QuickDropError
from .filenames import content_disposition
from .ingest import UploadResult, ingest_upload
from .logs import configure_logging, get_logger, sanitize_log_value
from .reaper import ExpirationReaper
from .storage import ContentStorage

settings = Settings.from_env()
settings.ensure_directories()
APP_LOG_PATH = configure_logging(settings.logs_dir, settings.log_level)

store = MetadataStore(settings.db_path)
store.init_db()
storage = ContentStorage(settings.upload_dir)
storage.cleanup_partial_files()
access = AccessService(store, storage)
reaper = ExpirationReaper(
    store,
    storage,
    interval_minutes=settings.cleanup_interval_minutes,
)

app = Flask(__name__)
app.config["QUICKDROP_SETTINGS"] = settings

lifecycle_logger = get_logger("quickdrop.lifecycle")

if settings.cleanup_enabled:
    reaper.start()
    atexit.register(reaper.stop)


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def build_public_url(identifier: str) -> str:
    return f"{settings.base_url}/api/download/{identifier}"


def _internal_error(error: Exception, message: str):
    """Log *error* and hide its details outside development."""

    lifecycle_logger.exception(
        "request_failed path=%s error=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
    )
    detail = message if settings.is_production else (str(error) or message)
    return jsonify({"error": detail}), 500


def _extract_password() -> Optional[object]:
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload.get("password")
    if request.mimetype in ("application/x-www-form-urlencoded", "multipart/form-data"):
        return request.form.get("password")
    return None


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@app.after_request
def add_request_id_header(response: Response):
    request_id = getattr(g, "request_id", None)
    if request_id:
        response.headers["X-Request-ID"] = request_id
    return response


@app.errorhandler(QuickDropError)
def handle_quickdrop_error(error: QuickDropError):
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


def _upload_payload(result: UploadResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "url": build_public_url(result.id),
        "id": result.id,
        "isBatch": result.is_batch,
        "fileCount": len(result.records),
        "expiresAt": result.expires_at,
        "expiresAtIso": isoformat_utc(result.expires_at),
        "files": [
            {
                "id": record.id,
                "filename": record.original_filename,
                "size": record.size,
            }
            for record in result.records
        ],
    }
    if result.password:
        payload["password"] = result.password
    return payload


@app.route("/api/upload", methods=["POST"])
def upload():
    mimetype, options = parse_options_header(request.headers.get("Content-Type", ""))
    mimetype = mimetype.lower()
    boundary = options.get("boundary")
    if mimetype != "multipart/form-data" or not boundary:
        return jsonify({"error": "Invalid content type"}), 400

    try:
        result = ingest_upload(
            request.stream,
            boundary.encode("latin-1"),
            settings,
            storage,
            store,
        )
    except QuickDropError:
        raise
    except ClientDisconnected:
        lifecycle_logger.warning("upload_interrupted reason=client_disconnected")
        return jsonify({"error": "Upload interrupted"}), 400
    except Exception as error:
        return _internal_error(error, "Failed to upload file")

    return jsonify(_upload_payload(result)), 200


@app.route("/api/download/<file_id>/info", methods=["GET"])
def describe(file_id: str):
    try:
        resolution = access.describe(file_id, request.args.get("file") or None)
    except QuickDropError:
        raise
    except Exception as error:
        return _internal_error(error, "Failed to get file information")
    return jsonify(resolution.to_payload())


@app.route("/api/download/<file_id>/verify", methods=["POST"])
def verify(file_id: str):
    password = _extract_password()
    try:
        resolution = access.verify(file_id, password, request.args.get("file") or None)
    except QuickDropError:
        raise
    except Exception as error:
        return _internal_error(error, "Failed to verify password")
    return jsonify(resolution.to_payload())


def _send_download(download: FileDownload) -> Response:
    body = wrap_file(request.environ, download.stream, buffer_size=storage.chunk_size)
    response = Response(
        body,
        mimetype="application/octet-stream",
        direct_passthrough=True,
    )
    response.headers["Content-Length"] = str(download.size)
    response.headers["Content-Disposition"] = content_disposition(
        download.record.original_filename
    )
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Cache-Control"] = "no-store"
    return response


def _fetch(file_id: str, member_id: Optional[str]):
    credentials_allowed = request.method == "POST"
    password = _extract_password() if credentials_allowed else None
    try:
        download = access.fetch(
            file_id,
            member_id,
            password=password,
            credentials_allowed=credentials_allowed,
        )
    except QuickDropError:
        raise
    except Exception as error:
        return _internal_error(error, "Failed to download file")
    return _send_download(download)


@app.route("/api/download/<file_id>", methods=["GET", "POST"])
def fetch(file_id: str):
    return _fetch(file_id, request.args.get("file") or None)


@app.route("/api/download/<batch_id>/files/<member_id>", methods=["GET", "POST"])
def fetch_member(batch_id: str, member_id: str):
    return _fetch(batch_id, member_id)


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        checks["files"] = store.count_files()
        checks["database"] = "ok"
    except Exception as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    try:
        storage.ensure_root()
        probe_file = storage.root / f".health_check_{uuid.uuid4().hex}"
        probe_file.write_text("health_check", encoding="utf-8")
        probe_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except Exception as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["scheduler_running"] = reaper.running
    next_run = reaper.next_run_time()
    checks["cleanup"] = "scheduled" if next_run else "not_scheduled"
    if next_run:
        checks["cleanup_next_run"] = next_run.isoformat()

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503
    return jsonify(
        {
            "status": status,
            "timestamp": time.time(),
            "checks": checks,
        }
    ), code


def main() -> None:
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)


if __name__ == "__main__":
    main()
