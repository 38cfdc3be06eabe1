"""Flask backend for the OBO-Berk expense reimbursement export."""
from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import quote

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, send_from_directory, stream_with_context
from flask_cors import CORS
from werkzeug.utils import secure_filename

import reporting
from records import AirtableSource, NotFoundError, RecordSource, resolve_report_inputs

load_dotenv()

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parent.parent
UPLOAD_DIR = ROOT_DIR / (os.getenv("UPLOAD_DIR") or "uploads")

app = Flask(__name__)

allowed_origin = os.getenv("ALLOWED_ORIGIN", "*")
if allowed_origin == "*":
    CORS(app)
else:
    CORS(app, resources={r"/*": {"origins": [allowed_origin]}})

AIRTABLE_API_KEY = os.getenv("AIRTABLE_API_KEY")
AIRTABLE_BASE_ID = os.getenv("AIRTABLE_BASE_ID")
AIRTABLE_URL = os.getenv("AIRTABLE_URL")
AIRTABLE_PROJECTS_TABLE = os.getenv("AIRTABLE_PROJECTS_TABLE", "Projects")
AIRTABLE_USERS_TABLE = os.getenv("AIRTABLE_USERS_TABLE", "Users")
AIRTABLE_EXPENSES_TABLE = os.getenv("AIRTABLE_EXPENSES_TABLE", "Expenses")

STREAM_CHUNK_SIZE = 64 * 1024
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _parse_airtable_base(url: str | None) -> str | None:
    """Extract the base ID (app...) from an Airtable UI URL."""
    if not url:
        return None
    match = re.search(r"(app[a-zA-Z0-9]+)", url)
    return match.group(1) if match else None


def get_record_source() -> RecordSource:
    """Return the Airtable-backed record source configured from environment variables."""
    if not AIRTABLE_API_KEY:
        raise RuntimeError("Missing Airtable env var: AIRTABLE_API_KEY")
    base_id = AIRTABLE_BASE_ID or _parse_airtable_base(AIRTABLE_URL)
    if not base_id:
        raise RuntimeError("Missing Airtable base ID. Set AIRTABLE_BASE_ID or AIRTABLE_URL.")
    return AirtableSource(
        AIRTABLE_API_KEY,
        base_id,
        projects_table=AIRTABLE_PROJECTS_TABLE,
        users_table=AIRTABLE_USERS_TABLE,
        expenses_table=AIRTABLE_EXPENSES_TABLE,
    )


def _content_disposition(filename: str) -> str:
    """Attachment header with an ASCII fallback and the UTF-8 original."""
    ascii_name = secure_filename(filename) or "expenses.pdf"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


def _stream_chunks(payload: bytes, project_id: str) -> Iterator[bytes]:
    """Yield the rendered PDF in chunks; failures here can only be logged."""
    sent = 0
    try:
        for start in range(0, len(payload), STREAM_CHUNK_SIZE):
            chunk = payload[start:start + STREAM_CHUNK_SIZE]
            yield chunk
            sent += len(chunk)
    except Exception:
        logger.exception("Streaming report for project %s failed after %d bytes", project_id, sent)
        raise
    logger.info("Streamed report for project %s (%d bytes)", project_id, sent)


@app.get("/version")
def version() -> dict[str, str]:
    """Return the backend version."""
    return {"version": "1.0.0"}


@app.get("/api/health")
def health() -> dict[str, str]:
    """Liveness check used by deployment platforms."""
    return {"status": "OK", "message": "OBO-Berk API is running"}


@app.get("/uploads/<path:filename>")
def uploads(filename: str):
    """Serve stored receipt files."""
    return send_from_directory(UPLOAD_DIR, filename)


@app.get("/api/export/project/<project_id>/pdf")
def export_project_pdf(project_id: str):
    """Render the reimbursement PDF for a project, optionally for one category.

    The whole document is rendered into memory before the response starts, so
    every generation failure is still a JSON 404/500. Only the finished bytes
    are streamed; a failure while sending them is logged and cuts the body short.
    """
    category = (request.args.get("type") or "").strip().lower() or None
    logger.info("Report requested for project %s (category=%s)", project_id, category or "all")
    try:
        project, expenses = resolve_report_inputs(get_record_source(), project_id, category)
        pdf_bytes = reporting.render_expense_report(project, expenses, category, upload_dir=UPLOAD_DIR)
    except NotFoundError as exc:
        return jsonify({"error": str(exc)}), 404
    except Exception as exc:
        logger.exception("PDF generation failed for project %s", project_id)
        return jsonify({"error": str(exc)}), 500

    filename = reporting.report_filename(project.name, int(time.time() * 1000))
    response = Response(stream_with_context(_stream_chunks(pdf_bytes, project_id)), mimetype="application/pdf")
    response.headers["Content-Disposition"] = _content_disposition(filename)
    response.headers["Content-Length"] = str(len(pdf_bytes))
    response.headers.update(NO_CACHE_HEADERS)
    return response


@app.get("/api/export.check")
def export_check():
    """Return diagnostics for report generation dependencies."""
    checks: dict[str, Any] = {}
    try:
        import reportlab

        checks["reportlab"] = getattr(reportlab, "Version", "present")
    except Exception as exc:
        checks["reportlab"] = f"missing: {exc}"
    checks["fonts"] = reporting.font_status()
    checks["uploadDir"] = "ok" if UPLOAD_DIR.is_dir() else f"missing: {UPLOAD_DIR}"
    try:
        source = get_record_source()
        checks["airtable"] = f"ok ({source.ping()} accessible)"
    except Exception as exc:  # pragma: no cover - depends on Airtable
        checks["airtable"] = f"error: {exc}"
    return jsonify(checks)


@app.errorhandler(404)
def handle_404(error):  # type: ignore[override]
    """Return JSON for missing API routes while preserving Flask defaults elsewhere."""
    if request.path.startswith("/api/"):
        return jsonify({"error": "Not found", "path": request.path}), 404
    return error


@app.errorhandler(405)
def handle_405(error):  # type: ignore[override]
    """Return JSON for invalid method calls on API routes."""
    if request.path.startswith("/api/"):
        return jsonify({"error": "Method not allowed", "path": request.path}), 405
    return error


def main() -> None:
    """Run the Flask development server."""
    port = int(os.getenv("PORT", "5000"))
    logger.info("Uploads directory: %s", UPLOAD_DIR)
    app.run(host="0.0.0.0", port=port, debug=os.getenv("FLASK_DEBUG") == "1")


if __name__ == "__main__":
    main()
