"""
API routes for the CardMail API.

Flask REST endpoints for submitting business cards and tracking jobs.
"""

import json
import logging
from typing import Optional

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from cardmail import (
    BackgroundRunner,
    CapacityExceeded,
    CardMailPipeline,
    ComposeOptions,
    ContactRecord,
    EmailContent,
    JobNotFound,
    Language,
    SenderIdentity,
    StaleTransition,
    Tone,
    ValidationError,
    build_pipeline,
)
from config import Config, get_config

logger = logging.getLogger(__name__)

# Create Blueprint
api_bp = Blueprint("api", __name__, url_prefix="/api")

# Pipeline instance and its event loop (lazy initialization)
_pipeline: Optional[CardMailPipeline] = None
_runner: Optional[BackgroundRunner] = None


def init_pipeline(pipeline: Optional[CardMailPipeline] = None) -> CardMailPipeline:
    """Start the background loop and the pipeline's workers.

    Args:
        pipeline: Prebuilt pipeline; built from the app config when omitted

    Returns:
        The running pipeline
    """
    global _pipeline, _runner

    if _runner is None:
        _runner = BackgroundRunner()
        _runner.start()

    if pipeline is None:
        config_class = current_app.config.get("CARDMAIL_CONFIG") or get_config()
        pipeline = build_pipeline(config_class)

    _runner.run(pipeline.start())
    _pipeline = pipeline
    logger.info("Pipeline workers started")
    return _pipeline


def shutdown_pipeline() -> None:
    """Stop the workers and the background loop."""
    global _pipeline, _runner

    if _pipeline is not None and _runner is not None:
        _runner.run(_pipeline.stop())
    if _runner is not None:
        _runner.stop()
    _pipeline = None
    _runner = None


def get_pipeline() -> CardMailPipeline:
    """Get or create pipeline instance.

    Returns:
        CardMailPipeline instance
    """
    if _pipeline is None:
        return init_pipeline()
    return _pipeline


def get_runner() -> BackgroundRunner:
    get_pipeline()
    return _runner


def error_response(message: str, status: int):
    return jsonify({
        "success": False,
        "error": message
    }), status


def _parse_options(data) -> ComposeOptions:
    """Build ComposeOptions from form or JSON fields (ValueError on bad values)."""
    config_class = current_app.config.get("CARDMAIL_CONFIG") or Config
    return ComposeOptions(
        tone=Tone(data.get("tone") or config_class.DEFAULT_TONE),
        language=Language.parse(data.get("language"), Language.parse(config_class.DEFAULT_LANGUAGE)),
        custom_message=data.get("custom_message") or None,
        subject_override=data.get("subject") or None,
        body_override=data.get("body") or None
    )


def _parse_sender(data) -> Optional[SenderIdentity]:
    credential = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        credential = auth_header[len("Bearer "):].strip() or None

    name = data.get("sender_name")
    if not name and not credential:
        return None
    return SenderIdentity(
        name=name or "",
        company=data.get("sender_company") or None,
        email=data.get("sender_email") or None,
        credential=credential
    )


@api_bp.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint.

    Returns:
        JSON with health status
    """
    return jsonify({
        "success": True,
        "status": "healthy",
        "message": "CardMail API is running",
        "version": "1.0.0"
    }), 200


@api_bp.route("/status", methods=["GET"])
def get_status():
    """Get API and pipeline status.

    Returns:
        JSON with status information
    """
    try:
        pipeline = get_pipeline()

        return jsonify({
            "success": True,
            "data": {
                "api_status": "running",
                "pipeline_status": pipeline.get_info(),
                "api_keys_configured": Config.get_api_status()
            }
        }), 200

    except Exception as e:
        logger.error(f"Error getting status: {str(e)}")
        return error_response(str(e), 500)


@api_bp.route("/cards", methods=["POST"])
def submit_card():
    """Queue a business card image for processing.

    Expects:
        - multipart/form-data with 'file' field
        - Optional form fields: tone, language, custom_message, subject, body,
          sender_name, sender_company, sender_email
        - Optional 'Authorization: Bearer <token>' used to send the email

    Returns:
        202 with the job id
    """
    if "file" not in request.files:
        return error_response("No file provided. Use 'file' field in form-data.", 400)

    file = request.files["file"]

    if file.filename == "":
        return error_response("No file selected", 400)

    if not Config.is_allowed_file(file.filename):
        return error_response(
            f"File type not allowed. Allowed: {', '.join(sorted(Config.ALLOWED_EXTENSIONS))}", 400
        )

    try:
        options = _parse_options(request.form)
    except ValueError as e:
        return error_response(f"Invalid option: {e}", 400)

    mime_type = file.mimetype or "application/octet-stream"
    if mime_type not in Config.ALLOWED_MIME_TYPES:
        extension = file.filename.rsplit(".", 1)[1].lower()
        mime_type = "image/jpeg" if extension in ("jpg", "jpeg") else f"image/{extension}"

    try:
        job_id = get_pipeline().submit(
            file.read(),
            mime_type,
            sender=_parse_sender(request.form),
            options=options
        )
    except ValidationError as e:
        return error_response(str(e), 400)
    except CapacityExceeded as e:
        return error_response(str(e), 429)

    logger.info(f"Accepted card {file.filename} as {job_id}")
    return jsonify({
        "success": True,
        "job_id": job_id,
        "status_url": f"/api/jobs/{job_id}"
    }), 202


@api_bp.route("/jobs/<job_id>", methods=["GET"])
def get_job(job_id: str):
    """Get the latest status snapshot of a job."""
    try:
        return jsonify({
            "success": True,
            "data": get_pipeline().get_status(job_id)
        }), 200
    except JobNotFound as e:
        return error_response(str(e), 404)


@api_bp.route("/jobs/<job_id>/retry", methods=["POST"])
def retry_job(job_id: str):
    """Re-queue a failed job."""
    pipeline = get_pipeline()
    try:
        pipeline.retry(job_id)
    except JobNotFound as e:
        return error_response(str(e), 404)
    except StaleTransition as e:
        return error_response(str(e), 409)

    return jsonify({
        "success": True,
        "data": pipeline.get_status(job_id)
    }), 200


@api_bp.route("/jobs/<job_id>", methods=["DELETE"])
def cancel_job(job_id: str):
    """Cancel a job that has not started yet."""
    try:
        cancelled = get_pipeline().cancel_if_queued(job_id)
    except JobNotFound as e:
        return error_response(str(e), 404)

    if not cancelled:
        return error_response("Job already started or finished", 409)

    return jsonify({
        "success": True,
        "job_id": job_id,
        "cancelled": True
    }), 200


@api_bp.route("/parse-text", methods=["POST"])
def parse_text():
    """Parse raw text (skip OCR).

    Expects:
        - JSON body with 'text' field
        - Optional 'language': auto, primary/ja or secondary/en

    Returns:
        JSON with parsed contact data
    """
    data = request.get_json(silent=True)

    if not data or "text" not in data:
        return error_response("No text provided. Send JSON with 'text' field.", 400)

    try:
        contact = get_runner().run(
            get_pipeline().parse_text(data["text"], data.get("language") or "auto")
        )
    except ValidationError as e:
        return error_response(str(e), 400)
    except ValueError as e:
        return error_response(f"Invalid language: {e}", 400)

    return jsonify({
        "success": True,
        "data": contact.to_dict()
    }), 200


@api_bp.route("/compose", methods=["POST"])
def compose_email():
    """Compose a follow-up email for a contact.

    Expects:
        - JSON body with 'contact' object and optional tone, language,
          custom_message, subject, body, sender_name, sender_company
        - Optional query param: stream=true for a text/event-stream response

    Returns:
        JSON with the email, or SSE 'partial' events then one 'final' event
    """
    data = request.get_json(silent=True)

    if not data or not isinstance(data.get("contact"), dict):
        return error_response("No contact provided. Send JSON with 'contact' object.", 400)

    try:
        options = _parse_options(data)
    except ValueError as e:
        return error_response(f"Invalid option: {e}", 400)

    contact = ContactRecord.from_dict(data["contact"])
    sender = _parse_sender(data)
    pipeline = get_pipeline()
    runner = get_runner()

    if request.args.get("stream", "false").lower() == "true":
        def generate():
            for item in runner.iterate(pipeline.stream_email(contact, options, sender)):
                event = "final" if isinstance(item, EmailContent) else "partial"
                yield f"event: {event}\ndata: {json.dumps(item.to_dict(), ensure_ascii=False)}\n\n"

        return Response(stream_with_context(generate()), mimetype="text/event-stream")

    email = runner.run(pipeline.compose(contact, options, sender))
    return jsonify({
        "success": True,
        "data": email.to_dict()
    }), 200
