"""
CardMail API - Flask Application Entry Point.

Turns business card photos into follow-up emails through an
asynchronous OCR, parsing, composition and dispatch pipeline.
"""

import atexit
import logging
import os

from flask import Flask, jsonify
from flask_cors import CORS

from cardmail.errors import (
    CapacityExceeded,
    CardMailError,
    JobNotFound,
    ProviderError,
    StaleTransition,
    ValidationError,
)
from config import Config, get_config
from api.routes import api_bp, shutdown_pipeline

# HTTP status per domain error; anything else in the hierarchy is a 500
ERROR_STATUS = [
    (JobNotFound, 404),
    (ValidationError, 400),
    (StaleTransition, 409),
    (CapacityExceeded, 429),
    (ProviderError, 502),
]

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(config_name: str = None) -> Flask:
    """Application factory for creating Flask app.

    Args:
        config_name: Configuration name (development, production, testing)

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    # Load configuration
    config_class = get_config(config_name)
    config_class.init_app(app)

    # Enable CORS
    CORS(app, resources={
        r"/api/*": {
            "origins": "*",
            "methods": ["GET", "POST", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization"]
        }
    })

    # Register blueprints
    app.register_blueprint(api_bp)

    # Stop workers and the loop thread on interpreter exit
    atexit.register(shutdown_pipeline)

    # Root endpoint - API info
    @app.route("/")
    def index():
        """API information endpoint."""
        return jsonify({
            "name": "CardMail API",
            "version": "1.0.0",
            "description": "Business card photos in, follow-up emails out",
            "endpoints": {
                "health": "/api/health",
                "status": "/api/status",
                "submit_card": "POST /api/cards",
                "job_status": "GET /api/jobs/<job_id>",
                "retry_job": "POST /api/jobs/<job_id>/retry",
                "cancel_job": "DELETE /api/jobs/<job_id>",
                "parse_text": "POST /api/parse-text",
                "compose": "POST /api/compose[?stream=true]"
            }
        })

    # Favicon handler (prevents 404 errors from browsers)
    @app.route("/favicon.ico")
    def favicon():
        """Return empty response for favicon requests."""
        return "", 204

    # Global error handlers
    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 errors."""
        return jsonify({
            "success": False,
            "error": "Not found"
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        """Handle 405 errors."""
        return jsonify({
            "success": False,
            "error": "Method not allowed"
        }), 405

    @app.errorhandler(413)
    def request_entity_too_large(error):
        """Handle file too large errors."""
        return jsonify({
            "success": False,
            "error": f"File too large. Maximum size: {Config.MAX_CONTENT_LENGTH // (1024*1024)}MB"
        }), 413

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 errors."""
        logger.error(f"Internal error: {str(error)}")
        return jsonify({
            "success": False,
            "error": "Internal server error"
        }), 500

    @app.errorhandler(CardMailError)
    def handle_pipeline_error(error):
        """Map pipeline errors that escaped a route to JSON."""
        status = next((code for cls, code in ERROR_STATUS if isinstance(error, cls)), 500)
        if status >= 500:
            logger.error(f"Pipeline error: {error}", exc_info=True)
        return jsonify({
            "success": False,
            "error": str(error)
        }), status

    @app.errorhandler(Exception)
    def handle_exception(error):
        """Handle uncaught exceptions."""
        # HTTP errors keep their own status code
        if hasattr(error, "code") and error.code == 404:
            return not_found(error)
        if hasattr(error, "code") and error.code == 413:
            return request_entity_too_large(error)
        logger.error(f"Uncaught exception: {str(error)}", exc_info=True)
        return jsonify({
            "success": False,
            "error": "An unexpected error occurred"
        }), 500

    logger.info(f"Application created with config: {config_class.__name__}")

    return app


if __name__ == "__main__":
    app = create_app()

    # Get port from environment or default to 5000
    port = int(os.getenv("PORT", 5000))
    debug = os.getenv("CARDMAIL_DEBUG", "False").lower() == "true"

    logger.info(f"Starting server on port {port}, debug={debug}")

    # Workers live on a background loop thread; the reloader would start a second set
    app.run(
        host="0.0.0.0",
        port=port,
        debug=debug,
        use_reloader=False
    )
