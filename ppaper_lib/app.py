# --- ppaper_lib/app.py ---
import logging
import os

from flask import Flask, jsonify

from core.llm_utils import ChatCompletionClient
from .errors import JobConflictError, PaperParseError, StorageError
from .orchestrator import ParseJobManager
from .services.config_service import ConfigService
from .services.image_service import ImageService
from .services.storage_service import StorageService

DEFAULT_CONFIG_PATH = os.path.join(os.path.expanduser("~"), ".ppaper", "ppaper.cfg")


def create_app(config_overrides=None):
    """
    Creates and configures an instance of the Flask application.

    Recognized overrides: CONFIG_PATH, DATA_DIR, IMAGE_DIR, PARSE_OPTIONS (a
    dict merged over the [Parsing] settings), LLM_CLIENT (an object with a
    `complete` method used instead of the configured client) and
    STREAM_INTERVAL (seconds between progress events).
    """
    app = Flask(__name__, instance_relative_config=True)
    log = logging.getLogger("ppaper.api")

    # --- Configuration ---
    app.config.from_mapping(
        SECRET_KEY="dev",
        CONFIG_PATH=DEFAULT_CONFIG_PATH,
        DATA_DIR=None,
        IMAGE_DIR=None,
        PARSE_OPTIONS={},
        LLM_CLIENT=None,
        STREAM_INTERVAL=0.5,
    )
    if config_overrides:
        app.config.from_mapping(config_overrides)
        log.info("Applied runtime configuration overrides.")

    # --- Initialize Services ---
    log.info("Initializing application services...")
    try:
        app.config_service = ConfigService(app.config["CONFIG_PATH"])
        settings = app.config_service.get_settings()
        options = app.config_service.get_parse_options(settings)
        options.update(app.config["PARSE_OPTIONS"] or {})

        app.storage = StorageService(app.config["DATA_DIR"] or options["data_dir"])
        app.storage.init_db()
        app.image_service = ImageService(app.config["IMAGE_DIR"] or options["image_dir"])

        client = app.config["LLM_CLIENT"]
        if client is None:
            configured = ChatCompletionClient(settings)
            client = configured if configured.is_configured() else None
        if client is None and options["mode"] == "llm":
            log.warning("No completion service configured; parsing in local mode.")
            options["mode"] = "local"

        app.job_manager = ParseJobManager(
            app.storage, options, client=client, image_service=app.image_service
        )
        log.info("All services initialized successfully.")
    except Exception as e:
        log.error("Failed to initialize services: %s", e, exc_info=True)
        raise

    # --- Register Blueprints (APIs) ---
    from .routes import parse

    app.register_blueprint(parse.bp, url_prefix="/api/parse")
    log.info("All API blueprints registered.")

    # --- Global Error Handlers ---
    @app.errorhandler(JobConflictError)
    def handle_conflict(e):
        return jsonify(error=str(e)), 409

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Catches all unhandled exceptions, logs them, and returns JSON."""
        if hasattr(e, "code") and isinstance(e.code, int) and e.code < 500:
            return jsonify(error=str(e)), e.code
        if isinstance(e, PaperParseError) and not isinstance(e, StorageError):
            return jsonify(error=str(e)), 400
        app.logger.exception("An unhandled exception occurred: %s", e)
        return jsonify(error="An internal server error occurred."), 500

    @app.route("/health")
    def health_check():
        return jsonify(status="ok", workers=app.job_manager.workers)

    return app
