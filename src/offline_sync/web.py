"""HTTP API for offline-sync.

This module exposes the engine's queue, sync and conflict operations as a
JSON API.

Endpoints:
    GET    /api/health                      Health check
    GET    /sync/status                     Engine status snapshot
    GET    /sync/queue/stats                Entry counts per status
    GET    /sync/queue/failed               Failed entries
    POST   /sync/queue                      Enqueue a mutation
    DELETE /sync/queue/completed            Retention sweep of completed entries
    POST   /sync/trigger                    Run a sync pass now
    POST   /sync/retry                      Re-queue failed entries and sync
    GET    /sync/history                    Recent sync passes
    GET    /sync/conflicts                  Pending conflicts
    GET    /sync/conflicts/<id>             One conflict
    POST   /sync/conflicts/<id>/resolve     Resolve a conflict manually
    GET    /sync/conflicts/history          Recent resolutions
    GET    /sync/rules                      Auto-resolution rules
    POST   /sync/rules                      Create an auto-resolution rule

POST /sync/queue body:
    - operation: create, update or delete (required)
    - entity_type: Entity tag (required)
    - entity_id: Entity identifier (required)
    - payload: Object, required unless operation is delete

POST /sync/conflicts/<id>/resolve body:
    - resolution: use_local, use_remote or merge (required)
    - resolved_by: Actor identifier (optional)
"""

from __future__ import annotations

import argparse
import functools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Type

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from flask_cors import CORS

from .config import Config
from .engine import SyncEngine
from .errors import (
    ConcurrencyLimitError,
    ConflictNotFoundError,
    InvalidTransitionError,
    OfflineError,
    SyncError,
)
from .sync_service import SyncOrchestrator
from .validation import ValidationError, validate_positive_int

logger = logging.getLogger(__name__)

__all__ = ["create_app", "add_serve_subparser", "run", "ERROR_STATUS"]

ENGINE_KEY = "offline_sync"

ERROR_STATUS: Dict[Type[Exception], int] = {
    ValidationError: 400,
    ConflictNotFoundError: 404,
    InvalidTransitionError: 409,
    ConcurrencyLimitError: 429,
    OfflineError: 503,
}

sync_bp = Blueprint("sync", __name__, url_prefix="/sync")


def _error_response(error: Exception) -> Tuple[Response, int]:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(error, error_type):
            if isinstance(error, ValidationError):
                message = f"Invalid {error.field}: {error.message}"
            else:
                message = str(error)
            return jsonify({"error": message, "type": type(error).__name__}), status
    logger.exception(f"Unhandled error: {error}")
    return jsonify({"error": str(error), "type": type(error).__name__}), 500


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Maps engine errors to their HTTP status (see ERROR_STATUS) and any
    other exception to 500, always with a JSON error body.
    """
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (ValidationError, SyncError) as e:
            if not isinstance(e, ValidationError):
                logger.warning(f"{func.__name__}: {e}")
            return _error_response(e)
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            return _error_response(e)
    return wrapper


def _orchestrator() -> SyncOrchestrator:
    return current_app.extensions[ENGINE_KEY].orchestrator


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("body", "must be a JSON object")
    return data


def _int_arg(name: str, default: int) -> int:
    value = request.args.get(name)
    if value is None:
        return default
    return validate_positive_int(value, name)


# ===== Queue =====

@sync_bp.route("/status", methods=["GET"])
@api_endpoint
def get_status() -> Response:
    """Get the engine status snapshot."""
    return jsonify(_orchestrator().get_status())


@sync_bp.route("/queue/stats", methods=["GET"])
@api_endpoint
def get_queue_stats() -> Response:
    return jsonify(_orchestrator().get_queue_stats().to_dict())


@sync_bp.route("/queue/failed", methods=["GET"])
@api_endpoint
def get_failed_entries() -> Response:
    return jsonify([entry.to_dict() for entry in _orchestrator().get_failed_entries()])


@sync_bp.route("/queue", methods=["POST"])
@api_endpoint
def enqueue() -> Tuple[Response, int]:
    """Enqueue a local mutation."""
    data = _json_body()
    if not data:
        return jsonify({"error": "Request body is required"}), 400

    entry = _orchestrator().enqueue(
        data.get("operation"),
        data.get("entity_type"),
        data.get("entity_id"),
        data.get("payload"),
    )
    logger.info(f"Queued entry {entry.id} via API")
    return jsonify(entry.to_dict()), 201


@sync_bp.route("/queue/completed", methods=["DELETE"])
@api_endpoint
def clear_completed() -> Response:
    """Remove completed entries older than ?older_than_days= (default 7)."""
    days = request.args.get("older_than_days", 7)
    removed = _orchestrator().clear_completed_entries(days)
    return jsonify({"removed": removed})


# ===== Sync passes =====

@sync_bp.route("/trigger", methods=["POST"])
@api_endpoint
def trigger_sync() -> Response:
    """Run a sync pass and return its result."""
    data = _json_body()
    result = _orchestrator().trigger_sync(data.get("sync_type", "manual"))
    return jsonify(result.to_dict())


@sync_bp.route("/retry", methods=["POST"])
@api_endpoint
def retry_failed() -> Response:
    return jsonify(_orchestrator().retry_failed_entries().to_dict())


@sync_bp.route("/history", methods=["GET"])
@api_endpoint
def get_history() -> Response:
    limit = _int_arg("limit", 50)
    return jsonify([item.to_dict() for item in _orchestrator().get_sync_history(limit)])


# ===== Conflicts =====

@sync_bp.route("/conflicts", methods=["GET"])
@api_endpoint
def get_conflicts() -> Response:
    return jsonify([c.to_dict() for c in _orchestrator().get_pending_conflicts()])


@sync_bp.route("/conflicts/history", methods=["GET"])
@api_endpoint
def get_resolution_history() -> Response:
    limit = _int_arg("limit", 50)
    return jsonify([item.to_dict() for item in _orchestrator().get_resolution_history(limit)])


@sync_bp.route("/conflicts/<conflict_id>", methods=["GET"])
@api_endpoint
def get_conflict(conflict_id: str) -> Response:
    conflict = _orchestrator().resolver.get_conflict(conflict_id)
    if conflict is None:
        raise ConflictNotFoundError(conflict_id)
    return jsonify(conflict.to_dict())


@sync_bp.route("/conflicts/<conflict_id>/resolve", methods=["POST"])
@api_endpoint
def resolve_conflict(conflict_id: str) -> Response:
    """Resolve a pending conflict."""
    data = _json_body()
    if "resolution" not in data:
        raise ValidationError("resolution", "is required")
    resolved = _orchestrator().resolve_conflict(
        conflict_id, data["resolution"], data.get("resolved_by")
    )
    return jsonify(resolved.to_dict())


# ===== Rules =====

@sync_bp.route("/rules", methods=["GET"])
@api_endpoint
def get_rules() -> Response:
    active_only = request.args.get("active_only", "false").lower() in ("1", "true", "yes")
    rules = _orchestrator().resolver.get_rules(active_only=active_only)
    return jsonify([rule.to_dict() for rule in rules])


@sync_bp.route("/rules", methods=["POST"])
@api_endpoint
def create_rule() -> Tuple[Response, int]:
    data = _json_body()
    rule = _orchestrator().resolver.create_rule(
        entity_type=data.get("entity_type"),
        conflict_type=data.get("conflict_type"),
        resolution=data.get("resolution"),
        priority=data.get("priority", 0),
        field_pattern=data.get("field_pattern"),
        is_active=data.get("is_active", True),
    )
    return jsonify(rule.to_dict()), 201


def create_app(engine: SyncEngine) -> Flask:
    """Create and configure Flask application.

    Args:
        engine: The sync engine served by this app

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes
    app.extensions[ENGINE_KEY] = engine
    app.register_blueprint(sync_bp)

    @app.errorhandler(404)
    def not_found(error: Any) -> Tuple[Response, int]:
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error: Any) -> Tuple[Response, int]:
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error: Any) -> Tuple[Response, int]:
        """Handle 500 errors."""
        logger.error(f"Internal error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    @app.route("/api/health", methods=["GET"])
    def health_check() -> Tuple[Response, int]:
        """Health check endpoint.

        Returns:
            JSON response indicating service health and connectivity
        """
        return jsonify({
            "status": "ok",
            "online": engine.connectivity.is_online(),
        }), 200

    return app


def add_serve_subparser(subparsers: argparse._SubParsersAction) -> None:
    """Add serve subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add serve parser to
    """
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the sync engine with its HTTP API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 127.0.0.1)"
    )

    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: from config, 8765)"
    )

    serve_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable Flask debug mode"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run the engine and HTTP server with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (host, port, debug)

    Returns:
        Exit code (0 for success, 1 for configuration errors)
    """
    logger.info("Starting offline-sync server")
    if config_dir:
        logger.info(f"Using custom config directory: {config_dir}")

    try:
        config = Config(config_dir=config_dir)
        engine = SyncEngine.from_config(config)
    except (ValidationError, SyncError) as e:
        logger.error(f"Cannot start: {e}")
        return 1

    server = config.get_server_config()
    host = args.host or server["host"]
    port = args.port or server["port"]

    with engine:
        engine.start()
        app = create_app(engine)
        # The reloader would start a second engine in a child process
        app.run(host=host, port=port, debug=args.debug, use_reloader=False)

    return 0
