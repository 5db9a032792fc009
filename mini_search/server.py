"""JSON search API server."""

import logging
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from .config import ServerConfig
from .engine.exceptions import CorruptIndexError, IndexNotFoundError
from .engine.query import QueryEngine

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(config: ServerConfig, logger_names: Optional[list[str]] = None):
    """Send mini-search logs to stderr and, if LOG_FILE is set, to a rotating file.

    Args:
        config: ServerConfig instance
        logger_names: Loggers to configure (default: the ``mini_search`` package logger)
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.LOG_FILE:
        log_file = Path(config.LOG_FILE)
        # Use RotatingFileHandler for automatic log rotation
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=config.LOG_MAX_BYTES,
                backupCount=config.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )

    for logger_name in logger_names or ["mini_search"]:
        logger_obj = logging.getLogger(logger_name)
        logger_obj.setLevel(level)
        for handler in list(logger_obj.handlers):
            logger_obj.removeHandler(handler)
            handler.close()
        for handler in handlers:
            handler.setFormatter(formatter)
            logger_obj.addHandler(handler)
        logger_obj.propagate = False


class SearchServer:
    """Flask server exposing the query engine as a JSON API."""

    def __init__(self, engine: QueryEngine, config: ServerConfig, name: Optional[str] = None):
        """Initialize the search server.

        Args:
            engine: QueryEngine to answer searches with
            config: ServerConfig instance
            name: Display name (default: config.SERVICE_NAME)
        """
        self.engine = engine
        self.config = config
        self.name = name or config.SERVICE_NAME

        # Create Flask app
        self.app = Flask(self.name.lower())
        CORS(self.app)

        # Register routes
        self._register_routes()

    def _register_routes(self):
        """Register Flask routes."""
        self.app.route("/health", methods=["GET"])(self.health)
        self.app.route("/search", methods=["GET"])(self.search)

    def health(self):
        """Health check endpoint."""
        try:
            reader = self.engine.refresh()
        except IndexNotFoundError as e:
            return jsonify({"status": "no_index", "error": str(e)}), 503
        except CorruptIndexError as e:
            logger.error(f"[SERVER] Index failed verification: {e}")
            return jsonify({"status": "corrupt_index", "error": str(e)}), 503
        return jsonify(
            {
                "status": "healthy",
                "generation": reader.generation,
                "documents": reader.doc_count,
                "vectors": reader.vector_count,
                "semantic": self.engine.embedder is not None,
            }
        )

    def search(self):
        """Handle search requests: GET /search?q=<query>&k=<count>."""
        query = request.args.get("q", "").strip()
        if not query:
            return jsonify({"error": "Missing required parameter: 'q'"}), 400

        k_arg = request.args.get("k")
        if k_arg is None:
            k = self.config.SEARCH_TOP_K
        else:
            try:
                k = int(k_arg)
            except ValueError:
                return jsonify({"error": "Parameter 'k' must be an integer"}), 400
            if k < 1:
                return jsonify({"error": "Parameter 'k' must be at least 1"}), 400
            k = min(k, self.config.MAX_TOP_K)

        start = time.perf_counter()
        try:
            results = self.engine.search(query, k)
        except (IndexNotFoundError, CorruptIndexError) as e:
            logger.error(f"[SERVER] Search unavailable: {e}")
            return jsonify({"error": str(e)}), 503

        return jsonify(
            {
                "query": query,
                "results": [result.to_dict() for result in results],
                "took_ms": round((time.perf_counter() - start) * 1000, 2),
            }
        )

    def run(self, port: Optional[int] = None, host: Optional[str] = None, debug: bool = False):
        """Run the Flask server.

        Args:
            port: Port to run on (defaults to config.DEFAULT_PORT)
            host: Host to bind to (defaults to config.DEFAULT_HOST, which is 127.0.0.1 for security)
            debug: Enable debug mode
        """
        port = port or self.config.DEFAULT_PORT
        host = host or self.config.DEFAULT_HOST

        print(
            f"""
╭────────────────────────────────────╮
│  {self.name} - hybrid search API   │
╰────────────────────────────────────╯

Index: {self.engine.index.index_dir}
Semantic search: {"enabled" if self.engine.embedder is not None else "disabled (lexical only)"}
Host: {host}
Port: {port}
API: http://localhost:{port}/search?q=...
"""
        )

        # Security warning if binding to all interfaces
        if host == "0.0.0.0":
            print("⚠️  WARNING: Server is binding to 0.0.0.0 (all network interfaces)")
            print("   This exposes the API to your entire network without authentication.")
            print("   For security, use HOST=127.0.0.1 (localhost only) unless you need network access.\n")

        # Open the index up front so the first request doesn't pay for it
        try:
            reader = self.engine.refresh()
            print(f"Loaded generation {reader.generation}: {reader.doc_count} documents\n")
        except IndexNotFoundError as e:
            print(f"⚠️  Warning: {e}")
            print("The server will start anyway, but searches fail until an index is committed.\n")

        # Start Flask app
        self.app.run(host=host, port=port, debug=debug)
