"""Flask search endpoint."""

import logging

from flask import Flask, jsonify, request
from flask_cors import CORS

from .config import SiteScribeConfig
from .errors import InvalidRequestError, SiteScribeError, to_error_payload
from .search import SearchEngine

logger = logging.getLogger(__name__)


class SearchServer:
    """Flask server exposing a SearchEngine over HTTP."""

    def __init__(self, engine: SearchEngine, config: SiteScribeConfig | None = None):
        """Initialize the search server.

        Args:
            engine: Search engine answering queries
            config: Configuration (defaults to the engine's)
        """
        self.engine = engine
        self.config = config or engine.config

        self.app = Flask("sitescribe")
        origins = self.config.api.cors_allow_origins
        CORS(self.app, origins=origins if origins else "*")

        self._register_routes()

    def _register_routes(self):
        """Register Flask routes."""
        self.app.route("/health", methods=["GET"])(self.health)
        self.app.route(self.config.api.path, methods=["GET", "POST"])(self.search)
        self.app.route("/api/page", methods=["GET"])(self.get_page)

    @staticmethod
    def _error_response(error: BaseException):
        status = error.status if isinstance(error, SiteScribeError) else 500
        return jsonify(to_error_payload(error)), status

    def health(self):
        """Health check endpoint."""
        status = self.engine.health()
        return jsonify(status), 200 if status.get("ok") else 503

    def search(self):
        """Handle search requests (JSON body on POST, query string on GET)."""
        try:
            if request.method == "POST":
                data = request.get_json(silent=True)
                if data is None:
                    raise InvalidRequestError("Invalid JSON in request body")
            else:
                data = self._query_args()
            return jsonify(self.engine.search(data))
        except SiteScribeError as e:
            if e.status >= 500:
                logger.error(f"[SEARCH] {e.code}: {e.message}")
            return self._error_response(e)
        except Exception as e:
            logger.exception(f"[SEARCH] Unexpected error: {e}")
            return self._error_response(e)

    @staticmethod
    def _query_args() -> dict:
        args = request.args
        data: dict = {"q": args.get("q", "")}
        if "top_k" in args:
            try:
                data["top_k"] = int(args["top_k"])
            except ValueError as e:
                raise InvalidRequestError("top_k must be an integer") from e
        for key in ("scope", "path_prefix", "group_by"):
            if key in args:
                data[key] = args[key]
        if "tags" in args:
            data["tags"] = [tag for tag in args.getlist("tags") if tag]
        if "rerank" in args:
            data["rerank"] = args["rerank"].lower() in ("true", "1", "yes")
        return data

    def get_page(self):
        """Return one indexed page as markdown plus front matter."""
        try:
            path = request.args.get("path") or request.args.get("url")
            if not path:
                raise InvalidRequestError("Missing required parameter: 'path'")
            return jsonify(self.engine.get_page(path, request.args.get("scope")))
        except SiteScribeError as e:
            return self._error_response(e)
        except Exception as e:
            logger.exception(f"[SEARCH] Unexpected error: {e}")
            return self._error_response(e)

    def run(self, port: int | None = None, host: str | None = None, debug: bool = False):
        """Run the Flask server.

        Args:
            port: Port to run on (defaults to config.api.port)
            host: Host to bind to (defaults to config.api.host, which is 127.0.0.1 for security)
            debug: Enable debug mode
        """
        port = port or self.config.api.port
        host = host or self.config.api.host

        print(
            f"""
╭────────────────────────────────────╮
│  SiteScribe - Site Search Endpoint │
╰────────────────────────────────────╯

Project: {self.config.project_id}
Model: {self.config.embeddings.model}
Host: {host}
Port: {port}
API: http://localhost:{port}{self.config.api.path}
"""
        )

        # Security warning if binding to all interfaces
        if host == "0.0.0.0":
            print("⚠️  WARNING: Server is binding to 0.0.0.0 (all network interfaces)")
            print("   This exposes the search API to your entire network without authentication.\n")

        self.app.run(host=host, port=port, debug=debug)
