"""Flask JSON API for the Sight-Singing Exercise Generator.

The API mirrors the command line interface for browser front-ends.  A client
posts an exercise spec and a seed and receives the generated events, harmony
and metrics as JSON.

Endpoints
---------
``GET /api/keys``
    Supported tonics and modes.
``POST /api/generate``
    Body ``{"spec": {...}, "seed": 7, "lockFinalRhythm": true,
    "includeMidi": false}``.  Returns ``200`` with the exercise payload,
    ``400`` for invalid input and ``422`` when the illegal rules leave no
    melody.  With ``includeMidi`` the response carries a base64 encoded MIDI
    file under ``midi``.

Revision Summary
----------------
* HTML form views were replaced with JSON endpoints, so CSRF tokens and
  templates are no longer needed.
* The per-IP rate limiter and the ``MAX_CONTENT_LENGTH`` guard are kept and
  configured from the same environment variables as before.
* ``FLASK_SECRET`` is still required outside debug mode.
"""

from __future__ import annotations

import base64
import logging
import math
import os
import secrets
from tempfile import NamedTemporaryFile
from threading import Lock
from time import monotonic
from typing import Any, Dict, Optional, Tuple

from flask import Flask, Response, current_app, jsonify, make_response, request

from . import KEY_TO_PC, MODE_SCALES
from .errors import InputValidationError
from .generator import events_to_json, generate_exercise
from .spec_io import exercise_spec_from_dict
from .validation import normalize_and_validate

logger = logging.getLogger(__name__)

# Maps client IP to ``(window_start, count)``.  Guarded by ``REQUEST_LOCK``
# because the development server handles requests on several threads.
REQUEST_LOG: Dict[str, Tuple[float, int]] = {}
REQUEST_LOCK = Lock()
RATE_LIMIT_WINDOW = 60.0
DEFAULT_BPM = 90


def rate_limit() -> Optional[Response]:
    """Enforce ``RATE_LIMIT_PER_MINUTE`` requests per client IP.

    Missing, zero or invalid configuration disables the limiter.  When the
    limit is exceeded a ``429`` response with a ``Retry-After`` header is
    returned.
    """

    limit_raw = current_app.config.get("RATE_LIMIT_PER_MINUTE")
    if limit_raw is None:
        return None
    try:
        limit = int(limit_raw)
    except (TypeError, ValueError):
        logger.warning("Invalid RATE_LIMIT_PER_MINUTE %r; disabling rate limiting", limit_raw)
        return None
    if limit <= 0:
        if limit < 0:
            logger.warning(
                "RATE_LIMIT_PER_MINUTE must be positive; disabling rate limiting (received %r)",
                limit_raw,
            )
        return None

    now = monotonic()
    ip_addr = request.remote_addr or "unknown"
    with REQUEST_LOCK:
        expired = [ip for ip, (start, _) in REQUEST_LOG.items() if now - start >= RATE_LIMIT_WINDOW]
        for ip in expired:
            del REQUEST_LOG[ip]

        window_start, count = REQUEST_LOG.get(ip_addr, (now, 0))
        if now - window_start >= RATE_LIMIT_WINDOW:
            REQUEST_LOG[ip_addr] = (now, 1)
            return None
        if count >= limit:
            remaining = math.ceil(max(0.0, RATE_LIMIT_WINDOW - (now - window_start)))
            response = make_response(jsonify({"status": "error", "error": "Too many requests"}), 429)
            response.headers["Retry-After"] = str(remaining)
            return response
        REQUEST_LOG[ip_addr] = (window_start, count + 1)
    return None


def _error(message: str, status: int):
    return jsonify({"status": "error", "error": message}), status


def _render_midi(result, time_sig: str, bpm: int) -> str:
    """Return the MIDI rendering of ``result`` as base64 text."""

    from .midi_io import create_midi_file

    numerator, denominator = (int(part) for part in time_sig.split("/"))
    tmp = NamedTemporaryFile(suffix=".mid", delete=False)
    tmp.close()
    try:
        create_midi_file(result.events, bpm, (numerator, denominator), tmp.name, harmony=result.harmony)
        with open(tmp.name, "rb") as fh:
            return base64.b64encode(fh.read()).decode("ascii")
    finally:
        try:
            os.remove(tmp.name)
        except OSError:
            logger.warning("Could not remove temporary MIDI file %s", tmp.name)


def list_keys():
    return jsonify({"keys": sorted(KEY_TO_PC), "modes": sorted(MODE_SCALES)})


def generate():
    """Generate an exercise from the posted JSON body."""

    body: Any = request.get_json(silent=True)
    if not isinstance(body, dict):
        return _error("Request body must be a JSON object", 400)
    try:
        seed = int(body.get("seed", 0))
        bpm = int(body.get("bpm", DEFAULT_BPM))
    except (TypeError, ValueError):
        return _error("seed and bpm must be integers", 400)
    if bpm <= 0:
        return _error("bpm must be a positive integer", 400)

    try:
        spec = normalize_and_validate(exercise_spec_from_dict(body.get("spec") or {}))
        result = generate_exercise(spec, seed, bool(body.get("lockFinalRhythm", True)))
    except InputValidationError as exc:
        logger.info("Rejected exercise request: %s", exc)
        return _error(str(exc), 400)

    payload = events_to_json(result)
    if not result.ok:
        return jsonify(payload), 422
    if body.get("includeMidi"):
        payload["midi"] = _render_midi(result, spec.time_sig, bpm)
    return jsonify(payload), 200


def create_app() -> Flask:
    """Build and configure the Flask application instance.

    Outside debug mode ``FLASK_SECRET`` must be set, otherwise a
    :class:`RuntimeError` is raised after a ``CRITICAL`` log entry.
    ``MAX_UPLOAD_MB`` bounds the request size and ``RATE_LIMIT_PER_MINUTE``
    enables the per-IP throttle.

    Returns:
        Flask: Configured application ready for use by a WSGI server.
    Raises:
        RuntimeError: If ``FLASK_SECRET`` is absent when debug mode is
            disabled.
    """

    app = Flask(__name__)

    secret = os.environ.get("FLASK_SECRET")
    try:
        max_mb = int(os.environ.get("MAX_UPLOAD_MB", "1"))
    except ValueError:
        max_mb = 1
        logger.warning("Invalid MAX_UPLOAD_MB value; defaulting to 1 MB.")
    rate_limit_env = os.environ.get("RATE_LIMIT_PER_MINUTE")
    try:
        rate_limit_per_minute = int(rate_limit_env) if rate_limit_env else None
    except ValueError:
        logger.warning("RATE_LIMIT_PER_MINUTE must be an integer. Disabling rate limiting.")
        rate_limit_per_minute = None

    if not app.debug and not secret:
        logger.critical("FLASK_SECRET environment variable must be set in production.")
        raise RuntimeError("Missing FLASK_SECRET")
    if not secret:
        secret = secrets.token_urlsafe(32)
        logger.warning("FLASK_SECRET environment variable not set. Using a randomly generated key.")
    app.secret_key = secret
    app.config["MAX_CONTENT_LENGTH"] = max_mb * 1024 * 1024
    app.config["RATE_LIMIT_PER_MINUTE"] = rate_limit_per_minute

    app.add_url_rule("/api/keys", view_func=list_keys, methods=["GET"])
    app.add_url_rule("/api/generate", view_func=generate, methods=["POST"])
    app.before_request(rate_limit)

    @app.errorhandler(413)
    def handle_request_too_large(_err):
        return _error("Request exceeds configured size limit.", 413)

    return app
