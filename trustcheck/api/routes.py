from __future__ import annotations

import logging
from dataclasses import asdict
from functools import wraps
from typing import Any, Callable

from flask import Blueprint, current_app, jsonify, request

from trustcheck.models.types import SUBJECT_TYPES, VERDICTS, JobHint
from trustcheck.scheduler.recheck import recheck_user_posts

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


def _get_database():
    return current_app.config["DATABASE"]


def _get_orchestrator():
    return current_app.config["ORCHESTRATOR"]


def _get_settings():
    return current_app.config["SETTINGS"]


def _get_classifier():
    return current_app.config.get("CLASSIFIER")


def _get_job(name: str):
    return current_app.config["JOBS"][name]


def require_admin(view: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
        key = request.headers.get("X-Admin-Key", "")
        expected = _get_settings().admin_key
        if not expected or key != expected:
            return jsonify({"error": "Forbidden"}), 403
        return view(*args, **kwargs)

    return wrapper


def dev_only(view: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
        if _get_settings().is_production:
            return jsonify({"ok": False, "error": "disabled_in_production"}), 403
        return view(*args, **kwargs)

    return wrapper


def _bool_field(data: dict, name: str) -> bool:
    value = data.get(name, False)
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@api.route("/health", methods=["GET"])
def health() -> tuple:
    return jsonify({"ok": True, "env": _get_settings().env}), 200


@api.route("/factcheck/<post_id>", methods=["GET"])
def get_factcheck(post_id: str) -> tuple:
    try:
        result = _get_database().latest_result(post_id)
        return jsonify(result.to_dict() if result else None), 200
    except Exception as exc:
        logger.exception("Error fetching fact-check for %s: %s", post_id, exc)
        return jsonify({"error": str(exc)}), 500


@api.route("/factcheck/<post_id>/enqueue", methods=["POST"])
@require_admin
def enqueue_factcheck(post_id: str) -> tuple:
    data = request.get_json(silent=True) or {}
    hint = JobHint(
        force_ai=_bool_field(data, "force_ai"),
        admin_override=_bool_field(data, "force"),
        reason=str(data.get("reason") or "admin"),
    )
    try:
        if _get_database().get_post(post_id) is None:
            return jsonify({"error": "Post not found"}), 404
        queued = _get_orchestrator().enqueue(post_id, hint)
        return jsonify({"queued": queued, "postId": post_id}), 202 if queued else 200
    except Exception as exc:
        logger.exception("Error enqueueing %s: %s", post_id, exc)
        return jsonify({"error": str(exc)}), 500


@api.route("/trust/<subject_type>/<subject_id>", methods=["GET"])
def get_trust(subject_type: str, subject_id: str) -> tuple:
    if subject_type not in SUBJECT_TYPES:
        return jsonify({"error": "Invalid subject type"}), 400
    try:
        snapshot = _get_database().get_snapshot(subject_type, subject_id)
        return jsonify(snapshot.to_dict() if snapshot else None), 200
    except Exception as exc:
        logger.exception("Error fetching trust for %s %s: %s", subject_type, subject_id, exc)
        return jsonify({"error": str(exc)}), 500


@api.route("/admin/factchecks", methods=["GET"])
@api.route("/admin/fact-checks", methods=["GET"])
@require_admin
def list_factchecks() -> tuple:
    args = request.args
    verdicts = [v.strip() for v in args.get("verdict", "").split(",") if v.strip()]
    unknown = [v for v in verdicts if v not in VERDICTS]
    if unknown:
        return jsonify({"error": f"Invalid verdict(s): {', '.join(unknown)}"}), 400

    try:
        min_conf = float(args["minConf"]) if "minConf" in args else None
        max_conf = float(args["maxConf"]) if "maxConf" in args else None
    except ValueError:
        return jsonify({"error": "minConf/maxConf must be numbers"}), 400

    page = max(args.get("page", 1, type=int) or 1, 1)
    limit = min(max(args.get("limit", 20, type=int) or 20, 1), 100)

    try:
        rows, total = _get_database().list_results(verdicts, min_conf, max_conf, page, limit)
        return jsonify({"rows": rows, "items": rows, "total": total, "page": page, "limit": limit}), 200
    except Exception as exc:
        logger.exception("Error listing fact-checks: %s", exc)
        return jsonify({"error": str(exc)}), 500


def _run_job(name: str) -> tuple:
    try:
        report = _get_job(name).run_once()
        if report is None:
            return jsonify({"error": f"{name} tick already running"}), 409
        return jsonify(asdict(report)), 200
    except Exception as exc:
        logger.exception("Error running %s: %s", name, exc)
        return jsonify({"error": str(exc)}), 500


@api.route("/admin/factchecks/run", methods=["POST"])
@require_admin
def run_recheck() -> tuple:
    return _run_job("recheck")


@api.route("/admin/factchecks/run/user/<user_id>", methods=["POST"])
@require_admin
def run_for_user(user_id: str) -> tuple:
    data = request.get_json(silent=True) or {}
    try:
        queued = recheck_user_posts(
            _get_database(), _get_orchestrator(), user_id, force=_bool_field(data, "force")
        )
        return jsonify({"userId": user_id, "queued": queued}), 200
    except Exception as exc:
        logger.exception("Error running fact-checks for user %s: %s", user_id, exc)
        return jsonify({"error": str(exc)}), 500


@api.route("/admin/retention/run", methods=["POST"])
@require_admin
def run_retention() -> tuple:
    return _run_job("retention")


@api.route("/dev/ai/factcheck", methods=["POST"])
@dev_only
def dev_ai_factcheck() -> tuple:
    classifier = _get_classifier()
    if classifier is None:
        return jsonify({"ok": False, "error": "service_not_loaded"}), 500
    data = request.get_json(silent=True) or {}
    result = classifier.classify(str(data.get("text") or ""), image_url=data.get("imageUrl"))
    return jsonify(asdict(result)), 200 if result.ok else 500


@api.route("/dev/debug/trust", methods=["GET"])
@dev_only
def dev_debug_trust() -> tuple:
    settings = _get_settings()
    classifier = _get_classifier()
    budget = current_app.config.get("BUDGET")
    return jsonify({
        "ok": True,
        "env": settings.env,
        "model": settings.gemini_model,
        "queue": type(_get_orchestrator().queue).__name__,
        "gemini": {
            "enabled": settings.ai_enabled,
            "force": settings.ai_force,
            "rulesFirst": settings.rules_first,
            "demoOnly": settings.ai_demo_only,
            "triggerTag": settings.ai_trigger_tag,
            "hourlyBudget": settings.ai_hourly_budget,
            "budgetRemaining": budget.remaining() if budget is not None else None,
            "minIntervalMs": settings.ai_min_interval_ms,
            "hasService": classifier is not None,
            "hasApiKey": bool(classifier is not None and classifier.available),
        },
    }), 200
