from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

from config import __version__, load_settings, parse_int
from models import BULK_ACTIONS, CrawlJob, CrawlResult, InvalidURL, NotFound
from scheduler import CrawlScheduler


settings = load_settings()
app = Flask(__name__)
scheduler = CrawlScheduler.from_settings(settings)

logger = logging.getLogger("api")


def _job_payload(job: CrawlJob) -> Dict[str, Any]:
    payload = asdict(job)
    payload.pop("claim_token", None)
    return payload


def _result_payload(result: Optional[CrawlResult]) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    payload = asdict(result)
    payload["headings"] = list(result.headings)
    return payload


def _parse_ids(value: Any) -> Optional[List[int]]:
    if not isinstance(value, list) or not value:
        return None
    ids: List[int] = []
    for item in value:
        if isinstance(item, bool):
            return None
        try:
            ids.append(int(item))
        except (TypeError, ValueError):
            return None
    return ids


@app.post("/api/urls")
def add_url():
    payload = request.get_json(silent=True) or {}
    raw = str(payload.get("url") or request.form.get("url", "")).strip()
    if not raw:
        return jsonify({"ok": False, "error": "URL is required"}), 400
    try:
        job, created = scheduler.submit_job(raw)
    except InvalidURL as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    message = "URL added and queued for crawling" if created else "URL already exists"
    return jsonify({"ok": True, "is_new": created, "message": message, "job": _job_payload(job)}), (201 if created else 200)


@app.get("/api/urls")
def list_urls():
    limit = parse_int(request.args.get("limit"), 20, 1, 100)
    offset = parse_int(request.args.get("offset"), 0, 0, 10_000_000)
    search = request.args.get("search", "").strip()
    rows, total = scheduler.list_jobs(limit=limit, offset=offset, search=search)
    return jsonify({"ok": True, "urls": rows, "total": total, "limit": limit, "offset": offset})


@app.get("/api/urls/<int:job_id>")
def get_url(job_id: int):
    try:
        job = scheduler.get_job(job_id)
    except NotFound as exc:
        return jsonify({"ok": False, "error": str(exc)}), 404
    result = scheduler.store.get_latest_result(job_id)
    return jsonify({"ok": True, "job": _job_payload(job), "result": _result_payload(result)})


@app.get("/api/urls/<int:job_id>/result")
def get_url_result(job_id: int):
    try:
        result = scheduler.get_result(job_id)
    except NotFound as exc:
        return jsonify({"ok": False, "error": str(exc)}), 404
    return jsonify({"ok": True, "result": _result_payload(result)})


@app.post("/api/urls/bulk")
def bulk_action():
    payload = request.get_json(silent=True) or {}
    action = str(payload.get("action") or "").strip().lower()
    ids = _parse_ids(payload.get("ids"))
    if action not in BULK_ACTIONS:
        return jsonify({"ok": False, "error": f"Invalid action. Use one of: {', '.join(BULK_ACTIONS)}"}), 400
    if ids is None:
        return jsonify({"ok": False, "error": "ids must be a non-empty list of job ids"}), 400
    outcomes = scheduler.bulk_action(ids, action)
    return jsonify({"ok": True, "action": action, "results": [asdict(item) for item in outcomes.values()]})


@app.get("/api/diagnostics")
def diagnostics():
    return jsonify(
        {
            "ok": True,
            "version": __version__,
            "runtime": scheduler.snapshot(),
            "config": {
                "workers": settings.workers,
                "fetch_timeout": settings.fetch_timeout,
                "link_check_timeout": settings.link_check_timeout,
                "link_check_concurrency": settings.link_check_concurrency,
                "max_redirects": settings.max_redirects,
            },
        }
    )


def main() -> int:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    logger.info(f"Starting site crawler {__version__} on {settings.host}:{settings.port} (db: {settings.db_path})")
    scheduler.start()
    try:
        app.run(host=settings.host, port=settings.port, debug=settings.debug, use_reloader=False)
    finally:
        scheduler.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
