"""HTTP endpoints: rendered config, health, and manual refresh."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from flask import Flask, Response, jsonify, request

from .config import Config
from .errors import AuthError, FetchError, NotFoundError, RenderError, TemplateNotLoadedError
from .purge import CachePurger
from .render import RenderService
from .store import DataStore
from .triggers import RefreshReport

logger = logging.getLogger(__name__)

PROFILE_UPDATE_INTERVAL = "6"


class InflightTracker:
    """Counts requests currently inside the app so shutdown can wait for them."""

    def __init__(self):
        self._count = 0
        self._cond = threading.Condition()

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    def enter(self) -> None:
        with self._cond:
            self._count += 1

    def leave(self) -> None:
        with self._cond:
            self._count -= 1
            if self._count <= 0:
                self._count = 0
                self._cond.notify_all()

    def wait_idle(self, timeout: float) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout=timeout)


def _text(body: str, status: int) -> Response:
    return Response(body, status=status, content_type="text/plain")


def create_app(
    cfg: Config,
    store: DataStore,
    renderer: RenderService,
    refresh: Callable[[], RefreshReport],
    purger: CachePurger | None = None,
    inflight: InflightTracker | None = None,
) -> Flask:
    app = Flask(__name__)

    if inflight is not None:

        @app.before_request
        def _track_enter():
            inflight.enter()

        @app.teardown_request
        def _track_leave(exc):
            inflight.leave()

    def _require_password() -> None:
        if request.args.get("password", "") != cfg.password:
            logger.warning("unauthorized request from %s path=%s", request.remote_addr, request.path)
            raise AuthError("Password Error")

    @app.errorhandler(AuthError)
    def _auth_error(e: AuthError):
        return _text("Password Error", 401)

    @app.errorhandler(NotFoundError)
    def _not_found(e: NotFoundError):
        logger.warning("%s (remote=%s)", e, request.remote_addr)
        return _text(str(e), 400)

    @app.errorhandler(RenderError)
    def _render_error(e: RenderError):
        if not isinstance(e, TemplateNotLoadedError):
            logger.error("error rendering template: %s", e.__cause__ or e)
        return _text(str(e), 500)

    @app.get("/")
    def index():
        """Render the requested (or default) template with the current nodes."""
        _require_password()
        set_type = request.args.get("type", "")
        rendered = renderer.render(request.args.get("template", ""), {"type": set_type})
        resp = Response(rendered.text, status=200, content_type="application/json")
        resp.headers["Profile-Update-Interval"] = PROFILE_UPDATE_INTERVAL
        resp.headers["Subscription-Userinfo"] = f"upload=0; download=0; total={rendered.node_count}"
        logger.info(
            "served config to %s template=%s (%s) type=%s nodes=%d",
            request.remote_addr,
            rendered.template_key,
            rendered.template_name,
            set_type,
            rendered.node_count,
        )
        return resp

    @app.get("/health")
    def health():
        snap = store.snapshot()
        ok = snap.has_data and snap.has_template
        payload = {
            "status": "ok" if ok else "degraded",
            "has_data": snap.has_data,
            "has_template": snap.has_template,
            "node_count": snap.node_count,
            "template_count": snap.template_count,
        }
        return jsonify(payload), 200 if ok else 503

    @app.get("/refresh")
    def manual_refresh():
        """Fetch and reload every enabled resource now; report all failures together."""
        _require_password()
        logger.info("manual refresh triggered by %s", request.remote_addr)
        report = refresh()
        errors = list(report.errors)
        if purger is not None and purger.enabled:
            try:
                purger.purge()
            except FetchError as e:
                logger.error("cloudflare cache purge failed: %s", e)
                errors.append(f"cloudflare cache purge: {e}")
        if errors:
            logger.error("manual refresh failed: %s", "; ".join(errors))
            return jsonify({"status": "error", "errors": errors}), 500
        snap = store.snapshot()
        logger.info("manual refresh completed nodes=%d templates=%d", snap.node_count, snap.template_count)
        return jsonify(
            {
                "status": "success",
                "message": "Files refreshed successfully",
                "node_count": snap.node_count,
                "template_count": snap.template_count,
            }
        )

    return app
