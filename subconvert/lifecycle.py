"""Startup, shutdown, and config-change supervision.

An Instance is one fully wired server built from one Config. The Supervisor
owns the current Instance handle; a config change stops the old instance,
waits for it, and builds a new one from scratch.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from dataclasses import replace
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from werkzeug.serving import BaseWSGIServer, WSGIRequestHandler, make_server

from . import __version__
from .config import Config, ServerConfig, load_config
from .errors import CacheIOError, SubconvertError
from .fetcher import Fetcher
from .log import flush_logging, setup_logging
from .purge import CachePurger
from .render import RenderService
from .server import InflightTracker, create_app
from .store import DataStore
from .triggers import RefreshReport, TriggerAggregator

logger = logging.getLogger(__name__)

CONFIG_RELOAD_DEBOUNCE = 3.0
CONFIG_SETTLE_DELAY = 0.5


def _handler_class(server: ServerConfig) -> type[WSGIRequestHandler]:
    # one socket timeout bounds reads, writes, and idle keep-alive waits alike
    limits = [t for t in (server.read_timeout, server.write_timeout, server.idle_timeout) if t > 0]

    class RequestHandler(WSGIRequestHandler):
        timeout = max(limits) if limits else None

        def log_request(self, code="-", size="-"):
            # request outcomes are logged by the app itself
            pass

    return RequestHandler


class Instance:
    """One running server: store, triggers, and HTTP listener for a single Config."""

    def __init__(
        self,
        cfg: Config,
        fetcher: Fetcher | None = None,
        host: str = "0.0.0.0",
        port: int | None = None,
        on_fatal: Callable[[str], None] | None = None,
    ):
        self.cfg = cfg
        self.host = host
        self.port = cfg.server.port if port is None else port
        self.on_fatal = on_fatal
        self.fetcher = fetcher or Fetcher(cfg.request_timeout)
        self.stop_event = threading.Event()
        self.store = DataStore(cfg)
        self.renderer = RenderService(cfg, self.store)
        self.triggers = TriggerAggregator(cfg, self.fetcher, self.store, self.stop_event)
        self.purger = CachePurger(cfg.cloudflare, cfg.request_timeout)
        self.inflight = InflightTracker()
        self.app = create_app(cfg, self.store, self.renderer, self.refresh, self.purger, self.inflight)
        self.startup_report: RefreshReport | None = None
        self._server: BaseWSGIServer | None = None
        self._serve_thread: threading.Thread | None = None
        self._shutdown_lock = threading.Lock()
        self._closing = False
        self._done = threading.Event()

    @property
    def server_port(self) -> int | None:
        return self._server.server_port if self._server else None

    def refresh(self) -> RefreshReport:
        return self.triggers.refresh_now()

    def ensure_cache_dir(self) -> None:
        try:
            os.makedirs(self.cfg.cache.directory, exist_ok=True)
        except OSError as e:
            raise CacheIOError(f"create cache dir error: {e}") from e

    def start(self) -> None:
        """Cache dir, initial fetch, triggers, then the HTTP listener, in that order."""
        self.ensure_cache_dir()
        self.startup_report = self.triggers.prime()
        snap = self.store.snapshot()
        if not (snap.has_data and snap.has_template):
            logger.warning(
                "starting degraded: nodes=%d templates=%d", snap.node_count, snap.template_count
            )
        self.triggers.start()
        try:
            self._server = make_server(
                self.host,
                self.port,
                self.app,
                threaded=True,
                request_handler=_handler_class(self.cfg.server),
            )
        except (OSError, SystemExit) as e:
            # werkzeug exits instead of raising when the port is taken
            self.stop_event.set()
            self.triggers.stop()
            self.fetcher.close()
            self.purger.close()
            raise OSError(f"failed to bind {self.host}:{self.port}: {e}") from None
        self._serve_thread = threading.Thread(target=self._serve, name="http-listener", daemon=True)
        self._serve_thread.start()
        logger.info("server is running on http://%s:%s", self.host, self.server_port)

    def _serve(self) -> None:
        try:
            self._server.serve_forever(poll_interval=0.5)
        except Exception as e:
            logger.error("http listener failed: %s", e)
            if self.on_fatal is not None:
                self.on_fatal(f"listener error: {e}")
            else:
                self.shutdown(f"listener error: {e}")

    def shutdown(self, reason: str = "") -> None:
        """Stop triggers, drain the listener within server.shutdown_timeout, flush logs. Idempotent."""
        with self._shutdown_lock:
            if self._closing:
                return
            self._closing = True
        logger.info("server shutting down (%s)", reason or "requested")
        self.stop_event.set()
        deadline = float(self.cfg.server.shutdown_timeout)
        self.triggers.stop(timeout=deadline)
        if self._server is not None:
            self._server.shutdown()
            if not self.inflight.wait_idle(deadline):
                logger.warning("forcing close with %d request(s) still in flight", self.inflight.count)
            self._server.server_close()
            logger.info("server stopped gracefully")
        self.fetcher.close()
        self.purger.close()
        flush_logging()
        self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


class ConfigWatchHandler(FileSystemEventHandler):
    def __init__(self, path: str, on_change: Callable[[], None]):
        super().__init__()
        self.path = os.path.abspath(path)
        self.on_change = on_change

    def _matches(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and os.path.abspath(os.fsdecode(p)) == self.path for p in paths)

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._matches(event):
            self.on_change()

    # editor saves can arrive as a create or a rename onto the path
    on_created = on_modified
    on_moved = on_modified


class Supervisor:
    """Owns the replaceable Instance handle for the process."""

    def __init__(
        self,
        config_path: str,
        port: int | None = None,
        mode: str = "",
        instance_factory: Callable[..., Instance] = Instance,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config_path = config_path
        self.port = port
        self.mode = mode
        self.instance_factory = instance_factory
        self.clock = clock
        self.instance: Instance | None = None
        self._stop = threading.Event()
        self._swap_lock = threading.Lock()
        self._last_reload: float | None = None
        self._observer: Observer | None = None

    def load(self) -> Config:
        cfg = load_config(self.config_path)
        if self.port:
            cfg = replace(cfg, server=replace(cfg.server, port=self.port))
        return cfg

    def build(self) -> Instance:
        """Config, logging, then a started Instance."""
        cfg = self.load()
        setup_logging(cfg.logging)
        logger.info("subconvert %s starting (mode=%s)", __version__, self.mode or "default")
        logger.info(
            "config %s: port=%d cache=%s refresh_interval=%dm templates=%s",
            cfg.source_path,
            cfg.server.port,
            cfg.cache.directory,
            cfg.subscription.refresh_interval,
            ",".join(cfg.enabled_templates()),
        )
        instance = self.instance_factory(cfg, on_fatal=self._fatal)
        instance.start()
        return instance

    def _fatal(self, reason: str) -> None:
        logger.error("fatal: %s", reason)
        self.stop()

    def stop(self) -> None:
        self._stop.set()

    def reload(self) -> bool:
        """Replace the running instance with one built from the current config file."""
        now = self.clock()
        if self._last_reload is not None and now - self._last_reload < CONFIG_RELOAD_DEBOUNCE:
            logger.debug("config change ignored (too soon)")
            return False
        with self._swap_lock:
            if self._stop.is_set():
                return False
            logger.info("config file changed, rebuilding server")
            old = self.instance
            if old is not None:
                old.shutdown("config change")
                old.wait(old.cfg.server.shutdown_timeout + 5)
            self.instance = None
            try:
                self.instance = self.build()
            except (SubconvertError, OSError) as e:
                logger.error("failed to rebuild server: %s", e)
                return False
            self._last_reload = self.clock()
        logger.info("server reloaded with new configuration")
        return True

    def _on_config_change(self) -> None:
        time.sleep(CONFIG_SETTLE_DELAY)
        self.reload()

    def watch_config(self) -> None:
        handler = ConfigWatchHandler(self.config_path, self._on_config_change)
        observer = Observer()
        observer.schedule(handler, os.path.dirname(os.path.abspath(self.config_path)), recursive=False)
        observer.daemon = True
        try:
            observer.start()
        except OSError as e:
            logger.error("config watcher failed to start: %s", e)
            return
        self._observer = observer
        logger.info("config file watcher started on %s", self.config_path)

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handle(signum, frame):
            logger.info("received signal %s", signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    def run(self) -> None:
        """Start serving and block until a signal or fatal error, then shut down."""
        self._install_signal_handlers()
        self.instance = self.build()
        self.watch_config()
        while not self._stop.wait(0.5):
            pass
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(2)
        with self._swap_lock:
            if self.instance is not None:
                self.instance.shutdown("stop requested")
                self.instance.wait(self.instance.cfg.server.shutdown_timeout + 5)
        logger.info("server shutdown complete")
        flush_logging()
