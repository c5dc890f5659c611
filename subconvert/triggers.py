"""Schedule, filesystem, and manual triggers for fetch-then-reload.

Every trigger resolves to Refresher.refresh(resource). The refresher holds
one lock per resource so a fetch+reload from one source never overlaps a
fetch+reload of the same resource from another; different resources still
run in parallel.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import Config
from .errors import SubconvertError
from .fetcher import Fetcher
from .store import DataStore

logger = logging.getLogger(__name__)

NODES = "nodes"
TEMPLATE = "template"
WATCH_DEBOUNCE_SECONDS = 1.0


@dataclass(frozen=True)
class Resource:
    kind: str
    name: str
    url: str
    path: str

    @property
    def key(self) -> str:
        return NODES if self.kind == NODES else f"{TEMPLATE}:{self.name}"

    @property
    def label(self) -> str:
        return "node file" if self.kind == NODES else f"template {self.name}"


def resources_from_config(cfg: Config) -> List[Resource]:
    """The node list followed by every enabled template."""
    resources = [Resource(NODES, NODES, cfg.subscription.url, cfg.node_file_path)]
    for key, tpl in cfg.enabled_templates().items():
        resources.append(Resource(TEMPLATE, key, tpl.url, cfg.template_file_path(key)))
    return resources


@dataclass
class RefreshReport:
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class Refresher:
    """Runs fetch+reload pairs with at most one in flight per resource."""

    def __init__(self, fetcher: Fetcher, store: DataStore):
        self.fetcher = fetcher
        self.store = store
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, resource: Resource) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(resource.key)
            if lock is None:
                lock = threading.Lock()
                self._locks[resource.key] = lock
            return lock

    def reload(self, resource: Resource) -> None:
        if resource.kind == NODES:
            self.store.reload_nodes()
        else:
            self.store.reload_template(resource.name)

    def refresh(self, resource: Resource, wait: bool = True) -> bool:
        """Fetch then reload one resource. Returns False if skipped because one was already running."""
        lock = self._lock_for(resource)
        if not lock.acquire(blocking=wait):
            logger.info("%s refresh already in flight, skipping", resource.label)
            return False
        try:
            self.fetcher.fetch(resource.url, resource.path)
            self.reload(resource)
        finally:
            lock.release()
        return True

    def prime(self, resource: Resource) -> None:
        """Startup variant: a failed fetch still reloads whatever copy is already on disk."""
        lock = self._lock_for(resource)
        with lock:
            try:
                self.fetcher.fetch(resource.url, resource.path)
            except SubconvertError as e:
                logger.error("initial fetch of %s failed: %s", resource.label, e)
            self.reload(resource)

    def run_all(self, resources: List[Resource], action: Callable[[Resource], object]) -> RefreshReport:
        """Run action for every resource in parallel and collect outcomes; never stops at the first error."""
        report = RefreshReport()
        if not resources:
            return report
        with ThreadPoolExecutor(max_workers=len(resources), thread_name_prefix="refresh") as pool:
            futures = [(res, pool.submit(action, res)) for res in resources]
            for res, fut in futures:
                try:
                    result = fut.result()
                except SubconvertError as e:
                    report.errors.append(f"{res.label}: {e}")
                    continue
                except Exception as e:
                    logger.exception("unexpected error refreshing %s", res.label)
                    report.errors.append(f"{res.label}: unexpected error: {e!r}")
                    continue
                if result is False:
                    report.skipped.append(res.key)
                else:
                    report.succeeded.append(res.key)
        return report

    def refresh_all(self, resources: List[Resource], wait: bool = True) -> RefreshReport:
        return self.run_all(resources, lambda res: self.refresh(res, wait=wait))

    def prime_all(self, resources: List[Resource]) -> RefreshReport:
        return self.run_all(resources, self.prime)


class ScheduleTrigger(threading.Thread):
    """Fires a refresh of every resource each interval until stop_event is set."""

    def __init__(self, refresher: Refresher, resources: List[Resource], interval: float, stop_event: threading.Event):
        super().__init__(name="schedule-trigger", daemon=True)
        self.refresher = refresher
        self.resources = resources
        self.interval = interval
        self.stop_event = stop_event
        self.update_count = 0

    def run(self) -> None:
        logger.info("auto-update started (interval=%ss)", self.interval)
        while not self.stop_event.wait(self.interval):
            self.update_count += 1
            try:
                self.tick()
            except Exception:
                logger.exception("auto-update #%d failed", self.update_count)
        logger.info("auto-update stopped after %d updates", self.update_count)

    def tick(self) -> RefreshReport:
        logger.info("auto-update #%d triggered", self.update_count)
        # a resource already being refreshed by another trigger is skipped, not queued
        report = self.refresher.refresh_all(self.resources, wait=False)
        for key in report.succeeded:
            logger.info("auto-update #%d: %s refreshed", self.update_count, key)
        for err in report.errors:
            logger.warning("auto-update #%d: %s", self.update_count, err)
        logger.info("next update in %ss", self.interval)
        return report


class Debouncer:
    """Suppresses repeat keys seen within window seconds of the last accepted one."""

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.clock = clock
        self._last: Dict[str, float] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            last = self._last.get(key)
            if last is not None and now - last < self.window:
                return False
            self._last[key] = now
            return True


class CacheWatchHandler(FileSystemEventHandler):
    """Maps write events on cache files back to their resource and refreshes it."""

    def __init__(
        self,
        refresher: Refresher,
        resources: List[Resource],
        stop_event: threading.Event,
        submit: Callable[[Callable[[], None]], object],
        debouncer: Debouncer | None = None,
    ):
        super().__init__()
        self.refresher = refresher
        self.stop_event = stop_event
        self.submit = submit
        self.debouncer = debouncer or Debouncer(WATCH_DEBOUNCE_SECONDS)
        self.by_path = {os.path.abspath(res.path): res for res in resources}

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or self.stop_event.is_set():
            return
        path = os.path.abspath(os.fsdecode(event.src_path))
        resource = self.by_path.get(path)
        if resource is None:
            return
        if not self.debouncer.allow(path):
            logger.debug("ignoring repeat write on %s", path)
            return
        logger.info("%s changed on disk, refreshing", resource.label)
        self.submit(lambda: self._refresh(resource))

    def _refresh(self, resource: Resource) -> None:
        if self.stop_event.is_set():
            return
        try:
            self.refresher.refresh(resource)
        except SubconvertError as e:
            logger.error("refresh of %s after file change failed: %s", resource.label, e)
        except Exception:
            logger.exception("refresh of %s after file change failed", resource.label)
        else:
            logger.info("%s reloaded after file change", resource.label)


class TriggerAggregator:
    """Owns the three trigger sources for one server instance."""

    def __init__(self, cfg: Config, fetcher: Fetcher, store: DataStore, stop_event: threading.Event):
        self.cfg = cfg
        self.stop_event = stop_event
        self.resources = resources_from_config(cfg)
        self.refresher = Refresher(fetcher, store)
        self.schedule = ScheduleTrigger(self.refresher, self.resources, cfg.refresh_interval_seconds, stop_event)
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="cache-watch")
        self.watch_handler = CacheWatchHandler(self.refresher, self.resources, stop_event, self._pool.submit)
        self._observer: Observer | None = None

    def prime(self) -> RefreshReport:
        report = self.refresher.prime_all(self.resources)
        if report.ok:
            logger.info("initial fetch completed (%d resources)", len(report.succeeded))
        else:
            logger.error("initial fetch completed with errors: %s", "; ".join(report.errors))
        return report

    def start(self) -> None:
        self.schedule.start()
        observer = Observer()
        observer.schedule(self.watch_handler, self.cfg.cache.directory, recursive=False)
        observer.daemon = True
        try:
            observer.start()
        except OSError as e:
            logger.error("cache watcher failed to start on %s: %s", self.cfg.cache.directory, e)
        else:
            self._observer = observer
            logger.info("cache watcher monitoring %s", self.cfg.cache.directory)

    def refresh_now(self) -> RefreshReport:
        """Manual trigger: refresh every enabled resource in parallel and wait for all of them."""
        return self.refresher.refresh_all(self.resources, wait=True)

    def stop(self, timeout: float = 5.0) -> None:
        """Expects stop_event to be set already; joins the background loops."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None
        if self.schedule.is_alive():
            self.schedule.join(timeout)
        self._pool.shutdown(wait=False, cancel_futures=True)
