"""
Background cache warming.

Two stages, each on its own thread with its own registry connection:

* the thumbnail stage walks every registered path and fills missing
  thumbnails. A pass that completes without interruption and finds nothing
  missing sets ``WorkerState.thumbnails_exhausted``; any miss clears it.
* the preview stage idles until thumbnails are exhausted, then does the same
  for previews.

Both back off while the activity flag is set: they never start a pass while
a request is in flight and abandon a running pass at the next path once one
arrives. An in-flight ``generate`` is never aborted.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from core.cache_store import DerivativeTier
from core.derivative_generator import DerivativeGenerator, normalize_source_path
from core.file_registry import FileRegistry, RegistryError
from core.worker_state import WorkerState

logger = logging.getLogger(__name__)

RegistryFactory = Callable[[], FileRegistry]


@dataclass
class SchedulerSettings:
    pause_interval: float = 0.5
    item_delay: float = 0.1
    pass_interval: float = 10.0
    preview_pass_interval: float = 30.0

    @classmethod
    def from_config(cls, config) -> "SchedulerSettings":
        defaults = cls()
        return cls(
            pause_interval=float(config.get("background.pause_interval", defaults.pause_interval)),
            item_delay=float(config.get("background.item_delay", defaults.item_delay)),
            pass_interval=float(config.get("background.pass_interval", defaults.pass_interval)),
            preview_pass_interval=float(config.get("background.preview_pass_interval",
                                                   defaults.preview_pass_interval)),
        )


@dataclass
class PassResult:
    scanned: int = 0
    misses: int = 0
    generated: int = 0
    failed: int = 0
    interrupted: bool = False


class _Stage:
    tier: DerivativeTier
    name: str

    def __init__(self, generator: DerivativeGenerator, registry_factory: RegistryFactory,
                 state: WorkerState, settings: SchedulerSettings, stop_event: threading.Event):
        self.generator = generator
        self.registry_factory = registry_factory
        self.state = state
        self.settings = settings
        self._stop = stop_event
        self.passes = 0

    @property
    def pass_interval(self) -> float:
        return self.settings.pass_interval

    def gate_open(self) -> bool:
        return True

    def after_pass(self, result: PassResult) -> None:
        pass

    def run(self) -> None:
        try:
            registry = self.registry_factory()
        except RegistryError as e:
            logger.error("%s stage stopped: %s", self.name, e)
            return
        try:
            self._loop(registry)
        except RegistryError as e:
            logger.error("%s stage stopped: %s", self.name, e)
        finally:
            registry.close()
        logger.info("%s stage exited", self.name)

    def _loop(self, registry: FileRegistry) -> None:
        while not self._stop.is_set():
            if self.state.live_traffic.is_set():
                # Bounded so a stop request is still noticed while requests keep coming.
                self.state.live_traffic.wait_clear(self.settings.pause_interval)
                continue
            if not self.gate_open():
                self._stop.wait(self.settings.pause_interval)
                continue
            result = self.run_pass(registry)
            self.passes += 1
            self.after_pass(result)
            logger.info("%s pass %d: %d paths, %d missing, %d generated, %d failed%s",
                        self.name, self.passes, result.scanned, result.misses,
                        result.generated, result.failed,
                        " (interrupted)" if result.interrupted else "")
            self._stop.wait(self.pass_interval)

    def run_pass(self, registry: FileRegistry) -> PassResult:
        result = PassResult()
        paths: List[str] = registry.all_paths()
        for raw_path in paths:
            if self._stop.is_set() or self.state.live_traffic.is_set():
                result.interrupted = True
                break
            result.scanned += 1
            path = normalize_source_path(raw_path)
            if self.generator.is_cached(path, self.tier):
                continue
            result.misses += 1
            try:
                data = self.generator.generate(path, self.tier)
            except Exception:
                logger.exception("%s stage: unexpected error generating %s for %s",
                                 self.name, self.tier.label, path)
                data = None
            if data is None:
                result.failed += 1
                logger.debug("%s stage: no %s for %s", self.name, self.tier.label, path)
            else:
                result.generated += 1
            self._stop.wait(self.settings.item_delay)
        return result


class ThumbnailStage(_Stage):
    tier = DerivativeTier.THUMBNAIL
    name = "thumbnail"

    def after_pass(self, result: PassResult) -> None:
        if not result.interrupted and result.misses == 0:
            if not self.state.thumbnails_exhausted.is_set():
                logger.info("All thumbnails cached, enabling preview stage")
            self.state.thumbnails_exhausted.set()
        else:
            self.state.thumbnails_exhausted.clear()


class PreviewStage(_Stage):
    tier = DerivativeTier.PREVIEW
    name = "preview"

    @property
    def pass_interval(self) -> float:
        return self.settings.preview_pass_interval

    def gate_open(self) -> bool:
        return self.state.thumbnails_exhausted.is_set()


class BackgroundScheduler:
    """Owns the two stage threads and the channel used to stop them."""

    def __init__(self, generator: DerivativeGenerator, registry_factory: RegistryFactory,
                 state: WorkerState, settings: Optional[SchedulerSettings] = None):
        self.state = state
        self.settings = settings or SchedulerSettings()
        self._stop = threading.Event()
        self.thumbnail_stage = ThumbnailStage(generator, registry_factory, state, self.settings, self._stop)
        self.preview_stage = PreviewStage(generator, registry_factory, state, self.settings, self._stop)
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        for stage in (self.thumbnail_stage, self.preview_stage):
            thread = threading.Thread(target=stage.run, name=f"{stage.name}-stage", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Background scheduler started")

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)
