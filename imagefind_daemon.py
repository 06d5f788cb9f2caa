import os
import sys
import logging
import signal
import time
import fcntl
import errno
from dataclasses import dataclass
from functools import partial

from config.config_manager import ConfigManager
from core.background_scheduler import BackgroundScheduler, SchedulerSettings
from core.cache_store import CacheRootError, CacheStore, DerivativeTier
from core.derivative_generator import DerivativeGenerator
from core.derivative_service import DerivativeService
from core.file_registry import FileRegistry
from core.worker_state import WorkerState
from plugins.exiftool_process import shutdown_all as shutdown_exiftool
from plugins.plugin_loader import load_plugins


# Holds the exclusive lock fd; must not be GC'd for the process lifetime.
_instance_lock_fd = None


def _acquire_instance_lock(pid_file_path: str):
    parent = os.path.dirname(pid_file_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    fd = open(pid_file_path, "a+")
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
            fd.seek(0)
            existing_pid = fd.read().strip()
            pid_info = f" (PID {existing_pid})" if existing_pid else ""
            print(
                f"imagefind daemon is already running{pid_info}. Exiting.",
                file=sys.stderr,
            )
            fd.close()
            sys.exit(1)
        raise
    fd.seek(0)
    fd.truncate()
    fd.write(str(os.getpid()))
    fd.flush()
    return fd


def state_dir(config_manager: ConfigManager) -> str:
    """Directory holding the log and pid files: the parent of the thumbnail cache."""
    return os.path.dirname(config_manager.get_path("cache.thumbnail_dir").rstrip(os.sep))


def setup_logging(log_level, log_dir):
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "daemon.log")
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=[
            logging.FileHandler(log_path, mode="a"),
            logging.StreamHandler(sys.stderr)
        ],
        force=True,
    )


@dataclass
class Runtime:
    """Everything the request layer and the background stages share."""
    config: ConfigManager
    state: WorkerState
    cache_store: CacheStore
    generator: DerivativeGenerator
    service: DerivativeService
    scheduler: BackgroundScheduler

    def shutdown(self):
        logging.info("Stopping background scheduler...")
        self.scheduler.stop()
        self.scheduler.join(timeout=5)
        logging.info("Stopping derivative service...")
        self.service.shutdown(wait=True)
        shutdown_exiftool()


def build_runtime(config_manager: ConfigManager) -> Runtime:
    """Wire up shared state. Raises CacheRootError if a cache root cannot be created."""
    state = WorkerState()
    cache_store = CacheStore(
        config_manager.get_path("cache.thumbnail_dir"),
        config_manager.get_path("cache.preview_dir"),
    )
    for tier in DerivativeTier:
        logging.info("%s cache: %s", tier.label, cache_store.cache_root(tier))

    plugin_registry = load_plugins(use_exiftool=bool(config_manager.get("tools.exiftool", True)))
    generator = DerivativeGenerator(cache_store, plugin_registry)
    service = DerivativeService(generator, state.live_traffic,
                                max_workers=int(config_manager.get("interactive.workers", 8)))
    scheduler = BackgroundScheduler(
        generator,
        partial(FileRegistry, config_manager.get_path("registry.db_path")),
        state,
        SchedulerSettings.from_config(config_manager),
    )
    return Runtime(config_manager, state, cache_store, generator, service, scheduler)


def main(config_path=None):
    config_manager = ConfigManager(config_path)
    logging_level = config_manager.get("logging_level", "INFO")
    log_dir = state_dir(config_manager)
    setup_logging(logging_level, log_dir)
    logging.info(f"Logging level set to: {logging_level.upper()}")

    pid_file_path = os.path.join(log_dir, "daemon.pid")
    global _instance_lock_fd
    _instance_lock_fd = _acquire_instance_lock(pid_file_path)
    logging.info(f"Instance lock acquired: {pid_file_path}")

    logging.info("Starting imagefind daemon...")
    try:
        runtime = build_runtime(config_manager)
    except CacheRootError as e:
        logging.critical(f"Cannot create cache directory: {e}")
        sys.exit(1)

    def shutdown_service(signum=None, frame=None):
        logging.info("Shutting down imagefind daemon...")
        runtime.shutdown()
        logging.info("Daemon shutdown complete.")
        global _instance_lock_fd
        if _instance_lock_fd is not None:
            try:
                _instance_lock_fd.close()
            except OSError:
                logging.warning("Failed to release instance lock fd on shutdown.")
            _instance_lock_fd = None
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown_service)
    signal.signal(signal.SIGTERM, shutdown_service)

    if config_manager.get("background.enabled", True):
        runtime.scheduler.start()
    else:
        logging.info("Background generation disabled by config")

    # Keep the main thread alive
    while True:
        time.sleep(1)


if __name__ == "__main__":
    main()
