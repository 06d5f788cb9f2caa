"""Stop the running imagefind daemon.

The daemon holds an exclusive flock on ``<state dir>/daemon.pid`` for its
whole lifetime, so "lock free" is the proof that it has exited.
"""

import errno
import fcntl
import logging
import os
import signal
import time

from config.config_manager import ConfigManager

POLL_INTERVAL = 0.2


def pid_file_path(config_manager: ConfigManager | None = None) -> str:
    from imagefind_daemon import state_dir
    return os.path.join(state_dir(config_manager or ConfigManager()), "daemon.pid")


def lock_holder(pid_path: str) -> int | None:
    """PID of the process holding the daemon lock, 0 if held by an unknown PID, None if free."""
    try:
        fd = open(pid_path, "r")
    except FileNotFoundError:
        return None
    with fd:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            if e.errno not in (errno.EWOULDBLOCK, errno.EAGAIN):
                raise
            content = fd.read().strip()
            return int(content) if content.isdigit() else 0
        fcntl.flock(fd, fcntl.LOCK_UN)
        return None


def _signal(pid: int, sig: int) -> bool:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        return False
    except PermissionError:
        logging.error("No permission to signal daemon PID %d", pid)
        return False
    return True


def _wait_released(pid_path: str, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while lock_holder(pid_path) is not None:
        if time.monotonic() >= deadline:
            return False
        time.sleep(POLL_INTERVAL)
    return True


def stop_daemon(timeout: float = 10.0, config_manager: ConfigManager | None = None) -> bool:
    """SIGTERM the daemon, escalating to SIGKILL after *timeout*. True once the lock is free."""
    pid_path = pid_file_path(config_manager)
    pid = lock_holder(pid_path)
    if pid is None:
        logging.info("Daemon is not running.")
        return True
    if pid == 0:
        logging.error("Daemon lock %s is held but holds no PID; stop it manually.", pid_path)
        return False

    for sig, wait in ((signal.SIGTERM, timeout), (signal.SIGKILL, 2.0)):
        logging.info("Sending %s to daemon PID %d", signal.Signals(sig).name, pid)
        if _signal(pid, sig) and _wait_released(pid_path, wait):
            logging.info("Daemon stopped.")
            return True
        if lock_holder(pid_path) is None:
            return True
        logging.warning("Daemon PID %d still holds %s", pid, pid_path)

    logging.error("Failed to stop daemon PID %d.", pid)
    return False


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
    if not stop_daemon():
        raise SystemExit(1)


if __name__ == "__main__":
    main()
