"""Interactive entry point: runs generation on a pool while holding the activity flag."""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Iterator, Optional

from core.cache_store import DerivativeTier
from core.derivative_generator import DerivativeGenerator
from core.worker_state import ActivityFlag

logger = logging.getLogger(__name__)


class DerivativeService:
    """
    Interactive front of the generator for the request-handling layer.

    Generation runs on a blocking-task pool so decode work never stalls the
    thread that accepts connections. The activity flag is held from submit
    until the result is ready, which pauses the background stages.
    """

    def __init__(self, generator: DerivativeGenerator, activity_flag: ActivityFlag,
                 max_workers: int = 8):
        self.generator = generator
        self.activity_flag = activity_flag
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="derivative")

    @contextmanager
    def activity(self) -> Iterator[None]:
        """Hold the activity flag around arbitrary request handling."""
        with self.activity_flag.hold():
            yield

    def submit(self, source_path: str, tier: DerivativeTier, force: bool = False) -> "Future[Optional[bytes]]":
        self.activity_flag.enter()
        try:
            future = self._executor.submit(self.generator.generate, source_path, tier, force)
        except RuntimeError:
            self.activity_flag.exit()
            raise
        future.add_done_callback(lambda _f: self.activity_flag.exit())
        return future

    def generate(self, source_path: str, tier: DerivativeTier, force: bool = False) -> Optional[bytes]:
        """Blocking convenience wrapper around submit()."""
        return self.submit(source_path, tier, force).result()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("Derivative service stopped")
