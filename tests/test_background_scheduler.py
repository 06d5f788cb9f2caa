"""Tests for the background scheduler stages, the activity flag and the file registry."""
import struct
import threading
import time
from functools import partial

import pytest

from core.background_scheduler import (
    BackgroundScheduler,
    PreviewStage,
    SchedulerSettings,
    ThumbnailStage,
)
from core.cache_store import DerivativeTier
from core.file_registry import FileRegistry, RegistryError
from core.worker_state import ActivityFlag, WorkerState
from tests.conftest import create_registry


FAST = SchedulerSettings(pause_interval=0.01, item_delay=0.0,
                         pass_interval=0.02, preview_pass_interval=0.02)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _poll_until(predicate, timeout=5.0, interval=0.02):
    """Poll predicate() until truthy or timeout. Returns last value."""
    deadline = time.monotonic() + timeout
    result = None
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    return result


class _StubRegistry:

    def __init__(self, paths):
        self.paths = list(paths)
        self.closed = False
        self.fail_query = False

    def all_paths(self):
        if self.fail_query:
            raise RegistryError("query failed")
        return list(self.paths)

    def close(self):
        self.closed = True


class _StubGenerator:
    """Records generate() calls; a successful call makes the entry cached."""

    def __init__(self):
        self._lock = threading.Lock()
        self.cached = {tier: set() for tier in DerivativeTier}
        self.calls: list[tuple[str, DerivativeTier]] = []
        self.failing_tiers: set[DerivativeTier] = set()
        self.on_generate = None
        self.raising_paths: dict[str, Exception] = {}

    def is_cached(self, path, tier):
        with self._lock:
            return path in self.cached[tier]

    def generate(self, path, tier, force=False):
        assert not force
        with self._lock:
            self.calls.append((path, tier))
        if path in self.raising_paths:
            raise self.raising_paths[path]
        if self.on_generate is not None:
            self.on_generate(path, tier)
        if tier in self.failing_tiers:
            return None
        with self._lock:
            self.cached[tier].add(path)
        return b"\xff\xd8jpeg"

    def calls_for(self, tier):
        with self._lock:
            return [p for p, t in self.calls if t is tier]


def _stage(cls, generator, registry, state=None):
    return cls(generator, lambda: registry, state or WorkerState(), FAST, threading.Event())


@pytest.fixture()
def scheduler_parts():
    generator = _StubGenerator()
    registry = _StubRegistry(["/lib/a.jpg", "/lib/b.cr2.xmp", "/lib/c.tif"])
    state = WorkerState()
    scheduler = BackgroundScheduler(generator, lambda: registry, state, FAST)
    yield generator, registry, state, scheduler
    scheduler.stop()
    scheduler.join(timeout=5)


# ---------------------------------------------------------------------------
# ActivityFlag
# ---------------------------------------------------------------------------

class TestActivityFlag:
    def test_initially_clear(self):
        assert not ActivityFlag().is_set()

    def test_reference_counted(self):
        flag = ActivityFlag()
        flag.enter()
        flag.enter()
        flag.exit()
        assert flag.is_set()
        flag.exit()
        assert not flag.is_set()

    def test_hold_releases_on_error(self):
        flag = ActivityFlag()
        with pytest.raises(ValueError):
            with flag.hold():
                assert flag.is_set()
                raise ValueError("request failed")
        assert not flag.is_set()

    def test_unbalanced_exit_raises(self):
        with pytest.raises(RuntimeError):
            ActivityFlag().exit()

    def test_wait_clear(self):
        flag = ActivityFlag()
        flag.enter()
        assert flag.wait_clear(timeout=0.05) is False
        threading.Timer(0.05, flag.exit).start()
        assert flag.wait_clear(timeout=5) is True


# ---------------------------------------------------------------------------
# Single passes
# ---------------------------------------------------------------------------

class TestThumbnailPass:
    def test_generates_misses_with_normalized_paths(self):
        generator = _StubGenerator()
        registry = _StubRegistry(["/lib/a.jpg", "/lib/b.cr2.xmp"])
        result = _stage(ThumbnailStage, generator, registry).run_pass(registry)
        assert generator.calls == [("/lib/a.jpg", DerivativeTier.THUMBNAIL),
                                   ("/lib/b.cr2", DerivativeTier.THUMBNAIL)]
        assert (result.scanned, result.misses, result.generated) == (2, 2, 2)
        assert not result.interrupted

    def test_cached_paths_skipped(self):
        generator = _StubGenerator()
        generator.cached[DerivativeTier.THUMBNAIL].add("/lib/a.jpg")
        registry = _StubRegistry(["/lib/a.jpg", "/lib/b.jpg"])
        _stage(ThumbnailStage, generator, registry).run_pass(registry)
        assert generator.calls_for(DerivativeTier.THUMBNAIL) == ["/lib/b.jpg"]

    def test_exhaustion_tracks_misses(self):
        generator = _StubGenerator()
        registry = _StubRegistry(["/lib/a.jpg", "/lib/b.jpg"])
        state = WorkerState()
        stage = _stage(ThumbnailStage, generator, registry, state)

        stage.after_pass(stage.run_pass(registry))
        assert not state.thumbnails_exhausted.is_set()

        stage.after_pass(stage.run_pass(registry))
        assert state.thumbnails_exhausted.is_set()

        registry.paths.append("/lib/new.jpg")
        stage.after_pass(stage.run_pass(registry))
        assert not state.thumbnails_exhausted.is_set()

    def test_unexpected_generator_error_is_contained(self):
        generator = _StubGenerator()
        generator.raising_paths["/lib/bad.jpg"] = struct.error("unpack requires a buffer of 2 bytes")
        registry = _StubRegistry(["/lib/bad.jpg", "/lib/ok.jpg"])
        result = _stage(ThumbnailStage, generator, registry).run_pass(registry)
        assert generator.calls_for(DerivativeTier.THUMBNAIL) == ["/lib/bad.jpg", "/lib/ok.jpg"]
        assert (result.misses, result.generated, result.failed) == (2, 1, 1)

    def test_failing_path_keeps_stage_busy(self):
        generator = _StubGenerator()
        generator.failing_tiers.add(DerivativeTier.THUMBNAIL)
        registry = _StubRegistry(["/lib/broken.jpg", "/lib/ok.jpg"])
        state = WorkerState()
        stage = _stage(ThumbnailStage, generator, registry, state)
        for _ in range(3):
            result = stage.run_pass(registry)
            stage.after_pass(result)
        assert result.failed == 2
        assert not state.thumbnails_exhausted.is_set()
        assert len(generator.calls) == 6

    def test_activity_mid_pass_interrupts(self):
        generator = _StubGenerator()
        registry = _StubRegistry(["/lib/a.jpg", "/lib/b.jpg", "/lib/c.jpg"])
        state = WorkerState()
        generator.on_generate = lambda path, tier: state.live_traffic.enter()
        stage = _stage(ThumbnailStage, generator, registry, state)

        result = stage.run_pass(registry)
        stage.after_pass(result)
        assert result.interrupted
        assert generator.calls == [("/lib/a.jpg", DerivativeTier.THUMBNAIL)]
        assert not state.thumbnails_exhausted.is_set()

    def test_interrupted_pass_without_misses_is_not_exhaustion(self):
        generator = _StubGenerator()
        generator.cached[DerivativeTier.THUMBNAIL].update({"/lib/a.jpg", "/lib/b.jpg"})
        registry = _StubRegistry(["/lib/a.jpg", "/lib/b.jpg"])
        state = WorkerState()
        state.live_traffic.enter()
        stage = _stage(ThumbnailStage, generator, registry, state)
        result = stage.run_pass(registry)
        stage.after_pass(result)
        assert result.interrupted and result.misses == 0
        assert not state.thumbnails_exhausted.is_set()


class TestPreviewPass:
    def test_gate_follows_exhaustion_flag(self):
        state = WorkerState()
        stage = _stage(PreviewStage, _StubGenerator(), _StubRegistry([]), state)
        assert not stage.gate_open()
        state.thumbnails_exhausted.set()
        assert stage.gate_open()

    def test_generates_previews(self):
        generator = _StubGenerator()
        registry = _StubRegistry(["/lib/a.jpg", "/lib/a.jpg.xmp"])
        _stage(PreviewStage, generator, registry).run_pass(registry)
        assert generator.calls == [("/lib/a.jpg", DerivativeTier.PREVIEW)]


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------

class TestBackgroundScheduler:
    def test_fills_both_tiers(self, scheduler_parts):
        generator, _, state, scheduler = scheduler_parts
        scheduler.start()
        expected = ["/lib/a.jpg", "/lib/b.cr2", "/lib/c.tif"]
        assert _poll_until(lambda: sorted(generator.calls_for(DerivativeTier.PREVIEW)) == expected)
        assert sorted(generator.calls_for(DerivativeTier.THUMBNAIL)) == expected
        assert state.thumbnails_exhausted.is_set()

    def test_no_generation_while_activity_flag_held(self, scheduler_parts):
        generator, _, state, scheduler = scheduler_parts
        state.live_traffic.enter()
        scheduler.start()
        time.sleep(0.3)
        assert generator.calls == []

        state.live_traffic.exit()
        assert _poll_until(lambda: len(generator.calls) > 0)

    def test_resumes_as_soon_as_activity_clears(self):
        generator = _StubGenerator()
        state = WorkerState()
        slow_poll = SchedulerSettings(pause_interval=30.0, item_delay=0.0,
                                      pass_interval=0.02, preview_pass_interval=0.02)
        scheduler = BackgroundScheduler(generator, lambda: _StubRegistry(["/lib/a.jpg"]),
                                        state, slow_poll)
        state.live_traffic.enter()
        scheduler.start()
        try:
            time.sleep(0.2)
            assert generator.calls == []
            state.live_traffic.exit()
            assert _poll_until(lambda: len(generator.calls) > 0, timeout=5.0)
        finally:
            scheduler.stop()
            scheduler.join(timeout=5)

    def test_stage_survives_unexpected_error(self, scheduler_parts):
        generator, _, _, scheduler = scheduler_parts
        generator.raising_paths["/lib/a.jpg"] = struct.error("bad EXIF")
        scheduler.start()
        assert _poll_until(lambda: generator.calls_for(DerivativeTier.THUMBNAIL).count("/lib/a.jpg") >= 3)
        assert scheduler.is_running()
        assert sorted(generator.cached[DerivativeTier.THUMBNAIL]) == ["/lib/b.cr2", "/lib/c.tif"]

    def test_preview_waits_for_thumbnail_exhaustion(self, scheduler_parts):
        generator, _, state, scheduler = scheduler_parts
        generator.failing_tiers.add(DerivativeTier.THUMBNAIL)
        scheduler.start()
        assert _poll_until(lambda: len(generator.calls_for(DerivativeTier.THUMBNAIL)) >= 6)
        assert generator.calls_for(DerivativeTier.PREVIEW) == []
        assert not state.thumbnails_exhausted.is_set()

        generator.failing_tiers.clear()
        assert _poll_until(lambda: len(generator.calls_for(DerivativeTier.PREVIEW)) == 3)

    def test_registry_open_failure_stops_stages(self):
        generator = _StubGenerator()

        def broken_factory():
            raise RegistryError("cannot open")

        scheduler = BackgroundScheduler(generator, broken_factory, WorkerState(), FAST)
        scheduler.start()
        assert _poll_until(lambda: not scheduler.is_running())
        assert generator.calls == []

    def test_registry_query_failure_stops_stage_and_closes(self, scheduler_parts):
        generator, registry, _, scheduler = scheduler_parts
        registry.fail_query = True
        scheduler.start()
        assert _poll_until(lambda: registry.closed)
        assert generator.calls == []

    def test_stop_joins_promptly(self, scheduler_parts):
        _, _, _, scheduler = scheduler_parts
        scheduler.start()
        scheduler.stop()
        scheduler.join(timeout=5)
        assert not scheduler.is_running()

    def test_with_sqlite_registry(self, tmp_path):
        db = create_registry(str(tmp_path / "index.db"), ["/lib/x.jpg", "/lib/y.nef.xmp"])
        generator = _StubGenerator()
        scheduler = BackgroundScheduler(generator, partial(FileRegistry, db), WorkerState(), FAST)
        scheduler.start()
        try:
            assert _poll_until(lambda: sorted(generator.calls_for(DerivativeTier.THUMBNAIL))
                               == ["/lib/x.jpg", "/lib/y.nef"])
        finally:
            scheduler.stop()
            scheduler.join(timeout=5)


# ---------------------------------------------------------------------------
# Settings and registry adapter
# ---------------------------------------------------------------------------

class _DictConfig:
    def __init__(self, cfg):
        self._cfg = cfg

    def get(self, key, default=None):
        value = self._cfg
        for k in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(k)
        return value if value is not None else default


class TestSchedulerSettings:
    def test_defaults(self):
        settings = SchedulerSettings.from_config(_DictConfig({}))
        assert settings == SchedulerSettings(0.5, 0.1, 10.0, 30.0)

    def test_overrides(self):
        settings = SchedulerSettings.from_config(
            _DictConfig({"background": {"item_delay": 0, "pass_interval": "2.5"}}))
        assert settings.item_delay == 0.0
        assert settings.pass_interval == 2.5
        assert settings.pause_interval == 0.5


class TestFileRegistry:
    def test_lists_paths(self, tmp_path):
        db = create_registry(str(tmp_path / "index.db"), ["/a.jpg", "/b.cr2.xmp"])
        registry = FileRegistry(db)
        try:
            assert sorted(registry.all_paths()) == ["/a.jpg", "/b.cr2.xmp"]
        finally:
            registry.close()

    def test_missing_database(self, tmp_path):
        with pytest.raises(RegistryError):
            FileRegistry(str(tmp_path / "missing.db")).all_paths()

    def test_missing_table(self, tmp_path):
        import sqlite3
        db = str(tmp_path / "empty.db")
        conn = sqlite3.connect(db)
        conn.execute("CREATE TABLE other (x TEXT)")
        conn.commit()
        conn.close()
        registry = FileRegistry(db)
        with pytest.raises(RegistryError):
            registry.all_paths()
        registry.close()
