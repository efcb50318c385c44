from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from prometheus_client import CollectorRegistry

from accesslog_exporter.config import NamespaceConfig
from accesslog_exporter.errors import FollowerError, LineParseError
from accesslog_exporter.line_format import LineFormat
from accesslog_exporter.metrics import NamespaceMetrics
from accesslog_exporter.relabeling import LabelVector, RelabelPipeline, compile_namespace
from accesslog_exporter.shutdown import ShutdownCoordinator
from accesslog_exporter.tail import Follower

log = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
STOPPED = "stopped"
FAILED = "failed"


# ----------------------------
# Per-file loop
# ----------------------------
class SourceLoop:
    """Reads one source file and feeds its lines into the namespace's metrics."""

    def __init__(
        self,
        namespace: str,
        follower: Follower,
        line_format: LineFormat,
        pipeline: RelabelPipeline,
        metrics: NamespaceMetrics,
    ):
        self.namespace = namespace
        self.follower = follower
        self.line_format = line_format
        self.pipeline = pipeline
        self.metrics = metrics
        self.state = PENDING
        self.lines = 0
        self.error: Optional[BaseException] = None

    @property
    def path(self) -> str:
        return self.follower.path

    def process_line(self, line: str) -> Optional[LabelVector]:
        self.lines += 1
        try:
            record = self.line_format.parse(line)
        except LineParseError:
            self.metrics.parse_error()
            log.warning("error while parsing line %r from %s", line, self.path)
            return None

        labels = self.pipeline.apply(record)
        self.metrics.observe(labels, record)
        return labels

    async def run(self) -> None:
        # follower.next() blocks while the file is idle: one reader thread per source
        reader = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"source:{self.path}")
        loop = asyncio.get_running_loop()
        self.state = RUNNING
        try:
            while True:
                line = await loop.run_in_executor(reader, self.follower.next)
                if line is None:
                    break
                self.process_line(line)
        except FollowerError as e:
            self.state = FAILED
            self.error = e
            raise
        except asyncio.CancelledError:
            self.follower.close()
            self.state = STOPPED
            raise
        finally:
            reader.shutdown(wait=False)
        self.state = STOPPED
        log.info("stopped reading %s for namespace %s", self.path, self.namespace)


# ----------------------------
# Namespace
# ----------------------------
class NamespaceProcessor:
    def __init__(
        self,
        cfg: NamespaceConfig,
        pipeline: RelabelPipeline,
        metrics: NamespaceMetrics,
        loops: List[SourceLoop],
    ):
        self.cfg = cfg
        self.pipeline = pipeline
        self.metrics = metrics
        self.loops = loops
        self.tasks: List[asyncio.Task] = []

    @property
    def name(self) -> str:
        return self.cfg.name

    @classmethod
    def from_config(
        cls,
        cfg: NamespaceConfig,
        registry: CollectorRegistry,
        open_follower: Callable[..., Follower] = Follower.open,
    ) -> "NamespaceProcessor":
        """
        Compiles the namespace and opens its source files. Anything that goes
        wrong here (duplicate labels, unreadable file) is raised to the caller.
        """
        pipeline = compile_namespace(cfg)
        metrics = NamespaceMetrics(cfg.name, pipeline.schema, registry, buckets=cfg.histogram_buckets)
        line_format = LineFormat(cfg.format)

        followers: List[Follower] = []
        try:
            for path in cfg.source_files:
                followers.append(open_follower(path, from_start=cfg.from_start))
        except FollowerError:
            for f in followers:
                f.close()
            raise

        loops = [SourceLoop(cfg.name, f, line_format, pipeline, metrics) for f in followers]
        log.info("namespace %s: labels %s, %d source file(s)", cfg.name, list(pipeline.schema), len(loops))
        return cls(cfg, pipeline, metrics, loops)

    def start(self, coordinator: ShutdownCoordinator, supervisor: "Supervisor") -> None:
        log.info("starting listener for namespace %s", self.name)
        coordinator.on_shutdown(self.stop)
        for loop in self.loops:
            task = coordinator.spawn(loop.run(), name=f"{self.name}:{loop.path}")
            supervisor.watch(self, loop, task)
            self.tasks.append(task)

    def stop(self) -> None:
        for loop in self.loops:
            loop.follower.close()

    def status(self) -> Dict[str, object]:
        return {
            "namespace": self.name,
            "labels": list(self.pipeline.schema),
            "sources": [
                {"path": loop.path, "state": loop.state, "lines": loop.lines,
                 "error": str(loop.error) if loop.error else None}
                for loop in self.loops
            ],
        }


# ----------------------------
# Supervisor
# ----------------------------
class Supervisor:
    """
    Decides what a failed ingestion loop means.

    With on_source_error=exit (default) any failure is fatal for the process:
    on_fatal is called once and the error is kept in `fatal`. With
    stop_namespace only the failing namespace's loops are stopped.
    """

    def __init__(self, on_fatal: Callable[[BaseException], None]):
        self.on_fatal = on_fatal
        self.fatal: Optional[BaseException] = None

    def watch(self, processor: NamespaceProcessor, loop: SourceLoop, task: asyncio.Task) -> None:
        task.add_done_callback(lambda t: self._done(processor, loop, t))

    def _done(self, processor: NamespaceProcessor, loop: SourceLoop, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return

        if isinstance(exc, FollowerError) and processor.cfg.on_source_error == "stop_namespace":
            log.error("namespace %s: %s; stopping this namespace", processor.name, exc)
            processor.stop()
            return

        loop.state = FAILED
        loop.error = exc
        log.critical("namespace %s: ingestion of %s failed: %s", processor.name, loop.path, exc,
                     exc_info=None if isinstance(exc, FollowerError) else exc)
        if self.fatal is None:
            self.fatal = exc
            self.on_fatal(exc)
