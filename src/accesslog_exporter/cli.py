from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn
from prometheus_client import CollectorRegistry

from accesslog_exporter.config import StartupFlags, check_stability, load_config
from accesslog_exporter.discovery import ConsulRegistrator
from accesslog_exporter.errors import ExperimentalFeatureError, ExporterError
from accesslog_exporter.exporter_app import create_app
from accesslog_exporter.processor import NamespaceProcessor, Supervisor
from accesslog_exporter.shutdown import ShutdownCoordinator

log = logging.getLogger("accesslog_exporter")

EXIT_OK = 0
EXIT_EXPERIMENTAL = 1
EXIT_FATAL = 2

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_flags(argv: Optional[List[str]] = None) -> StartupFlags:
    d = StartupFlags()
    p = argparse.ArgumentParser(prog="accesslog-exporter", description="Export access log metrics to Prometheus")
    p.add_argument("--listen-port", type=int, default=d.listen_port, help="HTTP port to listen on")
    p.add_argument("--listen-address", default=d.listen_address, help="HTTP address to listen on")
    p.add_argument("--format", default=d.format, help="access log format")
    p.add_argument("--namespace", default=d.namespace, help="namespace to use for metric names")
    p.add_argument("--config-file", default=d.config_file, help="configuration file to read from")
    p.add_argument("--enable-experimental", action="store_true", default=d.enable_experimental,
                   help="enable experimental features")
    p.add_argument("--from-start", action="store_true", default=d.from_start,
                   help="read source files from the beginning instead of the end")
    p.add_argument("--log-level", default=d.log_level,
                   choices=["critical", "error", "warning", "info", "debug"])
    p.add_argument("filenames", nargs="*", help="access log files to follow")
    ns = p.parse_args(argv)

    return StartupFlags(
        listen_port=ns.listen_port,
        listen_address=ns.listen_address,
        format=ns.format,
        namespace=ns.namespace,
        config_file=ns.config_file,
        enable_experimental=ns.enable_experimental,
        from_start=ns.from_start,
        log_level=ns.log_level,
        filenames=list(ns.filenames),
    )


def main(argv: Optional[List[str]] = None) -> int:
    opts = parse_flags(argv)
    logging.basicConfig(level=opts.log_level.upper(), format=LOG_FORMAT)

    try:
        cfg = load_config(opts)
        check_stability(cfg)
    except ExperimentalFeatureError as e:
        print(
            "Your configuration contains an option that is explicitly labeled as experimental feature:\n\n"
            f"  {e.option}\n\n"
            "Use the --enable-experimental flag or the enable_experimental option to enable these features. "
            "Use them at your own peril.",
            file=sys.stderr,
        )
        return EXIT_EXPERIMENTAL
    except ExporterError as e:
        log.critical("%s", e)
        return EXIT_FATAL

    log.info("using configuration %s", cfg.model_dump(by_alias=True, exclude={"consul": {"token"}}))

    registry = CollectorRegistry()
    processors: List[NamespaceProcessor] = []
    registrator: Optional[ConsulRegistrator] = None
    try:
        for ns in cfg.namespaces:
            processors.append(NamespaceProcessor.from_config(ns, registry))
        if cfg.consul.enable:
            registrator = ConsulRegistrator(cfg)
            registrator.register()
    except ExporterError as e:
        log.critical("startup failed: %s", e)
        for p in processors:
            p.stop()
        return EXIT_FATAL

    server: Optional[uvicorn.Server] = None

    def stop_server(exc: BaseException) -> None:
        if server is not None:
            server.should_exit = True

    supervisor = Supervisor(on_fatal=stop_server)
    app = create_app(
        registry,
        processors,
        coordinator=ShutdownCoordinator(),
        supervisor=supervisor,
        registrator=registrator,
        metrics_endpoint=cfg.listen.metrics_endpoint,
    )

    log.info("running HTTP server on address %s:%d", cfg.listen.address, cfg.listen.port)
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=cfg.listen.address,
        port=cfg.listen.port,
        log_level=opts.log_level,
    ))
    server.run()

    if supervisor.fatal is not None:
        return EXIT_FATAL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
