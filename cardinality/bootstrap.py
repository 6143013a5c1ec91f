# cardinality/bootstrap.py
# Process wiring: build the daemon from config, serve /metrics and /health, and the command-line entry point

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import relabel
from .backend import PrometheusBackend
from .config import TCMConfig, build_snapshot, load_config
from .daemon import CardinalityDaemon
from .events import JsonlEventSink
from .health import snapshot as health_snapshot
from .metrics import Instrumentation
from .store import ConfigStore, FileConfigStore, InMemoryConfigStore
from .utils import jsonable

logger = logging.getLogger(__name__)


# ---------- wiring ----------

def build_store(cfg: TCMConfig) -> ConfigStore:
    if cfg.state_dir:
        return FileConfigStore(cfg.state_dir)
    logger.warning("no state_dir configured; drop-lists are kept in memory only")
    return InMemoryConfigStore()


def build_daemon(
    cfg: TCMConfig,
    *,
    backend: Optional[Any] = None,
    store: Optional[ConfigStore] = None,
    instrumentation: Optional[Instrumentation] = None,
) -> CardinalityDaemon:
    """Default production wiring; every piece can be swapped by the caller."""
    if instrumentation is None:
        sink = JsonlEventSink(cfg.event_log) if cfg.event_log else None
        instrumentation = Instrumentation(sink=sink)
    return CardinalityDaemon(
        cfg,
        backend=backend or PrometheusBackend(cfg.backend_url, timeout=cfg.query_timeout),
        store=store or build_store(cfg),
        instrumentation=instrumentation,
    )


# ---------- /health + /relabel ----------

def start_health_server(port: int, providers: Dict[str, Callable[[], Any]], addr: str = "0.0.0.0") -> Tuple[threading.Thread, ThreadingHTTPServer]:
    """Serve each provider's JSON at its path, e.g. {"/health": fn}."""

    class Handler(BaseHTTPRequestHandler):
        def _send_json(self, obj: Any, code: int = 200) -> None:
            body = json.dumps(jsonable(obj), sort_keys=True).encode("utf-8")
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self) -> None:
            path = self.path.split("?", 1)[0]
            fn = providers.get(path)
            if fn is None:
                self._send_json({"error": "not found"}, 404)
                return
            try:
                self._send_json(fn(), 200)
            except Exception as e:
                logger.exception("provider for %s failed", path)
                self._send_json({"error": str(e)}, 500)

        def log_message(self, fmt: str, *args: Any) -> None:
            logger.debug("health server: " + fmt, *args)

    httpd = ThreadingHTTPServer((addr, int(port)), Handler)
    t = threading.Thread(target=httpd.serve_forever, name=f"health:{port}", daemon=True)
    t.start()
    return t, httpd


# ---------- CLI ----------

def _make_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tcm", description="Timeseries cardinality manager")
    p.add_argument("--config", "-c", default=os.environ.get("TCM_CONFIG", "tcm.json"), help="JSON config file (default: $TCM_CONFIG or tcm.json)")
    p.add_argument("--log-level", default=os.environ.get("TCM_LOG_LEVEL", "INFO"), help="Logging level (default: $TCM_LOG_LEVEL or INFO)")
    sub = p.add_subparsers(dest="cmd")

    s = sub.add_parser("run", help="Run the control loop until interrupted (default)")
    s.add_argument("--health-port", type=int, default=None, help="Serve /health and /relabel JSON on this port")

    sub.add_parser("once", help="Run a single pass and print its report")
    sub.add_parser("keepset", help="Print the protected metric names")
    sub.add_parser("render", help="Print the relabel rules for the current store state")
    return p


def _print(obj: Any) -> None:
    print(json.dumps(jsonable(obj), indent=2, sort_keys=True))


def _cmd_run(daemon: CardinalityDaemon, cfg: TCMConfig, config_path: str, health_port: Optional[int]) -> int:
    if cfg.metrics_port:
        daemon.instrumentation.serve(cfg.metrics_port)

    httpd = None
    if health_port:
        _, httpd = start_health_server(health_port, {
            "/health": lambda: health_snapshot(daemon),
            "/relabel": lambda: relabel.render(daemon.store, daemon.snapshot.job_names),
        })
        logger.info("health endpoint on :%d", health_port)

    def _on_hup(_signum: int, _frame: Any) -> None:
        try:
            daemon.reload(load_config(config_path))
        except (OSError, ValueError) as e:
            logger.error("reload of %s failed, keeping current config: %s", config_path, e)

    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _on_hup)

    daemon.start()
    try:
        while daemon.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        logger.info("interrupted; shutting down")
    finally:
        daemon.stop()
        daemon.join(timeout=cfg.apply_timeout + cfg.query_timeout)
        if httpd is not None:
            httpd.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _make_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as e:
        logger.error("cannot load config %s: %s", args.config, e)
        return 2

    cmd = args.cmd or "run"
    if cmd == "keepset":
        snap, _issues = build_snapshot(cfg)
        _print(sorted(snap.keep_set))
        return 0

    daemon = build_daemon(cfg)
    if cmd == "once":
        report = daemon.run_pass()
        _print(report)
        return 1 if report.failed() else 0
    if cmd == "render":
        _print(relabel.render(daemon.store, daemon.snapshot.job_names))
        return 0
    return _cmd_run(daemon, cfg, args.config, getattr(args, "health_port", None))


if __name__ == "__main__":
    sys.exit(main())
