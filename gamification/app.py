"""Wiring of the gamification service: logging, ledger consumer, scoring and HTTP."""

from __future__ import annotations

import datetime as dt
import logging
import os
import socketserver
import threading
from typing import IO, Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from .api_config import load_api_config
from .config import Config
from .consumer import LedgerConsumer, LedgerConsumerConfig, MessageSource
from .health import HealthState
from .logs import build_logger, log_event
from .metrics import Registry
from .score import Manager, resolve_windows
from .web import Router, wrap_with_logging

__all__ = ["Application"]


class _ThreadingServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class _QuietHandler(WSGIRequestHandler):
    """Request handler that leaves access logging to the middleware."""

    def log_message(self, format: str, *args: Any) -> None:
        return


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    return host.strip("[]"), int(port)


def _seconds(value: Any) -> float:
    if isinstance(value, dt.timedelta):
        return value.total_seconds()
    return float(value)


def _bind_component(logger: logging.Logger, component: str) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(logger, {"attrs": {"component": component}})


class Application:
    """The assembled service: consumer, score manager and HTTP server.

    The message source stands in for the topic reader; the application owns it
    and closes it together with the log file.
    """

    def __init__(
        self,
        config: Config,
        source: MessageSource,
        *,
        api_config: Any = None,
        metrics: Registry | None = None,
        stream: IO[str] | None = None,
        environ: dict[str, str] | None = None,
    ) -> None:
        if not config.listen_address.strip():
            raise ValueError("listen address cannot be empty")
        if not config.log_file_path:
            raise ValueError("log file path cannot be empty")
        log_path = os.path.normpath(config.log_file_path)
        directory = os.path.dirname(log_path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            raise OSError(f"create log directory: {exc}") from exc
        try:
            self._log_file: IO[str] | None = open(log_path, "a", encoding="utf-8")
        except OSError as exc:
            raise OSError(f"open log file: {exc}") from exc

        self._config = config
        self._metrics = metrics if metrics is not None else Registry()
        self._server: WSGIServer | None = None
        self._closed = False
        try:
            self._setup(source, api_config, stream, environ)
        except Exception:
            self._log_file.close()
            self._log_file = None
            raise

    def _setup(self, source: MessageSource, api_config: Any, stream: IO[str] | None, environ: Any) -> None:
        config = self._config
        self._logger = build_logger(self._log_file, stream)
        api = api_config if api_config is not None else load_api_config(environ)
        self._refresh = _seconds(api.refresh_every)
        log_event(
            self._logger,
            logging.INFO,
            "http_api_config_loaded",
            http_port=api.http_port,
            windows=list(api.windows),
            refresh_interval=f"{self._refresh}s",
        )
        self._health = HealthState()

        ledger_logger = _bind_component(self._logger, "ledger_consumer")
        try:
            self._consumer = LedgerConsumer(
                LedgerConsumerConfig(
                    brokers=tuple(config.kafka_brokers),
                    topic=config.ledger_topic,
                    group_id=config.ledger_group_id,
                    max_epochs_per_zone=config.max_epochs_per_zone,
                    poll_timeout=config.ledger_poll_timeout,
                    accepted_schemas=tuple(config.ledger_schema_accept),
                ),
                ledger_logger,
                source,
                self._metrics,
            )
        except ValueError as exc:
            raise ValueError(f"ledger consumer init: {exc}") from exc

        log_event(
            ledger_logger,
            logging.INFO,
            "ledger_consumer_config",
            topic=config.ledger_topic,
            group=config.ledger_group_id,
            brokers=",".join(config.kafka_brokers),
            pollTimeout=f"{config.ledger_poll_timeout}s",
            maxEpochsPerZone=config.max_epochs_per_zone,
            acceptedSchemas=",".join(config.ledger_schema_accept),
        )

        score_logger = _bind_component(self._logger, "score_manager")
        try:
            self._manager = Manager(
                self._consumer.store,
                score_logger,
                resolve_windows(api.windows),
                self._metrics,
            )
        except ValueError as exc:
            self._consumer.close()
            raise ValueError(f"score manager init: {exc}") from exc
        log_event(
            score_logger,
            logging.INFO,
            "score_manager_configured",
            windows=[window.name for window in self._manager.windows],
            initial_generated_at=self._manager.last_generated_at,
        )

        router = Router(self._logger, self._health, self._manager, self._metrics)
        self._handler = wrap_with_logging(self._logger, router, self._metrics)

    @property
    def config(self) -> Config:
        return self._config

    @property
    def logger(self) -> logging.Logger:
        """The service logger, writing to the console stream and the log file."""
        return self._logger

    @property
    def health(self) -> HealthState:
        return self._health

    @property
    def metrics(self) -> Registry:
        return self._metrics

    @property
    def consumer(self) -> LedgerConsumer:
        return self._consumer

    @property
    def manager(self) -> Manager:
        return self._manager

    @property
    def handler(self) -> Any:
        """The WSGI application served over HTTP."""
        return self._handler

    @property
    def refresh_interval(self) -> float:
        """Seconds between leaderboard recomputations."""
        return self._refresh

    @property
    def server_address(self) -> tuple[str, int] | None:
        """The address the HTTP server is bound to while running."""
        server = self._server
        return None if server is None else server.server_address[:2]

    def _bind(self) -> WSGIServer:
        host, port = _split_address(self._config.listen_address)
        read_timeout = self._config.http_read_timeout

        class Handler(_QuietHandler):
            timeout = read_timeout

        return make_server(host, port, self._handler, server_class=_ThreadingServer, handler_class=Handler)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Serve until the stop event is set or a component ends, then shut down.

        Raises the first failure of the consumer, the score manager or the server.
        """
        stop = stop_event if stop_event is not None else threading.Event()
        try:
            server = self._bind()
        except OSError as exc:
            log_event(self._logger, logging.ERROR, "http_server_error", err=str(exc))
            raise
        self._server = server

        halt = threading.Event()
        errors: dict[str, BaseException] = {}
        threads: dict[str, threading.Thread] = {}

        def spawn(name: str, target: Any) -> None:
            def runner() -> None:
                try:
                    target()
                except BaseException as exc:  # reported once everything has stopped
                    errors[name] = exc
                finally:
                    halt.set()

            thread = threading.Thread(target=runner, name=f"gamification-{name}", daemon=True)
            threads[name] = thread
            thread.start()

        self._health.ready = True
        log_event(self._logger, logging.INFO, "http_server_listen", address=self._config.listen_address)
        spawn("http", server.serve_forever)
        spawn("ledger", lambda: self._consumer.run(halt))
        spawn("score", lambda: self._manager.run(halt, self._refresh))

        while not stop.is_set() and not halt.is_set():
            halt.wait(0.05)

        log_event(self._logger, logging.INFO, "shutdown_signal")
        self._health.ready = False
        halt.set()
        server.shutdown()
        threads["http"].join(self._config.shutdown_timeout)
        server.server_close()
        self._server = None
        threads["ledger"].join()
        threads["score"].join()

        outcomes = (
            ("ledger", "ledger_consumer_error", "ledger_consumer_completed"),
            ("score", "score_manager_error", "score_manager_stopped"),
            ("http", "http_server_error", "server_closed"),
        )
        for name, failed, finished in outcomes:
            if name in errors:
                log_event(self._logger, logging.ERROR, failed, err=str(errors[name]))
            else:
                log_event(self._logger, logging.INFO, finished)
        for name, _, _ in outcomes:
            if name in errors:
                raise errors[name]
        log_event(self._logger, logging.INFO, "shutdown_complete")

    def close(self) -> None:
        """Close the message source and the log file; further calls do nothing."""
        if self._closed:
            return
        self._closed = True
        self._consumer.close()
        for handler in self._logger.handlers:
            handler.flush()
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    def __enter__(self) -> Application:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()