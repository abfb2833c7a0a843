"""
Ticket Watcher

Opens a realtime session and prints every chat message, ticket update
and notification as one JSON line on stdout. Logs go to stderr.

Usage:
    python -m erp_prime.services.ticket_watch --origin https://erp.example.com --ticket 42
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, List, Optional, TextIO

from erp_prime.core.config import RealtimeConfig, load_config
from erp_prime.core.exceptions import ConfigurationError, CredentialError
from erp_prime.core.structured_logging import configure_logging
from erp_prime.realtime.credentials import Credential
from erp_prime.realtime.dispatcher import EventHandlers
from erp_prime.realtime.session import RealtimeSession
from erp_prime.realtime.state import ConnectionState

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CLOSED_WITH_ERROR = 1
EXIT_CREDENTIAL_REJECTED = 2


class TicketWatcher:
    """Runs one session until stopped or terminally closed."""

    def __init__(
        self,
        config: RealtimeConfig,
        ticket_id: Optional[int] = None,
        out: Optional[TextIO] = None,
        **session_options: Any,
    ):
        self.config = config
        self.ticket_id = ticket_id
        self.out = out or sys.stdout
        self._session_options = session_options
        self._stop: Optional[asyncio.Event] = None
        self.session: Optional[RealtimeSession] = None

    def _emit(self, kind: str, payload: Any) -> None:
        line = {
            "type": kind,
            "data": payload,
            "received_at": datetime.now(timezone.utc).isoformat(),
        }
        self.out.write(json.dumps(line, ensure_ascii=False, default=str) + "\n")
        self.out.flush()

    def _on_error(self, error: BaseException) -> None:
        logger.warning("[TicketWatcher] Push channel error: %s", error)

    def _on_state_change(self, previous: ConnectionState, new: ConnectionState, reason: str) -> None:
        if new is ConnectionState.CLOSED:
            logger.info("[TicketWatcher] Session closed (%s), stopping", reason)
            self.stop()

    def build_handlers(self) -> EventHandlers:
        return EventHandlers(
            on_message=partial(self._emit, "message"),
            on_ticket_update=partial(self._emit, "ticket_update"),
            on_notification=partial(self._emit, "notification"),
            on_error=self._on_error,
        )

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("[TicketWatcher] Signal handler for %s unavailable", sig)

    async def run(self) -> int:
        """
        Watch until SIGINT/SIGTERM or a terminal close.

        Returns:
            int: Process exit code
        """
        try:
            Credential.parse(self.config.get_token())
        except CredentialError as e:
            logger.error("[TicketWatcher] Credential rejected: %s", e.message)
            return EXIT_CREDENTIAL_REJECTED

        self._stop = asyncio.Event()
        self._install_signal_handlers()

        self.session = RealtimeSession(
            self.config,
            self.build_handlers(),
            ticket_id=self.ticket_id,
            on_state_change=self._on_state_change,
            **self._session_options,
        )
        logger.info(
            "[TicketWatcher] Watching %s (ticket=%s)", self.config.origin, self.ticket_id
        )

        self.session.connect()
        try:
            await self._stop.wait()
        finally:
            error = self.session.error
            await self.session.close()
            logger.info("[TicketWatcher] Stopped")

        return EXIT_CLOSED_WITH_ERROR if error else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ERP PRIME realtime ticket watcher")
    parser.add_argument("--origin", help="Origin of the ERP PRIME web app (PRIME_ORIGIN)")
    parser.add_argument("--ticket", type=int, help="Ticket id to subscribe to")
    parser.add_argument("--token", help="Bearer token (PRIME_TOKEN)")
    parser.add_argument("--config", type=Path, help="JSON config file")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    configure_logging(level=args.log_level.upper(), json_format=args.json_logs)

    overrides = {}
    if args.origin:
        overrides["origin"] = args.origin
    if args.token:
        overrides["token"] = args.token

    try:
        config = load_config(args.config, overrides)
        watcher = TicketWatcher(config, ticket_id=args.ticket)
        return asyncio.run(watcher.run())
    except ConfigurationError as e:
        logger.error("[TicketWatcher] %s", e)
        return EXIT_CREDENTIAL_REJECTED if isinstance(e, CredentialError) else EXIT_CLOSED_WITH_ERROR


if __name__ == "__main__":
    sys.exit(main())
