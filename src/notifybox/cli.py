#!/usr/bin/env python3
"""Command-line interface for the notification dispatcher."""

import argparse
import asyncio
import os
import sys
from typing import Callable, Dict, Optional

from loguru import logger

from notifybox.config import (
    DEFAULT_AMQP_URL,
    DEFAULT_EMAIL_PROVIDER,
    DEFAULT_FROM_EMAIL,
    DEFAULT_FROM_NAME,
    DEFAULT_HTTP_HOST,
    DEFAULT_HTTP_PORT,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_PARALLEL,
    DEFAULT_PREFETCH_COUNT,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_SMTP_HOST,
    DEFAULT_SMTP_PORT,
    DEFAULT_SMTP_TIMEOUT,
    QUEUES,
    SMTP_PASSWORD_ENV,
    SMTP_USERNAME_ENV,
)
from notifybox.directory import UserDirectory
from notifybox.email_sender import EmailSender, LogEmailSender, SmtpEmailSender
from notifybox.handlers import HandlerContext
from notifybox.http_server import HttpServer
from notifybox.metrics import ConsumerStats
from notifybox.router import EventRouter
from notifybox.service import BrokerHealth, run_service

DESCRIPTION = (
    "Notification dispatcher. Consumes product, order, auth and user sync events "
    "from RabbitMQ, emails sellers and buyers, and keeps a local user directory in Postgres."
)


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser: argparse.ArgumentParser = argparse.ArgumentParser(description=DESCRIPTION)
    parser.add_argument(
        "--amqp-url",
        default=DEFAULT_AMQP_URL,
        help=f"RabbitMQ URL (default: {DEFAULT_AMQP_URL})",
    )
    parser.add_argument(
        "--dsn",
        required=True,
        help="Postgres DSN (libpq style) or connection string for the user directory, e.g. "
        "'host=localhost port=5432 dbname=notifications user=postgres password=postgres'",
    )
    parser.add_argument(
        "--queue",
        dest="queues",
        action="append",
        choices=QUEUES,
        help="Queue to consume; repeat to select several (default: all queues)",
    )
    parser.add_argument(
        "--max-parallel",
        type=int,
        default=DEFAULT_MAX_PARALLEL,
        help=f"Maximum messages handled at once per queue, 0 for unbounded (default: {DEFAULT_MAX_PARALLEL})",
    )
    parser.add_argument(
        "--prefetch-count",
        type=int,
        default=DEFAULT_PREFETCH_COUNT,
        help=f"Channel prefetch limit, 0 for broker default (default: {DEFAULT_PREFETCH_COUNT})",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=DEFAULT_SHUTDOWN_TIMEOUT,
        help=f"Seconds to wait for in-flight messages on shutdown (default: {DEFAULT_SHUTDOWN_TIMEOUT})",
    )
    parser.add_argument(
        "--email-provider",
        default=DEFAULT_EMAIL_PROVIDER,
        choices=["smtp", "log"],
        help=f"Email delivery provider; 'log' only logs emails (default: {DEFAULT_EMAIL_PROVIDER})",
    )
    parser.add_argument(
        "--smtp-host",
        default=DEFAULT_SMTP_HOST,
        help=f"SMTP server host (default: {DEFAULT_SMTP_HOST})",
    )
    parser.add_argument(
        "--smtp-port",
        type=int,
        default=DEFAULT_SMTP_PORT,
        help=f"SMTP server port (default: {DEFAULT_SMTP_PORT})",
    )
    parser.add_argument(
        "--smtp-username",
        default=os.environ.get(SMTP_USERNAME_ENV),
        help=f"SMTP login user (default: ${SMTP_USERNAME_ENV})",
    )
    parser.add_argument(
        "--smtp-password",
        default=os.environ.get(SMTP_PASSWORD_ENV),
        help=f"SMTP login password (default: ${SMTP_PASSWORD_ENV})",
    )
    parser.add_argument(
        "--smtp-no-tls",
        action="store_true",
        help="Do not upgrade the SMTP connection with STARTTLS",
    )
    parser.add_argument(
        "--smtp-timeout",
        type=float,
        default=DEFAULT_SMTP_TIMEOUT,
        help=f"SMTP socket timeout in seconds (default: {DEFAULT_SMTP_TIMEOUT})",
    )
    parser.add_argument(
        "--from-email",
        default=DEFAULT_FROM_EMAIL,
        help=f"Sender address (default: {DEFAULT_FROM_EMAIL})",
    )
    parser.add_argument(
        "--from-name",
        default=DEFAULT_FROM_NAME,
        help=f"Sender display name (default: {DEFAULT_FROM_NAME})",
    )
    parser.add_argument(
        "--log-level",
        default=DEFAULT_LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help=f"Logging level (default: {DEFAULT_LOG_LEVEL})",
    )
    parser.add_argument(
        "--http-host",
        default=DEFAULT_HTTP_HOST,
        help=f"HTTP server host (default: {DEFAULT_HTTP_HOST})",
    )
    parser.add_argument(
        "--http-port",
        type=int,
        default=DEFAULT_HTTP_PORT,
        help=f"HTTP server port for health checks and metrics (default: {DEFAULT_HTTP_PORT})",
    )
    parser.add_argument(
        "--disable-http",
        action="store_true",
        help="Disable HTTP server for health checks and metrics",
    )
    return parser.parse_args()


def setup_logging(log_level: str) -> None:
    """
    Configure loguru logger with specified level.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<yellow>{extra[worker]}</yellow> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=log_level.upper(),
        colorize=True,
    )
    # Queue consumers override this with their queue name
    logger.configure(extra={"worker": "main"})


def create_email_sender(args: argparse.Namespace) -> EmailSender:
    """
    Build the email sender selected on the command line.

    Args:
        args: Parsed command-line arguments

    Returns:
        SmtpEmailSender or LogEmailSender
    """
    if args.email_provider == "log":
        logger.warning("Using log email provider, emails will not be delivered")
        return LogEmailSender()

    return SmtpEmailSender(
        host=args.smtp_host,
        port=args.smtp_port,
        username=args.smtp_username,
        password=args.smtp_password,
        start_tls=not args.smtp_no_tls,
        timeout=args.smtp_timeout,
        from_email=args.from_email,
        from_name=args.from_name,
    )


def create_ready_checks(directory: UserDirectory, broker_health: BrokerHealth) -> Dict[str, Callable[[], bool]]:
    """
    Create readiness checks for the HTTP server.

    Args:
        directory: User directory whose pool is probed
        broker_health: Holder of the live broker connection

    Returns:
        Dependency name -> check function
    """
    return {
        "broker": broker_health.is_connected,
        "user directory": directory.is_connected,
    }


def setup_http_server(
    args: argparse.Namespace,
    directory: UserDirectory,
    broker_health: BrokerHealth,
    stats: ConsumerStats,
) -> Optional[HttpServer]:
    """
    Setup and start HTTP server if enabled.

    Args:
        args: Parsed command-line arguments
        directory: User directory for readiness checks
        broker_health: Broker connection holder for readiness checks
        stats: Consumer counters for /metrics

    Returns:
        HttpServer instance if enabled, None otherwise
    """
    if args.disable_http:
        return None

    http_server = HttpServer(
        host=args.http_host,
        port=args.http_port,
        ready_checks=create_ready_checks(directory, broker_health),
        metrics_fn=stats.render_prometheus,
    )
    http_server.start()
    logger.info("HTTP server enabled on {}:{}", args.http_host, args.http_port)

    return http_server


def main() -> None:
    """Main entry point for the CLI."""
    args: argparse.Namespace = parse_args()

    setup_logging(args.log_level)

    logger.info(
        "Starting notifybox: max_parallel={} prefetch_count={} email_provider={}",
        args.max_parallel or "unbounded",
        args.prefetch_count,
        args.email_provider,
    )

    directory = UserDirectory(args.dsn)
    directory.ensure_schema()

    stats = ConsumerStats()
    broker_health = BrokerHealth()
    router = EventRouter(HandlerContext(directory=directory, sender=create_email_sender(args)))
    http_server = setup_http_server(args, directory, broker_health, stats)

    try:
        with directory:
            asyncio.run(
                run_service(
                    args.amqp_url,
                    router,
                    queue_names=args.queues,
                    max_parallel=args.max_parallel,
                    prefetch_count=args.prefetch_count,
                    stats=stats,
                    broker_health=broker_health,
                    shutdown_timeout=args.shutdown_timeout,
                )
            )
    finally:
        if http_server:
            http_server.stop()


if __name__ == "__main__":
    main()
