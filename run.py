#!/usr/bin/env python3
"""
Solana Sentinel Startup Script

Usage:
    python run.py [--port PORT] [--host HOST] [--env ENV]

Environment Variables:
    SENTINEL_PORT: Port to run the service on (default: 3000)
    ENV: Environment (development/production)
    LOG_LEVEL: Logging level (DEBUG/INFO/WARNING/ERROR)
    MONITORED_WALLETS: Comma-separated wallet addresses to poll
"""

import argparse
import sys

import uvicorn
import structlog

from sentinel.config import settings
from sentinel.container import build_thresholds
from sentinel.error_handling import ConfigurationError

logger = structlog.get_logger()


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Solana Sentinel - DeFi position risk monitoring"
    )

    parser.add_argument(
        "--port", "-p",
        type=int,
        default=settings.SENTINEL_PORT,
        help=f"Port to run the service on (default: {settings.SENTINEL_PORT})"
    )

    parser.add_argument(
        "--host", "-H",
        type=str,
        default="0.0.0.0",
        help="Host to bind the service to (default: 0.0.0.0)"
    )

    parser.add_argument(
        "--env", "-e",
        type=str,
        choices=["development", "production"],
        default=settings.ENV,
        help=f"Environment mode (default: {settings.ENV})"
    )

    parser.add_argument(
        "--reload", "-r",
        action="store_true",
        help="Enable auto-reload for development"
    )

    parser.add_argument(
        "--log-level", "-l",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL,
        help=f"Log level (default: {settings.LOG_LEVEL})"
    )

    return parser.parse_args()


def validate_environment() -> bool:
    """Validate configuration before starting the server"""
    errors = []

    try:
        build_thresholds(settings)
    except ConfigurationError as e:
        errors.append(str(e))

    if settings.ENABLE_INFLUX and not settings.INFLUX_TOKEN:
        errors.append("ENABLE_INFLUX is set but INFLUX_TOKEN is empty")

    if not settings.enabled_protocols:
        errors.append("ENABLED_PROTOCOLS is empty")

    if errors:
        print("❌ Environment validation failed:")
        for error in errors:
            print(f"   - {error}")
        return False

    if not settings.monitored_wallets:
        print("⚠️  MONITORED_WALLETS is empty - only the HTTP API will be active")
    if not (settings.DISCORD_WEBHOOK_URL or settings.TELEGRAM_BOT_TOKEN):
        print("⚠️  No notification channel configured - alerts will only be recorded")

    return True


def main():
    """Main entry point"""
    args = parse_arguments()

    if not validate_environment():
        sys.exit(1)

    try:
        logger.info("Starting Solana Sentinel", host=args.host, port=args.port, env=args.env)
        uvicorn.run(
            "sentinel.main:app",
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
            access_log=True,
            reload=args.reload or args.env == "development",
        )
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")


if __name__ == "__main__":
    main()
