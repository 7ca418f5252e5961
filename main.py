#!/usr/bin/env python3
"""Entry point for the Invoice Relayer service.

Loads configuration from the environment (optionally from a .env file),
then runs the relayer until SIGINT or SIGTERM is received.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv


# Configure logging before the relayer modules create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Get logger for this module
logger = logging.getLogger(__name__)

from invoice_relayer.errors import ConfigurationError
from invoice_relayer.relayer import InvoiceRelayer


def parse_args() -> argparse.Namespace:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Invoice Relayer - Relay InvoiceBatch events between chains with Polymer proofs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  ACTIVATED_CHAINS                 - Comma separated chain keys (e.g. base-sepolia,optimism-sepolia)
  <CHAIN>_RPC                      - RPC endpoint per chain (e.g. BASE_SEPOLIA_RPC)
  <CHAIN>_INVOICEBATCHER_ADDRESS   - InvoiceIDBatcher contract per chain
  POLYMER_PROVER_<CHAIN>_TESTNET_CONTRACT_ADDRESS - Polymer prover per chain
  PRIVATE_KEY                      - Wallet key used to submit proofs
  POLYMER_API_KEY                  - Polymer proof API key
  POLYMER_API_URL                  - Polymer proof API endpoint (optional)
  POLLING_INTERVAL                 - Event polling interval in seconds (default: 2)
  GAS_LIMIT                        - Gas limit for proof submissions (default: 500000)
  LOG_LEVEL                        - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to a .env file to load before reading configuration (default: ./.env if present)"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: LOG_LEVEL or INFO)"
    )
    return parser.parse_args()


async def main() -> None:
    """Main entry point for the Invoice Relayer service.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    args = parse_args()

    load_dotenv(args.env_file)
    setup_logging(args.log_level or os.environ.get("LOG_LEVEL", "INFO"))

    logger.info("=== Invoice Relayer Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        relayer: InvoiceRelayer = InvoiceRelayer.from_env()
        relayer.init()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, relayer.request_stop)

        logger.info("Relayer initialized, starting main loop...")
        await relayer.run()

    except ConfigurationError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - ACTIVATED_CHAINS: Chains to relay between (at least one)")
        logger.error("  - <CHAIN>_RPC and <CHAIN>_INVOICEBATCHER_ADDRESS for each activated chain")
        logger.error("  - POLYMER_PROVER_<CHAIN>_TESTNET_CONTRACT_ADDRESS for each activated chain")
        logger.error("  - PRIVATE_KEY: Wallet that submits proofs")
        logger.error("  - POLYMER_API_KEY: Polymer proof API key")
        sys.exit(1)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
