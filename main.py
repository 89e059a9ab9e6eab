"""
Main entrypoint: PayWatch monitor (campaign + platform wallet listeners) in the foreground.

Runs until SIGINT/SIGTERM; listeners are stopped and RPC connections closed on exit.

Env: CAMPAIGN_WALLETS ("id:0xwallet,..."), ETH_RPC_URL, ETH_WS_URL, ETH_RPC_BACKUP,
PLATFORM_WALLET_ETH, BLOCKCHAIN_MONITORING_ENABLED, POLL_INTERVAL_SEC, LOG_LEVEL, etc.

Same as: python -m backend_paywatch
"""

import sys

# Configure structured JSON logging before other imports that may log
from backend_paywatch.paywatch_logging import get_logger

logger = get_logger("main")


def main() -> int:
    from backend_paywatch.runtime import main as run_main

    logger.info("main_monitor_starting")
    return run_main()


if __name__ == "__main__":
    sys.exit(main())
