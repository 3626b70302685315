"""Local demo worker: reports progress, echoes the prompt as its result."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from guildhall.commission.client import DaemonClient
from guildhall.commission.contracts import read_worker_config

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Run the deterministic demo commission."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--config", required=True)
    args = parser.parse_args(argv)

    config = read_worker_config(Path(args.config))
    logging.basicConfig(level=logging.INFO)
    logger.info("Echo worker started for %s", config.commission_id)

    with DaemonClient(Path(config.daemon_socket_path)) as client:
        client.report_progress(config.commission_id, "Echo worker started")
        text = config.prompt.strip() or f"{config.commission_id} output"
        if not client.submit_result(config.commission_id, text):
            return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
