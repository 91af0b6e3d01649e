#!/usr/bin/env python3
"""Run the ICS operator as a standalone process (``ics-operator`` console script)."""

import logging
import socket
import sys

import kopf

from ics_operator import config
from ics_operator import handlers  # noqa: F401  registers the kopf handlers


def configure_logging() -> None:
    """Configure logging with hostname and pod name for better traceability"""
    log_format = '%(asctime)s [%(levelname)s] [%(name)s] [%(hostname)s] [%(pod_name)s] %(message)s'
    hostname = socket.gethostname()

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=log_format,
        stream=sys.stdout,
    )

    # Add custom fields to the log record
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.hostname = hostname
        record.pod_name = config.POD_NAME
        return record

    logging.setLogRecordFactory(record_factory)
    logging.info("Logging configured at %s level", config.LOG_LEVEL)


def main() -> None:
    configure_logging()

    if config.WATCH_NAMESPACE:
        logging.info("Watching objects only in namespace %s for reconciliation", config.WATCH_NAMESPACE)
    else:
        logging.info("Watching ICS resources across all namespaces")

    leader_id = config.POD_NAME if config.POD_NAME != "unknown" else socket.gethostname()
    logging.info("Configuring peering with identity %s", leader_id)

    kopf.run(
        standalone=True,
        clusterwide=config.WATCH_NAMESPACE is None,
        namespaces=[config.WATCH_NAMESPACE] if config.WATCH_NAMESPACE else (),
        peering_name=config.KOPF_PEERING,
        identity=leader_id,
        priority=0,
    )


if __name__ == "__main__":
    main()
