"""
Cleanup sweep - reclaim jobs abandoned by their clients.

Clients that stop calling back (transport failure, user gave up) leave
their job records behind. The sweep removes every record, and its blobs,
that has not been modified for longer than the age threshold. It is a
maintenance operation and never runs as part of a job call.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from baton.backend import Backend, CleanupReport, get_backend
from baton.config import BatonConfig, load_config
from baton.utils import format_duration

logger = logging.getLogger(__name__)


def run_cleanup(
    backend: Optional[Backend] = None,
    age: Optional[timedelta] = None,
    config: Optional[BatonConfig] = None,
    now: Optional[datetime] = None,
) -> CleanupReport:
    """
    Remove jobs last modified strictly before now - age.

    Safe to run repeatedly; a second sweep over the same state removes
    nothing. A record that fails to delete is reported in the result and
    does not stop the sweep.

    Args:
        backend: Backend to sweep (default: built from config)
        age: Age threshold (default: config.cleanup_age, 3 days)
        config: Settings (default: load_config())
        now: Reference time (default: current UTC time)

    Returns:
        CleanupReport with removed ids and per-record errors
    """
    if config is None:
        config = getattr(backend, "config", None) or load_config()
    if backend is None:
        backend = get_backend(config)
    if age is None:
        age = config.cleanup_age

    logger.info(
        f"Starting cleanup sweep (older than {format_duration(age.total_seconds())})",
        extra={"event": "cleanup_started", "metadata": {"age_seconds": age.total_seconds()}},
    )

    report = backend.cleanup(age=age, now=now)

    for job_id, error in report.errors.items():
        logger.error(
            f"Could not remove job {job_id}: {error}",
            extra={"event": "cleanup_record_failed", "job_id": job_id},
        )

    logger.info(
        f"Cleanup removed {report.count} jobs ({len(report.errors)} errors)",
        extra={"event": "cleanup_finished", "metadata": report.to_dict()},
    )
    return report
