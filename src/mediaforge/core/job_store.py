"""Job table persistence.

The orchestrator keeps its job table in memory and flushes it to a single
``jobs.json`` file on shutdown, reloading it on the next startup.  Loading
is intentionally forgiving, in the same way as a self-bootstrapping gallery
file: a missing, empty or corrupt file yields an empty table, and individual
entries that cannot be parsed are skipped with a warning rather than
aborting the whole restore.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .jobs import Job

logger = logging.getLogger(__name__)


def load_job_table(path: Path) -> list[Job]:
    """Load persisted jobs from *path*, oldest first.

    Args:
        path: Location of ``jobs.json``.

    Returns:
        Parsed jobs sorted by ``created_at``.  Empty when the file is absent
        or unreadable.
    """
    if not path.exists():
        return []

    try:
        with open(path, encoding="utf-8") as handle:
            raw_entries = json.load(handle)
    except (OSError, ValueError):
        logger.warning("Could not read job table %s; starting empty", path)
        return []

    if not isinstance(raw_entries, list):
        return []

    jobs: list[Job] = []
    for entry in raw_entries:
        if not isinstance(entry, dict):
            continue
        try:
            jobs.append(Job.from_dict(entry))
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping malformed job entry: %r", entry.get("id"))

    jobs.sort(key=lambda job: job.created_at)
    return jobs


def save_job_table(path: Path, jobs: list[Job]) -> None:
    """Persist *jobs* to *path* as a JSON list."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".json.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump([job.to_dict() for job in jobs], handle, indent=2)
    tmp_path.replace(path)
