"""Append-only NDJSON audit log of publish batches."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Sequence

from .jobs import PublishResult, WebJob, utcnow_iso

LOGGER = logging.getLogger(__name__)


def build_audit_entry(job: WebJob, results: Sequence[PublishResult]) -> dict[str, Any]:
    ok_count = sum(1 for result in results if result.ok)
    return {
        "timestamp": utcnow_iso(),
        "job_id": job.job_id,
        "site_key": job.site_key,
        "job_status": job.job_status.value,
        "pages_attempted": len(results),
        "pages_ok": ok_count,
        "pages_failed": len(results) - ok_count,
        "results": [result.to_dict() for result in results],
    }


class NdjsonAuditLog:
    """Best-effort writer; a failed write is logged and never raised."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def append(self, entry: Mapping[str, Any]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.warning("Failed to append publish audit entry to %s: %s", self.path, exc)
            return False
        return True


__all__ = ["NdjsonAuditLog", "build_audit_entry"]
