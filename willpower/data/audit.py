"""Append-only audit log of point movements."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from willpower.core.config import Settings

logger = logging.getLogger(__name__)


def write_audit_entry(audit_path: Path, entry: dict[str, Any]) -> None:
    """Append a JSON-lines entry to an audit log file."""
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    with audit_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry, default=str) + "\n")


def audit_points(
    config: Settings,
    user_id: str,
    action: str,
    delta: int,
    new_total: int,
    **extra: Any,
) -> bool:
    """Record a grant (positive delta) or reversal (negative delta) in points.jsonl.

    Called after the bank write has committed, so a failed append is logged
    and reported through the return value instead of raised.
    """
    try:
        write_audit_entry(
            config.data_audit_path / "points.jsonl",
            {
                "timestamp": datetime.now(UTC).isoformat(),
                "user_id": user_id,
                "action": action,
                "delta": delta,
                "new_total": new_total,
                **extra,
            },
        )
    except OSError:
        logger.exception("Audit entry for %s (%s, %+d) could not be written", user_id, action, delta)
        return False
    return True
