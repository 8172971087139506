"""
perptrader Core: Audit Logger

One structured JSON line per decision cycle for debugging and review.
"""

import json
import logging
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger (JSONL, one object per cycle).

    Records the plan, the lifecycle transition, orders and anomalies.
    Audit failures are logged and never interrupt the cycle.
    """

    def __init__(self, audit_file: Optional[str] = None):
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_cycle(self,
                  ts: datetime,
                  mode: str,
                  status: str,
                  plan: Optional[Dict[str, Any]] = None,
                  lifecycle: Optional[Dict[str, Any]] = None,
                  indicators: Optional[Dict[str, Any]] = None,
                  anomalies: Optional[List[str]] = None,
                  error: Optional[str] = None) -> None:
        entry = {
            "timestamp": ts.isoformat(),
            "mode": mode,
            "status": status,
            "plan": plan,
            "lifecycle": lifecycle,
            "indicators": indicators,
            "anomalies": anomalies or [],
            "error": error,
        }
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")
            return
        logger.debug(f"Audited cycle: status={status}")
