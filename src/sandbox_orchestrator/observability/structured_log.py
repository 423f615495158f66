import json
from datetime import datetime, timezone
from logging import INFO, Logger
from typing import Any, Dict

from sandbox_orchestrator.util import scrub_mapping


def log_json(logger: Logger, event: str, level: int = INFO, **fields: Any) -> None:
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
    }
    payload.update(scrub_mapping(fields))
    logger.log(level, json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str))
