from __future__ import annotations

import json
import logging
from typing import Any, Dict

from rental_billing.core.settings import S
from rental_billing.core.time import now_ts

audit_logger = logging.getLogger("rental_billing.audit")


def client_ip_from_request(req) -> str:
    xff = req.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    return req.client.host if req.client else "0.0.0.0"


def audit_event(event: str, user_sub: str, request=None, **fields: Any) -> None:
    if not S.audit_log_enabled:
        return
    payload: Dict[str, Any] = {"event": event, "user_sub": user_sub, "ts": now_ts(), **fields}
    if request is not None:
        payload["ip"] = client_ip_from_request(request)
        payload["user_agent"] = (request.headers.get("user-agent", "")[:256])
    audit_logger.info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
