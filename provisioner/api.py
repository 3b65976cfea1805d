"""Response envelopes for callers of the provisioner."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from provisioner.exceptions import ProvisionerError
from provisioner.models import VMRecord
from provisioner.utils import log


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def success_response(record: VMRecord) -> Dict[str, Any]:
    return {"success": True, "vm": record.to_dict()}


def error_response(error: ProvisionerError) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {
            "code": error.error_code,
            "message": error.message,
            "details": error.details,
            "timestamp": _timestamp(),
        },
    }


def handle_create(
    payload: Mapping[str, Any],
    manager,
    cancel: Optional[threading.Event] = None,
    deadline: Optional[float] = None,
) -> Dict[str, Any]:
    """Run a create request and wrap the outcome in the response envelope."""
    try:
        record = manager.create_and_start(payload, cancel=cancel, deadline=deadline)
    except ProvisionerError as exc:
        log("ERROR", f"[{exc.error_code}] {exc.message}")
        return error_response(exc)
    return success_response(record)
