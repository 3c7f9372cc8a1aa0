"""
Event logging utilities for NDJSON format.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .ids import StackIdentity, validate_identity
from .state import get_stackkeeper_home

_write_lock = threading.Lock()


def get_events_file(identity: StackIdentity, home: Optional[Path] = None) -> Path:
    validate_identity(identity)
    base = Path(home) if home is not None else get_stackkeeper_home()
    return base / "events" / identity.organization / identity.project / f"{identity.stack}.ndjson"


def emit_event(identity: StackIdentity, event_type: str, data: Dict[str, Any], home: Optional[Path] = None) -> None:
    """
    Emit an event to the stack's events file.

    Args:
        identity: Stack identity
        event_type: Event type (e.g., "PASS_START", "STEP_FAILED")
        data: Event data
        home: Base directory (defaults to STACKKEEPER_HOME)
    """
    events_file = get_events_file(identity, home)
    events_file.parent.mkdir(parents=True, exist_ok=True)

    event = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "stack": str(identity),
        "type": event_type,
        "data": data
    }

    with _write_lock:
        with open(events_file, "a") as f:
            f.write(json.dumps(event) + "\n")
            f.flush()


def read_events(identity: StackIdentity, home: Optional[Path] = None) -> List[Dict[str, Any]]:
    """
    Read all events of a stack.

    Args:
        identity: Stack identity
        home: Base directory (defaults to STACKKEEPER_HOME)

    Returns:
        List of events, oldest first
    """
    events_file = get_events_file(identity, home)

    if not events_file.exists():
        return []

    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def get_last_event(identity: StackIdentity, home: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    events = read_events(identity, home)
    return events[-1] if events else None


def get_last_pass(identity: StackIdentity, home: Optional[Path] = None) -> Optional[Dict[str, Any]]:
    """Return the data of the most recent PASS_DONE event, if any."""
    for event in reversed(read_events(identity, home)):
        if event.get("type") == EventTypes.PASS_DONE:
            return event.get("data")
    return None


# Predefined event types for consistency
class EventTypes:
    PASS_START = "PASS_START"
    PASS_DONE = "PASS_DONE"
    PASS_ABORTED = "PASS_ABORTED"
    STEP_APPLIED = "STEP_APPLIED"
    STEP_UNCHANGED = "STEP_UNCHANGED"
    STEP_SKIPPED = "STEP_SKIPPED"
    STEP_FAILED = "STEP_FAILED"
    POLICY_UPDATED = "POLICY_UPDATED"
    STACK_CREATED = "STACK_CREATED"
    STACK_DELETED = "STACK_DELETED"
