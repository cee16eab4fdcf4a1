from foundry.state.records import RecordTable, require_id
from foundry.state.store import StateStore, utcnow_iso

__all__ = ["RecordTable", "StateStore", "require_id", "utcnow_iso"]
