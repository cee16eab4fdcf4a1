from __future__ import annotations

import copy
from collections.abc import Callable, Sequence
from typing import Any

from foundry.errors import AlreadyExistsError, NotFoundError, StateError
from foundry.state.store import StateStore

Row = dict[str, Any]


class RecordTable:
    """Rows of one entity type stored in a single state namespace.

    Ids come from a per-namespace counter and are never reused, so "highest
    id" is a reliable ordering for append-only histories.
    """

    def __init__(
        self,
        store: StateStore,
        namespace: str,
        *,
        unique_key: Sequence[str] = (),
        label: str | None = None,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.unique_key = tuple(unique_key)
        self.label = label or namespace

    @staticmethod
    def _empty() -> dict[str, Any]:
        return {"next_id": 1, "rows": []}

    def _payload(self) -> dict[str, Any]:
        payload = self.store.get_json(self.namespace, default=self._empty())
        if not isinstance(payload, dict) or not isinstance(payload.get("rows"), list):
            return self._empty()
        return payload

    @staticmethod
    def _matches(row: Row, filters: dict[str, Any]) -> bool:
        return all(row.get(key) == value for key, value in filters.items() if value is not None)

    def _key_of(self, row: Row) -> tuple[Any, ...]:
        return tuple(row.get(name) for name in self.unique_key)

    def insert(self, row: Row) -> Row:
        inserted: Row = {}

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal inserted
            data = payload if isinstance(payload, dict) else self._empty()
            rows = data.setdefault("rows", [])
            if self.unique_key:
                key = self._key_of(row)
                if any(self._key_of(existing) == key for existing in rows):
                    raise AlreadyExistsError(f"{self.label} {'/'.join(map(str, key))} already exists")
            next_id = int(data.get("next_id", 1))
            inserted = {**copy.deepcopy(row), "id": next_id}
            rows.append(inserted)
            data["next_id"] = next_id + 1
            return data

        self.store.update_json(self.namespace, _updater, default=self._empty())
        return copy.deepcopy(inserted)

    def get(self, **key: Any) -> Row | None:
        for row in self._payload()["rows"]:
            if all(row.get(name) == value for name, value in key.items()):
                return row
        return None

    def get_by_id(self, record_id: int) -> Row | None:
        return self.get(id=int(record_id))

    def list(self, **filters: Any) -> list[Row]:
        return [row for row in self._payload()["rows"] if self._matches(row, filters)]

    def update(self, match: dict[str, Any], change: Callable[[Row], Row | None]) -> Row:
        """Apply ``change`` to the single row matching ``match`` in one write.

        ``change`` may raise to veto the update; nothing is written then.
        """

        updated: Row = {}

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal updated
            data = payload if isinstance(payload, dict) else self._empty()
            for index, row in enumerate(data.setdefault("rows", [])):
                if all(row.get(name) == value for name, value in match.items()):
                    candidate = copy.deepcopy(row)
                    result = change(candidate)
                    new_row = candidate if result is None else result
                    new_row["id"] = row["id"]
                    data["rows"][index] = new_row
                    updated = new_row
                    return data
            rendered = "/".join(str(value) for value in match.values())
            raise NotFoundError(f"{self.label} {rendered} not found")

        self.store.update_json(self.namespace, _updater, default=self._empty())
        return copy.deepcopy(updated)


def require_id(record_id: int | None, label: str) -> int:
    if record_id is None:
        raise StateError(f"{label} was stored without an id", tool="state")
    return record_id
