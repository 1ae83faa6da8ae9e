from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class PlanStateError(RuntimeError):
    """Raised when durable session state cannot be read or written."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class JsonStateStore:
    """Versioned JSON envelopes, one file per namespace.

    Writes are read-modify-write without locking; one writer per directory is assumed.
    """

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path, namespaces: Iterable[str]) -> None:
        self.state_dir = state_dir
        self.namespaces = frozenset(namespaces)

    def _validate_namespace(self, namespace: str) -> None:
        if namespace not in self.namespaces:
            raise PlanStateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        except OSError as exc:
            raise PlanStateError(f"Could not read {path}: {exc}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        path = self._file(namespace)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.state_dir,
                prefix=f".{namespace}-",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(serialized)
                temp_path = handle.name
            os.replace(temp_path, path)
        except OSError as exc:
            raise PlanStateError(f"Could not write {path}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def has(self, namespace: str) -> bool:
        self._validate_namespace(namespace)
        return self._file(namespace).exists()

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any) -> int:
        current = self.get_envelope(namespace, default={})
        revision = int(current.get("revision", 0)) + 1
        self._write_raw_json(
            namespace,
            {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": utcnow_iso(),
                "data": data,
            },
        )
        return revision

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        current = self.get_json(namespace, default=default_value)
        updated = updater(current)
        self.set_json(namespace, updated)
        return updated
