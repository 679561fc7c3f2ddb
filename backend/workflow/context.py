"""Execution context threaded through the steps of one run."""

import copy
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

from core.exceptions import ConfigurationError
from core.utils import parse_iso_datetime, to_json_safe


def step_output_key(index: int) -> str:
    """Context key for the output of the step at zero-based ``index``."""
    return f"step{index + 1}_output"


@dataclass
class ExecutionContext:
    """Fixed invocation fields plus a map of step-output-key → JSON-like value.

    Steps read from ``lookup()`` (fixed fields and variables in one flat
    namespace) and write only through ``set()``. Each retry attempt works on
    a ``fork()``; the executor ``merge()``s the fork back only on success, so
    a failed attempt leaves no writes behind.
    """

    organization_id: str
    trigger_source: str = "manual"
    workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None
    run_id: Optional[str] = None
    schedule_id: Optional[str] = None
    user_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    assigned_user_name: Optional[str] = None
    last_successful_run_at: Optional[datetime] = None
    webhook_data: Optional[dict[str, Any]] = None
    manual_data: Optional[dict[str, Any]] = None
    trigger: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.lookup().get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Write a variable; fixed invocation fields are read-only."""
        if key in _FIXED_FIELDS:
            raise ConfigurationError(f"'{key}' is a fixed context field and cannot be overwritten")
        self.variables[key] = value

    def lookup(self) -> dict[str, Any]:
        """Flat read view: variables overlaid by the fixed fields."""
        view = dict(self.variables)
        for name in _FIXED_FIELDS:
            view[name] = getattr(self, name)
        return view

    def fork(self) -> "ExecutionContext":
        """Copy whose variables can be mutated without touching this context."""
        clone = copy.copy(self)
        clone.variables = copy.deepcopy(self.variables)
        return clone

    def merge(self, other: "ExecutionContext") -> None:
        """Adopt the variable writes of a successful fork."""
        self.variables = other.variables

    def to_dict(self) -> dict:
        """Serialize context for run persistence."""
        data = {name: getattr(self, name) for name in _FIXED_FIELDS}
        data["variables"] = self.variables
        return to_json_safe(data)

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionContext":
        """Restore context from a persisted snapshot."""
        kwargs = {name: data.get(name) for name in _FIXED_FIELDS if name in data}
        if isinstance(kwargs.get("last_successful_run_at"), str):
            kwargs["last_successful_run_at"] = parse_iso_datetime(kwargs["last_successful_run_at"])
        if kwargs.get("trigger") is None:
            kwargs.pop("trigger", None)
        return cls(variables=dict(data.get("variables") or {}), **kwargs)


_FIXED_FIELDS = tuple(f.name for f in fields(ExecutionContext) if f.name != "variables")
