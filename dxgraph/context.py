"""Diagnostic context passed through to plugins, and its checkpoint snapshot."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ResourceUnavailableError

LIVE_RESOURCE_FIELDS = ("logger", "request", "evidence", "transport")
_JSON_TYPES = (str, int, float, bool, list, dict, type(None))


class UnavailableResource:
    """Stand-in for a live resource that did not survive a checkpoint.

    Any call or attribute access raises ``ResourceUnavailableError`` so that a
    resumed run never silently talks to a stale connection.
    """

    def __init__(self, name: str) -> None:
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def _fail(self) -> ResourceUnavailableError:
        return ResourceUnavailableError(
            f"Diagnostic context resource '{self._name}' is unavailable after resume; "
            "supply a live context to use it"
        )

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        raise self._fail()

    def __getattr__(self, item: str) -> Any:
        if item.startswith("__"):
            raise AttributeError(item)
        raise self._fail()

    def __repr__(self) -> str:
        return f"UnavailableResource({self._name!r})"


class DiagnosticContext(BaseModel):
    """Opaque bundle handed to plugins.

    The engine only reads ``deterministic`` and ``deterministic_seed``; every
    other field is passed through untouched.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    endpoint: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    deterministic: bool = False
    deterministic_seed: Optional[int] = None
    logger: Optional[Callable[..., Any]] = None
    request: Optional[Callable[..., Any]] = None
    evidence: Optional[Callable[..., Any]] = None
    transport: Optional[Any] = None

    @property
    def is_detached(self) -> bool:
        return any(
            isinstance(getattr(self, name, None), UnavailableResource)
            for name in self._resource_names()
        )

    def _resource_names(self) -> List[str]:
        names = list(LIVE_RESOURCE_FIELDS)
        names.extend((self.model_extra or {}).keys())
        return names

    def to_snapshot(self) -> Dict[str, Any]:
        """Return a JSON-safe snapshot with live resources detached."""
        snapshot: Dict[str, Any] = {
            "endpoint": self.endpoint,
            "headers": dict(self.headers),
            "deterministic": self.deterministic,
            "deterministic_seed": self.deterministic_seed,
        }
        detached: List[str] = []
        for name in LIVE_RESOURCE_FIELDS:
            if getattr(self, name) is not None:
                detached.append(name)
        for name, value in (self.model_extra or {}).items():
            if callable(value) or not isinstance(value, _JSON_TYPES):
                detached.append(name)
            else:
                snapshot[name] = value
        snapshot["detached"] = detached
        return snapshot

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "DiagnosticContext":
        """Rebuild a context whose live resources are ``UnavailableResource`` markers."""
        payload = {k: v for k, v in data.items() if k != "detached"}
        for name in data.get("detached", []):
            payload[name] = UnavailableResource(name)
        return cls(**payload)
