from __future__ import annotations

from typing import Any


_MISSING = object()


class JsonPath:
    """Chainable optional-field accessor over a decoded JSON tree.

    Each step returns a new cursor. The first missing link is remembered and
    every later step short-circuits, so ``JsonPath(doc).key("a").index(0)``
    never raises. ``root`` always holds the original payload.
    """

    __slots__ = ("root", "_value", "_trail", "_missing_at")

    def __init__(self, root: Any, *, _value: Any = _MISSING, _trail: tuple[str, ...] = (), _missing_at: str = "") -> None:
        self.root = root
        self._value = root if _value is _MISSING else _value
        self._trail = _trail
        self._missing_at = _missing_at

    @property
    def path(self) -> str:
        return "".join(self._trail)

    @property
    def missing_at(self) -> str:
        return self._missing_at

    @property
    def found(self) -> bool:
        return not self._missing_at

    def _step(self, label: str, value: Any) -> JsonPath:
        trail = (*self._trail, label)
        if value is _MISSING:
            return JsonPath(self.root, _value=None, _trail=trail, _missing_at="".join(trail))
        return JsonPath(self.root, _value=value, _trail=trail)

    def key(self, name: str) -> JsonPath:
        label = f".{name}" if self._trail else name
        if self._missing_at:
            return JsonPath(self.root, _value=None, _trail=(*self._trail, label), _missing_at=self._missing_at)
        if not isinstance(self._value, dict) or name not in self._value:
            return self._step(label, _MISSING)
        return self._step(label, self._value[name])

    def index(self, position: int) -> JsonPath:
        label = f"[{position}]"
        if self._missing_at:
            return JsonPath(self.root, _value=None, _trail=(*self._trail, label), _missing_at=self._missing_at)
        if not isinstance(self._value, list) or not -len(self._value) <= position < len(self._value):
            return self._step(label, _MISSING)
        return self._step(label, self._value[position])

    def value(self, default: Any = None) -> Any:
        if self._missing_at:
            return default
        return self._value

    def text(self) -> str | None:
        value = self.value()
        return value if isinstance(value, str) else None

    def mapping(self) -> dict[str, Any] | None:
        value = self.value()
        return value if isinstance(value, dict) else None
