from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Tuple, Union


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple(sorted((key, _freeze(item)) for key, item in value.items()))
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_freeze(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort(key=repr)
        return tuple(items)
    return value


@dataclass(frozen=True)
class QueryKey:
    """Identity of one cached query: table, operation name and parameters.

    Keys compare by value. Prefix matching works on ``parts()``, so
    ``QueryKey("fees", "student", ("s-1",))`` starts with ``"fees"`` and with
    ``("fees", "student")``.
    """

    table: str
    operation: str = "all"
    params: Tuple[Any, ...] = ()

    @classmethod
    def of(cls, table: str, operation: str = "all", *params: Any) -> "QueryKey":
        return cls(table, operation, tuple(_freeze(param) for param in params))

    def parts(self) -> Tuple[Any, ...]:
        return (self.table, self.operation, *self.params)

    def startswith(self, prefix: "KeyPrefix") -> bool:
        wanted = _prefix_parts(prefix)
        return self.parts()[: len(wanted)] == wanted

    def __str__(self) -> str:
        return "/".join(str(part) for part in self.parts())


KeyPrefix = Union[str, QueryKey, Iterable[Any]]


def _prefix_parts(prefix: KeyPrefix) -> Tuple[Any, ...]:
    if isinstance(prefix, str):
        return (prefix,)
    if isinstance(prefix, QueryKey):
        return prefix.parts()
    return tuple(_freeze(part) for part in prefix)
