from datetime import datetime, timezone
from typing import Any, Callable, Protocol, TypeAlias

from msgspec import Struct
from typing_extensions import dataclass_transform


@dataclass_transform(frozen_default=True)
class Record(Struct, frozen=True, kw_only=True):
    """Immutable keyword-only struct; copies are made with `msgspec.structs.replace`."""


class ILogger(Protocol):
    def debug(self, msg: str, /, *args: Any, **kwargs: Any) -> None: ...

    def info(self, msg: str, /, *args: Any, **kwargs: Any) -> None: ...

    def success(self, msg: str, /, *args: Any, **kwargs: Any) -> None: ...

    def warning(self, msg: str, /, *args: Any, **kwargs: Any) -> None: ...

    def exception(self, msg: str, /, *args: Any, **kwargs: Any) -> None: ...


IClock: TypeAlias = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between two timestamps, never negative."""
    return max(0, int((end - start).total_seconds() * 1000))
