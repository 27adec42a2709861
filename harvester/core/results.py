"""Tagged outcomes returned by the per-item operations of each stage.

No external call lets an exception cross a batch boundary; every call is
reduced to one of these variants and the driver decides what to do next.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Union


@dataclass(frozen=True, slots=True)
class Stored:
    arka_id: int
    external_id: str | None = None
    kind: Literal["stored"] = "stored"


@dataclass(frozen=True, slots=True)
class Skipped:
    reason: str
    kind: Literal["skipped"] = "skipped"


@dataclass(frozen=True, slots=True)
class Backoff:
    reason: str
    until: datetime
    kind: Literal["backoff"] = "backoff"


@dataclass(frozen=True, slots=True)
class Error:
    reason: str
    kind: Literal["error"] = "error"


@dataclass(frozen=True, slots=True)
class Transferred:
    external_id: str
    phone: str | None
    kind: Literal["transferred"] = "transferred"


@dataclass(frozen=True, slots=True)
class BulkTransferred:
    count: int
    kind: Literal["transferred"] = "transferred"


@dataclass(frozen=True, slots=True)
class Deferred:
    reason: str
    until: datetime | None = None
    kind: Literal["deferred"] = "deferred"


FetchResult = Union[Stored, Skipped, Backoff, Error]
TransferResult = Union[Transferred, Deferred, Error, Skipped]
BulkTransferResult = Union[BulkTransferred, Skipped]

NOT_FOUND = "not_found"


def is_progress(result: FetchResult | None) -> bool:
    if isinstance(result, Stored):
        return True
    return isinstance(result, Skipped) and result.reason == NOT_FOUND
