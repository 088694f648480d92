"""Value types for replication packets and the row changes derived from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sitemapspine.core.errors import FatalReplicationError


class Operation(str, Enum):
    """Row-level operation codes as written by dbmirror."""

    INSERT = "i"
    UPDATE = "u"
    DELETE = "d"

    @classmethod
    def parse(cls, code: str) -> Operation:
        try:
            return cls(code.strip().lower())
        except ValueError:
            raise FatalReplicationError(f"Unknown operation code {code!r}") from None


@dataclass(frozen=True, slots=True)
class PacketOperation:
    """One committed row operation inside a packet.

    Attributes:
        seq_id: Position of the operation in the source's replication log.
        keys: Key columns identifying the row (updates and deletes).
        data: Column values after the operation (inserts and updates).
    """

    seq_id: int
    schema: str
    table: str
    operation: Operation
    keys: dict[str, str | None] = field(default_factory=dict)
    data: dict[str, str | None] = field(default_factory=dict)

    @property
    def qualified_table(self) -> str:
        return f"{self.schema}.{self.table}"


@dataclass(frozen=True, slots=True)
class ReplicationPacket:
    """A numbered, immutable bundle of row operations in log order."""

    sequence: int
    operations: tuple[PacketOperation, ...] = ()

    def __len__(self) -> int:
        return len(self.operations)


@dataclass(frozen=True, slots=True)
class RowChange:
    """One changed primary-key value of one row.

    ``column``/``value`` identify the row; ``last_modified`` is the best
    available modification time; ``replication_sequence`` is the packet the
    change came from.
    """

    schema: str
    table: str
    operation: Operation
    column: str
    value: Any
    last_modified: datetime
    sequence_id: int
    replication_sequence: int

    @property
    def qualified_table(self) -> str:
        return f"{self.schema}.{self.table}"

    @property
    def ident(self) -> str:
        return f"{self.schema}.{self.table}.{self.column}"

    def describe(self) -> dict[str, Any]:
        """Log-friendly summary."""
        return {
            "table": self.qualified_table,
            "operation": self.operation.value,
            "column": self.column,
            "value": self.value,
            "sequence_id": self.sequence_id,
        }
