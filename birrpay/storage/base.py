"""The document store capability consumed by the performance layer."""

from typing import Any, Protocol

from birrpay.models.enums import WriteType
from birrpay.models.writes import PendingWrite, WriteOutcome

Document = dict[str, Any]


class DocumentStore(Protocol):
    """Minimal document database contract (collection + id → mapping).

    Implementations raise ``TransientStoreError`` / ``PermanentStoreError``
    for whole-call failures and report per-item failures from
    ``bulk_write`` as ``WriteOutcome(ok=False)``.
    """

    async def get_document(self, collection: str, doc_id: str) -> Document | None: ...

    async def set_document(
        self, collection: str, doc_id: str, document: Document, merge: bool = False
    ) -> None: ...

    async def bulk_write(
        self, collection: str, operation: WriteType, items: list[PendingWrite]
    ) -> list[WriteOutcome]: ...
