from typing import Any

from pydantic import BaseModel, ConfigDict

from birrpay.models.enums import WriteType


class PendingWrite(BaseModel):
    """A single document write waiting in a batch."""

    model_config = ConfigDict(from_attributes=True)

    doc_id: str
    payload: dict[str, Any] = {}
    write_type: WriteType = WriteType.SET


class WriteOutcome(BaseModel):
    doc_id: str
    ok: bool
    error: str | None = None
    retriable: bool = True


class FlushResult(BaseModel):
    """Outcome of flushing one batch key.

    ``failed`` holds the items that could not be committed even after the
    individual retry; callers decide whether to re-enqueue them.
    """

    collection: str
    operation: WriteType
    committed: list[str] = []
    failed: list[PendingWrite] = []
    retried: int = 0

    @property
    def failed_ids(self) -> list[str]:
        return [item.doc_id for item in self.failed]

    @property
    def ok(self) -> bool:
        return not self.failed
