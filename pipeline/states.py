"""
Lifecycle tables for every stateful entity.

Each lifecycle maps an operation name to (legal source states, target state).
All status changes go through `Lifecycle.check` / `Lifecycle.advance`, so a
transition that is not in a table cannot happen anywhere in the code base.

`advance` is a compare-and-set UPDATE: of two concurrent requests trying the
same transition only one sees rowcount == 1, the other gets PreconditionFailed.
"""

from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from database import crud
from database.models import (
    DocumentStatus, PageStatus, SessionStatus, ReviewStatus,
    ExamDocument, ExamPage, GenerationSession, VerificationSession, ParsedQuestion,
)
from pipeline.errors import NotFound, PreconditionFailed


def _status_value(status) -> Optional[str]:
    if status is None:
        return None
    return status.value if hasattr(status, "value") else str(status)


class Lifecycle:
    """Finite-state lifecycle of one model's `status` column"""

    def __init__(self, name: str, model, transitions: Dict[str, Tuple[Iterable, object]]):
        self.name = name
        self.model = model
        self.transitions: Dict[str, Tuple[FrozenSet, object]] = {
            op: (frozenset(sources), target) for op, (sources, target) in transitions.items()
        }

    def sources(self, op: str) -> FrozenSet:
        return self.transitions[op][0]

    def target(self, op: str):
        return self.transitions[op][1]

    def can(self, op: str, current) -> bool:
        return current in self.sources(op)

    def check(self, op: str, current) -> None:
        """Raise PreconditionFailed unless `op` is legal from `current`"""
        if not self.can(op, current):
            allowed = ", ".join(sorted(_status_value(s) for s in self.sources(op)))
            raise PreconditionFailed(
                f"Cannot {op.replace('_', ' ')} {self.name} in status '{_status_value(current)}' "
                f"(allowed from: {allowed})",
                current_status=_status_value(current),
            )

    def advance(self, db: Session, key, op: str, **values):
        """
        Apply `op` to the row with primary key `key` if its current status
        allows it. Does not commit. Returns the new status.
        """
        sources, target = self.transitions[op]
        if crud.compare_and_set_status(db, self.model, key, sources, target, **values):
            return target

        row = db.get(self.model, key)
        if row is None:
            raise NotFound(f"{self.name.capitalize()} '{key}' not found")
        db.refresh(row)
        self.check(op, row.status)
        # Status allowed the op but the row changed under us between reads
        raise PreconditionFailed(
            f"Concurrent update on {self.name} '{key}'", current_status=_status_value(row.status)
        )


# ─── Documents ─────────────────────────────────────────────────────────────────

_FINALIZABLE = (DocumentStatus.EXTRACTED, DocumentStatus.PARSING, DocumentStatus.PARTIAL, DocumentStatus.ERROR)

DOCUMENT_LIFECYCLE = Lifecycle("document", ExamDocument, {
    "begin_extraction": ((DocumentStatus.UPLOADED, DocumentStatus.ERROR), DocumentStatus.EXTRACTING),
    "finish_extraction": ((DocumentStatus.EXTRACTING,), DocumentStatus.EXTRACTED),
    "begin_parsing": ((DocumentStatus.EXTRACTED, DocumentStatus.ERROR), DocumentStatus.PARSING),
    "complete": (_FINALIZABLE, DocumentStatus.COMPLETED),
    "complete_partially": (_FINALIZABLE, DocumentStatus.PARTIAL),
    "fail": ((DocumentStatus.EXTRACTING,) + _FINALIZABLE, DocumentStatus.ERROR),
})

# ─── Pages ─────────────────────────────────────────────────────────────────────

# A completed page is final. An errored page can only be claimed again by an
# explicit request (begin parsing, process-next or process-page).
PAGE_LIFECYCLE = Lifecycle("page", ExamPage, {
    "claim": ((PageStatus.PENDING, PageStatus.ERROR), PageStatus.PROCESSING),
    "complete": ((PageStatus.PROCESSING,), PageStatus.COMPLETED),
    "fail": ((PageStatus.PROCESSING,), PageStatus.ERROR),
})

# ─── Sessions ──────────────────────────────────────────────────────────────────

PRACTICE_LIFECYCLE = Lifecycle("practice session", GenerationSession, {
    "begin": ((SessionStatus.PENDING,), SessionStatus.GENERATING),
    "finish": ((SessionStatus.GENERATING,), SessionStatus.COMPLETED),
    "fail": ((SessionStatus.GENERATING,), SessionStatus.ERROR),
    "retry": ((SessionStatus.ERROR,), SessionStatus.PENDING),
})

VERIFICATION_LIFECYCLE = Lifecycle("verification session", VerificationSession, {
    "begin": ((SessionStatus.PENDING,), SessionStatus.GENERATING),
    "finish": ((SessionStatus.GENERATING,), SessionStatus.READY),
    "fail": ((SessionStatus.GENERATING,), SessionStatus.ERROR),
    "retry": ((SessionStatus.ERROR,), SessionStatus.PENDING),
    "start": ((SessionStatus.READY, SessionStatus.IN_PROGRESS), SessionStatus.IN_PROGRESS),
    "complete": ((SessionStatus.READY, SessionStatus.IN_PROGRESS), SessionStatus.COMPLETED),
})

# ─── Review ────────────────────────────────────────────────────────────────────

# Approved/rejected are terminal; services.review_gate re-opens them after an edit.
REVIEW_LIFECYCLE = Lifecycle("question", ParsedQuestion, {
    "approve": ((ReviewStatus.PENDING,), ReviewStatus.APPROVED),
    "reject": ((ReviewStatus.PENDING,), ReviewStatus.REJECTED),
})
