"""Document acceptance aggregation for an agreement's requested documents."""

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from tax_engagement.domain.enums import AcceptanceStatus, TodoCategory, TodoStatus, UploadStatus
from tax_engagement.domain.schemas import Todo
from tax_engagement.infra.gateway import EngagementGateway

logger = logging.getLogger(__name__)


def classify_todo(todo: Todo) -> TodoCategory:
    """Category of *todo*.

    An explicit category wins. Without one, the title decides: anything
    mentioning "sign" is the signing step and a bare "pay" is the payment
    step. Custom or localized titles fall through to DOCUMENT.
    """
    if todo.category is not None:
        return todo.category
    title = todo.title.strip().lower()
    if "sign" in title:
        return TodoCategory.SIGN_AGREEMENT
    if title == "pay":
        return TodoCategory.PAYMENT
    return TodoCategory.DOCUMENT


def document_todos(todos: Iterable[Todo]) -> list[Todo]:
    return [todo for todo in todos if classify_todo(todo) == TodoCategory.DOCUMENT]


def _is_accepted(todo: Todo) -> bool:
    return (
        todo.document is not None
        and todo.document.acceptance_status == AcceptanceStatus.ACCEPTED_BY_STRATEGIST
    )


def _is_uploaded(todo: Todo) -> bool:
    # An accepted document was necessarily uploaded, whatever the flags say
    if _is_accepted(todo):
        return True
    if todo.status == TodoStatus.COMPLETED.value:
        return True
    return todo.document is not None and todo.document.upload_status == UploadStatus.FILE_UPLOADED


@dataclass(frozen=True)
class DocumentCounts:
    """Review progress of the requested documents.

    Always satisfies ``accepted <= uploaded <= total``.
    """

    uploaded: int = 0
    accepted: int = 0
    total: int = 0

    @property
    def all_uploaded(self) -> bool:
        return self.uploaded >= self.total

    @property
    def all_accepted(self) -> bool:
        """Nothing requested counts as satisfied."""
        return self.accepted >= self.total


def count_documents(todos: Iterable[Todo]) -> DocumentCounts:
    docs = document_todos(todos)
    return DocumentCounts(
        uploaded=sum(1 for todo in docs if _is_uploaded(todo)),
        accepted=sum(1 for todo in docs if _is_accepted(todo)),
        total=len(docs),
    )


class DocumentAggregator:
    """Strategist review commands for requested documents.

    No local state is mutated optimistically: a successful update triggers
    *reload* so downstream gating is recomputed from fresh data.
    """

    def __init__(self, gateway: EngagementGateway, reload: Callable[[], Awaitable[None]]):
        self.gateway = gateway
        self.reload = reload

    async def accept_document(self, document_id: str) -> bool:
        return await self._set_acceptance(document_id, AcceptanceStatus.ACCEPTED_BY_STRATEGIST)

    async def decline_document(self, document_id: str) -> bool:
        return await self._set_acceptance(document_id, AcceptanceStatus.REJECTED_BY_STRATEGIST)

    async def _set_acceptance(self, document_id: str, status: AcceptanceStatus) -> bool:
        success = await self.gateway.update_document_acceptance(document_id, status)
        if not success:
            logger.warning("Platform refused %s for document %s", status.value, document_id)
            return False
        logger.info("Document %s marked %s", document_id, status.value)
        await self.reload()
        return True
