"""Persistence for installment requests and their line items."""
import math
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session, selectinload

from installments.database import transaction
from installments.errors import InvalidTransitionError, NotFoundError
from installments.logging import get_logger
from installments.models import InstallmentItem, InstallmentRequest
from installments.negotiation.states import (
    InstallmentStatus, SinicarDecision,
)
from installments.schemas import CreateInstallmentRequest, InstallmentFilters, Pagination

logger = get_logger(__name__)


class RequestStore:
    """
    Reads and writes installment requests.

    Every status change is a compare-and-set: the row is only updated while
    its status still equals the status the caller read. A caller that lost a
    race gets InvalidTransitionError instead of overwriting the winner.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        customer_id: str,
        customer_name: Optional[str],
        data: CreateInstallmentRequest,
    ) -> InstallmentRequest:
        """Persist a new request and its items in one transaction."""
        request = InstallmentRequest(
            customer_id=customer_id,
            customer_name=customer_name,
            total_requested_value=data.total_requested_value,
            payment_frequency=data.payment_frequency,
            requested_duration_months=data.requested_duration_months,
            status=InstallmentStatus.PENDING_SINICAR_REVIEW,
            sinicar_decision=SinicarDecision.PENDING,
            allowed_for_suppliers=False,
            forwarded_to_supplier_ids=[],
            items=[
                InstallmentItem(
                    position=position,
                    part_number=item.part_number,
                    part_name=item.part_name,
                    quantity=item.quantity,
                    estimated_price=item.estimated_price,
                )
                for position, item in enumerate(data.items)
            ],
        )

        with transaction(self.db):
            self.db.add(request)

        self.db.refresh(request)
        return request

    def find_by_id(self, request_id: str) -> Optional[InstallmentRequest]:
        return (
            self.db.query(InstallmentRequest)
            .options(selectinload(InstallmentRequest.items), selectinload(InstallmentRequest.offers))
            .filter(InstallmentRequest.id == request_id)
            .populate_existing()
            .one_or_none()
        )

    def get(self, request_id: str) -> InstallmentRequest:
        request = self.find_by_id(request_id)
        if request is None:
            raise NotFoundError("Installment request", request_id)
        return request

    def find_many(
        self, filters: InstallmentFilters, pagination: Pagination
    ) -> tuple[list[InstallmentRequest], int]:
        """
        List requests matching `filters`.

        Returns:
            Tuple of (requests on the requested page, total matching count)
        """
        query = self.db.query(InstallmentRequest)

        if filters.customer_id:
            query = query.filter(InstallmentRequest.customer_id == filters.customer_id)
        if filters.status:
            query = query.filter(InstallmentRequest.status == filters.status)
        if filters.min_value is not None:
            query = query.filter(InstallmentRequest.total_requested_value >= filters.min_value)
        if filters.max_value is not None:
            query = query.filter(InstallmentRequest.total_requested_value <= filters.max_value)
        if filters.from_date:
            query = query.filter(InstallmentRequest.created_at >= filters.from_date)
        if filters.to_date:
            query = query.filter(InstallmentRequest.created_at <= filters.to_date)

        total = query.count()

        sort_column = getattr(InstallmentRequest, pagination.sort_by)
        order = sort_column.asc() if pagination.sort_order == "asc" else sort_column.desc()

        rows = (
            query.options(selectinload(InstallmentRequest.items), selectinload(InstallmentRequest.offers))
            .order_by(order, InstallmentRequest.id)
            .offset((pagination.page - 1) * pagination.limit)
            .limit(pagination.limit)
            .all()
        )
        return rows, total

    def find_by_customer(
        self, customer_id: str, pagination: Pagination
    ) -> tuple[list[InstallmentRequest], int]:
        return self.find_many(InstallmentFilters(customer_id=customer_id), pagination)

    def status_totals(self, customer_id: Optional[str] = None) -> list[tuple]:
        """Rows of (status, request count, summed requested value)."""
        query = self.db.query(
            InstallmentRequest.status,
            func.count(InstallmentRequest.id),
            func.sum(InstallmentRequest.total_requested_value),
        )
        if customer_id:
            query = query.filter(InstallmentRequest.customer_id == customer_id)
        return query.group_by(InstallmentRequest.status).all()

    def update_status(
        self,
        request_id: str,
        expected: InstallmentStatus,
        status: InstallmentStatus,
        **fields,
    ) -> InstallmentRequest:
        """
        Move a request from `expected` to `status`, writing `fields` in the same statement.

        Closing and cancelling also stamp `closed_at`.

        Raises:
            NotFoundError: the request does not exist
            InvalidTransitionError: the request is no longer in `expected`
        """
        values = dict(fields, status=status)
        if status in (InstallmentStatus.CLOSED, InstallmentStatus.CANCELLED):
            values.setdefault("closed_at", datetime.now(timezone.utc))

        with transaction(self.db):
            self.compare_and_set(request_id, expected, values)

        return self.get(request_id)

    def compare_and_set(self, request_id: str, expected: InstallmentStatus, values: dict) -> None:
        """
        Conditional UPDATE inside the caller's transaction.

        The WHERE clause re-checks the status at write time, so under
        read-committed isolation a concurrent writer that got there first
        leaves zero matched rows here.
        """
        result = self.db.execute(
            update(InstallmentRequest)
            .where(InstallmentRequest.id == request_id)
            .where(InstallmentRequest.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return

        current = (
            self.db.query(InstallmentRequest.status)
            .filter(InstallmentRequest.id == request_id)
            .scalar()
        )
        if current is None:
            raise NotFoundError("Installment request", request_id)

        logger.warning(
            "installment_status_conflict",
            installment_request_id=request_id,
            expected_status=InstallmentStatus(expected).value,
            current_status=InstallmentStatus(current).value,
            attempted_status=InstallmentStatus(values["status"]).value,
        )
        raise InvalidTransitionError(current, values["status"])

    def record_review(
        self,
        request_id: str,
        status: InstallmentStatus,
        decision: SinicarDecision,
        reviewed_by: str,
        admin_notes: Optional[str],
        allowed_for_suppliers: bool,
    ) -> InstallmentRequest:
        return self.update_status(
            request_id,
            InstallmentStatus.PENDING_SINICAR_REVIEW,
            status,
            sinicar_decision=decision,
            reviewed_by=reviewed_by,
            reviewed_at=datetime.now(timezone.utc),
            admin_notes=admin_notes,
            allowed_for_suppliers=allowed_for_suppliers,
        )

    def record_forwarding(
        self,
        request_id: str,
        expected: InstallmentStatus,
        supplier_ids: list[str],
    ) -> InstallmentRequest:
        """Store the ordered, de-duplicated supplier ids and move to FORWARDED_TO_SUPPLIERS."""
        return self.update_status(
            request_id,
            expected,
            InstallmentStatus.FORWARDED_TO_SUPPLIERS,
            forwarded_to_supplier_ids=list(dict.fromkeys(supplier_ids)),
        )


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0
