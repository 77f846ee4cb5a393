"""
Order-level bookkeeping triggered as units move through finalization.
"""

from __future__ import annotations

import logging
from typing import Optional

from .database import JobDatabase, utcnow
from .errors import NotFoundError, OrderQAError
from .job_manager import JobManager
from .models import JobStatus

logger = logging.getLogger(__name__)

NON_UVA_ACADEMIC_STATUS = 1


class OrderService:
    def __init__(self, database: JobDatabase, jobs: JobManager) -> None:
        self.database = database
        self.jobs = jobs

    def check_archive_complete(self, job: Optional[JobStatus], order_id: int) -> bool:
        """
        Stamp the order's archiving-complete date once no unit is left to archive.

        Canceled units are ignored. The count and the stamp are not done under
        a lock, so two units finishing together may both stamp the order; the
        result is the same either way.

        Returns:
            True if every unit of the order is archived
        """
        self.jobs.log_info(job, f"Check if all units in order {order_id} are archived")
        remaining = self.database.count_unarchived_units(order_id)
        if remaining > 0:
            self.jobs.log_info(job, f"Order {order_id} has {remaining} units not yet archived")
            return False
        self.database.update_order(order_id, date_archiving_complete=utcnow())
        self.jobs.log_info(job, f"All units in order {order_id} are archived.")
        return True

    def check_ready_for_delivery(self, job: Optional[JobStatus], order_id: int) -> bool:
        """
        Decide whether every patron unit of an order has its deliverables.

        When they do, the order's patron-deliverables-complete date is stamped
        and the order is checked for approval and settled fees.

        Returns:
            True if the order is complete and passed QA, False if units are
            still outstanding or the customer was already notified

        Raises:
            NotFoundError: If the order does not exist
            OrderQAError: If the order is complete but not approved or not paid
        """
        order = self.database.get_order(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")

        if order.date_customer_notified is not None:
            self.jobs.log_error(
                job,
                "The date_customer_notified field on this order is filled out. "
                "The order appears to have been delivered already.",
            )
            return False

        self.jobs.log_info(job, "Checking units for completeness...")
        incomplete = self.database.count_units_missing_patron_deliverables(order_id)
        self.jobs.log_info(job, f"Incomplete units count {incomplete}")
        if incomplete > 0:
            self.jobs.log_info(job, f"Order {order_id} is incomplete; {incomplete} units still unfinished")
            return False

        self.jobs.log_info(job, "All units in order are complete and will now begin the delivery process.")
        self.database.update_order(order_id, date_patron_deliverables_complete=utcnow())

        self.jobs.log_info(job, "QA order status and fees...")
        if order.order_status != "approved":
            raise OrderQAError(
                "Order does not have an order status of 'approved'. Please correct before proceeding."
            )
        if order.customer_academic_status_id == NON_UVA_ACADEMIC_STATUS and order.fee is None:
            raise OrderQAError("Order has a non-UVA customer and the fee is blank.")
        if order.fee is not None and order.fee > 0:
            if order.date_fee_paid is None:
                raise OrderQAError("Order has an unpaid fee.")
            self.jobs.log_info(job, "Order fee paid.")
        else:
            self.jobs.log_info(job, "Order has no fees associated with it.")

        self.jobs.log_info(job, "Order has passed QA")
        return True
