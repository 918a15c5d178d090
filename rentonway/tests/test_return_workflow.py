import json
import os
import tempfile
import unittest
from datetime import date

from .support import add_product, make_session_factory, payment_fields

from models.rental_models import AuditLog, Rental, Return
from services import rental_service, return_service
from services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    UpstreamFailureError,
    ValidationFailedError,
)
from services.return_service import InspectionImage


CUSTOMER_ID = 11
PARTNER_ID = 501
OTHER_PARTNER_ID = 502


def _png(name="front.png", size=64):
    return InspectionImage(filename=name, content_type="image/png", data=b"\x89PNG" + b"0" * size)


class ReturnWorkflowTestCase(unittest.TestCase):
    db_url = None

    def setUp(self):
        self.engine, self.SessionLocal = make_session_factory(self.db_url)
        self.db = self.SessionLocal()
        self.product = add_product(self.db)
        self.uploaded = []

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def fake_uploader(self, data, folder, filename=None):
        url = f"/uploads/{folder}/{len(self.uploaded)}-{filename}"
        self.uploaded.append(url)
        return url

    def rent(self, user_id=CUSTOMER_ID, end=date(2026, 3, 4)):
        return rental_service.create_rental(
            self.db,
            customer_id=user_id,
            product_id=self.product.ProductID,
            start_date=date(2026, 3, 1),
            end_date=end,
            **payment_fields(),
        )

    def schedule(self, rental, pickup=date(2026, 3, 5), slot="9AM-12PM", user_id=CUSTOMER_ID):
        return return_service.schedule_return(
            self.db,
            customer_id=user_id,
            rental_ref=rental.RentalNumber,
            pickup_date=pickup,
            time_slot=slot,
            notes="  Ring the bell  ",
        )

    def picked_up_return(self):
        rental = self.rent()
        return_item = self.schedule(rental)
        return_service.assign_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        return_service.update_return_status(self.db, return_item.ReturnNumber, PARTNER_ID, "picked_up")
        return rental, return_item

    def inspect(self, return_item, **overrides):
        fields = {
            "condition": "good",
            "quality_issues": ["stains"],
            "comments": "Small mark on hem",
            "images": [_png()],
            "uploader": self.fake_uploader,
        }
        fields.update(overrides)
        return return_service.submit_inspection(self.db, return_item.ReturnNumber, PARTNER_ID, **fields)


class ScheduleReturnTests(ReturnWorkflowTestCase):
    def test_schedule_moves_rental_to_return_scheduled(self):
        rental = self.rent()
        return_item = self.schedule(rental)

        self.assertRegex(return_item.ReturnNumber, r"^RET-[A-Z0-9]{8}$")
        self.assertEqual(return_item.Status, "scheduled")
        self.assertEqual(return_item.UserID, CUSTOMER_ID)
        self.assertEqual(return_item.ProductID, self.product.ProductID)
        self.assertEqual(return_item.AdditionalNotes, "Ring the bell")
        self.assertIsNone(return_item.DeliveryPartnerID)
        self.assertEqual(self.db.get(Rental, rental.RentalID).Status, "return_scheduled")

        actions = {row.Action for row in self.db.query(AuditLog).all()}
        self.assertIn("ScheduleReturn", actions)
        self.assertIn("RentalStatusChangeRequested", actions)

    def test_schedule_accepts_numeric_rental_id(self):
        rental = self.rent()
        return_item = return_service.schedule_return(
            self.db,
            customer_id=CUSTOMER_ID,
            rental_ref=rental.RentalID,
            pickup_date=date(2026, 3, 5),
            time_slot="3PM-6PM",
        )
        self.assertEqual(return_item.RentalID, rental.RentalID)
        self.assertIsNone(return_item.AdditionalNotes)

    def test_second_schedule_is_conflict_even_after_completion(self):
        rental = self.rent()
        return_item = self.schedule(rental)
        with self.assertRaises(ConflictError):
            self.schedule(rental)

        return_item.Status = "completed"
        self.db.commit()
        with self.assertRaises(ConflictError):
            self.schedule(rental)
        self.assertEqual(self.db.query(Return).count(), 1)

    def test_schedule_for_someone_elses_rental_is_forbidden(self):
        rental = self.rent(user_id=77)
        with self.assertRaises(ForbiddenError):
            self.schedule(rental)
        with self.assertRaises(NotFoundError):
            return_service.schedule_return(
                self.db,
                customer_id=CUSTOMER_ID,
                rental_ref="RENT-FFFFFFFF",
                pickup_date=date(2026, 3, 5),
                time_slot="9AM-12PM",
            )
        self.assertEqual(self.db.query(Return).count(), 0)

    def test_schedule_rejects_cancelled_rental_and_bad_input(self):
        cancelled = self.rent()
        rental_service.cancel_rental(self.db, cancelled.RentalNumber, CUSTOMER_ID)
        with self.assertRaises(InvalidStateError):
            self.schedule(cancelled)

        rental = self.rent()
        with self.assertRaises(ValidationFailedError):
            self.schedule(rental, slot="midnight")
        with self.assertRaises(ValidationFailedError):
            self.schedule(rental, pickup=None)
        self.assertEqual(self.db.get(Rental, rental.RentalID).Status, "active")

    def test_user_returns_are_scoped_to_customer(self):
        mine = self.schedule(self.rent())
        self.schedule(self.rent(user_id=77), user_id=77)
        returns = return_service.list_user_returns(self.db, CUSTOMER_ID)
        self.assertEqual([r.ReturnID for r in returns], [mine.ReturnID])


class PartnerQueueTests(ReturnWorkflowTestCase):
    def test_pending_returns_are_ordered_and_filtered(self):
        late = self.schedule(self.rent(), pickup=date(2026, 3, 9))
        early = self.schedule(self.rent(), pickup=date(2026, 3, 6))
        taken = self.schedule(self.rent(), pickup=date(2026, 3, 7))
        mine = self.schedule(self.rent(), pickup=date(2026, 3, 8))
        return_service.assign_return(self.db, taken.ReturnNumber, OTHER_PARTNER_ID)
        return_service.assign_return(self.db, mine.ReturnNumber, PARTNER_ID)

        pending = return_service.list_pending_returns(self.db, PARTNER_ID)
        self.assertEqual(
            [r.ReturnID for r in pending],
            [early.ReturnID, mine.ReturnID, late.ReturnID],
        )

    def test_assign_is_idempotent_for_same_partner(self):
        return_item = self.schedule(self.rent())
        first = return_service.assign_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        second = return_service.assign_return(self.db, str(return_item.ReturnID), PARTNER_ID)
        self.assertEqual(first.DeliveryPartnerID, PARTNER_ID)
        self.assertEqual(second.DeliveryPartnerID, PARTNER_ID)
        assigns = self.db.query(AuditLog).filter(AuditLog.Action == "AssignReturn").count()
        self.assertEqual(assigns, 1)

    def test_assign_to_second_partner_is_conflict(self):
        return_item = self.schedule(self.rent())
        return_service.assign_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        with self.assertRaises(ConflictError):
            return_service.assign_return(self.db, return_item.ReturnNumber, OTHER_PARTNER_ID)
        self.assertEqual(self.db.get(Return, return_item.ReturnID).DeliveryPartnerID, PARTNER_ID)

    def test_assign_unknown_return_is_not_found(self):
        with self.assertRaises(NotFoundError):
            return_service.assign_return(self.db, "RET-00000000", PARTNER_ID)

    def test_completed_list_holds_handled_returns(self):
        _, handled = self.picked_up_return()
        assigned_only = self.schedule(self.rent())
        return_service.assign_return(self.db, assigned_only.ReturnNumber, PARTNER_ID)

        completed = return_service.list_completed_returns(self.db, PARTNER_ID)
        self.assertEqual([r.ReturnID for r in completed], [handled.ReturnID])
        self.assertEqual(return_service.list_completed_returns(self.db, OTHER_PARTNER_ID), [])


class StatusAndInspectionTests(ReturnWorkflowTestCase):
    def test_status_update_requires_assignment(self):
        return_item = self.schedule(self.rent())
        with self.assertRaises(ForbiddenError):
            return_service.update_return_status(self.db, return_item.ReturnNumber, PARTNER_ID, "picked_up")
        return_service.assign_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        with self.assertRaises(ForbiddenError):
            return_service.update_return_status(self.db, return_item.ReturnNumber, OTHER_PARTNER_ID, "picked_up")
        with self.assertRaises(ForbiddenError):
            return_service.update_return_status(self.db, return_item.ReturnNumber, OTHER_PARTNER_ID, "lost")

    def test_pickup_cascades_rental_to_returned(self):
        rental, return_item = self.picked_up_return()
        self.assertEqual(return_item.Status, "picked_up")
        self.assertEqual(self.db.get(Rental, rental.RentalID).Status, "returned")

    def test_illegal_status_transitions_are_rejected(self):
        return_item = self.schedule(self.rent())
        return_service.assign_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        with self.assertRaises(InvalidStateError):
            return_service.update_return_status(self.db, return_item.ReturnNumber, PARTNER_ID, "inspected")
        with self.assertRaises(InvalidStateError):
            return_service.update_return_status(self.db, return_item.ReturnNumber, PARTNER_ID, "completed")
        with self.assertRaises(ValidationFailedError):
            return_service.update_return_status(self.db, return_item.ReturnNumber, PARTNER_ID, "lost")
        self.assertEqual(self.db.get(Return, return_item.ReturnID).Status, "scheduled")

    def test_inspection_requires_pickup(self):
        return_item = self.schedule(self.rent())
        return_service.assign_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        with self.assertRaises(InvalidStateError):
            self.inspect(return_item)
        self.assertEqual(self.uploaded, [])

    def test_inspection_records_details_and_moves_to_inspected(self):
        _, return_item = self.picked_up_return()
        inspected = self.inspect(
            return_item,
            condition="Good",
            quality_issues=["stains, tears", "stains"],
            images=[_png("a.png"), _png("b.png")],
        )
        self.assertEqual(inspected.Status, "inspected")
        self.assertEqual(inspected.InspectionCondition, "good")
        self.assertEqual(json.loads(inspected.InspectionQualityIssues), ["stains", "tears"])
        self.assertEqual(json.loads(inspected.InspectionImages), self.uploaded)
        self.assertIsNotNone(inspected.InspectedAt)

        payload = return_service.serialize_return(inspected)
        self.assertEqual(payload["inspection"]["condition"], "good")
        self.assertEqual(payload["inspection"]["images"], self.uploaded)
        self.assertEqual(payload["rental"]["status"], "returned")

    def test_inspection_validation(self):
        _, return_item = self.picked_up_return()
        with self.assertRaises(ValidationFailedError):
            self.inspect(return_item, condition="ruined")
        with self.assertRaises(ValidationFailedError):
            self.inspect(return_item, quality_issues=["smell"])
        with self.assertRaises(ValidationFailedError):
            self.inspect(return_item, images=[_png(f"{i}.png") for i in range(6)])
        with self.assertRaises(ValidationFailedError):
            self.inspect(return_item, images=[InspectionImage("notes.pdf", "application/pdf", b"%PDF")])
        oversized = InspectionImage("big.png", "image/png", b"0" * (return_service.MAX_INSPECTION_IMAGE_BYTES + 1))
        with self.assertRaises(ValidationFailedError):
            self.inspect(return_item, images=[oversized])
        self.assertEqual(self.uploaded, [])
        self.assertEqual(self.db.get(Return, return_item.ReturnID).Status, "picked_up")

    def test_failed_upload_leaves_return_unchanged(self):
        _, return_item = self.picked_up_return()

        def failing_uploader(data, folder, filename=None):
            raise UpstreamFailureError("Image upload failed")

        with self.assertRaises(UpstreamFailureError):
            self.inspect(return_item, uploader=failing_uploader)

        fresh = self.SessionLocal()
        try:
            stored = fresh.get(Return, return_item.ReturnID)
            self.assertEqual(stored.Status, "picked_up")
            self.assertIsNone(stored.InspectionCondition)
        finally:
            fresh.close()

    def test_inspection_can_be_resubmitted_before_completion(self):
        _, return_item = self.picked_up_return()
        self.inspect(return_item)
        updated = self.inspect(return_item, condition="poor", quality_issues=[], images=[])
        self.assertEqual(updated.Status, "inspected")
        self.assertEqual(updated.InspectionCondition, "poor")
        self.assertEqual(json.loads(updated.InspectionImages), [])

    def test_complete_requires_inspection(self):
        _, return_item = self.picked_up_return()
        with self.assertRaises(InvalidStateError):
            return_service.complete_return(self.db, return_item.ReturnNumber, PARTNER_ID)

    def test_complete_cascades_rental_to_completed(self):
        rental, return_item = self.picked_up_return()
        self.inspect(return_item)
        with self.assertRaises(ForbiddenError):
            return_service.complete_return(self.db, return_item.ReturnNumber, OTHER_PARTNER_ID)

        completed = return_service.complete_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        self.assertEqual(completed.Status, "completed")
        self.assertEqual(self.db.get(Rental, rental.RentalID).Status, "completed")

        with self.assertRaises(InvalidStateError):
            self.inspect(return_item)

    def test_status_route_can_complete_after_inspection(self):
        rental, return_item = self.picked_up_return()
        self.inspect(return_item)
        completed = return_service.update_return_status(self.db, return_item.ReturnNumber, PARTNER_ID, "completed")
        self.assertEqual(completed.Status, "completed")
        self.assertEqual(self.db.get(Rental, rental.RentalID).Status, "completed")


class ConcurrentWriteTests(ReturnWorkflowTestCase):
    def setUp(self):
        handle, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.db_url = f"sqlite+pysqlite:///{self.db_path}"
        super().setUp()

    def tearDown(self):
        super().tearDown()
        os.remove(self.db_path)

    def test_stale_claim_loses_to_first_partner(self):
        return_item = self.schedule(self.rent())
        other = self.SessionLocal()
        try:
            # Load in both sessions before either claims.
            mine = return_service.get_return(self.db, return_item.ReturnNumber)
            theirs = return_service.get_return(other, return_item.ReturnNumber)
            self.assertIsNone(mine.DeliveryPartnerID)
            self.assertIsNone(theirs.DeliveryPartnerID)

            return_service.assign_return(other, return_item.ReturnNumber, OTHER_PARTNER_ID)
            with self.assertRaises(ConflictError):
                return_service.assign_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        finally:
            other.close()

        check = self.SessionLocal()
        try:
            self.assertEqual(check.get(Return, return_item.ReturnID).DeliveryPartnerID, OTHER_PARTNER_ID)
        finally:
            check.close()

    def test_concurrent_schedule_is_conflict(self):
        rental = self.rent()
        other = self.SessionLocal()
        original_lookup = return_service._existing_return_id
        try:
            rental_service.get_rental(other, rental.RentalNumber)
            self.schedule(rental)

            # The second request checked for an existing return before the first committed.
            return_service._existing_return_id = lambda db, rental_id: None
            with self.assertRaises(ConflictError):
                return_service.schedule_return(
                    other,
                    customer_id=CUSTOMER_ID,
                    rental_ref=rental.RentalNumber,
                    pickup_date=date(2026, 3, 6),
                    time_slot="3PM-6PM",
                )
        finally:
            return_service._existing_return_id = original_lookup
            other.close()

        check = self.SessionLocal()
        try:
            self.assertEqual(check.query(Return).filter(Return.RentalID == rental.RentalID).count(), 1)
            self.assertEqual(check.get(Rental, rental.RentalID).Status, "return_scheduled")
        finally:
            check.close()

    def test_stale_status_write_is_conflict(self):
        return_item = self.schedule(self.rent())
        return_service.assign_return(self.db, return_item.ReturnNumber, PARTNER_ID)
        other = self.SessionLocal()
        try:
            return_service.get_return(self.db, return_item.ReturnNumber)
            return_service.get_return(other, return_item.ReturnNumber)

            return_service.update_return_status(other, return_item.ReturnNumber, PARTNER_ID, "picked_up")
            with self.assertRaises(ConflictError):
                return_service.update_return_status(self.db, return_item.ReturnNumber, PARTNER_ID, "picked_up")
        finally:
            other.close()


if __name__ == "__main__":
    unittest.main()
