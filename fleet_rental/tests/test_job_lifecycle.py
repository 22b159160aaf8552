import unittest
from datetime import datetime
from unittest import mock

import support

from sqlalchemy.orm.exc import StaleDataError

from services.access_payload_service import build_access_payload
from services.errors import InvalidStateError, NotAvailableError, RentalValidationError
from services.extension_service import submit_extension, approve_extension
from services.job_lifecycle import process_pickup, process_return, record_correction, view_confirmation
from services.job_store import effective_return_time, get_job


PICKUP_AT = datetime(2025, 1, 10, 9, 5)


class PickupTests(unittest.TestCase):
    def setUp(self):
        support.reset_database()
        self.db = support.make_session()
        support.make_job(self.db)

    def tearDown(self):
        self.db.close()

    def test_pickup_records_snapshot_and_issues_access_payload(self):
        job = process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        self.assertEqual(job.Status, "PickedUp")
        self.assertEqual(job.ActualPickupTime, PICKUP_AT)
        self.assertEqual(job.PickedUpBy, 7)
        self.assertEqual(len(job.Snapshots), 1)
        self.assertEqual(job.Snapshots[0].FuelLevel, 1.0)
        self.assertEqual(job.AccessPayload, build_access_payload(support.JOB_NUMBER, support.HOLDER_MOBILE))

    def test_second_pickup_is_rejected(self):
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        with self.assertRaises(InvalidStateError):
            process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=8)

        job = get_job(self.db, support.JOB_NUMBER)
        self.assertEqual(job.ActualPickupTime, PICKUP_AT)
        self.assertEqual(job.PickedUpBy, 7)
        self.assertEqual(len(job.Snapshots), 1)

    def test_incomplete_snapshot_leaves_job_untouched(self):
        with self.assertRaises(RentalValidationError):
            process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(panelImages=[]), actor_id=7)
        job = get_job(self.db, support.JOB_NUMBER)
        self.assertEqual(job.Status, "Pending")
        self.assertIsNone(job.ActualPickupTime)
        self.assertIsNone(job.AccessPayload)
        self.assertEqual(job.Snapshots, [])

    def test_snapshot_for_the_wrong_transition_is_rejected(self):
        with self.assertRaises(RentalValidationError):
            process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot("Return"), actor_id=7)

    def test_extra_hour_at_pickup_creates_approved_extension(self):
        job = process_pickup(
            self.db,
            support.JOB_NUMBER,
            support.make_snapshot(),
            actor_id=7,
            extra_hour_return_time=datetime(2025, 1, 15, 21, 0),
            collected_amount=15,
            now=PICKUP_AT,
        )
        self.assertEqual(len(job.ExtensionRequests), 1)
        extension = job.ExtensionRequests[0]
        self.assertEqual(extension.Strategy, "day_hour")
        self.assertEqual(extension.Origin, "Staff")
        self.assertEqual(extension.Status, "Approved")
        self.assertEqual(float(extension.Fee), 15)
        self.assertEqual(float(extension.CollectedAmount), 15)
        self.assertEqual(effective_return_time(job), datetime(2025, 1, 15, 21, 0))

    def test_collected_amount_without_extra_hour_is_rejected(self):
        with self.assertRaises(RentalValidationError):
            process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, collected_amount=15)
        self.assertEqual(get_job(self.db, support.JOB_NUMBER).Status, "Pending")

    def test_lost_commit_race_is_reported_as_state_conflict(self):
        with mock.patch.object(self.db, "commit", side_effect=StaleDataError("version mismatch")):
            with self.assertRaises(InvalidStateError):
                process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7)
        job = get_job(self.db, support.JOB_NUMBER)
        self.assertEqual(job.Status, "Pending")
        self.assertIsNone(job.ActualPickupTime)


class ReturnTests(unittest.TestCase):
    def setUp(self):
        support.reset_database()
        self.db = support.make_session()
        support.make_job(self.db)

    def tearDown(self):
        self.db.close()

    def test_return_before_pickup_is_rejected(self):
        with self.assertRaises(InvalidStateError):
            process_return(self.db, support.JOB_NUMBER, support.make_snapshot("Return"), actor_id=7)
        self.assertIsNone(get_job(self.db, support.JOB_NUMBER).ActualReturnTime)

    def test_on_time_return_refunds_full_deposit(self):
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        job = process_return(
            self.db,
            support.JOB_NUMBER,
            support.make_snapshot("Return", odometer=50420),
            actor_id=8,
            now=datetime(2025, 1, 15, 17, 30),
        )
        self.assertEqual(job.Status, "Returned")
        self.assertEqual(job.ReturnedBy, 8)
        self.assertEqual(float(job.UnplannedExtraCharge), 0)
        self.assertEqual(float(job.LowFuelCharge), 0)
        self.assertEqual(float(job.DepositRefund), 150)

    def test_late_return_with_low_fuel_is_settled_against_deposit(self):
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        job = process_return(
            self.db,
            support.JOB_NUMBER,
            support.make_snapshot("Return", fuelLevel="1/2"),
            actor_id=8,
            unplanned_extra_payment=60,
            now=datetime(2025, 1, 16, 20, 0),
        )
        self.assertEqual(float(job.UnplannedExtraCharge), 60)
        self.assertEqual(float(job.UnplannedExtraPayment), 60)
        self.assertEqual(float(job.LowFuelCharge), 15)
        self.assertEqual(float(job.DepositRefund), 75)

    def test_late_return_without_extra_hour_payment_is_refused(self):
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        with self.assertRaises(RentalValidationError):
            process_return(
                self.db,
                support.JOB_NUMBER,
                support.make_snapshot("Return"),
                actor_id=8,
                now=datetime(2025, 1, 16, 20, 0),
            )
        job = get_job(self.db, support.JOB_NUMBER)
        self.assertEqual(job.Status, "PickedUp")
        self.assertIsNone(job.ActualReturnTime)
        self.assertIsNone(job.UnplannedExtraPayment)

    def test_late_return_with_wrong_extra_hour_payment_is_refused(self):
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        with self.assertRaises(RentalValidationError):
            process_return(
                self.db,
                support.JOB_NUMBER,
                support.make_snapshot("Return"),
                actor_id=8,
                unplanned_extra_payment=45,
                now=datetime(2025, 1, 16, 20, 0),
            )
        self.assertEqual(get_job(self.db, support.JOB_NUMBER).Status, "PickedUp")

        job = process_return(
            self.db,
            support.JOB_NUMBER,
            support.make_snapshot("Return"),
            actor_id=8,
            unplanned_extra_payment=60.0,
            now=datetime(2025, 1, 16, 20, 0),
        )
        self.assertEqual(job.Status, "Returned")
        self.assertEqual(float(job.UnplannedExtraPayment), 60)

    def test_approved_extension_covers_the_late_hours(self):
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        request = submit_extension(self.db, support.JOB_NUMBER, datetime(2025, 1, 16, 10, 0), "Customer")
        approve_extension(self.db, request.ExtensionRequestID, resolved_by=7)

        job = process_return(
            self.db,
            support.JOB_NUMBER,
            support.make_snapshot("Return"),
            actor_id=8,
            now=datetime(2025, 1, 16, 10, 30),
        )
        self.assertEqual(float(job.UnplannedExtraCharge), 0)

    def test_second_return_is_rejected(self):
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        returned_at = datetime(2025, 1, 15, 17, 0)
        process_return(self.db, support.JOB_NUMBER, support.make_snapshot("Return"), actor_id=8, now=returned_at)
        with self.assertRaises(InvalidStateError):
            process_return(self.db, support.JOB_NUMBER, support.make_snapshot("Return"), actor_id=9)
        self.assertEqual(get_job(self.db, support.JOB_NUMBER).ActualReturnTime, returned_at)


class ConfirmationAndCorrectionTests(unittest.TestCase):
    def setUp(self):
        support.reset_database()
        self.db = support.make_session()
        support.make_job(self.db)

    def tearDown(self):
        self.db.close()

    def test_confirmation_is_unavailable_before_the_transition(self):
        with self.assertRaises(NotAvailableError):
            view_confirmation(self.db, support.JOB_NUMBER, "Pickup")
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        with self.assertRaises(NotAvailableError):
            view_confirmation(self.db, support.JOB_NUMBER, "Return")

    def test_confirmation_returns_the_pickup_snapshot(self):
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        snapshot = view_confirmation(self.db, support.JOB_NUMBER, "pickup")
        self.assertEqual(snapshot.Odometer, 50000)
        self.assertEqual(snapshot.AgreementReference, "AGR-2025-001")

    def test_correction_adds_snapshot_without_moving_actual_time(self):
        job = process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        payload = job.AccessPayload

        record_correction(
            self.db,
            support.JOB_NUMBER,
            "Pickup",
            support.make_snapshot(odometer=50010),
            actor_id=9,
            reason="Odometer misread",
            now=datetime(2025, 1, 10, 11, 0),
        )

        job = get_job(self.db, support.JOB_NUMBER)
        self.assertEqual(job.ActualPickupTime, PICKUP_AT)
        self.assertEqual(job.AccessPayload, payload)
        self.assertEqual([item.IsCorrection for item in job.Snapshots], [False, True])
        latest = view_confirmation(self.db, support.JOB_NUMBER, "Pickup")
        self.assertEqual(latest.Odometer, 50010)
        self.assertEqual(latest.CorrectionReason, "Odometer misread")

    def test_correction_needs_a_reason_and_a_prior_transition(self):
        with self.assertRaises(NotAvailableError):
            record_correction(self.db, support.JOB_NUMBER, "Pickup", support.make_snapshot(), actor_id=9, reason="typo")
        process_pickup(self.db, support.JOB_NUMBER, support.make_snapshot(), actor_id=7, now=PICKUP_AT)
        with self.assertRaises(RentalValidationError):
            record_correction(self.db, support.JOB_NUMBER, "Pickup", support.make_snapshot(), actor_id=9, reason="  ")


if __name__ == "__main__":
    unittest.main()
