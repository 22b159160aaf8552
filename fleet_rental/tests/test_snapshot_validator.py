import unittest

from support import make_snapshot

from services.errors import RentalValidationError
from services.snapshot_validator import (
    build_photo_reference,
    collect_snapshot_errors,
    normalize_capture_type,
    parse_fuel_level,
    validate_snapshot,
)


class SnapshotValidatorTests(unittest.TestCase):
    def test_complete_snapshot_passes(self):
        validate_snapshot(make_snapshot())
        self.assertEqual(collect_snapshot_errors(make_snapshot()), [])

    def test_each_required_field_is_enforced(self):
        cases = {
            "odometer": (None, "Mileage"),
            "fuelLevel": (None, "Fuel level is required"),
            "agreementImages": ([], "Car agreement photos"),
            "documentImages": ([], "Customer document photos"),
            "panelImages": ([], "Instrument panel photos"),
            "agreementReference": ("   ", "Car agreement ID"),
        }
        for field, (value, message) in cases.items():
            with self.subTest(field=field):
                with self.assertRaises(RentalValidationError) as ctx:
                    validate_snapshot(make_snapshot(**{field: value}))
                self.assertIn(message, str(ctx.exception))

    def test_negative_odometer_is_rejected(self):
        with self.assertRaises(RentalValidationError) as ctx:
            validate_snapshot(make_snapshot(odometer=-1))
        self.assertIn("must not be negative", str(ctx.exception))

    def test_first_failing_rule_wins(self):
        snapshot = make_snapshot(odometer=None, panelImages=[], agreementReference="")
        with self.assertRaises(RentalValidationError) as ctx:
            validate_snapshot(snapshot)
        self.assertIn("Mileage", str(ctx.exception))

    def test_collect_reports_every_failure_in_order(self):
        snapshot = make_snapshot(fuelLevel="", documentImages=[], agreementReference=None)
        self.assertEqual(
            collect_snapshot_errors(snapshot),
            [
                "Fuel level is required.",
                "Customer document photos are required.",
                "Car agreement ID is required.",
            ],
        )

    def test_blank_photo_references_do_not_count(self):
        with self.assertRaises(RentalValidationError):
            validate_snapshot(make_snapshot(panelImages=["", "  "]))


class FuelLevelTests(unittest.TestCase):
    def test_fraction_and_label_forms(self):
        self.assertEqual(parse_fuel_level("3/8"), 0.375)
        self.assertEqual(parse_fuel_level("0.75"), 0.75)
        self.assertEqual(parse_fuel_level(0.5), 0.5)
        self.assertEqual(parse_fuel_level("Full"), 1.0)
        self.assertEqual(parse_fuel_level("empty"), 0.0)

    def test_out_of_range_and_garbage(self):
        for raw in ("1.5", -0.1, "half", "1/0"):
            with self.subTest(raw=raw):
                with self.assertRaises(RentalValidationError):
                    parse_fuel_level(raw)


class CaptureTypeAndPhotoTests(unittest.TestCase):
    def test_capture_type_is_case_insensitive(self):
        self.assertEqual(normalize_capture_type("pickup"), "Pickup")
        self.assertEqual(normalize_capture_type(" RETURN "), "Return")
        with self.assertRaises(RentalValidationError):
            normalize_capture_type("handover")

    def test_photo_reference_naming(self):
        self.assertEqual(build_photo_reference("JOB-2025-001", "agreementImages", 1), "xq-JOB-2025-001-agr-1.jpg")
        self.assertEqual(build_photo_reference("JOB-2025-001", "panelImages", 3, ".PNG"), "xq-JOB-2025-001-ins-3.png")
        with self.assertRaises(RentalValidationError):
            build_photo_reference("JOB-2025-001", "selfies", 1)


if __name__ == "__main__":
    unittest.main()
