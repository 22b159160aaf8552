import unittest
from unittest import mock
from urllib.parse import parse_qs, urlsplit

import support

from services import staff_access_service
from services.access_payload_service import build_access_payload, read_access_payload
from services.errors import AuthenticationError, NotFoundError
from services.identity_gate import contacts_match, normalize_contact, verify_job_holder
from services.staff_access_service import (
    build_session_payload,
    create_session,
    get_session,
    is_staff_role,
    remove_session,
    rights_for_role,
    upsert_staff_user,
    verify_staff_password,
)


class IdentityGateTests(unittest.TestCase):
    def setUp(self):
        support.reset_database()
        self.db = support.make_session()
        support.make_job(self.db)

    def tearDown(self):
        self.db.close()

    def test_holder_with_matching_mobile_is_verified(self):
        job = verify_job_holder(self.db, "JOB-2025-001", "+60123456789")
        self.assertEqual(job.CustomerName, "John Smith")

    def test_wrong_mobile_is_rejected(self):
        with self.assertLogs("fleet_rental.identity", level="WARNING"):
            with self.assertRaises(AuthenticationError):
                verify_job_holder(self.db, "JOB-2025-001", "+60000000000")

    def test_unknown_job_is_not_found(self):
        with self.assertRaises(NotFoundError):
            verify_job_holder(self.db, "JOB-2025-404", "+60123456789")

    def test_formatting_differences_are_ignored(self):
        self.assertEqual(normalize_contact(" +60 12-345 6789 "), "+60123456789")
        self.assertTrue(contacts_match("+60123456789", "+60 (12) 345-6789"))
        verify_job_holder(self.db, " job-2025-001 ", "+60 12 345 6789")

    def test_blank_contacts_never_match(self):
        self.assertFalse(contacts_match("", ""))
        self.assertFalse(contacts_match("+60123456789", None))


class AccessPayloadTests(unittest.TestCase):
    def test_payload_is_deterministic_portal_url(self):
        first = build_access_payload("JOB-2025-001", "+60123456789")
        second = build_access_payload("JOB-2025-001", "+60123456789")
        self.assertEqual(first, second)

        parts = urlsplit(first)
        self.assertEqual(f"{parts.scheme}://{parts.netloc}", "https://portal.example.test")
        self.assertEqual(parts.path, "/pr/customer")
        self.assertIn("mobile=%2B60123456789", parts.query)
        params = parse_qs(parts.query)
        self.assertEqual(params["jobId"], ["JOB-2025-001"])
        self.assertEqual(params["mobile"], ["+60123456789"])

    def test_payload_round_trips_to_job_and_mobile(self):
        payload = build_access_payload("JOB-2025-002", "+60198765432")
        self.assertEqual(read_access_payload(payload), ("JOB-2025-002", "+60198765432"))

    def test_tampered_payload_is_rejected(self):
        payload = build_access_payload("JOB-2025-001", "+60123456789")
        forged = payload.replace("JOB-2025-001", "JOB-2025-002")
        with self.assertRaises(AuthenticationError):
            read_access_payload(forged)
        with self.assertRaises(AuthenticationError):
            read_access_payload("https://portal.example.test/pr/customer?jobId=JOB-2025-001")


class StaffAccessTests(unittest.TestCase):
    def setUp(self):
        support.reset_database()
        self.db = support.make_session()

    def tearDown(self):
        self.db.close()

    def test_rights_follow_role(self):
        self.assertTrue(rights_for_role("Super Admin")["manageJobs"])
        self.assertFalse(rights_for_role("Operation")["manageJobs"])
        self.assertTrue(rights_for_role("Customer Care")["approveExtensions"])
        self.assertFalse(rights_for_role("Customer Care")["processPickupReturn"])
        self.assertEqual(rights_for_role("Driver"), rights_for_role("Operation"))

    def test_staff_role_check(self):
        self.assertTrue(is_staff_role({"role": "Operation"}, "processPickupReturn"))
        self.assertFalse(is_staff_role({"role": "Customer Care"}, "processPickupReturn"))
        self.assertFalse(is_staff_role({"role": "Customer"}))
        self.assertFalse(is_staff_role(None))

    def test_upserted_user_can_sign_in_and_session_can_be_revoked(self):
        user = upsert_staff_user(self.db, "ops.lee", role="Operation", display_name="Lee", password="s3cret-pass")
        self.assertEqual(verify_staff_password(self.db, "OPS.Lee", "s3cret-pass").StaffUserID, user.StaffUserID)
        self.assertIsNone(verify_staff_password(self.db, "ops.lee", "wrong"))

        token = create_session(build_session_payload(user))
        session = get_session(token)
        self.assertEqual(session["username"], "ops.lee")
        self.assertTrue(session["rights"]["processPickupReturn"])

        remove_session(token)
        self.assertIsNone(get_session(token))

    def test_expired_sessions_are_dropped_from_the_cache(self):
        with mock.patch.object(staff_access_service.time, "time", return_value=1000.0):
            stale = create_session({"staffUserID": 7, "username": "ops.lee", "role": "Operation"})
        self.assertIn(stale, staff_access_service._SESSIONS)

        fresh = create_session({"staffUserID": 8, "username": "ops.kim", "role": "Operation"})
        self.assertEqual(get_session(fresh)["username"], "ops.kim")
        self.assertNotIn(stale, staff_access_service._SESSIONS)
        self.assertIn(fresh, staff_access_service._SESSIONS)
        self.assertIsNone(get_session(stale))

    def test_garbage_token_has_no_session(self):
        self.assertIsNone(get_session("not-a-token"))
        self.assertIsNone(get_session(""))


if __name__ == "__main__":
    unittest.main()
