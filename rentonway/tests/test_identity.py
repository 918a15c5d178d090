import unittest

from .support import payment_fields

from services.identity_service import ROLE_CUSTOMER, create_session, get_session, normalize_role
from services.payment_service import sign_payment, verify_payment_signature


class SessionTokenTests(unittest.TestCase):
    def test_token_round_trip(self):
        token = create_session({"id": "42", "role": "deliveryPartner", "name": "Ravi"})
        session = get_session(token)
        self.assertEqual(session["id"], 42)
        self.assertEqual(session["role"], "deliveryPartner")
        self.assertEqual(session["name"], "Ravi")

    def test_tampered_token_is_rejected(self):
        token = create_session({"id": 7, "role": "user"})
        body, signature = token.split(".", 1)
        forged = create_session({"id": 8, "role": "retailer"}).split(".", 1)[0]
        self.assertIsNone(get_session(f"{forged}.{signature}"))
        self.assertIsNone(get_session(f"{body}.AAAA"))
        self.assertIsNone(get_session("no-dot-here"))
        self.assertIsNone(get_session(""))

    def test_expired_token_is_rejected(self):
        self.assertIsNone(get_session(create_session({"id": 7}, ttl_seconds=-1)))

    def test_payload_without_positive_id_is_refused(self):
        with self.assertRaises(ValueError):
            create_session({"role": "user"})
        with self.assertRaises(ValueError):
            create_session({"id": "abc"})

    def test_unknown_role_falls_back_to_customer(self):
        self.assertEqual(normalize_role("admin"), ROLE_CUSTOMER)
        self.assertEqual(normalize_role(None), ROLE_CUSTOMER)
        self.assertEqual(get_session(create_session({"id": 3, "role": "superuser"}))["role"], ROLE_CUSTOMER)


class PaymentSignatureTests(unittest.TestCase):
    def test_signature_matches_order_and_payment(self):
        fields = payment_fields("order_A", "pay_A")
        self.assertTrue(verify_payment_signature("order_A", "pay_A", fields["payment_signature"]))
        self.assertTrue(verify_payment_signature("order_A", "pay_A", fields["payment_signature"].upper()))
        self.assertFalse(verify_payment_signature("order_B", "pay_A", fields["payment_signature"]))

    def test_missing_parts_never_verify(self):
        signature = sign_payment("order_A", "pay_A")
        self.assertFalse(verify_payment_signature(None, "pay_A", signature))
        self.assertFalse(verify_payment_signature("order_A", "", signature))
        self.assertFalse(verify_payment_signature("order_A", "pay_A", None))


if __name__ == "__main__":
    unittest.main()
