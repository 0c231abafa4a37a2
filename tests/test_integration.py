#!/usr/bin/env python3
"""
Integration Tests for the Vouch Service HTTP API
Runs the FastAPI app in-process and checks status codes, error bodies
and the authentication boundary.
"""

import time
import unittest
from decimal import Decimal

import jwt
from fastapi.testclient import TestClient

from common.security import mint_internal_jwt, mint_user_jwt
from tests.support import LedgerTestCase
from vouch_service.main import create_app


class VouchApiTestCase(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.client = TestClient(create_app(self.settings, self.service))

    def user_headers(self, account_id: str) -> dict:
        return {"Authorization": f"Bearer {mint_user_jwt(account_id, cfg=self.settings)}"}

    def internal_headers(self) -> dict:
        return {"Authorization": f"Bearer {mint_internal_jwt('profile-service', cfg=self.settings)}"}

    def create(self, name: str, balance: str = "1.0", account_id: str = None):
        body = {"display_name": name, "account_id": account_id or name.lower()}
        if balance is not None:
            body["trust_balance"] = balance
        response = self.client.post("/internal/accounts", json=body, headers=self.internal_headers())
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def assertError(self, response, status_code: int, code: str):
        self.assertEqual(response.status_code, status_code, response.text)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["code"], code)
        return body


class TestHealthAndPolicy(VouchApiTestCase):

    def test_health(self):
        self.create("Alice")
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["accounts"], 1)
        self.assertEqual(response.json()["idempotency"]["backend"], "memory")
        self.assertIn("X-Trace-ID", response.headers)

    def test_trace_id_is_propagated(self):
        response = self.client.get("/health", headers={"X-Trace-ID": "trace-abc"})
        self.assertEqual(response.headers["X-Trace-ID"], "trace-abc")

    def test_policy(self):
        data = self.client.get("/policy").json()
        self.assertEqual(Decimal(data["vouch_cost"]), Decimal("0.2"))
        self.assertEqual(data["early_adopter_limit"], 100)
        self.assertEqual(Decimal(data["early_adopter_grant"]), Decimal("300"))
        self.assertEqual(Decimal(data["standard_grant"]), Decimal("10"))


class TestVouchEndpoint(VouchApiTestCase):

    def setUp(self):
        super().setUp()
        self.create("Alice")
        self.create("Bob")

    def test_vouch_success(self):
        response = self.client.post("/vouch", json={"vouchee_id": "bob"}, headers=self.user_headers("alice"))
        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()
        self.assertFalse(data["replayed"])
        self.assertEqual(Decimal(data["voucher"]["trust_balance"]), Decimal("0.8"))
        self.assertEqual(data["vouchee"]["reputation"], 1)
        self.assertEqual(data["event"]["voucher_id"], "alice")
        self.assertEqual(Decimal(data["event"]["amount"]), Decimal("0.2"))

    def test_voucher_comes_from_token_not_body(self):
        response = self.client.post(
            "/vouch",
            json={"vouchee_id": "alice", "voucher_id": "bob"},
            headers=self.user_headers("alice"),
        )
        self.assertError(response, 400, "SELF_VOUCH_NOT_ALLOWED")

    def test_insufficient_balance(self):
        self.create("Poor", balance="0.1")
        response = self.client.post("/vouch", json={"vouchee_id": "bob"}, headers=self.user_headers("poor"))
        body = self.assertError(response, 400, "INSUFFICIENT_BALANCE")
        self.assertEqual(body["error"]["context"]["required"], "0.2")

    def test_unknown_vouchee(self):
        response = self.client.post("/vouch", json={"vouchee_id": "ghost"}, headers=self.user_headers("alice"))
        body = self.assertError(response, 404, "ACCOUNT_NOT_FOUND")
        self.assertEqual(body["error"]["field"], "vouchee_id")

    def test_unknown_voucher(self):
        response = self.client.post("/vouch", json={"vouchee_id": "bob"}, headers=self.user_headers("ghost"))
        body = self.assertError(response, 404, "ACCOUNT_NOT_FOUND")
        self.assertEqual(body["error"]["field"], "voucher_id")

    def test_malformed_body(self):
        response = self.client.post("/vouch", json={"vouchee_id": "no spaces allowed"},
                                    headers=self.user_headers("alice"))
        self.assertError(response, 400, "VALIDATION_ERROR")
        response = self.client.post("/vouch", json={}, headers=self.user_headers("alice"))
        self.assertError(response, 400, "VALIDATION_ERROR")

    def test_idempotency_key_header_replays(self):
        headers = {**self.user_headers("alice"), "Idempotency-Key": "req-42"}
        first = self.client.post("/vouch", json={"vouchee_id": "bob"}, headers=headers).json()
        second = self.client.post("/vouch", json={"vouchee_id": "bob"}, headers=headers).json()
        self.assertFalse(first["replayed"])
        self.assertTrue(second["replayed"])
        self.assertEqual(first["event"]["id"], second["event"]["id"])
        self.assertEqual(self.service.account("bob").reputation, 1)

    def test_idempotency_key_in_body(self):
        body = {"vouchee_id": "bob", "idempotency_key": "req-7"}
        self.client.post("/vouch", json=body, headers=self.user_headers("alice"))
        response = self.client.post("/vouch", json=body, headers=self.user_headers("alice"))
        self.assertTrue(response.json()["replayed"])

    def test_idempotency_key_reuse_conflicts(self):
        self.create("Carol")
        headers = {**self.user_headers("alice"), "Idempotency-Key": "req-1"}
        self.client.post("/vouch", json={"vouchee_id": "bob"}, headers=headers)
        response = self.client.post("/vouch", json={"vouchee_id": "carol"}, headers=headers)
        self.assertError(response, 409, "CONFLICT")

    def test_lock_timeout_maps_to_retryable_503(self):
        self.service.locks.timeout_seconds = 0.05
        with self.service.locks.hold(["bob"]):
            response = self.client.post("/vouch", json={"vouchee_id": "bob"}, headers=self.user_headers("alice"))
        self.assertError(response, 503, "LOCK_TIMEOUT")
        self.assertEqual(response.headers["Retry-After"], "1")

    def test_quote(self):
        data = self.client.get("/vouch/quote", headers=self.user_headers("alice")).json()
        self.assertTrue(data["can_afford"])
        self.assertEqual(Decimal(data["balance_after"]), Decimal("0.8"))


class TestAuthentication(VouchApiTestCase):

    def setUp(self):
        super().setUp()
        self.create("Alice")
        self.create("Bob")

    def test_missing_token(self):
        response = self.client.post("/vouch", json={"vouchee_id": "bob"})
        self.assertError(response, 401, "UNAUTHENTICATED")
        self.assertEqual(self.service.account("alice").trust_balance, Decimal("1"))

    def test_bad_signature(self):
        token = jwt.encode(
            {"iss": self.settings.jwt_issuer, "sub": "alice", "iat": int(time.time()),
             "exp": int(time.time()) + 60, "scope": "user"},
            "some-other-secret-that-is-long-enough-123",
            algorithm="HS256",
        )
        response = self.client.get("/me/stats", headers={"Authorization": f"Bearer {token}"})
        self.assertError(response, 401, "UNAUTHENTICATED")

    def test_expired_token(self):
        token = jwt.encode(
            {"iss": self.settings.jwt_issuer, "sub": "alice", "iat": int(time.time()) - 120,
             "exp": int(time.time()) - 60, "scope": "user"},
            self.settings.jwt_secret,
            algorithm="HS256",
        )
        response = self.client.get("/me/stats", headers={"Authorization": f"Bearer {token}"})
        self.assertError(response, 401, "UNAUTHENTICATED")

    def test_internal_token_cannot_vouch(self):
        response = self.client.post("/vouch", json={"vouchee_id": "bob"}, headers=self.internal_headers())
        self.assertError(response, 403, "FORBIDDEN")

    def test_user_token_cannot_register(self):
        response = self.client.post("/internal/accounts", json={"display_name": "Mallory"},
                                    headers=self.user_headers("alice"))
        self.assertError(response, 401, "UNAUTHENTICATED")
        self.assertEqual(self.service.store.count(), 2)

    def test_non_user_scope_forbidden(self):
        token = mint_user_jwt("alice", claims={"scope": "admin"}, cfg=self.settings)
        response = self.client.get("/me/stats", headers={"Authorization": f"Bearer {token}"})
        self.assertError(response, 403, "FORBIDDEN")


class TestReadEndpoints(VouchApiTestCase):

    def setUp(self):
        super().setUp()
        self.create("Alice")
        self.create("Alan")
        self.create("Bob")
        self.client.post("/vouch", json={"vouchee_id": "alan"}, headers=self.user_headers("bob"))

    def test_leaderboard(self):
        data = self.client.get("/leaderboard").json()
        self.assertEqual([e["account"]["id"] for e in data], ["alan", "alice", "bob"])
        self.assertEqual([e["rank"] for e in data], [1, 2, 3])
        self.assertEqual(len(self.client.get("/leaderboard?limit=1").json()), 1)
        self.assertError(self.client.get("/leaderboard?limit=0"), 400, "VALIDATION_ERROR")

    def test_account_and_rank(self):
        self.assertEqual(self.client.get("/accounts/alan").json()["reputation"], 1)
        self.assertEqual(self.client.get("/accounts/alan/rank").json(), {"account_id": "alan", "rank": 1})
        self.assertError(self.client.get("/accounts/ghost"), 404, "ACCOUNT_NOT_FOUND")
        self.assertError(self.client.get("/accounts/ghost/rank"), 404, "ACCOUNT_NOT_FOUND")

    def test_stats(self):
        data = self.client.get("/accounts/bob/stats").json()
        self.assertEqual(data["vouches_given"], 1)
        self.assertEqual(data["vouches_received"], 0)
        self.assertEqual(data["rank"], 3)
        mine = self.client.get("/me/stats", headers=self.user_headers("alan")).json()
        self.assertEqual(mine["vouches_received"], 1)
        self.assertEqual(mine["rank"], 1)

    def test_activities(self):
        data = self.client.get("/accounts/bob/activities").json()
        self.assertEqual(len(data), 1)
        self.assertEqual(data[0]["type"], "vouch_given")
        self.assertEqual(data[0]["description"], "You vouched for Alan")
        mine = self.client.get("/me/activities", headers=self.user_headers("alan")).json()
        self.assertEqual(mine[0]["type"], "vouch_received")
        self.assertEqual(mine[0]["description"], "Bob vouched for you")
        self.assertError(self.client.get("/accounts/ghost/activities"), 404, "ACCOUNT_NOT_FOUND")

    def test_search(self):
        data = self.client.get("/search", params={"q": "al"}).json()
        self.assertEqual([a["id"] for a in data], ["alan", "alice"])
        self.assertEqual(self.client.get("/search", params={"q": "a"}).json(), [])
        self.assertEqual(self.client.get("/search").json(), [])


class TestInternalEndpoints(VouchApiTestCase):

    def test_register_uses_grant_schedule(self):
        account = self.create("Newcomer", balance=None)
        self.assertEqual(account["join_order"], 1)
        self.assertEqual(Decimal(account["trust_balance"]), Decimal("300"))

    def test_duplicate_registration_conflicts(self):
        self.create("Alice")
        response = self.client.post("/internal/accounts", json={"display_name": "Alice", "account_id": "alice"},
                                    headers=self.internal_headers())
        self.assertError(response, 409, "CONFLICT")

    def test_blank_display_name_rejected(self):
        response = self.client.post("/internal/accounts", json={"display_name": "   "},
                                    headers=self.internal_headers())
        self.assertError(response, 400, "VALIDATION_ERROR")

    def test_profile_update(self):
        self.create("Alice")
        response = self.client.put("/internal/accounts/alice/profile", json={"display_name": "Alicia"},
                                   headers=self.internal_headers())
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["display_name"], "Alicia")
        response = self.client.put("/internal/accounts/ghost/profile", json={"display_name": "X"},
                                   headers=self.internal_headers())
        self.assertError(response, 404, "ACCOUNT_NOT_FOUND")


if __name__ == "__main__":
    unittest.main()
