"""
Shared setup for ledger tests: every test case gets its own SQLite file
"""
import os
import shutil
import tempfile
import unittest
from decimal import Decimal

from sqlalchemy import select, func

from common.settings import Settings
from vouch_service.models import VouchEvent
from vouch_service.service import VouchService

TEST_JWT_SECRET = "test-secret-for-unit-tests-only-0123456789"

def make_settings(db_path: str, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite:///{db_path}",
        "redis_url": "",
        "jwt_secret": TEST_JWT_SECRET,
        "jwt_issuer": "itrust-test",
        "vouch_cost": "0.2",
        "lock_timeout_seconds": 10.0,
        "leaderboard_refresh_seconds": 30.0,
        "early_adopter_limit": 100,
        "early_adopter_grant": "300",
        "standard_grant": "10",
    }
    values.update(overrides)
    return Settings(**values)

class LedgerTestCase(unittest.TestCase):
    """Fresh database and service per test"""
    settings_overrides = {}

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="itrust-test-")
        self.settings = make_settings(os.path.join(self.tmpdir, "ledger.db"), **self.settings_overrides)
        self.service = VouchService(self.settings)

    def tearDown(self):
        self.service.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def register(self, name: str, balance="1.0", account_id: str = None):
        return self.service.register_account(
            name,
            account_id=account_id or name.lower(),
            trust_balance=None if balance is None else Decimal(balance),
        )

    def event_count(self) -> int:
        with self.service.session_factory() as session:
            return session.execute(select(func.count()).select_from(VouchEvent)).scalar_one()
