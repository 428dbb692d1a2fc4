import io
import os
import unittest
import uuid
from contextlib import redirect_stdout
from datetime import timedelta

# Ensure settings can be initialized in test environments
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

from smsrelay.core.config import settings
from smsrelay.core.deps import operator_from_token
from smsrelay.core.security import create_jwt, create_operator_token, decode_jwt
from smsrelay.scripts.issue_operator_token import main as issue_operator_token
from smsrelay.services.worker_session import SESSION_PURPOSE, WorkerSession


class WorkerSessionTests(unittest.TestCase):
    def test_token_round_trip_keeps_request(self):
        request_id = uuid.uuid4()
        session = WorkerSession()
        self.assertFalse(session.is_active)
        session.track(request_id)

        restored = WorkerSession.from_token(session.to_token())
        self.assertTrue(restored.is_active)
        self.assertEqual(restored.request_id, request_id)

    def test_reset_clears_pointer_only(self):
        session = WorkerSession(request_id=uuid.uuid4())
        session.reset()
        self.assertIsNone(session.request_id)
        with self.assertRaises(ValueError):
            session.to_token()

    def test_foreign_tokens_give_empty_session(self):
        operator_token = create_operator_token("op@example.com", "OPERATOR", settings.WORKER_JWT_SECRET, 5)
        wrong_secret = create_jwt(
            {"sub": str(uuid.uuid4()), "purpose": SESSION_PURPOSE}, "other-secret", timedelta(minutes=5)
        )
        expired = create_jwt(
            {"sub": str(uuid.uuid4()), "purpose": SESSION_PURPOSE}, settings.WORKER_JWT_SECRET, timedelta(minutes=-5)
        )
        for token in (None, "", "garbage", operator_token, wrong_secret, expired):
            self.assertFalse(WorkerSession.from_token(token).is_active)


class OperatorTokenTests(unittest.TestCase):
    def test_operator_token_claims(self):
        token = create_operator_token(" Op@Example.com ", "admin", settings.OPERATOR_JWT_SECRET, 5)
        claims = decode_jwt(token, settings.OPERATOR_JWT_SECRET)
        self.assertEqual(claims["email"], "op@example.com")
        self.assertEqual(claims["role"], "ADMIN")
        self.assertIsNotNone(operator_from_token(token))

    def test_operator_token_validation(self):
        with self.assertRaises(ValueError):
            create_operator_token("op@example.com", "CLIENT", settings.OPERATOR_JWT_SECRET, 5)
        with self.assertRaises(ValueError):
            create_operator_token("  ", "OPERATOR", settings.OPERATOR_JWT_SECRET, 5)
        worker_token = WorkerSession(request_id=uuid.uuid4()).to_token()
        self.assertIsNone(operator_from_token(worker_token))

    def test_cli_prints_usable_token(self):
        out = io.StringIO()
        with redirect_stdout(out):
            issue_operator_token(["admin@example.com", "--role", "ADMIN", "--ttl-minutes", "10"])
        claims = operator_from_token(out.getvalue().strip())
        self.assertEqual(claims["role"], "ADMIN")
