from unittest.mock import MagicMock, patch

import redis
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from tests.base import RelayDbTestCase

from smsrelay.core.config import settings
from smsrelay.models.activation_job import JOB_SCHEDULED, ActivationJob
from smsrelay.models.common import utcnow
from smsrelay.models.credential import Credential
from smsrelay.models.relay_request import RelayRequest
from smsrelay.models.status_history import StatusHistory
from smsrelay.services.change_feed import ENTITY_CREDENTIALS, ENTITY_REQUESTS
from smsrelay.services.credential_store import CredentialStore
from smsrelay.services.errors import (
    KIND_ALREADY_USED,
    KIND_CODE_MISMATCH,
    KIND_INVALID_TRANSITION,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from smsrelay.services.rate_limit import (
    InMemoryRateLimiter,
    RedisRateLimiter,
    get_rate_limiter,
    set_rate_limiter,
)
from smsrelay.services.reconciler import LocalView
from smsrelay.services.request_lifecycle import (
    STATUS_ACTIVATED,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_SMS_REQUESTED,
    STATUS_SMS_SENT,
    STATUS_WAITING_FOR_ADDITIONAL_SMS,
    RequestLifecycleManager,
    allowed_operations,
)

PHONE = "+4917600000000"
CODE = "ABC234"


class RequestLifecycleTests(RelayDbTestCase):
    def setUp(self):
        super().setUp()
        self.db = self.SessionLocal()
        self.store = CredentialStore(self.db, self.feed)
        self.manager = RequestLifecycleManager(self.db, feed=self.feed, credentials=self.store)
        self.credential = self.store.create(PHONE, CODE)

    def tearDown(self):
        self.db.close()
        super().tearDown()

    def _history_count(self, request_id) -> int:
        return self.db.query(StatusHistory).filter(StatusHistory.request_id == request_id).count()

    def _to_waiting(self, request_id):
        self.manager.activate(request_id, actor="op@example.com")
        self.manager.mark_sms_sent(request_id)
        return self.manager.submit_sms_code(request_id, "482913", actor="op@example.com")

    def test_submit_creates_pending_request_and_leases_credential(self):
        req = self.manager.submit(PHONE, "abc234")

        self.assertEqual(req.status, STATUS_PENDING)
        self.assertIsNone(req.sms_code)
        self.assertEqual(len(req.short_id), 8)
        self.assertEqual(req.credential_id, self.credential.id)
        self.assertTrue(self.db.get(Credential, self.credential.id).is_used)

        history = self.manager.history(req.id)
        self.assertEqual([(h.from_status, h.to_status) for h in history], [(None, STATUS_PENDING)])

        jobs = self.db.query(ActivationJob).filter(ActivationJob.request_id == req.id).all()
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0].state, JOB_SCHEDULED)

    def test_submit_wrong_code_leaves_credential_free(self):
        with self.assertRaises(ValidationError) as ctx:
            self.manager.submit(PHONE, "WRONG1")
        self.assertEqual(ctx.exception.kind, KIND_CODE_MISMATCH)
        self.assertFalse(self.db.get(Credential, self.credential.id).is_used)
        self.assertEqual(self.db.query(RelayRequest).count(), 0)

    def test_submit_unknown_phone(self):
        with self.assertRaises(NotFoundError):
            self.manager.submit("+4917699999999", CODE)
        with self.assertRaises(ValidationError):
            self.manager.submit("   ", CODE)

    def test_second_submit_is_rejected_as_already_used(self):
        self.manager.submit(PHONE, CODE)
        with self.assertRaises(ConflictError) as ctx:
            self.manager.submit(PHONE, CODE)
        self.assertEqual(ctx.exception.kind, KIND_ALREADY_USED)
        self.assertEqual(self.db.query(RelayRequest).count(), 1)

    def test_lost_lease_race_creates_no_request(self):
        stale = self.store.validate(PHONE, CODE)
        self.store.lease(stale.id)

        # The competing submit validated before the lease landed.
        with patch.object(self.store, "validate", return_value=stale):
            with self.assertRaises(ConflictError):
                self.manager.submit(PHONE, CODE)

        self.assertEqual(self.db.query(RelayRequest).count(), 0)
        self.assertEqual(self.db.query(ActivationJob).count(), 0)

    def test_submit_is_rate_limited_per_phone(self):
        settings.SUBMIT_RATE_LIMIT = 2
        for _ in range(2):
            with self.assertRaises(ValidationError):
                self.manager.submit(PHONE, "WRONG1")
        with self.assertRaises(RateLimitedError) as ctx:
            self.manager.submit(PHONE, CODE)
        self.assertGreater(ctx.exception.retry_after_seconds, 0)
        self.assertFalse(self.db.get(Credential, self.credential.id).is_used)

    def test_successful_submits_never_exhaust_the_budget(self):
        codes = [f"AB{letter}234" for letter in "CDEFGHJKMNPQ"]
        for code in codes:
            self.store.create(PHONE, code)

        for code in codes:
            req = self.manager.submit(PHONE, code)
            self.assertEqual(req.status, STATUS_PENDING)
        self.assertEqual(self.db.query(RelayRequest).count(), len(codes))

    def test_throttle_counter_does_not_store_raw_phone(self):
        limiter = InMemoryRateLimiter()
        set_rate_limiter(limiter)
        with self.assertRaises(ValidationError):
            self.manager.submit(PHONE, "WRONG1")
        self.assertEqual(len(limiter._windows), 1)
        for key in limiter._windows:
            self.assertNotIn("4917600000000", key)

    def test_redis_outage_switches_to_local_limiter(self):
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")
        set_rate_limiter(RedisRateLimiter(client))

        with self.assertLogs("smsrelay.rate_limit", level="WARNING"):
            req = self.manager.submit(PHONE, CODE)
        self.assertEqual(req.status, STATUS_PENDING)
        self.assertIsInstance(get_rate_limiter(), InMemoryRateLimiter)

    def test_activate_losing_race_to_scheduler_returns_activated(self):
        req = self.manager.submit(PHONE, CODE)
        request_id = req.id
        calls = []

        def _activated_elsewhere(previous):
            if not calls:
                with self.SessionLocal() as other:
                    other.execute(
                        update(RelayRequest)
                        .where(RelayRequest.id == request_id)
                        .values(status=STATUS_ACTIVATED, updated_at=utcnow())
                    )
                    other.commit()
            calls.append(previous)
            return utcnow()

        with patch("smsrelay.services.request_lifecycle._next_updated_at", side_effect=_activated_elsewhere):
            result = self.manager.activate(request_id, actor="op@example.com")

        self.assertEqual(len(calls), 1)
        self.assertEqual(result.status, STATUS_ACTIVATED)
        self.assertEqual(self._history_count(request_id), 1)

    def test_lost_race_on_other_transition_still_conflicts(self):
        req = self.manager.submit(PHONE, CODE)
        request_id = req.id
        self.manager.activate(request_id, actor="op@example.com")

        def _sent_elsewhere(previous):
            with self.SessionLocal() as other:
                other.execute(
                    update(RelayRequest)
                    .where(RelayRequest.id == request_id)
                    .values(status=STATUS_SMS_SENT, updated_at=utcnow())
                )
                other.commit()
            return utcnow()

        with patch("smsrelay.services.request_lifecycle._next_updated_at", side_effect=_sent_elsewhere):
            with self.assertRaises(ConflictError) as ctx:
                self.manager.submit_sms_code(request_id, "482913", actor="op@example.com")
        self.assertNotIsInstance(ctx.exception, InvalidTransitionError)
        self.assertEqual(self.manager.get(request_id).status, STATUS_SMS_SENT)

    def test_submit_publishes_credential_and_request(self):
        credential_view = LocalView(ENTITY_CREDENTIALS, [])
        request_view = LocalView(ENTITY_REQUESTS, [])
        credential_view.attach(self.feed)
        request_view.attach(self.feed)

        req = self.manager.submit(PHONE, CODE)

        self.assertTrue(credential_view.get(self.credential.id)["is_used"])
        record = request_view.get(req.id)
        self.assertEqual(record["status"], STATUS_PENDING)
        self.assertEqual(record["phone"], PHONE)
        self.assertEqual(record["allowed_operations"], ["activate"])

    def test_full_cycle(self):
        req = self.manager.submit(PHONE, CODE)

        self.assertEqual(self.manager.activate(req.id, actor="op@example.com").status, STATUS_ACTIVATED)
        self.assertEqual(self.manager.mark_sms_sent(req.id).status, STATUS_SMS_SENT)

        waiting = self.manager.submit_sms_code(req.id, " 482913 ", actor="op@example.com")
        self.assertEqual(waiting.status, STATUS_WAITING_FOR_ADDITIONAL_SMS)
        self.assertEqual(waiting.sms_code, "482913")

        again = self.manager.request_additional_sms(req.id)
        self.assertEqual(again.status, STATUS_SMS_REQUESTED)
        self.assertEqual(again.sms_code, "482913")

        newer = self.manager.submit_sms_code(req.id, "551177", actor="op@example.com")
        self.assertEqual(newer.status, STATUS_WAITING_FOR_ADDITIONAL_SMS)
        self.assertEqual(newer.sms_code, "551177")

        done = self.manager.complete(req.id, actor="op@example.com")
        self.assertEqual(done.status, STATUS_COMPLETED)

        history = self.manager.history(req.id)
        self.assertEqual(
            [h.to_status for h in history],
            [
                STATUS_PENDING,
                STATUS_ACTIVATED,
                STATUS_SMS_SENT,
                STATUS_WAITING_FOR_ADDITIONAL_SMS,
                STATUS_SMS_REQUESTED,
                STATUS_WAITING_FOR_ADDITIONAL_SMS,
                STATUS_COMPLETED,
            ],
        )
        self.assertEqual(history[1].actor, "op@example.com")
        self.assertEqual(history[2].actor, "worker")

    def test_code_after_completion_reopens_request(self):
        req = self.manager.submit(PHONE, CODE)
        self._to_waiting(req.id)
        self.manager.complete(req.id, actor="op@example.com")

        reopened = self.manager.submit_sms_code(req.id, "991122", actor="op@example.com")
        self.assertEqual(reopened.status, STATUS_WAITING_FOR_ADDITIONAL_SMS)
        self.assertEqual(reopened.sms_code, "991122")

    def test_activate_is_idempotent(self):
        req = self.manager.submit(PHONE, CODE)
        first = self.manager.activate(req.id, actor="op@example.com")
        updated_at = first.updated_at
        second = self.manager.activate(req.id, actor="op@example.com")

        self.assertEqual(second.status, STATUS_ACTIVATED)
        self.assertEqual(second.updated_at, updated_at)
        self.assertEqual(self._history_count(req.id), 2)

    def test_activate_after_progress_is_invalid(self):
        req = self.manager.submit(PHONE, CODE)
        self.manager.activate(req.id, actor="op@example.com")
        self.manager.mark_sms_sent(req.id)
        with self.assertRaises(InvalidTransitionError) as ctx:
            self.manager.activate(req.id, actor="op@example.com")
        self.assertEqual(ctx.exception.current_status, STATUS_SMS_SENT)

    def test_rejected_transitions_change_nothing(self):
        req = self.manager.submit(PHONE, CODE)
        before = self.db.get(RelayRequest, req.id)
        updated_at = before.updated_at
        history_count = self._history_count(req.id)
        events = self.record_events(ENTITY_REQUESTS)

        for operation in (
            lambda: self.manager.complete(req.id, actor="op@example.com"),
            lambda: self.manager.mark_sms_sent(req.id),
            lambda: self.manager.request_additional_sms(req.id),
            lambda: self.manager.submit_sms_code(req.id, "123456", actor="op@example.com"),
        ):
            with self.assertRaises(InvalidTransitionError) as ctx:
                operation()
            self.assertEqual(ctx.exception.kind, KIND_INVALID_TRANSITION)

        after = self.db.get(RelayRequest, req.id, populate_existing=True)
        self.assertEqual(after.status, STATUS_PENDING)
        self.assertIsNone(after.sms_code)
        self.assertEqual(after.updated_at, updated_at)
        self.assertEqual(self._history_count(req.id), history_count)
        self.assertEqual(events, [])

    def test_complete_requires_a_delivered_code(self):
        req = self.manager.submit(PHONE, CODE)
        self.manager.activate(req.id, actor="op@example.com")
        self.manager.mark_sms_sent(req.id)
        with self.assertRaises(InvalidTransitionError):
            self.manager.complete(req.id, actor="op@example.com")

    def test_sms_code_is_validated(self):
        req = self.manager.submit(PHONE, CODE)
        self.manager.activate(req.id, actor="op@example.com")
        with self.assertRaises(ValidationError):
            self.manager.submit_sms_code(req.id, "   ", actor="op@example.com")
        with self.assertRaises(ValidationError):
            self.manager.submit_sms_code(req.id, "9" * 33, actor="op@example.com")
        self.assertEqual(self.manager.get(req.id).status, STATUS_ACTIVATED)

    def test_unknown_and_malformed_ids(self):
        with self.assertRaises(NotFoundError):
            self.manager.activate("00000000-0000-0000-0000-000000000001", actor="op@example.com")
        with self.assertRaises(ValidationError):
            self.manager.get("not-a-uuid")

    def test_updated_at_strictly_increases(self):
        req = self.manager.submit(PHONE, CODE)
        stamps = [self.db.get(RelayRequest, req.id).updated_at]
        self.manager.activate(req.id, actor="op@example.com")
        stamps.append(self.db.get(RelayRequest, req.id, populate_existing=True).updated_at)
        self.manager.mark_sms_sent(req.id)
        stamps.append(self.db.get(RelayRequest, req.id, populate_existing=True).updated_at)
        self.assertLess(stamps[0], stamps[1])
        self.assertLess(stamps[1], stamps[2])

    def test_store_failure_is_transient_and_leaves_status(self):
        req = self.manager.submit(PHONE, CODE)
        failure = OperationalError("UPDATE relay_requests", {}, Exception("connection reset"))

        with patch.object(self.db, "commit", side_effect=failure):
            with self.assertRaises(TransientError):
                self.manager.activate(req.id, actor="op@example.com")

        self.assertEqual(self.manager.get(req.id).status, STATUS_PENDING)
        self.assertEqual(self.manager.activate(req.id, actor="op@example.com").status, STATUS_ACTIVATED)

    def test_list_filters_by_status(self):
        first = self.manager.submit(PHONE, CODE)
        self.store.create("+4917611111111", "XYZ789")
        self.manager.submit("+4917611111111", "XYZ789")
        self.manager.activate(first.id, actor="op@example.com")

        total, rows = self.manager.list(status="activated")
        self.assertEqual(total, 1)
        self.assertEqual(rows[0].id, first.id)
        total, _ = self.manager.list()
        self.assertEqual(total, 2)
        with self.assertRaises(ValidationError):
            self.manager.list(status="archived")

    def test_allowed_operations_table(self):
        self.assertEqual(allowed_operations(STATUS_PENDING), ["activate"])
        self.assertEqual(allowed_operations(STATUS_ACTIVATED), ["mark_sms_sent", "submit_sms_code"])
        self.assertEqual(
            allowed_operations(STATUS_WAITING_FOR_ADDITIONAL_SMS),
            ["complete", "request_additional_sms", "submit_sms_code"],
        )
        self.assertEqual(allowed_operations(STATUS_COMPLETED), ["submit_sms_code"])
