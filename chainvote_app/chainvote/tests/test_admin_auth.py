from __future__ import annotations

import datetime
from dataclasses import dataclass
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.test import TestCase, override_settings
from django.utils import timezone

from chainvote import elections_api
from chainvote.elections_api import ResetRequest
from chainvote.exceptions import (
    AuthenticationFailed,
    CandidateListUnlocked,
    ConfirmationMismatch,
    RateLimited,
    ResetPreconditionFailed,
)
from chainvote.models import AdminAction, Candidate, ElectionStatusEntry, ResetConfirmationCode
from chainvote.rate_limit import allow_request, limit_reached
from chainvote.tests.fakes import create_election

PHRASE = "RESET_ELECTION_CONFIRMED"
PASSWORD = "correct horse battery"


@dataclass
class _Entry:
    value: int
    expires_at: float | None


class _RaceyCache:
    """Cache whose incr() drops the TTL, like some shared backends."""

    def __init__(self) -> None:
        self._now = 1000.0
        self._entries: dict[str, _Entry] = {}

    def _is_expired(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return True
        if entry.expires_at is None:
            return False
        return entry.expires_at <= self._now

    def add(self, key: str, value: int, timeout: int) -> bool:
        if key in self._entries and not self._is_expired(key):
            return False
        self._entries[key] = _Entry(value=value, expires_at=self._now + float(timeout))
        return True

    def incr(self, key: str) -> int:
        if self._is_expired(key):
            raise ValueError("Key does not exist")
        entry = self._entries[key]
        entry.value += 1
        entry.expires_at = None
        return entry.value

    def touch(self, key: str, timeout: int) -> bool:
        if self._is_expired(key):
            return False
        self._entries[key].expires_at = self._now + float(timeout)
        return True

    def set(self, key: str, value: int, timeout: int) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._now + float(timeout))

    def get(self, key: str) -> int | None:
        if self._is_expired(key):
            return None
        return self._entries[key].value

    def advance(self, seconds: int) -> None:
        self._now += float(seconds)


class RateLimitTests(TestCase):
    def test_ttl_is_reapplied_after_increment(self) -> None:
        backend = _RaceyCache()
        with patch("chainvote.rate_limit.cache", backend):
            for _ in range(2):
                self.assertTrue(
                    allow_request(scope="elections.admin_reauth", key_parts=["alice"], limit=3, window_seconds=60)
                )

        entry = next(iter(backend._entries.values()))
        self.assertIsNotNone(entry.expires_at)

    def test_window_expiry_allows_again(self) -> None:
        backend = _RaceyCache()
        with patch("chainvote.rate_limit.cache", backend):
            self.assertTrue(allow_request(scope="s", key_parts=["alice"], limit=1, window_seconds=5))
            self.assertFalse(allow_request(scope="s", key_parts=["alice"], limit=1, window_seconds=5))
            self.assertTrue(limit_reached(scope="s", key_parts=["Alice "], limit=1))

            backend.advance(6)

            self.assertFalse(limit_reached(scope="s", key_parts=["alice"], limit=1))
            self.assertTrue(allow_request(scope="s", key_parts=["alice"], limit=1, window_seconds=5))


@override_settings(
    PASSWORD_HASHERS=["django.contrib.auth.hashers.MD5PasswordHasher"],
    ELECTION_ADMIN_REAUTH_RATE_LIMIT=3,
)
class AdminApiTestCase(TestCase):
    def setUp(self) -> None:
        cache.clear()
        User = get_user_model()
        self.admin = User.objects.create_user(username="alice", password=PASSWORD, is_staff=True)
        self.other_admin = User.objects.create_user(username="bob", password="bob-password", is_staff=True)


class PasswordGateTests(AdminApiTestCase):
    def test_wrong_password_refuses_and_audits_without_secrets(self) -> None:
        election = create_election(locked=True, candidates=[("Ada", 0)])

        with self.assertLogs("chainvote.elections_auth", level="WARNING") as logs:
            with self.assertRaises(AuthenticationFailed) as ctx:
                elections_api.change_status(
                    election_id=election.pk, status="open", admin_password="wrong", actor=self.admin
                )

        self.assertEqual(ctx.exception.kind, "AuthenticationFailed")
        election.refresh_from_db()
        self.assertEqual(election.status, "setup")
        action = AdminAction.objects.get()
        self.assertEqual(action.outcome, "denied")
        self.assertEqual(action.proofs_supplied, ["password"])
        self.assertNotIn("wrong", str(action.payload))
        self.assertEqual(logs.records[0].event, "chainvote.security.reauth.denied")

    def test_another_admins_password_is_refused(self) -> None:
        election = create_election(locked=True, candidates=[("Ada", 0)])

        with self.assertRaises(AuthenticationFailed):
            elections_api.change_status(
                election_id=election.pk, status="open", admin_password="bob-password", actor=self.admin
            )

    def test_non_staff_user_is_refused_with_correct_password(self) -> None:
        plain = get_user_model().objects.create_user(username="carol", password="carol-password")
        election = create_election(locked=True, candidates=[("Ada", 0)])

        with self.assertRaises(AuthenticationFailed):
            elections_api.change_status(
                election_id=election.pk, status="open", admin_password="carol-password", actor=plain
            )

    def test_correct_password_changes_status_and_audits(self) -> None:
        election = create_election(locked=True, candidates=[("Ada", 0)])

        updated = elections_api.change_status(
            election_id=election.pk, status="OPEN", admin_password=PASSWORD, actor=self.admin
        )

        self.assertEqual(updated.status, "open")
        action = AdminAction.objects.get()
        self.assertEqual((action.action_type, action.outcome, action.actor), ("status_change", "succeeded", "alice"))
        self.assertEqual(action.payload, {"from_status": "setup", "to_status": "open"})

    def test_failed_transition_is_audited_as_failed(self) -> None:
        election = create_election(candidates=[("Ada", 0)])

        with self.assertRaises(CandidateListUnlocked):
            elections_api.change_status(
                election_id=election.pk, status="open", admin_password=PASSWORD, actor=self.admin
            )

        action = AdminAction.objects.get()
        self.assertEqual(action.outcome, "failed")
        self.assertEqual(action.payload["error"], "CandidateListUnlocked")

    def test_repeated_failures_are_rate_limited(self) -> None:
        election = create_election(locked=True, candidates=[("Ada", 0)])

        for _ in range(3):
            with self.assertRaises(AuthenticationFailed):
                elections_api.clear_votes(election_id=election.pk, admin_password="nope", actor=self.admin)

        with self.assertRaises(RateLimited):
            elections_api.clear_votes(election_id=election.pk, admin_password=PASSWORD, actor=self.admin)

        reasons = list(AdminAction.objects.values_list("payload__reason", flat=True))
        self.assertEqual(reasons, ["password", "password", "password", "rate_limited"])

    def test_lock_candidate_list_is_audited(self) -> None:
        election = create_election(candidates=[("Ada", 0)])

        updated = elections_api.lock_candidate_list(election_id=election.pk, actor=self.admin)

        self.assertTrue(updated.candidate_list_locked)
        action = AdminAction.objects.get()
        self.assertEqual((action.action_type, action.outcome), ("lock_candidates", "succeeded"))


class ResetFlowTests(AdminApiTestCase):
    def _issue(self, election) -> str:
        return elections_api.issue_reset_code(election_id=election.pk, admin_password=PASSWORD, actor=self.admin)

    def _reset(self, election, *, code: str, phrase: str = PHRASE, password: str = PASSWORD, reason: str = "typo"):
        return elections_api.reset_election(
            election_id=election.pk,
            request=ResetRequest(
                reason=reason,
                admin_password=password,
                confirmation_code=code,
                confirmation_phrase=phrase,
            ),
            actor=self.admin,
        )

    def test_successful_reset_consumes_the_code(self) -> None:
        election = create_election(status="closed", candidates=[("Ada", 0)])
        code = self._issue(election)

        updated = self._reset(election, code=code.lower())

        self.assertEqual(updated.status, "setup")
        self.assertFalse(Candidate.objects.filter(election=election).exists())
        self.assertIsNotNone(ResetConfirmationCode.objects.get().used_at)
        self.assertEqual(ElectionStatusEntry.objects.get(election=election).kind, "reset")
        action = AdminAction.objects.filter(action_type="reset").get()
        self.assertEqual(action.outcome, "succeeded")
        self.assertEqual(action.proofs_supplied, ["password", "confirmation_code", "confirmation_phrase"])
        self.assertNotIn(code, str(action.payload))

    def test_code_is_stored_hashed(self) -> None:
        election = create_election(status="closed")
        code = self._issue(election)

        self.assertEqual(len(code), 10)
        self.assertNotEqual(ResetConfirmationCode.objects.get().code_hash, code)

    def test_wrong_phrase_or_code_is_a_generic_mismatch(self) -> None:
        election = create_election(status="closed", candidates=[("Ada", 0)])
        code = self._issue(election)

        with self.assertRaises(ConfirmationMismatch):
            self._reset(election, code=code, phrase="reset_election_confirmed")
        with self.assertRaises(ConfirmationMismatch):
            self._reset(election, code="AAAAAAAAAA")

        election.refresh_from_db()
        self.assertEqual(election.status, "closed")
        self.assertIsNone(ResetConfirmationCode.objects.get().used_at)
        denied = AdminAction.objects.filter(outcome="denied")
        self.assertEqual(
            list(denied.values_list("payload__reason", flat=True)),
            ["confirmation_phrase", "confirmation_code"],
        )

    def test_phrase_must_match_exactly(self) -> None:
        election = create_election(status="closed", candidates=[("Ada", 0)])
        code = self._issue(election)

        for phrase in (f" {PHRASE}", f"{PHRASE}\n", f"{PHRASE} "):
            with self.subTest(phrase=phrase), self.assertRaises(ConfirmationMismatch):
                self._reset(election, code=code, phrase=phrase)

        election.refresh_from_db()
        self.assertEqual(election.status, "closed")
        self.assertIsNone(ResetConfirmationCode.objects.get().used_at)

    def test_code_is_single_use(self) -> None:
        election = create_election(status="closed")
        code = self._issue(election)
        self._reset(election, code=code)

        with self.assertRaises(ConfirmationMismatch):
            self._reset(election, code=code)

    def test_expired_code_is_refused(self) -> None:
        election = create_election(status="closed")
        code = self._issue(election)
        ResetConfirmationCode.objects.update(expires_at=timezone.now() - datetime.timedelta(seconds=1))

        with self.assertRaises(ConfirmationMismatch):
            self._reset(election, code=code)

    def test_new_code_invalidates_the_previous_one(self) -> None:
        election = create_election(status="closed")
        first = self._issue(election)
        second = self._issue(election)

        with self.assertRaises(ConfirmationMismatch):
            self._reset(election, code=first)
        self._reset(election, code=second)

    def test_failed_precondition_does_not_spend_the_code(self) -> None:
        election = create_election(status="open", candidates=[("Ada", 2)])
        code = self._issue(election)

        with self.assertRaises(ResetPreconditionFailed):
            self._reset(election, code=code)

        self.assertIsNone(ResetConfirmationCode.objects.get().used_at)
        action = AdminAction.objects.filter(action_type="reset").get()
        self.assertEqual(action.outcome, "failed")
        election.refresh_from_db()
        self.assertEqual(election.total_votes, 2)
