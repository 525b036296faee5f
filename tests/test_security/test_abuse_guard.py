"""Tests for the abuse guard."""

import logging
import random

import pytest

from clinic_booking.middleware.abuse_guard import BLACKLIST_REASON, AbuseGuard, GuardConfig
from clinic_booking.schemas.security import AttemptKind, ChallengePhase
from clinic_booking.services.kv_store import RedisKeyValueStore
from clinic_booking.utils.challenge import generate_challenge, verify_answer

from tests.conftest import FailingKeyValueStore, FakeRedis

IP = "203.0.113.7"
HOUR = 60 * 60


@pytest.fixture
def guard(kv, clock):
    return AbuseGuard(kv, GuardConfig(), clock=clock, rng=random.Random(7))


def _record(guard, kind, subject, times):
    status = None
    for _ in range(times):
        status = guard.record_attempt(kind, subject)
    return status


# ----------------------------------------------------------------- thresholds

class TestThresholds:
    def test_under_limit_is_clear(self, guard):
        status = _record(guard, AttemptKind.SUBJECT, IP, 10)
        assert not status.requires_challenge
        assert guard.check_status(IP).phase is ChallengePhase.CLEAR

    def test_subject_trips_past_limit(self, guard):
        status = _record(guard, AttemptKind.SUBJECT, IP, 11)
        assert status.requires_challenge
        assert status.phase is ChallengePhase.REQUIRED
        assert "device" in status.reason

    def test_email_trips_past_limit(self, guard):
        assert not _record(guard, AttemptKind.EMAIL, "Jane@Example.com", 5).requires_challenge
        status = guard.record_attempt(AttemptKind.EMAIL, " jane@example.com ")
        assert status.requires_challenge
        assert "email" in status.reason
        assert guard.check_status(IP, email="JANE@example.com").requires_challenge

    def test_phone_trips_past_limit(self, guard):
        _record(guard, AttemptKind.PHONE, "+1 (555) 010-0000", 3)
        status = guard.record_attempt(AttemptKind.PHONE, "15550100000")
        assert status.requires_challenge
        assert "phone" in status.reason

    def test_failed_logins_trip_at_limit(self, guard):
        assert not _record(guard, AttemptKind.FAILED_LOGIN, IP, 4).requires_challenge
        status = guard.record_failed_login(IP)
        assert status.requires_challenge
        assert "login" in status.reason
        assert status.attempts_remaining == 0

    def test_booking_attempt_counts_all_identities(self, guard):
        guard.record_booking_attempt(IP, "a@example.com", "555-0100")
        assert guard.attempt_count(AttemptKind.SUBJECT, IP) == 1
        assert guard.attempt_count(AttemptKind.EMAIL, "A@example.com") == 1
        assert guard.attempt_count(AttemptKind.PHONE, "5550100") == 1

    def test_window_purges_old_attempts(self, guard, clock):
        _record(guard, AttemptKind.SUBJECT, IP, 10)
        clock.advance(24 * HOUR + 1)

        assert not guard.record_attempt(AttemptKind.SUBJECT, IP).requires_challenge
        assert guard.attempt_count(AttemptKind.SUBJECT, IP) == 1


# ----------------------------------------------------------------- recovery

class TestRecovery:
    def test_cooldown_expiry_clears_state_and_counter(self, guard, clock):
        _record(guard, AttemptKind.SUBJECT, IP, 11)
        clock.advance(30 * 60 - 1)
        assert guard.check_status(IP).requires_challenge

        clock.advance(2)
        assert not guard.check_status(IP).requires_challenge
        assert guard.attempt_count(AttemptKind.SUBJECT, IP) == 0

    def test_reset_clears_failed_logins_only(self, guard):
        _record(guard, AttemptKind.SUBJECT, IP, 3)
        _record(guard, AttemptKind.FAILED_LOGIN, IP, 5)
        assert guard.check_status(IP).requires_challenge

        status = guard.reset_on_success(IP)

        assert not status.requires_challenge
        assert guard.attempt_count(AttemptKind.FAILED_LOGIN, IP) == 0
        assert guard.attempt_count(AttemptKind.SUBJECT, IP) == 3


# ----------------------------------------------------------------- blacklist

class TestBlacklist:
    def test_three_trips_blacklist_subject(self, kv, clock):
        guard = AbuseGuard(kv, GuardConfig(max_appointments_per_ip=1), clock=clock)
        _record(guard, AttemptKind.SUBJECT, IP, 4)  # attempts 2, 3, 4 each trip

        status = guard.check_status(IP)
        assert status.blacklisted
        assert status.requires_challenge
        assert status.reason == BLACKLIST_REASON
        assert guard.is_blacklisted(IP)

    def test_blacklist_survives_reset_and_cooldown(self, kv, clock):
        guard = AbuseGuard(kv, GuardConfig(max_appointments_per_ip=1), clock=clock)
        _record(guard, AttemptKind.SUBJECT, IP, 4)

        guard.reset_on_success(IP)
        clock.advance(2 * HOUR)
        assert guard.check_status(IP).blacklisted

        clock.advance(23 * HOUR)
        assert not guard.check_status(IP).blacklisted

    def test_two_trips_do_not_blacklist(self, kv, clock):
        guard = AbuseGuard(kv, GuardConfig(max_appointments_per_ip=1), clock=clock)
        _record(guard, AttemptKind.SUBJECT, IP, 3)
        assert not guard.check_status(IP).blacklisted


# ----------------------------------------------------------------- challenge

class TestChallenge:
    def test_question_format(self):
        rng = random.Random(1)
        for _ in range(50):
            challenge = generate_challenge(rng)
            assert challenge.question.startswith("What is ")
            a, op, b = challenge.question[len("What is "):-1].split(" ")
            assert op in {"+", "-", "×"}
            assert 1 <= int(a) <= 10 and 1 <= int(b) <= 10

    def test_answer_is_normalized(self):
        assert verify_answer("  12 ", "12")
        assert verify_answer("ABC", "abc")
        assert not verify_answer("13", "12")

    def test_issue_is_stable_until_solved(self, guard):
        assert guard.issue_challenge(IP).question == guard.issue_challenge(IP).question

    def test_correct_answer_clears_gate(self, guard):
        _record(guard, AttemptKind.FAILED_LOGIN, IP, 5)
        challenge = guard.issue_challenge(IP)

        result = guard.verify_challenge(IP, f" {challenge.answer} ")

        assert result.success
        assert not result.status.requires_challenge

    def test_wrong_answer_keeps_gate(self, guard):
        _record(guard, AttemptKind.FAILED_LOGIN, IP, 5)
        guard.issue_challenge(IP)

        result = guard.verify_challenge(IP, "not a number")

        assert not result.success
        assert result.status.requires_challenge
        assert result.question

    def test_three_failures_regenerate_and_cool_down(self, guard, kv, clock):
        _record(guard, AttemptKind.SUBJECT, IP, 11)
        initial = guard.check_status(IP).cooldown_remaining
        guard.issue_challenge(IP)
        clock.advance(60)

        for _ in range(3):
            status = guard.record_failed_challenge(IP)

        assert status.requires_challenge
        assert status.phase is ChallengePhase.COOLDOWN
        # Cooldown still measured from the triggering attempt
        assert status.cooldown_remaining == initial - 60
        session = kv.get(AbuseGuard._challenge_key(IP))
        assert session["failures"] == 0

    def test_two_failures_keep_required(self, guard):
        _record(guard, AttemptKind.SUBJECT, IP, 11)
        guard.issue_challenge(IP)

        guard.record_failed_challenge(IP)
        status = guard.record_failed_challenge(IP)

        assert status.phase is ChallengePhase.REQUIRED


# ----------------------------------------------------------------- fail open

class TestFailOpen:
    def test_storage_failure_fails_open(self, clock, caplog):
        guard = AbuseGuard(FailingKeyValueStore(), clock=clock)

        with caplog.at_level(logging.WARNING):
            for _ in range(20):
                status = guard.record_attempt(AttemptKind.SUBJECT, IP)

        assert not status.requires_challenge
        assert not guard.check_status(IP, "a@example.com", "555").requires_challenge
        assert not guard.is_blacklisted(IP)
        assert guard.attempt_count(AttemptKind.SUBJECT, IP) == 0
        assert "failing open" in caplog.text


# ----------------------------------------------------------------- shared storage

class TestSharedStorage:
    def test_guards_sharing_redis_count_every_attempt(self, clock):
        store = RedisKeyValueStore(FakeRedis())
        first = AbuseGuard(store, GuardConfig(), clock=clock)
        second = AbuseGuard(store, GuardConfig(), clock=clock)

        for _ in range(5):
            first.record_attempt(AttemptKind.SUBJECT, IP)
            second.record_attempt(AttemptKind.SUBJECT, IP)

        assert first.attempt_count(AttemptKind.SUBJECT, IP) == 10
        assert second.record_attempt(AttemptKind.SUBJECT, IP).requires_challenge
        assert first.check_status(IP).requires_challenge

    def test_cooldown_expiry_clears_shared_counter(self, clock):
        store = RedisKeyValueStore(FakeRedis())
        guard = AbuseGuard(store, GuardConfig(max_appointments_per_ip=1), clock=clock)
        _record(guard, AttemptKind.SUBJECT, IP, 2)

        clock.advance(30 * 60 + 1)

        assert not guard.check_status(IP).requires_challenge
        assert guard.attempt_count(AttemptKind.SUBJECT, IP) == 0
