"""Tests for voice learning and style-drift detection (mocked LLM)."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from inboxpilot.errors import MalformedResponseError, QuotaExceededError
from inboxpilot.handlers.voice import detect_style_drift as drift_handler
from inboxpilot.handlers.voice import voice_learning
from inboxpilot.jobs.state import get_job
from inboxpilot.voice import detect_style_drift, get_profile, learn_voice, reply_pairs
from tests.conftest import dispatched, insert_conversation, insert_import_job

VOICE_RESPONSE = {
    "voice_dna": {
        "openers": [{"phrase": "Hi", "frequency": 0.2}, {"phrase": "Hiya", "frequency": 0.6}],
        "closers": [{"phrase": "Cheers", "frequency": 0.5}],
        "tics": ["no worries"],
        "tone_keywords": ["friendly", "direct", "practical", "brief"],
        "formatting_rules": ["short paragraphs"],
        "avg_response_length": 45,
        "emoji_usage": "never",
    },
    "playbook": [{"category": "quote_request"}, {"category": "booking"}],
    "summary": "Warm, brief and practical.",
}

NOW = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)
PROFILE_UPDATED = "2024-06-01T00:00:00+00:00"


def _seed_pairs(db, count):
    for i in range(count):
        insert_conversation(db, f"t{i}", f"c{i}@client.com", replied=True)


def _seed_profile(db, workspace_id="ws1"):
    db.execute(
        """INSERT INTO voice_profiles (workspace_id, voice_dna, emails_analyzed, updated_at)
           VALUES (?, ?, 20, ?)""",
        (workspace_id, json.dumps(VOICE_RESPONSE["voice_dna"]), PROFILE_UPDATED),
    )
    db.commit()


def _seed_sent(db, count, received_at="2024-06-05T10:00:00+00:00"):
    for i in range(count):
        db.execute(
            """INSERT INTO email_import_queue
               (workspace_id, external_id, thread_id, direction, from_email, body, received_at, status)
               VALUES ('ws1', ?, ?, 'outbound', 'owner@flowplumbing.co.uk', ?, ?, 'processed')""",
            (f"sent-{received_at}-{i}", f"st{i}", f"Hey there, booked you in for Tuesday {i}. Best, Sam",
             received_at),
        )
    db.commit()


class TestLearnVoice:
    def test_insufficient_pairs(self, db, workspace):
        _seed_pairs(db, 3)
        provider = MagicMock()

        result = learn_voice(db, "ws1", provider, "m", min_pairs=5)

        assert result == {"success": False, "reason": "insufficient_data", "pairs_found": 3}
        provider.complete.assert_not_called()
        assert get_profile(db, "ws1") is None

    def test_builds_profile(self, db, workspace):
        _seed_pairs(db, 5)
        provider = MagicMock()
        provider.complete.return_value = VOICE_RESPONSE

        result = learn_voice(db, "ws1", provider, "m", now=NOW)

        assert result["success"] is True
        assert result["pairs_analyzed"] == 5
        assert result["playbook_categories"] == 2
        profile = get_profile(db, "ws1")
        assert profile["greeting_style"] == "Hiya"
        assert profile["signoff_style"] == "Cheers"
        assert profile["tone"] == "friendly, direct, practical"
        assert profile["emails_analyzed"] == 5
        assert profile["confidence_score"] == 0.1
        assert json.loads(profile["voice_dna"])["avg_response_length"] == 45
        assert "EXCHANGE 5" in provider.complete.call_args.args[0]

    def test_recent_profile_skipped_unless_forced(self, db, workspace):
        _seed_pairs(db, 5)
        provider = MagicMock()
        provider.complete.return_value = VOICE_RESPONSE
        learn_voice(db, "ws1", provider, "m", now=NOW)

        skipped = learn_voice(db, "ws1", provider, "m", now=NOW + timedelta(hours=2))
        forced = learn_voice(db, "ws1", provider, "m", force_refresh=True, now=NOW + timedelta(hours=2))
        stale = learn_voice(db, "ws1", provider, "m", now=NOW + timedelta(hours=30))

        assert skipped["reason"] == "recently_updated"
        assert forced["success"] is True and "skipped" not in forced
        assert "skipped" not in stale
        assert provider.complete.call_count == 3

    @pytest.mark.parametrize("response", [{"text": "I cannot help"}, {"summary": "no dna"}, ["not", "a", "dict"]])
    def test_malformed_output(self, db, workspace, response):
        _seed_pairs(db, 5)
        provider = MagicMock()
        provider.complete.return_value = response
        with pytest.raises(MalformedResponseError):
            learn_voice(db, "ws1", provider, "m")

    def test_reply_pairs_need_a_customer_message(self, db, workspace):
        _seed_pairs(db, 2)
        conv = db.execute(
            """INSERT INTO conversations (workspace_id, thread_id, sender_email, sender_domain)
               VALUES ('ws1', 'outreach', 'lead@new.com', 'new.com')"""
        ).lastrowid
        db.execute(
            """INSERT INTO messages (conversation_id, external_id, direction, actor_type, body, created_at)
               VALUES (?, 'cold', 'outbound', 'human_agent', 'Fancy a quote?', '2024-05-02T09:00:00+00:00')""",
            (conv,),
        )
        db.commit()

        pairs = reply_pairs(db, "ws1")

        assert len(pairs) == 2
        assert pairs[0]["response_hours"] == pytest.approx(2.0)


class TestDetectStyleDrift:
    def test_no_profile(self, db, workspace):
        assert detect_style_drift(db, "ws1", MagicMock(), "m")["reason"] == "no_voice_profile"

    @pytest.mark.parametrize("new_emails", [0, 1, 4])
    def test_too_few_new_emails(self, db, workspace, new_emails):
        _seed_profile(db)
        _seed_sent(db, new_emails)
        _seed_sent(db, 10, received_at="2024-05-20T10:00:00+00:00")  # before the profile was learned
        provider = MagicMock()

        result = detect_style_drift(db, "ws1", provider, "m", min_emails=5, now=NOW)

        assert result["drift_score"] == 0
        assert result["refresh_triggered"] is False
        assert result["emails_sampled"] == new_emails
        provider.complete.assert_not_called()
        log = db.execute("SELECT * FROM voice_drift_log").fetchone()
        assert log["status"] == "insufficient_data"
        assert log["refresh_triggered"] == 0

    def test_drift_above_threshold(self, db, workspace):
        _seed_profile(db)
        _seed_sent(db, 6)
        provider = MagicMock()
        provider.complete.return_value = {
            "drift_score": 0.45,
            "traits_changed": [{"trait": "openers", "old": "Hiya", "new": "Hey there", "severity": 0.4}],
            "summary": "Greetings have changed.",
        }

        result = detect_style_drift(db, "ws1", provider, "m", threshold=0.3, now=NOW)

        assert result["refresh_triggered"] is True
        assert result["drift_score"] == 0.45
        assert result["traits_changed"][0]["trait"] == "openers"
        assert db.execute("SELECT status FROM voice_drift_log").fetchone()["status"] == "refresh_triggered"

    def test_score_is_clamped(self, db, workspace):
        _seed_profile(db)
        _seed_sent(db, 5)
        provider = MagicMock()
        provider.complete.return_value = {"drift_score": 7, "traits_changed": "lots"}

        result = detect_style_drift(db, "ws1", provider, "m", now=NOW)

        assert result["drift_score"] == 1.0
        assert result["traits_changed"] == []

    def test_unparseable_analysis(self, db, workspace):
        _seed_profile(db)
        _seed_sent(db, 5)
        provider = MagicMock()
        provider.complete.return_value = {"text": "hmm"}
        with pytest.raises(MalformedResponseError):
            detect_style_drift(db, "ws1", provider, "m", now=NOW)


class TestVoiceHandlers:
    def test_learning_completes_import_even_without_data(self, db, workspace, make_ctx):
        insert_import_job(db, status="learning")

        result = voice_learning(make_ctx(), {"workspace_id": "ws1", "job_id": "job1", "force_refresh": True})

        assert result["reason"] == "insufficient_data"
        assert result["job_completed"] is True
        job = get_job(db, "import", "job1")
        assert job["status"] == "completed"
        assert job["completed_at"] is not None
        mailbox = db.execute("SELECT * FROM email_provider_configs WHERE id = 'cfg1'").fetchone()
        assert mailbox["sync_status"] == "completed"
        assert mailbox["sync_stage"] == "complete"

    def test_malformed_output_leaves_job_for_watchdog(self, db, workspace, make_ctx):
        insert_import_job(db, status="learning")
        _seed_pairs(db, 5)
        provider = MagicMock()
        provider.complete.return_value = {"text": "nope"}

        result = voice_learning(make_ctx(provider=provider), {"workspace_id": "ws1", "job_id": "job1"})

        assert result["success"] is False
        assert get_job(db, "import", "job1")["status"] == "learning"

    def test_standalone_learning(self, db, workspace, make_ctx):
        _seed_pairs(db, 5)
        provider = MagicMock()
        provider.complete.return_value = VOICE_RESPONSE

        result = voice_learning(make_ctx(provider=provider), {"workspace_id": "ws1"})

        assert result["success"] is True
        assert "job_completed" not in result

    def test_drift_triggers_relearn(self, db, workspace, make_ctx, invoker):
        _seed_profile(db)
        _seed_sent(db, 5)
        provider = MagicMock()
        provider.complete.return_value = {"drift_score": 0.6, "traits_changed": []}

        result = drift_handler(make_ctx(provider=provider), {"workspace_id": "ws1"})

        assert result["refresh_triggered"] is True
        assert dispatched(invoker) == [("voice-learning", {"workspace_id": "ws1", "force_refresh": True}, 0)]

    def test_insufficient_drift_sample_does_not_relearn(self, db, workspace, make_ctx, invoker):
        _seed_profile(db)
        _seed_sent(db, 4)

        result = drift_handler(make_ctx(), {"workspace_id": "ws1"})

        assert result["drift_score"] == 0
        assert dispatched(invoker) == []

    def test_drift_check_retries_quota_errors_a_bounded_number_of_times(self, db, workspace, make_ctx, invoker):
        _seed_profile(db)
        _seed_sent(db, 5)
        provider = MagicMock()
        provider.complete.side_effect = QuotaExceededError("credits exhausted")

        first = drift_handler(make_ctx(provider=provider), {"workspace_id": "ws1"})

        assert first == {"success": True, "rate_limited": True, "retry_in_seconds": 30}
        assert dispatched(invoker) == [
            ("detect-style-drift", {"workspace_id": "ws1", "resume": True, "stalled_passes": 1}, 30),
        ]

        invoker.reset_mock()
        last = drift_handler(make_ctx(provider=provider), {"workspace_id": "ws1", "stalled_passes": 3})

        assert last["success"] is False
        assert "after 3 retries" in last["error"]
        assert dispatched(invoker) == []
