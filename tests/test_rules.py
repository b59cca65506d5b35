"""Tests for sender rules: noise detection, matching and bootstrapping."""

import pytest

from inboxpilot.triage.rules import (
    bootstrap_sender_rules,
    match_sender_rule,
    noise_reason,
    suggest_rule,
    upsert_sender_rule,
)
from tests.conftest import insert_conversation


@pytest.mark.parametrize("address,reason", [
    ("noreply@shop.com", "noreply"),
    ("no-reply@council.gov.uk", "noreply"),
    ("receipts@stripe.com", "payment_notification"),
    ("jobs@indeed.com", "job_board"),
    ("notification@facebookmail.com", "social_notification"),
    ("news@mailchimp.com", "newsletter"),
    ("MAILER-DAEMON@mx.example.com", "system"),
    ("jane@smith-family.co.uk", None),
    ("", None),
    (None, None),
])
def test_noise_reason(address, reason):
    assert noise_reason(address) == reason


class TestMatchSenderRule:
    def test_most_specific_pattern_wins(self, db):
        upsert_sender_rule(db, "ws1", "acme.com", "fyi_notification", False, "wait", 80)
        upsert_sender_rule(db, "ws1", "@acme.com", "automated_notification", False, "auto_handled", 90)
        upsert_sender_rule(db, "ws1", "jane@acme.com", "customer_inquiry", True, "act_now", 100)

        assert match_sender_rule(db, "ws1", "Jane@Acme.com")["override_bucket"] == "act_now"
        assert match_sender_rule(db, "ws1", "bob@acme.com")["override_bucket"] == "auto_handled"

    def test_bare_domain_pattern(self, db):
        upsert_sender_rule(db, "ws1", "acme.com", "fyi_notification", False, "wait", 80)
        assert match_sender_rule(db, "ws1", "bob@acme.com")["sender_pattern"] == "acme.com"

    def test_inactive_and_other_workspace_ignored(self, db):
        upsert_sender_rule(db, "ws2", "@acme.com", "spam", False, "auto_handled", 90)
        rule_id = upsert_sender_rule(db, "ws1", "@acme.com", "spam", False, "auto_handled", 90)
        db.execute("UPDATE sender_rules SET is_active = 0 WHERE id = ?", (rule_id,))
        db.commit()
        assert match_sender_rule(db, "ws1", "bob@acme.com") is None

    def test_no_match(self, db):
        assert match_sender_rule(db, "ws1", "") is None
        assert match_sender_rule(db, "ws1", "someone@nowhere.org") is None

    def test_upsert_replaces_existing_rule(self, db):
        first = upsert_sender_rule(db, "ws1", "@Acme.com", "spam", False, "auto_handled", 60)
        second = upsert_sender_rule(db, "ws1", "@acme.com", "customer_inquiry", True, "act_now", 100)
        assert first == second
        rule = match_sender_rule(db, "ws1", "bob@acme.com")
        assert rule["default_classification"] == "customer_inquiry"
        assert rule["confidence_score"] == 100


class TestSuggestRule:
    @pytest.mark.parametrize("total,replied", [(3, 0), (5, 0), (10, 0), (20, 1), (50, 4)])
    def test_rarely_answered_domains_are_auto_handled(self, total, replied):
        s = suggest_rule("suppliers.example", total, replied)
        assert s.suggested_bucket == "auto_handled"
        assert s.requires_reply is False
        assert s.reply_rate < 10

    def test_auto_handled_confidence_grows_with_volume(self):
        assert suggest_rule("suppliers.example", 5, 0).confidence == 80
        assert suggest_rule("suppliers.example", 10, 0).confidence == 90
        assert suggest_rule("suppliers.example", 40, 0).confidence == 95

    def test_too_few_emails_are_not_auto_handled(self):
        s = suggest_rule("suppliers.example", 2, 0)
        assert s.suggested_bucket == "wait"
        assert s.requires_reply is False

    def test_low_reply_rate_waits(self):
        s = suggest_rule("council.example", 10, 2)
        assert s.suggested_bucket == "wait"
        assert s.suggested_classification == "fyi_notification"
        assert s.confidence == 75

    def test_always_answered_is_act_now(self):
        s = suggest_rule("bigclient.example", 10, 10)
        assert s.suggested_bucket == "act_now"
        assert s.requires_reply is True
        assert s.confidence == 90

    def test_mostly_answered_is_quick_win(self):
        s = suggest_rule("client.example", 20, 17)
        assert s.suggested_bucket == "quick_win"
        assert s.confidence == 77

    def test_middling_reply_rate_default(self):
        s = suggest_rule("client.example", 10, 5)
        assert (s.suggested_bucket, s.suggested_classification, s.confidence) == (
            "quick_win", "customer_inquiry", 50,
        )

    @pytest.mark.parametrize("domain", ["stripe.com", "paypal.co.uk", "gocardless.com", "mail.stripe.com"])
    @pytest.mark.parametrize("replied", [0, 5, 10])
    def test_payment_processors_are_receipts(self, domain, replied):
        s = suggest_rule(domain, 10, replied)
        assert s.suggested_bucket == "auto_handled"
        assert s.suggested_classification == "receipt_confirmation"
        assert s.requires_reply is False
        assert s.confidence == 95

    def test_job_boards(self):
        s = suggest_rule("uk.indeed.com", 10, 9)
        assert s.suggested_classification == "recruitment_hr"
        assert s.suggested_bucket == "auto_handled"

    def test_notification_senders(self):
        s = suggest_rule("notifications.trade-portal.com", 8, 8)
        assert s.suggested_classification == "automated_notification"
        assert s.confidence == 90

    def test_counts(self):
        s = suggest_rule("client.example", 8, 3)
        assert (s.total_emails, s.replied_count, s.ignored_count, s.reply_rate) == (8, 3, 5, 38)


class TestBootstrap:
    def _seed(self, db, domain, total, replied):
        for i in range(total):
            insert_conversation(db, f"{domain}-{i}", f"person{i}@{domain}", replied=i < replied)

    def test_bootstrap_creates_confident_rules(self, db, workspace):
        self._seed(db, "supplier.com", 10, 0)
        self._seed(db, "client.co.uk", 6, 6)
        self._seed(db, "newsco.com", 5, 0)
        self._seed(db, "rare.com", 2, 0)

        result = bootstrap_sender_rules(db, "ws1", min_email_count=5)

        assert result["total_domains_analyzed"] == 4
        assert result["total_suggestions"] == 3
        assert result["rules_created"] == 2
        assert [s["sender_domain"] for s in result["suggestions"]] == [
            "supplier.com", "client.co.uk", "newsco.com",
        ]

        supplier = match_sender_rule(db, "ws1", "billing@supplier.com")
        assert supplier["override_bucket"] == "auto_handled"
        assert supplier["default_requires_reply"] == 0
        assert supplier["auto_created"] == 1
        assert supplier["email_count"] == 10
        assert match_sender_rule(db, "ws1", "a@client.co.uk")["override_bucket"] == "act_now"
        # 80 confidence is below the auto-create bar
        assert match_sender_rule(db, "ws1", "a@newsco.com") is None

    def test_domains_with_rules_are_skipped(self, db, workspace):
        self._seed(db, "supplier.com", 10, 0)
        upsert_sender_rule(db, "ws1", "@supplier.com", "customer_inquiry", True, "act_now", 100)

        result = bootstrap_sender_rules(db, "ws1", min_email_count=5)

        assert result["total_suggestions"] == 0
        assert match_sender_rule(db, "ws1", "x@supplier.com")["override_bucket"] == "act_now"

    def test_ai_replies_do_not_count_as_owner_replies(self, db, workspace):
        self._seed(db, "supplier.com", 10, 0)
        conv = db.execute("SELECT id FROM conversations LIMIT 1").fetchone()["id"]
        db.execute(
            """INSERT INTO messages (conversation_id, external_id, direction, actor_type, body, created_at)
               VALUES (?, 'ai-1', 'outbound', 'ai', 'Auto reply', '2024-05-01T10:00:00+00:00')""",
            (conv,),
        )
        db.commit()

        result = bootstrap_sender_rules(db, "ws1", min_email_count=5)

        assert result["suggestions"][0]["replied_count"] == 0

    def test_max_suggestions_limits_output_not_creation(self, db, workspace):
        for n in range(3):
            self._seed(db, f"vendor{n}.com", 10, 0)

        result = bootstrap_sender_rules(db, "ws1", min_email_count=5, max_suggestions=1)

        assert len(result["suggestions"]) == 1
        assert result["total_suggestions"] == 3
        assert result["rules_created"] == 3
