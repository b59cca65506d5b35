"""Handler registry. Names double as the HTTP function paths."""

from __future__ import annotations

from inboxpilot.handlers.competitors import (
    competitor_dedupe_faqs,
    competitor_discover,
    competitor_extract_faqs,
    competitor_refine_faqs,
    competitor_scrape,
    start_competitor_research,
)
from inboxpilot.handlers.control import (
    cancel_job,
    competitor_research_watchdog,
    import_watchdog,
    pipeline_supervisor,
)
from inboxpilot.handlers.drafts import ai_draft, draft_verify, learn_from_edit
from inboxpilot.handlers.email_import import email_analyze, email_scan, start_email_import
from inboxpilot.handlers.fetch_bodies import email_fetch_bodies
from inboxpilot.handlers.import_fetch import import_fetch, start_import
from inboxpilot.handlers.triage import (
    bootstrap_sender_rules,
    email_classify,
    save_classification_correction,
)
from inboxpilot.handlers.voice import detect_style_drift, voice_learning

HANDLERS = {
    "start-email-import": start_email_import,
    "email-scan": email_scan,
    "email-analyze": email_analyze,
    "email-fetch-bodies": email_fetch_bodies,
    "email-classify": email_classify,
    "bootstrap-sender-rules": bootstrap_sender_rules,
    "voice-learning": voice_learning,
    "detect-style-drift": detect_style_drift,
    "save-classification-correction": save_classification_correction,
    "ai-draft": ai_draft,
    "draft-verify": draft_verify,
    "learn-from-edit": learn_from_edit,
    "start-import": start_import,
    "pipeline-worker-import": import_fetch,
    "start-competitor-research": start_competitor_research,
    "competitor-discover": competitor_discover,
    "competitor-scrape": competitor_scrape,
    "competitor-extract-faqs": competitor_extract_faqs,
    "competitor-dedupe-faqs": competitor_dedupe_faqs,
    "competitor-refine-faqs": competitor_refine_faqs,
    "cancel-job": cancel_job,
    "import-watchdog": import_watchdog,
    "competitor-research-watchdog": competitor_research_watchdog,
    "pipeline-supervisor": pipeline_supervisor,
}

# Entry points owners may call with a workspace token; the rest are chained
# phases and watchdogs that only the service token may trigger.
PUBLIC_HANDLERS = frozenset({
    "start-email-import",
    "email-classify",
    "bootstrap-sender-rules",
    "voice-learning",
    "detect-style-drift",
    "save-classification-correction",
    "ai-draft",
    "draft-verify",
    "learn-from-edit",
    "start-import",
    "start-competitor-research",
    "cancel-job",
})
