"""All prompt templates for triage, voice learning, reply drafts and FAQ research."""

CLASSIFY_SYSTEM = "You triage a small business inbox. Respond with valid JSON only."

CLASSIFY_BATCH_PROMPT = """Classify each email. Categories: {categories}.

Return ONLY a JSON array. Format: [{{"i":0,"c":"inquiry","r":true,"b":"quick_win","conf":80}}]
Where: i=index (number), c=category (string), r=requires_reply (boolean),
b=decision bucket (one of: act_now, quick_win, wait, auto_handled),
conf=confidence 0-100 (number)
{examples}
Important: Return valid JSON only, no markdown, no explanation.

EMAILS (format: index|from|subject|snippet):
{emails}"""

CORRECTION_EXAMPLES_HEADER = """
The owner corrected these earlier classifications; follow the same judgement:
{lines}
"""

VOICE_EXTRACTION_PROMPT = """You are a forensic linguist analyzing a business owner's email archive.
Your goal is to extract a profile of how they write.

Here are {pair_count} recent email exchanges:

<data>
{pairs}
</data>

Analyze these to produce a JSON object with this EXACT schema:

{{
  "voice_dna": {{
    "openers": [{{"phrase": "Hiya", "frequency": 0.6}}],
    "closers": [{{"phrase": "Cheers", "frequency": 0.5}}],
    "tics": ["uses & instead of and"],
    "tone_keywords": ["friendly", "direct"],
    "formatting_rules": ["Keeps responses under 100 words"],
    "avg_response_length": 85,
    "emoji_usage": "never"
  }},
  "playbook": [
    {{
      "category": "quote_request",
      "frequency": 0.35,
      "required_info": ["postcode"],
      "typical_structure": "Greeting -> Price -> Ask postcode -> Sign off",
      "golden_example": {{"customer": "...", "owner": "..."}}
    }}
  ],
  "summary": "2-3 sentences on how this person communicates"
}}

Extract REAL phrases from the data, don't invent generic ones.
golden_examples should be verbatim from the data.
Output ONLY valid JSON, nothing else."""

DRIFT_PROMPT = """You are a forensic linguist comparing a person's stored writing profile
against their recent emails to detect style drift.

STORED VOICE PROFILE:
{traits}

RECENT EMAILS ({sample_count} samples):
{samples}

Compare openers, closers, tone, sentence length, writing tics and emoji usage.

Return a JSON object:
{{
  "drift_score": 0.0-1.0,
  "traits_changed": [{{"trait": "openers", "old": "Hiya", "new": "Hey there", "severity": 0.4}}],
  "summary": "1-2 sentences on what changed"
}}

drift_score 0.0 = identical style, 1.0 = completely different person.
Be conservative: minor variation is normal. Output ONLY valid JSON."""

FAQ_EXTRACT_PROMPT = """Extract FAQs from this {industry} business website content.

WEBSITE: {business_name}
PAGE TYPE: {page_type}
URL: {url}

CONTENT:
{content}

Extract 5-15 question-answer pairs that would help someone considering this type of service.
Focus on: pricing, services offered, process, policies, guarantees, coverage area, booking.

Return ONLY a valid JSON array with no other text:
[{{"question": "What services do you offer?", "answer": "We offer...", "category": "services"}}]

Categories: services, pricing, process, policies, coverage, trust, booking, faq"""

FAQ_REFINE_PROMPT = """You are rewriting a FAQ to be specific to a business.

BUSINESS CONTEXT:
- Name: {business_name}
- Industry: {industry}
- Service Area: {service_area}
- Brand Voice: {tone}

ORIGINAL FAQ (from competitor "{source_business}"):
Q: {question}
A: {answer}

Score relevance to OUR business (0-10), rewrite the question and answer for us,
and match our brand voice.

Return ONLY valid JSON:
{{
  "relevance_score": 8,
  "rewritten_question": "...",
  "rewritten_answer": "...",
  "category": "services",
  "confidence": 90
}}"""

DRAFT_SYSTEM = "You write email replies on behalf of a small UK service business."

DRAFT_PROMPT = """Write an email reply for {business_name}, a {industry} business.

CUSTOMER:
- Email: {customer_email}
- Subject: {subject}
- Detected category: {category}

{voice}
{knowledge}{edits}
CONVERSATION HISTORY:
{history}

INSTRUCTIONS:
1. Reply to the customer's most recent message and address their specific question
2. Match the voice profile if one is given
3. Use the knowledge base only where it applies; never invent prices or policies
4. Do NOT include a subject line, just the email body
5. Do NOT use placeholder text like [Your Name]

Write the reply now:"""

DRAFT_VOICE_SECTION = """VOICE PROFILE (match this style):
- Tone: {tone}
- Greeting: {greeting}
- Sign-off: {signoff}
- Summary: {summary}"""

DRAFT_NO_VOICE = """VOICE PROFILE:
None learned yet. Be friendly, professional and concise."""

DRAFT_EDITS_SECTION = """
The owner rewrote earlier drafts for similar emails. Follow what they actually sent:
{examples}
"""

VERIFY_SYSTEM = "You check AI-drafted customer emails for accuracy. Respond with valid JSON only."

VERIFY_PROMPT = """Check this draft reply against the business knowledge base.

BUSINESS FACTS:
{facts}

KNOWLEDGE BASE:
{knowledge}

CUSTOMER MESSAGE:
{customer_message}

DRAFT REPLY:
{draft}

Look for: hallucination (claims not supported by the knowledge base), factual_error,
policy_violation, tone_mismatch, missing_info (customer questions left unanswered).

Return ONLY valid JSON:
{{
  "status": "passed" | "failed" | "needs_review",
  "issues": [{{"type": "hallucination", "severity": "critical" | "warning" | "info",
              "description": "...", "suggestion": "..."}}],
  "corrected_draft": "full corrected reply, or null when no change is needed",
  "confidence_score": 0.0-1.0,
  "notes": "one sentence"
}}

Use "failed" for any critical issue, "needs_review" for warnings only."""
