"""Competitor research: discover sites, scrape them, mine FAQs, dedupe and refine.

Phases run in order ``discovering -> scraping -> extracting -> deduplicating
-> refining -> completed``; each handler works one batch and either
re-dispatches itself or hands over to the next phase.
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import uuid
from urllib.parse import urlparse

import httpx

from inboxpilot.ai.base import is_unparsed
from inboxpilot.ai.prompts import FAQ_EXTRACT_PROMPT, FAQ_REFINE_PROMPT
from inboxpilot.database import utcnow
from inboxpilot.errors import (
    TRANSIENT_ERRORS,
    AuthError,
    HttpError,
    MalformedResponseError,
    RateLimitError,
)
from inboxpilot.handlers.base import (
    HandlerContext,
    cancelled,
    continue_later,
    job_phase,
    past_phase,
    require,
)
from inboxpilot.jobs.state import (
    advance_status,
    cancel_active_jobs,
    fail_job,
    heartbeat,
    load_active_job,
)

logger = logging.getLogger(__name__)

PRIORITY_PATHS = ("/faq", "/services", "/pricing", "/about", "/contact", "/price")
MIN_PAGE_CHARS = 100
MIN_QUESTION_CHARS = 10
MIN_ANSWER_CHARS = 20
MIN_RELEVANCE = 3
MAX_CONTENT_CHARS = 8000


def _job_payload(job: sqlite3.Row, **extra) -> dict:
    return {"job_id": job["id"], "workspace_id": job["workspace_id"], **extra}


def site_domain(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def is_blocked(domain: str, blocked: list[str]) -> bool:
    return any(domain == b or domain.endswith("." + b) for b in blocked)


def page_type(url: str, site_url: str) -> str:
    lower = url.lower()
    if lower.rstrip("/") == site_url.lower().rstrip("/"):
        return "homepage"
    for needle, kind in (("faq", "faq"), ("service", "services"), ("pric", "pricing"),
                         ("about", "about"), ("contact", "contact")):
        if needle in lower:
            return kind
    return "other"


def prioritise_urls(site_url: str, urls: list[str], limit: int) -> list[str]:
    """Homepage first, then FAQ/services/pricing-like pages, then the rest."""
    ordered = sorted(
        (u for u in urls if u),
        key=lambda u: 0 if any(p in u.lower() for p in PRIORITY_PATHS) else 1,
    )
    seen: list[str] = []
    for url in [site_url, *ordered]:
        if url not in seen:
            seen.append(url)
    return seen[:limit]


def cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def business_context(conn: sqlite3.Connection, job: sqlite3.Row) -> dict:
    ws = conn.execute("SELECT * FROM workspaces WHERE id = ?", (job["workspace_id"],)).fetchone()
    return {
        "business_name": (ws["name"] if ws else None) or "our business",
        "industry": (ws["industry"] if ws else None) or job["niche_query"],
        "service_area": (ws["service_area"] if ws else None) or job["service_area"] or "",
        "tone": (ws["tone_description"] if ws else None) or "friendly and professional",
    }


def start_competitor_research(ctx: HandlerContext, payload: dict) -> dict:
    require(payload, "workspace_id", "niche_query")
    conn = ctx.conn
    workspace_id = payload["workspace_id"]
    superseded = cancel_active_jobs(conn, "research", workspace_id)
    job_id = uuid.uuid4().hex
    now = utcnow()
    target = int(payload.get("target_count") or ctx.config.competitors.discover_target_count)
    conn.execute(
        """INSERT INTO competitor_research_jobs
           (id, workspace_id, niche_query, service_area, target_count, status,
            heartbeat_at, started_at, created_at)
           VALUES (?, ?, ?, ?, ?, 'queued', ?, ?, ?)""",
        (job_id, workspace_id, payload["niche_query"], payload.get("service_area"),
         max(1, target), now, now, now),
    )
    conn.commit()
    ctx.dispatch("competitor-discover", {"job_id": job_id, "workspace_id": workspace_id})
    return {"success": True, "job_id": job_id, "cancelled_jobs": superseded}


@job_phase("research", "competitor-discover")
def competitor_discover(ctx: HandlerContext, payload: dict) -> dict:
    require(payload, "job_id")
    conn = ctx.conn
    job = load_active_job(conn, "research", payload["job_id"])
    if job is None:
        return cancelled()
    if past_phase("research", job, "discovering"):
        return {"success": True, "skipped": True, "status": job["status"]}
    if not advance_status(conn, "research", job["id"], "discovering"):
        return cancelled("superseded")

    query = " ".join(p for p in (job["niche_query"], job["service_area"]) if p)
    target = job["target_count"]
    scraper = ctx.scraper()
    try:
        results = scraper.search(query, limit=min(100, target * 2))
    finally:
        scraper.close()

    blocked = ctx.config.competitors.blocked_domains
    sites: dict[str, dict] = {}
    for result in results:
        url = result.get("url") or ""
        domain = site_domain(url)
        if not domain or is_blocked(domain, blocked) or domain in sites:
            continue
        sites[domain] = {"url": f"https://{urlparse(url).netloc}", "title": result.get("title")}
        if len(sites) >= target:
            break

    if not sites:
        fail_job(conn, "research", job["id"], "No competitor sites found")
        return {"success": False, "error": "No competitor sites found"}

    conn.executemany(
        """INSERT INTO competitor_sites
           (workspace_id, job_id, url, domain, business_name, discovery_source, scrape_status)
           VALUES (?, ?, ?, ?, ?, 'search', 'pending')
           ON CONFLICT(workspace_id, url) DO UPDATE SET
               job_id = excluded.job_id, scrape_status = 'pending', scrape_error = NULL""",
        [(job["workspace_id"], job["id"], s["url"], domain, s["title"] or domain)
         for domain, s in sites.items()],
    )
    conn.commit()

    if not advance_status(conn, "research", job["id"], "scraping",
                          sites_discovered=len(sites), sites_approved=len(sites)):
        return cancelled("superseded")
    ctx.dispatch("competitor-scrape", _job_payload(job))
    return {"success": True, "sites_discovered": len(sites)}


def _scrape_site(ctx: HandlerContext, scraper, job: sqlite3.Row, site: sqlite3.Row) -> int:
    """Scrape one site's priority pages. Returns pages stored."""
    sc = ctx.config.scraper
    conn = ctx.conn
    try:
        mapped = scraper.map_site(site["url"], limit=sc.map_limit)
    except (HttpError, httpx.HTTPError) as e:
        if isinstance(e, (*TRANSIENT_ERRORS, AuthError)):
            raise
        logger.info("site map failed, using homepage only: %s", e, extra={"job_id": job["id"]})
        mapped = []
    urls = prioritise_urls(site["url"], mapped, sc.max_pages_per_site)

    stored = 0
    for url in urls:
        try:
            page = scraper.scrape_page(url)
        except (HttpError, httpx.HTTPError) as e:
            if isinstance(e, (*TRANSIENT_ERRORS, AuthError)):
                raise
            logger.info("page scrape failed: %s", e, extra={"job_id": job["id"]})
            continue
        content = page["markdown"] or ""
        if len(content) < MIN_PAGE_CHARS:
            continue
        conn.execute(
            """INSERT INTO competitor_pages
               (workspace_id, job_id, site_id, url, page_type, title, content, word_count)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(workspace_id, url) DO UPDATE SET
                   job_id = excluded.job_id, site_id = excluded.site_id,
                   content = excluded.content, title = excluded.title,
                   word_count = excluded.word_count, faqs_extracted = FALSE, faq_count = 0""",
            (job["workspace_id"], job["id"], site["id"], url, page_type(url, site["url"]),
             page["title"], content, len(content.split())),
        )
        conn.commit()
        stored += 1
        ctx.sleep(sc.page_delay_seconds)

    conn.execute(
        """UPDATE competitor_sites
           SET scrape_status = 'scraped', pages_found = ?, pages_scraped = ?,
               has_faq_page = ?, has_pricing_page = ?, scraped_at = ?
           WHERE id = ?""",
        (len(mapped), stored,
         any("faq" in u.lower() for u in mapped), any("pric" in u.lower() for u in mapped),
         utcnow(), site["id"]),
    )
    conn.commit()
    return stored


@job_phase("research", "competitor-scrape")
def competitor_scrape(ctx: HandlerContext, payload: dict) -> dict:
    require(payload, "job_id")
    conn = ctx.conn
    job = load_active_job(conn, "research", payload["job_id"])
    if job is None:
        return cancelled()
    if past_phase("research", job, "scraping"):
        return {"success": True, "skipped": True, "status": job["status"]}
    if not advance_status(conn, "research", job["id"], "scraping"):
        return cancelled("superseded")

    sites = conn.execute(
        """SELECT * FROM competitor_sites
           WHERE job_id = ? AND scrape_status IN ('pending', 'scraping')
           ORDER BY id LIMIT ?""",
        (job["id"], ctx.config.competitors.scrape_batch_size),
    ).fetchall()

    retry_in = 0
    progressed = 0
    scraper = ctx.scraper()
    try:
        for site in sites:
            if not ctx.time_left():
                break
            heartbeat(conn, "research", job["id"], current_scraping_domain=site["domain"])
            conn.execute("UPDATE competitor_sites SET scrape_status = 'scraping' WHERE id = ?", (site["id"],))
            conn.commit()
            try:
                _scrape_site(ctx, scraper, job, site)
                progressed += 1
            except TRANSIENT_ERRORS as e:
                conn.execute("UPDATE competitor_sites SET scrape_status = 'pending' WHERE id = ?", (site["id"],))
                conn.commit()
                retry_in = e.retry_after_seconds if isinstance(e, RateLimitError) else 30
                logger.warning("scraper rate limited: %s", e, extra={"job_id": job["id"]})
                break
            except AuthError:
                raise
            except (HttpError, httpx.HTTPError) as e:
                conn.execute(
                    "UPDATE competitor_sites SET scrape_status = 'failed', scrape_error = ? WHERE id = ?",
                    (str(e)[:500], site["id"]),
                )
                conn.commit()
                progressed += 1
    finally:
        scraper.close()

    stats = conn.execute(
        """SELECT SUM(scrape_status = 'scraped') AS scraped,
                  SUM(scrape_status IN ('pending', 'scraping')) AS remaining
           FROM competitor_sites WHERE job_id = ?""",
        (job["id"],),
    ).fetchone()
    pages = conn.execute(
        "SELECT COUNT(*) AS cnt FROM competitor_pages WHERE job_id = ?", (job["id"],)
    ).fetchone()["cnt"]
    heartbeat(conn, "research", job["id"], sites_scraped=stats["scraped"] or 0, pages_scraped=pages)

    if stats["remaining"]:
        continue_later(
            ctx, "competitor-scrape", {**payload, **_job_payload(job)},
            delay_seconds=retry_in, stalled=bool(retry_in) and progressed == 0,
        )
        return {"success": True, "continuing": True, "sites_scraped": stats["scraped"] or 0,
                "pages_scraped": pages}

    if not advance_status(conn, "research", job["id"], "extracting", current_scraping_domain=None):
        return cancelled("superseded")
    ctx.dispatch("competitor-extract-faqs", _job_payload(job))
    return {"success": True, "continuing": False, "sites_scraped": stats["scraped"] or 0,
            "pages_scraped": pages}


def _faq_items(result) -> list | None:
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and not is_unparsed(result):
        for key in ("faqs", "items", "data"):
            if isinstance(result.get(key), list):
                return result[key]
    return None


@job_phase("research", "competitor-extract-faqs")
def competitor_extract_faqs(ctx: HandlerContext, payload: dict) -> dict:
    require(payload, "job_id")
    conn = ctx.conn
    job = load_active_job(conn, "research", payload["job_id"])
    if job is None:
        return cancelled()
    if past_phase("research", job, "extracting"):
        return {"success": True, "skipped": True, "status": job["status"]}
    if not advance_status(conn, "research", job["id"], "extracting"):
        return cancelled("superseded")

    pages = conn.execute(
        """SELECT p.*, s.business_name FROM competitor_pages p
           LEFT JOIN competitor_sites s ON s.id = p.site_id
           WHERE p.job_id = ? AND p.faqs_extracted = 0
           ORDER BY p.id LIMIT ?""",
        (job["id"], ctx.config.competitors.extract_batch_size),
    ).fetchall()

    industry = business_context(conn, job)["industry"]
    provider, model = ctx.ai()
    for page in pages:
        if not ctx.time_left():
            break
        prompt = FAQ_EXTRACT_PROMPT.format(
            industry=industry,
            business_name=page["business_name"] or site_domain(page["url"]),
            page_type=page["page_type"] or "other",
            url=page["url"],
            content=(page["content"] or "")[:MAX_CONTENT_CHARS],
        )
        items = _faq_items(provider.complete(prompt, model, response_format="json", temperature=0.2))
        if items is None:
            logger.info("no parseable FAQs on page", extra={"job_id": job["id"]})
            items = []

        faqs = []
        for item in items:
            if not isinstance(item, dict):
                continue
            question = str(item.get("question") or "").strip()
            answer = str(item.get("answer") or "").strip()
            if len(question) < MIN_QUESTION_CHARS or len(answer) < MIN_ANSWER_CHARS:
                continue
            faqs.append((job["workspace_id"], job["id"], page["site_id"], page["id"], question,
                         answer, item.get("category"), page["url"], page["business_name"]))
        conn.executemany(
            """INSERT INTO competitor_faqs_raw
               (workspace_id, job_id, site_id, page_id, question, answer, category,
                source_url, source_business)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            faqs,
        )
        conn.execute(
            "UPDATE competitor_pages SET faqs_extracted = TRUE, faq_count = ? WHERE id = ?",
            (len(faqs), page["id"]),
        )
        conn.commit()

    extracted = conn.execute(
        "SELECT COUNT(*) AS cnt FROM competitor_faqs_raw WHERE job_id = ?", (job["id"],)
    ).fetchone()["cnt"]
    remaining = conn.execute(
        "SELECT COUNT(*) AS cnt FROM competitor_pages WHERE job_id = ? AND faqs_extracted = 0",
        (job["id"],),
    ).fetchone()["cnt"]
    heartbeat(conn, "research", job["id"], faqs_extracted=extracted)

    if remaining:
        ctx.dispatch("competitor-extract-faqs", _job_payload(job, resume=True))
        return {"success": True, "continuing": True, "faqs_extracted": extracted}

    if not advance_status(conn, "research", job["id"], "deduplicating"):
        return cancelled("superseded")
    ctx.dispatch("competitor-dedupe-faqs", _job_payload(job))
    return {"success": True, "continuing": False, "faqs_extracted": extracted}


@job_phase("research", "competitor-dedupe-faqs")
def competitor_dedupe_faqs(ctx: HandlerContext, payload: dict) -> dict:
    """Embed questions in batches, then mark near-duplicates keeping the earliest."""
    require(payload, "job_id")
    conn = ctx.conn
    job = load_active_job(conn, "research", payload["job_id"])
    if job is None:
        return cancelled()
    if past_phase("research", job, "deduplicating"):
        return {"success": True, "skipped": True, "status": job["status"]}
    if not advance_status(conn, "research", job["id"], "deduplicating"):
        return cancelled("superseded")

    cc = ctx.config.competitors
    pending = conn.execute(
        """SELECT id, question FROM competitor_faqs_raw
           WHERE job_id = ? AND embedding IS NULL ORDER BY id LIMIT ?""",
        (job["id"], cc.embed_batch_size),
    ).fetchall()
    if pending:
        provider, _ = ctx.ai()
        vectors = provider.embed([row["question"] for row in pending])
        if len(vectors) != len(pending):
            raise MalformedResponseError(
                f"Expected {len(pending)} embeddings, got {len(vectors)}"
            )
        conn.executemany(
            "UPDATE competitor_faqs_raw SET embedding = ? WHERE id = ?",
            [(json.dumps(vec), row["id"]) for row, vec in zip(pending, vectors)],
        )
        conn.commit()
        heartbeat(conn, "research", job["id"])
        ctx.dispatch("competitor-dedupe-faqs", _job_payload(job, resume=True))
        return {"success": True, "continuing": True, "embedded": len(pending)}

    rows = conn.execute(
        "SELECT id, embedding FROM competitor_faqs_raw WHERE job_id = ? ORDER BY id",
        (job["id"],),
    ).fetchall()
    kept: list[tuple[int, list[float]]] = []
    duplicates = []
    for row in rows:
        vec = json.loads(row["embedding"])
        match = next(
            (kid for kid, kvec in kept if cosine(vec, kvec) >= cc.similarity_threshold), None,
        )
        if match is None:
            kept.append((row["id"], vec))
        else:
            duplicates.append((match, row["id"]))

    conn.execute(
        "UPDATE competitor_faqs_raw SET is_duplicate = FALSE, duplicate_of = NULL WHERE job_id = ?",
        (job["id"],),
    )
    conn.executemany(
        "UPDATE competitor_faqs_raw SET is_duplicate = TRUE, duplicate_of = ? WHERE id = ?",
        duplicates,
    )
    conn.commit()

    if not advance_status(conn, "research", job["id"], "refining", faqs_after_dedup=len(kept)):
        return cancelled("superseded")
    ctx.dispatch("competitor-refine-faqs", _job_payload(job))
    return {"success": True, "continuing": False, "faqs_after_dedup": len(kept),
            "duplicates": len(duplicates)}


def _as_int(value, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


@job_phase("research", "competitor-refine-faqs")
def competitor_refine_faqs(ctx: HandlerContext, payload: dict) -> dict:
    """Rewrite unique competitor FAQs for this business and add the relevant ones."""
    require(payload, "job_id")
    conn = ctx.conn
    job = load_active_job(conn, "research", payload["job_id"])
    if job is None:
        return cancelled()
    if past_phase("research", job, "refining"):
        return {"success": True, "skipped": True, "status": job["status"]}
    if not advance_status(conn, "research", job["id"], "refining"):
        return cancelled("superseded")

    business = business_context(conn, job)
    faqs = conn.execute(
        """SELECT * FROM competitor_faqs_raw
           WHERE job_id = ? AND is_duplicate = 0 AND is_refined = 0
           ORDER BY id LIMIT ?""",
        (job["id"], ctx.config.competitors.refine_batch_size),
    ).fetchall()

    provider, model = ctx.ai()
    added = skipped = 0
    for faq in faqs:
        if not ctx.time_left():
            break
        result = provider.complete(
            FAQ_REFINE_PROMPT.format(
                **business,
                source_business=faq["source_business"] or "a competitor",
                question=faq["question"],
                answer=faq["answer"],
            ),
            model,
            response_format="json",
            temperature=0.3,
        )
        faq_id = None
        relevance = _as_int(result.get("relevance_score")) if isinstance(result, dict) else 0
        question = answer = ""
        if isinstance(result, dict) and not is_unparsed(result):
            question = str(result.get("rewritten_question") or "").strip()
            answer = str(result.get("rewritten_answer") or "").strip()

        if relevance >= MIN_RELEVANCE and question and answer:
            conn.execute(
                """INSERT INTO faq_database
                   (workspace_id, question, answer, category, priority, confidence,
                    relevance_score, source, source_url, source_business,
                    original_faq_id, created_at)
                   VALUES (?, ?, ?, ?, 5, ?, ?, 'competitor_research', ?, ?, ?, ?)
                   ON CONFLICT(workspace_id, original_faq_id) DO NOTHING""",
                (job["workspace_id"], question, answer,
                 result.get("category") or faq["category"],
                 _as_int(result.get("confidence")), relevance,
                 faq["source_url"], faq["source_business"], faq["id"], utcnow()),
            )
            faq_id = conn.execute(
                "SELECT id FROM faq_database WHERE workspace_id = ? AND original_faq_id = ?",
                (job["workspace_id"], faq["id"]),
            ).fetchone()["id"]
            added += 1
        else:
            skipped += 1
        conn.execute(
            "UPDATE competitor_faqs_raw SET is_refined = TRUE, refined_faq_id = ? WHERE id = ?",
            (faq_id, faq["id"]),
        )
        conn.commit()

    totals = conn.execute(
        """SELECT SUM(is_refined = 1) AS refined, SUM(refined_faq_id IS NOT NULL) AS added,
                  SUM(is_refined = 0) AS remaining
           FROM competitor_faqs_raw WHERE job_id = ? AND is_duplicate = 0""",
        (job["id"],),
    ).fetchone()
    counts = {"faqs_refined": totals["refined"] or 0, "faqs_added": totals["added"] or 0}

    if totals["remaining"]:
        heartbeat(conn, "research", job["id"], **counts)
        ctx.dispatch("competitor-refine-faqs", _job_payload(job, resume=True))
        return {"success": True, "continuing": True, "added": added, "skipped": skipped, **counts}

    if not advance_status(conn, "research", job["id"], "completed", completed_at=utcnow(), **counts):
        return cancelled("superseded")
    logger.info("competitor research completed", extra={"job_id": job["id"], **counts})
    return {"success": True, "continuing": False, "added": added, "skipped": skipped, **counts}
