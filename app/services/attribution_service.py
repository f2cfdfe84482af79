"""Attribution of a paying contact to the ad that produced it.

Strategies run in order and the first match wins. An ad record only counts
when it carries both an ad_id and a campaign_id. Finding nothing is a
normal outcome, not an error.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import parse_qs, unquote, urljoin, urlparse
from uuid import UUID

import httpx
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import AdRecord, Lead
from app.services.pipeline_types import AttributionMatch

logger = get_logger("attribution_service")

SHORT_LINK_HOSTS = {"fb.me", "l.facebook.com", "l.instagram.com"}
MAX_REDIRECT_HOPS = 5
POST_ID_PREFIX_LENGTH = 10
CORRELATION_PREFIX_LENGTH = 12
MIN_SHORT_CODE_LENGTH = 5
USER_AGENT = "Mozilla/5.0"

_POSTS_PATH_RE = re.compile(r"/(\d+)/posts/(\d+)")
_SHORTCODE_PATH_RE = re.compile(r"/(?:p|reel)/([A-Za-z0-9_-]+)")
_URL_PREFIX_RE = re.compile(r"^https?://(www\.)?", re.IGNORECASE)


@dataclass
class AttributionContext:
    db: Session
    tenant_id: UUID
    phone: str
    source_url: Optional[str] = None
    ctwa_clid: Optional[str] = None
    timeout_seconds: float = 10.0
    expanded_urls: Optional[list[str]] = field(default=None, repr=False)


def is_short_link(url: Optional[str]) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host in SHORT_LINK_HOSTS:
        return True
    return host.endswith("instagram.com") and parsed.path.startswith("/p/")


def clean_url(url: str) -> str:
    """Strip scheme, ``www.`` and query string for containment matching."""
    return _URL_PREFIX_RE.sub("", url.strip()).split("?")[0].rstrip("/")


def extract_post_ids(url: Optional[str]) -> list[str]:
    if not url:
        return []
    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    ids: list[str] = []

    for story_fbid in params.get("story_fbid", []):
        ids.append(story_fbid)
    for post_id in params.get("post_id", []):
        parts = post_id.split("_")
        if len(parts) == 2:
            ids.append(parts[1])
        ids.append(post_id)

    posts_match = _POSTS_PATH_RE.search(parsed.path)
    if posts_match:
        ids.append(posts_match.group(2))
    shortcode_match = _SHORTCODE_PATH_RE.search(parsed.path)
    if shortcode_match:
        ids.append(shortcode_match.group(1))

    return list(dict.fromkeys(i for i in ids if i))


def extract_short_code(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parsed = urlparse(url)
    shortcode_match = _SHORTCODE_PATH_RE.search(parsed.path)
    if shortcode_match:
        return shortcode_match.group(1)
    segments = [segment for segment in parsed.path.split("/") if segment]
    if not segments:
        return None
    code = segments[-1]
    if len(code) < MIN_SHORT_CODE_LENGTH or not re.fullmatch(r"[A-Za-z0-9_-]+", code):
        return None
    return code


def derive_canonical_candidates(url: str) -> list[str]:
    """Offline guesses of the canonical URL behind a short link."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    candidates = []
    if host in {"l.facebook.com", "l.instagram.com"}:
        for target in parse_qs(parsed.query).get("u", []):
            candidates.append(unquote(target))
    if host == "fb.me":
        code = parsed.path.strip("/")
        if code:
            candidates.append(f"https://www.facebook.com/{code}")
            candidates.append(f"https://m.facebook.com/{code}")
    return candidates


def expand_short_link(url: str, *, timeout_seconds: float = 10.0, max_hops: int = MAX_REDIRECT_HOPS) -> list[str]:
    """Return URLs the short link leads to, in discovery order (original excluded).

    HEAD with manual redirect handling first, GET with redirect following as
    the fallback, and offline derivations last.
    """
    found: list[str] = []
    headers = {"User-Agent": USER_AGENT}

    try:
        with httpx.Client(timeout=timeout_seconds, follow_redirects=False, headers=headers) as client:
            current = url
            for _ in range(max_hops):
                response = client.head(current)
                location = response.headers.get("location")
                if not response.is_redirect or not location:
                    break
                current = urljoin(current, location)
                found.append(current)

            if not found:
                response = client.get(url, follow_redirects=True)
                final_url = str(response.url)
                if final_url and final_url != url:
                    found.append(final_url)
    except httpx.HTTPError as exc:
        logger.warning("Short link expansion failed", extra={"context": {"url": url, "error": str(exc)}})

    for candidate in derive_canonical_candidates(url):
        if candidate not in found:
            found.append(candidate)
    return found


def _match_from_ad(ad: Optional[AdRecord], strategy: str) -> Optional[AttributionMatch]:
    if ad is None or not ad.ad_id or not ad.campaign_id:
        return None
    return AttributionMatch(
        ad_id=ad.ad_id,
        adset_id=ad.adset_id,
        campaign_id=ad.campaign_id,
        ad_account_id=ad.ad_account_id,
        strategy=strategy,
        name=ad.name,
    )


def _find_ad(ctx: AttributionContext, *conditions) -> Optional[AdRecord]:
    return (
        ctx.db.query(AdRecord)
        .filter(
            AdRecord.tenant_id == ctx.tenant_id,
            AdRecord.ad_id.isnot(None),
            AdRecord.campaign_id.isnot(None),
            *conditions,
        )
        .first()
    )


def _find_by_post_id(ctx: AttributionContext, post_id: str) -> Optional[AdRecord]:
    return _find_ad(
        ctx,
        or_(
            AdRecord.effective_object_story_id.icontains(post_id, autoescape=True),
            AdRecord.ad_post_url.icontains(post_id, autoescape=True),
        ),
    )


def _find_by_clean_url(ctx: AttributionContext, url: str) -> Optional[AdRecord]:
    cleaned = clean_url(url)
    if not cleaned:
        return None
    return _find_ad(ctx, AdRecord.ad_post_url.icontains(cleaned, autoescape=True))


def match_expanded_short_link(ctx: AttributionContext) -> Optional[AttributionMatch]:
    if not is_short_link(ctx.source_url):
        return None
    if ctx.expanded_urls is None:
        ctx.expanded_urls = expand_short_link(ctx.source_url, timeout_seconds=ctx.timeout_seconds)
    for url in ctx.expanded_urls:
        for post_id in extract_post_ids(url):
            match = _match_from_ad(_find_by_post_id(ctx, post_id), "short_link_expansion")
            if match:
                return match
        match = _match_from_ad(_find_by_clean_url(ctx, url), "short_link_expansion")
        if match:
            return match
    return None


def match_post_identifier(ctx: AttributionContext) -> Optional[AttributionMatch]:
    for post_id in extract_post_ids(ctx.source_url):
        match = _match_from_ad(_find_by_post_id(ctx, post_id), "post_identifier")
        if match:
            return match
    return None


def match_normalized_url(ctx: AttributionContext) -> Optional[AttributionMatch]:
    if not ctx.source_url:
        return None
    return _match_from_ad(_find_by_clean_url(ctx, ctx.source_url), "normalized_url")


def match_post_id_prefix(ctx: AttributionContext) -> Optional[AttributionMatch]:
    urls = [ctx.source_url] + (ctx.expanded_urls or [])
    for url in urls:
        for post_id in extract_post_ids(url):
            if len(post_id) < POST_ID_PREFIX_LENGTH or not post_id.isdigit():
                continue
            prefix = post_id[:POST_ID_PREFIX_LENGTH]
            ad = _find_ad(ctx, AdRecord.effective_object_story_id.icontains(prefix, autoescape=True))
            match = _match_from_ad(ad, "post_id_prefix")
            if match:
                return match
    return None


def match_short_code(ctx: AttributionContext) -> Optional[AttributionMatch]:
    code = extract_short_code(ctx.source_url)
    if not code:
        return None
    ad = _find_ad(ctx, AdRecord.ad_post_url.icontains(code, autoescape=True))
    return _match_from_ad(ad, "short_code")


def match_correlation_prefix(ctx: AttributionContext) -> Optional[AttributionMatch]:
    """Borrow the campaign of another lead whose click id shares a prefix."""
    if not ctx.ctwa_clid or len(ctx.ctwa_clid) < CORRELATION_PREFIX_LENGTH:
        return None
    prefix = ctx.ctwa_clid[:CORRELATION_PREFIX_LENGTH]
    lead = (
        ctx.db.query(Lead)
        .filter(
            Lead.tenant_id == ctx.tenant_id,
            Lead.phone != ctx.phone,
            Lead.ctwa_clid.startswith(prefix, autoescape=True),
            Lead.campaign_id.isnot(None),
        )
        .order_by(Lead.updated_at.desc())
        .first()
    )
    if lead is None:
        return None
    return AttributionMatch(
        ad_id=lead.ad_id,
        adset_id=lead.adset_id,
        campaign_id=lead.campaign_id,
        ad_account_id=lead.ad_account_id,
        strategy="correlation_prefix",
    )


ATTRIBUTION_STRATEGIES: list[Callable[[AttributionContext], Optional[AttributionMatch]]] = [
    match_expanded_short_link,
    match_post_identifier,
    match_normalized_url,
    match_post_id_prefix,
    match_short_code,
    match_correlation_prefix,
]


def resolve_attribution(
    db: Session,
    *,
    tenant_id: UUID,
    phone: str,
    source_url: Optional[str],
    ctwa_clid: Optional[str],
    timeout_seconds: Optional[float] = None,
) -> AttributionMatch:
    ctx = AttributionContext(
        db=db,
        tenant_id=tenant_id,
        phone=phone,
        source_url=(source_url or "").strip() or None,
        ctwa_clid=(ctwa_clid or "").strip() or None,
        timeout_seconds=timeout_seconds if timeout_seconds is not None else settings.http_timeout_seconds,
    )
    if not ctx.source_url and not ctx.ctwa_clid:
        return AttributionMatch()

    for strategy in ATTRIBUTION_STRATEGIES:
        match = strategy(ctx)
        if match is not None:
            logger.info(
                "Attribution matched",
                extra={
                    "context": {
                        "tenant_id": str(tenant_id),
                        "phone": phone,
                        "strategy": match.strategy,
                        "campaign_id": match.campaign_id,
                    }
                },
            )
            return match

    logger.info(
        "No attribution match",
        extra={"context": {"tenant_id": str(tenant_id), "phone": phone, "source_url": ctx.source_url}},
    )
    return AttributionMatch()
