"""
leadscout.enrichment

One candidate in, one EnrichedLead out.

    seed        listing fields as a high-confidence source
    phase 1     website scrape | contact search | social search   (3 pages, concurrent)
    phase 2     generic search | facebook profile | instagram profile (same pages, concurrent)
    oracle      extract || cross_reference, then analyze, then qualify
    merge       EnrichedLead with provenance

Scrape sub-tasks are best-effort (a failure is just a missing source).
Cancellation is checked around every network call and before every oracle
call, and the candidate's pages are closed before any error propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, List, Optional, Protocol, Sequence, Tuple

from .cancellation import CancellationToken
from .errors import BrowserClosedError, JobCancelledError
from .models import Candidate, DataSource, EnrichedLead, JobContext
from .oracle import EnrichmentOracle
from .oracle.analyzer import BusinessAnalysis, BusinessProfile
from .oracle.cross_reference import CrossReference
from .oracle.extractor import Extraction
from .oracle.qualifier import Qualification, QualificationInput
from .scrape import contacts, pages
from .scrape.pages import SOURCE_CONFIDENCE, ScrapeResult

logger = logging.getLogger(__name__)


class PageFactory(Protocol):
    async def new_page(self) -> Any:
        ...


async def _noop() -> ScrapeResult:
    return None


async def gather_settled(*aws: Awaitable[Any]) -> List[Any]:
    """
    Run sub-tasks concurrently and collect every outcome (results or
    exceptions). Siblings are never aborted by one task's failure; each
    sub-task races the job token itself, so a cancel settles all of them
    as JobCancelledError.
    """
    return list(await asyncio.gather(*aws, return_exceptions=True))


def _raise_if_stopped(results: Sequence[Any], token: CancellationToken) -> None:
    for r in results:
        if isinstance(r, BrowserClosedError):
            raise r
    if token.is_cancelled or any(isinstance(r, JobCancelledError) for r in results):
        raise JobCancelledError(token.job_id)
    for r in results:
        if isinstance(r, BaseException):
            raise r


async def _close_pages(opened: Sequence[Any]) -> None:
    async def _close(p: Any) -> None:
        try:
            await p.close()
        except Exception as e:
            logger.debug("page close failed: %s", e)

    await asyncio.gather(*(_close(p) for p in opened))


class EnrichmentPipeline:
    def __init__(self, oracle: EnrichmentOracle):
        self.oracle = oracle

    async def _open_pages(self, browser: PageFactory, n: int, token: CancellationToken) -> List[Any]:
        results = await asyncio.gather(*(browser.new_page() for _ in range(n)), return_exceptions=True)
        opened = [r for r in results if not isinstance(r, BaseException)]
        failed = [r for r in results if isinstance(r, BaseException)]
        if failed or token.is_cancelled:
            await _close_pages(opened)
            token.throw_if_cancelled()
            raise failed[0]
        return opened

    async def collect(
        self,
        browser: PageFactory,
        candidate: Candidate,
        ctx: JobContext,
        token: CancellationToken,
    ) -> Tuple[List[DataSource], List[Tuple[str, str]], Optional[str]]:
        """Scrape phases. Returns (data_sources, text_sources, facebook_url)."""
        data_sources: List[DataSource] = [
            DataSource(
                "google_maps",
                SOURCE_CONFIDENCE["google_maps"],
                {
                    "name": candidate.name,
                    "phones": [candidate.phone] if candidate.phone else [],
                    "address": candidate.address,
                    "website": candidate.website,
                },
            )
        ]
        text_sources: List[Tuple[str, str]] = []

        def _keep(label: str, result: ScrapeResult) -> None:
            if not result:
                return
            src, text = result
            data_sources.append(src)
            if text:
                text_sources.append((label, text))

        token.throw_if_cancelled()
        website_page, search_page, social_page = await self._open_pages(browser, 3, token)
        try:
            token.throw_if_cancelled()

            first = await gather_settled(
                pages.scrape_website(website_page, candidate.website, candidate.name, token)
                if candidate.website
                else _noop(),
                pages.search_contacts(search_page, candidate.name, ctx.location, token),
                pages.search_social(social_page, candidate.name, ctx.location, token),
            )
            _raise_if_stopped(first, token)
            website_res, contact_res, social_res = first
            _keep("website", website_res)
            _keep("google_search", contact_res)
            _keep("social_search", social_res)

            search_text = "\n".join(r[1] for r in (contact_res, social_res) if r)
            facebook_url = contacts.find_facebook_url(search_text, candidate.name)
            site_instagram = website_res[0].data.get("socialMedia", {}).get("instagram") if website_res else None
            instagram_url = contacts.find_instagram_url(search_text, site_instagram)

            token.throw_if_cancelled()
            second = await gather_settled(
                pages.search_generic(social_page, candidate.name, ctx.location, token),
                pages.scrape_facebook(search_page, facebook_url, candidate.name, token) if facebook_url else _noop(),
                pages.scrape_instagram(website_page, instagram_url, candidate.name, token)
                if instagram_url
                else _noop(),
            )
            _raise_if_stopped(second, token)
            generic_res, fb_res, ig_res = second
            _keep("generic_search", generic_res)
            _keep("facebook", fb_res)
            # instagram bios are thin; keep the structured source only
            if ig_res:
                data_sources.append(ig_res[0])

            token.throw_if_cancelled()
        finally:
            await _close_pages([website_page, search_page, social_page])

        return data_sources, text_sources, facebook_url

    async def enrich(
        self,
        browser: PageFactory,
        candidate: Candidate,
        ctx: JobContext,
        token: CancellationToken,
    ) -> EnrichedLead:
        token.throw_if_cancelled()
        started = time.monotonic()
        logger.info("enriching %r (%s, %s)", candidate.name, ctx.category, ctx.location)

        data_sources, text_sources, facebook_url = await self.collect(browser, candidate, ctx, token)

        token.throw_if_cancelled()
        extracted, validation = await asyncio.gather(
            self.oracle.extract_all(text_sources, candidate.name, token),
            self.oracle.cross_reference(data_sources, candidate.name, token),
        )

        token.throw_if_cancelled()
        texts = dict(text_sources)
        profile = BusinessProfile(
            name=candidate.name,
            website=candidate.website,
            website_content=texts.get("website"),
            facebook_url=facebook_url,
            facebook_content=texts.get("facebook"),
            rating=candidate.rating,
            review_count=candidate.review_count,
            address=candidate.address,
            phone=candidate.phone,
            category=candidate.category or ctx.category,
            search_results=texts.get("google_search"),
        )
        analysis = await self.oracle.analyze(profile, token)

        token.throw_if_cancelled()
        phones = merge_phones(validation, extracted)
        emails = merge_emails(validation, extracted)
        qualification = await self.oracle.qualify(
            QualificationInput(
                business_name=candidate.name,
                industry=ctx.category,
                location=ctx.location,
                rating=candidate.rating,
                review_count=candidate.review_count,
                has_website=bool(candidate.website),
                website_url=candidate.website,
                website_quality_score=analysis.website_score,
                phones=phones,
                emails=emails,
                has_facebook=bool(facebook_url or validation.social.get("facebook")),
                has_instagram=bool(validation.social.get("instagram")),
                analysis=analysis,
            ),
            token,
        )
        token.throw_if_cancelled()

        lead = build_enriched_lead(
            candidate, ctx, validation, extracted, analysis, qualification, [s.source for s in data_sources]
        )
        logger.info(
            "enriched %r in %.1fs score=%d tier=%s phones=%d emails=%d",
            candidate.name,
            time.monotonic() - started,
            lead.lead_score,
            lead.tier,
            len(lead.phones),
            len(lead.emails),
        )
        return lead


def merge_phones(validation: CrossReference, extracted: Extraction) -> List[str]:
    out: List[str] = []
    for p in [v.value for v in validation.phones] + extracted.phones:
        if p not in out:
            out.append(p)
    return out


def merge_emails(validation: CrossReference, extracted: Extraction) -> List[str]:
    out: List[str] = []
    for e in [v.value for v in validation.emails] + extracted.emails:
        if e not in out:
            out.append(e)
    return out


def build_enriched_lead(
    candidate: Candidate,
    ctx: JobContext,
    validation: CrossReference,
    extracted: Extraction,
    analysis: BusinessAnalysis,
    qualification: Qualification,
    sources: List[str],
) -> EnrichedLead:
    phones = merge_phones(validation, extracted)
    emails = merge_emails(validation, extracted)

    field_sources = {"name": [validation.name_source]}
    if validation.address_source:
        field_sources["address"] = [validation.address_source]
    if validation.description_source:
        field_sources["description"] = [validation.description_source]
    for key, values in (("phones", validation.phones), ("emails", validation.emails)):
        srcs: List[str] = []
        for v in values:
            srcs.extend(s for s in v.sources if s not in srcs)
        if srcs:
            field_sources[key] = srcs

    services: List[str] = []
    for s in analysis.services + extracted.services + validation.services:
        if s not in services:
            services.append(s)

    hooks: List[str] = []
    for h in analysis.personalization_hooks + qualification.key_talking_points:
        if h not in hooks:
            hooks.append(h)

    def _social(name: str) -> Optional[str]:
        return validation.social.get(name) or extracted.social.get(name)

    return EnrichedLead(
        business_name=validation.name or candidate.name,
        industry=ctx.category,
        location=ctx.location,
        address=validation.address or candidate.address,
        maps_url=candidate.maps_url,
        website=candidate.website,
        website_quality_score=analysis.website_score,
        rating=candidate.rating,
        review_count=candidate.review_count,
        phones=phones,
        emails=emails,
        whatsapp_number=extracted.whatsapp_number or next((p for p in phones if p.startswith("+27")), None),
        facebook=_social("facebook"),
        instagram=_social("instagram"),
        twitter=_social("twitter"),
        linkedin=_social("linkedin"),
        description=analysis.description,
        services=services,
        target_market=analysis.target_market,
        unique_selling_points=analysis.unique_selling_points,
        lead_score=qualification.score,
        tier=qualification.tier,
        is_qualified=qualification.is_qualified,
        recommended_action=qualification.recommended_action,
        recommended_channel=qualification.recommended_channel,
        urgency=qualification.urgency,
        personalization_hooks=hooks,
        key_talking_points=qualification.key_talking_points,
        avoid_topics=qualification.avoid_topics,
        sources=sources,
        field_sources=field_sources,
        confidence=validation.confidence,
        reasoning=[r for r in (analysis.reasoning, qualification.reasoning) if r],
        warnings=validation.warnings,
    )
