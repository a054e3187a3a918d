"""
leadscout.oracle

The Enrichment Oracle: four LLM-backed operations, each paired with a
deterministic fallback.

    extract          raw text            -> Extraction
    cross_reference  typed DataSources   -> CrossReference
    analyze          BusinessProfile     -> BusinessAnalysis
    qualify          QualificationInput  -> Qualification

Every operation returns a value. Transport errors and malformed JSON are
logged and replaced by the fallback; JobCancelledError always propagates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Tuple

from ..cancellation import CancellationToken
from ..errors import OracleError
from ..models import DataSource
from . import analyzer, cross_reference, extractor, qualifier
from .analyzer import BusinessAnalysis, BusinessProfile
from .cross_reference import CrossReference
from .extractor import Extraction
from .gateway import OracleGateway
from .qualifier import Qualification, QualificationInput

logger = logging.getLogger(__name__)

MIN_EXTRACT_TEXT = 10


class EnrichmentOracle:
    def __init__(self, gateway: Optional[OracleGateway] = None):
        self.gateway = gateway or OracleGateway()

    async def extract(
        self,
        text: str,
        business_name: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Extraction:
        if not text or len(text.strip()) < MIN_EXTRACT_TEXT:
            return Extraction()
        try:
            raw = await self.gateway.complete_json(
                system=extractor.SYSTEM_PROMPT,
                prompt=extractor.build_prompt(text, business_name),
                context_type="extract",
                token=token,
                temperature=0.2,
            )
            return extractor.parse_extraction(raw)
        except OracleError as e:
            logger.warning("extract fell back to regex for %r: %s", business_name, e)
            return extractor.fallback_extraction(text)

    async def extract_all(
        self,
        texts: List[Tuple[str, str]],
        business_name: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Extraction:
        """Extract each (source, text) concurrently and merge."""
        results = await asyncio.gather(*(self.extract(t, business_name, token) for _, t in texts))
        return extractor.merge_extractions(list(results))

    async def cross_reference(
        self,
        sources: List[DataSource],
        business_name: str,
        token: Optional[CancellationToken] = None,
    ) -> CrossReference:
        if not sources:
            return cross_reference.empty_result(business_name)
        if len(sources) == 1:
            return cross_reference.single_source_result(sources[0], business_name)
        try:
            raw = await self.gateway.complete_json(
                system=cross_reference.SYSTEM_PROMPT,
                prompt=cross_reference.build_prompt(sources, business_name),
                context_type="cross_reference",
                token=token,
                temperature=0.2,
            )
            return cross_reference.parse_cross_reference(raw, business_name)
        except OracleError as e:
            logger.warning("cross_reference fell back to ranked merge for %r: %s", business_name, e)
            return cross_reference.fallback_merge(sources, business_name)

    async def analyze(self, profile: BusinessProfile, token: Optional[CancellationToken] = None) -> BusinessAnalysis:
        try:
            raw = await self.gateway.complete_json(
                system=analyzer.SYSTEM_PROMPT,
                prompt=analyzer.build_prompt(profile),
                context_type="analyze",
                token=token,
                max_tokens=2000,
            )
            return analyzer.parse_analysis(raw)
        except OracleError as e:
            logger.warning("analyze fell back to defaults for %r: %s", profile.name, e)
            return analyzer.default_analysis(profile)

    async def qualify(self, q: QualificationInput, token: Optional[CancellationToken] = None) -> Qualification:
        try:
            raw = await self.gateway.complete_json(
                system=qualifier.SYSTEM_PROMPT,
                prompt=qualifier.build_prompt(q),
                context_type="qualify",
                token=token,
            )
            return qualifier.parse_qualification(raw)
        except OracleError as e:
            logger.warning("qualify fell back to rule scoring for %r: %s", q.business_name, e)
            return qualifier.fallback_qualification(q)


__all__ = [
    "BusinessAnalysis",
    "BusinessProfile",
    "CrossReference",
    "EnrichmentOracle",
    "Extraction",
    "OracleGateway",
    "Qualification",
    "QualificationInput",
]
