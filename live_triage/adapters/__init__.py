"""
Adapter modules for the triage tiers.

This module contains adapters for:
- Service catalog lookup and traffic-light keyword families
- Tier 1 job matching
- Tier 2 caller segment classification (OpenAI or keyword fallback)
- Caller metadata extraction
"""

from .catalog_services import ServiceCatalog, CatalogService, CatalogCandidate
from .job_matcher import JobMatcher, match_jobs
from .segment_classifier import SegmentClassifier
from .metadata_extractor import MetadataExtractor

__all__ = [
    'ServiceCatalog',
    'CatalogService',
    'CatalogCandidate',
    'JobMatcher',
    'match_jobs',
    'SegmentClassifier',
    'MetadataExtractor',
]
