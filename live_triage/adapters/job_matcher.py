"""
Tier 1 job matcher.

Splits caller speech into phrases, matches each phrase against the service
catalog and assigns a traffic light. Pure and synchronous: same text in, same
jobs (and job ids) out.
"""

import hashlib
import logging
import re
from typing import Dict, List, Optional

from ..models import DetectedJob, JobMatchResult, TrafficLight
from .catalog_services import (
    CatalogCandidate,
    ServiceCatalog,
    find_amber_flags,
    find_red_flags,
    get_default_catalog,
    has_job_noun,
    normalize_text,
)

logger = logging.getLogger(__name__)

MATCHED_CONFIDENCE = 95
AMBER_FLAGGED_CONFIDENCE = 60
UNFLAGGED_CONFIDENCE = 40

SENTENCE_SPLIT = re.compile(r"[.!?;]+(?:\s+|$)")
CONJUNCTION_SPLIT = re.compile(r"\s*,?\s*\b(?:as well as|and|also|plus|then|but)\b\s*,?\s*", re.IGNORECASE)
LEADING_FILLERS = re.compile(r"^(?:(?:hi|hello|yeah|yes|so|um|uh|erm|well|ok|okay|right)\b[\s,]*)+", re.IGNORECASE)


def split_phrases(text: str) -> List[str]:
    """Break transcript text into candidate job phrases, in order of appearance."""
    phrases = []
    for line in (text or "").splitlines():
        for sentence in SENTENCE_SPLIT.split(line):
            for part in CONJUNCTION_SPLIT.split(sentence):
                phrase = LEADING_FILLERS.sub("", part.strip(" ,-")).strip(" ,-")
                if normalize_text(phrase):
                    phrases.append(phrase)
    return phrases


def phrase_job_id(phrase: str) -> str:
    digest = hashlib.sha1(normalize_text(phrase).encode("utf-8")).hexdigest()
    return f"job-{digest[:10]}"


def _light_for(job: Dict) -> TrafficLight:
    if job["red_flags"]:
        return TrafficLight.RED
    if job["matched"]:
        return TrafficLight.GREEN
    return TrafficLight.AMBER


def _confidence_for(job: Dict) -> int:
    if job["red_flags"]:
        return min(70 + 10 * len(job["red_flags"]), 95)
    if job["matched"]:
        return MATCHED_CONFIDENCE
    return AMBER_FLAGGED_CONFIDENCE if job["amber_flags"] else UNFLAGGED_CONFIDENCE


def _add_unique(target: List[str], values) -> None:
    for value in values:
        if value not in target:
            target.append(value)


class JobMatcher:
    """Tier 1: cheap, deterministic job detection against the SKU catalog"""

    def __init__(self, catalog: Optional[ServiceCatalog] = None):
        self.catalog = catalog or get_default_catalog()

    @staticmethod
    def _new_job(phrase: str, best: Optional[CatalogCandidate]) -> Dict:
        job = {
            "id": f"sku-{best.service.sku_code.lower()}" if best else phrase_job_id(phrase),
            "description": phrase,
            "matched": best is not None,
            "catalog_ref": best.service.to_ref() if best else None,
            "red_flags": [],
            "amber_flags": [],
            "signals": [f"sku:{best.service.sku_code}"] if best else [],
        }
        return job

    @staticmethod
    def _attach_flags(job: Dict, red_flags, amber_flags) -> None:
        _add_unique(job["red_flags"], [kw for _, kw in red_flags])
        _add_unique(job["amber_flags"], amber_flags)
        _add_unique(job["signals"], [f"red:{family}:{kw}" for family, kw in red_flags])
        _add_unique(job["signals"], [f"amber:{kw}" for kw in amber_flags])

    def match(self, text: str, whole_text_fallback: bool = False) -> JobMatchResult:
        jobs: Dict[str, Dict] = {}
        last_job: Optional[Dict] = None

        for phrase in split_phrases(text):
            red_flags = find_red_flags(phrase)
            amber_flags = find_amber_flags(phrase)
            best = self.catalog.best_match(phrase)
            job_like = best is not None or has_job_noun(phrase)

            if not job_like:
                if not (red_flags or amber_flags):
                    continue
                if last_job is not None:
                    # Context for the job just described ("water everywhere")
                    self._attach_flags(last_job, red_flags, amber_flags)
                    continue

            job = self._new_job(phrase, best)
            existing = jobs.get(job["id"])
            if existing is not None:
                # Same job mentioned again: keep the first description
                job = existing
            else:
                jobs[job["id"]] = job
            self._attach_flags(job, red_flags, amber_flags)
            last_job = job

        if not jobs and whole_text_fallback and normalize_text(text):
            whole = " ".join(text.split())
            job = {
                "id": phrase_job_id(whole),
                "description": whole,
                "matched": False,
                "catalog_ref": None,
                "red_flags": [],
                "amber_flags": [],
                "signals": ["fallback:whole_text"],
            }
            self._attach_flags(job, find_red_flags(whole), find_amber_flags(whole))
            jobs[job["id"]] = job

        detected = [
            DetectedJob(
                id=job["id"],
                description=job["description"],
                matched=job["matched"],
                catalog_ref=job["catalog_ref"],
                traffic_light=_light_for(job),
                confidence=_confidence_for(job),
                signals=job["signals"],
            )
            for job in jobs.values()
        ]
        signals: List[str] = []
        for job in detected:
            _add_unique(signals, job.signals)

        logger.debug(f"Tier 1 matched {len(detected)} job(s) from {len(text or '')} chars")
        return JobMatchResult(jobs=detected, signals=signals)


def match_jobs(text: str, whole_text_fallback: bool = False,
               catalog: Optional[ServiceCatalog] = None) -> JobMatchResult:
    """Run Tier 1 over a transcript without an engine or session."""
    return JobMatcher(catalog).match(text, whole_text_fallback=whole_text_fallback)
