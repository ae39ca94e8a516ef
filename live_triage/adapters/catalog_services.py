"""
Handyman Services Catalog
Contains the priced SKU catalog, synonyms, and the traffic-light keyword families
used by the live call job matcher.
"""

import difflib
import re
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..models import CatalogRef

# Typo tolerance for single-token keyword hits
FUZZ_RATIO = 0.84
# Phrase must reach this score before it counts as a catalog match
MIN_MATCH_SCORE = 1.0
ACTION_HIT_SCORE = 0.5
FUZZY_HIT_SCORE = 0.5


class CatalogService(BaseModel):
    sku_code: str
    name: str
    category: str
    price_pence: int = Field(ge=0)
    keywords: List[str] = Field(default_factory=list)
    negative_keywords: List[str] = Field(default_factory=list)

    def to_ref(self) -> CatalogRef:
        return CatalogRef(sku_code=self.sku_code, name=self.name, price_pence=self.price_pence)


class CatalogCandidate(BaseModel):
    service: CatalogService
    score: float
    edit_distance: int
    matched_terms: List[str] = Field(default_factory=list)


# Active SKUs with fixed prices
DEFAULT_SERVICES = [
    # Plumbing
    CatalogService(sku_code="PLUMB-TAP-REPAIR", name="Tap Repair / Replacement", category="Plumbing",
                   price_pence=9500, keywords=["tap", "faucet", "dripping", "washer", "mixer tap"]),
    CatalogService(sku_code="PLUMB-TOILET-REPAIR", name="Toilet Repair", category="Plumbing",
                   price_pence=9500, keywords=["toilet", "flush", "cistern", "not flushing", "loo"]),
    CatalogService(sku_code="PLUMB-BLOCKAGE-CLEAR", name="Blockage Clearance", category="Plumbing",
                   price_pence=12000, keywords=["blocked", "clogged", "blockage", "unblock", "wont drain",
                                                "won't drain", "plunger"]),
    CatalogService(sku_code="PLUMB-SHOWER-REPAIR", name="Shower Repair", category="Plumbing",
                   price_pence=11000, keywords=["shower", "electric shower", "mixer bar", "temperature"],
                   negative_keywords=["shower tray seal", "seal shower"]),

    # Electrical
    CatalogService(sku_code="ELEC-LIGHT-FITTING", name="Light Fitting Replacement", category="Electrical",
                   price_pence=8500, keywords=["light", "light fitting", "chandelier", "pendant", "lamp",
                                               "ceiling light"]),
    CatalogService(sku_code="ELEC-SOCKET-REPLACE", name="Socket/Switch Replacement", category="Electrical",
                   price_pence=7500, keywords=["socket", "plug", "switch", "dimmer", "outlet"]),

    # Flatpack
    CatalogService(sku_code="FLATPACK-GENERIC", name="Flatpack Assembly", category="Flatpack",
                   price_pence=6000, keywords=["ikea", "pax", "wardrobe", "drawers", "flatpack", "furniture",
                                               "assembly"]),

    # Handyman / Misc
    CatalogService(sku_code="HANDY-TV-MOUNT", name="TV Mounting", category="Handyman",
                   price_pence=8500, keywords=["tv", "television", "mount", "bracket", "wall hang"]),
    CatalogService(sku_code="HANDY-SILICONE-SEAL", name="Resealing Bath/Shower", category="Handyman",
                   price_pence=9000, keywords=["silicone", "sealant", "reseal", "seal bath", "seal shower",
                                               "mastic"]),
    CatalogService(sku_code="HANDY-SHELF-FIT", name="Shelf Fitting", category="Handyman",
                   price_pence=6500, keywords=["shelf", "shelves", "bookcase", "racking"]),
    CatalogService(sku_code="HANDY-PICTURE-HANG", name="Picture & Mirror Hanging", category="Handyman",
                   price_pence=4500, keywords=["picture", "mirror", "frame", "artwork"]),
    CatalogService(sku_code="HANDY-BLIND-FIT", name="Curtain Pole & Blind Fitting", category="Handyman",
                   price_pence=6000, keywords=["blind", "blinds", "curtain", "curtain pole", "roller"]),
]

# Synonym mapping for token expansion (both directions are used)
SYNONYM_MAP: Dict[str, List[str]] = {
    # Plumbing
    "tap": ["faucet", "mixer", "spout", "taps"],
    "dripping": ["drip", "drips"],
    "toilet": ["loo", "cistern", "wc"],
    "blocked": ["clogged", "overflowing", "blockage"],
    "sink": ["basin", "washbasin"],
    "shower": ["mixer"],
    "bath": ["bathtub"],
    "seal": ["silicone", "sealant", "mastic", "reseal"],
    # Electrical
    "light": ["lamp", "bulb", "fitting", "fixture", "chandelier"],
    "socket": ["outlet", "plug", "sockets"],
    "switch": ["dimmer"],
    # Mounting
    "mount": ["hang", "install", "put up"],
    "tv": ["television", "telly"],
    "mirror": ["mirrors"],
    "blind": ["curtain", "shade", "venetian", "roman"],
    "shelf": ["shelves", "racking", "bookcase"],
    "picture": ["frame", "painting", "art", "pictures"],
    # Flatpack
    "assemble": ["build", "put together", "construct"],
    "furniture": ["wardrobe", "bed", "table", "chair", "desk", "ikea", "pax", "malm"],
}

# Verbs that describe the work rather than the object; they only half-count
ACTION_TERMS = {
    "mount", "mounting", "hang", "hanging", "install", "put up", "fix", "fit", "fitting",
    "assemble", "assembly", "build", "construct", "put together", "seal", "reseal",
}

# Words that never identify a SKU on their own
GENERIC_TERMS = {
    "repair", "replacement", "replace", "new", "broken", "job", "work", "sort", "look",
}

STOPWORDS = {
    "a", "an", "the", "my", "our", "your", "is", "are", "was", "it", "its", "it's", "to", "of",
    "in", "on", "at", "for", "with", "i", "i've", "i'm", "we", "me", "need", "needs", "want",
    "some", "someone", "can", "could", "would", "please", "just", "get", "got", "have", "has",
    "this", "that", "there", "there's", "be", "been", "and", "or", "up", "out", "inch", "inches",
}

# RED: specialist/complex work that needs a site visit or specialist trade
RED_KEYWORD_FAMILIES: Dict[str, List[str]] = {
    "gas": ["gas", "boiler", "gas cooker", "gas pipe", "gas hob", "combi boiler", "central heating",
            "carbon monoxide", "fumes"],
    "electrical": ["rewire", "consumer unit", "fuse box", "electrical panel", "new circuit",
                   "sockets stopped", "sockets not working", "half the sockets", "electrics",
                   "flickering", "tripping", "sparking", "burning smell"],
    "structural": ["structural", "load bearing", "foundation", "subsidence", "underpinning",
                   "chimney removal", "wall removal", "rsj", "steel beam", "big crack", "large crack",
                   "crack getting wider", "bowing", "bulging", "floor sloping", "floors sloping",
                   "walls leaning", "collapse"],
    "hazardous": ["asbestos", "lead paint"],
    "major_works": ["extension", "loft conversion", "basement conversion", "new build", "renovation"],
    "roofing": ["roof", "tiles off", "roof leak", "chimney stack", "guttering repair", "slates"],
    "damp": ["rising damp", "penetrating damp", "severe damp", "damp survey", "mould survey",
             "mold survey", "walls wet", "wet to the touch", "damp coming up", "musty smell",
             "damp throughout"],
    "emergency_water": ["burst", "burst pipe", "pipe burst", "water everywhere", "flooding", "flooded",
                        "sewage", "sewer backup"],
}

# AMBER: needs video/visual confirmation before pricing
AMBER_KEYWORDS = [
    # Leak-related (could be minor or major)
    "leak", "leaking", "water damage",
    # Damp (minor, needs visual assessment)
    "damp", "damp patch", "damp spot", "condensation", "mould", "mold",
    # Damage assessment needed
    "damage", "broken", "cracked", "crack", "split", "rot",
    # Custom/bespoke work
    "custom", "bespoke", "made to measure", "unusual",
    # Multiple jobs
    "few things", "several jobs", "list of jobs",
    # Vague descriptions
    "not sure", "don't know", "hard to describe", "difficult to explain",
]

# Object nouns that make a phrase describe a job
JOB_NOUNS = [
    # Plumbing
    "tap", "taps", "toilet", "sink", "basin", "bath", "shower", "radiator", "heating", "pipe",
    "pipes", "drain", "stopcock", "cistern", "boiler", "water heater",
    # Electrical
    "light", "lights", "socket", "sockets", "switch", "fuse", "wiring", "bulb", "extractor", "fan",
    # Carpentry
    "door", "shelf", "shelves", "cupboard", "cabinet", "wardrobe", "drawer", "drawers", "handle",
    "hinge", "lock", "worktop", "skirting", "floor", "flooring",
    # Walls & Ceilings
    "paint", "painting", "plaster", "tile", "tiles", "grout", "ceiling", "wall", "walls",
    # Outdoor
    "fence", "gate", "gutter", "roof", "window", "windows", "shed", "decking", "patio",
    # Mounting & Installation
    "tv", "television", "mirror", "picture", "pictures", "bracket", "rail", "hook", "blind",
    "blinds", "curtain", "furniture", "flatpack", "silicone", "sealant",
]


def normalize_text(text: str) -> str:
    """Lowercase, straighten quotes and collapse whitespace."""
    text = (text or "").lower().replace("’", "'").replace("‘", "'")
    text = re.sub(r"[^a-z0-9'\s]", " ", text)
    return " ".join(text.split())


def keyword_pattern(keyword: str) -> re.Pattern:
    """Whole-word pattern tolerating simple inflections (roof -> roofing, tap -> taps)."""
    return re.compile(r"\b" + re.escape(keyword.lower()) + r"(?:s|es|ed|ing)?\b")


_PATTERN_CACHE: Dict[str, re.Pattern] = {}


def contains_keyword(normalized: str, keyword: str) -> bool:
    pattern = _PATTERN_CACHE.get(keyword)
    if pattern is None:
        pattern = _PATTERN_CACHE[keyword] = keyword_pattern(keyword)
    return bool(pattern.search(normalized))


def find_red_flags(text: str) -> List[Tuple[str, str]]:
    """Return (family, keyword) pairs for every red keyword in the text."""
    normalized = normalize_text(text)
    hits = []
    for family, keywords in RED_KEYWORD_FAMILIES.items():
        for keyword in keywords:
            if contains_keyword(normalized, keyword):
                hits.append((family, keyword))
    return hits


def find_amber_flags(text: str) -> List[str]:
    normalized = normalize_text(text)
    return [keyword for keyword in AMBER_KEYWORDS if contains_keyword(normalized, keyword)]


def has_job_noun(text: str) -> bool:
    normalized = normalize_text(text)
    return any(contains_keyword(normalized, noun) for noun in JOB_NOUNS)


def get_red_keywords() -> List[str]:
    """Get all red keywords across families."""
    return [kw for keywords in RED_KEYWORD_FAMILIES.values() for kw in keywords]


def get_amber_keywords() -> List[str]:
    return list(AMBER_KEYWORDS)


def _synonyms_for(token: str) -> List[str]:
    found = list(SYNONYM_MAP.get(token, []))
    for key, values in SYNONYM_MAP.items():
        if token in values:
            found.append(key)
    return found


def edit_distance(a: str, b: str) -> int:
    """Character edits between two strings, from difflib opcodes."""
    distance = 0
    for tag, i1, i2, j1, j2 in difflib.SequenceMatcher(None, a, b).get_opcodes():
        if tag != "equal":
            distance += max(i2 - i1, j2 - j1)
    return distance


class ServiceCatalog:
    """Cached, synchronous lookup against the SKU catalog"""

    def __init__(self, services: Optional[Iterable[CatalogService]] = None):
        self.services: List[CatalogService] = list(services if services is not None else DEFAULT_SERVICES)
        self._terms: Dict[str, Tuple[set, List[str]]] = {}
        for service in self.services:
            single, multi = set(), []
            for term in service.keywords + service.name.lower().replace("/", " ").split():
                term = term.lower().strip()
                if not term or term in GENERIC_TERMS or term in STOPWORDS or term == "&":
                    continue
                if " " in term:
                    multi.append(term)
                else:
                    single.add(term)
            self._terms[service.sku_code] = (single, multi)

    def get_service(self, sku_code: str) -> Optional[CatalogService]:
        for service in self.services:
            if service.sku_code == sku_code:
                return service
        return None

    def _score(self, normalized: str, tokens: List[str], service: CatalogService) -> Tuple[float, List[str]]:
        single, multi = self._terms[service.sku_code]
        score = 0.0
        matched: List[str] = []

        for term in multi:
            if term in normalized:
                score += ACTION_HIT_SCORE if term in ACTION_TERMS else 1.0
                matched.append(term)

        for token in tokens:
            weight = ACTION_HIT_SCORE if token in ACTION_TERMS else 1.0
            candidates = [token] + _synonyms_for(token)
            hit = next((c for c in candidates if c in single), None)
            if hit:
                score += weight
                matched.append(hit)
                continue
            if len(token) > 3:
                close = difflib.get_close_matches(token, sorted(single), n=1, cutoff=FUZZ_RATIO)
                if close:
                    score += min(weight, FUZZY_HIT_SCORE)
                    matched.append(close[0])

        for negative in service.negative_keywords:
            if negative.lower() in normalized:
                score -= 5.0  # Heavy penalty
        return score, matched

    def match_catalog(self, phrase: str) -> List[CatalogCandidate]:
        """
        Score every SKU against a phrase.

        Returns candidates at or above MIN_MATCH_SCORE, best first: highest score,
        then smallest edit distance to the SKU name, then SKU code.
        """
        normalized = normalize_text(phrase)
        tokens = [t for t in normalized.split() if t not in STOPWORDS and t not in GENERIC_TERMS and len(t) > 1]
        if not tokens:
            return []

        candidates = []
        for service in self.services:
            score, matched = self._score(normalized, tokens, service)
            if score >= MIN_MATCH_SCORE:
                candidates.append(CatalogCandidate(
                    service=service,
                    score=round(score, 3),
                    edit_distance=edit_distance(normalized, service.name.lower()),
                    matched_terms=matched,
                ))
        candidates.sort(key=lambda c: (-c.score, c.edit_distance, c.service.sku_code))
        return candidates

    def best_match(self, phrase: str) -> Optional[CatalogCandidate]:
        candidates = self.match_catalog(phrase)
        return candidates[0] if candidates else None


_default_catalog: Optional[ServiceCatalog] = None


def get_default_catalog() -> ServiceCatalog:
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = ServiceCatalog()
    return _default_catalog
