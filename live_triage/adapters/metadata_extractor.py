import asyncio
import json
import logging
import re
from typing import Optional, Sequence

from openai import OpenAI

from ..exceptions import ClassifierError
from ..models import CallerDetails, TranscriptSegment
from ..prompts.prompt_layer import METADATA_EXTRACTION_PROMPT, METADATA_FUNCTIONS
from .segment_classifier import caller_text, format_transcript

logger = logging.getLogger(__name__)

POSTCODE_REGEX = re.compile(r"\b([A-Z]{1,2}\d[A-Z\d]?\s*\d[A-Z]{2})\b", re.IGNORECASE)
PARTIAL_POSTCODE_REGEX = re.compile(r"\b([A-Z]{1,2}\d[A-Z\d]?)\b", re.IGNORECASE)
PHONE_REGEX = re.compile(r"(?<![\d+])(0\d{10,11}|\+44\s?\d{10,11}|07\d{9})\b")
EMAIL_REGEX = re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b")
NAME_REGEX = re.compile(
    r"(?i:\bmy name is|\bmy name's|\bthis is|\bi am|\bi'm|\bit's)\s+"
    r"([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)"
    r"(?i:\s+speaking)?"
)
ADDRESS_REGEX = re.compile(
    r"\b(\d{1,4}[A-Za-z]?,?\s+(?:[A-Za-z']+\s+){1,3}"
    r"(?:road|street|avenue|lane|close|drive|way|crescent|court|place|gardens|terrace|grove|hill|"
    r"rd|st|ave))\b",
    re.IGNORECASE,
)

# Two-letter words that look like outward codes
PARTIAL_POSTCODE_FALSE_POSITIVES = {"TV", "OK", "UK", "AM", "PM", "ID", "IT", "IN", "ON", "OR"}
NOT_NAMES = {"Just", "Calling", "Ringing", "Looking", "About", "The", "Not", "Really", "Sorry", "Yes", "No",
             "Okay", "Hello", "Hi", "Here", "There", "Urgent", "Emergency", "Monday", "Tuesday", "Wednesday",
             "Thursday", "Friday", "Saturday", "Sunday"}

FLAG_FIELDS = ("is_decision_maker", "is_remote", "has_tenant")

# Caller flag phrases; the first list checked wins
NOT_DECISION_MAKER_PHRASES = ["need to check with", "i'll have to ask", "i'm just getting quotes", "he'll decide",
                              "she'll decide", "they'll decide", "calling on behalf", "for my boss",
                              "for my landlord", "i'm the tenant", "i rent", "checking for", "my manager"]
DECISION_MAKER_PHRASES = ["i'm the owner", "i own", "it's mine", "my property", "my house", "my flat",
                          "i can approve", "i make the decision", "i live there", "i'm the landlord"]
REMOTE_PHRASES = ["not local", "can't be there", "won't be there", "i'm up in", "i'm down in", "i'm away",
                  "abroad", "overseas", "miles away", "hours away", "different city"]
LOCAL_PHRASES = ["i'll be there", "i can be there", "i live there", "i'm local", "round the corner", "nearby",
                 "down the road", "can let you in", "i'll wait in", "i work from home"]
NO_TENANT_PHRASES = ["between tenants", "before the tenant moves in", "ready for new tenants", "empty", "vacant",
                     "just moved out", "nobody living there", "unoccupied"]
TENANT_PHRASES = ["my tenant", "the tenant", "tenants", "renter", "letting to", "let to someone",
                  "someone living there", "currently let"]


def extract_postcode(text: str) -> Optional[str]:
    """Full postcode if present, otherwise the outward code."""
    full = POSTCODE_REGEX.search(text)
    if full:
        cleaned = re.sub(r"\s+", "", full.group(1).upper())
        return f"{cleaned[:-3]} {cleaned[-3:]}"
    for match in PARTIAL_POSTCODE_REGEX.finditer(text):
        candidate = match.group(1).upper()
        if candidate not in PARTIAL_POSTCODE_FALSE_POSITIVES:
            return candidate
    return None


def extract_contact(text: str) -> Optional[str]:
    phone = PHONE_REGEX.search(text)
    if phone:
        return re.sub(r"\s+", "", phone.group(1))
    email = EMAIL_REGEX.search(text)
    return email.group(0).lower() if email else None


def extract_name(text: str) -> Optional[str]:
    """Most recent self-introduction wins ("sorry, it's Sarah, not Sara")."""
    name = None
    for match in NAME_REGEX.finditer(text):
        first = match.group(1).split()[0]
        if first not in NOT_NAMES:
            name = match.group(1)
    return name


def extract_address(text: str) -> Optional[str]:
    match = ADDRESS_REGEX.search(text)
    if not match:
        return None
    return " ".join(match.group(1).replace(",", "").split()).title()


def _mentions(text: str, phrases) -> bool:
    text = text.lower().replace("’", "'")
    return any(re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) for phrase in phrases)


def _flag(text: str, yes_phrases, no_phrases, no_first: bool = False) -> Optional[bool]:
    checks = [(no_phrases, False), (yes_phrases, True)]
    if not no_first:
        checks.reverse()
    for phrases, value in checks:
        if _mentions(text, phrases):
            return value
    return None


def detect_decision_maker(text: str) -> Optional[bool]:
    """None when the caller hasn't said whether they can approve the work."""
    return _flag(text, DECISION_MAKER_PHRASES, NOT_DECISION_MAKER_PHRASES, no_first=True)


def detect_remote(text: str) -> Optional[bool]:
    return _flag(text, REMOTE_PHRASES, LOCAL_PHRASES)


def detect_tenant(text: str) -> Optional[bool]:
    # "between tenants" is an empty property, so check those phrases first
    return _flag(text, TENANT_PHRASES, NO_TENANT_PHRASES, no_first=True)


class MetadataExtractor:
    """Pulls caller details and the decision-maker, remote and tenant flags out of a live transcript"""

    def __init__(self, openai_api_key: Optional[str] = None, model: str = "gpt-4o-mini",
                 client: Optional[OpenAI] = None, request_timeout: float = 5.0):
        self.model = model
        if client is not None:
            self.openai_client = client
        elif openai_api_key:
            # One attempt per lane run, bounded by the lane timeout
            self.openai_client = OpenAI(api_key=openai_api_key, timeout=request_timeout, max_retries=0)
        else:
            self.openai_client = None

    async def extract(self, transcript: Sequence[TranscriptSegment]) -> CallerDetails:
        if self.openai_client is None:
            return self.extract_regex(transcript)
        return await self._extract_llm(transcript)

    @staticmethod
    def extract_regex(transcript: Sequence[TranscriptSegment]) -> CallerDetails:
        text = caller_text(transcript)
        return CallerDetails(
            name=extract_name(text),
            address=extract_address(text),
            postcode=extract_postcode(text),
            contact=extract_contact(text),
            is_decision_maker=detect_decision_maker(text),
            is_remote=detect_remote(text),
            has_tenant=detect_tenant(text),
        )

    async def _extract_llm(self, transcript: Sequence[TranscriptSegment]) -> CallerDetails:
        prompt = METADATA_EXTRACTION_PROMPT.format(transcript=format_transcript(transcript))
        try:
            response = await asyncio.to_thread(
                self.openai_client.chat.completions.create,
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                tools=METADATA_FUNCTIONS,
                tool_choice={"type": "function", "function": {"name": "extract_caller_details"}},
                temperature=0.0,
                max_tokens=300,
            )
        except Exception as e:
            raise ClassifierError(f"Metadata extraction request failed: {e}") from e

        msg = response.choices[0].message if response.choices else None
        if not msg or not msg.tool_calls:
            raise ClassifierError("Metadata extractor returned no function call")
        try:
            args = json.loads(msg.tool_calls[0].function.arguments)
        except json.JSONDecodeError as e:
            raise ClassifierError(f"Metadata extractor returned invalid JSON: {e}") from e

        cleaned = {}
        for key, value in args.items():
            if key not in CallerDetails.model_fields or value is None:
                continue
            if key in FLAG_FIELDS:
                if isinstance(value, bool):
                    cleaned[key] = value
            elif str(value).strip():
                cleaned[key] = str(value).strip()
        if "postcode" in cleaned:
            cleaned["postcode"] = extract_postcode(cleaned["postcode"]) or cleaned["postcode"].upper()
        return CallerDetails(**cleaned)
