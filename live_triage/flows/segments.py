import json
import os
import re
from functools import lru_cache
from typing import Any, Dict, List, Tuple


@lru_cache(maxsize=1)
def load_segments() -> Dict[str, Any]:
    """Load caller segment definitions from segments.json file."""
    current_dir = os.path.dirname(__file__)
    segments_path = os.path.join(current_dir, 'segments.json')

    with open(segments_path, 'r') as f:
        return json.load(f)


def get_segment_tags() -> List[str]:
    """Get list of all segment tags, in tie-break order."""
    return [segment['tag'] for segment in load_segments()['segments']]


def get_segment_config(tag: str) -> Dict[str, Any]:
    for segment in load_segments()['segments']:
        if segment['tag'] == tag:
            return segment
    return {}


def get_detection_keywords(tag: str) -> List[str]:
    """Get detection keywords for a specific segment tag."""
    return get_segment_config(tag).get('detection_keywords', [])


def detect_segments(text: str) -> List[Tuple[str, List[str]]]:
    """
    Keyword detection over the segment definitions.

    Returns (tag, matched_keywords) for every segment with at least one hit,
    most hits first; ties keep file order.
    """
    normalized = " ".join((text or "").lower().replace("’", "'").split())
    results = []
    for segment in load_segments()['segments']:
        matched = [
            keyword for keyword in segment['detection_keywords']
            if re.search(r"\b" + re.escape(keyword) + r"\b", normalized)
        ]
        if matched:
            results.append((segment['tag'], matched))
    results.sort(key=lambda item: -len(item[1]))
    return results
