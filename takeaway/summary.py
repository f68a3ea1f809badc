"""Template-based summaries for uploaded presentation assets.

No inference happens here: a template is picked per file category and the
topic is guessed from the filename.
"""

import math
import random
import re
from dataclasses import dataclass
from typing import Optional

from .storage import BYTES_PER_MB, SLIDE_CONTENT_TYPES

SUMMARY_TEMPLATES = {
    "document": (
        "This PDF document provides comprehensive insights into {topic}. The material covers essential concepts and practical applications that will benefit attendees. Key findings include actionable strategies and detailed methodologies for implementation.",
        "The document presents a thorough analysis of {topic} with supporting data and case studies. Readers will gain valuable knowledge about industry best practices and emerging trends. The content is structured to facilitate easy understanding and practical application.",
        "This PDF contains detailed information about {topic}, including theoretical frameworks and real-world examples. The material offers strategic insights and proven methodologies. Attendees will find practical tools and techniques they can immediately apply.",
    ),
    "slides": (
        "This presentation delivers key insights about {topic} through engaging visual content and clear explanations. The slides cover fundamental concepts and advanced strategies. Participants will learn practical approaches and implementation techniques.",
        "The presentation provides a comprehensive overview of {topic} with interactive elements and detailed examples. Key takeaways include actionable frameworks and best practices. The content is designed for immediate practical application.",
        "This slide deck explores {topic} through structured learning modules and case studies. The presentation offers strategic insights and proven methodologies. Attendees will gain valuable knowledge and practical tools.",
    ),
    "video": (
        "This video presentation covers essential aspects of {topic} through dynamic visual storytelling and expert commentary. The content includes practical demonstrations and real-world applications. Viewers will learn actionable strategies and implementation techniques.",
        "The video provides an engaging exploration of {topic} with comprehensive explanations and visual examples. Key insights include industry best practices and innovative approaches. The content is designed for both learning and practical application.",
        "This video content delivers valuable insights about {topic} through expert presentations and case study analysis. Participants will gain practical knowledge and strategic frameworks. The material includes actionable takeaways and implementation guides.",
    ),
}

FALLBACK_TOPICS = (
    "digital transformation",
    "leadership strategies",
    "market analysis",
    "innovation frameworks",
    "customer experience",
    "data analytics",
    "project management",
    "business development",
    "strategic planning",
    "team collaboration",
)

BUSINESS_TERMS = (
    "strategy",
    "marketing",
    "sales",
    "leadership",
    "management",
    "analytics",
    "innovation",
    "digital",
    "transformation",
    "customer",
    "project",
    "team",
    "business",
    "growth",
    "development",
)

_TIMESTAMP_PREFIX = re.compile(r"^\d+-")
_EXTENSION = re.compile(r"\.[^/.]+$")


@dataclass(frozen=True)
class Summary:
    text: str
    estimated_duration: str
    category: str
    topic: str


def category_for(mime_type: str) -> str:
    if mime_type in SLIDE_CONTENT_TYPES:
        return "slides"
    if mime_type.startswith("video/"):
        return "video"
    return "document"


def extract_topic(storage_name: str, rng: Optional[random.Random] = None) -> str:
    clean = _TIMESTAMP_PREFIX.sub("", storage_name)
    clean = _EXTENSION.sub("", clean)
    clean = re.sub(r"[_-]", " ", clean).lower()

    for term in BUSINESS_TERMS:
        if term in clean:
            return f"{term} and business excellence"

    if 3 < len(clean) < 50:
        return clean

    return (rng or random).choice(FALLBACK_TOPICS)


def _plural(minutes: int) -> str:
    return f"{minutes} min{'s' if minutes > 1 else ''}"


def estimate_duration(size_bytes: int, mime_type: str) -> str:
    size_mb = size_bytes / BYTES_PER_MB
    if mime_type.startswith("video/"):
        # roughly a minute of footage per megabyte
        return _plural(math.ceil(size_mb))
    if mime_type == "application/pdf":
        pages = math.ceil(size_mb * 10)
        return f"{_plural(math.ceil(pages * 2))} read"
    slides = math.ceil(size_mb * 5)
    return f"{_plural(math.ceil(slides * 0.5))} presentation"


def summarize(
    storage_name: str,
    mime_type: str,
    size_bytes: int,
    rng: Optional[random.Random] = None,
) -> Summary:
    category = category_for(mime_type)
    topic = extract_topic(storage_name, rng)
    template = (rng or random).choice(SUMMARY_TEMPLATES[category])
    return Summary(
        text=template.replace("{topic}", topic),
        estimated_duration=estimate_duration(size_bytes, mime_type),
        category=category,
        topic=topic,
    )
