"""Types for the email categorization pipeline."""

from dataclasses import dataclass, field
from enum import Enum


class Category(str, Enum):
    """Closed set of buckets a sender can be placed in."""

    CALL_ME = "call-me"
    REMIND_ME = "remind-me"
    KEEP_QUIET = "keep-quiet"
    NEWSLETTER = "newsletter"
    WHY_DID_I_SIGNUP = "why-did-i-signup"
    DONT_TELL_ANYONE = "dont-tell-anyone"

    @classmethod
    def coerce(cls, value: object) -> "Category":
        """Map a raw string onto the enum; anything unknown becomes KEEP_QUIET."""
        if isinstance(value, Category):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.KEEP_QUIET


class TimeToRespond(str, Enum):
    IMMEDIATE = "immediate"
    TODAY = "today"
    THIS_WEEK = "this-week"
    WHEN_CONVENIENT = "when-convenient"
    NEVER = "never"


class NewsletterFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    IRREGULAR = "irregular"


#: Order in which categories are read out in call scripts.
CATEGORY_ORDER: list[Category] = [
    Category.CALL_ME,
    Category.REMIND_ME,
    Category.KEEP_QUIET,
    Category.WHY_DID_I_SIGNUP,
    Category.DONT_TELL_ANYONE,
    Category.NEWSLETTER,
]

#: How each category is pronounced in a voice script.
SPOKEN_CATEGORY: dict[Category, str] = {
    Category.CALL_ME: "call me",
    Category.REMIND_ME: "remind me",
    Category.KEEP_QUIET: "keep quiet",
    Category.WHY_DID_I_SIGNUP: "why did I sign up",
    Category.DONT_TELL_ANYONE: "don't tell anyone",
    Category.NEWSLETTER: "newsletter",
}

# ── Numeric ranges ─────────────────────────────────────────────────────────────

IMPORTANCE_RANGE = (1, 5)
PRIORITY_RANGE = (1, 5)
SENTIMENT_RANGE = (-1.0, 1.0)
CONFIDENCE_RANGE = (0.0, 1.0)


# ── Results ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Sentiment:
    score: float = 0.0       # -1.0 (very negative) → 1.0 (very positive)
    confidence: float = 0.5  # 0.0 → 1.0
    tone: str = "neutral"


@dataclass(frozen=True)
class PriorityAssessment:
    score: int = 3  # 1 (lowest) → 5 (highest)
    factors: tuple[str, ...] = ()
    time_to_respond: TimeToRespond = TimeToRespond.WHEN_CONVENIENT


@dataclass(frozen=True)
class CategoryResult:
    """Categorization of a single message.

    Produced by EmailCategorizer (AI path) or HeuristicClassifier (fallback)
    and consumed by the SenderAggregator and the call scheduler.  Never edited
    in place: re-categorizing a message yields a new instance.
    """

    category: Category
    importance: int
    reasoning: str = ""
    summary: str = ""
    sentiment: Sentiment = field(default_factory=Sentiment)
    priority: PriorityAssessment = field(default_factory=PriorityAssessment)


@dataclass(frozen=True)
class NewsletterAnalysis:
    """Whether a sender is a newsletter, and what it sends."""

    is_newsletter: bool
    frequency: NewsletterFrequency = NewsletterFrequency.IRREGULAR
    content_type: str = "unknown"
    summary: str = ""
