"""Pure feed scoring functions, no I/O.

Home feed score:

    0.4 * relevance + 0.3 * engagement + 0.2 * recency + 0.1 * trust
    + 0.1 * affinity

Relevance blends crop (0.4), location (0.3), author role (0.15) and
experience level (0.15) similarity between viewer and post. Affinity is
the viewer's accumulated topic/crop/author interest in the post,
normalised against AFFINITY_CEILING.

Group discovery uses the additive relevance score instead:

    10 * crop overlap + 15 * same region + 2 * ln(popularity + 1)

Exclusion (hidden posts, muted authors) is applied before any scoring.
"""
import math
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple, TypeVar

from agrigrow.app.db.schemas import PostInDB, UserInDB
from agrigrow.app.services.feed_preferences import FeedPreference

T = TypeVar("T")

WEIGHTS = {
    "relevance": 0.4,
    "engagement": 0.3,
    "recency": 0.2,
    "trust": 0.1,
    "affinity": 0.1,
}

RELEVANCE_WEIGHTS = {
    "crop": 0.4,
    "location": 0.3,
    "role": 0.15,
    "experience": 0.15,
}

ENGAGEMENT_MULTIPLIERS = {
    "like": 1,
    "comment": 3,
    "share": 5,
    "helpful": 10,
}

# (max age in hours, score); anything older scores 0.1
RECENCY_BRACKETS = [(1, 1.0), (6, 0.9), (24, 0.7), (72, 0.5), (168, 0.3)]
OLDEST_RECENCY_SCORE = 0.1

EXPERIENCE_LEVELS = ["beginner", "intermediate", "experienced", "expert"]
AGRICULTURE_ROLES = {"farmer", "student"}

CROP_MATCH_POINTS = 10
REGION_MATCH_POINTS = 15
POPULARITY_POINTS = 2

AFFINITY_CEILING = 50.0


def hours_since(created_at: datetime, now: Optional[datetime] = None) -> float:
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return max(0.0, (now - created_at).total_seconds() / 3600.0)


def _lower_set(values: Optional[Iterable[str]]) -> set:
    return {v.strip().lower() for v in values or () if v and v.strip()}


# --- engagement ---


def time_decay(age_hours: float) -> float:
    return max(1.0, math.log10(age_hours + 1) + 1)


def raw_engagement(likes: int, comments: int, shares: int, helpful: int) -> int:
    return (
        likes * ENGAGEMENT_MULTIPLIERS["like"]
        + comments * ENGAGEMENT_MULTIPLIERS["comment"]
        + shares * ENGAGEMENT_MULTIPLIERS["share"]
        + helpful * ENGAGEMENT_MULTIPLIERS["helpful"]
    )


def calculate_engagement_score(
    likes: int, comments: int, shares: int, helpful: int, age_hours: float
) -> float:
    """Stored engagement score, recomputed whenever a post's counters change."""
    return round(raw_engagement(likes, comments, shares, helpful) / time_decay(age_hours), 2)


def normalized_engagement(post: PostInDB, now: Optional[datetime] = None) -> float:
    raw = raw_engagement(
        post.likes_count, post.comments_count, post.shares_count, post.helpful_count
    )
    decay = math.log10(hours_since(post.created_at, now) + 2) + 1
    return min(1.0, math.log10(raw / decay + 1) / 2)


# --- relevance components ---


def crop_match_score(post_crops: Sequence[str], user_crops: Sequence[str]) -> float:
    if not post_crops:
        return 0.3
    if not user_crops:
        return 0.5

    user_set = _lower_set(user_crops)
    matches = sum(1 for crop in post_crops if crop.lower() in user_set)
    ratio = matches / len(post_crops)
    bonus = 0.1 * min(matches - 1, 3) if matches > 1 else 0.0
    return min(1.0, ratio + bonus)


def location_match_score(
    post_state: Optional[str],
    post_district: Optional[str],
    user_state: Optional[str],
    user_district: Optional[str],
) -> float:
    if not (post_state or post_district) or not user_state:
        return 0.5
    if post_district and user_district and post_district.lower() == user_district.lower():
        return 1.0
    if post_state and post_state.lower() == user_state.lower():
        return 0.7
    return 0.2


def role_match_score(author_role: Optional[str], user_role: Optional[str]) -> float:
    if not author_role:
        return 0.5
    if author_role == user_role:
        return 1.0
    if author_role in AGRICULTURE_ROLES and user_role in AGRICULTURE_ROLES:
        return 0.7
    if author_role == "business" or user_role == "business":
        return 0.5
    return 0.3


def experience_match_score(
    author_experience: Optional[str], user_experience: Optional[str]
) -> float:
    if not author_experience:
        return 0.5
    if author_experience not in EXPERIENCE_LEVELS or user_experience not in EXPERIENCE_LEVELS:
        return 0.5

    author_level = EXPERIENCE_LEVELS.index(author_experience)
    user_level = EXPERIENCE_LEVELS.index(user_experience)
    if author_level == user_level:
        return 1.0
    if author_level > user_level:
        return max(0.6, 1.0 - (author_level - user_level) * 0.1)
    return max(0.3, 0.7 - (user_level - author_level) * 0.15)


def post_relevance(post: PostInDB, viewer: Optional[UserInDB]) -> float:
    user_crops = viewer.crops if viewer else []
    user_state = viewer.location_state if viewer else None
    user_district = viewer.location_district if viewer else None
    user_role = viewer.role if viewer else None
    user_experience = viewer.experience_level if viewer else None

    return (
        crop_match_score(post.crops, user_crops) * RELEVANCE_WEIGHTS["crop"]
        + location_match_score(
            post.location_state, post.location_district, user_state, user_district
        )
        * RELEVANCE_WEIGHTS["location"]
        + role_match_score(post.author_role or user_role, user_role)
        * RELEVANCE_WEIGHTS["role"]
        + experience_match_score(
            post.author_experience_level or "intermediate", user_experience
        )
        * RELEVANCE_WEIGHTS["experience"]
    )


def recency_score(post: PostInDB, now: Optional[datetime] = None) -> float:
    age = hours_since(post.created_at, now)
    for limit, score in RECENCY_BRACKETS:
        if age < limit:
            return score
    return OLDEST_RECENCY_SCORE


def trust_score(post: PostInDB) -> float:
    score = 0.0
    if post.is_verified:
        score += 0.3
    if post.author_badges:
        score += min(len(post.author_badges) * 0.1, 0.5)
    if post.comments_count > 0 and post.helpful_count > 0:
        if post.helpful_count / post.comments_count >= 0.3:
            score += 0.2
    return min(1.0, score)


def affinity_score(post: PostInDB, preference: Optional[FeedPreference]) -> float:
    if preference is None:
        return 0.0
    raw = preference.liked_topics.get(post.post_type, 0.0)
    raw += sum(preference.liked_crops.get(crop.lower(), 0.0) for crop in post.crops)
    raw += preference.preferred_authors.get(str(post.author_id), 0.0)
    return min(1.0, raw / AFFINITY_CEILING)


def feed_score(
    post: PostInDB,
    viewer: Optional[UserInDB],
    preference: Optional[FeedPreference] = None,
    now: Optional[datetime] = None,
) -> float:
    return (
        post_relevance(post, viewer) * WEIGHTS["relevance"]
        + normalized_engagement(post, now) * WEIGHTS["engagement"]
        + recency_score(post, now) * WEIGHTS["recency"]
        + trust_score(post) * WEIGHTS["trust"]
        + affinity_score(post, preference) * WEIGHTS["affinity"]
    )


# --- exclusion and ranking ---


def filter_excluded(
    posts: Iterable[PostInDB], preference: Optional[FeedPreference]
) -> List[PostInDB]:
    posts = list(posts)
    if preference is None:
        return posts
    hidden = set(preference.hidden_posts)
    muted = set(preference.muted_users)
    return [
        post
        for post in posts
        if str(post.id) not in hidden and str(post.author_id) not in muted
    ]


def rank_feed(
    posts: Iterable[PostInDB],
    viewer: Optional[UserInDB],
    preference: Optional[FeedPreference] = None,
    now: Optional[datetime] = None,
) -> List[Tuple[PostInDB, float]]:
    visible = filter_excluded(posts, preference)
    scored = [(post, feed_score(post, viewer, preference, now)) for post in visible]
    scored.sort(key=lambda item: (item[1], item[0].created_at), reverse=True)
    return scored


def compute_relevance_score(
    candidate, user_crops: Sequence[str], user_region: Optional[str]
) -> float:
    """Additive relevance of a group or post: anything with ``crops``,
    ``region`` and ``popularity`` attributes."""
    overlap = len(_lower_set(candidate.crops) & _lower_set(user_crops))
    score = overlap * CROP_MATCH_POINTS

    region = candidate.region
    if region and user_region and region.strip().lower() == user_region.strip().lower():
        score += REGION_MATCH_POINTS

    score += math.log(max(candidate.popularity, 0) + 1) * POPULARITY_POINTS
    return score


def rank_by_relevance(
    candidates: Iterable[T],
    user_crops: Optional[Sequence[str]] = None,
    user_region: Optional[str] = None,
) -> List[Tuple[T, float]]:
    """Sorts by relevance, then popularity, then recency, all descending.
    Without personal signals the order is popularity then recency."""
    candidates = list(candidates)
    if not user_crops and not user_region:
        ordered = sorted(
            candidates,
            key=lambda c: (c.popularity, c.created_at),
            reverse=True,
        )
        return [(candidate, 0.0) for candidate in ordered]

    scored = [
        (candidate, compute_relevance_score(candidate, user_crops or [], user_region))
        for candidate in candidates
    ]
    scored.sort(
        key=lambda item: (item[1], item[0].popularity, item[0].created_at),
        reverse=True,
    )
    return scored
