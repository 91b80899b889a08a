"""
Order lifecycle: the six production stages and how a display stage is
derived from whatever an order row carries.

The derivation is pure and recomputed on every read. Persisted status
values are compared in their normalized form (lowercase, underscores),
title-cased only for display.
"""
import enum
import re

from errors import ValidationError


class OrderStatus(enum.Enum):
    PENDING = "pending"
    IN_PRODUCTION = "in_production"
    LYRICS_REVIEW = "lyrics_review"
    SONG_PRODUCTION = "song_production"
    SONG_REVIEW = "song_review"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value):
        """Accept only canonical statuses on write."""
        normalized = normalize_status(value)
        for status in cls:
            if status.value == normalized:
                return status
        raise ValidationError(
            f"Invalid order status: {value!r}",
            allowed=[status.value for status in cls],
        )


# Stored by older releases; disambiguated on read, never written.
LEGACY_READY_FOR_REVIEW = "ready_for_review"

STAGE_LABELS = (
    "Order Received",
    "In Production",
    "Lyrics Review",
    "Song Creation",
    "Song Review",
    "Completed",
)

LAST_STAGE_INDEX = len(STAGE_LABELS) - 1

_STATUS_INDEX = {status.value: index for index, status in enumerate(OrderStatus)}


def normalize_status(value):
    if value is None:
        return ""
    return re.sub(r"\s+", "_", str(value).strip().lower())


def resolve_legacy_status(lyrics_approved, song_version_count):
    """Canonical status a legacy `ready_for_review` order actually means."""
    if not lyrics_approved:
        return OrderStatus.LYRICS_REVIEW
    if song_version_count == 0:
        return OrderStatus.SONG_PRODUCTION
    return OrderStatus.SONG_REVIEW


def derive_stage_index(status, workflow_stage=None, lyrics_approved=False, song_version_count=0):
    """
    Display stage index in [0, 5].

    A present workflow_stage wins and is clamped. Otherwise the status is
    mapped, with the legacy review status resolved from lyrics approval and
    delivered versions. Unknown statuses fall back to the first stage.
    """
    if workflow_stage is not None:
        return max(0, min(int(workflow_stage) - 1, LAST_STAGE_INDEX))

    normalized = normalize_status(status)
    if normalized in _STATUS_INDEX:
        return _STATUS_INDEX[normalized]

    if normalized == LEGACY_READY_FOR_REVIEW:
        resolved = resolve_legacy_status(lyrics_approved, song_version_count)
        return _STATUS_INDEX[resolved.value]

    return 0


def workflow_stage_for_status(status):
    """Persisted 1-based stage number written alongside a status change."""
    normalized = normalize_status(status)
    if normalized in _STATUS_INDEX:
        return _STATUS_INDEX[normalized] + 1
    if normalized == LEGACY_READY_FOR_REVIEW:
        return _STATUS_INDEX[OrderStatus.LYRICS_REVIEW.value] + 1
    return 1


def stage_label(index):
    index = max(0, min(int(index), LAST_STAGE_INDEX))
    return STAGE_LABELS[index]


def status_display(status):
    if not status:
        return "Unknown"
    return str(status).replace("_", " ").title()


def stage_timeline(index):
    """Per-stage progress markers for the customer dashboard."""
    return [
        {
            "index": position,
            "label": label,
            "completed": position < index,
            "current": position == index,
        }
        for position, label in enumerate(STAGE_LABELS)
    ]
