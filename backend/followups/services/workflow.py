from __future__ import annotations

from backend.followups.models import FollowupStatus

ALLOWED_TRANSITIONS = {
    FollowupStatus.scheduled: {
        FollowupStatus.sent,
        FollowupStatus.cancelled,
        FollowupStatus.failed,
    },
    FollowupStatus.sent: set(),
    FollowupStatus.cancelled: set(),
    FollowupStatus.failed: set(),
}
