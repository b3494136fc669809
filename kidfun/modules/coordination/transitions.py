"""Pure rules for coordination-thread status changes and feed grouping.

Nothing here touches storage; CoordinationThreadManager applies these rules
to rows it has loaded.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from kidfun.modules.coordination.schemas import (
    ThreadStatus, RsvpStatus, ParticipantRole, ProposalStatus,
    ParticipantResponse, ThreadWithDetails, RsvpSummary, CoordinationFeed
)

# idea -> scheduled covers a plan whose proposal landed but whose status bump did not
VALID_TRANSITIONS: Dict[ThreadStatus, Set[ThreadStatus]] = {
    ThreadStatus.IDEA: {ThreadStatus.PROPOSING, ThreadStatus.SCHEDULED, ThreadStatus.CANCELLED},
    ThreadStatus.PROPOSING: {ThreadStatus.SCHEDULED, ThreadStatus.CANCELLED},
    ThreadStatus.SCHEDULED: {ThreadStatus.COMPLETED, ThreadStatus.CANCELLED},
    ThreadStatus.COMPLETED: set(),
    ThreadStatus.CANCELLED: set(),
}

OPEN_STATUSES = frozenset({ThreadStatus.IDEA, ThreadStatus.PROPOSING})
TERMINAL_STATUSES = frozenset({ThreadStatus.COMPLETED, ThreadStatus.CANCELLED})


class InvalidTransition(ValueError):
    def __init__(self, current: ThreadStatus, target: ThreadStatus):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move a plan from {current.value} to {target.value}")


def can_transition(current: ThreadStatus, target: ThreadStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def ensure_transition(current: ThreadStatus, target: ThreadStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def sources_for(target: ThreadStatus) -> List[ThreadStatus]:
    """Statuses a thread may be in for a conditional update to target."""
    return [status for status, targets in VALID_TRANSITIONS.items() if target in targets]


def initial_status(has_proposed_date: bool) -> ThreadStatus:
    return ThreadStatus.PROPOSING if has_proposed_date else ThreadStatus.IDEA


def status_after_proposal(current: ThreadStatus) -> ThreadStatus:
    if current == ThreadStatus.IDEA:
        return ThreadStatus.PROPOSING
    return current


def accepts_proposals(status: ThreadStatus) -> bool:
    return status in OPEN_STATUSES


def is_terminal(status: ThreadStatus) -> bool:
    return status in TERMINAL_STATUSES


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_too_far_in_past(proposed: datetime, grace_minutes: int, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return as_utc(proposed) < now - timedelta(minutes=grace_minutes)


def normalize_invitees(organizer_id: str, user_ids: Iterable[str], existing: Iterable[str] = ()) -> List[str]:
    """Drop blanks, duplicates, the organizer and users already on the thread; keep order."""
    skip = {organizer_id, *existing}
    seen = set()
    result = []
    for uid in user_ids:
        uid = (uid or "").strip()
        if not uid or uid in skip or uid in seen:
            continue
        seen.add(uid)
        result.append(uid)
    return result


def rsvp_summary(participants: Iterable[ParticipantResponse]) -> RsvpSummary:
    summary = RsvpSummary()
    for p in participants:
        field_name = RsvpStatus(p.rsvp_status).value
        setattr(summary, field_name, getattr(summary, field_name) + 1)
    return summary


def needs_response(thread: ThreadWithDetails, user_id: str) -> bool:
    mine = next((p for p in thread.participants if p.user_id == user_id), None)
    if mine is None:
        return False
    if mine.role == ParticipantRole.INVITED and mine.rsvp_status == RsvpStatus.PENDING:
        return True
    if thread.status == ThreadStatus.PROPOSING:
        open_proposals = [p for p in thread.proposals if p.status == ProposalStatus.PROPOSED]
        has_mine = any(p.proposed_by == user_id for p in open_proposals)
        has_others = any(p.proposed_by != user_id for p in open_proposals)
        return has_others and not has_mine
    return False


def categorize(threads: Iterable[ThreadWithDetails], user_id: str) -> CoordinationFeed:
    feed = CoordinationFeed()
    for thread in threads:
        if thread.status in OPEN_STATUSES:
            feed.planning.append(thread)
        elif thread.status == ThreadStatus.SCHEDULED:
            feed.scheduled.append(thread)
        else:
            feed.past.append(thread)
        if needs_response(thread, user_id):
            feed.needs_response.append(thread)
    return feed
