"""Append-only thread event log.

State-changing coordination operations record their history here; creating
a plan writes one `created` row plus one `invited` row per invitee.
Payload builders keep the JSON shape of every event type in one place so the
feed can rebuild what changed from the event alone.
"""
from supabase import Client
from kidfun.modules.coordination.models import EVENTS_TABLE
from kidfun.modules.coordination.schemas import ThreadEventType, ThreadStatus, RsvpStatus
from typing import Any, Dict, List, Optional, Sequence
import logging

logger = logging.getLogger(__name__)


def created_payload(activity_name: str, invited_count: int) -> Dict[str, Any]:
    return {"activity_name": activity_name, "invited_count": invited_count}


def invited_payload(invited_user_id: str) -> Dict[str, Any]:
    return {"invited_user_id": invited_user_id}


def proposed_time_payload(proposal_id: str, proposed_date: str, notes: Optional[str]) -> Dict[str, Any]:
    return {"proposal_id": proposal_id, "proposed_date": proposed_date, "notes": notes}


def locked_payload(accepted_proposal_id: str, scheduled_date: str) -> Dict[str, Any]:
    return {"scheduled_date": scheduled_date, "accepted_proposal_id": accepted_proposal_id}


def rsvp_payload(status: RsvpStatus, children_bringing: Sequence[str]) -> Dict[str, Any]:
    return {"status": RsvpStatus(status).value, "children_count": len(children_bringing)}


def message_payload(message: str) -> Dict[str, Any]:
    return {"message": message}


def closed_payload(previous_status: ThreadStatus, reason: Optional[str]) -> Dict[str, Any]:
    return {"previous_status": ThreadStatus(previous_status).value, "reason": reason}


class ThreadEventLog:
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def record(
        self,
        thread_id: str,
        user_id: str,
        event_type: ThreadEventType,
        payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Insert one event row. Storage errors propagate to the calling operation."""
        result = self.supabase.table(EVENTS_TABLE).insert({
            "thread_id": thread_id,
            "user_id": user_id,
            "event_type": ThreadEventType(event_type).value,
            "payload": payload or {}
        }).execute()
        if not result.data:
            raise RuntimeError(f"Event {event_type} for thread {thread_id} was not stored")
        logger.debug(f"Recorded {ThreadEventType(event_type).value} event on thread {thread_id}")
        return result.data[0]

    def list_for_threads(self, thread_ids: List[str], limit: int) -> List[Dict[str, Any]]:
        """Most recent events across thread_ids, newest first."""
        if not thread_ids:
            return []
        result = self.supabase.table(EVENTS_TABLE)\
            .select("*")\
            .in_("thread_id", thread_ids)\
            .order("created_at", desc=True)\
            .limit(limit)\
            .execute()
        return result.data or []
