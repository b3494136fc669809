from supabase import Client
from kidfun.config.settings import settings
from kidfun.core.notifications import ChangeNotifier, ChangeNotice
from kidfun.modules.coordination.models import (
    THREADS_TABLE, PARTICIPANTS_TABLE, PROPOSALS_TABLE, EVENTS_TABLE
)
from kidfun.modules.coordination.schemas import (
    ThreadStatus, RsvpStatus, ParticipantRole, ProposalStatus, ThreadEventType,
    ThreadCreate, RsvpUpdate, ThreadClose,
    ThreadResponse, ParticipantResponse, ProposalResponse, EventResponse,
    ThreadWithDetails, CoordinationFeed
)
from kidfun.modules.coordination.transitions import (
    InvalidTransition, ensure_transition, sources_for, initial_status, status_after_proposal,
    accepts_proposals, is_terminal, as_utc, is_too_far_in_past, normalize_invitees,
    rsvp_summary, categorize
)
from kidfun.modules.coordination import events as payloads
from kidfun.modules.coordination.events import ThreadEventLog
from kidfun.modules.profiles.schemas import ProfileSummary
from kidfun.modules.profiles.service import ProfileService, display_name
from typing import Iterable, List, Optional, Set
from fastapi import HTTPException
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _summary(profile: Optional[ProfileSummary]) -> Optional[ProfileSummary]:
    if profile is None:
        return None
    return ProfileSummary(first_name=profile.first_name, last_name=profile.last_name, email=profile.email)


class CoordinationThreadManager:
    """Thread, proposal and RSVP operations for one request or connection.

    Every write is a short sequence of Supabase calls followed by a change
    notice; callers re-read the aggregate afterwards instead of patching state.
    """

    def __init__(self, supabase: Client, notifier: ChangeNotifier, profiles: Optional[ProfileService] = None):
        self.supabase = supabase
        self.notifier = notifier
        self.events = ThreadEventLog(supabase)
        self.profiles = profiles or ProfileService(supabase)

    @staticmethod
    def _require_user(user_id: Optional[str]) -> None:
        if not user_id:
            raise HTTPException(status_code=401, detail="Please sign in first")

    @staticmethod
    def _require_organizer(thread: dict, user_id: str) -> None:
        if thread["created_by"] != user_id:
            raise HTTPException(status_code=403, detail="Only the organizer can do that")

    def _get_thread_row(self, thread_id: str) -> dict:
        result = self.supabase.table(THREADS_TABLE)\
            .select("*")\
            .eq("id", thread_id)\
            .maybe_single()\
            .execute()
        if not result or not result.data:
            raise HTTPException(status_code=404, detail="Plan not found")
        return result.data

    def _get_participant_row(self, thread_id: str, user_id: str) -> Optional[dict]:
        result = self.supabase.table(PARTICIPANTS_TABLE)\
            .select("*")\
            .eq("thread_id", thread_id)\
            .eq("user_id", user_id)\
            .maybe_single()\
            .execute()
        if not result or not result.data:
            return None
        return result.data

    def _require_participant(self, thread_id: str, user_id: str) -> dict:
        row = self._get_participant_row(thread_id, user_id)
        if row is None:
            raise HTTPException(status_code=403, detail="You are not part of this plan")
        return row

    def _participant_ids(self, thread_id: str) -> Set[str]:
        result = self.supabase.table(PARTICIPANTS_TABLE)\
            .select("user_id")\
            .eq("thread_id", thread_id)\
            .execute()
        return {r["user_id"] for r in (result.data or [])}

    def _check_proposed_date(self, proposed_date: datetime) -> str:
        if is_too_far_in_past(proposed_date, settings.proposal_past_grace_minutes):
            raise HTTPException(status_code=400, detail="Proposed time is in the past")
        return as_utc(proposed_date).isoformat()

    def _notify(self, table: str, action: str, thread_id: str, actor_id: str, audience: Optional[Iterable[str]] = None) -> None:
        """Publish after a committed write. A failed publish never fails the write."""
        try:
            if audience is None:
                audience = self._participant_ids(thread_id)
            self.notifier.publish(ChangeNotice(
                table=table,
                action=action,
                thread_id=thread_id,
                actor_id=actor_id,
                audience=frozenset(audience),
            ))
        except Exception as e:
            logger.warning(f"Could not publish {table} change for thread {thread_id}: {e}")

    def create_thread(self, organizer_id: str, thread_data: ThreadCreate) -> str:
        """Create a plan with its organizer, invitees and log; returns the new thread id."""
        self._require_user(organizer_id)
        invitees = normalize_invitees(organizer_id, thread_data.invite_user_ids)
        if len(invitees) > settings.max_invitees:
            raise HTTPException(status_code=400, detail=f"You can invite at most {settings.max_invitees} parents")
        if thread_data.proposed_date is not None:
            self._check_proposed_date(thread_data.proposed_date)

        try:
            result = self.supabase.table(THREADS_TABLE).insert({
                "created_by": organizer_id,
                "activity_name": thread_data.activity_name,
                "provider_id": thread_data.provider_id,
                "provider_name": thread_data.provider_name,
                "provider_url": thread_data.provider_url,
                "location": thread_data.location,
                "notes": thread_data.notes,
                "status": initial_status(thread_data.proposed_date is not None).value,
            }).execute()

            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to create plan")
            thread_id = result.data[0]["id"]

            now = _now_iso()
            rows = [{
                "thread_id": thread_id,
                "user_id": organizer_id,
                "role": ParticipantRole.ORGANIZER.value,
                "rsvp_status": RsvpStatus.GOING.value,
                "children_bringing": [],
                "invited_at": now,
            }]
            rows.extend({
                "thread_id": thread_id,
                "user_id": uid,
                "role": ParticipantRole.INVITED.value,
                "rsvp_status": RsvpStatus.PENDING.value,
                "children_bringing": [],
                "invited_at": now,
            } for uid in invitees)
            self.supabase.table(PARTICIPANTS_TABLE).insert(rows).execute()

            self.events.record(
                thread_id, organizer_id, ThreadEventType.CREATED,
                payloads.created_payload(thread_data.activity_name, len(invitees))
            )
            for uid in invitees:
                self.events.record(thread_id, organizer_id, ThreadEventType.INVITED, payloads.invited_payload(uid))
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating thread: {e}")
            raise HTTPException(status_code=500, detail="Failed to create plan")

        logger.info(f"Thread {thread_id} created by {organizer_id} with {len(invitees)} invitee(s)")
        self._notify(THREADS_TABLE, "INSERT", thread_id, organizer_id, {organizer_id, *invitees})

        # The plan is already committed; a failed first proposal is logged, not raised
        if thread_data.proposed_date is not None:
            try:
                self.propose_time(thread_id, organizer_id, thread_data.proposed_date)
            except HTTPException as e:
                logger.warning(f"Thread {thread_id} created without its initial proposal: {e.detail}")
        return thread_id

    def propose_time(self, thread_id: str, proposer_id: str, proposed_date: datetime, notes: Optional[str] = None) -> ProposalResponse:
        self._require_user(proposer_id)
        when = self._check_proposed_date(proposed_date)
        try:
            thread = self._get_thread_row(thread_id)
            self._require_participant(thread_id, proposer_id)
            current = ThreadStatus(thread["status"])
            if not accepts_proposals(current):
                raise HTTPException(status_code=409, detail=f"This plan is already {current.value}")

            result = self.supabase.table(PROPOSALS_TABLE).insert({
                "thread_id": thread_id,
                "proposed_by": proposer_id,
                "proposed_date": when,
                "notes": notes,
                "status": ProposalStatus.PROPOSED.value,
            }).execute()
            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to propose time")
            proposal = result.data[0]

            # Conditional on the observed status so a concurrent accept is never downgraded
            self.supabase.table(THREADS_TABLE)\
                .update({"status": status_after_proposal(current).value, "updated_at": _now_iso()})\
                .eq("id", thread_id)\
                .eq("status", current.value)\
                .execute()

            self.events.record(
                thread_id, proposer_id, ThreadEventType.PROPOSED_TIME,
                payloads.proposed_time_payload(proposal["id"], when, notes)
            )
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error proposing time on thread {thread_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to propose time")

        self._notify(PROPOSALS_TABLE, "INSERT", thread_id, proposer_id)
        return ProposalResponse(**proposal)

    def accept_proposal(self, proposal_id: str, accepter_id: str) -> ProposalResponse:
        """Lock the plan to this proposal's time.

        The thread row is claimed first with a conditional update, so of two
        concurrent accepts on one thread only one gets past the claim.
        """
        self._require_user(accepter_id)
        try:
            result = self.supabase.table(PROPOSALS_TABLE)\
                .select("*")\
                .eq("id", proposal_id)\
                .maybe_single()\
                .execute()
            if not result or not result.data:
                raise HTTPException(status_code=404, detail="Proposal not found")
            proposal = result.data
            if proposal["status"] != ProposalStatus.PROPOSED.value:
                raise HTTPException(status_code=409, detail="This time is no longer open")

            thread_id = proposal["thread_id"]
            self._require_participant(thread_id, accepter_id)
            thread = self._get_thread_row(thread_id)
            open_statuses = sources_for(ThreadStatus.SCHEDULED)
            if ThreadStatus(thread["status"]) not in open_statuses:
                raise HTTPException(status_code=409, detail="This plan already has a confirmed date")

            scheduled_date = proposal["proposed_date"]
            # Any open status qualifies, so a concurrent idea -> proposing bump does not block the claim
            claimed = self.supabase.table(THREADS_TABLE)\
                .update({
                    "status": ThreadStatus.SCHEDULED.value,
                    "scheduled_date": scheduled_date,
                    "updated_at": _now_iso(),
                })\
                .eq("id", thread_id)\
                .in_("status", [s.value for s in open_statuses])\
                .execute()
            if not claimed.data:
                raise HTTPException(status_code=409, detail="This plan changed; refresh and try again")

            accepted = self.supabase.table(PROPOSALS_TABLE)\
                .update({"status": ProposalStatus.ACCEPTED.value})\
                .eq("id", proposal_id)\
                .eq("status", ProposalStatus.PROPOSED.value)\
                .execute()
            if not accepted.data:
                # The claimed plan held at least this proposal, so it goes back to proposing
                self.supabase.table(THREADS_TABLE)\
                    .update({
                        "status": ThreadStatus.PROPOSING.value,
                        "scheduled_date": None,
                        "updated_at": _now_iso(),
                    })\
                    .eq("id", thread_id)\
                    .eq("status", ThreadStatus.SCHEDULED.value)\
                    .execute()
                raise HTTPException(status_code=409, detail="This time is no longer open")

            self.supabase.table(PROPOSALS_TABLE)\
                .update({"status": ProposalStatus.WITHDRAWN.value})\
                .eq("thread_id", thread_id)\
                .neq("id", proposal_id)\
                .eq("status", ProposalStatus.PROPOSED.value)\
                .execute()

            self.events.record(
                thread_id, accepter_id, ThreadEventType.LOCKED,
                payloads.locked_payload(proposal_id, scheduled_date)
            )
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error accepting proposal {proposal_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to confirm date")

        logger.info(f"Thread {thread_id} scheduled for {scheduled_date} by {accepter_id}")
        self._notify(THREADS_TABLE, "UPDATE", thread_id, accepter_id)
        return ProposalResponse(**accepted.data[0])

    def update_rsvp(self, thread_id: str, user_id: str, rsvp: RsvpUpdate) -> ParticipantResponse:
        """Set the caller's own RSVP. Any response may follow any other."""
        self._require_user(user_id)
        try:
            thread = self._get_thread_row(thread_id)
            if is_terminal(ThreadStatus(thread["status"])):
                raise HTTPException(status_code=409, detail="This plan is closed")

            result = self.supabase.table(PARTICIPANTS_TABLE)\
                .update({
                    "rsvp_status": rsvp.status.value,
                    "children_bringing": list(rsvp.children_bringing),
                    "responded_at": _now_iso(),
                })\
                .eq("thread_id", thread_id)\
                .eq("user_id", user_id)\
                .execute()
            if not result.data:
                raise HTTPException(status_code=403, detail="You are not part of this plan")

            self.events.record(
                thread_id, user_id, ThreadEventType.RSVP,
                payloads.rsvp_payload(rsvp.status, rsvp.children_bringing)
            )
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error updating RSVP on thread {thread_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to update RSVP")

        self._notify(PARTICIPANTS_TABLE, "UPDATE", thread_id, user_id)
        return ParticipantResponse(**result.data[0])

    def invite_participants(self, thread_id: str, organizer_id: str, user_ids: List[str]) -> List[ParticipantResponse]:
        self._require_user(organizer_id)
        try:
            thread = self._get_thread_row(thread_id)
            self._require_organizer(thread, organizer_id)
            if is_terminal(ThreadStatus(thread["status"])):
                raise HTTPException(status_code=409, detail="This plan is closed")

            existing = self._participant_ids(thread_id)
            invitees = normalize_invitees(organizer_id, user_ids, existing)
            if not invitees:
                return []
            if len(existing - {organizer_id}) + len(invitees) > settings.max_invitees:
                raise HTTPException(status_code=400, detail=f"You can invite at most {settings.max_invitees} parents")

            now = _now_iso()
            result = self.supabase.table(PARTICIPANTS_TABLE).insert([{
                "thread_id": thread_id,
                "user_id": uid,
                "role": ParticipantRole.INVITED.value,
                "rsvp_status": RsvpStatus.PENDING.value,
                "children_bringing": [],
                "invited_at": now,
            } for uid in invitees]).execute()
            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to invite parents")

            for uid in invitees:
                self.events.record(thread_id, organizer_id, ThreadEventType.INVITED, payloads.invited_payload(uid))
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error inviting to thread {thread_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to invite parents")

        self._notify(PARTICIPANTS_TABLE, "INSERT", thread_id, organizer_id, existing | set(invitees))
        return [ParticipantResponse(**row) for row in result.data]

    def post_message(self, thread_id: str, user_id: str, message: str) -> EventResponse:
        self._require_user(user_id)
        try:
            self._get_thread_row(thread_id)
            self._require_participant(thread_id, user_id)
            row = self.events.record(thread_id, user_id, ThreadEventType.MESSAGE, payloads.message_payload(message))
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error posting message on thread {thread_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to send message")

        self._notify(EVENTS_TABLE, "INSERT", thread_id, user_id)
        profile = self.profiles.get_profiles([user_id]).get(user_id)
        return EventResponse(**row, user_name=display_name(profile))

    def close_thread(self, thread_id: str, organizer_id: str, close: ThreadClose) -> ThreadResponse:
        """Mark a plan completed or cancelled. Both are terminal."""
        self._require_user(organizer_id)
        try:
            thread = self._get_thread_row(thread_id)
            self._require_organizer(thread, organizer_id)
            current = ThreadStatus(thread["status"])
            ensure_transition(current, close.status)

            result = self.supabase.table(THREADS_TABLE)\
                .update({"status": close.status.value, "updated_at": _now_iso()})\
                .eq("id", thread_id)\
                .eq("status", current.value)\
                .execute()
            if not result.data:
                raise HTTPException(status_code=409, detail="This plan changed; refresh and try again")

            event_type = ThreadEventType.COMPLETED if close.status == ThreadStatus.COMPLETED else ThreadEventType.CANCELLED
            self.events.record(thread_id, organizer_id, event_type, payloads.closed_payload(current, close.reason))
        except HTTPException:
            raise
        except InvalidTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            logger.error(f"Error closing thread {thread_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to update plan")

        logger.info(f"Thread {thread_id} moved from {current.value} to {close.status.value}")
        self._notify(THREADS_TABLE, "UPDATE", thread_id, organizer_id)
        return ThreadResponse(**result.data[0])

    def get_my_participation(self, thread_id: str, user_id: str) -> ParticipantResponse:
        self._require_user(user_id)
        try:
            self._get_thread_row(thread_id)
            row = self._get_participant_row(thread_id, user_id)
            if row is None:
                raise HTTPException(status_code=404, detail="You are not part of this plan")
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error loading participation on thread {thread_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to load plan")

        profile = self.profiles.get_profiles([user_id]).get(user_id)
        return ParticipantResponse(**row, profile=_summary(profile))

    def _load_details(self, thread_ids: List[str]) -> List[ThreadWithDetails]:
        threads = self.supabase.table(THREADS_TABLE)\
            .select("*")\
            .in_("id", thread_ids)\
            .order("updated_at", desc=True)\
            .execute().data or []
        if not threads:
            return []

        participants = self.supabase.table(PARTICIPANTS_TABLE)\
            .select("*")\
            .in_("thread_id", thread_ids)\
            .execute().data or []
        proposals = self.supabase.table(PROPOSALS_TABLE)\
            .select("*")\
            .in_("thread_id", thread_ids)\
            .order("created_at", desc=True)\
            .execute().data or []
        events = self.events.list_for_threads(thread_ids, settings.event_feed_limit)

        user_ids = {t["created_by"] for t in threads}
        user_ids.update(p["user_id"] for p in participants)
        user_ids.update(p["proposed_by"] for p in proposals)
        user_ids.update(e["user_id"] for e in events)
        profiles = self.profiles.get_profiles(user_ids)

        details = []
        for thread in threads:
            thread_participants = [
                ParticipantResponse(**p, profile=_summary(profiles.get(p["user_id"])))
                for p in participants if p["thread_id"] == thread["id"]
            ]
            thread_proposals = [
                ProposalResponse(**p, proposer_name=display_name(profiles.get(p["proposed_by"])))
                for p in proposals if p["thread_id"] == thread["id"]
            ]
            thread_events = [
                EventResponse(**e, user_name=display_name(profiles.get(e["user_id"])))
                for e in events if e["thread_id"] == thread["id"]
            ]
            details.append(ThreadWithDetails(
                **thread,
                participants=thread_participants,
                proposals=thread_proposals,
                events=thread_events,
                organizer_name=display_name(profiles.get(thread["created_by"])),
                rsvp_summary=rsvp_summary(thread_participants),
            ))
        return details

    def list_threads(self, user_id: str) -> List[ThreadWithDetails]:
        """Every plan the user takes part in, most recently updated first.

        This is the refetch path; failures log and yield an empty list.
        """
        if not user_id:
            return []
        try:
            memberships = self.supabase.table(PARTICIPANTS_TABLE)\
                .select("thread_id")\
                .eq("user_id", user_id)\
                .execute()
            thread_ids = sorted({m["thread_id"] for m in (memberships.data or [])})
            if not thread_ids:
                return []
            return self._load_details(thread_ids)
        except Exception as e:
            logger.error(f"Error fetching threads for user {user_id}: {e}")
            return []

    def get_thread(self, thread_id: str, user_id: str) -> ThreadWithDetails:
        self._require_user(user_id)
        try:
            self._get_thread_row(thread_id)
            self._require_participant(thread_id, user_id)
            details = self._load_details([thread_id])
            if not details:
                raise HTTPException(status_code=404, detail="Plan not found")
            return details[0]
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error loading thread {thread_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to load plan")

    def get_feed(self, user_id: str) -> CoordinationFeed:
        return categorize(self.list_threads(user_id), user_id)
