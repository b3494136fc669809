from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from kidfun.database.supabase_client import get_supabase
from kidfun.core.dependencies import get_current_user_id
from kidfun.core.notifications import ChangeNotifier, Subscription, get_notifier
from kidfun.modules.auth.service import AuthService
from kidfun.modules.coordination.schemas import (
    ThreadCreate, ProposalCreate, RsvpUpdate, InviteRequest, MessageCreate, ThreadClose,
    ThreadResponse, ParticipantResponse, EventResponse, ThreadWithDetails, CoordinationFeed
)
from kidfun.modules.coordination.service import CoordinationThreadManager
from supabase import Client
from typing import List, Dict, Optional
import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coordination", tags=["coordination"])


def get_coordination_manager(
    supabase: Client = Depends(get_supabase),
    notifier: ChangeNotifier = Depends(get_notifier)
) -> CoordinationThreadManager:
    return CoordinationThreadManager(supabase, notifier)


@router.get("/threads", response_model=List[ThreadWithDetails])
async def list_threads(
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    """All plans the user organizes or was invited to"""
    return manager.list_threads(user_data["id"])


@router.post("/threads", response_model=ThreadWithDetails, status_code=201)
async def create_thread(
    thread_data: ThreadCreate,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    thread_id = manager.create_thread(user_data["id"], thread_data)
    return manager.get_thread(thread_id, user_data["id"])


@router.get("/feed", response_model=CoordinationFeed)
async def get_feed(
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    """Plans grouped as planning / scheduled / past, plus those waiting on the user"""
    return manager.get_feed(user_data["id"])


@router.get("/threads/{thread_id}", response_model=ThreadWithDetails)
async def get_thread(
    thread_id: str,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    return manager.get_thread(thread_id, user_data["id"])


@router.get("/threads/{thread_id}/me", response_model=ParticipantResponse)
async def get_my_participation(
    thread_id: str,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    return manager.get_my_participation(thread_id, user_data["id"])


@router.post("/threads/{thread_id}/proposals", response_model=ThreadWithDetails, status_code=201)
async def propose_time(
    thread_id: str,
    proposal_data: ProposalCreate,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    manager.propose_time(thread_id, user_data["id"], proposal_data.proposed_date, proposal_data.notes)
    return manager.get_thread(thread_id, user_data["id"])


@router.post("/proposals/{proposal_id}/accept", response_model=ThreadWithDetails)
async def accept_proposal(
    proposal_id: str,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    """Confirm a proposed time; the plan becomes scheduled and other times are withdrawn"""
    proposal = manager.accept_proposal(proposal_id, user_data["id"])
    return manager.get_thread(proposal.thread_id, user_data["id"])


@router.put("/threads/{thread_id}/rsvp", response_model=ParticipantResponse)
async def update_rsvp(
    thread_id: str,
    rsvp: RsvpUpdate,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    return manager.update_rsvp(thread_id, user_data["id"], rsvp)


@router.post("/threads/{thread_id}/participants", response_model=List[ParticipantResponse], status_code=201)
async def invite_participants(
    thread_id: str,
    invite: InviteRequest,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    """Invite more parents (organizer only). Users already on the plan are skipped."""
    return manager.invite_participants(thread_id, user_data["id"], invite.user_ids)


@router.post("/threads/{thread_id}/messages", response_model=EventResponse, status_code=201)
async def post_message(
    thread_id: str,
    message: MessageCreate,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    return manager.post_message(thread_id, user_data["id"], message.message)


@router.post("/threads/{thread_id}/close", response_model=ThreadResponse)
async def close_thread(
    thread_id: str,
    close: ThreadClose,
    user_data: Dict = Depends(get_current_user_id),
    manager: CoordinationThreadManager = Depends(get_coordination_manager)
):
    """Mark a plan completed or cancelled (organizer only)"""
    return manager.close_thread(thread_id, user_data["id"], close)


def _threads_message(manager: CoordinationThreadManager, user_id: str, reason: Optional[dict]) -> dict:
    return {
        "type": "threads",
        "reason": reason,
        "threads": [t.model_dump(mode="json") for t in manager.list_threads(user_id)],
    }


async def _push_on_change(
    websocket: WebSocket,
    manager: CoordinationThreadManager,
    subscription: Subscription,
    user_id: str
):
    while True:
        notice = await subscription.next_notice()
        await websocket.send_json(_threads_message(manager, user_id, notice.to_dict()))


async def _stop_pusher(pusher: asyncio.Task, user_id: str):
    pusher.cancel()
    try:
        with contextlib.suppress(asyncio.CancelledError):
            await pusher
    except Exception as e:
        logger.warning(f"Coordination push for user {user_id} ended with an error: {e}")


@router.websocket("/ws")
async def coordination_updates(
    websocket: WebSocket,
    token: str,
    supabase: Client = Depends(get_supabase),
    notifier: ChangeNotifier = Depends(get_notifier)
):
    """Push the user's full thread list on connect and after every relevant change.

    Sending the text "refetch" forces an immediate refresh.
    """
    try:
        user_data = AuthService(supabase).get_current_user(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    user_id = user_data["id"]
    manager = CoordinationThreadManager(supabase, notifier)
    subscription = notifier.subscribe(user_id)
    pusher = None
    try:
        await websocket.send_json(_threads_message(manager, user_id, None))
        pusher = asyncio.create_task(_push_on_change(websocket, manager, subscription, user_id))
        while True:
            text = await websocket.receive_text()
            if text.strip() == "refetch":
                await websocket.send_json(_threads_message(manager, user_id, None))
    except WebSocketDisconnect:
        logger.debug(f"Coordination socket closed for user {user_id}")
    finally:
        notifier.unsubscribe(subscription)
        if pusher is not None:
            await _stop_pusher(pusher, user_id)
