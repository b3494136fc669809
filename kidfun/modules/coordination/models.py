# Supabase tables: coordination_threads, thread_participants, thread_time_proposals, thread_events
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py and events.py

"""
Expected Supabase table structure:

coordination_threads:
- id: uuid (primary key)
- created_by: uuid (foreign key to auth.users.id, not null) - organizer
- activity_name: text (not null)
- provider_id: text (nullable) - place id of the activity provider
- provider_name: text (nullable)
- provider_url: text (nullable)
- status: thread_status (not null, default: 'idea') - values: idea, proposing, scheduled, completed, cancelled
- scheduled_date: timestamptz (nullable) - set from the accepted proposal
- location: text (nullable)
- notes: text (nullable)
- created_at: timestamptz (default: now())
- updated_at: timestamptz (default: now())

thread_participants:
- id: uuid (primary key)
- thread_id: uuid (foreign key to coordination_threads.id, not null)
- user_id: uuid (foreign key to auth.users.id, not null)
- role: participant_role (not null, default: 'invited') - values: organizer, invited
- rsvp_status: rsvp_status (not null, default: 'pending') - values: pending, going, maybe, declined
- children_bringing: uuid[] (not null, default: '{}')
- invited_at: timestamptz (default: now())
- responded_at: timestamptz (nullable)
- unique constraint on (thread_id, user_id)

thread_time_proposals:
- id: uuid (primary key)
- thread_id: uuid (foreign key to coordination_threads.id, not null)
- proposed_by: uuid (foreign key to auth.users.id, not null)
- proposed_date: timestamptz (not null)
- notes: text (nullable)
- status: proposal_status (not null, default: 'proposed') - values: proposed, accepted, withdrawn
- created_at: timestamptz (default: now())

thread_events:
- id: uuid (primary key)
- thread_id: uuid (foreign key to coordination_threads.id, not null)
- user_id: uuid (foreign key to auth.users.id, not null) - actor
- event_type: thread_event_type (not null) - values: created, invited, proposed_time, accepted_time,
  rsvp, message, locked, cancelled, completed
- payload: jsonb (nullable)
- created_at: timestamptz (default: now())
- append-only: no update/delete policies
"""

THREADS_TABLE = "coordination_threads"
PARTICIPANTS_TABLE = "thread_participants"
PROPOSALS_TABLE = "thread_time_proposals"
EVENTS_TABLE = "thread_events"
