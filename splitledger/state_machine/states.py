"""
Participant State Definitions

A participant row moves through:

    pending -> accepted -> paid
    pending -> declined -> pending (re-invite only)

The creator's row is created ``paid`` and never moves.
"""
from splitledger.db.models.split_event import ParticipantStatus


PARTICIPANT_TRANSITIONS: dict[ParticipantStatus, list[ParticipantStatus]] = {
    ParticipantStatus.PENDING: [ParticipantStatus.ACCEPTED, ParticipantStatus.DECLINED],
    ParticipantStatus.ACCEPTED: [ParticipantStatus.PAID],
    ParticipantStatus.DECLINED: [ParticipantStatus.PENDING],
    ParticipantStatus.PAID: [],
}

# Statuses at which a specified-split participant may still change their amount
AMOUNT_EDITABLE_STATUSES = frozenset({ParticipantStatus.PENDING, ParticipantStatus.ACCEPTED})
