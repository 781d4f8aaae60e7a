"""
Participant State Machine - validates and applies status transitions
"""
from splitledger.core.exceptions import InvalidTransitionError
from splitledger.core.logging import get_logger
from splitledger.db.database import utcnow
from splitledger.db.models.split_event import ParticipantStatus, SplitParticipant
from splitledger.state_machine.states import PARTICIPANT_TRANSITIONS

logger = get_logger(__name__)


class ParticipantStateMachine:
    """Applies status changes to SplitParticipant rows; never commits"""

    @staticmethod
    def is_valid_transition(current: ParticipantStatus, target: ParticipantStatus) -> bool:
        return target in PARTICIPANT_TRANSITIONS.get(current, [])

    @classmethod
    def transition(
        cls,
        participant: SplitParticipant,
        target: ParticipantStatus,
        message: str | None = None,
    ) -> None:
        """
        Move a participant to ``target`` and stamp the matching timestamp.

        Raises:
            InvalidTransitionError: creator row, or target not reachable
        """
        current = ParticipantStatus(participant.status)

        if participant.is_creator or not cls.is_valid_transition(current, target):
            logger.warning(
                "Invalid participant transition attempted",
                extra_data={
                    "split_event_id": participant.split_event_id,
                    "user_id": participant.user_id,
                    "current_state": current.value,
                    "target_state": target.value,
                    "is_creator": bool(participant.is_creator),
                }
            )
            raise InvalidTransitionError(current.value, target.value, message)

        now = utcnow()
        participant.status = target
        if target in (ParticipantStatus.ACCEPTED, ParticipantStatus.DECLINED):
            participant.responded_at = now
        elif target == ParticipantStatus.PAID:
            participant.paid_at = now
        elif target == ParticipantStatus.PENDING:
            participant.responded_at = None
            participant.last_invited_at = now
