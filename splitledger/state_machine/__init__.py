"""
Split participant state machine
"""
from splitledger.state_machine.states import PARTICIPANT_TRANSITIONS
from splitledger.state_machine.manager import ParticipantStateMachine

__all__ = ["PARTICIPANT_TRANSITIONS", "ParticipantStateMachine"]
